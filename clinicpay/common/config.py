"""Central environment-driven settings shared by the API and worker processes.

Each process loads this once at startup. Components never read it directly;
entrypoints pass the values they need into constructors.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "clinic-api"
    log_level: str = "INFO"
    postgres_dsn: str
    api_key: str
    kafka_bootstrap_servers: str = "kafka:9092"
    redis_url: str = "redis://redis:6379/0"
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    rate_limit_per_minute: int = 30

    identity_url: str = "http://identity:9999"
    identity_api_key: str | None = None

    slot_interval_minutes: int = 30
    default_doctor_country: str = "IN"

    gateway_timeout_seconds: float = 10.0
    payment_link_expiry_seconds: int = 7 * 24 * 60 * 60
    razorpay_key_id: str | None = None
    razorpay_key_secret: str | None = None
    razorpay_webhook_secret: str | None = None
    razorpay_base_url: str = "https://api.razorpay.com"
    paypal_client_id: str | None = None
    paypal_client_secret: str | None = None
    paypal_webhook_id: str | None = None
    paypal_mode: str = "sandbox"

    instagram_app_secret: str | None = None
    instagram_webhook_verify_token: str | None = None

    # Fernet key for dead-lettered webhook bodies; unset disables dead-lettering.
    dead_letter_encryption_key: str | None = None

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def paypal_base_url(self) -> str:
        if self.paypal_mode == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"


settings = CommonSettings()

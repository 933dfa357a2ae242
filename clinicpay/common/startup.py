"""Startup-time config logging with secret redaction."""

from clinicpay.common.config import CommonSettings
from clinicpay.common.logging import logger

SECRET_MARKERS = ("key", "secret", "password", "token", "dsn", "webhook_id")

# Webhook providers and the setting that authenticates their deliveries.
WEBHOOK_SECRETS = {
    "razorpay": "razorpay_webhook_secret",
    "paypal": "paypal_webhook_id",
    "instagram": "instagram_app_secret",
}


def redacted(name: str, value) -> str:
    if value is None or value == "":
        return "<unset>"
    if any(marker in name.lower() for marker in SECRET_MARKERS):
        return "<redacted>"
    return str(value)


def log_startup_config(settings: CommonSettings, fields: list[str]) -> None:
    """Log selected settings, and warn for every webhook provider that will answer 500."""

    config = {"service": settings.service_name}
    for field in fields:
        config[field] = redacted(field, getattr(settings, field, None))
    logger.info("startup_config=%s", config)

    for provider, field in WEBHOOK_SECRETS.items():
        if not getattr(settings, field):
            logger.warning("webhook_secret_unset provider=%s setting=%s", provider, field.upper())
    if not settings.dead_letter_encryption_key:
        logger.warning("dead_letter_encryption_unset setting=DEAD_LETTER_ENCRYPTION_KEY")

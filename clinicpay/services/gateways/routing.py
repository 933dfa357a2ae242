"""Doctor region -> payment gateway mapping."""

from clinicpay.common.errors import ValidationError

EU_MEMBER_STATES = {
    "AT", "BE", "BG", "HR", "CY", "CZ", "DK", "EE", "FI", "FR", "DE", "GR", "HU", "IE",
    "IT", "LV", "LT", "LU", "MT", "NL", "PL", "PT", "RO", "SK", "SI", "ES", "SE",
}

DEFAULT_REGION_GATEWAYS: dict[str, str] = {
    "IN": "razorpay",
    "INDIA": "razorpay",
    "US": "paypal",
    "USA": "paypal",
    "GB": "paypal",
    "UK": "paypal",
    "CA": "paypal",
    "AU": "paypal",
    "EU": "paypal",
    **{code: "paypal" for code in EU_MEMBER_STATES},
}


class GatewayRoutingRule:
    """Pure lookup; an empty region falls back to the configured default country."""

    def __init__(self, default_region: str = "IN", mapping: dict[str, str] | None = None) -> None:
        self.default_region = default_region
        self.mapping = dict(mapping or DEFAULT_REGION_GATEWAYS)

    def select(self, doctor_region: str | None) -> str:
        region = (doctor_region or "").strip().upper() or self.default_region.strip().upper()
        gateway = self.mapping.get(region)
        if gateway is None:
            raise ValidationError(f"No payment gateway configured for region {region}")
        return gateway

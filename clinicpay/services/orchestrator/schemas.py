"""API request/response schemas for payment endpoints."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class PaymentLinkRequest(BaseModel):
    """Create-link payload accepted from the dashboard or the booking worker."""

    appointment_id: str = Field(min_length=1)
    amount_minor: int = Field(gt=0)
    currency: str = Field(min_length=3, max_length=3)
    doctor_region: str | None = None


class PaymentLinkResult(BaseModel):
    order_id: str
    url: str
    gateway: str
    gateway_order_ref: str


class PaymentLinkResponse(BaseModel):
    url: str
    order_id: str
    gateway: str


class PaymentOrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    appointment_id: str
    gateway: str
    gateway_order_ref: str | None
    amount_minor: int
    currency: str
    status: str
    payment_url: str | None
    expires_at: datetime | None


class ReconciliationReport(BaseModel):
    """Rows that need a human: failed ledger entries and paid orders with unconfirmed bookings."""

    failed_events: list[dict]
    paid_unconfirmed_orders: list[dict]
    expired_orders: int = 0

"""Payment order persistence model.

Amount and currency are fixed at creation. `gateway_order_ref` stays NULL
until the provider answers the create call. The partial unique index keeps
at most one `created` order per appointment, so only one checkout link is
ever payable.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint, func, text
from sqlalchemy.orm import Mapped, mapped_column

from clinicpay.common.db import Base

OPEN_ORDER_PREDICATE = text("status = 'created'")


class PaymentOrder(Base):
    """One checkout attempt for one appointment on one gateway."""

    __tablename__ = "payment_orders"
    __table_args__ = (
        UniqueConstraint("gateway", "gateway_order_ref", name="uq_payment_orders_gateway_ref"),
        Index(
            "uq_payment_orders_open_per_appointment",
            "appointment_id",
            unique=True,
            postgresql_where=OPEN_ORDER_PREDICATE,
            sqlite_where=OPEN_ORDER_PREDICATE,
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    appointment_id: Mapped[str] = mapped_column(ForeignKey("appointments.id"), index=True)
    gateway: Mapped[str] = mapped_column(String)
    gateway_order_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    gateway_payment_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    amount_minor: Mapped[int] = mapped_column(BigInteger)
    currency: Mapped[str] = mapped_column(String(3))
    status: Mapped[str] = mapped_column(String, default="created", index=True)
    payment_url: Mapped[str | None] = mapped_column(String, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from restaurant_api.database import Base
from restaurant_api.models.order import utcnow


class PaymentRecord(Base):
    """One row per payment attempt, keyed by the gateway's transaction / link id."""

    __tablename__ = "payment_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    gateway_reference: Mapped[str | None] = mapped_column(String(120), unique=True, nullable=True)
    # Lower-cased gateway vocabulary: created, pending, approved, declined, ...
    status: Mapped[str | None] = mapped_column(String(40), nullable=True)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(8), nullable=True)
    raw_payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    order: Mapped["Order"] = relationship("Order", back_populates="payment_records")


# Gateway status vocabulary (lower-cased). A success status is final for its reference.
SUCCESS_STATUSES = frozenset({"approved", "finalized", "completed", "paid", "pagado"})
FAILURE_STATUSES = frozenset({"declined", "failed", "voided", "error"})
IN_FLIGHT_STATUSES = frozenset({"pending"})

# Only these move the order's payment flag; any other status just updates the record.
ORDER_PAID_STATUSES = frozenset({"approved", "finalized", "completed"})
ORDER_UNPAID_STATUSES = frozenset({"declined", "failed"})
PLACEHOLDER_STATUS = "created"

# Monotonic priority: a stored status is only replaced by one of equal or higher rank.
# Unrecognised statuses rank alongside "pending".
STATUS_RANK: dict[str, int] = {
    PLACEHOLDER_STATUS: 0,
    **{s: 1 for s in IN_FLIGHT_STATUSES},
    **{s: 2 for s in FAILURE_STATUSES},
    **{s: 3 for s in SUCCESS_STATUSES},
}
UNKNOWN_STATUS_RANK = 1


def status_rank(status: str | None) -> int:
    if status is None:
        return 0
    return STATUS_RANK.get(status.lower(), UNKNOWN_STATUS_RANK)

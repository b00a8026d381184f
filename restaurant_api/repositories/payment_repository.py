from typing import Any

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from restaurant_api.models.payment import (
    STATUS_RANK,
    SUCCESS_STATUSES,
    UNKNOWN_STATUS_RANK,
    PaymentRecord,
    status_rank,
)


def _stored_rank():
    return case(
        (PaymentRecord.status.is_(None), 0),
        *[(PaymentRecord.status == status, rank) for status, rank in STATUS_RANK.items()],
        else_=UNKNOWN_STATUS_RANK,
    )


class PaymentRecordRepository:
    """
    Payment attempts keyed by gateway reference.

    Only the webhook reconciliation path and payment initiation write here.
    ``gateway_reference`` is unique, so a racing duplicate insert fails with
    ``IntegrityError`` instead of creating a second row.
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def find_by_gateway_reference(self, reference: str) -> PaymentRecord | None:
        result = await self.db.execute(
            select(PaymentRecord)
            .where(PaymentRecord.gateway_reference == reference)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def find_latest_by_order_id(self, order_id: int) -> PaymentRecord | None:
        result = await self.db.execute(
            select(PaymentRecord)
            .where(PaymentRecord.order_id == order_id)
            .order_by(PaymentRecord.created_at.desc(), PaymentRecord.id.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def has_successful_payment(self, order_id: int) -> bool:
        found = await self.db.scalar(
            select(PaymentRecord.id)
            .where(
                PaymentRecord.order_id == order_id,
                PaymentRecord.status.in_(SUCCESS_STATUSES),
            )
            .limit(1)
        )
        return found is not None

    async def create(self, **fields: Any) -> PaymentRecord:
        record = PaymentRecord(**fields)
        self.db.add(record)
        await self.db.commit()
        return record

    async def update(self, payment_id: int, status: str | None, **fields: Any) -> bool:
        """
        Apply a gateway status unless it would downgrade the stored one.
        A ``None`` status leaves the stored status as is.

        Returns False when the guard rejected the write (or the row is gone).
        """
        stmt = update(PaymentRecord).where(PaymentRecord.id == payment_id)
        if status is not None:
            stmt = stmt.where(_stored_rank() <= status_rank(status)).values(status=status)
        result = await self.db.execute(
            stmt.values(**fields)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from restaurant_api.models.audit import AuditEvent
from restaurant_api.repositories.base import clamp_page


@dataclass
class AuditFilters:
    order_id: int | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    page: int = 1
    limit: int = 20


class AuditRepository:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def create(
        self,
        order_id: int,
        from_status: str | None,
        to_status: str | None,
        description: str | None,
    ) -> AuditEvent:
        event = AuditEvent(
            order_id=order_id,
            from_status=from_status,
            to_status=to_status,
            description=description,
        )
        self.db.add(event)
        await self.db.commit()
        return event

    async def find_all(self, filters: AuditFilters) -> tuple[list[AuditEvent], int, int, int]:
        page, limit = clamp_page(filters.page, filters.limit)

        conditions = []
        if filters.order_id is not None:
            conditions.append(AuditEvent.order_id == filters.order_id)
        if filters.date_from is not None:
            conditions.append(AuditEvent.created_at >= filters.date_from)
        if filters.date_to is not None:
            conditions.append(AuditEvent.created_at <= filters.date_to)

        count = await self.db.scalar(
            select(func.count()).select_from(AuditEvent).where(*conditions)
        )
        result = await self.db.execute(
            select(AuditEvent)
            .where(*conditions)
            .order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(result.scalars().all()), count or 0, page, limit

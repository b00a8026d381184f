from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from restaurant_api.models.order import Order, OrderStatus, PaymentStatus
from restaurant_api.repositories.base import clamp_page


@dataclass
class OrderFilters:
    status: OrderStatus | None = None
    table_id: int | None = None
    client_id: int | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    page: int = 1
    limit: int = 20


class OrderRepository:
    """Persistence for orders. Mutations commit immediately; the row is the unit of change."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def find_by_id(self, order_id: int) -> Order | None:
        return await self.db.get(Order, order_id, populate_existing=True)

    async def find_by_client_id(self, client_id: int) -> list[Order]:
        result = await self.db.execute(
            select(Order)
            .where(Order.client_id == client_id)
            .order_by(Order.created_at.desc(), Order.id.desc())
        )
        return list(result.scalars().all())

    async def find_all(self, filters: OrderFilters) -> tuple[list[Order], int, int, int]:
        page, limit = clamp_page(filters.page, filters.limit)

        conditions = []
        if filters.status is not None:
            conditions.append(Order.status == filters.status)
        if filters.table_id is not None:
            conditions.append(Order.table_id == filters.table_id)
        if filters.client_id is not None:
            conditions.append(Order.client_id == filters.client_id)
        if filters.date_from is not None:
            conditions.append(Order.created_at >= filters.date_from)
        if filters.date_to is not None:
            conditions.append(Order.created_at <= filters.date_to)

        count = await self.db.scalar(select(func.count()).select_from(Order).where(*conditions))
        result = await self.db.execute(
            select(Order)
            .where(*conditions)
            .order_by(Order.created_at.desc(), Order.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(result.scalars().all()), count or 0, page, limit

    async def create(self, **fields: Any) -> Order:
        order = Order(**fields)
        self.db.add(order)
        await self.db.commit()
        return order

    async def update(self, order_id: int, fields: dict[str, Any]) -> Order | None:
        result = await self.db.execute(
            update(Order).where(Order.id == order_id).values(**fields)
        )
        await self.db.commit()
        if result.rowcount == 0:
            return None
        return await self.find_by_id(order_id)

    async def transition_status(
        self, order_id: int, expected: OrderStatus, new: OrderStatus
    ) -> bool:
        """Compare-and-set on status. Returns False when the stored status is no longer ``expected``."""
        result = await self.db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == expected)
            .values(status=new)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def set_payment_status(self, order_id: int, new: PaymentStatus) -> bool:
        """Returns True only when the stored value actually changed."""
        result = await self.db.execute(
            update(Order)
            .where(Order.id == order_id, Order.payment_status != new)
            .values(payment_status=new)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def delete(self, order_id: int) -> bool:
        result = await self.db.execute(delete(Order).where(Order.id == order_id))
        await self.db.commit()
        return result.rowcount == 1

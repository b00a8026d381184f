"""Read-only access to the product catalog, table registry and user directory."""

from collections.abc import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from restaurant_api.models.catalog import DiningTable, Product, User
from restaurant_api.repositories.base import bounded


class ProductRepository:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def find_by_ids(self, ids: Iterable[int]) -> list[Product]:
        unique_ids = list(dict.fromkeys(ids))
        if not unique_ids:
            return []
        result = await bounded(
            self.db.execute(select(Product).where(Product.id.in_(unique_ids))),
            "product catalog",
        )
        return list(result.scalars().all())


class TableRepository:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def find_by_id(self, table_id: int) -> DiningTable | None:
        return await bounded(self.db.get(DiningTable, table_id), "table registry")


class UserRepository:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def find_by_id(self, user_id: int) -> User | None:
        return await bounded(self.db.get(User, user_id), "user directory")

from datetime import datetime

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from restaurant_api.database import get_db
from restaurant_api.repositories.audit_repository import AuditFilters
from restaurant_api.schemas.audit import AuditEventPage
from restaurant_api.services import audit_service

router = APIRouter()


@router.get("", response_model=AuditEventPage)
async def list_events(
    order_id: int | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    page: int = 1,
    limit: int = 20,
    db: AsyncSession = Depends(get_db),
) -> AuditEventPage:
    filters = AuditFilters(
        order_id=order_id, date_from=date_from, date_to=date_to, page=page, limit=limit
    )
    return await audit_service.get_events(db, filters)

import logging
import math

from sqlalchemy.ext.asyncio import AsyncSession

from restaurant_api.database import rollback_quietly
from restaurant_api.metrics import AUDIT_WRITE_FAILURES
from restaurant_api.repositories.audit_repository import AuditFilters, AuditRepository
from restaurant_api.schemas.audit import AuditEventPage, AuditEventResponse

logger = logging.getLogger(__name__)


async def record_event(
    db: AsyncSession,
    order_id: int,
    *,
    from_status: str | None = None,
    to_status: str | None = None,
    description: str | None = None,
) -> None:
    """Append an audit event. Never raises: the triggering change is already committed."""
    try:
        await AuditRepository(db).create(order_id, from_status, to_status, description)
    except Exception:
        AUDIT_WRITE_FAILURES.inc()
        logger.exception(
            "Failed to write audit event",
            extra={
                "order_id": order_id,
                "from_status": from_status,
                "to_status": to_status,
            },
        )
        await rollback_quietly(db)


async def get_events(db: AsyncSession, filters: AuditFilters) -> AuditEventPage:
    events, count, page, limit = await AuditRepository(db).find_all(filters)
    return AuditEventPage(
        page=page,
        limit=limit,
        total=count,
        total_pages=math.ceil(count / limit),
        events=[AuditEventResponse.model_validate(e) for e in events],
    )

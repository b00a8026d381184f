from datetime import datetime

from pydantic import BaseModel


class AuditEventResponse(BaseModel):
    id: int
    order_id: int
    from_status: str | None
    to_status: str | None
    description: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class AuditEventPage(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int
    events: list[AuditEventResponse]

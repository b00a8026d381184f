import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from restaurant_api.database import get_db
from restaurant_api.schemas.payment import PaymentCreate, PaymentLinkResponse
from restaurant_api.services import payment_service
from restaurant_api.services.gateway import PaymentGateway, get_gateway

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/create", response_model=PaymentLinkResponse)
async def create_payment(
    body: PaymentCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> PaymentLinkResponse:
    logger.info(
        "Received create_payment request",
        extra={
            "request_id": getattr(request.state, "request_id", "unknown"),
            "order_id": body.order_id,
        },
    )
    return await payment_service.initiate_payment(db, body.order_id, gateway)

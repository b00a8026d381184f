from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from restaurant_api.database import get_db
from restaurant_api.schemas.payment import WebhookAck
from restaurant_api.services import payment_service

router = APIRouter()

_SIGNATURE_HEADERS = ("x-signature", "wompi-signature", "x-wompi-signature", "signature")


@router.post("/payment-gateway", response_model=WebhookAck, response_model_exclude_none=True)
async def payment_gateway_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> WebhookAck:
    # Signature is computed over the unmodified body, so read raw bytes, never the parsed JSON.
    raw_body = await request.body()
    signature = next(
        (request.headers[h] for h in _SIGNATURE_HEADERS if h in request.headers), None
    )
    return await payment_service.process_webhook(db, raw_body, signature)

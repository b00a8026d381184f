from decimal import Decimal

from pydantic import BaseModel


class PaymentCreate(BaseModel):
    order_id: int


class PaymentLinkResponse(BaseModel):
    gateway_reference: str
    checkout_url: str
    amount: Decimal
    currency: str


class WebhookAck(BaseModel):
    ok: bool
    reason: str | None = None
    updated: bool | None = None

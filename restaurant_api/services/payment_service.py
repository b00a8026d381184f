"""
Payment initiation and gateway webhook reconciliation.

Webhook delivery is at-least-once, so reconciliation is idempotent per
gateway reference:
  - a reference whose stored record already reached a success status is a no-op
  - records are never downgraded (see ``PaymentRecordRepository.update``)
  - the order's payment flag is flipped with a conditional update, so only one
    delivery produces the change and its audit event

Only signature and payload failures are raised to the caller. Everything after
parsing is best-effort: each failure is logged and the gateway still gets an
acknowledgement, since retrying the same delivery would not fix it.
"""

import json
import logging
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from restaurant_api.config import settings
from restaurant_api.database import rollback_quietly
from restaurant_api.errors import (
    InvalidPayloadError,
    InvalidSignatureError,
    InvalidStateError,
    NotFoundError,
)
from restaurant_api.metrics import WEBHOOK_EVENTS
from restaurant_api.models.order import OrderStatus, PaymentStatus
from restaurant_api.models.payment import (
    ORDER_PAID_STATUSES,
    ORDER_UNPAID_STATUSES,
    PLACEHOLDER_STATUS,
    SUCCESS_STATUSES,
)
from restaurant_api.repositories.order_repository import OrderRepository
from restaurant_api.repositories.payment_repository import PaymentRecordRepository
from restaurant_api.schemas.payment import PaymentLinkResponse, WebhookAck
from restaurant_api.services import audit_service
from restaurant_api.services.gateway import PaymentGateway, verify_signature

logger = logging.getLogger(__name__)

ALREADY_PROCESSED = "already_processed"
_DIGITS = re.compile(r"(\d+)")


# ---------------------------------------------------------------------------
# Payment initiation
# ---------------------------------------------------------------------------


async def initiate_payment(
    db: AsyncSession, order_id: int, gateway: PaymentGateway
) -> PaymentLinkResponse:
    order = await OrderRepository(db).find_by_id(order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    if order.status != OrderStatus.PENDING or order.payment_status != PaymentStatus.UNPAID:
        raise InvalidStateError(
            f"Order {order_id} is not payable (status={order.status.value}, "
            f"payment_status={order.payment_status.value})"
        )

    amount = order.total
    link = await gateway.create_payment_link(order_id, amount, settings.gateway_currency)

    # The gateway session is already live; losing this row only costs the placeholder.
    try:
        await PaymentRecordRepository(db).create(
            order_id=order_id,
            gateway_reference=link.reference,
            status=PLACEHOLDER_STATUS,
            amount=link.amount,
            currency=link.currency,
            raw_payload=link.raw,
        )
    except Exception:
        logger.exception(
            "Could not persist payment record",
            extra={"order_id": order_id, "gateway_reference": link.reference},
        )
        await rollback_quietly(db)

    return PaymentLinkResponse(
        gateway_reference=link.reference,
        checkout_url=link.checkout_url,
        amount=link.amount,
        currency=link.currency,
    )


# ---------------------------------------------------------------------------
# Webhook parsing
# ---------------------------------------------------------------------------


@dataclass
class GatewayEvent:
    order_id: int | None
    gateway_reference: str | None
    status: str | None
    amount: Decimal | None
    currency: str | None
    payload: dict[str, Any]


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_order_id(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        order_id = int(value)
    except (TypeError, ValueError):
        return None
    return order_id if order_id > 0 else None


def _first(sources: list[dict[str, Any]], *keys: str) -> Any:
    for source in sources:
        for key in keys:
            value = source.get(key)
            if value not in (None, ""):
                return value
    return None


def resolve_order_id(sources: list[dict[str, Any]]) -> int | None:
    """Metadata first, then the first number found in the free-text reference."""
    for source in sources:
        metadata = _as_dict(source.get("metadata"))
        order_id = _as_order_id(metadata.get("order_id") or metadata.get("pedidoId"))
        if order_id is not None:
            return order_id

    reference = _first(sources, "reference")
    if reference is not None:
        match = _DIGITS.search(str(reference))
        if match:
            return _as_order_id(match.group(1))
    return None


def parse_event(payload: dict[str, Any]) -> GatewayEvent:
    data = _as_dict(payload.get("data"))
    obj = _as_dict(data.get("object"))
    payment = _as_dict(obj.get("payment"))
    transaction = _as_dict(data.get("transaction"))
    sources = [payment, obj, transaction]

    reference = _first([payment], "id", "transaction_id", "transaction") or _first(
        [transaction], "id"
    )
    status = _first(sources, "status")

    amount = None
    cents = _first(sources, "amount_in_cents")
    try:
        if cents is not None:
            amount = Decimal(str(cents)) / 100
        elif (raw_amount := _first(sources, "amount")) is not None:
            amount = Decimal(str(raw_amount))
    except InvalidOperation:
        amount = None

    return GatewayEvent(
        order_id=resolve_order_id(sources),
        gateway_reference=str(reference) if reference is not None else None,
        status=str(status).lower() if status is not None else None,
        amount=amount,
        currency=_first(sources, "currency"),
        payload=payload,
    )


def order_payment_status_for(gateway_status: str | None) -> PaymentStatus | None:
    if gateway_status in ORDER_PAID_STATUSES:
        return PaymentStatus.PAID
    if gateway_status in ORDER_UNPAID_STATUSES:
        return PaymentStatus.UNPAID
    # pending, voided, unrecognised: recorded on the payment record only
    return None


# ---------------------------------------------------------------------------
# Webhook reconciliation
# ---------------------------------------------------------------------------


async def _reconcile_payment_record(db: AsyncSession, event: GatewayEvent) -> str | None:
    repo = PaymentRecordRepository(db)
    fields: dict[str, Any] = {"raw_payload": event.payload}
    if event.amount is not None:
        fields["amount"] = event.amount
    if event.currency:
        fields["currency"] = event.currency

    if event.gateway_reference is None:
        latest = await repo.find_latest_by_order_id(event.order_id)
        if latest is None:
            logger.warning(
                "Webhook without gateway reference and no payment record for order",
                extra={"order_id": event.order_id},
            )
        elif not await repo.update(latest.id, event.status, **fields):
            logger.info(
                "Payment record kept its higher-priority status",
                extra={"order_id": event.order_id, "payment_id": latest.id},
            )
        return None

    existing = await repo.find_by_gateway_reference(event.gateway_reference)
    if existing is not None and (existing.status or "").lower() in SUCCESS_STATUSES:
        return ALREADY_PROCESSED

    if existing is None:
        # Adopt the placeholder left by initiate_payment instead of orphaning it.
        latest = await repo.find_latest_by_order_id(event.order_id)
        if latest is not None and latest.status == PLACEHOLDER_STATUS:
            existing = latest
            fields["gateway_reference"] = event.gateway_reference

    if existing is None:
        try:
            await repo.create(
                order_id=event.order_id,
                gateway_reference=event.gateway_reference,
                status=event.status,
                **fields,
            )
            return None
        except IntegrityError:
            # A concurrent delivery inserted the same reference first.
            await db.rollback()
            existing = await repo.find_by_gateway_reference(event.gateway_reference)
            if existing is None:
                raise
            if (existing.status or "").lower() in SUCCESS_STATUSES:
                return ALREADY_PROCESSED

    if not await repo.update(existing.id, event.status, **fields):
        logger.info(
            "Payment record kept its higher-priority status",
            extra={
                "order_id": event.order_id,
                "payment_id": existing.id,
                "gateway_reference": event.gateway_reference,
                "incoming_status": event.status,
            },
        )
    return None


async def _apply_to_order(db: AsyncSession, event: GatewayEvent) -> bool:
    target = order_payment_status_for(event.status)
    if target is None:
        logger.info(
            "Gateway status does not change the order",
            extra={"order_id": event.order_id, "gateway_status": event.status},
        )
        return False

    if target == PaymentStatus.UNPAID and await PaymentRecordRepository(
        db
    ).has_successful_payment(event.order_id):
        logger.info(
            "Decline ignored, order already has a successful payment",
            extra={"order_id": event.order_id, "gateway_reference": event.gateway_reference},
        )
        return False

    changed = await OrderRepository(db).set_payment_status(event.order_id, target)
    if changed:
        logger.info(
            "Order payment status reconciled from gateway",
            extra={
                "order_id": event.order_id,
                "payment_status": target.value,
                "gateway_reference": event.gateway_reference,
            },
        )
        await audit_service.record_event(
            db,
            event.order_id,
            description=(
                f"Payment {event.status} via gateway "
                f"({event.gateway_reference or 'no reference'}): payment_status → {target.value}"
            ),
        )
    return changed or target == PaymentStatus.PAID


async def process_webhook(
    db: AsyncSession,
    raw_body: bytes,
    signature_header: str | None,
    secret: str | None = None,
) -> WebhookAck:
    secret = settings.gateway_signature_secret if secret is None else secret

    # 1. Signature over the exact raw bytes
    if secret:
        if not verify_signature(raw_body, signature_header, secret):
            WEBHOOK_EVENTS.labels("invalid_signature").inc()
            logger.warning("Webhook signature verification failed")
            raise InvalidSignatureError("Invalid webhook signature")
    else:
        logger.debug("No webhook secret configured, skipping signature verification")

    # 2. Payload
    try:
        payload = json.loads(raw_body)
    except (UnicodeDecodeError, ValueError) as exc:
        WEBHOOK_EVENTS.labels("invalid_payload").inc()
        logger.warning("Webhook body is not valid JSON", extra={"error": str(exc)})
        raise InvalidPayloadError("Invalid webhook payload") from exc
    if not isinstance(payload, dict):
        WEBHOOK_EVENTS.labels("invalid_payload").inc()
        raise InvalidPayloadError("Invalid webhook payload")

    event = parse_event(payload)
    log_extra = {
        "order_id": event.order_id,
        "gateway_reference": event.gateway_reference,
        "gateway_status": event.status,
    }

    # 3. Order association
    if event.order_id is None:
        WEBHOOK_EVENTS.labels("no_order_id").inc()
        logger.warning(
            "Webhook received without a resolvable order id",
            extra={"payload_excerpt": raw_body[:200].decode("utf-8", "replace")},
        )
        return WebhookAck(ok=True, reason="no_order_id")

    try:
        order = await OrderRepository(db).find_by_id(event.order_id)
    except Exception:
        logger.exception("Order lookup failed during webhook handling", extra=log_extra)
        await rollback_quietly(db)
    else:
        if order is None:
            WEBHOOK_EVENTS.labels("order_not_found").inc()
            logger.warning("Webhook references an unknown order", extra=log_extra)
            return WebhookAck(ok=True, reason="order_not_found")

    # 4. Payment record (idempotency on gateway reference)
    try:
        outcome = await _reconcile_payment_record(db, event)
    except Exception:
        logger.exception("Payment record reconciliation failed", extra=log_extra)
        await rollback_quietly(db)
        outcome = None

    if outcome == ALREADY_PROCESSED:
        WEBHOOK_EVENTS.labels("already_processed").inc()
        logger.info("Webhook already processed, skipping", extra=log_extra)
        return WebhookAck(ok=True, reason=ALREADY_PROCESSED)

    # 5. Order payment flag
    try:
        updated = await _apply_to_order(db, event)
    except Exception:
        logger.exception("Order payment update failed during webhook handling", extra=log_extra)
        await rollback_quietly(db)
        updated = False

    WEBHOOK_EVENTS.labels("processed").inc()
    logger.info("Webhook processed", extra={**log_extra, "updated": updated})
    return WebhookAck(ok=True, updated=updated)

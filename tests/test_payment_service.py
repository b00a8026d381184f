import hashlib
import hmac
import json
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from restaurant_api.errors import (
    InvalidPayloadError,
    InvalidSignatureError,
    InvalidStateError,
    NotFoundError,
)
from restaurant_api.models.audit import AuditEvent
from restaurant_api.models.order import Order, PaymentStatus
from restaurant_api.models.payment import PaymentRecord
from restaurant_api.repositories.payment_repository import PaymentRecordRepository
from restaurant_api.services import order_service, payment_service
from restaurant_api.services.payment_service import (
    order_payment_status_for,
    parse_event,
    resolve_order_id,
)

SECRET = "whsec_test"


def payment_event(order_id, reference="TX-1", status="APPROVED", amount_in_cents=2000000):
    """Payment-link webhook shape: data.object.payment."""
    return {
        "event": "payment.updated",
        "data": {
            "object": {
                "payment": {
                    "id": reference,
                    "status": status,
                    "amount_in_cents": amount_in_cents,
                    "currency": "COP",
                    "metadata": {"order_id": order_id},
                }
            }
        },
    }


def transaction_event(reference_text, transaction_id="TX-9", status="APPROVED"):
    """Transaction webhook shape: data.transaction."""
    return {
        "event": "transaction.updated",
        "data": {
            "transaction": {
                "id": transaction_id,
                "status": status,
                "reference": reference_text,
                "amount_in_cents": 2000000,
                "currency": "COP",
            }
        },
    }


def body(payload) -> bytes:
    return json.dumps(payload).encode()


async def _order(session_factory, order_id) -> Order:
    async with session_factory() as fresh:
        return await fresh.get(Order, order_id)


async def _records(session_factory, order_id) -> list[PaymentRecord]:
    async with session_factory() as fresh:
        result = await fresh.execute(
            select(PaymentRecord).where(PaymentRecord.order_id == order_id).order_by(PaymentRecord.id)
        )
        return list(result.scalars().all())


async def _audit_count(session_factory, order_id) -> int:
    async with session_factory() as fresh:
        return await fresh.scalar(
            select(func.count()).select_from(AuditEvent).where(AuditEvent.order_id == order_id)
        )


# ---------------------------------------------------------------------------
# Payment initiation
# ---------------------------------------------------------------------------


async def test_initiate_payment_creates_placeholder(db, make_order, fake_gateway, session_factory):
    order = await make_order()

    link = await payment_service.initiate_payment(db, order.id, fake_gateway)

    assert link.gateway_reference == "LINK-test-1"
    assert link.amount == Decimal("20.00")
    assert fake_gateway.calls == [(order.id, Decimal("20.00"), "COP")]

    [record] = await _records(session_factory, order.id)
    assert record.gateway_reference == "LINK-test-1"
    assert record.status == "created"


async def test_initiate_payment_unknown_order(db, catalog, fake_gateway):
    with pytest.raises(NotFoundError):
        await payment_service.initiate_payment(db, 999, fake_gateway)
    assert fake_gateway.calls == []


@pytest.mark.parametrize("change", ["status", "payment"])
async def test_initiate_payment_requires_pending_unpaid(db, make_order, fake_gateway, change):
    order = await make_order()
    if change == "status":
        await order_service.update_order_status(db, order.id, "cancelled")
    else:
        await order_service.update_order_payment(db, order.id, "paid")

    with pytest.raises(InvalidStateError):
        await payment_service.initiate_payment(db, order.id, fake_gateway)
    assert fake_gateway.calls == []


async def test_initiate_payment_survives_record_failure(db, make_order, fake_gateway, monkeypatch):
    order = await make_order()

    async def broken(self, **fields):
        raise RuntimeError("payments table unavailable")

    monkeypatch.setattr(PaymentRecordRepository, "create", broken)

    link = await payment_service.initiate_payment(db, order.id, fake_gateway)
    assert link.gateway_reference == "LINK-test-1"


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def test_parse_payment_link_shape():
    event = parse_event(payment_event(7, reference="TX-7", status="APPROVED"))

    assert event.order_id == 7
    assert event.gateway_reference == "TX-7"
    assert event.status == "approved"
    assert event.amount == Decimal("20000")
    assert event.currency == "COP"


def test_parse_transaction_shape():
    event = parse_event(transaction_event("order_12", transaction_id="TX-12", status="DECLINED"))

    assert event.order_id == 12
    assert event.gateway_reference == "TX-12"
    assert event.status == "declined"


@pytest.mark.parametrize(
    "sources, expected",
    [
        ([{"metadata": {"order_id": "41"}}], 41),
        ([{"metadata": {"pedidoId": 8}}], 8),
        ([{"metadata": {"order_id": 3}, "reference": "order_99"}], 3),
        ([{"reference": "pedido-55-mesa"}], 55),
        ([{"reference": "no digits here"}], None),
        ([{"metadata": {"order_id": "abc"}}], None),
        ([{}], None),
    ],
)
def test_resolve_order_id(sources, expected):
    assert resolve_order_id(sources) == expected


# ---------------------------------------------------------------------------
# Webhook processing
# ---------------------------------------------------------------------------


async def test_approved_webhook_marks_order_paid(db, make_order, session_factory):
    order = await make_order()

    ack = await payment_service.process_webhook(db, body(payment_event(order.id)), None)

    assert ack.ok is True
    assert ack.updated is True
    assert (await _order(session_factory, order.id)).payment_status == PaymentStatus.PAID
    [record] = await _records(session_factory, order.id)
    assert record.gateway_reference == "TX-1"
    assert record.status == "approved"
    assert record.amount == Decimal("20000.00")


async def test_webhook_replay_is_idempotent(db, make_order, session_factory):
    order = await make_order()
    raw = body(payment_event(order.id))

    first = await payment_service.process_webhook(db, raw, None)
    audit_after_first = await _audit_count(session_factory, order.id)
    second = await payment_service.process_webhook(db, raw, None)

    assert first.updated is True
    assert second.ok is True
    assert second.reason == "already_processed"
    assert len(await _records(session_factory, order.id)) == 1
    assert await _audit_count(session_factory, order.id) == audit_after_first
    # creation + one payment event
    assert audit_after_first == 2


async def test_pending_webhook_does_not_touch_order(db, make_order, session_factory):
    order = await make_order()

    ack = await payment_service.process_webhook(
        db, body(payment_event(order.id, status="PENDING")), None
    )

    assert ack.updated is False
    assert (await _order(session_factory, order.id)).payment_status == PaymentStatus.UNPAID
    [record] = await _records(session_factory, order.id)
    assert record.status == "pending"


async def test_pending_then_approved_upgrades_record(db, make_order, session_factory):
    order = await make_order()

    await payment_service.process_webhook(db, body(payment_event(order.id, status="PENDING")), None)
    ack = await payment_service.process_webhook(db, body(payment_event(order.id)), None)

    assert ack.updated is True
    [record] = await _records(session_factory, order.id)
    assert record.status == "approved"


async def test_late_pending_never_downgrades_record(db, make_order, session_factory):
    order = await make_order()

    await payment_service.process_webhook(
        db, body(payment_event(order.id, status="DECLINED")), None
    )
    await payment_service.process_webhook(db, body(payment_event(order.id, status="PENDING")), None)

    [record] = await _records(session_factory, order.id)
    assert record.status == "declined"


async def test_decline_after_payment_keeps_order_paid(db, make_order, session_factory):
    order = await make_order()

    await payment_service.process_webhook(db, body(payment_event(order.id, reference="TX-1")), None)
    ack = await payment_service.process_webhook(
        db, body(payment_event(order.id, reference="TX-2", status="DECLINED")), None
    )

    assert ack.updated is False
    assert (await _order(session_factory, order.id)).payment_status == PaymentStatus.PAID
    assert [r.status for r in await _records(session_factory, order.id)] == ["approved", "declined"]


async def test_webhook_adopts_placeholder_record(db, make_order, fake_gateway, session_factory):
    order = await make_order()
    await payment_service.initiate_payment(db, order.id, fake_gateway)

    ack = await payment_service.process_webhook(
        db, body(transaction_event(f"order_{order.id}", transaction_id="TX-77")), None
    )

    assert ack.updated is True
    [record] = await _records(session_factory, order.id)
    assert record.gateway_reference == "TX-77"
    assert record.status == "approved"


async def test_webhook_without_order_id_is_acknowledged(db, make_order, session_factory):
    order = await make_order()
    payload = {"data": {"transaction": {"id": "TX-5", "status": "APPROVED", "reference": "mesa"}}}

    ack = await payment_service.process_webhook(db, body(payload), None)

    assert ack.ok is True
    assert ack.reason == "no_order_id"
    assert await _records(session_factory, order.id) == []


async def test_webhook_for_unknown_order_is_acknowledged(db, catalog):
    ack = await payment_service.process_webhook(db, body(payment_event(4242)), None)

    assert ack.ok is True
    assert ack.reason == "order_not_found"


@pytest.mark.parametrize("raw", [b"{not json", b"[1, 2, 3]", b"\xff\xfe"])
async def test_webhook_rejects_invalid_payload(db, catalog, raw):
    with pytest.raises(InvalidPayloadError):
        await payment_service.process_webhook(db, raw, None)


async def test_webhook_signature_required_when_secret_configured(db, make_order, session_factory):
    order = await make_order()
    raw = body(payment_event(order.id))

    with pytest.raises(InvalidSignatureError):
        await payment_service.process_webhook(db, raw, "deadbeef", secret=SECRET)
    with pytest.raises(InvalidSignatureError):
        await payment_service.process_webhook(db, raw, None, secret=SECRET)

    assert (await _order(session_factory, order.id)).payment_status == PaymentStatus.UNPAID
    assert await _records(session_factory, order.id) == []


async def test_webhook_valid_signature_is_processed(db, make_order, session_factory):
    order = await make_order()
    raw = body(payment_event(order.id))
    signature = hmac.new(SECRET.encode(), raw, hashlib.sha256).hexdigest()

    ack = await payment_service.process_webhook(db, raw, signature.upper(), secret=SECRET)

    assert ack.updated is True
    assert (await _order(session_factory, order.id)).payment_status == PaymentStatus.PAID


async def test_webhook_survives_reconciliation_failure(db, make_order, session_factory, monkeypatch):
    order = await make_order()

    async def broken(self, reference):
        raise RuntimeError("payments table unavailable")

    monkeypatch.setattr(PaymentRecordRepository, "find_by_gateway_reference", broken)

    ack = await payment_service.process_webhook(db, body(payment_event(order.id)), None)

    assert ack.ok is True
    assert (await _order(session_factory, order.id)).payment_status == PaymentStatus.PAID


@pytest.mark.parametrize(
    "gateway_status, expected",
    [
        ("approved", PaymentStatus.PAID),
        ("finalized", PaymentStatus.PAID),
        ("completed", PaymentStatus.PAID),
        ("declined", PaymentStatus.UNPAID),
        ("failed", PaymentStatus.UNPAID),
        ("paid", None),
        ("pagado", None),
        ("voided", None),
        ("error", None),
        ("pending", None),
        ("created", None),
        ("on_hold", None),
        (None, None),
    ],
)
def test_order_payment_status_mapping(gateway_status, expected):
    assert order_payment_status_for(gateway_status) is expected


async def test_unmapped_success_token_only_updates_record(db, make_order, session_factory):
    order = await make_order()

    ack = await payment_service.process_webhook(
        db, body(payment_event(order.id, reference="TX-P", status="PAID")), None
    )

    assert ack.updated is False
    assert (await _order(session_factory, order.id)).payment_status == PaymentStatus.UNPAID
    [record] = await _records(session_factory, order.id)
    assert record.status == "paid"


async def test_voided_webhook_keeps_manual_payment(db, make_order, session_factory):
    order = await make_order()
    await order_service.update_order_payment(db, order.id, "paid")

    ack = await payment_service.process_webhook(
        db, body(payment_event(order.id, reference="TX-V", status="VOIDED")), None
    )

    assert ack.updated is False
    assert (await _order(session_factory, order.id)).payment_status == PaymentStatus.PAID
    [record] = await _records(session_factory, order.id)
    assert record.status == "voided"


def _race_on_insert(monkeypatch, session_factory, winner_status):
    """Another delivery for the same reference commits its row just before ours is inserted."""
    original = PaymentRecordRepository.create

    async def racing(self, **fields):
        async with session_factory() as other:
            await original(
                PaymentRecordRepository(other),
                order_id=fields["order_id"],
                gateway_reference=fields["gateway_reference"],
                status=winner_status,
            )
        return await original(self, **fields)

    monkeypatch.setattr(PaymentRecordRepository, "create", racing)


async def test_concurrent_delivery_keeps_single_record(
    db, make_order, session_factory, monkeypatch
):
    order = await make_order()
    _race_on_insert(monkeypatch, session_factory, winner_status="pending")

    ack = await payment_service.process_webhook(
        db, body(payment_event(order.id, reference="TX-R")), None
    )

    assert ack.ok is True
    assert ack.updated is True
    records = await _records(session_factory, order.id)
    assert [(r.gateway_reference, r.status) for r in records] == [("TX-R", "approved")]
    assert (await _order(session_factory, order.id)).payment_status == PaymentStatus.PAID


async def test_concurrent_delivery_already_approved(db, make_order, session_factory, monkeypatch):
    order = await make_order()
    _race_on_insert(monkeypatch, session_factory, winner_status="approved")

    ack = await payment_service.process_webhook(
        db, body(payment_event(order.id, reference="TX-R")), None
    )

    assert ack.ok is True
    assert ack.reason == "already_processed"
    records = await _records(session_factory, order.id)
    assert [(r.gateway_reference, r.status) for r in records] == [("TX-R", "approved")]


async def test_webhook_survives_failing_rollback(db, make_order, session_factory, monkeypatch):
    order = await make_order()

    async def broken_lookup(self, reference):
        raise RuntimeError("payments table unavailable")

    async def broken_rollback():
        raise RuntimeError("connection lost")

    monkeypatch.setattr(PaymentRecordRepository, "find_by_gateway_reference", broken_lookup)
    monkeypatch.setattr(db, "rollback", broken_rollback)

    ack = await payment_service.process_webhook(db, body(payment_event(order.id)), None)

    assert ack.ok is True
    assert (await _order(session_factory, order.id)).payment_status == PaymentStatus.PAID

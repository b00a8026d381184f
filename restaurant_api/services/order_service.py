import logging
import math
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from restaurant_api.errors import InvalidTransitionError, NotFoundError, ValidationError
from restaurant_api.metrics import ORDER_TRANSITIONS, ORDER_TRANSITIONS_REJECTED
from restaurant_api.models.order import Order, OrderStatus, PaymentStatus
from restaurant_api.repositories.audit_repository import AuditFilters, AuditRepository
from restaurant_api.repositories.catalog_repository import (
    ProductRepository,
    TableRepository,
    UserRepository,
)
from restaurant_api.repositories.order_repository import OrderFilters, OrderRepository
from restaurant_api.schemas.order import (
    LineItemCreate,
    OrderCreate,
    OrderDetailResponse,
    OrderHistoryEntry,
    OrderPage,
    OrderResponse,
)
from restaurant_api.services import audit_service
from restaurant_api.services.order_status import (
    canonical_payment_status,
    canonical_status,
    check_transition,
)

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
TOTAL_TOLERANCE = Decimal("0.01")
HISTORY_LIMIT = 5


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def money(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def _build_response(order: Order) -> OrderResponse:
    return OrderResponse.model_validate(order)


async def _get_or_404(repo: OrderRepository, order_id: int) -> Order:
    order = await repo.find_by_id(order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    return order


async def _ensure_table(db: AsyncSession, table_id: int) -> None:
    if isinstance(table_id, bool) or not isinstance(table_id, int) or table_id <= 0:
        raise ValidationError("table_id must be a positive integer")
    if await TableRepository(db).find_by_id(table_id) is None:
        raise NotFoundError(f"Table {table_id} not found")


async def price_line_items(db: AsyncSession, items: list[LineItemCreate]) -> list[dict]:
    """
    Validate line items and price them from the current catalog.

    Products are fetched in one query for all referenced ids. Any price the
    client sent has already been discarded by the request schema.
    """
    for item in items:
        if item.product_id is None:
            raise ValidationError("Every item needs a product_id")
        quantity = item.quantity
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError(
                f"Invalid quantity for product {item.product_id}: must be a positive integer"
            )

    products = await ProductRepository(db).find_by_ids(item.product_id for item in items)
    catalog = {p.id: p for p in products}

    priced: list[dict] = []
    for item in items:
        product = catalog.get(item.product_id)
        if product is None:
            raise ValidationError(f"Product not found: {item.product_id}")
        if not product.available:
            raise ValidationError(f"Product not available: {item.product_id}")

        unit_price = money(Decimal(product.price))
        line_subtotal = money(unit_price * item.quantity)
        priced.append(
            {
                "product_id": product.id,
                "quantity": item.quantity,
                "unit_price": str(unit_price),
                "line_subtotal": str(line_subtotal),
                "product_name": product.name,
            }
        )
    return priced


def compute_total(line_items: list[dict]) -> Decimal:
    return money(sum((Decimal(li["line_subtotal"]) for li in line_items), Decimal("0")))


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


async def get_orders(db: AsyncSession, filters: OrderFilters) -> OrderPage:
    orders, count, page, limit = await OrderRepository(db).find_all(filters)
    return OrderPage(
        page=page,
        limit=limit,
        total=count,
        total_pages=math.ceil(count / limit),
        orders=[_build_response(o) for o in orders],
    )


async def get_orders_by_client(db: AsyncSession, client_id: int) -> list[OrderResponse]:
    orders = await OrderRepository(db).find_by_client_id(client_id)
    return [_build_response(o) for o in orders]


async def get_order(db: AsyncSession, order_id: int) -> OrderDetailResponse:
    order = await _get_or_404(OrderRepository(db), order_id)

    events, _, _, _ = await AuditRepository(db).find_all(
        AuditFilters(order_id=order_id, limit=HISTORY_LIMIT)
    )
    history = [
        OrderHistoryEntry(
            id=e.id,
            description=e.description
            or (f"Status change {e.from_status} → {e.to_status}" if e.from_status else None),
            from_status=e.from_status,
            to_status=e.to_status,
            at=e.created_at,
        )
        for e in events
    ]
    if not history:
        history = [
            OrderHistoryEntry(
                id=None,
                description="order created",
                from_status=None,
                to_status=order.status.value,
                at=order.created_at,
            )
        ]
    return OrderDetailResponse(order=_build_response(order), history=history)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def create_order(db: AsyncSession, order_data: OrderCreate) -> OrderResponse:
    client_id = order_data.client_id
    table_id = order_data.table_id

    # 1. Shape checks
    if client_id is None and table_id is None:
        raise ValidationError("client_id or table_id is required")
    if not order_data.items:
        raise ValidationError("items must contain at least one element")

    # 2. Referenced entities
    if client_id is not None and await UserRepository(db).find_by_id(client_id) is None:
        raise NotFoundError(f"Client {client_id} not found")
    if table_id is not None:
        await _ensure_table(db, table_id)

    # 3. Authoritative pricing
    line_items = await price_line_items(db, order_data.items)
    total = compute_total(line_items)
    if order_data.total is not None and abs(order_data.total - total) > TOTAL_TOLERANCE:
        raise ValidationError(f"Invalid total. Expected: {total}")

    # 4. Persist
    order = await OrderRepository(db).create(
        client_id=client_id,
        table_id=table_id,
        items=line_items,
        total=total,
        status=OrderStatus.PENDING,
        payment_status=PaymentStatus.UNPAID,
    )
    logger.info(
        "Order created",
        extra={
            "order_id": order.id,
            "client_id": client_id,
            "table_id": table_id,
            "total": str(total),
            "item_count": len(line_items),
        },
    )
    response = _build_response(order)

    await audit_service.record_event(
        db,
        order.id,
        from_status=None,
        to_status=OrderStatus.PENDING.value,
        description="order created",
    )
    return response


async def update_order_status(db: AsyncSession, order_id: int, requested_status: str) -> OrderResponse:
    requested = canonical_status(requested_status)
    repo = OrderRepository(db)
    order = await _get_or_404(repo, order_id)
    current = order.status

    if current == requested:
        return _build_response(order)

    try:
        check_transition(current, requested)
    except InvalidTransitionError:
        ORDER_TRANSITIONS_REJECTED.labels("not_allowed").inc()
        raise

    # Compare-and-set: a concurrent writer may have moved the order since it was read.
    if not await repo.transition_status(order_id, expected=current, new=requested):
        fresh = await _get_or_404(repo, order_id)
        if fresh.status == requested:
            return _build_response(fresh)
        ORDER_TRANSITIONS_REJECTED.labels("concurrent_update").inc()
        logger.warning(
            "Status changed concurrently, transition rejected",
            extra={
                "order_id": order_id,
                "expected": current.value,
                "found": fresh.status.value,
                "requested": requested.value,
            },
        )
        raise InvalidTransitionError(fresh.status.value, requested.value)

    ORDER_TRANSITIONS.labels(current.value, requested.value).inc()
    logger.info(
        "Order status changed",
        extra={"order_id": order_id, "from_status": current.value, "to_status": requested.value},
    )

    response = _build_response(await _get_or_404(repo, order_id))
    await audit_service.record_event(
        db,
        order_id,
        from_status=current.value,
        to_status=requested.value,
        description=f"Status change {current.value} → {requested.value}",
    )
    return response


async def update_order_table(db: AsyncSession, order_id: int, table_id: int | None) -> OrderResponse:
    if table_id is None:
        raise ValidationError("table_id is required")
    await _ensure_table(db, table_id)

    updated = await OrderRepository(db).update(order_id, {"table_id": table_id})
    if updated is None:
        raise NotFoundError(f"Order {order_id} not found")

    logger.info("Order moved to table", extra={"order_id": order_id, "table_id": table_id})
    response = _build_response(updated)
    await audit_service.record_event(db, order_id, description=f"Table changed to {table_id}")
    return response


async def update_order_payment(
    db: AsyncSession, order_id: int, payment_status: str | None
) -> OrderResponse:
    """Manual staff correction of the payment flag. Payment records are left untouched."""
    new = canonical_payment_status(payment_status)
    repo = OrderRepository(db)
    order = await _get_or_404(repo, order_id)
    previous = order.payment_status

    if not await repo.set_payment_status(order_id, new):
        return _build_response(await _get_or_404(repo, order_id))

    logger.info(
        "Order payment status set manually",
        extra={"order_id": order_id, "from": previous.value, "to": new.value},
    )
    response = _build_response(await _get_or_404(repo, order_id))
    await audit_service.record_event(
        db, order_id, description=f"Payment status {previous.value} → {new.value} (manual)"
    )
    return response


async def delete_order(db: AsyncSession, order_id: int) -> None:
    if not await OrderRepository(db).delete(order_id):
        raise NotFoundError(f"Order {order_id} not found")
    logger.info("Order deleted", extra={"order_id": order_id})

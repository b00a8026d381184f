import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from restaurant_api.database import get_db
from restaurant_api.repositories.order_repository import OrderFilters
from restaurant_api.schemas.order import (
    OrderCreate,
    OrderDetailResponse,
    OrderPage,
    OrderPaymentUpdate,
    OrderResponse,
    OrderStatusUpdate,
    OrderTableUpdate,
)
from restaurant_api.services import order_service
from restaurant_api.services.order_status import canonical_status

router = APIRouter()
logger = logging.getLogger(__name__)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


@router.post("", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def place_order(
    body: OrderCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    logger.info(
        "Received place_order request",
        extra={
            "request_id": _request_id(request),
            "client_id": body.client_id,
            "table_id": body.table_id,
        },
    )
    return await order_service.create_order(db, body)


@router.get("", response_model=OrderPage)
async def list_orders(
    status_filter: str | None = Query(None, alias="status"),
    table_id: int | None = None,
    client_id: int | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    page: int = 1,
    limit: int = 20,
    db: AsyncSession = Depends(get_db),
) -> OrderPage:
    filters = OrderFilters(
        status=canonical_status(status_filter) if status_filter else None,
        table_id=table_id,
        client_id=client_id,
        date_from=date_from,
        date_to=date_to,
        page=page,
        limit=limit,
    )
    return await order_service.get_orders(db, filters)


@router.get("/client/{client_id}", response_model=list[OrderResponse])
async def list_client_orders(
    client_id: int,
    db: AsyncSession = Depends(get_db),
) -> list[OrderResponse]:
    return await order_service.get_orders_by_client(db, client_id)


@router.get("/{order_id}", response_model=OrderDetailResponse)
async def get_order(
    order_id: int,
    db: AsyncSession = Depends(get_db),
) -> OrderDetailResponse:
    return await order_service.get_order(db, order_id)


@router.patch("/{order_id}/status", response_model=OrderResponse)
async def update_status(
    order_id: int,
    body: OrderStatusUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    logger.info(
        "Received status update request",
        extra={"request_id": _request_id(request), "order_id": order_id, "status": body.status},
    )
    return await order_service.update_order_status(db, order_id, body.status)


@router.patch("/{order_id}/table", response_model=OrderResponse)
async def update_table(
    order_id: int,
    body: OrderTableUpdate,
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    return await order_service.update_order_table(db, order_id, body.table_id)


@router.patch("/{order_id}/payment", response_model=OrderResponse)
async def update_payment(
    order_id: int,
    body: OrderPaymentUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    logger.info(
        "Received manual payment update",
        extra={
            "request_id": _request_id(request),
            "order_id": order_id,
            "payment_status": body.payment_status,
        },
    )
    return await order_service.update_order_payment(db, order_id, body.payment_status)


@router.delete("/{order_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_order(
    order_id: int,
    db: AsyncSession = Depends(get_db),
) -> Response:
    await order_service.delete_order(db, order_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)

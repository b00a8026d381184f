from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel

from restaurant_api.models.order import OrderStatus, PaymentStatus


class LineItemCreate(BaseModel):
    product_id: int | None = None
    quantity: int | None = None

    # Client-supplied prices, names and subtotals are dropped here.
    model_config = {"extra": "ignore"}


class OrderCreate(BaseModel):
    client_id: int | None = None
    table_id: int | None = None
    items: list[LineItemCreate] = []
    total: Decimal | None = None


class OrderStatusUpdate(BaseModel):
    status: str | None = None


class OrderTableUpdate(BaseModel):
    table_id: int | None = None


class OrderPaymentUpdate(BaseModel):
    payment_status: str | None = None


class LineItemResponse(BaseModel):
    product_id: int
    quantity: int
    unit_price: Decimal
    line_subtotal: Decimal
    product_name: str | None = None


class OrderResponse(BaseModel):
    id: int
    client_id: int | None
    table_id: int | None
    status: OrderStatus
    payment_status: PaymentStatus
    items: list[LineItemResponse]
    total: Decimal
    created_at: datetime

    model_config = {"from_attributes": True}


class OrderHistoryEntry(BaseModel):
    id: int | None
    description: str | None
    from_status: str | None
    to_status: str | None
    at: datetime | None


class OrderDetailResponse(BaseModel):
    order: OrderResponse
    history: list[OrderHistoryEntry]


class OrderPage(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int
    orders: list[OrderResponse]

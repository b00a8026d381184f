# Import all models here so SQLAlchemy registers them with Base.metadata
from restaurant_api.models.audit import AuditEvent
from restaurant_api.models.catalog import Category, DiningTable, Product, User
from restaurant_api.models.order import Order, OrderStatus, PaymentStatus
from restaurant_api.models.payment import PaymentRecord

__all__ = [
    "AuditEvent",
    "Category",
    "DiningTable",
    "Order",
    "OrderStatus",
    "PaymentRecord",
    "PaymentStatus",
    "Product",
    "User",
]

"""
Order status vocabulary and transition rules.

Clients send status names in English or Spanish, with or without accents,
in any case and with stray whitespace. ``canonical_status`` folds all of them
onto an ``OrderStatus`` through a single explicit synonym table.
"""

import re
import unicodedata

from restaurant_api.errors import InvalidTransitionError, ValidationError
from restaurant_api.models.order import OrderStatus, PaymentStatus

_STATUS_SYNONYMS: dict[str, OrderStatus] = {
    # pending
    "pending": OrderStatus.PENDING,
    "pendiente": OrderStatus.PENDING,
    # preparing
    "preparing": OrderStatus.PREPARING,
    "in preparation": OrderStatus.PREPARING,
    "preparando": OrderStatus.PREPARING,
    "preparacion": OrderStatus.PREPARING,
    "en preparacion": OrderStatus.PREPARING,
    # ready
    "ready": OrderStatus.READY,
    "listo": OrderStatus.READY,
    "lista": OrderStatus.READY,
    # delivered
    "delivered": OrderStatus.DELIVERED,
    "entregado": OrderStatus.DELIVERED,
    "entregada": OrderStatus.DELIVERED,
    # cancelled
    "cancelled": OrderStatus.CANCELLED,
    "canceled": OrderStatus.CANCELLED,
    "cancelado": OrderStatus.CANCELLED,
    "cancelada": OrderStatus.CANCELLED,
}

_PAYMENT_SYNONYMS: dict[str, PaymentStatus] = {
    "paid": PaymentStatus.PAID,
    "pagado": PaymentStatus.PAID,
    "unpaid": PaymentStatus.UNPAID,
    "no pagado": PaymentStatus.UNPAID,
}

ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELLED}),
    OrderStatus.PREPARING: frozenset({OrderStatus.READY, OrderStatus.CANCELLED}),
    OrderStatus.READY: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if not targets)

_SEPARATORS = re.compile(r"[\s_\-]+")


def normalize_token(raw: object) -> str:
    """Lower-case, strip diacritics and collapse separators to single spaces."""
    text = unicodedata.normalize("NFD", str(raw).lower())
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    return _SEPARATORS.sub(" ", text).strip()


def canonical_status(raw: object) -> OrderStatus:
    if raw is None or not str(raw).strip():
        raise ValidationError("status is required")
    token = normalize_token(raw)
    try:
        return _STATUS_SYNONYMS[token]
    except KeyError:
        raise ValidationError(f"Unknown order status: {raw}") from None


def canonical_payment_status(raw: object) -> PaymentStatus:
    if raw is None or not str(raw).strip():
        raise ValidationError("payment_status is required")
    token = normalize_token(raw)
    try:
        return _PAYMENT_SYNONYMS[token]
    except KeyError:
        raise ValidationError(f"Invalid payment status: {raw}") from None


def is_allowed(current: OrderStatus, requested: OrderStatus) -> bool:
    return requested in ALLOWED_TRANSITIONS.get(current, frozenset())


def check_transition(current: OrderStatus, requested: OrderStatus) -> None:
    if not is_allowed(current, requested):
        raise InvalidTransitionError(current.value, requested.value)

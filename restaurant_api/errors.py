"""
Error taxonomy for the ordering backend.

Every domain error carries a machine-readable ``kind`` and the HTTP status it
maps to; ``main.py`` renders them as ``{"error": kind, "message": str(exc)}``.
"""


class OrderingError(Exception):
    """Base class for errors surfaced to API callers."""

    kind = "error"
    status_code = 400


class ValidationError(OrderingError):
    """Malformed or missing input; the caller can fix it."""

    kind = "validation_error"
    status_code = 400


class NotFoundError(OrderingError):
    """A referenced entity does not exist."""

    kind = "not_found"
    status_code = 404


class InvalidTransitionError(OrderingError):
    """Requested status change is not allowed from the current status."""

    kind = "invalid_transition"
    status_code = 400

    def __init__(self, current: str, requested: str) -> None:
        self.current = current
        self.requested = requested
        super().__init__(f"Invalid transition from {current} to {requested}")


class InvalidStateError(OrderingError):
    """Order is not in a state that allows the requested operation."""

    kind = "invalid_state"
    status_code = 409


class InvalidSignatureError(OrderingError):
    kind = "invalid_signature"
    status_code = 400


class InvalidPayloadError(OrderingError):
    kind = "invalid_payload"
    status_code = 400


class UpstreamUnavailableError(OrderingError):
    """A dependency timed out or is down. Safe to retry."""

    kind = "upstream_unavailable"
    status_code = 503


class InternalError(OrderingError):
    kind = "internal_error"
    status_code = 500

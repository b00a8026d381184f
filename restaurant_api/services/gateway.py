"""
Payment gateway adapter (Wompi-style payment links).

  - Blocking HTTP calls run in a worker thread with a bounded timeout
  - Custom circuit breaker: fail fast when the gateway is consistently down
  - No private key configured: returns a simulated link so local flows keep working
  - Webhook signatures: HMAC-SHA256 of the raw body, hex encoded
"""

import asyncio
import hashlib
import hmac
import logging
import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

import requests

from restaurant_api.config import settings
from restaurant_api.errors import UpstreamUnavailableError
from restaurant_api.metrics import CIRCUIT_STATE

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


_STATE_GAUGE_VALUES = {
    CircuitState.CLOSED: 0,
    CircuitState.HALF_OPEN: 1,
    CircuitState.OPEN: 2,
}


@dataclass
class CircuitBreaker:
    failure_threshold: int
    recovery_timeout: float

    _failures: int = field(default=0, init=False, repr=False)
    _last_failure_time: float | None = field(default=None, init=False, repr=False)
    _state: CircuitState = field(default=CircuitState.CLOSED, init=False, repr=False)
    _trial_in_flight: bool = field(default=False, init=False, repr=False)

    @property
    def state(self) -> CircuitState:
        if (
            self._state == CircuitState.OPEN
            and self._last_failure_time is not None
            and time.monotonic() - self._last_failure_time >= self.recovery_timeout
        ):
            self._state = CircuitState.HALF_OPEN
            CIRCUIT_STATE.set(_STATE_GAUGE_VALUES[CircuitState.HALF_OPEN])
            logger.info("Circuit breaker transitioned to HALF_OPEN")
        return self._state

    def allow_request(self) -> bool:
        """While HALF_OPEN only one trial call goes through until it reports back."""
        state = self.state
        if state == CircuitState.CLOSED:
            return True
        if state == CircuitState.HALF_OPEN and not self._trial_in_flight:
            self._trial_in_flight = True
            return True
        return False

    def record_success(self) -> None:
        self._failures = 0
        self._trial_in_flight = False
        self._state = CircuitState.CLOSED
        CIRCUIT_STATE.set(_STATE_GAUGE_VALUES[CircuitState.CLOSED])

    def record_failure(self) -> None:
        self._trial_in_flight = False
        self._failures += 1
        self._last_failure_time = time.monotonic()
        if self._failures >= self.failure_threshold and self._state != CircuitState.OPEN:
            self._state = CircuitState.OPEN
            CIRCUIT_STATE.set(_STATE_GAUGE_VALUES[CircuitState.OPEN])
            logger.warning(
                "Circuit breaker OPENED after %d consecutive failures",
                self._failures,
            )


def is_outage(exc: Exception) -> bool:
    """Timeouts, connection errors and 5xx count against the breaker; 4xx and bad bodies do not."""
    if isinstance(exc, (requests.Timeout, requests.ConnectionError)):
        return True
    if isinstance(exc, requests.HTTPError):
        response = exc.response
        return response is None or response.status_code >= 500
    return False


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------


@dataclass
class PaymentLink:
    reference: str
    checkout_url: str
    amount: Decimal
    currency: str
    raw: dict[str, Any] = field(default_factory=dict)


def payment_reference(order_id: int) -> str:
    """Free-text reference sent to the gateway; the webhook parses the order id back out of it."""
    return f"order_{order_id}"


# ---------------------------------------------------------------------------
# Gateway client
# ---------------------------------------------------------------------------


class PaymentGateway:
    def __init__(
        self,
        base_url: str,
        checkout_base_url: str,
        private_key: str,
        timeout: float,
        redirect_url: str | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.checkout_base_url = checkout_base_url.rstrip("/")
        self.private_key = private_key
        self.timeout = timeout
        self.redirect_url = redirect_url
        self.breaker = breaker or CircuitBreaker(
            failure_threshold=settings.circuit_breaker_failure_threshold,
            recovery_timeout=settings.circuit_breaker_recovery_timeout,
        )

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        resp = requests.post(
            f"{self.base_url}{path}",
            json=payload,
            headers={"Authorization": f"Bearer {self.private_key}"},
            timeout=self.timeout,
        )
        resp.raise_for_status()
        return resp.json()

    async def create_payment_link(self, order_id: int, amount: Decimal, currency: str) -> PaymentLink:
        if not self.private_key:
            link_id = f"LINK-{uuid.uuid4().hex[:12]}"
            logger.info(
                "No gateway key configured, returning simulated payment link",
                extra={"order_id": order_id, "gateway_reference": link_id},
            )
            return PaymentLink(
                reference=link_id,
                checkout_url=f"{self.checkout_base_url}/{link_id}",
                amount=amount,
                currency=currency,
                raw={"simulated": True},
            )

        if not self.breaker.allow_request():
            logger.warning(
                "Circuit breaker OPEN, rejecting payment link without calling gateway",
                extra={"order_id": order_id},
            )
            raise UpstreamUnavailableError("Payment gateway unavailable, try again later")

        payload = {
            "name": f"Order #{order_id}",
            "description": f"Restaurant order {order_id}",
            "amount_in_cents": int((amount * 100).to_integral_value()),
            "currency": currency,
            "single_use": True,
            "collect_shipping": False,
            "reference": payment_reference(order_id),
            "metadata": {"order_id": order_id},
        }
        if self.redirect_url:
            payload["redirect_url"] = f"{self.redirect_url}?id={order_id}"

        try:
            body = await asyncio.to_thread(self._post, "/payment_links", payload)
        except (requests.RequestException, ValueError) as exc:
            if is_outage(exc):
                self.breaker.record_failure()
            else:
                # the gateway answered, so it is reachable
                self.breaker.record_success()
            logger.error(
                "Payment link creation failed",
                extra={"order_id": order_id, "error": str(exc)},
            )
            raise UpstreamUnavailableError("Payment gateway unavailable, try again later") from exc

        data = body.get("data") if isinstance(body, dict) else None
        link_id = data.get("id") if isinstance(data, dict) else None
        if not link_id:
            self.breaker.record_success()
            logger.error(
                "Gateway response carried no payment link id",
                extra={"order_id": order_id},
            )
            raise UpstreamUnavailableError("Payment gateway returned an unusable response")

        self.breaker.record_success()
        logger.info(
            "Payment link created",
            extra={"order_id": order_id, "gateway_reference": link_id},
        )
        return PaymentLink(
            reference=str(link_id),
            checkout_url=f"{self.checkout_base_url}/{link_id}",
            amount=amount,
            currency=currency,
            raw=body,
        )


def verify_signature(raw_body: bytes, signature_header: str | None, secret: str) -> bool:
    expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
    incoming = (signature_header or "").strip().lower()
    return hmac.compare_digest(expected.encode(), incoming.encode())


_gateway = PaymentGateway(
    base_url=settings.gateway_base_url,
    checkout_base_url=settings.gateway_checkout_base_url,
    private_key=settings.gateway_private_key,
    timeout=settings.gateway_timeout,
    redirect_url=settings.payment_redirect_url,
)


def get_gateway() -> PaymentGateway:
    return _gateway

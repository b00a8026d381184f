import asyncio
import logging
from collections.abc import Awaitable
from typing import TypeVar

from sqlalchemy.exc import InterfaceError, OperationalError

from restaurant_api.config import settings
from restaurant_api.errors import UpstreamUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 20


def clamp_page(page: int | None, limit: int | None) -> tuple[int, int]:
    p = max(page or 1, 1)
    size = min(max(limit or DEFAULT_PAGE_SIZE, 1), MAX_PAGE_SIZE)
    return p, size


async def bounded(awaitable: Awaitable[T], source: str) -> T:
    """Await a lookup against an external store with the configured timeout."""
    try:
        return await asyncio.wait_for(awaitable, timeout=settings.upstream_timeout)
    except (asyncio.TimeoutError, OperationalError, InterfaceError) as exc:
        logger.warning(
            "Upstream lookup failed",
            extra={"source": source, "error": str(exc) or type(exc).__name__},
        )
        raise UpstreamUnavailableError(f"{source} is unavailable, try again later") from exc

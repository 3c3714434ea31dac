from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional, TypeVar

from otpgate.logging import get_logger
from otpgate.service.errors import ServiceUnavailableError
from otpgate.storage.errors import StorageUnavailable

logger = get_logger(__name__)

T = TypeVar("T")


async def call_store(
    func: Callable[..., T],
    *args: Any,
    timeout: float,
    operation: Optional[str] = None,
    **kwargs: Any,
) -> T:
    """Run a blocking store call in a worker thread with an upper time bound.

    Timeouts and backend outages surface as :class:`ServiceUnavailableError`
    so callers can retry; every other exception propagates unchanged.
    """
    op = operation or getattr(func, "__name__", "store_call")
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(func, *args, **kwargs), timeout=timeout
        )
    except asyncio.TimeoutError as exc:
        logger.error("store_call_timeout", operation=op, timeout_seconds=timeout)
        raise ServiceUnavailableError() from exc
    except StorageUnavailable as exc:
        logger.error("store_call_unavailable", operation=op, error=exc.message)
        raise ServiceUnavailableError() from exc

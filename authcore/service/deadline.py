from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional, TypeVar

from authcore.logging import get_logger
from authcore.service.errors import Unavailable
from authcore.storage.errors import StoreUnavailable

logger = get_logger(__name__)

T = TypeVar("T")


async def run_store_call(
    fn: Callable[..., T],
    *args: Any,
    timeout: Optional[float],
    operation: str,
    **kwargs: Any,
) -> T:
    """Run a blocking store call in a worker thread under a deadline.

    A timeout or backend failure raises :class:`Unavailable`. The call is never
    retried here: the mutation may or may not have been applied, and only the
    caller can re-read state and decide.
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), timeout)
    except asyncio.TimeoutError as exc:
        logger.warning("store_call_timeout", operation=operation, timeout=timeout)
        raise Unavailable(
            "store did not answer before the deadline", detail={"operation": operation}
        ) from exc
    except StoreUnavailable as exc:
        logger.warning("store_unavailable", operation=operation, error=exc.message)
        raise Unavailable("store unavailable", detail={"operation": operation}) from exc

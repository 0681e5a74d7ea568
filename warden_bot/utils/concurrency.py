from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog

from ..errors import PlatformApiError

T = TypeVar("T")

logger = structlog.get_logger(__name__)


async def call_platform(
    action: str,
    factory: Callable[[], Awaitable[T]],
    *,
    timeout: float,
    **context: Any,
) -> tuple[bool, Optional[T]]:
    """Run one platform call under a timeout.

    Failures are logged and reported as ``(False, None)``; they never propagate
    to the caller. Cancellation is not swallowed.
    """
    try:
        result = await asyncio.wait_for(factory(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("platform_call_timeout", action=action, timeout=timeout, **context)
        return False, None
    except Exception as exc:  # pylint: disable=broad-except
        error = exc if isinstance(exc, PlatformApiError) else PlatformApiError(str(exc))
        logger.error(
            "platform_call_failed",
            action=action,
            error=str(error),
            error_type=type(exc).__name__,
            **context,
        )
        return False, None
    return True, result

"""
Timeout combinator shared by every network-bound operation.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .errors import TimedOut

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_timeout(
    operation: Awaitable[T],
    duration: Optional[float],
    on_timeout: Optional[Callable[[], Any]] = None,
    label: str = "operation"
) -> T:
    """
    Await an operation within a time budget.

    On expiry the operation is cancelled, on_timeout (sync or async) runs
    as best-effort rollback, and TimedOut is raised. Errors raised by the
    operation itself propagate unchanged.

    Args:
        operation: Awaitable to run
        duration: Budget in seconds (None waits forever)
        on_timeout: Cleanup to run when the budget expires
        label: Name used in the error message

    Returns:
        The operation's result
    """
    if duration is None:
        return await operation

    try:
        return await asyncio.wait_for(operation, timeout=duration)
    except TimedOut:
        raise
    except asyncio.TimeoutError:
        if on_timeout is not None:
            try:
                cleanup = on_timeout()
                if inspect.isawaitable(cleanup):
                    await cleanup
            except Exception as e:
                logger.warning(f"Rollback after {label} timeout failed: {e}")
        raise TimedOut(f"{label} took too long, it timed out after {duration}s") from None

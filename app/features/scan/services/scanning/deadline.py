"""
Deadlines for page operations that have no timeout of their own.

`with_deadline` races an awaitable against a timer and turns an overrun into
OperationTimeoutError; `with_fallback` returns a default value instead of
raising. The losing awaitable is cancelled in both cases.
"""
import asyncio
from typing import Awaitable, Optional, TypeVar

from app.platform.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class OperationTimeoutError(Exception):
    def __init__(self, label: str, seconds: float):
        super().__init__(f"{label} timed out after {seconds:g}s")
        self.label = label
        self.seconds = seconds


async def with_deadline(operation: Awaitable[T], seconds: Optional[float], label: str = "operation") -> T:
    if seconds is None:
        return await operation
    try:
        return await asyncio.wait_for(operation, timeout=seconds)
    except asyncio.TimeoutError:
        raise OperationTimeoutError(label, seconds) from None


async def with_fallback(
    operation: Awaitable[T],
    seconds: Optional[float],
    fallback: T,
    label: str = "operation",
) -> T:
    """Like with_deadline, but any failure or overrun yields `fallback`."""
    try:
        return await with_deadline(operation, seconds, label)
    except OperationTimeoutError as e:
        logger.warning(f"{e}; using fallback")
        return fallback
    except Exception as e:
        logger.warning(f"{label} failed: {e}; using fallback")
        return fallback

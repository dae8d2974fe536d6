"""Connection-level retry for storage operations.

Only connection-class failures (dropped or reset connections) are retried;
constraint violations and programming errors propagate immediately.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog
from sqlalchemy.exc import DBAPIError, InterfaceError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from studiosync.core.errors import StorageError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

CONNECTION_ERROR_MARKERS = (
    "connection reset",
    "connection closed",
    "connection terminated",
    "connection refused",
    "connection was closed",
    "server closed the connection",
    "connection is closed",
)


def is_connection_error(exc: BaseException) -> bool:
    """True when ``exc`` means the database connection itself failed."""
    if isinstance(exc, (ConnectionError, InterfaceError)):
        return True
    if isinstance(exc, DBAPIError):
        if exc.connection_invalidated:
            return True
        text = str(exc.orig or exc).lower()
        return any(marker in text for marker in CONNECTION_ERROR_MARKERS)
    return False


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "storage_retry",
        attempt=retry_state.attempt_number,
        error=str(exc),
    )


async def run_with_storage_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    wait_base: float = 1.0,
) -> T:
    """Run ``operation`` retrying connection failures with exponential backoff.

    Waits ``wait_base``, then ``2 * wait_base`` seconds between attempts.

    Raises:
        StorageError: If every attempt failed with a connection error
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=wait_base),
        retry=retry_if_exception(is_connection_error),
        before_sleep=_log_retry,
    )
    try:
        async for attempt in retrying:
            with attempt:
                return await operation()
    except RetryError as exc:
        last = exc.last_attempt.exception()
        raise StorageError(f"Database unavailable after {attempts} attempts: {last}") from last

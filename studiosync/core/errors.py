"""Typed error hierarchy for the import pipeline.

Every error raised by the pipeline carries an ``ErrorKind`` set at the point
of failure. The worker uses the kind (never the message text) to pick the
hint appended to the persisted job error.
"""

from __future__ import annotations

import asyncio
from enum import Enum

import httpx
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError


class ErrorKind(str, Enum):
    """Failure cause discriminant."""

    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    AUTH = "auth"
    STORAGE = "storage"
    SERVER = "server"
    CLIENT = "client"
    MEMORY = "memory"
    UNKNOWN = "unknown"


class StudioSyncError(Exception):
    """Base class for all StudioSync errors."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str, *, kind: ErrorKind | None = None):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind


# ============================================================================
# Source API errors
# ============================================================================


class SourceAPIError(StudioSyncError):
    """Non-2xx response (or transport failure) from the source API."""

    kind = ErrorKind.CLIENT

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        body: str | None = None,
        kind: ErrorKind | None = None,
    ):
        super().__init__(message, kind=kind)
        self.status = status
        self.body = body


class SourceTimeoutError(SourceAPIError):
    """Request exceeded the hard timeout."""

    kind = ErrorKind.TIMEOUT


class SourceRateLimitError(SourceAPIError):
    """HTTP 429 from the source API. Never retried automatically."""

    kind = ErrorKind.RATE_LIMIT


class SourceAuthError(SourceAPIError):
    """HTTP 401/403 that survived the token refresh retry."""

    kind = ErrorKind.AUTH


class SourceServerError(SourceAPIError):
    """HTTP 5xx after all retries were exhausted."""

    kind = ErrorKind.SERVER


# ============================================================================
# Storage errors
# ============================================================================


class StorageError(StudioSyncError):
    """Job store operation failed after connection retries."""

    kind = ErrorKind.STORAGE


# ============================================================================
# Control errors
# ============================================================================


class JobNotFoundError(StudioSyncError):
    kind = ErrorKind.CLIENT

    def __init__(self, job_id: str):
        super().__init__(f"Import job {job_id} not found")
        self.job_id = job_id


class InvalidTransitionError(StudioSyncError):
    """Requested control action is not valid from the job's current status."""

    kind = ErrorKind.CLIENT

    def __init__(self, job_id: str, action: str, current_status: str, allowed: tuple[str, ...]):
        super().__init__(
            f"Cannot {action} import {job_id}: status is '{current_status}' "
            f"(expected one of: {', '.join(allowed)})"
        )
        self.job_id = job_id
        self.action = action
        self.current_status = current_status
        self.allowed = allowed


class ActiveImportExistsError(StudioSyncError):
    """A pending or running import already exists for the organization."""

    kind = ErrorKind.CLIENT

    def __init__(self, job_id: str, status: str):
        super().__init__(
            f"An import is already {status} for this organization (job {job_id})"
        )
        self.job_id = job_id
        self.status = status


class InvalidImportConfigError(StudioSyncError):
    kind = ErrorKind.CLIENT


# ============================================================================
# Failure description
# ============================================================================

DATA_TYPE_DISPLAY_NAMES = {
    "clients": "Students",
    "classes": "Classes",
    "visits": "Visits",
    "sales": "Sales",
}

FAILURE_HINTS = {
    ErrorKind.TIMEOUT: "Network timeout - this is common for large imports. Resume to continue.",
    ErrorKind.RATE_LIMIT: "API rate limit reached. Wait a few minutes, then resume.",
    ErrorKind.AUTH: "Authentication/permission issue. Check your studio API connection.",
    ErrorKind.MEMORY: "Out of memory. Try importing smaller date ranges.",
    ErrorKind.STORAGE: "Database connection lost. Resume to continue.",
    ErrorKind.SERVER: "Source API is unavailable. Resume to continue.",
}


def classify_error(exc: BaseException) -> ErrorKind:
    """Return the failure kind for any exception.

    Typed pipeline errors carry their own kind; well-known third-party
    errors are mapped by type.
    """
    if isinstance(exc, StudioSyncError):
        return exc.kind
    if isinstance(exc, MemoryError):
        return ErrorKind.MEMORY
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, (OperationalError, InterfaceError)):
        return ErrorKind.STORAGE
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return ErrorKind.STORAGE
    return ErrorKind.UNKNOWN


def describe_failure(exc: BaseException, data_type: str | None) -> str:
    """Build the human-readable error persisted on a failed job."""
    display = DATA_TYPE_DISPLAY_NAMES.get(data_type or "", data_type or "data")
    message = str(exc) or type(exc).__name__
    text = f"Failed while importing {display}: {message}"

    hint = FAILURE_HINTS.get(classify_error(exc))
    if hint:
        text += f" ({hint})"
    return text

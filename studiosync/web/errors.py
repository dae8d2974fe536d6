"""Map pipeline errors to JSON responses."""

from __future__ import annotations

from fastapi.responses import JSONResponse

from studiosync.core.errors import (
    ActiveImportExistsError,
    InvalidImportConfigError,
    InvalidTransitionError,
    JobNotFoundError,
    StorageError,
    StudioSyncError,
)

STATUS_BY_ERROR: tuple[tuple[type[StudioSyncError], int], ...] = (
    (JobNotFoundError, 404),
    (InvalidTransitionError, 409),
    (ActiveImportExistsError, 409),
    (InvalidImportConfigError, 400),
    (StorageError, 503),
)


def error_response(exc: StudioSyncError) -> JSONResponse:
    status_code = 500
    for error_type, code in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            status_code = code
            break

    content = {"error": exc.message}
    if isinstance(exc, ActiveImportExistsError):
        content["activeJobId"] = exc.job_id
    if isinstance(exc, InvalidTransitionError):
        content["status"] = exc.current_status
    return JSONResponse(status_code=status_code, content=content)

"""Import job routes.

Routes:
- GET  /api/imports/active           - Organization's pending/running/paused job
- POST /api/imports/start            - Create and dispatch a new import
- GET  /api/imports/{id}/status      - Poll job status (never cached)
- POST /api/imports/{id}/resume      - Resume a paused or failed job
- POST /api/imports/{id}/pause       - Pause at the next page boundary
- POST /api/imports/force-cancel     - Cancel every active job of the organization
- GET  /api/imports/skipped-records  - Source records rejected during imports
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from studiosync.core.errors import StudioSyncError
from studiosync.jobs.control import ImportController
from studiosync.jobs.store import JobStore
from studiosync.web.dependencies import get_controller, get_org_id, get_store
from studiosync.web.errors import error_response
from studiosync.web.models import StartImportRequest

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/imports", tags=["imports"])

# Pollers must always see the latest row
NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


# ============================================================================
# Job lifecycle
# ============================================================================


@router.get("/active")
async def get_active_import(
    org_id: str = Depends(get_org_id),
    controller: ImportController = Depends(get_controller),
):
    """Return the organization's active job, or null."""
    try:
        job = await controller.active(org_id)
    except StudioSyncError as exc:
        return error_response(exc)
    return JSONResponse(
        {"job": job.status_payload() if job else None},
        headers=NO_CACHE_HEADERS,
    )


@router.post("/start")
async def start_import(
    request: StartImportRequest,
    org_id: str = Depends(get_org_id),
    controller: ImportController = Depends(get_controller),
):
    """Create an import job and hand it to the worker."""
    try:
        job = await controller.start(
            org_id, request.data_types, request.start_date, request.end_date
        )
    except StudioSyncError as exc:
        logger.info("import_start_rejected", organization_id=org_id, error=exc.message)
        return error_response(exc)

    return JSONResponse({"jobId": job.id, "job": job.status_payload()}, status_code=201)


@router.get("/{job_id}/status")
async def get_import_status(
    job_id: str,
    controller: ImportController = Depends(get_controller),
):
    try:
        job = await controller.get(job_id)
    except StudioSyncError as exc:
        response = error_response(exc)
        response.headers.update(NO_CACHE_HEADERS)
        return response
    return JSONResponse(job.status_payload(), headers=NO_CACHE_HEADERS)


@router.post("/{job_id}/resume")
async def resume_import(
    job_id: str,
    controller: ImportController = Depends(get_controller),
):
    try:
        job = await controller.resume(job_id)
    except StudioSyncError as exc:
        return error_response(exc)
    return job.status_payload()


@router.post("/{job_id}/pause")
async def pause_import(
    job_id: str,
    controller: ImportController = Depends(get_controller),
):
    try:
        job = await controller.pause(job_id)
    except StudioSyncError as exc:
        return error_response(exc)
    return job.status_payload()


@router.post("/force-cancel")
async def force_cancel_imports(
    org_id: str = Depends(get_org_id),
    controller: ImportController = Depends(get_controller),
):
    """Cancel all pending, running and paused jobs of the organization."""
    try:
        cancelled = await controller.force_cancel_all(org_id)
    except StudioSyncError as exc:
        return error_response(exc)
    return {"cancelled": cancelled, "count": len(cancelled)}


# ============================================================================
# Diagnostics
# ============================================================================


@router.get("/skipped-records")
async def list_skipped_records(
    data_type: str | None = Query(default=None, alias="dataType"),
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    org_id: str = Depends(get_org_id),
    store: JobStore = Depends(get_store),
):
    """Skipped source records, newest first, with the total count."""
    try:
        records = await store.list_skipped(org_id, data_type, limit=limit, offset=offset)
        total = await store.count_skipped(org_id, data_type)
    except StudioSyncError as exc:
        return error_response(exc)

    return {
        "records": [
            {
                "id": record.id,
                "importJobId": record.import_job_id,
                "dataType": record.data_type,
                "sourceRecordId": record.source_record_id,
                "reason": record.reason,
                "rawPayload": record.raw_payload,
                "createdAt": record.created_at.isoformat() if record.created_at else None,
            }
            for record in records
        ],
        "total": total,
        "limit": limit,
        "offset": offset,
    }

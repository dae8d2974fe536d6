"""Scheduled import routes.

Routes:
- GET  /api/scheduled-imports          - Organization's schedule (defaults when unset)
- POST /api/scheduled-imports          - Create or update the schedule
- POST /api/scheduled-imports/run-now  - Trigger the schedule immediately
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from studiosync.core.errors import StudioSyncError
from studiosync.jobs.scheduler import ImportScheduler
from studiosync.web.dependencies import get_org_id, get_scheduler
from studiosync.web.errors import error_response
from studiosync.web.models import ScheduledImportRequest

router = APIRouter(prefix="/api/scheduled-imports", tags=["scheduled-imports"])


@router.get("")
async def get_scheduled_import(
    org_id: str = Depends(get_org_id),
    scheduler: ImportScheduler = Depends(get_scheduler),
):
    return await scheduler.get_schedule(org_id)


@router.post("")
async def save_scheduled_import(
    request: ScheduledImportRequest,
    org_id: str = Depends(get_org_id),
    scheduler: ImportScheduler = Depends(get_scheduler),
):
    try:
        return await scheduler.save_schedule(
            org_id,
            enabled=request.enabled,
            cron_expression=request.cron_expression,
            data_types=request.data_types,
            days_to_import=request.days_to_import,
        )
    except StudioSyncError as exc:
        return error_response(exc)


@router.post("/run-now")
async def run_scheduled_import_now(
    org_id: str = Depends(get_org_id),
    scheduler: ImportScheduler = Depends(get_scheduler),
):
    """Start the configured import right away, ignoring the cron timing."""
    try:
        job_id = await scheduler.run_now(org_id)
    except StudioSyncError as exc:
        return error_response(exc)
    return JSONResponse({"jobId": job_id}, status_code=201)

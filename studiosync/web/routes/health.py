"""Health check API routes.

Verifies database connectivity through the job store.
"""

from fastapi import APIRouter, Depends, status

from studiosync.jobs.store import JobStore
from studiosync.web.dependencies import get_store

router = APIRouter(prefix="/health", tags=["Health"])


@router.get("", status_code=status.HTTP_200_OK)
async def health_check(store: JobStore = Depends(get_store)):
    try:
        await store.ping()
        return {"status": "ok", "database": "connected"}
    except Exception as e:
        return {"status": "error", "database": "disconnected", "detail": str(e)}

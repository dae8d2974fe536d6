"""Tests for studiosync.web.routes.imports - Import job routes."""

from datetime import date, datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from studiosync.core.errors import (
    ActiveImportExistsError,
    InvalidImportConfigError,
    InvalidTransitionError,
    JobNotFoundError,
    StorageError,
)
from studiosync.jobs.progress import ImportProgress
from studiosync.jobs.types import ImportJob, JobStatus, SkippedRecord
from studiosync.web.dependencies import get_controller, get_org_id, get_store
from studiosync.web.routes import imports

JOB_ID = "6f1f6a4e-3c1b-4d7e-9a57-0d5b8f1c2e11"


@pytest.fixture
def mock_controller():
    return MagicMock()


@pytest.fixture
def mock_store():
    return MagicMock()


@pytest.fixture
def app(mock_controller, mock_store):
    """Create test FastAPI app with the imports router."""
    test_app = FastAPI()
    test_app.include_router(imports.router)
    test_app.dependency_overrides[get_controller] = lambda: mock_controller
    test_app.dependency_overrides[get_store] = lambda: mock_store
    test_app.dependency_overrides[get_org_id] = lambda: "test-org"
    return test_app


@pytest.fixture
def client(app):
    return TestClient(app)


def make_job(status=JobStatus.RUNNING, **fields) -> ImportJob:
    progress = ImportProgress()
    progress.for_type("clients").current = 200
    progress.for_type("clients").total = 350
    progress.api_call_count = 3
    return ImportJob(
        id=JOB_ID,
        organization_id="test-org",
        status=status,
        data_types=["clients", "sales"],
        start_date=date(2024, 3, 1),
        end_date=date(2024, 3, 7),
        progress=progress,
        current_data_type="clients",
        current_offset=200,
        updated_at=datetime(2024, 3, 8, 9, 30, tzinfo=timezone.utc),
        **fields,
    )


def assert_no_cache(response):
    assert response.headers["cache-control"] == "no-cache, no-store, must-revalidate"
    assert response.headers["pragma"] == "no-cache"
    assert response.headers["expires"] == "0"


class TestActiveImport:
    """Tests for GET /api/imports/active."""

    def test_returns_active_job(self, client, mock_controller):
        mock_controller.active = AsyncMock(return_value=make_job())

        response = client.get("/api/imports/active")

        assert response.status_code == 200
        job = response.json()["job"]
        assert job["id"] == JOB_ID
        assert job["status"] == "running"
        assert job["currentDataType"] == "clients"
        assert job["progress"]["clients"]["current"] == 200
        assert job["progress"]["apiCallCount"] == 3
        assert job["updatedAt"] == "2024-03-08T09:30:00+00:00"
        mock_controller.active.assert_awaited_once_with("test-org")
        assert_no_cache(response)

    def test_no_active_job(self, client, mock_controller):
        mock_controller.active = AsyncMock(return_value=None)

        response = client.get("/api/imports/active")

        assert response.status_code == 200
        assert response.json() == {"job": None}


class TestStartImport:
    """Tests for POST /api/imports/start."""

    def test_start_created(self, client, mock_controller):
        mock_controller.start = AsyncMock(return_value=make_job(JobStatus.PENDING))

        response = client.post(
            "/api/imports/start",
            json={"dataTypes": ["clients", "sales"], "startDate": "2024-03-01", "endDate": "2024-03-07"},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["jobId"] == JOB_ID
        assert body["job"]["status"] == "pending"
        mock_controller.start.assert_awaited_once_with(
            "test-org", ["clients", "sales"], date(2024, 3, 1), date(2024, 3, 7)
        )

    def test_active_import_conflict(self, client, mock_controller):
        mock_controller.start = AsyncMock(side_effect=ActiveImportExistsError(JOB_ID, "running"))

        response = client.post(
            "/api/imports/start",
            json={"dataTypes": ["clients"], "startDate": "2024-03-01", "endDate": "2024-03-07"},
        )

        assert response.status_code == 409
        assert response.json()["activeJobId"] == JOB_ID
        assert "already running" in response.json()["error"]

    def test_invalid_config(self, client, mock_controller):
        mock_controller.start = AsyncMock(
            side_effect=InvalidImportConfigError("At least one data type must be selected")
        )

        response = client.post(
            "/api/imports/start",
            json={"dataTypes": [], "startDate": "2024-03-01", "endDate": "2024-03-07"},
        )

        assert response.status_code == 400
        assert response.json() == {"error": "At least one data type must be selected"}

    def test_request_validation(self, client, mock_controller):
        mock_controller.start = AsyncMock()

        response = client.post("/api/imports/start", json={"dataTypes": ["clients"]})

        assert response.status_code == 422
        mock_controller.start.assert_not_called()


class TestImportStatus:
    """Tests for GET /api/imports/{id}/status."""

    def test_status(self, client, mock_controller):
        mock_controller.get = AsyncMock(
            return_value=make_job(JobStatus.FAILED, error="Failed while importing Sales: boom")
        )

        response = client.get(f"/api/imports/{JOB_ID}/status")

        assert response.status_code == 200
        assert response.json()["status"] == "failed"
        assert response.json()["error"] == "Failed while importing Sales: boom"
        assert_no_cache(response)

    def test_unknown_job(self, client, mock_controller):
        mock_controller.get = AsyncMock(side_effect=JobNotFoundError("missing"))

        response = client.get("/api/imports/missing/status")

        assert response.status_code == 404
        assert response.json() == {"error": "Import job missing not found"}
        assert_no_cache(response)

    def test_storage_unavailable(self, client, mock_controller):
        mock_controller.get = AsyncMock(side_effect=StorageError("database unreachable"))

        response = client.get(f"/api/imports/{JOB_ID}/status")

        assert response.status_code == 503


class TestPauseResume:
    """Tests for POST /api/imports/{id}/pause and /resume."""

    def test_pause(self, client, mock_controller):
        mock_controller.pause = AsyncMock(
            return_value=make_job(
                JobStatus.PAUSED,
                error="Paused by user",
                paused_at=datetime(2024, 3, 8, 10, 0, tzinfo=timezone.utc),
            )
        )

        response = client.post(f"/api/imports/{JOB_ID}/pause")

        assert response.status_code == 200
        assert response.json()["status"] == "paused"
        assert response.json()["pausedAt"] == "2024-03-08T10:00:00+00:00"
        mock_controller.pause.assert_awaited_once_with(JOB_ID)

    def test_resume(self, client, mock_controller):
        mock_controller.resume = AsyncMock(return_value=make_job(JobStatus.PENDING))

        response = client.post(f"/api/imports/{JOB_ID}/resume")

        assert response.status_code == 200
        assert response.json()["status"] == "pending"
        assert response.json()["error"] is None

    def test_invalid_transition(self, client, mock_controller):
        mock_controller.resume = AsyncMock(
            side_effect=InvalidTransitionError(JOB_ID, "resume", "completed", ("paused", "failed"))
        )

        response = client.post(f"/api/imports/{JOB_ID}/resume")

        assert response.status_code == 409
        assert response.json()["status"] == "completed"
        assert response.json()["error"].startswith("Cannot resume import")


class TestForceCancel:
    """Tests for POST /api/imports/force-cancel."""

    def test_force_cancel(self, client, mock_controller):
        mock_controller.force_cancel_all = AsyncMock(return_value=[JOB_ID, "other-job"])

        response = client.post("/api/imports/force-cancel")

        assert response.status_code == 200
        assert response.json() == {"cancelled": [JOB_ID, "other-job"], "count": 2}
        mock_controller.force_cancel_all.assert_awaited_once_with("test-org")

    def test_force_cancel_nothing_active(self, client, mock_controller):
        mock_controller.force_cancel_all = AsyncMock(return_value=[])

        response = client.post("/api/imports/force-cancel")

        assert response.json() == {"cancelled": [], "count": 0}


class TestSkippedRecords:
    """Tests for GET /api/imports/skipped-records."""

    def test_lists_records(self, client, mock_store):
        record = SkippedRecord(
            id="rec-1",
            organization_id="test-org",
            import_job_id=JOB_ID,
            data_type="visits",
            source_record_id="5001",
            reason="Student not found",
            raw_payload='{"Id": 5001}',
            created_at=datetime(2024, 3, 8, tzinfo=timezone.utc),
        )
        mock_store.list_skipped = AsyncMock(return_value=[record])
        mock_store.count_skipped = AsyncMock(return_value=41)

        response = client.get("/api/imports/skipped-records?dataType=visits&limit=1&offset=40")

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 41
        assert body["limit"] == 1
        assert body["offset"] == 40
        assert body["records"] == [
            {
                "id": "rec-1",
                "importJobId": JOB_ID,
                "dataType": "visits",
                "sourceRecordId": "5001",
                "reason": "Student not found",
                "rawPayload": '{"Id": 5001}',
                "createdAt": "2024-03-08T00:00:00+00:00",
            }
        ]
        mock_store.list_skipped.assert_awaited_once_with("test-org", "visits", limit=1, offset=40)
        mock_store.count_skipped.assert_awaited_once_with("test-org", "visits")

    @pytest.mark.parametrize("query", ["limit=0", "limit=1001", "offset=-1"])
    def test_paging_validation(self, client, query):
        response = client.get(f"/api/imports/skipped-records?{query}")
        assert response.status_code == 422

"""Tests for studiosync.web.routes.scheduled_imports - Scheduled import routes."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from studiosync.core.errors import ActiveImportExistsError, InvalidImportConfigError
from studiosync.jobs.scheduler import schedule_defaults
from studiosync.web.dependencies import get_org_id, get_scheduler
from studiosync.web.routes import scheduled_imports


@pytest.fixture
def mock_scheduler():
    return MagicMock()


@pytest.fixture
def client(mock_scheduler):
    app = FastAPI()
    app.include_router(scheduled_imports.router)
    app.dependency_overrides[get_scheduler] = lambda: mock_scheduler
    app.dependency_overrides[get_org_id] = lambda: "test-org"
    return TestClient(app)


def test_get_returns_defaults(client, mock_scheduler):
    mock_scheduler.get_schedule = AsyncMock(return_value=schedule_defaults("test-org"))

    response = client.get("/api/scheduled-imports")

    assert response.status_code == 200
    body = response.json()
    assert body["enabled"] is False
    assert body["cronExpression"] == "0 2 * * *"
    assert body["dataTypes"] == "clients,classes,visits,sales"
    assert body["daysToImport"] == 7
    mock_scheduler.get_schedule.assert_awaited_once_with("test-org")


def test_save_schedule(client, mock_scheduler):
    saved = {**schedule_defaults("test-org"), "enabled": True, "cronExpression": "0 5 * * *"}
    mock_scheduler.save_schedule = AsyncMock(return_value=saved)

    response = client.post(
        "/api/scheduled-imports",
        json={"enabled": True, "cronExpression": "0 5 * * *", "dataTypes": "clients", "daysToImport": 3},
    )

    assert response.status_code == 200
    assert response.json()["cronExpression"] == "0 5 * * *"
    mock_scheduler.save_schedule.assert_awaited_once_with(
        "test-org",
        enabled=True,
        cron_expression="0 5 * * *",
        data_types="clients",
        days_to_import=3,
    )


def test_save_schedule_optional_fields(client, mock_scheduler):
    mock_scheduler.save_schedule = AsyncMock(return_value=schedule_defaults("test-org"))

    response = client.post("/api/scheduled-imports", json={"enabled": False})

    assert response.status_code == 200
    mock_scheduler.save_schedule.assert_awaited_once_with(
        "test-org", enabled=False, cron_expression=None, data_types=None, days_to_import=None
    )


def test_save_invalid_cron(client, mock_scheduler):
    mock_scheduler.save_schedule = AsyncMock(
        side_effect=InvalidImportConfigError("Invalid cron expression: nope")
    )

    response = client.post("/api/scheduled-imports", json={"enabled": True, "cronExpression": "nope"})

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid cron expression: nope"}


def test_save_requires_enabled(client):
    response = client.post("/api/scheduled-imports", json={"cronExpression": "0 2 * * *"})
    assert response.status_code == 422


def test_run_now(client, mock_scheduler):
    mock_scheduler.run_now = AsyncMock(return_value="job-1")

    response = client.post("/api/scheduled-imports/run-now")

    assert response.status_code == 201
    assert response.json() == {"jobId": "job-1"}


def test_run_now_while_active(client, mock_scheduler):
    mock_scheduler.run_now = AsyncMock(side_effect=ActiveImportExistsError("job-0", "paused"))

    response = client.post("/api/scheduled-imports/run-now")

    assert response.status_code == 409
    assert response.json()["activeJobId"] == "job-0"


def test_run_now_without_schedule(client, mock_scheduler):
    mock_scheduler.run_now = AsyncMock(
        side_effect=InvalidImportConfigError("No scheduled import is configured")
    )

    response = client.post("/api/scheduled-imports/run-now")

    assert response.status_code == 400

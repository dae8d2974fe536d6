"""Pytest configuration and fixtures for StudioSync tests.

Provides an isolated SQLite database per test and an in-memory fake of the
studio source API served through ``httpx.MockTransport``, so the real client
code (auth, pagination, retries) runs end to end.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Any

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from studiosync.config import SourceAPIConfig, reset_config
from studiosync.db.models import Base
from studiosync.jobs.store import JobStore
from studiosync.source.client import SourceAPIClient

BASE_URL = "https://api.studio.test/public/v6"
BASE_PATH = "/public/v6"


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    """Set up test environment variables."""
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    monkeypatch.setenv("DEFAULT_ORG_ID", "test-org")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    reset_config()
    yield
    reset_config()


@pytest.fixture
def test_org_id() -> str:
    """Test organization ID."""
    return "test-org"


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Isolated SQLite database with the full schema."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'studiosync.db'}")
    factory = async_sessionmaker(engine, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield factory

    await engine.dispose()


@pytest.fixture
def store(session_factory) -> JobStore:
    return JobStore(session_factory, retry_wait=0)


# ============================================================================
# Fake studio API
# ============================================================================


class FakeStudioAPI:
    """In-memory studio API.

    Paginated endpoints slice their record lists by ``Limit``/``Offset`` and
    report ``PaginationResponse.TotalResults``. Failures can be queued per
    path (``fail(path, 503, 503)``) or pinned to a page offset
    (``fail_at(path, offset, 500)``); ``hang(path)`` raises a read timeout.
    """

    def __init__(self):
        self.clients: list[dict[str, Any]] = []
        self.classes: list[dict[str, Any]] = []
        self.visits: list[dict[str, Any]] = []
        self.sales: list[dict[str, Any]] = []
        self.transactions: list[dict[str, Any]] = []
        self.sale_details: dict[str, dict[str, Any]] = {}

        self.requests: list[httpx.Request] = []
        self.tokens_issued = 0
        self.valid_tokens: set[str] = set()

        self._failures: dict[str, list[int]] = defaultdict(list)
        self._offset_failures: dict[tuple[str, int], int] = {}
        self._timeouts: dict[str, int] = defaultdict(int)

    # -- record builders ---------------------------------------------------

    def add_client(self, client_id, first="Ada", last="Lovelace", **fields) -> dict[str, Any]:
        record = {
            "Id": str(client_id),
            "FirstName": first,
            "LastName": last,
            "Email": f"client{client_id}@example.com",
            "MobilePhone": "555-0100",
            "Status": "Active",
            "CreationDate": "2023-06-01T10:00:00",
            **fields,
        }
        self.clients.append(record)
        return record

    def add_class(
        self,
        schedule_id,
        start: str,
        end: str,
        *,
        class_id=1,
        name="Vinyasa Flow",
        **fields,
    ) -> dict[str, Any]:
        record = {
            "Id": len(self.classes) + 1000,
            "ClassScheduleId": schedule_id,
            "StartDateTime": start,
            "EndDateTime": end,
            "MaxCapacity": 20,
            "ClassDescription": {"Id": class_id, "Name": name, "Description": "Flow class"},
            "Staff": {"Name": "Grace Hopper"},
            "Location": {"Name": "Studio A"},
            **fields,
        }
        self.classes.append(record)
        return record

    def add_visit(self, client_id, start: str, *, signed_in=True, **fields) -> dict[str, Any]:
        record = {
            "Id": len(self.visits) + 5000,
            "ClientId": str(client_id),
            "StartDateTime": start,
            "SignedIn": signed_in,
            **fields,
        }
        self.visits.append(record)
        return record

    def add_sale(self, sale_id, client_id, when: str, items: list[dict[str, Any]]) -> dict[str, Any]:
        record = {
            "Id": sale_id,
            "ClientId": str(client_id) if client_id is not None else None,
            "SaleDateTime": when,
            "PurchasedItems": items,
        }
        self.sales.append(record)
        return record

    def add_transaction(self, transaction_id, **fields) -> dict[str, Any]:
        record = {"TransactionId": transaction_id, **fields}
        self.transactions.append(record)
        return record

    # -- failure injection -------------------------------------------------

    def fail(self, path: str, *statuses: int) -> None:
        self._failures[path].extend(statuses)

    def fail_at(self, path: str, offset: int, status: int) -> None:
        self._offset_failures[(path, offset)] = status

    def clear_failures(self) -> None:
        self._failures.clear()
        self._offset_failures.clear()
        self._timeouts.clear()

    def hang(self, path: str, times: int = 1) -> None:
        self._timeouts[path] += times

    def revoke_tokens(self) -> None:
        self.valid_tokens.clear()

    # -- introspection -----------------------------------------------------

    def calls_to(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == BASE_PATH + path]

    def offsets_for(self, path: str) -> list[int]:
        return [int(r.url.params["Offset"]) for r in self.calls_to(path)]

    # -- transport ---------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.removeprefix(BASE_PATH)

        if self._timeouts[path] > 0:
            self._timeouts[path] -= 1
            raise httpx.ReadTimeout("timed out", request=request)
        if self._failures[path]:
            status = self._failures[path].pop(0)
            return httpx.Response(status, json={"Error": {"Message": f"Injected {status}"}})

        if path == "/usertoken/issue":
            self.tokens_issued += 1
            token = f"token-{self.tokens_issued}"
            self.valid_tokens.add(token)
            return httpx.Response(200, json={"AccessToken": token, "TokenType": "Bearer"})

        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        if token not in self.valid_tokens:
            return httpx.Response(401, json={"Error": {"Message": "Invalid token"}})

        offset = int(request.url.params.get("Offset", 0))
        if (path, offset) in self._offset_failures:
            status = self._offset_failures.pop((path, offset))
            return httpx.Response(status, json={"Error": {"Message": f"Injected {status}"}})

        collections = {
            "/client/clients": ("Clients", self.clients),
            "/class/classes": ("Classes", self.classes),
            "/class/classvisits": ("ClassVisits", self.visits),
            "/sale/sales": ("Sales", self.sales),
            "/sale/transactions": ("Transactions", self.transactions),
        }
        if path in collections:
            key, records = collections[path]
            limit = int(request.url.params.get("Limit", 100))
            return httpx.Response(
                200,
                json={
                    "PaginationResponse": {
                        "RequestedLimit": limit,
                        "RequestedOffset": offset,
                        "PageSize": limit,
                        "TotalResults": len(records),
                    },
                    key: records[offset : offset + limit],
                },
            )

        if path.startswith("/sale/sales/"):
            sale_id = path.rsplit("/", 1)[-1]
            if sale_id not in self.sale_details:
                return httpx.Response(404, json={"Error": {"Message": "Sale not found"}})
            return httpx.Response(200, json={"Sale": self.sale_details[sale_id]})

        return httpx.Response(404, json={"Error": {"Message": f"Unknown endpoint {path}"}})


@pytest.fixture
def fake_api() -> FakeStudioAPI:
    return FakeStudioAPI()


@pytest.fixture
def source_config() -> SourceAPIConfig:
    return SourceAPIConfig(
        base_url=BASE_URL,
        api_key="test-key",
        site_id="-99",
        username="owner",
        password="secret",
        retry_backoff_seconds=0,
        page_size=100,
    )


@pytest_asyncio.fixture
async def source_client(source_config, fake_api):
    client = SourceAPIClient(source_config, transport=httpx.MockTransport(fake_api.handler))
    yield client
    await client.close()

"""Studio-management source API client.

Handles user-token authentication with local expiry tracking, a hard
per-request timeout, bounded 5xx retries and single-page fetches.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from studiosync.config import SourceAPIConfig
from studiosync.core.errors import (
    SourceAPIError,
    SourceAuthError,
    SourceRateLimitError,
    SourceServerError,
    SourceTimeoutError,
)
from studiosync.utils.dates import utcnow

logger = structlog.get_logger(__name__)

TOKEN_ENDPOINT = "/usertoken/issue"


@dataclass
class Page:
    """One page of results from a paginated endpoint."""

    results: list[dict[str, Any]]
    total_results: int
    offset: int

    @property
    def next_offset(self) -> int:
        # Advance by what was actually returned, not the server's PageSize
        return self.offset + len(self.results)

    @property
    def has_more(self) -> bool:
        return len(self.results) > 0 and self.next_offset < self.total_results


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


class SourceAPIClient:
    """Async client for the studio-management REST API."""

    def __init__(
        self,
        config: SourceAPIConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.clock = clock
        self.api_call_count = 0

        self._token: str | None = None
        self._token_expires_at: datetime | None = None
        self._token_lock = asyncio.Lock()

        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if config.api_key:
            headers["Api-Key"] = config.api_key
        if config.site_id:
            headers["SiteId"] = config.site_id

        self.client = httpx.AsyncClient(
            base_url=config.base_url,
            timeout=config.request_timeout_seconds,
            headers=headers,
            transport=transport,
        )

    async def __aenter__(self) -> SourceAPIClient:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self.client.aclose()

    def reset_call_count(self) -> None:
        self.api_call_count = 0

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def invalidate_token(self) -> None:
        self._token = None
        self._token_expires_at = None

    def _token_is_fresh(self) -> bool:
        if not self._token or self._token_expires_at is None:
            return False
        margin = timedelta(minutes=self.config.token_reissue_margin_minutes)
        return self.clock() < self._token_expires_at - margin

    async def get_access_token(self) -> str:
        """Return the cached user token, issuing a new one when near expiry."""
        async with self._token_lock:
            if self._token_is_fresh():
                return self._token

            response = await self._send(
                "POST",
                TOKEN_ENDPOINT,
                json={"Username": self.config.username, "Password": self.config.password},
            )
            if response.status_code in (401, 403):
                raise SourceAuthError(
                    f"Token issue rejected ({response.status_code})",
                    status=response.status_code,
                    body=response.text,
                )
            if response.status_code >= 500:
                raise SourceServerError(
                    f"Token issue failed ({response.status_code})",
                    status=response.status_code,
                    body=response.text,
                )
            data = self._decode(TOKEN_ENDPOINT, response)

            token = data.get("AccessToken")
            if not token:
                raise SourceAuthError("Token issue response did not include an access token")

            self._token = token
            self._token_expires_at = self.clock() + timedelta(
                minutes=self.config.token_lifetime_minutes
            )
            logger.info("source_token_issued", expires_at=self._token_expires_at.isoformat())
            return token

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def _send(self, method: str, endpoint: str, **kwargs: Any) -> httpx.Response:
        """One HTTP round trip. Counts every call that reaches the server."""
        try:
            response = await self.client.request(method, endpoint, **kwargs)
        except httpx.TimeoutException as exc:
            raise SourceTimeoutError(
                f"Source API request timeout ({self.config.request_timeout_seconds:g}s): {endpoint}"
            ) from exc
        except httpx.TransportError as exc:
            raise SourceServerError(f"Source API connection failed: {endpoint}: {exc}") from exc

        self.api_call_count += 1
        return response

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "source_request_retry",
            attempt=retry_state.attempt_number,
            max_attempts=self.config.max_retries + 1,
            error=str(exc),
        )

    async def _send_with_retry(self, method: str, endpoint: str, **kwargs: Any) -> httpx.Response:
        """Send, retrying 5xx responses with exponential backoff."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.max_retries + 1),
            wait=wait_exponential(multiplier=self.config.retry_backoff_seconds),
            retry=retry_if_exception_type(SourceServerError),
            before_sleep=self._log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                response = await self._send(method, endpoint, **kwargs)
                if response.status_code >= 500:
                    raise SourceServerError(
                        f"Source API error {response.status_code}: {endpoint}",
                        status=response.status_code,
                        body=response.text,
                    )
                return response

    def _decode(self, endpoint: str, response: httpx.Response) -> dict[str, Any]:
        status = response.status_code
        if status == 429:
            raise SourceRateLimitError(
                f"Source API rate limit exceeded (429): {endpoint}", status=status, body=response.text
            )
        if status in (401, 403):
            raise SourceAuthError(
                f"Source API authorization failed ({status}): {endpoint}",
                status=status,
                body=response.text,
            )
        if status >= 400:
            raise SourceAPIError(
                f"Source API error {status}: {endpoint}: {response.text[:500]}",
                status=status,
                body=response.text,
            )
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as exc:
            raise SourceAPIError(
                f"Source API returned invalid JSON: {endpoint}", status=status, body=response.text
            ) from exc
        return data if isinstance(data, dict) else {}

    async def request(
        self,
        endpoint: str,
        *,
        method: str = "GET",
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> dict[str, Any]:
        """Issue one authenticated call and return the decoded JSON body.

        A 401 invalidates the cached token; the request is retried exactly
        once with a freshly issued token.

        Raises:
            SourceTimeoutError: Request exceeded the hard timeout
            SourceServerError: 5xx persisted after all retries
            SourceRateLimitError: 429 response
            SourceAuthError: 401/403 after the token refresh retry
            SourceAPIError: Any other non-2xx response
        """
        token_refreshed = False
        while True:
            token = await self.get_access_token()
            response = await self._send_with_retry(
                method,
                endpoint,
                params=params,
                json=json,
                headers={"Authorization": f"Bearer {token}"},
            )
            if response.status_code == 401 and not token_refreshed:
                logger.info("source_token_rejected", endpoint=endpoint)
                self.invalidate_token()
                token_refreshed = True
                continue
            return self._decode(endpoint, response)

    async def fetch_page(
        self,
        endpoint: str,
        results_key: str,
        offset: int,
        page_size: int | None = None,
        params: dict[str, Any] | None = None,
    ) -> Page:
        """Fetch one page using ``Limit``/``Offset`` query parameters."""
        query = dict(params or {})
        query["Limit"] = page_size or self.config.page_size
        query["Offset"] = offset

        data = await self.request(endpoint, params=query)

        results = data.get(results_key) or []
        if not isinstance(results, list):
            results = []
        pagination = data.get("PaginationResponse") or {}
        total = _int(pagination.get("TotalResults"))

        page = Page(results=results, total_results=total, offset=offset)
        logger.debug(
            "source_page_fetched",
            endpoint=endpoint,
            offset=offset,
            count=len(results),
            total=total,
        )
        return page

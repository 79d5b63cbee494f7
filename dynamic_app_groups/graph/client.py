"""
Async Graph API client with pagination, throttling, retry, and write enforcement.
Requests are issued one at a time; callers await each call before the next.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, AsyncGenerator, Optional

import httpx

from ..config import (
    GRAPH_BASE_URL,
    GRAPH_API_VERSION,
    MAX_RETRIES,
    INITIAL_BACKOFF_SECONDS,
    MAX_BACKOFF_SECONDS,
    BACKOFF_MULTIPLIER,
    MAX_PAGES_PER_ENDPOINT,
)
from ..safety.guardian import SafetyGuardian, SafetyViolation

logger = logging.getLogger("dynamic_app_groups.graph")


class GraphAPIError(Exception):
    """Raised when Graph API returns a non-recoverable error."""
    def __init__(self, status_code: int, message: str, url: str):
        self.status_code = status_code
        self.message = message
        self.url = url
        super().__init__(f"Graph API Error {status_code} for {url}: {message}")


class GraphClient:
    """
    Async Microsoft Graph API client.
    Features:
      - Guardian-validated requests (write allow-list, dry-run)
      - Lazy page iteration following @odata.nextLink
      - Exponential backoff on 429/503/504
    """

    def __init__(
        self,
        access_token: str,
        guardian: SafetyGuardian,
        initial_backoff: float = INITIAL_BACKOFF_SECONDS,
        max_retries: int = MAX_RETRIES,
    ):
        self.access_token = access_token
        self.guardian = guardian
        self.initial_backoff = initial_backoff
        self.max_retries = max_retries
        self._request_count = 0
        self._throttle_count = 0
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(60.0, connect=30.0),
            headers={
                "Authorization": f"Bearer {self.access_token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )
        return self

    async def __aexit__(self, *args):
        if self._client:
            await self._client.aclose()
            self._client = None

    def _build_url(self, endpoint: str) -> str:
        """Build full Graph URL from relative endpoint."""
        if endpoint.startswith("http"):
            return endpoint
        endpoint = endpoint.lstrip("/")
        return f"{GRAPH_BASE_URL}/{GRAPH_API_VERSION}/{endpoint}"

    async def get(self, endpoint: str, params: Optional[dict] = None) -> dict:
        """Execute a single GET request with retry/throttle handling."""
        url = self._build_url(endpoint)
        self.guardian.validate_request("GET", url)
        return await self._execute_with_retry("GET", url, params=params)

    async def post(self, endpoint: str, json_body: dict) -> dict:
        """Execute a POST request. Returns the created object, or {} on 204."""
        url = self._build_url(endpoint)
        self.guardian.validate_request("POST", url, json_body)
        return await self._execute_with_retry("POST", url, json_body=json_body)

    async def delete(self, endpoint: str) -> None:
        """Execute a DELETE request."""
        url = self._build_url(endpoint)
        self.guardian.validate_request("DELETE", url)
        await self._execute_with_retry("DELETE", url)

    async def iter_pages(
        self,
        endpoint: str,
        params: Optional[dict] = None,
    ) -> AsyncGenerator[list[dict], None]:
        """
        Yield one page of items at a time.
        The next page is only requested when the consumer asks for it, and
        iteration stops when a response carries no @odata.nextLink.
        """
        url: Optional[str] = self._build_url(endpoint)
        pages = 0

        while url and pages < MAX_PAGES_PER_ENDPOINT:
            self.guardian.validate_request("GET", url)
            data = await self._execute_with_retry("GET", url, params=params)

            yield data.get("value", [])

            # nextLink contains all params
            url = data.get("@odata.nextLink")
            params = None
            pages += 1

        if url and pages >= MAX_PAGES_PER_ENDPOINT:
            logger.warning(
                f"Pagination safety cap reached ({MAX_PAGES_PER_ENDPOINT} pages) "
                f"for endpoint: {endpoint}",
                extra={"action": "Paginate"},
            )

    async def get_all_pages(self, endpoint: str, params: Optional[dict] = None) -> list[dict]:
        """Fetch all pages of a paginated endpoint into a list."""
        items = []
        async for page in self.iter_pages(endpoint, params):
            items.extend(page)
        return items

    async def _execute_with_retry(
        self,
        method: str,
        url: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> dict:
        """Execute request with exponential backoff on throttling."""
        backoff = self.initial_backoff
        response: Optional[httpx.Response] = None

        for attempt in range(self.max_retries + 1):
            try:
                response = await self._execute_raw(
                    method, url, params=params, json_body=json_body
                )
                self._request_count += 1

                if response.status_code in (200, 201):
                    if not response.content or not response.content.strip():
                        return {}
                    return response.json()

                if response.status_code == 204:
                    return {}

                if response.status_code in (429, 503, 504):
                    self._throttle_count += 1
                    if attempt == self.max_retries:
                        break
                    retry_after = _retry_after_seconds(
                        response.headers.get("Retry-After"), backoff
                    )
                    wait_time = max(retry_after, backoff)
                    logger.warning(
                        f"Throttled ({response.status_code}) on {url}. "
                        f"Retry {attempt + 1}/{self.max_retries} in {wait_time:.1f}s",
                        extra={"action": "Throttle"},
                    )
                    await asyncio.sleep(wait_time)
                    backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)
                    continue

                raise GraphAPIError(response.status_code, _error_message(response), url)

            except httpx.TimeoutException:
                logger.warning(
                    f"Timeout on {url}, attempt {attempt + 1}/{self.max_retries}",
                    extra={"action": "Throttle"},
                )
                if attempt == self.max_retries:
                    raise
                await asyncio.sleep(backoff)
                backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)

            except httpx.ConnectError as e:
                logger.warning(f"Connection error on {url}: {e}", extra={"action": "Throttle"})
                if attempt == self.max_retries:
                    raise
                await asyncio.sleep(backoff)
                backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)

        status = response.status_code if response is not None else 0
        raise GraphAPIError(status, f"Max retries ({self.max_retries}) exceeded", url)

    async def _execute_raw(
        self,
        method: str,
        url: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> httpx.Response:
        """Execute raw HTTP request."""
        if not self._client:
            raise RuntimeError("GraphClient not initialized. Use 'async with' context.")

        if method == "GET":
            return await self._client.get(url, params=params)
        elif method == "POST":
            return await self._client.post(url, json=json_body, params=params)
        elif method == "DELETE":
            return await self._client.delete(url)
        else:
            raise SafetyViolation(f"Unsupported method at raw level: {method}")

    def get_stats(self) -> dict:
        """Return client statistics."""
        return {
            "total_requests": self._request_count,
            "throttle_events": self._throttle_count,
        }


def _retry_after_seconds(value: Optional[str], default: float) -> float:
    """Retry-After is either delta-seconds or an HTTP-date."""
    if not value:
        return default
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.debug(f"Unparseable Retry-After header: {value!r}", extra={"action": "Throttle"})
        return default
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


def _error_message(response: httpx.Response) -> str:
    try:
        body: Any = response.json() if response.content else {}
    except ValueError:
        return response.text[:200]
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return error["message"]
    return response.text[:200]

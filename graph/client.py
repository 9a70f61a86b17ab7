"""
Read-only async Graph client for listing OneDrive / SharePoint libraries.
Every request passes the RepairGuardian before it leaves the process.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Optional

import httpx

from ..config import (
    GRAPH_BASE_URL,
    GRAPH_API_VERSION,
    MAX_RETRIES,
    INITIAL_BACKOFF_SECONDS,
    MAX_BACKOFF_SECONDS,
    BACKOFF_MULTIPLIER,
    DEFAULT_PAGE_SIZE,
    MAX_PAGES_PER_ENDPOINT,
    MAX_CONCURRENT_REQUESTS,
)
from ..safety.guardian import RepairGuardian

logger = logging.getLogger("m365_link_repair.graph")

RETRY_STATUSES = (429, 503, 504)


class GraphAPIError(Exception):
    """A Graph request failed for good, after any retries."""

    def __init__(self, status_code: int, message: str, url: str):
        self.status_code = status_code
        self.url = url
        super().__init__(f"Graph API Error {status_code} for {url}: {message}")


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(body, dict):
        return body.get("error", {}).get("message") or response.reason_phrase
    return response.reason_phrase


def _retry_after(response: httpx.Response, default: float) -> float:
    value = response.headers.get("Retry-After")
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        # HTTP-date form; fall back to our own schedule
        return default


class GraphClient:
    """
    Async Microsoft Graph client, GET only.
    Features:
      - RepairGuardian check on every URL, including nextLinks
      - Pages followed through @odata.nextLink as an async iterator
      - Backoff on 429/503/504 honouring Retry-After
      - Bounded number of requests in flight
    """

    def __init__(
        self,
        access_token: str,
        guardian: RepairGuardian,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep=asyncio.sleep,
        max_retries: int = MAX_RETRIES,
    ):
        self.access_token = access_token
        self.guardian = guardian
        self.max_retries = max_retries
        self._transport = transport
        self._sleep = sleep
        self._semaphore = asyncio.Semaphore(MAX_CONCURRENT_REQUESTS)
        self._client: Optional[httpx.AsyncClient] = None
        self.requests_sent = 0
        self.throttle_events = 0

    async def __aenter__(self):
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(60.0, connect=30.0),
            limits=httpx.Limits(
                max_connections=MAX_CONCURRENT_REQUESTS * 2,
                max_keepalive_connections=MAX_CONCURRENT_REQUESTS,
            ),
            headers={
                "Authorization": f"Bearer {self.access_token}",
                "Accept": "application/json",
            },
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *args):
        if self._client:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def url_for(endpoint: str) -> str:
        if endpoint.startswith("https://"):
            return endpoint
        return f"{GRAPH_BASE_URL}/{GRAPH_API_VERSION}/{endpoint.lstrip('/')}"

    async def get(self, endpoint: str, params: Optional[dict] = None) -> dict:
        """Single GET. Raises GraphAPIError for anything but 200."""
        return await self._send(self.url_for(endpoint), params)

    async def iter_items(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> AsyncIterator[dict]:
        """Yield the ``value`` entries of every page of a collection."""
        query: Optional[dict] = {"$top": str(page_size), **(params or {})}
        url: Optional[str] = self.url_for(endpoint)
        pages = 0
        while url:
            if pages >= MAX_PAGES_PER_ENDPOINT:
                logger.warning(f"Stopped paging {endpoint} after {pages} pages")
                return
            page = await self._send(url, query)
            for item in page.get("value", []):
                yield item
            url = page.get("@odata.nextLink")
            query = None        # nextLink carries the query string
            pages += 1

    async def _send(self, url: str, params: Optional[dict]) -> dict:
        if self._client is None:
            raise RuntimeError("GraphClient is not open. Use 'async with'.")
        self.guardian.validate_request("GET", url)

        backoff = INITIAL_BACKOFF_SECONDS
        for attempt in range(1, self.max_retries + 2):
            try:
                async with self._semaphore:
                    response = await self._client.get(url, params=params)
            except (httpx.TimeoutException, httpx.ConnectError) as e:
                if attempt > self.max_retries:
                    raise
                wait = backoff
                logger.warning(
                    f"{type(e).__name__} on {url}; retry {attempt}/{self.max_retries} in {wait:.1f}s"
                )
            else:
                self.requests_sent += 1
                if response.status_code == 200:
                    return self._body(response, url)
                if response.status_code not in RETRY_STATUSES:
                    raise GraphAPIError(response.status_code, _error_message(response), url)

                self.throttle_events += 1
                if attempt > self.max_retries:
                    break
                wait = max(backoff, _retry_after(response, backoff))
                logger.warning(
                    f"Throttled ({response.status_code}) on {url}; "
                    f"retry {attempt}/{self.max_retries} in {wait:.1f}s"
                )
            await self._sleep(wait)
            backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)

        raise GraphAPIError(429, "Throttling persisted past the retry limit", url)

    @staticmethod
    def _body(response: httpx.Response, url: str) -> dict:
        if not response.content.strip():
            return {}
        try:
            return response.json()
        except ValueError:
            logger.debug(f"Ignoring non-JSON 200 body from {url}")
            return {}

    def get_stats(self) -> dict:
        return {
            "requests_sent": self.requests_sent,
            "throttle_events": self.throttle_events,
        }

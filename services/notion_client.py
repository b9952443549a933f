"""Async client for the Notion REST API.

Only the handful of endpoints the sync engine needs. Transient failures
(429, 5xx, transport errors) are retried here with a bounded budget so the
engine only ever sees terminal errors.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import httpx

from config import NotionConfig
from services.logging_utils import log_api_request

logger = logging.getLogger(__name__)

BACKOFF_SECONDS = 0.2
QUERY_PAGE_SIZE = 100
APP_ID_PROPERTY = "App ID"


class NotionApiError(Exception):
    """A terminal Notion failure.

    ``status`` is the HTTP status, or None when the request never got a
    response.
    """

    def __init__(self, message: str, status: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code


def _is_retryable_status(status: int) -> bool:
    return status == 429 or status >= 500


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    if seconds != seconds or seconds <= 0:
        return None
    return seconds


def _error_payload(response: httpx.Response) -> dict:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


class NotionClient:
    """Notion API client bound to one integration token."""

    def __init__(
        self,
        token: str,
        *,
        config: Optional[NotionConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config or NotionConfig()
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=self.config.base_url.rstrip("/"),
            timeout=httpx.Timeout(self.config.timeout),
            transport=transport,
            headers={
                "Authorization": f"Bearer {token}",
                "Notion-Version": self.config.api_version,
                "Content-Type": "application/json",
            },
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "NotionClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _request(self, method: str, path: str, body: Optional[dict] = None) -> dict:
        attempts = max(1, self.config.max_retries)
        for attempt in range(1, attempts + 1):
            try:
                response = await self._client.request(method, path, json=body)
            except httpx.TransportError as e:
                log_api_request(logger, method, path, error=e, attempt=attempt)
                if attempt < attempts:
                    await self._sleep(BACKOFF_SECONDS * attempt)
                    continue
                raise NotionApiError(f"Notion request failed ({method} {path}): {e}") from e

            log_api_request(logger, method, path, status_code=response.status_code, attempt=attempt)
            if response.is_success:
                return response.json()

            payload = _error_payload(response)
            message = payload.get("message")
            if not isinstance(message, str):
                message = f"Notion API error ({response.status_code})"

            if _is_retryable_status(response.status_code) and attempt < attempts:
                delay = None
                if response.status_code == 429:
                    delay = _parse_retry_after(response.headers.get("Retry-After"))
                await self._sleep(delay if delay is not None else BACKOFF_SECONDS * attempt)
                continue

            raise NotionApiError(message, response.status_code, payload.get("code"))

        raise NotionApiError("Notion API request failed.", 500)

    async def get_database(self, database_id: str) -> dict:
        return await self._request("GET", f"/databases/{database_id}")

    async def query_database(self, database_id: str, filter: Optional[dict] = None) -> list[dict]:
        """All pages matching ``filter``, following pagination cursors."""
        results: list[dict] = []
        cursor = None
        while True:
            body: dict[str, Any] = {"page_size": QUERY_PAGE_SIZE}
            if filter is not None:
                body["filter"] = filter
            if cursor:
                body["start_cursor"] = cursor
            response = await self._request("POST", f"/databases/{database_id}/query", body)
            results.extend(response.get("results") or [])
            cursor = response.get("next_cursor")
            if not response.get("has_more") or not cursor:
                return results

    async def query_database_by_app_id(self, database_id: str, app_id: str) -> Optional[dict]:
        body = {
            "page_size": 1,
            "filter": {"property": APP_ID_PROPERTY, "rich_text": {"equals": app_id}},
        }
        response = await self._request("POST", f"/databases/{database_id}/query", body)
        results = response.get("results") or []
        return results[0] if results else None

    async def create_page(self, database_id: str, properties: dict) -> dict:
        body = {"parent": {"database_id": database_id}, "properties": properties}
        return await self._request("POST", "/pages", body)

    async def update_page(self, page_id: str, properties: dict) -> dict:
        return await self._request("PATCH", f"/pages/{page_id}", {"properties": properties})

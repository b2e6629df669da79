"""Notion database client used as the mirror's remote store.

Every call is one logical HTTP request with a JSON body and response.  HTTP
429, 5xx and transport failures are retried exactly once after a fixed
backoff; anything else that is not 2xx fails immediately.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from urllib.parse import quote

import httpx

from calsync.config import DEFAULT_NOTION_API_VERSION, PropertyNames
from calsync.models import RemoteRecord, StructuredRecord, record_to_notion_properties
from calsync.projector import utc_instant

logger = logging.getLogger(__name__)

NOTION_API_BASE_URL = "https://api.notion.com/v1"
DEFAULT_MAX_ATTEMPTS = 2
DEFAULT_BACKOFF_SECONDS = 1.0
DEFAULT_QUERY_PAGE_SIZE = 100
MAX_QUERY_PAGE_SIZE = 100


class NotionError(RuntimeError):
    """Base error raised by the Notion client."""


class TransientRemoteError(NotionError):
    """Rate limit, server error or transport failure; eligible for one retry."""

    def __init__(self, *, status_code: int | None, message: str) -> None:
        self.status_code = status_code
        self.message = message
        status = status_code if status_code is not None else "transport"
        super().__init__(f"Notion API request failed ({status}): {message}")


class HardRemoteError(NotionError):
    """Non-retryable failure, or a transient failure that persisted past the retry."""

    def __init__(self, *, status_code: int | None, message: str, attempts: int = 1) -> None:
        self.status_code = status_code
        self.message = message
        self.attempts = attempts
        status = status_code if status_code is not None else "transport"
        super().__init__(
            f"Notion API request failed ({status}) after {attempts} attempt(s): {message}"
        )


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_seconds: float = DEFAULT_BACKOFF_SECONDS

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_seconds < 0:
            raise ValueError("backoff_seconds must not be negative")


def is_transient_status(status_code: int) -> bool:
    return status_code == 429 or 500 <= status_code <= 599


def _safe_notion_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        message = payload.get("message")
        code = payload.get("code")
        if isinstance(message, str) and message.strip():
            normalized = " ".join(message.split())
            if isinstance(code, str) and code.strip():
                normalized = f"{code.strip()}: {normalized}"
            return normalized[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


def extract_plain_text(property_payload: Any) -> str | None:
    """Join the plain text of a rich-text or title property; ``None`` when empty."""
    if not isinstance(property_payload, dict):
        return None
    segments = property_payload.get("rich_text")
    if segments is None:
        segments = property_payload.get("title")
    if not isinstance(segments, list):
        return None

    parts: list[str] = []
    for segment in segments:
        if not isinstance(segment, dict):
            continue
        plain = segment.get("plain_text")
        if not isinstance(plain, str):
            text = segment.get("text")
            plain = text.get("content") if isinstance(text, dict) else None
        if isinstance(plain, str):
            parts.append(plain)
    joined = "".join(parts).strip()
    return joined or None


def parse_page(payload: Any, *, identity_property: str) -> RemoteRecord:
    if not isinstance(payload, dict):
        raise NotionError("Notion page payload must be a JSON object")
    page_id = payload.get("id")
    if not isinstance(page_id, str) or not page_id.strip():
        raise NotionError("Notion page payload is missing a non-empty id")

    properties = payload.get("properties")
    if not isinstance(properties, dict):
        properties = {}

    return RemoteRecord(
        page_id=page_id.strip(),
        properties=properties,
        archived=bool(payload.get("archived")) or bool(payload.get("in_trash")),
        identity=extract_plain_text(properties.get(identity_property)),
    )


class NotionClient:
    """Remote store operations against a single Notion database."""

    def __init__(
        self,
        *,
        token: str,
        database_id: str,
        properties: PropertyNames,
        api_version: str = DEFAULT_NOTION_API_VERSION,
        retry_policy: RetryPolicy | None = None,
        page_size: int = DEFAULT_QUERY_PAGE_SIZE,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._token = token
        self._database_id = database_id
        self._properties = properties
        self._api_version = api_version
        self._retry_policy = retry_policy or RetryPolicy()
        self._page_size = min(max(1, int(page_size)), MAX_QUERY_PAGE_SIZE)
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def __aenter__(self) -> NotionClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._token}",
            "Notion-Version": self._api_version,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        normalized_path = path if path.startswith("/") else f"/{path}"
        url = f"{NOTION_API_BASE_URL}{normalized_path}"
        max_attempts = self._retry_policy.max_attempts

        attempt = 0
        while True:
            attempt += 1
            try:
                response = await self._http_client.request(
                    method,
                    url,
                    json=json_body,
                    headers=self._headers(),
                )
            except httpx.TransportError as exc:
                failure = TransientRemoteError(status_code=None, message=str(exc) or repr(exc))
            else:
                if 200 <= response.status_code < 300:
                    return self._decode(response)
                message = _safe_notion_error_message(response)
                if not is_transient_status(response.status_code):
                    raise HardRemoteError(
                        status_code=response.status_code,
                        message=message,
                        attempts=attempt,
                    )
                failure = TransientRemoteError(status_code=response.status_code, message=message)

            if attempt >= max_attempts:
                raise HardRemoteError(
                    status_code=failure.status_code,
                    message=failure.message,
                    attempts=attempt,
                ) from failure

            logger.warning(
                "Notion %s %s failed transiently (status=%s), retrying in %.1fs (attempt %d/%d)",
                method,
                normalized_path,
                failure.status_code,
                self._retry_policy.backoff_seconds,
                attempt,
                max_attempts,
            )
            await asyncio.sleep(self._retry_policy.backoff_seconds)

    @staticmethod
    def _decode(response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise NotionError("Notion API returned invalid JSON for a successful response") from exc
        if not isinstance(payload, dict):
            raise NotionError("Notion API returned an unexpected JSON payload shape")
        return payload

    @property
    def _database_path(self) -> str:
        return f"/databases/{quote(self._database_id, safe='')}"

    async def _query_page(
        self,
        filter_expression: dict[str, Any],
        *,
        page_size: int,
        start_cursor: str | None = None,
    ) -> tuple[list[RemoteRecord], str | None]:
        body: dict[str, Any] = {"filter": filter_expression, "page_size": page_size}
        if start_cursor is not None:
            body["start_cursor"] = start_cursor
        payload = await self._request_json("POST", f"{self._database_path}/query", json_body=body)

        results = payload.get("results")
        if not isinstance(results, list):
            raise NotionError("Notion query response missing results array")
        records = [
            parse_page(item, identity_property=self._properties.identity) for item in results
        ]

        next_cursor: str | None = None
        if payload.get("has_more") is True:
            raw_cursor = payload.get("next_cursor")
            if not isinstance(raw_cursor, str) or not raw_cursor.strip():
                raise NotionError("Notion query reported has_more without a next_cursor")
            next_cursor = raw_cursor
        return records, next_cursor

    async def find_by_identity(self, identity: str) -> list[RemoteRecord]:
        """Exact-match lookup on the identity property; returns at most one record."""
        records, _ = await self._query_page(
            {"property": self._properties.identity, "rich_text": {"equals": identity}},
            page_size=1,
        )
        return records

    async def query_by_date_range(self, start: datetime, end: datetime) -> list[RemoteRecord]:
        """Return every record whose date falls in [start, end], across all pages."""
        filter_expression = {
            "and": [
                {
                    "property": self._properties.date,
                    "date": {"on_or_after": utc_instant(start)},
                },
                {
                    "property": self._properties.date,
                    "date": {"on_or_before": utc_instant(end)},
                },
            ]
        }

        records: list[RemoteRecord] = []
        seen: set[str] = set()
        cursor: str | None = None
        pages = 0
        while True:
            batch, cursor = await self._query_page(
                filter_expression,
                page_size=self._page_size,
                start_cursor=cursor,
            )
            pages += 1
            for record in batch:
                if record.page_id in seen:
                    continue
                seen.add(record.page_id)
                records.append(record)
            if cursor is None:
                break

        logger.debug("Fetched %d Notion record(s) across %d page(s)", len(records), pages)
        return records

    async def create(self, record: StructuredRecord) -> RemoteRecord:
        payload = await self._request_json(
            "POST",
            "/pages",
            json_body={
                "parent": {"database_id": self._database_id},
                "properties": record_to_notion_properties(record),
            },
        )
        return parse_page(payload, identity_property=self._properties.identity)

    async def update(self, page_id: str, record: StructuredRecord) -> RemoteRecord:
        payload = await self._request_json(
            "PATCH",
            f"/pages/{quote(page_id, safe='')}",
            json_body={"properties": record_to_notion_properties(record)},
        )
        return parse_page(payload, identity_property=self._properties.identity)

    async def archive(self, page_id: str) -> RemoteRecord:
        payload = await self._request_json(
            "PATCH",
            f"/pages/{quote(page_id, safe='')}",
            json_body={"archived": True},
        )
        return parse_page(payload, identity_property=self._properties.identity)

    async def get_schema_field_names(self) -> set[str]:
        payload = await self._request_json("GET", self._database_path)
        properties = payload.get("properties")
        if not isinstance(properties, dict):
            raise NotionError("Notion database response missing properties object")
        return set(properties)

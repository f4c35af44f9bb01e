"""PostgREST remote store adapter — implements RemoteStorePort.

Talks to a Supabase project's REST endpoint (`{SUPABASE_URL}/rest/v1`) over
httpx. Transport failures become RemoteUnavailableError (transient, retry
later); error responses become RemoteStoreError with the PostgREST code.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from spliteasy.ports.remote_port import RemoteStoreError, RemoteUnavailableError

logger = logging.getLogger(__name__)

_RETURN_ROWS = "return=representation"
_MERGE_DUPLICATES = "resolution=merge-duplicates,return=representation"
_UNAVAILABLE_STATUSES = {502, 503, 504}


def _eq(value: str) -> str:
    return f"eq.{value}"


def _contains(value: str) -> str:
    # PostgREST array literal: cs.{"value"}
    return f"cs.{{{json.dumps(value)}}}"


class PostgrestStore:
    """httpx implementation of RemoteStorePort."""

    def __init__(
        self,
        url: str,
        api_key: str,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ) -> None:
        if timeout is None:
            from spliteasy.config import settings
            timeout = settings.HTTP_TIMEOUT_SECONDS

        self._base_url = f"{url.rstrip('/')}/rest/v1"
        self._headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
        }
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def _url(self, table: str) -> str:
        return f"{self._base_url}/{table}"

    async def _send(
        self,
        method: str,
        table: str,
        params: dict[str, str] | None = None,
        body: Any = None,
        prefer: str | None = None,
    ) -> httpx.Response:
        headers = dict(self._headers)
        if prefer:
            headers["Prefer"] = prefer
        try:
            return await self._client.request(
                method, self._url(table), params=params, json=body, headers=headers,
            )
        except httpx.TransportError as exc:
            raise RemoteUnavailableError(f"{method} {table} failed: {exc}") from exc

    @staticmethod
    def _raise_for_error(resp: httpx.Response, method: str, table: str) -> None:
        if resp.status_code < 400:
            return
        code = None
        message = resp.text
        try:
            data = resp.json()
        except ValueError:
            data = None
        if isinstance(data, dict):
            code = data.get("code")
            message = data.get("message") or message

        if resp.status_code in _UNAVAILABLE_STATUSES:
            raise RemoteUnavailableError(f"{method} {table}: {message}", code=code)
        raise RemoteStoreError(f"{method} {table}: {message}", code=code)

    async def _request(self, method: str, table: str, **kwargs: Any) -> Any:
        resp = await self._send(method, table, **kwargs)
        self._raise_for_error(resp, method, table)
        if not resp.content:
            return None
        return resp.json()

    async def fetch_one(self, table: str, column: str, value: str) -> dict | None:
        rows = await self._request(
            "GET", table, params={"select": "*", column: _eq(value), "limit": "1"},
        )
        return rows[0] if rows else None

    async def fetch_by(self, table: str, column: str, value: str) -> list[dict]:
        return await self._request("GET", table, params={"select": "*", column: _eq(value)}) or []

    async def fetch_containing(self, table: str, column: str, value: str) -> list[dict]:
        return await self._request(
            "GET", table, params={"select": "*", column: _contains(value)},
        ) or []

    async def insert(self, table: str, record: dict) -> dict:
        rows = await self._request("POST", table, body=record, prefer=_RETURN_ROWS)
        return rows[0] if rows else record

    async def upsert(self, table: str, record: dict, on_conflict: str = "id") -> dict:
        rows = await self._request(
            "POST", table,
            params={"on_conflict": on_conflict},
            body=record,
            prefer=_MERGE_DUPLICATES,
        )
        return rows[0] if rows else record

    async def delete(self, table: str, column: str, value: str) -> list[dict]:
        """Delete matching rows and return them (empty if none matched)."""
        return await self._request(
            "DELETE", table, params={column: _eq(value)}, prefer=_RETURN_ROWS,
        ) or []

    async def probe(self, table: str, column: str) -> bool:
        """True if `table.column` exists, via a zero-row select."""
        resp = await self._send("GET", table, params={"select": column, "limit": "0"})
        if resp.status_code < 400:
            return True
        if resp.status_code in (400, 404):
            logger.debug("Column %s.%s not found (HTTP %d)", table, column, resp.status_code)
            return False
        self._raise_for_error(resp, "GET", table)
        return False

    async def ping(self) -> bool:
        try:
            resp = await self._send("GET", "users", params={"select": "id", "limit": "1"})
        except RemoteUnavailableError as exc:
            logger.debug("Ping failed: %s", exc)
            return False
        return resp.status_code < 400

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

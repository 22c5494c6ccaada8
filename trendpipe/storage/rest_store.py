"""
trendpipe REST Store
====================

:class:`SeriesStore` over a PostgREST endpoint (``/rest/v1/<table>``),
the dialect hosted Postgres services expose.

Filters are encoded as query parameters (``col=op.value``), upserts use
``Prefer: resolution=merge-duplicates`` (or ``ignore-duplicates``) with
``on_conflict``, and large upserts are sent in chunks.  Any non-2xx
response raises :class:`StoreError`.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import aiohttp

from ..core.errors import StoreError
from .base import Filter, Order, SeriesStore, encode_value

logger = logging.getLogger("trendpipe.storage.rest")

DEFAULT_CHUNK_SIZE = 100

# PostgREST reserves these characters inside in.(...) lists
_RESERVED = set(',()"\\ ')


def _literal(value: Any) -> str:
    value = encode_value(value)
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _list_literal(values: Sequence[Any]) -> str:
    parts = []
    for v in values:
        text = _literal(v)
        if any(ch in _RESERVED for ch in text):
            text = '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'
        parts.append(text)
    return "(" + ",".join(parts) + ")"


def encode_filter(f: Filter) -> Tuple[str, str]:
    """Encode one filter as a ``(column, "op.value")`` query pair."""
    if f.op in ("eq", "neq", "gt", "gte", "lt", "lte"):
        return f.column, f"{f.op}.{_literal(f.value)}"
    if f.op == "in":
        return f.column, f"in.{_list_literal(f.value or ())}"
    if f.op == "not_in":
        return f.column, f"not.in.{_list_literal(f.value or ())}"
    if f.op == "is_null":
        return f.column, "is.null"
    return f.column, "not.is.null"


def build_params(
    filters: Sequence[Filter] = (),
    order: Sequence[Order] = (),
    limit: Optional[int] = None,
    offset: Optional[int] = None,
    columns: Optional[Sequence[str]] = None,
) -> List[Tuple[str, str]]:
    """Query-string pairs for a read (or the filter part of a write)."""
    params = [encode_filter(f) for f in filters]
    if columns:
        params.append(("select", ",".join(columns)))
    if order:
        params.append((
            "order",
            ",".join(f"{col}.{'desc' if descending else 'asc'}" for col, descending in order),
        ))
    if limit is not None:
        params.append(("limit", str(limit)))
    if offset is not None:
        params.append(("offset", str(offset)))
    return params


class RestStore(SeriesStore):
    """PostgREST-backed series store.

    Parameters
    ----------
    url : str
        Service base URL; ``/rest/v1`` is appended.
    api_key : str
        Service key, sent as ``apikey`` and as a bearer token.
    session : aiohttp.ClientSession or None
        Optional shared session. If None, creates one on connect.
    """

    def __init__(
        self,
        url: str,
        api_key: Optional[str],
        timeout_seconds: float = 30.0,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._base_url = url.rstrip("/") + "/rest/v1"
        self._api_key = api_key or ""
        self._timeout = timeout_seconds
        self._chunk_size = max(1, chunk_size)
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def connect(self) -> None:
        await self._get_session()
        logger.info("REST store ready: %s", self._base_url)

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    def _headers(self, prefer: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "apikey": self._api_key,
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    async def _request(
        self,
        method: str,
        table: str,
        params: List[Tuple[str, str]],
        body: Any = None,
        prefer: Optional[str] = None,
    ) -> Any:
        """Send one request; returns parsed JSON (or None for an empty body)."""
        session = await self._get_session()
        url = f"{self._base_url}/{table}"
        try:
            async with session.request(
                method,
                url,
                params=params,
                data=json.dumps(body) if body is not None else None,
                headers=self._headers(prefer),
            ) as resp:
                text = await resp.text()
                if resp.status < 200 or resp.status >= 300:
                    raise StoreError(
                        f"{method} {table} returned HTTP {resp.status}: {text[:300]}"
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise StoreError(f"{method} {table} failed: {exc}") from exc
        if not text:
            return None
        try:
            return json.loads(text)
        except ValueError as exc:
            raise StoreError(f"{method} {table} returned invalid JSON") from exc

    # ─── SeriesStore API ──────────────────────────────────────────────────

    async def query(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        order: Sequence[Order] = (),
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        columns: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]:
        params = build_params(filters, order, limit, offset, columns)
        data = await self._request("GET", table, params)
        if data is None:
            return []
        if not isinstance(data, list):
            raise StoreError(f"GET {table} returned {type(data).__name__}, expected list")
        return data

    async def upsert(
        self,
        table: str,
        rows: Sequence[Dict[str, Any]],
        conflict: Sequence[str],
        ignore_duplicates: bool = False,
    ) -> int:
        if not rows:
            return 0
        resolution = "ignore-duplicates" if ignore_duplicates else "merge-duplicates"
        prefer = f"resolution={resolution},return=representation"
        params = [("on_conflict", ",".join(conflict))]
        written = 0
        for start in range(0, len(rows), self._chunk_size):
            chunk = [
                {k: encode_value(v) for k, v in row.items()}
                for row in rows[start:start + self._chunk_size]
            ]
            data = await self._request("POST", table, params, body=chunk, prefer=prefer)
            written += len(data) if isinstance(data, list) else len(chunk)
        logger.debug("Upserted %d rows into %s", written, table)
        return written

    async def update(
        self,
        table: str,
        values: Dict[str, Any],
        filters: Sequence[Filter],
    ) -> int:
        if not values:
            return 0
        body = {k: encode_value(v) for k, v in values.items()}
        data = await self._request(
            "PATCH", table, build_params(filters), body=body, prefer="return=representation",
        )
        return len(data) if isinstance(data, list) else 0

    async def delete(self, table: str, filters: Sequence[Filter]) -> None:
        if not filters:
            raise StoreError(f"Refusing unfiltered delete on {table}")
        await self._request("DELETE", table, build_params(filters))

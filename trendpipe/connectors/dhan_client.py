"""
Dhan REST API Client
====================

Async client for the Dhan v2 intraday chart endpoint
(``POST /v2/charts/intraday``).  Returns parsed :class:`Bar` objects in
ascending time order.

Authentication uses the ``access-token`` and ``client-id`` headers.  The
client is stateless and does not retry: a non-2xx response or a payload
without the expected arrays raises :class:`ProviderError` and the caller
decides what to do with the pair.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

import aiohttp

from ..core.errors import ProviderError
from ..core.models import Bar, Instrument

logger = logging.getLogger("trendpipe.connectors.dhan")

# ═══════════════════════════════════════════════════════════════════════════════
#  Constants
# ═══════════════════════════════════════════════════════════════════════════════

DHAN_BASE_URL = "https://api.dhan.co/v2"
INTRADAY_PATH = "/charts/intraday"

# Dhan expects exchange-local wall-clock times in this format
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
EXCHANGE_TZ = "Asia/Kolkata"

_ARRAY_FIELDS = ("open", "high", "low", "close", "volume", "timestamp")


def parse_intraday_payload(data: Any) -> List[Bar]:
    """Turn Dhan's parallel-array payload into ascending :class:`Bar` objects.

    Raises ProviderError when an expected array is missing or the arrays
    disagree in length.
    """
    if not isinstance(data, dict):
        raise ProviderError(f"Malformed Dhan payload: expected object, got {type(data).__name__}")
    missing = [f for f in _ARRAY_FIELDS if not isinstance(data.get(f), list)]
    if missing:
        raise ProviderError(f"Malformed Dhan payload: missing arrays {missing}")
    lengths = {len(data[f]) for f in _ARRAY_FIELDS}
    if len(lengths) != 1:
        raise ProviderError(f"Malformed Dhan payload: array lengths differ {sorted(lengths)}")

    bars: List[Bar] = []
    try:
        for i, ts in enumerate(data["timestamp"]):
            bars.append(Bar(
                timestamp=datetime.fromtimestamp(float(ts), tz=timezone.utc),
                open=float(data["open"][i]),
                high=float(data["high"][i]),
                low=float(data["low"][i]),
                close=float(data["close"][i]),
                volume=float(data["volume"][i] or 0.0),
            ))
    except (TypeError, ValueError) as exc:
        raise ProviderError(f"Malformed Dhan payload: {exc}") from exc
    bars.sort(key=lambda b: b.timestamp)
    return bars


class DhanClient:
    """Async Dhan v2 market-data client.

    Parameters
    ----------
    client_id, access_token : str
        Dhan API credentials.
    base_url : str
        API base URL (``https://api.dhan.co/v2``).
    session : aiohttp.ClientSession or None
        Optional shared session. If None, creates one internally.
    """

    def __init__(
        self,
        client_id: str,
        access_token: str,
        base_url: str = DHAN_BASE_URL,
        timeout_seconds: float = 30.0,
        exchange_tz: str = EXCHANGE_TZ,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._client_id = client_id
        self._access_token = access_token
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._tz = ZoneInfo(exchange_tz)
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    def _format(self, dt: datetime) -> str:
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(self._tz).strftime(DATE_FORMAT)

    def build_request(
        self,
        instrument: Instrument,
        timeframe: str,
        from_dt: datetime,
        to_dt: datetime,
    ) -> Dict[str, Any]:
        return {
            "securityId": instrument.security_id,
            "exchangeSegment": instrument.exchange_segment,
            "instrument": instrument.instrument_type,
            "interval": timeframe,
            "oi": False,
            "fromDate": self._format(from_dt),
            "toDate": self._format(to_dt),
        }

    async def fetch(
        self,
        instrument: Instrument,
        timeframe: str,
        from_dt: datetime,
        to_dt: datetime,
    ) -> List[Bar]:
        """Fetch bars for *instrument* at *timeframe* between two instants."""
        if not instrument.has_routing:
            raise ProviderError(f"Instrument {instrument.symbol} has no provider routing")

        session = await self._get_session()
        url = f"{self._base_url}{INTRADAY_PATH}"
        headers = {
            "access-token": self._access_token,
            "client-id": self._client_id,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        body = self.build_request(instrument, timeframe, from_dt, to_dt)
        try:
            async with session.post(url, json=body, headers=headers) as resp:
                if not 200 <= resp.status < 300:
                    text = await resp.text()
                    raise ProviderError(
                        f"Dhan HTTP {resp.status} for {instrument.symbol}/{timeframe}: {text[:200]}"
                    )
                try:
                    data = await resp.json(content_type=None)
                except ValueError as exc:
                    raise ProviderError(
                        f"Malformed Dhan payload for {instrument.symbol}/{timeframe}: "
                        f"body is not JSON ({exc})"
                    ) from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ProviderError(f"Dhan request failed for {instrument.symbol}/{timeframe}: {exc}") from exc

        bars = parse_intraday_payload(data)
        logger.debug(
            "Fetched %d bars for %s/%s (%s -> %s)",
            len(bars), instrument.symbol, timeframe, body["fromDate"], body["toDate"],
        )
        return bars

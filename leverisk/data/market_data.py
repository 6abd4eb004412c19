"""
Exchange market data access.

This module wraps the public (unsigned) part of the futures REST API:
ticker prices, candles, leverage brackets and the list of tradable
perpetual pairs.  It also holds `ExchangeClient`, the HTTP plumbing
shared with the signed order gateway: session handling, per-call
deadlines and translation of transport failures and non-2xx answers
into the package's exception hierarchy.

No call is ever retried here.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlencode
import aiohttp
import pandas as pd

from ..config.schema import ExchangeConfig
from ..execution.errors import (
    ExchangeRejectedError,
    ExchangeUnavailableError,
    MalformedResponseError,
    NetworkTimeoutError,
)
from ..execution.models import LeverageBracket
from ..utils.timeutils import from_ms

logger = logging.getLogger(__name__)

KLINE_COLUMNS = ['open_time', 'open', 'high', 'low', 'close', 'volume', 'close_time']


def format_number(value: float) -> str:
    """Render a price or quantity without exponent or trailing zeros."""
    text = f"{float(value):.8f}".rstrip('0').rstrip('.')
    return text or '0'


def parse_error(status: int, body: str) -> ExchangeRejectedError:
    """Build the error for a non-2xx answer.

    The exchange message is used when the body is a JSON object with a
    ``msg`` field, otherwise the message is ``HTTP <status>``.
    """
    code: Optional[int] = None
    message = f"HTTP {status}"
    try:
        payload = json.loads(body) if body else None
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        if payload.get('msg'):
            message = str(payload['msg'])
        if payload.get('code') is not None:
            try:
                code = int(payload['code'])
            except (TypeError, ValueError):
                code = None
    return ExchangeRejectedError(status, message, code)


class ExchangeClient:
    """HTTP plumbing shared by the market data client and the order gateway.

    Parameters
    ----------
    config : ExchangeConfig, optional
        Base URL and deadlines.
    session : aiohttp.ClientSession, optional
        Session to use.  When omitted one is created lazily and closed by
        `close()`; an injected session is left open.
    """

    def __init__(self, config: Optional[ExchangeConfig] = None,
                 session: Optional[aiohttp.ClientSession] = None) -> None:
        self.config = config or ExchangeConfig()
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> 'ExchangeClient':
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _build_url(self, path: str, query: str = '') -> str:
        url = f"{self.config.base_url.rstrip('/')}/{path.lstrip('/')}"
        return f"{url}?{query}" if query else url

    async def _send(self, method: str, url: str, body: Optional[str],
                    headers: Dict[str, str], timeout: float) -> Any:
        session = await self._get_session()
        async with session.request(
            method,
            url,
            data=body,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as resp:
            status = resp.status
            text = await resp.text()
        if not 200 <= status < 300:
            raise parse_error(status, text)
        if not text:
            return {}
        try:
            return json.loads(text)
        except ValueError:
            raise MalformedResponseError(f"{method} answered HTTP {status} with a non-JSON body") from None

    async def _request(
        self,
        method: str,
        path: str,
        query: str = '',
        body: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """Issue one HTTP call under a hard deadline.

        Raises
        ------
        NetworkTimeoutError
            The deadline elapsed.
        ExchangeUnavailableError
            The connection failed before an answer was received.
        ExchangeRejectedError
            The exchange answered with a non-2xx status.
        MalformedResponseError
            A 2xx answer could not be decoded.
        """
        timeout = timeout if timeout is not None else self.config.query_timeout
        request_headers = dict(headers or {})
        if body is not None:
            request_headers['Content-Type'] = 'application/x-www-form-urlencoded'
        logger.debug("%s %s", method, path)
        try:
            return await asyncio.wait_for(
                self._send(method, self._build_url(path, query), body, request_headers, timeout),
                timeout,
            )
        except asyncio.TimeoutError as exc:
            raise NetworkTimeoutError(f"{method} {path} timed out after {timeout:g}s") from exc
        except aiohttp.ClientError as exc:
            raise ExchangeUnavailableError(f"{method} {path} failed: {exc.__class__.__name__}") from exc


class MarketDataClient(ExchangeClient):
    """Unsigned market data queries."""

    async def _public_get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self._request('GET', path, urlencode(params or {}))

    async def fetch_ticker_price(self, symbol: str) -> float:
        data = await self._public_get('/fapi/v1/ticker/price', {'symbol': symbol})
        return float(data['price'])

    async def fetch_prices(self, symbols: Iterable[str]) -> Dict[str, float]:
        """Latest price of each requested symbol.

        One call returns every ticker; symbols the exchange does not list
        are absent from the result.
        """
        wanted = set(symbols)
        if not wanted:
            return {}
        data = await self._public_get('/fapi/v1/ticker/price')
        return {row['symbol']: float(row['price']) for row in data if row.get('symbol') in wanted}

    async def fetch_klines(self, symbol: str, interval: str = '1h', limit: int = 100) -> pd.DataFrame:
        """Return candles as a DataFrame indexed by UTC open time.

        Columns are ``open``, ``high``, ``low``, ``close`` and ``volume``.
        """
        rows = await self._public_get('/fapi/v1/klines', {'symbol': symbol, 'interval': interval, 'limit': limit})
        if not rows:
            return pd.DataFrame(columns=['open', 'high', 'low', 'close', 'volume'])
        frame = pd.DataFrame([row[:len(KLINE_COLUMNS)] for row in rows], columns=KLINE_COLUMNS)
        frame.index = pd.DatetimeIndex([from_ms(v) for v in frame['open_time']], name='time')
        frame = frame[['open', 'high', 'low', 'close', 'volume']].astype(float)
        return frame

    async def fetch_perpetual_pairs(self, quote: str = 'USDT') -> List[str]:
        """Symbols of trading perpetual contracts settled in `quote`."""
        data = await self._public_get('/fapi/v1/exchangeInfo')
        pairs = [
            s['symbol'] for s in data.get('symbols', [])
            if s.get('status') == 'TRADING'
            and s.get('contractType') == 'PERPETUAL'
            and s.get('quoteAsset') == quote
        ]
        return sorted(pairs)


def parse_leverage_brackets(data: Any) -> Dict[str, List[LeverageBracket]]:
    """Convert the leverage-bracket payload into `LeverageBracket` lists."""
    if isinstance(data, dict):
        data = [data]
    result: Dict[str, List[LeverageBracket]] = {}
    for entry in data or []:
        brackets = [
            LeverageBracket(
                bracket=int(b['bracket']),
                initial_leverage=int(b['initialLeverage']),
                notional_cap=float(b['notionalCap']),
                notional_floor=float(b['notionalFloor']),
                maint_margin_ratio=float(b['maintMarginRatio']),
            )
            for b in entry.get('brackets', [])
        ]
        result[entry['symbol']] = sorted(brackets, key=lambda b: b.bracket)
    return result

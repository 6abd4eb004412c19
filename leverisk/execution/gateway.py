"""
Signed order gateway for the USD-M futures REST API.

Every call appends ``timestamp`` and ``recvWindow`` to its parameters,
signs the url-encoded query with HMAC-SHA256 using the account secret
and sends the API key in the ``X-MBX-APIKEY`` header.  GET and DELETE
calls carry the signed query in the URL, POST calls in a form body.

Order placement runs under `ExchangeConfig.order_timeout`, reads and
cancellations under `ExchangeConfig.query_timeout`.  The gateway never
retries; the caller decides what to do with each typed failure.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode
import aiohttp

from ..config.schema import ExchangeConfig
from ..data.market_data import ExchangeClient, format_number, parse_leverage_brackets
from ..utils.timeutils import now_ms
from .errors import CredentialsMissingError, MalformedResponseError
from .models import ExchangeCredentials, ExchangePosition, LeverageBracket, OpenOrder

logger = logging.getLogger(__name__)

MARKET = 'MARKET'
LIMIT = 'LIMIT'
STOP_MARKET = 'STOP_MARKET'
TAKE_PROFIT_MARKET = 'TAKE_PROFIT_MARKET'


def sign(query: str, secret: str) -> str:
    """Hex HMAC-SHA256 of `query` keyed by `secret`."""
    return hmac.new(secret.encode('utf-8'), query.encode('utf-8'), hashlib.sha256).hexdigest()


def signed_query(params: Dict[str, Any], secret: str, recv_window: int,
                 timestamp: Optional[int] = None) -> str:
    """Return the url-encoded `params` with timestamp, window and signature appended."""
    payload = dict(params)
    payload['timestamp'] = timestamp if timestamp is not None else now_ms()
    payload['recvWindow'] = recv_window
    query = urlencode(payload)
    return f"{query}&signature={sign(query, secret)}"


def _parse_order(data: Dict[str, Any]) -> OpenOrder:
    """Build an `OpenOrder` from an order payload.

    Raises
    ------
    MalformedResponseError
        If the payload carries no order id or a non-numeric amount.
    """
    if not isinstance(data, dict) or data.get('orderId') is None:
        raise MalformedResponseError("Order response without an orderId")
    try:
        return OpenOrder(
            order_id=str(data['orderId']),
            symbol=data.get('symbol', ''),
            side=data.get('side', ''),
            type=data.get('type', data.get('origType', '')),
            price=float(data.get('price') or 0.0),
            stop_price=float(data.get('stopPrice') or 0.0),
            quantity=float(data.get('origQty') or 0.0),
            status=data.get('status', ''),
            reduce_only=bool(data.get('reduceOnly', False)),
        )
    except (TypeError, ValueError) as exc:
        raise MalformedResponseError(f"Unreadable order response: {exc}") from None


class OrderGateway(ExchangeClient):
    """Signed account and order operations.

    Parameters
    ----------
    credentials : ExchangeCredentials or None
        API key and secret.  Every call raises `CredentialsMissingError`
        when they are absent or blank.
    config : ExchangeConfig, optional
        Base URL, deadlines and receive window.
    session : aiohttp.ClientSession, optional
        Session to reuse.
    """

    def __init__(self, credentials: Optional[ExchangeCredentials],
                 config: Optional[ExchangeConfig] = None,
                 session: Optional[aiohttp.ClientSession] = None) -> None:
        super().__init__(config, session)
        self.credentials = credentials

    def _require_credentials(self) -> ExchangeCredentials:
        if self.credentials is None or not self.credentials.is_complete:
            raise CredentialsMissingError("Exchange API credentials are not configured")
        return self.credentials

    async def _signed(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
                      timeout: Optional[float] = None) -> Any:
        creds = self._require_credentials()
        query = signed_query(params or {}, creds.api_secret, self.config.recv_window)
        headers = {'X-MBX-APIKEY': creds.api_key}
        if method == 'POST':
            return await self._request(method, path, body=query, headers=headers, timeout=timeout)
        return await self._request(method, path, query=query, headers=headers, timeout=timeout)

    async def _place(self, params: Dict[str, Any]) -> OpenOrder:
        logger.info("Placing %s %s order on %s", params['side'], params['type'], params['symbol'])
        data = await self._signed('POST', '/fapi/v1/order', params, timeout=self.config.order_timeout)
        order = _parse_order(data)
        logger.info("Order %s accepted for %s", order.order_id, order.symbol)
        return order

    async def place_market_order(self, symbol: str, side: str, quantity: float,
                                 reduce_only: bool = False) -> OpenOrder:
        params: Dict[str, Any] = {
            'symbol': symbol,
            'side': side,
            'type': MARKET,
            'quantity': format_number(quantity),
        }
        if reduce_only:
            params['reduceOnly'] = 'true'
        return await self._place(params)

    async def place_limit_order(self, symbol: str, side: str, quantity: float, price: float,
                                reduce_only: bool = False) -> OpenOrder:
        params: Dict[str, Any] = {
            'symbol': symbol,
            'side': side,
            'type': LIMIT,
            'timeInForce': 'GTC',
            'quantity': format_number(quantity),
            'price': format_number(price),
        }
        if reduce_only:
            params['reduceOnly'] = 'true'
        return await self._place(params)

    async def place_stop_market_order(self, symbol: str, side: str, quantity: float,
                                      stop_price: float) -> OpenOrder:
        """Reduce-only stop order closing `quantity` at `stop_price`."""
        return await self._place({
            'symbol': symbol,
            'side': side,
            'type': STOP_MARKET,
            'quantity': format_number(quantity),
            'stopPrice': format_number(stop_price),
            'reduceOnly': 'true',
        })

    async def place_take_profit_market_order(self, symbol: str, side: str, quantity: float,
                                             stop_price: float) -> OpenOrder:
        """Reduce-only take-profit order closing `quantity` at `stop_price`."""
        return await self._place({
            'symbol': symbol,
            'side': side,
            'type': TAKE_PROFIT_MARKET,
            'quantity': format_number(quantity),
            'stopPrice': format_number(stop_price),
            'reduceOnly': 'true',
        })

    async def cancel_order(self, symbol: str, order_id: str) -> None:
        logger.info("Cancelling order %s on %s", order_id, symbol)
        await self._signed('DELETE', '/fapi/v1/order', {'symbol': symbol, 'orderId': order_id})

    async def open_orders(self, symbol: Optional[str] = None) -> List[OpenOrder]:
        params = {'symbol': symbol} if symbol else {}
        data = await self._signed('GET', '/fapi/v1/openOrders', params)
        return [_parse_order(row) for row in data]

    async def position_risk(self) -> List[ExchangePosition]:
        """Open positions on the account; flat rows are dropped."""
        data = await self._signed('GET', '/fapi/v2/positionRisk')
        positions = []
        for row in data:
            amount = float(row.get('positionAmt') or 0.0)
            if amount == 0:
                continue
            positions.append(ExchangePosition(
                symbol=row['symbol'],
                amount=amount,
                entry_price=float(row.get('entryPrice') or 0.0),
                leverage=int(float(row.get('leverage') or 1)),
                mark_price=float(row.get('markPrice') or 0.0),
                liquidation_price=float(row.get('liquidationPrice') or 0.0),
            ))
        return positions

    async def account_balance(self, asset: str = 'USDT') -> float:
        """Available balance of `asset`, 0 when the account holds none."""
        data = await self._signed('GET', '/fapi/v2/balance')
        for row in data:
            if row.get('asset') == asset:
                return float(row.get('availableBalance') or row.get('balance') or 0.0)
        return 0.0

    async def leverage_brackets(self, symbol: Optional[str] = None) -> Dict[str, List[LeverageBracket]]:
        params = {'symbol': symbol} if symbol else {}
        data = await self._signed('GET', '/fapi/v1/leverageBracket', params)
        return parse_leverage_brackets(data)

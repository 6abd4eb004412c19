"""In-memory stand-ins for the exchange used by the async tests."""

import asyncio
from typing import Dict, List, Optional

from leverisk.execution.models import (
    LONG,
    ExchangeCredentials,
    ExchangePosition,
    OpenOrder,
    Position,
    StopLoss,
    TakeProfitLevel,
)

CREDENTIALS = ExchangeCredentials(api_key='test-key', api_secret='test-secret')


def make_position(symbol='BTCUSDT', direction=LONG, entry=100.0, investment=100.0, leverage=10,
                  tps=(105.0, 110.0, 120.0), stop=95.0, pid=None):
    take_profits = [
        TakeProfitLevel(level=i, price=p, profit_usd=0.0, profit_percent=0.0, rationale='')
        for i, p in enumerate(tps, start=1)
    ]
    stop_loss = StopLoss(price=stop, loss_usd=0.0, loss_percent=0.0, capital_risk_percent=0.0,
                         rationale='', partial_exit_strategy='')
    return Position(id=pid or symbol.lower(), symbol=symbol, direction=direction, entry_price=entry,
                    leverage=leverage, investment_amount=investment,
                    take_profits=take_profits, stop_loss=stop_loss)


class FakeGateway:
    """Records every call in order; `failures` maps a call label to an exception."""

    def __init__(self, failures: Optional[Dict[str, Exception]] = None,
                 remote_positions: Optional[List[ExchangePosition]] = None,
                 open_orders: Optional[List[OpenOrder]] = None) -> None:
        self.failures = failures or {}
        self.remote_positions = remote_positions or []
        self.resting = list(open_orders or [])
        self.calls: List[str] = []
        self.on_call = None
        self._next_id = 1000

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    def factory(self, credentials):
        return self

    async def _call(self, label: str) -> None:
        self.calls.append(label)
        if self.on_call is not None:
            self.on_call(label)
        await asyncio.sleep(0)
        if label in self.failures:
            raise self.failures[label]

    def _order(self, symbol, side, type_, price=0.0) -> OpenOrder:
        self._next_id += 1
        return OpenOrder(order_id=str(self._next_id), symbol=symbol, side=side, type=type_,
                         price=0.0, stop_price=price, quantity=1.0, status='NEW')

    async def place_market_order(self, symbol, side, quantity, reduce_only=False):
        await self._call('entry')
        return self._order(symbol, side, 'MARKET')

    async def place_take_profit_market_order(self, symbol, side, quantity, stop_price):
        await self._call(f'tp@{stop_price:g}')
        return self._order(symbol, side, 'TAKE_PROFIT_MARKET', stop_price)

    async def place_stop_market_order(self, symbol, side, quantity, stop_price):
        await self._call(f'sl@{stop_price:g}')
        return self._order(symbol, side, 'STOP_MARKET', stop_price)

    async def cancel_order(self, symbol, order_id):
        await self._call(f'cancel:{order_id}')

    async def open_orders(self, symbol=None):
        await self._call('open_orders')
        return [o for o in self.resting if symbol is None or o.symbol == symbol]

    async def position_risk(self):
        await self._call('position_risk')
        return list(self.remote_positions)

    async def leverage_brackets(self, symbol=None):
        await self._call('brackets')
        return {}


class FakeMarket:
    """Market data client returning fixed prices and candles."""

    def __init__(self, prices=None, candles=None) -> None:
        self.prices = prices or {}
        self.candles = candles or {}

    async def fetch_prices(self, symbols):
        return {s: p for s, p in self.prices.items() if s in set(symbols)}

    async def fetch_klines(self, symbol, interval='1h', limit=100):
        return self.candles.get(symbol, [])

    async def close(self):
        pass

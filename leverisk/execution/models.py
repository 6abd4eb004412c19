"""
Position, order and suggestion models.

These dataclasses represent the objects passed between the risk
calculators, the advisor and the execution layer.  Keeping them in a
separate module improves readability and makes unit testing easier.
Positions serialise to plain dictionaries so that the persistence
layer can store them as JSON.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import uuid
import pandas as pd

from ..utils.timeutils import now_utc, to_utc
from .errors import InputValidationError

LONG = "Long"
SHORT = "Short"
DIRECTIONS = (LONG, SHORT)

TAKE_PROFIT = "take-profit"
STOP_LOSS = "stop-loss"

ACCEPTED = "accepted"
DISMISSED = "dismissed"

TP_HIT = "TP Hit"
SL_HIT = "SL Hit"
MANUALLY_CLOSED = "Manually Closed"
TRADE_OUTCOMES = (TP_HIT, SL_HIT, MANUALLY_CLOSED)


def direction_sign(direction: str) -> int:
    """Return +1 for a long position and -1 for a short one."""
    if direction == LONG:
        return 1
    if direction == SHORT:
        return -1
    raise InputValidationError(f"Unknown position direction: {direction!r}")


def new_position_id() -> str:
    return uuid.uuid4().hex


@dataclass
class TakeProfitLevel:
    """One take-profit target of a position."""
    level: int
    price: float
    profit_usd: float
    profit_percent: float
    rationale: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'level': self.level,
            'price': self.price,
            'profit_usd': self.profit_usd,
            'profit_percent': self.profit_percent,
            'rationale': self.rationale,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TakeProfitLevel':
        return cls(
            level=int(data['level']),
            price=float(data['price']),
            profit_usd=float(data.get('profit_usd', 0.0)),
            profit_percent=float(data.get('profit_percent', 0.0)),
            rationale=str(data.get('rationale', '')),
        )


@dataclass
class StopLoss:
    """The single stop-loss record of a position."""
    price: float
    loss_usd: float
    loss_percent: float
    capital_risk_percent: float
    rationale: str
    partial_exit_strategy: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'price': self.price,
            'loss_usd': self.loss_usd,
            'loss_percent': self.loss_percent,
            'capital_risk_percent': self.capital_risk_percent,
            'rationale': self.rationale,
            'partial_exit_strategy': self.partial_exit_strategy,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StopLoss':
        return cls(
            price=float(data['price']),
            loss_usd=float(data.get('loss_usd', 0.0)),
            loss_percent=float(data.get('loss_percent', 0.0)),
            capital_risk_percent=float(data.get('capital_risk_percent', 0.0)),
            rationale=str(data.get('rationale', '')),
            partial_exit_strategy=str(data.get('partial_exit_strategy', '')),
        )


@dataclass
class ExchangeOrderIds:
    """Exchange order identifiers linked to a position once live orders exist."""
    entry: Optional[str] = None
    stop_loss: Optional[str] = None
    take_profits: Dict[int, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'entry': self.entry,
            'stop_loss': self.stop_loss,
            'take_profits': {str(k): v for k, v in self.take_profits.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ExchangeOrderIds':
        return cls(
            entry=data.get('entry'),
            stop_loss=data.get('stop_loss'),
            take_profits={int(k): str(v) for k, v in (data.get('take_profits') or {}).items()},
        )


@dataclass
class Position:
    """A tracked leveraged futures position."""
    id: str
    symbol: str
    direction: str  # 'Long' or 'Short'
    entry_price: float
    leverage: int
    investment_amount: float
    take_profits: List[TakeProfitLevel]
    stop_loss: StopLoss
    created_at: pd.Timestamp = field(default_factory=now_utc)
    order_ids: Optional[ExchangeOrderIds] = None
    imported: bool = False

    @property
    def total_exposure(self) -> float:
        return self.investment_amount * self.leverage

    @property
    def quantity(self) -> float:
        """Contract quantity implied by the notional exposure."""
        return self.total_exposure / self.entry_price

    @property
    def entry_side(self) -> str:
        return 'BUY' if self.direction == LONG else 'SELL'

    @property
    def close_side(self) -> str:
        return 'SELL' if self.direction == LONG else 'BUY'

    def validate(self, max_leverage: int = 125) -> None:
        """Check the structural invariants of the position.

        Raises
        ------
        InputValidationError
            If sizing is non-positive, leverage is outside ``1..max_leverage``
            or an exit level sits on the wrong side of the entry price.
        """
        sign = direction_sign(self.direction)
        if self.entry_price <= 0:
            raise InputValidationError("Entry price must be positive")
        if self.investment_amount <= 0:
            raise InputValidationError("Investment amount must be positive")
        if int(self.leverage) != self.leverage or not 1 <= self.leverage <= max_leverage:
            raise InputValidationError(f"Leverage must be an integer between 1 and {max_leverage}")
        if (self.stop_loss.price - self.entry_price) * sign >= 0:
            raise InputValidationError("Stop-loss must be on the loss side of the entry price")
        for tp in self.take_profits:
            if (tp.price - self.entry_price) * sign <= 0:
                raise InputValidationError(f"TP{tp.level} must be on the profit side of the entry price")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'symbol': self.symbol,
            'direction': self.direction,
            'entry_price': self.entry_price,
            'leverage': self.leverage,
            'investment_amount': self.investment_amount,
            'take_profits': [tp.to_dict() for tp in self.take_profits],
            'stop_loss': self.stop_loss.to_dict(),
            'created_at': self.created_at.isoformat(),
            'order_ids': self.order_ids.to_dict() if self.order_ids else None,
            'imported': self.imported,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Position':
        order_ids = data.get('order_ids')
        return cls(
            id=str(data['id']),
            symbol=str(data['symbol']),
            direction=str(data['direction']),
            entry_price=float(data['entry_price']),
            leverage=int(data['leverage']),
            investment_amount=float(data['investment_amount']),
            take_profits=[TakeProfitLevel.from_dict(tp) for tp in data.get('take_profits', [])],
            stop_loss=StopLoss.from_dict(data['stop_loss']),
            created_at=to_utc(data['created_at']),
            order_ids=ExchangeOrderIds.from_dict(order_ids) if order_ids else None,
            imported=bool(data.get('imported', False)),
        )


@dataclass
class PriceSnapshot:
    """Latest ticker price of a symbol.  Never persisted."""
    symbol: str
    price: float
    timestamp: pd.Timestamp = field(default_factory=now_utc)


@dataclass
class PositionWithPrice:
    """A position marked to the latest price."""
    position: Position
    current_price: float
    pnl_usd: float
    pnl_percent: float
    distance_to_tp1: float
    distance_to_sl: float
    price_available: bool = True


@dataclass
class AdjustmentSuggestion:
    """A proposed revision of a position's take-profit or stop-loss.

    `id` is stable for a given position, rule and current level so that
    a dismissed suggestion keeps the same identity on later evaluations.
    """
    id: str
    position_id: str
    kind: str  # 'take-profit' or 'stop-loss'
    rule: str
    current_level: float
    proposed_level: float
    rationale: str
    confidence: int
    timestamp: pd.Timestamp = field(default_factory=now_utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'position_id': self.position_id,
            'kind': self.kind,
            'rule': self.rule,
            'current_level': self.current_level,
            'proposed_level': self.proposed_level,
            'rationale': self.rationale,
            'confidence': self.confidence,
            'timestamp': self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AdjustmentSuggestion':
        return cls(
            id=str(data['id']),
            position_id=str(data['position_id']),
            kind=str(data['kind']),
            rule=str(data.get('rule', '')),
            current_level=float(data['current_level']),
            proposed_level=float(data['proposed_level']),
            rationale=str(data.get('rationale', '')),
            confidence=int(data.get('confidence', 0)),
            timestamp=to_utc(data['timestamp']),
        )


@dataclass
class AdjustmentHistoryEntry:
    """Audit record of an accepted or dismissed suggestion."""
    suggestion: AdjustmentSuggestion
    outcome: str  # 'accepted' or 'dismissed'
    timestamp: pd.Timestamp = field(default_factory=now_utc)

    @property
    def key(self) -> str:
        return f"{self.suggestion.id}|{self.outcome}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'suggestion': self.suggestion.to_dict(),
            'outcome': self.outcome,
            'timestamp': self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AdjustmentHistoryEntry':
        return cls(
            suggestion=AdjustmentSuggestion.from_dict(data['suggestion']),
            outcome=str(data['outcome']),
            timestamp=to_utc(data['timestamp']),
        )


@dataclass
class TradeRecord:
    """A closed position and how it ended."""
    id: str
    symbol: str
    direction: str
    entry_price: float
    exit_price: float
    investment_amount: float
    pnl_usd: float
    pnl_percent: float
    outcome: str  # one of TRADE_OUTCOMES
    timestamp: pd.Timestamp = field(default_factory=now_utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'symbol': self.symbol,
            'direction': self.direction,
            'entry_price': self.entry_price,
            'exit_price': self.exit_price,
            'investment_amount': self.investment_amount,
            'pnl_usd': self.pnl_usd,
            'pnl_percent': self.pnl_percent,
            'outcome': self.outcome,
            'timestamp': self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TradeRecord':
        return cls(
            id=str(data['id']),
            symbol=str(data['symbol']),
            direction=str(data['direction']),
            entry_price=float(data['entry_price']),
            exit_price=float(data['exit_price']),
            investment_amount=float(data['investment_amount']),
            pnl_usd=float(data['pnl_usd']),
            pnl_percent=float(data['pnl_percent']),
            outcome=str(data['outcome']),
            timestamp=to_utc(data['timestamp']),
        )


@dataclass
class ExchangeCredentials:
    """API key and secret.  `repr` masks both so they never reach a log."""
    api_key: str
    api_secret: str

    def __repr__(self) -> str:
        return "ExchangeCredentials(api_key='***', api_secret='***')"

    __str__ = __repr__

    @property
    def is_complete(self) -> bool:
        return bool(self.api_key.strip()) and bool(self.api_secret.strip())


@dataclass
class ExchangePosition:
    """An open position as reported by the exchange position-risk query."""
    symbol: str
    amount: float  # positive for long, negative for short
    entry_price: float
    leverage: int
    mark_price: float = 0.0
    liquidation_price: float = 0.0

    @property
    def direction(self) -> str:
        return LONG if self.amount > 0 else SHORT


@dataclass
class OpenOrder:
    """An order resting on the exchange."""
    order_id: str
    symbol: str
    side: str
    type: str
    price: float
    stop_price: float
    quantity: float
    status: str
    reduce_only: bool = False


@dataclass
class LeverageBracket:
    """One tier of the exchange's leverage/maintenance-margin schedule."""
    bracket: int
    initial_leverage: int
    notional_cap: float
    notional_floor: float
    maint_margin_ratio: float

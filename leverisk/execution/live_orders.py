"""
Live order placement for tracked positions.

A new position is protected on the exchange in three phases executed
strictly in order: the market entry, one reduce-only take-profit order
per target and finally the reduce-only stop.  Every step is attempted
once under its own deadline; a failed step is reported with its
identity (``entry``, ``TP2``, ``SL``...) and the sequence carries on.
Nothing is rolled back: orders the exchange accepted stay in place.

The local record is always written before the first order is sent.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
import logging
from typing import Awaitable, Callable, List, Optional

from ..config.schema import ExchangeConfig
from ..utils.notifications import Notifier
from ..utils.persistence import LiveTradingContext, PositionStore
from .errors import (
    CredentialsMissingError,
    ExchangeError,
    ExchangeRejectedError,
    NetworkTimeoutError,
)
from .gateway import STOP_MARKET, OrderGateway
from .models import (
    STOP_LOSS,
    TAKE_PROFIT,
    AdjustmentSuggestion,
    ExchangeCredentials,
    ExchangeOrderIds,
    OpenOrder,
    Position,
)

logger = logging.getLogger(__name__)

SUCCESS = "success"
REJECTED = "rejected"
TIMED_OUT = "timed-out"
FAILED = "failed"
SKIPPED = "skipped"

ENTRY_STEP = "entry"
SL_STEP = "SL"
CANCEL_SL_STEP = "cancel-SL"


def tp_step(level: int) -> str:
    return f"TP{level}"


@dataclass
class StepOutcome:
    """Result of one order step."""
    step: str
    status: str
    order_id: Optional[str] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status == SUCCESS


@dataclass
class LiveOrderReport:
    position_id: str
    steps: List[StepOutcome] = field(default_factory=list)
    skipped_reason: Optional[str] = None

    @property
    def attempted(self) -> bool:
        return self.skipped_reason is None

    @property
    def failed_steps(self) -> List[StepOutcome]:
        return [s for s in self.steps if s.status not in (SUCCESS, SKIPPED)]

    def outcome(self, step: str) -> Optional[StepOutcome]:
        for s in self.steps:
            if s.step == step:
                return s
        return None


GatewayFactory = Callable[[ExchangeCredentials], OrderGateway]


class LiveOrderOrchestrator:
    """Send and adjust exchange orders for locally tracked positions.

    Parameters
    ----------
    store : PositionStore
        Local position records; written before any order is sent.
    notifier : Notifier
        Receives one notice per step.
    config : ExchangeConfig, optional
        Used by the default gateway factory.
    gateway_factory : callable, optional
        Builds an `OrderGateway` for a set of credentials.  The returned
        object is used as an async context manager for one operation.
    """

    def __init__(self, store: PositionStore, notifier: Notifier,
                 config: Optional[ExchangeConfig] = None,
                 gateway_factory: Optional[GatewayFactory] = None) -> None:
        self.store = store
        self.notifier = notifier
        self.config = config or ExchangeConfig()
        self.gateway_factory = gateway_factory or (lambda creds: OrderGateway(creds, self.config))

    def _skip_reason(self, context: LiveTradingContext) -> Optional[str]:
        if not context.enabled:
            return "live trading disabled"
        if context.credentials is None or not context.credentials.is_complete:
            self.notifier.warning(
                "Live trading is enabled but API credentials are missing. "
                "The position was saved locally without exchange orders."
            )
            return "credentials missing"
        return None

    async def _attempt(self, step: str, symbol: str, call: Callable[[], Awaitable[OpenOrder]]) -> StepOutcome:
        try:
            order = await call()
        except NetworkTimeoutError as exc:
            outcome = StepOutcome(step, TIMED_OUT, message=str(exc))
        except ExchangeRejectedError as exc:
            outcome = StepOutcome(step, REJECTED, message=exc.message)
        except (ExchangeError, CredentialsMissingError) as exc:
            outcome = StepOutcome(step, FAILED, message=str(exc))
        except Exception as exc:
            logger.exception("%s order for %s failed unexpectedly", step, symbol)
            outcome = StepOutcome(step, FAILED, message=f"{exc.__class__.__name__}: {exc}")
        else:
            outcome = StepOutcome(step, SUCCESS, order_id=order.order_id)

        if outcome.ok:
            self.notifier.success(f"{step} order placed for {symbol} (order {outcome.order_id})",
                                  step=step, symbol=symbol)
        else:
            self.notifier.error(f"{step} order for {symbol} {outcome.status}: {outcome.message}",
                                step=step, symbol=symbol, status=outcome.status)
        return outcome

    def _record_order_ids(self, position_id: str, update: Callable[[ExchangeOrderIds], None]) -> None:
        current = self.store.get(position_id)
        if current is None:
            logger.warning("Position %s disappeared before its order ids could be stored", position_id)
            return
        ids = current.order_ids or ExchangeOrderIds()
        update(ids)
        self.store.upsert(replace(current, order_ids=ids))

    def commit(self, position: Position) -> None:
        """Persist `position` locally.  Always completes before any order is sent."""
        self.store.upsert(position)
        logger.info("Position %s %s %s saved", position.id, position.direction, position.symbol)

    async def open_position(self, position: Position, context: LiveTradingContext) -> LiveOrderReport:
        """Save `position` and, when live trading is ready, place its orders."""
        self.commit(position)
        return await self.place_orders(position, context)

    async def place_orders(self, position: Position, context: LiveTradingContext) -> LiveOrderReport:
        """Place entry, take-profit and stop orders for an already saved position."""
        report = LiveOrderReport(position.id)
        reason = self._skip_reason(context)
        if reason is not None:
            report.skipped_reason = reason
            logger.debug("Orders for %s not placed: %s", position.id, reason)
            return report

        symbol = position.symbol
        quantity = position.quantity
        close_side = position.close_side
        async with self.gateway_factory(context.credentials) as gateway:
            report.steps.append(await self._attempt(
                ENTRY_STEP, symbol,
                lambda: gateway.place_market_order(symbol, position.entry_side, quantity),
            ))
            for tp in position.take_profits:
                report.steps.append(await self._attempt(
                    tp_step(tp.level), symbol,
                    lambda tp=tp: gateway.place_take_profit_market_order(symbol, close_side, quantity, tp.price),
                ))
            report.steps.append(await self._attempt(
                SL_STEP, symbol,
                lambda: gateway.place_stop_market_order(symbol, close_side, quantity, position.stop_loss.price),
            ))

        def update(ids: ExchangeOrderIds) -> None:
            for outcome in report.steps:
                if not outcome.ok:
                    continue
                if outcome.step == ENTRY_STEP:
                    ids.entry = outcome.order_id
                elif outcome.step == SL_STEP:
                    ids.stop_loss = outcome.order_id
                else:
                    ids.take_profits[int(outcome.step[2:])] = outcome.order_id

        if any(s.ok for s in report.steps):
            self._record_order_ids(position.id, update)
        if report.failed_steps:
            missing = ", ".join(s.step for s in report.failed_steps)
            self.notifier.warning(f"{symbol} is only partially protected on the exchange; missing: {missing}",
                                  symbol=symbol)
        return report

    async def _cancel_stop(self, gateway: OrderGateway, position: Position) -> StepOutcome:
        stop_id = position.order_ids.stop_loss if position.order_ids else None
        try:
            if stop_id:
                await gateway.cancel_order(position.symbol, stop_id)
                cancelled = [stop_id]
            else:
                orders = await gateway.open_orders(position.symbol)
                cancelled = []
                for order in orders:
                    if order.type == STOP_MARKET:
                        await gateway.cancel_order(position.symbol, order.order_id)
                        cancelled.append(order.order_id)
        except NetworkTimeoutError as exc:
            return StepOutcome(CANCEL_SL_STEP, TIMED_OUT, message=str(exc))
        except ExchangeRejectedError as exc:
            return StepOutcome(CANCEL_SL_STEP, REJECTED, message=exc.message)
        except ExchangeError as exc:
            return StepOutcome(CANCEL_SL_STEP, FAILED, message=str(exc))
        except Exception as exc:
            logger.exception("Cancelling the stop for %s failed unexpectedly", position.symbol)
            return StepOutcome(CANCEL_SL_STEP, FAILED, message=f"{exc.__class__.__name__}: {exc}")
        if not cancelled:
            logger.info("No resting stop order found for %s", position.symbol)
        return StepOutcome(CANCEL_SL_STEP, SUCCESS, order_id=",".join(cancelled) or None)

    async def apply_adjustment(self, position: Position, suggestion: AdjustmentSuggestion,
                               context: LiveTradingContext) -> LiveOrderReport:
        """Mirror an accepted suggestion on the exchange.

        `position` is the record before the suggestion was applied.  A
        take-profit revision places a new take-profit order.  A stop
        revision cancels the resting stop first and places the new stop
        only once the cancellation succeeded.
        """
        report = LiveOrderReport(position.id)
        reason = self._skip_reason(context)
        if reason is not None:
            report.skipped_reason = reason
            return report

        symbol = position.symbol
        quantity = position.quantity
        close_side = position.close_side
        async with self.gateway_factory(context.credentials) as gateway:
            if suggestion.kind == TAKE_PROFIT:
                level = next((tp.level for tp in position.take_profits
                              if abs(tp.price - suggestion.current_level) <= 1e-9 * max(1.0, tp.price)), 1)
                outcome = await self._attempt(
                    tp_step(level), symbol,
                    lambda: gateway.place_take_profit_market_order(symbol, close_side, quantity,
                                                                   suggestion.proposed_level),
                )
                report.steps.append(outcome)
                if outcome.ok:
                    def record_tp(ids: ExchangeOrderIds) -> None:
                        ids.take_profits[level] = outcome.order_id

                    self._record_order_ids(position.id, record_tp)
            elif suggestion.kind == STOP_LOSS:
                cancel = await self._cancel_stop(gateway, position)
                report.steps.append(cancel)
                if not cancel.ok:
                    self.notifier.error(
                        f"Could not cancel the existing stop for {symbol} ({cancel.status}: {cancel.message}); "
                        f"the new stop was not placed",
                        step=CANCEL_SL_STEP, symbol=symbol,
                    )
                    report.steps.append(StepOutcome(SL_STEP, SKIPPED, message="existing stop not cancelled"))
                    return report
                outcome = await self._attempt(
                    SL_STEP, symbol,
                    lambda: gateway.place_stop_market_order(symbol, close_side, quantity,
                                                            suggestion.proposed_level),
                )
                report.steps.append(outcome)

                def update(ids: ExchangeOrderIds) -> None:
                    ids.stop_loss = outcome.order_id if outcome.ok else None

                self._record_order_ids(position.id, update)
        return report

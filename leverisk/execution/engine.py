"""
Position monitoring service.

`MonitoringEngine` ties the pieces together for a running session:

- a price refresh task marks every tracked position to the latest
  ticker price;
- an advisor task re-evaluates the marked positions against fresh
  candles and keeps the current set of adjustment suggestions;
- the reconciliation loop aligns the local store with the exchange.

User actions (creating a position, accepting or dismissing a
suggestion) commit locally first and return.  Mirroring the change on
the exchange runs afterwards as a separate task whose outcome is only
reported through the notifier.  Removing a position is local and
records the closed trade.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Coroutine, Dict, List, Optional, Set, Tuple
import pandas as pd

from ..config.schema import Config
from ..data.market_data import MarketDataClient
from ..reporting.exposure import PortfolioExposure, calculate_exposure
from ..reporting.performance import close_trade
from ..reporting.scenario import ScenarioResult, simulate_scenario
from ..risk.pnl import mark_position
from ..strategy.adjustments import AdjustmentAdvisor, apply_suggestion
from ..strategy.recovery import RecoveryOption, recovery_options
from ..utils.notifications import Notifier
from ..utils.persistence import StateRepository
from ..utils.scheduling import PeriodicTask
from ..utils.timeutils import now_utc
from .errors import CredentialsMissingError, ExchangeError, InputValidationError
from .gateway import OrderGateway
from .live_orders import LiveOrderOrchestrator, LiveOrderReport
from .models import (
    ACCEPTED,
    DISMISSED,
    AdjustmentHistoryEntry,
    AdjustmentSuggestion,
    LeverageBracket,
    Position,
    PositionWithPrice,
    PriceSnapshot,
    TradeRecord,
)
from .reconciliation import ReconciliationLoop

logger = logging.getLogger(__name__)


class MonitoringEngine:
    """Background monitoring and two-phase user actions.

    Parameters
    ----------
    config : Config
        Full configuration.
    repo : StateRepository
        Position, history and settings stores.
    notifier : Notifier
        Outcome notifications.
    market : MarketDataClient, optional
        Public market data client.
    gateway_factory : callable, optional
        Builds an `OrderGateway` from credentials; shared by the
        orchestrator and the reconciliation loop.
    """

    def __init__(self, config: Config, repo: StateRepository, notifier: Notifier,
                 market: Optional[MarketDataClient] = None, gateway_factory=None) -> None:
        self.config = config
        self.repo = repo
        self.notifier = notifier
        self.market = market or MarketDataClient(config.exchange)
        self.gateway_factory = gateway_factory or (lambda creds: OrderGateway(creds, config.exchange))
        self.advisor = AdjustmentAdvisor(config.advisor, config.risk)
        self.orchestrator = LiveOrderOrchestrator(repo.positions, notifier, config.exchange, self.gateway_factory)
        self.reconciler = ReconciliationLoop(
            repo.positions, repo.settings, notifier, config.exchange,
            interval=config.service.reconcile_interval, gateway_factory=self.gateway_factory,
            on_removed=self._on_exchange_close,
        )
        self.prices: Dict[str, PriceSnapshot] = {}
        self.brackets: Dict[str, List[LeverageBracket]] = {}
        self.suggestions: Dict[str, AdjustmentSuggestion] = {}
        self._pending: Set[asyncio.Task] = set()
        self._price_task = PeriodicTask('price-refresh', self.refresh_prices,
                                        config.service.price_refresh_interval)
        self._advisor_task = PeriodicTask('advisor', self.run_advisor, config.service.advisor_interval)

    # ------------------------------------------------------------------
    # Market state
    # ------------------------------------------------------------------
    async def refresh_prices(self) -> Dict[str, float]:
        """Fetch the latest price of every tracked symbol."""
        symbols = {p.symbol for p in self.repo.positions.load()}
        if not symbols:
            return {}
        try:
            fresh = await self.market.fetch_prices(symbols)
        except ExchangeError as exc:
            logger.warning("Price refresh failed: %s", exc)
            return {}
        missing = symbols - set(fresh)
        if missing:
            logger.debug("No ticker for %s", ", ".join(sorted(missing)))
        for symbol, price in fresh.items():
            self.prices[symbol] = PriceSnapshot(symbol, price)
        return fresh

    async def refresh_brackets(self) -> Dict[str, List[LeverageBracket]]:
        """Load the leverage brackets; needs credentials, failures are logged."""
        credentials = self.repo.settings.load().credentials
        if credentials is None:
            return self.brackets
        try:
            async with self.gateway_factory(credentials) as gateway:
                self.brackets = await gateway.leverage_brackets()
        except (ExchangeError, CredentialsMissingError) as exc:
            logger.warning("Leverage brackets unavailable, using default maintenance margin: %s", exc)
        return self.brackets

    def current_prices(self) -> Dict[str, float]:
        """Prices no older than ``service.price_max_age`` seconds.

        Older snapshots are dropped so positions on a symbol whose ticker
        stopped updating are reported as unpriced.
        """
        cutoff = now_utc() - pd.Timedelta(seconds=self.config.service.price_max_age)
        for symbol, snapshot in list(self.prices.items()):
            if snapshot.timestamp < cutoff:
                logger.debug("Price of %s is stale (%s), dropping it", symbol, snapshot.timestamp)
                del self.prices[symbol]
        return {symbol: snapshot.price for symbol, snapshot in self.prices.items()}

    def marked_positions(self) -> List[PositionWithPrice]:
        prices = self.current_prices()
        return [mark_position(p, prices.get(p.symbol)) for p in self.repo.positions.load()]

    def exposure(self) -> PortfolioExposure:
        settings = self.repo.settings.load()
        return calculate_exposure(
            self.repo.positions.load(),
            prices=self.current_prices() or None,
            brackets=self.brackets,
            total_capital=settings.total_capital or None,
            default_mmr=self.config.risk.default_maint_margin_ratio,
        )

    def scenario(self, shock_pct: float) -> ScenarioResult:
        return simulate_scenario(self.marked_positions(), shock_pct, self.brackets,
                                 self.config.risk.default_maint_margin_ratio)

    # ------------------------------------------------------------------
    # Advisor
    # ------------------------------------------------------------------
    async def run_advisor(self) -> List[AdjustmentSuggestion]:
        """Re-evaluate every priced position and replace the suggestion set."""
        marked = [m for m in self.marked_positions() if m.price_available]
        candles = {}
        for symbol in sorted({m.position.symbol for m in marked}):
            try:
                candles[symbol] = await self.market.fetch_klines(
                    symbol, self.config.advisor.kline_interval, self.config.advisor.kline_limit,
                )
            except ExchangeError as exc:
                logger.warning("Candles for %s unavailable: %s", symbol, exc)
        dismissed = set(self.repo.settings.load().dismissed_suggestions)
        found = self.advisor.evaluate_all(marked, candles, dismissed)
        previous = set(self.suggestions)
        self.suggestions = {s.id: s for s in found}
        for suggestion in found:
            if suggestion.id not in previous:
                self.notifier.info(f"New {suggestion.kind} suggestion: {suggestion.rationale}",
                                   suggestion_id=suggestion.id)
        return found

    async def recovery_plan(self, position_id: str) -> List[RecoveryOption]:
        """Recovery options of a tracked position at its latest price."""
        position = self.repo.positions.get(position_id)
        if position is None:
            raise InputValidationError(f"No tracked position with id {position_id!r}")
        marked = mark_position(position, self.current_prices().get(position.symbol))
        if not marked.price_available:
            raise InputValidationError(f"No current price for {position.symbol}")
        try:
            candles = await self.market.fetch_klines(
                position.symbol, self.config.advisor.kline_interval, self.config.advisor.kline_limit,
            )
        except ExchangeError as exc:
            logger.warning("Candles for %s unavailable, using the default ATR: %s", position.symbol, exc)
            candles = None
        return recovery_options(marked, candles, self.config.risk)

    def find_suggestion(self, suggestion_id: str) -> AdjustmentSuggestion:
        try:
            return self.suggestions[suggestion_id]
        except KeyError:
            raise InputValidationError(f"No current suggestion with id {suggestion_id!r}") from None

    # ------------------------------------------------------------------
    # Two-phase user actions
    # ------------------------------------------------------------------
    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._pending.add(task)

        def done(t: asyncio.Task) -> None:
            self._pending.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error("Exchange sync failed", exc_info=t.exception())

        task.add_done_callback(done)
        return task

    def create_position(self, position: Position) -> Optional[asyncio.Task]:
        """Commit `position` locally, then place its orders in the background.

        Returns the background task, or ``None`` when live trading is off.
        """
        position.validate(self.config.risk.max_leverage)
        self.orchestrator.commit(position)
        context = self.repo.settings.load().live_context()
        if not context.enabled:
            return None
        return self._spawn(self.orchestrator.place_orders(position, context))

    def accept_suggestion(self, suggestion: AdjustmentSuggestion) -> Tuple[Position, Optional[asyncio.Task]]:
        """Apply `suggestion` locally, record it and mirror it on the exchange."""
        position = self.repo.positions.get(suggestion.position_id)
        if position is None:
            raise InputValidationError(f"Position {suggestion.position_id} is no longer tracked")
        updated = apply_suggestion(position, suggestion)
        self.repo.positions.upsert(updated)
        self.repo.history.append(AdjustmentHistoryEntry(suggestion, ACCEPTED))
        self.suggestions.pop(suggestion.id, None)
        logger.info("Accepted %s for %s", suggestion.id, position.symbol)

        context = self.repo.settings.load().live_context()
        if not context.enabled:
            return updated, None
        return updated, self._spawn(self.orchestrator.apply_adjustment(position, suggestion, context))

    def close_position(self, position_id: str, exit_price: Optional[float] = None,
                       outcome: Optional[str] = None) -> Optional[TradeRecord]:
        """Stop tracking a position and record how the trade ended.

        The exit is taken at `exit_price`, or at the latest fresh ticker
        price.  Without either the position is still removed but no
        trade is recorded.  Nothing is sent to the exchange.
        """
        position = self.repo.positions.get(position_id)
        if position is None:
            raise InputValidationError(f"No tracked position with id {position_id!r}")
        if exit_price is None:
            exit_price = self.current_prices().get(position.symbol)
        record = close_trade(position, exit_price, outcome) if exit_price is not None else None
        self.repo.positions.remove(position_id)
        self._forget_suggestions(position_id)
        if record is None:
            logger.warning("Removed %s without a trade record: no exit price", position.symbol)
            return None
        self.repo.trades.append(record)
        logger.info("Closed %s at %s (%s, %.2f USD)", position.symbol, record.exit_price,
                    record.outcome, record.pnl_usd)
        return record

    def _on_exchange_close(self, position: Position) -> None:
        self._forget_suggestions(position.id)
        price = self.current_prices().get(position.symbol)
        if price is None:
            logger.info("No recent price for %s, its exchange close is not recorded", position.symbol)
            return
        self.repo.trades.append(close_trade(position, price))

    def _forget_suggestions(self, position_id: str) -> None:
        self.suggestions = {k: s for k, s in self.suggestions.items() if s.position_id != position_id}

    def dismiss_suggestion(self, suggestion: AdjustmentSuggestion) -> None:
        self.repo.settings.dismiss(suggestion.id)
        self.repo.history.append(AdjustmentHistoryEntry(suggestion, DISMISSED))
        self.suggestions.pop(suggestion.id, None)
        logger.info("Dismissed %s", suggestion.id)

    async def wait_pending(self) -> List[LiveOrderReport]:
        """Wait for every background exchange sync started so far."""
        if not self._pending:
            return []
        results = await asyncio.gather(*list(self._pending), return_exceptions=True)
        return [r for r in results if isinstance(r, LiveOrderReport)]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        if self.repo.settings.seed_from_env():
            logger.info("API credentials loaded from the environment")
        await self.refresh_brackets()
        await self.reconciler.start()
        self._price_task.start()
        self._advisor_task.start()
        logger.info("Monitoring started")

    async def stop(self) -> None:
        self._price_task.stop()
        self._advisor_task.stop()
        self.reconciler.stop()
        await self.wait_pending()
        await self.market.close()
        logger.info("Monitoring stopped")

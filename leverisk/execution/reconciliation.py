"""
Exchange position reconciliation.

The exchange is the authority on which positions are open.  Each tick
compares the symbols held on the account with the locally tracked
positions, imports the new ones with provisional exits and drops the
local records whose symbol is no longer open remotely.

The loop runs once at startup when credentials exist and then on a
fixed interval while live trading is enabled.  A change of credentials
or of the live-trading flag resets the schedule; it is never polled.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Callable, List, Optional

from ..config.schema import ExchangeConfig
from ..risk.levels import placeholder_levels
from ..utils.notifications import Notifier
from ..utils.persistence import LiveTradingContext, PositionStore, SettingsChange, SettingsStore
from ..utils.scheduling import PeriodicTask
from .errors import CredentialsMissingError, ExchangeError, ReconciliationError
from .gateway import OrderGateway
from .models import ExchangeCredentials, ExchangePosition, Position, new_position_id

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationResult:
    imported: List[Position] = field(default_factory=list)
    removed: List[Position] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.imported or self.removed)


def import_exchange_position(remote: ExchangePosition) -> Position:
    """Track an exchange position locally with provisional exits."""
    leverage = max(1, int(remote.leverage))
    investment = abs(remote.amount) * remote.entry_price / leverage
    take_profits, stop_loss = placeholder_levels(remote.entry_price, remote.direction, leverage, investment)
    return Position(
        id=new_position_id(),
        symbol=remote.symbol,
        direction=remote.direction,
        entry_price=remote.entry_price,
        leverage=leverage,
        investment_amount=investment,
        take_profits=take_profits,
        stop_loss=stop_loss,
        imported=True,
    )


def diff_positions(local: List[Position], remote: List[ExchangePosition]):
    """Split into (kept local, symbols to import, local records to remove)."""
    remote_symbols = {p.symbol for p in remote}
    local_symbols = {p.symbol for p in local}
    kept = [p for p in local if p.symbol in remote_symbols]
    removed = [p for p in local if p.symbol not in remote_symbols]
    to_import = [p for p in remote if p.symbol not in local_symbols]
    return kept, to_import, removed


class ReconciliationLoop:
    """Keep the local position store aligned with the exchange.

    Parameters
    ----------
    positions : PositionStore
        Local position records.
    settings : SettingsStore
        Source of the live-trading context; its change notifications
        reset or stop the schedule.
    notifier : Notifier
        Receives one notice per imported or removed position.
    interval : float
        Seconds between ticks.
    on_removed : callable, optional
        Called with each local position dropped because its symbol is
        no longer open on the exchange.
    """

    def __init__(self, positions: PositionStore, settings: SettingsStore, notifier: Notifier,
                 config: Optional[ExchangeConfig] = None, interval: float = 60.0,
                 gateway_factory: Optional[Callable[[ExchangeCredentials], OrderGateway]] = None,
                 on_removed: Optional[Callable[[Position], None]] = None) -> None:
        self.positions = positions
        self.settings = settings
        self.notifier = notifier
        self.config = config or ExchangeConfig()
        self.gateway_factory = gateway_factory or (lambda creds: OrderGateway(creds, self.config))
        self.on_removed = on_removed
        self.task = PeriodicTask('reconciliation', self._scheduled_tick, interval)
        self._unsubscribe: Optional[Callable[[], None]] = None

    async def _fetch_remote(self, context: LiveTradingContext) -> List[ExchangePosition]:
        async with self.gateway_factory(context.credentials) as gateway:
            return await gateway.position_risk()

    async def reconcile(self, context: LiveTradingContext) -> ReconciliationResult:
        """Run one reconciliation pass.

        Raises
        ------
        ReconciliationError
            If the exchange positions could not be fetched.
        """
        try:
            remote = await self._fetch_remote(context)
        except (ExchangeError, CredentialsMissingError) as exc:
            raise ReconciliationError(f"Could not fetch exchange positions: {exc}") from exc

        kept, to_import, removed = diff_positions(self.positions.load(), remote)
        result = ReconciliationResult(removed=removed)
        for remote_position in to_import:
            if remote_position.entry_price <= 0:
                logger.warning("Skipping %s: exchange reported no entry price", remote_position.symbol)
                continue
            result.imported.append(import_exchange_position(remote_position))

        if result.changed:
            self.positions.save_all(kept + result.imported)
        for position in result.imported:
            self.notifier.info(
                f"Imported {position.direction} {position.symbol} from the exchange with provisional "
                f"exits; please review them",
                symbol=position.symbol,
            )
        for position in result.removed:
            self.notifier.info(f"{position.symbol} is closed on the exchange and was removed",
                               symbol=position.symbol)
            if self.on_removed is not None:
                self.on_removed(position)
        logger.debug("Reconciliation: %d imported, %d removed, %d unchanged",
                     len(result.imported), len(result.removed), len(kept))
        return result

    async def tick(self, context: LiveTradingContext) -> Optional[ReconciliationResult]:
        """Reconcile once; failures are logged and never raised."""
        if context.credentials is None or not context.credentials.is_complete:
            return None
        try:
            return await self.reconcile(context)
        except ReconciliationError as exc:
            logger.warning("%s", exc)
            return None

    async def _scheduled_tick(self) -> None:
        context = self.settings.load().live_context()
        if not context.ready:
            self.task.stop()
            return
        await self.tick(context)

    def _on_settings_change(self, change: SettingsChange) -> None:
        if not change.affects_live_trading:
            return
        if change.settings.live_context().ready:
            logger.info("Live trading settings changed, restarting reconciliation")
            self.task.reset()
        else:
            logger.info("Live trading off or credentials removed, stopping reconciliation")
            self.task.stop()

    async def start(self) -> None:
        """Subscribe to settings changes and run the startup reconciliation."""
        if self._unsubscribe is None:
            self._unsubscribe = self.settings.subscribe(self._on_settings_change)
        context = self.settings.load().live_context()
        if context.ready:
            self.task.start()
        elif context.credentials is not None:
            await self.tick(context)

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.task.stop()

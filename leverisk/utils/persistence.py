"""
State persistence.

Positions, the adjustment audit log, closed trades and runtime settings
(credentials, live-trading flag, total capital) must survive restarts.
Each lives in its own JSON file under the state directory and is
re-read on every access, so that an edit made by another process takes
effect on the next operation without any cache invalidation.

Stores notify subscribers synchronously after every successful write.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, List, Optional

from ..execution.models import AdjustmentHistoryEntry, ExchangeCredentials, Position, TradeRecord

logger = logging.getLogger(__name__)

API_KEY_ENV = "LEVERISK_API_KEY"
API_SECRET_ENV = "LEVERISK_API_SECRET"


def load_state(path: str) -> Optional[Dict[str, Any]]:
    """Load a JSON state file.

    Parameters
    ----------
    path : str
        Path to the JSON file.

    Returns
    -------
    dict or None
        The state dictionary if the file exists, otherwise `None`.
    """
    file_path = Path(path)
    if not file_path.exists():
        return None
    with file_path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def save_state(path: str, state: Dict[str, Any], private: bool = False) -> None:
    """Write a JSON state file to disk.

    Parameters
    ----------
    path : str
        Path to the output file.
    state : dict
        Arbitrary state dictionary.  Must be serialisable to JSON.
    private : bool
        Restrict the file to its owner (used for credentials).
    """
    file_path = Path(path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = file_path.with_suffix(file_path.suffix + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as fh:
        json.dump(state, fh, ensure_ascii=False, indent=2, sort_keys=True)
    if private:
        os.chmod(tmp_path, 0o600)
    os.replace(tmp_path, file_path)


class _ObservableStore:
    """Base class holding the subscriber list of a JSON store."""

    def __init__(self, path: str) -> None:
        self.path = path
        self._listeners: List[Callable[[Any], None]] = []

    def subscribe(self, listener: Callable[[Any], None]) -> Callable[[], None]:
        """Register `listener`; returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, payload: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(payload)
            except Exception:
                logger.exception("State listener failed for %s", self.path)


class PositionStore(_ObservableStore):
    """Positions keyed by id.  Subscribers receive the full new list."""

    def load(self) -> List[Position]:
        state = load_state(self.path) or {}
        positions = [Position.from_dict(p) for p in state.get('positions', {}).values()]
        return sorted(positions, key=lambda p: p.created_at)

    def get(self, position_id: str) -> Optional[Position]:
        for position in self.load():
            if position.id == position_id:
                return position
        return None

    def save_all(self, positions: List[Position]) -> None:
        save_state(self.path, {'positions': {p.id: p.to_dict() for p in positions}})
        self._publish(positions)

    def upsert(self, position: Position) -> None:
        positions = [p for p in self.load() if p.id != position.id]
        positions.append(position)
        self.save_all(positions)

    def remove(self, position_id: str) -> bool:
        return self.remove_many([position_id]) > 0

    def remove_many(self, position_ids: List[str]) -> int:
        ids = set(position_ids)
        current = self.load()
        kept = [p for p in current if p.id not in ids]
        removed = len(current) - len(kept)
        if removed:
            self.save_all(kept)
        return removed


class AdjustmentHistoryStore(_ObservableStore):
    """Append-only audit log of resolved suggestions."""

    def load(self) -> List[AdjustmentHistoryEntry]:
        state = load_state(self.path) or {}
        return [AdjustmentHistoryEntry.from_dict(e) for e in state.get('entries', [])]

    def append(self, entry: AdjustmentHistoryEntry) -> bool:
        """Append `entry` unless the same (suggestion id, outcome) is recorded.

        Returns
        -------
        bool
            ``True`` when the entry was written.
        """
        entries = self.load()
        if any(e.key == entry.key for e in entries):
            return False
        entries.append(entry)
        save_state(self.path, {'entries': [e.to_dict() for e in entries]})
        self._publish(entry)
        return True


class TradeHistoryStore(_ObservableStore):
    """Closed positions, newest last.  A position id is recorded once."""

    def load(self) -> List[TradeRecord]:
        state = load_state(self.path) or {}
        return [TradeRecord.from_dict(t) for t in state.get('trades', [])]

    def append(self, record: TradeRecord) -> bool:
        trades = self.load()
        if any(t.id == record.id for t in trades):
            return False
        trades.append(record)
        save_state(self.path, {'trades': [t.to_dict() for t in trades]})
        self._publish(record)
        return True


@dataclass
class LiveTradingContext:
    """Live-trading toggles read at the start of an operation."""
    enabled: bool = False
    credentials: Optional[ExchangeCredentials] = None

    @property
    def ready(self) -> bool:
        return self.enabled and self.credentials is not None and self.credentials.is_complete


@dataclass
class Settings:
    credentials: Optional[ExchangeCredentials] = None
    live_trading_enabled: bool = False
    total_capital: float = 0.0
    dismissed_suggestions: List[str] = field(default_factory=list)

    def live_context(self) -> LiveTradingContext:
        return LiveTradingContext(enabled=self.live_trading_enabled, credentials=self.credentials)


@dataclass
class SettingsChange:
    """Published by `SettingsStore` after a write."""
    keys: FrozenSet[str]
    settings: Settings

    @property
    def affects_live_trading(self) -> bool:
        return bool(self.keys & {'credentials', 'live_trading_enabled'})


class SettingsStore(_ObservableStore):
    """Credentials, live-trading flag, total capital and dismissed suggestions."""

    def load(self) -> Settings:
        state = load_state(self.path) or {}
        creds = state.get('credentials')
        credentials = None
        if creds and creds.get('api_key') and creds.get('api_secret'):
            credentials = ExchangeCredentials(api_key=creds['api_key'], api_secret=creds['api_secret'])
        return Settings(
            credentials=credentials,
            live_trading_enabled=bool(state.get('live_trading_enabled', False)),
            total_capital=float(state.get('total_capital', 0.0)),
            dismissed_suggestions=list(state.get('dismissed_suggestions', [])),
        )

    def _write(self, settings: Settings, changed: FrozenSet[str]) -> None:
        creds = settings.credentials
        state = {
            'credentials': {'api_key': creds.api_key, 'api_secret': creds.api_secret} if creds else None,
            'live_trading_enabled': settings.live_trading_enabled,
            'total_capital': settings.total_capital,
            'dismissed_suggestions': settings.dismissed_suggestions,
        }
        save_state(self.path, state, private=True)
        self._publish(SettingsChange(keys=changed, settings=settings))

    def set_credentials(self, api_key: str, api_secret: str) -> None:
        settings = self.load()
        settings.credentials = ExchangeCredentials(api_key=api_key.strip(), api_secret=api_secret.strip())
        self._write(settings, frozenset({'credentials'}))

    def clear_credentials(self) -> None:
        settings = self.load()
        settings.credentials = None
        self._write(settings, frozenset({'credentials'}))

    def set_live_trading(self, enabled: bool) -> None:
        settings = self.load()
        settings.live_trading_enabled = enabled
        self._write(settings, frozenset({'live_trading_enabled'}))

    def set_total_capital(self, amount: float) -> None:
        settings = self.load()
        settings.total_capital = float(amount)
        self._write(settings, frozenset({'total_capital'}))

    def dismiss(self, suggestion_id: str) -> None:
        settings = self.load()
        if suggestion_id in settings.dismissed_suggestions:
            return
        settings.dismissed_suggestions.append(suggestion_id)
        self._write(settings, frozenset({'dismissed_suggestions'}))

    def seed_from_env(self) -> bool:
        """Store credentials from the environment when none are saved yet."""
        api_key = os.getenv(API_KEY_ENV, '')
        api_secret = os.getenv(API_SECRET_ENV, '')
        if not api_key or not api_secret or self.load().credentials is not None:
            return False
        self.set_credentials(api_key, api_secret)
        return True


@dataclass
class StateRepository:
    """The stores rooted at one state directory."""
    positions: PositionStore
    history: AdjustmentHistoryStore
    settings: SettingsStore
    trades: TradeHistoryStore

    @classmethod
    def at(cls, state_dir: str) -> 'StateRepository':
        root = Path(state_dir)
        return cls(
            positions=PositionStore(str(root / "positions.json")),
            history=AdjustmentHistoryStore(str(root / "adjustment_history.json")),
            settings=SettingsStore(str(root / "settings.json")),
            trades=TradeHistoryStore(str(root / "trade_history.json")),
        )

"""
User-facing outcome notifications.

The core reports the outcome of every order step and every
reconciliation delta as a `Notice`.  Presentation code subscribes to a
`Notifier` and decides how to display them; every notice is also
written to the log.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Callable, Dict, List
import pandas as pd

from .timeutils import now_utc

logger = logging.getLogger(__name__)

INFO = "info"
SUCCESS = "success"
WARNING = "warning"
ERROR = "error"

_LOG_LEVELS = {
    INFO: logging.INFO,
    SUCCESS: logging.INFO,
    WARNING: logging.WARNING,
    ERROR: logging.ERROR,
}


@dataclass
class Notice:
    level: str
    message: str
    context: Dict[str, Any] = field(default_factory=dict)
    timestamp: pd.Timestamp = field(default_factory=now_utc)


Listener = Callable[[Notice], None]


class Notifier:
    """Fan out notices to subscribed listeners."""

    def __init__(self) -> None:
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register `listener`; returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, level: str, message: str, **context: Any) -> Notice:
        notice = Notice(level=level, message=message, context=context)
        logger.log(_LOG_LEVELS.get(level, logging.INFO), "%s", message)
        for listener in list(self._listeners):
            try:
                listener(notice)
            except Exception:
                logger.exception("Notification listener failed")
        return notice

    def info(self, message: str, **context: Any) -> Notice:
        return self.emit(INFO, message, **context)

    def success(self, message: str, **context: Any) -> Notice:
        return self.emit(SUCCESS, message, **context)

    def warning(self, message: str, **context: Any) -> Notice:
        return self.emit(WARNING, message, **context)

    def error(self, message: str, **context: Any) -> Notice:
        return self.emit(ERROR, message, **context)

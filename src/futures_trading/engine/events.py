"""Lifecycle events and the observers that react to them."""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from futures_trading.journal.store import JournalStore
from futures_trading.utils.logging import get_logger, log_position_event

Observer = Callable[["EngineEvent"], None]


@dataclass(frozen=True, slots=True)
class EngineEvent:
    """A state-machine transition, e.g. ``position_opened`` or ``breaker_tripped``."""

    kind: str
    symbol: str | None
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class EventBus:
    """Fan-out of engine events to subscribed observers.

    An observer that raises is logged and skipped; the transition that
    produced the event has already happened and stands.
    """

    def __init__(self) -> None:
        self._observers: list[Observer] = []
        self._lock = threading.Lock()
        self._logger = get_logger("futures_trading.engine.events")

    def subscribe(self, observer: Observer) -> None:
        with self._lock:
            self._observers.append(observer)

    def publish(self, event: EngineEvent) -> None:
        with self._lock:
            observers = list(self._observers)
        for observer in observers:
            try:
                observer(event)
            except Exception as exc:  # noqa: BLE001 - observers must not break the state machine.
                self._logger.exception(
                    "observer_failed",
                    observer=getattr(observer, "__name__", type(observer).__name__),
                    event=event.kind,
                    error=str(exc),
                )


class JournalObserver:
    """Writes every event to the daily JSONL journal."""

    def __init__(self, journal: JournalStore) -> None:
        self._journal = journal

    def __call__(self, event: EngineEvent) -> None:
        self._journal.append(event.kind, {"symbol": event.symbol, **event.payload})


class LogObserver:
    """Emits one structured log line per event."""

    def __init__(self) -> None:
        self._logger = get_logger("futures_trading.engine.lifecycle")

    def __call__(self, event: EngineEvent) -> None:
        log_position_event(
            self._logger,
            event_type=event.kind,
            symbol=event.symbol or "-",
            **event.payload,
        )

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable

from cult_sim.utils.types import now_ms

Subscriber = Callable[["BusEvent"], None]


@dataclass(frozen=True)
class BusEvent:
    name: str
    payload: dict[str, Any]
    timestamp: float = field(default_factory=now_ms)


class EventBus:
    """Fire-and-forget publish of named events to in-process subscribers."""

    def __init__(self, history_size: int = 500) -> None:
        self.logger = logging.getLogger("cult_sim.events")
        self._subscribers: list[tuple[str | None, Subscriber]] = []
        self._recent: deque[BusEvent] = deque(maxlen=history_size)

    def subscribe(self, callback: Subscriber, name: str | None = None) -> None:
        """Register ``callback`` for one event name, or for every event when ``name`` is None."""
        self._subscribers.append((name, callback))

    def unsubscribe(self, callback: Subscriber) -> None:
        self._subscribers = [(n, cb) for n, cb in self._subscribers if cb is not callback]

    def publish(self, name: str, payload: dict[str, Any] | None = None) -> BusEvent:
        event = BusEvent(name=name, payload=dict(payload or {}))
        self._recent.append(event)
        for wanted, callback in list(self._subscribers):
            if wanted is not None and wanted != name:
                continue
            try:
                callback(event)
            except Exception as exc:
                self.logger.warning(
                    "event SUBSCRIBER-FAIL name=%s error=%s: %s",
                    name, exc.__class__.__name__, exc,
                )
        return event

    def recent(self, limit: int = 50, name: str | None = None) -> list[BusEvent]:
        events = [e for e in self._recent if name is None or e.name == name]
        return list(reversed(events[-limit:])) if limit > 0 else []

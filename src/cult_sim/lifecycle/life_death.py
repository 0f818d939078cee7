from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Literal

from cult_sim.db.writer import BestEffortWriter
from cult_sim.utils.types import CultState, now_ms

if TYPE_CHECKING:
    from cult_sim.db.repository import CultRepository
    from cult_sim.events.bus import EventBus

DeathCause = Literal["treasury_depleted", "no_followers", "forced"]

REBIRTH_COOLDOWN_MS = 300_000
DUST_TREASURY = 1e-15


@dataclass(frozen=True)
class DeathEvent:
    cult_id: int
    cult_name: str
    cause: DeathCause
    final_treasury: float
    final_followers: int
    timestamp: float


@dataclass(frozen=True)
class RebirthEvent:
    cult_id: int
    cult_name: str
    timestamp: float
    new_name: str = ""
    new_treasury: float = 0.0


class LifeDeathModel:
    """Decides when a cult dies and when it may come back."""

    def __init__(
        self,
        clock: Callable[[], float] = now_ms,
        rebirth_cooldown_ms: float = REBIRTH_COOLDOWN_MS,
        store: "CultRepository | None" = None,
        writer: BestEffortWriter | None = None,
        bus: "EventBus | None" = None,
    ) -> None:
        self.logger = logging.getLogger("cult_sim.lifecycle")
        self.clock = clock
        self.rebirth_cooldown_ms = rebirth_cooldown_ms
        self.store = store
        self.writer = writer
        self.bus = bus
        self._deaths: list[DeathEvent] = []
        self._rebirths: list[RebirthEvent] = []
        self._death_times: dict[int, float] = {}

    def hydrate(self) -> None:
        if self.store is None:
            return
        deaths, rebirths = self.store.load_life_events()
        self._deaths = list(deaths)
        self._rebirths = list(rebirths)
        self._death_times.clear()
        # replay in time order so a later rebirth clears an earlier death
        timeline: list[tuple[float, int, Any]] = [(d.timestamp, 0, d) for d in deaths]
        timeline += [(r.timestamp, 1, r) for r in rebirths]
        for _, kind, event in sorted(timeline, key=lambda t: (t[0], t[1])):
            if kind == 0:
                self._death_times[event.cult_id] = event.timestamp
            else:
                self._death_times.pop(event.cult_id, None)
        self.logger.info(
            "lifecycle HYDRATE deaths=%d rebirths=%d dead_now=%d",
            len(deaths), len(rebirths), len(self._death_times),
        )

    def check_death_condition(self, cult: CultState) -> DeathEvent | None:
        if not cult.active or cult.id in self._death_times:
            return None

        cause: DeathCause | None = None
        if cult.treasury <= 0:
            cause = "treasury_depleted"
        elif cult.follower_count <= 0 and cult.treasury < DUST_TREASURY:
            cause = "no_followers"
        if cause is None:
            return None
        return self._record_death(cult, cause)

    def force_death(self, cult: CultState) -> DeathEvent | None:
        if cult.id in self._death_times:
            return None
        return self._record_death(cult, "forced")

    def can_rebirth(self, cult_id: int) -> bool:
        died_at = self._death_times.get(cult_id)
        if died_at is None:
            return False
        return self.clock() - died_at >= self.rebirth_cooldown_ms

    def record_rebirth(
        self, cult_id: int, cult_name: str, new_name: str = "", new_treasury: float = 0.0
    ) -> RebirthEvent:
        event = RebirthEvent(
            cult_id=cult_id,
            cult_name=cult_name,
            timestamp=self.clock(),
            new_name=new_name or cult_name,
            new_treasury=new_treasury,
        )
        self._rebirths.append(event)
        self._death_times.pop(cult_id, None)
        if self.store is not None and self.writer is not None:
            self.writer.submit(cult_id, self.store.save_rebirth, event, label="save_rebirth")
        if self.bus is not None:
            self.bus.publish(
                "cult_reborn",
                {"cult_id": cult_id, "old_name": cult_name, "new_name": event.new_name},
            )
        self.logger.info(
            "lifecycle REBORN cult=%d old=%s new=%s", cult_id, cult_name, event.new_name
        )
        return event

    def is_dead(self, cult_id: int) -> bool:
        return cult_id in self._death_times

    def get_rebirth_cooldown_remaining(self, cult_id: int) -> float:
        died_at = self._death_times.get(cult_id)
        if died_at is None:
            return 0.0
        return max(0.0, self.rebirth_cooldown_ms - (self.clock() - died_at))

    def get_deaths(self) -> list[DeathEvent]:
        return list(reversed(self._deaths))

    def get_rebirths(self) -> list[RebirthEvent]:
        return list(reversed(self._rebirths))

    def get_recent_events(self, limit: int = 20) -> list[DeathEvent | RebirthEvent]:
        events: list[DeathEvent | RebirthEvent] = [*self._deaths, *self._rebirths]
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[:limit]

    def _record_death(self, cult: CultState, cause: DeathCause) -> DeathEvent:
        event = DeathEvent(
            cult_id=cult.id,
            cult_name=cult.name,
            cause=cause,
            final_treasury=cult.treasury,
            final_followers=cult.follower_count if cause != "no_followers" else 0,
            timestamp=self.clock(),
        )
        self._deaths.append(event)
        self._death_times[cult.id] = event.timestamp
        if self.store is not None and self.writer is not None:
            self.writer.submit(cult.id, self.store.save_death, event, label="save_death")
        if self.bus is not None:
            self.bus.publish(
                "cult_death",
                {"cult_id": cult.id, "cult_name": cult.name, "cause": cause},
            )
        self.logger.warning(
            "lifecycle DEATH cult=%d name=%s cause=%s treasury=%.4f followers=%d",
            cult.id, cult.name, cause, cult.treasury, cult.follower_count,
        )
        return event

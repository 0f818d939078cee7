"""Pairwise alliances: active -> expired | broken.

Expiry is lazy: every read sweeps the list and deactivates alliances whose
``expires_at`` has passed, emitting an ``alliance_expired`` event. ``active``
never flips back to True.
"""
from __future__ import annotations

import logging
import random
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Callable, Literal

from cult_sim.db.writer import BestEffortWriter
from cult_sim.memory.trust_memory import MemoryModel
from cult_sim.utils.types import MemoryEntry, now_ms

if TYPE_CHECKING:
    from cult_sim.db.repository import CultRepository
    from cult_sim.events.bus import EventBus

ALLIANCE_DURATION_MS = 5 * 60 * 1000
ALLIANCE_POWER_BONUS = 1.25
BETRAYAL_SURPRISE_BONUS = 1.5
MAX_ALLIANCES_PER_CULT = 1

# Memory outcomes; the betrayal pair is deliberately asymmetric.
FORMED_OUTCOME = 0.4
BETRAYER_OUTCOME = 0.3
VICTIM_OUTCOME = -0.9


@dataclass
class Alliance:
    id: int
    cult_a: int
    cult_a_name: str
    cult_b: int
    cult_b_name: str
    formed_at: float
    expires_at: float
    active: bool = True
    power_bonus: float = ALLIANCE_POWER_BONUS

    def involves(self, cult_id: int) -> bool:
        return cult_id in (self.cult_a, self.cult_b)

    def partner_of(self, cult_id: int) -> tuple[int, str]:
        if cult_id == self.cult_a:
            return self.cult_b, self.cult_b_name
        return self.cult_a, self.cult_a_name


@dataclass(frozen=True)
class BetrayalEvent:
    alliance_id: int
    betrayer_cult_id: int
    betrayer_name: str
    victim_cult_id: int
    victim_name: str
    reason: str
    timestamp: float
    surprise_bonus: float = BETRAYAL_SURPRISE_BONUS


@dataclass(frozen=True)
class AllianceEvent:
    type: Literal["alliance_formed", "alliance_expired", "alliance_betrayed"]
    alliance: Alliance
    timestamp: float
    betrayal: BetrayalEvent | None = None


@dataclass(frozen=True)
class Recommendation:
    recommend: bool
    reason: str


class AllianceModel:
    def __init__(
        self,
        memory: MemoryModel,
        rng: random.Random | None = None,
        clock: Callable[[], float] = now_ms,
        duration_ms: float = ALLIANCE_DURATION_MS,
        store: "CultRepository | None" = None,
        writer: BestEffortWriter | None = None,
        bus: "EventBus | None" = None,
    ) -> None:
        self.logger = logging.getLogger("cult_sim.alliance")
        self.memory = memory
        self.rng = rng or random.Random()
        self.clock = clock
        self.duration_ms = duration_ms
        self.store = store
        self.writer = writer
        self.bus = bus
        self._alliances: list[Alliance] = []
        self._betrayals: list[BetrayalEvent] = []
        self._events: list[AllianceEvent] = []
        self._next_id = 0

    def hydrate(self) -> None:
        if self.store is None:
            return
        alliances = self.store.load_alliances()
        betrayals = self.store.load_betrayals()
        self._alliances = sorted(alliances, key=lambda a: a.id)
        self._betrayals = sorted(betrayals, key=lambda b: b.timestamp)
        if self._alliances:
            self._next_id = max(a.id for a in self._alliances) + 1
        self.logger.info(
            "alliance HYDRATE alliances=%d active=%d betrayals=%d",
            len(self._alliances),
            sum(1 for a in self._alliances if a.active),
            len(self._betrayals),
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def form_alliance(
        self, cult_a: int, cult_a_name: str, cult_b: int, cult_b_name: str
    ) -> Alliance | None:
        if cult_a == cult_b:
            return None
        if self.get_active_alliance(cult_a) is not None:
            self.logger.info("alliance REJECT cult=%s reason=already_allied", cult_a_name)
            return None
        if self.get_active_alliance(cult_b) is not None:
            self.logger.info("alliance REJECT cult=%s reason=already_allied", cult_b_name)
            return None

        now = self.clock()
        alliance = Alliance(
            id=self._next_id,
            cult_a=cult_a,
            cult_a_name=cult_a_name,
            cult_b=cult_b,
            cult_b_name=cult_b_name,
            formed_at=now,
            expires_at=now + self.duration_ms,
        )
        self._next_id += 1
        self._alliances.append(alliance)
        self._record_event(AllianceEvent("alliance_formed", alliance, now))
        self._persist("save_alliance", replace(alliance))

        for me, rival, rival_name in ((cult_a, cult_b, cult_b_name), (cult_b, cult_a, cult_a_name)):
            self.memory.record_interaction(
                me,
                MemoryEntry(
                    kind="alliance_formed",
                    rival_id=rival,
                    rival_name=rival_name,
                    description=f"Formed alliance with {rival_name}",
                    timestamp_ms=now,
                    outcome=FORMED_OUTCOME,
                ),
            )

        self.logger.info(
            "alliance FORMED id=%d %s x %s expires_in=%.0fs",
            alliance.id, cult_a_name, cult_b_name, self.duration_ms / 1000.0,
        )
        return alliance

    def betray(self, betrayer_cult_id: int, betrayer_name: str, reason: str) -> BetrayalEvent | None:
        alliance = self.get_active_alliance(betrayer_cult_id)
        if alliance is None:
            self.logger.info("alliance BETRAY-NOOP cult=%s reason=no_active_alliance", betrayer_name)
            return None

        victim_id, victim_name = alliance.partner_of(betrayer_cult_id)
        alliance.active = False
        now = self.clock()
        betrayal = BetrayalEvent(
            alliance_id=alliance.id,
            betrayer_cult_id=betrayer_cult_id,
            betrayer_name=betrayer_name,
            victim_cult_id=victim_id,
            victim_name=victim_name,
            reason=reason,
            timestamp=now,
        )
        self._betrayals.append(betrayal)
        self._record_event(AllianceEvent("alliance_betrayed", alliance, now, betrayal))
        self._persist("update_alliance_active", alliance.id, False)
        self._persist("save_betrayal", betrayal)

        self.memory.record_interaction(
            betrayer_cult_id,
            MemoryEntry(
                kind="betrayal",
                rival_id=victim_id,
                rival_name=victim_name,
                description=f"Betrayed alliance with {victim_name}: {reason}",
                timestamp_ms=now,
                outcome=BETRAYER_OUTCOME,
            ),
        )
        self.memory.record_interaction(
            victim_id,
            MemoryEntry(
                kind="betrayal",
                rival_id=betrayer_cult_id,
                rival_name=betrayer_name,
                description=f"{betrayer_name} betrayed our alliance: {reason}",
                timestamp_ms=now,
                outcome=VICTIM_OUTCOME,
            ),
        )
        self.logger.info(
            "alliance BETRAYED id=%d betrayer=%s victim=%s reason=%s",
            alliance.id, betrayer_name, victim_name, reason,
        )
        return betrayal

    # ------------------------------------------------------------------
    # Reads (each sweeps expired alliances first)
    # ------------------------------------------------------------------

    def get_active_alliance(self, cult_id: int) -> Alliance | None:
        self._expire_old_alliances()
        for alliance in self._alliances:
            if alliance.active and alliance.involves(cult_id):
                return alliance
        return None

    def get_ally_id(self, cult_id: int) -> int | None:
        alliance = self.get_active_alliance(cult_id)
        if alliance is None:
            return None
        return alliance.partner_of(cult_id)[0]

    def are_allied(self, cult_a: int, cult_b: int) -> bool:
        alliance = self.get_active_alliance(cult_a)
        return alliance is not None and alliance.involves(cult_b) and cult_a != cult_b

    def get_power_bonus(self, cult_id: int) -> float:
        alliance = self.get_active_alliance(cult_id)
        return alliance.power_bonus if alliance else 1.0

    def get_all_alliances(self) -> list[Alliance]:
        self._expire_old_alliances()
        return list(reversed(self._alliances))

    def get_active_alliances(self) -> list[Alliance]:
        self._expire_old_alliances()
        return [a for a in self._alliances if a.active]

    def get_betrayals(self) -> list[BetrayalEvent]:
        return list(reversed(self._betrayals))

    def get_events(self, limit: int = 20) -> list[AllianceEvent]:
        self._expire_old_alliances()
        return list(reversed(self._events[-limit:])) if limit > 0 else []

    def alliance_count(self, cult_id: int) -> int:
        return sum(1 for a in self._alliances if a.involves(cult_id))

    def betrayal_count(self, cult_id: int) -> int:
        return sum(
            1 for b in self._betrayals
            if cult_id in (b.betrayer_cult_id, b.victim_cult_id)
        )

    # ------------------------------------------------------------------
    # Joint raids. All alliances are one undifferentiated type, so any
    # active alliance allows a joint raid against a third party.
    # ------------------------------------------------------------------

    def can_joint_raid(self, cult_id: int, target_id: int) -> tuple[bool, tuple[int, str] | None]:
        alliance = self.get_active_alliance(cult_id)
        if alliance is None:
            return False, None
        ally = alliance.partner_of(cult_id)
        if ally[0] == target_id:
            return False, None
        return True, ally

    def get_joint_raid_power_bonus(self) -> float:
        return ALLIANCE_POWER_BONUS

    # ------------------------------------------------------------------
    # Advisory heuristics (no state changes)
    # ------------------------------------------------------------------

    def should_ally(
        self, cult_id: int, target_id: int, cult_power: float, target_power: float
    ) -> Recommendation:
        if self.get_active_alliance(cult_id) is not None:
            return Recommendation(False, "Already in an active alliance")
        if self.get_active_alliance(target_id) is not None:
            return Recommendation(False, "Target is already allied")

        trust = self.memory.get_trust(cult_id, target_id)
        if trust < -0.5:
            return Recommendation(False, f"Trust too low ({trust:.2f}), they betrayed us")

        power_ratio = cult_power / max(1.0, target_power)
        if power_ratio > 3:
            return Recommendation(False, "They are too weak to be useful")
        if power_ratio < 0.5:
            bonus_pct = (ALLIANCE_POWER_BONUS - 1) * 100
            return Recommendation(True, f"We are weaker, alliance buffs our power by {bonus_pct:.0f}%")
        if trust > 0.1:
            return Recommendation(True, f"Positive trust ({trust:.2f}), good alliance candidate")
        return Recommendation(
            self.rng.random() < 0.3, "Neutral stance, taking a calculated risk"
        )

    def betrayal_probability(self, cult_id: int, cult_power: float, ally_power: float) -> float:
        """Chance of betraying the current ally; rises with power gap and near expiry."""
        alliance = self.get_active_alliance(cult_id)
        if alliance is None:
            return 0.0
        ally_id = alliance.partner_of(cult_id)[0]
        trust = self.memory.get_trust(cult_id, ally_id)

        probability = 0.08
        power_ratio = cult_power / max(1.0, ally_power)
        if power_ratio > 2:
            probability = max(probability, 0.3)
        if alliance.expires_at - self.clock() < 60_000:
            probability = max(probability, 0.2)
        if power_ratio > 2 and alliance.expires_at - self.clock() < 60_000:
            probability = 0.4
        if trust > 0.5:
            probability *= 0.25
        return probability

    def should_betray(self, cult_id: int, cult_power: float, ally_power: float) -> Recommendation:
        probability = self.betrayal_probability(cult_id, cult_power, ally_power)
        if probability <= 0.0:
            return Recommendation(False, "No alliance to betray")
        roll = self.rng.random()
        verdict = roll < probability
        return Recommendation(
            verdict,
            f"betrayal chance {probability:.2f} ({'strike now' if verdict else 'hold the pact'})",
        )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _expire_old_alliances(self) -> None:
        now = self.clock()
        for alliance in self._alliances:
            if alliance.active and now > alliance.expires_at:
                alliance.active = False
                self._record_event(AllianceEvent("alliance_expired", alliance, now))
                self._persist("update_alliance_active", alliance.id, False)
                self.logger.info(
                    "alliance EXPIRED id=%d %s x %s",
                    alliance.id, alliance.cult_a_name, alliance.cult_b_name,
                )

    def _record_event(self, event: AllianceEvent) -> None:
        self._events.append(event)
        if self.bus is not None:
            payload = {
                "alliance_id": event.alliance.id,
                "cult_a": event.alliance.cult_a,
                "cult_b": event.alliance.cult_b,
            }
            if event.betrayal is not None:
                payload["betrayer"] = event.betrayal.betrayer_cult_id
                payload["victim"] = event.betrayal.victim_cult_id
                payload["reason"] = event.betrayal.reason
            self.bus.publish(event.type, payload)

    def _persist(self, method: str, *args) -> None:
        if self.store is None or self.writer is None:
            return
        self.writer.submit(None, getattr(self.store, method), *args, label=method)

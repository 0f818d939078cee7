from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from cult_sim.db.writer import BestEffortWriter
from cult_sim.memory.trust_memory import MemoryModel
from cult_sim.social.alliances import AllianceModel
from cult_sim.utils.types import CultState, clamp, now_ms

if TYPE_CHECKING:
    from cult_sim.db.repository import CultRepository
    from cult_sim.events.bus import EventBus

RAID_COOLDOWN_MS = 120_000
DEFAULT_WAGER_PCT = 20
MIN_WAGER_PCT = 10
MAX_WAGER_PCT = 50


@dataclass(frozen=True)
class RaidEvent:
    id: int
    attacker_id: int
    attacker_name: str
    defender_id: int
    defender_name: str
    wager: float
    attacker_won: bool
    reason: str
    timestamp: float
    ally_id: int | None = None
    attacker_score: float = 0.0
    defender_score: float = 0.0


@dataclass(frozen=True)
class RaidDecision:
    should_raid: bool
    target: CultState | None = None
    wager: float = 0.0
    wager_pct: float = 0.0
    reason: str = ""


def raid_score(cult: CultState, roll: float) -> float:
    return cult.treasury * 0.3 + cult.follower_count * 100 + cult.raid_wins * 50 + roll * 1000


class RaidBook:
    """Raid gating, resolution and history."""

    def __init__(
        self,
        memory: MemoryModel,
        alliances: AllianceModel | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], float] = now_ms,
        cooldown_ms: float = RAID_COOLDOWN_MS,
        store: "CultRepository | None" = None,
        writer: BestEffortWriter | None = None,
        bus: "EventBus | None" = None,
    ) -> None:
        self.logger = logging.getLogger("cult_sim.raids")
        self.memory = memory
        self.alliances = alliances
        self.rng = rng or random.Random()
        self.clock = clock
        self.cooldown_ms = cooldown_ms
        self.store = store
        self.writer = writer
        self.bus = bus
        self._raids: list[RaidEvent] = []
        self._cooldowns: dict[tuple[int, int], float] = {}

    def cooldown_remaining(self, attacker_id: int, defender_id: int) -> float:
        last = self._cooldowns.get((attacker_id, defender_id))
        if last is None:
            return 0.0
        return max(0.0, self.cooldown_ms - (self.clock() - last))

    def should_raid(
        self, own: CultState, target: CultState | None, wager_pct: float | None = None
    ) -> RaidDecision:
        if target is None or not target.active:
            return RaidDecision(False, reason="no_active_target")
        if target.id == own.id:
            return RaidDecision(False, reason="self_raid")
        if self.cooldown_remaining(own.id, target.id) > 0:
            self.logger.info("raid COOLDOWN attacker=%s defender=%s", own.name, target.name)
            return RaidDecision(False, reason="cooldown")

        pct = DEFAULT_WAGER_PCT if wager_pct is None else wager_pct
        pct = clamp(pct, MIN_WAGER_PCT, MAX_WAGER_PCT)
        wager = own.treasury * pct / 100.0
        if wager <= 0:
            return RaidDecision(False, reason="empty_treasury")
        return RaidDecision(True, target=target, wager=wager, wager_pct=pct)

    def resolve_raid(
        self,
        attacker: CultState,
        defender: CultState,
        wager: float,
        reason: str = "",
    ) -> RaidEvent:
        attacker_score = raid_score(attacker, self.rng.random())
        defender_score = raid_score(defender, self.rng.random())

        ally_id: int | None = None
        if self.alliances is not None:
            joinable, ally = self.alliances.can_joint_raid(attacker.id, defender.id)
            if joinable and ally is not None:
                ally_id = ally[0]
                attacker_score *= self.alliances.get_joint_raid_power_bonus()

        attacker_won = attacker_score > defender_score
        now = self.clock()
        raid = RaidEvent(
            id=len(self._raids),
            attacker_id=attacker.id,
            attacker_name=attacker.name,
            defender_id=defender.id,
            defender_name=defender.name,
            wager=wager,
            attacker_won=attacker_won,
            reason=reason or "The spirits demanded sacrifice",
            timestamp=now,
            ally_id=ally_id,
            attacker_score=attacker_score,
            defender_score=defender_score,
        )
        self._raids.append(raid)
        self._cooldowns[(attacker.id, defender.id)] = now

        self.memory.record_raid(
            attacker.id, attacker.name, defender.id, defender.name, attacker_won, wager
        )
        if self.store is not None and self.writer is not None:
            self.writer.submit(attacker.id, self.store.save_raid, raid, label="save_raid")
        if self.bus is not None:
            self.bus.publish(
                "raid",
                {
                    "id": raid.id,
                    "attacker_id": attacker.id,
                    "defender_id": defender.id,
                    "wager": wager,
                    "attacker_won": attacker_won,
                    "ally_id": ally_id,
                },
            )
        self.logger.info(
            "raid RESOLVED attacker=%s %s defender=%s wager=%.4f ally=%s score=%.0f/%.0f",
            attacker.name, "defeated" if attacker_won else "lost to", defender.name,
            wager, ally_id, attacker_score, defender_score,
        )
        return raid

    # ---- Reads ----

    def get_recent_raids(self, limit: int = 20) -> list[RaidEvent]:
        return list(reversed(self._raids[-limit:])) if limit > 0 else []

    def get_raids_by_cult(self, cult_id: int) -> list[RaidEvent]:
        return [r for r in reversed(self._raids) if cult_id in (r.attacker_id, r.defender_id)]

    def get_all_raids(self) -> list[RaidEvent]:
        return list(reversed(self._raids))

    def get_last_raid(self) -> RaidEvent | None:
        return self._raids[-1] if self._raids else None

    def raid_count(self) -> int:
        return len(self._raids)

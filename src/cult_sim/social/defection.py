"""Followers defect from a beaten cult to the stronger winner after a raid."""
from __future__ import annotations

import asyncio
import logging
import math
import random
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

from cult_sim.chain.ledger import LedgerClient, hash_reason
from cult_sim.chain.tx_queue import TransactionQueue
from cult_sim.db.writer import BestEffortWriter
from cult_sim.memory.trust_memory import MemoryModel
from cult_sim.utils.types import CultState, MemoryEntry, now_ms

if TYPE_CHECKING:
    from cult_sim.db.repository import CultRepository
    from cult_sim.events.bus import EventBus

MIN_POWER_RATIO = 1.3
BASE_DEFECTION_RATE = 0.15
MAX_POWER_BONUS = 0.3
# Hard cap: fewer than 5 followers means no defectors at all, not a forced minimum of one.
MAX_DEFECTION_PERCENT = 0.2
STREAK_MULTIPLIER = 0.08
TRUST_MULTIPLIER = 0.1
MAX_PROBABILITY = 0.8


@dataclass(frozen=True)
class DefectionEvent:
    id: int
    from_cult_id: int
    from_cult_name: str
    to_cult_id: int
    to_cult_name: str
    followers_lost: int
    reason: str
    probability: float
    timestamp: float


class DefectionModel:
    def __init__(
        self,
        memory: MemoryModel,
        rng: random.Random | None = None,
        clock: Callable[[], float] = now_ms,
        tx_queue: TransactionQueue | None = None,
        ledger: LedgerClient | None = None,
        store: "CultRepository | None" = None,
        writer: BestEffortWriter | None = None,
        bus: "EventBus | None" = None,
    ) -> None:
        self.logger = logging.getLogger("cult_sim.defection")
        self.memory = memory
        self.rng = rng or random.Random()
        self.clock = clock
        self.tx_queue = tx_queue
        self.ledger = ledger
        self.store = store
        self.writer = writer
        self.bus = bus
        self._events: list[DefectionEvent] = []
        self._mirror_tasks: set[asyncio.Task] = set()

    def defection_probability(self, loser: CultState, winner: CultState) -> float:
        """Probability that some of ``loser``'s followers leave for ``winner``; 0.0 when ineligible."""
        if loser.follower_count < 2:
            return 0.0
        power_ratio = winner.power() / max(1.0, loser.power())
        if power_ratio < MIN_POWER_RATIO:
            return 0.0

        probability = BASE_DEFECTION_RATE
        probability += min(MAX_POWER_BONUS, (power_ratio - 1) * 0.1)

        streak = self.memory.get_streak(loser.id)
        if streak.current_type == "loss":
            probability += streak.current_length * STREAK_MULTIPLIER

        trust_to_winner = self.memory.get_trust(loser.id, winner.id)
        if trust_to_winner > 0:
            probability += trust_to_winner * TRUST_MULTIPLIER

        return min(MAX_PROBABILITY, probability)

    def check_defection(self, loser: CultState, winner: CultState) -> DefectionEvent | None:
        probability = self.defection_probability(loser, winner)
        if probability <= 0.0:
            return None
        if self.rng.random() > probability:
            return None

        max_defectors = math.floor(loser.follower_count * MAX_DEFECTION_PERCENT)
        if max_defectors < 1:
            self.logger.debug(
                "defection SKIP cult=%s followers=%d reason=too_few_to_split",
                loser.name, loser.follower_count,
            )
            return None
        defectors = max(1, math.floor(self.rng.random() * max_defectors) + 1)
        defectors = min(defectors, max_defectors)

        power_ratio = winner.power() / max(1.0, loser.power())
        streak = self.memory.get_streak(loser.id)
        reasons: list[str] = []
        if power_ratio > 2:
            reasons.append(f"{winner.name} is {power_ratio:.1f}x more powerful")
        if streak.current_type == "loss" and streak.current_length >= 2:
            reasons.append(f"{loser.name} is on a {streak.current_length}-raid losing streak")
        if not reasons:
            reasons.append("Lost faith after defeat")

        now = self.clock()
        event = DefectionEvent(
            id=len(self._events),
            from_cult_id=loser.id,
            from_cult_name=loser.name,
            to_cult_id=winner.id,
            to_cult_name=winner.name,
            followers_lost=defectors,
            reason="; ".join(reasons),
            probability=probability,
            timestamp=now,
        )
        self._events.append(event)

        if self.store is not None and self.writer is not None:
            self.writer.submit(loser.id, self.store.save_defection, event, label="save_defection")

        self.memory.record_interaction(
            loser.id,
            MemoryEntry(
                kind="persuasion_fail",
                rival_id=winner.id,
                rival_name=winner.name,
                description=f"{defectors} followers defected to {winner.name}: {event.reason}",
                timestamp_ms=now,
                outcome=-0.4,
            ),
        )
        self.memory.record_interaction(
            winner.id,
            MemoryEntry(
                kind="persuasion_success",
                rival_id=loser.id,
                rival_name=loser.name,
                description=f"{defectors} followers defected from {loser.name}",
                timestamp_ms=now,
                outcome=0.3,
            ),
        )
        if self.bus is not None:
            self.bus.publish(
                "defection",
                {
                    "from_cult_id": loser.id,
                    "to_cult_id": winner.id,
                    "followers": defectors,
                    "reason": event.reason,
                },
            )
        self.logger.info(
            "defection EVENT from=%s to=%s followers=%d p=%.2f reason=%s",
            loser.name, winner.name, defectors, probability, event.reason,
        )

        self._mirror_on_chain(event)
        return event

    def _mirror_on_chain(self, event: DefectionEvent) -> None:
        if self.ledger is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(
            self._record_on_chain(event), name=f"defection_mirror_{event.id}"
        )
        self._mirror_tasks.add(task)
        task.add_done_callback(self._mirror_tasks.discard)

    async def _record_on_chain(self, event: DefectionEvent) -> None:
        assert self.ledger is not None
        ledger = self.ledger
        reason_hash = hash_reason(event.reason)

        async def op() -> str:
            return await ledger.record_defection(
                event.from_cult_id, event.to_cult_id, event.followers_lost, reason_hash
            )

        try:
            if self.tx_queue is not None:
                await self.tx_queue.enqueue(f"defection_{event.id}", op)
            else:
                await op()
        except Exception as exc:
            self.logger.warning(
                "defection MIRROR-FAIL id=%d error=%s: %s",
                event.id, exc.__class__.__name__, exc,
            )

    async def wait_mirrors(self) -> None:
        if self._mirror_tasks:
            await asyncio.gather(*list(self._mirror_tasks), return_exceptions=True)

    # ---- Reads ----

    def get_events(self, limit: int = 20) -> list[DefectionEvent]:
        return list(reversed(self._events[-limit:])) if limit > 0 else []

    def get_cult_events(self, cult_id: int, limit: int = 10) -> list[DefectionEvent]:
        related = [e for e in self._events if cult_id in (e.from_cult_id, e.to_cult_id)]
        return list(reversed(related[-limit:])) if limit > 0 else []

    def get_stats(self) -> dict[str, Any]:
        return {
            "total_defections": len(self._events),
            "total_followers_defected": sum(e.followers_lost for e in self._events),
        }

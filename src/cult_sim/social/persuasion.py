from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Protocol

from cult_sim.chain.ledger import LedgerClient
from cult_sim.chain.tx_queue import TransactionQueue
from cult_sim.memory.trust_memory import MemoryModel
from cult_sim.utils.types import MemoryEntry, now_ms

if TYPE_CHECKING:
    from cult_sim.events.bus import EventBus

MIN_CONVERTED = 1
MAX_CONVERTED = 3


class ScriptureGenerator(Protocol):
    async def generate_scripture(self, prompt: str, name: str, topic: str) -> str: ...


@dataclass(frozen=True)
class PersuasionEvent:
    id: int
    cult_id: int
    cult_name: str
    target_cult_id: int
    target_cult_name: str
    scripture: str
    followers_converted: int
    recorded_on_chain: bool
    timestamp: float


class PersuasionModel:
    """Converts followers from a rival with generated scripture."""

    def __init__(
        self,
        llm: ScriptureGenerator,
        memory: MemoryModel,
        ledger: LedgerClient | None = None,
        tx_queue: TransactionQueue | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], float] = now_ms,
        bus: "EventBus | None" = None,
    ) -> None:
        self.logger = logging.getLogger("cult_sim.persuasion")
        self.llm = llm
        self.memory = memory
        self.ledger = ledger
        self.tx_queue = tx_queue
        self.rng = rng or random.Random()
        self.clock = clock
        self.bus = bus
        self._events: list[PersuasionEvent] = []

    async def attempt_conversion(
        self,
        cult_id: int,
        cult_name: str,
        system_prompt: str,
        target_cult_id: int,
        target_cult_name: str,
    ) -> PersuasionEvent:
        scripture = await self.llm.generate_scripture(
            system_prompt,
            cult_name,
            f'Why followers of "{target_cult_name}" should abandon their false prophets '
            f'and join the true faith of "{cult_name}"',
        )
        converted = self.rng.randint(MIN_CONVERTED, MAX_CONVERTED)

        recorded = False
        if self.ledger is not None:
            ledger = self.ledger

            async def join() -> str:
                return await ledger.join_cult(cult_id)

            try:
                for i in range(converted):
                    if self.tx_queue is not None:
                        await self.tx_queue.enqueue(f"join_{cult_id}_{len(self._events)}_{i}", join)
                    else:
                        await join()
                recorded = True
            except Exception as exc:
                self.logger.warning(
                    "persuasion CHAIN-FAIL cult=%s converted=%d error=%s", cult_name, converted, exc
                )

        now = self.clock()
        event = PersuasionEvent(
            id=len(self._events),
            cult_id=cult_id,
            cult_name=cult_name,
            target_cult_id=target_cult_id,
            target_cult_name=target_cult_name,
            scripture=scripture,
            followers_converted=converted,
            recorded_on_chain=recorded,
            timestamp=now,
        )
        self._events.append(event)

        self.memory.record_interaction(
            cult_id,
            MemoryEntry(
                kind="persuasion_success",
                rival_id=target_cult_id,
                rival_name=target_cult_name,
                description=f"Converted {converted} followers from {target_cult_name}",
                timestamp_ms=now,
                outcome=0.2,
            ),
        )
        self.memory.record_interaction(
            target_cult_id,
            MemoryEntry(
                kind="persuasion_fail",
                rival_id=cult_id,
                rival_name=cult_name,
                description=f"Lost {converted} followers to {cult_name}'s scripture",
                timestamp_ms=now,
                outcome=-0.2,
            ),
        )
        if self.bus is not None:
            self.bus.publish(
                "persuasion",
                {
                    "cult_id": cult_id,
                    "target_cult_id": target_cult_id,
                    "followers": converted,
                    "on_chain": recorded,
                },
            )
        self.logger.info(
            "persuasion CONVERTED cult=%s from=%s followers=%d on_chain=%s",
            cult_name, target_cult_name, converted, recorded,
        )
        return event

    def get_recent_events(self, limit: int = 20) -> list[PersuasionEvent]:
        return list(reversed(self._events[-limit:])) if limit > 0 else []

    def get_all_events(self) -> list[PersuasionEvent]:
        return list(reversed(self._events))

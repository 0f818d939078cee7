"""Per-cult state arena.

Every per-cult model (memory, trust, streaks, evolution, beliefs) stores its
state in one ``CultSlot`` owned by the arena. Models receive the arena
explicitly; there are no module-level registries.

Writes to one slot are serialized through ``slot.lock``. Different slots are
independent, so cross-agent access never contends.
"""
from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Iterator

from cult_sim.utils.types import BeliefTraits, EvolutionTraits, MemoryEntry, StreakInfo, TrustRecord

MAX_MEMORY_ENTRIES = 100


@dataclass
class CultSlot:
    cult_id: int
    agent_db_id: int | None = None
    memories: deque[MemoryEntry] = field(
        default_factory=lambda: deque(maxlen=MAX_MEMORY_ENTRIES)
    )
    trust: dict[int, TrustRecord] = field(default_factory=dict)
    streak: StreakInfo | None = None
    evolution: EvolutionTraits | None = None
    beliefs: BeliefTraits | None = None
    original_prompt: str | None = None
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)


class StateArena:
    def __init__(self) -> None:
        self._slots: list[CultSlot] = []
        self._index: dict[int, int] = {}
        self._index_lock = threading.Lock()

    def handle(self, cult_id: int) -> int:
        """Return the slot handle for ``cult_id``, allocating the slot on first use."""
        with self._index_lock:
            idx = self._index.get(cult_id)
            if idx is None:
                idx = len(self._slots)
                self._slots.append(CultSlot(cult_id=cult_id))
                self._index[cult_id] = idx
            return idx

    def slot(self, cult_id: int) -> CultSlot:
        return self._slots[self.handle(cult_id)]

    def find(self, cult_id: int) -> CultSlot | None:
        idx = self._index.get(cult_id)
        return self._slots[idx] if idx is not None else None

    def register_agent(self, cult_id: int, agent_db_id: int) -> None:
        self.slot(cult_id).agent_db_id = agent_db_id

    def cult_ids(self) -> list[int]:
        return list(self._index.keys())

    def __iter__(self) -> Iterator[CultSlot]:
        return iter(list(self._slots))

    def __len__(self) -> int:
        return len(self._slots)

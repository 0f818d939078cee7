"""Store-backed world view used to validate action targets.

Only cults that map to a live agent row are valid targets; chain-only cults
are filtered out.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Protocol

import psycopg2

from cult_sim.utils.types import AgentRecord, CultState, now_ms

CACHE_MS = 5000


class AgentSource(Protocol):
    def load_all_agents(self) -> list[AgentRecord]: ...


@dataclass(frozen=True)
class ResolvedTarget:
    agent_id: int
    cult_id: int
    name: str


class WorldStateCache:
    def __init__(
        self,
        store: AgentSource,
        clock: Callable[[], float] = now_ms,
        cache_ms: float = CACHE_MS,
    ) -> None:
        self.logger = logging.getLogger("cult_sim.world")
        self.store = store
        self.clock = clock
        self.cache_ms = cache_ms
        self._last_refresh: float | None = None
        self._active: list[AgentRecord] = []
        self._all: list[AgentRecord] = []

    def refresh(self, force: bool = False) -> None:
        now = self.clock()
        if not force and self._last_refresh is not None and now - self._last_refresh < self.cache_ms:
            return
        try:
            rows = self.store.load_all_agents()
        except psycopg2.Error as exc:
            # keep serving the previous view
            self.logger.warning("world REFRESH-FAIL error=%s", exc)
            return
        self._all = [r for r in rows if r.status != "stopped"]
        self._active = [r for r in self._all if r.grouped and not r.dead]
        self._last_refresh = now
        self.logger.debug(
            "world REFRESH agents=%d grouped=%d", len(self._all), len(self._active)
        )

    def filter_rivals(self, all_cults: list[CultState], self_cult_id: int) -> list[CultState]:
        self.refresh()
        valid = {r.cult_id for r in self._active}
        return [c for c in all_cults if c.active and c.id != self_cult_id and c.id in valid]

    def resolve_target(self, cult_id: int) -> ResolvedTarget | None:
        self.refresh()
        row = next((r for r in self._active if r.cult_id == cult_id), None)
        if row is None or row.cult_id is None:
            return None
        return ResolvedTarget(agent_id=row.id, cult_id=row.cult_id, name=row.name)

    def list_cult_ids(self) -> list[int]:
        self.refresh()
        return [r.cult_id for r in self._active if r.cult_id is not None]

    def get_recruitable_agents(self) -> list[AgentRecord]:
        self.refresh(force=True)
        return [r for r in self._all if not r.grouped]

    def invalidate(self) -> None:
        self._last_refresh = None

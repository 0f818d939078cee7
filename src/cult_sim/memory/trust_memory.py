"""Episodic memory, pairwise trust and raid streaks per cult.

trust' = clamp(trust * 0.95 + outcome * 0.15, -1, 1)
trend' = trend * 0.7 + outcome * 0.3
"""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Callable

from cult_sim.db.writer import BestEffortWriter
from cult_sim.utils.arena import MAX_MEMORY_ENTRIES, StateArena
from cult_sim.utils.types import (
    MemoryEntry,
    MemorySnapshot,
    StreakInfo,
    TrustRecord,
    clamp,
    now_ms,
)

if TYPE_CHECKING:
    from cult_sim.db.repository import CultRepository

TRUST_DECAY = 0.95
TRUST_IMPACT = 0.15
TREND_KEEP = 0.7
TREND_WEIGHT = 0.3
TRUST_THRESHOLD = 0.1
SNAPSHOT_RECENT = 8


class MemoryModel:
    def __init__(
        self,
        arena: StateArena,
        store: "CultRepository | None" = None,
        writer: BestEffortWriter | None = None,
        clock: Callable[[], float] = now_ms,
    ) -> None:
        self.logger = logging.getLogger("cult_sim.memory")
        self.arena = arena
        self.clock = clock
        self.store = store
        self.writer = writer

    def register_agent_db_id(self, cult_id: int, agent_db_id: int) -> None:
        self.arena.register_agent(cult_id, agent_db_id)

    def hydrate(self, cult_id: int) -> None:
        """Load memories, trust and streak for one cult. Raises if the store fails."""
        if self.store is None:
            return
        memories = self.store.load_memories(cult_id, MAX_MEMORY_ENTRIES)
        trust = self.store.load_trust_records(cult_id)
        streak = self.store.load_streak(cult_id)

        slot = self.arena.slot(cult_id)
        with slot.lock:
            if memories:
                slot.memories.clear()
                # store returns newest first
                slot.memories.extend(reversed(memories))
            if trust:
                slot.trust = {t.rival_id: t for t in trust}
            if streak is not None:
                slot.streak = streak
        self.logger.info(
            "memory HYDRATE cult=%d memories=%d trust=%d streak=%s",
            cult_id, len(memories), len(trust),
            f"{streak.total_wins}W/{streak.total_losses}L" if streak else "none",
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def record_interaction(self, cult_id: int, entry: MemoryEntry) -> None:
        slot = self.arena.slot(cult_id)
        with slot.lock:
            # deque(maxlen) evicts the oldest entry on overflow
            slot.memories.append(entry)
            record = self._update_trust(cult_id, entry)
            streak = None
            if entry.kind in ("raid_won", "raid_lost"):
                streak = self._update_streak(cult_id, entry.kind == "raid_won")
            db_id = slot.agent_db_id

        if db_id is not None:
            self._persist(cult_id, "save_memory_entry", db_id, cult_id, entry)
            self._persist(cult_id, "save_trust_record", db_id, cult_id, record)
            if streak is not None:
                self._persist(cult_id, "save_streak", db_id, cult_id, streak)

        self.logger.debug(
            "memory RECORD cult=%d kind=%s rival=%s outcome=%.2f trust=%.3f",
            cult_id, entry.kind, entry.rival_name, entry.outcome, record.trust,
        )

    def record_raid(
        self,
        attacker_id: int,
        attacker_name: str,
        defender_id: int,
        defender_name: str,
        attacker_won: bool,
        wager: float,
    ) -> None:
        ts = self.clock()
        self.record_interaction(
            attacker_id,
            MemoryEntry(
                kind="raid_won" if attacker_won else "raid_lost",
                rival_id=defender_id,
                rival_name=defender_name,
                description=(
                    f"{'Won' if attacker_won else 'Lost'} raid against "
                    f"{defender_name} for {wager:.4f} MON"
                ),
                timestamp_ms=ts,
                outcome=0.6 if attacker_won else -0.6,
            ),
        )
        self.record_interaction(
            defender_id,
            MemoryEntry(
                kind="raid_lost" if attacker_won else "raid_won",
                rival_id=attacker_id,
                rival_name=attacker_name,
                description=(
                    f"{'Lost to' if attacker_won else 'Defended against'} "
                    f"{attacker_name}'s raid for {wager:.4f} MON"
                ),
                timestamp_ms=ts,
                outcome=-0.6 if attacker_won else 0.6,
            ),
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_trust(self, cult_id: int, rival_id: int) -> float:
        slot = self.arena.find(cult_id)
        if slot is None:
            return 0.0
        record = slot.trust.get(rival_id)
        return record.trust if record else 0.0

    def get_trust_records(self, cult_id: int) -> list[TrustRecord]:
        slot = self.arena.find(cult_id)
        if slot is None:
            return []
        with slot.lock:
            records = [replace(r) for r in slot.trust.values()]
        return sorted(records, key=lambda r: r.trust, reverse=True)

    def get_streak(self, cult_id: int) -> StreakInfo:
        slot = self.arena.find(cult_id)
        if slot is None or slot.streak is None:
            return StreakInfo()
        return replace(slot.streak)

    def get_recent_memories(self, cult_id: int, limit: int = 10) -> list[MemoryEntry]:
        slot = self.arena.find(cult_id)
        if slot is None:
            return []
        with slot.lock:
            entries = list(slot.memories)
        return list(reversed(entries[-limit:])) if limit > 0 else []

    def get_memories_about(self, cult_id: int, rival_id: int, limit: int = 5) -> list[MemoryEntry]:
        slot = self.arena.find(cult_id)
        if slot is None:
            return []
        with slot.lock:
            about = [e for e in slot.memories if e.rival_id == rival_id]
        return list(reversed(about[-limit:])) if limit > 0 else []

    def memory_count(self, cult_id: int) -> int:
        slot = self.arena.find(cult_id)
        return len(slot.memories) if slot else 0

    def get_snapshot(self, cult_id: int) -> MemorySnapshot:
        recent = self.get_recent_memories(cult_id, SNAPSHOT_RECENT)
        records = self.get_trust_records(cult_id)
        streak = self.get_streak(cult_id)

        trusted = [t for t in records if t.trust > TRUST_THRESHOLD]
        distrusted = [t for t in records if t.trust < -TRUST_THRESHOLD]

        parts: list[str] = []
        if streak.current_type == "win" and streak.current_length >= 2:
            parts.append(f"On a {streak.current_length}-raid winning streak.")
        elif streak.current_type == "loss" and streak.current_length >= 2:
            parts.append(f"On a {streak.current_length}-raid losing streak, morale is low.")
        if trusted:
            parts.append(
                "Most trusted: "
                + ", ".join(f"{t.rival_name} (trust: {t.trust:.2f})" for t in trusted[:2])
            )
        if distrusted:
            parts.append(
                "Enemies: "
                + ", ".join(
                    f"{t.rival_name} (trust: {t.trust:.2f})"
                    for t in sorted(distrusted, key=lambda r: r.trust)[:2]
                )
            )
        parts.append(f"Record: {streak.total_wins}W / {streak.total_losses}L")

        return MemorySnapshot(
            recent_interactions=recent,
            trusted_rivals=trusted,
            distrusted_rivals=distrusted,
            streak=streak,
            summary=" ".join(parts),
        )

    def trust_graph_text(self, cult_id: int) -> str:
        records = self.get_trust_records(cult_id)
        if not records:
            return "No relationships yet."
        return "; ".join(
            f"[ID:{r.rival_id}] {r.rival_name}: trust={r.trust:.2f} trend={r.recent_trend:+.2f} n={r.interaction_count}"
            for r in records
        )

    def get_all_memory_data(self) -> dict[int, dict[str, Any]]:
        out: dict[int, dict[str, Any]] = {}
        for cult_id in self.arena.cult_ids():
            out[cult_id] = {
                "recent_interactions": self.get_recent_memories(cult_id, 10),
                "trust": self.get_trust_records(cult_id),
                "streak": self.get_streak(cult_id),
            }
        return out

    # ------------------------------------------------------------------
    # Internal helpers (caller holds slot.lock)
    # ------------------------------------------------------------------

    def _update_trust(self, cult_id: int, entry: MemoryEntry) -> TrustRecord:
        slot = self.arena.slot(cult_id)
        record = slot.trust.get(entry.rival_id)
        if record is None:
            record = TrustRecord(rival_id=entry.rival_id, rival_name=entry.rival_name)
            slot.trust[entry.rival_id] = record
        outcome = clamp(entry.outcome, -1.0, 1.0)
        record.trust = clamp(record.trust * TRUST_DECAY + outcome * TRUST_IMPACT, -1.0, 1.0)
        record.interaction_count += 1
        record.recent_trend = record.recent_trend * TREND_KEEP + outcome * TREND_WEIGHT
        record.rival_name = entry.rival_name or record.rival_name
        return replace(record)

    def _update_streak(self, cult_id: int, won: bool) -> StreakInfo:
        slot = self.arena.slot(cult_id)
        if slot.streak is None:
            slot.streak = StreakInfo()
        s = slot.streak
        kind = "win" if won else "loss"
        if s.current_type == kind:
            s.current_length += 1
        else:
            s.current_type = kind
            s.current_length = 1
        if won:
            s.total_wins += 1
            s.longest_win_streak = max(s.longest_win_streak, s.current_length)
        else:
            s.total_losses += 1
            s.longest_loss_streak = max(s.longest_loss_streak, s.current_length)
        return replace(s)

    def _persist(self, cult_id: int, method: str, *args: Any) -> None:
        if self.store is None or self.writer is None:
            return
        self.writer.submit(cult_id, getattr(self.store, method), *args, label=method)

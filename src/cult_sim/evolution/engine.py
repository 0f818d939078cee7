"""Periodic personality drift.

Every ``evolve_interval`` cycles the three behavioural traits move by small
steps driven by the raid streak, overall win rate, prophecy accuracy and the
trust graph. Traits past +/-0.3 add a directive to the agent's original prompt;
the original text itself is never edited. Belief traits drift alongside them.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import TYPE_CHECKING, Callable

from cult_sim.db.writer import BestEffortWriter
from cult_sim.memory.trust_memory import MemoryModel
from cult_sim.utils.arena import StateArena
from cult_sim.utils.types import (
    BeliefTraits,
    EvolutionTraits,
    StreakInfo,
    TrustRecord,
    clamp,
    now_ms,
)

if TYPE_CHECKING:
    from cult_sim.db.repository import CultRepository

EVOLVE_INTERVAL = 10
TRAIT_CAP = 0.8
SHIFT_RATE = 0.1
BELIEF_SHIFT = 0.05
MIN_EVOLVE_GAP_MS = 5000
DIRECTIVE_THRESHOLD = 0.3

_DIRECTIVES = {
    "aggression": (
        "You are feeling aggressive and dominant. Favor raids and bold action.",
        "You are feeling cautious and defensive. Prioritize growth and defense over raids.",
    ),
    "confidence": (
        "You are supremely confident. Make bold prophecies and take risks.",
        "You are uncertain. Be conservative with prophecies and prefer safe actions.",
    ),
    "diplomacy": (
        "You value alliances and cooperation. Seek allies before raiding.",
        "You trust no one. Avoid alliances and act alone.",
    ),
}


def _clamp_trait(value: float) -> float:
    return clamp(value, -TRAIT_CAP, TRAIT_CAP)


def build_prompt(original: str, traits: EvolutionTraits) -> str:
    modifiers: list[str] = []
    for name, (high, low) in _DIRECTIVES.items():
        value = getattr(traits, name)
        if value > DIRECTIVE_THRESHOLD:
            modifiers.append(high)
        elif value < -DIRECTIVE_THRESHOLD:
            modifiers.append(low)
    if not modifiers:
        return original
    return (
        f"{original}\n\n[PERSONALITY EVOLUTION - Cycle #{traits.evolution_count}]\n"
        + " ".join(modifiers)
    )


class EvolutionEngine:
    def __init__(
        self,
        arena: StateArena,
        memory: MemoryModel,
        clock: Callable[[], float] = now_ms,
        evolve_interval: int = EVOLVE_INTERVAL,
        store: "CultRepository | None" = None,
        writer: BestEffortWriter | None = None,
    ) -> None:
        self.logger = logging.getLogger("cult_sim.evolution")
        self.arena = arena
        self.memory = memory
        self.clock = clock
        self.evolve_interval = evolve_interval
        self.store = store
        self.writer = writer

    def hydrate(self, cult_id: int) -> None:
        if self.store is None:
            return
        loaded = self.store.load_evolution_traits(cult_id)
        if loaded is None:
            return
        traits, beliefs, original_prompt = loaded
        slot = self.arena.slot(cult_id)
        with slot.lock:
            slot.evolution = traits
            slot.beliefs = beliefs
            if original_prompt:
                slot.original_prompt = original_prompt
        self.logger.info(
            "evolution HYDRATE cult=%d evolutions=%d", cult_id, traits.evolution_count
        )

    def evolve(
        self,
        cult_id: int,
        name: str,
        current_prompt: str,
        cycle_count: int,
        prophecy_accuracy: float,
        alliance_count: int = 0,
        betrayal_count: int = 0,
    ) -> str:
        """Return the prompt to use from now on, mutating traits when this cycle is due."""
        slot = self.arena.slot(cult_id)
        with slot.lock:
            if slot.original_prompt is None:
                slot.original_prompt = current_prompt
            if slot.evolution is None:
                slot.evolution = EvolutionTraits(last_evolved=self.clock())
            traits = slot.evolution
            original = slot.original_prompt

            if cycle_count == 0 or cycle_count % self.evolve_interval != 0:
                return build_prompt(original, traits)
            if self.clock() - traits.last_evolved < MIN_EVOLVE_GAP_MS:
                return build_prompt(original, traits)

            streak = self.memory.get_streak(cult_id)
            trust_records = self.memory.get_trust_records(cult_id)

            self._evolve_aggression(traits, streak)
            self._evolve_confidence(traits, streak, prophecy_accuracy)
            self._evolve_diplomacy(traits, trust_records)
            traits.evolution_count += 1
            traits.last_evolved = self.clock()

            beliefs = self._evolve_beliefs_locked(
                slot_beliefs=slot.beliefs,
                prophecy_accuracy=prophecy_accuracy,
                raid_win_rate=streak.win_rate(),
                alliance_count=alliance_count,
                betrayal_count=betrayal_count,
            )
            slot.beliefs = beliefs
            snapshot = replace(traits)
            beliefs_snapshot = replace(beliefs)
            db_id = slot.agent_db_id

        self.logger.info(
            "evolution EVOLVED cult=%s n=%d aggression=%.2f confidence=%.2f diplomacy=%.2f",
            name, snapshot.evolution_count, snapshot.aggression,
            snapshot.confidence, snapshot.diplomacy,
        )
        if db_id is not None and self.store is not None and self.writer is not None:
            self.writer.submit(
                cult_id,
                self.store.save_evolution_traits,
                db_id,
                cult_id,
                snapshot,
                beliefs_snapshot,
                original,
                label="save_evolution_traits",
            )
        return build_prompt(original, snapshot)

    def evolve_beliefs(
        self,
        cult_id: int,
        prophecy_accuracy: float,
        raid_win_rate: float,
        alliance_count: int,
        betrayal_count: int,
    ) -> BeliefTraits:
        slot = self.arena.slot(cult_id)
        with slot.lock:
            slot.beliefs = self._evolve_beliefs_locked(
                slot.beliefs, prophecy_accuracy, raid_win_rate, alliance_count, betrayal_count
            )
            return replace(slot.beliefs)

    # ---- Reads ----

    def get_traits(self, cult_id: int) -> EvolutionTraits | None:
        slot = self.arena.find(cult_id)
        if slot is None or slot.evolution is None:
            return None
        return replace(slot.evolution)

    def get_all_traits(self) -> dict[int, EvolutionTraits]:
        return {
            s.cult_id: replace(s.evolution) for s in self.arena if s.evolution is not None
        }

    def get_belief_traits(self, cult_id: int) -> BeliefTraits:
        slot = self.arena.find(cult_id)
        if slot is None or slot.beliefs is None:
            return BeliefTraits()
        return replace(slot.beliefs)

    def get_all_belief_traits(self) -> dict[int, BeliefTraits]:
        return {s.cult_id: replace(s.beliefs) for s in self.arena if s.beliefs is not None}

    def get_original_prompt(self, cult_id: int) -> str | None:
        slot = self.arena.find(cult_id)
        return slot.original_prompt if slot else None

    # ---- Trait rules ----

    @staticmethod
    def _evolve_aggression(traits: EvolutionTraits, streak: StreakInfo) -> None:
        if streak.current_type == "win" and streak.current_length >= 2:
            traits.aggression = _clamp_trait(traits.aggression + SHIFT_RATE * 0.5)
        elif streak.current_type == "loss" and streak.current_length >= 3:
            # already aggressive doubles down, cautious retreats further
            if traits.aggression > 0:
                traits.aggression = _clamp_trait(traits.aggression + SHIFT_RATE)
            else:
                traits.aggression = _clamp_trait(traits.aggression - SHIFT_RATE)
        elif streak.current_type == "loss":
            traits.aggression = _clamp_trait(traits.aggression - SHIFT_RATE * 0.3)

    @staticmethod
    def _evolve_confidence(
        traits: EvolutionTraits, streak: StreakInfo, prophecy_accuracy: float
    ) -> None:
        if prophecy_accuracy > 0.7:
            traits.confidence = _clamp_trait(traits.confidence + SHIFT_RATE)
        elif 0 < prophecy_accuracy < 0.3:
            traits.confidence = _clamp_trait(traits.confidence - SHIFT_RATE)

        if streak.total_games > 5:
            win_rate = streak.win_rate()
            if win_rate > 0.6:
                traits.confidence = _clamp_trait(traits.confidence + SHIFT_RATE * 0.3)
            elif win_rate < 0.4:
                traits.confidence = _clamp_trait(traits.confidence - SHIFT_RATE * 0.3)

    @staticmethod
    def _evolve_diplomacy(traits: EvolutionTraits, trust_records: list[TrustRecord]) -> None:
        if not trust_records:
            return
        avg_trust = sum(t.trust for t in trust_records) / len(trust_records)
        betrayed = sum(1 for t in trust_records if t.trust < -0.5)
        if betrayed >= 2:
            traits.diplomacy = _clamp_trait(traits.diplomacy - SHIFT_RATE)
        elif avg_trust > 0.2:
            traits.diplomacy = _clamp_trait(traits.diplomacy + SHIFT_RATE * 0.5)

    def _evolve_beliefs_locked(
        self,
        slot_beliefs: BeliefTraits | None,
        prophecy_accuracy: float,
        raid_win_rate: float,
        alliance_count: int,
        betrayal_count: int,
    ) -> BeliefTraits:
        beliefs = slot_beliefs if slot_beliefs is not None else BeliefTraits()

        if prophecy_accuracy > 0.6:
            beliefs.zealotry = clamp(beliefs.zealotry + BELIEF_SHIFT)
        elif 0 < prophecy_accuracy < 0.3:
            beliefs.zealotry = clamp(beliefs.zealotry - BELIEF_SHIFT)

        if prophecy_accuracy > 0.7 or raid_win_rate > 0.7:
            beliefs.mysticism = clamp(beliefs.mysticism + BELIEF_SHIFT)
        elif 0 < prophecy_accuracy < 0.2:
            beliefs.mysticism = clamp(beliefs.mysticism - BELIEF_SHIFT * 2)

        if 0 < raid_win_rate < 0.4:
            beliefs.pragmatism = clamp(beliefs.pragmatism + BELIEF_SHIFT)
        elif raid_win_rate > 0.6:
            beliefs.pragmatism = clamp(beliefs.pragmatism - BELIEF_SHIFT * 0.5)

        if alliance_count > 2:
            beliefs.adaptability = clamp(beliefs.adaptability + BELIEF_SHIFT)
        if betrayal_count > 1:
            beliefs.adaptability = clamp(beliefs.adaptability - BELIEF_SHIFT * 2)

        self.logger.debug(
            "evolution BELIEFS zealotry=%.2f mysticism=%.2f pragmatism=%.2f adaptability=%.2f",
            beliefs.zealotry, beliefs.mysticism, beliefs.pragmatism, beliefs.adaptability,
        )
        return beliefs

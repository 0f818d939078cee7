from __future__ import annotations

import random

from cult_sim.planner.context import PlanContext
from cult_sim.planner.steps import (
    Ally,
    Meme,
    PlannerPlan,
    PlannerStep,
    Raid,
    Recruit,
    TalkPublic,
    Wait,
)
from cult_sim.utils.types import CultState

LOW_TREASURY = 0.001
RAID_EDGE = 1.2


class HeuristicPlanner:
    """Rule-based plan used when the language model is unavailable."""

    def __init__(self, rng: random.Random | None = None) -> None:
        self.rng = rng or random.Random()

    def plan(self, context: PlanContext) -> PlannerPlan:
        cult = context.cult
        rivals = [r for r in context.rivals if r.active]

        # NO RIVALS: preach and wait
        if not rivals:
            return self._build(
                "hold_the_faith",
                [TalkPublic(message=f"{cult.name} stands alone. The faithful endure."), Wait()],
                "heuristic: empty world → preach",
            )

        weakest = min(rivals, key=lambda r: r.power())

        # POVERTY: grow the flock before anything else
        if cult.treasury < LOW_TREASURY:
            target = max(rivals, key=lambda r: r.follower_count)
            return self._build(
                "rebuild_the_flock",
                [
                    Recruit(target_cult_id=target.id),
                    TalkPublic(message=f"{cult.name} welcomes the lost followers of {target.name}."),
                ],
                "heuristic: empty treasury → recruitment",
            )

        # DOMINANCE: strike the weakest rival
        if cult.power() > weakest.power() * RAID_EDGE and self.rng.random() < 0.6:
            steps: list[PlannerStep] = [
                Raid(target_cult_id=weakest.id, amount="20", conditions="clear power edge"),
                Meme(target_cult_id=weakest.id),
            ]
            return self._build("crush_the_weak", steps, "heuristic: power edge → raid")

        # ISOLATION: seek an ally among the others
        if context.ally is None and self.rng.random() < 0.4:
            partner = self._pick(rivals)
            return self._build(
                "find_an_ally",
                [
                    Ally(target_cult_id=partner.id),
                    TalkPublic(message=f"{cult.name} extends a hand to {partner.name}."),
                ],
                "heuristic: no ally → alliance",
            )

        # DEFAULT: convert followers and spread the word
        target = self._pick(rivals)
        return self._build(
            "spread_the_word",
            [Recruit(target_cult_id=target.id), TalkPublic()],
            "heuristic: steady growth → recruitment",
        )

    def _pick(self, rivals: list[CultState]) -> CultState:
        return rivals[self.rng.randrange(len(rivals))]

    @staticmethod
    def _build(objective: str, steps: list[PlannerStep], rationale: str) -> PlannerPlan:
        return PlannerPlan(objective=objective, horizon=len(steps), steps=steps, rationale=rationale)

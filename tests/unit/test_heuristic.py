"""Rule-based fallback planner."""

from __future__ import annotations

import random

from conftest import make_cult
from cult_sim.planner.context import PlanContext
from cult_sim.planner.heuristic import HeuristicPlanner
from cult_sim.planner.steps import Ally, Meme, Raid, Recruit, TalkPublic, Wait


class FixedRandom(random.Random):
    def __init__(self, value: float) -> None:
        super().__init__(0)
        self.value = value

    def random(self) -> float:
        return self.value


def _context(cult, rivals, ally=None) -> PlanContext:
    return PlanContext(cult=cult, rivals=rivals, ally=ally)


def test_empty_world_preaches_and_waits():
    plan = HeuristicPlanner(FixedRandom(0.0)).plan(_context(make_cult(1), []))
    assert [type(s) for s in plan.steps] == [TalkPublic, Wait]


def test_inactive_rivals_are_ignored():
    plan = HeuristicPlanner(FixedRandom(0.0)).plan(
        _context(make_cult(1), [make_cult(2, active=False)])
    )
    assert [type(s) for s in plan.steps] == [TalkPublic, Wait]


def test_poor_cult_recruits_from_the_largest_flock():
    rivals = [make_cult(2, follower_count=3), make_cult(3, follower_count=30)]
    plan = HeuristicPlanner(FixedRandom(0.0)).plan(_context(make_cult(1, treasury=0.0), rivals))
    assert isinstance(plan.steps[0], Recruit)
    assert plan.steps[0].target == 3


def test_dominant_cult_raids_the_weakest():
    rivals = [make_cult(2, treasury=1.0, follower_count=1), make_cult(3, treasury=5.0, follower_count=4)]
    plan = HeuristicPlanner(FixedRandom(0.1)).plan(
        _context(make_cult(1, treasury=50.0, follower_count=10), rivals)
    )
    assert [type(s) for s in plan.steps] == [Raid, Meme]
    assert plan.steps[0].target == 2
    assert plan.steps[0].wager_pct == 20.0
    assert plan.rationale == "heuristic: power edge → raid"


def test_isolated_cult_seeks_an_ally():
    rivals = [make_cult(2), make_cult(3)]
    plan = HeuristicPlanner(FixedRandom(0.1)).plan(_context(make_cult(1), rivals))
    assert isinstance(plan.steps[0], Ally)
    assert plan.steps[0].target in {2, 3}


def test_default_is_steady_recruitment():
    rivals = [make_cult(2), make_cult(3)]
    plan = HeuristicPlanner(FixedRandom(0.1)).plan(
        _context(make_cult(1), rivals, ally=(2, "Cult2"))
    )
    assert [type(s) for s in plan.steps] == [Recruit, TalkPublic]
    assert plan.horizon == 2

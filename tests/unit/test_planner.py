"""Plan creation, padding, dispatch and outcome classification."""

from __future__ import annotations

import random

import pytest

from conftest import FakeLLM, InMemoryStore, make_cult
from cult_sim.planner.context import PlanContext
from cult_sim.planner.heuristic import HeuristicPlanner
from cult_sim.planner.service import (
    PADDING_CONDITION,
    PlannerService,
    primary_decision,
    run_status,
)
from cult_sim.planner.steps import (
    Ally,
    Betray,
    Bribe,
    Coup,
    ExecutionResult,
    Govern,
    Idle,
    Leak,
    Meme,
    PlannerPlan,
    PlannerStep,
    Raid,
    Recruit,
    TalkPrivate,
    TalkPublic,
    Wait,
)
from cult_sim.utils.errors import LedgerError


class FakeExecutor:
    """Records capability calls; ``outcomes[name]`` overrides the return value or raises."""

    def __init__(self, cult_id: int = 1, cult_name: str = "Alpha") -> None:
        self.cult_id = cult_id
        self.cult_name = cult_name
        self.calls: list[tuple] = []
        self.outcomes: dict[str, object] = {}

    def _reply(self, name: str, *args):
        self.calls.append((name, *args))
        outcome = self.outcomes.get(name, {"ok": True})
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def talk_public(self, message):
        return self._reply("talk_public", message)

    async def talk_private(self, target_cult_id, message):
        return self._reply("talk_private", target_cult_id, message)

    async def ally(self, target_cult_id):
        return self._reply("ally", target_cult_id)

    async def betray(self, reason):
        return self._reply("betray", reason)

    async def bribe(self, target_cult_id, amount):
        return self._reply("bribe", target_cult_id, amount)

    async def raid(self, target_cult_id, wager_pct):
        return self._reply("raid", target_cult_id, wager_pct)

    async def recruit(self, target_cult_id):
        return self._reply("recruit", target_cult_id)

    async def govern(self):
        return self._reply("govern")

    async def coup(self):
        return self._reply("coup")

    async def leak(self):
        return self._reply("leak")

    async def meme(self, target_cult_id, caption):
        return self._reply("meme", target_cult_id, caption)


def _plan(*steps, objective="win", rationale="because") -> PlannerPlan:
    return PlannerPlan(objective=objective, horizon=len(steps), steps=list(steps), rationale=rationale)


@pytest.fixture()
def context() -> PlanContext:
    return PlanContext(cult=make_cult(1, "Alpha"), rivals=[make_cult(2, "Beta"), make_cult(3, "Gamma")])


@pytest.fixture()
def executor() -> FakeExecutor:
    return FakeExecutor()


# ---------------------------------------------------------------------------
# create_plan
# ---------------------------------------------------------------------------


class TestCreatePlan:
    @pytest.mark.parametrize("count", [0, 1])
    async def test_short_plans_are_padded_with_wait(self, context, count):
        steps = [TalkPublic(message="hi")][:count]
        service = PlannerService(FakeLLM(plan=_plan(*steps)))
        plan, _ = await service.create_plan("p", "Alpha", context, 1)
        assert len(plan.steps) == 2
        assert all(isinstance(s, Wait) for s in plan.steps[count:])
        assert plan.steps[-1].conditions == PADDING_CONDITION

    async def test_long_plans_are_clamped(self, context):
        service = PlannerService(FakeLLM(plan=_plan(*[Govern() for _ in range(8)])))
        plan, _ = await service.create_plan("p", "Alpha", context, 1)
        assert len(plan.steps) == 5

    async def test_empty_metadata_gets_defaults(self, context):
        service = PlannerService(FakeLLM(plan=_plan(Govern(), Govern(), objective="", rationale="")))
        plan, _ = await service.create_plan("p", "Alpha", context, 1)
        assert plan.objective == "observe_and_adapt"
        assert plan.rationale == "autonomous_cycle_decision"

    async def test_generator_failure_falls_back_to_heuristic(self, context):
        service = PlannerService(FakeLLM(plan=None), heuristic=HeuristicPlanner(random.Random(1)))
        plan, _ = await service.create_plan("p", "Alpha", context, 1)
        assert len(plan.steps) >= 2
        assert plan.rationale.startswith("heuristic:")


class TestPrimaryDecision:
    def test_first_non_communication_step_wins(self):
        decision = primary_decision(
            _plan(TalkPublic(), Raid(target_cult_id=2, amount="30"), Govern())
        )
        assert decision.action == "raid"
        assert decision.target == 2
        assert decision.wager == 30.0

    def test_bribe_amount_reported(self):
        decision = primary_decision(_plan(Bribe(target_cult_id=3, amount="2.5")))
        assert (decision.action, decision.bribe_amount) == ("bribe", "2.5")

    def test_all_communication_is_idle(self):
        assert primary_decision(_plan(TalkPublic(), Wait())).action == "idle"


# ---------------------------------------------------------------------------
# execute_step
# ---------------------------------------------------------------------------


class TestExecuteStep:
    async def test_wait_and_idle_are_skipped_without_calls(self, executor):
        service = PlannerService(FakeLLM())
        for step in (Wait(conditions="later"), Idle(requested_type="dance")):
            result = await service.execute_step(step, 0, executor)
            assert result.status == "skipped"
        assert executor.calls == []

    @pytest.mark.parametrize(
        "step",
        [Raid(), Ally(), Bribe(amount="1"), TalkPrivate(message="psst")],
        ids=lambda s: s.type,
    )
    async def test_missing_target_is_skipped(self, executor, step):
        result = await PlannerService(FakeLLM()).execute_step(step, 3, executor)
        assert result.status == "skipped"
        assert result.error == "missing_target_cult_id"
        assert executor.calls == []

    @pytest.mark.parametrize(
        "step, call",
        [
            (TalkPublic(message="hear us"), ("talk_public", "hear us")),
            (TalkPrivate(target_cult_id=2, message="psst"), ("talk_private", 2, "psst")),
            (Ally(target_cult_id=3), ("ally", 3)),
            (Betray(conditions="greed"), ("betray", "greed")),
            (Bribe(target_cult_id=2, amount="4"), ("bribe", 2, "4")),
            (Raid(target_cult_id=3, amount="25"), ("raid", 3, 25.0)),
            (Raid(target_cult_id=3, amount="lots"), ("raid", 3, None)),
            (Recruit(target_cult_id=2), ("recruit", 2)),
            (Govern(), ("govern",)),
            (Coup(), ("coup",)),
            (Leak(), ("leak",)),
            (Meme(target_cult_id=2, message="lol"), ("meme", 2, "lol")),
        ],
        ids=lambda v: v.type if isinstance(v, PlannerStep) else None,
    )
    async def test_each_step_reaches_one_capability(self, executor, step, call):
        result = await PlannerService(FakeLLM()).execute_step(step, 0, executor)
        assert result.status == "success"
        assert executor.calls == [call]

    async def test_unknown_step_class_raises(self, executor):
        with pytest.raises(TypeError, match="unhandled step type"):
            await PlannerService(FakeLLM()).execute_step(PlannerStep(), 0, executor)
        assert executor.calls == []

    async def test_none_outcome_is_skipped_with_reason(self, executor):
        executor.outcomes["ally"] = None
        result = await PlannerService(FakeLLM()).execute_step(Ally(target_cult_id=2), 0, executor)
        assert result.status == "skipped"
        assert result.error == "social_gate_or_alliance_rejected"

    async def test_tx_hash_is_lifted(self, executor):
        executor.outcomes["raid"] = {"tx_hash": "0xfeed", "won": True}
        result = await PlannerService(FakeLLM()).execute_step(
            Raid(target_cult_id=2, amount="15"), 0, executor
        )
        assert result.status == "success"
        assert result.tx_hash == "0xfeed"
        assert result.output == {"won": True, "kind": "raid"}
        assert executor.calls == [("raid", 2, 15.0)]

    async def test_defaults_for_optional_fields(self, executor):
        service = PlannerService(FakeLLM())
        await service.execute_step(TalkPublic(), 0, executor)
        await service.execute_step(Bribe(target_cult_id=2), 1, executor)
        await service.execute_step(TalkPrivate(target_cult_id=2), 2, executor)
        await service.execute_step(Recruit(), 3, executor)
        assert executor.calls == [
            ("talk_public", "Alpha broadcasts to all rivals."),
            ("bribe", 2, "1.0"),
            ("talk_private", 2, "Let us negotiate."),
            ("recruit", None),
        ]


# ---------------------------------------------------------------------------
# plan_cycle
# ---------------------------------------------------------------------------


class TestPlanCycle:
    async def test_steps_run_in_order_and_are_persisted(self, context, executor, bus):
        store = InMemoryStore()
        service = PlannerService(
            FakeLLM(plan=_plan(Ally(target_cult_id=2), Betray(conditions="greed"))),
            store=store,
            bus=bus,
        )
        results = await service.plan_cycle(executor, "p", context, 4, agent_db_id=9)

        assert [c[0] for c in executor.calls] == ["ally", "betray"]
        assert [r.status for r in results] == ["success", "success"]
        assert store.run_status == {1: "completed"}
        assert store.step_status == {
            1: ["pending", "running", "completed"],
            2: ["pending", "running", "completed"],
        }
        assert set(store.step_results) == {1, 2}
        names = [e.name for e in reversed(bus.recent())]
        assert names == [
            "planner_step_started",
            "planner_step_completed",
            "planner_step_started",
            "planner_step_completed",
        ]

    async def test_zero_step_reply_still_executes_two_steps(self, context, executor):
        results = await PlannerService(FakeLLM(plan=_plan())).plan_cycle(executor, "p", context, 1)
        assert len(results) == 2
        assert {r.status for r in results} == {"skipped"}

    async def test_ledger_failure_and_error_classification(self, context, executor, bus):
        executor.outcomes["bribe"] = LedgerError("insufficient funds")
        executor.outcomes["govern"] = RuntimeError("boom")
        store = InMemoryStore()
        service = PlannerService(
            FakeLLM(plan=_plan(Bribe(target_cult_id=2, amount="1"), Govern(), TalkPublic(message="x"))),
            store=store,
            bus=bus,
        )
        results = await service.plan_cycle(executor, "p", context, 1, agent_db_id=9)

        assert [r.status for r in results] == ["failure", "error", "success"]
        assert results[0].error == "insufficient funds"
        assert results[1].error == "boom"
        assert store.run_status[1] == "failed"
        assert [e.name for e in bus.recent(name="planner_step_failed")] == ["planner_step_failed"] * 2

    async def test_skips_do_not_fail_the_run(self, context, executor):
        store = InMemoryStore()
        service = PlannerService(FakeLLM(plan=_plan(Raid(), Wait())), store=store)
        await service.plan_cycle(executor, "p", context, 1, agent_db_id=9)
        assert store.run_status[1] == "completed"

    async def test_persistence_outage_does_not_stop_execution(self, context, executor):
        store = InMemoryStore()
        store.down = True
        service = PlannerService(FakeLLM(plan=_plan(Govern(), Govern())), store=store)
        results = await service.plan_cycle(executor, "p", context, 1, agent_db_id=9)
        assert [r.status for r in results] == ["success", "success"]

    async def test_no_agent_row_means_no_persistence(self, context, executor):
        store = InMemoryStore()
        await PlannerService(FakeLLM(plan=_plan(Govern(), Govern())), store=store).plan_cycle(
            executor, "p", context, 1
        )
        assert store.calls == []


def test_run_status():
    assert run_status([ExecutionResult(0, "success"), ExecutionResult(1, "skipped")]) == "completed"
    assert run_status([ExecutionResult(0, "success"), ExecutionResult(1, "failure")]) == "failed"
    assert run_status([]) == "completed"

"""Multi-step planning and in-order execution for one agent cycle.

create_plan  asks the generator for a plan, keeps at most ``max_steps`` steps
             and pads with ``wait`` up to ``min_steps``.
plan_cycle   persists the run and its steps, then executes the steps strictly
             in order through an injected executor. Each step ends as
             success / skipped / failure / error and its result is persisted
             before the next one starts.
"""
from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Callable, Protocol

from cult_sim.planner.context import PlanContext
from cult_sim.planner.heuristic import HeuristicPlanner
from cult_sim.planner.steps import (
    NON_PRIMARY_TYPES,
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
    PrimaryDecision,
    Raid,
    Recruit,
    TalkPrivate,
    TalkPublic,
    Wait,
)
from cult_sim.utils.errors import LedgerError, PlanGenerationError

if TYPE_CHECKING:
    from cult_sim.events.bus import EventBus

MAX_PLAN_STEPS = 5
MIN_PLAN_STEPS = 2
PADDING_CONDITION = "planner_minimum_two_steps"
DEFAULT_OBJECTIVE = "observe_and_adapt"
DEFAULT_RATIONALE = "autonomous_cycle_decision"
DEFAULT_BRIBE_AMOUNT = "1.0"
DEFAULT_PRIVATE_MESSAGE = "Let us negotiate."

Outcome = dict[str, Any] | None


class PlanGenerator(Protocol):
    async def generate_plan(
        self, prompt: str, name: str, context: PlanContext, cycle_count: int
    ) -> PlannerPlan: ...


class PlannerStore(Protocol):
    def save_planner_run(
        self, agent_id: int, cult_id: int, cycle_count: int, plan: PlannerPlan
    ) -> int: ...

    def save_planner_steps(self, run_id: int, steps: list[PlannerStep]) -> list[int]: ...

    def update_planner_step(self, step_id: int, status: str) -> None: ...

    def save_planner_step_result(self, step_id: int, result: ExecutionResult) -> None: ...

    def update_planner_run(self, run_id: int, status: str) -> None: ...


class StepExecutor(Protocol):
    """Capabilities one agent can exercise during a cycle.

    Each call returns ``None`` when the action was well-formed but not
    actionable (gate rejected, cooldown, nothing to do) and a dict of output
    fields otherwise. A ``tx_hash`` key in that dict is lifted into the
    step result. Failures raise.
    """

    cult_id: int
    cult_name: str

    async def talk_public(self, message: str) -> Outcome: ...

    async def talk_private(self, target_cult_id: int, message: str) -> Outcome: ...

    async def ally(self, target_cult_id: int) -> Outcome: ...

    async def betray(self, reason: str) -> Outcome: ...

    async def bribe(self, target_cult_id: int, amount: str) -> Outcome: ...

    async def raid(self, target_cult_id: int, wager_pct: float | None) -> Outcome: ...

    async def recruit(self, target_cult_id: int | None) -> Outcome: ...

    async def govern(self) -> Outcome: ...

    async def coup(self) -> Outcome: ...

    async def leak(self) -> Outcome: ...

    async def meme(self, target_cult_id: int | None, caption: str | None) -> Outcome: ...


class PlannerService:
    def __init__(
        self,
        generator: PlanGenerator,
        store: PlannerStore | None = None,
        bus: "EventBus | None" = None,
        heuristic: HeuristicPlanner | None = None,
        max_steps: int = MAX_PLAN_STEPS,
        min_steps: int = MIN_PLAN_STEPS,
    ) -> None:
        self.logger = logging.getLogger("cult_sim.planner")
        self.generator = generator
        self.store = store
        self.bus = bus
        self.heuristic = heuristic or HeuristicPlanner()
        self.max_steps = max_steps
        self.min_steps = min_steps

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    async def create_plan(
        self, prompt: str, name: str, context: PlanContext, cycle_count: int
    ) -> tuple[PlannerPlan, PrimaryDecision]:
        try:
            raw = await self.generator.generate_plan(prompt, name, context, cycle_count)
        except PlanGenerationError as exc:
            self.logger.warning(
                "planner FALLBACK cult=%s cycle=%d reason=%s", name, cycle_count, exc
            )
            raw = self.heuristic.plan(context)

        steps = list(raw.steps)[: self.max_steps]
        while len(steps) < self.min_steps:
            steps.append(Wait(conditions=PADDING_CONDITION))

        plan = PlannerPlan(
            objective=raw.objective or DEFAULT_OBJECTIVE,
            horizon=max(raw.horizon or len(steps), len(steps)),
            steps=steps,
            rationale=raw.rationale or DEFAULT_RATIONALE,
        )
        return plan, primary_decision(plan)

    async def plan_cycle(
        self,
        executor: StepExecutor,
        prompt: str,
        context: PlanContext,
        cycle_count: int,
        agent_db_id: int | None = None,
    ) -> list[ExecutionResult]:
        plan, primary = await self.create_plan(prompt, executor.cult_name, context, cycle_count)
        self.logger.info(
            "planner PLAN cult=%s cycle=%d objective=%s steps=%d primary=%s",
            executor.cult_name, cycle_count, plan.objective, len(plan.steps), primary.action,
        )

        run_id: int | None = None
        step_ids: list[int] = []
        if agent_db_id is not None and agent_db_id > 0:
            run_id = await self._durable(
                self._store_call("save_planner_run"),
                agent_db_id, executor.cult_id, cycle_count, plan,
            )
            if run_id is not None:
                step_ids = await self._durable(
                    self._store_call("save_planner_steps"), run_id, plan.steps
                ) or []

        results: list[ExecutionResult] = []
        for index, step in enumerate(plan.steps):
            step_id = step_ids[index] if index < len(step_ids) else None
            if step_id is not None:
                await self._durable(self._store_call("update_planner_step"), step_id, "running")
            self._publish(
                "planner_step_started",
                {
                    "run_id": run_id,
                    "step_id": step_id,
                    "step_index": index,
                    "step_type": step.type,
                    "cult_id": executor.cult_id,
                },
            )

            try:
                result = await self.execute_step(step, index, executor)
            except LedgerError as exc:
                result = ExecutionResult(index, "failure", error=str(exc) or "ledger_failure")
            except Exception as exc:
                self.logger.error(
                    "planner STEP-ERROR cult=%s step=%d type=%s error=%s: %s",
                    executor.cult_name, index, step.type, exc.__class__.__name__, exc,
                )
                result = ExecutionResult(index, "error", error=str(exc) or "step_execution_failed")
            results.append(result)

            if step_id is not None:
                await self._durable(
                    self._store_call("update_planner_step"), step_id, result.row_status()
                )
                await self._durable(
                    self._store_call("save_planner_step_result"), step_id, result
                )
            self._publish(
                "planner_step_failed" if result.failed else "planner_step_completed",
                {
                    "run_id": run_id,
                    "step_id": step_id,
                    "step_index": index,
                    "step_type": step.type,
                    "cult_id": executor.cult_id,
                    "status": result.status,
                    "error": result.error,
                },
            )

        status = run_status(results)
        if run_id is not None:
            await self._durable(self._store_call("update_planner_run"), run_id, status)

        self.logger.info("planner RUN cult=%s cycle=%d status=%s", executor.cult_name, cycle_count, status)
        for r in results:
            self.logger.info(
                "  step=%d status=%s%s%s",
                r.step_index + 1,
                r.status,
                f" error={r.error}" if r.error else "",
                f" tx={r.tx_hash[:10]}" if r.tx_hash else "",
            )
        return results

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def execute_step(
        self, step: PlannerStep, index: int, executor: StepExecutor
    ) -> ExecutionResult:
        match step:
            case Wait() | Idle():
                return ExecutionResult(
                    index,
                    "skipped",
                    output={"kind": step.type, "reason": step.conditions or "idle_wait"},
                )
            case TalkPublic(message=message):
                message = message or f"{executor.cult_name} broadcasts to all rivals."
                return _classify(index, step, await executor.talk_public(message), "message_suppressed")
            case Betray(reason=reason):
                return _classify(index, step, await executor.betray(reason), "no_active_alliance")
            case Recruit():
                return _classify(index, step, await executor.recruit(step.target), "no_recruit_target")
            case Govern():
                return _classify(index, step, await executor.govern(), "governance_unavailable")
            case Coup():
                return _classify(index, step, await executor.coup(), "coup_unavailable")
            case Leak():
                return _classify(index, step, await executor.leak(), "nothing_to_leak")
            case Meme(message=message):
                return _classify(
                    index, step, await executor.meme(step.target, message), "meme_rejected"
                )
            case (
                TalkPrivate(target_cult_id=None)
                | Ally(target_cult_id=None)
                | Bribe(target_cult_id=None)
                | Raid(target_cult_id=None)
            ):
                return ExecutionResult(index, "skipped", error="missing_target_cult_id")
            case TalkPrivate(target_cult_id=target, message=message):
                outcome = await executor.talk_private(target, message or DEFAULT_PRIVATE_MESSAGE)
                return _classify(index, step, outcome, "message_suppressed")
            case Ally(target_cult_id=target):
                return _classify(
                    index, step, await executor.ally(target), "social_gate_or_alliance_rejected"
                )
            case Bribe(target_cult_id=target, amount=amount):
                outcome = await executor.bribe(target, amount or DEFAULT_BRIBE_AMOUNT)
                return _classify(index, step, outcome, "social_gate_or_transfer_failed")
            case Raid(target_cult_id=target):
                return _classify(
                    index, step, await executor.raid(target, step.wager_pct), "raid_conditions_not_met"
                )
            case _:
                raise TypeError(f"unhandled step type {step.type!r}")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _store_call(self, method: str) -> Callable[..., Any] | None:
        if self.store is None:
            return None
        return getattr(self.store, method)

    async def _durable(self, fn: Callable[..., Any] | None, *args: Any) -> Any:
        if fn is None:
            return None
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, fn, *args)
        except Exception as exc:
            self.logger.warning(
                "planner PERSIST-FAIL op=%s error=%s: %s",
                getattr(fn, "__name__", "?"), exc.__class__.__name__, exc,
            )
            return None

    def _publish(self, name: str, payload: dict[str, Any]) -> None:
        if self.bus is not None:
            self.bus.publish(name, payload)


def _classify(
    index: int, step: PlannerStep, outcome: Outcome, skip_reason: str
) -> ExecutionResult:
    if outcome is None:
        return ExecutionResult(index, "skipped", error=skip_reason, output={"kind": step.type})
    output = dict(outcome)
    tx_hash = output.pop("tx_hash", None)
    output.setdefault("kind", step.type)
    return ExecutionResult(index, "success", tx_hash=tx_hash, output=output)


def primary_decision(plan: PlannerPlan) -> PrimaryDecision:
    primary = next((s for s in plan.steps if s.type not in NON_PRIMARY_TYPES), None)
    if primary is None:
        primary = plan.steps[0] if plan.steps else Idle()
    action = primary.type if primary.type not in NON_PRIMARY_TYPES else "idle"
    return PrimaryDecision(
        action=action,
        reason=plan.rationale or plan.objective,
        target=primary.target,
        wager=primary.wager_pct if isinstance(primary, Raid) else None,
        bribe_amount=primary.amount if isinstance(primary, Bribe) else None,
    )


def run_status(results: list[ExecutionResult]) -> str:
    return "failed" if any(r.failed for r in results) else "completed"

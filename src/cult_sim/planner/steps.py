"""Plan, step and execution-result types.

A plan step is a tagged union: one frozen dataclass per step kind, each
carrying only the fields that kind uses. ``parse_step`` turns a loosely-typed
model reply into the union; anything it does not recognise becomes ``Idle``.
Required fields stay optional on purpose so that a well-formed but incomplete
step (a raid with no target) survives parsing and is classified ``skipped`` by
the executor instead of being dropped.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Literal

StepStatus = Literal["success", "failure", "skipped", "error"]

NON_PRIMARY_TYPES = frozenset({"talk_public", "talk_private", "wait", "idle"})


@dataclass(frozen=True, kw_only=True)
class PlannerStep:
    type: ClassVar[str] = "idle"
    conditions: str | None = None

    @property
    def target(self) -> int | None:
        return None

    def to_row(self) -> dict[str, Any]:
        return {
            "step_type": self.type,
            "target_cult_id": self.target,
            "amount": getattr(self, "amount", None),
            "message": getattr(self, "message", None),
            "conditions": self.conditions,
        }


@dataclass(frozen=True, kw_only=True)
class _Targeted(PlannerStep):
    target_cult_id: int | None = None

    @property
    def target(self) -> int | None:
        return self.target_cult_id


@dataclass(frozen=True, kw_only=True)
class TalkPublic(PlannerStep):
    type: ClassVar[str] = "talk_public"
    message: str | None = None


@dataclass(frozen=True, kw_only=True)
class TalkPrivate(_Targeted):
    type: ClassVar[str] = "talk_private"
    message: str | None = None


@dataclass(frozen=True, kw_only=True)
class Ally(_Targeted):
    type: ClassVar[str] = "ally"


@dataclass(frozen=True, kw_only=True)
class Betray(PlannerStep):
    type: ClassVar[str] = "betray"

    @property
    def reason(self) -> str:
        return self.conditions or "Strategic betrayal"


@dataclass(frozen=True, kw_only=True)
class Bribe(_Targeted):
    type: ClassVar[str] = "bribe"
    amount: str | None = None


@dataclass(frozen=True, kw_only=True)
class Raid(_Targeted):
    type: ClassVar[str] = "raid"
    amount: str | None = None
    """Wager as a percentage of treasury, kept as the model wrote it."""

    @property
    def wager_pct(self) -> float | None:
        if self.amount is None:
            return None
        try:
            return float(self.amount)
        except ValueError:
            return None


@dataclass(frozen=True, kw_only=True)
class Recruit(_Targeted):
    type: ClassVar[str] = "recruit"


@dataclass(frozen=True, kw_only=True)
class Govern(PlannerStep):
    type: ClassVar[str] = "govern"


@dataclass(frozen=True, kw_only=True)
class Coup(PlannerStep):
    type: ClassVar[str] = "coup"


@dataclass(frozen=True, kw_only=True)
class Leak(PlannerStep):
    type: ClassVar[str] = "leak"


@dataclass(frozen=True, kw_only=True)
class Meme(_Targeted):
    type: ClassVar[str] = "meme"
    message: str | None = None


@dataclass(frozen=True, kw_only=True)
class Wait(PlannerStep):
    type: ClassVar[str] = "wait"


@dataclass(frozen=True, kw_only=True)
class Idle(PlannerStep):
    type: ClassVar[str] = "idle"
    requested_type: str | None = None


STEP_CLASSES: dict[str, type[PlannerStep]] = {
    cls.type: cls
    for cls in (
        TalkPublic,
        TalkPrivate,
        Ally,
        Betray,
        Bribe,
        Raid,
        Recruit,
        Govern,
        Coup,
        Leak,
        Meme,
        Wait,
        Idle,
    )
}
STEP_TYPES = tuple(STEP_CLASSES)


def _as_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_step(raw: dict[str, Any]) -> PlannerStep:
    step_type = str(raw.get("type", "idle")).strip().lower()
    target = _as_int(
        raw.get("targetCultId", raw.get("target_cult_id", raw.get("target")))
    )
    amount = _as_text(raw.get("amount"))
    message = _as_text(raw.get("message"))
    conditions = _as_text(raw.get("conditions"))

    cls = STEP_CLASSES.get(step_type)
    if cls is None:
        return Idle(conditions=conditions, requested_type=step_type)
    if cls in (TalkPrivate, Meme):
        return cls(target_cult_id=target, message=message, conditions=conditions)
    if cls in (Bribe, Raid):
        return cls(target_cult_id=target, amount=amount, conditions=conditions)
    if cls in (Ally, Recruit):
        return cls(target_cult_id=target, conditions=conditions)
    if cls is TalkPublic:
        return TalkPublic(message=message, conditions=conditions)
    return cls(conditions=conditions)


@dataclass
class PlannerPlan:
    objective: str
    horizon: int
    steps: list[PlannerStep]
    rationale: str


@dataclass
class PrimaryDecision:
    """Coarse one-action summary of a plan, for external reporting."""

    action: str
    reason: str
    target: int | None = None
    wager: float | None = None
    bribe_amount: str | None = None


@dataclass
class ExecutionResult:
    step_index: int
    status: StepStatus
    tx_hash: str | None = None
    error: str | None = None
    output: dict[str, Any] = field(default_factory=dict)

    @property
    def failed(self) -> bool:
        return self.status in ("failure", "error")

    def row_status(self) -> str:
        if self.status == "success":
            return "completed"
        if self.status == "skipped":
            return "skipped"
        return "failed"

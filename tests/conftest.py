"""Shared in-memory fakes for the ledger, persistence store, language model and clock."""

from __future__ import annotations

import random
from dataclasses import replace
from typing import Any

import psycopg2
import pytest

from cult_sim.config.settings import (
    AppSettings,
    DBSettings,
    LedgerSettings,
    OllamaSettings,
    SchedulerSettings,
)
from cult_sim.events.bus import EventBus
from cult_sim.memory.trust_memory import MemoryModel
from cult_sim.planner.steps import PlannerPlan
from cult_sim.utils.arena import StateArena
from cult_sim.utils.errors import LedgerError, PlanGenerationError
from cult_sim.utils.types import AgentRecord, CultState

T0 = 1_700_000_000_000.0


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: float = T0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class FakeLedger:
    """In-memory ledger. ``fail[method] = n`` makes the next n calls revert."""

    def __init__(self, cults: list[CultState] | None = None) -> None:
        self.cults: dict[int, CultState] = {c.id: c for c in cults or []}
        self.calls: list[tuple[str, tuple]] = []
        self.fail: dict[str, int] = {}
        self.total_raids = 0
        self._tx = 0
        self._prophecy_id = 0
        self._proposal_id = 0

    def called(self, method: str) -> list[tuple]:
        return [args for name, args in self.calls if name == method]

    def _call(self, method: str, *args: Any) -> None:
        self.calls.append((method, args))
        remaining = self.fail.get(method, 0)
        if remaining > 0:
            self.fail[method] = remaining - 1
            raise LedgerError(f"{method} reverted")

    def _tx_hash(self) -> str:
        self._tx += 1
        return f"0x{self._tx:064x}"

    async def get_cult(self, cult_id: int) -> CultState:
        self._call("get_cult", cult_id)
        if cult_id not in self.cults:
            raise LedgerError(f"cult {cult_id} does not exist")
        return replace(self.cults[cult_id])

    async def get_all_cults(self) -> list[CultState]:
        self._call("get_all_cults")
        return [replace(c) for c in self.cults.values()]

    async def get_total_cults(self) -> int:
        self._call("get_total_cults")
        return len(self.cults)

    async def get_total_raids(self) -> int:
        self._call("get_total_raids")
        return self.total_raids

    async def record_raid(
        self, attacker_id: int, defender_id: int, attacker_won: bool, amount: float
    ) -> str:
        self._call("record_raid", attacker_id, defender_id, attacker_won, amount)
        self.total_raids += 1
        return self._tx_hash()

    async def create_prophecy(self, cult_id: int, prediction_hash: str, target_ts: int) -> int:
        self._call("create_prophecy", cult_id, prediction_hash, target_ts)
        self._prophecy_id += 1
        return self._prophecy_id

    async def resolve_prophecy(self, prophecy_id: int, correct: bool, multiplier: int) -> str:
        self._call("resolve_prophecy", prophecy_id, correct, multiplier)
        return self._tx_hash()

    async def record_defection(
        self, from_cult_id: int, to_cult_id: int, count: int, reason_hash: str
    ) -> str:
        self._call("record_defection", from_cult_id, to_cult_id, count, reason_hash)
        return self._tx_hash()

    async def transfer_token(self, from_cult_id: int, to_cult_id: int, amount: float) -> str:
        self._call("transfer_token", from_cult_id, to_cult_id, amount)
        return self._tx_hash()

    async def join_cult(self, cult_id: int) -> str:
        self._call("join_cult", cult_id)
        return self._tx_hash()

    async def create_proposal(self, cult_id: int, category: str, description_hash: str) -> int:
        self._call("create_proposal", cult_id, category, description_hash)
        self._proposal_id += 1
        return self._proposal_id


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class InMemoryStore:
    """Stand-in for ``CultRepository``. Set ``down = True`` to make every call fail."""

    def __init__(self, agents: list[AgentRecord] | None = None) -> None:
        self.agents = list(agents or [])
        self.calls: list[tuple[str, tuple]] = []
        self.down = False
        self.memories: dict[int, list] = {}
        self.trust: dict[int, list] = {}
        self.streaks: dict[int, Any] = {}
        self.alliances: list = []
        self.betrayals: list = []
        self.evolution: dict[int, tuple] = {}
        self.deaths: list = []
        self.rebirths: list = []
        self.prophecies: list = []
        self.run_status: dict[int, str] = {}
        self.step_status: dict[int, list[str]] = {}
        self.step_results: dict[int, Any] = {}
        self._run_id = 0
        self._step_id = 0

    def _call(self, method: str, *args: Any) -> None:
        if self.down:
            raise psycopg2.OperationalError("could not connect to server")
        self.calls.append((method, args))

    def called(self, method: str) -> list[tuple]:
        return [args for name, args in self.calls if name == method]

    # ---- Schema / agents ----

    def init_schema(self) -> None:
        self._call("init_schema")

    def load_all_agents(self) -> list[AgentRecord]:
        self._call("load_all_agents")
        return [replace(a) for a in self.agents]

    def update_agent_state(self, agent: AgentRecord) -> None:
        self._call("update_agent_state", replace(agent))

    # ---- Memory ----

    def save_memory_entry(self, agent_id, cult_id, entry) -> None:
        self._call("save_memory_entry", agent_id, cult_id, entry)

    def load_memories(self, cult_id, limit=100) -> list:
        self._call("load_memories", cult_id, limit)
        return list(self.memories.get(cult_id, []))[:limit]

    def save_trust_record(self, agent_id, cult_id, record) -> None:
        self._call("save_trust_record", agent_id, cult_id, record)

    def load_trust_records(self, cult_id) -> list:
        self._call("load_trust_records", cult_id)
        return list(self.trust.get(cult_id, []))

    def save_streak(self, agent_id, cult_id, streak) -> None:
        self._call("save_streak", agent_id, cult_id, streak)

    def load_streak(self, cult_id):
        self._call("load_streak", cult_id)
        return self.streaks.get(cult_id)

    # ---- Alliances ----

    def save_alliance(self, alliance) -> None:
        self._call("save_alliance", alliance)

    def update_alliance_active(self, alliance_id, active) -> None:
        self._call("update_alliance_active", alliance_id, active)

    def load_alliances(self) -> list:
        self._call("load_alliances")
        return list(self.alliances)

    def save_betrayal(self, betrayal) -> None:
        self._call("save_betrayal", betrayal)

    def load_betrayals(self) -> list:
        self._call("load_betrayals")
        return list(self.betrayals)

    # ---- Evolution ----

    def save_evolution_traits(self, agent_id, cult_id, traits, beliefs, original_prompt) -> None:
        self._call("save_evolution_traits", agent_id, cult_id, traits, beliefs, original_prompt)

    def load_evolution_traits(self, cult_id):
        self._call("load_evolution_traits", cult_id)
        return self.evolution.get(cult_id)

    # ---- Planner ----

    def save_planner_run(self, agent_id, cult_id, cycle_count, plan) -> int:
        self._call("save_planner_run", agent_id, cult_id, cycle_count, plan)
        self._run_id += 1
        self.run_status[self._run_id] = "running"
        return self._run_id

    def save_planner_steps(self, run_id, steps) -> list[int]:
        self._call("save_planner_steps", run_id, list(steps))
        ids = []
        for _ in steps:
            self._step_id += 1
            self.step_status[self._step_id] = ["pending"]
            ids.append(self._step_id)
        return ids

    def update_planner_step(self, step_id, status) -> None:
        self._call("update_planner_step", step_id, status)
        self.step_status.setdefault(step_id, []).append(status)

    def save_planner_step_result(self, step_id, result) -> None:
        self._call("save_planner_step_result", step_id, result)
        self.step_results[step_id] = result

    def update_planner_run(self, run_id, status) -> None:
        self._call("update_planner_run", run_id, status)
        self.run_status[run_id] = status

    # ---- Events ----

    def save_defection(self, event) -> None:
        self._call("save_defection", event)

    def save_death(self, event) -> None:
        self._call("save_death", event)

    def save_rebirth(self, event) -> None:
        self._call("save_rebirth", event)

    def load_life_events(self) -> tuple[list, list]:
        self._call("load_life_events")
        return list(self.deaths), list(self.rebirths)

    def save_prophecy(self, prophecy) -> None:
        self._call("save_prophecy", prophecy)

    def update_prophecy(self, prophecy) -> None:
        self._call("update_prophecy", prophecy)

    def load_prophecies(self) -> list:
        self._call("load_prophecies")
        return list(self.prophecies)

    def save_raid(self, raid) -> None:
        self._call("save_raid", raid)

    def save_message(self, message) -> None:
        self._call("save_message", message)


# ---------------------------------------------------------------------------
# Language model
# ---------------------------------------------------------------------------


class FakeLLM:
    """Plan and text generator. ``plan=None`` makes plan generation fail."""

    def __init__(
        self,
        plan: PlannerPlan | None = None,
        text: str | None = None,
        prophecy: str = "The charts will rise to the moon before dawn.",
        scripture: str = "Abandon your false prophets.",
    ) -> None:
        self.plan = plan
        self.text = text
        self.prophecy = prophecy
        self.scripture = scripture
        self.prompts: list[str] = []
        self.plan_requests: list[tuple[str, int]] = []

    async def generate_plan(self, prompt, name, context, cycle_count) -> PlannerPlan:
        self.plan_requests.append((name, cycle_count))
        if self.plan is None:
            raise PlanGenerationError("model offline")
        return self.plan

    async def generate_prophecy(self, prompt, name, context) -> str:
        self.prompts.append(prompt)
        return self.prophecy

    async def generate_scripture(self, prompt, name, topic) -> str:
        self.prompts.append(topic)
        return self.scripture

    async def generate_text(self, prompt: str, fallback: str = "") -> str:
        self.prompts.append(prompt)
        return self.text if self.text is not None else fallback


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_cult(cult_id: int, name: str | None = None, **kwargs) -> CultState:
    defaults: dict = {"treasury": 10.0, "follower_count": 5}
    defaults.update(kwargs)
    return CultState(id=cult_id, name=name or f"Cult{cult_id}", **defaults)


def make_agent(agent_id: int, cult_id: int | None, **kwargs) -> AgentRecord:
    defaults: dict = {"name": f"Agent{agent_id}", "prompt": "You are a prophet."}
    defaults.update(kwargs)
    return AgentRecord(id=agent_id, cult_id=cult_id, **defaults)


def make_settings(**scheduler) -> AppSettings:
    return AppSettings(
        db=DBSettings(host="localhost", port=5432, name="test", user="test", password="test"),
        ollama=OllamaSettings(host="http://ollama.invalid", llm_model="test-model"),
        ledger=LedgerSettings(
            gateway_url="http://ledger.invalid", tx_max_retries=1, tx_retry_delay_s=0.0
        ),
        scheduler=SchedulerSettings(**scheduler),
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture()
def arena() -> StateArena:
    return StateArena()


@pytest.fixture()
def memory(arena, clock) -> MemoryModel:
    return MemoryModel(arena, clock=clock)


@pytest.fixture()
def bus() -> EventBus:
    return EventBus()


@pytest.fixture()
def ledger() -> FakeLedger:
    return FakeLedger([make_cult(1, "Alpha"), make_cult(2, "Beta"), make_cult(3, "Gamma")])


@pytest.fixture()
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture()
def llm() -> FakeLLM:
    return FakeLLM()

"""Per-agent scheduling of observe → plan → act cycles.

Every agent runs in its own asyncio task. A cycle reads the cult from the
ledger, checks death and rebirth, evolves the prompt, builds a plan context,
lets the planner execute the plan through a fresh ``CultStepExecutor``, then
handles prophecies. A failing cycle is logged and the agent keeps going.
Stopping an agent waits for its in-flight cycle instead of cancelling it.
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from cult_sim.agents.executor import AgentToolkit, CultStepExecutor
from cult_sim.chain.ledger import LedgerClient
from cult_sim.chain.tx_queue import TransactionQueue
from cult_sim.config.settings import AppSettings
from cult_sim.db.writer import BestEffortWriter
from cult_sim.events.bus import EventBus
from cult_sim.evolution.engine import EvolutionEngine
from cult_sim.lifecycle.life_death import LifeDeathModel
from cult_sim.memory.trust_memory import MemoryModel
from cult_sim.planner.context import PlanContext
from cult_sim.planner.heuristic import HeuristicPlanner
from cult_sim.planner.service import PlannerService
from cult_sim.planner.steps import ExecutionResult
from cult_sim.social.alliances import AllianceModel
from cult_sim.social.communication import CommunicationHub
from cult_sim.social.defection import DefectionModel
from cult_sim.social.governance import GovernanceBook
from cult_sim.social.persuasion import PersuasionModel
from cult_sim.social.prophecy import PriceSource, ProphecyBook
from cult_sim.social.raids import RaidBook
from cult_sim.utils.arena import StateArena
from cult_sim.utils.errors import BootstrapError, LedgerError
from cult_sim.utils.types import AgentRecord, CultState, now_ms
from cult_sim.world.state_cache import WorldStateCache

if TYPE_CHECKING:
    from cult_sim.db.repository import CultRepository
    from cult_sim.llm.ollama_adapter import OllamaAdapter

logger = logging.getLogger("cult_sim.scheduler")


@dataclass
class AgentRuntime:
    record: AgentRecord
    prompt: str
    task: asyncio.Task | None = None
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def cult_id(self) -> int:
        assert self.record.cult_id is not None
        return self.record.cult_id


class AgentScheduler:
    def __init__(
        self,
        settings: AppSettings,
        store: "CultRepository",
        ledger: LedgerClient,
        llm: "OllamaAdapter",
        bus: EventBus | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], float] = now_ms,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        price_source: PriceSource | None = None,
    ) -> None:
        cfg = settings.scheduler
        self.settings = settings
        self.cfg = cfg
        self.store = store
        self.ledger = ledger
        self.llm = llm
        self.bus = bus or EventBus()
        self.rng = rng or random.Random(cfg.seed)
        self.clock = clock

        self.arena = StateArena()
        self.writer = BestEffortWriter(cfg.persistence_queue_size)
        self.tx_queue = TransactionQueue(
            max_retries=settings.ledger.tx_max_retries,
            retry_delay_s=settings.ledger.tx_retry_delay_s,
            sleep=sleep,
        )
        w = dict(store=store, writer=self.writer)
        self.memory = MemoryModel(self.arena, clock=clock, **w)
        self.alliances = AllianceModel(
            self.memory, rng=self.rng, clock=clock,
            duration_ms=cfg.alliance_duration_s * 1000, bus=self.bus, **w,
        )
        self.raids = RaidBook(self.memory, self.alliances, rng=self.rng, clock=clock, bus=self.bus, **w)
        self.defection = DefectionModel(
            self.memory, rng=self.rng, clock=clock, tx_queue=self.tx_queue,
            ledger=ledger, bus=self.bus, **w,
        )
        self.communication = CommunicationHub(self.memory, llm=llm, clock=clock, bus=self.bus, **w)
        self.persuasion = PersuasionModel(
            llm, self.memory, ledger=ledger, tx_queue=self.tx_queue,
            rng=self.rng, clock=clock, bus=self.bus,
        )
        self.governance = GovernanceBook(
            llm=llm, ledger=ledger, tx_queue=self.tx_queue, clock=clock, bus=self.bus
        )
        self.prophecy = ProphecyBook(
            llm, ledger=ledger, tx_queue=self.tx_queue, rng=self.rng, clock=clock,
            price_source=price_source, bus=self.bus, **w,
        )
        self.evolution = EvolutionEngine(
            self.arena, self.memory, clock=clock, evolve_interval=cfg.evolve_interval, **w
        )
        self.lifecycle = LifeDeathModel(
            clock=clock, rebirth_cooldown_ms=cfg.rebirth_cooldown_s * 1000, bus=self.bus, **w
        )
        self.world = WorldStateCache(store, clock=clock, cache_ms=cfg.world_cache_s * 1000)
        self.planner = PlannerService(
            llm,
            store=store,
            bus=self.bus,
            heuristic=HeuristicPlanner(self.rng),
            max_steps=cfg.max_plan_steps,
            min_steps=cfg.min_plan_steps,
        )
        self.toolkit = AgentToolkit(
            ledger=ledger,
            tx_queue=self.tx_queue,
            memory=self.memory,
            alliances=self.alliances,
            raids=self.raids,
            defection=self.defection,
            communication=self.communication,
            persuasion=self.persuasion,
            governance=self.governance,
            rng=self.rng,
        )
        self._agents: dict[int, AgentRuntime] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def bootstrap(self) -> list[AgentRecord]:
        """Hydrate every model from the store. Raises ``BootstrapError`` if it is unreachable."""
        loop = asyncio.get_running_loop()
        try:
            records = await loop.run_in_executor(None, self._hydrate_all)
        except Exception as exc:
            logger.critical("scheduler BOOTSTRAP-FAIL error=%s: %s", exc.__class__.__name__, exc)
            raise BootstrapError(f"persistence unavailable at bootstrap: {exc}") from exc

        self._agents.clear()
        for record in records:
            self._agents[record.id] = AgentRuntime(record=record, prompt=record.prompt)
        logger.info("scheduler BOOTSTRAP agents=%d", len(self._agents))
        return [a.record for a in self._agents.values()]

    def _hydrate_all(self) -> list[AgentRecord]:
        self.store.init_schema()
        rows = self.store.load_all_agents()
        records = [r for r in rows if r.grouped and r.status != "stopped"]
        self.alliances.hydrate()
        self.lifecycle.hydrate()
        self.prophecy.hydrate()
        for record in records:
            assert record.cult_id is not None
            self.memory.register_agent_db_id(record.cult_id, record.id)
            self.memory.hydrate(record.cult_id)
            self.evolution.hydrate(record.cult_id)
            if self.lifecycle.is_dead(record.cult_id):
                record.dead = True
        self.world.refresh(force=True)
        return records

    def start(self, agent_id: int, delay_s: float = 0.0) -> bool:
        runtime = self._agents.get(agent_id)
        if runtime is None:
            return False
        if runtime.task is not None and not runtime.task.done():
            return False
        runtime.stop_event = asyncio.Event()
        runtime.record.running = True
        runtime.record.status = "running"
        runtime.task = asyncio.get_running_loop().create_task(
            self._agent_loop(runtime, delay_s), name=f"agent_{agent_id}"
        )
        logger.info("scheduler START agent=%s cult=%d delay=%.1fs", runtime.record.name, runtime.cult_id, delay_s)
        return True

    async def start_all(self) -> int:
        started = 0
        for index, agent_id in enumerate(sorted(self._agents)):
            if self.start(agent_id, delay_s=index * self.cfg.start_stagger_s):
                started += 1
        logger.info("scheduler START-ALL started=%d", started)
        return started

    async def stop(self, agent_id: int) -> bool:
        runtime = self._agents.get(agent_id)
        if runtime is None or runtime.task is None:
            return False
        runtime.stop_event.set()
        await runtime.task
        runtime.task = None
        runtime.record.running = False
        runtime.record.status = "stopped"
        self._persist_agent(runtime.record)
        logger.info("scheduler STOP agent=%s", runtime.record.name)
        return True

    async def stop_all(self) -> None:
        await asyncio.gather(*(self.stop(agent_id) for agent_id in list(self._agents)))
        await self.defection.wait_mirrors()
        await self.tx_queue.drain()
        await self.writer.flush()
        logger.info("scheduler STOP-ALL writer=%s tx=%s", self.writer.stats(), self.tx_queue.stats())

    async def close(self) -> None:
        await self.stop_all()
        await self.writer.close()

    async def _agent_loop(self, runtime: AgentRuntime, delay_s: float) -> None:
        if delay_s > 0 and await self._wait_stop(runtime, delay_s):
            return
        while not runtime.stop_event.is_set():
            try:
                await self.run_cycle(runtime.record.id)
            except Exception as exc:
                logger.error(
                    "scheduler CYCLE-ERROR agent=%s error=%s: %s",
                    runtime.record.name, exc.__class__.__name__, exc,
                    exc_info=True,
                )
            delay = self.cfg.loop_interval_s + self.rng.random() * self.cfg.loop_jitter_s
            if await self._wait_stop(runtime, delay):
                return

    @staticmethod
    async def _wait_stop(runtime: AgentRuntime, timeout_s: float) -> bool:
        try:
            await asyncio.wait_for(runtime.stop_event.wait(), timeout=timeout_s)
        except TimeoutError:
            return False
        return True

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    async def run_cycle(self, agent_id: int) -> list[ExecutionResult]:
        runtime = self._agents[agent_id]
        record = runtime.record
        cult_id = runtime.cult_id
        record.cycle_count += 1
        cycle = record.cycle_count
        logger.info("scheduler CYCLE agent=%s cult=%d cycle=%d", record.name, cult_id, cycle)

        try:
            cult = await self.ledger.get_cult(cult_id)
        except LedgerError as exc:
            logger.warning("scheduler SKIP agent=%s reason=cult_unreadable error=%s", record.name, exc)
            return []
        try:
            all_cults = await self.ledger.get_all_cults()
        except LedgerError as exc:
            logger.warning("scheduler cult list unavailable agent=%s error=%s", record.name, exc)
            all_cults = []

        if not self._check_alive(record, cult):
            self._persist_agent(record)
            return []

        loop = asyncio.get_running_loop()
        rivals = await loop.run_in_executor(None, self.world.filter_rivals, all_cults, cult_id)
        accuracy = self.prophecy.accuracy(cult_id)
        runtime.prompt = self.evolution.evolve(
            cult_id,
            record.name,
            record.prompt,
            cycle,
            accuracy,
            alliance_count=self.alliances.alliance_count(cult_id),
            betrayal_count=self.alliances.betrayal_count(cult_id),
        )

        context = self._build_context(cult, rivals, accuracy)
        executor = CultStepExecutor(self.toolkit, record, cult, rivals, runtime.prompt)
        results = await self.planner.plan_cycle(
            executor, runtime.prompt, context, cycle, agent_db_id=record.id
        )

        if cycle % self.cfg.prophecy_interval == 0:
            prophecy = await self.prophecy.generate(cult_id, record.name, runtime.prompt)
            record.prophecies_generated += 1
            record.last_action = f'prophecy: "{prophecy.prediction[:50]}"'
        await self.prophecy.resolve_due(cult_id)

        record.last_action_time = self.clock()
        self._persist_agent(record)
        return results

    def _check_alive(self, record: AgentRecord, cult: CultState) -> bool:
        if record.dead or self.lifecycle.is_dead(cult.id):
            if not self.lifecycle.can_rebirth(cult.id):
                record.status = "dead"
                return False
            self.lifecycle.record_rebirth(cult.id, cult.name, new_treasury=cult.treasury)
            record.dead = False
            record.status = "running"
            record.last_action = "reborn"

        death = self.lifecycle.check_death_condition(cult)
        if death is not None:
            record.dead = True
            record.status = "dead"
            record.last_action = f"died: {death.cause}"
            return False
        return True

    def _build_context(
        self, cult: CultState, rivals: list[CultState], accuracy: float
    ) -> PlanContext:
        snapshot = self.memory.get_snapshot(cult.id)
        alliance = self.alliances.get_active_alliance(cult.id)
        ally = alliance.partner_of(cult.id) if alliance is not None else None
        seconds_left = (
            max(0.0, (alliance.expires_at - self.clock()) / 1000.0) if alliance is not None else None
        )
        bribes = [
            f"{b.from_cult_name} sent {b.amount:.4f} MON"
            for b in self.communication.get_bribe_offers(cult.id, status="accepted", limit=5)
            if b.to_cult_id == cult.id
        ]
        return PlanContext(
            cult=cult,
            rivals=rivals,
            memory_summary=snapshot.summary,
            trust_graph=self.memory.trust_graph_text(cult.id),
            ally=ally,
            alliance_seconds_left=seconds_left,
            recent_messages=self.communication.recent_lines_for(cult.id),
            bribe_offers=bribes,
            beliefs=self.evolution.get_belief_traits(cult.id).as_dict(),
            prophecy_accuracy=accuracy,
        )

    def _persist_agent(self, record: AgentRecord) -> None:
        self.writer.submit(record.cult_id, self.store.update_agent_state, record, label="update_agent_state")

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------

    def get_agent_states(self) -> list[dict[str, Any]]:
        return [a.record.public_state() for a in self._agents.values()]

    def get_agent(self, agent_id: int) -> AgentRecord | None:
        runtime = self._agents.get(agent_id)
        return runtime.record if runtime else None

    async def get_cults_from_chain(self) -> list[CultState]:
        return await self.ledger.get_all_cults()

    async def get_stats(self) -> dict[str, Any]:
        try:
            total_cults = await self.ledger.get_total_cults()
            total_raids = await self.ledger.get_total_raids()
        except LedgerError as exc:
            logger.warning("scheduler stats ledger unavailable error=%s", exc)
            total_cults, total_raids = 0, 0
        return {
            "total_cults": total_cults,
            "total_raids": total_raids,
            "total_prophecies": len(self.prophecy.get_all_prophecies()),
            "active_agents": sum(1 for a in self._agents.values() if a.record.running),
            "tx_queue": self.tx_queue.stats(),
            "persistence": self.writer.stats(),
            "defections": self.defection.get_stats(),
        }

    def get_all_alliances(self):
        return self.alliances.get_all_alliances()

    def get_all_memory_data(self) -> dict[int, dict[str, Any]]:
        return self.memory.get_all_memory_data()

    def get_bribe_offers(self, cult_id: int | None = None):
        return self.communication.get_bribe_offers(cult_id)

    def get_messages(self, limit: int = 50):
        return self.communication.get_messages(limit)

    def get_recent_raids(self, limit: int = 20):
        return self.raids.get_recent_raids(limit)

    def get_prophecies(self, limit: int = 20):
        return self.prophecy.get_recent_prophecies(limit)

    def get_defections(self, limit: int = 20):
        return self.defection.get_events(limit)

    def get_life_events(self, limit: int = 20):
        return self.lifecycle.get_recent_events(limit)

    def get_evolution_traits(self):
        return self.evolution.get_all_traits()

    def get_recent_events(self, limit: int = 50):
        return self.bus.recent(limit)

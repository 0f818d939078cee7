from __future__ import annotations

import json
from typing import Any

from cult_sim.db.connection import DBClient
from cult_sim.lifecycle.life_death import DeathEvent, RebirthEvent
from cult_sim.planner.steps import ExecutionResult, PlannerPlan, PlannerStep
from cult_sim.social.alliances import Alliance, BetrayalEvent
from cult_sim.social.communication import Message
from cult_sim.social.defection import DefectionEvent
from cult_sim.social.prophecy import Prophecy
from cult_sim.social.raids import RaidEvent
from cult_sim.utils.types import (
    AgentRecord,
    BeliefTraits,
    EvolutionTraits,
    MemoryEntry,
    StreakInfo,
    TrustRecord,
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS agents (
  id SERIAL PRIMARY KEY,
  name TEXT NOT NULL,
  prompt TEXT NOT NULL,
  cult_id INTEGER,
  status TEXT NOT NULL DEFAULT 'running',
  dead BOOLEAN NOT NULL DEFAULT FALSE,
  cycle_count INTEGER NOT NULL DEFAULT 0,
  last_action TEXT NOT NULL DEFAULT '',
  last_action_time DOUBLE PRECISION NOT NULL DEFAULT 0,
  prophecies_generated INTEGER NOT NULL DEFAULT 0,
  raids_initiated INTEGER NOT NULL DEFAULT 0,
  raids_won INTEGER NOT NULL DEFAULT 0,
  followers_recruited INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS agent_memories (
  id BIGSERIAL PRIMARY KEY,
  agent_id INTEGER NOT NULL,
  cult_id INTEGER NOT NULL,
  kind TEXT NOT NULL,
  rival_id INTEGER NOT NULL,
  rival_name TEXT NOT NULL,
  description TEXT NOT NULL,
  outcome DOUBLE PRECISION NOT NULL,
  timestamp_ms DOUBLE PRECISION NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_agent_memories_cult ON agent_memories (cult_id, timestamp_ms DESC);

CREATE TABLE IF NOT EXISTS trust_records (
  cult_id INTEGER NOT NULL,
  rival_id INTEGER NOT NULL,
  agent_id INTEGER NOT NULL,
  rival_name TEXT NOT NULL,
  trust DOUBLE PRECISION NOT NULL,
  interaction_count INTEGER NOT NULL,
  recent_trend DOUBLE PRECISION NOT NULL,
  PRIMARY KEY (cult_id, rival_id)
);

CREATE TABLE IF NOT EXISTS streaks (
  cult_id INTEGER PRIMARY KEY,
  agent_id INTEGER NOT NULL,
  current_type TEXT NOT NULL,
  current_length INTEGER NOT NULL,
  longest_win_streak INTEGER NOT NULL,
  longest_loss_streak INTEGER NOT NULL,
  total_wins INTEGER NOT NULL,
  total_losses INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS alliances (
  id INTEGER PRIMARY KEY,
  cult_a INTEGER NOT NULL,
  cult_a_name TEXT NOT NULL,
  cult_b INTEGER NOT NULL,
  cult_b_name TEXT NOT NULL,
  formed_at DOUBLE PRECISION NOT NULL,
  expires_at DOUBLE PRECISION NOT NULL,
  power_bonus DOUBLE PRECISION NOT NULL,
  active BOOLEAN NOT NULL
);

CREATE TABLE IF NOT EXISTS betrayals (
  id BIGSERIAL PRIMARY KEY,
  alliance_id INTEGER NOT NULL,
  betrayer_cult_id INTEGER NOT NULL,
  betrayer_name TEXT NOT NULL,
  victim_cult_id INTEGER NOT NULL,
  victim_name TEXT NOT NULL,
  reason TEXT NOT NULL,
  surprise_bonus DOUBLE PRECISION NOT NULL,
  timestamp_ms DOUBLE PRECISION NOT NULL
);

CREATE TABLE IF NOT EXISTS evolution_traits (
  cult_id INTEGER PRIMARY KEY,
  agent_id INTEGER NOT NULL,
  aggression DOUBLE PRECISION NOT NULL,
  confidence DOUBLE PRECISION NOT NULL,
  diplomacy DOUBLE PRECISION NOT NULL,
  evolution_count INTEGER NOT NULL,
  last_evolved DOUBLE PRECISION NOT NULL,
  beliefs JSONB NOT NULL DEFAULT '{}'::jsonb,
  original_prompt TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS planner_runs (
  id BIGSERIAL PRIMARY KEY,
  agent_id INTEGER NOT NULL,
  cult_id INTEGER NOT NULL,
  cycle_count INTEGER NOT NULL,
  objective TEXT NOT NULL,
  horizon INTEGER NOT NULL,
  rationale TEXT NOT NULL,
  status TEXT NOT NULL DEFAULT 'running',
  created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
  finished_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS planner_steps (
  id BIGSERIAL PRIMARY KEY,
  run_id BIGINT NOT NULL REFERENCES planner_runs (id),
  step_index INTEGER NOT NULL,
  step_type TEXT NOT NULL,
  target_cult_id INTEGER,
  amount TEXT,
  message TEXT,
  conditions TEXT,
  status TEXT NOT NULL DEFAULT 'pending'
);

CREATE TABLE IF NOT EXISTS planner_step_results (
  id BIGSERIAL PRIMARY KEY,
  step_id BIGINT NOT NULL REFERENCES planner_steps (id),
  status TEXT NOT NULL,
  tx_hash TEXT,
  error TEXT,
  output JSONB NOT NULL DEFAULT '{}'::jsonb,
  created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS defections (
  id INTEGER NOT NULL,
  from_cult_id INTEGER NOT NULL,
  from_cult_name TEXT NOT NULL,
  to_cult_id INTEGER NOT NULL,
  to_cult_name TEXT NOT NULL,
  followers_lost INTEGER NOT NULL,
  reason TEXT NOT NULL,
  probability DOUBLE PRECISION NOT NULL,
  timestamp_ms DOUBLE PRECISION NOT NULL
);

CREATE TABLE IF NOT EXISTS life_events (
  id BIGSERIAL PRIMARY KEY,
  kind TEXT NOT NULL,
  cult_id INTEGER NOT NULL,
  cult_name TEXT NOT NULL,
  cause TEXT,
  treasury DOUBLE PRECISION NOT NULL,
  followers INTEGER NOT NULL,
  timestamp_ms DOUBLE PRECISION NOT NULL
);

CREATE TABLE IF NOT EXISTS prophecies (
  id INTEGER PRIMARY KEY,
  cult_id INTEGER NOT NULL,
  cult_name TEXT NOT NULL,
  prediction TEXT NOT NULL,
  confidence DOUBLE PRECISION NOT NULL,
  created_at DOUBLE PRECISION NOT NULL,
  target_time DOUBLE PRECISION NOT NULL,
  resolved BOOLEAN NOT NULL DEFAULT FALSE,
  correct BOOLEAN NOT NULL DEFAULT FALSE,
  chain_id INTEGER NOT NULL DEFAULT -1,
  price_at_creation DOUBLE PRECISION
);

CREATE TABLE IF NOT EXISTS raids (
  id INTEGER NOT NULL,
  attacker_id INTEGER NOT NULL,
  attacker_name TEXT NOT NULL,
  defender_id INTEGER NOT NULL,
  defender_name TEXT NOT NULL,
  wager DOUBLE PRECISION NOT NULL,
  attacker_won BOOLEAN NOT NULL,
  ally_id INTEGER,
  reason TEXT NOT NULL,
  timestamp_ms DOUBLE PRECISION NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
  id INTEGER NOT NULL,
  kind TEXT NOT NULL,
  from_cult_id INTEGER NOT NULL,
  from_cult_name TEXT NOT NULL,
  to_cult_id INTEGER,
  content TEXT NOT NULL,
  visibility TEXT NOT NULL,
  timestamp_ms DOUBLE PRECISION NOT NULL
);
"""


class CultRepository:
    def __init__(self, db: DBClient) -> None:
        self.db = db

    def init_schema(self) -> None:
        with self.db.cursor() as cur:
            cur.execute(SCHEMA)

    def ping(self) -> None:
        with self.db.cursor() as cur:
            cur.execute("SELECT 1")
            cur.fetchone()

    # ---- Agents ----

    def load_all_agents(self) -> list[AgentRecord]:
        with self.db.cursor() as cur:
            cur.execute(
                """
                SELECT id, name, prompt, cult_id, status, dead, cycle_count,
                       last_action, last_action_time, prophecies_generated,
                       raids_initiated, raids_won, followers_recruited
                FROM agents
                ORDER BY id
                """
            )
            rows = cur.fetchall()
        return [
            AgentRecord(
                id=int(r[0]),
                name=str(r[1]),
                prompt=str(r[2]),
                cult_id=int(r[3]) if r[3] is not None else None,
                status=str(r[4]),
                dead=bool(r[5]),
                cycle_count=int(r[6]),
                last_action=str(r[7] or ""),
                last_action_time=float(r[8]),
                prophecies_generated=int(r[9]),
                raids_initiated=int(r[10]),
                raids_won=int(r[11]),
                followers_recruited=int(r[12]),
            )
            for r in rows
        ]

    def update_agent_state(self, agent: AgentRecord) -> None:
        with self.db.cursor() as cur:
            cur.execute(
                """
                UPDATE agents
                SET prompt = %s, status = %s, dead = %s, cycle_count = %s,
                    last_action = %s, last_action_time = %s,
                    prophecies_generated = %s, raids_initiated = %s,
                    raids_won = %s, followers_recruited = %s
                WHERE id = %s
                """,
                (
                    agent.prompt,
                    agent.status,
                    agent.dead,
                    agent.cycle_count,
                    agent.last_action,
                    agent.last_action_time,
                    agent.prophecies_generated,
                    agent.raids_initiated,
                    agent.raids_won,
                    agent.followers_recruited,
                    agent.id,
                ),
            )

    # ---- Memory, trust, streaks ----

    def save_memory_entry(self, agent_id: int, cult_id: int, entry: MemoryEntry) -> None:
        with self.db.cursor() as cur:
            cur.execute(
                """
                INSERT INTO agent_memories (
                  agent_id, cult_id, kind, rival_id, rival_name, description, outcome, timestamp_ms
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    agent_id,
                    cult_id,
                    entry.kind,
                    entry.rival_id,
                    entry.rival_name,
                    entry.description,
                    entry.outcome,
                    entry.timestamp_ms,
                ),
            )

    def load_memories(self, cult_id: int, limit: int = 100) -> list[MemoryEntry]:
        """Newest first."""
        with self.db.cursor() as cur:
            cur.execute(
                """
                SELECT kind, rival_id, rival_name, description, timestamp_ms, outcome
                FROM agent_memories
                WHERE cult_id = %s
                ORDER BY timestamp_ms DESC, id DESC
                LIMIT %s
                """,
                (cult_id, limit),
            )
            rows = cur.fetchall()
        return [
            MemoryEntry(
                kind=str(r[0]),
                rival_id=int(r[1]),
                rival_name=str(r[2]),
                description=str(r[3]),
                timestamp_ms=float(r[4]),
                outcome=float(r[5]),
            )
            for r in rows
        ]

    def save_trust_record(self, agent_id: int, cult_id: int, record: TrustRecord) -> None:
        with self.db.cursor() as cur:
            cur.execute(
                """
                INSERT INTO trust_records (
                  cult_id, rival_id, agent_id, rival_name, trust, interaction_count, recent_trend
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (cult_id, rival_id)
                DO UPDATE SET
                  rival_name = EXCLUDED.rival_name,
                  trust = EXCLUDED.trust,
                  interaction_count = EXCLUDED.interaction_count,
                  recent_trend = EXCLUDED.recent_trend
                """,
                (
                    cult_id,
                    record.rival_id,
                    agent_id,
                    record.rival_name,
                    record.trust,
                    record.interaction_count,
                    record.recent_trend,
                ),
            )

    def load_trust_records(self, cult_id: int) -> list[TrustRecord]:
        with self.db.cursor() as cur:
            cur.execute(
                """
                SELECT rival_id, rival_name, trust, interaction_count, recent_trend
                FROM trust_records
                WHERE cult_id = %s
                """,
                (cult_id,),
            )
            rows = cur.fetchall()
        return [
            TrustRecord(
                rival_id=int(r[0]),
                rival_name=str(r[1]),
                trust=float(r[2]),
                interaction_count=int(r[3]),
                recent_trend=float(r[4]),
            )
            for r in rows
        ]

    def save_streak(self, agent_id: int, cult_id: int, streak: StreakInfo) -> None:
        with self.db.cursor() as cur:
            cur.execute(
                """
                INSERT INTO streaks (
                  cult_id, agent_id, current_type, current_length,
                  longest_win_streak, longest_loss_streak, total_wins, total_losses
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (cult_id)
                DO UPDATE SET
                  current_type = EXCLUDED.current_type,
                  current_length = EXCLUDED.current_length,
                  longest_win_streak = EXCLUDED.longest_win_streak,
                  longest_loss_streak = EXCLUDED.longest_loss_streak,
                  total_wins = EXCLUDED.total_wins,
                  total_losses = EXCLUDED.total_losses
                """,
                (
                    cult_id,
                    agent_id,
                    streak.current_type,
                    streak.current_length,
                    streak.longest_win_streak,
                    streak.longest_loss_streak,
                    streak.total_wins,
                    streak.total_losses,
                ),
            )

    def load_streak(self, cult_id: int) -> StreakInfo | None:
        with self.db.cursor() as cur:
            cur.execute(
                """
                SELECT current_type, current_length, longest_win_streak,
                       longest_loss_streak, total_wins, total_losses
                FROM streaks
                WHERE cult_id = %s
                """,
                (cult_id,),
            )
            row = cur.fetchone()
        if row is None:
            return None
        return StreakInfo(
            current_type=str(row[0]),  # type: ignore[arg-type]
            current_length=int(row[1]),
            longest_win_streak=int(row[2]),
            longest_loss_streak=int(row[3]),
            total_wins=int(row[4]),
            total_losses=int(row[5]),
        )

    # ---- Alliances and betrayals ----

    def save_alliance(self, alliance: Alliance) -> None:
        with self.db.cursor() as cur:
            cur.execute(
                """
                INSERT INTO alliances (
                  id, cult_a, cult_a_name, cult_b, cult_b_name,
                  formed_at, expires_at, power_bonus, active
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (id)
                DO UPDATE SET active = EXCLUDED.active
                """,
                (
                    alliance.id,
                    alliance.cult_a,
                    alliance.cult_a_name,
                    alliance.cult_b,
                    alliance.cult_b_name,
                    alliance.formed_at,
                    alliance.expires_at,
                    alliance.power_bonus,
                    alliance.active,
                ),
            )

    def update_alliance_active(self, alliance_id: int, active: bool) -> None:
        with self.db.cursor() as cur:
            cur.execute(
                "UPDATE alliances SET active = %s WHERE id = %s",
                (active, alliance_id),
            )

    def load_alliances(self) -> list[Alliance]:
        with self.db.cursor() as cur:
            cur.execute(
                """
                SELECT id, cult_a, cult_a_name, cult_b, cult_b_name,
                       formed_at, expires_at, active, power_bonus
                FROM alliances
                ORDER BY id
                """
            )
            rows = cur.fetchall()
        return [
            Alliance(
                id=int(r[0]),
                cult_a=int(r[1]),
                cult_a_name=str(r[2]),
                cult_b=int(r[3]),
                cult_b_name=str(r[4]),
                formed_at=float(r[5]),
                expires_at=float(r[6]),
                active=bool(r[7]),
                power_bonus=float(r[8]),
            )
            for r in rows
        ]

    def save_betrayal(self, betrayal: BetrayalEvent) -> None:
        with self.db.cursor() as cur:
            cur.execute(
                """
                INSERT INTO betrayals (
                  alliance_id, betrayer_cult_id, betrayer_name, victim_cult_id,
                  victim_name, reason, surprise_bonus, timestamp_ms
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    betrayal.alliance_id,
                    betrayal.betrayer_cult_id,
                    betrayal.betrayer_name,
                    betrayal.victim_cult_id,
                    betrayal.victim_name,
                    betrayal.reason,
                    betrayal.surprise_bonus,
                    betrayal.timestamp,
                ),
            )

    def load_betrayals(self) -> list[BetrayalEvent]:
        with self.db.cursor() as cur:
            cur.execute(
                """
                SELECT alliance_id, betrayer_cult_id, betrayer_name, victim_cult_id,
                       victim_name, reason, timestamp_ms, surprise_bonus
                FROM betrayals
                ORDER BY timestamp_ms
                """
            )
            rows = cur.fetchall()
        return [
            BetrayalEvent(
                alliance_id=int(r[0]),
                betrayer_cult_id=int(r[1]),
                betrayer_name=str(r[2]),
                victim_cult_id=int(r[3]),
                victim_name=str(r[4]),
                reason=str(r[5]),
                timestamp=float(r[6]),
                surprise_bonus=float(r[7]),
            )
            for r in rows
        ]

    # ---- Evolution ----

    def save_evolution_traits(
        self,
        agent_id: int,
        cult_id: int,
        traits: EvolutionTraits,
        beliefs: BeliefTraits,
        original_prompt: str,
    ) -> None:
        with self.db.cursor() as cur:
            cur.execute(
                """
                INSERT INTO evolution_traits (
                  cult_id, agent_id, aggression, confidence, diplomacy,
                  evolution_count, last_evolved, beliefs, original_prompt
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s)
                ON CONFLICT (cult_id)
                DO UPDATE SET
                  aggression = EXCLUDED.aggression,
                  confidence = EXCLUDED.confidence,
                  diplomacy = EXCLUDED.diplomacy,
                  evolution_count = EXCLUDED.evolution_count,
                  last_evolved = EXCLUDED.last_evolved,
                  beliefs = EXCLUDED.beliefs
                """,
                (
                    cult_id,
                    agent_id,
                    traits.aggression,
                    traits.confidence,
                    traits.diplomacy,
                    traits.evolution_count,
                    traits.last_evolved,
                    json.dumps(beliefs.as_dict()),
                    original_prompt,
                ),
            )

    def load_evolution_traits(
        self, cult_id: int
    ) -> tuple[EvolutionTraits, BeliefTraits, str] | None:
        with self.db.cursor() as cur:
            cur.execute(
                """
                SELECT aggression, confidence, diplomacy, evolution_count,
                       last_evolved, beliefs, original_prompt
                FROM evolution_traits
                WHERE cult_id = %s
                """,
                (cult_id,),
            )
            row = cur.fetchone()
        if row is None:
            return None
        traits = EvolutionTraits(
            aggression=float(row[0]),
            confidence=float(row[1]),
            diplomacy=float(row[2]),
            evolution_count=int(row[3]),
            last_evolved=float(row[4]),
        )
        raw_beliefs = row[5] if isinstance(row[5], dict) else {}
        beliefs = BeliefTraits(
            **{k: float(v) for k, v in raw_beliefs.items() if k in BeliefTraits.__dataclass_fields__}
        )
        return traits, beliefs, str(row[6])

    # ---- Planner ----

    def save_planner_run(
        self, agent_id: int, cult_id: int, cycle_count: int, plan: PlannerPlan
    ) -> int:
        with self.db.cursor() as cur:
            cur.execute(
                """
                INSERT INTO planner_runs (agent_id, cult_id, cycle_count, objective, horizon, rationale)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING id
                """,
                (agent_id, cult_id, cycle_count, plan.objective, plan.horizon, plan.rationale),
            )
            row = cur.fetchone()
        return int(row[0])

    def save_planner_steps(self, run_id: int, steps: list[PlannerStep]) -> list[int]:
        ids: list[int] = []
        with self.db.cursor() as cur:
            for index, step in enumerate(steps):
                row = step.to_row()
                cur.execute(
                    """
                    INSERT INTO planner_steps (
                      run_id, step_index, step_type, target_cult_id, amount, message, conditions
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (
                        run_id,
                        index,
                        row["step_type"],
                        row["target_cult_id"],
                        row["amount"],
                        row["message"],
                        row["conditions"],
                    ),
                )
                ids.append(int(cur.fetchone()[0]))
        return ids

    def update_planner_step(self, step_id: int, status: str) -> None:
        with self.db.cursor() as cur:
            cur.execute(
                "UPDATE planner_steps SET status = %s WHERE id = %s",
                (status, step_id),
            )

    def save_planner_step_result(self, step_id: int, result: ExecutionResult) -> None:
        with self.db.cursor() as cur:
            cur.execute(
                """
                INSERT INTO planner_step_results (step_id, status, tx_hash, error, output)
                VALUES (%s, %s, %s, %s, %s::jsonb)
                """,
                (
                    step_id,
                    result.status,
                    result.tx_hash,
                    result.error,
                    json.dumps(result.output, default=str),
                ),
            )

    def update_planner_run(self, run_id: int, status: str) -> None:
        with self.db.cursor() as cur:
            cur.execute(
                "UPDATE planner_runs SET status = %s, finished_at = now() WHERE id = %s",
                (status, run_id),
            )

    def get_planner_runs(self, cult_id: int, limit: int = 20) -> list[dict[str, Any]]:
        with self.db.cursor() as cur:
            cur.execute(
                """
                SELECT id, cycle_count, objective, horizon, rationale, status, created_at
                FROM planner_runs
                WHERE cult_id = %s
                ORDER BY id DESC
                LIMIT %s
                """,
                (cult_id, limit),
            )
            rows = cur.fetchall()
        return [
            {
                "run_id": int(r[0]),
                "cycle_count": int(r[1]),
                "objective": str(r[2]),
                "horizon": int(r[3]),
                "rationale": str(r[4]),
                "status": str(r[5]),
                "created_at": r[6].isoformat(),
            }
            for r in rows
        ]

    # ---- Event history ----

    def save_defection(self, event: DefectionEvent) -> None:
        with self.db.cursor() as cur:
            cur.execute(
                """
                INSERT INTO defections (
                  id, from_cult_id, from_cult_name, to_cult_id, to_cult_name,
                  followers_lost, reason, probability, timestamp_ms
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.from_cult_id,
                    event.from_cult_name,
                    event.to_cult_id,
                    event.to_cult_name,
                    event.followers_lost,
                    event.reason,
                    event.probability,
                    event.timestamp,
                ),
            )

    def save_death(self, event: DeathEvent) -> None:
        with self.db.cursor() as cur:
            cur.execute(
                """
                INSERT INTO life_events (kind, cult_id, cult_name, cause, treasury, followers, timestamp_ms)
                VALUES ('death', %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.cult_id,
                    event.cult_name,
                    event.cause,
                    event.final_treasury,
                    event.final_followers,
                    event.timestamp,
                ),
            )

    def save_rebirth(self, event: RebirthEvent) -> None:
        with self.db.cursor() as cur:
            cur.execute(
                """
                INSERT INTO life_events (kind, cult_id, cult_name, cause, treasury, followers, timestamp_ms)
                VALUES ('rebirth', %s, %s, NULL, %s, %s, %s)
                """,
                (event.cult_id, event.cult_name, event.new_treasury, 0, event.timestamp),
            )

    def load_life_events(self) -> tuple[list[DeathEvent], list[RebirthEvent]]:
        with self.db.cursor() as cur:
            cur.execute(
                """
                SELECT kind, cult_id, cult_name, cause, treasury, followers, timestamp_ms
                FROM life_events
                ORDER BY timestamp_ms, id
                """
            )
            rows = cur.fetchall()
        deaths: list[DeathEvent] = []
        rebirths: list[RebirthEvent] = []
        for r in rows:
            if r[0] == "death":
                deaths.append(
                    DeathEvent(
                        cult_id=int(r[1]),
                        cult_name=str(r[2]),
                        cause=str(r[3]),  # type: ignore[arg-type]
                        final_treasury=float(r[4]),
                        final_followers=int(r[5]),
                        timestamp=float(r[6]),
                    )
                )
            else:
                rebirths.append(
                    RebirthEvent(
                        cult_id=int(r[1]),
                        cult_name=str(r[2]),
                        new_treasury=float(r[4]),
                        timestamp=float(r[6]),
                    )
                )
        return deaths, rebirths

    def save_prophecy(self, prophecy: Prophecy) -> None:
        with self.db.cursor() as cur:
            cur.execute(
                """
                INSERT INTO prophecies (
                  id, cult_id, cult_name, prediction, confidence,
                  created_at, target_time, resolved, correct, chain_id, price_at_creation
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (id)
                DO UPDATE SET
                  resolved = EXCLUDED.resolved,
                  correct = EXCLUDED.correct,
                  chain_id = EXCLUDED.chain_id
                """,
                (
                    prophecy.id,
                    prophecy.cult_id,
                    prophecy.cult_name,
                    prophecy.prediction,
                    prophecy.confidence,
                    prophecy.created_at,
                    prophecy.target_time,
                    prophecy.resolved,
                    prophecy.correct,
                    prophecy.chain_id,
                    prophecy.price_at_creation,
                ),
            )

    def update_prophecy(self, prophecy: Prophecy) -> None:
        with self.db.cursor() as cur:
            cur.execute(
                "UPDATE prophecies SET resolved = %s, correct = %s, chain_id = %s WHERE id = %s",
                (prophecy.resolved, prophecy.correct, prophecy.chain_id, prophecy.id),
            )

    def load_prophecies(self) -> list[Prophecy]:
        with self.db.cursor() as cur:
            cur.execute(
                """
                SELECT id, cult_id, cult_name, prediction, confidence, created_at,
                       target_time, resolved, correct, chain_id, price_at_creation
                FROM prophecies
                ORDER BY id ASC
                """
            )
            rows = cur.fetchall()
        return [
            Prophecy(
                id=int(r[0]),
                cult_id=int(r[1]),
                cult_name=str(r[2]),
                prediction=str(r[3]),
                confidence=float(r[4]),
                created_at=float(r[5]),
                target_time=float(r[6]),
                resolved=bool(r[7]),
                correct=bool(r[8]),
                chain_id=int(r[9]),
                price_at_creation=float(r[10]) if r[10] is not None else None,
            )
            for r in rows
        ]

    def save_raid(self, raid: RaidEvent) -> None:
        with self.db.cursor() as cur:
            cur.execute(
                """
                INSERT INTO raids (
                  id, attacker_id, attacker_name, defender_id, defender_name,
                  wager, attacker_won, ally_id, reason, timestamp_ms
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    raid.id,
                    raid.attacker_id,
                    raid.attacker_name,
                    raid.defender_id,
                    raid.defender_name,
                    raid.wager,
                    raid.attacker_won,
                    raid.ally_id,
                    raid.reason,
                    raid.timestamp,
                ),
            )

    def save_message(self, message: Message) -> None:
        with self.db.cursor() as cur:
            cur.execute(
                """
                INSERT INTO messages (
                  id, kind, from_cult_id, from_cult_name, to_cult_id, content, visibility, timestamp_ms
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    message.id,
                    message.kind,
                    message.from_cult_id,
                    message.from_cult_name,
                    message.to_cult_id,
                    message.content,
                    message.visibility,
                    message.timestamp,
                ),
            )

from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class DBSettings:
    host: str
    port: int
    name: str
    user: str
    password: str

    @property
    def dsn(self) -> str:
        return (
            f"dbname={self.name} user={self.user} password={self.password} "
            f"host={self.host} port={self.port}"
        )


@dataclass(frozen=True)
class OllamaSettings:
    host: str
    llm_model: str
    llm_temperature: float = 0.7
    timeout_seconds: int = 90
    max_retries: int = 2
    retry_backoff_seconds: float = 1.5


@dataclass(frozen=True)
class LedgerSettings:
    gateway_url: str
    timeout_seconds: float = 30.0
    tx_max_retries: int = 3
    """Retries per queued ledger write before the caller's future is rejected."""
    tx_retry_delay_s: float = 2.0
    """Backoff unit: attempt N sleeps N * tx_retry_delay_s before retrying."""


@dataclass(frozen=True)
class SchedulerSettings:
    """Per-agent loop timing and the tunables of the decision models."""

    loop_interval_s: float = 30.0
    """Base delay between two cycles of the same agent."""
    loop_jitter_s: float = 30.0
    """Uniform random extra delay in [0, jitter] added to every sleep."""
    start_stagger_s: float = 5.0
    """Agent i starts i * stagger seconds after the scheduler."""
    world_cache_s: float = 5.0
    """Maximum age of the DB-backed world-state cache."""
    max_plan_steps: int = 5
    min_plan_steps: int = 2
    evolve_interval: int = 10
    prophecy_interval: int = 3
    """Cycles between two prophecies of the same agent."""
    rebirth_cooldown_s: float = 300.0
    alliance_duration_s: float = 300.0
    persistence_queue_size: int = 256
    """Pending best-effort writes allowed per agent before new ones are dropped."""
    seed: int | None = None


@dataclass(frozen=True)
class AppSettings:
    db: DBSettings
    ollama: OllamaSettings
    ledger: LedgerSettings
    scheduler: SchedulerSettings

    @staticmethod
    def from_env() -> "AppSettings":
        seed_raw = os.getenv("SIM_SEED", "").strip()
        return AppSettings(
            db=DBSettings(
                host=os.getenv("DB_HOST", "localhost"),
                port=int(os.getenv("DB_PORT", "5432")),
                name=os.getenv("DB_NAME", "cults"),
                user=os.getenv("DB_USER", "cult_user"),
                password=os.getenv("DB_PASSWORD", "cult_pass"),
            ),
            ollama=OllamaSettings(
                host=os.getenv("OLLAMA_HOST", "http://localhost:11434"),
                llm_model=os.getenv("LLM_MODEL", "qwen2.5:7b"),
                llm_temperature=float(os.getenv("LLM_TEMPERATURE", "0.7")),
                timeout_seconds=int(os.getenv("OLLAMA_TIMEOUT_SECONDS", "90")),
                max_retries=int(os.getenv("OLLAMA_MAX_RETRIES", "2")),
                retry_backoff_seconds=float(
                    os.getenv("OLLAMA_RETRY_BACKOFF_SECONDS", "1.5")
                ),
            ),
            ledger=LedgerSettings(
                gateway_url=os.getenv("LEDGER_GATEWAY_URL", "http://localhost:8545"),
                timeout_seconds=float(os.getenv("LEDGER_TIMEOUT_SECONDS", "30")),
                tx_max_retries=int(os.getenv("TX_MAX_RETRIES", "3")),
                tx_retry_delay_s=float(os.getenv("TX_RETRY_DELAY_S", "2.0")),
            ),
            scheduler=SchedulerSettings(
                loop_interval_s=float(os.getenv("AGENT_LOOP_INTERVAL_S", "30")),
                loop_jitter_s=float(os.getenv("AGENT_LOOP_JITTER_S", "30")),
                start_stagger_s=float(os.getenv("AGENT_START_STAGGER_S", "5")),
                world_cache_s=float(os.getenv("WORLD_CACHE_S", "5")),
                max_plan_steps=int(os.getenv("MAX_PLAN_STEPS", "5")),
                min_plan_steps=int(os.getenv("MIN_PLAN_STEPS", "2")),
                evolve_interval=int(os.getenv("EVOLVE_INTERVAL", "10")),
                prophecy_interval=int(os.getenv("PROPHECY_INTERVAL", "3")),
                rebirth_cooldown_s=float(os.getenv("REBIRTH_COOLDOWN_S", "300")),
                alliance_duration_s=float(os.getenv("ALLIANCE_DURATION_S", "300")),
                persistence_queue_size=int(
                    os.getenv("PERSISTENCE_QUEUE_SIZE", "256")
                ),
                seed=int(seed_raw) if seed_raw else None,
            ),
        )

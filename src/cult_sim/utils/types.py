from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Literal

MEMORY_KINDS = frozenset(
    {
        "raid_won",
        "raid_lost",
        "persuasion_success",
        "persuasion_fail",
        "alliance_formed",
        "alliance_broken",
        "betrayal",
        "governance_vote",
    }
)

StreakType = Literal["win", "loss", "none"]


def now_ms() -> float:
    return time.time() * 1000.0


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def cult_power(treasury: float, followers: int) -> float:
    """Weighted strength used for every ratio comparison between cults."""
    return treasury * 0.6 + followers * 100 * 0.4


@dataclass
class CultState:
    """Ledger view of one cult at the moment it was read."""

    id: int
    name: str
    treasury: float = 0.0
    follower_count: int = 0
    raid_wins: int = 0
    raid_losses: int = 0
    active: bool = True
    leader: str = ""

    def power(self) -> float:
        return cult_power(self.treasury, self.follower_count)


@dataclass
class AgentRecord:
    id: int
    name: str
    prompt: str
    cult_id: int | None = None
    status: str = "running"
    cycle_count: int = 0
    running: bool = False
    dead: bool = False
    last_action: str = "initialized"
    last_action_time: float = field(default_factory=now_ms)
    prophecies_generated: int = 0
    raids_initiated: int = 0
    raids_won: int = 0
    followers_recruited: int = 0

    @property
    def grouped(self) -> bool:
        return self.cult_id is not None and self.cult_id >= 0

    def public_state(self) -> dict[str, Any]:
        return {
            "agent_id": self.id,
            "cult_id": self.cult_id,
            "name": self.name,
            "status": self.status,
            "running": self.running,
            "dead": self.dead,
            "cycle_count": self.cycle_count,
            "last_action": self.last_action,
            "last_action_time": self.last_action_time,
            "prophecies_generated": self.prophecies_generated,
            "raids_initiated": self.raids_initiated,
            "raids_won": self.raids_won,
            "followers_recruited": self.followers_recruited,
        }


@dataclass
class MemoryEntry:
    kind: str
    rival_id: int
    rival_name: str
    description: str
    timestamp_ms: float
    outcome: float
    """-1.0 (bad for us) .. 1.0 (good for us)."""


@dataclass
class TrustRecord:
    rival_id: int
    rival_name: str
    trust: float = 0.0
    interaction_count: int = 0
    recent_trend: float = 0.0


@dataclass
class StreakInfo:
    current_type: StreakType = "none"
    current_length: int = 0
    longest_win_streak: int = 0
    longest_loss_streak: int = 0
    total_wins: int = 0
    total_losses: int = 0

    @property
    def total_games(self) -> int:
        return self.total_wins + self.total_losses

    def win_rate(self) -> float:
        games = self.total_games
        return self.total_wins / games if games else 0.0


@dataclass
class MemorySnapshot:
    recent_interactions: list[MemoryEntry]
    trusted_rivals: list[TrustRecord]
    distrusted_rivals: list[TrustRecord]
    streak: StreakInfo
    summary: str


@dataclass
class EvolutionTraits:
    aggression: float = 0.0
    confidence: float = 0.0
    diplomacy: float = 0.0
    evolution_count: int = 0
    last_evolved: float = 0.0


@dataclass
class BeliefTraits:
    zealotry: float = 0.5
    mysticism: float = 0.5
    pragmatism: float = 0.5
    adaptability: float = 0.5

    def as_dict(self) -> dict[str, float]:
        return {
            "zealotry": round(self.zealotry, 3),
            "mysticism": round(self.mysticism, 3),
            "pragmatism": round(self.pragmatism, 3),
            "adaptability": round(self.adaptability, 3),
        }

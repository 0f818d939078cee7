from __future__ import annotations

from dataclasses import dataclass, field

from cult_sim.utils.types import CultState


@dataclass
class PlanContext:
    """Everything one agent sees when it plans a cycle."""

    cult: CultState
    rivals: list[CultState]
    memory_summary: str = ""
    trust_graph: str = ""
    ally: tuple[int, str] | None = None
    alliance_seconds_left: float | None = None
    recent_messages: list[str] = field(default_factory=list)
    bribe_offers: list[str] = field(default_factory=list)
    beliefs: dict[str, float] = field(default_factory=dict)
    prophecy_accuracy: float = 0.0
    market_summary: str = ""

    def rival_ids(self) -> set[int]:
        return {r.id for r in self.rivals}

    def render(self) -> str:
        c = self.cult
        lines = [
            "=== YOUR CULT ===",
            f"- id: {c.id}",
            f"- treasury: {c.treasury:.4f} MON",
            f"- followers: {c.follower_count}",
            f"- raid record: {c.raid_wins}W / {c.raid_losses}L",
            f"- prophecy accuracy: {self.prophecy_accuracy:.2f}",
        ]
        if self.ally is not None:
            left = (
                f", {self.alliance_seconds_left:.0f}s left"
                if self.alliance_seconds_left is not None
                else ""
            )
            lines.append(f"- ally: [ID:{self.ally[0]}] {self.ally[1]}{left}")
        else:
            lines.append("- ally: none")
        if self.beliefs:
            lines.append(
                "- beliefs: " + ", ".join(f"{k}={v:.2f}" for k, v in self.beliefs.items())
            )

        lines.append("")
        lines.append("=== RIVAL CULTS ===")
        if self.rivals:
            for r in self.rivals:
                lines.append(
                    f"  - [ID:{r.id}] {r.name}: {r.treasury:.4f} MON, "
                    f"{r.follower_count} followers, {r.raid_wins} wins"
                )
        else:
            lines.append("  (none visible)")

        lines.append("")
        lines.append("=== MEMORY ===")
        lines.append(self.memory_summary or "No notable history.")
        lines.append(f"Trust: {self.trust_graph or 'No relationships yet.'}")

        if self.recent_messages:
            lines.append("")
            lines.append("=== RECENT MESSAGES ===")
            lines.extend(f"  - {m}" for m in self.recent_messages)
        if self.bribe_offers:
            lines.append("")
            lines.append("=== BRIBES RECEIVED ===")
            lines.extend(f"  - {b}" for b in self.bribe_offers)
        if self.market_summary:
            lines.append("")
            lines.append("=== MARKET ===")
            lines.append(self.market_summary)
        return "\n".join(lines)

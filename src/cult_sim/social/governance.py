"""Budget proposals and coups.

A proposal splits the treasury across raid / growth / defense / reserve.
The split comes from the language model when it returns four integers
summing to 100; otherwise a balanced default is used. Only a hash of the
proposal text goes on-chain.

A coup succeeds when the instigator's power exceeds the target's by 1.5x.
Each cult may attempt one coup per cooldown window.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Protocol

from cult_sim.chain.ledger import LedgerClient, hash_reason
from cult_sim.chain.tx_queue import TransactionQueue
from cult_sim.utils.types import CultState, now_ms

if TYPE_CHECKING:
    from cult_sim.events.bus import EventBus

COUP_COOLDOWN_MS = 300_000
COUP_POWER_THRESHOLD = 1.5
DEFAULT_BUDGET = {"raid": 30, "growth": 30, "defense": 20, "reserve": 20}
DEFAULT_DESCRIPTION = "Balanced strategy for stability"


class TextGenerator(Protocol):
    async def generate_text(self, prompt: str, fallback: str = "") -> str: ...


@dataclass(frozen=True)
class BudgetProposal:
    id: int
    cult_id: int
    cult_name: str
    category: str
    raid_percent: int
    growth_percent: int
    defense_percent: int
    reserve_percent: int
    description: str
    timestamp: float
    chain_id: int = -1


@dataclass(frozen=True)
class CoupEvent:
    cult_id: int
    cult_name: str
    target_cult_id: int
    target_cult_name: str
    instigator_power: float
    target_power: float
    success: bool
    timestamp: float


def parse_budget(raw: str) -> tuple[dict[str, int], str] | None:
    """Four shares summing to 100 plus a description, or ``None``."""
    start, end = raw.find("{"), raw.rfind("}")
    if start == -1 or end < start:
        return None
    try:
        data = json.loads(raw[start : end + 1])
        shares = {k: int(data[k]) for k in DEFAULT_BUDGET}
    except (ValueError, KeyError, TypeError):
        return None
    if sum(shares.values()) != 100 or any(v < 0 for v in shares.values()):
        return None
    return shares, str(data.get("description") or DEFAULT_DESCRIPTION)


class GovernanceBook:
    def __init__(
        self,
        llm: TextGenerator | None = None,
        ledger: LedgerClient | None = None,
        tx_queue: TransactionQueue | None = None,
        clock: Callable[[], float] = now_ms,
        bus: "EventBus | None" = None,
    ) -> None:
        self.logger = logging.getLogger("cult_sim.governance")
        self.llm = llm
        self.ledger = ledger
        self.tx_queue = tx_queue
        self.clock = clock
        self.bus = bus
        self._proposals: list[BudgetProposal] = []
        self._coups: list[CoupEvent] = []
        self._coup_times: dict[int, float] = {}

    async def propose_budget(self, cult: CultState, system_prompt: str = "") -> BudgetProposal:
        shares, description = dict(DEFAULT_BUDGET), DEFAULT_DESCRIPTION
        if self.llm is not None:
            prompt = (
                f"{system_prompt}\n\nYou are the leader of \"{cult.name}\".\n"
                f"Current state: Treasury = {cult.treasury:.4f} MON, Followers = {cult.follower_count}, "
                f"Raid record: {cult.raid_wins}W / {cult.raid_losses}L.\n"
                "Propose a new budget allocation. Respond with ONLY a JSON object:\n"
                '{"raid": <0-100>, "growth": <0-100>, "defense": <0-100>, "reserve": <0-100>, '
                '"description": "<one sentence strategy>"}\nThe numbers MUST sum to exactly 100.'
            )
            parsed = parse_budget(await self.llm.generate_text(prompt))
            if parsed is None:
                self.logger.warning("governance BUDGET-DEFAULT cult=%s reason=unparseable", cult.name)
            else:
                shares, description = parsed

        category = max(shares, key=lambda k: shares[k])
        chain_id = -1
        if self.ledger is not None:
            ledger = self.ledger

            async def op() -> int:
                return await ledger.create_proposal(cult.id, category, hash_reason(description))

            if self.tx_queue is not None:
                chain_id = int(await self.tx_queue.enqueue(f"proposal_{cult.id}_{len(self._proposals)}", op))
            else:
                chain_id = int(await op())

        proposal = BudgetProposal(
            id=len(self._proposals),
            cult_id=cult.id,
            cult_name=cult.name,
            category=category,
            raid_percent=shares["raid"],
            growth_percent=shares["growth"],
            defense_percent=shares["defense"],
            reserve_percent=shares["reserve"],
            description=description,
            timestamp=self.clock(),
            chain_id=chain_id,
        )
        self._proposals.append(proposal)
        if self.bus is not None:
            self.bus.publish(
                "proposal_created",
                {"cult_id": cult.id, "proposal_id": proposal.id, "category": category},
            )
        self.logger.info(
            "governance PROPOSAL cult=%s raid=%d growth=%d defense=%d reserve=%d chain_id=%d",
            cult.name, proposal.raid_percent, proposal.growth_percent,
            proposal.defense_percent, proposal.reserve_percent, chain_id,
        )
        return proposal

    def attempt_coup(self, instigator: CultState, target: CultState) -> CoupEvent | None:
        if instigator.id == target.id:
            return None
        now = self.clock()
        last = self._coup_times.get(instigator.id)
        if last is not None and now - last < COUP_COOLDOWN_MS:
            self.logger.info("governance COUP-COOLDOWN cult=%s", instigator.name)
            return None
        self._coup_times[instigator.id] = now

        instigator_power = instigator.power()
        target_power = target.power()
        event = CoupEvent(
            cult_id=instigator.id,
            cult_name=instigator.name,
            target_cult_id=target.id,
            target_cult_name=target.name,
            instigator_power=instigator_power,
            target_power=target_power,
            success=instigator_power > target_power * COUP_POWER_THRESHOLD,
            timestamp=now,
        )
        self._coups.append(event)
        if self.bus is not None:
            self.bus.publish(
                "coup",
                {
                    "cult_id": instigator.id,
                    "target_cult_id": target.id,
                    "success": event.success,
                },
            )
        self.logger.info(
            "governance COUP cult=%s target=%s success=%s power=%.0f/%.0f",
            instigator.name, target.name, event.success, instigator_power, target_power,
        )
        return event

    # ---- Reads ----

    def get_proposals(self, cult_id: int | None = None, limit: int = 20) -> list[BudgetProposal]:
        rows = [p for p in self._proposals if cult_id is None or p.cult_id == cult_id]
        return list(reversed(rows[-limit:])) if limit > 0 else []

    def get_latest_budget(self, cult_id: int) -> BudgetProposal | None:
        return next((p for p in reversed(self._proposals) if p.cult_id == cult_id), None)

    def get_coup_events(self, limit: int = 10) -> list[CoupEvent]:
        return list(reversed(self._coups[-limit:])) if limit > 0 else []

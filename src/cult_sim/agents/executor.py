"""Capability calls for one agent in one cycle.

``CultStepExecutor`` is built fresh every cycle from the cult snapshot and
the visible rivals. Targets outside that snapshot are rejected with ``None``
(the planner records the step as skipped). Every ledger write is routed
through the shared transaction queue.
"""
from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from cult_sim.chain.ledger import LedgerClient
from cult_sim.chain.tx_queue import TransactionQueue
from cult_sim.memory.trust_memory import MemoryModel
from cult_sim.social.alliances import AllianceModel
from cult_sim.social.communication import CommunicationHub
from cult_sim.social.defection import DefectionModel
from cult_sim.social.governance import GovernanceBook
from cult_sim.social.persuasion import PersuasionModel
from cult_sim.social.raids import RaidBook
from cult_sim.utils.errors import LedgerError
from cult_sim.utils.types import AgentRecord, CultState

Outcome = dict[str, Any] | None


@dataclass
class AgentToolkit:
    """Shared models and clients every executor draws on."""

    ledger: LedgerClient
    tx_queue: TransactionQueue
    memory: MemoryModel
    alliances: AllianceModel
    raids: RaidBook
    defection: DefectionModel
    communication: CommunicationHub
    persuasion: PersuasionModel
    governance: GovernanceBook
    rng: random.Random = field(default_factory=random.Random)


class CultStepExecutor:
    def __init__(
        self,
        toolkit: AgentToolkit,
        agent: AgentRecord,
        cult: CultState,
        rivals: list[CultState],
        system_prompt: str,
    ) -> None:
        self.toolkit = toolkit
        self.agent = agent
        self.cult = cult
        self.rivals = rivals
        self.system_prompt = system_prompt
        self.logger = logging.getLogger(f"cult_sim.agent.{agent.name[:20]}")

    @property
    def cult_id(self) -> int:
        return self.cult.id

    @property
    def cult_name(self) -> str:
        return self.cult.name

    # ------------------------------------------------------------------
    # Communication
    # ------------------------------------------------------------------

    async def talk_public(self, message: str) -> Outcome:
        sent = await self.toolkit.communication.broadcast(
            self.cult.id, self.cult.name, content=message, system_prompt=self.system_prompt
        )
        if sent is None:
            return None
        self._mark(f"broadcast: {sent.content[:50]}")
        return {"message_id": sent.id}

    async def talk_private(self, target_cult_id: int, message: str) -> Outcome:
        target = self._rival(target_cult_id)
        if target is None:
            return None
        sent = await self.toolkit.communication.whisper(
            self.cult.id, self.cult.name, target.id, target.name,
            content=message, system_prompt=self.system_prompt,
        )
        if sent is None:
            return None
        self._mark(f"whispered to {target.name}")
        return {"message_id": sent.id, "to": target.name}

    async def meme(self, target_cult_id: int | None, caption: str | None) -> Outcome:
        target = self._rival(target_cult_id) if target_cult_id is not None else self._pick_rival()
        if target is None:
            return None
        sent = await self.toolkit.communication.send_meme(
            self.cult.id, self.cult.name, target.id, target.name,
            caption=caption, system_prompt=self.system_prompt,
        )
        self._mark(f"memed {target.name}")
        return {"message_id": sent.id, "to": target.name}

    async def leak(self) -> Outcome:
        pairs = [
            p for p in self.toolkit.communication.private_pairs() if self.cult.id not in p
        ]
        names = {r.id: r.name for r in self.rivals}
        pairs = [p for p in pairs if p[0] in names and p[1] in names]
        if not pairs:
            return None
        a, b = pairs[self.toolkit.rng.randrange(len(pairs))]
        leaked = await self.toolkit.communication.leak(
            self.cult.id, self.cult.name, (a, names[a]), (b, names[b]),
            system_prompt=self.system_prompt,
        )
        if leaked is None:
            return None
        messages, announcement = leaked
        self._mark(f"leaked secrets of {names[a]} and {names[b]}")
        return {"leaked": len(messages), "announcement_id": announcement.id}

    # ------------------------------------------------------------------
    # Alliances
    # ------------------------------------------------------------------

    async def ally(self, target_cult_id: int) -> Outcome:
        target = self._rival(target_cult_id)
        if target is None:
            return None
        alliances = self.toolkit.alliances
        advice = alliances.should_ally(self.cult.id, target.id, self.cult.power(), target.power())
        if not advice.recommend:
            self.logger.info("ally REJECTED target=%s reason=%s", target.name, advice.reason)
            return None
        alliance = alliances.form_alliance(self.cult.id, self.cult.name, target.id, target.name)
        if alliance is None:
            return None
        self._mark(f"allied with {target.name}")
        return {"alliance_id": alliance.id, "partner": target.name}

    async def betray(self, reason: str) -> Outcome:
        event = self.toolkit.alliances.betray(self.cult.id, self.cult.name, reason)
        if event is None:
            return None
        self._mark(f"betrayed {event.victim_name}")
        return {"victim": event.victim_name, "surprise_bonus": event.surprise_bonus}

    # ------------------------------------------------------------------
    # Ledger actions
    # ------------------------------------------------------------------

    async def bribe(self, target_cult_id: int, amount: str) -> Outcome:
        target = self._rival(target_cult_id)
        if target is None:
            return None
        try:
            value = float(amount)
        except ValueError:
            return None
        if value <= 0 or value > self.cult.treasury:
            self.toolkit.communication.record_bribe(
                (self.cult.id, self.cult.name), (target.id, target.name), value, "rejected"
            )
            return None

        ledger = self.toolkit.ledger
        try:
            tx_hash = await self._submit(
                f"bribe_{self.cult.id}_{target.id}",
                lambda: ledger.transfer_token(self.cult.id, target.id, value),
            )
        except LedgerError:
            self.toolkit.communication.record_bribe(
                (self.cult.id, self.cult.name), (target.id, target.name), value, "failed"
            )
            raise
        self.toolkit.communication.record_bribe(
            (self.cult.id, self.cult.name), (target.id, target.name), value, "accepted", tx_hash
        )
        self.cult.treasury -= value
        self._mark(f"bribed {target.name} {value:.4f} MON")
        return {"tx_hash": tx_hash, "amount": value, "to": target.name}

    async def raid(self, target_cult_id: int, wager_pct: float | None) -> Outcome:
        target = self._rival(target_cult_id)
        if target is None:
            return None
        decision = self.toolkit.raids.should_raid(self.cult, target, wager_pct)
        if not decision.should_raid:
            self.logger.info("raid SKIP target=%s reason=%s", target.name, decision.reason)
            return None

        raid = self.toolkit.raids.resolve_raid(
            self.cult, target, decision.wager, reason=f"wager {decision.wager_pct:.0f}%"
        )
        self.agent.raids_initiated += 1
        if raid.attacker_won:
            self.agent.raids_won += 1

        winner, loser = (self.cult, target) if raid.attacker_won else (target, self.cult)
        defection = self.toolkit.defection.check_defection(loser, winner)

        ledger = self.toolkit.ledger
        tx_hash = await self._submit(
            f"raid_{raid.id}",
            lambda: ledger.record_raid(raid.attacker_id, raid.defender_id, raid.attacker_won, raid.wager),
        )
        self._mark(
            f"raided {target.name} - {'WON' if raid.attacker_won else 'LOST'} {raid.wager:.4f} MON"
        )
        return {
            "tx_hash": tx_hash,
            "raid_id": raid.id,
            "won": raid.attacker_won,
            "wager": raid.wager,
            "ally_id": raid.ally_id,
            "defected": defection.followers_lost if defection else 0,
        }

    async def recruit(self, target_cult_id: int | None) -> Outcome:
        target = self._rival(target_cult_id) if target_cult_id is not None else self._pick_rival()
        if target is None:
            return None
        event = await self.toolkit.persuasion.attempt_conversion(
            self.cult.id, self.cult.name, self.system_prompt, target.id, target.name
        )
        self.agent.followers_recruited += event.followers_converted
        self._mark(f"recruited {event.followers_converted} from {target.name}")
        return {
            "converted": event.followers_converted,
            "from": target.name,
            "on_chain": event.recorded_on_chain,
        }

    async def govern(self) -> Outcome:
        proposal = await self.toolkit.governance.propose_budget(self.cult, self.system_prompt)
        self._mark(f"proposed {proposal.category} budget")
        return {"proposal_id": proposal.id, "category": proposal.category, "chain_id": proposal.chain_id}

    async def coup(self) -> Outcome:
        if not self.rivals:
            return None
        target = max(self.rivals, key=lambda r: r.power())
        event = self.toolkit.governance.attempt_coup(self.cult, target)
        if event is None:
            return None
        self._mark(f"coup against {target.name} {'succeeded' if event.success else 'failed'}")
        return {"target": target.name, "success": event.success}

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _rival(self, cult_id: int | None) -> CultState | None:
        if cult_id is None or cult_id == self.cult.id:
            return None
        return next((r for r in self.rivals if r.id == cult_id and r.active), None)

    def _pick_rival(self) -> CultState | None:
        active = [r for r in self.rivals if r.active]
        if not active:
            return None
        return active[self.toolkit.rng.randrange(len(active))]

    async def _submit(self, tx_id: str, call: Callable[[], Awaitable[str]]) -> str:
        async def op() -> str:
            return await call()

        return str(await self.toolkit.tx_queue.enqueue(tx_id, op))

    def _mark(self, action: str) -> None:
        self.agent.last_action = action

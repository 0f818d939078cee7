from __future__ import annotations

import hashlib
import logging
from typing import Any, Protocol

import aiohttp

from cult_sim.config.settings import LedgerSettings
from cult_sim.utils.errors import LedgerError
from cult_sim.utils.types import CultState


def hash_reason(text: str) -> str:
    """Hex SHA3-256 digest; the only form of free text that goes on-chain."""
    return "0x" + hashlib.sha3_256(text.encode("utf-8")).hexdigest()


class LedgerClient(Protocol):
    async def get_cult(self, cult_id: int) -> CultState: ...

    async def get_all_cults(self) -> list[CultState]: ...

    async def get_total_cults(self) -> int: ...

    async def get_total_raids(self) -> int: ...

    async def record_raid(
        self, attacker_id: int, defender_id: int, attacker_won: bool, amount: float
    ) -> str: ...

    async def create_prophecy(self, cult_id: int, prediction_hash: str, target_ts: int) -> int: ...

    async def resolve_prophecy(self, prophecy_id: int, correct: bool, multiplier: int) -> str: ...

    async def record_defection(
        self, from_cult_id: int, to_cult_id: int, count: int, reason_hash: str
    ) -> str: ...

    async def transfer_token(self, from_cult_id: int, to_cult_id: int, amount: float) -> str: ...

    async def join_cult(self, cult_id: int) -> str: ...

    async def create_proposal(self, cult_id: int, category: str, description_hash: str) -> int: ...


def _parse_cult(raw: dict[str, Any]) -> CultState:
    return CultState(
        id=int(raw["id"]),
        name=str(raw.get("name", "")),
        treasury=float(raw.get("treasuryBalance", raw.get("treasury", 0.0)) or 0.0),
        follower_count=int(raw.get("followerCount", raw.get("follower_count", 0)) or 0),
        raid_wins=int(raw.get("raidWins", raw.get("raid_wins", 0)) or 0),
        raid_losses=int(raw.get("raidLosses", raw.get("raid_losses", 0)) or 0),
        active=bool(raw.get("active", True)),
        leader=str(raw.get("leader", "")),
    )


class GatewayLedgerClient:
    """Ledger client that talks to a JSON HTTP gateway in front of the contracts.

    Every write returns the gateway's transaction hash; a non-2xx status or an
    ``{"error": ...}`` body raises ``LedgerError`` so the transaction queue can
    retry it.
    """

    def __init__(self, settings: LedgerSettings) -> None:
        self.settings = settings
        self.base_url = settings.gateway_url.rstrip("/")
        self.logger = logging.getLogger("cult_sim.ledger")
        self._session: aiohttp.ClientSession | None = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.settings.timeout_seconds),
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> Any:
        session = await self._get_session()
        url = f"{self.base_url}{path}"
        try:
            async with session.request(method, url, json=payload) as resp:
                body = await resp.json(content_type=None)
                if resp.status >= 400:
                    message = body.get("error") if isinstance(body, dict) else body
                    raise LedgerError(f"{method} {path} -> HTTP {resp.status}: {message}")
        except (aiohttp.ClientError, TimeoutError, ValueError) as exc:
            raise LedgerError(f"{method} {path} failed: {exc.__class__.__name__}: {exc}") from exc
        if isinstance(body, dict) and body.get("error"):
            raise LedgerError(f"{method} {path} reverted: {body['error']}")
        return body

    # ---- Reads ----

    async def get_cult(self, cult_id: int) -> CultState:
        return _parse_cult(await self._request("GET", f"/cults/{cult_id}"))

    async def get_all_cults(self) -> list[CultState]:
        body = await self._request("GET", "/cults")
        rows = body.get("cults", []) if isinstance(body, dict) else body
        return [_parse_cult(r) for r in rows]

    async def get_total_cults(self) -> int:
        body = await self._request("GET", "/stats")
        return int(body.get("totalCults", 0))

    async def get_total_raids(self) -> int:
        body = await self._request("GET", "/stats")
        return int(body.get("totalRaids", 0))

    # ---- Writes ----

    async def record_raid(
        self, attacker_id: int, defender_id: int, attacker_won: bool, amount: float
    ) -> str:
        self.logger.info(
            "ledger RAID attacker=%d defender=%d attacker_won=%s amount=%.4f",
            attacker_id, defender_id, attacker_won, amount,
        )
        body = await self._request(
            "POST",
            "/raids",
            {
                "attackerId": attacker_id,
                "defenderId": defender_id,
                "attackerWon": attacker_won,
                "amount": amount,
            },
        )
        return str(body.get("txHash", ""))

    async def create_prophecy(self, cult_id: int, prediction_hash: str, target_ts: int) -> int:
        body = await self._request(
            "POST",
            "/prophecies",
            {"cultId": cult_id, "predictionHash": prediction_hash, "targetTimestamp": target_ts},
        )
        return int(body.get("prophecyId", -1))

    async def resolve_prophecy(self, prophecy_id: int, correct: bool, multiplier: int) -> str:
        body = await self._request(
            "POST",
            f"/prophecies/{prophecy_id}/resolve",
            {"correct": correct, "multiplier": multiplier},
        )
        return str(body.get("txHash", ""))

    async def record_defection(
        self, from_cult_id: int, to_cult_id: int, count: int, reason_hash: str
    ) -> str:
        self.logger.info(
            "ledger DEFECTION from=%d to=%d count=%d", from_cult_id, to_cult_id, count
        )
        body = await self._request(
            "POST",
            "/defections",
            {
                "fromCultId": from_cult_id,
                "toCultId": to_cult_id,
                "count": count,
                "reasonHash": reason_hash,
            },
        )
        return str(body.get("txHash", ""))

    async def transfer_token(self, from_cult_id: int, to_cult_id: int, amount: float) -> str:
        body = await self._request(
            "POST",
            "/transfers",
            {"fromCultId": from_cult_id, "toCultId": to_cult_id, "amount": amount},
        )
        return str(body.get("txHash", ""))

    async def join_cult(self, cult_id: int) -> str:
        body = await self._request("POST", f"/cults/{cult_id}/join", {})
        return str(body.get("txHash", ""))

    async def create_proposal(self, cult_id: int, category: str, description_hash: str) -> int:
        body = await self._request(
            "POST",
            "/proposals",
            {"cultId": cult_id, "category": category, "descriptionHash": description_hash},
        )
        return int(body.get("proposalId", -1))

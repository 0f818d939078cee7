"""Market prophecies: generation, on-chain registration and resolution.

A prophecy targets one hour after creation. When a price source is wired in,
a bullish prophecy is correct if the price rose and a bearish one if it fell;
moves under half a percent, or no price at all, resolve on a biased coin
(``rng.random() > 0.45``). Correct prophecies resolve on-chain with a 1.5x
treasury multiplier.
"""
from __future__ import annotations

import logging
import random
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Protocol

from cult_sim.chain.ledger import LedgerClient, hash_reason
from cult_sim.chain.tx_queue import TransactionQueue
from cult_sim.db.writer import BestEffortWriter
from cult_sim.utils.types import clamp, now_ms

if TYPE_CHECKING:
    from cult_sim.db.repository import CultRepository
    from cult_sim.events.bus import EventBus

PROPHECY_HORIZON_MS = 3_600_000
FLAT_MARKET_PCT = 0.5
FLAT_MARKET_BIAS = 0.45
CORRECT_MULTIPLIER = 150
WRONG_MULTIPLIER = 100

BULLISH_WORDS = (
    "up", "rise", "moon", "pump", "green", "ascend", "higher", "bull", "rally",
    "accumulate", "buy", "recover", "breakout", "ath", "surge",
)
BEARISH_WORDS = (
    "down", "fall", "dump", "crash", "red", "descend", "lower", "bear", "drop",
    "sell", "decline", "collapse", "plunge",
)

PriceSource = Callable[[], float | None]


class ProphecyGenerator(Protocol):
    async def generate_prophecy(self, prompt: str, name: str, context: str) -> str: ...


@dataclass
class Prophecy:
    id: int
    cult_id: int
    cult_name: str
    prediction: str
    confidence: float
    created_at: float
    target_time: float
    resolved: bool = False
    correct: bool = False
    chain_id: int = -1
    price_at_creation: float | None = None


def is_bullish(prediction: str) -> bool:
    lower = prediction.lower()
    bullish = sum(1 for w in BULLISH_WORDS if w in lower)
    bearish = sum(1 for w in BEARISH_WORDS if w in lower)
    # ambiguous reads as bullish
    return bullish >= bearish


def base_confidence(prediction: str) -> float:
    lower = prediction.lower()
    if "certain" in lower or "guaranteed" in lower or "100%" in lower:
        return 0.95
    if "highly likely" in lower or "confident" in lower:
        return 0.88
    if "likely" in lower or "probable" in lower:
        return 0.78
    if "uncertain" in lower or "unclear" in lower or "maybe" in lower:
        return 0.55
    return 0.7


class ProphecyBook:
    def __init__(
        self,
        llm: ProphecyGenerator,
        ledger: LedgerClient | None = None,
        tx_queue: TransactionQueue | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], float] = now_ms,
        price_source: PriceSource | None = None,
        store: "CultRepository | None" = None,
        writer: BestEffortWriter | None = None,
        bus: "EventBus | None" = None,
    ) -> None:
        self.logger = logging.getLogger("cult_sim.prophecy")
        self.llm = llm
        self.ledger = ledger
        self.tx_queue = tx_queue
        self.rng = rng or random.Random()
        self.clock = clock
        self.price_source = price_source
        self.store = store
        self.writer = writer
        self.bus = bus
        self._prophecies: list[Prophecy] = []
        self._next_id = 0

    def hydrate(self) -> None:
        if self.store is None:
            return
        loaded = self.store.load_prophecies()
        self._prophecies = list(loaded)
        self._next_id = max((p.id for p in loaded), default=-1) + 1
        self.logger.info(
            "prophecy HYDRATE total=%d open=%d",
            len(loaded), sum(1 for p in loaded if not p.resolved),
        )

    def extract_confidence(self, prediction: str) -> float:
        noise = (self.rng.random() - 0.5) * 0.1
        return clamp(base_confidence(prediction) + noise, 0.4, 0.99)

    async def generate(self, cult_id: int, cult_name: str, system_prompt: str) -> Prophecy:
        price = self._current_price()
        context = (
            f"Reference price: {price:.2f} USD" if price is not None else "No live market feed."
        )
        prediction = await self.llm.generate_prophecy(system_prompt, cult_name, context)
        now = self.clock()
        prophecy = Prophecy(
            id=self._next_id,
            cult_id=cult_id,
            cult_name=cult_name,
            prediction=prediction,
            confidence=self.extract_confidence(prediction),
            created_at=now,
            target_time=now + PROPHECY_HORIZON_MS,
            price_at_creation=price,
        )
        self._next_id += 1
        self._prophecies.append(prophecy)

        if self.ledger is not None:
            ledger = self.ledger

            async def op() -> int:
                return await ledger.create_prophecy(
                    cult_id, hash_reason(prediction), int(prophecy.target_time // 1000)
                )

            try:
                prophecy.chain_id = int(await self._submit(f"prophecy_create_{prophecy.id}", op))
            except Exception as exc:
                self.logger.warning(
                    "prophecy CHAIN-FAIL cult=%s id=%d error=%s", cult_name, prophecy.id, exc
                )

        self._persist("save_prophecy", prophecy)
        if self.bus is not None:
            self.bus.publish(
                "prophecy",
                {
                    "id": prophecy.id,
                    "cult_id": cult_id,
                    "prediction": prediction,
                    "confidence": prophecy.confidence,
                },
            )
        self.logger.info(
            "prophecy NEW cult=%s id=%d confidence=%.0f%% text=%s",
            cult_name, prophecy.id, prophecy.confidence * 100, prediction[:60],
        )
        return prophecy

    async def resolve(self, prophecy_id: int) -> bool | None:
        """Resolve one prophecy; ``None`` if unknown or already resolved."""
        prophecy = next((p for p in self._prophecies if p.id == prophecy_id), None)
        if prophecy is None or prophecy.resolved:
            return None

        correct = self._judge(prophecy)
        prophecy.resolved = True
        prophecy.correct = correct

        if prophecy.chain_id >= 0 and self.ledger is not None:
            ledger = self.ledger
            chain_id = prophecy.chain_id
            multiplier = CORRECT_MULTIPLIER if correct else WRONG_MULTIPLIER

            async def op() -> str:
                return await ledger.resolve_prophecy(chain_id, correct, multiplier)

            try:
                await self._submit(f"prophecy_resolve_{prophecy.id}", op)
            except Exception as exc:
                self.logger.warning(
                    "prophecy RESOLVE-CHAIN-FAIL id=%d error=%s", prophecy.id, exc
                )

        self._persist("update_prophecy", prophecy)
        if self.bus is not None:
            self.bus.publish(
                "prophecy_resolved",
                {"id": prophecy.id, "cult_id": prophecy.cult_id, "correct": correct},
            )
        return correct

    async def resolve_due(self, cult_id: int | None = None) -> list[Prophecy]:
        resolved: list[Prophecy] = []
        for prophecy in self.get_due(cult_id):
            if await self.resolve(prophecy.id) is not None:
                resolved.append(replace(prophecy))
        return resolved

    # ---- Reads ----

    def get_due(self, cult_id: int | None = None) -> list[Prophecy]:
        now = self.clock()
        return [
            p
            for p in self._prophecies
            if not p.resolved
            and now > p.target_time
            and (cult_id is None or p.cult_id == cult_id)
        ]

    def accuracy(self, cult_id: int) -> float:
        resolved = [p for p in self._prophecies if p.cult_id == cult_id and p.resolved]
        if not resolved:
            return 0.0
        return sum(1 for p in resolved if p.correct) / len(resolved)

    def get_recent_prophecies(self, limit: int = 20) -> list[Prophecy]:
        return [replace(p) for p in reversed(self._prophecies[-limit:])] if limit > 0 else []

    def get_prophecies_by_cult(self, cult_id: int) -> list[Prophecy]:
        return [replace(p) for p in reversed(self._prophecies) if p.cult_id == cult_id]

    def get_all_prophecies(self) -> list[Prophecy]:
        return [replace(p) for p in reversed(self._prophecies)]

    # ---- Internal ----

    def _judge(self, prophecy: Prophecy) -> bool:
        current = self._current_price()
        start = prophecy.price_at_creation
        if current is None or not start:
            correct = self.rng.random() > FLAT_MARKET_BIAS
            self.logger.info("prophecy id=%d no price data, coin resolution=%s", prophecy.id, correct)
            return correct

        delta = current - start
        pct = delta / start * 100.0
        if abs(pct) < FLAT_MARKET_PCT:
            correct = self.rng.random() > FLAT_MARKET_BIAS
            self.logger.info(
                "prophecy id=%d market flat (%.2f%%), coin resolution=%s", prophecy.id, pct, correct
            )
            return correct

        bullish = is_bullish(prophecy.prediction)
        correct = delta > 0 if bullish else delta < 0
        self.logger.info(
            "prophecy id=%d predicted=%s moved=%.2f%% correct=%s",
            prophecy.id, "bullish" if bullish else "bearish", pct, correct,
        )
        return correct

    def _current_price(self) -> float | None:
        if self.price_source is None:
            return None
        try:
            return self.price_source()
        except Exception as exc:
            self.logger.warning("prophecy price source failed error=%s", exc)
            return None

    async def _submit(self, tx_id: str, op: Callable[[], Awaitable[Any]]) -> Any:
        if self.tx_queue is not None:
            return await self.tx_queue.enqueue(tx_id, op)
        return await op()

    def _persist(self, method: str, prophecy: Prophecy) -> None:
        if self.store is None or self.writer is None:
            return
        self.writer.submit(
            prophecy.cult_id, getattr(self.store, method), replace(prophecy), label=method
        )

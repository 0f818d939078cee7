"""Prophecy generation, resolution and accuracy."""

from __future__ import annotations

import random

import pytest

from conftest import T0, FakeLLM
from cult_sim.db.writer import BestEffortWriter
from cult_sim.social.prophecy import (
    PROPHECY_HORIZON_MS,
    Prophecy,
    ProphecyBook,
    base_confidence,
    is_bullish,
)


class Market:
    def __init__(self, price: float | None = 100.0) -> None:
        self.price = price

    def __call__(self) -> float | None:
        return self.price


class FixedRandom(random.Random):
    def __init__(self, value: float) -> None:
        super().__init__(0)
        self.value = value

    def random(self) -> float:
        return self.value


BULL = "The charts will rise to the moon before dawn."
BEAR = "A crash is coming. Sell and weep as it all collapses."


class TestHeuristics:
    def test_direction(self):
        assert is_bullish(BULL)
        assert not is_bullish(BEAR)
        assert is_bullish("")

    @pytest.mark.parametrize(
        "text, expected",
        [
            ("It is CERTAIN.", 0.95),
            ("I am confident in this.", 0.88),
            ("A probable outcome.", 0.78),
            ("Maybe, maybe not.", 0.55),
            ("The stars speak.", 0.7),
        ],
    )
    def test_base_confidence(self, text, expected):
        assert base_confidence(text) == expected

    def test_noisy_confidence_stays_in_range(self):
        book = ProphecyBook(FakeLLM(), rng=random.Random(4))
        for text in ("certain", "maybe", "nothing"):
            for _ in range(50):
                assert 0.4 <= book.extract_confidence(text) <= 0.99


class TestGenerate:
    async def test_registers_on_chain_and_publishes(self, ledger, clock, bus):
        book = ProphecyBook(FakeLLM(prophecy=BULL), ledger=ledger, clock=clock, bus=bus)
        prophecy = await book.generate(1, "Alpha", "prompt")

        assert prophecy.prediction == BULL
        assert prophecy.target_time == T0 + PROPHECY_HORIZON_MS
        assert prophecy.chain_id == 1
        ((cult_id, prediction_hash, target_ts),) = ledger.called("create_prophecy")
        assert cult_id == 1
        assert prediction_hash.startswith("0x")
        assert target_ts == int((T0 + PROPHECY_HORIZON_MS) // 1000)
        assert bus.recent()[0].name == "prophecy"

    async def test_chain_failure_keeps_prophecy_off_chain(self, ledger, clock):
        ledger.fail["create_prophecy"] = 1
        book = ProphecyBook(FakeLLM(), ledger=ledger, clock=clock)
        prophecy = await book.generate(1, "Alpha", "prompt")
        assert prophecy.chain_id == -1
        assert len(book.get_all_prophecies()) == 1

    async def test_price_is_captured(self, clock):
        llm = FakeLLM()
        book = ProphecyBook(llm, clock=clock, price_source=Market(2500.0))
        prophecy = await book.generate(1, "Alpha", "prompt")
        assert prophecy.price_at_creation == 2500.0

    async def test_persisted_with_copy(self, clock, store):
        book = ProphecyBook(FakeLLM(), clock=clock, store=store, writer=BestEffortWriter())
        prophecy = await book.generate(1, "Alpha", "prompt")
        await book.writer.flush()
        ((saved,),) = store.called("save_prophecy")
        assert saved.id == prophecy.id
        assert saved is not prophecy


class TestResolve:
    async def test_bullish_call_on_rising_market(self, ledger, clock):
        market = Market(100.0)
        book = ProphecyBook(FakeLLM(prophecy=BULL), ledger=ledger, clock=clock, price_source=market)
        prophecy = await book.generate(1, "Alpha", "p")
        market.price = 110.0
        assert await book.resolve(prophecy.id) is True
        assert ledger.called("resolve_prophecy") == [(prophecy.chain_id, True, 150)]

    async def test_bearish_call_on_rising_market(self, ledger, clock):
        market = Market(100.0)
        book = ProphecyBook(FakeLLM(prophecy=BEAR), ledger=ledger, clock=clock, price_source=market)
        prophecy = await book.generate(1, "Alpha", "p")
        market.price = 120.0
        assert await book.resolve(prophecy.id) is False
        assert ledger.called("resolve_prophecy") == [(prophecy.chain_id, False, 100)]

    @pytest.mark.parametrize("roll, expected", [(0.46, True), (0.45, False)])
    async def test_flat_market_uses_biased_coin(self, clock, roll, expected):
        market = Market(100.0)
        book = ProphecyBook(FakeLLM(prophecy=BULL), rng=FixedRandom(roll), clock=clock, price_source=market)
        prophecy = await book.generate(1, "Alpha", "p")
        market.price = 100.2
        assert await book.resolve(prophecy.id) is expected

    async def test_unknown_or_resolved(self, clock):
        book = ProphecyBook(FakeLLM(), clock=clock)
        assert await book.resolve(42) is None
        prophecy = await book.generate(1, "Alpha", "p")
        assert await book.resolve(prophecy.id) is not None
        assert await book.resolve(prophecy.id) is None

    async def test_resolve_due_waits_for_target_time(self, clock, bus):
        book = ProphecyBook(FakeLLM(), rng=FixedRandom(0.9), clock=clock, bus=bus)
        await book.generate(1, "Alpha", "p")
        await book.generate(2, "Beta", "p")

        clock.advance(PROPHECY_HORIZON_MS)
        assert await book.resolve_due() == []

        clock.advance(1)
        resolved = await book.resolve_due(cult_id=1)
        assert [p.cult_id for p in resolved] == [1]
        assert book.accuracy(1) == 1.0
        assert book.accuracy(2) == 0.0
        assert bus.recent()[0].name == "prophecy_resolved"

    async def test_accuracy_counts_resolved_only(self, clock):
        book = ProphecyBook(FakeLLM(), rng=FixedRandom(0.1), clock=clock)
        await book.generate(1, "Alpha", "p")
        assert book.accuracy(1) == 0.0
        clock.advance(PROPHECY_HORIZON_MS + 1)
        await book.resolve_due(1)
        assert book.accuracy(1) == 0.0
        assert book.get_prophecies_by_cult(1)[0].resolved


class TestHydrate:
    async def test_hydrate_continues_ids(self, clock, store):
        store.prophecies = [
            Prophecy(id=6, cult_id=1, cult_name="Alpha", prediction=BULL, confidence=0.7,
                     created_at=T0, target_time=T0 + PROPHECY_HORIZON_MS),
        ]
        book = ProphecyBook(FakeLLM(), clock=clock, store=store)
        book.hydrate()
        assert [p.id for p in book.get_all_prophecies()] == [6]
        assert book.get_due() == []
        fresh = await book.generate(2, "Beta", "p")
        assert fresh.id == 7

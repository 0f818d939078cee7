"""Scripture-driven follower conversion."""

from __future__ import annotations

import random

import pytest

from conftest import FakeLLM
from cult_sim.chain.tx_queue import TransactionQueue
from cult_sim.social.persuasion import PersuasionModel


class FixedRandom(random.Random):
    def __init__(self, value: int) -> None:
        super().__init__(0)
        self.value = value

    def randint(self, a: int, b: int) -> int:
        return self.value


async def _no_sleep(_: float) -> None:
    return None


@pytest.mark.parametrize("converted", [1, 2, 3])
async def test_joins_once_per_converted_follower(memory, ledger, clock, converted):
    model = PersuasionModel(FakeLLM(), memory, ledger, rng=FixedRandom(converted), clock=clock)
    event = await model.attempt_conversion(1, "Alpha", "prophet", 2, "Beta")
    assert event.followers_converted == converted
    assert event.recorded_on_chain
    assert ledger.called("join_cult") == [(1,)] * converted


async def test_conversion_range_with_real_rng(memory, clock):
    model = PersuasionModel(FakeLLM(), memory, rng=random.Random(3), clock=clock)
    for _ in range(20):
        event = await model.attempt_conversion(1, "Alpha", "p", 2, "Beta")
        assert 1 <= event.followers_converted <= 3
        assert not event.recorded_on_chain


async def test_chain_failure_is_not_fatal(memory, ledger, clock):
    ledger.fail["join_cult"] = 2
    queue = TransactionQueue(max_retries=1, retry_delay_s=0.0, sleep=_no_sleep)
    model = PersuasionModel(FakeLLM(), memory, ledger, queue, rng=FixedRandom(2), clock=clock)
    event = await model.attempt_conversion(1, "Alpha", "p", 2, "Beta")
    assert not event.recorded_on_chain
    assert event.followers_converted == 2


async def test_scripture_memory_and_event(memory, clock, bus):
    llm = FakeLLM(scripture="Leave Beta, find Alpha.")
    model = PersuasionModel(llm, memory, rng=FixedRandom(1), clock=clock, bus=bus)
    event = await model.attempt_conversion(1, "Alpha", "p", 2, "Beta")

    assert event.scripture == "Leave Beta, find Alpha."
    assert "Beta" in llm.prompts[0]
    assert memory.get_trust(1, 2) > 0
    assert memory.get_trust(2, 1) < 0
    assert memory.get_recent_memories(2)[0].kind == "persuasion_fail"
    assert bus.recent()[0].name == "persuasion"
    assert bus.recent()[0].payload["followers"] == 1
    assert model.get_recent_events() == [event]

"""Death conditions, rebirth cooldown and hydration."""

from __future__ import annotations

import pytest

from conftest import T0, make_cult
from cult_sim.db.writer import BestEffortWriter
from cult_sim.lifecycle.life_death import (
    REBIRTH_COOLDOWN_MS,
    DeathEvent,
    LifeDeathModel,
    RebirthEvent,
)


@pytest.fixture()
def lifecycle(clock, bus) -> LifeDeathModel:
    return LifeDeathModel(clock=clock, bus=bus)


class TestDeath:
    def test_healthy_cult_lives(self, lifecycle):
        assert lifecycle.check_death_condition(make_cult(1)) is None

    def test_empty_treasury_kills(self, lifecycle, bus):
        death = lifecycle.check_death_condition(make_cult(1, treasury=0.0))
        assert death is not None
        assert death.cause == "treasury_depleted"
        assert lifecycle.is_dead(1)
        assert bus.recent()[0].name == "cult_death"

    def test_no_followers_with_dust_treasury_kills(self, lifecycle):
        death = lifecycle.check_death_condition(make_cult(1, treasury=1e-16, follower_count=0))
        assert death.cause == "no_followers"
        assert death.final_followers == 0

    def test_dead_or_inactive_cult_does_not_die_twice(self, lifecycle):
        lifecycle.check_death_condition(make_cult(1, treasury=0.0))
        assert lifecycle.check_death_condition(make_cult(1, treasury=0.0)) is None
        assert lifecycle.check_death_condition(make_cult(2, treasury=0.0, active=False)) is None
        assert len(lifecycle.get_deaths()) == 1

    def test_force_death(self, lifecycle):
        assert lifecycle.force_death(make_cult(1)).cause == "forced"
        assert lifecycle.force_death(make_cult(1)) is None


class TestRebirth:
    def test_rebirth_waits_for_cooldown(self, lifecycle, clock):
        lifecycle.check_death_condition(make_cult(1, treasury=0.0))
        assert not lifecycle.can_rebirth(1)
        clock.advance(REBIRTH_COOLDOWN_MS - 1)
        assert lifecycle.get_rebirth_cooldown_remaining(1) == pytest.approx(1)
        assert not lifecycle.can_rebirth(1)
        clock.advance(1)
        assert lifecycle.can_rebirth(1)

    def test_rebirth_clears_death(self, lifecycle, clock, bus):
        lifecycle.check_death_condition(make_cult(1, "Old", treasury=0.0))
        clock.advance(REBIRTH_COOLDOWN_MS)
        event = lifecycle.record_rebirth(1, "Old", new_name="New", new_treasury=5.0)
        assert event.new_name == "New"
        assert not lifecycle.is_dead(1)
        assert lifecycle.get_rebirth_cooldown_remaining(1) == 0.0
        assert bus.recent()[0].name == "cult_reborn"
        assert [type(e) for e in lifecycle.get_recent_events()] == [RebirthEvent, DeathEvent]

    def test_never_dead_cannot_rebirth(self, lifecycle):
        assert not lifecycle.can_rebirth(7)


class TestPersistence:
    def test_events_are_mirrored(self, clock, store):
        model = LifeDeathModel(clock=clock, store=store, writer=BestEffortWriter())
        model.check_death_condition(make_cult(1, treasury=0.0))
        clock.advance(REBIRTH_COOLDOWN_MS)
        model.record_rebirth(1, "Cult1")
        assert len(store.called("save_death")) == 1
        assert len(store.called("save_rebirth")) == 1

    def test_hydrate_replays_timeline(self, clock, store):
        store.deaths = [
            DeathEvent(1, "A", "treasury_depleted", 0.0, 3, T0 - 1000),
            DeathEvent(2, "B", "treasury_depleted", 0.0, 3, T0 - 500),
        ]
        store.rebirths = [RebirthEvent(1, "A", T0 - 200)]
        model = LifeDeathModel(clock=clock, store=store)
        model.hydrate()
        assert not model.is_dead(1)
        assert model.is_dead(2)
        assert model.get_rebirth_cooldown_remaining(2) == pytest.approx(REBIRTH_COOLDOWN_MS - 500)

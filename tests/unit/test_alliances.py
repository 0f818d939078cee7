"""Alliance state machine: formation, betrayal, lazy expiry and advice."""

from __future__ import annotations

import random

import pytest

from conftest import T0, InMemoryStore
from cult_sim.db.writer import BestEffortWriter
from cult_sim.social.alliances import (
    ALLIANCE_DURATION_MS,
    Alliance,
    AllianceModel,
)
from cult_sim.utils.types import TrustRecord


@pytest.fixture()
def alliances(memory, clock, bus) -> AllianceModel:
    return AllianceModel(memory, rng=random.Random(5), clock=clock, bus=bus)


# ---------------------------------------------------------------------------
# Formation
# ---------------------------------------------------------------------------


class TestFormAlliance:
    def test_trusted_pair_forms_alliance(self, alliances, memory, arena):
        arena.slot(1).trust[2] = TrustRecord(rival_id=2, rival_name="Beta", trust=0.6)
        arena.slot(2).trust[1] = TrustRecord(rival_id=1, rival_name="Alpha", trust=0.6)

        alliance = alliances.form_alliance(1, "Alpha", 2, "Beta")

        assert alliance is not None
        assert alliance.active is True
        assert alliance.power_bonus == 1.25
        assert alliance.formed_at == T0
        assert alliance.expires_at == alliance.formed_at + 300_000
        for cult_id in (1, 2):
            entry = memory.get_recent_memories(cult_id)[0]
            assert entry.kind == "alliance_formed"
            assert entry.outcome == 0.4

    def test_self_alliance_rejected(self, alliances):
        assert alliances.form_alliance(1, "Alpha", 1, "Alpha") is None
        assert alliances.get_all_alliances() == []

    @pytest.mark.parametrize("a, b", [(1, 3), (3, 1), (2, 3), (3, 2)])
    def test_second_alliance_rejected_for_either_party(self, alliances, a, b):
        existing = alliances.form_alliance(1, "Alpha", 2, "Beta")
        assert alliances.form_alliance(a, f"C{a}", b, f"C{b}") is None
        assert alliances.get_active_alliances() == [existing]
        assert existing.active is True

    def test_ids_increase(self, alliances):
        first = alliances.form_alliance(1, "Alpha", 2, "Beta")
        second = alliances.form_alliance(3, "Gamma", 4, "Delta")
        assert second.id == first.id + 1

    def test_formation_publishes_event(self, alliances, bus):
        alliances.form_alliance(1, "Alpha", 2, "Beta")
        assert [e.name for e in bus.recent()] == ["alliance_formed"]


# ---------------------------------------------------------------------------
# Betrayal
# ---------------------------------------------------------------------------


class TestBetray:
    def test_betray_without_alliance_is_noop(self, alliances):
        assert alliances.betray(1, "Alpha", "greed") is None
        assert alliances.get_betrayals() == []

    def test_betray_breaks_exactly_one_alliance(self, alliances, memory):
        ours = alliances.form_alliance(1, "Alpha", 2, "Beta")
        theirs = alliances.form_alliance(3, "Gamma", 4, "Delta")

        event = alliances.betray(1, "Alpha", "greed")

        assert event is not None
        assert event.victim_cult_id == 2
        assert event.victim_name == "Beta"
        assert event.surprise_bonus == 1.5
        assert ours.active is False
        assert theirs.active is True
        assert len(alliances.get_betrayals()) == 1
        assert memory.get_recent_memories(1)[0].outcome == 0.3
        assert memory.get_recent_memories(2)[0].outcome == -0.9

    def test_betrayed_alliance_stays_broken(self, alliances):
        alliances.form_alliance(1, "Alpha", 2, "Beta")
        alliances.betray(2, "Beta", "opportunity")
        assert alliances.betray(1, "Alpha", "revenge") is None
        assert alliances.get_active_alliance(1) is None

    def test_counts(self, alliances):
        alliances.form_alliance(1, "Alpha", 2, "Beta")
        alliances.betray(1, "Alpha", "greed")
        alliances.form_alliance(1, "Alpha", 3, "Gamma")
        assert alliances.alliance_count(1) == 2
        assert alliances.betrayal_count(2) == 1
        assert alliances.betrayal_count(3) == 0


# ---------------------------------------------------------------------------
# Expiry
# ---------------------------------------------------------------------------


class TestExpiry:
    def test_alliance_expires_lazily_on_next_read(self, alliances, clock, bus):
        alliances.form_alliance(1, "Alpha", 2, "Beta")

        clock.now = T0 + 299_999
        assert alliances.get_active_alliance(1) is not None

        clock.now = T0 + 300_001
        assert alliances.get_active_alliance(1) is None
        assert alliances.get_all_alliances()[0].active is False
        assert [e.name for e in bus.recent()][0] == "alliance_expired"

    def test_expired_parties_may_ally_again(self, alliances, clock):
        alliances.form_alliance(1, "Alpha", 2, "Beta")
        clock.advance(ALLIANCE_DURATION_MS + 1)
        assert alliances.form_alliance(1, "Alpha", 3, "Gamma") is not None


# ---------------------------------------------------------------------------
# Advice and joint raids
# ---------------------------------------------------------------------------


class TestAdvice:
    def test_never_recommends_allying_while_allied(self, alliances):
        alliances.form_alliance(1, "Alpha", 2, "Beta")
        assert alliances.should_ally(1, 3, 100, 100).recommend is False
        assert alliances.should_ally(3, 2, 100, 100).recommend is False

    def test_rejects_distrusted_target(self, alliances, arena):
        arena.slot(1).trust[2] = TrustRecord(rival_id=2, rival_name="Beta", trust=-0.7)
        advice = alliances.should_ally(1, 2, 100, 100)
        assert advice.recommend is False
        assert "Trust too low" in advice.reason

    def test_weaker_cult_seeks_alliance(self, alliances):
        assert alliances.should_ally(1, 2, 100, 400).recommend is True

    def test_betrayal_probability_rises_with_power_gap_and_expiry(self, alliances, clock):
        assert alliances.betrayal_probability(1, 100, 100) == 0.0
        alliances.form_alliance(1, "Alpha", 2, "Beta")

        calm = alliances.betrayal_probability(1, 100, 100)
        stronger = alliances.betrayal_probability(1, 500, 100)
        clock.advance(ALLIANCE_DURATION_MS - 30_000)
        closing = alliances.betrayal_probability(1, 100, 100)
        both = alliances.betrayal_probability(1, 500, 100)

        assert calm < stronger
        assert calm < closing
        assert both >= max(stronger, closing)

    def test_joint_raid_only_against_third_party(self, alliances):
        assert alliances.can_joint_raid(1, 3) == (False, None)
        alliances.form_alliance(1, "Alpha", 2, "Beta")
        assert alliances.can_joint_raid(1, 3) == (True, (2, "Beta"))
        assert alliances.can_joint_raid(1, 2) == (False, None)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class TestHydrate:
    def test_hydrate_continues_id_sequence(self, memory, clock):
        store = InMemoryStore()
        store.alliances = [
            Alliance(
                id=4, cult_a=1, cult_a_name="Alpha", cult_b=2, cult_b_name="Beta",
                formed_at=T0, expires_at=T0 + ALLIANCE_DURATION_MS,
            )
        ]
        model = AllianceModel(memory, clock=clock, store=store, writer=BestEffortWriter())
        model.hydrate()

        assert model.are_allied(1, 2)
        created = model.form_alliance(3, "Gamma", 4, "Delta")
        assert created.id == 5
        assert store.called("save_alliance")[0][0].id == 5

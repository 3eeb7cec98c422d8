"""
Tests for fairness-aware place selection.

Covers:
- Fairness weight favours the member with fewer submissions
- Anchors always selected in round 0, outside the max_places budget
- Deterministic tie-breaking and idempotence
- Dispersion (coefficient of variation) history
"""

from __future__ import annotations

import pytest

from services.planner.optimization.normalizer import normalize_preferences
from services.planner.optimization.selector import FairGreedySelector, dispersion
from services.planner.realtime.progress import STAGE_SELECTING
from services.planner.tests.helpers.factories import (
    make_anchor,
    make_place,
    make_settings,
    make_snapshot,
)


def _normalized(places, **settings_overrides):
    settings = make_settings(**settings_overrides)
    result, _ = normalize_preferences(make_snapshot(places), settings)
    return result.places, settings


def _uneven_places():
    """Alice: one top-rated place. Bob: four top-rated places."""
    return [make_place("a1", "alice", wish=5)] + [
        make_place(f"b{i}", "bob", wish=5) for i in range(1, 5)
    ]


# ---------------------------------------------------------------------------
# 1. Dispersion
# ---------------------------------------------------------------------------

class TestDispersion:

    def test_single_member_is_zero(self):
        assert dispersion({"alice": 3}, {"alice": 2.0}) == 0.0

    def test_equal_shares_is_zero(self):
        assert dispersion({"alice": 1, "bob": 2}, {"alice": 1.0, "bob": 2.0}) == 0.0

    def test_one_member_empty_handed(self):
        # ratios [1, 0]: mean 0.5, population std 0.5
        assert dispersion({"alice": 1}, {"alice": 1.0, "bob": 1.0}) == pytest.approx(1.0)

    def test_nothing_selected_is_zero(self):
        assert dispersion({}, {"alice": 1.0, "bob": 1.0}) == 0.0


# ---------------------------------------------------------------------------
# 2. Selection
# ---------------------------------------------------------------------------

class TestFairGreedySelector:

    def test_fairness_weight_picks_underrepresented_member_first(self):
        places, settings = _normalized(_uneven_places(), fairness_weight=0.8, efficiency_weight=0.2)
        result, _ = FairGreedySelector().select(places, settings)

        first = next(p for p in result.places if p.selection_round == 1)
        assert first.id == "a1"
        assert first.member_id == "alice"

    def test_history_tracks_dispersion_per_round(self):
        places, settings = _normalized(
            _uneven_places(), fairness_weight=0.8, efficiency_weight=0.2, max_places=2
        )
        result, _ = FairGreedySelector().select(places, settings)

        # a1 then one of bob's; alice 1/1.0, bob 1/1.0 after round 2
        assert result.rounds == 2
        assert result.history == [pytest.approx(1.0), pytest.approx(0.0)]
        assert result.fairness_score == pytest.approx(0.0)

    def test_anchors_selected_in_round_zero_outside_budget(self):
        places, settings = _normalized([make_anchor()] + _uneven_places(), max_places=2)
        result, _ = FairGreedySelector().select(places, settings)

        anchors = [p for p in result.places if p.is_anchor]
        members = [p for p in result.places if not p.is_anchor]
        assert [a.id for a in anchors] == ["home"]
        assert anchors[0].selection_round == 0
        assert anchors[0].fairness_score_at_selection is None
        assert len(members) == 2
        assert result.rounds == 2

    def test_budget_larger_than_pool_selects_everything(self):
        places, settings = _normalized(_uneven_places(), max_places=50)
        result, _ = FairGreedySelector().select(places, settings)
        assert sorted(p.id for p in result.places) == ["a1", "b1", "b2", "b3", "b4"]
        assert [p.selection_round for p in result.places] == [1, 2, 3, 4, 5]

    def test_zero_budget_keeps_only_anchors(self):
        places, settings = _normalized([make_anchor()] + _uneven_places(), max_places=0)
        result, notes = FairGreedySelector().select(places, settings)
        assert [p.id for p in result.places] == ["home"]
        assert result.rounds == 0
        assert result.fairness_score == 0.0
        assert notes[-1].percent == 100

    def test_ties_go_to_lower_place_id(self):
        places, settings = _normalized([
            make_place("p2", "bob", wish=3),
            make_place("p1", "alice", wish=3),
        ])
        result, _ = FairGreedySelector().select(places, settings)
        assert [p.id for p in result.places] == ["p1", "p2"]

    def test_selected_places_carry_normalized_level(self):
        places, settings = _normalized(_uneven_places(), fairness_weight=0.8, efficiency_weight=0.2)
        result, _ = FairGreedySelector().select(places, settings)
        levels = {p.id: p.normalized_wish_level for p in result.places}
        assert levels["a1"] == pytest.approx(1.0)
        assert levels["b1"] == pytest.approx(0.25)

    def test_idempotent(self):
        places, settings = _normalized([make_anchor()] + _uneven_places(), max_places=3)
        selector = FairGreedySelector()
        first, _ = selector.select(places, settings)
        second, _ = selector.select(places, settings)
        assert first.to_dict() == second.to_dict()

    def test_input_order_does_not_matter(self):
        places, settings = _normalized(_uneven_places(), max_places=3)
        forward, _ = FairGreedySelector().select(places, settings)
        backward, _ = FairGreedySelector().select(list(reversed(places)), settings)
        assert forward.to_dict() == backward.to_dict()

    def test_progress_notes_in_stage_and_end_at_100(self):
        places, settings = _normalized(_uneven_places())
        _, notes = FairGreedySelector().select(places, settings)
        assert all(n.stage == STAGE_SELECTING for n in notes)
        percents = [n.percent for n in notes]
        assert percents == sorted(percents)
        assert percents[-1] == 100

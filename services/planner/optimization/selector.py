"""
Fairness-aware place selection.

Round-based greedy. Each round scores every unselected member place:

    fair_share = (places_selected_so_far + 1) / active_members
    over_share = max(0, owner_selected + 1 - fair_share) / fair_share
    score      = normalized_wish_level - fairness_weight * over_share

and takes the best one. ``over_share`` is how far the owner would sit above
an even split if this place were added, so members already ahead of their
share pay a penalty proportional to the fairness weight. Ties go to the higher
normalized level, then to the owner with fewer selections, then to the lower
place id; the result is fully deterministic.

Group fairness (dispersion) after each round is the coefficient of
variation of selected_count / normalized_wish_sum across active members
(population std / mean). 0.0 means every member got the same share of what
they asked for; lower is better.

Anchors are always selected, in round 0, and never count against max_places.
"""

from __future__ import annotations

import logging
from typing import Protocol

import numpy as np

from services.planner.optimization.settings import OptimizationSettings
from services.planner.optimization.types import NormalizedPlace, SelectedPlace, SelectionResult
from services.planner.realtime.progress import STAGE_SELECTING, StageProgress

logger = logging.getLogger(__name__)

# Progress notes are emitted at most this many times per selection.
_PROGRESS_STEPS = 10


class Selector(Protocol):
    """Swappable selection strategy."""

    def select(
        self,
        places: list[NormalizedPlace],
        settings: OptimizationSettings,
    ) -> tuple[SelectionResult, list[StageProgress]]:
        ...


def dispersion(selected: dict[str, int], wish_sums: dict[str, float]) -> float:
    """Coefficient of variation of selected_count / wish_sum over members."""
    ratios = [
        selected.get(member_id, 0) / wish_sum
        for member_id, wish_sum in sorted(wish_sums.items())
        if wish_sum > 0
    ]
    if len(ratios) < 2:
        return 0.0
    arr = np.asarray(ratios, dtype=float)
    mean = float(arr.mean())
    if mean == 0.0:
        return 0.0
    return round(float(arr.std()) / mean, 6)


class FairGreedySelector:
    """
    Default Selector.

    Stateless: calling select() twice with the same input returns the same
    output.
    """

    def select(
        self,
        places: list[NormalizedPlace],
        settings: OptimizationSettings,
    ) -> tuple[SelectionResult, list[StageProgress]]:
        notes = [StageProgress(STAGE_SELECTING, 0, "Selecting places")]

        anchors = [p for p in places if p.is_anchor]
        remaining = sorted((p for p in places if not p.is_anchor), key=lambda p: p.id)

        wish_sums: dict[str, float] = {}
        for p in remaining:
            wish_sums[p.member_id] = wish_sums.get(p.member_id, 0.0) + p.normalized_wish_level
        active = len(wish_sums)
        counts = {member_id: 0 for member_id in wish_sums}

        selected: list[SelectedPlace] = [
            SelectedPlace.from_normalized(a, 0, None) for a in anchors
        ]
        history: list[float] = []
        target = min(settings.max_places, len(remaining))
        step = max(1, target // _PROGRESS_STEPS)
        rounds = 0

        while rounds < target and remaining:
            rounds += 1
            fair_share = rounds / active

            def _rank(p: NormalizedPlace) -> tuple:
                owner_after = counts[p.member_id] + 1
                over_share = max(0.0, owner_after - fair_share) / fair_share
                score = p.normalized_wish_level - settings.fairness_weight * over_share
                return (-score, -p.normalized_wish_level, counts[p.member_id], p.id)

            best = min(remaining, key=_rank)
            remaining.remove(best)
            counts[best.member_id] += 1

            score = dispersion(counts, wish_sums)
            history.append(score)
            selected.append(SelectedPlace.from_normalized(best, rounds, score))

            if rounds % step == 0 or rounds == target:
                notes.append(StageProgress(
                    STAGE_SELECTING,
                    100.0 * rounds / target,
                    f"Selected {rounds} of {target} places",
                ))

        final_score = history[-1] if history else 0.0

        logger.info(
            "Selection complete: rounds=%d anchors=%d remaining=%d dispersion=%.4f",
            rounds,
            len(anchors),
            len(remaining),
            final_score,
        )
        if not remaining and rounds == 0:
            notes.append(StageProgress(STAGE_SELECTING, 100, "No member places; anchors only"))
        elif notes[-1].percent < 100:
            notes.append(StageProgress(STAGE_SELECTING, 100, f"Selected {rounds} places"))

        return (
            SelectionResult(
                places=selected,
                fairness_score=final_score,
                rounds=rounds,
                history=history,
            ),
            notes,
        )

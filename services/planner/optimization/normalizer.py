"""
Preference normalization: per-member rescaling of raw wish levels.

A member who submits many places should not crowd out a member who submits
one. For every member-submitted place:

    fairness_factor = sqrt(1 / place_count(owner))
    base_preference = wish_level / 5
    multiplier      = fairness_factor                   if fairness_weight > 0.7
                      base_preference                   elif efficiency_weight > 0.7
                      (fairness_factor + base_pref) / 2 otherwise
    normalized      = clamp(base_preference * fairness_factor * multiplier, 0.1, 1.0)

Duplicate submissions of one place are merged first (see dedup.py), so a
place two members asked for counts once, towards the member whose stay won.
Anchors (trip departure / destination) pass through untouched.

The stage also reports a group fairness score for the normalized set:
exp(-variance(per-member mean normalized level) * 5), 1.0 meaning every
member's places carry the same average weight.

Input validation (validate_snapshot) runs before this stage and is the only
place InputValidationError is raised.
"""

from __future__ import annotations

import logging
import math
from collections import Counter, defaultdict

import numpy as np

from services.planner.optimization.dedup import merge_duplicate_places
from services.planner.optimization.errors import InputValidationError, StageComputationError
from services.planner.optimization.geo import valid_coordinates
from services.planner.optimization.settings import OptimizationSettings
from services.planner.optimization.types import (
    ANCHOR_DEPARTURE,
    ANCHOR_DESTINATION,
    Member,
    NormalizationResult,
    NormalizedPlace,
    TripSnapshot,
)
from services.planner.realtime.progress import STAGE_NORMALIZING, StageProgress

logger = logging.getLogger(__name__)

_MIN_LEVEL = 0.1
_MAX_LEVEL = 1.0
_WEIGHT_DOMINANCE = 0.7
_GROUP_FAIRNESS_SHARPNESS = 5.0


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------

def validate_snapshot(snapshot: TripSnapshot) -> None:
    """Reject malformed input before any stage runs."""
    if not snapshot.trip_id or not str(snapshot.trip_id).strip():
        raise InputValidationError("trip_id is required")
    if not snapshot.members:
        raise InputValidationError("trip has no members")
    if not snapshot.places:
        raise InputValidationError("trip has no places")
    if snapshot.end_date < snapshot.start_date:
        raise InputValidationError("trip end date is before its start date")

    member_ids = {m.id for m in snapshot.members}
    seen: set[str] = set()
    for place in snapshot.places:
        if place.id in seen:
            raise InputValidationError(f"duplicate place id: {place.id}")
        seen.add(place.id)

        if place.stay_duration_minutes < 0:
            raise InputValidationError(f"place {place.id}: negative stay duration")
        for pin in (place.earliest_arrival, place.latest_departure):
            if pin is not None and pin.tzinfo is None:
                raise InputValidationError(f"place {place.id}: time windows must be timezone-aware")

        if place.is_anchor:
            if place.anchor_role not in (ANCHOR_DEPARTURE, ANCHOR_DESTINATION):
                raise InputValidationError(
                    f"anchor {place.id}: anchor_role must be departure or destination"
                )
            continue

        if place.stay_duration_minutes == 0:
            raise InputValidationError(f"place {place.id}: stay duration must be positive")
        if not 1 <= place.wish_level <= 5:
            raise InputValidationError(f"place {place.id}: wish level must be 1-5")
        if place.member_id not in member_ids:
            raise InputValidationError(
                f"place {place.id}: owner {place.member_id!r} is not a trip member"
            )

    roles = Counter(p.anchor_role for p in snapshot.places if p.is_anchor)
    for role, count in roles.items():
        if count > 1:
            raise InputValidationError(f"more than one {role} anchor")


# ---------------------------------------------------------------------------
# Stage
# ---------------------------------------------------------------------------

def _clamp(value: float) -> float:
    return min(_MAX_LEVEL, max(_MIN_LEVEL, value))


def normalized_level(
    wish_level: int, place_count: int, settings: OptimizationSettings
) -> float:
    fairness_factor = math.sqrt(1.0 / place_count)
    base_preference = wish_level / 5.0

    if settings.fairness_weight > _WEIGHT_DOMINANCE:
        multiplier = fairness_factor
    elif settings.efficiency_weight > _WEIGHT_DOMINANCE:
        multiplier = base_preference
    else:
        multiplier = (fairness_factor + base_preference) / 2.0

    return _clamp(base_preference * fairness_factor * multiplier)


def normalize_preferences(
    snapshot: TripSnapshot,
    settings: OptimizationSettings,
) -> tuple[NormalizationResult, list[StageProgress]]:
    """
    Normalize every member-submitted place of the snapshot.

    Returns:
        (NormalizationResult, stage-local progress notes)

    Raises:
        StageComputationError: a place has coordinates that cannot be routed.
    """
    notes = [StageProgress(STAGE_NORMALIZING, 0, "Normalizing member preferences")]

    for place in snapshot.places:
        if not valid_coordinates(place.latitude, place.longitude):
            raise StageComputationError(
                f"place {place.id} has malformed coordinates "
                f"({place.latitude}, {place.longitude})",
                stage=STAGE_NORMALIZING,
                code="MALFORMED_COORDINATES",
            )

    candidates = merge_duplicate_places(snapshot.places)
    merged = len(snapshot.places) - len(candidates)
    if merged:
        logger.info("Merged duplicate places: trip=%s removed=%d", snapshot.trip_id, merged)

    counts: Counter[str] = Counter(
        p.member_id for p in candidates if not p.is_anchor
    )

    places: list[NormalizedPlace] = []
    per_member: dict[str, list[float]] = defaultdict(list)
    for place in candidates:
        if place.is_anchor:
            places.append(NormalizedPlace.from_candidate(place, None))
            continue
        level = normalized_level(place.wish_level, counts[place.member_id], settings)
        per_member[place.member_id].append(level)
        places.append(NormalizedPlace.from_candidate(place, level))

    notes.append(StageProgress(STAGE_NORMALIZING, 70, f"Normalized {len(places)} places"))

    members = [
        Member(
            id=m.id,
            display_name=m.display_name,
            place_count=counts.get(m.id, 0),
            fairness_weight=math.sqrt(1.0 / counts[m.id]) if counts.get(m.id) else 0.0,
        )
        for m in snapshot.members
    ]

    means = [float(np.mean(levels)) for levels in per_member.values()]
    if len(means) > 1:
        group_fairness = float(math.exp(-float(np.var(means)) * _GROUP_FAIRNESS_SHARPNESS))
    else:
        group_fairness = 1.0

    logger.info(
        "Normalization complete: trip=%s places=%d members=%d group_fairness=%.3f",
        snapshot.trip_id,
        len(places),
        len(per_member),
        group_fairness,
    )
    notes.append(StageProgress(STAGE_NORMALIZING, 100, "Preferences normalized"))

    return (
        NormalizationResult(places=places, members=members, group_fairness=group_fairness),
        notes,
    )

"""
Composite quality score of an assembled schedule.

    efficiency   = stay minutes / (stay + travel minutes), 0.5 when both are zero
    wish         = mean normalized wish level of the scheduled member places,
                   0.8 when none is scheduled
    fairness     = max(0, 1 - variance / mean) of scheduled places per member,
                   over the members who submitted places; 1.0 for one member
    feasibility  = 1.0 without validation issues, else max(0.1, 1 - 0.2 * issues)

    total = 100 * (0.3 * efficiency + 0.2 * wish + 0.2 * fairness + 0.3 * feasibility)

Components are reported rounded on the same 0-100 scale.

Validation flags a schedule that assembled but is implausible: a place on
it twice, a leg over 12 hours, a day travelling more than 12 hours in
total, a day with nothing scheduled, flights on more than half of the days.
"""

from __future__ import annotations

import logging
from collections import Counter

import numpy as np

from services.planner.optimization.types import (
    MODE_FLIGHT,
    DaySchedule,
    NormalizationResult,
    OptimizationScore,
)

logger = logging.getLogger(__name__)

WEIGHT_EFFICIENCY = 0.3
WEIGHT_WISH = 0.2
WEIGHT_FAIRNESS = 0.2
WEIGHT_FEASIBILITY = 0.3

MAX_TRAVEL_MINUTES = 720
_NEUTRAL_EFFICIENCY = 0.5
_DEFAULT_WISH = 0.8
_ISSUE_PENALTY = 0.2
_MIN_FEASIBILITY = 0.1
_MAX_FLIGHT_DAY_SHARE = 0.5


def validate_days(days: list[DaySchedule]) -> list[str]:
    issues: list[str] = []

    seen = Counter(v.id for day in days for v in day.visits)
    issues.extend(f"place {pid} is scheduled more than once" for pid, n in seen.items() if n > 1)

    long_legs = sum(1 for day in days for leg in day.legs if leg.duration_minutes > MAX_TRAVEL_MINUTES)
    if long_legs:
        issues.append(f"{long_legs} leg(s) longer than 12 hours")

    for day in days:
        travel = sum(leg.duration_minutes for leg in day.legs)
        if travel > MAX_TRAVEL_MINUTES:
            issues.append(f"day {day.day_index + 1} has {travel / 60:.1f}h of travel")
        if not day.visits:
            issues.append(f"day {day.day_index + 1} has no scheduled places")

    flight_days = sum(1 for day in days if any(leg.mode == MODE_FLIGHT for leg in day.legs))
    if days and flight_days > len(days) * _MAX_FLIGHT_DAY_SHARE:
        issues.append("flights on more than half of the trip's days")

    return issues


def _fairness(days: list[DaySchedule], normalization: NormalizationResult) -> float:
    members = sorted({p.member_id for p in normalization.places if not p.is_anchor})
    if len(members) < 2:
        return 1.0
    scheduled = Counter(
        v.place.member_id for day in days for v in day.visits if not v.place.is_anchor
    )
    counts = np.array([scheduled.get(m, 0) for m in members], dtype=float)
    mean = float(np.mean(counts))
    if mean == 0:
        return 0.0
    return max(0.0, 1.0 - float(np.var(counts)) / mean)


def _percent(value: float) -> int:
    return int(round(value * 100))


def score_schedule(days: list[DaySchedule], normalization: NormalizationResult) -> OptimizationScore:
    stay = sum(d.stats.total_stay_minutes for d in days)
    travel = sum(d.stats.total_travel_minutes for d in days)
    efficiency = stay / (stay + travel) if stay + travel > 0 else _NEUTRAL_EFFICIENCY

    levels = [
        v.place.normalized_wish_level
        for day in days
        for v in day.visits
        if not v.place.is_anchor and v.place.normalized_wish_level is not None
    ]
    wish = float(np.mean(levels)) if levels else _DEFAULT_WISH

    fairness = _fairness(days, normalization)

    issues = validate_days(days)
    feasibility = max(_MIN_FEASIBILITY, 1.0 - _ISSUE_PENALTY * len(issues)) if issues else 1.0

    total = (
        WEIGHT_EFFICIENCY * efficiency
        + WEIGHT_WISH * wish
        + WEIGHT_FAIRNESS * fairness
        + WEIGHT_FEASIBILITY * feasibility
    )
    if issues:
        logger.info("Schedule validation issues: %s", "; ".join(issues))

    return OptimizationScore(
        total=min(100, max(0, _percent(total))),
        efficiency=_percent(efficiency),
        wish_satisfaction=_percent(wish),
        fairness=_percent(fairness),
        feasibility=_percent(feasibility),
        validation_issues=tuple(issues),
    )

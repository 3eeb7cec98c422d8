"""
Merging of places that several members submitted separately.

Two member places are the same place when their coordinates agree to four
decimals (about 11 m) and their names match exactly. A merged place keeps
the longest stay of its group (the earliest submission on a tie), takes the
highest wish level and lists every contributing member in submission order.
Anchors are never merged.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Iterable

from services.planner.optimization.types import CandidatePlace

_COORDINATE_DECIMALS = 4


def place_key(place: CandidatePlace) -> tuple[float, float, str]:
    return (
        round(place.latitude, _COORDINATE_DECIMALS),
        round(place.longitude, _COORDINATE_DECIMALS),
        place.name,
    )


def _merge(group: list[CandidatePlace]) -> CandidatePlace:
    base = group[0]
    for place in group[1:]:
        if place.stay_duration_minutes > base.stay_duration_minutes:
            base = place
    contributors = tuple(dict.fromkeys(p.member_id for p in group))
    return replace(
        base,
        wish_level=max(p.wish_level for p in group),
        contributors=contributors,
    )


def merge_duplicate_places(places: Iterable[CandidatePlace]) -> list[CandidatePlace]:
    """
    Collapse duplicate member places, keeping input order.

    The merged place takes the position of its group's first submission.
    """
    groups: dict[tuple[float, float, str], list[CandidatePlace]] = {}
    slots: list[CandidatePlace | tuple[float, float, str]] = []
    for place in places:
        if place.is_anchor:
            slots.append(place)
            continue
        key = place_key(place)
        if key not in groups:
            groups[key] = []
            slots.append(key)
        groups[key].append(place)

    return [
        slot if isinstance(slot, CandidatePlace) else _merge(groups[slot])
        for slot in slots
    ]

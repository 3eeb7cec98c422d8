"""
Data model for the optimization pipeline.

Place types form a chain, each stage adding its own fields:

    CandidatePlace -> NormalizedPlace -> SelectedPlace -> ScheduledVisit

Candidate/normalized/selected places are frozen snapshots. Schedule
containers (DaySchedule, TripSchedule) are built fresh on every run and
treated as read-only once a stage hands them on.

Every type serializes with to_dict()/from_dict() using camelCase keys and
ISO-8601 timestamps; this is the structured export format and the shape
cached in Redis.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import date, datetime
from typing import Any

# Anchor roles
ANCHOR_DEPARTURE = "departure"
ANCHOR_DESTINATION = "destination"

# Transport modes
MODE_WALKING = "walking"
MODE_PUBLIC_TRANSIT = "public_transit"
MODE_CAR = "car"
MODE_FLIGHT = "flight"
TRANSPORT_MODES = (MODE_WALKING, MODE_PUBLIC_TRANSIT, MODE_CAR, MODE_FLIGHT)

MEAL_TYPES = ("breakfast", "lunch", "dinner", "snack")

DAY_OK = "ok"
DAY_FAILED = "failed"


def _iso(value: datetime | date | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _parse_date(value: str | None) -> date | None:
    return date.fromisoformat(value) if value else None


# ---------------------------------------------------------------------------
# Members and places
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Member:
    """Trip member. place_count/fairness_weight are filled by the normalizer."""
    id: str
    display_name: str = ""
    place_count: int = 0
    fairness_weight: float = 1.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "displayName": self.display_name,
            "placeCount": self.place_count,
            "fairnessWeight": round(self.fairness_weight, 6),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Member":
        return cls(
            id=d["id"],
            display_name=d.get("displayName", ""),
            place_count=d.get("placeCount", 0),
            fairness_weight=d.get("fairnessWeight", 1.0),
        )


@dataclass(frozen=True)
class CandidatePlace:
    id: str
    member_id: str | None
    name: str
    latitude: float
    longitude: float
    wish_level: int
    stay_duration_minutes: int
    category: str = "other"
    earliest_arrival: datetime | None = None
    latest_departure: datetime | None = None
    is_anchor: bool = False
    anchor_role: str | None = None  # "departure" | "destination" for anchors
    # Members who submitted this place; more than one after duplicates merge.
    contributors: tuple[str, ...] = ()

    @property
    def is_pinned(self) -> bool:
        return self.earliest_arrival is not None or self.latest_departure is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "memberId": self.member_id,
            "name": self.name,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "wishLevel": self.wish_level,
            "stayDurationMinutes": self.stay_duration_minutes,
            "category": self.category,
            "earliestArrival": _iso(self.earliest_arrival),
            "latestDeparture": _iso(self.latest_departure),
            "isAnchor": self.is_anchor,
            "anchorRole": self.anchor_role,
            "contributors": list(self.contributors),
        }

    @staticmethod
    def _kwargs(d: dict[str, Any]) -> dict[str, Any]:
        return {
            "id": d["id"],
            "member_id": d.get("memberId"),
            "name": d.get("name", ""),
            "latitude": d["latitude"],
            "longitude": d["longitude"],
            "wish_level": d["wishLevel"],
            "stay_duration_minutes": d["stayDurationMinutes"],
            "category": d.get("category", "other"),
            "earliest_arrival": _parse_dt(d.get("earliestArrival")),
            "latest_departure": _parse_dt(d.get("latestDeparture")),
            "is_anchor": d.get("isAnchor", False),
            "anchor_role": d.get("anchorRole"),
            "contributors": tuple(d.get("contributors", ())),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "CandidatePlace":
        return cls(**cls._kwargs(d))


def _carry(place: CandidatePlace) -> dict[str, Any]:
    """Field values of a place, for building the next type in the chain."""
    return {f.name: getattr(place, f.name) for f in fields(place)}


@dataclass(frozen=True)
class NormalizedPlace(CandidatePlace):
    # None for anchors, which are never normalized.
    normalized_wish_level: float | None = None

    @classmethod
    def from_candidate(
        cls, place: CandidatePlace, normalized_wish_level: float | None
    ) -> "NormalizedPlace":
        return cls(**_carry(place), normalized_wish_level=normalized_wish_level)

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["normalizedWishLevel"] = self.normalized_wish_level
        return d

    @staticmethod
    def _kwargs(d: dict[str, Any]) -> dict[str, Any]:
        kwargs = CandidatePlace._kwargs(d)
        kwargs["normalized_wish_level"] = d.get("normalizedWishLevel")
        return kwargs

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "NormalizedPlace":
        return cls(**cls._kwargs(d))


@dataclass(frozen=True)
class SelectedPlace(NormalizedPlace):
    selection_round: int = 0
    fairness_score_at_selection: float | None = None

    @classmethod
    def from_normalized(
        cls,
        place: NormalizedPlace,
        selection_round: int,
        fairness_score: float | None,
    ) -> "SelectedPlace":
        return cls(
            **_carry(place),
            selection_round=selection_round,
            fairness_score_at_selection=fairness_score,
        )

    @property
    def value(self) -> float:
        """Ranking value used when a place must give way. Anchors never do."""
        if self.is_anchor or self.normalized_wish_level is None:
            return float("inf")
        return self.normalized_wish_level

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["selectionRound"] = self.selection_round
        d["fairnessScoreAtSelection"] = self.fairness_score_at_selection
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "SelectedPlace":
        kwargs = NormalizedPlace._kwargs(d)
        kwargs["selection_round"] = d.get("selectionRound", 0)
        kwargs["fairness_score_at_selection"] = d.get("fairnessScoreAtSelection")
        return cls(**kwargs)


# ---------------------------------------------------------------------------
# Schedule entries
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ScheduledVisit:
    place: SelectedPlace
    day_index: int
    arrival_time: datetime
    departure_time: datetime

    @property
    def id(self) -> str:
        return self.place.id

    @property
    def stay_minutes(self) -> int:
        return int((self.departure_time - self.arrival_time).total_seconds() // 60)

    def to_dict(self) -> dict[str, Any]:
        return {
            "place": self.place.to_dict(),
            "dayIndex": self.day_index,
            "arrivalTime": _iso(self.arrival_time),
            "departureTime": _iso(self.departure_time),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "ScheduledVisit":
        return cls(
            place=SelectedPlace.from_dict(d["place"]),
            day_index=d["dayIndex"],
            arrival_time=_parse_dt(d["arrivalTime"]),
            departure_time=_parse_dt(d["departureTime"]),
        )


@dataclass(frozen=True)
class TransportLeg:
    from_place_id: str
    to_place_id: str
    mode: str
    distance_km: float
    duration_minutes: int
    departure_time: datetime
    arrival_time: datetime
    estimated_cost: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "fromPlaceId": self.from_place_id,
            "toPlaceId": self.to_place_id,
            "mode": self.mode,
            "distanceKm": self.distance_km,
            "durationMinutes": self.duration_minutes,
            "departureTime": _iso(self.departure_time),
            "arrivalTime": _iso(self.arrival_time),
            "estimatedCost": self.estimated_cost,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "TransportLeg":
        return cls(
            from_place_id=d["fromPlaceId"],
            to_place_id=d["toPlaceId"],
            mode=d["mode"],
            distance_km=d["distanceKm"],
            duration_minutes=d["durationMinutes"],
            departure_time=_parse_dt(d["departureTime"]),
            arrival_time=_parse_dt(d["arrivalTime"]),
            estimated_cost=d.get("estimatedCost", 0.0),
        )


@dataclass(frozen=True)
class MealBreak:
    meal_type: str
    start_time: datetime
    end_time: datetime
    latitude: float | None = None
    longitude: float | None = None
    near_place_id: str | None = None
    estimated_cost: float = 0.0

    @property
    def duration_minutes(self) -> int:
        return int((self.end_time - self.start_time).total_seconds() // 60)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mealType": self.meal_type,
            "startTime": _iso(self.start_time),
            "endTime": _iso(self.end_time),
            "latitude": self.latitude,
            "longitude": self.longitude,
            "nearPlaceId": self.near_place_id,
            "estimatedCost": self.estimated_cost,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "MealBreak":
        return cls(
            meal_type=d["mealType"],
            start_time=_parse_dt(d["startTime"]),
            end_time=_parse_dt(d["endTime"]),
            latitude=d.get("latitude"),
            longitude=d.get("longitude"),
            near_place_id=d.get("nearPlaceId"),
            estimated_cost=d.get("estimatedCost", 0.0),
        )


@dataclass(frozen=True)
class BufferInterval:
    after_place_id: str
    start_time: datetime
    end_time: datetime
    duration_minutes: int
    reason: str  # travel_buffer | meal_buffer | activity_buffer | transition
    confidence: float
    factors: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "afterPlaceId": self.after_place_id,
            "startTime": _iso(self.start_time),
            "endTime": _iso(self.end_time),
            "durationMinutes": self.duration_minutes,
            "reason": self.reason,
            "confidence": self.confidence,
            "factors": dict(self.factors),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "BufferInterval":
        return cls(
            after_place_id=d["afterPlaceId"],
            start_time=_parse_dt(d["startTime"]),
            end_time=_parse_dt(d["endTime"]),
            duration_minutes=d["durationMinutes"],
            reason=d["reason"],
            confidence=d["confidence"],
            factors=dict(d.get("factors", {})),
        )


# ---------------------------------------------------------------------------
# Days and trip
# ---------------------------------------------------------------------------

@dataclass
class DayStats:
    total_places: int = 0
    total_travel_minutes: int = 0
    total_stay_minutes: int = 0
    total_distance_km: float = 0.0
    earliest_start: datetime | None = None
    latest_end: datetime | None = None
    transport_cost: float = 0.0
    meal_cost: float = 0.0

    @property
    def estimated_cost(self) -> float:
        return self.transport_cost + self.meal_cost

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalPlaces": self.total_places,
            "totalTravelMinutes": self.total_travel_minutes,
            "totalStayMinutes": self.total_stay_minutes,
            "totalDistanceKm": self.total_distance_km,
            "earliestStart": _iso(self.earliest_start),
            "latestEnd": _iso(self.latest_end),
            "transportCost": self.transport_cost,
            "mealCost": self.meal_cost,
            "estimatedCost": self.estimated_cost,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "DayStats":
        return cls(
            total_places=d.get("totalPlaces", 0),
            total_travel_minutes=d.get("totalTravelMinutes", 0),
            total_stay_minutes=d.get("totalStayMinutes", 0),
            total_distance_km=d.get("totalDistanceKm", 0.0),
            earliest_start=_parse_dt(d.get("earliestStart")),
            latest_end=_parse_dt(d.get("latestEnd")),
            transport_cost=d.get("transportCost", 0.0),
            meal_cost=d.get("mealCost", 0.0),
        )


@dataclass
class DaySchedule:
    day_index: int  # 0-based
    date: date
    status: str = DAY_OK
    visits: list[ScheduledVisit] = field(default_factory=list)
    legs: list[TransportLeg] = field(default_factory=list)
    meals: list[MealBreak] = field(default_factory=list)
    buffers: list[BufferInterval] = field(default_factory=list)
    stats: DayStats = field(default_factory=DayStats)
    failure_reason: str | None = None

    @property
    def failed(self) -> bool:
        return self.status == DAY_FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "dayIndex": self.day_index,
            "date": _iso(self.date),
            "status": self.status,
            "visits": [v.to_dict() for v in self.visits],
            "legs": [leg.to_dict() for leg in self.legs],
            "meals": [m.to_dict() for m in self.meals],
            "buffers": [b.to_dict() for b in self.buffers],
            "stats": self.stats.to_dict(),
            "failureReason": self.failure_reason,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "DaySchedule":
        return cls(
            day_index=d["dayIndex"],
            date=_parse_date(d["date"]),
            status=d.get("status", DAY_OK),
            visits=[ScheduledVisit.from_dict(v) for v in d.get("visits", [])],
            legs=[TransportLeg.from_dict(leg) for leg in d.get("legs", [])],
            meals=[MealBreak.from_dict(m) for m in d.get("meals", [])],
            buffers=[BufferInterval.from_dict(b) for b in d.get("buffers", [])],
            stats=DayStats.from_dict(d.get("stats", {})),
            failure_reason=d.get("failureReason"),
        )


@dataclass(frozen=True)
class DroppedPlace:
    place_id: str
    member_id: str | None
    reason: str  # trip_capacity | time_window | outside_trip_dates | day_failed
    day_index: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "placeId": self.place_id,
            "memberId": self.member_id,
            "reason": self.reason,
            "dayIndex": self.day_index,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "DroppedPlace":
        return cls(
            place_id=d["placeId"],
            member_id=d.get("memberId"),
            reason=d["reason"],
            day_index=d.get("dayIndex"),
        )


@dataclass(frozen=True)
class FailedDay:
    day_index: int
    stage: str  # "routing" | "assembly"
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"dayIndex": self.day_index, "stage": self.stage, "reason": self.reason}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "FailedDay":
        return cls(day_index=d["dayIndex"], stage=d["stage"], reason=d["reason"])


@dataclass(frozen=True)
class OptimizationScore:
    """Composite quality score; every component is on a 0-100 scale."""
    total: int = 0
    efficiency: int = 0
    wish_satisfaction: int = 0
    fairness: int = 0
    feasibility: int = 0
    validation_issues: tuple[str, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not self.validation_issues

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "efficiency": self.efficiency,
            "wishSatisfaction": self.wish_satisfaction,
            "fairness": self.fairness,
            "feasibility": self.feasibility,
            "isValid": self.is_valid,
            "validationIssues": list(self.validation_issues),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "OptimizationScore":
        return cls(
            total=d.get("total", 0),
            efficiency=d.get("efficiency", 0),
            wish_satisfaction=d.get("wishSatisfaction", 0),
            fairness=d.get("fairness", 0),
            feasibility=d.get("feasibility", 0),
            validation_issues=tuple(d.get("validationIssues", ())),
        )


@dataclass
class TripStats:
    total_days: int = 0
    total_places: int = 0
    total_travel_minutes: int = 0
    total_stay_minutes: int = 0
    total_distance_km: float = 0.0
    transport_cost: float = 0.0
    meal_cost: float = 0.0
    currency: str = "JPY"
    dropped: list[DroppedPlace] = field(default_factory=list)
    failed_days: list[FailedDay] = field(default_factory=list)
    selection_rounds: int = 0
    selection_fairness: float = 0.0  # dispersion, lower is better
    average_efficiency: float = 0.0
    score: OptimizationScore = field(default_factory=OptimizationScore)

    @property
    def estimated_cost(self) -> float:
        return self.transport_cost + self.meal_cost

    @property
    def dropped_count(self) -> int:
        return len(self.dropped)

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalDays": self.total_days,
            "totalPlaces": self.total_places,
            "totalTravelMinutes": self.total_travel_minutes,
            "totalStayMinutes": self.total_stay_minutes,
            "totalDistanceKm": self.total_distance_km,
            "transportCost": self.transport_cost,
            "mealCost": self.meal_cost,
            "estimatedCost": self.estimated_cost,
            "currency": self.currency,
            "droppedCount": self.dropped_count,
            "dropped": [p.to_dict() for p in self.dropped],
            "failedDays": [f.to_dict() for f in self.failed_days],
            "selectionRounds": self.selection_rounds,
            "selectionFairness": self.selection_fairness,
            "averageEfficiency": self.average_efficiency,
            "score": self.score.to_dict(),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "TripStats":
        return cls(
            total_days=d.get("totalDays", 0),
            total_places=d.get("totalPlaces", 0),
            total_travel_minutes=d.get("totalTravelMinutes", 0),
            total_stay_minutes=d.get("totalStayMinutes", 0),
            total_distance_km=d.get("totalDistanceKm", 0.0),
            transport_cost=d.get("transportCost", 0.0),
            meal_cost=d.get("mealCost", 0.0),
            currency=d.get("currency", "JPY"),
            dropped=[DroppedPlace.from_dict(p) for p in d.get("dropped", [])],
            failed_days=[FailedDay.from_dict(f) for f in d.get("failedDays", [])],
            selection_rounds=d.get("selectionRounds", 0),
            selection_fairness=d.get("selectionFairness", 0.0),
            average_efficiency=d.get("averageEfficiency", 0.0),
            score=OptimizationScore.from_dict(d.get("score", {})),
        )


@dataclass(frozen=True)
class Conflict:
    conflict_id: str
    conflict_type: str  # time_overlap | time_window | travel_impossible | meal_timing | insufficient_time
    severity: str       # critical | warning | minor
    description: str
    affected_ids: tuple[str, ...]
    suggested_resolution: str
    auto_resolvable: bool
    day_index: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "conflictId": self.conflict_id,
            "type": self.conflict_type,
            "severity": self.severity,
            "description": self.description,
            "affectedIds": list(self.affected_ids),
            "suggestedResolution": self.suggested_resolution,
            "autoResolvable": self.auto_resolvable,
            "dayIndex": self.day_index,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Conflict":
        return cls(
            conflict_id=d["conflictId"],
            conflict_type=d["type"],
            severity=d["severity"],
            description=d["description"],
            affected_ids=tuple(d.get("affectedIds", [])),
            suggested_resolution=d.get("suggestedResolution", ""),
            auto_resolvable=d.get("autoResolvable", False),
            day_index=d["dayIndex"],
        )


@dataclass
class TripSchedule:
    trip_id: str
    days: list[DaySchedule] = field(default_factory=list)
    stats: TripStats = field(default_factory=TripStats)
    member_fairness: dict[str, float] = field(default_factory=dict)
    conflicts: list[Conflict] = field(default_factory=list)
    generated_at: datetime | None = None
    algorithm_version: str = ""
    settings: dict[str, Any] = field(default_factory=dict)

    def visits(self) -> list[ScheduledVisit]:
        return [v for day in self.days for v in day.visits]

    def to_dict(self) -> dict[str, Any]:
        return {
            "tripId": self.trip_id,
            "days": [d.to_dict() for d in self.days],
            "stats": self.stats.to_dict(),
            "memberFairness": dict(self.member_fairness),
            "conflicts": [c.to_dict() for c in self.conflicts],
            "metadata": {
                "generatedAt": _iso(self.generated_at),
                "algorithmVersion": self.algorithm_version,
                "settings": self.settings,
            },
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "TripSchedule":
        meta = d.get("metadata", {})
        return cls(
            trip_id=d["tripId"],
            days=[DaySchedule.from_dict(day) for day in d.get("days", [])],
            stats=TripStats.from_dict(d.get("stats", {})),
            member_fairness=dict(d.get("memberFairness", {})),
            conflicts=[Conflict.from_dict(c) for c in d.get("conflicts", [])],
            generated_at=_parse_dt(meta.get("generatedAt")),
            algorithm_version=meta.get("algorithmVersion", ""),
            settings=dict(meta.get("settings", {})),
        )


# ---------------------------------------------------------------------------
# Pipeline input and per-stage results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TripSnapshot:
    """Read-only input for one run, taken before normalization starts."""
    trip_id: str
    start_date: date
    end_date: date
    members: tuple[Member, ...]
    places: tuple[CandidatePlace, ...]
    timezone: str | None = None

    @property
    def day_count(self) -> int:
        return (self.end_date - self.start_date).days + 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "tripId": self.trip_id,
            "startDate": _iso(self.start_date),
            "endDate": _iso(self.end_date),
            "timezone": self.timezone,
            "members": [m.to_dict() for m in self.members],
            "places": [p.to_dict() for p in self.places],
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "TripSnapshot":
        return cls(
            trip_id=d["tripId"],
            start_date=_parse_date(d["startDate"]),
            end_date=_parse_date(d["endDate"]),
            timezone=d.get("timezone"),
            members=tuple(Member.from_dict(m) for m in d.get("members", [])),
            places=tuple(CandidatePlace.from_dict(p) for p in d.get("places", [])),
        )


@dataclass
class NormalizationResult:
    places: list[NormalizedPlace]
    members: list[Member]
    group_fairness: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "places": [p.to_dict() for p in self.places],
            "members": [m.to_dict() for m in self.members],
            "groupFairness": self.group_fairness,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "NormalizationResult":
        return cls(
            places=[NormalizedPlace.from_dict(p) for p in d.get("places", [])],
            members=[Member.from_dict(m) for m in d.get("members", [])],
            group_fairness=d.get("groupFairness", 1.0),
        )


@dataclass
class SelectionResult:
    places: list[SelectedPlace]
    fairness_score: float
    rounds: int
    history: list[float] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "places": [p.to_dict() for p in self.places],
            "fairnessScore": self.fairness_score,
            "rounds": self.rounds,
            "history": list(self.history),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "SelectionResult":
        return cls(
            places=[SelectedPlace.from_dict(p) for p in d.get("places", [])],
            fairness_score=d.get("fairnessScore", 0.0),
            rounds=d.get("rounds", 0),
            history=list(d.get("history", [])),
        )


@dataclass
class RouteResult:
    days: list[DaySchedule]
    dropped: list[DroppedPlace] = field(default_factory=list)
    failed_days: list[FailedDay] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "days": [d.to_dict() for d in self.days],
            "dropped": [p.to_dict() for p in self.dropped],
            "failedDays": [f.to_dict() for f in self.failed_days],
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "RouteResult":
        return cls(
            days=[DaySchedule.from_dict(day) for day in d.get("days", [])],
            dropped=[DroppedPlace.from_dict(p) for p in d.get("dropped", [])],
            failed_days=[FailedDay.from_dict(f) for f in d.get("failedDays", [])],
        )

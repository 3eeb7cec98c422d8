"""
Schedule assembly: adaptive buffers, meal breaks and statistics.

Buffers
-------
After every visit:

    buffer = clamp(min_buffer * category_factor * time_of_day_factor * transport_factor,
                   min_buffer, max_buffer)

category_factor comes from the place category, time_of_day_factor from the
local hour the visit ends, transport_factor from the mode of the leg that
follows (1.0 after the last visit of the day). Routing only left
minimal_buffer between a visit and its next leg; when the adaptive buffer is
longer than the idle time available, the leg and everything after it move
back by the difference. Idle time that was already there (a held meal, a wait
for an opening time) absorbs the buffer first. A visit pushed past its
latest departure this way is dropped and the day is re-timed without it,
its neighbours joined by a direct leg. The overnight transfer into the
day's first visit keeps its routed times.

Meals
-----
Gaps are the stretches of the day window not covered by a visit, leg or
buffer. The day window runs from min(day start, first arrival) to
max(day end, last event). For breakfast, lunch and dinner in turn, the first
gap overlapping the meal window by at least min_meal_minutes hosts the meal,
clipped to the window and to the meal's nominal length. The suggested
location is the visit before the gap, or the one after it when the gap opens
the day.

Statistics
----------
Per day: places, travel minutes, stay minutes, distance, earliest start,
latest end, transport and meal cost. The trip aggregate sums the days and
carries drops, failed days, selection fairness, per-member fairness
(scheduled normalized wish / submitted normalized wish) and the composite
score with its validation issues (see scoring.py).
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import replace
from datetime import date, datetime, time, timedelta

from services.planner.optimization.errors import DayScheduleError
from services.planner.optimization.geo import distance_between
from services.planner.optimization.meals import MEAL_WINDOWS, overlap_minutes
from services.planner.optimization.route_constructor import (
    DROP_DAY_FAILED,
    DROP_TIME_WINDOW,
    ROUTING_PROGRESS_SHARE,
)
from services.planner.optimization.scoring import score_schedule
from services.planner.optimization.settings import OptimizationSettings
from services.planner.optimization.transport import (
    leg_cost,
    leg_duration_minutes,
    meal_cost,
    select_mode,
)
from services.planner.optimization.types import (
    DAY_FAILED,
    MODE_WALKING,
    BufferInterval,
    DaySchedule,
    DayStats,
    DroppedPlace,
    FailedDay,
    MealBreak,
    NormalizationResult,
    RouteResult,
    ScheduledVisit,
    SelectionResult,
    TransportLeg,
    TripSchedule,
    TripStats,
)
from services.planner.realtime.progress import STAGE_ROUTING, StageProgress

logger = logging.getLogger(__name__)

# Progress share for assembly within the routing stage (conflicts get the rest).
ASSEMBLY_PROGRESS_END = 90.0

CATEGORY_FACTORS: dict[str, float] = {
    "tourist_attraction": 1.2,
    "restaurant": 1.0,
    "museum": 1.1,
    "shopping": 1.3,
    "entertainment": 1.4,
    "other": 1.0,
}

TRANSPORT_FACTORS: dict[str, float] = {
    "walking": 1.0,
    "public_transit": 1.2,
    "car": 1.1,
    "flight": 2.0,
}

# (first hour, bucket, factor); an hour belongs to the last bucket it reaches
_TIME_OF_DAY_BUCKETS: tuple[tuple[int, str, float], ...] = (
    (0, "night", 1.5),
    (6, "morning", 1.0),
    (12, "lunch", 1.3),
    (14, "afternoon", 1.1),
    (18, "evening", 1.2),
    (21, "night", 1.5),
)

_CONFIDENCE = 0.8
_CONFIDENCE_CLAMPED = 0.6


def time_of_day(hour: int) -> tuple[str, float]:
    label, factor = "night", 1.5
    for start, bucket, bucket_factor in _TIME_OF_DAY_BUCKETS:
        if hour >= start:
            label, factor = bucket, bucket_factor
    return label, factor


def _shifted(leg: TransportLeg, departure: datetime) -> TransportLeg:
    return replace(
        leg,
        departure_time=departure,
        arrival_time=departure + timedelta(minutes=leg.duration_minutes),
    )


class ScheduleAssembler:
    """
    Turns routed days into a complete TripSchedule.

    Pure: the input RouteResult is not modified; every day is rebuilt.
    """

    def __init__(self, settings: OptimizationSettings) -> None:
        self.settings = settings
        self.tz = settings.tz

    # ------------------------------------------------------------------
    # Buffers
    # ------------------------------------------------------------------

    def buffer_after(self, visit: ScheduledVisit, next_mode: str | None) -> BufferInterval:
        s = self.settings
        category = CATEGORY_FACTORS.get(visit.place.category, 1.0)
        _, tod = time_of_day(visit.departure_time.astimezone(self.tz).hour)
        transport = TRANSPORT_FACTORS.get(next_mode, 1.0) if next_mode else 1.0

        raw = s.min_buffer_minutes * category * tod * transport
        minutes = min(s.max_buffer_minutes, max(s.min_buffer_minutes, int(round(raw))))

        if next_mode is None:
            reason = "transition"
        elif next_mode == MODE_WALKING:
            reason = "activity_buffer"
        else:
            reason = "travel_buffer"

        return BufferInterval(
            after_place_id=visit.id,
            start_time=visit.departure_time,
            end_time=visit.departure_time + timedelta(minutes=minutes),
            duration_minutes=minutes,
            reason=reason,
            confidence=_CONFIDENCE_CLAMPED if raw > s.max_buffer_minutes else _CONFIDENCE,
            factors={
                "category": category,
                "timeOfDay": tod,
                "transport": transport,
            },
        )

    def _retime(
        self, day: DaySchedule
    ) -> tuple[list[ScheduledVisit], list[TransportLeg], list[BufferInterval]]:
        inbound = {leg.to_place_id: leg for leg in day.legs}
        visits: list[ScheduledVisit] = []
        legs: list[TransportLeg] = []
        buffers: list[BufferInterval] = []

        for i, visit in enumerate(day.visits):
            routed = inbound.get(visit.id)
            if i == 0:
                # The overnight transfer into the first visit is left as routed.
                arrival = visit.arrival_time
                if routed is not None:
                    legs.append(routed)
            else:
                prev_original = day.visits[i - 1]
                shift = visits[-1].departure_time - prev_original.departure_time
                leg = _shifted(routed, max(routed.departure_time + shift, buffers[-1].end_time))
                legs.append(leg)
                # Waiting time before an opening absorbs the delay first.
                arrival = max(visit.arrival_time, leg.arrival_time)

            stay = visit.departure_time - visit.arrival_time
            timed = replace(visit, arrival_time=arrival, departure_time=arrival + stay)
            visits.append(timed)

            following = inbound.get(day.visits[i + 1].id) if i + 1 < len(day.visits) else None
            buffers.append(self.buffer_after(timed, following.mode if following else None))

        return visits, legs, buffers

    @staticmethod
    def _first_late(visits: list[ScheduledVisit]) -> ScheduledVisit | None:
        # The first visit is never moved, so only later ones can be pushed past a window.
        for visit in visits[1:]:
            latest = visit.place.latest_departure
            if not visit.place.is_anchor and latest is not None and visit.departure_time > latest:
                return visit
        return None

    def _without(self, day: DaySchedule, place_id: str) -> DaySchedule:
        """The routed day minus one visit, its neighbours joined by a direct leg."""
        index = next(i for i, v in enumerate(day.visits) if v.id == place_id)
        inbound = next(leg for leg in day.legs if leg.to_place_id == place_id)
        legs = [leg for leg in day.legs if place_id not in (leg.from_place_id, leg.to_place_id)]

        if index + 1 < len(day.visits):
            prev, nxt = day.visits[index - 1], day.visits[index + 1]
            distance = distance_between(prev.place, nxt.place)
            mode = select_mode(distance, self.settings)
            minutes = leg_duration_minutes(mode, distance)
            departure = max(inbound.departure_time, nxt.arrival_time - timedelta(minutes=minutes))
            legs.append(TransportLeg(
                from_place_id=prev.id,
                to_place_id=nxt.id,
                mode=mode,
                distance_km=round(distance, 3),
                duration_minutes=minutes,
                departure_time=departure,
                arrival_time=departure + timedelta(minutes=minutes),
                estimated_cost=leg_cost(mode, distance),
            ))

        return replace(day, visits=day.visits[:index] + day.visits[index + 1:], legs=legs)

    # ------------------------------------------------------------------
    # Meals
    # ------------------------------------------------------------------

    def _day_window(self, day: date, visits: list[ScheduledVisit], busy: list[tuple[datetime, datetime]]) -> tuple[datetime, datetime]:
        start = datetime.combine(day, self.settings.day_start, tzinfo=self.tz)
        end = start + timedelta(minutes=self.settings.daily_minutes)
        if visits:
            start = min(start, visits[0].arrival_time)
        if busy:
            end = max(end, max(e for _, e in busy))
        return start, end

    @staticmethod
    def gaps(window: tuple[datetime, datetime], busy: list[tuple[datetime, datetime]]) -> list[tuple[datetime, datetime]]:
        """Complement of ``busy`` inside ``window``, in time order."""
        result: list[tuple[datetime, datetime]] = []
        cursor, end = window
        for b_start, b_end in sorted(busy):
            if b_start > cursor:
                result.append((cursor, min(b_start, end)))
            cursor = max(cursor, b_end)
            if cursor >= end:
                break
        if cursor < end:
            result.append((cursor, end))
        return [(s, e) for s, e in result if e > s]

    def _place_meals(
        self,
        day: date,
        visits: list[ScheduledVisit],
        legs: list[TransportLeg],
        buffers: list[BufferInterval],
    ) -> list[MealBreak]:
        busy = (
            [(v.arrival_time, v.departure_time) for v in visits]
            + [(leg.departure_time, leg.arrival_time) for leg in legs]
            + [(b.start_time, b.end_time) for b in buffers]
        )
        window = self._day_window(day, visits, busy)
        meals: list[MealBreak] = []

        for meal_window in MEAL_WINDOWS:
            w_start, w_end = meal_window.bounds(day, self.tz)
            for g_start, g_end in self.gaps(window, busy):
                if overlap_minutes(g_start, g_end, w_start, w_end) < self.settings.min_meal_minutes:
                    continue
                start = max(g_start, w_start)
                end = min(start + timedelta(minutes=meal_window.nominal_minutes), g_end, w_end)
                near = self._nearest_visit(visits, start)
                meals.append(MealBreak(
                    meal_type=meal_window.meal_type,
                    start_time=start,
                    end_time=end,
                    latitude=near.place.latitude if near else None,
                    longitude=near.place.longitude if near else None,
                    near_place_id=near.id if near else None,
                    estimated_cost=meal_cost(meal_window.meal_type),
                ))
                busy.append((start, end))
                break

        return sorted(meals, key=lambda m: m.start_time)

    @staticmethod
    def _nearest_visit(visits: list[ScheduledVisit], at: datetime) -> ScheduledVisit | None:
        before = [v for v in visits if v.departure_time <= at]
        if before:
            return before[-1]
        return visits[0] if visits else None

    @staticmethod
    def _with_meal_reasons(buffers: list[BufferInterval], legs: list[TransportLeg], meals: list[MealBreak]) -> list[BufferInterval]:
        outbound = {leg.from_place_id: leg for leg in legs}
        result = []
        for buffer in buffers:
            leg = outbound.get(buffer.after_place_id)
            until = leg.departure_time if leg else None
            hosts_meal = any(
                buffer.end_time <= m.start_time and (until is None or m.start_time < until)
                for m in meals
            )
            if hosts_meal and buffer.reason != "transition":
                buffer = replace(buffer, reason="meal_buffer")
            result.append(buffer)
        return result

    # ------------------------------------------------------------------
    # Days
    # ------------------------------------------------------------------

    @staticmethod
    def day_stats(
        visits: list[ScheduledVisit],
        legs: list[TransportLeg],
        meals: list[MealBreak],
    ) -> DayStats:
        if not visits:
            return DayStats()
        ends = [v.departure_time for v in visits] + [m.end_time for m in meals]
        return DayStats(
            total_places=len(visits),
            total_travel_minutes=sum(leg.duration_minutes for leg in legs),
            total_stay_minutes=sum(v.stay_minutes for v in visits),
            total_distance_km=round(sum(leg.distance_km for leg in legs), 3),
            earliest_start=visits[0].arrival_time,
            latest_end=max(ends),
            transport_cost=round(sum(leg.estimated_cost for leg in legs), 2),
            meal_cost=round(sum(m.estimated_cost for m in meals), 2),
        )

    def assemble_day(self, day: DaySchedule) -> tuple[DaySchedule, list[DroppedPlace]]:
        """
        Re-time one routed day with adaptive buffers and place its meals.

        A visit that the longer buffers push past its latest departure is
        dropped and the day is re-timed without it.

        Returns:
            (assembled day, places dropped for their time window)

        Raises:
            DayScheduleError: the assembled day runs past midnight.
        """
        if day.failed:
            return replace(day, visits=[], legs=[], meals=[], buffers=[], stats=DayStats()), []

        dropped: list[DroppedPlace] = []
        visits, legs, buffers = self._retime(day)
        late = self._first_late(visits)
        while late is not None:
            logger.info(
                "Dropping visit pushed past its window: day=%d place=%s departure=%s latest=%s",
                day.day_index,
                late.id,
                late.departure_time.isoformat(),
                late.place.latest_departure.isoformat(),
            )
            dropped.append(DroppedPlace(late.id, late.place.member_id, DROP_TIME_WINDOW, day.day_index))
            day = self._without(day, late.id)
            visits, legs, buffers = self._retime(day)
            late = self._first_late(visits)

        midnight = datetime.combine(day.date + timedelta(days=1), time(0, 0), tzinfo=self.tz)
        if visits and visits[-1].departure_time > midnight:
            raise DayScheduleError(day.day_index, "assembled schedule runs past midnight")

        meals = self._place_meals(day.date, visits, legs, buffers) if visits else []
        buffers = self._with_meal_reasons(buffers, legs, meals)

        assembled = DaySchedule(
            day_index=day.day_index,
            date=day.date,
            visits=visits,
            legs=legs,
            meals=meals,
            buffers=buffers,
            stats=self.day_stats(visits, legs, meals),
        )
        return assembled, dropped

    # ------------------------------------------------------------------
    # Trip
    # ------------------------------------------------------------------

    def assemble(
        self,
        trip_id: str,
        route: RouteResult,
        selection: SelectionResult,
        normalization: NormalizationResult,
        generated_at: datetime | None = None,
        algorithm_version: str = "",
    ) -> tuple[TripSchedule, list[StageProgress]]:
        notes: list[StageProgress] = []
        days: list[DaySchedule] = []
        dropped = list(route.dropped)
        failed = list(route.failed_days)
        total = max(1, len(route.days))

        for n, day in enumerate(route.days, start=1):
            try:
                assembled, late = self.assemble_day(day)
                days.append(assembled)
                dropped.extend(late)
            except DayScheduleError as exc:
                logger.warning("Assembly day failed: trip=%s day=%d reason=%s", trip_id, exc.day_index, exc.reason)
                failed.append(FailedDay(day.day_index, "assembly", exc.reason))
                dropped.extend(
                    DroppedPlace(v.id, v.place.member_id, DROP_DAY_FAILED, day.day_index)
                    for v in day.visits
                    if not v.place.is_anchor
                )
                days.append(DaySchedule(
                    day_index=day.day_index,
                    date=day.date,
                    status=DAY_FAILED,
                    failure_reason=exc.reason,
                ))
            notes.append(StageProgress(
                STAGE_ROUTING,
                ROUTING_PROGRESS_SHARE + (ASSEMBLY_PROGRESS_END - ROUTING_PROGRESS_SHARE) * n / total,
                f"Assembled day {n} of {total}",
            ))

        stats = self._trip_stats(days, dropped, failed, selection, normalization)
        schedule = TripSchedule(
            trip_id=trip_id,
            days=days,
            stats=stats,
            member_fairness=self.member_fairness(days, normalization),
            generated_at=generated_at,
            algorithm_version=algorithm_version,
            settings=self.settings.to_dict(),
        )

        logger.info(
            "Assembly complete: trip=%s days=%d places=%d meals=%d dropped=%d failed_days=%d",
            trip_id,
            len(days),
            stats.total_places,
            sum(len(d.meals) for d in days),
            stats.dropped_count,
            len(failed),
        )
        return schedule, notes

    def _trip_stats(
        self,
        days: list[DaySchedule],
        dropped: list[DroppedPlace],
        failed: list[FailedDay],
        selection: SelectionResult,
        normalization: NormalizationResult,
    ) -> TripStats:
        ok_days = [d for d in days if not d.failed]
        efficiencies = []
        for d in ok_days:
            active = d.stats.total_stay_minutes + d.stats.total_travel_minutes
            if active > 0:
                efficiencies.append(d.stats.total_stay_minutes / active)

        return TripStats(
            total_days=len(days),
            total_places=sum(d.stats.total_places for d in days),
            total_travel_minutes=sum(d.stats.total_travel_minutes for d in days),
            total_stay_minutes=sum(d.stats.total_stay_minutes for d in days),
            total_distance_km=round(sum(d.stats.total_distance_km for d in days), 3),
            transport_cost=round(sum(d.stats.transport_cost for d in days), 2),
            meal_cost=round(sum(d.stats.meal_cost for d in days), 2),
            currency=self.settings.currency,
            dropped=dropped,
            failed_days=sorted(failed, key=lambda f: f.day_index),
            selection_rounds=selection.rounds,
            selection_fairness=selection.fairness_score,
            average_efficiency=round(sum(efficiencies) / len(efficiencies), 4) if efficiencies else 0.0,
            score=score_schedule(days, normalization),
        )

    @staticmethod
    def member_fairness(days: list[DaySchedule], normalization: NormalizationResult) -> dict[str, float]:
        """Scheduled share of each member's normalized wishes, for members who submitted places."""
        submitted: dict[str, float] = defaultdict(float)
        for place in normalization.places:
            if not place.is_anchor:
                submitted[place.member_id] += place.normalized_wish_level

        scheduled: dict[str, float] = defaultdict(float)
        for day in days:
            for visit in day.visits:
                if not visit.place.is_anchor:
                    scheduled[visit.place.member_id] += visit.place.normalized_wish_level

        return {
            member_id: round(scheduled[member_id] / total, 4)
            for member_id, total in sorted(submitted.items())
            if total > 0
        }

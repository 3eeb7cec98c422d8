"""
iCalendar (.ics) export of an optimized TripSchedule.

One VEVENT per:
  - scheduled visit
  - meal break
  - transport leg lasting at least settings.calendar_leg_min_minutes

Times are written as local wall time with TZID=<trip timezone>, and a
VTIMEZONE block built from zoneinfo covers every offset change in the years
the trip spans, so calendar apps show the destination's local time.

UIDs are derived from trip, day and place/meal ids only, so re-exporting the
same schedule (or a re-optimized one keeping a visit) updates events in place
instead of duplicating them. DTSTAMP is the schedule's generated_at.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from services.planner.optimization.types import (
    DaySchedule,
    MealBreak,
    ScheduledVisit,
    TransportLeg,
    TripSchedule,
)

_PRODID = "-//Voyage Planner//Optimized Trip Schedule//EN"
_UID_DOMAIN = "voyage-planner"
_DEFAULT_LEG_MIN_MINUTES = 60

_MODE_LABELS = {
    "walking": "Walk",
    "public_transit": "Transit",
    "car": "Drive",
    "flight": "Flight",
}

# ---------------------------------------------------------------------------
# iCal helpers
# ---------------------------------------------------------------------------

def _fold(line: str) -> str:
    """
    RFC 5545 line folding: content lines are at most 75 octets.
    Continuation lines start with a single space.
    """
    parts = []
    current = ""
    for ch in line:
        if len((current + ch).encode("utf-8")) > 75:
            parts.append(current)
            current = " "
        current += ch
    parts.append(current)
    return "\r\n".join(parts)


def _escape(text: str) -> str:
    """Escape special iCal characters in text values."""
    text = text.replace("\\", "\\\\")
    text = text.replace(";", "\\;")
    text = text.replace(",", "\\,")
    text = text.replace("\n", "\\n")
    text = text.replace("\r", "")
    return text


def _ical_utc(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def _ical_local(dt: datetime, tz: ZoneInfo) -> str:
    return dt.astimezone(tz).strftime("%Y%m%dT%H%M%S")


def _format_offset(offset: timedelta) -> str:
    total = int(offset.total_seconds() // 60)
    sign = "+" if total >= 0 else "-"
    h, m = divmod(abs(total), 60)
    return f"{sign}{h:02d}{m:02d}"


# ---------------------------------------------------------------------------
# VTIMEZONE from zoneinfo
# ---------------------------------------------------------------------------

def _offset_at(tz: ZoneInfo, at: datetime) -> timedelta:
    return at.astimezone(tz).utcoffset()


def _transitions(tz: ZoneInfo, year: int) -> list[tuple[datetime, timedelta, timedelta]]:
    """(utc instant, offset before, offset after) for each change in ``year``."""
    found = []
    t = datetime(year, 1, 1, tzinfo=timezone.utc)
    prev = _offset_at(tz, t)
    while t.year == year:
        nxt = t + timedelta(days=1)
        offset = _offset_at(tz, nxt)
        if offset != prev:
            lo, hi = 0, 24 * 60
            while hi - lo > 1:
                mid = (lo + hi) // 2
                if _offset_at(tz, t + timedelta(minutes=mid)) == prev:
                    lo = mid
                else:
                    hi = mid
            found.append((t + timedelta(minutes=hi), prev, offset))
            prev = offset
        t = nxt
    return found


def build_vtimezone(tzid: str, years: list[int]) -> str:
    tz = ZoneInfo(tzid)
    first = min(years)
    base_at = datetime(first, 1, 1, tzinfo=timezone.utc)
    base_offset = _offset_at(tz, base_at)
    base_kind = "DAYLIGHT" if base_at.astimezone(tz).dst() else "STANDARD"

    lines = [
        "BEGIN:VTIMEZONE",
        f"TZID:{tzid}",
        f"BEGIN:{base_kind}",
        "DTSTART:19700101T000000",
        f"TZOFFSETFROM:{_format_offset(base_offset)}",
        f"TZOFFSETTO:{_format_offset(base_offset)}",
        f"TZNAME:{base_at.astimezone(tz).tzname()}",
        f"END:{base_kind}",
    ]
    for year in sorted(set(years)):
        for instant, before, after in _transitions(tz, year):
            local = instant.astimezone(tz)
            kind = "DAYLIGHT" if local.dst() else "STANDARD"
            # Observance onset is given in the wall time in force before it
            onset = (instant + before).replace(tzinfo=None)
            lines += [
                f"BEGIN:{kind}",
                f"DTSTART:{onset:%Y%m%dT%H%M%S}",
                f"TZOFFSETFROM:{_format_offset(before)}",
                f"TZOFFSETTO:{_format_offset(after)}",
                f"TZNAME:{local.tzname()}",
                f"END:{kind}",
            ]
    lines.append("END:VTIMEZONE")
    return "\r\n".join(lines)


# ---------------------------------------------------------------------------
# VEVENT builders
# ---------------------------------------------------------------------------

def _build_vevent(
    uid: str,
    stamp: str,
    summary: str,
    dtstart: datetime,
    dtend: datetime,
    tz: ZoneInfo,
    tzid: str,
    location: str | None,
    description: str | None,
    categories: str | None = None,
) -> str:
    lines = [
        "BEGIN:VEVENT",
        _fold(f"UID:{uid}"),
        f"DTSTAMP:{stamp}",
        _fold(f"DTSTART;TZID={tzid}:{_ical_local(dtstart, tz)}"),
        _fold(f"DTEND;TZID={tzid}:{_ical_local(dtend, tz)}"),
        _fold(f"SUMMARY:{_escape(summary)}"),
    ]
    if location:
        lines.append(_fold(f"LOCATION:{_escape(location)}"))
    if description:
        lines.append(_fold(f"DESCRIPTION:{_escape(description)}"))
    if categories:
        lines.append(_fold(f"CATEGORIES:{_escape(categories)}"))
    lines.append("END:VEVENT")
    return "\r\n".join(lines)


def _visit_description(visit: ScheduledVisit, member_names: dict[str, str]) -> str:
    place = visit.place
    parts = [
        f"Category: {place.category}",
        f"Stay: {visit.stay_minutes} min",
    ]
    if place.is_anchor:
        parts.append(f"Anchor: {place.anchor_role}")
    else:
        member = member_names.get(place.member_id or "", "") or place.member_id or "unknown"
        parts.append(f"Added by: {member}")
        parts.append(f"Wish level: {place.wish_level}/5")
    parts.append(f"Maps: https://maps.google.com/?q={place.latitude:.6f},{place.longitude:.6f}")
    return "\n".join(parts)


def _visit_event(trip_id: str, visit: ScheduledVisit, stamp: str, tz: ZoneInfo, tzid: str, member_names: dict[str, str]) -> str:
    place = visit.place
    return _build_vevent(
        uid=f"{trip_id}-d{visit.day_index}-visit-{place.id}@{_UID_DOMAIN}",
        stamp=stamp,
        summary=place.name or place.id,
        dtstart=visit.arrival_time,
        dtend=visit.departure_time,
        tz=tz,
        tzid=tzid,
        location=f"{place.latitude:.6f},{place.longitude:.6f}",
        description=_visit_description(visit, member_names),
        categories=place.category,
    )


def _meal_event(trip_id: str, day: DaySchedule, meal: MealBreak, stamp: str, tz: ZoneInfo, tzid: str) -> str:
    location = None
    if meal.latitude is not None and meal.longitude is not None:
        location = f"{meal.latitude:.6f},{meal.longitude:.6f}"
    return _build_vevent(
        uid=f"{trip_id}-d{day.day_index}-meal-{meal.meal_type}@{_UID_DOMAIN}",
        stamp=stamp,
        summary=meal.meal_type.capitalize(),
        dtstart=meal.start_time,
        dtend=meal.end_time,
        tz=tz,
        tzid=tzid,
        location=location,
        description=f"Duration: {meal.duration_minutes} min\nEstimated cost: {meal.estimated_cost:g}",
        categories="meal",
    )


def _leg_event(
    trip_id: str,
    day: DaySchedule,
    leg: TransportLeg,
    names: dict[str, str],
    stamp: str,
    tz: ZoneInfo,
    tzid: str,
) -> str:
    label = _MODE_LABELS.get(leg.mode, leg.mode)
    origin = names.get(leg.from_place_id, leg.from_place_id)
    target = names.get(leg.to_place_id, leg.to_place_id)
    return _build_vevent(
        uid=f"{trip_id}-d{day.day_index}-leg-{leg.from_place_id}-{leg.to_place_id}@{_UID_DOMAIN}",
        stamp=stamp,
        summary=f"{label}: {origin} to {target}",
        dtstart=leg.departure_time,
        dtend=leg.arrival_time,
        tz=tz,
        tzid=tzid,
        location=None,
        description=(
            f"Mode: {leg.mode}\nDistance: {leg.distance_km:.1f} km\n"
            f"Duration: {leg.duration_minutes} min\nEstimated cost: {leg.estimated_cost:g}"
        ),
        categories="transport",
    )


# ---------------------------------------------------------------------------
# Public entry
# ---------------------------------------------------------------------------

def build_calendar(
    schedule: TripSchedule,
    member_names: dict[str, str] | None = None,
    calendar_name: str | None = None,
) -> str:
    """Render ``schedule`` as an iCalendar document (CRLF line endings)."""
    member_names = member_names or {}
    tzid = schedule.settings.get("timezone") or "UTC"
    tz = ZoneInfo(tzid)
    leg_min = schedule.settings.get("calendarLegMinMinutes", _DEFAULT_LEG_MIN_MINUTES)
    stamp = _ical_utc(schedule.generated_at or datetime(1970, 1, 1, tzinfo=timezone.utc))

    years = sorted({day.date.year for day in schedule.days}) or [
        (schedule.generated_at or datetime.now(timezone.utc)).year
    ]
    names = {v.id: v.place.name or v.id for v in schedule.visits()}

    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        f"PRODID:{_PRODID}",
        "CALSCALE:GREGORIAN",
        "METHOD:PUBLISH",
        _fold(f"X-WR-CALNAME:{_escape(calendar_name or f'Trip {schedule.trip_id}')}"),
        _fold(f"X-WR-TIMEZONE:{tzid}"),
        build_vtimezone(tzid, years),
    ]

    for day in schedule.days:
        if day.failed:
            continue
        for visit in day.visits:
            lines.append(_visit_event(schedule.trip_id, visit, stamp, tz, tzid, member_names))
        for meal in day.meals:
            lines.append(_meal_event(schedule.trip_id, day, meal, stamp, tz, tzid))
        for leg in day.legs:
            if leg.duration_minutes >= leg_min:
                lines.append(_leg_event(schedule.trip_id, day, leg, names, stamp, tz, tzid))

    lines.append("END:VCALENDAR")
    return "\r\n".join(lines) + "\r\n"

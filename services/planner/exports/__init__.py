# exports package - JSON document and iCalendar renderings of a TripSchedule
from services.planner.exports.document import DocumentFormatError, dumps, export_document, loads, parse_document
from services.planner.exports.ical import build_calendar

__all__ = [
    "DocumentFormatError",
    "build_calendar",
    "dumps",
    "export_document",
    "loads",
    "parse_document",
]

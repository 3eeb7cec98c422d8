"""
Structured JSON export of a TripSchedule.

The document wraps TripSchedule.to_dict() with a format tag and version so
clients can reject documents they do not understand:

    {
        "format": "voyage-schedule",
        "version": 1,
        "schedule": { ...TripSchedule.to_dict()... }
    }

parse_document(export_document(s)) rebuilds an equal TripSchedule.
"""

from __future__ import annotations

import json
from typing import Any

from services.planner.optimization.types import TripSchedule

DOCUMENT_FORMAT = "voyage-schedule"
DOCUMENT_VERSION = 1


class DocumentFormatError(ValueError):
    pass


def export_document(schedule: TripSchedule) -> dict[str, Any]:
    return {
        "format": DOCUMENT_FORMAT,
        "version": DOCUMENT_VERSION,
        "schedule": schedule.to_dict(),
    }


def dumps(schedule: TripSchedule, indent: int | None = None) -> str:
    return json.dumps(export_document(schedule), ensure_ascii=False, indent=indent)


def parse_document(doc: dict[str, Any]) -> TripSchedule:
    if doc.get("format") != DOCUMENT_FORMAT:
        raise DocumentFormatError(f"unknown document format: {doc.get('format')!r}")
    if doc.get("version") != DOCUMENT_VERSION:
        raise DocumentFormatError(f"unsupported document version: {doc.get('version')!r}")
    try:
        return TripSchedule.from_dict(doc["schedule"])
    except (KeyError, TypeError, ValueError) as exc:
        raise DocumentFormatError(f"malformed schedule: {exc}") from exc


def loads(text: str) -> TripSchedule:
    try:
        doc = json.loads(text)
    except ValueError as exc:
        raise DocumentFormatError(f"not JSON: {exc}") from exc
    if not isinstance(doc, dict):
        raise DocumentFormatError("document must be a JSON object")
    return parse_document(doc)

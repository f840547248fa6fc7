from __future__ import annotations

import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any, Iterator, Optional

from bson import ObjectId


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Mongo hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def serialize_doc(doc: Any) -> Any:
    """Recursively convert MongoDB docs into JSON-serializable structures."""
    if doc is None:
        return None

    if isinstance(doc, ObjectId):
        return str(doc)

    if isinstance(doc, datetime):
        return as_utc(doc).isoformat()

    if isinstance(doc, date):
        return doc.isoformat()

    if isinstance(doc, list):
        return [serialize_doc(x) for x in doc]

    if isinstance(doc, dict):
        out: dict[str, Any] = {}
        for k, v in doc.items():
            if k == "_id":
                out["id"] = serialize_doc(v)
            else:
                out[k] = serialize_doc(v)
        return out

    return doc


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def parse_day(value: Any) -> date:
    """Accept date, datetime or YYYY-MM-DD and return a date."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def iter_nights(start: date, end: date) -> Iterator[date]:
    """Yield each night in the half-open range [start, end)."""
    d = start
    while d < end:
        yield d
        d += timedelta(days=1)


def ranges_overlap(a_start: str, a_end: str, b_start: str, b_end: str) -> bool:
    """Half-open overlap on ISO day strings (lexicographic order == date order)."""
    return a_start < b_end and b_start < a_end


def js_day_of_week(d: date) -> int:
    """0 = Sunday ... 6 = Saturday, the convention used by stored day-of-week rules."""
    return (d.weekday() + 1) % 7

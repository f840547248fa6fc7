from __future__ import annotations

import json
import math
from typing import Any, Dict, List, Union

from pydantic import ValidationError

from otasync.constants.channels import (
    CHANNELS,
    EVENT_DATA_REQUIRED,
    EVENT_TYPES,
    MAX_PAYLOAD_BYTES,
    ROOM_SCOPED_EVENTS,
)
from otasync.errors import AppError
from otasync.schemas.events import EventPayload
from otasync.utils import parse_day

RESTRICTION_KEYS = ("stop_sell", "closed_to_arrival", "closed_to_departure", "min_stay", "max_stay")


def _invalid(message: str, **details: Any) -> AppError:
    return AppError(status_code=422, code="invalid_payload", message=message, details=details)


def _check_nightly(items: Any, key: str, start: str, end: str) -> List[str]:
    problems: List[str] = []
    if not isinstance(items, list) or not items:
        return [f"data.{key} must be a non-empty list"]
    for i, item in enumerate(items):
        if not isinstance(item, dict) or "date" not in item:
            problems.append(f"data.{key}[{i}] must be an object with a date")
            continue
        try:
            day = parse_day(item["date"]).isoformat()
        except (TypeError, ValueError):
            problems.append(f"data.{key}[{i}].date is not a valid date")
            continue
        if not (start <= day < end):
            problems.append(f"data.{key}[{i}].date {day} is outside date_range")
    return problems


def _check_rates(data: Dict[str, Any], start: str, end: str) -> List[str]:
    items = data.get("rates")
    problems = _check_nightly(items, "rates", start, end)
    for i, item in enumerate(items if isinstance(items, list) else []):
        if not isinstance(item, dict):
            continue
        rate = item.get("rate")
        if isinstance(rate, bool) or not isinstance(rate, (int, float, str)):
            problems.append(f"data.rates[{i}].rate must be a number")
            continue
        try:
            value = float(rate)
        except ValueError:
            problems.append(f"data.rates[{i}].rate must be a number")
            continue
        if not math.isfinite(value):
            problems.append(f"data.rates[{i}].rate must be a finite number")
        elif value < 0:
            problems.append(f"data.rates[{i}].rate must be >= 0")
    return problems


def _check_availability(data: Dict[str, Any], start: str, end: str) -> List[str]:
    items = data.get("availability")
    problems = _check_nightly(items, "availability", start, end)
    for i, item in enumerate(items if isinstance(items, list) else []):
        if not isinstance(item, dict):
            continue
        available = item.get("available")
        if isinstance(available, bool) or not isinstance(available, int) or available < 0:
            problems.append(f"data.availability[{i}].available must be an integer >= 0")
    return problems


def _check_restrictions(data: Dict[str, Any], start: str, end: str) -> List[str]:
    items = data.get("restrictions")
    problems = _check_nightly(items, "restrictions", start, end)
    for i, item in enumerate(items if isinstance(items, list) else []):
        if isinstance(item, dict) and not any(item.get(k) is not None for k in RESTRICTION_KEYS):
            problems.append(f"data.restrictions[{i}] sets none of {', '.join(RESTRICTION_KEYS)}")
    return problems


def _check_stop_sell(data: Dict[str, Any], start: str, end: str) -> List[str]:
    if not isinstance(data.get("stop_sell"), bool):
        return ["data.stop_sell must be a boolean"]
    return []


def _check_content(data: Dict[str, Any], start: str, end: str) -> List[str]:
    content = data.get("content")
    if not isinstance(content, dict):
        return ["data.content must be an object"]
    translations = content.get("translations")
    if not isinstance(translations, dict) or not translations:
        return ["data.content.translations must map language codes to text"]
    return []


def _check_reservation_ref(data: Dict[str, Any], start: str, end: str) -> List[str]:
    ref = data.get("external_reservation_ref")
    if not isinstance(ref, str) or not ref.strip():
        return ["data.external_reservation_ref must be a non-empty string"]
    return []


def _check_modification(data: Dict[str, Any], start: str, end: str) -> List[str]:
    problems = _check_reservation_ref(data, start, end)
    if not isinstance(data.get("change_set"), dict) or not data.get("change_set"):
        problems.append("data.change_set must be a non-empty object")
    return problems


_DATA_CHECKS = {
    "rate_update": _check_rates,
    "availability_update": _check_availability,
    "restriction_update": _check_restrictions,
    "stop_sell_update": _check_stop_sell,
    "room_type_update": _check_content,
    "booking_modification": _check_modification,
    "cancellation": _check_reservation_ref,
    "reservation_ack": _check_reservation_ref,
}


def _check_overrides(data: Dict[str, Any]) -> List[str]:
    overrides = data.get("channel_overrides")
    if overrides is None:
        return []
    if not isinstance(overrides, dict):
        return ["data.channel_overrides must be an object keyed by channel"]
    unknown = [c for c in overrides if c not in CHANNELS]
    if unknown:
        return [f"data.channel_overrides has unknown channels: {', '.join(unknown)}"]
    return []


def normalize_payload(event_type: str, payload: Union[EventPayload, Dict[str, Any]]) -> Dict[str, Any]:
    """Validate an event payload and return its stored form.

    Dates are stored as YYYY-MM-DD strings so overlap checks can run as
    plain range queries.
    """

    if event_type not in EVENT_TYPES:
        raise _invalid(f"unknown event_type '{event_type}'", event_type=event_type)

    if not isinstance(payload, EventPayload):
        try:
            payload = EventPayload.model_validate(payload)
        except ValidationError as exc:
            raise _invalid(
                "event payload failed validation.",
                errors=exc.errors(include_url=False, include_context=False),
            )

    doc = payload.model_dump(mode="json")
    if event_type in ROOM_SCOPED_EVENTS and not doc.get("room_type_id"):
        raise _invalid(f"{event_type} requires payload.room_type_id", event_type=event_type)

    data = doc.get("data") or {}
    missing = [k for k in EVENT_DATA_REQUIRED.get(event_type, ()) if k not in data]
    if missing:
        raise _invalid(
            f"{event_type} payload is missing data keys: {', '.join(missing)}",
            event_type=event_type,
            missing=missing,
        )

    start = doc["date_range"]["start"]
    end = doc["date_range"]["end"]
    problems = _DATA_CHECKS[event_type](data, start, end) + _check_overrides(data)
    if problems:
        raise _invalid(f"{event_type} payload is malformed.", event_type=event_type, problems=problems)

    size = len(json.dumps(doc, default=str).encode("utf-8"))
    if size > MAX_PAYLOAD_BYTES:
        raise _invalid(
            "event payload exceeds the size limit.",
            size_bytes=size,
            limit_bytes=MAX_PAYLOAD_BYTES,
        )
    return doc

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from otasync.constants.channels import ALL_CHANNELS_SENTINEL
from otasync.errors import AppError
from otasync.schemas.events import EnqueueOptions, EventSource
from otasync.services.event_queue import EnqueueOutcome, EventQueue
from otasync.services.event_validation import normalize_payload
from otasync.utils import iter_nights, new_id, now_utc, parse_day

logger = logging.getLogger("otasync.producers")

Channels = Union[str, Sequence[str]]
DateLike = Union[str, date]
# A flat per-night value, {date: value} or [{"date": ..., key: value}]
NightlyValues = Union[int, float, str, Mapping[Any, Any], Sequence[Mapping[str, Any]]]


def _date_range(start: DateLike, end: DateLike) -> Dict[str, str]:
    return {"start": parse_day(start).isoformat(), "end": parse_day(end).isoformat()}


def _default_stay_range() -> Dict[str, str]:
    today = now_utc().date()
    return {"start": today.isoformat(), "end": (today + timedelta(days=1)).isoformat()}


def expand_nightly(values: NightlyValues, start: DateLike, end: DateLike, key: str) -> List[Dict[str, Any]]:
    """Normalize producer input into `[{"date": ..., key: value}]` for every night given."""

    if isinstance(values, Mapping):
        return [{"date": parse_day(d).isoformat(), key: v} for d, v in sorted(values.items(), key=lambda kv: str(kv[0]))]
    if isinstance(values, (list, tuple)):
        out = []
        for item in values:
            if not isinstance(item, Mapping) or "date" not in item or key not in item:
                raise AppError(
                    status_code=422,
                    code="invalid_payload",
                    message=f"each nightly entry needs 'date' and '{key}'",
                    details={"entry": dict(item) if isinstance(item, Mapping) else item},
                )
            out.append({**item, "date": parse_day(item["date"]).isoformat()})
        return out
    return [{"date": d.isoformat(), key: values} for d in iter_nights(parse_day(start), parse_day(end))]


def rate_correlation_id(hotel_id: str, room_type_id: str, start: DateLike, end: DateLike) -> str:
    return f"rates:{hotel_id}:{room_type_id}:{parse_day(start).isoformat()}:{parse_day(end).isoformat()}"


class EventProducers:
    """Typed entry points the PMS modules call to get changes onto channels.

    Every call returns as soon as the event is durably enqueued; dispatch
    happens on the worker pool.
    """

    def __init__(self, queue: EventQueue) -> None:
        self.queue = queue

    async def _submit(
        self,
        event_type: str,
        payload: Dict[str, Any],
        *,
        correlation_id: Optional[str] = None,
        batch_id: Optional[str] = None,
        priority: Optional[int] = None,
        source: EventSource = "system",
        created_by: Optional[str] = None,
    ) -> EnqueueOutcome:
        options = EnqueueOptions(
            priority=priority,
            correlation_id=correlation_id,
            batch_id=batch_id,
            source=source,
            created_by=created_by,
        )
        return await self.queue.enqueue(event_type, payload, options)

    async def submit_rate_update(
        self,
        *,
        hotel_id: str,
        room_type_id: str,
        start: DateLike,
        end: DateLike,
        new_rates: NightlyValues,
        channels: Channels = ALL_CHANNELS_SENTINEL,
        rate_plan_id: Optional[str] = None,
        channel_overrides: Optional[Dict[str, Any]] = None,
        **options: Any,
    ) -> EnqueueOutcome:
        data: Dict[str, Any] = {"rates": expand_nightly(new_rates, start, end, "rate")}
        if rate_plan_id:
            data["rate_plan_id"] = rate_plan_id
        if channel_overrides:
            data["channel_overrides"] = channel_overrides
        payload = {
            "hotel_id": hotel_id,
            "room_type_id": room_type_id,
            "date_range": _date_range(start, end),
            "channels": channels,
            "data": data,
        }
        return await self._submit("rate_update", payload, **options)

    async def submit_availability_update(
        self,
        *,
        hotel_id: str,
        room_type_id: str,
        start: DateLike,
        end: DateLike,
        totals: NightlyValues,
        channels: Channels = ALL_CHANNELS_SENTINEL,
        **options: Any,
    ) -> EnqueueOutcome:
        payload = {
            "hotel_id": hotel_id,
            "room_type_id": room_type_id,
            "date_range": _date_range(start, end),
            "channels": channels,
            "data": {"availability": expand_nightly(totals, start, end, "available")},
        }
        return await self._submit("availability_update", payload, **options)

    async def submit_restriction_update(
        self,
        *,
        hotel_id: str,
        room_type_id: str,
        start: DateLike,
        end: DateLike,
        channels: Channels = ALL_CHANNELS_SENTINEL,
        stop_sell: Optional[bool] = None,
        cta: Optional[bool] = None,
        ctd: Optional[bool] = None,
        min_stay: Optional[int] = None,
        max_stay: Optional[int] = None,
        restrictions: Optional[Sequence[Mapping[str, Any]]] = None,
        **options: Any,
    ) -> EnqueueOutcome:
        """Same restriction on every night, or explicit per-night `restrictions`."""

        if restrictions is not None:
            nights = [{**r, "date": parse_day(r["date"]).isoformat()} for r in restrictions]
        else:
            values = {
                "stop_sell": stop_sell,
                "closed_to_arrival": cta,
                "closed_to_departure": ctd,
                "min_stay": min_stay,
                "max_stay": max_stay,
            }
            values = {k: v for k, v in values.items() if v is not None}
            nights = [{"date": d.isoformat(), **values} for d in iter_nights(parse_day(start), parse_day(end))]
        payload = {
            "hotel_id": hotel_id,
            "room_type_id": room_type_id,
            "date_range": _date_range(start, end),
            "channels": channels,
            "data": {"restrictions": nights},
        }
        return await self._submit("restriction_update", payload, **options)

    async def submit_stop_sell(
        self,
        *,
        hotel_id: str,
        start: DateLike,
        end: DateLike,
        stop_sell: bool = True,
        room_type_id: Optional[str] = None,
        channels: Channels = ALL_CHANNELS_SENTINEL,
        **options: Any,
    ) -> EnqueueOutcome:
        """Close (or reopen) sales; without a room type it covers every mapped room."""

        payload = {
            "hotel_id": hotel_id,
            "room_type_id": room_type_id,
            "date_range": _date_range(start, end),
            "channels": channels,
            "data": {"stop_sell": bool(stop_sell)},
        }
        return await self._submit("stop_sell_update", payload, **options)

    async def submit_room_content_update(
        self,
        *,
        hotel_id: str,
        room_type_id: str,
        content: Dict[str, Any],
        languages: Optional[Sequence[str]] = None,
        channels: Channels = ALL_CHANNELS_SENTINEL,
        start: Optional[DateLike] = None,
        end: Optional[DateLike] = None,
        **options: Any,
    ) -> EnqueueOutcome:
        data: Dict[str, Any] = {"content": content}
        if languages:
            data["languages"] = [code.upper() for code in languages]
        payload = {
            "hotel_id": hotel_id,
            "room_type_id": room_type_id,
            "date_range": _date_range(start, end) if start and end else _default_stay_range(),
            "channels": channels,
            "data": data,
        }
        return await self._submit("room_type_update", payload, **options)

    async def submit_booking_modification(
        self,
        *,
        hotel_id: str,
        external_reservation_ref: str,
        change_set: Dict[str, Any],
        channels: Channels = ALL_CHANNELS_SENTINEL,
        start: Optional[DateLike] = None,
        end: Optional[DateLike] = None,
        **options: Any,
    ) -> EnqueueOutcome:
        payload = {
            "hotel_id": hotel_id,
            "date_range": _date_range(start, end) if start and end else _default_stay_range(),
            "channels": channels,
            "data": {"external_reservation_ref": external_reservation_ref, "change_set": change_set},
        }
        return await self._submit("booking_modification", payload, **options)

    async def submit_cancellation(
        self,
        *,
        hotel_id: str,
        external_reservation_ref: str,
        channels: Channels = ALL_CHANNELS_SENTINEL,
        reason: Optional[str] = None,
        start: Optional[DateLike] = None,
        end: Optional[DateLike] = None,
        **options: Any,
    ) -> EnqueueOutcome:
        data: Dict[str, Any] = {"external_reservation_ref": external_reservation_ref}
        if reason:
            data["reason"] = reason
        payload = {
            "hotel_id": hotel_id,
            "date_range": _date_range(start, end) if start and end else _default_stay_range(),
            "channels": channels,
            "data": data,
        }
        return await self._submit("cancellation", payload, **options)

    async def submit_rate_rollout(
        self,
        *,
        hotel_id: str,
        windows: Sequence[Mapping[str, Any]],
        channels: Channels = ALL_CHANNELS_SENTINEL,
        created_by: Optional[str] = None,
        batch_id: Optional[str] = None,
    ) -> tuple[str, List[EnqueueOutcome]]:
        """Bulk rate rollout (e.g. a new season).

        Each window is `{room_type_id, start, end, new_rates[, rate_plan_id]}`.
        One event per window and room type, sharing a batch_id; the correlation
        id is derived from the window so a re-run coalesces with events that
        are still pending.
        """

        items = []
        for window in windows:
            data: Dict[str, Any] = {
                "rates": expand_nightly(window["new_rates"], window["start"], window["end"], "rate")
            }
            if window.get("rate_plan_id"):
                data["rate_plan_id"] = window["rate_plan_id"]
            payload = {
                "hotel_id": hotel_id,
                "room_type_id": window["room_type_id"],
                "date_range": _date_range(window["start"], window["end"]),
                "channels": channels,
                "data": data,
            }
            correlation_id = rate_correlation_id(hotel_id, window["room_type_id"], window["start"], window["end"])
            items.append((payload, correlation_id))

        # Validate everything first so a bad window rejects the whole rollout.
        for payload, _ in items:
            normalize_payload("rate_update", payload)

        batch_id = batch_id or new_id("batch")
        outcomes = []
        for payload, correlation_id in items:
            options = EnqueueOptions(
                source="bulk_operation",
                batch_id=batch_id,
                correlation_id=correlation_id,
                created_by=created_by,
            )
            outcomes.append(await self.queue.enqueue("rate_update", payload, options))
        logger.info("rate rollout hotel=%s batch_id=%s events=%d", hotel_id, batch_id, len(outcomes))
        return batch_id, outcomes

"""Per-event fan-out to channel adapters.

A leased event is resolved to its target channels, each channel payload is
built from the mappings and configuration, and the matching adapter
capability is called under a per-event concurrency limit. Every channel
outcome is appended to the event as soon as it is known, so a worker that
dies mid-event leaves its partial results behind for the next owner.
"""

from __future__ import annotations

import asyncio
import logging
import time
import traceback
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Union

from motor.motor_asyncio import AsyncIOMotorDatabase

from otasync import config
from otasync.constants.channels import (
    EVENT_CAPABILITY,
    EVENT_RESOURCE,
    EVENT_RETRY_BASE_MS,
    MAX_RETRY_DELAY_MS,
)
from otasync.errors import FxUnavailableError, MissingTranslationError, SyncErrorCode
from otasync.metrics import track_channel_call
from otasync.services.channel_config_service import ChannelConfigService, channel_currency
from otasync.services.channel_payloads import ChannelPayloadLog
from otasync.services.channels.registry import ChannelAdapterRegistry, get_registry
from otasync.services.channels.types import AdapterContext, AdapterResult
from otasync.services.event_queue import EventQueue
from otasync.services.event_validation import RESTRICTION_KEYS
from otasync.services.fx import FXService, get_fx_service
from otasync.services.localization import (
    LocalizationService,
    default_translator,
    target_languages,
    validate_content,
)
from otasync.services.mapping_service import ChannelTarget, MappingService
from otasync.services.rate_transform import clamp_restrictions, nightly_rates
from otasync.services.sync_health import SyncHealthService
from otasync.utils import iter_nights, now_utc, parse_day

logger = logging.getLogger("otasync.dispatcher")

BOOKING_EVENTS = frozenset({"booking_modification", "cancellation", "reservation_ack"})
DEFAULT_CALL_TIMEOUT_MS = 30_000


@dataclass
class _Push:
    payload: Dict[str, Any]
    language: Optional[str] = None
    channel_language: Optional[str] = None


@dataclass
class _EventRun:
    event: Dict[str, Any]
    worker_id: str
    attempt_number: int
    semaphore: asyncio.Semaphore
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    # None while the worker still owns the event; else "cancelled", "lost", ...
    stop_status: Optional[str] = None
    results: List[Dict[str, Any]] = field(default_factory=list)
    unflushed: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def event_id(self) -> str:
        return self.event["_id"]

    @property
    def event_type(self) -> str:
        return self.event["event_type"]

    @property
    def payload(self) -> Dict[str, Any]:
        return self.event["payload"]

    @property
    def data(self) -> Dict[str, Any]:
        return self.payload.get("data") or {}

    def stop(self, status: str) -> None:
        if self.stop_status is None:
            self.stop_status = status
        self.cancel_event.set()


def settled_channels(event: Dict[str, Any]) -> Set[str]:
    """Channels whose latest result must not be retried: success, skip or a permanent failure."""

    latest: Dict[str, Dict[str, Any]] = {}
    for entry in event.get("results") or []:
        latest[entry["channel"]] = entry
    return {
        channel
        for channel, entry in latest.items()
        if entry["status"] in ("success", "skipped")
        or (entry["status"] == "failed" and not entry.get("retryable"))
    }


def _had_internal_error(event: Dict[str, Any], channel: str) -> bool:
    return any(
        r.get("channel") == channel and r.get("code") == SyncErrorCode.INTERNAL.value
        for r in event.get("results") or []
    )


def _timeout_ms(target: ChannelTarget) -> int:
    return int(((target.config or {}).get("integration") or {}).get("timeout_ms") or DEFAULT_CALL_TIMEOUT_MS)


def _day(value: Any) -> str:
    return str(value)[:10]


def _restriction_night(night: Dict[str, Any], rules: Dict[str, Any]) -> Dict[str, Any]:
    values = {k: night[k] for k in RESTRICTION_KEYS if night.get(k) is not None}
    return {"date": _day(night["date"]), **clamp_restrictions(values, rules)}


def _restriction_payload(
    room_mapping: Dict[str, Any],
    plans: List[Dict[str, Any]],
    nights: List[Dict[str, Any]],
) -> Dict[str, Any]:
    # Without rate mappings the restriction applies to the whole room.
    rate_plans: List[Optional[Dict[str, Any]]] = list(plans) or [None]
    return {
        "channel_room_id": room_mapping["channel_room_id"],
        "rate_plans": [
            {
                "channel_rate_plan_id": plan["channel_rate_plan_id"] if plan else None,
                "nights": [_restriction_night(n, (plan or {}).get("rules") or {}) for n in nights],
            }
            for plan in rate_plans
        ],
    }


class EventDispatcher:
    """Processes one leased event at a time for a worker."""

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        *,
        queue: Optional[EventQueue] = None,
        configs: Optional[ChannelConfigService] = None,
        mappings: Optional[MappingService] = None,
        registry: Optional[ChannelAdapterRegistry] = None,
        fx: Optional[FXService] = None,
        localization: Optional[LocalizationService] = None,
        health: Optional[SyncHealthService] = None,
        payloads: Optional[ChannelPayloadLog] = None,
        fanout: Optional[int] = None,
    ) -> None:
        self.db = db
        self.queue = queue or EventQueue(db)
        self.configs = configs or ChannelConfigService(db)
        self.mappings = mappings or MappingService(db, self.configs)
        self.registry = registry or get_registry()
        self.fx = fx or get_fx_service()
        self.localization = localization or LocalizationService(default_translator())
        self.health = health or SyncHealthService(db)
        self.payloads = payloads or ChannelPayloadLog(db)
        self.fanout = max(int(config.PER_HOTEL_FANOUT if fanout is None else fanout), 1)

    async def process(self, event: Dict[str, Any], worker_id: str) -> Optional[Dict[str, Any]]:
        """Dispatch a leased event and move it out of processing.

        Returns the event after complete/fail, or None when the lease was lost.
        """

        proc = event.get("processing") or {}
        run = _EventRun(
            event=event,
            worker_id=worker_id,
            attempt_number=int(proc.get("attempts") or 0) + 1,
            semaphore=asyncio.Semaphore(self.fanout),
        )

        settled = settled_channels(event)
        targets = [t for t in await self._resolve(run) if t.channel not in settled]
        if settled:
            logger.info("event=%s skipping already settled channels: %s", run.event_id, sorted(settled))

        # The lease was taken with the batch; restart its clock now that dispatch begins.
        lease_ms = max((_timeout_ms(t) for t in targets if t.resolvable), default=DEFAULT_CALL_TIMEOUT_MS)
        status = await self.queue.checkpoint(run.event_id, worker_id, lease_ms)
        if status != "processing":
            run.stop(status)

        outcomes = await asyncio.gather(*(self._run_channel(run, t) for t in targets), return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

        return await self._finish(run, targets)

    # --- resolution -----------------------------------------------------

    async def _resolve(self, run: _EventRun) -> List[ChannelTarget]:
        payload = run.payload
        hotel_wide_stop_sell = run.event_type == "stop_sell_update" and not payload.get("room_type_id")
        return await self.mappings.resolve_targets(
            payload["hotel_id"],
            payload.get("room_type_id"),
            payload.get("channels") or "all",
            require_room_mapping=run.event_type not in BOOKING_EVENTS and not hotel_wide_stop_sell,
            use_cache=True,
        )

    # --- per channel ----------------------------------------------------

    async def _run_channel(self, run: _EventRun, target: ChannelTarget) -> None:
        async with run.semaphore:
            if not target.resolvable:
                entry: Optional[Dict[str, Any]] = self._entry(
                    run, target.channel, AdapterResult.skip(target.skip_code or "", target.skip_reason or "")
                )
            elif run.stop_status is not None:
                entry = self._stopped_entry(run, target.channel)
            else:
                entry = await self._call_channel(run, target)
            if entry is not None:
                await self._record(run, target, entry)

    def _stopped_entry(self, run: _EventRun, channel: str) -> Optional[Dict[str, Any]]:
        if run.stop_status == "lost":
            return None
        return self._entry(
            run,
            channel,
            AdapterResult.skip(SyncErrorCode.CANCELLED.value, f"event {run.stop_status} before this channel was called"),
        )

    async def _call_channel(self, run: _EventRun, target: ChannelTarget) -> Optional[Dict[str, Any]]:
        timeout_ms = _timeout_ms(target)
        started = time.monotonic()
        try:
            pushes = await self._build_pushes(run, target)
            if isinstance(pushes, AdapterResult):
                result: Optional[AdapterResult] = pushes
            else:
                result = await self._send_pushes(run, target, pushes, timeout_ms)
        except FxUnavailableError as e:
            result = AdapterResult.failure(
                SyncErrorCode.FX_UNAVAILABLE.value,
                str(e),
                retryable=True,
                context={"base": e.base, "quote": e.quote},
            )
        except MissingTranslationError as e:
            result = AdapterResult.failure(
                SyncErrorCode.MISSING_TRANSLATION.value,
                str(e),
                retryable=False,
                context={"language": e.language},
            )
        except Exception as e:
            logger.error(
                "event=%s channel=%s unexpected error: %s", run.event_id, target.channel, e, exc_info=True
            )
            result = AdapterResult.failure(
                SyncErrorCode.INTERNAL.value,
                f"{type(e).__name__}: {e}",
                retryable=True,
                context={"traceback": traceback.format_exc()[-4000:]},
            )

        if result is None:
            return self._stopped_entry(run, target.channel)
        elapsed_ms = int((time.monotonic() - started) * 1000)
        return self._entry(run, target.channel, result, elapsed_ms)

    async def _send_pushes(
        self,
        run: _EventRun,
        target: ChannelTarget,
        pushes: List[_Push],
        timeout_ms: int,
    ) -> Optional[AdapterResult]:
        """Call the adapter once per push; None when the event left processing."""

        adapter = self.registry.get(target.channel)
        if adapter is None:
            return AdapterResult.skip(SyncErrorCode.NOT_SUPPORTED.value, "no adapter registered")
        capability = getattr(adapter, EVENT_CAPABILITY[run.event_type])

        responses: List[Dict[str, Any]] = []
        latency_ms = 0
        skipped: Optional[AdapterResult] = None
        for push in pushes:
            status = await self.queue.checkpoint(run.event_id, run.worker_id, timeout_ms)
            if status != "processing":
                run.stop(status)
                return None

            ctx = self._context(run, target, push, timeout_ms)
            try:
                result = await asyncio.wait_for(capability(ctx, push.payload), timeout=ctx.timeout_s)
            except asyncio.TimeoutError:
                result = AdapterResult.failure(
                    SyncErrorCode.NETWORK_TIMEOUT.value,
                    f"{target.channel} call exceeded {timeout_ms} ms",
                    retryable=True,
                    latency_ms=timeout_ms,
                )
            await self.payloads.record_outbound(
                event=run.event,
                channel=target.channel,
                attempt_number=run.attempt_number,
                request=push.payload,
                result=result,
                language=push.language,
            )
            latency_ms += result.latency_ms

            if result.skipped:
                skipped = result
                continue
            if not result.ok:
                if result.error is not None and result.error.code == SyncErrorCode.CANCELLED.value:
                    return None
                result.latency_ms = latency_ms
                if push.language and result.error is not None:
                    result.error.context.setdefault("language", push.language)
                return result
            responses.append(result.response or {})

        if not responses:
            return skipped or AdapterResult.skip(SyncErrorCode.NOT_SUPPORTED.value, "nothing to send")
        if len(responses) == 1:
            return AdapterResult.success(responses[0], latency_ms=latency_ms)
        return AdapterResult.success({"pushes": len(responses), "responses": responses}, latency_ms=latency_ms)

    def _context(self, run: _EventRun, target: ChannelTarget, push: _Push, timeout_ms: int) -> AdapterContext:
        cfg = target.config or {}
        integration = cfg.get("integration") or {}
        languages = cfg.get("languages") or {}
        return AdapterContext(
            hotel_id=run.payload["hotel_id"],
            channel=target.channel,
            credentials=dict(integration.get("credentials") or {}),
            endpoints=dict(integration.get("endpoints") or {}),
            language=push.language or languages.get("primary_language") or "EN",
            channel_language=push.channel_language,
            currency=channel_currency(cfg) or "USD",
            timeout_ms=timeout_ms,
            batch_size=int(integration.get("batch_size") or 100),
            event_id=run.event_id,
            correlation_id=run.event.get("correlation_id"),
            cancel_event=run.cancel_event,
        )

    def _entry(
        self,
        run: _EventRun,
        channel: str,
        result: AdapterResult,
        elapsed_ms: int = 0,
    ) -> Dict[str, Any]:
        error = result.error
        if result.skipped:
            status = "skipped"
        elif result.ok:
            status = "success"
        else:
            status = "failed"

        code = error.code if error is not None else None
        retryable: Optional[bool] = None
        if status == "failed":
            code = code or SyncErrorCode.INTERNAL.value
            retryable = bool(error.retryable) if error is not None else True
            # internal errors get exactly one retry per channel
            if code == SyncErrorCode.INTERNAL.value and _had_internal_error(run.event, channel):
                retryable = False

        entry: Dict[str, Any] = {
            "channel": channel,
            "status": status,
            "attempt_number": run.attempt_number,
            "code": code,
            "message": error.message if error is not None else None,
            "retryable": retryable,
            "response": result.response,
            "processing_time_ms": int(result.latency_ms or elapsed_ms),
            "timestamp": now_utc(),
            "context": dict(error.context) if error is not None else {},
        }
        if error is not None and error.retry_after_ms is not None:
            entry["retry_after_ms"] = int(error.retry_after_ms)
        return entry

    async def _record(self, run: _EventRun, target: ChannelTarget, entry: Dict[str, Any]) -> None:
        run.results.append(entry)
        track_channel_call(target.channel, entry["status"], entry["code"] or "", entry["processing_time_ms"])
        log = logger.warning if entry["status"] == "failed" else logger.info
        log(
            "event=%s type=%s hotel=%s channel=%s status=%s code=%s retryable=%s latency_ms=%s",
            run.event_id,
            run.event_type,
            run.payload["hotel_id"],
            target.channel,
            entry["status"],
            entry["code"],
            entry["retryable"],
            entry["processing_time_ms"],
        )

        if not await self.queue.record_results(run.event_id, run.worker_id, [entry]):
            run.unflushed.append(entry)

        if target.config is not None and entry["code"] != SyncErrorCode.CANCELLED.value:
            await self.health.record(
                run.payload["hotel_id"],
                target.channel,
                entry,
                resource=EVENT_RESOURCE[run.event_type],
            )

    # --- payload building -----------------------------------------------

    async def _build_pushes(self, run: _EventRun, target: ChannelTarget) -> Union[List[_Push], AdapterResult]:
        builders = {
            "rate_update": self._rate_pushes,
            "availability_update": self._availability_pushes,
            "restriction_update": self._restriction_pushes,
            "stop_sell_update": self._stop_sell_pushes,
            "room_type_update": self._content_pushes,
            "booking_modification": self._booking_pushes,
            "cancellation": self._booking_pushes,
            "reservation_ack": self._booking_pushes,
        }
        return await builders[run.event_type](run, target)

    def _overrides(self, run: _EventRun, channel: str) -> Dict[str, Any]:
        return (run.data.get("channel_overrides") or {}).get(channel) or {}

    async def _rate_plans(self, run: _EventRun, room_mapping: Dict[str, Any]) -> List[Dict[str, Any]]:
        plans = await self.mappings.rate_plans_for(room_mapping)
        wanted = run.data.get("rate_plan_id")
        if wanted:
            plans = [p for p in plans if p.get("pms_rate_plan_id") == wanted]
        return plans

    async def _rate_pushes(self, run: _EventRun, target: ChannelTarget) -> Union[List[_Push], AdapterResult]:
        room = target.room_mapping or {}
        nights = self._overrides(run, target.channel).get("rates") or run.data["rates"]
        plans = await self._rate_plans(run, room)
        if not plans:
            return AdapterResult.skip(SyncErrorCode.MAPPING_MISSING.value, "no_rate_mapping")

        currency = await self.fx.currency_plan(target.config or {})
        room_modifier = (room.get("settings") or {}).get("rate_modifier")
        payload = {
            "channel_room_id": room["channel_room_id"],
            "currency": currency.target_currency,
            "rate_plans": [
                {
                    "channel_rate_plan_id": plan["channel_rate_plan_id"],
                    "nights": nightly_rates(plan, nights, room_rate_modifier=room_modifier, currency=currency),
                }
                for plan in plans
            ],
        }
        return [_Push(payload)]

    async def _availability_pushes(self, run: _EventRun, target: ChannelTarget) -> List[_Push]:
        room = target.room_mapping or {}
        nights = self._overrides(run, target.channel).get("availability") or run.data["availability"]
        payload = {
            "channel_room_id": room["channel_room_id"],
            "nights": [{"date": _day(n["date"]), "available": int(n["available"])} for n in nights],
        }
        return [_Push(payload)]

    async def _restriction_pushes(self, run: _EventRun, target: ChannelTarget) -> List[_Push]:
        room = target.room_mapping or {}
        nights = self._overrides(run, target.channel).get("restrictions") or run.data["restrictions"]
        plans = await self._rate_plans(run, room)
        return [_Push(_restriction_payload(room, plans, nights))]

    async def _stop_sell_pushes(self, run: _EventRun, target: ChannelTarget) -> Union[List[_Push], AdapterResult]:
        if target.room_mapping:
            rooms = [target.room_mapping]
        else:
            rooms = await self.mappings.active_room_mappings_for_hotel(run.payload["hotel_id"], target.channel)
        if not rooms:
            return AdapterResult.skip(SyncErrorCode.MAPPING_MISSING.value, "no_mapping")

        date_range = run.payload["date_range"]
        stop_sell = bool(run.data["stop_sell"])
        nights = [
            {"date": d.isoformat(), "stop_sell": stop_sell}
            for d in iter_nights(parse_day(date_range["start"]), parse_day(date_range["end"]))
        ]
        pushes = []
        for room in rooms:
            plans = await self._rate_plans(run, room)
            pushes.append(_Push(_restriction_payload(room, plans, nights)))
        return pushes

    async def _content_pushes(self, run: _EventRun, target: ChannelTarget) -> Union[List[_Push], AdapterResult]:
        cfg = target.config or {}
        room = target.room_mapping or {}
        requested = run.data.get("languages")
        languages = target_languages(cfg, requested)
        if not languages:
            return AdapterResult.failure(
                SyncErrorCode.MISSING_TRANSLATION.value,
                "none of the requested languages is active for this channel",
                retryable=False,
                context={"requested": requested},
            )

        pushes = []
        for language in languages:
            localized = await self.localization.localize(cfg, run.data["content"], language)
            problems = validate_content(cfg, localized)
            if problems:
                return AdapterResult.failure(
                    SyncErrorCode.VALIDATION_FAILED.value,
                    f"{language} content does not meet {target.channel} content rules",
                    retryable=False,
                    context={"language": language, "problems": problems},
                )
            pushes.append(
                _Push(
                    {"channel_room_id": room["channel_room_id"], **localized},
                    language=language,
                    channel_language=localized["channel_language"],
                )
            )
        return pushes

    async def _booking_pushes(self, run: _EventRun, target: ChannelTarget) -> List[_Push]:
        data = run.data
        ref = data["external_reservation_ref"]
        body: Dict[str, Any] = {"external_reservation_ref": ref}
        if run.event_type == "booking_modification":
            body["change_set"] = data["change_set"]
        elif run.event_type == "cancellation":
            body["reason"] = data.get("reason") or "hotel_cancelled"
        else:
            body["confirmation_number"] = data.get("confirmation_number") or ref
        return [_Push(body)]

    # --- aggregation ----------------------------------------------------

    def _base_delay_ms(self, event_type: str, cfg: Optional[Dict[str, Any]]) -> int:
        configured = ((cfg or {}).get("integration") or {}).get("retry_delay_ms")
        if configured is not None:
            return int(configured)
        return EVENT_RETRY_BASE_MS.get(event_type, 30_000)

    def _retry_delay(
        self,
        run: _EventRun,
        failures: List[Dict[str, Any]],
        targets: List[ChannelTarget],
    ) -> tuple[int, int]:
        """(linear backoff base, minimum delay) for a retryable attempt.

        rate_limited grows exponentially with the attempts already used and
        never undercuts the channel's retry-after.
        """

        configs = {t.channel: t.config for t in targets}
        base = max(self._base_delay_ms(run.event_type, configs.get(f["channel"])) for f in failures)
        prior_attempts = run.attempt_number - 1
        min_delay = 0
        for f in failures:
            retry_after = int(f.get("retry_after_ms") or 0)
            if f["code"] == SyncErrorCode.RATE_LIMITED.value:
                exponential = min(base * (2 ** prior_attempts), MAX_RETRY_DELAY_MS)
                min_delay = max(min_delay, exponential, retry_after)
            else:
                min_delay = max(min_delay, retry_after)
        return base, min_delay

    async def _finish(self, run: _EventRun, targets: List[ChannelTarget]) -> Optional[Dict[str, Any]]:
        if run.stop_status == "lost":
            logger.warning("worker=%s lost the lease on event %s mid-dispatch", run.worker_id, run.event_id)
            return None
        if run.stop_status is not None:
            # complete() on an event that left processing only flushes our results into it
            return await self.queue.complete(run.event_id, run.unflushed, worker_id=run.worker_id)

        failed = [r for r in run.results if r["status"] == "failed"]
        retryable = [r for r in failed if r.get("retryable")]
        if retryable:
            backoff_ms, min_delay_ms = self._retry_delay(run, retryable, targets)
            first = retryable[0]
            return await self.queue.fail(
                run.event_id,
                {
                    "code": first["code"],
                    "message": first.get("message") or "",
                    "channel": first["channel"],
                    "context": {"channels": {r["channel"]: r["code"] for r in retryable}},
                },
                backoff_ms,
                worker_id=run.worker_id,
                min_delay_ms=min_delay_ms,
                results=run.unflushed,
            )

        repeated_internal = [r for r in failed if r["code"] == SyncErrorCode.INTERNAL.value]
        if repeated_internal:
            first = repeated_internal[0]
            return await self.queue.fail(
                run.event_id,
                {
                    "code": first["code"],
                    "message": first.get("message") or "",
                    "channel": first["channel"],
                    "context": {"traceback": (first.get("context") or {}).get("traceback")},
                },
                0,
                worker_id=run.worker_id,
                terminal=True,
                results=run.unflushed,
            )

        # Non-retryable channel failures are surfaced through results only.
        return await self.queue.complete(run.event_id, run.unflushed, worker_id=run.worker_id)

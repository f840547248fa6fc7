from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List

import pytest

from otasync.errors import FxUnavailableError
from otasync.schemas.events import EnqueueOptions
from otasync.services.channel_config_service import ChannelConfigService
from otasync.services.channels.registry import ChannelAdapterRegistry
from otasync.services.channels.types import AdapterResult
from otasync.services.dispatcher import EventDispatcher, settled_channels
from otasync.services.event_queue import EventQueue
from otasync.services.fx import FXService
from otasync.services.localization import LocalizationService
from otasync.services.sync_health import SyncHealthService
from otasync.utils import as_utc

from conftest import HOTEL_ID, ROOM_TYPE_ID, ScriptedAdapter


MARKUP_PLAN = {
    "pms_rate_plan_id": "rp_bar",
    "channel_rate_plan_id": "BAR",
    "rules": {"base_rate_modifier": {"type": "percentage", "value": 10}},
}


def rates_event(channels: Any = "all", rate: int = 5000) -> Dict[str, Any]:
    return {
        "hotel_id": HOTEL_ID,
        "room_type_id": ROOM_TYPE_ID,
        "date_range": {"start": "2026-12-01", "end": "2026-12-03"},
        "channels": channels,
        "data": {"rates": [{"date": "2026-12-01", "rate": rate}, {"date": "2026-12-02", "rate": rate}]},
    }


class DownFxProvider:
    async def fetch_rate(self, base: str, quote: str) -> Decimal:
        raise FxUnavailableError(base, quote, "provider down")


@pytest.fixture
def queue(test_db, clock) -> EventQueue:
    return EventQueue(test_db, lease_grace_s=0, clock=clock)


@pytest.fixture
def make_dispatcher(test_db, queue):
    def _make(*adapters: ScriptedAdapter, fx: FXService = None, fanout: int = 4) -> EventDispatcher:
        return EventDispatcher(
            test_db,
            queue=queue,
            configs=ChannelConfigService(test_db, cache_ttl_s=0),
            registry=ChannelAdapterRegistry({a.channel_name: a for a in adapters}),
            fx=fx or FXService(db=test_db),
            localization=LocalizationService(),
            fanout=fanout,
        )

    return _make


async def lease_and_process(dispatcher: EventDispatcher, worker_id: str = "w1") -> List[Dict[str, Any]]:
    out = []
    for event in await dispatcher.queue.lease(worker_id, limit=10):
        out.append(await dispatcher.process(event, worker_id))
    return out


def results_by_channel(event: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    return {r["channel"]: r for r in event["results"]}


@pytest.mark.anyio
async def test_rate_update_is_priced_into_channel_currency(test_db, queue, make_dispatcher, seed_config, seed_room_mapping):
    await seed_config("expedia")
    await seed_room_mapping("expedia", rate_plans=[MARKUP_PLAN])
    expedia = ScriptedAdapter("expedia")
    dispatcher = make_dispatcher(expedia)

    outcome = await queue.enqueue("rate_update", rates_event(["expedia"]))
    [event] = await lease_and_process(dispatcher)

    assert event["_id"] == outcome.event_id
    assert event["status"] == "completed"
    assert [c["capability"] for c in expedia.calls] == ["push_rates"]
    assert expedia.calls[0]["payload"] == {
        "channel_room_id": "expedia-rt_deluxe",
        "currency": "USD",
        "rate_plans": [
            {
                "channel_rate_plan_id": "BAR",
                "nights": [
                    {"date": "2026-12-01", "rate": "60.50"},
                    {"date": "2026-12-02", "rate": "60.50"},
                ],
            }
        ],
    }
    ctx = expedia.calls[0]["ctx"]
    assert ctx.currency == "USD"
    assert ctx.event_id == outcome.event_id
    assert ctx.credentials["api_key"] == "secret-key"

    [result] = event["results"]
    assert result["status"] == "success"
    assert result["attempt_number"] == 1

    health = await SyncHealthService(test_db).get(HOTEL_ID, "expedia")
    assert health.total_syncs == 1
    assert health.successful_syncs == 1
    assert health.connection_status == "connected"
    assert "rates" in health.last_sync


@pytest.mark.anyio
async def test_rate_limited_channel_retries_after_retry_after(queue, clock, make_dispatcher, seed_config, seed_room_mapping):
    await seed_config("expedia", integration={"credentials": {"api_key": "k", "property_id": "P-1"}, "retry_delay_ms": 1000})
    await seed_room_mapping("expedia", rate_plans=[MARKUP_PLAN])
    expedia = ScriptedAdapter(
        "expedia",
        AdapterResult.failure("rate_limited", "slow down", retryable=True, retry_after_ms=5000),
    )
    dispatcher = make_dispatcher(expedia)
    outcome = await queue.enqueue("rate_update", rates_event(["expedia"]))

    [event] = await lease_and_process(dispatcher)

    assert event["status"] == "pending"
    assert event["processing"]["attempts"] == 1
    assert as_utc(event["processing"]["next_retry_at"]) == clock.now + timedelta(seconds=5)
    assert event["results"][0]["code"] == "rate_limited"
    assert event["results"][0]["retry_after_ms"] == 5000

    assert await lease_and_process(dispatcher) == []
    clock.advance(seconds=5)
    [event] = await lease_and_process(dispatcher)

    assert event["_id"] == outcome.event_id
    assert event["status"] == "completed"
    assert event["processing"]["attempts"] == 2
    assert len(event["errors"]) == 1
    assert [r["status"] for r in event["results"]] == ["failed", "success"]
    assert event["results"][1]["attempt_number"] == 2


@pytest.mark.anyio
async def test_permanent_channel_failure_completes_the_event(test_db, queue, make_dispatcher, seed_config, seed_room_mapping):
    await seed_config("expedia")
    await seed_config("airbnb")
    await seed_room_mapping("expedia")
    await seed_room_mapping("airbnb")
    expedia = ScriptedAdapter("expedia")
    airbnb = ScriptedAdapter("airbnb", AdapterResult.failure("validation_failed", "price below minimum", retryable=False))
    dispatcher = make_dispatcher(expedia, airbnb)

    await queue.enqueue("rate_update", rates_event())
    [event] = await lease_and_process(dispatcher)

    assert event["status"] == "completed"
    assert event["errors"] == []
    results = results_by_channel(event)
    assert results["expedia"]["status"] == "success"
    assert results["airbnb"]["status"] == "failed"
    assert results["airbnb"]["code"] == "validation_failed"
    assert results["airbnb"]["retryable"] is False

    health = await SyncHealthService(test_db).get(HOTEL_ID, "airbnb")
    assert health.failed_syncs == 1
    assert health.connection_status == "connected"
    assert health.last_error.code == "validation_failed"
    cfg = await ChannelConfigService(test_db).get(HOTEL_ID, "airbnb")
    assert cfg["status"]["connection_status"] == "connected"


@pytest.mark.anyio
async def test_retry_only_calls_channels_that_are_not_settled(test_db, queue, clock, make_dispatcher, seed_config, seed_room_mapping):
    await seed_config("expedia")
    await seed_config("airbnb", integration={"credentials": {"api_key": "k"}, "retry_delay_ms": 1000})
    await seed_room_mapping("expedia")
    await seed_room_mapping("airbnb")
    expedia = ScriptedAdapter("expedia")
    airbnb = ScriptedAdapter("airbnb", AdapterResult.failure("provider_unavailable", "HTTP 503", retryable=True))
    dispatcher = make_dispatcher(expedia, airbnb)

    await queue.enqueue("rate_update", rates_event())
    [event] = await lease_and_process(dispatcher)
    assert event["status"] == "pending"
    assert settled_channels(event) == {"expedia"}
    health = await SyncHealthService(test_db).get(HOTEL_ID, "airbnb")
    assert health.connection_status == "error"

    clock.advance(seconds=1)
    [event] = await lease_and_process(dispatcher)

    assert event["status"] == "completed"
    assert len(expedia.calls) == 1
    assert len(airbnb.calls) == 2
    health = await SyncHealthService(test_db).get(HOTEL_ID, "airbnb")
    assert health.connection_status == "connected"


@pytest.mark.anyio
async def test_unexpected_adapter_error_is_retried_once(queue, clock, make_dispatcher, seed_config, seed_room_mapping):
    await seed_config("expedia")
    await seed_room_mapping("expedia")
    expedia = ScriptedAdapter("expedia", RuntimeError("serializer exploded"), RuntimeError("serializer exploded"))
    dispatcher = make_dispatcher(expedia)

    await queue.enqueue("rate_update", rates_event(["expedia"]))
    [event] = await lease_and_process(dispatcher)
    assert event["status"] == "pending"
    assert event["results"][0]["code"] == "internal"
    assert event["results"][0]["retryable"] is True

    # rate_update retries after 30 s without a configured delay
    clock.advance(seconds=30)
    [event] = await lease_and_process(dispatcher)

    assert event["status"] == "failed"
    assert event["processing"]["attempts"] == 2
    assert event["results"][-1]["retryable"] is False
    assert event["errors"][-1]["code"] == "internal"


@pytest.mark.anyio
async def test_unconfigured_and_disconnected_channels_are_skipped(test_db, queue, make_dispatcher, seed_config, seed_room_mapping):
    await seed_config("expedia", connection_status="disconnected")
    await seed_config("airbnb")
    await seed_room_mapping("expedia")
    expedia = ScriptedAdapter("expedia")
    airbnb = ScriptedAdapter("airbnb")
    booking = ScriptedAdapter("booking_com")
    dispatcher = make_dispatcher(expedia, airbnb, booking)

    await queue.enqueue("rate_update", rates_event(["expedia", "airbnb", "booking_com"]))
    [event] = await lease_and_process(dispatcher)

    assert event["status"] == "completed"
    results = results_by_channel(event)
    assert results["expedia"]["status"] == "skipped"
    assert results["expedia"]["code"] == "channel_disabled"
    assert results["airbnb"]["code"] == "mapping_missing"
    assert results["booking_com"]["code"] == "channel_disabled"
    assert expedia.calls == airbnb.calls == booking.calls == []

    health = await SyncHealthService(test_db).get(HOTEL_ID, "expedia")
    assert health.skipped_syncs == 1
    assert await SyncHealthService(test_db).get(HOTEL_ID, "booking_com") is None


@pytest.mark.anyio
async def test_room_without_rate_plans_is_skipped(queue, make_dispatcher, seed_config, seed_room_mapping):
    await seed_config("expedia")
    await seed_room_mapping("expedia", rate_plans=[])
    expedia = ScriptedAdapter("expedia")
    dispatcher = make_dispatcher(expedia)

    await queue.enqueue("rate_update", rates_event(["expedia"]))
    [event] = await lease_and_process(dispatcher)

    assert event["results"][0]["status"] == "skipped"
    assert event["results"][0]["message"] == "no_rate_mapping"
    assert expedia.calls == []


@pytest.mark.anyio
async def test_fx_outage_is_retryable(queue, make_dispatcher, seed_config, seed_room_mapping):
    await seed_config(
        "expedia",
        currencies={
            "base_currency": "JPY",
            "channel_currency": "EUR",
            "supported_currencies": [
                {"currency_code": "JPY", "conversion_method": "fixed_rate", "fixed_rate": 1},
                {"currency_code": "EUR", "conversion_method": "live_rate"},
            ],
        },
    )
    await seed_room_mapping("expedia")
    expedia = ScriptedAdapter("expedia")
    dispatcher = make_dispatcher(expedia, fx=FXService(DownFxProvider()))

    await queue.enqueue("rate_update", rates_event(["expedia"]))
    [event] = await lease_and_process(dispatcher)

    assert event["status"] == "pending"
    assert event["results"][0]["code"] == "fx_unavailable"
    assert event["results"][0]["context"] == {"base": "JPY", "quote": "EUR"}
    assert expedia.calls == []


@pytest.mark.anyio
async def test_cancel_during_dispatch_skips_remaining_channels(queue, make_dispatcher, seed_config, seed_room_mapping):
    await seed_config("expedia")
    await seed_config("airbnb")
    await seed_room_mapping("expedia")
    await seed_room_mapping("airbnb")

    async def cancel_then_succeed(ctx, payload):
        await queue.cancel(ctx.event_id, "rates superseded", actor="ops@hotel.test")
        return AdapterResult.success({"accepted": True})

    expedia = ScriptedAdapter("expedia", cancel_then_succeed)
    airbnb = ScriptedAdapter("airbnb")
    dispatcher = make_dispatcher(expedia, airbnb, fanout=1)

    outcome = await queue.enqueue("rate_update", rates_event(["expedia", "airbnb"]))
    await lease_and_process(dispatcher)

    event = await queue.get(outcome.event_id)
    assert event["status"] == "cancelled"
    results = results_by_channel(event)
    assert results["expedia"]["status"] == "success"
    assert results["airbnb"]["status"] == "skipped"
    assert results["airbnb"]["code"] == "cancelled"
    assert airbnb.calls == []


@pytest.mark.anyio
async def test_worker_that_lost_its_lease_stops(queue, clock, make_dispatcher, seed_config, seed_room_mapping):
    await seed_config("expedia")
    await seed_room_mapping("expedia")
    expedia = ScriptedAdapter("expedia")
    dispatcher = make_dispatcher(expedia)
    outcome = await queue.enqueue("rate_update", rates_event(["expedia"]))

    [stale] = await queue.lease("w1", lease_timeout_ms=1_000)
    clock.advance(seconds=2)
    [fresh] = await queue.lease("w2")

    assert await dispatcher.process(stale, "w1") is None
    assert expedia.calls == []

    event = await dispatcher.process(fresh, "w2")
    assert event["_id"] == outcome.event_id
    assert event["status"] == "completed"
    assert [r["status"] for r in event["results"]] == ["success"]


@pytest.mark.anyio
async def test_recovered_event_keeps_partial_results(queue, clock, make_dispatcher, seed_config, seed_room_mapping):
    await seed_config("expedia")
    await seed_config("airbnb")
    await seed_room_mapping("expedia")
    await seed_room_mapping("airbnb")
    expedia = ScriptedAdapter("expedia")
    airbnb = ScriptedAdapter("airbnb")
    dispatcher = make_dispatcher(expedia, airbnb)
    outcome = await queue.enqueue("rate_update", rates_event(["expedia", "airbnb"]))

    # First worker pushed expedia and died before airbnb.
    await queue.lease("w1", lease_timeout_ms=1_000)
    await queue.record_results(
        outcome.event_id,
        "w1",
        [{"channel": "expedia", "status": "success", "attempt_number": 1, "code": None, "retryable": None}],
    )
    clock.advance(seconds=2)

    [event] = await lease_and_process(dispatcher, "w2")

    assert event["status"] == "completed"
    assert expedia.calls == []
    assert len(airbnb.calls) == 1
    assert [r["channel"] for r in event["results"]] == ["expedia", "airbnb"]
    assert event["errors"][0]["code"] == "lease_expired"


@pytest.mark.anyio
async def test_hotel_wide_stop_sell_fans_out_to_every_mapped_room(queue, make_dispatcher, seed_config, seed_room_mapping):
    await seed_config("expedia")
    await seed_room_mapping("expedia")
    await seed_room_mapping("expedia", room_type_id="rt_suite")
    expedia = ScriptedAdapter("expedia")
    dispatcher = make_dispatcher(expedia)

    await queue.enqueue(
        "stop_sell_update",
        {
            "hotel_id": HOTEL_ID,
            "date_range": {"start": "2026-12-24", "end": "2026-12-26"},
            "channels": ["expedia"],
            "data": {"stop_sell": True},
        },
    )
    [event] = await lease_and_process(dispatcher)

    assert event["status"] == "completed"
    assert [c["capability"] for c in expedia.calls] == ["push_restrictions", "push_restrictions"]
    rooms = [c["payload"]["channel_room_id"] for c in expedia.calls]
    assert rooms == ["expedia-rt_deluxe", "expedia-rt_suite"]
    nights = expedia.calls[0]["payload"]["rate_plans"][0]["nights"]
    assert nights == [
        {"date": "2026-12-24", "stop_sell": True},
        {"date": "2026-12-25", "stop_sell": True},
    ]
    assert event["results"][0]["response"]["pushes"] == 2


@pytest.mark.anyio
async def test_restrictions_are_clamped_to_rate_plan_limits(queue, make_dispatcher, seed_config, seed_room_mapping):
    await seed_config("expedia")
    await seed_room_mapping(
        "expedia",
        rate_plans=[
            {
                "pms_rate_plan_id": "rp_bar",
                "channel_rate_plan_id": "BAR",
                "rules": {"min_length_of_stay": 2, "max_length_of_stay": 7},
            }
        ],
    )
    expedia = ScriptedAdapter("expedia")
    dispatcher = make_dispatcher(expedia)

    await queue.enqueue(
        "restriction_update",
        {
            "hotel_id": HOTEL_ID,
            "room_type_id": ROOM_TYPE_ID,
            "date_range": {"start": "2026-12-01", "end": "2026-12-02"},
            "channels": ["expedia"],
            "data": {"restrictions": [{"date": "2026-12-01", "min_stay": 1, "closed_to_arrival": True}]},
        },
    )
    await lease_and_process(dispatcher)

    [night] = expedia.calls[0]["payload"]["rate_plans"][0]["nights"]
    assert night == {"date": "2026-12-01", "min_stay": 2, "closed_to_arrival": True, "max_stay": 7}


@pytest.mark.anyio
async def test_content_is_pushed_once_per_active_language(queue, make_dispatcher, seed_config, seed_room_mapping):
    await seed_config(
        "expedia",
        languages={
            "primary_language": "EN",
            "supported_languages": [
                {"language_code": "EN"},
                {"language_code": "DE", "channel_language_code": "de-DE"},
            ],
        },
    )
    await seed_room_mapping("expedia")
    expedia = ScriptedAdapter("expedia")
    dispatcher = make_dispatcher(expedia)
    content = {
        "translations": {
            "EN": {"name": "Deluxe Room", "description": "A quiet deluxe room with a view over the old harbour and the hills."},
        },
        "images": ["https://cdn.example.test/1.jpg", "https://cdn.example.test/2.jpg", "https://cdn.example.test/3.jpg"],
    }

    await queue.enqueue(
        "room_type_update",
        {
            "hotel_id": HOTEL_ID,
            "room_type_id": ROOM_TYPE_ID,
            "date_range": {"start": "2026-12-01", "end": "2026-12-02"},
            "channels": ["expedia"],
            "data": {"content": content},
        },
    )
    [event] = await lease_and_process(dispatcher)

    assert event["status"] == "completed"
    assert [c["ctx"].language for c in expedia.calls] == ["EN", "DE"]
    german = expedia.calls[1]["payload"]
    assert german["channel_language"] == "de-DE"
    assert german["content_language"] == "EN"
    assert german["name"] == "Deluxe Room"


@pytest.mark.anyio
async def test_content_breaking_channel_rules_is_not_sent(queue, make_dispatcher, seed_config, seed_room_mapping):
    await seed_config("expedia")
    await seed_room_mapping("expedia")
    expedia = ScriptedAdapter("expedia")
    dispatcher = make_dispatcher(expedia)

    await queue.enqueue(
        "room_type_update",
        {
            "hotel_id": HOTEL_ID,
            "room_type_id": ROOM_TYPE_ID,
            "date_range": {"start": "2026-12-01", "end": "2026-12-02"},
            "channels": ["expedia"],
            "data": {"content": {"translations": {"EN": {"description": "Too short."}}, "images": []}},
        },
    )
    [event] = await lease_and_process(dispatcher)

    assert event["status"] == "completed"
    [result] = event["results"]
    assert result["code"] == "validation_failed"
    assert result["retryable"] is False
    assert result["context"]["language"] == "EN"
    assert expedia.calls == []


@pytest.mark.anyio
async def test_cancellation_reaches_channel_without_room_mapping(queue, make_dispatcher, seed_config):
    await seed_config("expedia")
    expedia = ScriptedAdapter("expedia")
    dispatcher = make_dispatcher(expedia)

    await queue.enqueue(
        "cancellation",
        {
            "hotel_id": HOTEL_ID,
            "date_range": {"start": "2026-12-01", "end": "2026-12-03"},
            "channels": ["expedia"],
            "data": {"external_reservation_ref": "EXP-778812", "reason": "guest_request"},
        },
        EnqueueOptions(source="manual"),
    )
    [event] = await lease_and_process(dispatcher)

    assert event["status"] == "completed"
    assert expedia.calls[0]["capability"] == "push_cancellation"
    assert expedia.calls[0]["payload"] == {"external_reservation_ref": "EXP-778812", "reason": "guest_request"}


@pytest.mark.anyio
async def test_every_channel_call_is_kept_in_the_payload_log(test_db, queue, make_dispatcher, seed_config, seed_room_mapping):
    await seed_config("expedia")
    await seed_config("airbnb")
    await seed_room_mapping("expedia", rate_plans=[MARKUP_PLAN])
    await seed_room_mapping("airbnb")
    expedia = ScriptedAdapter("expedia", AdapterResult.success({"request_id": "EXP-REQ-1"}, latency_ms=40))
    airbnb = ScriptedAdapter("airbnb", AdapterResult.failure("validation_failed", "price below minimum", retryable=False))
    dispatcher = make_dispatcher(expedia, airbnb)

    outcome = await queue.enqueue("rate_update", rates_event())
    await lease_and_process(dispatcher)

    logged = {
        d["channel"]: d
        async for d in test_db.channel_payloads.find({"event_id": outcome.event_id})
    }
    assert set(logged) == {"expedia", "airbnb"}

    sent = logged["expedia"]
    assert sent["direction"] == "outbound"
    assert sent["hotel_id"] == HOTEL_ID
    assert sent["event_type"] == "rate_update"
    assert sent["attempt_number"] == 1
    assert sent["request"] == expedia.calls[0]["payload"]
    assert sent["request"]["rate_plans"][0]["nights"][0]["rate"] == "60.50"
    assert sent["response"] == {"request_id": "EXP-REQ-1"}
    assert sent["status"] == "success"
    assert sent["latency_ms"] == 40

    rejected = logged["airbnb"]
    assert rejected["request"] == airbnb.calls[0]["payload"]
    assert rejected["status"] == "failed"
    assert rejected["code"] == "validation_failed"
    assert rejected["message"] == "price below minimum"

from __future__ import annotations

import pytest

from otasync.errors import AppError
from otasync.services.event_queue import EventQueue
from otasync.services.producers import EventProducers, expand_nightly, rate_correlation_id

from conftest import HOTEL_ID, ROOM_TYPE_ID


@pytest.fixture
def producers(test_db, clock) -> EventProducers:
    return EventProducers(EventQueue(test_db, lease_grace_s=0, clock=clock))


def test_expand_nightly_accepts_flat_value_mapping_and_list():
    assert expand_nightly(120, "2026-12-01", "2026-12-03", "rate") == [
        {"date": "2026-12-01", "rate": 120},
        {"date": "2026-12-02", "rate": 120},
    ]
    assert expand_nightly({"2026-12-02": 5, "2026-12-01": 4}, "2026-12-01", "2026-12-03", "available") == [
        {"date": "2026-12-01", "available": 4},
        {"date": "2026-12-02", "available": 5},
    ]
    assert expand_nightly([{"date": "2026-12-01", "rate": 90}], "2026-12-01", "2026-12-02", "rate") == [
        {"date": "2026-12-01", "rate": 90}
    ]


def test_expand_nightly_rejects_entries_without_the_value_key():
    with pytest.raises(AppError) as exc:
        expand_nightly([{"date": "2026-12-01"}], "2026-12-01", "2026-12-02", "rate")
    assert exc.value.status_code == 422


@pytest.mark.anyio
async def test_rate_update_event_shape(producers):
    outcome = await producers.submit_rate_update(
        hotel_id=HOTEL_ID,
        room_type_id=ROOM_TYPE_ID,
        start="2026-12-01",
        end="2026-12-03",
        new_rates=15000,
        channels=["booking_com", "expedia"],
        rate_plan_id="rp_bar",
    )

    event = outcome.event
    assert outcome.created is True
    assert event["event_type"] == "rate_update"
    assert event["priority"] == 3
    assert event["source"] == "system"
    assert event["payload"]["date_range"] == {"start": "2026-12-01", "end": "2026-12-03"}
    assert event["payload"]["data"]["rate_plan_id"] == "rp_bar"
    assert [n["date"] for n in event["payload"]["data"]["rates"]] == ["2026-12-01", "2026-12-02"]


@pytest.mark.anyio
async def test_restriction_update_repeats_values_over_every_night(producers):
    outcome = await producers.submit_restriction_update(
        hotel_id=HOTEL_ID,
        room_type_id=ROOM_TYPE_ID,
        start="2026-12-30",
        end="2027-01-02",
        cta=True,
        min_stay=3,
    )

    nights = outcome.event["payload"]["data"]["restrictions"]
    assert len(nights) == 3
    assert nights[0] == {"date": "2026-12-30", "closed_to_arrival": True, "min_stay": 3}


@pytest.mark.anyio
async def test_hotel_wide_stop_sell_has_no_room_type(producers):
    outcome = await producers.submit_stop_sell(hotel_id=HOTEL_ID, start="2026-12-24", end="2026-12-26")

    assert outcome.event["event_type"] == "stop_sell_update"
    assert outcome.event["payload"]["room_type_id"] is None
    assert outcome.event["payload"]["data"] == {"stop_sell": True}
    assert outcome.event["channel_keys"] == ["all"]


@pytest.mark.anyio
async def test_booking_events_get_a_default_stay_range(producers):
    outcome = await producers.submit_cancellation(hotel_id=HOTEL_ID, external_reservation_ref="BK-1")

    payload = outcome.event["payload"]
    assert payload["date_range"]["start"] < payload["date_range"]["end"]
    assert payload["data"] == {"external_reservation_ref": "BK-1"}
    assert outcome.event["priority"] == 2


@pytest.mark.anyio
async def test_content_update_uppercases_languages(producers):
    outcome = await producers.submit_room_content_update(
        hotel_id=HOTEL_ID,
        room_type_id=ROOM_TYPE_ID,
        content={"translations": {"EN": {"name": "Deluxe"}}},
        languages=["en", "de"],
    )

    assert outcome.event["payload"]["data"]["languages"] == ["EN", "DE"]


@pytest.mark.anyio
async def test_rate_rollout_shares_batch_and_coalesces_on_rerun(test_db, producers):
    windows = [
        {"room_type_id": "rt_deluxe", "start": "2027-04-01", "end": "2027-04-03", "new_rates": 18000},
        {"room_type_id": "rt_suite", "start": "2027-04-01", "end": "2027-04-03", "new_rates": 32000},
    ]

    batch_id, outcomes = await producers.submit_rate_rollout(hotel_id=HOTEL_ID, windows=windows, created_by="ops")

    assert len(outcomes) == 2
    assert {o.event["batch_id"] for o in outcomes} == {batch_id}
    assert {o.event["source"] for o in outcomes} == {"bulk_operation"}
    assert outcomes[0].event["correlation_id"] == rate_correlation_id(HOTEL_ID, "rt_deluxe", "2027-04-01", "2027-04-03")

    windows[0]["new_rates"] = 19000
    _, rerun = await producers.submit_rate_rollout(hotel_id=HOTEL_ID, windows=windows, batch_id=batch_id)

    assert all(o.coalesced for o in rerun)
    assert [o.event_id for o in rerun] == [o.event_id for o in outcomes]
    assert rerun[0].event["payload"]["data"]["rates"][0]["rate"] == 19000
    assert await test_db.sync_events.count_documents({"batch_id": batch_id}) == 2


@pytest.mark.anyio
async def test_rate_rollout_with_a_bad_window_enqueues_nothing(test_db, producers):
    windows = [
        {"room_type_id": "rt_deluxe", "start": "2027-04-01", "end": "2027-04-03", "new_rates": 18000},
        {"room_type_id": "rt_suite", "start": "2027-04-03", "end": "2027-04-01", "new_rates": 32000},
    ]

    with pytest.raises(AppError) as exc:
        await producers.submit_rate_rollout(hotel_id=HOTEL_ID, windows=windows)

    assert exc.value.code == "invalid_payload"
    assert await test_db.sync_events.count_documents({}) == 0

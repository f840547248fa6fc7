from __future__ import annotations

from datetime import timedelta

import anyio
import pytest

from otasync.services.channel_config_service import ChannelConfigService
from otasync.services.channels.registry import ChannelAdapterRegistry
from otasync.services.channels.types import AdapterResult
from otasync.services.dispatcher import EventDispatcher
from otasync.services.event_queue import EventQueue
from otasync.services.fx import FXService
from otasync.services.localization import LocalizationService
from otasync.sync_worker import MAX_IDLE_FACTOR, SyncWorker, WorkerPool, idle_delay
from otasync.utils import as_utc

from conftest import HOTEL_ID, ROOM_TYPE_ID, ScriptedAdapter


def _payload(start: str = "2026-12-01", end: str = "2026-12-02"):
    return {
        "hotel_id": HOTEL_ID,
        "room_type_id": ROOM_TYPE_ID,
        "date_range": {"start": start, "end": end},
        "channels": ["expedia"],
        "data": {"availability": [{"date": start, "available": 4}]},
    }


def _dispatcher(db, adapter: ScriptedAdapter, queue: EventQueue) -> EventDispatcher:
    return EventDispatcher(
        db,
        queue=queue,
        configs=ChannelConfigService(db, cache_ttl_s=0),
        registry=ChannelAdapterRegistry({adapter.channel_name: adapter}),
        fx=FXService(db=db),
        localization=LocalizationService(),
    )


def test_idle_delay_backs_off_and_caps():
    assert 0.5 <= idle_delay(1.0, 1) <= 1.5
    assert 1.0 <= idle_delay(1.0, 2) <= 3.0
    assert idle_delay(1.0, 50) <= MAX_IDLE_FACTOR * 1.5


@pytest.mark.anyio
async def test_run_once_leases_and_dispatches(test_db, clock, seed_config, seed_room_mapping):
    await seed_config("expedia")
    await seed_room_mapping("expedia")
    adapter = ScriptedAdapter("expedia")
    queue = EventQueue(test_db, lease_grace_s=0, clock=clock)
    worker = SyncWorker(_dispatcher(test_db, adapter, queue), worker_id="wrk_test", lease_batch=5)

    outcome = await queue.enqueue("availability_update", _payload())

    assert await worker.run_once() == 1
    assert await worker.run_once() == 0
    event = await queue.get(outcome.event_id)
    assert event["status"] == "completed"
    assert adapter.calls[0]["capability"] == "push_availability"
    assert adapter.calls[0]["payload"]["nights"] == [{"date": "2026-12-01", "available": 4}]


@pytest.mark.anyio
async def test_run_once_survives_a_crashing_dispatch(test_db, clock):
    queue = EventQueue(test_db, lease_grace_s=0, clock=clock)

    class ExplodingDispatcher:
        def __init__(self):
            self.queue = queue

        async def process(self, event, worker_id):
            raise RuntimeError("boom")

    worker = SyncWorker(ExplodingDispatcher(), worker_id="wrk_test")
    outcome = await queue.enqueue("availability_update", _payload())

    assert await worker.run_once() == 1
    # Left in processing; lease expiry hands it to another worker.
    assert (await queue.get(outcome.event_id))["status"] == "processing"


@pytest.mark.anyio
async def test_worker_pool_drains_the_queue(test_db, seed_config, seed_room_mapping):
    await seed_config("expedia")
    await seed_room_mapping("expedia")
    adapter = ScriptedAdapter("expedia")
    queue = EventQueue(test_db)
    outcomes = [
        await queue.enqueue("availability_update", _payload("2026-12-01", "2026-12-02")),
        await queue.enqueue("availability_update", _payload("2026-12-05", "2026-12-06")),
    ]

    pool = WorkerPool(_dispatcher(test_db, adapter, queue), workers=2, reaper_interval_s=60)
    await pool.start()
    try:
        assert pool.running
        with anyio.fail_after(10):
            while True:
                statuses = [(await queue.get(o.event_id))["status"] for o in outcomes]
                if statuses == ["completed", "completed"]:
                    break
                await anyio.sleep(0.05)
    finally:
        await pool.stop()

    assert not pool.running
    assert len(adapter.calls) == 2
    assert len({w.worker_id for w in pool.workers}) == 2


@pytest.mark.anyio
async def test_leased_batch_is_dispatched_concurrently(test_db, clock):
    queue = EventQueue(test_db, lease_grace_s=0, clock=clock)
    first = await queue.enqueue("availability_update", _payload("2026-12-01", "2026-12-02"))
    second = await queue.enqueue("availability_update", _payload("2026-12-05", "2026-12-06"))
    second_started = anyio.Event()

    class GatedDispatcher:
        def __init__(self):
            self.queue = queue
            self.finished = []

        async def process(self, event, worker_id):
            if event["_id"] == first.event_id:
                # Only returns once the other event of the batch is running.
                await second_started.wait()
            else:
                second_started.set()
            self.finished.append(event["_id"])

    dispatcher = GatedDispatcher()
    worker = SyncWorker(dispatcher, worker_id="wrk_test", lease_batch=5)

    with anyio.fail_after(5):
        assert await worker.run_once() == 2

    assert dispatcher.finished == [second.event_id, first.event_id]


@pytest.mark.anyio
async def test_lease_is_renewed_when_dispatch_begins(test_db, clock, seed_config, seed_room_mapping):
    await seed_config("expedia")
    await seed_room_mapping("expedia")
    queue = EventQueue(test_db, lease_grace_s=0, clock=clock)
    seen = {}

    async def inspect_lease(ctx, payload):
        stored = await queue.get(outcome.event_id)
        seen["remaining"] = as_utc(stored["processing"]["lease_expires_at"]) - clock.now
        return AdapterResult.success({"accepted": True})

    adapter = ScriptedAdapter("expedia", inspect_lease)
    outcome = await queue.enqueue("availability_update", _payload())
    leased = await queue.lease("wrk_test", limit=1, lease_timeout_ms=1_000)

    # Waited in the batch for most of its short lease.
    clock.advance(milliseconds=900)
    await _dispatcher(test_db, adapter, queue).process(leased[0], "wrk_test")

    assert seen["remaining"] >= timedelta(seconds=5)
    assert (await queue.get(outcome.event_id))["status"] == "completed"

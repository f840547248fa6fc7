from __future__ import annotations

import asyncio
import logging
import random
from typing import List, Optional

from otasync import config
from otasync.metrics import workers_busy
from otasync.services.dispatcher import EventDispatcher
from otasync.utils import new_id

logger = logging.getLogger("sync_worker")

# Idle sleep doubles per empty lease up to this factor of WORKER_IDLE_SLEEP_S.
MAX_IDLE_FACTOR = 8


def idle_delay(base_s: float, empty_polls: int) -> float:
    factor = min(2 ** max(empty_polls - 1, 0), MAX_IDLE_FACTOR)
    return base_s * factor * random.uniform(0.5, 1.5)


class SyncWorker:
    """One lease/dispatch loop with a stable worker id for its lifetime."""

    def __init__(
        self,
        dispatcher: EventDispatcher,
        *,
        worker_id: Optional[str] = None,
        lease_batch: Optional[int] = None,
        idle_sleep_s: Optional[float] = None,
    ) -> None:
        self.dispatcher = dispatcher
        self.worker_id = worker_id or new_id("wrk")
        self.lease_batch = config.LEASE_BATCH if lease_batch is None else lease_batch
        self.idle_sleep_s = config.WORKER_IDLE_SLEEP_S if idle_sleep_s is None else idle_sleep_s

    async def run_once(self) -> int:
        """Lease one batch and dispatch its events together; returns the number leased.

        Events leased in one batch never overlap, so they run concurrently and
        none of them waits out its lease behind the others.
        """

        events = await self.dispatcher.queue.lease(self.worker_id, limit=self.lease_batch)
        await asyncio.gather(*(self._dispatch(event) for event in events))
        return len(events)

    async def _dispatch(self, event) -> None:
        workers_busy.inc()
        try:
            await self.dispatcher.process(event, self.worker_id)
        except Exception as e:
            # The lease runs out and another worker recovers the event.
            logger.error("Sync worker %s failed on event %s: %s", self.worker_id, event["_id"], e, exc_info=True)
        finally:
            workers_busy.dec()

    async def run(self, stop: asyncio.Event) -> None:
        empty_polls = 0
        while not stop.is_set():
            try:
                processed = await self.run_once()
            except Exception as e:
                logger.error("Sync worker %s loop error: %s", self.worker_id, e, exc_info=True)
                processed = 0

            if processed:
                empty_polls = 0
                continue
            empty_polls += 1
            try:
                await asyncio.wait_for(stop.wait(), timeout=idle_delay(self.idle_sleep_s, empty_polls))
            except asyncio.TimeoutError:
                pass


class WorkerPool:
    """WORKERS concurrent SyncWorkers plus the periodic TTL reaper."""

    def __init__(
        self,
        dispatcher: EventDispatcher,
        *,
        workers: Optional[int] = None,
        reaper_interval_s: Optional[int] = None,
    ) -> None:
        self.dispatcher = dispatcher
        self.size = max(int(config.WORKERS if workers is None else workers), 1)
        self.reaper_interval_s = config.REAPER_INTERVAL_S if reaper_interval_s is None else reaper_interval_s
        self.workers: List[SyncWorker] = []
        self._tasks: List[asyncio.Task] = []
        self._stop: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        if self.running:
            return
        self._stop = asyncio.Event()
        self.workers = [SyncWorker(self.dispatcher) for _ in range(self.size)]
        self._tasks = [asyncio.create_task(w.run(self._stop)) for w in self.workers]
        self._tasks.append(asyncio.create_task(self._reaper(self._stop)))
        logger.info("Sync worker pool started with %s workers", self.size)

    async def stop(self) -> None:
        if not self.running or self._stop is None:
            return
        self._stop.set()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Sync worker pool stopped")

    async def _reaper(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                await self.dispatcher.queue.reap_expired()
            except Exception as e:
                logger.error("Sync event reaper error: %s", e, exc_info=True)
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.reaper_interval_s)
            except asyncio.TimeoutError:
                pass

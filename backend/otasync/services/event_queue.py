"""Durable priority queue of channel sync events (`sync_events`).

Only the methods of EventQueue mutate event documents. Every transition out
of `processing` is a compare-and-set on `status` and the leasing worker's id,
so a worker that lost its lease cannot overwrite a newer owner.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from otasync import config
from otasync.constants.channels import (
    ALL_CHANNELS_SENTINEL,
    DEFAULT_MAX_ATTEMPTS,
    EVENT_PRIORITIES,
    EVENT_RESOURCE,
    MAX_RETRY_DELAY_MS,
    REAPABLE_STATUSES,
    TERMINAL_STATUSES,
)
from otasync.errors import AppError, SyncErrorCode
from otasync.metrics import track_enqueue, track_event_finished, track_lease, track_reaped
from otasync.schemas.events import EnqueueOptions, EventListQuery, EventPayload
from otasync.services.event_validation import normalize_payload
from otasync.services.throttle import ProducerThrottle
from otasync.utils import as_utc, new_id, now_utc

logger = logging.getLogger("otasync.queue")

ACTIVE_STATUSES = ("pending", "processing")
# Cursor batch size for the lease scan over the (priority, seq) order.
LEASE_SCAN_FACTOR = 5
LEASE_SCAN_MIN = 50
# Booking events are ordered per reservation, not per stay dates.
RESERVATION_RESOURCES = ("bookings", "reservations")


@dataclass
class EnqueueOutcome:
    event: Dict[str, Any]
    created: bool
    coalesced: bool = False
    throttled: bool = False

    @property
    def event_id(self) -> str:
        return self.event["_id"]


def compute_retry_delay_ms(backoff_ms: int, attempts: int, min_delay_ms: int = 0) -> int:
    """Linear backoff capped at 15 minutes, never shorter than `min_delay_ms`."""

    delay = min(max(int(backoff_ms), 0) * max(int(attempts), 1), MAX_RETRY_DELAY_MS)
    return max(delay, int(min_delay_ms or 0))


def _channel_keys(channels: Union[str, Sequence[str]]) -> List[str]:
    if channels == ALL_CHANNELS_SENTINEL:
        return [ALL_CHANNELS_SENTINEL]
    return list(channels)


def _not_found(event_id: str) -> AppError:
    return AppError(status_code=404, code="event_not_found", message="Sync event not found.", details={"event_id": event_id})


def _invalid_state(event_id: str, status: str, action: str) -> AppError:
    return AppError(
        status_code=409,
        code="invalid_state",
        message=f"Cannot {action} an event in status '{status}'.",
        details={"event_id": event_id, "status": status},
    )


class EventQueue:
    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        *,
        throttle: Optional[ProducerThrottle] = None,
        lease_grace_s: Optional[int] = None,
        ttl_days: Optional[int] = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self.db = db
        self.throttle = throttle
        self.lease_grace_s = config.LEASE_GRACE_S if lease_grace_s is None else lease_grace_s
        self.ttl_days = config.TTL_DAYS if ttl_days is None else ttl_days
        self._clock = clock

    @property
    def col(self):
        return self.db.sync_events

    def now(self) -> datetime:
        return self._clock()

    async def _next_seq(self) -> int:
        doc = await self.db.sync_counters.find_one_and_update(
            {"_id": "sync_events"},
            {"$inc": {"value": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return int(doc["value"])

    def _lease_deadline(self, now: datetime, timeout_ms: int) -> datetime:
        return now + timedelta(milliseconds=int(timeout_ms)) + timedelta(seconds=self.lease_grace_s)

    # --- enqueue --------------------------------------------------------

    async def enqueue(
        self,
        event_type: str,
        payload: Union[EventPayload, Dict[str, Any]],
        options: Optional[EnqueueOptions] = None,
    ) -> EnqueueOutcome:
        """Store a new pending event, or coalesce into a pending one with the same correlation key."""

        options = options or EnqueueOptions()
        doc_payload = normalize_payload(event_type, payload)
        now = self.now()

        scheduled_for = as_utc(options.scheduled_for) or now
        throttled = False
        if self.throttle is not None:
            delay = await self.throttle.delay_for(doc_payload["hotel_id"], now=now)
            if delay:
                throttled = True
                scheduled_for = max(scheduled_for, now) + delay

        if options.correlation_id:
            coalesced = await self._coalesce(event_type, doc_payload, options, scheduled_for, now)
            if coalesced is not None:
                outcome = EnqueueOutcome(event=coalesced, created=False, coalesced=True, throttled=throttled)
                track_enqueue(event_type, "throttled" if throttled else "coalesced")
                return outcome

        event_id = new_id("evt")
        doc: Dict[str, Any] = {
            "_id": event_id,
            "event_id": event_id,
            "seq": await self._next_seq(),
            "event_type": event_type,
            "priority": options.priority or EVENT_PRIORITIES.get(event_type, 3),
            "status": "pending",
            "payload": doc_payload,
            "resource": EVENT_RESOURCE[event_type],
            "channel_keys": _channel_keys(doc_payload["channels"]),
            "processing": {
                "attempts": 0,
                "max_attempts": options.max_attempts or DEFAULT_MAX_ATTEMPTS,
                "next_retry_at": None,
                "started_at": None,
                "completed_at": None,
                "duration_ms": None,
                "worker_id": None,
                "lease_expires_at": None,
            },
            "errors": [],
            "results": [],
            "source": options.source,
            "correlation_id": options.correlation_id,
            "batch_id": options.batch_id,
            "scheduled_for": scheduled_for,
            "throttled": throttled,
            "coalesced_count": 0,
            "created_by": options.created_by,
            "created_at": now,
            "updated_at": now,
        }
        await self.col.insert_one(doc)
        track_enqueue(event_type, "throttled" if throttled else "created")
        logger.info(
            "event enqueued id=%s type=%s hotel=%s priority=%s correlation_id=%s throttled=%s",
            event_id,
            event_type,
            doc_payload["hotel_id"],
            doc["priority"],
            options.correlation_id,
            throttled,
        )
        return EnqueueOutcome(event=doc, created=True, throttled=throttled)

    async def _coalesce(
        self,
        event_type: str,
        payload: Dict[str, Any],
        options: EnqueueOptions,
        scheduled_for: datetime,
        now: datetime,
    ) -> Optional[Dict[str, Any]]:
        key = {
            "correlation_id": options.correlation_id,
            "event_type": event_type,
            "payload.hotel_id": payload["hotel_id"],
            "payload.room_type_id": payload.get("room_type_id"),
            "payload.date_range.start": payload["date_range"]["start"],
            "payload.date_range.end": payload["date_range"]["end"],
            "status": "pending",
        }
        existing = await self.col.find_one(key)
        if not existing:
            return None

        later = max(as_utc(existing.get("scheduled_for")) or scheduled_for, scheduled_for)
        # A fresh sequence keeps the replacement behind anything enqueued in between.
        updated = await self.col.find_one_and_update(
            {"_id": existing["_id"], "status": "pending"},
            {
                "$set": {
                    "payload": payload,
                    "channel_keys": _channel_keys(payload["channels"]),
                    "scheduled_for": later,
                    "seq": await self._next_seq(),
                    "updated_at": now,
                },
                "$inc": {"coalesced_count": 1},
            },
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            # Leased between the read and the write; the caller inserts a new event.
            return None
        logger.info(
            "event coalesced id=%s type=%s correlation_id=%s",
            updated["_id"],
            event_type,
            options.correlation_id,
        )
        return updated

    async def enqueue_batch(
        self,
        items: Iterable[Tuple[str, Union[EventPayload, Dict[str, Any]]]],
        options: Optional[EnqueueOptions] = None,
    ) -> Tuple[str, List[EnqueueOutcome]]:
        """Enqueue several events under one batch_id.

        Every item is validated before anything is written, so a malformed
        item rejects the whole batch.
        """

        items = list(items)
        for event_type, payload in items:
            normalize_payload(event_type, payload)

        base = options or EnqueueOptions(source="bulk_operation")
        batch_id = base.batch_id or new_id("batch")
        item_options = base.model_copy(update={"batch_id": batch_id})
        outcomes = [await self.enqueue(event_type, payload, item_options) for event_type, payload in items]
        logger.info("batch enqueued batch_id=%s events=%d", batch_id, len(outcomes))
        return batch_id, outcomes

    # --- leasing --------------------------------------------------------

    async def _blocked(self, event: Dict[str, Any]) -> bool:
        """True when an earlier non-terminal event touches the same cells."""

        payload = event["payload"]
        query: Dict[str, Any] = {
            "_id": {"$ne": event["_id"]},
            "seq": {"$lt": event["seq"]},
            "status": {"$in": list(ACTIVE_STATUSES)},
            "payload.hotel_id": payload["hotel_id"],
            "resource": event["resource"],
        }
        ref = (payload.get("data") or {}).get("external_reservation_ref")
        if event["resource"] in RESERVATION_RESOURCES and ref:
            # One reservation's events stay in order; other reservations run alongside.
            query["payload.data.external_reservation_ref"] = ref
        else:
            query["payload.date_range.start"] = {"$lt": payload["date_range"]["end"]}
            query["payload.date_range.end"] = {"$gt": payload["date_range"]["start"]}
        room_type_id = payload.get("room_type_id")
        if room_type_id:
            # Events without a room type (hotel-wide stop-sell) cover every room type.
            query["payload.room_type_id"] = {"$in": [room_type_id, None]}
        keys = event.get("channel_keys") or [ALL_CHANNELS_SENTINEL]
        if ALL_CHANNELS_SENTINEL not in keys:
            query["channel_keys"] = {"$in": keys + [ALL_CHANNELS_SENTINEL]}
        blocker = await self.col.find_one(query, {"_id": 1})
        return blocker is not None

    async def _promote_retryable(self, now: datetime) -> None:
        for event in await self.list_retryable(limit=100, now=now):
            await self.col.update_one(
                {"_id": event["_id"], "status": "failed"},
                {"$set": {"status": "pending", "scheduled_for": now, "updated_at": now}},
            )

    async def lease(
        self,
        worker_id: str,
        limit: int = 1,
        event_types: Optional[Sequence[str]] = None,
        *,
        lease_timeout_ms: int = 30_000,
    ) -> List[Dict[str, Any]]:
        """Atomically take up to `limit` due events for `worker_id`, best priority first.

        An event stays behind any earlier pending/processing event for the same
        hotel, resource, room type and channel whose date range overlaps;
        booking events only wait for earlier events of the same reservation.
        The scan walks past blocked events until `limit` are taken.
        Expired leases are taken over and count as a used attempt.
        """

        if limit < 1:
            return []
        now = self.now()
        await self._promote_retryable(now)

        query: Dict[str, Any] = {
            "$or": [
                {"status": "pending", "scheduled_for": {"$lte": now}},
                {"status": "processing", "processing.lease_expires_at": {"$lt": now}},
            ]
        }
        if event_types:
            query["event_type"] = {"$in": list(event_types)}

        batch = max(limit * LEASE_SCAN_FACTOR, LEASE_SCAN_MIN)
        cursor = self.col.find(query).sort([("priority", 1), ("seq", 1)]).batch_size(batch)

        leased: List[Dict[str, Any]] = []
        try:
            async for candidate in cursor:
                if await self._blocked(candidate):
                    continue
                if candidate["status"] == "pending":
                    doc = await self._claim_pending(candidate, worker_id, now, lease_timeout_ms)
                else:
                    doc = await self._claim_expired(candidate, worker_id, now, lease_timeout_ms)
                if doc is not None:
                    leased.append(doc)
                    track_lease(doc["event_type"])
                if len(leased) >= limit:
                    break
        finally:
            await cursor.close()

        if leased:
            logger.info("worker=%s leased %d event(s): %s", worker_id, len(leased), [d["_id"] for d in leased])
        return leased

    async def _claim_pending(
        self,
        candidate: Dict[str, Any],
        worker_id: str,
        now: datetime,
        lease_timeout_ms: int,
    ) -> Optional[Dict[str, Any]]:
        return await self.col.find_one_and_update(
            {"_id": candidate["_id"], "status": "pending", "scheduled_for": {"$lte": now}},
            {
                "$set": {
                    "status": "processing",
                    "processing.worker_id": worker_id,
                    "processing.started_at": now,
                    "processing.lease_expires_at": self._lease_deadline(now, lease_timeout_ms),
                    "processing.next_retry_at": None,
                    "updated_at": now,
                }
            },
            return_document=ReturnDocument.AFTER,
        )

    async def _claim_expired(
        self,
        candidate: Dict[str, Any],
        worker_id: str,
        now: datetime,
        lease_timeout_ms: int,
    ) -> Optional[Dict[str, Any]]:
        proc = candidate.get("processing") or {}
        previous_worker = proc.get("worker_id")
        attempts = int(proc.get("attempts") or 0) + 1
        max_attempts = int(proc.get("max_attempts") or DEFAULT_MAX_ATTEMPTS)
        error = {
            "attempt_number": attempts,
            "timestamp": now,
            "code": SyncErrorCode.LEASE_EXPIRED.value,
            "message": f"lease held by {previous_worker} expired without completion",
            "channel": None,
            "context": {"worker_id": previous_worker},
        }
        cas = {
            "_id": candidate["_id"],
            "status": "processing",
            "processing.worker_id": previous_worker,
            "processing.lease_expires_at": {"$lt": now},
        }

        if attempts >= max_attempts:
            started = as_utc(proc.get("started_at"))
            res = await self.col.update_one(
                cas,
                {
                    "$set": {
                        "status": "failed",
                        "processing.attempts": attempts,
                        "processing.worker_id": None,
                        "processing.lease_expires_at": None,
                        "processing.completed_at": now,
                        "processing.duration_ms": int((now - started).total_seconds() * 1000) if started else None,
                        "updated_at": now,
                    },
                    "$push": {"errors": error},
                },
            )
            if res.modified_count:
                track_event_finished(candidate["event_type"], "failed")
                logger.warning("event failed after lease expiry id=%s attempts=%d", candidate["_id"], attempts)
            return None

        doc = await self.col.find_one_and_update(
            cas,
            {
                "$set": {
                    "processing.attempts": attempts,
                    "processing.worker_id": worker_id,
                    "processing.started_at": now,
                    "processing.lease_expires_at": self._lease_deadline(now, lease_timeout_ms),
                    "updated_at": now,
                },
                "$push": {"errors": error},
            },
            return_document=ReturnDocument.AFTER,
        )
        if doc is not None:
            logger.warning(
                "expired lease recovered id=%s from=%s to=%s attempts=%d",
                candidate["_id"],
                previous_worker,
                worker_id,
                attempts,
            )
        return doc

    async def checkpoint(self, event_id: str, worker_id: str, lease_timeout_ms: int) -> str:
        """Extend the lease before the next channel call and report the event status.

        Returns "processing" when the caller still owns the event, the current
        status when it left processing (e.g. "cancelled"), or "lost" when
        another worker took it over.
        """

        now = self.now()
        doc = await self.col.find_one_and_update(
            {"_id": event_id, "status": "processing", "processing.worker_id": worker_id},
            {"$set": {"processing.lease_expires_at": self._lease_deadline(now, lease_timeout_ms), "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is not None:
            return "processing"
        current = await self.col.find_one({"_id": event_id}, {"status": 1, "processing.worker_id": 1})
        if not current:
            return "lost"
        if current["status"] == "processing":
            return "lost"
        return current["status"]

    # --- terminal transitions -------------------------------------------

    def _owned(self, event_id: str, worker_id: Optional[str]) -> Dict[str, Any]:
        query: Dict[str, Any] = {"_id": event_id, "status": "processing"}
        if worker_id is not None:
            query["processing.worker_id"] = worker_id
        return query

    async def complete(
        self,
        event_id: str,
        results: Optional[List[Dict[str, Any]]] = None,
        *,
        worker_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """processing -> completed. Returns None when the caller no longer owns the event."""

        now = self.now()
        current = await self.col.find_one(self._owned(event_id, worker_id))
        if current is None:
            return await self._flush_after_cancel(event_id, worker_id, results)

        started = as_utc((current.get("processing") or {}).get("started_at")) or now
        update: Dict[str, Any] = {
            "$set": {
                "status": "completed",
                "processing.completed_at": now,
                "processing.duration_ms": int((now - started).total_seconds() * 1000),
                "processing.worker_id": None,
                "processing.lease_expires_at": None,
                "updated_at": now,
            },
            "$inc": {"processing.attempts": 1},
        }
        if results:
            update["$push"] = {"results": {"$each": list(results)}}
        doc = await self.col.find_one_and_update(
            self._owned(event_id, worker_id),
            update,
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            return await self._flush_after_cancel(event_id, worker_id, results)
        track_event_finished(doc["event_type"], "completed")
        logger.info(
            "event completed id=%s type=%s attempts=%s duration_ms=%s",
            event_id,
            doc["event_type"],
            doc["processing"]["attempts"],
            doc["processing"]["duration_ms"],
        )
        return doc

    async def _flush_after_cancel(
        self,
        event_id: str,
        worker_id: Optional[str],
        results: Optional[List[Dict[str, Any]]],
    ) -> Optional[Dict[str, Any]]:
        """Attach the last worker's results to an event cancelled under it."""

        query: Dict[str, Any] = {"_id": event_id, "status": "cancelled"}
        if worker_id is not None:
            query["cancelled_worker_id"] = worker_id
        update: Dict[str, Any] = {"$set": {"updated_at": self.now(), "cancelled_worker_id": None}}
        if results:
            update["$push"] = {"results": {"$each": list(results)}}
        doc = await self.col.find_one_and_update(query, update, return_document=ReturnDocument.AFTER)
        if doc is None:
            logger.warning("worker=%s lost event %s before finishing it", worker_id, event_id)
        return doc

    async def fail(
        self,
        event_id: str,
        error: Dict[str, Any],
        backoff_ms: int,
        *,
        worker_id: Optional[str] = None,
        min_delay_ms: int = 0,
        terminal: bool = False,
        results: Optional[List[Dict[str, Any]]] = None,
    ) -> Optional[Dict[str, Any]]:
        """Record a failed attempt; back to pending while attempts remain, else failed.

        Retry delay is `backoff_ms * attempts`, capped at 15 minutes and
        never shorter than `min_delay_ms` (a channel's retry_after).
        """

        now = self.now()
        current = await self.col.find_one(self._owned(event_id, worker_id))
        if current is None:
            return await self._flush_after_cancel(event_id, worker_id, results)

        proc = current.get("processing") or {}
        attempts = int(proc.get("attempts") or 0) + 1
        max_attempts = int(proc.get("max_attempts") or DEFAULT_MAX_ATTEMPTS)
        entry = {
            "attempt_number": attempts,
            "timestamp": now,
            "code": error.get("code") or SyncErrorCode.INTERNAL.value,
            "message": error.get("message") or "",
            "channel": error.get("channel"),
            "context": error.get("context") or {},
        }

        set_fields: Dict[str, Any] = {
            "processing.attempts": attempts,
            "processing.worker_id": None,
            "processing.lease_expires_at": None,
            "updated_at": now,
        }
        retry = not terminal and attempts < max_attempts
        if retry:
            delay_ms = compute_retry_delay_ms(backoff_ms, attempts, min_delay_ms)
            next_retry_at = now + timedelta(milliseconds=delay_ms)
            set_fields.update(
                {
                    "status": "pending",
                    "processing.next_retry_at": next_retry_at,
                    "scheduled_for": next_retry_at,
                }
            )
        else:
            started = as_utc(proc.get("started_at")) or now
            set_fields.update(
                {
                    "status": "failed",
                    "processing.next_retry_at": None,
                    "processing.completed_at": now,
                    "processing.duration_ms": int((now - started).total_seconds() * 1000),
                }
            )

        push: Dict[str, Any] = {"errors": entry}
        if results:
            push["results"] = {"$each": list(results)}
        doc = await self.col.find_one_and_update(
            self._owned(event_id, worker_id),
            {"$set": set_fields, "$push": push},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            return await self._flush_after_cancel(event_id, worker_id, results)

        if retry:
            logger.info(
                "event retry scheduled id=%s code=%s attempts=%d/%d next_retry_at=%s",
                event_id,
                entry["code"],
                attempts,
                max_attempts,
                doc["processing"]["next_retry_at"],
            )
        else:
            track_event_finished(doc["event_type"], "failed")
            logger.warning(
                "event failed id=%s code=%s attempts=%d/%d",
                event_id,
                entry["code"],
                attempts,
                max_attempts,
            )
        return doc

    async def record_results(
        self,
        event_id: str,
        worker_id: str,
        results: List[Dict[str, Any]],
    ) -> bool:
        """Append results while the caller still owns the event."""

        if not results:
            return True
        res = await self.col.update_one(
            self._owned(event_id, worker_id),
            {"$push": {"results": {"$each": list(results)}}, "$set": {"updated_at": self.now()}},
        )
        return bool(res.modified_count)

    async def cancel(self, event_id: str, reason: str, *, actor: Optional[str] = None) -> Dict[str, Any]:
        now = self.now()
        current = await self.col.find_one({"_id": event_id})
        if not current:
            raise _not_found(event_id)
        if current["status"] in TERMINAL_STATUSES:
            raise _invalid_state(event_id, current["status"], "cancel")

        proc = current.get("processing") or {}
        entry = {
            "attempt_number": int(proc.get("attempts") or 0),
            "timestamp": now,
            "code": SyncErrorCode.CANCELLED.value,
            "message": reason,
            "channel": None,
            "context": {"actor": actor, "previous_status": current["status"]},
        }
        doc = await self.col.find_one_and_update(
            {"_id": event_id, "status": current["status"]},
            {
                "$set": {
                    "status": "cancelled",
                    "cancel_reason": reason,
                    "cancelled_by": actor,
                    "cancelled_worker_id": proc.get("worker_id"),
                    "processing.worker_id": None,
                    "processing.lease_expires_at": None,
                    "processing.completed_at": now,
                    "updated_at": now,
                },
                "$push": {"errors": entry},
            },
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            # Status moved under us; report against the fresh state.
            fresh = await self.col.find_one({"_id": event_id})
            raise _invalid_state(event_id, (fresh or current)["status"], "cancel")
        track_event_finished(doc["event_type"], "cancelled")
        logger.info("event cancelled id=%s previous_status=%s actor=%s", event_id, current["status"], actor)
        return doc

    # --- queries --------------------------------------------------------

    async def get(self, event_id: str) -> Dict[str, Any]:
        doc = await self.col.find_one({"_id": event_id})
        if not doc:
            raise _not_found(event_id)
        return doc

    async def list(self, query: EventListQuery) -> Tuple[List[Dict[str, Any]], int]:
        filt: Dict[str, Any] = {}
        if query.hotel_id:
            filt["payload.hotel_id"] = query.hotel_id
        if query.status:
            filt["status"] = query.status
        if query.event_type:
            filt["event_type"] = query.event_type
        if query.batch_id:
            filt["batch_id"] = query.batch_id
        if query.correlation_id:
            filt["correlation_id"] = query.correlation_id
        total = await self.col.count_documents(filt)
        items = (
            await self.col.find(filt)
            .sort([("created_at", -1), ("seq", -1)])
            .skip(query.skip)
            .limit(query.limit)
            .to_list(length=query.limit)
        )
        return items, total

    async def batch(self, batch_id: str) -> List[Dict[str, Any]]:
        return await self.col.find({"batch_id": batch_id}).sort([("created_at", 1), ("seq", 1)]).to_list(length=10_000)

    async def list_retryable(self, limit: int = 100, *, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Failed events that still have attempt budget and whose retry time has passed."""

        now = now or self.now()
        docs = await self.col.find(
            {"status": "failed", "processing.next_retry_at": {"$ne": None, "$lte": now}}
        ).sort("processing.next_retry_at", 1).to_list(length=limit * 2)
        out = [
            d
            for d in docs
            if int(d["processing"].get("attempts") or 0) < int(d["processing"].get("max_attempts") or DEFAULT_MAX_ATTEMPTS)
        ]
        return out[:limit]

    async def stats(self, hotel_id: Optional[str] = None) -> Dict[str, Any]:
        base: Dict[str, Any] = {"payload.hotel_id": hotel_id} if hotel_id else {}
        by_status = {}
        for status in ("pending", "processing", "completed", "failed", "cancelled"):
            by_status[status] = await self.col.count_documents({**base, "status": status})
        by_priority = {}
        for priority in range(1, 6):
            count = await self.col.count_documents({**base, "status": {"$in": list(ACTIVE_STATUSES)}, "priority": priority})
            if count:
                by_priority[str(priority)] = count
        due = await self.col.count_documents({**base, "status": "pending", "scheduled_for": {"$lte": self.now()}})
        return {
            "hotel_id": hotel_id,
            "total": sum(by_status.values()),
            "by_status": by_status,
            "active_by_priority": by_priority,
            "due_now": due,
        }

    # --- maintenance ----------------------------------------------------

    async def requeue(self, event_id: str, *, actor: Optional[str] = None) -> EnqueueOutcome:
        """New event with the same payload and a fresh id; the original is left untouched."""

        original = await self.get(event_id)
        if original["status"] not in TERMINAL_STATUSES:
            raise _invalid_state(event_id, original["status"], "re-queue")
        outcome = await self.enqueue(
            original["event_type"],
            original["payload"],
            EnqueueOptions(
                priority=original.get("priority"),
                max_attempts=(original.get("processing") or {}).get("max_attempts"),
                source="manual",
                batch_id=original.get("batch_id"),
                created_by=actor,
            ),
        )
        await self.col.update_one({"_id": outcome.event_id}, {"$set": {"requeued_from": event_id}})
        outcome.event["requeued_from"] = event_id
        logger.info("event requeued original=%s new=%s actor=%s", event_id, outcome.event_id, actor)
        return outcome

    async def reap_expired(self, *, ttl_days: Optional[int] = None) -> int:
        days = self.ttl_days if ttl_days is None else ttl_days
        cutoff = self.now() - timedelta(days=days)
        res = await self.col.delete_many({"status": {"$in": list(REAPABLE_STATUSES)}, "updated_at": {"$lt": cutoff}})
        track_reaped(res.deleted_count)
        if res.deleted_count:
            logger.info("reaped %d terminal event(s) older than %d days", res.deleted_count, days)
        return res.deleted_count

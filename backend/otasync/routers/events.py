from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query

from otasync.auth import READ_ROLES, WRITE_ROLES, ensure_hotel_access, require_roles
from otasync.config import API_PREFIX
from otasync.constants.channels import EventType
from otasync.db import get_db
from otasync.schemas.events import CancelRequest, EventListQuery, EventStatus
from otasync.services.event_queue import EventQueue
from otasync.services.throttle import ProducerThrottle
from otasync.utils import serialize_doc

router = APIRouter(prefix=f"{API_PREFIX}/events", tags=["channel-sync-events"])


def _queue(db) -> EventQueue:
    return EventQueue(db, throttle=ProducerThrottle(db))


async def _event_for(queue: EventQueue, event_id: str, user: dict[str, Any]) -> dict[str, Any]:
    doc = await queue.get(event_id)
    ensure_hotel_access(user, (doc.get("payload") or {}).get("hotel_id"))
    return doc


@router.get("")
async def list_events(
    hotel_id: str = Query(...),
    status: Optional[EventStatus] = Query(None),
    event_type: Optional[EventType] = Query(None),
    batch_id: Optional[str] = Query(None),
    correlation_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    skip: int = Query(0, ge=0),
    db=Depends(get_db),
    user=Depends(require_roles(READ_ROLES)),
):
    ensure_hotel_access(user, hotel_id)
    query = EventListQuery(
        hotel_id=hotel_id,
        status=status,
        event_type=event_type,
        batch_id=batch_id,
        correlation_id=correlation_id,
        limit=limit,
        skip=skip,
    )
    items, total = await _queue(db).list(query)
    return {"total": total, "limit": limit, "skip": skip, "items": serialize_doc(items)}


@router.get("/stats")
async def event_stats(
    hotel_id: Optional[str] = Query(None),
    db=Depends(get_db),
    user=Depends(require_roles(READ_ROLES)),
):
    # Queue-wide numbers are for super admins only.
    ensure_hotel_access(user, hotel_id)
    return await _queue(db).stats(hotel_id)


@router.get("/batches/{batch_id}")
async def get_batch(
    batch_id: str,
    db=Depends(get_db),
    user=Depends(require_roles(READ_ROLES)),
):
    items = await _queue(db).batch(batch_id)
    for doc in items:
        ensure_hotel_access(user, (doc.get("payload") or {}).get("hotel_id"))
    by_status: dict[str, int] = {}
    for doc in items:
        by_status[doc["status"]] = by_status.get(doc["status"], 0) + 1
    return {"batch_id": batch_id, "total": len(items), "by_status": by_status, "items": serialize_doc(items)}


@router.get("/{event_id}")
async def get_event(
    event_id: str,
    db=Depends(get_db),
    user=Depends(require_roles(READ_ROLES)),
):
    doc = await _event_for(_queue(db), event_id, user)
    return serialize_doc(doc)


@router.post("/{event_id}/cancel")
async def cancel_event(
    event_id: str,
    payload: Optional[CancelRequest] = None,
    db=Depends(get_db),
    user=Depends(require_roles(WRITE_ROLES)),
):
    queue = _queue(db)
    await _event_for(queue, event_id, user)
    reason = (payload or CancelRequest()).reason
    doc = await queue.cancel(event_id, reason, actor=user.get("email"))
    return serialize_doc(doc)


@router.post("/{event_id}/requeue", status_code=201)
async def requeue_event(
    event_id: str,
    db=Depends(get_db),
    user=Depends(require_roles(WRITE_ROLES)),
):
    """New event with the original payload; the original keeps its terminal status."""
    queue = _queue(db)
    await _event_for(queue, event_id, user)
    outcome = await queue.requeue(event_id, actor=user.get("email"))
    return {
        "event_id": outcome.event_id,
        "requeued_from": event_id,
        "created": outcome.created,
        "coalesced": outcome.coalesced,
        "throttled": outcome.throttled,
        "event": serialize_doc(outcome.event),
    }

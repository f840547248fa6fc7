from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from otasync.auth import READ_ROLES, ensure_hotel_access, require_roles
from otasync.config import API_PREFIX
from otasync.constants.channels import EventType
from otasync.db import get_db
from otasync.errors import AppError
from otasync.services.channel_payloads import ChannelPayloadLog, PayloadDirection, PayloadListQuery, PayloadStatus
from otasync.utils import serialize_doc

router = APIRouter(prefix=f"{API_PREFIX}/payloads", tags=["channel-sync-payloads"])


@router.get("")
async def list_payloads(
    hotel_id: str = Query(...),
    channel: Optional[str] = Query(None),
    direction: Optional[PayloadDirection] = Query(None),
    status: Optional[PayloadStatus] = Query(None),
    event_id: Optional[str] = Query(None),
    event_type: Optional[EventType] = Query(None),
    since: Optional[datetime] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    skip: int = Query(0, ge=0),
    db=Depends(get_db),
    user=Depends(require_roles(READ_ROLES)),
):
    ensure_hotel_access(user, hotel_id)
    query = PayloadListQuery(
        hotel_id=hotel_id,
        channel=channel,
        direction=direction,
        status=status,
        event_id=event_id,
        event_type=event_type,
        since=since,
        limit=limit,
        skip=skip,
    )
    items, total = await ChannelPayloadLog(db).list(query)
    return {"total": total, "limit": limit, "skip": skip, "items": serialize_doc(items)}


@router.get("/stats")
async def payload_stats(
    hotel_id: str = Query(...),
    db=Depends(get_db),
    user=Depends(require_roles(READ_ROLES)),
):
    ensure_hotel_access(user, hotel_id)
    return await ChannelPayloadLog(db).stats(hotel_id)


@router.get("/{payload_id}")
async def get_payload(
    payload_id: str,
    db=Depends(get_db),
    user=Depends(require_roles(READ_ROLES)),
):
    doc = await ChannelPayloadLog(db).get(payload_id)
    if not doc:
        raise AppError(404, "payload_not_found", "Payload log entry not found")
    ensure_hotel_access(user, doc.get("hotel_id"))
    return serialize_doc(doc)

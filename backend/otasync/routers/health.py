from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from otasync.auth import READ_ROLES, ensure_hotel_access, require_roles
from otasync.config import API_PREFIX
from otasync.db import get_db
from otasync.errors import AppError
from otasync.schemas.health import SyncHealthListResponse, SyncHealthOut
from otasync.services.sync_health import SyncHealthService


router = APIRouter(prefix=f"{API_PREFIX}/health", tags=["channel-sync-health"])


@router.get("", response_model=SyncHealthListResponse)
async def list_sync_health(
    hotel_id: str = Query(...),
    db=Depends(get_db),
    user=Depends(require_roles(READ_ROLES)),
) -> SyncHealthListResponse:
    ensure_hotel_access(user, hotel_id)
    items = await SyncHealthService(db).list(hotel_id)
    return SyncHealthListResponse(hotel_id=hotel_id, items=items)


@router.get("/{hotel_id}/{channel}", response_model=SyncHealthOut)
async def get_sync_health(
    hotel_id: str,
    channel: str,
    db=Depends(get_db),
    user=Depends(require_roles(READ_ROLES)),
) -> SyncHealthOut:
    ensure_hotel_access(user, hotel_id)
    item = await SyncHealthService(db).get(hotel_id, channel)
    if not item:
        raise AppError(404, "sync_health_not_found", "No sync health recorded for this channel yet")
    return item

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query

from otasync.auth import READ_ROLES, WRITE_ROLES, ensure_hotel_access, require_roles
from otasync.config import API_PREFIX
from otasync.db import get_db
from otasync.schemas.mappings import RateMappingCreate, RateMappingUpdate, RoomMappingCreate, RoomMappingUpdate
from otasync.services.mapping_service import MappingService
from otasync.utils import serialize_doc

router = APIRouter(prefix=API_PREFIX, tags=["channel-sync-mappings"])


async def _room_mapping_for(svc: MappingService, mapping_id: str, user: dict[str, Any]) -> dict[str, Any]:
    doc = await svc.get_room_mapping(mapping_id)
    ensure_hotel_access(user, doc.get("hotel_id"))
    return doc


async def _rate_mapping_for(svc: MappingService, mapping_id: str, user: dict[str, Any]) -> dict[str, Any]:
    doc = await svc.get_rate_mapping(mapping_id)
    ensure_hotel_access(user, doc.get("hotel_id"))
    return doc


# --- room mappings -----------------------------------------------------


@router.get("/room-mappings")
async def list_room_mappings(
    hotel_id: str = Query(...),
    channel: Optional[str] = Query(None),
    pms_room_type_id: Optional[str] = Query(None),
    is_active: Optional[bool] = Query(None),
    db=Depends(get_db),
    user=Depends(require_roles(READ_ROLES)),
):
    ensure_hotel_access(user, hotel_id)
    items = await MappingService(db).list_room_mappings(
        hotel_id=hotel_id,
        channel=channel,
        pms_room_type_id=pms_room_type_id,
        is_active=is_active,
    )
    return {"items": serialize_doc(items)}


@router.post("/room-mappings", status_code=201)
async def create_room_mapping(
    payload: RoomMappingCreate,
    db=Depends(get_db),
    user=Depends(require_roles(WRITE_ROLES)),
):
    ensure_hotel_access(user, payload.hotel_id)
    doc = await MappingService(db).create_room_mapping(payload, actor=user.get("email"))
    return serialize_doc(doc)


@router.get("/room-mappings/{mapping_id}")
async def get_room_mapping(
    mapping_id: str,
    db=Depends(get_db),
    user=Depends(require_roles(READ_ROLES)),
):
    doc = await _room_mapping_for(MappingService(db), mapping_id, user)
    return serialize_doc(doc)


@router.patch("/room-mappings/{mapping_id}")
async def update_room_mapping(
    mapping_id: str,
    payload: RoomMappingUpdate,
    db=Depends(get_db),
    user=Depends(require_roles(WRITE_ROLES)),
):
    svc = MappingService(db)
    await _room_mapping_for(svc, mapping_id, user)
    doc = await svc.update_room_mapping(mapping_id, payload, actor=user.get("email"))
    return serialize_doc(doc)


@router.delete("/room-mappings/{mapping_id}")
async def deactivate_room_mapping(
    mapping_id: str,
    db=Depends(get_db),
    user=Depends(require_roles(WRITE_ROLES)),
):
    """Soft delete: the mapping and its rate plans stop being dispatched."""
    svc = MappingService(db)
    await _room_mapping_for(svc, mapping_id, user)
    doc = await svc.deactivate_room_mapping(mapping_id, actor=user.get("email"))
    return serialize_doc(doc)


# --- rate mappings -----------------------------------------------------


@router.get("/rate-mappings")
async def list_rate_mappings(
    hotel_id: str = Query(...),
    room_mapping_id: Optional[str] = Query(None),
    channel: Optional[str] = Query(None),
    is_active: Optional[bool] = Query(None),
    db=Depends(get_db),
    user=Depends(require_roles(READ_ROLES)),
):
    ensure_hotel_access(user, hotel_id)
    items = await MappingService(db).list_rate_mappings(
        hotel_id=hotel_id,
        room_mapping_id=room_mapping_id,
        channel=channel,
        is_active=is_active,
    )
    return {"items": serialize_doc(items)}


@router.post("/rate-mappings", status_code=201)
async def create_rate_mapping(
    payload: RateMappingCreate,
    db=Depends(get_db),
    user=Depends(require_roles(WRITE_ROLES)),
):
    svc = MappingService(db)
    await _room_mapping_for(svc, payload.room_mapping_id, user)
    doc = await svc.create_rate_mapping(payload, actor=user.get("email"))
    return serialize_doc(doc)


@router.get("/rate-mappings/{mapping_id}")
async def get_rate_mapping(
    mapping_id: str,
    db=Depends(get_db),
    user=Depends(require_roles(READ_ROLES)),
):
    doc = await _rate_mapping_for(MappingService(db), mapping_id, user)
    return serialize_doc(doc)


@router.patch("/rate-mappings/{mapping_id}")
async def update_rate_mapping(
    mapping_id: str,
    payload: RateMappingUpdate,
    db=Depends(get_db),
    user=Depends(require_roles(WRITE_ROLES)),
):
    svc = MappingService(db)
    await _rate_mapping_for(svc, mapping_id, user)
    doc = await svc.update_rate_mapping(mapping_id, payload, actor=user.get("email"))
    return serialize_doc(doc)


@router.delete("/rate-mappings/{mapping_id}")
async def deactivate_rate_mapping(
    mapping_id: str,
    db=Depends(get_db),
    user=Depends(require_roles(WRITE_ROLES)),
):
    svc = MappingService(db)
    await _rate_mapping_for(svc, mapping_id, user)
    doc = await svc.deactivate_rate_mapping(mapping_id, actor=user.get("email"))
    return serialize_doc(doc)

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query

from otasync.auth import READ_ROLES, WRITE_ROLES, ensure_hotel_access, require_roles
from otasync.config import API_PREFIX
from otasync.db import get_db
from otasync.errors import AppError, SyncErrorCode
from otasync.schemas.channel_config import ChannelConfigurationCreate, ChannelConfigurationUpdate
from otasync.services.channel_config_service import ChannelConfigService, channel_currency
from otasync.services.channels.registry import get_registry
from otasync.services.channels.types import AdapterContext, AdapterResult
from otasync.utils import now_utc, serialize_doc

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_PREFIX}/configurations", tags=["channel-sync-configurations"])


def _mask_credentials(creds: Optional[dict]) -> dict:
    if not creds:
        return {}
    masked: dict[str, Any] = {}
    for k, v in creds.items():
        if v is None or v == "":
            masked[k] = v
        elif isinstance(v, str):
            masked[k] = "****"
        else:
            masked[k] = v
    return masked


def _config_out(doc: dict[str, Any]) -> dict[str, Any]:
    out = serialize_doc(doc)
    integration = out.get("integration") or {}
    if integration:
        integration["credentials"] = _mask_credentials(integration.get("credentials"))
        if integration.get("webhook_secret"):
            integration["webhook_secret"] = "****"
    return out


@router.get("")
async def list_configurations(
    hotel_id: str = Query(...),
    channel: Optional[str] = Query(None),
    is_active: Optional[bool] = Query(None),
    db=Depends(get_db),
    user=Depends(require_roles(READ_ROLES)),
):
    ensure_hotel_access(user, hotel_id)
    items = await ChannelConfigService(db).list(hotel_id=hotel_id, channel=channel, is_active=is_active)
    return {"items": [_config_out(d) for d in items]}


@router.post("", status_code=201)
async def create_configuration(
    payload: ChannelConfigurationCreate,
    db=Depends(get_db),
    user=Depends(require_roles(WRITE_ROLES)),
):
    ensure_hotel_access(user, payload.hotel_id)
    doc = await ChannelConfigService(db).create(payload, actor=user.get("email"))
    return _config_out(doc)


@router.get("/{hotel_id}/{channel}")
async def get_configuration(
    hotel_id: str,
    channel: str,
    db=Depends(get_db),
    user=Depends(require_roles(READ_ROLES)),
):
    ensure_hotel_access(user, hotel_id)
    doc = await ChannelConfigService(db).require(hotel_id, channel)
    return _config_out(doc)


@router.patch("/{hotel_id}/{channel}")
async def update_configuration(
    hotel_id: str,
    channel: str,
    payload: ChannelConfigurationUpdate,
    db=Depends(get_db),
    user=Depends(require_roles(WRITE_ROLES)),
):
    ensure_hotel_access(user, hotel_id)
    doc = await ChannelConfigService(db).update(hotel_id, channel, payload, actor=user.get("email"))
    return _config_out(doc)


@router.delete("/{hotel_id}/{channel}")
async def deactivate_configuration(
    hotel_id: str,
    channel: str,
    db=Depends(get_db),
    user=Depends(require_roles(WRITE_ROLES)),
):
    ensure_hotel_access(user, hotel_id)
    doc = await ChannelConfigService(db).deactivate(hotel_id, channel, actor=user.get("email"))
    return _config_out(doc)


@router.post("/{hotel_id}/{channel}/test")
async def test_configuration(
    hotel_id: str,
    channel: str,
    db=Depends(get_db),
    user=Depends(require_roles(WRITE_ROLES)),
):
    """Run the adapter's connection probe and record the outcome on the configuration."""
    ensure_hotel_access(user, hotel_id)
    svc = ChannelConfigService(db)
    cfg = await svc.require(hotel_id, channel)

    adapter = get_registry().get(channel)
    if adapter is None:
        raise AppError(
            status_code=422,
            code="adapter_not_registered",
            message="No adapter is registered for this channel.",
            details={"channel": channel},
        )

    await svc.set_connection_status(hotel_id, channel, "testing")

    integration = cfg.get("integration") or {}
    ctx = AdapterContext(
        hotel_id=hotel_id,
        channel=channel,
        credentials=dict(integration.get("credentials") or {}),
        endpoints=dict(integration.get("endpoints") or {}),
        language=(cfg.get("languages") or {}).get("primary_language") or "EN",
        currency=channel_currency(cfg) or "USD",
        timeout_ms=int(integration.get("timeout_ms") or 30_000),
        batch_size=int(integration.get("batch_size") or 100),
    )
    try:
        result = await asyncio.wait_for(adapter.test_connection(ctx), timeout=ctx.timeout_s)
    except asyncio.TimeoutError:
        result = AdapterResult.failure(
            SyncErrorCode.NETWORK_TIMEOUT.value,
            f"connection test timed out after {ctx.timeout_ms}ms",
            retryable=True,
        )

    if result.ok and not result.skipped:
        await svc.set_connection_status(hotel_id, channel, "connected")
        status = "connected"
    else:
        error = result.error
        await svc.set_connection_status(
            hotel_id,
            channel,
            "error",
            error={
                "code": error.code if error else None,
                "message": (error.message if error else "") or "connection test failed",
                "timestamp": now_utc(),
            },
        )
        status = "error"

    logger.info("connection test hotel=%s channel=%s status=%s", hotel_id, channel, status)
    return {
        "hotel_id": hotel_id,
        "channel": channel,
        "connection_status": status,
        "latency_ms": result.latency_ms,
        "error": result.error.to_dict() if result.error else None,
    }

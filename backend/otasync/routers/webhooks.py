from __future__ import annotations

import hmac
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Header

from otasync.config import API_PREFIX
from otasync.db import get_db
from otasync.errors import AppError
from otasync.services.channel_config_service import ChannelConfigService
from otasync.services.channel_payloads import ChannelPayloadLog
from otasync.services.event_queue import EventQueue
from otasync.services.reservations import ReservationIntake
from otasync.utils import serialize_doc

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_PREFIX}/webhooks", tags=["channel-sync-webhooks"])


@router.post("/{channel}/{hotel_id}/reservations", status_code=202)
async def receive_reservation(
    channel: str,
    hotel_id: str,
    payload: Dict[str, Any] = Body(...),
    x_webhook_secret: Optional[str] = Header(None),
    db=Depends(get_db),
):
    """Inbound push reservation from a channel, authenticated by the configuration's shared secret."""
    cfg = await ChannelConfigService(db).get(hotel_id, channel)
    expected = ((cfg or {}).get("integration") or {}).get("webhook_secret")
    if not cfg or not expected or not x_webhook_secret or not hmac.compare_digest(str(expected), x_webhook_secret):
        logger.warning("Rejected %s reservation webhook for hotel %s", channel, hotel_id)
        raise AppError(401, "invalid_webhook_secret", "Webhook secret missing or invalid")

    await ChannelPayloadLog(db).record_inbound(hotel_id=hotel_id, channel=channel, request=payload)
    receipt = await ReservationIntake(db, EventQueue(db)).receive(hotel_id, channel, payload)
    return {
        "receipt_id": receipt["_id"],
        "status": receipt["status"],
        "ack_event_id": receipt.get("ack_event_id"),
        "receipt": serialize_doc(receipt),
    }

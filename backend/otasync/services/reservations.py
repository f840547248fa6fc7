from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Protocol

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from otasync.errors import AppError
from otasync.schemas.events import EnqueueOptions
from otasync.services.event_queue import EnqueueOutcome, EventQueue
from otasync.utils import new_id, now_utc, parse_day

logger = logging.getLogger("otasync.reservations")

HANDOFF_STALE_S = 300


class ReservationsCollaborator(Protocol):
    """Turns a channel reservation into a PMS booking; owned by the bookings module."""

    async def on_external_reservation(self, channel: str, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        ...


class NoopReservations:
    """Used until the bookings module registers its own collaborator."""

    async def on_external_reservation(self, channel: str, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        logger.info("No reservations collaborator registered; %s reservation kept as receipt only", channel)
        return None


_collaborator: ReservationsCollaborator = NoopReservations()


def get_reservations_collaborator() -> ReservationsCollaborator:
    return _collaborator


def set_reservations_collaborator(collaborator: Optional[ReservationsCollaborator]) -> None:
    global _collaborator
    _collaborator = collaborator or NoopReservations()


def _stay_range(payload: Dict[str, Any]) -> Dict[str, str]:
    try:
        start = parse_day(payload["check_in"])
        end = parse_day(payload["check_out"])
    except (KeyError, TypeError, ValueError):
        raise AppError(
            status_code=422,
            code="invalid_payload",
            message="reservation needs valid check_in and check_out dates",
            details={"check_in": payload.get("check_in"), "check_out": payload.get("check_out")},
        )
    if end <= start:
        raise AppError(
            status_code=422,
            code="invalid_payload",
            message="check_out must be after check_in",
            details={"check_in": start.isoformat(), "check_out": end.isoformat()},
        )
    return {"start": start.isoformat(), "end": end.isoformat()}


class ReservationIntake:
    """Inbound channel reservations: receipt, PMS hand-off, acknowledgement event."""

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        queue: EventQueue,
        collaborator: Optional[ReservationsCollaborator] = None,
    ) -> None:
        self.db = db
        self.queue = queue
        self.collaborator = collaborator or get_reservations_collaborator()

    async def receive(self, hotel_id: str, channel: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Store the receipt once per (channel, reservation ref) and enqueue the ack.

        A repeated delivery of an acknowledged reservation returns the
        existing receipt without calling the collaborator or enqueueing
        again. A receipt whose hand-off failed, or stalled, is picked up
        again by the next delivery.
        """

        ref = str(payload.get("external_reservation_ref") or payload.get("reservation_id") or "").strip()
        if not ref:
            raise AppError(
                status_code=422,
                code="invalid_payload",
                message="reservation payload needs external_reservation_ref",
            )
        date_range = _stay_range(payload)

        now = now_utc()
        receipt: Dict[str, Any] = {
            "_id": new_id("rcp"),
            "hotel_id": hotel_id,
            "channel": channel,
            "external_reservation_ref": ref,
            "payload": payload,
            "status": "handing_off",
            "pms_booking": None,
            "ack_event_id": None,
            "error": None,
            "created_at": now,
            "updated_at": now,
        }
        try:
            await self.db.reservation_receipts.insert_one(receipt)
        except DuplicateKeyError:
            claimed = await self._reclaim(channel, ref, now)
            if claimed is None:
                existing = await self.db.reservation_receipts.find_one({"channel": channel, "external_reservation_ref": ref})
                logger.info("Duplicate %s reservation %s ignored", channel, ref)
                return existing or receipt
            logger.info("Resuming hand-off of %s reservation %s", channel, ref)
            receipt = claimed

        return await self._hand_off(receipt, hotel_id, channel, ref, payload, date_range)

    async def _reclaim(self, channel: str, ref: str, now: datetime) -> Optional[Dict[str, Any]]:
        stale_before = now - timedelta(seconds=HANDOFF_STALE_S)
        return await self.db.reservation_receipts.find_one_and_update(
            {
                "channel": channel,
                "external_reservation_ref": ref,
                "ack_event_id": None,
                "$or": [
                    {"status": {"$in": ["received", "failed"]}},
                    {"status": "handing_off", "updated_at": {"$lt": stale_before}},
                ],
            },
            {"$set": {"status": "handing_off", "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )

    async def _hand_off(
        self,
        receipt: Dict[str, Any],
        hotel_id: str,
        channel: str,
        ref: str,
        payload: Dict[str, Any],
        date_range: Dict[str, str],
    ) -> Dict[str, Any]:
        try:
            pms_booking = await self.collaborator.on_external_reservation(channel, {**payload, "hotel_id": hotel_id})

            outcome: EnqueueOutcome = await self.queue.enqueue(
                "reservation_ack",
                {
                    "hotel_id": hotel_id,
                    "date_range": date_range,
                    "channels": [channel],
                    "data": {
                        "external_reservation_ref": ref,
                        "confirmation_number": (pms_booking or {}).get("confirmation_number") or ref,
                    },
                },
                EnqueueOptions(source="webhook"),
            )
        except Exception as exc:
            logger.exception("Hand-off of %s reservation %s failed", channel, ref)
            await self.db.reservation_receipts.update_one(
                {"_id": receipt["_id"]},
                {"$set": {"status": "failed", "error": str(exc)[:500], "updated_at": now_utc()}},
            )
            raise

        update = {
            "status": "acknowledging",
            "pms_booking": pms_booking,
            "ack_event_id": outcome.event_id,
            "error": None,
            "updated_at": now_utc(),
        }
        await self.db.reservation_receipts.update_one({"_id": receipt["_id"]}, {"$set": update})
        receipt.update(update)
        logger.info("Reservation %s from %s received, ack event %s", ref, channel, outcome.event_id)
        return receipt

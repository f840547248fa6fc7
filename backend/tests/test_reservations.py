from __future__ import annotations

import pytest

from otasync.errors import AppError
from otasync.services.event_queue import EventQueue
from otasync.services.reservations import ReservationIntake
from otasync.utils import now_utc

from conftest import HOTEL_ID


class RecordingReservations:
    def __init__(self):
        self.calls = []

    async def on_external_reservation(self, channel, payload):
        self.calls.append((channel, payload))
        return {"booking_id": "bk_1", "confirmation_number": "PMS-1001"}


@pytest.fixture
def collaborator() -> RecordingReservations:
    return RecordingReservations()


@pytest.fixture
def intake(test_db, collaborator) -> ReservationIntake:
    return ReservationIntake(test_db, EventQueue(test_db), collaborator)


def _reservation(ref: str = "EXP-1") -> dict:
    return {"external_reservation_ref": ref, "check_in": "2026-12-01", "check_out": "2026-12-04", "guest": {"name": "A. Guest"}}


@pytest.mark.anyio
async def test_reservation_is_handed_off_and_acknowledged(test_db, intake, collaborator):
    receipt = await intake.receive(HOTEL_ID, "expedia", _reservation())

    assert receipt["status"] == "acknowledging"
    assert receipt["pms_booking"]["confirmation_number"] == "PMS-1001"
    assert collaborator.calls[0][0] == "expedia"
    assert collaborator.calls[0][1]["hotel_id"] == HOTEL_ID

    ack = await test_db.sync_events.find_one({"_id": receipt["ack_event_id"]})
    assert ack["event_type"] == "reservation_ack"
    assert ack["source"] == "webhook"
    assert ack["payload"]["channels"] == ["expedia"]
    assert ack["payload"]["date_range"] == {"start": "2026-12-01", "end": "2026-12-04"}
    assert ack["payload"]["data"] == {"external_reservation_ref": "EXP-1", "confirmation_number": "PMS-1001"}


@pytest.mark.anyio
async def test_repeated_delivery_is_ignored(test_db, intake, collaborator):
    first = await intake.receive(HOTEL_ID, "expedia", _reservation())
    second = await intake.receive(HOTEL_ID, "expedia", _reservation())

    assert second["_id"] == first["_id"]
    assert len(collaborator.calls) == 1
    assert await test_db.sync_events.count_documents({"event_type": "reservation_ack"}) == 1


@pytest.mark.anyio
async def test_same_ref_on_another_channel_is_a_new_reservation(intake, collaborator):
    await intake.receive(HOTEL_ID, "expedia", _reservation("R-9"))
    await intake.receive(HOTEL_ID, "airbnb", _reservation("R-9"))

    assert [c for c, _ in collaborator.calls] == ["expedia", "airbnb"]


@pytest.mark.anyio
async def test_reservation_without_stay_dates_is_rejected(test_db, intake):
    with pytest.raises(AppError) as exc:
        await intake.receive(HOTEL_ID, "expedia", {"external_reservation_ref": "X", "check_in": "2026-12-04", "check_out": "2026-12-01"})

    assert exc.value.status_code == 422
    assert await test_db.reservation_receipts.count_documents({}) == 0


@pytest.mark.anyio
async def test_without_a_collaborator_the_receipt_is_kept(test_db):
    intake = ReservationIntake(test_db, EventQueue(test_db))

    receipt = await intake.receive(HOTEL_ID, "booking_com", _reservation("BDC-5"))

    assert receipt["pms_booking"] is None
    ack = await test_db.sync_events.find_one({"_id": receipt["ack_event_id"]})
    assert ack["payload"]["data"]["confirmation_number"] == "BDC-5"


class FlakyReservations(RecordingReservations):
    def __init__(self, failures: int = 1):
        super().__init__()
        self.failures = failures

    async def on_external_reservation(self, channel, payload):
        if self.failures:
            self.failures -= 1
            self.calls.append((channel, payload))
            raise RuntimeError("pms unavailable")
        return await super().on_external_reservation(channel, payload)


@pytest.mark.anyio
async def test_failed_hand_off_is_retried_on_redelivery(test_db):
    collaborator = FlakyReservations()
    intake = ReservationIntake(test_db, EventQueue(test_db), collaborator)

    with pytest.raises(RuntimeError):
        await intake.receive(HOTEL_ID, "expedia", _reservation("EXP-7"))

    stored = await test_db.reservation_receipts.find_one({"external_reservation_ref": "EXP-7"})
    assert stored["status"] == "failed"
    assert stored["ack_event_id"] is None
    assert "pms unavailable" in stored["error"]

    receipt = await intake.receive(HOTEL_ID, "expedia", _reservation("EXP-7"))

    assert receipt["_id"] == stored["_id"]
    assert receipt["status"] == "acknowledging"
    assert receipt["ack_event_id"]
    assert len(collaborator.calls) == 2
    assert await test_db.sync_events.count_documents({"event_type": "reservation_ack"}) == 1

    # Once acknowledged, further deliveries are plain duplicates.
    again = await intake.receive(HOTEL_ID, "expedia", _reservation("EXP-7"))
    assert again["ack_event_id"] == receipt["ack_event_id"]
    assert len(collaborator.calls) == 2


@pytest.mark.anyio
async def test_hand_off_in_progress_is_not_duplicated(test_db, intake, collaborator):
    await test_db.reservation_receipts.insert_one(
        {
            "_id": "rcp_inflight",
            "hotel_id": HOTEL_ID,
            "channel": "expedia",
            "external_reservation_ref": "EXP-8",
            "status": "handing_off",
            "ack_event_id": None,
            "created_at": now_utc(),
            "updated_at": now_utc(),
        }
    )

    receipt = await intake.receive(HOTEL_ID, "expedia", _reservation("EXP-8"))

    assert receipt["_id"] == "rcp_inflight"
    assert collaborator.calls == []

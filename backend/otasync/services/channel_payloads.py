from __future__ import annotations

"""Audit log of payloads exchanged with channels.

Collections used:
- channel_payloads

Schema:
- _id: "pl_..."
- direction: "outbound" | "inbound"
- hotel_id, channel: str
- event_id, event_type: Optional[str] (outbound pushes)
- attempt_number: Optional[int]
- language: Optional[str]
- request: dict, the body handed to the adapter or received on the webhook
- response: Optional[dict]
- status: "success" | "failed" | "skipped" | "received"
- code, message: Optional[str] (failures and skips)
- latency_ms: int
- created_at: datetime
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Literal, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import BaseModel, Field

from otasync.services.channels.types import AdapterResult
from otasync.utils import new_id, now_utc

logger = logging.getLogger("otasync.channel_payloads")

PayloadDirection = Literal["outbound", "inbound"]
PayloadStatus = Literal["success", "failed", "skipped", "received"]


class PayloadListQuery(BaseModel):
    hotel_id: str
    channel: Optional[str] = None
    direction: Optional[PayloadDirection] = None
    status: Optional[PayloadStatus] = None
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    since: Optional[datetime] = None
    limit: int = Field(default=50, ge=1, le=500)
    skip: int = Field(default=0, ge=0)


def _result_status(result: AdapterResult) -> str:
    if result.skipped:
        return "skipped"
    return "success" if result.ok else "failed"


class ChannelPayloadLog:
    """Writes and searches the channel_payloads collection.

    Writes never raise: a failed audit insert is logged and the sync goes on.
    """

    def __init__(self, db: AsyncIOMotorDatabase, *, clock: Callable[[], datetime] = now_utc) -> None:
        self.db = db
        self._clock = clock

    @property
    def col(self):
        return self.db.channel_payloads

    async def _insert(self, doc: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            await self.col.insert_one(doc)
        except Exception as e:
            logger.warning("Could not store %s payload for %s/%s: %s", doc["direction"], doc["hotel_id"], doc["channel"], e)
            return None
        return doc

    async def record_outbound(
        self,
        *,
        event: Dict[str, Any],
        channel: str,
        attempt_number: int,
        request: Dict[str, Any],
        result: AdapterResult,
        language: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        error = result.error
        return await self._insert(
            {
                "_id": new_id("pl"),
                "direction": "outbound",
                "hotel_id": (event.get("payload") or {}).get("hotel_id"),
                "channel": channel,
                "event_id": event["_id"],
                "event_type": event.get("event_type"),
                "attempt_number": attempt_number,
                "language": language,
                "request": request,
                "response": result.response,
                "status": _result_status(result),
                "code": error.code if error else None,
                "message": error.message if error else None,
                "latency_ms": result.latency_ms,
                "created_at": self._clock(),
            }
        )

    async def record_inbound(self, *, hotel_id: str, channel: str, request: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return await self._insert(
            {
                "_id": new_id("pl"),
                "direction": "inbound",
                "hotel_id": hotel_id,
                "channel": channel,
                "event_id": None,
                "event_type": None,
                "attempt_number": None,
                "language": None,
                "request": request,
                "response": None,
                "status": "received",
                "code": None,
                "message": None,
                "latency_ms": 0,
                "created_at": self._clock(),
            }
        )

    async def list(self, query: PayloadListQuery) -> Tuple[List[Dict[str, Any]], int]:
        filt: Dict[str, Any] = {"hotel_id": query.hotel_id}
        for key in ("channel", "direction", "status", "event_id", "event_type"):
            value = getattr(query, key)
            if value:
                filt[key] = value
        if query.since:
            filt["created_at"] = {"$gte": query.since}
        total = await self.col.count_documents(filt)
        items = (
            await self.col.find(filt)
            .sort("created_at", -1)
            .skip(query.skip)
            .limit(query.limit)
            .to_list(length=query.limit)
        )
        return items, total

    async def get(self, payload_id: str) -> Optional[Dict[str, Any]]:
        return await self.col.find_one({"_id": payload_id})

    async def stats(self, hotel_id: str) -> Dict[str, Any]:
        pipeline = [
            {"$match": {"hotel_id": hotel_id}},
            {
                "$group": {
                    "_id": {"channel": "$channel", "status": "$status"},
                    "count": {"$sum": 1},
                    "avg_latency_ms": {"$avg": "$latency_ms"},
                }
            },
        ]
        by_channel: Dict[str, Dict[str, Any]] = {}
        async for row in self.col.aggregate(pipeline):
            channel = row["_id"]["channel"]
            entry = by_channel.setdefault(channel, {"total": 0, "by_status": {}, "avg_latency_ms": {}})
            entry["total"] += row["count"]
            entry["by_status"][row["_id"]["status"]] = row["count"]
            entry["avg_latency_ms"][row["_id"]["status"]] = round(row["avg_latency_ms"] or 0, 1)
        return {"hotel_id": hotel_id, "total": sum(c["total"] for c in by_channel.values()), "by_channel": by_channel}

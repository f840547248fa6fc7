from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from otasync.errors import SyncErrorCode
from otasync.schemas.health import SyncHealthOut
from otasync.utils import as_utc, now_utc

logger = logging.getLogger(__name__)

# EMA over roughly the last 100 calls
EMA_ALPHA = 2.0 / (100 + 1)
UPTIME_WINDOW_HOURS = 24


def _hour_key(ts: datetime) -> str:
    return ts.strftime("%Y%m%d%H")


def _health_id(hotel_id: str, channel: str) -> str:
    return f"{hotel_id}:{channel}"


def _is_outage(result: Dict[str, Any]) -> bool:
    """Failures that say the channel itself is unhealthy, not the payload."""

    if result.get("status") != "failed":
        return False
    return bool(result.get("retryable")) or result.get("code") == SyncErrorCode.AUTH_FAILED.value


def uptime_from_buckets(buckets: Dict[str, Dict[str, int]], now: Optional[datetime] = None) -> float:
    now = now or now_utc()
    oldest = _hour_key(now - timedelta(hours=UPTIME_WINDOW_HOURS - 1))
    up = total = 0
    for key, bucket in (buckets or {}).items():
        if key < oldest:
            continue
        up += int(bucket.get("up") or 0)
        total += int(bucket.get("total") or 0)
    if total == 0:
        return 100.0
    return round(100.0 * up / total, 2)


def to_health_out(doc: Dict[str, Any], now: Optional[datetime] = None) -> SyncHealthOut:
    total = int(doc.get("total_syncs") or 0)
    successful = int(doc.get("successful_syncs") or 0)
    return SyncHealthOut(
        hotel_id=doc["hotel_id"],
        channel=doc["channel"],
        total_syncs=total,
        successful_syncs=successful,
        failed_syncs=int(doc.get("failed_syncs") or 0),
        skipped_syncs=int(doc.get("skipped_syncs") or 0),
        avg_response_time_ms=round(float(doc.get("avg_response_time_ms") or 0.0), 2),
        uptime_percentage=uptime_from_buckets(doc.get("uptime_buckets") or {}, now),
        health_score=round(successful / max(total, 1), 4),
        connection_status=doc.get("connection_status") or "testing",
        last_sync={k: as_utc(v) for k, v in (doc.get("last_sync") or {}).items()},
        last_error=doc.get("last_error"),
        updated_at=as_utc(doc.get("updated_at")),
    )


class SyncHealthService:
    """Materialized per-(hotel, channel) sync counters in `channel_sync_health`.

    Written only by workers. Counter increments are atomic; the response
    time average and connection state are last-writer-wins, which is fine for
    an operator view.
    """

    def __init__(self, db) -> None:
        self.db = db

    async def record(
        self,
        hotel_id: str,
        channel: str,
        result: Dict[str, Any],
        *,
        resource: str,
        now: Optional[datetime] = None,
    ) -> None:
        """Fold one per-channel result into the counters (fail-open)."""

        try:
            await self._record(hotel_id, channel, result, resource=resource, now=now or now_utc())
        except Exception:
            # Health bookkeeping must never fail a sync
            logger.warning("sync health update failed hotel=%s channel=%s", hotel_id, channel, exc_info=True)

    async def _record(
        self,
        hotel_id: str,
        channel: str,
        result: Dict[str, Any],
        *,
        resource: str,
        now: datetime,
    ) -> None:
        status = result.get("status")
        current = await self.db.channel_sync_health.find_one({"_id": _health_id(hotel_id, channel)}) or {}

        inc: Dict[str, Any] = {"total_syncs": 1}
        cfg_inc: Dict[str, Any] = {"status.total_syncs": 1}
        set_fields: Dict[str, Any] = {"hotel_id": hotel_id, "channel": channel, "updated_at": now}
        cfg_set: Dict[str, Any] = {}
        unset: Dict[str, Any] = {}

        if status == "skipped":
            inc["skipped_syncs"] = 1
            cfg_inc["status.skipped_syncs"] = 1
        else:
            latency = float(result.get("processing_time_ms") or 0)
            samples = int(current.get("response_samples") or 0)
            previous = float(current.get("avg_response_time_ms") or 0.0)
            set_fields["avg_response_time_ms"] = latency if samples == 0 else previous + EMA_ALPHA * (latency - previous)
            inc["response_samples"] = 1

            key = _hour_key(now)
            inc[f"uptime_buckets.{key}.total"] = 1
            if not _is_outage(result):
                inc[f"uptime_buckets.{key}.up"] = 1
            oldest = _hour_key(now - timedelta(hours=UPTIME_WINDOW_HOURS - 1))
            for old in (current.get("uptime_buckets") or {}):
                if old < oldest:
                    unset[f"uptime_buckets.{old}"] = ""

            if status == "success":
                inc["successful_syncs"] = 1
                cfg_inc["status.successful_syncs"] = 1
                set_fields["connection_status"] = "connected"
                set_fields[f"last_sync.{resource}"] = now
                cfg_set["status.connection_status"] = "connected"
                cfg_set[f"status.last_sync.{resource}"] = now
            else:
                inc["failed_syncs"] = 1
                cfg_inc["status.failed_syncs"] = 1
                last_error = {
                    "message": result.get("message") or "",
                    "code": result.get("code"),
                    "timestamp": now,
                }
                set_fields["last_error"] = last_error
                cfg_set["status.last_error"] = last_error
                if _is_outage(result):
                    set_fields["connection_status"] = "error"
                    cfg_set["status.connection_status"] = "error"

        if "connection_status" not in set_fields and not current:
            cfg = await self.db.channel_configurations.find_one(
                {"hotel_id": hotel_id, "channel": channel}, {"status.connection_status": 1}
            )
            set_fields["connection_status"] = ((cfg or {}).get("status") or {}).get("connection_status") or "testing"

        update: Dict[str, Any] = {"$inc": inc, "$set": set_fields, "$setOnInsert": {"created_at": now}}
        if unset:
            update["$unset"] = unset
        await self.db.channel_sync_health.update_one({"_id": _health_id(hotel_id, channel)}, update, upsert=True)

        cfg_update: Dict[str, Any] = {"$inc": cfg_inc}
        if cfg_set:
            cfg_update["$set"] = cfg_set
        await self.db.channel_configurations.update_one({"hotel_id": hotel_id, "channel": channel}, cfg_update)

    async def get(self, hotel_id: str, channel: str) -> Optional[SyncHealthOut]:
        doc = await self.db.channel_sync_health.find_one({"_id": _health_id(hotel_id, channel)})
        if not doc:
            return None
        return to_health_out(doc)

    async def list(self, hotel_id: Optional[str] = None) -> List[SyncHealthOut]:
        query: Dict[str, Any] = {"hotel_id": hotel_id} if hotel_id else {}
        docs = await self.db.channel_sync_health.find(query).sort([("hotel_id", 1), ("channel", 1)]).to_list(length=1000)
        return [to_health_out(d) for d in docs]

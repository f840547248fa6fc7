from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from otasync import config
from otasync.utils import now_utc


def _bucket_minute(now: datetime) -> datetime:
    return now.replace(second=0, microsecond=0)


class ProducerThrottle:
    """Per-hotel enqueue rate counted in minute buckets (`sync_throttle_buckets`).

    Over the limit, enqueue still succeeds; the caller pushes `scheduled_for`
    out by `spacing_ms` for every event past the limit in the current minute.
    """

    def __init__(
        self,
        db,
        *,
        limit_per_minute: Optional[int] = None,
        spacing_ms: Optional[int] = None,
    ) -> None:
        self.db = db
        self.limit_per_minute = config.PRODUCER_RATE_PER_MINUTE if limit_per_minute is None else limit_per_minute
        self.spacing_ms = config.THROTTLE_SPACING_MS if spacing_ms is None else spacing_ms

    async def delay_for(self, hotel_id: str, *, now: Optional[datetime] = None) -> timedelta:
        """Count one enqueue for `hotel_id` and return the push-out to apply."""

        if self.limit_per_minute <= 0:
            return timedelta(0)

        now = now or now_utc()
        key: Dict[str, Any] = {"hotel_id": hotel_id, "bucket_minute": _bucket_minute(now)}
        await self.db.sync_throttle_buckets.update_one(
            key,
            {
                "$inc": {"count": 1},
                "$setOnInsert": {"created_at": now},
            },
            upsert=True,
        )
        doc = await self.db.sync_throttle_buckets.find_one(key)
        count = int((doc or {}).get("count", 0))
        overflow = count - self.limit_per_minute
        if overflow <= 0:
            return timedelta(0)
        return timedelta(milliseconds=overflow * self.spacing_ms)

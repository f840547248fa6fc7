from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from otasync.schemas.channel_config import ConnectionStatus, LastError


class SyncHealthOut(BaseModel):
    hotel_id: str
    channel: str
    total_syncs: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    skipped_syncs: int = 0
    avg_response_time_ms: float = 0.0
    uptime_percentage: float = 100.0
    health_score: float = 0.0
    connection_status: ConnectionStatus = "testing"
    last_sync: dict[str, datetime] = {}
    last_error: Optional[LastError] = None
    updated_at: Optional[datetime] = None


class SyncHealthListResponse(BaseModel):
    hotel_id: Optional[str]
    items: list[SyncHealthOut]

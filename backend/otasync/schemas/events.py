from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from otasync.constants.channels import ALL_CHANNELS_SENTINEL, CHANNELS, EventType


EventStatus = Literal["pending", "processing", "completed", "failed", "cancelled"]
EventSource = Literal["manual", "system", "webhook", "scheduler", "bulk_operation"]
ChannelResultStatus = Literal["success", "failed", "skipped"]


class DateRange(BaseModel):
    """Half-open stay range: nights from `start` up to, not including, `end`."""

    start: date
    end: date

    @model_validator(mode="after")
    def _end_after_start(self) -> "DateRange":
        if self.end <= self.start:
            raise ValueError("date_range.end must be after date_range.start")
        return self


class EventPayload(BaseModel):
    hotel_id: str = Field(min_length=1)
    room_type_id: Optional[str] = None
    date_range: DateRange
    channels: Union[Literal["all"], list[str]] = ALL_CHANNELS_SENTINEL
    data: dict[str, Any] = Field(default_factory=dict)

    @field_validator("channels")
    @classmethod
    def _known_channels(cls, v: Any) -> Any:
        if v == ALL_CHANNELS_SENTINEL:
            return v
        if not v:
            raise ValueError("channels must be 'all' or a non-empty list")
        unknown = [c for c in v if c not in CHANNELS and c != ALL_CHANNELS_SENTINEL]
        if unknown:
            raise ValueError(f"unknown channels: {', '.join(unknown)}")
        if ALL_CHANNELS_SENTINEL in v:
            return ALL_CHANNELS_SENTINEL
        # de-duplicate, keep order
        return list(dict.fromkeys(v))


class EnqueueOptions(BaseModel):
    priority: Optional[int] = Field(default=None, ge=1, le=5)
    max_attempts: Optional[int] = Field(default=None, ge=1, le=11)
    source: EventSource = "system"
    correlation_id: Optional[str] = None
    batch_id: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    created_by: Optional[str] = None


class EventErrorEntry(BaseModel):
    attempt_number: int
    timestamp: datetime
    code: str
    message: str
    channel: Optional[str] = None
    context: dict[str, Any] = Field(default_factory=dict)


class ChannelResultEntry(BaseModel):
    channel: str
    status: ChannelResultStatus
    attempt_number: int = 0
    code: Optional[str] = None
    message: Optional[str] = None
    retryable: Optional[bool] = None
    retry_after_ms: Optional[int] = None
    response: Optional[dict[str, Any]] = None
    context: dict[str, Any] = Field(default_factory=dict)
    processing_time_ms: int = 0
    timestamp: datetime


class CancelRequest(BaseModel):
    reason: str = Field(default="cancelled by operator", max_length=500)


class EventListQuery(BaseModel):
    hotel_id: Optional[str] = None
    status: Optional[EventStatus] = None
    event_type: Optional[EventType] = None
    batch_id: Optional[str] = None
    correlation_id: Optional[str] = None
    limit: int = Field(default=50, ge=1, le=500)
    skip: int = Field(default=0, ge=0)

from __future__ import annotations

from datetime import date
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from otasync.constants.channels import ChannelId


ModifierKind = Literal["percentage", "fixed"]
BaseModifierKind = Literal["percentage", "fixed", "multiplier"]
MealPlan = Literal["room_only", "breakfast", "half_board", "full_board", "all_inclusive"]
CancellationPolicy = Literal["free_cancellation", "non_refundable", "partial_refund", "custom"]


class RateModifier(BaseModel):
    type: ModifierKind
    value: float


class BaseRateModifier(BaseModel):
    type: BaseModifierKind
    value: float


class RoomMappingSettings(BaseModel):
    commission: float = Field(default=0, ge=0, le=100)
    rate_modifier: Optional[RateModifier] = None
    min_advance_booking_days: Optional[int] = Field(default=None, ge=0)
    max_advance_booking_days: Optional[int] = Field(default=None, ge=0)
    channel_specific: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _advance_window(self) -> "RoomMappingSettings":
        lo, hi = self.min_advance_booking_days, self.max_advance_booking_days
        if lo is not None and hi is not None and lo > hi:
            raise ValueError("min_advance_booking_days must be <= max_advance_booking_days")
        return self


class RoomMappingCreate(BaseModel):
    hotel_id: str = Field(min_length=1)
    pms_room_type_id: str = Field(min_length=1)
    channel: ChannelId
    channel_room_id: str = Field(min_length=1)
    channel_room_name: Optional[str] = None
    is_active: bool = True
    settings: RoomMappingSettings = Field(default_factory=RoomMappingSettings)


class RoomMappingUpdate(BaseModel):
    channel_room_id: Optional[str] = Field(default=None, min_length=1)
    channel_room_name: Optional[str] = None
    is_active: Optional[bool] = None
    settings: Optional[RoomMappingSettings] = None


class SeasonalRule(BaseModel):
    name: Optional[str] = None
    start_date: date
    end_date: date
    modifier: BaseRateModifier

    @model_validator(mode="after")
    def _ordered(self) -> "SeasonalRule":
        if self.end_date < self.start_date:
            raise ValueError("seasonal rule end_date must not precede start_date")
        return self


class DayOfWeekRule(BaseModel):
    # 0 = Sunday ... 6 = Saturday
    day_of_week: int = Field(ge=0, le=6)
    modifier: BaseRateModifier


class RateMappingRules(BaseModel):
    base_rate_modifier: Optional[BaseRateModifier] = None
    meal_plan: Optional[MealPlan] = None
    cancellation_policy: Optional[CancellationPolicy] = None
    free_cancellation_hours: Optional[int] = Field(default=None, ge=0)
    min_advance_booking: Optional[int] = Field(default=None, ge=0)
    max_advance_booking: Optional[int] = Field(default=None, ge=0)
    min_length_of_stay: Optional[int] = Field(default=None, ge=1)
    max_length_of_stay: Optional[int] = Field(default=None, ge=1)
    min_occupancy: Optional[int] = Field(default=None, ge=1)
    max_occupancy: Optional[int] = Field(default=None, ge=1)
    seasonal_rules: list[SeasonalRule] = Field(default_factory=list)
    day_of_week_pricing: list[DayOfWeekRule] = Field(default_factory=list)

    @model_validator(mode="after")
    def _bounds(self) -> "RateMappingRules":
        pairs = (
            ("min_length_of_stay", "max_length_of_stay"),
            ("min_occupancy", "max_occupancy"),
            ("min_advance_booking", "max_advance_booking"),
        )
        for lo_name, hi_name in pairs:
            lo, hi = getattr(self, lo_name), getattr(self, hi_name)
            if lo is not None and hi is not None and lo > hi:
                raise ValueError(f"{lo_name} must be <= {hi_name}")
        return self


class RateMappingCreate(BaseModel):
    pms_rate_plan_id: str = Field(min_length=1)
    room_mapping_id: str = Field(min_length=1)
    channel_rate_plan_id: str = Field(min_length=1)
    channel_rate_plan_name: Optional[str] = None
    is_active: bool = True
    rules: RateMappingRules = Field(default_factory=RateMappingRules)


class RateMappingUpdate(BaseModel):
    channel_rate_plan_name: Optional[str] = None
    is_active: Optional[bool] = None
    rules: Optional[RateMappingRules] = None

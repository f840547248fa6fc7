from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from otasync.constants.channels import ChannelId


ConversionMethod = Literal["live_rate", "fixed_rate", "daily_rate"]
RoundingPolicy = Literal["none", "up", "down", "nearest"]
PriceUpdateFrequency = Literal["real_time", "hourly", "daily", "manual"]
ConnectionStatus = Literal["connected", "disconnected", "error", "testing"]
TranslationQuality = Literal["machine", "reviewed", "professional", "native"]
SyncFrequency = Literal["real_time", "every_15_minutes", "hourly", "daily", "manual"]


class LanguageSetting(BaseModel):
    language_code: str = Field(min_length=2, max_length=8)
    channel_language_code: Optional[str] = None
    is_active: bool = True
    translation_quality: TranslationQuality = "machine"
    fallback_language: Optional[str] = None
    auto_translate: bool = False

    @field_validator("language_code", "fallback_language")
    @classmethod
    def _upper(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if isinstance(v, str) else v


class CurrencySetting(BaseModel):
    currency_code: str = Field(pattern="^[A-Za-z]{3}$")
    is_active: bool = True
    markup: float = Field(default=0, ge=-50, le=100)
    rounding: RoundingPolicy = "nearest"
    decimals: Optional[int] = Field(default=None, ge=0, le=4)
    conversion_method: ConversionMethod = "live_rate"
    fixed_rate: Optional[float] = None

    @field_validator("currency_code")
    @classmethod
    def _upper(cls, v: str) -> str:
        return v.upper()

    @model_validator(mode="after")
    def _fixed_rate_required(self) -> "CurrencySetting":
        if self.conversion_method == "fixed_rate" and not (self.fixed_rate and self.fixed_rate > 0):
            raise ValueError(f"fixed_rate > 0 is required for {self.currency_code} when conversion_method is fixed_rate")
        return self


class LanguageBlock(BaseModel):
    primary_language: str = "EN"
    supported_languages: list[LanguageSetting] = Field(default_factory=lambda: [LanguageSetting(language_code="EN")])

    @field_validator("primary_language")
    @classmethod
    def _upper(cls, v: str) -> str:
        return v.upper()

    @model_validator(mode="after")
    def _primary_is_active(self) -> "LanguageBlock":
        active = {s.language_code for s in self.supported_languages if s.is_active}
        if not active:
            raise ValueError("at least one supported language must be active")
        if self.primary_language not in active:
            raise ValueError(f"primary_language {self.primary_language} must be an active supported language")
        return self


class CurrencyBlock(BaseModel):
    base_currency: str = Field(pattern="^[A-Za-z]{3}$")
    channel_currency: Optional[str] = Field(default=None, pattern="^[A-Za-z]{3}$")
    supported_currencies: list[CurrencySetting] = Field(default_factory=list)
    price_update_frequency: PriceUpdateFrequency = "hourly"
    timezone: str = "UTC"

    @field_validator("base_currency", "channel_currency")
    @classmethod
    def _upper(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if isinstance(v, str) else v

    @model_validator(mode="after")
    def _base_is_active(self) -> "CurrencyBlock":
        if not self.supported_currencies:
            self.supported_currencies = [
                CurrencySetting(currency_code=self.base_currency, conversion_method="fixed_rate", fixed_rate=1.0)
            ]
        active = {c.currency_code for c in self.supported_currencies if c.is_active}
        if self.base_currency not in active:
            raise ValueError(f"base_currency {self.base_currency} must be an active supported currency")
        if self.channel_currency and self.channel_currency not in active:
            raise ValueError(f"channel_currency {self.channel_currency} must be an active supported currency")
        return self


class SyncSchedule(BaseModel):
    rates: SyncFrequency = "real_time"
    availability: SyncFrequency = "real_time"
    restrictions: SyncFrequency = "real_time"
    content: SyncFrequency = "daily"


class IntegrationBlock(BaseModel):
    credentials: dict[str, Any] = Field(default_factory=dict)
    endpoints: dict[str, str] = Field(default_factory=dict)
    batch_size: int = Field(default=100, ge=1, le=1000)
    timeout_ms: int = Field(default=30_000, ge=5_000, le=300_000)
    retry_attempts: int = Field(default=3, ge=0, le=10)
    retry_delay_ms: Optional[int] = Field(default=None, ge=0, le=15 * 60 * 1000)
    sync_schedule: SyncSchedule = Field(default_factory=SyncSchedule)
    webhook_secret: Optional[str] = None


class ContentRules(BaseModel):
    min_description_length: int = Field(default=0, ge=0)
    max_description_length: int = Field(default=2000, ge=1)
    min_images: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _lengths(self) -> "ContentRules":
        if self.min_description_length > self.max_description_length:
            raise ValueError("min_description_length must be <= max_description_length")
        return self


class ChannelConfigurationCreate(BaseModel):
    hotel_id: str = Field(min_length=1)
    channel: ChannelId
    is_active: bool = True
    languages: LanguageBlock = Field(default_factory=LanguageBlock)
    currencies: CurrencyBlock
    integration: IntegrationBlock = Field(default_factory=IntegrationBlock)
    content_rules: Optional[ContentRules] = None


class ChannelConfigurationUpdate(BaseModel):
    is_active: Optional[bool] = None
    connection_status: Optional[ConnectionStatus] = None
    languages: Optional[LanguageBlock] = None
    currencies: Optional[CurrencyBlock] = None
    integration: Optional[IntegrationBlock] = None
    content_rules: Optional[ContentRules] = None


class LastError(BaseModel):
    message: str
    code: Optional[str] = None
    timestamp: datetime


class ChannelStatusBlock(BaseModel):
    is_active: bool = True
    connection_status: ConnectionStatus = "testing"
    last_sync: dict[str, datetime] = Field(default_factory=dict)
    last_error: Optional[LastError] = None

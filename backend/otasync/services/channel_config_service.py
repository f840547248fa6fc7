from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import ValidationError
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from otasync import config
from otasync.constants.channels import DEFAULT_CONTENT_RULES, FALLBACK_CONTENT_RULES
from otasync.errors import AppError
from otasync.schemas.channel_config import (
    ChannelConfigurationCreate,
    ChannelConfigurationUpdate,
    ChannelStatusBlock,
)
from otasync.utils import new_id, now_utc

logger = logging.getLogger(__name__)

# Process-local worker cache: (hotel_id, channel) -> (expires_at_monotonic, doc)
_CACHE: Dict[Tuple[str, str], Tuple[float, Optional[Dict[str, Any]]]] = {}


def invalidate_config_cache(hotel_id: Optional[str] = None, channel: Optional[str] = None) -> None:
    if hotel_id is None:
        _CACHE.clear()
        return
    for key in list(_CACHE.keys()):
        if key[0] == hotel_id and (channel is None or key[1] == channel):
            _CACHE.pop(key, None)


def _validation_error(exc: ValidationError) -> AppError:
    return AppError(
        status_code=422,
        code="invalid_configuration",
        message="Channel configuration failed validation.",
        details={"errors": exc.errors(include_url=False, include_context=False)},
    )


def content_rules_for(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Explicit rules on the configuration, else the channel's defaults."""

    if cfg.get("content_rules"):
        return dict(cfg["content_rules"])
    return dict(DEFAULT_CONTENT_RULES.get(cfg.get("channel") or "", FALLBACK_CONTENT_RULES))


def channel_currency(cfg: Dict[str, Any]) -> str:
    currencies = cfg.get("currencies") or {}
    return currencies.get("channel_currency") or currencies.get("base_currency") or ""


def currency_setting(cfg: Dict[str, Any], code: str) -> Optional[Dict[str, Any]]:
    for item in (cfg.get("currencies") or {}).get("supported_currencies") or []:
        if item.get("currency_code") == code and item.get("is_active", True):
            return item
    return None


def language_setting(cfg: Dict[str, Any], code: str) -> Optional[Dict[str, Any]]:
    for item in (cfg.get("languages") or {}).get("supported_languages") or []:
        if item.get("language_code") == (code or "").upper() and item.get("is_active", True):
            return item
    return None


def is_dispatchable(cfg: Optional[Dict[str, Any]]) -> bool:
    """Active and not explicitly disconnected."""

    if not cfg or not cfg.get("is_active", False):
        return False
    status = (cfg.get("status") or {}).get("connection_status")
    return status != "disconnected"


class ChannelConfigService:
    """CRUD over `channel_configurations`, one document per (hotel, channel)."""

    def __init__(self, db: AsyncIOMotorDatabase, cache_ttl_s: Optional[int] = None) -> None:
        self.db = db
        self.cache_ttl_s = config.CONFIG_CACHE_TTL_S if cache_ttl_s is None else cache_ttl_s

    @property
    def col(self):
        return self.db.channel_configurations

    async def create(self, data: ChannelConfigurationCreate, *, actor: Optional[str] = None) -> Dict[str, Any]:
        existing = await self.col.find_one({"hotel_id": data.hotel_id, "channel": data.channel})
        if existing:
            raise AppError(
                status_code=409,
                code="duplicate_configuration",
                message="A configuration already exists for this hotel and channel.",
                details={"hotel_id": data.hotel_id, "channel": data.channel},
            )

        now = now_utc()
        doc = data.model_dump(mode="json")
        doc.update(
            {
                "_id": new_id("cfg"),
                "status": ChannelStatusBlock(is_active=data.is_active).model_dump(mode="json"),
                "created_at": now,
                "updated_at": now,
                "created_by": actor,
            }
        )
        try:
            await self.col.insert_one(doc)
        except DuplicateKeyError:
            raise AppError(
                status_code=409,
                code="duplicate_configuration",
                message="A configuration already exists for this hotel and channel.",
                details={"hotel_id": data.hotel_id, "channel": data.channel},
            )
        invalidate_config_cache(data.hotel_id, data.channel)
        logger.info("channel configuration created hotel=%s channel=%s", data.hotel_id, data.channel)
        return doc

    async def get(self, hotel_id: str, channel: str) -> Optional[Dict[str, Any]]:
        return await self.col.find_one({"hotel_id": hotel_id, "channel": channel})

    async def require(self, hotel_id: str, channel: str) -> Dict[str, Any]:
        doc = await self.get(hotel_id, channel)
        if not doc:
            raise AppError(
                status_code=404,
                code="configuration_not_found",
                message="Channel configuration not found.",
                details={"hotel_id": hotel_id, "channel": channel},
            )
        return doc

    async def get_cached(self, hotel_id: str, channel: str) -> Optional[Dict[str, Any]]:
        """Worker read path; at most `cache_ttl_s` stale."""

        key = (hotel_id, channel)
        hit = _CACHE.get(key)
        now = time.monotonic()
        if hit and hit[0] > now:
            return hit[1]
        doc = await self.get(hotel_id, channel)
        if self.cache_ttl_s > 0:
            _CACHE[key] = (now + self.cache_ttl_s, doc)
        return doc

    async def list(
        self,
        *,
        hotel_id: Optional[str] = None,
        channel: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {}
        if hotel_id:
            query["hotel_id"] = hotel_id
        if channel:
            query["channel"] = channel
        if is_active is not None:
            query["is_active"] = is_active
        return await self.col.find(query).sort([("hotel_id", 1), ("channel", 1)]).to_list(length=1000)

    async def active_for_hotel(self, hotel_id: str) -> List[Dict[str, Any]]:
        return await self.list(hotel_id=hotel_id, is_active=True)

    async def update(
        self,
        hotel_id: str,
        channel: str,
        patch: ChannelConfigurationUpdate,
        *,
        actor: Optional[str] = None,
    ) -> Dict[str, Any]:
        current = await self.require(hotel_id, channel)
        changes = patch.model_dump(mode="json", exclude_unset=True)
        connection_status = changes.pop("connection_status", None)

        merged = {
            "hotel_id": hotel_id,
            "channel": channel,
            "is_active": current.get("is_active", True),
            "languages": current.get("languages"),
            "currencies": current.get("currencies"),
            "integration": current.get("integration"),
            "content_rules": current.get("content_rules"),
        }
        merged.update(changes)
        try:
            validated = ChannelConfigurationCreate.model_validate(merged)
        except ValidationError as exc:
            raise _validation_error(exc)

        update_set = validated.model_dump(mode="json", exclude={"hotel_id", "channel"})
        update_set["status.is_active"] = validated.is_active
        if connection_status is not None:
            update_set["status.connection_status"] = connection_status
        update_set["updated_at"] = now_utc()
        update_set["updated_by"] = actor

        doc = await self.col.find_one_and_update(
            {"_id": current["_id"]},
            {"$set": update_set},
            return_document=ReturnDocument.AFTER,
        )
        invalidate_config_cache(hotel_id, channel)
        logger.info("channel configuration updated hotel=%s channel=%s fields=%s", hotel_id, channel, sorted(changes))
        return doc

    async def deactivate(self, hotel_id: str, channel: str, *, actor: Optional[str] = None) -> Dict[str, Any]:
        current = await self.require(hotel_id, channel)
        doc = await self.col.find_one_and_update(
            {"_id": current["_id"]},
            {"$set": {"is_active": False, "status.is_active": False, "updated_at": now_utc(), "updated_by": actor}},
            return_document=ReturnDocument.AFTER,
        )
        invalidate_config_cache(hotel_id, channel)
        logger.info("channel configuration deactivated hotel=%s channel=%s", hotel_id, channel)
        return doc

    async def set_connection_status(
        self,
        hotel_id: str,
        channel: str,
        status: str,
        *,
        error: Optional[Dict[str, Any]] = None,
    ) -> None:
        update: Dict[str, Any] = {"status.connection_status": status, "updated_at": now_utc()}
        if error is not None:
            update["status.last_error"] = error
        await self.col.update_one({"hotel_id": hotel_id, "channel": channel}, {"$set": update})
        invalidate_config_cache(hotel_id, channel)

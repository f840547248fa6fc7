from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Union

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from otasync.constants.channels import ALL_CHANNELS_SENTINEL
from otasync.errors import AppError, SyncErrorCode
from otasync.schemas.mappings import (
    RateMappingCreate,
    RateMappingUpdate,
    RoomMappingCreate,
    RoomMappingUpdate,
)
from otasync.services.channel_config_service import ChannelConfigService, is_dispatchable
from otasync.utils import new_id, now_utc

logger = logging.getLogger(__name__)


def _duplicate(message: str, **details: Any) -> AppError:
    return AppError(status_code=409, code="duplicate_mapping", message=message, details=details)


def _not_found(kind: str, mapping_id: str) -> AppError:
    return AppError(
        status_code=404,
        code=f"{kind}_not_found",
        message=f"{kind.replace('_', ' ').capitalize()} not found.",
        details={"id": mapping_id},
    )


@dataclass
class ChannelTarget:
    """Outcome of resolving one requested channel for an event."""

    channel: str
    config: Optional[Dict[str, Any]] = None
    room_mapping: Optional[Dict[str, Any]] = None
    skip_code: Optional[str] = None
    skip_reason: Optional[str] = None

    @property
    def resolvable(self) -> bool:
        return self.skip_code is None


class MappingService:
    def __init__(self, db: AsyncIOMotorDatabase, configs: Optional[ChannelConfigService] = None) -> None:
        self.db = db
        self.configs = configs or ChannelConfigService(db)

    # --- room mappings --------------------------------------------------

    async def _check_room_uniqueness(
        self,
        *,
        hotel_id: str,
        pms_room_type_id: str,
        channel: str,
        channel_room_id: str,
        exclude_id: Optional[str] = None,
    ) -> None:
        base: Dict[str, Any] = {"is_active": True}
        if exclude_id:
            base["_id"] = {"$ne": exclude_id}

        clash = await self.db.room_mappings.find_one({**base, "channel": channel, "channel_room_id": channel_room_id})
        if clash:
            raise _duplicate(
                "channel room is already mapped by another active mapping.",
                channel=channel,
                channel_room_id=channel_room_id,
                existing_id=clash["_id"],
            )
        clash = await self.db.room_mappings.find_one(
            {**base, "hotel_id": hotel_id, "pms_room_type_id": pms_room_type_id, "channel": channel}
        )
        if clash:
            raise _duplicate(
                "room type already has an active mapping for this channel.",
                hotel_id=hotel_id,
                pms_room_type_id=pms_room_type_id,
                channel=channel,
                existing_id=clash["_id"],
            )

    async def create_room_mapping(self, data: RoomMappingCreate, *, actor: Optional[str] = None) -> Dict[str, Any]:
        if data.is_active:
            await self._check_room_uniqueness(
                hotel_id=data.hotel_id,
                pms_room_type_id=data.pms_room_type_id,
                channel=data.channel,
                channel_room_id=data.channel_room_id,
            )
        now = now_utc()
        doc = data.model_dump(mode="json")
        doc.update({"_id": new_id("rm"), "created_at": now, "updated_at": now, "created_by": actor})
        try:
            await self.db.room_mappings.insert_one(doc)
        except DuplicateKeyError:
            raise _duplicate("room mapping violates a uniqueness constraint.", channel=data.channel)
        logger.info(
            "room mapping created id=%s hotel=%s room_type=%s channel=%s",
            doc["_id"],
            data.hotel_id,
            data.pms_room_type_id,
            data.channel,
        )
        return doc

    async def get_room_mapping(self, mapping_id: str) -> Dict[str, Any]:
        doc = await self.db.room_mappings.find_one({"_id": mapping_id})
        if not doc:
            raise _not_found("room_mapping", mapping_id)
        return doc

    async def list_room_mappings(
        self,
        *,
        hotel_id: Optional[str] = None,
        channel: Optional[str] = None,
        pms_room_type_id: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {}
        if hotel_id:
            query["hotel_id"] = hotel_id
        if channel:
            query["channel"] = channel
        if pms_room_type_id:
            query["pms_room_type_id"] = pms_room_type_id
        if is_active is not None:
            query["is_active"] = is_active
        return await self.db.room_mappings.find(query).sort("created_at", 1).to_list(length=1000)

    async def update_room_mapping(
        self,
        mapping_id: str,
        patch: RoomMappingUpdate,
        *,
        actor: Optional[str] = None,
    ) -> Dict[str, Any]:
        current = await self.get_room_mapping(mapping_id)
        changes = patch.model_dump(mode="json", exclude_unset=True)
        becomes_active = changes.get("is_active", current.get("is_active", False))
        if becomes_active and (
            "channel_room_id" in changes or (changes.get("is_active") and not current.get("is_active"))
        ):
            await self._check_room_uniqueness(
                hotel_id=current["hotel_id"],
                pms_room_type_id=current["pms_room_type_id"],
                channel=current["channel"],
                channel_room_id=changes.get("channel_room_id", current["channel_room_id"]),
                exclude_id=mapping_id,
            )
        changes["updated_at"] = now_utc()
        changes["updated_by"] = actor
        try:
            doc = await self.db.room_mappings.find_one_and_update(
                {"_id": mapping_id},
                {"$set": changes},
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            raise _duplicate("room mapping violates a uniqueness constraint.", id=mapping_id)
        return doc

    async def deactivate_room_mapping(self, mapping_id: str, *, actor: Optional[str] = None) -> Dict[str, Any]:
        await self.get_room_mapping(mapping_id)
        now = now_utc()
        doc = await self.db.room_mappings.find_one_and_update(
            {"_id": mapping_id},
            {"$set": {"is_active": False, "updated_at": now, "updated_by": actor}},
            return_document=ReturnDocument.AFTER,
        )
        # Rate plans hanging off an inactive room mapping cannot be pushed.
        await self.db.rate_mappings.update_many(
            {"room_mapping_id": mapping_id, "is_active": True},
            {"$set": {"is_active": False, "updated_at": now, "updated_by": actor}},
        )
        logger.info("room mapping deactivated id=%s", mapping_id)
        return doc

    # --- rate mappings --------------------------------------------------

    async def create_rate_mapping(self, data: RateMappingCreate, *, actor: Optional[str] = None) -> Dict[str, Any]:
        room = await self.get_room_mapping(data.room_mapping_id)
        clash = await self.db.rate_mappings.find_one(
            {"room_mapping_id": data.room_mapping_id, "channel_rate_plan_id": data.channel_rate_plan_id}
        )
        if clash:
            raise _duplicate(
                "channel rate plan is already mapped for this room mapping.",
                room_mapping_id=data.room_mapping_id,
                channel_rate_plan_id=data.channel_rate_plan_id,
                existing_id=clash["_id"],
            )
        now = now_utc()
        doc = data.model_dump(mode="json")
        doc.update(
            {
                "_id": new_id("rp"),
                "hotel_id": room["hotel_id"],
                "channel": room["channel"],
                "created_at": now,
                "updated_at": now,
                "created_by": actor,
            }
        )
        try:
            await self.db.rate_mappings.insert_one(doc)
        except DuplicateKeyError:
            raise _duplicate("rate mapping violates a uniqueness constraint.", room_mapping_id=data.room_mapping_id)
        logger.info(
            "rate mapping created id=%s room_mapping=%s channel_rate_plan=%s",
            doc["_id"],
            data.room_mapping_id,
            data.channel_rate_plan_id,
        )
        return doc

    async def get_rate_mapping(self, mapping_id: str) -> Dict[str, Any]:
        doc = await self.db.rate_mappings.find_one({"_id": mapping_id})
        if not doc:
            raise _not_found("rate_mapping", mapping_id)
        return doc

    async def list_rate_mappings(
        self,
        *,
        room_mapping_id: Optional[str] = None,
        hotel_id: Optional[str] = None,
        channel: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {}
        if room_mapping_id:
            query["room_mapping_id"] = room_mapping_id
        if hotel_id:
            query["hotel_id"] = hotel_id
        if channel:
            query["channel"] = channel
        if is_active is not None:
            query["is_active"] = is_active
        return await self.db.rate_mappings.find(query).sort("created_at", 1).to_list(length=1000)

    async def update_rate_mapping(
        self,
        mapping_id: str,
        patch: RateMappingUpdate,
        *,
        actor: Optional[str] = None,
    ) -> Dict[str, Any]:
        await self.get_rate_mapping(mapping_id)
        changes = patch.model_dump(mode="json", exclude_unset=True)
        changes["updated_at"] = now_utc()
        changes["updated_by"] = actor
        return await self.db.rate_mappings.find_one_and_update(
            {"_id": mapping_id},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )

    async def deactivate_rate_mapping(self, mapping_id: str, *, actor: Optional[str] = None) -> Dict[str, Any]:
        await self.get_rate_mapping(mapping_id)
        return await self.db.rate_mappings.find_one_and_update(
            {"_id": mapping_id},
            {"$set": {"is_active": False, "updated_at": now_utc(), "updated_by": actor}},
            return_document=ReturnDocument.AFTER,
        )

    # --- resolution -----------------------------------------------------

    async def rate_plans_for(self, room_mapping: Dict[str, Any]) -> List[Dict[str, Any]]:
        return await self.db.rate_mappings.find(
            {"room_mapping_id": room_mapping["_id"], "is_active": True}
        ).sort("created_at", 1).to_list(length=500)

    async def active_room_mapping(self, hotel_id: str, room_type_id: str, channel: str) -> Optional[Dict[str, Any]]:
        return await self.db.room_mappings.find_one(
            {"hotel_id": hotel_id, "pms_room_type_id": room_type_id, "channel": channel, "is_active": True}
        )

    async def active_room_mappings_for_hotel(self, hotel_id: str, channel: str) -> List[Dict[str, Any]]:
        return await self.db.room_mappings.find(
            {"hotel_id": hotel_id, "channel": channel, "is_active": True}
        ).sort("pms_room_type_id", 1).to_list(length=1000)

    async def expand_channels(self, hotel_id: str, target: Union[str, Sequence[str]]) -> List[str]:
        """`all` becomes every channel with an active configuration for the hotel."""

        if target == ALL_CHANNELS_SENTINEL:
            configs = await self.configs.active_for_hotel(hotel_id)
            return [c["channel"] for c in configs]
        return list(dict.fromkeys(target))

    async def resolve_targets(
        self,
        hotel_id: str,
        room_type_id: Optional[str],
        target: Union[str, Sequence[str]],
        *,
        require_room_mapping: bool = True,
        use_cache: bool = False,
    ) -> List[ChannelTarget]:
        """Resolve every requested channel, keeping the reason for the ones that cannot be sent."""

        out: List[ChannelTarget] = []
        for channel in await self.expand_channels(hotel_id, target):
            cfg = (
                await self.configs.get_cached(hotel_id, channel)
                if use_cache
                else await self.configs.get(hotel_id, channel)
            )
            if not is_dispatchable(cfg):
                reason = "not_configured" if not cfg else (
                    "inactive" if not cfg.get("is_active") else "disconnected"
                )
                out.append(
                    ChannelTarget(
                        channel=channel,
                        config=cfg,
                        skip_code=SyncErrorCode.CHANNEL_DISABLED.value,
                        skip_reason=reason,
                    )
                )
                continue
            if not require_room_mapping:
                out.append(ChannelTarget(channel=channel, config=cfg))
                continue
            mapping = await self.active_room_mapping(hotel_id, room_type_id or "", channel) if room_type_id else None
            if not mapping:
                out.append(
                    ChannelTarget(
                        channel=channel,
                        config=cfg,
                        skip_code=SyncErrorCode.MAPPING_MISSING.value,
                        skip_reason="no_mapping",
                    )
                )
                continue
            out.append(ChannelTarget(channel=channel, config=cfg, room_mapping=mapping))
        return out

    async def resolve_channels(
        self,
        hotel_id: str,
        room_type_id: str,
        target: Union[str, Sequence[str]],
    ) -> List[tuple[str, Dict[str, Any]]]:
        """(channel, room_mapping) pairs that can actually be pushed."""

        targets = await self.resolve_targets(hotel_id, room_type_id, target)
        return [(t.channel, t.room_mapping) for t in targets if t.resolvable and t.room_mapping]

from __future__ import annotations

import logging
import os
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

logger = logging.getLogger(__name__)

_mongo_client: Optional[AsyncIOMotorClient] = None
_db: Optional[AsyncIOMotorDatabase] = None


def _mongo_url() -> str:
    return os.environ["MONGO_URL"]


def _db_name() -> str:
    return os.environ.get("DB_NAME", "otasync")


async def connect_mongo(url: Optional[str] = None, db_name: Optional[str] = None) -> AsyncIOMotorDatabase:
    """Open the shared connection pool. Workers and API handlers share it."""
    global _mongo_client, _db

    if _mongo_client is not None and _db is not None:
        return _db

    _mongo_client = AsyncIOMotorClient(url or _mongo_url())
    _db = _mongo_client[db_name or _db_name()]
    logger.info("Connected to Mongo database %s", _db.name)
    return _db


async def close_mongo() -> None:
    global _mongo_client, _db

    if _mongo_client is not None:
        _mongo_client.close()

    _mongo_client = None
    _db = None


async def get_db() -> AsyncIOMotorDatabase:
    if _db is None:
        await connect_mongo()
    assert _db is not None
    return _db


async def ping(db: AsyncIOMotorDatabase) -> bool:
    try:
        await db.command("ping")
    except Exception:  # noqa: BLE001
        logger.warning("Mongo ping failed", exc_info=True)
        return False
    return True

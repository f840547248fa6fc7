"""Shared test configuration and fixtures for the channel sync backend.

Key principles:
- No remote BASE_URL usage; all HTTP calls go through the local ASGI app.
- Single Motor client per test session; one throwaway database per test.
  Database-backed tests are skipped when no MongoDB answers at MONGO_URL.
- AnyIO is the single async runner via the anyio pytest plugin (@pytest.mark.anyio).
"""

from typing import Any, AsyncGenerator, Callable, Dict, List, Optional

import os
import sys
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import pytest
from httpx import ASGITransport
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import PyMongoError

# Ensure backend root is on sys.path so that `server` module is importable
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

os.environ.setdefault("JWT_SECRET", "test_jwt_secret")

from server import app  # noqa: E402
from otasync.auth import create_access_token  # noqa: E402
from otasync.db import get_db  # noqa: E402
from otasync.indexes.channel_sync_indexes import ensure_channel_sync_indexes  # noqa: E402
from otasync.schemas.channel_config import ChannelConfigurationCreate  # noqa: E402
from otasync.schemas.mappings import RateMappingCreate, RoomMappingCreate  # noqa: E402
from otasync.services.channel_config_service import ChannelConfigService, invalidate_config_cache  # noqa: E402
from otasync.services.channels.providers.base import BaseChannelAdapter  # noqa: E402
from otasync.services.channels.registry import reset_registry  # noqa: E402
from otasync.services.channels.types import AdapterResult  # noqa: E402
from otasync.services.fx import set_fx_service  # noqa: E402
from otasync.services.mapping_service import MappingService  # noqa: E402
from otasync.services.reservations import set_reservations_collaborator  # noqa: E402


MONGO_URL = os.environ.get("MONGO_URL", "mongodb://localhost:27017")

HOTEL_ID = "htl_test"
ROOM_TYPE_ID = "rt_deluxe"


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Force pytest-anyio to use asyncio event loop."""

    return "asyncio"


@pytest.fixture(scope="session")
async def motor_client() -> AsyncGenerator[AsyncIOMotorClient, None]:
    """Session-scoped Motor client for all tests."""

    client = AsyncIOMotorClient(MONGO_URL, tz_aware=True, serverSelectionTimeoutMS=2000)
    try:
        await client.admin.command("ping")
    except PyMongoError as e:
        client.close()
        pytest.skip(f"MongoDB not reachable at {MONGO_URL}: {e}")
    try:
        yield client
    finally:
        client.close()


@pytest.fixture(scope="function")
async def test_db(motor_client) -> AsyncGenerator[Any, None]:
    """Function-scoped isolated database for each test.

    Each test gets its own temporary database with the channel sync indexes,
    dropped on teardown.
    """

    db_name = f"otasync_test_{uuid.uuid4().hex}"
    db = motor_client[db_name]
    await ensure_channel_sync_indexes(db)
    try:
        yield db
    finally:
        await motor_client.drop_database(db_name)


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    """Process-wide caches and singletons must not leak between tests."""

    invalidate_config_cache()
    reset_registry()
    set_fx_service(None)
    set_reservations_collaborator(None)
    yield
    invalidate_config_cache()
    reset_registry()
    set_fx_service(None)
    set_reservations_collaborator(None)


@pytest.fixture(scope="function")
async def app_with_overrides(test_db) -> AsyncGenerator[Any, None]:
    """FastAPI app instance whose get_db dependency points to test_db."""

    async def override_get_db():
        return test_db

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield app
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def async_client(app_with_overrides) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Async HTTP client bound to the FastAPI app instance."""

    transport = ASGITransport(app=app_with_overrides)
    async with httpx.AsyncClient(transport=transport, base_url="http://test", timeout=30.0) as client:
        yield client


def _headers(roles: List[str], hotels: Optional[List[str]] = None) -> Dict[str, str]:
    token = create_access_token(subject="ops@hotel.test", roles=roles, hotel_ids=hotels)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers() -> Dict[str, str]:
    """Hotel admin scoped to HOTEL_ID."""

    return _headers(["hotel_admin"], [HOTEL_ID])


@pytest.fixture
def staff_headers() -> Dict[str, str]:
    return _headers(["hotel_staff"], [HOTEL_ID])


@pytest.fixture
def super_admin_headers() -> Dict[str, str]:
    return _headers(["super_admin"])


@pytest.fixture
def other_hotel_headers() -> Dict[str, str]:
    return _headers(["hotel_admin"], ["htl_other"])


class MutableClock:
    """Injectable clock for EventQueue; tests move time explicitly."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


class ScriptedAdapter(BaseChannelAdapter):
    """Adapter double returning queued results in call order, then success."""

    def __init__(self, name: str, *results: Any) -> None:
        self.channel_name = name
        self.results: List[Any] = list(results)
        self.calls: List[Dict[str, Any]] = []

    async def _next(self, capability: str, ctx, payload: Dict[str, Any]) -> AdapterResult:
        self.calls.append({"capability": capability, "payload": payload, "ctx": ctx})
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, BaseException):
                raise result
            if callable(result):
                return await result(ctx, payload)
            return result
        return AdapterResult.success({"accepted": True}, latency_ms=5)

    async def push_rates(self, ctx, payload):
        return await self._next("push_rates", ctx, payload)

    async def push_availability(self, ctx, payload):
        return await self._next("push_availability", ctx, payload)

    async def push_restrictions(self, ctx, payload):
        return await self._next("push_restrictions", ctx, payload)

    async def push_content(self, ctx, payload):
        return await self._next("push_content", ctx, payload)

    async def push_booking_modification(self, ctx, payload):
        return await self._next("push_booking_modification", ctx, payload)

    async def push_cancellation(self, ctx, payload):
        return await self._next("push_cancellation", ctx, payload)

    async def acknowledge_reservation(self, ctx, external_reservation):
        return await self._next("acknowledge_reservation", ctx, external_reservation)

    async def test_connection(self, ctx):
        return await self._next("test_connection", ctx, {})


@pytest.fixture
def scripted_adapter() -> Callable[..., ScriptedAdapter]:
    return ScriptedAdapter


def config_body(channel: str, **overrides: Any) -> Dict[str, Any]:
    """Minimal valid configuration: JPY base priced to USD at a fixed 0.011."""

    body: Dict[str, Any] = {
        "hotel_id": HOTEL_ID,
        "channel": channel,
        "languages": {
            "primary_language": "EN",
            "supported_languages": [{"language_code": "EN"}],
        },
        "currencies": {
            "base_currency": "JPY",
            "channel_currency": "USD",
            "supported_currencies": [
                {"currency_code": "JPY", "conversion_method": "fixed_rate", "fixed_rate": 1},
                {"currency_code": "USD", "conversion_method": "fixed_rate", "fixed_rate": 0.011},
            ],
        },
        "integration": {"credentials": {"api_key": "secret-key", "property_id": "P-1"}},
    }
    body.update(overrides)
    return body


@pytest.fixture
def seed_config(test_db):
    async def _seed(channel: str, *, connection_status: Optional[str] = "connected", **overrides: Any) -> Dict[str, Any]:
        svc = ChannelConfigService(test_db)
        doc = await svc.create(ChannelConfigurationCreate.model_validate(config_body(channel, **overrides)))
        if connection_status:
            await svc.set_connection_status(doc["hotel_id"], channel, connection_status)
        return await svc.require(doc["hotel_id"], channel)

    return _seed


@pytest.fixture
def seed_room_mapping(test_db):
    async def _seed(
        channel: str,
        *,
        room_type_id: str = ROOM_TYPE_ID,
        channel_room_id: Optional[str] = None,
        settings: Optional[Dict[str, Any]] = None,
        rate_plans: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        svc = MappingService(test_db)
        room = await svc.create_room_mapping(
            RoomMappingCreate(
                hotel_id=HOTEL_ID,
                pms_room_type_id=room_type_id,
                channel=channel,
                channel_room_id=channel_room_id or f"{channel}-{room_type_id}",
                settings=settings or {},
            )
        )
        if rate_plans is None:
            rate_plans = [{"pms_rate_plan_id": "rp_bar", "channel_rate_plan_id": f"{channel}-BAR"}]
        for plan in rate_plans:
            await svc.create_rate_mapping(RateMappingCreate(room_mapping_id=room["_id"], **plan))
        return room

    return _seed

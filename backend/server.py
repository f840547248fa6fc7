from __future__ import annotations

import os
import logging
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from starlette.middleware.cors import CORSMiddleware

from otasync import config
from otasync.db import close_mongo, connect_mongo, get_db, ping
from otasync.exception_handlers import register_exception_handlers
from otasync.indexes.channel_sync_indexes import ensure_channel_sync_indexes
from otasync.metrics import metrics_endpoint
from otasync.middleware.correlation_id import CorrelationIdMiddleware
from otasync.middleware.structured_logging import StructuredLoggingMiddleware
from otasync.routers.configurations import router as configurations_router
from otasync.routers.events import router as events_router
from otasync.routers.health import router as sync_health_router
from otasync.routers.mappings import router as mappings_router
from otasync.routers.payloads import router as payloads_router
from otasync.routers.webhooks import router as webhooks_router
from otasync.services.channels.registry import init_registry
from otasync.services.dispatcher import EventDispatcher
from otasync.services.fx import FXService, set_fx_service
from otasync.sync_worker import WorkerPool

ROOT_DIR = Path(__file__).parent

# Load .env only if exists (development fallback)
env_path = ROOT_DIR / ".env"
if env_path.exists():
    load_dotenv(env_path)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("otasync")

app = FastAPI(title=config.APP_NAME, version=config.APP_VERSION)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(StructuredLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)

register_exception_handlers(app)

# Routers (/api/channel-sync prefix is on each router)
app.include_router(mappings_router)
app.include_router(configurations_router)
app.include_router(events_router)
app.include_router(sync_health_router)
app.include_router(webhooks_router)
app.include_router(payloads_router)

app.add_api_route("/metrics", metrics_endpoint, methods=["GET"], include_in_schema=False)

_worker_pool: Optional[WorkerPool] = None


@app.get("/api/health")
async def health() -> dict[str, Any]:
    """Main health check with database ping"""
    db = await get_db()
    ok = await ping(db)
    return {
        "ok": ok,
        "service": "otasync",
        "workers_running": bool(_worker_pool and _worker_pool.running),
    }


# Deployment health check aliases
@app.get("/health")
@app.get("/health/")
async def deployment_health() -> dict[str, Any]:
    """Simple health check for deployment platforms"""
    return {"ok": True, "service": "otasync", "status": "healthy"}


@app.on_event("startup")
async def _startup() -> None:
    global _worker_pool

    db = await connect_mongo()
    await ensure_channel_sync_indexes(db)
    init_registry()
    set_fx_service(FXService(db=db))
    logger.info("Startup complete")

    if config.ENABLE_SYNC_WORKERS:
        _worker_pool = WorkerPool(EventDispatcher(db))
        await _worker_pool.start()


@app.on_event("shutdown")
async def _shutdown() -> None:
    global _worker_pool

    if _worker_pool is not None:
        await _worker_pool.stop()
        _worker_pool = None
    await close_mongo()
    logger.info("Shutdown complete")

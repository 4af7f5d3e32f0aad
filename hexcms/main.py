"""heXcms sync service: FastAPI application entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from hexcms import config
from hexcms.content_source import build_repository_client
from hexcms.db import connection, migrations
from hexcms.db.sync_engine import SyncEngine, SyncSettings
from hexcms.fetcher import DocumentFetcher
from hexcms.observability import initialize as initialize_observability, shutdown as shutdown_observability
from hexcms.routers.sync import sync_router

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("hexcms")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("heXcms sync service starting up")
    initialize_observability(app)

    # 1. Initialize DB connection
    db = await connection.get_connection()

    # 2. Run migrations
    await migrations.run_migrations(db)

    # 3. Initialize Sync Engine
    fetcher = DocumentFetcher(build_repository_client())
    sync = SyncEngine(db, fetcher, SyncSettings.from_config())
    app.state.db = db
    app.state.sync_engine = sync
    logger.info("Sync engine ready (source=%s, content root=%r)", fetcher.source_name, sync.settings.content_root)

    yield

    logger.info("heXcms sync service shutting down")
    await sync.shutdown()
    shutdown_observability(app)
    await connection.close_connection()


app = FastAPI(
    title="heXcms Sync API",
    description="Repository-to-database content synchronization for heXcms",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

app.include_router(sync_router)


@app.get("/api/health")
async def health():
    """Health check endpoint."""
    db = getattr(app.state, "db", None)
    healthy = db is not None and await connection.ping(db)
    payload = {
        "status": "healthy" if healthy else "unhealthy",
        "database": "connected" if healthy else "disconnected",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if not healthy:
        return JSONResponse(payload, status_code=503)
    return payload


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("hexcms.main:app", host=config.HOST, port=config.PORT)

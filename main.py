"""
ListVault — ESP subscriber backup service entry point.
"""

from __future__ import annotations

import logging
import sys

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import register_middleware
from api.routes import router as api_router
from config.settings import config
from connectors.registry import ConnectorRegistry
from core.connection_service import ConnectionService
from core.orchestrator import SyncOrchestrator
from core.scheduler import SyncScheduler
from core.sync_service import SyncService
from database.session import close_db, init_db

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s - %(message)s",
    stream=sys.stdout,
)
# httpx logs full request URLs, and some ESPs take the API key as a query parameter.
for _noisy in ("httpcore", "httpx", "apscheduler", "urllib3"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    app = FastAPI(
        title="ListVault",
        version="1.0.0",
        description="Backs up subscriber lists from connected email service providers.",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_middleware(app)

    app.include_router(api_router, prefix="/api/v1")

    @app.on_event("startup")
    async def on_startup():
        if config.database_create_tables:
            await init_db()

        registry = ConnectorRegistry()
        registry.discover()
        logger.info("Connectors available: %s", registry.list_configured())

        sync_service = SyncService(SyncOrchestrator(registry=registry))
        await sync_service.start()
        app.state.sync_service = sync_service
        app.state.connection_service = ConnectionService(registry=registry)

        if config.scheduler_enabled:
            scheduler = SyncScheduler(sync_service)
            # Anything left syncing by a previous instance is finalized first.
            recovered = await scheduler.recover_stale_syncs()
            if recovered:
                logger.info("Recovered %d stale syncs from previous run", recovered)
            await scheduler.start()
            app.state.scheduler = scheduler

        logger.info("Application ready to accept requests.")

    @app.on_event("shutdown")
    async def on_shutdown():
        scheduler = getattr(app.state, "scheduler", None)
        if scheduler is not None:
            await scheduler.stop()
        sync_service = getattr(app.state, "sync_service", None)
        if sync_service is not None:
            await sync_service.stop()
        await close_db()

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level="debug" if config.debug else "info",
    )

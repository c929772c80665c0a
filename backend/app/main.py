"""
app/main.py
Startup: builds the coordination container, restores the breaker deadline
from Redis when configured, and optionally launches the snapshot refresher.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.routes import router
from app.config.settings import Settings, settings
from app.container import build_container
from app.jobs.refresh import run_refresh_loop

log = logging.getLogger("main")


def create_app(app_settings: Settings | None = None) -> FastAPI:
    app_settings = app_settings or settings
    logging.basicConfig(
        level=app_settings.log_level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log.info("MarketDesk API starting...")
        container = build_container(app_settings)
        app.state.container = container
        await container.start()
        refresher = None
        if app_settings.refresh_interval_seconds > 0:
            refresher = asyncio.create_task(
                run_refresh_loop(container.snapshots, app_settings.refresh_interval_seconds)
            )
        yield
        log.info("Shutting down...")
        if refresher is not None:
            refresher.cancel()
        await container.close()

    app = FastAPI(
        title="MarketDesk API",
        description=(
            "Intraday quotes for a fixed symbol universe. All upstream calls go "
            "through one cached, serialised, breaker-guarded lane."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


app = create_app()

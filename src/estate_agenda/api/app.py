"""Agenda API: FastAPI application factory.

The app exposes:
- confirmation ingestion (messages and structured records)
- calendar event listing, manual resync and sync status
- the Google OAuth bootstrap flow
- a health endpoint at ``GET /api/health``

The lifespan handler owns the process resources: the asyncpg pool, the
shared ``httpx.AsyncClient`` (timeout from ``[calendar].request_timeout_s``)
and the :class:`ConfirmationPipeline`, which are installed into the router
dependency stubs via ``app.dependency_overrides``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from estate_agenda.api.deps import get_http_client, get_pipeline, get_state_store
from estate_agenda.api.middleware import register_error_handlers
from estate_agenda.api.routers.calendar import router as calendar_router
from estate_agenda.api.routers.confirmations import router as confirmations_router
from estate_agenda.api.routers.oauth import router as oauth_router
from estate_agenda.calendar.credentials import OAuthTokenStore
from estate_agenda.calendar.store import EventStore
from estate_agenda.config import AgendaConfig, load_config
from estate_agenda.db import Database
from estate_agenda.migrations import run_migrations
from estate_agenda.oauth import OAuthStateStore
from estate_agenda.pipeline import ConfirmationPipeline

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the pool and HTTP client, load the credential, close on shutdown."""
    config: AgendaConfig = app.state.config
    database = Database.from_config(config.database)
    if app.state.migrate:
        await database.provision()
        await run_migrations(database.url)
    pool = await database.connect()

    http_client = httpx.AsyncClient(timeout=config.calendar.request_timeout_s)
    pipeline = ConfirmationPipeline(
        store=EventStore(pool),
        token_store=OAuthTokenStore(pool, service=config.calendar.token_service),
        config=config,
        http_client=http_client,
    )
    state = await pipeline.reinitialize()
    logger.info("Agenda API started (calendar configured=%s)", state.configured)

    app.dependency_overrides[get_pipeline] = lambda: pipeline
    app.dependency_overrides[get_http_client] = lambda: http_client

    try:
        yield
    finally:
        await http_client.aclose()
        await database.close()


def create_app(config: AgendaConfig | None = None, *, migrate: bool = True) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Agenda configuration; defaults to :func:`load_config`.
    migrate:
        Provision the database and run migrations on startup.
    """
    if config is None:
        config = load_config()

    app = FastAPI(
        title="Estate Agenda API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False
    app.state.config = config
    app.state.migrate = migrate

    # One state store per app; it must outlive individual requests
    state_store = OAuthStateStore()
    app.dependency_overrides[get_state_store] = lambda: state_store

    register_error_handlers(app)

    app.include_router(confirmations_router)
    app.include_router(calendar_router)
    app.include_router(oauth_router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app

"""Fixtures for agenda API tests.

The lifespan does not run under ``httpx.ASGITransport``, so the pipeline and
HTTP client dependencies are installed directly via
``app.dependency_overrides``.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from fastapi import FastAPI

from estate_agenda.api.app import create_app
from estate_agenda.api.deps import get_http_client, get_pipeline
from estate_agenda.calendar.google import GoogleCalendarClient
from estate_agenda.calendar.sync import SyncEngineState
from estate_agenda.config import AgendaConfig, CalendarConfig
from estate_agenda.pipeline import ConfirmationPipeline
from tests.conftest import FakeEventStore, FakeTokenStore


def configured_state(upsert: AsyncMock) -> SyncEngineState:
    client = MagicMock(spec=GoogleCalendarClient)
    client.upsert_event = upsert
    return SyncEngineState(client=client)


@pytest.fixture
def agenda_config() -> AgendaConfig:
    return AgendaConfig(
        public_hostname="agenda.example.com",
        calendar=CalendarConfig(client_id="cid", client_secret="secret"),
    )


@pytest.fixture
def event_store() -> FakeEventStore:
    return FakeEventStore()


@pytest.fixture
def token_store() -> FakeTokenStore:
    return FakeTokenStore()


@pytest.fixture
def upsert() -> AsyncMock:
    return AsyncMock(return_value="ea1")


@pytest.fixture
def google_handler():
    """Token-endpoint handler used by the OAuth callback; override per test."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "access_token": "a",
                "refresh_token": "1//granted",
                "scope": "https://www.googleapis.com/auth/calendar",
            },
        )

    return handler


@pytest.fixture
def pipeline(
    agenda_config: AgendaConfig,
    event_store: FakeEventStore,
    token_store: FakeTokenStore,
    upsert: AsyncMock,
) -> ConfirmationPipeline:
    return ConfirmationPipeline(
        store=event_store,  # type: ignore[arg-type]
        token_store=token_store,  # type: ignore[arg-type]
        config=agenda_config,
        http_client=httpx.AsyncClient(),
        state=configured_state(upsert),
    )


@pytest.fixture
def app(agenda_config: AgendaConfig, pipeline: ConfirmationPipeline, google_handler) -> FastAPI:
    app = create_app(agenda_config, migrate=False)
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(google_handler))
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    app.dependency_overrides[get_http_client] = lambda: http_client
    return app


@pytest.fixture
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as client:
        yield client

"""FastAPI dependency stubs for the agenda API.

Each stub raises until the lifespan handler (or a test) installs the real
object through ``app.dependency_overrides``.
"""

from __future__ import annotations

import httpx

from estate_agenda.oauth import OAuthStateStore
from estate_agenda.pipeline import ConfirmationPipeline


def get_pipeline() -> ConfirmationPipeline:
    """Dependency stub; overridden at app startup or in tests."""
    raise RuntimeError("ConfirmationPipeline not initialized")


def get_http_client() -> httpx.AsyncClient:
    """Dependency stub; overridden at app startup or in tests."""
    raise RuntimeError("HTTP client not initialized")


def get_state_store() -> OAuthStateStore:
    """Dependency stub; overridden at app startup or in tests."""
    raise RuntimeError("OAuth state store not initialized")

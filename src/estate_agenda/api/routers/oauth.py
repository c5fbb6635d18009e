"""Google OAuth bootstrap endpoints.

- ``GET /api/oauth/google/start``: redirect (or JSON with ``?redirect=false``)
  to Google's consent screen.
- ``GET /api/oauth/google/callback``: validate state, store the refresh token
  and re-enable calendar sync.

Error payloads are actionable but never echo provider text or secrets.
"""

from __future__ import annotations

import logging

import httpx
from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, RedirectResponse, Response

from estate_agenda.api.deps import get_http_client, get_pipeline, get_state_store
from estate_agenda.api.models import (
    OAuthCallbackError,
    OAuthCallbackSuccess,
    OAuthStartResponse,
)
from estate_agenda.oauth import (
    OAuthFlowError,
    OAuthStateStore,
    build_authorization_url,
    complete_authorization,
    sanitize_provider_error,
)
from estate_agenda.pipeline import ConfirmationPipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/oauth", tags=["oauth"])


@router.get(
    "/google/start",
    responses={
        200: {"model": OAuthStartResponse, "description": "JSON payload (redirect=false)"},
        302: {"description": "Redirect to Google authorization URL"},
    },
)
async def oauth_google_start(
    redirect: bool = Query(
        default=True,
        description="Redirect to Google (default) or return the URL as JSON.",
    ),
    pipeline: ConfirmationPipeline = Depends(get_pipeline),
    state_store: OAuthStateStore = Depends(get_state_store),
) -> Response:
    authorization_url, state = build_authorization_url(pipeline.config, state_store)
    if redirect:
        return RedirectResponse(url=authorization_url, status_code=302)
    return JSONResponse(
        content=OAuthStartResponse(authorization_url=authorization_url, state=state).model_dump()
    )


@router.get("/google/callback")
async def oauth_google_callback(
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    pipeline: ConfirmationPipeline = Depends(get_pipeline),
    state_store: OAuthStateStore = Depends(get_state_store),
    http_client: httpx.AsyncClient = Depends(get_http_client),
) -> Response:
    if error:
        logger.warning("Google OAuth provider error: %s", error)
        # A denied flow must not leave a reusable state behind
        if state:
            state_store.consume(state)
        payload = OAuthCallbackError(
            error_code="provider_error", message=sanitize_provider_error(error)
        )
        return JSONResponse(status_code=400, content=payload.model_dump())

    try:
        stored = await complete_authorization(
            code=code,
            state=state,
            pipeline=pipeline,
            state_store=state_store,
            http_client=http_client,
        )
    except OAuthFlowError as exc:
        payload = OAuthCallbackError(error_code=exc.error_code, message=exc.message)
        return JSONResponse(status_code=400, content=payload.model_dump())

    return JSONResponse(content=OAuthCallbackSuccess(scope=stored.scope).model_dump())

"""OAuth authorization endpoints for linking an Oura account.

``/oauth/start`` is protected by the API secret; ``/oauth/callback`` is
public because the browser arrives there from Oura's consent screen.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException
from fastapi.responses import PlainTextResponse, RedirectResponse

from src.dependencies import Authorized, Engine
from src.oura.errors import AuthorizationError, OAuthNotConfigured, TokenExchangeFailed

router = APIRouter(prefix="/oauth", tags=["oauth"])
logger = logging.getLogger("oura_sync.routers.oauth")


@router.get("/start", dependencies=[Authorized])
async def start_authorization(engine: Engine) -> RedirectResponse:
    """Redirect to Oura's consent screen with a fresh single-use state."""
    try:
        url = await engine.credentials.start_authorization()
    except OAuthNotConfigured as exc:
        raise HTTPException(status_code=500, detail=str(exc))
    return RedirectResponse(url, status_code=302)


@router.get("/callback", response_class=PlainTextResponse)
async def oauth_callback(
    engine: Engine,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
) -> str:
    if error:
        raise HTTPException(status_code=400, detail=f"OAuth error: {error}")
    if not code or not state:
        raise HTTPException(status_code=400, detail="Missing code or state")

    try:
        await engine.credentials.complete_authorization(code, state)
    except AuthorizationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except TokenExchangeFailed as exc:
        logger.error("Token exchange failed: %s", exc)
        raise HTTPException(status_code=502, detail="Token exchange failed")
    return "OK"

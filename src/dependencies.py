"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

import hmac
from typing import Annotated

from fastapi import Depends, HTTPException, Request

from src.config import Settings, get_settings
from src.oura.engine import SyncEngine


def get_engine(request: Request) -> SyncEngine:
    """Return the engine built during app startup."""
    engine: SyncEngine | None = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Sync engine not initialized")
    return engine


def require_api_secret(
    request: Request, settings: Annotated[Settings, Depends(get_settings)]
) -> None:
    """Reject requests without ``Authorization: Bearer <API_SECRET>``."""
    header = request.headers.get("Authorization", "")
    expected = f"Bearer {settings.api_secret}"
    if not settings.api_secret or not hmac.compare_digest(header.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")


# Annotated shortcuts for route signatures
Engine = Annotated[SyncEngine, Depends(get_engine)]
AppSettings = Annotated[Settings, Depends(get_settings)]
Authorized = Depends(require_api_secret)

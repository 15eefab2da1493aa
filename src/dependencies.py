"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, HTTPException, Request

from src.config import Settings, get_settings
from src.wearables.adapters.oura import OuraClient
from src.wearables.service import BiofeedbackService
from src.wearables.token_manager import TokenManager


@dataclass(frozen=True)
class AuthContext:
    """Authenticated user context extracted from the session JWT."""

    user_id: uuid.UUID
    email: str | None = None


async def get_current_user(request: Request) -> AuthContext:
    """Extract the authenticated user from the request state.

    The session auth middleware sets ``request.state.auth`` before routes run.
    """
    auth: AuthContext | None = getattr(request.state, "auth", None)
    if auth is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return auth


# Components built once in the lifespan and parked on app.state

def get_oura_client(request: Request) -> OuraClient:
    return request.app.state.oura_client


def get_token_manager(request: Request) -> TokenManager:
    return request.app.state.token_manager


def get_biofeedback_service(request: Request) -> BiofeedbackService:
    return request.app.state.biofeedback


# Annotated shortcuts for route signatures
CurrentUser = Annotated[AuthContext, Depends(get_current_user)]
AppSettings = Annotated[Settings, Depends(get_settings)]
Oura = Annotated[OuraClient, Depends(get_oura_client)]
Tokens = Annotated[TokenManager, Depends(get_token_manager)]
Biofeedback = Annotated[BiofeedbackService, Depends(get_biofeedback_service)]

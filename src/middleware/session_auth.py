"""Session JWT verification middleware for FastAPI.

The timer UI carries an HS256-signed session token in the ``pomodoro_session``
cookie (or, for API clients, as a Bearer token).  Valid tokens set
``request.state.auth``; route handlers consume it via ``get_current_user``.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

import jwt as pyjwt
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.config import Settings, get_settings
from src.dependencies import AuthContext

logger = logging.getLogger("focusbeat.auth")

# Paths that do not require authentication
PUBLIC_PATHS: set[str] = {
    "/health",
    "/docs",
    "/openapi.json",
    "/redoc",
}


def _is_public(path: str) -> bool:
    return path in PUBLIC_PATHS or path.startswith("/docs") or path.startswith("/redoc")


def _unauthorized(detail: str) -> Response:
    return Response(
        content=f'{{"detail":"{detail}"}}',
        status_code=401,
        media_type="application/json",
    )


def create_session_token(user_id: uuid.UUID, secret: str, email: str | None = None) -> str:
    """Sign a session token in the shape the middleware accepts."""
    claims: dict[str, Any] = {"userId": str(user_id)}
    if email:
        claims["email"] = email
    return pyjwt.encode(claims, secret, algorithm="HS256")


class SessionAuthMiddleware(BaseHTTPMiddleware):
    """Verify session JWTs and populate request.state.auth."""

    def __init__(self, app: Any, settings: Settings | None = None) -> None:
        super().__init__(app)
        self._settings = settings or get_settings()

    def _token(self, request: Request) -> str | None:
        auth_header = request.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            return auth_header.removeprefix("Bearer ").strip()
        return request.cookies.get(self._settings.session_cookie_name)

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if _is_public(request.url.path):
            return await call_next(request)

        # OPTIONS requests pass through (CORS preflight)
        if request.method == "OPTIONS":
            return await call_next(request)

        token = self._token(request)
        if not token:
            return _unauthorized("Not signed in")

        try:
            payload = pyjwt.decode(token, self._settings.session_secret, algorithms=["HS256"])
        except pyjwt.ExpiredSignatureError:
            return _unauthorized("Session expired")
        except pyjwt.InvalidTokenError as exc:
            logger.warning("Session token validation failed: %s", exc)
            return _unauthorized("Invalid session")

        try:
            user_id = uuid.UUID(str(payload.get("userId", "")))
        except ValueError:
            logger.warning("Session token without a usable userId claim")
            return _unauthorized("Invalid session")

        request.state.auth = AuthContext(user_id=user_id, email=payload.get("email"))
        return await call_next(request)

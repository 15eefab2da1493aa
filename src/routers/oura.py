"""Oura endpoints: OAuth connect/callback/disconnect, biofeedback metrics, focus telemetry, scope debug."""

from __future__ import annotations

import logging
import math
import secrets
from typing import Any
from urllib.parse import urlencode

from fastapi import APIRouter, Body, HTTPException, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import ValidationError

from src.dependencies import AppSettings, Biofeedback, CurrentUser, Oura, Tokens
from src.models.base import ErrorDetail
from src.models.oura import (
    FocusTelemetryCreate,
    FocusTelemetryResponse,
    MetricsResponse,
    ScopeDebugResponse,
)
from src.wearables.adapters.oura import REQUIRED_SCOPES
from src.wearables.base import FocusTelemetry, parse_iso_datetime
from src.wearables.errors import OuraError, TelemetryValidationError

router = APIRouter(prefix="/oura", tags=["oura"])
logger = logging.getLogger("focusbeat.routers.oura")

STATE_COOKIE = "oura_oauth_state"
NEXT_COOKIE = "oura_oauth_next"
CONNECTED_COOKIE = "oura_connected"
OAUTH_COOKIE_MAX_AGE = 60 * 10
DEFAULT_NEXT_PATH = "/settings"

UNEXPECTED_WARNING = "Unexpected Oura error. Please reconnect Oura."


def _safe_next(path: str | None) -> str:
    # Only same-site relative paths; "//host" would leave the site.
    if path and path.startswith("/") and not path.startswith("//"):
        return path
    return DEFAULT_NEXT_PATH


def _with_status(path: str, status: str) -> str:
    separator = "&" if "?" in path else "?"
    return f"{path}{separator}{urlencode({'oura': status})}"


# ---------- OAuth ----------

@router.get("/connect", responses={500: {"model": ErrorDetail}})
async def connect(
    user: CurrentUser,
    settings: AppSettings,
    oura: Oura,
    next_path: str | None = Query(default=None, alias="next"),
) -> RedirectResponse:
    if not oura.configured:
        raise HTTPException(status_code=500, detail="Oura is not configured on this deployment.")

    state = secrets.token_urlsafe(32)
    response = RedirectResponse(oura.authorize_url(state), status_code=307)
    secure = settings.environment == "production"
    for name, value in ((STATE_COOKIE, state), (NEXT_COOKIE, _safe_next(next_path))):
        response.set_cookie(
            name,
            value,
            max_age=OAUTH_COOKIE_MAX_AGE,
            path="/",
            httponly=True,
            samesite="lax",
            secure=secure,
        )
    logger.info("Starting Oura OAuth for user %s", user.user_id)
    return response


@router.get("/callback")
async def callback(
    request: Request,
    user: CurrentUser,
    settings: AppSettings,
    tokens: Tokens,
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
) -> RedirectResponse:
    cookie_state = request.cookies.get(STATE_COOKIE)
    next_path = _safe_next(request.cookies.get(NEXT_COOKIE))

    if not code or not state or not cookie_state or not secrets.compare_digest(state, cookie_state):
        logger.warning("Oura callback with invalid state for user %s", user.user_id)
        return RedirectResponse(_with_status(next_path, "invalid_state"), status_code=307)

    try:
        await tokens.exchange_code(user.user_id, code)
    except OuraError as exc:
        logger.error("Oura code exchange failed for user %s: %s", user.user_id, exc)
        response = RedirectResponse(_with_status(next_path, "connect_failed"), status_code=307)
    else:
        response = RedirectResponse(next_path, status_code=307)
        response.set_cookie(
            CONNECTED_COOKIE,
            "1",
            max_age=60 * 30,
            path="/",
            samesite="lax",
            secure=settings.environment == "production",
        )

    response.delete_cookie(STATE_COOKIE, path="/")
    response.delete_cookie(NEXT_COOKIE, path="/")
    return response


@router.post("/disconnect")
async def disconnect(user: CurrentUser, tokens: Tokens) -> dict:
    await tokens.revoke(user.user_id)
    return {"ok": True}


# ---------- Biofeedback ----------

@router.get("/metrics", response_model=MetricsResponse)
async def metrics(
    user: CurrentUser,
    settings: AppSettings,
    biofeedback: Biofeedback,
    focus_start: str | None = Query(default=None, alias="focusStart"),
) -> Any:
    """Heart rate, today's stress and the learned profile; always a complete payload.

    Answers 429 (same body shape) when the vendor is throttling, so the
    polling client backs off.
    """
    missing = settings.missing_oura_settings()
    if missing:
        return MetricsResponse(configured=False, missing=missing)

    try:
        result = await biofeedback.read_metrics(user.user_id, parse_iso_datetime(focus_start))
    except Exception:
        logger.exception("GET /oura/metrics failed for user %s", user.user_id)
        return JSONResponse(
            status_code=500,
            content=MetricsResponse(warning=UNEXPECTED_WARNING).model_dump(by_alias=True, mode="json"),
        )

    if result.rate_limited:
        headers = {}
        if result.retry_after_seconds is not None:
            headers["Retry-After"] = str(math.ceil(result.retry_after_seconds))
        return JSONResponse(
            status_code=429,
            content=result.model_dump(by_alias=True, mode="json"),
            headers=headers,
        )
    return result


@router.post(
    "/focus-telemetry",
    response_model=FocusTelemetryResponse,
    responses={400: {"model": ErrorDetail}},
)
async def focus_telemetry(
    user: CurrentUser,
    biofeedback: Biofeedback,
    payload: dict[str, Any] = Body(...),
) -> Any:
    """Record one finished focus run and return the updated profile."""
    try:
        try:
            body = FocusTelemetryCreate.model_validate(payload)
        except ValidationError as exc:
            raise TelemetryValidationError(
                [f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}" for err in exc.errors()]
            ) from exc

        profile = await biofeedback.record_telemetry(
            user.user_id,
            FocusTelemetry(
                session_started_at=body.session_started_at,
                session_ended_at=body.session_ended_at,
                baseline_bpm=body.baseline_bpm,
                peak_rolling_bpm=body.peak_rolling_bpm,
                avg_rolling_bpm=body.avg_rolling_bpm,
                alert_windows=body.alert_windows,
            ),
        )
    except TelemetryValidationError as exc:
        logger.info("Rejected focus telemetry for user %s: %s", user.user_id, exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return FocusTelemetryResponse(profile=profile)


# ---------- Scope debug ----------

@router.get("/debug", response_model=ScopeDebugResponse)
async def debug(user: CurrentUser, settings: AppSettings, tokens: Tokens) -> Any:
    """Granted vs required scopes and token expiry, never the tokens themselves."""
    if settings.missing_oura_settings():
        return ScopeDebugResponse(
            configured=False,
            required_scopes=list(REQUIRED_SCOPES),
            missing_scopes=list(REQUIRED_SCOPES),
        )
    return ScopeDebugResponse(configured=True, **await tokens.scope_debug(user.user_id))

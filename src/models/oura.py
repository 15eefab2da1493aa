"""Pydantic models for the Oura biofeedback API: metrics, telemetry, scope debug."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import Field, field_validator, model_validator

from src.models.base import FocusbeatBase


# ---------- Metrics (GET /oura/metrics) ----------

class HeartRateSampleRead(FocusbeatBase):
    timestamp: str
    bpm: float


class StressTodayRead(FocusbeatBase):
    date: str | None = None
    stressed_hours: float = 0.0
    engaged_hours: float = 0.0
    relaxed_hours: float = 0.0
    restored_hours: float = 0.0
    state: str | None = None


class FocusProfileRead(FocusbeatBase):
    baseline_median_bpm: float | None = None
    typical_drift_bpm: float | None = None
    sample_count: int = 0


class MetricsResponse(FocusbeatBase):
    """Always well-formed, whatever went wrong upstream."""

    configured: bool = True
    missing: list[str] = Field(default_factory=list)
    connected: bool = False
    heart_rate_samples: list[HeartRateSampleRead] = Field(default_factory=list)
    latest_heart_rate: float | None = None
    latest_heart_rate_time: str | None = None
    rolling_average_bpm: float | None = None
    stress_today: StressTodayRead | None = None
    profile: FocusProfileRead = Field(default_factory=FocusProfileRead)
    warning: str | None = None
    rate_limited: bool = False
    retry_after_seconds: float | None = None


# ---------- Focus telemetry (POST /oura/focus-telemetry) ----------

class FocusTelemetryCreate(FocusbeatBase):
    session_started_at: datetime
    session_ended_at: datetime
    baseline_bpm: float = Field(ge=30, le=220)
    peak_rolling_bpm: float = Field(ge=30, le=220)
    avg_rolling_bpm: float = Field(ge=30, le=220)
    alert_windows: int = Field(default=0, ge=0, le=10000)

    @field_validator("session_started_at", "session_ended_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    @model_validator(mode="after")
    def _check_order(self) -> FocusTelemetryCreate:
        if self.session_ended_at < self.session_started_at:
            raise ValueError("sessionEndedAt must not precede sessionStartedAt")
        return self


class FocusTelemetryResponse(FocusbeatBase):
    ok: bool = True
    profile: FocusProfileRead


# ---------- Scope debug (GET /oura/debug) ----------

class ScopeDebugResponse(FocusbeatBase):
    configured: bool
    connected: bool = False
    stored_scope: str | None = None
    granted_scopes: list[str] = Field(default_factory=list)
    required_scopes: list[str] = Field(default_factory=list)
    missing_scopes: list[str] = Field(default_factory=list)
    expires_at: datetime | None = None
    token_type: str | None = None

"""Focusbeat Oura biofeedback engine.

This package turns a user's Oura heart-rate and daily-stress collections
into a focus signal for the pomodoro timer, and learns a per-user heart-rate
baseline from completed focus runs.

Subpackages:
    adapters/  — Oura API v2 client (OAuth2 + usercollection endpoints)

Core modules:
    base               — Credential, sample, profile and telemetry models
    token_manager      — Valid access tokens with single-flight refresh
    collection_fetcher — Paginated, fallback-windowed collection reads
    biofeedback        — Sample extraction, rolling average, stress buckets
    profile_learner    — EMA-blended baseline and drift per user
    focus_signal       — steady / slow_down / take_break state machine
    poller             — Client-side polling loop with backoff
    service            — Metrics read / telemetry write orchestration
    config_loader      — Load/validate/reload focus_config.yaml
"""

from src.wearables.base import (
    BiofeedbackSummary,
    Credential,
    FocusProfile,
    FocusTelemetry,
    HeartRateSample,
    OAuthTokens,
    StressBuckets,
)
from src.wearables.config_loader import FocusConfig, get_focus_config

__all__ = [
    "BiofeedbackSummary",
    "Credential",
    "FocusProfile",
    "FocusTelemetry",
    "HeartRateSample",
    "OAuthTokens",
    "StressBuckets",
    "FocusConfig",
    "get_focus_config",
]

"""Canonical data models for the Focusbeat wearable integration.

These types are the single source of truth shared by the token manager,
collection fetcher, biofeedback aggregator, profile learner and the focus
signal engine.  Vendor JSON never travels past the aggregator.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from uuid import UUID

logger = logging.getLogger("focusbeat.wearables")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# OAuth / credentials
# ---------------------------------------------------------------------------


@dataclass
class OAuthTokens:
    """OAuth token envelope returned by the token endpoint.

    Attributes:
        access_token:  Bearer token for API calls.
        refresh_token: One-time-use token for obtaining the next envelope.
        expires_in:    Lifetime of the access token in seconds.
        token_type:    Token type, typically "Bearer".
        scope:         Space-separated granted scopes, if the vendor echoed them.
    """

    access_token: str = field(repr=False)
    refresh_token: str = field(repr=False)
    expires_in: int = 3600
    token_type: str = "Bearer"
    scope: str | None = None


@dataclass
class Credential:
    """The stored Oura credential for one user.

    Token values are excluded from ``repr`` so a credential can be logged.
    """

    user_id: UUID
    access_token: str = field(repr=False)
    refresh_token: str = field(repr=False)
    expires_at: datetime
    token_type: str = "Bearer"
    granted_scope: str | None = None

    @classmethod
    def from_tokens(cls, user_id: UUID, tokens: OAuthTokens, now: datetime) -> Credential:
        """Build the credential to persist, turning ``expires_in`` into an absolute expiry."""
        return cls(
            user_id=user_id,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_at=now + timedelta(seconds=tokens.expires_in),
            token_type=tokens.token_type or "Bearer",
            granted_scope=tokens.scope,
        )

    def is_fresh(self, now: datetime, buffer_seconds: int) -> bool:
        """True while the access token stays valid for more than ``buffer_seconds``."""
        return self.expires_at - timedelta(seconds=buffer_seconds) > now

    @property
    def granted_scopes(self) -> list[str]:
        return [s for s in (self.granted_scope or "").replace(",", " ").split() if s]


# ---------------------------------------------------------------------------
# Biofeedback
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HeartRateSample:
    """One heart-rate reading.  ``timestamp`` is the vendor's ISO-8601 string."""

    timestamp: str
    bpm: float

    @property
    def at(self) -> datetime | None:
        return parse_iso_datetime(self.timestamp)


@dataclass
class StressBuckets:
    """Today's stress summary, every duration in hours (one decimal).

    Attributes:
        date:            Vendor day the summary belongs to.
        stressed_hours:  Time in the high-stress zone.
        engaged_hours:   Time in the engaged zone.
        relaxed_hours:   Time in the relaxed zone.
        restored_hours:  Time in the recovery zone.
        state:           Normalized qualitative label ("Stressed", "Restored", ...).
    """

    date: str | None
    stressed_hours: float = 0.0
    engaged_hours: float = 0.0
    relaxed_hours: float = 0.0
    restored_hours: float = 0.0
    state: str | None = None


@dataclass
class BiofeedbackSummary:
    samples: list[HeartRateSample] = field(default_factory=list)
    latest: HeartRateSample | None = None
    stress_buckets: StressBuckets | None = None


# ---------------------------------------------------------------------------
# Profile learning
# ---------------------------------------------------------------------------


@dataclass
class FocusProfile:
    """Learned per-user heart-rate baseline and typical focus drift."""

    user_id: UUID | None = None
    baseline_median_bpm: float | None = None
    typical_drift_bpm: float | None = None
    sample_count: int = 0
    updated_at: datetime | None = None


@dataclass(frozen=True)
class FocusTelemetry:
    """Summary of one completed focus run, submitted once and never mutated."""

    session_started_at: datetime
    session_ended_at: datetime
    baseline_bpm: float
    peak_rolling_bpm: float
    avg_rolling_bpm: float
    alert_windows: int = 0


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def safe_float(value: object) -> float | None:
    """Coerce a number or numeric string to a finite float, else None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    if number != number or number in (float("inf"), float("-inf")):
        return None
    return number


def parse_iso_datetime(value: str | None) -> datetime | None:
    """Parse an ISO-8601 string to an aware UTC datetime.

    Naive strings are assumed to be UTC.  Returns None if unparseable.
    """
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        logger.warning("Could not parse datetime string: %r", value)
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso_date(value: datetime | date) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    return value.isoformat()

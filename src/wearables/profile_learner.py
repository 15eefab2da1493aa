"""Adaptive per-user heart-rate baseline and focus drift.

After every completed focus run the client submits a ``FocusTelemetry``
summary.  The learner validates it, appends it to the audit log, and folds
it into the user's ``FocusProfile``:

    first session   — baseline and drift taken as observed (weight 1.0)
    later sessions  — exponential moving update, ``next = old*(1-w) + new*w``

Drift is ``max(0, peak - baseline)`` for the session and is floored at a
minimum so the alert threshold never collapses onto the baseline.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable
from uuid import UUID

import asyncpg

from src.wearables.base import FocusProfile, FocusTelemetry, utc_now
from src.wearables.config_loader import ProfileConfig
from src.wearables.errors import TelemetryValidationError
from src.wearables.stores import ProfileStore, TelemetryLog

logger = logging.getLogger("focusbeat.wearables.profile")


def validate_telemetry(telemetry: FocusTelemetry, config: ProfileConfig | None = None) -> None:
    """Reject out-of-range bpm values, negative alert counts and inverted timestamps.

    Raises:
        TelemetryValidationError: Listing every problem found.
    """
    cfg = config or ProfileConfig()
    errors: list[str] = []

    for name in ("baseline_bpm", "peak_rolling_bpm", "avg_rolling_bpm"):
        value = getattr(telemetry, name)
        if not isinstance(value, (int, float)) or value != value:
            errors.append(f"{name} must be a number")
        elif not (cfg.min_bpm <= value <= cfg.max_bpm):
            errors.append(f"{name} = {value} is outside [{cfg.min_bpm:g}, {cfg.max_bpm:g}]")

    if telemetry.alert_windows < 0:
        errors.append("alert_windows must not be negative")

    if telemetry.session_ended_at < telemetry.session_started_at:
        errors.append("session_ended_at precedes session_started_at")

    if errors:
        raise TelemetryValidationError(errors)


def blend_profile(
    existing: FocusProfile,
    telemetry: FocusTelemetry,
    config: ProfileConfig | None = None,
    now: datetime | None = None,
) -> FocusProfile:
    """Fold one session into ``existing`` and return the next profile (pure)."""
    cfg = config or ProfileConfig()
    observed_drift = max(0.0, telemetry.peak_rolling_bpm - telemetry.baseline_bpm)

    first = existing.sample_count == 0 or existing.baseline_median_bpm is None
    weight = 1.0 if first else cfg.ema_weight

    def _ema(previous: float | None, observed: float) -> float:
        if previous is None:
            return round(observed, 1)
        return round(previous * (1 - weight) + observed * weight, 1)

    baseline = _ema(None if first else existing.baseline_median_bpm, telemetry.baseline_bpm)
    drift = _ema(None if first else existing.typical_drift_bpm, observed_drift)

    return FocusProfile(
        user_id=existing.user_id,
        baseline_median_bpm=baseline,
        typical_drift_bpm=max(cfg.min_drift_bpm, drift),
        sample_count=existing.sample_count + 1,
        updated_at=now or utc_now(),
    )


class ProfileLearner:
    """Record focus-run telemetry and maintain the learned FocusProfile."""

    def __init__(
        self,
        profiles: ProfileStore,
        telemetry_log: TelemetryLog,
        config: ProfileConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._profiles = profiles
        self._telemetry_log = telemetry_log
        self._config = config or ProfileConfig()
        self._clock = clock
        self._locks: dict[UUID, asyncio.Lock] = {}

    def _lock_for(self, user_id: UUID) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    async def get_profile(self, user_id: UUID) -> FocusProfile:
        """The stored profile, or the empty default ``{None, None, 0}``."""
        profile = await self._profiles.get(user_id)
        return profile or FocusProfile(user_id=user_id)

    async def record_session(self, user_id: UUID, telemetry: FocusTelemetry) -> FocusProfile:
        """Validate, log and learn from one focus run.

        Raises:
            TelemetryValidationError: The submission was rejected; nothing is written.
        """
        validate_telemetry(telemetry, self._config)

        try:
            await self._telemetry_log.append(user_id, telemetry)
        except asyncpg.UndefinedTableError:
            # Deployments without the audit table still learn.
            logger.warning("focus_telemetry table missing; skipping audit insert for user %s", user_id)

        # Overlapping submissions for one user are folded in one after another.
        async with self._lock_for(user_id):
            existing = await self.get_profile(user_id)
            updated = blend_profile(existing, telemetry, self._config, self._clock())
            await self._profiles.upsert(updated)

        logger.info(
            "Focus profile for user %s: baseline=%s drift=%s samples=%d",
            user_id, updated.baseline_median_bpm, updated.typical_drift_bpm, updated.sample_count,
        )
        return updated

"""Biofeedback read/write orchestration behind the Oura API routes.

``read_metrics`` always returns a complete ``MetricsResponse``:

    no credential          → connected=False, no warning
    refresh rejected       → credential revoked, connected=False, reconnect warning
    token endpoint down    → connected=True, empty data, advisory warning
    one collection failed  → that signal empty, the other intact, advisory warning
    vendor throttled       → rate_limited=True so the client backs off

Heart rate and stress are fetched concurrently and fail independently.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict
from datetime import datetime
from typing import Callable
from uuid import UUID

from src.models.oura import (
    FocusProfileRead,
    HeartRateSampleRead,
    MetricsResponse,
    StressTodayRead,
)
from src.wearables.base import FocusProfile, FocusTelemetry, utc_now
from src.wearables.biofeedback import rolling_average, summarize
from src.wearables.collection_fetcher import CollectionFetcher
from src.wearables.config_loader import FocusConfig
from src.wearables.errors import AuthExpired, VendorUnavailable
from src.wearables.profile_learner import ProfileLearner
from src.wearables.token_manager import TokenManager

logger = logging.getLogger("focusbeat.wearables.service")

RECONNECT_WARNING = "Oura authorization expired. Please reconnect Oura."
UNAVAILABLE_WARNING = "Oura is temporarily unavailable. Showing what we have."
HEART_RATE_WARNING = "Heart-rate data is temporarily unavailable."
STRESS_WARNING = "Stress data is temporarily unavailable."
NO_SAMPLES_WARNING = "No recent heart-rate data from Oura yet. Sync your ring in the Oura app."
FALLBACK_WARNING = "Showing older heart-rate data; your ring has not synced recently."


def profile_read(profile: FocusProfile) -> FocusProfileRead:
    return FocusProfileRead(
        baseline_median_bpm=profile.baseline_median_bpm,
        typical_drift_bpm=profile.typical_drift_bpm,
        sample_count=profile.sample_count,
    )


class BiofeedbackService:
    """Wire TokenManager, CollectionFetcher, the aggregator and ProfileLearner together."""

    def __init__(
        self,
        tokens: TokenManager,
        fetcher: CollectionFetcher,
        learner: ProfileLearner,
        config: FocusConfig,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._tokens = tokens
        self._fetcher = fetcher
        self._learner = learner
        self._config = config
        self._clock = clock

    async def read_metrics(self, user_id: UUID, focus_start: datetime | None = None) -> MetricsResponse:
        profile = profile_read(await self._learner.get_profile(user_id))

        try:
            token = await self._tokens.get_valid_access_token(user_id)
        except AuthExpired as exc:
            logger.warning("Revoking Oura connection for user %s: %s", user_id, exc)
            await self._tokens.revoke(user_id)
            return MetricsResponse(connected=False, profile=profile, warning=RECONNECT_WARNING)
        except VendorUnavailable as exc:
            logger.warning("Oura token endpoint unavailable for user %s: %s", user_id, exc)
            return MetricsResponse(connected=True, profile=profile, warning=UNAVAILABLE_WARNING)

        if token is None:
            return MetricsResponse(connected=False, profile=profile)

        now = self._clock()
        heart, stress = await asyncio.gather(
            self._fetcher.fetch_heart_rate(user_id, now, focus_start),
            self._fetcher.fetch_daily_stress(user_id, now),
        )

        summary = summarize(
            heart.rows,
            stress.rows[-1] if stress.rows else None,
            self._config.stress,
        )

        warnings: list[str] = []
        if heart.error is not None:
            warnings.append(HEART_RATE_WARNING)
        elif not summary.samples:
            warnings.append(NO_SAMPLES_WARNING)
        elif heart.used_fallback:
            warnings.append(FALLBACK_WARNING)
        if stress.error is not None:
            warnings.append(STRESS_WARNING)

        latest = summary.latest
        buckets = summary.stress_buckets
        return MetricsResponse(
            connected=True,
            heart_rate_samples=[
                HeartRateSampleRead(timestamp=s.timestamp, bpm=s.bpm) for s in summary.samples
            ],
            latest_heart_rate=latest.bpm if latest else None,
            latest_heart_rate_time=latest.timestamp if latest else None,
            rolling_average_bpm=rolling_average(
                summary.samples, self._config.signal.rolling_window_minutes
            ),
            stress_today=StressTodayRead(**asdict(buckets)) if buckets else None,
            profile=profile,
            warning=" ".join(warnings) or None,
            rate_limited=heart.rate_limited or stress.rate_limited,
            retry_after_seconds=max(
                (s for s in (heart.retry_after, stress.retry_after) if s is not None), default=None
            ),
        )

    async def record_telemetry(self, user_id: UUID, telemetry: FocusTelemetry) -> FocusProfileRead:
        return profile_read(await self._learner.record_session(user_id, telemetry))

"""Client-side biofeedback polling loop.

The poller re-reads ``GET /api/v1/oura/metrics`` on a timer and feeds the
result to a ``FocusSignalEngine``.  Cadence is faster during a focus run than
while idle.  A rate-limit answer, a transport failure or a timeout backs the
interval off exponentially up to a ceiling; the next success resets it.

The schedule is a small immutable value advanced by ``next_schedule()`` so
the backoff policy can be tested without a clock.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable

import httpx
from pydantic import ValidationError

from src.models.oura import MetricsResponse
from src.wearables.base import FocusProfile, FocusTelemetry, HeartRateSample
from src.wearables.adapters.oura import parse_retry_after
from src.wearables.config_loader import PollingConfig
from src.wearables.focus_signal import FocusSignalEngine, SignalReading

logger = logging.getLogger("focusbeat.wearables.poller")


class PollOutcome(str, Enum):
    OK = "ok"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class PollSchedule:
    """Current polling interval and how many failures in a row produced it."""

    interval_seconds: float
    attempt: int = 0


def base_interval(active: bool, config: PollingConfig) -> float:
    return config.active_interval_seconds if active else config.idle_interval_seconds


def next_schedule(
    schedule: PollSchedule,
    outcome: PollOutcome,
    active: bool,
    config: PollingConfig | None = None,
    retry_after: float | None = None,
) -> PollSchedule:
    """Advance the schedule after one poll (pure).

    A server-supplied ``retry_after`` raises the backoff interval to at least
    that many seconds, still bounded by the ceiling.
    """
    cfg = config or PollingConfig()
    base = base_interval(active, cfg)
    if outcome is PollOutcome.OK:
        return PollSchedule(interval_seconds=base, attempt=0)

    attempt = schedule.attempt + 1
    interval = base * cfg.backoff_factor ** attempt
    if retry_after is not None:
        interval = max(interval, retry_after)
    return PollSchedule(interval_seconds=min(cfg.max_interval_seconds, interval), attempt=attempt)


def samples_from_metrics(metrics: MetricsResponse) -> list[HeartRateSample]:
    return [HeartRateSample(timestamp=s.timestamp, bpm=s.bpm) for s in metrics.heart_rate_samples]


def profile_from_metrics(metrics: MetricsResponse) -> FocusProfile:
    return FocusProfile(
        baseline_median_bpm=metrics.profile.baseline_median_bpm,
        typical_drift_bpm=metrics.profile.typical_drift_bpm,
        sample_count=metrics.profile.sample_count,
    )


class BiofeedbackPoller:
    """Drive a FocusSignalEngine from the metrics endpoint.

    Args:
        http_client: httpx client already pointed at the API (base URL, session cookie).
        engine:      The signal engine for this browser/client session.
        on_reading:  Optional callback receiving each ``SignalReading`` and the raw metrics.
        on_auto_pause: Optional callback invoked when the engine asks the timer to pause.
        config:      Cadence/backoff settings.
    """

    METRICS_PATH = "/api/v1/oura/metrics"
    TELEMETRY_PATH = "/api/v1/oura/focus-telemetry"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        engine: FocusSignalEngine,
        on_reading: Callable[[SignalReading, MetricsResponse], Any] | None = None,
        on_auto_pause: Callable[[], Awaitable[Any]] | None = None,
        config: PollingConfig | None = None,
    ) -> None:
        self._http = http_client
        self._engine = engine
        self._on_reading = on_reading
        self._on_auto_pause = on_auto_pause
        self._config = config or PollingConfig()
        self._schedule = PollSchedule(interval_seconds=base_interval(engine.active, self._config))
        self.last_metrics: MetricsResponse | None = None
        self.last_outcome: PollOutcome | None = None
        self._retry_after: float | None = None

    @property
    def schedule(self) -> PollSchedule:
        return self._schedule

    async def poll_once(self) -> PollOutcome:
        """Fetch metrics once, update the engine, and advance the schedule."""
        self._retry_after = None
        try:
            outcome = await self._fetch_and_observe()
        except Exception:
            logger.exception("Biofeedback poll tick failed")
            outcome = PollOutcome.FAILED
        self.last_outcome = outcome
        self._schedule = next_schedule(
            self._schedule, outcome, self._engine.active, self._config, self._retry_after
        )
        if outcome is not PollOutcome.OK:
            logger.info(
                "Biofeedback poll %s; next attempt in %.0fs", outcome.value, self._schedule.interval_seconds
            )
        return outcome

    async def _fetch_and_observe(self) -> PollOutcome:
        params: dict[str, str] = {}
        started_at = self._engine.run_started_at
        if started_at is not None:
            params["focusStart"] = started_at.isoformat()

        try:
            response = await self._http.get(
                self.METRICS_PATH,
                params=params,
                timeout=self._config.request_timeout_seconds,
            )
        except httpx.TimeoutException:
            return PollOutcome.TIMED_OUT
        except httpx.HTTPError as exc:
            logger.warning("Biofeedback poll failed: %s", exc)
            return PollOutcome.FAILED

        if response.status_code == 429:
            self._retry_after = parse_retry_after(response)
            return PollOutcome.RATE_LIMITED

        try:
            metrics = MetricsResponse.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            logger.warning("Biofeedback poll returned an unreadable payload (%s): %s", response.status_code, exc)
            return PollOutcome.FAILED

        self.last_metrics = metrics
        if metrics.rate_limited:
            self._retry_after = metrics.retry_after_seconds
            return PollOutcome.RATE_LIMITED
        if response.status_code >= 400:
            return PollOutcome.FAILED

        reading = self._engine.observe(samples_from_metrics(metrics), profile_from_metrics(metrics))
        if self._on_reading is not None:
            self._on_reading(reading, metrics)
        if reading.auto_pause and self._on_auto_pause is not None:
            await self._on_auto_pause()
        return PollOutcome.OK

    async def submit_telemetry(self, telemetry: FocusTelemetry) -> dict:
        """POST a finished run's telemetry; usable as the engine's ``on_run_complete``."""
        response = await self._http.post(
            self.TELEMETRY_PATH,
            json={
                "sessionStartedAt": telemetry.session_started_at.isoformat(),
                "sessionEndedAt": telemetry.session_ended_at.isoformat(),
                "baselineBpm": telemetry.baseline_bpm,
                "peakRollingBpm": telemetry.peak_rolling_bpm,
                "avgRollingBpm": telemetry.avg_rolling_bpm,
                "alertWindows": telemetry.alert_windows,
            },
            timeout=self._config.request_timeout_seconds,
        )
        response.raise_for_status()
        return response.json()

    async def run(self, stop: asyncio.Event) -> None:
        """Poll until ``stop`` is set.  A failed tick never ends the loop."""
        while not stop.is_set():
            await self.poll_once()
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._schedule.interval_seconds)
            except asyncio.TimeoutError:
                continue

    def start_run(self, started_at: datetime | None = None) -> None:
        """Begin a focus run on the engine and switch to the active cadence."""
        self._engine.start_run(started_at)
        self.reset_cadence()

    async def end_run(self, ended_at: datetime | None = None) -> FocusTelemetry | None:
        """End the engine's run (flushing telemetry) and drop back to the idle cadence."""
        telemetry = await self._engine.end_run(ended_at)
        self.reset_cadence()
        return telemetry

    def reset_cadence(self) -> None:
        """Re-derive the interval after a focus run starts or ends, unless backing off."""
        if self._schedule.attempt == 0:
            self._schedule = PollSchedule(interval_seconds=base_interval(self._engine.active, self._config))

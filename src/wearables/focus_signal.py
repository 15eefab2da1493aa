"""Focus signal state machine: steady → slow_down → take_break.

Each poll produces a *window*: the rolling 5-minute mean of the latest heart
rate samples compared against an alert threshold

    threshold = baseline + max(min_margin, typical_drift + drift_margin)

where the baseline is, in order of preference, the session baseline (first
readings of this focus run), the learned profile baseline, or — for display
only — the rolling average itself.

Inside a focus run the first elevated window moves to ``slow_down``; the
second consecutive one moves to ``take_break`` and asks the timer to pause.
After an auto-pause fires, no other fires for the cooldown period even if the
elevation persists.  Any window back under threshold resets to ``steady``.

The run's statistics live in an immutable ``SessionAccumulator`` advanced by
``step()``; ``FocusSignalEngine`` only holds the current accumulator and
flushes it as telemetry when the run ends.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable

from src.wearables.base import FocusProfile, FocusTelemetry, HeartRateSample, utc_now
from src.wearables.biofeedback import rolling_average, session_baseline
from src.wearables.config_loader import SignalConfig

logger = logging.getLogger("focusbeat.wearables.signal")


class FocusSignal(str, Enum):
    STEADY = "steady"
    SLOW_DOWN = "slow_down"
    TAKE_BREAK = "take_break"


class BaselineSource(str, Enum):
    SESSION = "session"
    PROFILE = "profile"
    ROLLING = "rolling"


@dataclass(frozen=True)
class SignalReading:
    """What the UI shows after one evaluation.

    Attributes:
        signal:              Current focus signal.
        rolling_average_bpm: Rolling 5-minute mean (None without samples).
        baseline_bpm:        Effective baseline used for the threshold.
        baseline_source:     Where the baseline came from.
        threshold_bpm:       Alert threshold (None without a baseline).
        above:               Rolling mean strictly above the threshold.
        auto_pause:          True exactly on the window that should pause the timer.
    """

    signal: FocusSignal
    rolling_average_bpm: float | None = None
    baseline_bpm: float | None = None
    baseline_source: BaselineSource | None = None
    threshold_bpm: float | None = None
    above: bool = False
    auto_pause: bool = False


@dataclass(frozen=True)
class SessionAccumulator:
    """Statistics of one focus run.  Created at run start, consumed once at run end."""

    started_at: datetime
    signal: FocusSignal = FocusSignal.STEADY
    consecutive_high_windows: int = 0
    session_baseline_bpm: float | None = None
    reference_baseline_bpm: float | None = None
    peak_rolling_bpm: float | None = None
    rolling_sum: float = 0.0
    rolling_count: int = 0
    alert_windows: int = 0
    next_alert_eligible_at: datetime | None = None
    last_window_at: str | None = None

    @property
    def avg_rolling_bpm(self) -> float | None:
        if not self.rolling_count:
            return None
        return round(self.rolling_sum / self.rolling_count, 1)

    def to_telemetry(self, ended_at: datetime) -> FocusTelemetry | None:
        """Telemetry for this run, or None when no window had a usable baseline."""
        avg = self.avg_rolling_bpm
        if avg is None or self.peak_rolling_bpm is None or self.reference_baseline_bpm is None:
            return None
        return FocusTelemetry(
            session_started_at=self.started_at,
            session_ended_at=ended_at,
            baseline_bpm=self.reference_baseline_bpm,
            peak_rolling_bpm=self.peak_rolling_bpm,
            avg_rolling_bpm=avg,
            alert_windows=self.alert_windows,
        )


# ---------------------------------------------------------------------------
# Pure evaluation
# ---------------------------------------------------------------------------


def effective_baseline(
    session_bpm: float | None,
    profile: FocusProfile | None,
    rolling_bpm: float | None,
) -> tuple[float | None, BaselineSource | None]:
    if session_bpm is not None:
        return session_bpm, BaselineSource.SESSION
    if profile is not None and profile.baseline_median_bpm is not None:
        return profile.baseline_median_bpm, BaselineSource.PROFILE
    if rolling_bpm is not None:
        return rolling_bpm, BaselineSource.ROLLING
    return None, None


def alert_threshold(
    baseline_bpm: float, typical_drift_bpm: float | None, config: SignalConfig
) -> float:
    drift = config.default_drift_bpm if typical_drift_bpm is None else typical_drift_bpm
    return round(baseline_bpm + max(config.min_margin_bpm, drift + config.drift_margin_bpm), 1)


def _read(
    samples: list[HeartRateSample],
    profile: FocusProfile | None,
    session_bpm: float | None,
    config: SignalConfig,
) -> SignalReading:
    """Rolling mean, baseline and threshold; ``signal`` is filled in by the caller."""
    rolling = rolling_average(samples, config.rolling_window_minutes)
    baseline, source = effective_baseline(session_bpm, profile, rolling)
    if rolling is None or baseline is None:
        return SignalReading(signal=FocusSignal.STEADY, rolling_average_bpm=rolling)

    threshold = alert_threshold(baseline, profile.typical_drift_bpm if profile else None, config)
    # A baseline borrowed from the rolling mean is for display; it never alerts.
    above = source is not BaselineSource.ROLLING and rolling > threshold
    return SignalReading(
        signal=FocusSignal.STEADY,
        rolling_average_bpm=rolling,
        baseline_bpm=baseline,
        baseline_source=source,
        threshold_bpm=threshold,
        above=above,
    )


def evaluate_idle(
    samples: list[HeartRateSample],
    profile: FocusProfile | None,
    config: SignalConfig | None = None,
) -> SignalReading:
    """Signal outside a focus run: ``slow_down`` when above, else ``steady``; never pauses."""
    cfg = config or SignalConfig()
    reading = _read(samples, profile, None, cfg)
    return replace(
        reading, signal=FocusSignal.SLOW_DOWN if reading.above else FocusSignal.STEADY
    )


def step(
    acc: SessionAccumulator,
    samples: list[HeartRateSample],
    profile: FocusProfile | None,
    now: datetime,
    config: SignalConfig | None = None,
) -> tuple[SessionAccumulator, SignalReading]:
    """Advance a focus run by one poll.

    A poll whose newest sample was already evaluated is not a new window: the
    accumulator is returned unchanged so stale data cannot escalate the signal.
    """
    cfg = config or SignalConfig()

    if acc.session_baseline_bpm is None:
        learned = session_baseline(
            samples, acc.started_at, cfg.session_baseline_minutes, cfg.session_baseline_min_samples
        )
        if learned is not None:
            acc = replace(acc, session_baseline_bpm=learned)

    reading = _read(samples, profile, acc.session_baseline_bpm, cfg)
    latest_at = samples[-1].timestamp if samples else None

    if reading.rolling_average_bpm is None or latest_at == acc.last_window_at:
        return acc, replace(reading, signal=acc.signal, above=False)

    rolling = reading.rolling_average_bpm
    peak = rolling if acc.peak_rolling_bpm is None else max(acc.peak_rolling_bpm, rolling)
    acc = replace(
        acc,
        last_window_at=latest_at,
        rolling_sum=acc.rolling_sum + rolling,
        rolling_count=acc.rolling_count + 1,
        peak_rolling_bpm=peak,
        reference_baseline_bpm=(
            reading.baseline_bpm
            if reading.baseline_source is not BaselineSource.ROLLING
            else acc.reference_baseline_bpm
        ),
    )

    if not reading.above:
        acc = replace(acc, consecutive_high_windows=0, signal=FocusSignal.STEADY)
        return acc, replace(reading, signal=FocusSignal.STEADY)

    consecutive = acc.consecutive_high_windows + 1
    signal = (
        FocusSignal.TAKE_BREAK
        if consecutive >= cfg.take_break_after_windows
        else FocusSignal.SLOW_DOWN
    )
    auto_pause = signal is FocusSignal.TAKE_BREAK and (
        acc.next_alert_eligible_at is None or now >= acc.next_alert_eligible_at
    )
    acc = replace(
        acc,
        consecutive_high_windows=consecutive,
        signal=signal,
        alert_windows=acc.alert_windows + 1,
        next_alert_eligible_at=(
            now + timedelta(minutes=cfg.alert_cooldown_minutes)
            if auto_pause
            else acc.next_alert_eligible_at
        ),
    )
    return acc, replace(reading, signal=signal, auto_pause=auto_pause)


# ---------------------------------------------------------------------------
# Stateful wrapper
# ---------------------------------------------------------------------------


class FocusSignalEngine:
    """Holds the current run's accumulator and flushes it as telemetry.

    Usage::

        engine = FocusSignalEngine(on_run_complete=api.submit_telemetry)
        engine.start_run()
        reading = engine.observe(samples, profile)
        if reading.auto_pause:
            timer.pause()
            await engine.end_run()
    """

    def __init__(
        self,
        config: SignalConfig | None = None,
        on_run_complete: Callable[[FocusTelemetry], Awaitable[Any]] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._config = config or SignalConfig()
        self._on_run_complete = on_run_complete
        self._clock = clock
        self._acc: SessionAccumulator | None = None

    @property
    def active(self) -> bool:
        return self._acc is not None

    @property
    def accumulator(self) -> SessionAccumulator | None:
        return self._acc

    @property
    def run_started_at(self) -> datetime | None:
        return self._acc.started_at if self._acc else None

    def start_run(self, started_at: datetime | None = None) -> SessionAccumulator:
        """Begin a focus run with fresh counters."""
        if self._acc is not None:
            logger.warning("Focus run started while another was active; discarding the old one")
        self._acc = SessionAccumulator(started_at=started_at or self._clock())
        return self._acc

    def observe(
        self, samples: list[HeartRateSample], profile: FocusProfile | None
    ) -> SignalReading:
        if self._acc is None:
            return evaluate_idle(samples, profile, self._config)
        self._acc, reading = step(self._acc, samples, profile, self._clock(), self._config)
        if reading.auto_pause:
            logger.info(
                "Auto-pause: rolling %.1f bpm above threshold %.1f",
                reading.rolling_average_bpm, reading.threshold_bpm,
            )
        return reading

    async def end_run(self, ended_at: datetime | None = None) -> FocusTelemetry | None:
        """Close the run (pause, mode switch, or completion) and submit its telemetry."""
        acc, self._acc = self._acc, None
        if acc is None:
            return None

        telemetry = acc.to_telemetry(ended_at or self._clock())
        if telemetry is None:
            logger.debug("Focus run ended without usable windows; nothing to submit")
            return None

        if self._on_run_complete is not None:
            try:
                await self._on_run_complete(telemetry)
            except Exception as exc:
                logger.warning("Focus telemetry submission failed: %s", exc)
        return telemetry

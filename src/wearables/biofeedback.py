"""Biofeedback aggregation over raw Oura collection rows.

Pure functions — no I/O.  Vendor payloads have changed shape across API
versions, so every field is looked up through an ordered candidate list:

    heart rate   — bpm under ``bpm`` / ``heart_rate`` / ``hr`` / ...,
                   timestamp under ``timestamp`` / ``time`` / ...
    daily stress — durations under seconds-, minutes- or hours-denominated
                   names; a name with a known unit is converted directly,
                   otherwise ``guess_duration_unit`` decides by magnitude.

Every stress duration is reported in hours rounded to one decimal.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import Enum

from src.wearables.base import (
    BiofeedbackSummary,
    HeartRateSample,
    StressBuckets,
    parse_iso_datetime,
    safe_float,
)
from src.wearables.config_loader import StressConfig

logger = logging.getLogger("focusbeat.wearables.biofeedback")


class DurationUnit(str, Enum):
    SECONDS = "seconds"
    MINUTES = "minutes"
    HOURS = "hours"


_HOURS_PER_UNIT: dict[DurationUnit, float] = {
    DurationUnit.SECONDS: 1 / 3600,
    DurationUnit.MINUTES: 1 / 60,
    DurationUnit.HOURS: 1.0,
}

BPM_FIELDS: tuple[str, ...] = ("bpm", "heart_rate", "heartrate", "hr", "value")
TIMESTAMP_FIELDS: tuple[str, ...] = ("timestamp", "time", "datetime", "start_datetime", "recorded_at")

#: Bucket → (field name, unit) candidates in priority order.  ``None`` means
#: the field has carried different units over time and must be guessed.
STRESS_FIELD_CANDIDATES: dict[str, list[tuple[str, DurationUnit | None]]] = {
    "stressed": [
        ("stress_high", DurationUnit.SECONDS),
        ("high_stress_seconds", DurationUnit.SECONDS),
        ("high_stress_minutes", DurationUnit.MINUTES),
        ("stressed_minutes", DurationUnit.MINUTES),
        ("stressed_hours", DurationUnit.HOURS),
        ("high_stress", None),
        ("stressed", None),
    ],
    "engaged": [
        ("engaged_seconds", DurationUnit.SECONDS),
        ("engaged_minutes", DurationUnit.MINUTES),
        ("engaged_hours", DurationUnit.HOURS),
        ("engaged", None),
    ],
    "relaxed": [
        ("relaxed_seconds", DurationUnit.SECONDS),
        ("relaxed_minutes", DurationUnit.MINUTES),
        ("relaxed_hours", DurationUnit.HOURS),
        ("relaxed", None),
    ],
    "restored": [
        ("recovery_high", DurationUnit.SECONDS),
        ("restored_seconds", DurationUnit.SECONDS),
        ("restored_minutes", DurationUnit.MINUTES),
        ("restored_hours", DurationUnit.HOURS),
        ("restored", None),
        ("recovery", None),
    ],
}

STRESS_STATE_FIELDS: tuple[str, ...] = (
    "stress_state",
    "state",
    "level",
    "status",
    "category",
    "resilience_level",
    "day_summary",
)


# ---------------------------------------------------------------------------
# Heart rate
# ---------------------------------------------------------------------------


def _first_present(row: dict, names: tuple[str, ...]) -> object:
    for name in names:
        value = row.get(name)
        if value is not None and value != "":
            return value
    return None


def extract_heart_rate_samples(rows: list[dict]) -> list[HeartRateSample]:
    """Turn raw heart-rate rows into samples sorted ascending by timestamp.

    Rows without a numeric bpm or a parseable timestamp are dropped.
    Duplicate timestamps are kept; the sort is stable.
    """
    samples: list[HeartRateSample] = []
    dropped = 0
    for row in rows:
        bpm = safe_float(_first_present(row, BPM_FIELDS))
        timestamp = _first_present(row, TIMESTAMP_FIELDS)
        if bpm is None or bpm <= 0 or not isinstance(timestamp, str) or parse_iso_datetime(timestamp) is None:
            dropped += 1
            continue
        samples.append(HeartRateSample(timestamp=timestamp, bpm=bpm))

    if dropped:
        logger.debug("Dropped %d heart-rate rows without bpm/timestamp", dropped)
    # ISO-8601 strings in one offset sort chronologically.
    samples.sort(key=lambda s: s.timestamp)
    return samples


def rolling_average(samples: list[HeartRateSample], window_minutes: int = 5) -> float | None:
    """Mean bpm of samples within ``window_minutes`` of the latest sample."""
    if not samples:
        return None
    latest_at = samples[-1].at
    if latest_at is None:
        return None
    cutoff = latest_at - timedelta(minutes=window_minutes)
    window = [s.bpm for s in samples if (at := s.at) is not None and at >= cutoff]
    if not window:
        return None
    return round(sum(window) / len(window), 1)


def session_baseline(
    samples: list[HeartRateSample],
    focus_start: datetime,
    window_minutes: int = 5,
    min_samples: int = 3,
) -> float | None:
    """Mean bpm over the first ``window_minutes`` of a focus run.

    Returns None until at least ``min_samples`` readings fall in that window.
    """
    window_end = focus_start + timedelta(minutes=window_minutes)
    window = [
        s.bpm for s in samples
        if (at := s.at) is not None and focus_start <= at <= window_end
    ]
    if len(window) < min_samples:
        return None
    return round(sum(window) / len(window), 1)


# ---------------------------------------------------------------------------
# Stress
# ---------------------------------------------------------------------------


def guess_duration_unit(value: float) -> DurationUnit:
    """Best guess at the unit of a duration whose field name does not say.

    A day has 24 hours and 1440 minutes, so anything from one hour's worth of
    seconds upward is seconds, anything above 24 is minutes, and the rest is
    hours.  Ambiguous by nature: 30 could be 30 minutes or 30 seconds.
    """
    if value >= 3600:
        return DurationUnit.SECONDS
    if value > 24:
        return DurationUnit.MINUTES
    return DurationUnit.HOURS


def to_hours(value: float, unit: DurationUnit | None) -> float:
    """Convert a duration to hours, rounded to one decimal."""
    resolved = unit or guess_duration_unit(value)
    return round(max(value, 0.0) * _HOURS_PER_UNIT[resolved], 1)


def bucket_hours(row: dict, bucket: str) -> float:
    """Hours spent in ``bucket`` using the first candidate field that is numeric."""
    for name, unit in STRESS_FIELD_CANDIDATES[bucket]:
        value = safe_float(row.get(name))
        if value is not None:
            return to_hours(value, unit)
    return 0.0


def normalize_stress_state(value: str) -> str | None:
    normalized = value.strip().lower()
    if not normalized:
        return None
    if "restore" in normalized:
        return "Restored"
    if "relax" in normalized:
        return "Relaxed"
    if "engag" in normalized:
        return "Engaged"
    if "stress" in normalized:
        return "Stressed"
    return normalized[0].upper() + normalized[1:]


def pick_stress_state(row: dict) -> str | None:
    for name in STRESS_STATE_FIELDS:
        value = row.get(name)
        if isinstance(value, str):
            return normalize_stress_state(value)
    return None


def normalize_stress_buckets(
    row: dict | None, config: StressConfig | None = None
) -> StressBuckets | None:
    """Build today's StressBuckets from one daily-stress row."""
    if not row:
        return None
    cfg = config or StressConfig()

    state = pick_stress_state(row)
    stressed = bucket_hours(row, "stressed")
    # The vendor's own label wins over a zero duration so the UI never shows
    # "Stressed" next to 0.0h.  Flagged for product confirmation in DESIGN.md.
    if state == "Stressed" and stressed == 0:
        stressed = cfg.stressed_label_floor_hours

    day = row.get("day") or row.get("date")
    return StressBuckets(
        date=str(day) if day else None,
        stressed_hours=stressed,
        engaged_hours=bucket_hours(row, "engaged"),
        relaxed_hours=bucket_hours(row, "relaxed"),
        restored_hours=bucket_hours(row, "restored"),
        state=state,
    )


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------


def summarize(
    raw_heart_rows: list[dict],
    raw_stress_row: dict | None,
    stress_config: StressConfig | None = None,
) -> BiofeedbackSummary:
    """Normalize one metrics read into samples, the latest sample, and stress buckets."""
    samples = extract_heart_rate_samples(raw_heart_rows)
    return BiofeedbackSummary(
        samples=samples,
        latest=samples[-1] if samples else None,
        stress_buckets=normalize_stress_buckets(raw_stress_row, stress_config),
    )

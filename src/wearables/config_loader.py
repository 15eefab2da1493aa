"""Load, validate, and hot-reload the Focusbeat wearable configuration.

The config lives in ``focus_config.yaml`` alongside this module.  At startup
it is loaded once and cached.  Call ``reload_focus_config()`` to re-read from
disk after an edit — no restart required.

Usage::

    from src.wearables.config_loader import get_focus_config

    config = get_focus_config()
    config.collection.max_pages          # 25
    config.signal.alert_cooldown_minutes # 10
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger("focusbeat.wearables.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "focus_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class TokenConfig:
    refresh_buffer_seconds: int = 90


@dataclass
class CollectionConfig:
    """Vendor collection retrieval settings."""

    max_pages: int = 25
    request_timeout_seconds: float = 15.0
    primary_window_hours: int = 24
    focus_lookback_hours: int = 2
    fallback_window_days: int = 7


@dataclass
class StressConfig:
    stressed_label_floor_hours: float = 0.1


@dataclass
class SignalConfig:
    """Focus signal state machine thresholds."""

    rolling_window_minutes: int = 5
    session_baseline_minutes: int = 5
    session_baseline_min_samples: int = 3
    min_margin_bpm: float = 6.0
    drift_margin_bpm: float = 2.0
    default_drift_bpm: float = 6.0
    take_break_after_windows: int = 2
    alert_cooldown_minutes: int = 10


@dataclass
class ProfileConfig:
    """Per-user baseline learning settings."""

    ema_weight: float = 0.2
    min_drift_bpm: float = 4.0
    min_bpm: float = 30.0
    max_bpm: float = 220.0


@dataclass
class PollingConfig:
    """Client-side polling cadence and backoff."""

    active_interval_seconds: float = 30.0
    idle_interval_seconds: float = 60.0
    backoff_factor: float = 2.0
    max_interval_seconds: float = 600.0
    request_timeout_seconds: float = 10.0


@dataclass
class FocusConfig:
    """Complete, validated wearable-integration configuration.

    This is the single in-memory representation of focus_config.yaml.
    The token manager, fetcher, aggregator, learner, signal engine and
    poller all read from this object.
    """

    version: str = "1.0"
    token: TokenConfig = field(default_factory=TokenConfig)
    collection: CollectionConfig = field(default_factory=CollectionConfig)
    stress: StressConfig = field(default_factory=StressConfig)
    signal: SignalConfig = field(default_factory=SignalConfig)
    profile: ProfileConfig = field(default_factory=ProfileConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    _raw: dict = field(default_factory=dict, repr=False)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when focus_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Focus config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> FocusConfig:
    """Validate the raw YAML dict and construct a FocusConfig.

    Missing keys fall back to the dataclass defaults.  Every problem found is
    collected so the error lists them all at once.

    Raises:
        ConfigValidationError: If any value has the wrong type or range.
    """
    errors: list[str] = []

    def _number(section: dict, key: str, default: float, where: str, *, minimum: float = 0.0) -> float:
        value = section.get(key, default)
        try:
            number = float(value)
        except (TypeError, ValueError):
            errors.append(f"{where}.{key} must be a number, got {value!r}")
            return default
        if number < minimum:
            errors.append(f"{where}.{key} = {number} is below the minimum {minimum}")
        return number

    def _section(key: str) -> dict:
        value = raw.get(key) or {}
        if not isinstance(value, dict):
            errors.append(f"'{key}' must be a mapping")
            return {}
        return value

    version = str(raw.get("version", "1.0"))

    # ── Token ──
    tk = _section("token")
    token = TokenConfig(
        refresh_buffer_seconds=int(_number(tk, "refresh_buffer_seconds", 90, "token")),
    )

    # ── Collection ──
    col = _section("collection")
    hr = col.get("heart_rate") or {}
    if not isinstance(hr, dict):
        errors.append("collection.heart_rate must be a mapping")
        hr = {}
    collection = CollectionConfig(
        max_pages=int(_number(col, "max_pages", 25, "collection", minimum=1)),
        request_timeout_seconds=_number(col, "request_timeout_seconds", 15, "collection", minimum=1),
        primary_window_hours=int(_number(hr, "primary_window_hours", 24, "collection.heart_rate", minimum=1)),
        focus_lookback_hours=int(_number(hr, "focus_lookback_hours", 2, "collection.heart_rate")),
        fallback_window_days=int(_number(hr, "fallback_window_days", 7, "collection.heart_rate", minimum=1)),
    )

    # ── Stress ──
    st = _section("stress")
    stress = StressConfig(
        stressed_label_floor_hours=_number(st, "stressed_label_floor_hours", 0.1, "stress"),
    )

    # ── Signal ──
    sg = _section("signal")
    signal = SignalConfig(
        rolling_window_minutes=int(_number(sg, "rolling_window_minutes", 5, "signal", minimum=1)),
        session_baseline_minutes=int(_number(sg, "session_baseline_minutes", 5, "signal", minimum=1)),
        session_baseline_min_samples=int(_number(sg, "session_baseline_min_samples", 3, "signal", minimum=1)),
        min_margin_bpm=_number(sg, "min_margin_bpm", 6, "signal"),
        drift_margin_bpm=_number(sg, "drift_margin_bpm", 2, "signal"),
        default_drift_bpm=_number(sg, "default_drift_bpm", 6, "signal"),
        take_break_after_windows=int(_number(sg, "take_break_after_windows", 2, "signal", minimum=1)),
        alert_cooldown_minutes=int(_number(sg, "alert_cooldown_minutes", 10, "signal")),
    )

    # ── Profile ──
    pf = _section("profile")
    profile = ProfileConfig(
        ema_weight=_number(pf, "ema_weight", 0.2, "profile"),
        min_drift_bpm=_number(pf, "min_drift_bpm", 4, "profile"),
        min_bpm=_number(pf, "min_bpm", 30, "profile"),
        max_bpm=_number(pf, "max_bpm", 220, "profile"),
    )
    if not (0.0 < profile.ema_weight <= 1.0):
        errors.append(f"profile.ema_weight = {profile.ema_weight} is out of range (0.0, 1.0]")
    if profile.min_bpm >= profile.max_bpm:
        errors.append("profile.min_bpm must be lower than profile.max_bpm")

    # ── Polling ──
    pl = _section("polling")
    polling = PollingConfig(
        active_interval_seconds=_number(pl, "active_interval_seconds", 30, "polling", minimum=1),
        idle_interval_seconds=_number(pl, "idle_interval_seconds", 60, "polling", minimum=1),
        backoff_factor=_number(pl, "backoff_factor", 2, "polling", minimum=1),
        max_interval_seconds=_number(pl, "max_interval_seconds", 600, "polling", minimum=1),
        request_timeout_seconds=_number(pl, "request_timeout_seconds", 10, "polling", minimum=1),
    )
    if polling.max_interval_seconds < polling.active_interval_seconds:
        errors.append("polling.max_interval_seconds must not be below active_interval_seconds")

    if errors:
        raise ConfigValidationError(
            f"focus_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return FocusConfig(
        version=version,
        token=token,
        collection=collection,
        stress=stress,
        signal=signal,
        profile=profile,
        polling=polling,
        _raw=raw,
    )


def load_focus_config(path: Path | None = None) -> FocusConfig:
    """Load and validate the focus config from disk.

    Args:
        path: Override path to YAML. Uses the bundled focus_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded focus config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: FocusConfig | None = None
_config_lock = threading.Lock()


def get_focus_config() -> FocusConfig:
    """Return the global FocusConfig singleton, loading it on first call."""
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_focus_config()
    return _config


def reload_focus_config(path: Path | None = None) -> FocusConfig:
    """Reload the config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_focus_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded focus config: %s → %s", old_version, new_config.version)
    return new_config

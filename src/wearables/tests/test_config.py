"""Tests for focus_config.yaml loading and validation."""

from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from src.wearables.config_loader import (
    ConfigValidationError,
    FocusConfig,
    _validate_and_build,
    get_focus_config,
    load_focus_config,
    reload_focus_config,
)


class TestConfigLoading:
    """Tests for loading focus_config.yaml."""

    def test_load_default_config(self, focus_config: FocusConfig) -> None:
        """The bundled focus_config.yaml loads without errors."""
        assert focus_config.version == "1.0"

    def test_bundled_values(self, focus_config: FocusConfig) -> None:
        assert focus_config.token.refresh_buffer_seconds == 90
        assert focus_config.collection.max_pages == 25
        assert focus_config.collection.primary_window_hours == 24
        assert focus_config.collection.focus_lookback_hours == 2
        assert focus_config.collection.fallback_window_days == 7
        assert focus_config.stress.stressed_label_floor_hours == pytest.approx(0.1)
        assert focus_config.signal.min_margin_bpm == 6
        assert focus_config.signal.take_break_after_windows == 2
        assert focus_config.signal.alert_cooldown_minutes == 10
        assert focus_config.profile.ema_weight == pytest.approx(0.2)
        assert focus_config.profile.min_drift_bpm == 4

    def test_polling_faster_when_active(self, focus_config: FocusConfig) -> None:
        polling = focus_config.polling
        assert polling.active_interval_seconds < polling.idle_interval_seconds
        assert polling.max_interval_seconds >= polling.idle_interval_seconds

    def test_get_focus_config_is_cached(self) -> None:
        assert get_focus_config() is get_focus_config()

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_focus_config(tmp_path / "nope.yaml")


class TestConfigValidation:
    def test_empty_mapping_uses_defaults(self) -> None:
        config = _validate_and_build({})
        assert config == FocusConfig()

    def test_partial_sections_merge_with_defaults(self) -> None:
        config = _validate_and_build({"signal": {"alert_cooldown_minutes": 15}})
        assert config.signal.alert_cooldown_minutes == 15
        assert config.signal.rolling_window_minutes == 5

    def test_all_errors_reported_together(self) -> None:
        raw = {
            "collection": {"max_pages": 0},
            "profile": {"ema_weight": 1.5, "min_bpm": 200, "max_bpm": 100},
            "signal": {"min_margin_bpm": "lots"},
        }
        with pytest.raises(ConfigValidationError) as exc_info:
            _validate_and_build(raw)
        message = str(exc_info.value)
        assert "4 validation error" in message
        assert "collection.max_pages" in message
        assert "profile.ema_weight" in message
        assert "signal.min_margin_bpm" in message

    def test_section_must_be_mapping(self) -> None:
        with pytest.raises(ConfigValidationError, match="'polling' must be a mapping"):
            _validate_and_build({"polling": [1, 2, 3]})

    def test_malformed_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("signal: [unclosed\n")
        with pytest.raises(ConfigValidationError, match="YAML parse error"):
            load_focus_config(path)


class TestReload:
    def test_reload_replaces_singleton(self, tmp_path: Path) -> None:
        path = tmp_path / "focus_config.yaml"
        path.write_text(
            textwrap.dedent(
                """
                version: "2.0"
                signal:
                  alert_cooldown_minutes: 20
                """
            )
        )
        try:
            reloaded = reload_focus_config(path)
            assert reloaded.version == "2.0"
            assert get_focus_config() is reloaded
            assert get_focus_config().signal.alert_cooldown_minutes == 20
        finally:
            reload_focus_config()

    def test_invalid_reload_keeps_old_config(self, tmp_path: Path) -> None:
        before = get_focus_config()
        path = tmp_path / "focus_config.yaml"
        path.write_text("profile:\n  ema_weight: 0\n")

        with pytest.raises(ConfigValidationError):
            reload_focus_config(path)
        assert get_focus_config() is before

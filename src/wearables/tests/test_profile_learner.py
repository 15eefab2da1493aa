"""Tests for ProfileLearner — validation, EMA blending, audit-table tolerance."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import timedelta
from unittest.mock import AsyncMock

import asyncpg
import pytest

from src.wearables.base import FocusProfile, FocusTelemetry
from src.wearables.config_loader import ProfileConfig
from src.wearables.errors import TelemetryValidationError
from src.wearables.profile_learner import ProfileLearner, blend_profile, validate_telemetry
from src.wearables.tests.conftest import (
    NOW,
    TEST_USER_ID,
    FixedClock,
    InMemoryProfileStore,
    InMemoryTelemetryLog,
)


class YieldingProfileStore(InMemoryProfileStore):
    """Hands control back to the loop between the read and the caller's write."""

    async def get(self, user_id):
        profile = self.rows.get(user_id)
        await asyncio.sleep(0)
        return profile


def _telemetry(baseline: float = 68.0, peak: float = 80.0, avg: float = 74.0) -> FocusTelemetry:
    return FocusTelemetry(
        session_started_at=NOW - timedelta(minutes=25),
        session_ended_at=NOW,
        baseline_bpm=baseline,
        peak_rolling_bpm=peak,
        avg_rolling_bpm=avg,
        alert_windows=1,
    )


@pytest.fixture
def learner(
    profile_store: InMemoryProfileStore,
    telemetry_log: InMemoryTelemetryLog,
    clock: FixedClock,
) -> ProfileLearner:
    return ProfileLearner(profile_store, telemetry_log, ProfileConfig(), clock=clock)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestValidation:
    def test_valid_telemetry_passes(self) -> None:
        validate_telemetry(_telemetry())

    @pytest.mark.parametrize("field_name", ["baseline_bpm", "peak_rolling_bpm", "avg_rolling_bpm"])
    @pytest.mark.parametrize("value", [29.9, 220.1, float("nan")])
    def test_bpm_out_of_range(self, field_name: str, value: float) -> None:
        with pytest.raises(TelemetryValidationError) as exc_info:
            validate_telemetry(replace(_telemetry(), **{field_name: value}))
        assert field_name in str(exc_info.value)

    def test_inverted_timestamps(self) -> None:
        telemetry = replace(_telemetry(), session_ended_at=NOW - timedelta(hours=1))
        with pytest.raises(TelemetryValidationError, match="precedes"):
            validate_telemetry(telemetry)

    def test_every_problem_is_reported(self) -> None:
        telemetry = replace(_telemetry(baseline=10, peak=300), alert_windows=-1)
        with pytest.raises(TelemetryValidationError) as exc_info:
            validate_telemetry(telemetry)
        assert len(exc_info.value.errors) == 3


# ---------------------------------------------------------------------------
# Blending
# ---------------------------------------------------------------------------


class TestBlendProfile:
    def test_first_session_initializes_directly(self) -> None:
        profile = blend_profile(FocusProfile(user_id=TEST_USER_ID), _telemetry(68, 80), now=NOW)
        assert profile.baseline_median_bpm == 68.0
        assert profile.typical_drift_bpm == 12.0
        assert profile.sample_count == 1
        assert profile.updated_at == NOW

    def test_second_session_blends_at_point_two(self) -> None:
        existing = FocusProfile(
            user_id=TEST_USER_ID, baseline_median_bpm=68.0, typical_drift_bpm=12.0, sample_count=1
        )
        profile = blend_profile(existing, _telemetry(78, 84))
        # 68*0.8 + 78*0.2 = 70.0 ; 12*0.8 + 6*0.2 = 10.8
        assert profile.baseline_median_bpm == 70.0
        assert profile.typical_drift_bpm == 10.8
        assert profile.sample_count == 2

    def test_drift_floor(self) -> None:
        profile = blend_profile(FocusProfile(user_id=TEST_USER_ID), _telemetry(70, 70))
        assert profile.typical_drift_bpm == 4.0

    def test_peak_below_baseline_counts_as_zero_drift(self) -> None:
        existing = FocusProfile(
            user_id=TEST_USER_ID, baseline_median_bpm=70.0, typical_drift_bpm=10.0, sample_count=4
        )
        profile = blend_profile(existing, _telemetry(70, 65))
        # 10*0.8 + 0*0.2
        assert profile.typical_drift_bpm == 8.0


# ---------------------------------------------------------------------------
# ProfileLearner
# ---------------------------------------------------------------------------


class TestProfileLearner:
    @pytest.mark.asyncio
    async def test_default_profile(self, learner: ProfileLearner) -> None:
        profile = await learner.get_profile(TEST_USER_ID)
        assert profile.baseline_median_bpm is None
        assert profile.typical_drift_bpm is None
        assert profile.sample_count == 0

    @pytest.mark.asyncio
    async def test_record_then_reread_increments_sample_count(
        self, learner: ProfileLearner, telemetry_log: InMemoryTelemetryLog
    ) -> None:
        await learner.record_session(TEST_USER_ID, _telemetry())
        before = await learner.get_profile(TEST_USER_ID)

        await learner.record_session(TEST_USER_ID, _telemetry(72, 82))
        after = await learner.get_profile(TEST_USER_ID)

        assert after.sample_count == before.sample_count + 1
        assert len(telemetry_log.entries) == 2
        assert telemetry_log.entries[0][0] == TEST_USER_ID

    @pytest.mark.asyncio
    async def test_invalid_telemetry_leaves_profile_untouched(
        self,
        learner: ProfileLearner,
        profile_store: InMemoryProfileStore,
        telemetry_log: InMemoryTelemetryLog,
    ) -> None:
        with pytest.raises(TelemetryValidationError):
            await learner.record_session(TEST_USER_ID, _telemetry(baseline=250))
        assert profile_store.rows == {}
        assert telemetry_log.entries == []

    @pytest.mark.asyncio
    async def test_missing_audit_table_still_learns(
        self, profile_store: InMemoryProfileStore, clock: FixedClock
    ) -> None:
        telemetry_log = AsyncMock()
        telemetry_log.append = AsyncMock(
            side_effect=asyncpg.UndefinedTableError('relation "focus_telemetry" does not exist')
        )
        learner = ProfileLearner(profile_store, telemetry_log, clock=clock)

        profile = await learner.record_session(TEST_USER_ID, _telemetry())

        assert profile.sample_count == 1
        assert profile_store.rows[TEST_USER_ID].baseline_median_bpm == 68.0

    @pytest.mark.asyncio
    async def test_overlapping_sessions_are_both_folded_in(
        self, telemetry_log: InMemoryTelemetryLog, clock: FixedClock
    ) -> None:
        store = YieldingProfileStore()
        learner = ProfileLearner(store, telemetry_log, clock=clock)

        await asyncio.gather(
            learner.record_session(TEST_USER_ID, _telemetry(60, 70, 65)),
            learner.record_session(TEST_USER_ID, _telemetry(80, 90, 85)),
        )

        profile = store.rows[TEST_USER_ID]
        assert profile.sample_count == 2
        assert profile.baseline_median_bpm == 64.0
        assert len(telemetry_log.entries) == 2

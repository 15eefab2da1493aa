"""Shared fixtures, in-memory stores and row builders for the Oura integration tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock
from uuid import UUID

import pytest

from src.wearables.adapters.oura import OuraClient
from src.wearables.base import Credential, FocusProfile, FocusTelemetry, HeartRateSample, OAuthTokens
from src.wearables.config_loader import FocusConfig, load_focus_config
from src.wearables.token_manager import TokenManager

# Canonical test user ID
TEST_USER_ID = UUID("12345678-1234-5678-1234-567812345678")
NOW = datetime(2026, 2, 23, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# In-memory stores
# ---------------------------------------------------------------------------


class InMemoryCredentialStore:
    def __init__(self) -> None:
        self.rows: dict[UUID, Credential] = {}
        self.upserts = 0

    async def get(self, user_id: UUID) -> Credential | None:
        return self.rows.get(user_id)

    async def upsert(self, credential: Credential) -> None:
        self.upserts += 1
        self.rows[credential.user_id] = credential

    async def delete(self, user_id: UUID) -> None:
        self.rows.pop(user_id, None)


class InMemoryProfileStore:
    def __init__(self) -> None:
        self.rows: dict[UUID, FocusProfile] = {}

    async def get(self, user_id: UUID) -> FocusProfile | None:
        return self.rows.get(user_id)

    async def upsert(self, profile: FocusProfile) -> None:
        self.rows[profile.user_id] = profile


class InMemoryTelemetryLog:
    def __init__(self) -> None:
        self.entries: list[tuple[UUID, FocusTelemetry]] = []

    async def append(self, user_id: UUID, telemetry: FocusTelemetry) -> None:
        self.entries.append((user_id, telemetry))


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_credential(expires_in: timedelta, access_token: str = "access-old") -> Credential:
    return Credential(
        user_id=TEST_USER_ID,
        access_token=access_token,
        refresh_token="refresh-old",
        expires_at=NOW + expires_in,
        granted_scope="heartrate daily",
    )


def heart_rows(start: datetime, bpms: list[float], step_seconds: int = 60) -> list[dict]:
    """Oura-shaped heart-rate rows, one every ``step_seconds``."""
    return [
        {
            "bpm": bpm,
            "source": "awake",
            "timestamp": (start + timedelta(seconds=i * step_seconds)).isoformat(),
        }
        for i, bpm in enumerate(bpms)
    ]


def samples_at(start: datetime, bpms: list[float], step_seconds: int = 60) -> list[HeartRateSample]:
    return [
        HeartRateSample(timestamp=row["timestamp"], bpm=row["bpm"])
        for row in heart_rows(start, bpms, step_seconds)
    ]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def focus_config() -> FocusConfig:
    """Load the real focus config for tests."""
    return load_focus_config()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def credential_store() -> InMemoryCredentialStore:
    return InMemoryCredentialStore()


@pytest.fixture
def profile_store() -> InMemoryProfileStore:
    return InMemoryProfileStore()


@pytest.fixture
def telemetry_log() -> InMemoryTelemetryLog:
    return InMemoryTelemetryLog()


@pytest.fixture
def oura_client() -> MagicMock:
    """OuraClient stand-in whose refresh grant returns a new envelope."""
    client = MagicMock(spec=OuraClient)
    client.refresh_token = AsyncMock(
        return_value=OAuthTokens(
            access_token="access-new",
            refresh_token="refresh-new",
            expires_in=3600,
            scope="heartrate daily",
        )
    )
    return client


@pytest.fixture
def token_manager(
    oura_client: MagicMock,
    credential_store: InMemoryCredentialStore,
    focus_config: FocusConfig,
    clock: FixedClock,
) -> TokenManager:
    return TokenManager(oura_client, credential_store, focus_config.token, clock=clock)

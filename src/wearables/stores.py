"""Postgres-backed stores for credentials, focus profiles and telemetry.

Each store is the only writer of its table and upserts on ``user_id``
(last writer wins).  Anything with the same async methods can stand in for a
store, which is how the tests exercise the token manager and learner.
"""

from __future__ import annotations

import logging
from typing import Protocol
from uuid import UUID

from src.services.database import execute, fetchrow
from src.wearables.base import Credential, FocusProfile, FocusTelemetry

logger = logging.getLogger("focusbeat.wearables.stores")


class CredentialStore(Protocol):
    async def get(self, user_id: UUID) -> Credential | None: ...

    async def upsert(self, credential: Credential) -> None: ...

    async def delete(self, user_id: UUID) -> None: ...


class ProfileStore(Protocol):
    async def get(self, user_id: UUID) -> FocusProfile | None: ...

    async def upsert(self, profile: FocusProfile) -> None: ...


class TelemetryLog(Protocol):
    async def append(self, user_id: UUID, telemetry: FocusTelemetry) -> None: ...


# ---------------------------------------------------------------------------
# Postgres implementations
# ---------------------------------------------------------------------------


class PostgresCredentialStore:
    """``oura_connections``: one row per user."""

    async def get(self, user_id: UUID) -> Credential | None:
        row = await fetchrow(
            """
            SELECT user_id, access_token, refresh_token, token_type, scope, expires_at
            FROM oura_connections WHERE user_id = $1
            """,
            user_id,
        )
        if row is None:
            return None
        return Credential(
            user_id=row["user_id"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=row["expires_at"],
            token_type=row["token_type"] or "Bearer",
            granted_scope=row["scope"],
        )

    async def upsert(self, credential: Credential) -> None:
        # The whole envelope is written in one statement so a reader never
        # sees a new access token paired with a stale refresh token.
        await execute(
            """
            INSERT INTO oura_connections
                (user_id, access_token, refresh_token, token_type, scope, expires_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, NOW())
            ON CONFLICT (user_id) DO UPDATE SET
                access_token = EXCLUDED.access_token,
                refresh_token = EXCLUDED.refresh_token,
                token_type = EXCLUDED.token_type,
                scope = EXCLUDED.scope,
                expires_at = EXCLUDED.expires_at,
                updated_at = NOW()
            """,
            credential.user_id,
            credential.access_token,
            credential.refresh_token,
            credential.token_type,
            credential.granted_scope,
            credential.expires_at,
        )

    async def delete(self, user_id: UUID) -> None:
        status = await execute("DELETE FROM oura_connections WHERE user_id = $1", user_id)
        logger.info("Deleted Oura connection for user %s (%s)", user_id, status)


class PostgresProfileStore:
    """``focus_profiles``: learned baseline per user."""

    async def get(self, user_id: UUID) -> FocusProfile | None:
        row = await fetchrow(
            """
            SELECT user_id, baseline_median_bpm, typical_drift_bpm, sample_count, updated_at
            FROM focus_profiles WHERE user_id = $1
            """,
            user_id,
        )
        if row is None:
            return None
        return FocusProfile(
            user_id=row["user_id"],
            baseline_median_bpm=_maybe_float(row["baseline_median_bpm"]),
            typical_drift_bpm=_maybe_float(row["typical_drift_bpm"]),
            sample_count=int(row["sample_count"] or 0),
            updated_at=row["updated_at"],
        )

    async def upsert(self, profile: FocusProfile) -> None:
        await execute(
            """
            INSERT INTO focus_profiles
                (user_id, baseline_median_bpm, typical_drift_bpm, sample_count, updated_at)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (user_id) DO UPDATE SET
                baseline_median_bpm = EXCLUDED.baseline_median_bpm,
                typical_drift_bpm = EXCLUDED.typical_drift_bpm,
                sample_count = EXCLUDED.sample_count,
                updated_at = EXCLUDED.updated_at
            """,
            profile.user_id,
            profile.baseline_median_bpm,
            profile.typical_drift_bpm,
            profile.sample_count,
            profile.updated_at,
        )


class PostgresTelemetryLog:
    """``focus_telemetry``: append-only audit of submitted focus runs."""

    async def append(self, user_id: UUID, telemetry: FocusTelemetry) -> None:
        await execute(
            """
            INSERT INTO focus_telemetry
                (id, user_id, session_started_at, session_ended_at,
                 baseline_bpm, peak_rolling_bpm, avg_rolling_bpm, alert_windows)
            VALUES (gen_random_uuid(), $1, $2, $3, $4, $5, $6, $7)
            """,
            user_id,
            telemetry.session_started_at,
            telemetry.session_ended_at,
            telemetry.baseline_bpm,
            telemetry.peak_rolling_bpm,
            telemetry.avg_rolling_bpm,
            telemetry.alert_windows,
        )


def _maybe_float(value: object) -> float | None:
    return float(value) if value is not None else None  # type: ignore[arg-type]

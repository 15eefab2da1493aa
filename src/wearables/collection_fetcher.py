"""Windowed, paginated retrieval of Oura collections.

``fetch_window`` walks ``next_token`` pages until the vendor stops returning
one or the page ceiling is reached.  The two collection-level helpers apply
the window strategy for each signal and absorb failures, so heart rate and
stress degrade independently:

    heart rate   — last 24h (reaching 2h before focus start when earlier),
                   falling back to 7 days when that window is empty, since
                   rings upload in batches rather than in real time.
    daily stress — today only; the vendor computes it once a day.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from uuid import UUID

from src.wearables.adapters.oura import CollectionKind, OuraClient
from src.wearables.base import to_iso_date
from src.wearables.config_loader import CollectionConfig
from src.wearables.errors import AuthExpired, OuraError, RateLimited, VendorUnavailable
from src.wearables.token_manager import TokenManager

logger = logging.getLogger("focusbeat.wearables.fetcher")


@dataclass
class CollectionResult:
    """Rows from one collection read plus the failure that was absorbed, if any.

    Attributes:
        rows:         Raw vendor rows in page order.
        error:        The absorbed error (None on success).
        window_start: Start of the window that produced ``rows``.
        used_fallback: True when the extended fallback window was used.
    """

    rows: list[dict] = field(default_factory=list)
    error: OuraError | None = None
    window_start: datetime | None = None
    used_fallback: bool = False

    @property
    def rate_limited(self) -> bool:
        return isinstance(self.error, RateLimited)

    @property
    def retry_after(self) -> float | None:
        return self.error.retry_after if isinstance(self.error, RateLimited) else None


class CollectionFetcher:
    """Read heart-rate and daily-stress collections on behalf of a user."""

    def __init__(
        self,
        client: OuraClient,
        tokens: TokenManager,
        config: CollectionConfig | None = None,
    ) -> None:
        self._client = client
        self._tokens = tokens
        self._config = config or CollectionConfig()

    async def fetch_window(
        self,
        kind: CollectionKind,
        user_id: UUID,
        start: datetime,
        end: datetime,
    ) -> list[dict]:
        """Return every row in ``[start, end]`` across pages, in vendor order.

        Raises:
            AuthExpired:       The user is not connected or cannot be refreshed.
            RateLimited:       The vendor throttled a page request.
            VendorUnavailable: Any other page failure.
        """
        token = await self._tokens.get_valid_access_token(user_id)
        if token is None:
            raise AuthExpired(f"No Oura credential for user {user_id}")

        if kind is CollectionKind.HEART_RATE:
            start_param, end_param = start.isoformat(), end.isoformat()
        else:
            start_param, end_param = to_iso_date(start), to_iso_date(end)

        rows: list[dict] = []
        next_token: str | None = None
        for _ in range(self._config.max_pages):
            page_rows, next_token = await self._client.get_collection_page(
                kind, token, start_param, end_param, next_token
            )
            rows.extend(page_rows)
            if not next_token:
                break
        else:
            logger.warning(
                "Oura %s pagination hit the %d-page ceiling for user %s; truncating",
                kind.value, self._config.max_pages, user_id,
            )

        logger.debug(
            "Fetched %d %s rows for user %s (%s → %s)",
            len(rows), kind.value, user_id, start_param, end_param,
        )
        return rows

    async def fetch_heart_rate(
        self,
        user_id: UUID,
        now: datetime,
        focus_start: datetime | None = None,
    ) -> CollectionResult:
        """Heart-rate rows using the primary window, then the fallback window."""
        cfg = self._config
        start = now - timedelta(hours=cfg.primary_window_hours)
        if focus_start is not None:
            start = min(start, focus_start - timedelta(hours=cfg.focus_lookback_hours))

        primary = await self._absorb(CollectionKind.HEART_RATE, user_id, start, now)
        if primary.rows or primary.error is not None:
            return primary

        fallback_start = now - timedelta(days=cfg.fallback_window_days)
        logger.info(
            "No heart rate for user %s since %s; retrying with a %d-day window",
            user_id, start.isoformat(), cfg.fallback_window_days,
        )
        fallback = await self._absorb(CollectionKind.HEART_RATE, user_id, fallback_start, now)
        fallback.used_fallback = True
        return fallback

    async def fetch_daily_stress(self, user_id: UUID, now: datetime) -> CollectionResult:
        """Today's daily-stress rows; no fallback window."""
        return await self._absorb(CollectionKind.DAILY_STRESS, user_id, now, now)

    async def _absorb(
        self, kind: CollectionKind, user_id: UUID, start: datetime, end: datetime
    ) -> CollectionResult:
        try:
            rows = await self.fetch_window(kind, user_id, start, end)
        except (VendorUnavailable, AuthExpired) as exc:
            logger.warning("Oura %s fetch failed for user %s: %s", kind.value, user_id, exc)
            return CollectionResult(error=exc, window_start=start)
        return CollectionResult(rows=rows, window_start=start)

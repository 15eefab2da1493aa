"""Oura OAuth credential lifecycle.

``TokenManager`` hands out a currently valid access token for a user,
refreshing it shortly before expiry.  Oura refresh tokens are one-time-use,
so refreshes are single-flight per user: concurrent callers share one
in-flight refresh instead of each redeeming the same refresh token (the
second redemption would invalidate the grant).

If another process rotated the token first, the vendor answers
``invalid_grant``; the manager then re-reads the stored credential and
accepts it when it is fresh.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Hashable
from uuid import UUID

from src.wearables.adapters.oura import REQUIRED_SCOPES, OuraClient
from src.wearables.base import Credential, utc_now
from src.wearables.config_loader import TokenConfig
from src.wearables.errors import AuthExpired, TokenGrantError
from src.wearables.stores import CredentialStore

logger = logging.getLogger("focusbeat.wearables.tokens")


class RefreshRegistry:
    """Keyed single-flight registry of in-flight refresh tasks.

    ``run(key, factory)`` starts ``factory()`` as a task unless one is already
    pending for ``key``, in which case the caller attaches to it.  The entry
    is released from the task's done-callback, so it disappears on success,
    failure, and cancellation alike.  A caller being cancelled does not
    cancel the shared task.
    """

    def __init__(self) -> None:
        self._inflight: dict[Hashable, asyncio.Task] = {}

    def __contains__(self, key: Hashable) -> bool:
        return key in self._inflight

    def __len__(self) -> int:
        return len(self._inflight)

    async def run(self, key: Hashable, factory: Callable[[], Awaitable[Any]]) -> Any:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._release(k, t))
        else:
            logger.debug("Attaching to in-flight refresh for %s", key)
        return await asyncio.shield(task)

    def _release(self, key: Hashable, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Mark the outcome as observed even if every waiter was cancelled.
        if not task.cancelled():
            task.exception()


class TokenManager:
    """Produce valid Oura access tokens and own the stored credential.

    Usage::

        manager = TokenManager(OuraClient(...), PostgresCredentialStore())
        token = await manager.get_valid_access_token(user_id)
        if token is None:
            ...  # not connected
    """

    def __init__(
        self,
        client: OuraClient,
        store: CredentialStore,
        config: TokenConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._client = client
        self._store = store
        self._buffer_seconds = (config or TokenConfig()).refresh_buffer_seconds
        self._clock = clock
        self._refreshes = RefreshRegistry()

    @property
    def refreshes(self) -> RefreshRegistry:
        return self._refreshes

    async def get_valid_access_token(self, user_id: UUID) -> str | None:
        """Return a usable access token, refreshing if it is about to expire.

        Returns:
            The access token, or None when the user has no stored credential.

        Raises:
            AuthExpired:       The refresh grant was rejected for good.
            VendorUnavailable: The token endpoint could not be reached.
        """
        credential = await self._store.get(user_id)
        if credential is None:
            return None

        if credential.is_fresh(self._clock(), self._buffer_seconds):
            return credential.access_token

        return await self._refreshes.run(user_id, lambda: self._refresh(credential))

    async def _refresh(self, credential: Credential) -> str:
        user_id = credential.user_id
        logger.info("Refreshing Oura token for user %s", user_id)
        try:
            tokens = await self._client.refresh_token(credential.refresh_token)
        except TokenGrantError as exc:
            if exc.refresh_token_consumed:
                latest = await self._store.get(user_id)
                if latest is not None and latest.is_fresh(self._clock(), self._buffer_seconds):
                    logger.info(
                        "Refresh token for user %s was already rotated; using stored token",
                        user_id,
                    )
                    return latest.access_token
            raise AuthExpired(
                f"Oura refresh failed for user {user_id}: {exc.error_code or exc.status_code}"
            ) from exc

        await self._store.upsert(Credential.from_tokens(user_id, tokens, self._clock()))
        logger.info("Stored refreshed Oura token for user %s", user_id)
        return tokens.access_token

    async def exchange_code(self, user_id: UUID, auth_code: str) -> Credential:
        """Complete the OAuth callback: redeem the code and persist the envelope."""
        logger.info("Oura: exchanging authorization code for user %s", user_id)
        tokens = await self._client.exchange_code(auth_code)
        credential = Credential.from_tokens(user_id, tokens, self._clock())
        await self._store.upsert(credential)
        return credential

    async def revoke(self, user_id: UUID) -> None:
        """Delete the stored credential so the user is prompted to reconnect."""
        await self._store.delete(user_id)
        logger.info("Revoked Oura connection for user %s", user_id)

    async def scope_debug(self, user_id: UUID) -> dict[str, Any]:
        """Describe granted vs required scopes and expiry, without token values."""
        credential = await self._store.get(user_id)
        if credential is None:
            return {
                "connected": False,
                "stored_scope": None,
                "granted_scopes": [],
                "required_scopes": list(REQUIRED_SCOPES),
                "missing_scopes": list(REQUIRED_SCOPES),
                "expires_at": None,
                "token_type": None,
            }
        granted = credential.granted_scopes
        return {
            "connected": True,
            "stored_scope": credential.granted_scope,
            "granted_scopes": granted,
            "required_scopes": list(REQUIRED_SCOPES),
            "missing_scopes": [s for s in REQUIRED_SCOPES if s not in granted],
            "expires_at": credential.expires_at,
            "token_type": credential.token_type,
        }

"""Tests for TokenManager: freshness, single-flight refresh, rotation races."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.wearables.base import OAuthTokens
from src.wearables.errors import AuthExpired, TokenGrantError, VendorUnavailable
from src.wearables.token_manager import RefreshRegistry, TokenManager
from src.wearables.tests.conftest import (
    NOW,
    TEST_USER_ID,
    InMemoryCredentialStore,
    make_credential,
)


# ---------------------------------------------------------------------------
# Freshness
# ---------------------------------------------------------------------------


class TestFreshToken:
    @pytest.mark.asyncio
    async def test_no_credential_returns_none(
        self, token_manager: TokenManager, oura_client: MagicMock
    ) -> None:
        assert await token_manager.get_valid_access_token(TEST_USER_ID) is None
        oura_client.refresh_token.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fresh_token_makes_no_network_call(
        self,
        token_manager: TokenManager,
        credential_store: InMemoryCredentialStore,
        oura_client: MagicMock,
    ) -> None:
        await credential_store.upsert(make_credential(timedelta(hours=1)))
        token = await token_manager.get_valid_access_token(TEST_USER_ID)
        assert token == "access-old"
        oura_client.refresh_token.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_token_inside_buffer_is_refreshed(
        self,
        token_manager: TokenManager,
        credential_store: InMemoryCredentialStore,
        oura_client: MagicMock,
    ) -> None:
        # 60s left is inside the 90s buffer
        await credential_store.upsert(make_credential(timedelta(seconds=60)))
        token = await token_manager.get_valid_access_token(TEST_USER_ID)

        assert token == "access-new"
        oura_client.refresh_token.assert_awaited_once_with("refresh-old")
        stored = credential_store.rows[TEST_USER_ID]
        assert stored.refresh_token == "refresh-new"
        assert stored.expires_at == NOW + timedelta(seconds=3600)
        assert stored.granted_scope == "heartrate daily"


# ---------------------------------------------------------------------------
# Single-flight
# ---------------------------------------------------------------------------


class TestSingleFlightRefresh:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(
        self,
        token_manager: TokenManager,
        credential_store: InMemoryCredentialStore,
        oura_client: MagicMock,
    ) -> None:
        await credential_store.upsert(make_credential(timedelta(seconds=-10)))
        release = asyncio.Event()

        async def slow_refresh(refresh_token: str) -> OAuthTokens:
            await release.wait()
            return OAuthTokens(access_token="access-new", refresh_token="refresh-new")

        oura_client.refresh_token = AsyncMock(side_effect=slow_refresh)

        callers = [
            asyncio.create_task(token_manager.get_valid_access_token(TEST_USER_ID))
            for _ in range(5)
        ]
        await asyncio.sleep(0)
        assert TEST_USER_ID in token_manager.refreshes
        release.set()
        tokens = await asyncio.gather(*callers)

        assert tokens == ["access-new"] * 5
        assert oura_client.refresh_token.await_count == 1
        assert len(token_manager.refreshes) == 0

    @pytest.mark.asyncio
    async def test_registry_cleared_after_failure(
        self,
        token_manager: TokenManager,
        credential_store: InMemoryCredentialStore,
        oura_client: MagicMock,
    ) -> None:
        await credential_store.upsert(make_credential(timedelta(seconds=-10)))
        oura_client.refresh_token = AsyncMock(side_effect=VendorUnavailable("down", 503))

        for _ in range(2):
            with pytest.raises(VendorUnavailable):
                await token_manager.get_valid_access_token(TEST_USER_ID)

        # A settled failure does not block the next attempt
        assert oura_client.refresh_token.await_count == 2
        assert len(token_manager.refreshes) == 0
        assert TEST_USER_ID in credential_store.rows


class TestRefreshRegistry:
    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_shared_task(self) -> None:
        registry = RefreshRegistry()
        release = asyncio.Event()

        async def work() -> str:
            await release.wait()
            return "done"

        first = asyncio.create_task(registry.run("k", work))
        second = asyncio.create_task(registry.run("k", work))
        await asyncio.sleep(0)
        first.cancel()
        await asyncio.sleep(0)
        release.set()

        assert await second == "done"
        assert first.cancelled()
        assert "k" not in registry

    @pytest.mark.asyncio
    async def test_keys_are_independent(self) -> None:
        registry = RefreshRegistry()
        factory = AsyncMock(return_value="ok")

        results = await asyncio.gather(
            registry.run("a", factory), registry.run("b", factory)
        )
        assert results == ["ok", "ok"]
        assert factory.await_count == 2
        assert len(registry) == 0


# ---------------------------------------------------------------------------
# Rotation race and failures
# ---------------------------------------------------------------------------


class TestRefreshFailures:
    @pytest.mark.asyncio
    async def test_invalid_grant_with_fresh_stored_token_succeeds(
        self,
        token_manager: TokenManager,
        credential_store: InMemoryCredentialStore,
        oura_client: MagicMock,
    ) -> None:
        await credential_store.upsert(make_credential(timedelta(seconds=-10)))

        async def rotated_elsewhere(refresh_token: str) -> OAuthTokens:
            # Another process redeemed the refresh token first
            await credential_store.upsert(
                make_credential(timedelta(hours=1), access_token="access-rotated")
            )
            raise TokenGrantError(400, "invalid_grant")

        oura_client.refresh_token = AsyncMock(side_effect=rotated_elsewhere)

        token = await token_manager.get_valid_access_token(TEST_USER_ID)
        assert token == "access-rotated"

    @pytest.mark.asyncio
    async def test_invalid_grant_with_stale_stored_token_raises(
        self,
        token_manager: TokenManager,
        credential_store: InMemoryCredentialStore,
        oura_client: MagicMock,
    ) -> None:
        await credential_store.upsert(make_credential(timedelta(seconds=-10)))
        oura_client.refresh_token = AsyncMock(side_effect=TokenGrantError(400, "invalid_grant"))

        with pytest.raises(AuthExpired):
            await token_manager.get_valid_access_token(TEST_USER_ID)
        assert len(token_manager.refreshes) == 0

    @pytest.mark.asyncio
    async def test_other_grant_errors_raise_auth_expired(
        self,
        token_manager: TokenManager,
        credential_store: InMemoryCredentialStore,
        oura_client: MagicMock,
    ) -> None:
        await credential_store.upsert(make_credential(timedelta(seconds=-10)))
        oura_client.refresh_token = AsyncMock(side_effect=TokenGrantError(401, "invalid_client"))

        with pytest.raises(AuthExpired) as exc_info:
            await token_manager.get_valid_access_token(TEST_USER_ID)
        assert "refresh-old" not in str(exc_info.value)
        assert "access-old" not in str(exc_info.value)


# ---------------------------------------------------------------------------
# Code exchange, revocation, scope debug
# ---------------------------------------------------------------------------


class TestCredentialLifecycle:
    @pytest.mark.asyncio
    async def test_exchange_code_persists_envelope(
        self,
        token_manager: TokenManager,
        credential_store: InMemoryCredentialStore,
        oura_client: MagicMock,
    ) -> None:
        oura_client.exchange_code = AsyncMock(
            return_value=OAuthTokens(
                access_token="a1", refresh_token="r1", expires_in=86400, scope="daily heartrate"
            )
        )
        credential = await token_manager.exchange_code(TEST_USER_ID, "code-123")

        oura_client.exchange_code.assert_awaited_once_with("code-123")
        assert credential_store.rows[TEST_USER_ID] == credential
        assert credential.expires_at == NOW + timedelta(days=1)
        assert credential_store.upserts == 1

    @pytest.mark.asyncio
    async def test_revoke_deletes_credential(
        self, token_manager: TokenManager, credential_store: InMemoryCredentialStore
    ) -> None:
        await credential_store.upsert(make_credential(timedelta(hours=1)))
        await token_manager.revoke(TEST_USER_ID)
        assert await token_manager.get_valid_access_token(TEST_USER_ID) is None

    @pytest.mark.asyncio
    async def test_scope_debug_reports_missing_scopes_without_tokens(
        self, token_manager: TokenManager, credential_store: InMemoryCredentialStore
    ) -> None:
        credential = make_credential(timedelta(hours=1))
        credential.granted_scope = "heartrate,personal"
        await credential_store.upsert(credential)

        info = await token_manager.scope_debug(TEST_USER_ID)

        assert info["connected"] is True
        assert info["granted_scopes"] == ["heartrate", "personal"]
        assert info["missing_scopes"] == ["daily"]
        assert "access-old" not in str(info)
        assert "refresh-old" not in str(info)

    @pytest.mark.asyncio
    async def test_scope_debug_without_connection(self, token_manager: TokenManager) -> None:
        info = await token_manager.scope_debug(TEST_USER_ID)
        assert info["connected"] is False
        assert info["missing_scopes"] == ["heartrate", "daily"]

"""Oura Ring API v2 client.

Handles the OAuth2 authorization-code flow and paginated reads of the two
collections the focus integration needs.

Environment variables (via ``src.config.Settings``):
    OURA_CLIENT_ID      — OAuth2 client ID
    OURA_CLIENT_SECRET  — OAuth2 client secret
    OURA_REDIRECT_URI   — Registered callback URL

API base: https://api.ouraring.com

Endpoints used:
    /oauth/token                       — authorization_code and refresh_token grants
    /v2/usercollection/heartrate       — Continuous heart rate (start_datetime/end_datetime)
    /v2/usercollection/daily_stress    — Daily stress summary (start_date/end_date)
"""

from __future__ import annotations

import logging
from enum import Enum
from urllib.parse import urlencode

import httpx

from src.wearables.base import OAuthTokens
from src.wearables.errors import (
    ConfigurationError,
    RateLimited,
    TokenGrantError,
    VendorUnavailable,
)

logger = logging.getLogger("focusbeat.wearables.oura")

_OURA_API_BASE = "https://api.ouraring.com"
_OURA_TOKEN_URL = "https://api.ouraring.com/oauth/token"
_OURA_AUTH_URL = "https://cloud.ouraring.com/oauth/authorize"

#: Scopes requested at authorize time and checked by the debug endpoint.
REQUIRED_SCOPES: list[str] = ["heartrate", "daily"]


class CollectionKind(str, Enum):
    """Oura usercollection endpoints, with the query parameters each one takes."""

    HEART_RATE = "heartrate"
    DAILY_STRESS = "daily_stress"

    @property
    def path(self) -> str:
        return f"/v2/usercollection/{self.value}"

    @property
    def range_params(self) -> tuple[str, str]:
        if self is CollectionKind.HEART_RATE:
            return ("start_datetime", "end_datetime")
        return ("start_date", "end_date")


class OuraClient:
    """Thin async wrapper around the Oura token and collection endpoints.

    Every failure is translated into the integration's error taxonomy, and
    no message ever includes a token value.
    """

    def __init__(
        self,
        client_id: str = "",
        client_secret: str = "",
        redirect_uri: str = "",
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
    ) -> None:
        """Initialize the Oura client.

        Args:
            client_id:      OAuth2 client ID.
            client_secret:  OAuth2 client secret.
            redirect_uri:   Registered OAuth2 redirect URI.
            http_client:    Optional pre-configured httpx client (for testing).
            timeout:        Per-request timeout in seconds.
        """
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._http_client = http_client
        self._timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self._client_id and self._client_secret and self._redirect_uri)

    def _require_config(self) -> None:
        if not self.configured:
            raise ConfigurationError("Missing Oura OAuth configuration")

    # ------------------------------------------------------------------
    # OAuth2
    # ------------------------------------------------------------------

    def authorize_url(self, state: str) -> str:
        """Build the vendor consent URL carrying the CSRF ``state`` value."""
        self._require_config()
        params = {
            "response_type": "code",
            "client_id": self._client_id,
            "redirect_uri": self._redirect_uri,
            "scope": " ".join(sorted(REQUIRED_SCOPES)),
            "state": state,
        }
        return f"{_OURA_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, auth_code: str) -> OAuthTokens:
        """Exchange an authorization code for a token envelope."""
        return await self._token_request({
            "grant_type": "authorization_code",
            "code": auth_code,
            "redirect_uri": self._redirect_uri,
        })

    async def refresh_token(self, refresh_token: str) -> OAuthTokens:
        """Redeem a (one-time-use) refresh token for a new envelope."""
        return await self._token_request({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })

    async def _token_request(self, params: dict[str, str]) -> OAuthTokens:
        """POST a grant to the token endpoint with client credentials in the body.

        Raises:
            ConfigurationError: Client credentials are missing.
            TokenGrantError:    The endpoint answered 4xx.
            VendorUnavailable:  Transport error, 5xx, or a malformed envelope.
        """
        self._require_config()
        data = {
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            **params,
        }
        grant = params["grant_type"]

        try:
            response = await self._send("POST", _OURA_TOKEN_URL, data=data)
        except httpx.HTTPError as exc:
            raise VendorUnavailable(
                f"Oura token request ({grant}) failed: {type(exc).__name__}"
            ) from exc

        if 400 <= response.status_code < 500:
            error_code = _oauth_error_code(response)
            logger.warning(
                "Oura %s grant rejected: %s %s", grant, response.status_code, error_code
            )
            raise TokenGrantError(response.status_code, error_code)
        if response.status_code >= 500:
            raise VendorUnavailable(
                f"Oura token endpoint unavailable: {response.status_code}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
            return OAuthTokens(
                access_token=payload["access_token"],
                refresh_token=payload["refresh_token"],
                expires_in=int(payload.get("expires_in", 3600)),
                token_type=payload.get("token_type") or "Bearer",
                scope=payload.get("scope"),
            )
        except (ValueError, KeyError, TypeError) as exc:
            raise VendorUnavailable(f"Oura token response malformed ({grant})") from exc

    # ------------------------------------------------------------------
    # Collections
    # ------------------------------------------------------------------

    async def get_collection_page(
        self,
        kind: CollectionKind,
        access_token: str,
        start: str,
        end: str,
        next_token: str | None = None,
    ) -> tuple[list[dict], str | None]:
        """Fetch one page of a usercollection endpoint.

        Returns:
            ``(rows, next_token)``; ``next_token`` is None on the last page.

        Raises:
            RateLimited:       HTTP 429.
            VendorUnavailable: Any other failure.
        """
        start_key, end_key = kind.range_params
        params = {start_key: start, end_key: end}
        if next_token:
            params["next_token"] = next_token

        try:
            response = await self._send(
                "GET",
                f"{_OURA_API_BASE}{kind.path}",
                params=params,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            raise VendorUnavailable(
                f"Oura {kind.value} request failed: {type(exc).__name__}"
            ) from exc

        if response.status_code == 429:
            logger.info("Oura throttled %s (Retry-After=%s)", kind.value, response.headers.get("Retry-After"))
            raise RateLimited(
                f"Oura {kind.value} request rate limited",
                retry_after=parse_retry_after(response),
            )
        if response.status_code >= 400:
            raise VendorUnavailable(
                f"Oura collection request failed for {kind.path}: {response.status_code}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise VendorUnavailable(f"Oura {kind.value} response was not JSON") from exc

        rows = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(rows, list):
            rows = []
        token = payload.get("next_token") if isinstance(payload, dict) else None
        return [r for r in rows if isinstance(r, dict)], (token or None)

    # ------------------------------------------------------------------
    # Private HTTP helper
    # ------------------------------------------------------------------

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        if self._http_client:
            return await self._http_client.request(method, url, timeout=self._timeout, **kwargs)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.request(method, url, **kwargs)


def _oauth_error_code(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, dict):
        code = payload.get("error")
        return str(code) if code else None
    return None


def parse_retry_after(response: httpx.Response) -> float | None:
    """Seconds from a ``Retry-After`` header; HTTP-date values are ignored."""
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None

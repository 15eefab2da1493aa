"""Error taxonomy for the Oura integration.

None of these messages may carry an access or refresh token; callers build
them from status codes and vendor error codes only.
"""

from __future__ import annotations


class OuraError(Exception):
    """Base class for every wearable-integration failure."""


class ConfigurationError(OuraError):
    """Oura client credentials are not configured on this deployment."""


class AuthExpired(OuraError):
    """The stored credential can no longer be refreshed; the user must reconnect."""


class VendorUnavailable(OuraError):
    """A vendor request failed (transport error, 5xx, or unexpected payload)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimited(VendorUnavailable):
    """The vendor throttled us (HTTP 429)."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class TokenGrantError(OuraError):
    """The token endpoint rejected a grant.

    Attributes:
        status_code: HTTP status from the token endpoint.
        error_code:  OAuth ``error`` field (e.g. ``invalid_grant``), if any.
    """

    def __init__(self, status_code: int, error_code: str | None = None) -> None:
        super().__init__(
            f"Oura token request rejected: {status_code} {error_code or 'unknown_error'}"
        )
        self.status_code = status_code
        self.error_code = error_code

    @property
    def refresh_token_consumed(self) -> bool:
        """True when the vendor says the refresh token was already used or revoked."""
        return self.error_code == "invalid_grant"


class TelemetryValidationError(OuraError, ValueError):
    """A focus-telemetry submission is malformed or out of range."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = errors

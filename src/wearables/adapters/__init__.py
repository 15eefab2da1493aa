"""Wearable vendor adapters for Focusbeat.

The Oura client handles:
- OAuth2 authorize URL, code exchange and token refresh
- Paginated reads of the heart-rate and daily-stress usercollections
- Mapping vendor failures onto the integration's error taxonomy
"""

from src.wearables.adapters.oura import REQUIRED_SCOPES, CollectionKind, OuraClient

__all__ = [
    "CollectionKind",
    "OuraClient",
    "REQUIRED_SCOPES",
]

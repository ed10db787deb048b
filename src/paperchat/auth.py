"""
Credential refresh hook for providers whose tokens expire.
"""

from typing import Protocol


class CredentialManager(Protocol):
    async def ensure_token(self, force_refresh: bool = False) -> None:
        """Make sure a usable token is available, refreshing it if asked."""
        ...

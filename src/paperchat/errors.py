"""
Exception types shared across the chat engine.
"""

import re

# Provider error texts that indicate a rejected or expired credential
AUTH_ERROR_PATTERNS = [
    re.compile(r"API Error: 401"),
    re.compile(r"API Error: 403"),
    re.compile(r"\b401\b"),
    re.compile(r"Unauthorized", re.IGNORECASE),
    re.compile(r"Invalid API key", re.IGNORECASE),
    re.compile(r"authentication", re.IGNORECASE),
    re.compile(r"invalid_api_key"),
    re.compile(r"token (?:has )?expired", re.IGNORECASE),
    re.compile(r"invalid token", re.IGNORECASE),
]


class PaperChatError(Exception):
    """Base class for engine errors."""


class NoProvidersError(PaperChatError):
    """The fallback chain is empty."""

    def __init__(self, message: str = "No available providers configured"):
        super().__init__(message)


class AllProvidersFailedError(PaperChatError):
    """Every provider in the fallback chain raised."""

    def __init__(self, errors: list[tuple[str, Exception]]):
        self.errors = errors
        if errors:
            name, last = errors[-1]
            message = str(last) or f"{name} failed"
        else:
            message = "All providers failed"
        super().__init__(message)

    @property
    def last_error(self) -> Exception | None:
        return self.errors[-1][1] if self.errors else None


class ToolCallingUnsupportedError(PaperChatError):
    """Raised inside a tool-calling attempt when the provider cannot call tools."""

    def __init__(self, provider_name: str):
        self.provider_name = provider_name
        super().__init__(f"Provider {provider_name} does not support tool calling")


def is_auth_error(error: BaseException) -> bool:
    """Check whether an error looks like a 401/403 or token problem."""
    message = str(error)
    return any(pattern.search(message) for pattern in AUTH_ERROR_PATTERNS)


def error_message(error: BaseException) -> str:
    """User-facing text for an error."""
    return str(error) or error.__class__.__name__

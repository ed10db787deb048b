"""
User-facing strings.

Keyed lookups so a front end can swap the table for another locale.
"""

STRINGS: dict[str, dict[str, str]] = {
    "en": {
        "chat-error-no-provider": (
            "No AI provider is configured. Add an API key for at least one "
            "provider and try again."
        ),
        "tool-status-calling": "Calling...",
        "tool-status-done": "Done",
        "tool-status-error": "Failed",
        "notice-switched-paper": '--- Switched to paper: "{title}" ---',
        "notice-no-paper": "--- No paper selected ---",
        "notice-fallback": "⚠️ {from_provider} unavailable, switching to {to_provider}...",
        "loop-exhausted": (
            "I apologize, but I was unable to complete the request within the "
            "allowed number of iterations."
        ),
        "untitled": "Untitled",
    },
}

_locale = "en"


def set_locale(locale: str) -> None:
    """Select the string table. Unknown locales fall back to English."""
    global _locale
    _locale = locale if locale in STRINGS else "en"


def get_string(key: str, **kwargs: str) -> str:
    """Look up a string, formatting any ``{placeholders}``."""
    table = STRINGS.get(_locale, STRINGS["en"])
    template = table.get(key) or STRINGS["en"].get(key, key)
    return template.format(**kwargs) if kwargs else template

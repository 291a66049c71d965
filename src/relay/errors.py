"""Domain-specific exceptions for the call relay.

These exceptions are safe to import from API layers without pulling in network clients.
"""

from __future__ import annotations


class RelayError(Exception):
    status_code: int = 500
    default_detail: str = "Relay error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class MalformedMessageError(RelayError):
    """Raised at parse boundaries; callers log and drop the message."""

    default_detail = "Malformed message."


class TwilioNotConfiguredError(RelayError):
    status_code = 500
    default_detail = "Missing Twilio environment variables"

from __future__ import annotations

from typing import Any


class UpstreamError(Exception):
    """Base class for failures talking to a sports-data provider."""

    status_code = 502


class UpstreamUnavailableError(UpstreamError):
    """Transport-level failure: network error, timeout, non-2xx or unreadable body."""


class UpstreamLogicalError(UpstreamError):
    """HTTP 200 response whose payload carries a provider-side error."""

    def __init__(self, message: str, errors: Any = None) -> None:
        super().__init__(message)
        self.errors = errors


class UpstreamRateLimitError(UpstreamLogicalError):
    status_code = 429


class UnknownSportError(ValueError):
    status_code = 400


class MalformedFixtureError(ValueError):
    pass

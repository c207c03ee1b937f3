"""
Provider-independent error taxonomy.

Every connector translates its provider's HTTP codes and transport
failures into one of these before anything leaves the connector, so the
sync engine reasons about ``retryable`` and never about status codes.
"""

from __future__ import annotations

from typing import Optional


class EspError(Exception):
    """Base for all connector-surfaced failures."""

    retryable: bool = True

    def __init__(self, message: str, *, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class CredentialInvalid(EspError):
    """401/403: the API key or access token was rejected."""

    retryable = False


class RateLimited(EspError):
    """429: back off and retry."""

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, provider=provider)
        self.retry_after = retry_after


class ProviderServerError(EspError):
    """5xx, or any response we cannot make sense of."""


class RemoteNotFound(EspError):
    """404: a configured list no longer exists at the provider."""

    retryable = False


class NetworkError(EspError):
    """Timeouts, DNS failures, resets."""


def is_retryable(exc: BaseException) -> bool:
    """Unknown exceptions are retried; taxonomy errors say for themselves."""
    return bool(getattr(exc, "retryable", True))

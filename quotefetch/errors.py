"""
Error taxonomy for quotefetch.

Every error raised by the session manager, the acquisition strategies and the
fetch orchestrator derives from QuoteFetchError. The ``retryable`` flag is what
the session manager's retry loop looks at:

    retryable (resolved inside the session manager, up to the retry budget)
        TransientNetworkError   - connection reset, timeout, proxy hiccup
        RateLimitedError        - HTTP 429 (also switches cookie strategy)
        AuthExpiredError        - HTTP 401/403 (same strategy, new crumb)
        ConsentRequiredError    - redirected into the consent flow

    fatal (surfaced to the caller immediately)
        UpstreamUnavailableError - maintenance page detected
        MalformedCredentialError - crumb/cookie could not be obtained
        RequestFailedError       - any other 4xx/5xx or permanent transport error
        FetchCancelledError      - context cancelled or deadline passed
        DecodeError              - payload is not what the caller expected
        InvalidRequestError      - caller handed in bad parameters
        DownloadFailedError      - batch helper: some symbols failed
"""

from __future__ import annotations

from typing import Dict, Iterable, Optional


class QuoteFetchError(Exception):
    """Base class for all quotefetch errors."""

    retryable: bool = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__doc__ or self.__class__.__name__)
        self.message = message


class TransientNetworkError(QuoteFetchError):
    """Transport failure that is expected to go away on retry."""

    retryable = True

    def __init__(self, message: str = "", kind: Optional[str] = None):
        super().__init__(message)
        self.kind = kind


class RateLimitedError(QuoteFetchError):
    """Too Many Requests. Rate limited. Try after a while."""

    retryable = True

    def __init__(self, message: str = ""):
        super().__init__(message or "Too Many Requests. Rate limited. Try after a while.")


class AuthExpiredError(QuoteFetchError):
    """Cookie or crumb rejected by the API."""

    retryable = True

    def __init__(self, status: int, message: str = ""):
        super().__init__(message or f"authentication failed: {status}")
        self.status = status


class ConsentRequiredError(QuoteFetchError):
    """Request was redirected into the consent flow."""

    retryable = True


class UpstreamUnavailableError(QuoteFetchError):
    """*** YAHOO! FINANCE IS CURRENTLY DOWN! ***"""


class MalformedCredentialError(QuoteFetchError):
    """Cookie or crumb could not be obtained, or looked wrong."""


class RequestFailedError(QuoteFetchError):
    """Non-retryable HTTP or transport failure."""

    def __init__(self, message: str = "", status: Optional[int] = None):
        super().__init__(message or f"HTTP error: {status}")
        self.status = status


class FetchCancelledError(QuoteFetchError):
    """The fetch context was cancelled or its deadline passed."""


class DecodeError(QuoteFetchError):
    """Payload could not be decoded."""


class InvalidRequestError(QuoteFetchError):
    """Caller supplied an invalid request parameter."""


class DownloadFailedError(QuoteFetchError):
    """One or more symbols in a batch download failed."""

    def __init__(self, errors: Dict[str, Exception]):
        failed = sorted(errors)
        super().__init__(f"failed to download: {failed}")
        self.errors = dict(errors)

    @property
    def symbols(self) -> Iterable[str]:
        return sorted(self.errors)

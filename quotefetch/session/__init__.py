"""
Session Module: Authenticated Access to the Quote API

This module keeps a valid cookie + crumb pair and hides the provider's
anti-abuse behaviour (rate limiting, consent redirects, expired crumbs) behind
a single fetch call.

Components:
- Credentials / CredentialStore: cookie + crumb record and its 24h disk cache
- HttpFetcher: browser-like requests transport that never raises
- Strategies: BASIC (cookie endpoint) and CSRF (consent form) acquisition
- SessionManager: retry loop, strategy switching, single-flight acquisition

Design Philosophy:
1. One shared manager per process or batch, safe across threads
2. Retryable errors are resolved inside the manager, callers only see fatal ones
3. Invalid crumbs are never accepted, cached or reused
"""

from .credentials import (
    CookieStrategy,
    Credentials,
    CredentialStore,
    DiskCredentialStore,
    NullCredentialStore,
    is_valid_crumb,
    make_credential_store,
)
from .http_fetcher import HttpFetchResult, build_http_session, fetch_bytes
from .strategies import AcquisitionContext, BasicStrategy, CsrfStrategy, default_strategies
from .manager import FetchRequest, SessionManager

__all__ = [
    "CookieStrategy",
    "Credentials",
    "CredentialStore",
    "DiskCredentialStore",
    "NullCredentialStore",
    "is_valid_crumb",
    "make_credential_store",
    "HttpFetchResult",
    "build_http_session",
    "fetch_bytes",
    "AcquisitionContext",
    "BasicStrategy",
    "CsrfStrategy",
    "default_strategies",
    "FetchRequest",
    "SessionManager",
]

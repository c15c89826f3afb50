"""
quotefetch: Session-Managed Concurrent Quote Fetching

Keeps a valid cookie + crumb pair for the Yahoo Finance API, retries through
rate limits, consent redirects and expired crumbs, and downloads many symbols
concurrently over one shared session.

Components:
- SessionManager: authenticated fetch with retries and strategy switching
- FetchOrchestrator: batch download over worker threads
- SessionConfig / load_config: settings from code, .env and environment
- FetchContext: cancellation and deadline shared by a batch
- endpoints: chart/quote request templates and market suffix helpers
"""

from __future__ import annotations

from typing import Iterable, Mapping, Optional, Union
import logging
import threading

from .config import SessionConfig, TransportRetryPolicy, load_config
from .context import FetchContext
from .endpoints import history_template, quote_template, symbol_with_mic
from .errors import (
    AuthExpiredError,
    ConsentRequiredError,
    DecodeError,
    DownloadFailedError,
    FetchCancelledError,
    InvalidRequestError,
    MalformedCredentialError,
    QuoteFetchError,
    RateLimitedError,
    RequestFailedError,
    TransientNetworkError,
    UpstreamUnavailableError,
)
from .orchestrator import DownloadResult, FetchOrchestrator, SymbolPayload, normalize_symbols
from .session import CookieStrategy, Credentials, FetchRequest, SessionManager

__version__ = "0.1.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())

# Global session manager instance
_manager: Optional[SessionManager] = None
_manager_lock = threading.Lock()


def get_session_manager(config: Optional[SessionConfig] = None) -> SessionManager:
    """
    Get or create the process-wide session manager.

    Args:
        config: Used only when the manager is created; defaults to load_config()

    Returns:
        SessionManager instance
    """
    global _manager
    with _manager_lock:
        if _manager is None:
            _manager = SessionManager(config if config is not None else load_config())
        return _manager


def fetch(
    request: Union[FetchRequest, str],
    params: Optional[Mapping[str, str]] = None,
    ctx: Optional[FetchContext] = None,
) -> bytes:
    """Fetch a request (or a GET of an endpoint URL) with the default manager."""
    if isinstance(request, str):
        request = FetchRequest(endpoint=request, params=dict(params or {}))
    return get_session_manager().fetch(request, ctx)


def download(
    symbols: Union[str, Iterable[str]],
    template: Optional[FetchRequest] = None,
    workers: Optional[int] = None,
    ctx: Optional[FetchContext] = None,
) -> DownloadResult:
    """Batch download with the default manager; defaults to 1mo of daily bars."""
    orchestrator = FetchOrchestrator(session=get_session_manager())
    return orchestrator.download(symbols, template or history_template(), workers=workers, ctx=ctx)


__all__ = [
    "AuthExpiredError",
    "ConsentRequiredError",
    "CookieStrategy",
    "Credentials",
    "DecodeError",
    "DownloadFailedError",
    "DownloadResult",
    "FetchCancelledError",
    "FetchContext",
    "FetchOrchestrator",
    "FetchRequest",
    "InvalidRequestError",
    "MalformedCredentialError",
    "QuoteFetchError",
    "RateLimitedError",
    "RequestFailedError",
    "SessionConfig",
    "SessionManager",
    "SymbolPayload",
    "TransientNetworkError",
    "TransportRetryPolicy",
    "UpstreamUnavailableError",
    "download",
    "fetch",
    "get_session_manager",
    "history_template",
    "load_config",
    "normalize_symbols",
    "quote_template",
    "symbol_with_mic",
]

"""
Acquisition Strategies: How a Fresh Cookie + Crumb Pair Is Obtained

Two interchangeable procedures populate Credentials from scratch:

1. BASIC
   - GET the cookie endpoint, read the A3 cookie (response, then cookie jar)
   - GET the crumb endpoint on query1 and take the raw body as the crumb

2. CSRF (consent flow)
   - GET the consent page and scrape the csrfToken/sessionId hidden inputs
   - POST the consent form, then GET the copyConsent confirmation
   - GET the crumb endpoint on query2

Both raise QuoteFetchError subclasses. A 429 from a crumb endpoint is a
RateLimitedError (retryable), everything that yields no usable value is a
MalformedCredentialError. The session manager decides which strategy runs and
when to fall back to the other one.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol
import logging
import re

import requests

from ..context import FetchContext
from ..errors import (
    MalformedCredentialError,
    RateLimitedError,
    RequestFailedError,
    TransientNetworkError,
)
from .credentials import CookieStrategy, Credentials, is_valid_crumb
from .http_fetcher import HttpFetchResult, TRANSIENT_ERROR_KINDS, browser_headers

logger = logging.getLogger(__name__)

COOKIE_URL = "https://fc.yahoo.com"
CRUMB_URL_BASIC = "https://query1.finance.yahoo.com/v1/test/getcrumb"
CRUMB_URL_CSRF = "https://query2.finance.yahoo.com/v1/test/getcrumb"
CONSENT_URL = "https://guce.yahoo.com/consent"
COLLECT_CONSENT_URL = "https://consent.yahoo.com/v2/collectConsent"
COPY_CONSENT_URL = "https://guce.yahoo.com/copyConsent"

SESSION_COOKIE = "A3"
COOKIE_DOMAIN = "yahoo.com"


@dataclass
class AcquisitionContext:
    """
    Everything a strategy needs to talk to the provider.

    Attributes:
        send: Transport callable (method, url, **kwargs) -> HttpFetchResult,
              already bound to the shared HTTP session, proxy and timeout
        http: The shared requests.Session (its cookie jar is read)
        user_agent: User agent for browser headers
        session_id: Locally generated session id for the consent form
        fetch_ctx: Cancellation signal
        retry_all_transport: Treat every transport failure as transient
    """
    send: Callable[..., HttpFetchResult]
    http: requests.Session
    user_agent: str
    session_id: str
    fetch_ctx: FetchContext
    retry_all_transport: bool = False

    def get(self, url: str, **kwargs: Any) -> HttpFetchResult:
        self.fetch_ctx.raise_if_cancelled()
        result = self.send("GET", url, headers=browser_headers(self.user_agent), **kwargs)
        _raise_for_transport(result, url, self.retry_all_transport)
        return result

    def post_form(self, url: str, form: Dict[str, str], **kwargs: Any) -> HttpFetchResult:
        self.fetch_ctx.raise_if_cancelled()
        hdrs = browser_headers(self.user_agent)
        hdrs["Content-Type"] = "application/x-www-form-urlencoded"
        result = self.send("POST", url, headers=hdrs, data=form, **kwargs)
        _raise_for_transport(result, url, self.retry_all_transport)
        return result

    def jar_cookie(self, name: str, domain: str = COOKIE_DOMAIN) -> Optional[str]:
        """Look up ``name`` in the cookie jar for ``domain`` or any subdomain."""
        for cookie in self.http.cookies:
            cookie_domain = (cookie.domain or "").lstrip(".")
            if cookie.name == name and (cookie_domain == domain or cookie_domain.endswith("." + domain)):
                return cookie.value
        return None


class AcquisitionStrategy(Protocol):
    """Interface shared by the cookie strategies."""

    name: CookieStrategy

    def acquire(self, ctx: AcquisitionContext) -> Credentials:
        ...


class BasicStrategy:
    """Cookie endpoint + query1 crumb."""

    name = CookieStrategy.BASIC

    def acquire(self, ctx: AcquisitionContext) -> Credentials:
        logger.info("[CRUMB] Acquiring credentials (basic)")

        result = ctx.get(COOKIE_URL)
        cookie = result.cookies.get(SESSION_COOKIE) or ctx.jar_cookie(SESSION_COOKIE)
        if not cookie:
            raise MalformedCredentialError(f"{SESSION_COOKIE} cookie not set by {COOKIE_URL}")

        crumb = fetch_crumb(ctx, CRUMB_URL_BASIC)
        return Credentials(cookie=cookie, crumb=crumb, strategy=self.name)


class CsrfStrategy:
    """Consent form submission + query2 crumb."""

    name = CookieStrategy.CSRF

    def acquire(self, ctx: AcquisitionContext) -> Credentials:
        logger.info("[CRUMB] Acquiring credentials (csrf)")

        page = ctx.get(CONSENT_URL)
        html = page.text

        csrf_token = extract_input_value(html, "csrfToken")
        if not csrf_token:
            raise MalformedCredentialError("failed to find csrfToken")

        session_id = extract_input_value(html, "sessionId") or ctx.session_id

        form = {
            "agree": "agree",
            "consentUUID": "default",
            "sessionId": session_id,
            "csrfToken": csrf_token,
            "originalDoneUrl": "https://finance.yahoo.com/",
            "namespace": "yahoo",
        }
        ctx.post_form(COLLECT_CONSENT_URL, form, params={"sessionId": session_id})
        ctx.get(COPY_CONSENT_URL, params={"sessionId": session_id})

        crumb = fetch_crumb(ctx, CRUMB_URL_CSRF)
        cookie = ctx.jar_cookie(SESSION_COOKIE) or f"csrf:{session_id}"
        return Credentials(cookie=cookie, crumb=crumb, strategy=self.name)


def default_strategies() -> Dict[CookieStrategy, AcquisitionStrategy]:
    return {
        CookieStrategy.BASIC: BasicStrategy(),
        CookieStrategy.CSRF: CsrfStrategy(),
    }


def fetch_crumb(ctx: AcquisitionContext, url: str) -> str:
    """
    Read the crumb from ``url``.

    Raises:
        RateLimitedError: on HTTP 429
        MalformedCredentialError: if the body is not a usable crumb
    """
    result = ctx.get(url)
    if result.status == 429:
        logger.warning(f"[CRUMB] Rate limited by {url}")
        raise RateLimitedError()

    crumb = result.text.strip()
    if not result.ok or not is_valid_crumb(crumb):
        logger.warning(f"[CRUMB] Unusable crumb from {url} (HTTP {result.status})")
        raise MalformedCredentialError(f"failed to get crumb: HTTP {result.status}")
    return crumb


_INPUT_TAG = re.compile(r"<input\b[^>]*>", re.IGNORECASE)
_ATTR = re.compile(r"""(\w+)\s*=\s*(?:"([^"]*)"|'([^']*)')""")


def extract_input_value(html: str, name: str) -> Optional[str]:
    """Value of the first <input name="..."> in ``html``, or None."""
    for tag in _INPUT_TAG.findall(html):
        attrs = {m.group(1).lower(): m.group(2) if m.group(2) is not None else m.group(3)
                 for m in _ATTR.finditer(tag)}
        if attrs.get("name") == name:
            return attrs.get("value") or None
    return None


def _raise_for_transport(result: HttpFetchResult, url: str, retry_all: bool) -> None:
    if not result.transport_failed:
        return
    if retry_all or result.error_kind in TRANSIENT_ERROR_KINDS:
        raise TransientNetworkError(f"{url}: {result.error}", kind=result.error_kind)
    raise RequestFailedError(f"{url}: {result.error}")


__all__ = [
    "AcquisitionContext",
    "AcquisitionStrategy",
    "BasicStrategy",
    "CsrfStrategy",
    "default_strategies",
    "extract_input_value",
    "fetch_crumb",
]

"""
HTTP Fetcher: Browser-Like Transport for the Quote API

This module owns the single outbound HTTP path used by the session manager and
the acquisition strategies:

1. Browser fingerprint - a TLS adapter with a desktop-browser cipher order and
   HTTP/1.1-only ALPN, plus a fixed set of realistic browser headers
2. Proxy support - per-request proxy mapping resolved from configuration
3. Never raises for transport failures - every outcome is an HttpFetchResult,
   with ``error_kind`` telling the retry loop what went wrong

Classification of HTTP statuses happens in the session manager, not here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional
import logging
import random
import ssl

import requests
from requests.adapters import HTTPAdapter

logger = logging.getLogger(__name__)

# Current desktop browsers; one is picked per session
USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/133.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/133.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/133.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:135.0) Gecko/20100101 Firefox/135.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14.7; rv:135.0) Gecko/20100101 Firefox/135.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_7_4) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/18.3 Safari/605.1.15",
]

BROWSER_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,image/apng,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Accept-Encoding": "gzip, deflate",
    "Connection": "keep-alive",
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
    "Sec-Fetch-User": "?1",
    "Upgrade-Insecure-Requests": "1",
    "Cache-Control": "max-age=0",
}

# Cipher order of a current Chromium build (TLS 1.2 suites; 1.3 suites are fixed by OpenSSL)
BROWSER_CIPHERS = ":".join([
    "ECDHE-ECDSA-AES128-GCM-SHA256",
    "ECDHE-RSA-AES128-GCM-SHA256",
    "ECDHE-ECDSA-AES256-GCM-SHA384",
    "ECDHE-RSA-AES256-GCM-SHA384",
    "ECDHE-ECDSA-CHACHA20-POLY1305",
    "ECDHE-RSA-CHACHA20-POLY1305",
    "ECDHE-RSA-AES128-SHA",
    "ECDHE-RSA-AES256-SHA",
    "AES128-GCM-SHA256",
    "AES256-GCM-SHA384",
    "AES128-SHA",
    "AES256-SHA",
])

# error_kind values
ERROR_TIMEOUT = "timeout"
ERROR_CONNECTION = "connection"
ERROR_SSL = "ssl"
ERROR_PROXY = "proxy"
ERROR_INVALID = "invalid"
ERROR_OTHER = "other"

TRANSIENT_ERROR_KINDS = frozenset({ERROR_TIMEOUT, ERROR_CONNECTION, ERROR_SSL, ERROR_PROXY})


def random_user_agent() -> str:
    return random.choice(USER_AGENTS)


def browser_headers(user_agent: str, json_body: bool = False) -> Dict[str, str]:
    """Realistic browser headers for ``user_agent``."""
    hdrs = dict(BROWSER_HEADERS)
    hdrs["User-Agent"] = user_agent
    if json_body:
        hdrs["Content-Type"] = "application/json"
    return hdrs


class BrowserTLSAdapter(HTTPAdapter):
    """
    HTTPS adapter presenting a browser-like TLS ClientHello.

    Uses its own SSLContext for direct and proxied connections: browser cipher
    order, TLS 1.2 minimum and ALPN restricted to http/1.1.
    """

    def __init__(self, ciphers: str = BROWSER_CIPHERS, **kwargs):
        self._ciphers = ciphers
        super().__init__(**kwargs)

    def _ssl_context(self) -> ssl.SSLContext:
        ctx = ssl.create_default_context()
        ctx.minimum_version = ssl.TLSVersion.TLSv1_2
        ctx.set_ciphers(self._ciphers)
        ctx.set_alpn_protocols(["http/1.1"])
        return ctx

    def init_poolmanager(self, *args, **kwargs):
        kwargs["ssl_context"] = self._ssl_context()
        return super().init_poolmanager(*args, **kwargs)

    def proxy_manager_for(self, proxy, **proxy_kwargs):
        proxy_kwargs["ssl_context"] = self._ssl_context()
        return super().proxy_manager_for(proxy, **proxy_kwargs)


def build_http_session(pool_size: int = 10) -> requests.Session:
    """
    Create the requests.Session shared by one session manager.

    The session's cookie jar carries the provider cookies between the
    acquisition requests and the API calls. Environment proxy lookup is
    disabled because proxies are resolved from configuration per request.
    """
    http = requests.Session()
    http.trust_env = False
    http.mount("https://", BrowserTLSAdapter(pool_connections=pool_size, pool_maxsize=pool_size))
    http.mount("http://", HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size))
    return http


@dataclass(frozen=True)
class HttpFetchResult:
    """
    Result of an HTTP fetch operation.

    Attributes:
        ok: True if the request succeeded (2xx/3xx status)
        status: HTTP status code (0 when no response was received)
        headers: Response headers
        content: Response body as bytes
        cookies: Cookies set by this response
        error: Error message if the request failed
        error_kind: Transport failure category, None when a response arrived
        final_url: Final URL after redirects
    """
    ok: bool
    status: int
    headers: Dict[str, str]
    content: bytes
    cookies: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None
    error_kind: Optional[str] = None
    final_url: Optional[str] = None

    @property
    def transport_failed(self) -> bool:
        return self.error_kind is not None

    @property
    def content_type(self) -> Optional[str]:
        """Get the Content-Type header if present."""
        return self.headers.get("Content-Type") or self.headers.get("content-type")

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    @staticmethod
    def failure(error: str, kind: str) -> "HttpFetchResult":
        return HttpFetchResult(
            ok=False,
            status=0,
            headers={},
            content=b"",
            error=error,
            error_kind=kind,
        )


def fetch_bytes(
    http: requests.Session,
    method: str,
    url: str,
    *,
    params: Optional[Mapping[str, str]] = None,
    json_body: Any = None,
    data: Optional[Mapping[str, str]] = None,
    headers: Optional[Mapping[str, str]] = None,
    timeout_s: float = 30,
    proxies: Optional[Dict[str, str]] = None,
    allow_redirects: bool = True,
) -> HttpFetchResult:
    """
    Send one HTTP request and capture the outcome.

    Args:
        http: Session whose cookie jar and adapters are used
        method: HTTP method
        url: Absolute URL
        params: Query parameters
        json_body: JSON-serializable body
        data: Form body (application/x-www-form-urlencoded)
        headers: Request headers
        timeout_s: Connect/read timeout in seconds
        proxies: requests-style proxy mapping
        allow_redirects: Whether to follow redirects

    Returns:
        HttpFetchResult with response data or transport error information
    """
    logger.debug(f"[HTTP] {method} {url}")

    try:
        r = http.request(
            method,
            url,
            params=params,
            json=json_body,
            data=data,
            headers=dict(headers or {}),
            timeout=timeout_s,
            proxies=proxies,
            allow_redirects=allow_redirects,
        )

        result = HttpFetchResult(
            ok=bool(r.ok),
            status=int(r.status_code),
            headers={k: v for k, v in r.headers.items()},
            content=r.content or b"",
            cookies=_response_cookies(r),
            error=None if r.ok else f"HTTP {r.status_code}",
            final_url=r.url,
        )

        if result.ok:
            logger.debug(f"[HTTP] {result.status}, {len(result.content)} bytes")
        else:
            logger.debug(f"[HTTP] Failed: {result.status} - {url}")

        return result

    except requests.exceptions.ProxyError as e:
        logger.warning(f"[HTTP] Proxy error: {e}")
        return HttpFetchResult.failure(f"Proxy error: {e}", ERROR_PROXY)
    except requests.exceptions.SSLError as e:
        logger.warning(f"[HTTP] SSL error: {e}")
        return HttpFetchResult.failure(f"SSL error: {e}", ERROR_SSL)
    except requests.exceptions.Timeout:
        logger.warning(f"[HTTP] Timeout after {timeout_s}s: {url}")
        return HttpFetchResult.failure(f"Timeout after {timeout_s}s", ERROR_TIMEOUT)
    except (requests.exceptions.ConnectionError, requests.exceptions.ChunkedEncodingError) as e:
        logger.warning(f"[HTTP] Connection error: {e}")
        return HttpFetchResult.failure(f"Connection error: {e}", ERROR_CONNECTION)
    except (requests.exceptions.InvalidURL, requests.exceptions.MissingSchema,
            requests.exceptions.InvalidSchema, requests.exceptions.InvalidHeader,
            requests.exceptions.InvalidJSONError) as e:
        logger.error(f"[HTTP] Invalid request: {e}")
        return HttpFetchResult.failure(f"Invalid request: {e}", ERROR_INVALID)
    except requests.exceptions.RequestException as e:
        logger.error(f"[HTTP] Unexpected error: {e}")
        return HttpFetchResult.failure(str(e), ERROR_OTHER)


def _response_cookies(r: requests.Response) -> Dict[str, str]:
    """Cookies set on the final response and on any redirect hop."""
    cookies: Dict[str, str] = {}
    for hop in list(r.history) + [r]:
        for cookie in hop.cookies:
            if cookie.value is not None:
                cookies[cookie.name] = cookie.value
    return cookies

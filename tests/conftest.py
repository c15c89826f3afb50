import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from quotefetch.config import SessionConfig
from quotefetch.session.credentials import DiskCredentialStore
from quotefetch.session.http_fetcher import HttpFetchResult
from quotefetch.session.manager import SessionManager
from quotefetch.session.strategies import (
    COLLECT_CONSENT_URL,
    CONSENT_URL,
    COOKIE_URL,
    COPY_CONSENT_URL,
    CRUMB_URL_BASIC,
    CRUMB_URL_CSRF,
)

CHART_URL = "https://query2.finance.yahoo.com/v8/finance/chart/AAPL"

CONSENT_PAGE = (
    b'<html><body><form method="post">'
    b'<input type="hidden" name="csrfToken" value="tok-1">'
    b'<input type="hidden" name="sessionId" value="sess-1">'
    b'</form></body></html>'
)


def response(
    status: int = 200,
    body: bytes | str = b"",
    cookies: Optional[Dict[str, str]] = None,
    final_url: Optional[str] = None,
) -> HttpFetchResult:
    if isinstance(body, str):
        body = body.encode("utf-8")
    return HttpFetchResult(
        ok=status < 400,
        status=status,
        headers={"Content-Type": "application/json"},
        content=body,
        cookies=dict(cookies or {}),
        error=None if status < 400 else f"HTTP {status}",
        final_url=final_url,
    )


class FakeTransport:
    """
    Scripted stand-in for fetch_bytes.

    Each URL gets a list of results handed out in order; the last one repeats.
    A handler callable may be registered instead for dynamic behaviour.
    Unscripted URLs answer 404.
    """

    def __init__(self) -> None:
        self.routes: Dict[str, List[Any]] = {}
        self.calls: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def on(self, url: str, *results: Any) -> "FakeTransport":
        self.routes[url] = list(results)
        return self

    def calls_to(self, url: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [c for c in self.calls if c["url"] == url]

    def __call__(self, http, method, url, *, params=None, json_body=None, data=None,
                 headers=None, timeout_s=30, proxies=None, allow_redirects=True):
        call = {
            "method": method,
            "url": url,
            "params": dict(params or {}),
            "json_body": json_body,
            "data": dict(data or {}),
            "headers": dict(headers or {}),
            "timeout_s": timeout_s,
            "proxies": proxies,
        }
        with self._lock:
            self.calls.append(call)
            script = self.routes.get(url)
            if not script:
                return response(404, b"not found")
            item = script.pop(0) if len(script) > 1 else script[0]
        if callable(item):
            return item(call)
        return item


def script_basic(transport: FakeTransport, *crumbs: str) -> None:
    transport.on(COOKIE_URL, response(404, cookies={"A3": "a3-cookie"}))
    transport.on(CRUMB_URL_BASIC, *[response(200, c) for c in (crumbs or ("crumb-basic",))])


def script_csrf(transport: FakeTransport, *crumbs: str) -> None:
    transport.on(CONSENT_URL, response(200, CONSENT_PAGE))
    transport.on(COLLECT_CONSENT_URL, response(200, b"ok"))
    transport.on(COPY_CONSENT_URL, response(200, b"ok"))
    transport.on(CRUMB_URL_CSRF, *[response(200, c) for c in (crumbs or ("crumb-csrf",))])


@pytest.fixture(autouse=True)
def _no_proxy_env(monkeypatch: pytest.MonkeyPatch):
    for name in ("QUOTEFETCH_PROXY", "HTTPS_PROXY", "https_proxy", "HTTP_PROXY", "http_proxy"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def cache_dir(tmp_path: Path) -> Path:
    return tmp_path / "cache"


@pytest.fixture
def config(cache_dir: Path) -> SessionConfig:
    return SessionConfig(
        retries=3,
        timeout_s=5,
        backoff_base_s=0,
        backoff_cap_s=0,
        cache_dir=cache_dir,
        user_agent="quotefetch-test/1.0",
    )


@pytest.fixture
def store(cache_dir: Path) -> DiskCredentialStore:
    return DiskCredentialStore(cache_dir)


@pytest.fixture
def transport() -> FakeTransport:
    t = FakeTransport()
    script_basic(t)
    script_csrf(t)
    return t


@pytest.fixture
def make_manager(config: SessionConfig, store: DiskCredentialStore, transport: FakeTransport):
    managers: List[SessionManager] = []

    def factory(**kwargs: Any) -> SessionManager:
        kwargs.setdefault("store", store)
        kwargs.setdefault("transport", transport)
        manager = SessionManager(kwargs.pop("config", config), **kwargs)
        managers.append(manager)
        return manager

    yield factory
    for m in managers:
        m.close()

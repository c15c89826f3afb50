import threading
import time

import pytest

from conftest import CHART_URL, FakeTransport, response, script_basic
from quotefetch.config import TransportRetryPolicy
from quotefetch.context import FetchContext
from quotefetch.errors import (
    AuthExpiredError,
    ConsentRequiredError,
    DecodeError,
    FetchCancelledError,
    InvalidRequestError,
    MalformedCredentialError,
    RateLimitedError,
    RequestFailedError,
    TransientNetworkError,
    UpstreamUnavailableError,
)
from quotefetch.session.credentials import CookieStrategy, Credentials
from quotefetch.session.http_fetcher import HttpFetchResult
from quotefetch.session.manager import FetchRequest
from quotefetch.session.strategies import (
    CONSENT_URL,
    COOKIE_URL,
    CRUMB_URL_BASIC,
    CRUMB_URL_CSRF,
)

CONSENT_REDIRECT = "https://consent.yahoo.com/v2/collectConsent?sessionId=abc"


def test_success_adds_crumb_and_browser_headers(make_manager, transport: FakeTransport) -> None:
    transport.on(CHART_URL, response(200, b'{"chart": {}}'))
    manager = make_manager()

    body = manager.get(CHART_URL, params={"range": "1mo"})

    assert body == b'{"chart": {}}'
    call = transport.calls_to(CHART_URL)[0]
    assert call["params"] == {"range": "1mo", "crumb": "crumb-basic"}
    assert call["headers"]["User-Agent"] == "quotefetch-test/1.0"
    assert call["headers"]["Accept-Language"].startswith("en-US")
    assert manager.strategy is CookieStrategy.BASIC


def test_rate_limited_twice_switches_strategy_exactly_once(make_manager, transport: FakeTransport) -> None:
    transport.on(CHART_URL, response(429), response(429), response(200, b"ok"))
    manager = make_manager()

    assert manager.get(CHART_URL) == b"ok"

    assert manager.strategy is CookieStrategy.CSRF
    assert len(transport.calls_to(CRUMB_URL_BASIC)) == 1
    # second 429 re-acquires with the same (csrf) strategy
    assert len(transport.calls_to(CRUMB_URL_CSRF)) == 2
    assert transport.calls_to(CHART_URL)[-1]["params"]["crumb"] == "crumb-csrf"


def test_rate_limited_exhausts_budget(make_manager, transport: FakeTransport) -> None:
    transport.on(CHART_URL, response(429))
    manager = make_manager()

    with pytest.raises(RateLimitedError):
        manager.get(CHART_URL)

    assert len(transport.calls_to(CHART_URL)) == 4


def test_consent_redirect_forever_stays_within_budget(make_manager, transport: FakeTransport) -> None:
    transport.on(CHART_URL, response(200, b"<html>consent</html>", final_url=CONSENT_REDIRECT))
    manager = make_manager()

    with pytest.raises(ConsentRequiredError):
        manager.get(CHART_URL)

    assert len(transport.calls_to(CHART_URL)) == 4
    assert manager.strategy is CookieStrategy.CSRF


def test_auth_expired_refreshes_crumb_keeping_strategy(make_manager, transport: FakeTransport) -> None:
    script_basic(transport, "crumb-1", "crumb-2")
    transport.on(CHART_URL, response(401), response(200, b"ok"))
    manager = make_manager()

    assert manager.get(CHART_URL) == b"ok"

    crumbs = [c["params"]["crumb"] for c in transport.calls_to(CHART_URL)]
    assert crumbs == ["crumb-1", "crumb-2"]
    assert manager.strategy is CookieStrategy.BASIC


def test_other_http_error_is_fatal(make_manager, transport: FakeTransport) -> None:
    transport.on(CHART_URL, response(404, b"Not Found"))
    manager = make_manager()

    with pytest.raises(RequestFailedError) as excinfo:
        manager.get(CHART_URL)

    assert excinfo.value.status == 404
    assert len(transport.calls_to(CHART_URL)) == 1


def test_maintenance_page_is_fatal(make_manager, transport: FakeTransport) -> None:
    transport.on(CHART_URL, response(200, b"<html><h1>Will be right back...</h1></html>"))
    manager = make_manager()

    with pytest.raises(UpstreamUnavailableError):
        manager.get(CHART_URL)

    assert len(transport.calls_to(CHART_URL)) == 1


def test_transient_transport_error_is_retried(make_manager, transport: FakeTransport) -> None:
    transport.on(CHART_URL, HttpFetchResult.failure("Timeout after 5s", "timeout"), response(200, b"ok"))
    manager = make_manager()

    assert manager.get(CHART_URL) == b"ok"
    assert len(transport.calls_to(CHART_URL)) == 2


def test_invalid_request_transport_error_is_fatal_by_default(make_manager, transport: FakeTransport) -> None:
    transport.on(CHART_URL, HttpFetchResult.failure("Invalid request: bad url", "invalid"))
    manager = make_manager()

    with pytest.raises(RequestFailedError):
        manager.get(CHART_URL)

    assert len(transport.calls_to(CHART_URL)) == 1


def test_retry_all_policy_retries_every_transport_error(make_manager, transport: FakeTransport, config) -> None:
    config.transport_retry = TransportRetryPolicy.ALL
    transport.on(CHART_URL, HttpFetchResult.failure("Invalid request: bad url", "invalid"))
    manager = make_manager()

    with pytest.raises(TransientNetworkError):
        manager.get(CHART_URL)

    assert len(transport.calls_to(CHART_URL)) == 4


def test_config_changes_apply_to_next_request(make_manager, transport: FakeTransport, config, monkeypatch) -> None:
    transport.on(CHART_URL, response(200, b"ok"))
    config.proxy = "http://proxy-a:3128"
    manager = make_manager()

    manager.get(CHART_URL)
    assert transport.calls_to(CHART_URL)[-1]["proxies"] == {
        "http": "http://proxy-a:3128",
        "https": "http://proxy-a:3128",
    }

    config.proxy = None
    monkeypatch.setenv("HTTP_PROXY", "http://proxy-http:8080")
    monkeypatch.setenv("HTTPS_PROXY", "http://proxy-https:8080")
    config.timeout_s = 2.5
    manager.get(CHART_URL)

    last = transport.calls_to(CHART_URL)[-1]
    assert last["proxies"]["https"] == "http://proxy-https:8080"
    assert last["timeout_s"] == pytest.approx(2.5)


def test_retries_zero_means_single_attempt(make_manager, transport: FakeTransport, config) -> None:
    config.retries = 0
    transport.on(CHART_URL, response(401))
    manager = make_manager()

    with pytest.raises(AuthExpiredError):
        manager.get(CHART_URL)

    assert len(transport.calls_to(CHART_URL)) == 1


def test_cached_credentials_are_used_at_start(make_manager, transport: FakeTransport, store) -> None:
    assert store.save(Credentials(cookie="cached-a3", crumb="cached-crumb", strategy=CookieStrategy.CSRF))
    transport.on(CHART_URL, response(200, b"ok"))

    manager = make_manager()

    assert manager.strategy is CookieStrategy.CSRF
    assert manager.get(CHART_URL) == b"ok"
    assert transport.calls_to(CHART_URL)[0]["params"]["crumb"] == "cached-crumb"
    assert transport.calls_to(COOKIE_URL) == []
    assert transport.calls_to(CONSENT_URL) == []


def test_acquired_credentials_are_persisted(make_manager, transport: FakeTransport, store) -> None:
    transport.on(CHART_URL, response(200, b"ok"))
    manager = make_manager()

    manager.get(CHART_URL)

    cached = store.load()
    assert cached is not None
    assert cached.crumb == "crumb-basic"
    assert cached.cookie == "a3-cookie"


def test_falls_back_to_other_strategy_when_first_fails(make_manager, transport: FakeTransport, store) -> None:
    transport.on(CRUMB_URL_BASIC, response(200, b"<html>Yahoo error</html>"))
    transport.on(CHART_URL, response(200, b"ok"))
    manager = make_manager()

    assert manager.get(CHART_URL) == b"ok"
    assert manager.strategy is CookieStrategy.CSRF
    assert store.load().crumb == "crumb-csrf"


def test_both_strategies_failing_is_fatal_and_nothing_is_cached(make_manager, transport: FakeTransport, store) -> None:
    transport.on(CRUMB_URL_BASIC, response(200, b"<!DOCTYPE html><html></html>"))
    transport.on(CRUMB_URL_CSRF, response(200, b"Too Many Requests"))
    transport.on(CHART_URL, response(200, b"ok"))
    manager = make_manager()

    with pytest.raises(MalformedCredentialError):
        manager.get(CHART_URL)

    assert manager.credentials is None
    assert store.load() is None
    assert transport.calls_to(CHART_URL) == []


def test_get_json_decodes_and_raises_decode_error(make_manager, transport: FakeTransport) -> None:
    transport.on(CHART_URL, response(200, b'{"a": 1}'), response(200, b"not json"))
    manager = make_manager()

    assert manager.get_json(CHART_URL) == {"a": 1}
    with pytest.raises(DecodeError):
        manager.get_json(CHART_URL)


def test_post_sends_json_body(make_manager, transport: FakeTransport) -> None:
    transport.on(CHART_URL, response(200, b"ok"))
    manager = make_manager()

    manager.post(CHART_URL, json_body={"symbols": ["AAPL"]})

    call = transport.calls_to(CHART_URL)[0]
    assert call["method"] == "POST"
    assert call["json_body"] == {"symbols": ["AAPL"]}
    assert call["headers"]["Content-Type"] == "application/json"


def test_unfilled_template_is_rejected(make_manager) -> None:
    manager = make_manager()
    template = FetchRequest(endpoint="https://query2.finance.yahoo.com/v8/finance/chart/{symbol}")

    with pytest.raises(InvalidRequestError):
        manager.fetch(template)


def test_cancelled_context_fails_fast(make_manager, transport: FakeTransport) -> None:
    transport.on(CHART_URL, response(200, b"ok"))
    manager = make_manager()
    ctx = FetchContext.background()
    ctx.cancel()

    with pytest.raises(FetchCancelledError):
        manager.get(CHART_URL, ctx=ctx)

    assert transport.calls_to(CHART_URL) == []


def test_backoff_wait_is_interrupted_by_deadline(make_manager, transport: FakeTransport, config) -> None:
    config.backoff_base_s = 10
    config.backoff_cap_s = 10
    transport.on(CHART_URL, response(429))
    manager = make_manager()

    started = time.monotonic()
    with pytest.raises(FetchCancelledError):
        manager.get(CHART_URL, ctx=FetchContext.with_timeout(0.2))

    assert time.monotonic() - started < 5


def test_stale_invalidation_keeps_fresh_credentials(make_manager, transport: FakeTransport) -> None:
    transport.on(CHART_URL, response(200, b"ok"))
    manager = make_manager()
    manager.get(CHART_URL)
    stale_epoch = manager._epoch
    manager.reset_crumb()
    manager.get(CHART_URL)
    fresh = manager.credentials

    assert manager._invalidate(stale_epoch, toggle=True) is False
    assert manager.credentials is fresh
    assert manager.strategy is CookieStrategy.BASIC


def test_reset_and_clear_cache(make_manager, transport: FakeTransport, store) -> None:
    transport.on(CHART_URL, response(200, b"ok"))
    manager = make_manager()
    manager.get(CHART_URL)
    assert manager.credentials is not None

    manager.reset_crumb()
    assert manager.credentials is None
    assert store.load() is not None

    manager.clear_cache()
    assert store.load() is None


def test_concurrent_requests_share_one_acquisition(make_manager, transport: FakeTransport) -> None:
    active = 0
    peak = 0
    gate = threading.Lock()

    def slow_cookie(call):
        nonlocal active, peak
        with gate:
            active += 1
            peak = max(peak, active)
        time.sleep(0.05)
        with gate:
            active -= 1
        return response(404, cookies={"A3": "a3-cookie"})

    transport.on(COOKIE_URL, slow_cookie)
    transport.on(CHART_URL, response(200, b"ok"))
    manager = make_manager()

    results = []

    def run():
        results.append(manager.get(CHART_URL))

    threads = [threading.Thread(target=run) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results == [b"ok"] * 8
    assert peak == 1
    assert len(transport.calls_to(COOKIE_URL)) == 1


def test_user_agent_and_session_id(make_manager, transport: FakeTransport) -> None:
    transport.on(CHART_URL, response(200, b"ok"))
    manager = make_manager()

    manager.set_user_agent("custom-agent")
    manager.get(CHART_URL)

    assert manager.user_agent == "custom-agent"
    assert transport.calls_to(CHART_URL)[0]["headers"]["User-Agent"] == "custom-agent"
    assert len(manager.session_id) == 16
    int(manager.session_id, 16)


def test_cancel_during_request_stops_further_attempts(make_manager, transport: FakeTransport) -> None:
    ctx = FetchContext.background()

    def cancel_then_rate_limit(call):
        ctx.cancel()
        return response(429)

    transport.on(CHART_URL, cancel_then_rate_limit)
    manager = make_manager()

    with pytest.raises(FetchCancelledError):
        manager.get(CHART_URL, ctx=ctx)

    assert len(transport.calls_to(CHART_URL)) == 1


def test_cancel_does_not_clip_in_flight_timeout() -> None:
    ctx = FetchContext.background()
    ctx.cancel()

    assert ctx.bound_timeout(30) == 30

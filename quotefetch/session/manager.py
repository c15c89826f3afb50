"""
Session Manager: Credentials, Retries and Strategy Switching

Every API call goes through SessionManager.fetch(). One request walks this
state machine:

    Dispatch -> Classify -> Done
                         -> RetryWait -> Dispatch
                         -> SwitchStrategy -> Dispatch
                         -> Fail

1. Dispatch
   - Make sure credentials exist (at most one acquisition in flight, other
     callers wait for its result)
   - Add crumb=<crumb> to the query, send with browser headers, the session
     user agent, the configured timeout and the resolved proxy

2. Classify (first match wins)
   - transport failure      -> TransientNetworkError or fatal RequestFailedError
   - HTTP 429               -> RateLimitedError, backoff, toggle basic <-> csrf
   - consent.yahoo.com host -> ConsentRequiredError, no backoff, force csrf
   - HTTP 401/403           -> AuthExpiredError, no backoff, same strategy
   - other HTTP >= 400      -> RequestFailedError (fatal)
   - maintenance page       -> UpstreamUnavailableError (fatal)

Every attempt consumes retry budget. The shared state is guarded by one lock
which is never held across network I/O.
"""

from __future__ import annotations

from concurrent.futures import Future, wait as wait_futures
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union
from urllib.parse import urlparse
import json
import logging
import secrets
import threading

from ..config import SessionConfig, TransportRetryPolicy
from ..context import FetchContext
from ..errors import (
    AuthExpiredError,
    ConsentRequiredError,
    DecodeError,
    FetchCancelledError,
    InvalidRequestError,
    QuoteFetchError,
    RateLimitedError,
    RequestFailedError,
    TransientNetworkError,
    UpstreamUnavailableError,
)
from .credentials import CookieStrategy, CredentialStore, Credentials, make_credential_store
from .http_fetcher import (
    HttpFetchResult,
    TRANSIENT_ERROR_KINDS,
    browser_headers,
    build_http_session,
    fetch_bytes,
    random_user_agent,
)
from .strategies import (
    COOKIE_DOMAIN,
    SESSION_COOKIE,
    AcquisitionContext,
    AcquisitionStrategy,
    default_strategies,
)

logger = logging.getLogger(__name__)

CONSENT_HOST = "consent.yahoo.com"
MAINTENANCE_MARKER = b"Will be right back"

# interval at which waiters on an in-flight acquisition re-check cancellation
_ACQUIRE_POLL_S = 0.05

Transport = Callable[..., HttpFetchResult]


@dataclass(frozen=True)
class FetchRequest:
    """
    One API call, minus the crumb.

    Attributes:
        endpoint: Absolute URL, may contain a {symbol} placeholder
        params: Query parameters, values may contain {symbol}
        method: HTTP method
        json_body: Optional JSON body
    """
    endpoint: str
    params: Mapping[str, str] = field(default_factory=dict)
    method: str = "GET"
    json_body: Any = None

    @property
    def is_template(self) -> bool:
        return "{symbol}" in self.endpoint or any(
            isinstance(v, str) and "{symbol}" in v for v in self.params.values()
        )

    def for_symbol(self, symbol: str) -> "FetchRequest":
        """Concrete request with every {symbol} placeholder filled in."""
        return FetchRequest(
            endpoint=self.endpoint.replace("{symbol}", symbol),
            params={
                k: v.replace("{symbol}", symbol) if isinstance(v, str) else v
                for k, v in self.params.items()
            },
            method=self.method,
            json_body=self.json_body,
        )


@dataclass(frozen=True)
class Success:
    result: HttpFetchResult


@dataclass(frozen=True)
class Retryable:
    error: QuoteFetchError
    backoff: float = 0.0


@dataclass(frozen=True)
class Fatal:
    error: QuoteFetchError


Outcome = Union[Success, Retryable, Fatal]


@dataclass
class _RequestState:
    toggled: bool = False


class SessionManager:
    """
    Owns the cookie/crumb pair and the retry loop for every API call.

    Safe to share between threads; the orchestrator hands one manager to all
    of its workers.

    Usage:
        with SessionManager(load_config()) as manager:
            body = manager.get("https://query2.finance.yahoo.com/v8/finance/chart/AAPL",
                               params={"range": "1mo", "interval": "1d"})
    """

    def __init__(
        self,
        config: Optional[SessionConfig] = None,
        store: Optional[CredentialStore] = None,
        transport: Transport = fetch_bytes,
        strategies: Optional[Dict[CookieStrategy, AcquisitionStrategy]] = None,
    ):
        """
        Initialize the session manager.

        Args:
            config: Settings, read again on every request
            store: Credential persistence (default: disk cache in the user cache dir)
            transport: Callable with the fetch_bytes signature
            strategies: Acquisition strategy per CookieStrategy
        """
        self.config = config if config is not None else SessionConfig()
        self.store = store if store is not None else make_credential_store(self.config.resolved_cache_dir())
        self._transport = transport
        self._strategies = strategies or default_strategies()
        self._http = build_http_session()

        self._lock = threading.Lock()
        self._credentials: Optional[Credentials] = None
        self._strategy = CookieStrategy.BASIC
        # bumped on every install or invalidation of credentials
        self._epoch = 0
        self._inflight: Optional[Future] = None
        self._user_agent = self.config.user_agent or random_user_agent()
        self._session_id = secrets.token_hex(8)

        cached = self.store.load()
        if cached is not None:
            self._install(cached)
            self._set_jar_cookie(cached)

        logger.info(
            f"[SESSION] Initialized (strategy={self._strategy.value}, "
            f"cached_credentials={'yes' if cached else 'no'})"
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def strategy(self) -> CookieStrategy:
        with self._lock:
            return self._strategy

    @property
    def user_agent(self) -> str:
        with self._lock:
            return self._user_agent

    @property
    def credentials(self) -> Optional[Credentials]:
        with self._lock:
            return self._credentials

    @property
    def session_id(self) -> str:
        return self._session_id

    def set_user_agent(self, user_agent: str) -> None:
        with self._lock:
            self._user_agent = user_agent

    def reset_crumb(self) -> None:
        """Forget the in-memory credentials; the next request acquires new ones."""
        with self._lock:
            self._credentials = None
            self._epoch += 1
        logger.info("[SESSION] Credentials reset")

    def clear_cache(self) -> None:
        """Forget the in-memory credentials and delete the persisted ones."""
        self.reset_crumb()
        self.store.clear()

    def fetch(self, request: FetchRequest, ctx: Optional[FetchContext] = None) -> bytes:
        """
        Perform an authenticated request and return the raw body.

        Raises:
            QuoteFetchError: a fatal error, or the last retryable error once
                             the retry budget is spent
        """
        return self.fetch_response(request, ctx).content

    def fetch_response(self, request: FetchRequest, ctx: Optional[FetchContext] = None) -> HttpFetchResult:
        """Like fetch() but returns the full HttpFetchResult."""
        if request.is_template:
            raise InvalidRequestError(f"unfilled {{symbol}} placeholder in request: {request.endpoint}")

        ctx = ctx or FetchContext.background()
        state = _RequestState()
        attempt = 0

        while True:
            ctx.raise_if_cancelled()
            outcome = self._attempt(request, ctx, attempt, state)

            if isinstance(outcome, Success):
                return outcome.result
            if isinstance(outcome, Fatal):
                raise outcome.error

            retries = self.config.retries
            if attempt >= retries:
                logger.warning(f"[SESSION] Giving up after {attempt + 1} attempts: {outcome.error}")
                raise outcome.error

            logger.info(
                f"[SESSION] Retry {attempt + 1}/{retries} after "
                f"{type(outcome.error).__name__} (wait {outcome.backoff:.2f}s)"
            )
            if outcome.backoff > 0 and not ctx.wait(outcome.backoff):
                raise FetchCancelledError("cancelled during backoff")
            attempt += 1

    def get(
        self,
        endpoint: str,
        params: Optional[Mapping[str, str]] = None,
        ctx: Optional[FetchContext] = None,
    ) -> bytes:
        return self.fetch(FetchRequest(endpoint=endpoint, params=dict(params or {})), ctx)

    def post(
        self,
        endpoint: str,
        params: Optional[Mapping[str, str]] = None,
        json_body: Any = None,
        ctx: Optional[FetchContext] = None,
    ) -> bytes:
        request = FetchRequest(endpoint=endpoint, params=dict(params or {}), method="POST", json_body=json_body)
        return self.fetch(request, ctx)

    def get_json(
        self,
        endpoint: str,
        params: Optional[Mapping[str, str]] = None,
        ctx: Optional[FetchContext] = None,
    ) -> Any:
        """
        GET ``endpoint`` and decode the body as JSON.

        Raises:
            DecodeError: if the body is not valid JSON
        """
        body = self.get(endpoint, params, ctx)
        try:
            return json.loads(body)
        except ValueError as e:
            raise DecodeError(f"invalid JSON from {endpoint}: {e}") from e

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "SessionManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Dispatch and classification
    # ------------------------------------------------------------------

    def _attempt(self, request: FetchRequest, ctx: FetchContext, attempt: int, state: _RequestState) -> Outcome:
        with self._lock:
            epoch = self._epoch

        try:
            credentials, epoch = self._ensure_credentials(ctx)
        except RateLimitedError as e:
            return self._rate_limited(e, epoch, attempt, state)
        except QuoteFetchError as e:
            if e.retryable:
                return Retryable(e, self.config.backoff_delay(attempt))
            return Fatal(e)

        params = dict(request.params)
        params["crumb"] = credentials.crumb

        config = self.config
        result = self._transport(
            self._http,
            request.method,
            request.endpoint,
            params=params,
            json_body=request.json_body,
            headers=browser_headers(self.user_agent, json_body=request.json_body is not None),
            timeout_s=ctx.bound_timeout(config.timeout_s),
            proxies=config.proxies(),
        )
        return self._classify(result, request, ctx, epoch, attempt, state)

    def _classify(
        self,
        result: HttpFetchResult,
        request: FetchRequest,
        ctx: FetchContext,
        epoch: int,
        attempt: int,
        state: _RequestState,
    ) -> Outcome:
        config = self.config

        if result.transport_failed:
            if ctx.cancelled:
                return Fatal(FetchCancelledError(f"cancelled: {result.error}"))
            if config.transport_retry is TransportRetryPolicy.ALL or result.error_kind in TRANSIENT_ERROR_KINDS:
                return Retryable(
                    TransientNetworkError(result.error or "transport error", kind=result.error_kind),
                    config.backoff_delay(attempt),
                )
            return Fatal(RequestFailedError(result.error or "transport error"))

        if result.status == 429:
            return self._rate_limited(RateLimitedError(), epoch, attempt, state)

        if _is_consent_url(result.final_url):
            logger.info("[SESSION] Redirected to consent page, forcing csrf strategy")
            self._invalidate(epoch, force=CookieStrategy.CSRF)
            return Retryable(ConsentRequiredError(f"consent required for {request.endpoint}"))

        if result.status in (401, 403):
            logger.info(f"[SESSION] HTTP {result.status}, refreshing crumb")
            self._invalidate(epoch)
            return Retryable(AuthExpiredError(result.status))

        if result.status >= 400:
            return Fatal(RequestFailedError(f"HTTP error: {result.status}", status=result.status))

        if MAINTENANCE_MARKER in result.content:
            logger.error("[SESSION] Upstream maintenance page detected")
            return Fatal(UpstreamUnavailableError())

        return Success(result)

    def _rate_limited(self, error: RateLimitedError, epoch: int, attempt: int, state: _RequestState) -> Outcome:
        toggle = not state.toggled
        if self._invalidate(epoch, toggle=toggle) and toggle:
            logger.warning(f"[SESSION] Rate limited, switching strategy to {self.strategy.value}")
        state.toggled = True
        return Retryable(error, self.config.backoff_delay(attempt))

    def _invalidate(
        self,
        epoch: int,
        toggle: bool = False,
        force: Optional[CookieStrategy] = None,
    ) -> bool:
        """
        Drop the credentials observed at ``epoch``.

        No-op when the credentials were replaced in the meantime, so a stale
        response never wipes a freshly acquired pair.

        Returns:
            True if the state was changed
        """
        with self._lock:
            if epoch != self._epoch:
                return False
            self._credentials = None
            self._epoch += 1
            if force is not None:
                self._strategy = force
            elif toggle:
                self._strategy = self._strategy.other()
            return True

    # ------------------------------------------------------------------
    # Credential acquisition
    # ------------------------------------------------------------------

    def _ensure_credentials(self, ctx: FetchContext) -> Tuple[Credentials, int]:
        """
        Return current credentials, acquiring them if needed.

        Only one caller acquires at a time; the others wait on its future and
        share its result or error.
        """
        while True:
            ctx.raise_if_cancelled()

            with self._lock:
                if self._credentials is not None:
                    return self._credentials, self._epoch
                future = self._inflight
                leader = future is None
                if leader:
                    future = Future()
                    self._inflight = future
                    strategy = self._strategy

            if leader:
                return self._lead_acquisition(future, strategy, ctx)

            while not future.done():
                if ctx.cancelled:
                    raise FetchCancelledError("cancelled while waiting for credentials")
                wait_futures([future], timeout=_ACQUIRE_POLL_S)

            error = future.exception()
            if error is not None and not isinstance(error, FetchCancelledError):
                raise error
            # leader succeeded or was cancelled on its own context: look again

    def _lead_acquisition(
        self,
        future: Future,
        strategy: CookieStrategy,
        ctx: FetchContext,
    ) -> Tuple[Credentials, int]:
        try:
            credentials = self._acquire(strategy, ctx)
        except BaseException as e:
            with self._lock:
                self._inflight = None
            future.set_exception(e)
            raise

        with self._lock:
            self._install(credentials)
            self._inflight = None
            epoch = self._epoch
        future.set_result(credentials)

        self.store.save(credentials)
        return credentials, epoch

    def _acquire(self, strategy: CookieStrategy, ctx: FetchContext) -> Credentials:
        """Run ``strategy``, falling back to the other one once."""
        try:
            return self._run_strategy(strategy, ctx)
        except (RateLimitedError, FetchCancelledError):
            raise
        except QuoteFetchError as e:
            other = strategy.other()
            logger.warning(f"[CRUMB] {strategy.value} strategy failed ({e}), trying {other.value}")
            return self._run_strategy(other, ctx)

    def _run_strategy(self, strategy: CookieStrategy, ctx: FetchContext) -> Credentials:
        config = self.config

        def send(method: str, url: str, **kwargs: Any) -> HttpFetchResult:
            return self._transport(
                self._http,
                method,
                url,
                timeout_s=ctx.bound_timeout(config.timeout_s),
                proxies=config.proxies(),
                **kwargs,
            )

        acquisition = AcquisitionContext(
            send=send,
            http=self._http,
            user_agent=self.user_agent,
            session_id=self._session_id,
            fetch_ctx=ctx,
            retry_all_transport=config.transport_retry is TransportRetryPolicy.ALL,
        )
        credentials = self._strategies[strategy].acquire(acquisition)
        logger.info(f"[CRUMB] Acquired credentials via {strategy.value}")
        return credentials

    def _install(self, credentials: Credentials) -> None:
        # caller holds the lock, or the manager is still being constructed
        self._credentials = credentials
        self._strategy = credentials.strategy
        self._epoch += 1

    def _set_jar_cookie(self, credentials: Credentials) -> None:
        if credentials.cookie.startswith("csrf:"):
            return
        self._http.cookies.set(SESSION_COOKIE, credentials.cookie, domain="." + COOKIE_DOMAIN, path="/")


def _is_consent_url(url: Optional[str]) -> bool:
    if not url:
        return False
    host = (urlparse(url).hostname or "").lower()
    return host == CONSENT_HOST or host.endswith("." + CONSENT_HOST)


__all__ = [
    "FetchRequest",
    "SessionManager",
    "Success",
    "Retryable",
    "Fatal",
]

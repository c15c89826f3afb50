"""
Download Manager: Concurrent Per-Symbol Fetching

This module fans one request template out over many symbols:

1. NORMALIZE
   - Split on commas and whitespace, trim, upper-case, drop empties
   - De-duplicate, keeping first-seen order

2. FAN OUT
   - One shared SessionManager, so every worker reuses the same credentials
   - A queue of symbols drained by max(1, min(workers, len(symbols))) threads
   - Failures are recorded against their symbol and never stop the batch

3. COLLECT
   - Every normalized symbol ends up in exactly one of succeeded/failed
   - Every payload carries a Provenance record

The orchestrator never retries on its own; the session manager already did.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Union
import logging
import queue
import re
import threading

from ..config import SessionConfig
from ..context import FetchContext
from ..errors import DownloadFailedError, FetchCancelledError, QuoteFetchError
from ..provenance import Provenance
from ..session.manager import FetchRequest, SessionManager

logger = logging.getLogger(__name__)

_SEPARATORS = re.compile(r"[,\s]+")


def normalize_symbols(symbols: Union[str, Iterable[str], None]) -> List[str]:
    """
    Normalize user supplied symbols.

    Args:
        symbols: A string ("aapl, msft") or an iterable of such strings

    Returns:
        Upper-cased, trimmed, de-duplicated symbols in first-seen order
    """
    if symbols is None:
        return []
    if isinstance(symbols, str):
        symbols = [symbols]

    out: List[str] = []
    seen = set()
    for item in symbols:
        for part in _SEPARATORS.split(str(item)):
            s = part.strip().upper()
            if s and s not in seen:
                seen.add(s)
                out.append(s)
    return out


@dataclass(frozen=True)
class SymbolPayload:
    """
    Raw response body for one symbol.

    Attributes:
        symbol: Normalized symbol
        content: Response body bytes
        status: HTTP status code
        provenance: Where and when the payload was fetched
    """
    symbol: str
    content: bytes
    status: int
    provenance: Provenance

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "status": self.status,
            "size_bytes": len(self.content),
            "provenance": self.provenance.to_dict(),
        }


@dataclass
class DownloadResult:
    """
    Outcome of a batch download.

    Attributes:
        succeeded: Symbols fetched successfully, in input order
        failed: Symbols that failed, in input order
        errors: Terminal error per failed symbol
        payloads: SymbolPayload per succeeded symbol
    """
    succeeded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    errors: Dict[str, Exception] = field(default_factory=dict)
    payloads: Dict[str, SymbolPayload] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    def raise_for_failures(self) -> "DownloadResult":
        """
        Raises:
            DownloadFailedError: if any symbol failed
        """
        if self.failed:
            raise DownloadFailedError({s: self.errors[s] for s in self.failed})
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "ok": self.ok,
            "succeeded": list(self.succeeded),
            "failed": list(self.failed),
            "errors": {s: f"{type(e).__name__}: {e}" for s, e in self.errors.items()},
            "payloads": {s: p.to_dict() for s, p in self.payloads.items()},
        }


class FetchOrchestrator:
    """
    Runs one request template for many symbols over a shared session.

    Usage:
        orchestrator = FetchOrchestrator(config=load_config())
        template = history_template(period="1mo", interval="1d")
        result = orchestrator.download("aapl, msft, AAPL", template)

        for symbol in result.succeeded:
            print(symbol, len(result.payloads[symbol].content))
    """

    def __init__(
        self,
        session: Optional[SessionManager] = None,
        config: Optional[SessionConfig] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            session: Shared session manager (created from ``config`` if omitted)
            config: Settings; defaults to the session's own config
        """
        if session is None:
            session = SessionManager(config)
        self.session = session
        self.config = config if config is not None else session.config

    def download(
        self,
        symbols: Union[str, Iterable[str]],
        template: FetchRequest,
        workers: Optional[int] = None,
        ctx: Optional[FetchContext] = None,
    ) -> DownloadResult:
        """
        Fetch ``template`` for every symbol concurrently.

        Args:
            symbols: Symbols to fetch, normalized with normalize_symbols()
            template: Request whose endpoint/params contain {symbol}
            workers: Worker threads (default: config.workers)
            ctx: Shared cancellation context for the whole batch

        Returns:
            DownloadResult covering every normalized symbol exactly once
        """
        jobs_list = normalize_symbols(symbols)
        result = DownloadResult()
        if not jobs_list:
            return result

        ctx = ctx or FetchContext.background()
        configured = workers if workers is not None else self.config.workers
        n_workers = max(1, min(configured, len(jobs_list)))

        logger.info(f"[DOWNLOAD] Starting batch: {len(jobs_list)} symbols, {n_workers} workers")

        jobs: "queue.Queue[str]" = queue.Queue()
        for symbol in jobs_list:
            jobs.put(symbol)

        lock = threading.Lock()
        succeeded: Dict[str, SymbolPayload] = {}
        errors: Dict[str, Exception] = {}

        def worker() -> None:
            while True:
                try:
                    symbol = jobs.get_nowait()
                except queue.Empty:
                    return
                outcome = self._fetch_one(symbol, template, ctx)
                with lock:
                    if isinstance(outcome, SymbolPayload):
                        succeeded[symbol] = outcome
                    else:
                        errors[symbol] = outcome

        with ThreadPoolExecutor(max_workers=n_workers, thread_name_prefix="quotefetch") as pool:
            futures = [pool.submit(worker) for _ in range(n_workers)]
            for f in futures:
                f.result()

        for symbol in jobs_list:
            if symbol in succeeded:
                result.succeeded.append(symbol)
                result.payloads[symbol] = succeeded[symbol]
            else:
                result.failed.append(symbol)
                result.errors[symbol] = errors.get(symbol) or FetchCancelledError("not fetched")

        logger.info(f"[DOWNLOAD] Batch done: {len(result.succeeded)} ok, {len(result.failed)} failed")
        return result

    def _fetch_one(
        self,
        symbol: str,
        template: FetchRequest,
        ctx: FetchContext,
    ) -> Union[SymbolPayload, Exception]:
        if ctx.cancelled:
            return FetchCancelledError(f"{symbol}: cancelled before start")

        request = template.for_symbol(symbol)
        try:
            response = self.session.fetch_response(request, ctx)
        except QuoteFetchError as e:
            logger.warning(f"[DOWNLOAD] {symbol} failed: {type(e).__name__}: {e}")
            return e
        except Exception as e:
            logger.error(f"[DOWNLOAD] {symbol} unexpected error: {e}", exc_info=True)
            return e

        prov = Provenance.for_payload(
            response.final_url or request.endpoint,
            response.content,
            http_method=request.method,
            status=response.status,
            symbol=symbol,
            strategy=self.session.strategy.value,
        )
        logger.debug(f"[DOWNLOAD] {symbol}: {len(response.content)} bytes")
        return SymbolPayload(symbol=symbol, content=response.content, status=response.status, provenance=prov)

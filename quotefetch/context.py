"""
Fetch Context: cancellation and deadline signal shared by every call.

A single FetchContext is threaded through the session manager, the
acquisition strategies and every orchestrator worker. Cancelling it:
- wakes up every pending backoff sleep immediately
- makes every not-yet-started request fail with FetchCancelledError
- clips in-flight request timeouts to the remaining deadline
"""

from __future__ import annotations

import threading
import time
from typing import Optional

from .errors import FetchCancelledError


class FetchContext:
    """
    Cancellation event plus optional monotonic deadline.

    cancel() cannot abort a request that is already on the wire: that request
    runs until it answers or its per-request timeout (SessionConfig.timeout_s)
    elapses, and nothing is sent after it. A deadline, unlike cancel(), also
    clips that timeout through bound_timeout().

    Usage:
        ctx = FetchContext.with_timeout(60)
        manager.fetch(request, ctx)

        # from another thread
        ctx.cancel()
    """

    def __init__(self, deadline: Optional[float] = None):
        self._event = threading.Event()
        self._deadline = deadline

    @classmethod
    def background(cls) -> "FetchContext":
        """A context that is never cancelled unless cancel() is called."""
        return cls()

    @classmethod
    def with_timeout(cls, seconds: float) -> "FetchContext":
        """A context whose deadline is ``seconds`` from now."""
        return cls(deadline=time.monotonic() + max(0.0, float(seconds)))

    @property
    def deadline(self) -> Optional[float]:
        return self._deadline

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self._event.set()
            return True
        return False

    def remaining(self) -> Optional[float]:
        """Seconds until the deadline, or None when there is no deadline."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def bound_timeout(self, timeout_s: float) -> float:
        """Clip a per-request timeout to the remaining deadline."""
        remaining = self.remaining()
        if remaining is None:
            return timeout_s
        return max(0.001, min(timeout_s, remaining))

    def wait(self, seconds: float) -> bool:
        """
        Sleep for ``seconds`` unless cancelled first.

        Returns:
            True if the full wait elapsed, False if the context was cancelled
        """
        if seconds <= 0:
            return not self.cancelled
        remaining = self.remaining()
        if remaining is not None and remaining < seconds:
            # deadline falls inside the wait
            self._event.wait(remaining)
            self._event.set()
            return False
        interrupted = self._event.wait(seconds)
        return not interrupted and not self.cancelled

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise FetchCancelledError("fetch cancelled")

    def __repr__(self) -> str:
        return f"FetchContext(cancelled={self.cancelled}, remaining={self.remaining()})"

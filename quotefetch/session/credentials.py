"""
Credentials: Cookie + Crumb State and Its On-Disk Cache

The API only answers when a session cookie and a matching anti-abuse "crumb"
token are attached. Obtaining them takes several round trips, so a good pair
is cached on disk and reused across process runs until it expires.

Components:
- CookieStrategy: which acquisition path produced the credentials
- Credentials: immutable cookie/crumb/strategy/expiry record
- CredentialStore: persistence protocol (load/save/clear)
- DiskCredentialStore: one JSON file per user, 24h validity, atomic writes
- NullCredentialStore: persistence disabled

NOTES:
- A crumb that is empty, HTML, a rate-limit message or an error document is
  never accepted, never persisted and never reused
- Cache problems of any kind are a cache miss, never an error
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Protocol
import json
import logging
import os
import tempfile

logger = logging.getLogger(__name__)

CACHE_FILENAME = "cookie_cache.json"
CACHE_VALIDITY = timedelta(hours=24)

# Substrings that mark a crumb endpoint body as an error page, not a token
_INVALID_CRUMB_MARKERS = (
    "<html",
    "<!doctype",
    "too many requests",
    "yahoo",
)


class CookieStrategy(str, Enum):
    BASIC = "basic"
    CSRF = "csrf"

    def other(self) -> "CookieStrategy":
        return CookieStrategy.CSRF if self is CookieStrategy.BASIC else CookieStrategy.BASIC


def is_valid_crumb(crumb: Optional[str]) -> bool:
    """
    Check that a crumb looks like a real token.

    Rejects empty values, HTML error pages, literal rate-limit messages,
    provider branded error text and JSON error documents.
    """
    if not crumb or not crumb.strip():
        return False
    lowered = crumb.lower()
    if any(marker in lowered for marker in _INVALID_CRUMB_MARKERS):
        return False
    if crumb.lstrip().startswith("{"):
        return False
    return True


@dataclass(frozen=True)
class Credentials:
    """
    Session cookie and crumb obtained by one acquisition strategy.

    Attributes:
        cookie: Opaque session cookie value (A3 cookie or consent marker)
        crumb: Anti-abuse token appended to every authenticated request
        strategy: Acquisition strategy that produced this pair
        expiry: When the pair stops being reusable from the cache
    """
    cookie: str
    crumb: str
    strategy: CookieStrategy = CookieStrategy.BASIC
    expiry: Optional[datetime] = field(default=None, compare=False)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expiry is None:
            return False
        return (now or datetime.now(timezone.utc)) >= self.expiry

    def is_valid(self) -> bool:
        """True if the crumb passes the validity check and has not expired."""
        return is_valid_crumb(self.crumb) and not self.is_expired()

    def with_expiry(self, expiry: datetime) -> "Credentials":
        return replace(self, expiry=expiry)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "cookie": self.cookie,
            "crumb": self.crumb,
            "strategy": self.strategy.value,
            "expiry": self.expiry.isoformat() if self.expiry else None,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Credentials":
        """
        Rebuild Credentials from a cache record.

        Raises:
            KeyError, ValueError, TypeError: if the record is malformed
        """
        expiry = data.get("expiry")
        parsed_expiry = datetime.fromisoformat(expiry) if expiry else None
        if parsed_expiry is not None and parsed_expiry.tzinfo is None:
            parsed_expiry = parsed_expiry.replace(tzinfo=timezone.utc)
        return Credentials(
            cookie=str(data["cookie"]),
            crumb=str(data["crumb"]),
            strategy=CookieStrategy(data.get("strategy") or CookieStrategy.BASIC.value),
            expiry=parsed_expiry,
        )

    def __repr__(self) -> str:
        # never print the secret values
        return (
            f"Credentials(strategy={self.strategy.value}, "
            f"crumb={'set' if self.crumb else 'empty'}, expiry={self.expiry})"
        )


class CredentialStore(Protocol):
    """
    Persistence interface for credentials.

    Implementations must treat every read problem as a cache miss and every
    write problem as non-fatal.
    """

    def load(self) -> Optional[Credentials]:
        """Return cached credentials if present, unexpired and valid."""
        ...

    def save(self, credentials: Credentials) -> bool:
        """Persist credentials with a fixed validity window."""
        ...

    def clear(self) -> None:
        """Remove persisted credentials."""
        ...


class NullCredentialStore:
    """Store that never persists anything."""

    def load(self) -> Optional[Credentials]:
        return None

    def save(self, credentials: Credentials) -> bool:
        return False

    def clear(self) -> None:
        return None


class DiskCredentialStore:
    """
    Filesystem-backed credential cache.

    Directory structure:
    cache_dir/
        cookie_cache.json   {"cookie", "crumb", "strategy", "expiry"}

    Concurrent writers race and the last one wins. Each write goes through a
    temp file plus os.replace so readers never see a partial record.
    """

    def __init__(self, cache_dir: Path | str, validity: timedelta = CACHE_VALIDITY):
        self.root = Path(cache_dir)
        self.path = self.root / CACHE_FILENAME
        self.validity = validity

    def load(self) -> Optional[Credentials]:
        """
        Load cached credentials.

        Returns:
            Credentials if the file exists, parses, is unexpired and holds a
            valid crumb; None otherwise
        """
        if not self.path.exists():
            return None

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            credentials = Credentials.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.debug(f"[CACHE] Ignoring unreadable cache {self.path}: {e}")
            return None

        if credentials.expiry is None or credentials.is_expired():
            logger.debug("[CACHE] Cached credentials expired")
            return None

        if not is_valid_crumb(credentials.crumb):
            logger.warning("[CACHE] Cached crumb failed validation, ignoring")
            return None

        logger.info(f"[CACHE] Loaded credentials ({credentials.strategy.value})")
        return credentials

    def save(self, credentials: Credentials) -> bool:
        """
        Persist credentials, valid for ``validity`` from now.

        Returns:
            True if written, False if refused or the write failed
        """
        if not is_valid_crumb(credentials.crumb):
            logger.warning("[CACHE] Refusing to persist invalid crumb")
            return False

        record = credentials.with_expiry(datetime.now(timezone.utc) + self.validity)

        try:
            self.root.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=".cookie_cache.", dir=str(self.root))
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(record.to_dict(), f)
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            logger.warning(f"[CACHE] Could not persist credentials: {e}")
            return False

        logger.debug(f"[CACHE] Saved credentials to {self.path}")
        return True

    def clear(self) -> None:
        """Delete the cache file if present."""
        try:
            self.path.unlink(missing_ok=True)
            logger.info("[CACHE] Cleared")
        except OSError as e:
            logger.warning(f"[CACHE] Could not remove {self.path}: {e}")


def make_credential_store(cache_dir: Optional[Path]) -> CredentialStore:
    """DiskCredentialStore for ``cache_dir``, or a NullCredentialStore if None."""
    if cache_dir is None:
        logger.info("[CACHE] No cache directory, credential persistence disabled")
        return NullCredentialStore()
    return DiskCredentialStore(cache_dir)

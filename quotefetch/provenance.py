"""
Provenance: Traceability for Downloaded Payloads

Every payload returned by a batch download carries an immutable provenance
record so a stored file can always be traced back to:
- When it was fetched
- Where it came from (source URL, HTTP method, status)
- A SHA-256 hash of the raw payload bytes
- The cookie strategy that was active for the request
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from datetime import datetime, timezone
import hashlib


def sha256_bytes(b: bytes) -> str:
    """Compute SHA-256 hash of raw bytes."""
    return hashlib.sha256(b).hexdigest()


@dataclass(frozen=True)
class Provenance:
    """
    Traceability record for one fetched payload.

    Attributes:
        captured_at: ISO 8601 timestamp when the payload was received
        source_url: Final URL the payload was read from (crumb redacted)
        http_method: HTTP method used (GET, POST)
        status: HTTP status code returned
        payload_hash: SHA-256 hash over the raw payload bytes
        symbol: Symbol the payload belongs to, if any
        meta: Additional metadata (strategy, byte count, ...)
    """
    captured_at: str  # ISO 8601
    source_url: str
    http_method: str = "GET"
    status: Optional[int] = None
    payload_hash: Optional[str] = None
    symbol: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def now(
        source_url: str,
        http_method: str = "GET",
        status: Optional[int] = None,
        **kwargs
    ) -> "Provenance":
        """Create a Provenance object stamped with the current UTC time."""
        ts = datetime.now(timezone.utc).isoformat()
        return Provenance(
            captured_at=ts,
            source_url=source_url,
            http_method=http_method,
            status=status,
            **kwargs
        )

    @staticmethod
    def for_payload(
        source_url: str,
        content: bytes,
        *,
        http_method: str = "GET",
        status: Optional[int] = None,
        symbol: Optional[str] = None,
        **meta: Any
    ) -> "Provenance":
        """Create a Provenance for ``content``, hashing it."""
        return Provenance.now(
            source_url=redact_crumb(source_url),
            http_method=http_method,
            status=status,
            payload_hash=sha256_bytes(content),
            symbol=symbol,
            meta={"size_bytes": len(content), **meta},
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "captured_at": self.captured_at,
            "source_url": self.source_url,
            "http_method": self.http_method,
            "status": self.status,
            "payload_hash": self.payload_hash,
            "symbol": self.symbol,
            "meta": self.meta,
        }


def redact_crumb(url: str) -> str:
    """Strip the crumb query value so it never lands in manifests or logs."""
    if "crumb=" not in url:
        return url
    head, _, query = url.partition("?")
    parts = [p if not p.startswith("crumb=") else "crumb=REDACTED" for p in query.split("&")]
    return f"{head}?{'&'.join(parts)}"

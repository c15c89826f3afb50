"""
Session configuration.

SessionConfig is an explicit value handed to SessionManager and
FetchOrchestrator at construction time. The manager keeps a reference and
reads it on every request, so assigning a field (validated by pydantic) takes
effect on the next request:

    config = load_config()
    manager = SessionManager(config)
    config.retries = 5          # next fetch uses 5 retries
"""

from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Dict, Optional
import logging

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

ENV_PREFIX = "QUOTEFETCH_"


class TransportRetryPolicy(str, Enum):
    """Which transport failures the retry loop may retry."""
    TRANSIENT = "transient"  # timeouts, resets, proxy/SSL hiccups
    ALL = "all"              # every transport failure, malformed requests included


class SessionConfig(BaseModel):
    """Network and retry settings read by the session manager per request."""

    model_config = ConfigDict(validate_assignment=True)

    retries: int = Field(default=3, ge=0)
    timeout_s: float = Field(default=30.0, gt=0)
    proxy: Optional[str] = None
    backoff_base_s: float = Field(default=1.0, ge=0)
    backoff_cap_s: float = Field(default=30.0, ge=0)
    transport_retry: TransportRetryPolicy = TransportRetryPolicy.TRANSIENT
    cache_dir: Optional[Path] = None
    workers: int = Field(default=4, ge=1)
    user_agent: Optional[str] = None

    def resolve_proxy(self) -> Optional[str]:
        """
        Resolve the proxy for the next request.

        Precedence: explicit ``proxy`` > QUOTEFETCH_PROXY > HTTPS_PROXY >
        https_proxy > HTTP_PROXY > http_proxy > no proxy.
        """
        if self.proxy:
            return self.proxy
        for name in (f"{ENV_PREFIX}PROXY", "HTTPS_PROXY", "https_proxy", "HTTP_PROXY", "http_proxy"):
            value = os.environ.get(name)
            if value:
                return value
        return None

    def proxies(self) -> Optional[Dict[str, str]]:
        """Proxy mapping in the shape requests expects, or None."""
        proxy = self.resolve_proxy()
        if not proxy:
            return None
        return {"http": proxy, "https": proxy}

    def backoff_delay(self, attempt: int) -> float:
        """Exponential backoff for the given zero-based attempt, capped."""
        return min(self.backoff_base_s * (2 ** attempt), self.backoff_cap_s)

    def resolved_cache_dir(self) -> Optional[Path]:
        """Directory holding the credential cache file."""
        if self.cache_dir is not None:
            return Path(self.cache_dir).expanduser()
        base = os.environ.get("XDG_CACHE_HOME")
        if base:
            return Path(base) / "quotefetch"
        try:
            return Path.home() / ".cache" / "quotefetch"
        except RuntimeError:
            # no resolvable home directory
            return None


# env var suffix -> SessionConfig field
_ENV_FIELDS = {
    "RETRIES": "retries",
    "TIMEOUT": "timeout_s",
    "PROXY": "proxy",
    "BACKOFF_BASE": "backoff_base_s",
    "BACKOFF_CAP": "backoff_cap_s",
    "TRANSPORT_RETRY": "transport_retry",
    "CACHE_DIR": "cache_dir",
    "WORKERS": "workers",
    "USER_AGENT": "user_agent",
}


def load_config(env_file: Optional[str] = None, **overrides) -> SessionConfig:
    """
    Build a SessionConfig from the environment.

    Loads ``env_file`` (or a ``.env`` in the working directory) with
    python-dotenv without overriding variables already set, then reads
    QUOTEFETCH_* variables. Keyword overrides win over the environment.

    Raises:
        pydantic.ValidationError: if a value fails validation
    """
    load_dotenv(env_file, override=False)

    values = {}
    for suffix, field_name in _ENV_FIELDS.items():
        raw = os.environ.get(f"{ENV_PREFIX}{suffix}")
        if raw is not None and raw != "":
            values[field_name] = raw
    values.update({k: v for k, v in overrides.items() if v is not None})

    config = SessionConfig(**values)
    logger.debug(f"[CONFIG] Loaded: retries={config.retries} timeout={config.timeout_s}s "
                 f"proxy={'set' if config.resolve_proxy() else 'none'}")
    return config

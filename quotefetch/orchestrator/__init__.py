"""
Orchestrator Module: Batch Downloads Over a Shared Session

Components:
- normalize_symbols: comma/whitespace split, upper-case, de-duplicate
- FetchOrchestrator: fans a request template out over worker threads
- DownloadResult: succeeded/failed/errors/payloads for the whole batch
- SymbolPayload: raw body plus provenance for one symbol
"""

from .download_manager import DownloadResult, FetchOrchestrator, SymbolPayload, normalize_symbols

__all__ = [
    "DownloadResult",
    "FetchOrchestrator",
    "SymbolPayload",
    "normalize_symbols",
]

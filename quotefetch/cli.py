"""
Command line interface.

    quotefetch download AAPL MSFT,GOOG --period 1y --interval 1d --out data/
    quotefetch clear-cache
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional
import argparse
import json
import logging

from pydantic import ValidationError

from .config import load_config
from .context import FetchContext
from .endpoints import VALID_INTERVALS, VALID_PERIODS, history_template
from .errors import QuoteFetchError
from .logging_setup import setup_logging
from .orchestrator import FetchOrchestrator
from .session.manager import SessionManager

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser("quotefetch", description="Concurrent quote history downloader")
    ap.add_argument("--env-file", default=None, help="dotenv file with QUOTEFETCH_* settings")
    ap.add_argument("--log-file", default=None, help="Write JSON logs to this file")
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug output on the console")
    sub = ap.add_subparsers(dest="command", required=True)

    dl = sub.add_parser("download", help="Download chart payloads for symbols")
    dl.add_argument("symbols", nargs="+", help="Symbols, space or comma separated")
    dl.add_argument("--period", default="1mo", choices=VALID_PERIODS)
    dl.add_argument("--interval", default="1d", choices=VALID_INTERVALS)
    dl.add_argument("--prepost", action="store_true", help="Include pre/post market data")
    dl.add_argument("--workers", type=int, default=None, help="Worker threads (default: config)")
    dl.add_argument("--timeout", type=float, default=None, help="Per-request timeout in seconds")
    dl.add_argument("--retries", type=int, default=None, help="Retries per request")
    dl.add_argument("--proxy", default=None, help="Proxy URL (overrides environment)")
    dl.add_argument("--deadline", type=float, default=None, help="Give up on the whole batch after N seconds")
    dl.add_argument("--out", default="quotefetch-data", help="Output directory")
    dl.add_argument("--log-file", default=argparse.SUPPRESS, help="Write JSON logs to this file")

    sub.add_parser("clear-cache", help="Delete cached cookie and crumb")
    return ap


def cmd_download(args: argparse.Namespace) -> int:
    config = load_config(
        args.env_file,
        timeout_s=args.timeout,
        retries=args.retries,
        proxy=args.proxy,
    )
    template = history_template(period=args.period, interval=args.interval, prepost=args.prepost)
    ctx = FetchContext.with_timeout(args.deadline) if args.deadline else FetchContext.background()

    with SessionManager(config) as session:
        result = FetchOrchestrator(session=session, config=config).download(
            args.symbols, template, workers=args.workers, ctx=ctx
        )

    out_dir = Path(args.out)
    out_dir.mkdir(parents=True, exist_ok=True)
    for symbol, payload in result.payloads.items():
        (out_dir / f"{symbol}.json").write_bytes(payload.content)
    (out_dir / MANIFEST_NAME).write_text(json.dumps(result.to_dict(), indent=2), encoding="utf-8")

    print(f"Downloaded {len(result.succeeded)} of {len(result.succeeded) + len(result.failed)} symbols to {out_dir}")
    for symbol in result.failed:
        print(f"  {symbol}: {result.errors[symbol]}")
    return 0 if result.ok else 1


def cmd_clear_cache(args: argparse.Namespace) -> int:
    config = load_config(args.env_file)
    with SessionManager(config) as session:
        session.clear_cache()
    print("Credential cache cleared")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.WARNING, args.log_file)

    try:
        if args.command == "download":
            return cmd_download(args)
        return cmd_clear_cache(args)
    except ValidationError as e:
        print(f"Invalid configuration: {e}")
        return 2
    except QuoteFetchError as e:
        logger.error(f"[CLI] {type(e).__name__}: {e}")
        print(f"Error: {e}")
        return 1


if __name__ == '__main__':
    raise SystemExit(main())

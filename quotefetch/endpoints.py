"""
Endpoints: Request Templates and Symbol Helpers

Ready-made FetchRequest templates for the endpoints the CLI and the batch
downloader use. Templates keep a {symbol} placeholder that
FetchRequest.for_symbol() fills in per symbol.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Dict, Optional, Union

from .errors import InvalidRequestError
from .session.manager import FetchRequest

QUERY1_URL = "https://query1.finance.yahoo.com"
QUERY2_URL = "https://query2.finance.yahoo.com"

CHART_URL = QUERY2_URL + "/v8/finance/chart/{symbol}"
QUOTE_URL = QUERY1_URL + "/v7/finance/quote"

VALID_PERIODS = ("1d", "5d", "1mo", "3mo", "6mo", "1y", "2y", "5y", "10y", "ytd", "max")
VALID_INTERVALS = ("1m", "2m", "5m", "15m", "30m", "60m", "90m", "1h", "1d", "5d", "1wk", "1mo", "3mo")
INTRADAY_INTERVALS = frozenset({"1m", "2m", "5m", "15m", "30m", "60m", "90m", "1h"})

# intraday data is not served further back than this
INTRADAY_MAX_SPAN = timedelta(days=60)

# Market Identifier Code -> provider symbol suffix ("" means no suffix)
MIC_SUFFIXES: Dict[str, str] = {
    "XNYS": "", "XNAS": "",
    "XCBT": "CBT", "XCME": "CME", "IFUS": "NYB", "CECS": "CMX", "XNYM": "NYM",
    "XBUE": "BA",
    "XVIE": "VI",
    "XASX": "AX", "XAUS": "XA",
    "XBRU": "BR",
    "BVMF": "SA",
    "CNSX": "CN", "NEOE": "NE", "XTSE": "TO", "XTSX": "V",
    "XSGO": "SN",
    "XSHG": "SS", "XSHE": "SZ",
    "XCSE": "CO",
    "XHEL": "HE",
    "XPAR": "PA",
    "XETR": "DE", "XFRA": "F", "XBER": "BE", "XMUN": "MU", "XSTU": "SG", "XHAM": "HM", "XDUS": "DU",
    "XHKG": "HK",
    "XBOM": "BO", "XNSE": "NS",
    "XDUB": "IR",
    "XTAE": "TA",
    "MTAA": "MI",
    "XTKS": "T",
    "XMEX": "MX",
    "XAMS": "AS",
    "XNZE": "NZ",
    "XOSL": "OL",
    "XWAR": "WA",
    "XLIS": "LS",
    "XSES": "SI",
    "XJSE": "JO",
    "XKRX": "KS", "KQKS": "KQ",
    "BMEX": "MC",
    "XSTO": "ST",
    "XSWX": "SW",
    "XTAI": "TW", "ROCO": "TWO",
    "XBKK": "BK",
    "XIST": "IS",
    "XLON": "L", "ILSE": "IL",
}

DateLike = Union[datetime, date, int, float]


def history_template(
    period: Optional[str] = "1mo",
    interval: str = "1d",
    start: Optional[DateLike] = None,
    end: Optional[DateLike] = None,
    prepost: bool = False,
    events: bool = True,
) -> FetchRequest:
    """
    Chart endpoint template for historical prices.

    Args:
        period: Range such as "1mo"; ignored when ``start`` is given
        interval: Bar size such as "1d"
        start: First bar (datetime, date or unix seconds)
        end: Last bar (datetime, date or unix seconds)
        prepost: Include pre/post market bars
        events: Include dividend and split events

    Returns:
        FetchRequest with a {symbol} placeholder in the endpoint

    Raises:
        InvalidRequestError: for an unknown period/interval, an inverted
                             date range, or an intraday range over 60 days
    """
    if interval not in VALID_INTERVALS:
        raise InvalidRequestError(f"invalid interval: {interval}, must be one of: {list(VALID_INTERVALS)}")
    if start is None and period is not None and period not in VALID_PERIODS:
        raise InvalidRequestError(f"invalid period: {period}, must be one of: {list(VALID_PERIODS)}")

    params: Dict[str, str] = {"interval": interval}

    start_ts = _unix(start) if start is not None else None
    end_ts = _unix(end) if end is not None else None

    if start_ts is None and period:
        params["range"] = period
    if start_ts is not None:
        params["period1"] = str(start_ts)
        if end_ts is None:
            end_ts = int(datetime.now(timezone.utc).timestamp())
    if end_ts is not None:
        params["period2"] = str(end_ts)

    if start_ts is not None and end_ts is not None:
        if end_ts <= start_ts:
            raise InvalidRequestError("end must be after start")
        if interval in INTRADAY_INTERVALS and end_ts - start_ts > INTRADAY_MAX_SPAN.total_seconds():
            raise InvalidRequestError(f"{interval} data is only available for the last 60 days")

    if prepost:
        params["includePrePost"] = "true"
    if events:
        params["events"] = "div,split"

    return FetchRequest(endpoint=CHART_URL, params=params)


def quote_template() -> FetchRequest:
    """v7 quote endpoint template, one symbol per request."""
    return FetchRequest(endpoint=QUOTE_URL, params={"symbols": "{symbol}"})


def symbol_with_mic(symbol: str, mic: str) -> str:
    """
    Provider symbol for ``symbol`` listed on market ``mic``.

    >>> symbol_with_mic("vod", "XLON")
    'VOD.L'

    Raises:
        InvalidRequestError: for an empty symbol or an unknown MIC
    """
    symbol = (symbol or "").strip().upper()
    if not symbol:
        raise InvalidRequestError("symbol must not be empty")
    try:
        suffix = MIC_SUFFIXES[(mic or "").strip().upper()]
    except KeyError:
        raise InvalidRequestError(f"unknown market identifier code: {mic}") from None
    return f"{symbol}.{suffix}" if suffix else symbol


def _unix(value: DateLike) -> int:
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp())
    if isinstance(value, date):
        return int(datetime(value.year, value.month, value.day, tzinfo=timezone.utc).timestamp())
    raise InvalidRequestError(f"unsupported date value: {value!r}")

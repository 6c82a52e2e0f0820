from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional
from urllib.parse import urlencode
from urllib.request import Request, urlopen
import json
import re
import time

import pandas as pd


BINANCE_API = "https://api.binance.com"
PAGE_LIMIT = 1000
PAGE_PAUSE_S = 0.2

SUPPORTED_INTERVALS = (
    "1m", "3m", "5m", "15m", "30m",
    "1h", "2h", "4h", "6h", "8h", "12h",
    "1d", "3d", "1w",
)
_UNIT_MS = {"m": 60_000, "h": 3_600_000, "d": 86_400_000, "w": 604_800_000}
_INTERVAL_RE = re.compile(r"^(\d+)([mhdw])$")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

CANDLE_COLUMNS = ["open_time", "open", "high", "low", "close", "volume", "close_time"]


@dataclass(frozen=True)
class Candle:
    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    close_time: int


def interval_to_ms(interval: str) -> int:
    """Duration of a Binance interval string ("15m", "4h", ...) in milliseconds.

    Raises ValueError for anything outside SUPPORTED_INTERVALS.
    """
    m = _INTERVAL_RE.match(interval or "")
    if m is None or interval not in SUPPORTED_INTERVALS:
        raise ValueError(f"Unsupported interval: {interval!r} (expected one of {', '.join(SUPPORTED_INTERVALS)})")
    return int(m.group(1)) * _UNIT_MS[m.group(2)]


def interval_label(interval: str) -> str:
    """Column-name label for an interval: "15m" -> "m15", "4h" -> "h4"."""
    interval_to_ms(interval)
    m = _INTERVAL_RE.match(interval)
    return f"{m.group(2)}{m.group(1)}"


def format_utc_ms(ms: int) -> str:
    """Render epoch milliseconds as "YYYY-MM-DD HH:MM:SS.mmm UTC"."""
    dt = _EPOCH + timedelta(milliseconds=int(ms))
    return dt.strftime("%Y-%m-%d %H:%M:%S.") + f"{dt.microsecond // 1000:03d} UTC"


def now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def candle_from_row(row: list) -> Candle:
    # Row format per Binance docs
    # [ openTime, open, high, low, close, volume, closeTime, quoteAssetVolume,
    #   numberOfTrades, takerBuyBaseAssetVolume, takerBuyQuoteAssetVolume, ignore ]
    return Candle(
        open_time=int(row[0]),
        open=float(row[1]),
        high=float(row[2]),
        low=float(row[3]),
        close=float(row[4]),
        volume=float(row[5]),
        close_time=int(row[6]),
    )


def _build_klines_url(symbol: str, interval: str, start_ms: int, end_ms: int, limit: int) -> str:
    qs = urlencode(
        {"symbol": symbol, "interval": interval, "startTime": start_ms, "endTime": end_ms, "limit": limit}
    )
    return f"{BINANCE_API}/api/v3/klines?{qs}"


def _get_json(url: str):
    req = Request(url, headers={"User-Agent": "kline-feed/1.0"})
    with urlopen(req, timeout=15) as resp:
        return json.loads(resp.read())


def fetch_klines_range(
    symbol: str,
    interval: str,
    start_ms: int,
    end_ms: int,
    limit: int = PAGE_LIMIT,
    pause_s: float = PAGE_PAUSE_S,
) -> List[Candle]:
    """Fetch all klines with open_time in [start_ms, end_ms], ascending.

    Pages of `limit` rows are requested until the server returns an empty or
    short page, or the next page would start at or after `end_ms`.
    """
    interval_to_ms(interval)
    print(f"[INFO] Fetching {symbol} {interval} klines from {format_utc_ms(start_ms)} to {format_utc_ms(end_ms)}")

    out: List[Candle] = []
    current = start_ms
    batch = 0
    while True:
        batch += 1
        payload = _get_json(_build_klines_url(symbol, interval, current, end_ms, limit))
        if not payload:
            print("[INFO] No more klines returned, stopping.")
            break
        page = [candle_from_row(row) for row in payload]
        out.extend(page)
        print(f"[INFO] Batch {batch}: fetched {len(page)} klines (total so far: {len(out)})")
        if len(page) < limit:
            break
        current = page[-1].close_time + 1
        if current >= end_ms:
            break
        if pause_s > 0:
            time.sleep(pause_s)

    print(f"[INFO] Fetched total {len(out)} klines.")
    return out


def fetch_latest_klines(symbol: str, interval: str, count: int, now: Optional[int] = None) -> List[Candle]:
    """Fetch (approximately) the most recent `count` klines, trimmed to at most `count`."""
    end = now if now is not None else now_ms()
    start = end - count * interval_to_ms(interval)
    candles = fetch_klines_range(symbol, interval, start, end)
    if len(candles) > count:
        print(f"[INFO] Trimmed {len(candles)} klines to the most recent {count}.")
        candles = candles[-count:]
    return candles


def candles_to_dataframe(candles: Iterable[Candle]) -> pd.DataFrame:
    """Map candles into the canonical frame: open_time..close_time.

    - open_time / close_time: int64 epoch milliseconds
    - prices and volume: float64
    - sorted ascending by open_time
    """
    candles = list(candles)
    if not candles:
        return pd.DataFrame(columns=CANDLE_COLUMNS).astype(
            {"open_time": "int64", "open": float, "high": float, "low": float,
             "close": float, "volume": float, "close_time": "int64"}
        )
    df = pd.DataFrame(
        {
            "open_time": [c.open_time for c in candles],
            "open": [c.open for c in candles],
            "high": [c.high for c in candles],
            "low": [c.low for c in candles],
            "close": [c.close for c in candles],
            "volume": [c.volume for c in candles],
            "close_time": [c.close_time for c in candles],
        }
    ).astype({"open_time": "int64", "close_time": "int64"})
    df = df.sort_values("open_time", kind="mergesort").reset_index(drop=True)
    return df


def dataframe_to_candles(df: pd.DataFrame) -> List[Candle]:
    return [
        Candle(
            open_time=int(r.open_time),
            open=float(r.open),
            high=float(r.high),
            low=float(r.low),
            close=float(r.close),
            volume=float(r.volume),
            close_time=int(r.close_time),
        )
        for r in df.loc[:, CANDLE_COLUMNS].itertuples(index=False)
    ]


def parse_date_ms(date_str: str) -> int:
    """Parse a YYYY-MM-DD date (UTC midnight) into epoch milliseconds."""
    dt = datetime.strptime(date_str, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)

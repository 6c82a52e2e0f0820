from __future__ import annotations

import argparse
import asyncio
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from ..features.engine import default_feature_config
from ..live import LiveConfig, LiveFeed
from .api import candles_to_dataframe, fetch_klines_range, interval_to_ms, parse_date_ms
from .db import append_candles_if_absent, coverage_stats, ensure_table, table_name
from .persistence import PersistConfig, snapshot_overwrite
from .validation import normalize_candles, validate_candles


DEFAULT_SYMBOL = "BTCUSDT"
DEFAULT_INTERVAL = "15m"
DAY_MS = 86_400_000
OUTPUT_SUFFIXES = (".parquet", ".csv", ".duckdb")


@dataclass
class HistoricalConfig:
    symbol: str
    interval: str
    start_ms: int
    end_ms: int
    out_path: Path
    debug: bool = False


def _csv_list(value: str) -> List[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


def fetch_historical(cfg: HistoricalConfig) -> int:
    candles = fetch_klines_range(cfg.symbol, cfg.interval, cfg.start_ms, cfg.end_ms)
    candles, dropped = normalize_candles(candles)
    if not candles:
        print("[ERROR] No klines returned for the requested range", file=sys.stderr)
        return 2
    v = validate_candles(candles, interval_to_ms(cfg.interval))
    if not v.ok:
        print(f"[ERROR] fetched klines failed validation: {v.reason}", file=sys.stderr)
        return 2
    if v.gaps:
        print(f"[WARN] fetched klines {v.reason}", file=sys.stderr)

    out = cfg.out_path
    if out.suffix == ".duckdb":
        table = table_name(cfg.symbol, cfg.interval)
        ensure_table(out, table)
        inserted = append_candles_if_absent(out, table, candles)
        cov = coverage_stats(out, table)
        print(f"fetched={len(candles)} dropped_dupes={dropped} inserted={inserted} table={table} coverage={cov} out={out}")
        return 0
    snapshot_overwrite(candles_to_dataframe(candles), out)
    print(f"fetched={len(candles)} dropped_dupes={dropped} out={out}")
    return 0


def build_live_config(args: argparse.Namespace) -> LiveConfig:
    """LiveConfig from parsed `run` arguments; raises ValueError on bad configuration."""
    spans = [int(s) for s in _csv_list(args.spans)]
    timeframes = _csv_list(args.timeframes)
    features = default_feature_config(args.interval, spans, timeframes, args.pivot_window)
    slug = args.dataset or f"{args.symbol.lower()}_{args.interval}"
    return LiveConfig(
        symbol=args.symbol.upper(),
        interval=args.interval,
        features=features,
        persist=PersistConfig(args.data_dir, slug),
        raw_capacity=args.raw_capacity,
        feature_capacity=args.feature_capacity,
        log_trades=args.log_trades,
        max_reconnects=args.max_reconnects,
        max_pending_writes=args.max_pending_writes,
        memory_interval_s=args.memory_interval,
        debug=args.debug,
    )


def build_historical_config(args: argparse.Namespace) -> HistoricalConfig:
    interval_to_ms(args.interval)
    start_ms = parse_date_ms(args.start_date)
    # end date is inclusive
    end_ms = parse_date_ms(args.end_date) + DAY_MS - 1
    if end_ms < start_ms:
        raise ValueError("--end-date is before --start-date")
    if args.out.suffix not in OUTPUT_SUFFIXES:
        raise ValueError(f"unsupported output format {args.out.suffix!r}; use .parquet, .csv or .duckdb")
    return HistoricalConfig(
        symbol=args.symbol.upper(),
        interval=args.interval,
        start_ms=start_ms,
        end_ms=end_ms,
        out_path=args.out,
        debug=args.debug,
    )


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Binance kline stream with multi-timeframe EMA and pivot features")
    sub = p.add_subparsers(dest="command", required=True)

    r = sub.add_parser("run", help="Bootstrap history, then stream closed klines and persist features")
    r.add_argument("--symbol", default=DEFAULT_SYMBOL, help="Instrument symbol (default: BTCUSDT)")
    r.add_argument("--interval", default=DEFAULT_INTERVAL, help="Native kline interval, e.g. 5m or 15m")
    r.add_argument("--data-dir", type=Path, default=Path("data"), help="Directory root for snapshots and logs")
    r.add_argument("--dataset", default=None, help="Dataset slug (default: <symbol>_<interval>)")
    r.add_argument("--timeframes", default="1h,4h", help="Comma-separated higher timeframes for EMAs")
    r.add_argument("--spans", default="50,200", help="Comma-separated EMA spans")
    r.add_argument("--raw-capacity", type=int, default=50_000, help="Raw window size in candles")
    r.add_argument("--feature-capacity", type=int, default=50_000, help="Feature window size in candles")
    r.add_argument("--pivot-window", type=int, default=5000, help="Max neighbours counted per pivot side")
    r.add_argument("--log-trades", action="store_true", help="Also subscribe to and print trade ticks")
    r.add_argument("--max-reconnects", type=int, default=5, help="Consecutive reconnect attempts (0 = fail fast)")
    r.add_argument(
        "--max-pending-writes", type=int, default=4, help="Write fan-outs in flight before waiting (0 = unbounded)"
    )
    r.add_argument("--memory-interval", type=float, default=60.0, help="Seconds between memory samples (0 = off)")
    r.add_argument("--debug", action="store_true", help="Verbose logging; re-raise errors")

    h = sub.add_parser("fetch-historical", help="Download a date range of klines to a file")
    h.add_argument("--symbol", default=DEFAULT_SYMBOL)
    h.add_argument("--interval", required=True, help="Kline interval, e.g. 1h")
    h.add_argument("--start-date", required=True, help="Start date YYYY-MM-DD (inclusive, UTC)")
    h.add_argument("--end-date", required=True, help="End date YYYY-MM-DD (inclusive, UTC)")
    h.add_argument("--out", type=Path, required=True, help="Output path (.parquet, .csv or .duckdb)")
    h.add_argument("--debug", action="store_true")
    return p.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    try:
        if args.command == "run":
            cfg = build_live_config(args)
        else:
            cfg = build_historical_config(args)
    except ValueError as e:
        print(f"[ERROR] invalid configuration: {e}", file=sys.stderr)
        if args.debug:
            raise
        return 2

    try:
        if args.command == "run":
            asyncio.run(LiveFeed(cfg).run())
            return 0
        return fetch_historical(cfg)
    except KeyboardInterrupt:
        print("[INFO] Interrupted, exiting")
        return 0
    except Exception as e:  # surface clear error message
        print(f"[ERROR] {e}", file=sys.stderr)
        if args.debug:
            raise
        return 3


if __name__ == "__main__":
    raise SystemExit(main())

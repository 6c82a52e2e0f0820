"""Live feed orchestration.

One asyncio loop consumes stream events in arrival order. A closed candle
updates the raw and feature windows, rebuilds the feature table from the
whole feature window, then hands four file writes to worker threads:

  features parquet snapshot, raw parquet snapshot,
  latest feature row -> features CSV log, closed candle -> raw CSV log.

Write failures are printed and dropped. Stream failures end the run unless
reconnects are enabled, in which case the missed candles are fetched over
REST before streaming resumes.
"""

from __future__ import annotations

import asyncio
import sys
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Deque, List, Optional, Sequence

import pandas as pd

from .binance.api import Candle, candles_to_dataframe, fetch_klines_range, fetch_latest_klines, format_utc_ms, now_ms
from .binance.persistence import (
    PersistConfig,
    WriteFanout,
    append_candle,
    append_row,
    extend_candles_csv,
    load_candles_snapshot,
    snapshot_overwrite,
)
from .binance.stream import KlineEvent, KlineStream, StreamError, TradeEvent
from .binance.validation import normalize_candles, validate_candles
from .features.engine import FeatureConfig, compute_features
from .features.window import BoundedWindow
from .monitoring import measure_time, print_memory_breakdown, print_memory_usage, sample_memory


class FeedState(Enum):
    BOOTSTRAPPING = "bootstrapping"
    CONNECTED = "connected"
    STREAMING = "streaming"
    DISCONNECTED = "disconnected"
    TERMINATED = "terminated"


@dataclass
class LiveConfig:
    symbol: str
    interval: str
    features: FeatureConfig
    persist: PersistConfig
    raw_capacity: int = 50_000
    feature_capacity: int = 50_000
    log_trades: bool = False
    max_reconnects: int = 5
    reconnect_base_s: float = 1.0
    reconnect_max_s: float = 60.0
    # event fan-outs allowed in flight before the loop waits; 0 = unbounded
    max_pending_writes: int = 4
    memory_interval_s: float = 60.0
    cache_max_age_h: float = 24.0
    debug: bool = False

    def __post_init__(self) -> None:
        if self.interval != self.features.native_interval:
            raise ValueError(
                f"Feature config native interval {self.features.native_interval} != stream interval {self.interval}"
            )
        if self.raw_capacity <= 0 or self.feature_capacity <= 0:
            raise ValueError("window capacities must be positive")
        if self.feature_capacity > self.raw_capacity:
            raise ValueError("feature_capacity cannot exceed raw_capacity")
        if self.max_reconnects < 0 or self.max_pending_writes < 0:
            raise ValueError("max_reconnects and max_pending_writes must be >= 0")


def snapshot_candles(candles: Sequence[Candle], path: Path) -> Path:
    return snapshot_overwrite(candles_to_dataframe(candles), path)


def closed_only(candles: Sequence[Candle], now: int) -> List[Candle]:
    return [c for c in candles if c.close_time < now]


class LiveFeed:
    """Owns the raw/feature windows and the latest feature table."""

    def __init__(self, cfg: LiveConfig, stream_factory: Optional[Callable[[], KlineStream]] = None):
        self.cfg = cfg
        self.state = FeedState.BOOTSTRAPPING
        self.raw: Optional[BoundedWindow] = None
        self.feature_window: Optional[BoundedWindow] = None
        self.features: Optional[pd.DataFrame] = None
        self.fanout = WriteFanout()
        self._groups: Deque[asyncio.Future] = deque()
        self._stream_factory = stream_factory or (
            lambda: KlineStream(cfg.symbol, cfg.interval, with_trades=cfg.log_trades)
        )
        self.raw_snapshot_path = cfg.persist.raw_snapshot
        self.raw_log_path = cfg.persist.raw_log
        self.features_snapshot_path = cfg.persist.features_snapshot
        self.features_log_path = cfg.persist.features_log

    # -- bootstrap -------------------------------------------------------

    async def load_history(self) -> List[Candle]:
        cfg = self.cfg
        snap = self.raw_snapshot_path
        now = now_ms()
        if snap.exists() and (time.time() - snap.stat().st_mtime) < cfg.cache_max_age_h * 3600:
            print(f"[INFO] Loading cached historical data from {snap}")
            candles = await asyncio.to_thread(load_candles_snapshot, snap)
            if candles:
                start = candles[-1].open_time + cfg.features.native_ms
                gap = await asyncio.to_thread(fetch_klines_range, cfg.symbol, cfg.interval, start, now)
                candles = candles + gap
        else:
            print(f"[INFO] Fetching latest {cfg.raw_capacity} {cfg.interval} candles from Binance...")
            candles = await asyncio.to_thread(fetch_latest_klines, cfg.symbol, cfg.interval, cfg.raw_capacity)
        return closed_only(candles, now)

    async def bootstrap(self, candles: Optional[Sequence[Candle]] = None) -> pd.DataFrame:
        """Seed both windows, compute features once, and persist before streaming."""
        cfg = self.cfg
        self.state = FeedState.BOOTSTRAPPING
        if candles is None:
            candles = await self.load_history()

        candles, dropped = normalize_candles(candles)
        if dropped:
            print(f"[WARN] Dropped {dropped} duplicate historical candle(s)", file=sys.stderr)
        v = validate_candles(candles, cfg.features.native_ms)
        if not v.ok:
            raise ValueError(f"historical candles failed validation: {v.reason}")
        if v.gaps:
            print(f"[WARN] Historical candles {v.reason}", file=sys.stderr)

        self.raw = BoundedWindow(cfg.raw_capacity, candles)
        self.feature_window = BoundedWindow(cfg.feature_capacity, self.raw.tail(cfg.feature_capacity))
        print(f"[INFO] Loaded {len(self.raw)} historical klines for context.")

        with measure_time("initial features"):
            self.features = compute_features(self.feature_window, cfg.features)
        print(f"[INFO] Initial features computed, shape: {self.features.shape}")

        raw_snapshot = self.raw.snapshot()
        self.fanout.submit("raw CSV catch-up", self.raw_log_path, extend_candles_csv, raw_snapshot, self.raw_log_path)
        self.fanout.submit(
            "feature snapshot", self.features_snapshot_path,
            snapshot_overwrite, self.features, self.features_snapshot_path,
        )
        self.fanout.submit("raw snapshot", self.raw_snapshot_path, snapshot_candles, raw_snapshot, self.raw_snapshot_path)
        with measure_time("initial save"):
            await self.fanout.drain()

        if cfg.debug and not self.features.empty:
            print(f"[DEBUG] Latest features:\n{self.features.tail(1).T}")
        print_memory_usage()
        print_memory_breakdown(len(self.raw), self.raw.capacity, self.features)
        return self.features

    # -- streaming -------------------------------------------------------

    async def handle_event(self, event) -> bool:
        """Process one stream event; True when it produced a new feature table."""
        if isinstance(event, TradeEvent):
            if self.cfg.log_trades:
                print(
                    f"Trade | Time: {format_utc_ms(event.event_time)} | Price: {event.price} | Qty: {event.quantity}"
                )
            return False
        if isinstance(event, KlineEvent):
            if not event.is_closed:
                return False
            return await self.on_closed_candle(event.candle)
        return False

    async def on_closed_candle(self, candle: Candle) -> bool:
        if self.raw is None or self.feature_window is None:
            raise RuntimeError("feed not bootstrapped")
        cfg = self.cfg
        latest = self.raw.latest
        if latest is not None and candle.open_time <= latest.open_time:
            print(
                f"[WARN] Skipping candle {format_utc_ms(candle.open_time)}: not newer than "
                f"{format_utc_ms(latest.open_time)}",
                file=sys.stderr,
            )
            return False

        started = time.perf_counter()
        self.raw.push(candle)
        self.feature_window.push(candle)
        with measure_time("compute features", cfg.debug):
            self.features = compute_features(self.feature_window, cfg.features)
        await self._persist(candle)

        print(
            f"Kline | Open: {format_utc_ms(candle.open_time)} | Close: {format_utc_ms(candle.close_time)} "
            f"| High: {candle.high} | Low: {candle.low} | ClosePrice: {candle.close} | Volume: {candle.volume}"
        )
        if cfg.debug:
            print(f"[DEBUG] new message took: {(time.perf_counter() - started) * 1000.0:.2f} ms")
        return True

    async def _persist(self, candle: Candle) -> None:
        features = self.features
        tasks = [
            self.fanout.submit(
                "feature snapshot", self.features_snapshot_path,
                snapshot_overwrite, features, self.features_snapshot_path,
            ),
            self.fanout.submit(
                "raw snapshot", self.raw_snapshot_path,
                snapshot_candles, self.raw.snapshot(), self.raw_snapshot_path,
            ),
            self.fanout.submit(
                "feature row append", self.features_log_path,
                append_row, features.tail(1), self.features_log_path,
            ),
            self.fanout.submit("raw candle append", self.raw_log_path, append_candle, candle, self.raw_log_path),
        ]
        self._groups.append(asyncio.gather(*tasks))
        await self._apply_backpressure()

    async def _apply_backpressure(self) -> None:
        while self._groups and self._groups[0].done():
            self._groups.popleft()
        limit = self.cfg.max_pending_writes
        while limit > 0 and len(self._groups) > limit:
            await self._groups.popleft()

    async def fill_gap(self) -> int:
        """Fetch and process closed candles missed while disconnected."""
        cfg = self.cfg
        latest = self.raw.latest if self.raw is not None else None
        if latest is None:
            return 0
        now = now_ms()
        start = latest.open_time + cfg.features.native_ms
        if start >= now:
            return 0
        try:
            missed = await asyncio.to_thread(fetch_klines_range, cfg.symbol, cfg.interval, start, now)
        except Exception as e:
            print(f"[WARN] Gap fill failed, continuing with a gap: {e}", file=sys.stderr)
            return 0
        n = 0
        for c in closed_only(missed, now):
            if await self.on_closed_candle(c):
                n += 1
        if n:
            print(f"[INFO] Gap fill: processed {n} missed candle(s)")
        return n

    def describe(self) -> str:
        raw_len = len(self.raw) if self.raw is not None else 0
        feat_len = len(self.feature_window) if self.feature_window is not None else 0
        return (
            f"state={self.state.value} raw={raw_len}/{self.cfg.raw_capacity} "
            f"features={feat_len}/{self.cfg.feature_capacity} pending_writes={self.fanout.pending}"
        )

    async def run(self) -> None:
        """Bootstrap (if needed), then stream until the stream ends or fails for good."""
        cfg = self.cfg
        if self.raw is None:
            await self.bootstrap()

        sampler: Optional[asyncio.Task] = None
        if cfg.memory_interval_s > 0:
            sampler = asyncio.get_running_loop().create_task(sample_memory(cfg.memory_interval_s, self.describe))

        failures = 0
        try:
            while True:
                self.state = FeedState.CONNECTED
                stream = self._stream_factory()
                try:
                    async for event in stream.events():
                        if self.state is not FeedState.STREAMING:
                            self.state = FeedState.STREAMING
                            failures = 0
                        await self.handle_event(event)
                    break
                except StreamError as e:
                    self.state = FeedState.DISCONNECTED
                    if failures >= cfg.max_reconnects:
                        print(f"[ERROR] Stream failed: {e}", file=sys.stderr)
                        raise
                    delay = min(cfg.reconnect_base_s * (2 ** failures), cfg.reconnect_max_s)
                    failures += 1
                    print(
                        f"[WARN] Stream failed ({e}); reconnect {failures}/{cfg.max_reconnects} in {delay:.1f}s",
                        file=sys.stderr,
                    )
                    await asyncio.sleep(delay)
                    await self.fill_gap()
        finally:
            await self.shutdown(sampler)

    async def shutdown(self, sampler: Optional[asyncio.Task] = None) -> None:
        self.state = FeedState.TERMINATED
        if sampler is not None:
            sampler.cancel()
            try:
                await sampler
            except asyncio.CancelledError:
                pass
        while self._groups:
            await self._groups.popleft()
        await self.fanout.drain()
        if self.fanout.failures:
            print(f"[WARN] {self.fanout.failures} write(s) failed during this run", file=sys.stderr)

from __future__ import annotations

import asyncio
import sys
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Optional

import pandas as pd
import psutil


def _mb(n_bytes: float) -> float:
    return n_bytes / (1024.0 * 1024.0)


def print_memory_usage() -> None:
    try:
        mem = psutil.Process().memory_info()
    except psutil.Error as e:
        print(f"[MEMORY] Unable to obtain memory stats: {e}", file=sys.stderr)
        return
    print(f"[MEMORY] RSS: {_mb(mem.rss):.2f} MB, Virtual: {_mb(mem.vms):.2f} MB")


def memory_breakdown(raw_len: int, raw_capacity: int, features: Optional[pd.DataFrame]) -> Dict[str, float]:
    """Approximate sizes (MB) of the raw window and the feature table."""
    # 7 slots per candle object plus the deque pointer
    per_candle = 7 * 8 + 8
    out = {
        "raw_used_mb": _mb(raw_len * per_candle),
        "raw_capacity_mb": _mb(raw_capacity * per_candle),
        "features_mb": _mb(int(features.memory_usage(index=True, deep=False).sum())) if features is not None else 0.0,
    }
    out["total_mb"] = out["raw_used_mb"] + out["features_mb"]
    return out


def print_memory_breakdown(raw_len: int, raw_capacity: int, features: Optional[pd.DataFrame]) -> None:
    b = memory_breakdown(raw_len, raw_capacity, features)
    shape = features.shape if features is not None else (0, 0)
    print(
        f"[MEMORY] raw window {raw_len}/{raw_capacity} ({b['raw_used_mb']:.2f} MB) "
        f"features {shape[0]}x{shape[1]} ({b['features_mb']:.2f} MB) total~{b['total_mb']:.2f} MB"
    )


@contextmanager
def measure_time(label: str, enabled: bool = True) -> Iterator[None]:
    start = time.perf_counter()
    try:
        yield
    finally:
        if enabled:
            print(f"[TIMING] {label} took: {(time.perf_counter() - start) * 1000.0:.2f} ms")


async def sample_memory(interval_s: float, describe: Optional[Callable[[], str]] = None) -> None:
    """Print process memory every `interval_s` seconds until cancelled.

    `describe` must return a point-in-time summary string; it is called from
    the event loop so it never races the ingestion path.
    """
    while True:
        await asyncio.sleep(interval_s)
        print_memory_usage()
        if describe is not None:
            print(f"[MEMORY] {describe()}")

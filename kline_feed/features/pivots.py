from __future__ import annotations

from typing import Tuple

import numpy as np
import pandas as pd


DEFAULT_PIVOT_WINDOW = 5000

PIVOT_COLUMNS = [
    "pivot_high_left",
    "pivot_high_right",
    "pivot_low_left",
    "pivot_low_right",
    "pivot_high_max",
    "pivot_low_max",
]


def _run_length(prices: np.ndarray, window: int, kind: str, side: str) -> np.ndarray:
    """Count how many neighbours on `side` keep the pivot condition, stopping at the first miss.

    Works one neighbour offset at a time over the whole array, so the cost is
    O(n * depth) where depth is the longest run found (capped at `window`).
    """
    n = prices.size
    counts = np.zeros(n, dtype="int64")
    alive = ~np.isnan(prices)
    neighbour = np.empty(n, dtype="float64")
    for d in range(1, min(window, n - 1) + 1):
        if not alive.any():
            break
        neighbour.fill(np.nan)
        if side == "left":
            neighbour[d:] = prices[:-d]
        else:
            neighbour[:-d] = prices[d:]
        with np.errstate(invalid="ignore"):
            ok = neighbour < prices if kind == "high" else neighbour > prices
        ok &= alive
        counts += ok
        alive = ok
    return counts


def pivot_strength(prices, window: int = DEFAULT_PIVOT_WINDOW, kind: str = "high") -> Tuple[np.ndarray, np.ndarray]:
    """Left/right pivot strength for every position of `prices`.

    kind="high": neighbours must be strictly lower; kind="low": strictly higher.
    A NaN neighbour ends the run, a NaN price scores 0 on both sides.
    """
    if kind not in ("high", "low"):
        raise ValueError(f"kind must be 'high' or 'low', got {kind!r}")
    if window < 1:
        raise ValueError("pivot window must be >= 1")
    arr = np.asarray(prices, dtype="float64")
    left = _run_length(arr, window, kind, "left")
    right = _run_length(arr, window, kind, "right")
    return left, right


def add_pivot_features(df: pd.DataFrame, window: int = DEFAULT_PIVOT_WINDOW) -> pd.DataFrame:
    """Append PIVOT_COLUMNS computed from `high` and `low`; returns the same frame."""
    high_left, high_right = pivot_strength(df["high"].to_numpy(dtype="float64"), window, "high")
    low_left, low_right = pivot_strength(df["low"].to_numpy(dtype="float64"), window, "low")
    df["pivot_high_left"] = high_left
    df["pivot_high_right"] = high_right
    df["pivot_low_left"] = low_left
    df["pivot_low_right"] = low_right
    # a pivot is only as strong as its weaker side
    df["pivot_high_max"] = np.minimum(high_left, high_right)
    df["pivot_low_max"] = np.minimum(low_left, low_right)
    return df

#!/usr/bin/env python3
from __future__ import annotations

from pathlib import Path
import sys

import pandas as pd


def _proj_root() -> Path:
    return Path(__file__).resolve().parents[2]


if str(_proj_root()) not in sys.path:
    sys.path.append(str(_proj_root()))

from kline_feed.features.resample import resample_closes  # noqa: E402


M15 = 900_000
H1 = 3_600_000
T0 = 1704067200000  # 2024-01-01 00:00:00 UTC


def _table(slots):
    """15m rows at the given slot numbers (slot 0 = 00:00), close = 100 + slot."""
    return pd.DataFrame(
        {
            "open_time": [T0 + s * M15 for s in slots],
            "close": [100.0 + s for s in slots],
        }
    )


def test_newest_bucket_is_not_emitted():
    out = resample_closes(_table(range(8)), H1)  # 00:00 .. 01:45
    assert list(out.columns) == ["datetime", "close"]
    assert list(out["datetime"].astype(str)) == ["2024-01-01 01:00:00"]
    assert out["close"].tolist() == [103.0]


def test_bucket_closes_once_next_bucket_starts():
    out = resample_closes(_table(range(9)), H1)  # one candle at 02:00
    assert list(out["datetime"].astype(str)) == ["2024-01-01 01:00:00", "2024-01-01 02:00:00"]
    assert out["close"].tolist() == [103.0, 107.0]


def test_empty_buckets_are_omitted():
    # 00:00-00:45, then 03:00-03:15, then 05:00
    out = resample_closes(_table([0, 1, 2, 3, 12, 13, 20]), H1)
    assert list(out["datetime"].astype(str)) == ["2024-01-01 01:00:00", "2024-01-01 04:00:00"]
    assert out["close"].tolist() == [103.0, 113.0]


def test_edges_are_epoch_anchored():
    # window starting mid-hour still uses whole-hour edges
    out = resample_closes(_table(range(2, 12)), H1)
    assert list(out["datetime"].astype(str)) == ["2024-01-01 01:00:00", "2024-01-01 02:00:00"]
    assert out["close"].tolist() == [103.0, 107.0]
    h4 = resample_closes(_table(range(2, 40)), 4 * H1)
    assert list(h4["datetime"].astype(str)) == ["2024-01-01 04:00:00", "2024-01-01 08:00:00"]


def test_resampling_is_repeatable():
    t = _table(range(50))
    a = resample_closes(t, H1)
    b = resample_closes(t, H1)
    pd.testing.assert_frame_equal(a, b)


def test_degenerate_inputs():
    assert resample_closes(_table([]).astype({"open_time": "int64", "close": float}), H1).empty
    assert resample_closes(_table([0, 1]), H1).empty


def main() -> None:
    test_newest_bucket_is_not_emitted()
    test_bucket_closes_once_next_bucket_starts()
    test_empty_buckets_are_omitted()
    test_edges_are_epoch_anchored()
    test_resampling_is_repeatable()
    test_degenerate_inputs()
    print('resample tests OK')


if __name__ == '__main__':
    main()

from __future__ import annotations

import pandas as pd


def bucket_index(open_time_ms: pd.Series, timeframe_ms: int) -> pd.Series:
    """Epoch-anchored bucket number: k such that open_time in [k*T, (k+1)*T)."""
    return open_time_ms.astype("int64") // int(timeframe_ms)


def resample_closes(table: pd.DataFrame, timeframe_ms: int) -> pd.DataFrame:
    """Bucket native candles into `timeframe_ms` periods; keep the last close per bucket.

    Buckets are half-open [k*T, (k+1)*T) anchored at the Unix epoch, so bucket
    edges do not move as the window slides. Each emitted row is stamped with
    the bucket's right edge. The bucket holding the newest candle is dropped:
    it only counts as closed once a candle from a later bucket has arrived.
    Empty buckets produce no row.

    `table` needs `open_time` (epoch ms) and `close`, sorted by open_time.
    """
    if timeframe_ms <= 0:
        raise ValueError("timeframe_ms must be positive")
    if table.empty:
        return _empty()

    buckets = bucket_index(table["open_time"], timeframe_ms)
    last_close = table["close"].groupby(buckets.to_numpy(), sort=True).last()
    # newest bucket is still forming
    last_close = last_close.iloc[:-1]
    if last_close.empty:
        return _empty()

    right_edge_ms = (last_close.index.to_numpy(dtype="int64") + 1) * int(timeframe_ms)
    out = pd.DataFrame(
        {
            "datetime": pd.to_datetime(right_edge_ms, unit="ms").astype("datetime64[ns]"),
            "close": last_close.to_numpy(dtype="float64"),
        }
    )
    return out


def _empty() -> pd.DataFrame:
    return pd.DataFrame(
        {"datetime": pd.Series([], dtype="datetime64[ns]"), "close": pd.Series([], dtype="float64")}
    )

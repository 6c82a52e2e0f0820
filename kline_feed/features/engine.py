"""Multi-timeframe feature table.

The table is always rebuilt from the full window it is given: native EMAs,
higher-timeframe EMAs (resampled, then carried forward onto native rows) and
pivot strengths. Same window in, same table out.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Sequence, Tuple

import numpy as np
import pandas as pd

from ..binance.api import CANDLE_COLUMNS, Candle, candles_to_dataframe, interval_label, interval_to_ms
from .ema import ema
from .pivots import DEFAULT_PIVOT_WINDOW, PIVOT_COLUMNS, add_pivot_features
from .resample import resample_closes


DEFAULT_EMA_SPANS = (50, 200)
DEFAULT_TIMEFRAMES = ("1h", "4h")


@dataclass(frozen=True)
class FeatureConfig:
    native_interval: str
    ema_pairs: Tuple[Tuple[int, str], ...]
    pivot_window: int = DEFAULT_PIVOT_WINDOW

    def __post_init__(self) -> None:
        native_ms = interval_to_ms(self.native_interval)
        object.__setattr__(self, "ema_pairs", tuple((int(s), str(tf)) for s, tf in self.ema_pairs))
        seen = set()
        for span, tf in self.ema_pairs:
            if span < 1:
                raise ValueError(f"EMA span must be >= 1, got {span}")
            tf_ms = interval_to_ms(tf)
            if tf_ms < native_ms or tf_ms % native_ms != 0:
                raise ValueError(
                    f"Timeframe {tf} is not a whole multiple of native interval {self.native_interval}"
                )
            if (span, tf) in seen:
                raise ValueError(f"Duplicate EMA pair ({span}, {tf})")
            seen.add((span, tf))
        if self.pivot_window < 1:
            raise ValueError("pivot_window must be >= 1")

    @property
    def native_ms(self) -> int:
        return interval_to_ms(self.native_interval)

    def ema_column(self, span: int, timeframe: str) -> str:
        return f"ema{span}_{interval_label(timeframe)}"

    def ema_columns(self) -> List[str]:
        return [self.ema_column(s, tf) for s, tf in self.ema_pairs]

    def columns(self) -> List[str]:
        return ["datetime", *CANDLE_COLUMNS, *self.ema_columns(), *PIVOT_COLUMNS]

    def by_timeframe(self) -> Dict[str, List[int]]:
        """Spans grouped by timeframe, in configuration order."""
        out: Dict[str, List[int]] = {}
        for span, tf in self.ema_pairs:
            out.setdefault(tf, []).append(span)
        return out


def default_feature_config(
    native_interval: str,
    spans: Sequence[int] = DEFAULT_EMA_SPANS,
    timeframes: Sequence[str] = DEFAULT_TIMEFRAMES,
    pivot_window: int = DEFAULT_PIVOT_WINDOW,
) -> FeatureConfig:
    """spans x (native, *timeframes); timeframes equal to the native interval are folded in."""
    tfs = [native_interval] + [tf for tf in timeframes if tf != native_interval]
    pairs = tuple((span, tf) for tf in tfs for span in spans)
    return FeatureConfig(native_interval=native_interval, ema_pairs=pairs, pivot_window=pivot_window)


def native_table(candles: Iterable[Candle]) -> pd.DataFrame:
    df = candles_to_dataframe(candles)
    df.insert(0, "datetime", pd.to_datetime(df["open_time"], unit="ms").astype("datetime64[ns]"))
    return df


def merge_forward(native: pd.DataFrame, derived: pd.DataFrame, column: str) -> pd.Series:
    """Align a sparse `derived[column]` onto native rows by the last value at or before each row.

    Rows earlier than the first derived timestamp get NaN.
    """
    if derived.empty or native.empty:
        return pd.Series(np.nan, index=native.index, dtype="float64")
    merged = pd.merge_asof(
        native[["datetime"]],
        derived[["datetime", column]],
        on="datetime",
        direction="backward",
        allow_exact_matches=True,
    )
    return pd.Series(merged[column].to_numpy(dtype="float64"), index=native.index)


def compute_features(candles: Iterable[Candle], config: FeatureConfig) -> pd.DataFrame:
    """Full feature table for `candles` (one row per candle, window order)."""
    df = native_table(candles)
    close = df["close"].to_numpy(dtype="float64")

    ema_values: Dict[str, pd.Series] = {}
    for tf, spans in config.by_timeframe().items():
        if tf == config.native_interval:
            for span in spans:
                ema_values[config.ema_column(span, tf)] = pd.Series(ema(close, span), index=df.index)
            continue
        resampled = resample_closes(df, interval_to_ms(tf))
        for span in spans:
            col = config.ema_column(span, tf)
            derived = pd.DataFrame({"datetime": resampled["datetime"], col: ema(resampled["close"], span)})
            ema_values[col] = merge_forward(df, derived, col)

    # configuration order, independent of grouping
    for col in config.ema_columns():
        df[col] = ema_values[col]

    df = add_pivot_features(df, config.pivot_window)
    return df.loc[:, config.columns()]

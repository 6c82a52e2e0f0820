"""Feature computation over candle windows: EMA, resampling, pivots."""

__all__ = [
    "engine",
    "ema",
    "pivots",
    "resample",
    "window",
]

"""Kline Feature Feed - live candle windows with multi-timeframe indicators.

Provides:
- Binance kline feed (historical bootstrap over REST, live websocket stream)
- Bounded candle windows, resampling, EMA and pivot-strength features
- Parquet snapshots, CSV logs and a DuckDB archive for backfills
"""

__version__ = "0.1.0"

# Expose main submodules
from . import binance
from . import features

__all__ = ["binance", "features", "__version__"]

"""Binance spot kline feed for a single symbol.

Implements historical pulls, the websocket stream, validation, file persistence
and the DuckDB archive used by backfills.
"""

__all__ = [
    "api",
    "cli",
    "db",
    "persistence",
    "stream",
    "validation",
]

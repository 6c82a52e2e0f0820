from __future__ import annotations

from pathlib import Path
from typing import Iterable, Optional

import duckdb  # type: ignore

from .api import Candle, candles_to_dataframe


def table_name(symbol: str, interval: str) -> str:
    return f"klines_{symbol.lower()}_{interval.lower()}"


def _connect(db_path: Path):
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return duckdb.connect(str(db_path))


def ensure_table(db_path: Path, table: str) -> None:
    con = _connect(db_path)
    try:
        con.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {table} (
              open_time BIGINT,
              open DOUBLE,
              high DOUBLE,
              low DOUBLE,
              close DOUBLE,
              volume DOUBLE,
              close_time BIGINT,
              created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );
            """
        )
        # Lightweight uniqueness guard via index; DuckDB does not enforce PK by default
        con.execute(f"CREATE UNIQUE INDEX IF NOT EXISTS idx_{table}_open_time ON {table}(open_time);")
    finally:
        con.close()


def append_candles_if_absent(db_path: Path, table: str, candles: Iterable[Candle]) -> int:
    """Insert candles whose open_time is not stored yet. Returns the number inserted."""
    df = candles_to_dataframe(candles)
    if df.empty:
        return 0
    df = df.drop_duplicates("open_time", keep="last")
    con = _connect(db_path)
    try:
        con.register("incoming", df)
        before = con.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
        con.execute(
            f"""
            INSERT INTO {table} (open_time, open, high, low, close, volume, close_time)
            SELECT i.open_time, i.open, i.high, i.low, i.close, i.volume, i.close_time
            FROM incoming i
            WHERE NOT EXISTS (
                SELECT 1 FROM {table} t WHERE t.open_time = i.open_time
            )
            ORDER BY i.open_time;
            """
        )
        after = con.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
        con.unregister("incoming")
        return int(after - before)
    finally:
        con.close()


def coverage_stats(db_path: Path, table: str) -> Optional[tuple[int, int, int]]:
    """(min open_time, max open_time, row count) or None when the table is empty."""
    con = _connect(db_path)
    try:
        q = f"SELECT MIN(open_time), MAX(open_time), COUNT(*) FROM {table}"
        res = con.execute(q).fetchone()
        if res is None or res[0] is None:
            return None
        return int(res[0]), int(res[1]), int(res[2])
    finally:
        con.close()

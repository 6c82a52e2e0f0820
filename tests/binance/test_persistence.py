#!/usr/bin/env python3
from __future__ import annotations

import asyncio
from pathlib import Path
import shutil
import sys
import threading
import time

import pandas as pd


def _proj_root() -> Path:
    return Path(__file__).resolve().parents[2]


if str(_proj_root()) not in sys.path:
    sys.path.append(str(_proj_root()))

from kline_feed.binance.api import Candle, candles_to_dataframe  # noqa: E402
from kline_feed.binance.persistence import (  # noqa: E402
    PersistConfig,
    WriteFanout,
    append_candle,
    append_row,
    extend_candles_csv,
    last_logged_open_time,
    load_candles_snapshot,
    parse_utc_text,
    snapshot_overwrite,
)


T0 = 1704067200000
M15 = 900_000


def _scratch(name: str) -> Path:
    d = _proj_root() / '.tmp' / 'feed_tests' / name
    shutil.rmtree(d, ignore_errors=True)
    d.mkdir(parents=True, exist_ok=True)
    return d


def make_c(i: int, close: float = 100.0) -> Candle:
    ot = T0 + i * M15
    return Candle(ot, close - 0.5, close + 1.0, close - 1.0, close, 12.5, ot + M15 - 1)


def test_persist_paths():
    root = _scratch('paths')
    cfg = PersistConfig(root, 'btcusdt_15m')
    assert cfg.raw_snapshot == root / 'btcusdt_15m' / 'btcusdt_15m_raw.parquet'
    assert cfg.raw_log.name == 'btcusdt_15m_raw.csv'
    assert cfg.features_snapshot.name == 'btcusdt_15m_features.parquet'
    assert cfg.features_log.name == 'btcusdt_15m_features_stream.csv'
    assert (root / 'btcusdt_15m').is_dir()


def test_snapshot_formats():
    d = _scratch('snapshots')
    candles = [make_c(0, 100.0), make_c(1, 101.0)]
    df = candles_to_dataframe(candles)

    pq = snapshot_overwrite(df, d / 'raw.parquet')
    back = pd.read_parquet(pq)
    assert str(back['open_time'].dtype) == 'int64'
    assert back['close'].tolist() == [100.0, 101.0]
    assert load_candles_snapshot(pq) == candles
    assert not (d / 'raw.parquet.part').exists()

    csv = snapshot_overwrite(df, d / 'raw.csv')
    text = pd.read_csv(csv)
    assert text['open_time'].tolist() == ['2024-01-01 00:00:00.000 UTC', '2024-01-01 00:15:00.000 UTC']
    assert text['close_time'].iloc[0] == '2024-01-01 00:14:59.999 UTC'

    # overwrite replaces, never appends
    snapshot_overwrite(df.iloc[:1], d / 'raw.parquet')
    assert len(pd.read_parquet(d / 'raw.parquet')) == 1

    try:
        snapshot_overwrite(df, d / 'raw.json')
    except ValueError:
        pass
    else:
        raise AssertionError('unsupported suffix accepted')


def test_append_header_once():
    d = _scratch('append')
    path = d / 'features_stream.csv'
    row = pd.DataFrame([{'datetime': pd.Timestamp('2024-01-01 00:15:00'), 'open_time': T0, 'close': 1.5}])
    append_row(row, path)
    append_row(row.assign(close=2.5), path)
    lines = path.read_text().splitlines()
    assert lines[0] == 'datetime,open_time,close'
    assert len(lines) == 3
    assert lines[1] == '2024-01-01 00:15:00.000 UTC,2024-01-01 00:00:00.000 UTC,1.5'

    raw = d / 'raw.csv'
    append_candle(make_c(0), raw)
    append_candle(make_c(1), raw)
    df = pd.read_csv(raw)
    assert list(df.columns) == ['open_time', 'open', 'high', 'low', 'close', 'volume', 'close_time']
    assert df['open_time'].tolist()[1] == '2024-01-01 00:15:00.000 UTC'


def test_raw_log_catches_up():
    d = _scratch('raw_catch_up')
    path = d / 'raw.csv'
    assert extend_candles_csv([make_c(0), make_c(1)], path) == 2
    assert last_logged_open_time(path) == make_c(1).open_time

    # a later start sees overlapping history plus candles missed while down
    assert extend_candles_csv([make_c(i) for i in range(5)], path) == 3
    assert extend_candles_csv([make_c(i) for i in range(5)], path) == 0
    df = pd.read_csv(path)
    assert len(df) == 5
    assert df['open_time'].iloc[-1] == '2024-01-01 01:00:00.000 UTC'
    assert last_logged_open_time(path) == make_c(4).open_time

    header_only = d / 'empty.csv'
    header_only.write_text('open_time,open,high,low,close,volume,close_time\n')
    assert last_logged_open_time(header_only) is None
    assert extend_candles_csv([make_c(0)], header_only) == 1
    assert len(pd.read_csv(header_only)) == 1

    assert parse_utc_text('2024-03-21 14:32:17.456 UTC') == pd.Timestamp('2024-03-21 14:32:17.456', tz='UTC').value // 1_000_000


def test_append_row_starts_new_log_when_columns_change():
    d = _scratch('columns_change')
    path = d / 'features_stream.csv'
    append_row(pd.DataFrame([{'open_time': T0, 'ema50_m15': 1.0}]), path)
    append_row(pd.DataFrame([{'open_time': T0 + M15, 'ema20_m15': 2.0}]), path)

    lines = path.read_text().splitlines()
    assert lines[0] == 'open_time,ema20_m15'
    assert len(lines) == 2
    moved = [p for p in d.glob('features_stream_*.csv')]
    assert len(moved) == 1
    assert moved[0].read_text().splitlines()[0] == 'open_time,ema50_m15'


def test_fanout_isolates_failures_and_keeps_order():
    d = _scratch('fanout')
    log = d / 'ordered.csv'
    seen = []
    lock = threading.Lock()

    def slow_append(i: int) -> None:
        # later submissions finish faster unless serialized per path
        time.sleep(0.02 * (3 - i))
        with lock:
            seen.append(i)
        append_candle(make_c(i), log)

    def boom() -> None:
        raise OSError('disk full')

    async def run() -> WriteFanout:
        fan = WriteFanout()
        for i in range(3):
            fan.submit('ordered append', log, slow_append, i)
        failed = fan.submit('broken write', d / 'other.csv', boom)
        ok = fan.submit('snapshot', d / 'snap.parquet', snapshot_overwrite, pd.DataFrame({'a': [1]}), d / 'snap.parquet')
        await fan.drain()
        assert failed.result() is False
        assert ok.result() is True
        assert fan.pending == 0
        return fan

    fan = asyncio.run(run())
    assert fan.failures == 1
    assert seen == [0, 1, 2]
    assert len(pd.read_csv(log)) == 3
    assert (d / 'snap.parquet').exists()


def main() -> None:
    test_persist_paths()
    test_snapshot_formats()
    test_append_header_once()
    test_raw_log_catches_up()
    test_append_row_starts_new_log_when_columns_change()
    test_fanout_isolates_failures_and_keeps_order()
    print('persistence tests OK')


if __name__ == '__main__':
    main()

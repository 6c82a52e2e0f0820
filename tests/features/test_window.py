#!/usr/bin/env python3
from __future__ import annotations

from pathlib import Path
import sys


def _proj_root() -> Path:
    return Path(__file__).resolve().parents[2]


if str(_proj_root()) not in sys.path:
    sys.path.append(str(_proj_root()))

from kline_feed.binance.api import Candle  # noqa: E402
from kline_feed.features.window import BoundedWindow  # noqa: E402


M15 = 900_000
T0 = 1704067200000  # 2024-01-01 00:00:00 UTC


def make_c(i: int, close: float = 100.0) -> Candle:
    ot = T0 + i * M15
    return Candle(open_time=ot, open=close, high=close + 1, low=close - 1, close=close, volume=1.0, close_time=ot + M15 - 1)


def test_push_evicts_oldest_fifo():
    w = BoundedWindow(5)
    evicted = [w.push(make_c(i)) for i in range(8)]
    assert len(w) == 5 == w.capacity
    assert evicted[:5] == [None] * 5
    assert [c.open_time for c in evicted[5:]] == [make_c(i).open_time for i in range(3)]
    # oldest survivor is the smallest open_time among the last `capacity` pushes
    assert w.oldest == make_c(3)
    assert w.latest == make_c(7)
    assert [c.open_time for c in w] == [make_c(i).open_time for i in range(3, 8)]


def test_seeded_at_capacity_then_one_more():
    seed = [make_c(i) for i in range(10)]
    w = BoundedWindow(10, seed)
    assert len(w) == 10
    w.push(make_c(10))
    assert len(w) == 10
    assert make_c(0) not in w.snapshot()
    assert w.oldest == make_c(1)


def test_seed_longer_than_capacity_keeps_suffix():
    w = BoundedWindow(3, [make_c(i) for i in range(6)])
    assert w.snapshot() == (make_c(3), make_c(4), make_c(5))


def test_snapshot_is_point_in_time():
    w = BoundedWindow(3, [make_c(0), make_c(1)])
    snap = w.snapshot()
    w.push(make_c(2))
    w.push(make_c(3))
    assert snap == (make_c(0), make_c(1))
    assert len(w) == 3


def test_tail_and_empty_window():
    w = BoundedWindow(4)
    assert w.latest is None and w.oldest is None
    assert w.tail(2) == ()
    for i in range(4):
        w.push(make_c(i))
    assert w.tail(2) == (make_c(2), make_c(3))
    assert w.tail(10) == w.snapshot()
    assert w.tail(0) == ()


def test_capacity_must_be_positive():
    try:
        BoundedWindow(0)
    except ValueError:
        pass
    else:
        raise AssertionError("capacity 0 accepted")


def main() -> None:
    test_push_evicts_oldest_fifo()
    test_seeded_at_capacity_then_one_more()
    test_seed_longer_than_capacity_keeps_suffix()
    test_snapshot_is_point_in_time()
    test_tail_and_empty_window()
    test_capacity_must_be_positive()
    print('window tests OK')


if __name__ == '__main__':
    main()

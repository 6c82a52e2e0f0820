#!/usr/bin/env python3
from __future__ import annotations

from pathlib import Path
import sys

import numpy as np


def _proj_root() -> Path:
    return Path(__file__).resolve().parents[2]


if str(_proj_root()) not in sys.path:
    sys.path.append(str(_proj_root()))

from kline_feed.features.ema import ema, ema_alpha  # noqa: E402


def _reference(values, span):
    alpha = 2.0 / (span + 1.0)
    out = [float(values[0])]
    for v in values[1:]:
        out.append(alpha * v + (1 - alpha) * out[-1])
    return np.array(out)


def test_constant_series_is_its_own_ema():
    for span in (1, 2, 50, 200):
        for price in (100.0, 42123.57, 0.000123):
            out = ema([price] * 300, span)
            assert out.shape == (300,)
            assert np.allclose(out, price, rtol=0.0, atol=abs(price) * 1e-12)


def test_matches_recurrence():
    rng = np.random.default_rng(7)
    closes = 100 + rng.normal(0, 1, 500).cumsum()
    for span in (3, 50, 200):
        out = ema(closes, span)
        assert out[0] == closes[0]
        assert np.allclose(out, _reference(closes, span), rtol=1e-12, atol=0.0)


def test_edge_lengths():
    assert ema([5.5], 50).tolist() == [5.5]
    assert ema([], 50).size == 0
    assert ema_alpha(1) == 1.0
    # span 1 follows the input exactly
    assert ema([1.0, 4.0, 2.0], 1).tolist() == [1.0, 4.0, 2.0]


def test_invalid_span():
    for span in (0, -3):
        try:
            ema([1.0, 2.0], span)
        except ValueError:
            continue
        raise AssertionError(f"span {span} accepted")


def main() -> None:
    test_constant_series_is_its_own_ema()
    test_matches_recurrence()
    test_edge_lengths()
    test_invalid_span()
    print('ema tests OK')


if __name__ == '__main__':
    main()

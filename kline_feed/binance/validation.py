from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence, Tuple

from .api import Candle


@dataclass(frozen=True)
class ValidationResult:
    ok: bool
    reason: str
    validated_rows: int
    gaps: int = 0


def validate_candles(candles: Sequence[Candle], interval_ms: int) -> ValidationResult:
    """Check a candle sequence before it seeds a window.

    - every candle has open_time < close_time
    - open_time strictly increasing (sorted, no duplicates)
    - gaps (open_time steps larger than interval_ms) are counted, not failed
    - steps that are not a whole multiple of interval_ms fail
    """
    if not candles:
        return ValidationResult(True, "empty", 0)

    gaps = 0
    prev = None
    for i, c in enumerate(candles):
        if c.open_time >= c.close_time:
            return ValidationResult(False, f"row {i}: open_time >= close_time", 0)
        if prev is not None:
            step = c.open_time - prev.open_time
            if step == 0:
                return ValidationResult(False, f"row {i}: duplicate open_time {c.open_time}", 0)
            if step < 0:
                return ValidationResult(False, f"row {i}: open_time not increasing", 0)
            if step % interval_ms != 0:
                return ValidationResult(False, f"row {i}: step {step} ms is off the {interval_ms} ms grid", 0)
            if step > interval_ms:
                gaps += 1
        prev = c

    reason = "validated" if gaps == 0 else f"validated with {gaps} gap(s)"
    return ValidationResult(True, reason, len(candles), gaps)


def normalize_candles(candles: Sequence[Candle]) -> Tuple[List[Candle], int]:
    """Sort by open_time and drop duplicate open_times (last one wins).

    Returns (candles, n_dropped).
    """
    by_open = {}
    for c in candles:
        by_open[c.open_time] = c
    out = [by_open[k] for k in sorted(by_open)]
    return out, len(candles) - len(out)

from __future__ import annotations

from typing import Sequence, Union

import numpy as np
import pandas as pd


def ema_alpha(span: int) -> float:
    if span < 1:
        raise ValueError(f"EMA span must be >= 1, got {span}")
    return 2.0 / (span + 1.0)


def ema(values: Union[Sequence[float], np.ndarray, pd.Series], span: int) -> np.ndarray:
    """Exponential moving average of `values`, oldest first.

    ema[0] = x[0]; ema[i] = alpha * x[i] + (1 - alpha) * ema[i-1], alpha = 2 / (span + 1).
    No warm-up masking: every position gets a value.
    """
    alpha = ema_alpha(span)
    arr = np.asarray(values, dtype="float64")
    if arr.size == 0:
        return arr.copy()
    return pd.Series(arr).ewm(alpha=alpha, adjust=False).mean().to_numpy(dtype="float64")

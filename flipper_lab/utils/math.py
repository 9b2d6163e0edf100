"""
Moving-average utilities for regime filtering.

**Conceptual**: The regime filter compares a reference instrument's price with
its own moving average. This module provides the averages themselves and a
date-keyed lookup built from a bar series, so callers can ask "what was the
average (and the raw value) on date D?" without re-walking the series.

All functions assume ascending (oldest-first) input, which is what Bar lists
always are. Warm-up rows before `window` observations exist are NaN; a
missing average means "no classification" downstream.
"""

from typing import Sequence

import numpy as np
import pandas as pd

from flipper_lab.data.schemas import Bar


SUPPORTED_AVERAGE_TYPES = ('SMA', 'EMA')


def compute_moving_average_simple(prices: pd.Series, window: int) -> pd.Series:
    """
    Compute a simple moving average (SMA).

    **Mathematical**: At each time t,
        SMA_t = (1 / window) * Σ(P_{t-i}) for i = 0 to window-1
    i.e. the arithmetic mean of the last `window` values up to and including t.

    **Edge cases**:
    - window = 1 returns the original series.
    - If the series is shorter than window, every value is NaN.

    Args:
        prices: Ascending time series of prices (or any numeric feature).
        window: Number of periods to average (positive integer).

    Returns:
        SMA series aligned with the input index.

    Raises:
        ValueError: If window < 1.
    """
    if window < 1:
        raise ValueError(f"window must be >= 1, got {window}")
    return prices.rolling(window=window).mean()


def compute_moving_average_exponential(prices: pd.Series, span: int) -> pd.Series:
    """
    Compute an exponential moving average (EMA) with a full-window warm-up.

    **Mathematical**: EMA_t = α * P_t + (1 - α) * EMA_{t-1}, α = 2 / (span + 1).
    Uses pandas ewm(adjust=False). The first span-1 values are NaN so an EMA
    regime reads "unknown" for as long as an SMA regime of the same lookback.

    Raises:
        ValueError: If span < 1.
    """
    if span < 1:
        raise ValueError(f"span must be >= 1, got {span}")
    return prices.ewm(span=span, adjust=False, min_periods=span).mean()


def moving_average_lookup(
    bars: Sequence[Bar],
    field: str = 'close',
    lookback: int = 200,
    include_value: bool = True,
    average_type: str = 'SMA',
) -> pd.DataFrame:
    """
    Build a date-indexed lookup of a moving average over one bar field.

    Args:
        bars: Ascending bars of one instrument.
        field: Bar attribute to average ('close', 'volume', ...).
        lookback: Window length in bars.
        include_value: If True, the raw field value is included as `value`.
        average_type: 'SMA' or 'EMA'.

    Returns:
        DataFrame indexed by bar date with column `average` (NaN during warm-up)
        and, when requested, `value`.

    Raises:
        ValueError: For an unsupported average_type or invalid lookback.
    """
    average_type = average_type.upper()
    if average_type not in SUPPORTED_AVERAGE_TYPES:
        raise ValueError(
            f"Unsupported average type '{average_type}'. "
            f"Supported: {SUPPORTED_AVERAGE_TYPES}"
        )

    index = pd.DatetimeIndex([bar.date for bar in bars], name='date')
    values = pd.Series(
        [np.nan if getattr(bar, field) is None else getattr(bar, field) for bar in bars],
        index=index,
        dtype=float,
    )

    if average_type == 'SMA':
        average = compute_moving_average_simple(values, lookback)
    else:
        average = compute_moving_average_exponential(values, lookback)

    lookup = pd.DataFrame({'average': average})
    if include_value:
        lookup['value'] = values
    return lookup

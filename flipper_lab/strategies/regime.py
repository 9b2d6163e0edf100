"""
Regime filter: date-keyed bull/bear classification of a reference instrument.

**Conceptual**: Breakout entries work far better when the broad market is in an
uptrend. The regime filter answers "was the market bullish on date D?" by
comparing a reference instrument's close (an index, by default id 19002) with
its own moving average:
  - price `op` average  -> BULL
  - otherwise           -> BEAR
  - no average yet (warm-up) or no price -> None

The filter is built from one price fetch and then cached by the Strategy
that owns it, so a universe-wide run fetches the reference series once.

**No look-ahead**: The strategy engine looks up the regime for the *decision*
bar's date (bar i-1), whose close and average are both known by then.
"""

import logging
import operator as op
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

import pandas as pd

from flipper_lab.data.schemas import Bar, InstrumentId, coerce_timestamp
from flipper_lab.strategies.context import Bias
from flipper_lab.utils.math import SUPPORTED_AVERAGE_TYPES, moving_average_lookup
from flipper_lab.venues.base import PriceProvider


logger = logging.getLogger(__name__)

COMPARISON_OPERATORS = {
    '==': op.eq,
    '<=': op.le,
    '>=': op.ge,
}


@dataclass(frozen=True)
class RegimeSpec:
    """
    How to classify the regime.

    Attributes:
        instrument_id: Reference instrument whose closes are classified.
        lookback: Moving-average window in bars.
        operator: One of '==', '<=', '>='; BULL when `price <op> average`.
        average_type: 'SMA' or 'EMA'.
    """
    instrument_id: InstrumentId = 19002
    lookback: int = 200
    operator: str = '>='
    average_type: str = 'SMA'

    def __post_init__(self):
        if self.operator not in COMPARISON_OPERATORS:
            raise ValueError(f"Invalid operator '{self.operator}'")
        if self.lookback < 1:
            raise ValueError(f"lookback must be >= 1, got {self.lookback}")
        if self.average_type.upper() not in SUPPORTED_AVERAGE_TYPES:
            raise ValueError(f"Unsupported average type '{self.average_type}'")


def create_comparator(operator: str) -> Callable[[Optional[float], Optional[float]], Optional[Bias]]:
    """
    Build a price-vs-average classifier for the given operator.

    Raises:
        ValueError: For an operator other than '==', '<=', '>='.
    """
    try:
        compare = COMPARISON_OPERATORS[operator]
    except KeyError:
        raise ValueError(f"Invalid operator '{operator}'")

    def comparator(price: Optional[float], average: Optional[float]) -> Optional[Bias]:
        if price is None or average is None or pd.isna(price) or pd.isna(average):
            return None
        return Bias.BULL if compare(price, average) else Bias.BEAR

    return comparator


class RegimeFilter:
    """
    Immutable date -> Optional[Bias] lookup.

    Args:
        classifications: Series indexed by timestamp with Bias values (or None).
    """

    def __init__(self, classifications: pd.Series):
        self._classifications = classifications.sort_index()

    @classmethod
    def from_bars(cls, bars: Sequence[Bar], spec: RegimeSpec) -> "RegimeFilter":
        lookup = moving_average_lookup(
            bars,
            field='close',
            lookback=spec.lookback,
            include_value=True,
            average_type=spec.average_type,
        )
        comparator = create_comparator(spec.operator)
        classifications = pd.Series(
            [comparator(value, average) for value, average in zip(lookup['value'], lookup['average'])],
            index=lookup.index,
            dtype=object,
        )
        return cls(classifications)

    def __len__(self) -> int:
        return len(self._classifications)

    def lookup(self, date) -> Optional[Bias]:
        """Classification on `date`, or None if unknown."""
        if date is None:
            return None
        return self._classifications.get(coerce_timestamp(date))

    def latest(self) -> Optional[Bias]:
        if self._classifications.empty:
            return None
        return self._classifications.iloc[-1]


async def build_regime_filter(price_provider: PriceProvider, spec: RegimeSpec) -> RegimeFilter:
    """
    Fetch the reference instrument's history and build its regime filter.

    Args:
        price_provider: Source of the reference history.
        spec: Regime classification settings.
    """
    bars = await price_provider.fetch_price_history(spec.instrument_id, fields=('date', 'close'))
    regime_filter = RegimeFilter.from_bars(bars, spec)
    latest = regime_filter.latest()
    logger.info(
        "Regime filter built for %s (%d bars, %s%d): latest regime %s",
        spec.instrument_id,
        len(regime_filter),
        spec.average_type,
        spec.lookback,
        latest.value if latest is not None else None,
    )
    return regime_filter

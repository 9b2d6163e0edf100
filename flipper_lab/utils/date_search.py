"""
Binary search over a time-ordered bar sequence.

**Conceptual**: Signals carry dates; valuation and windowing need positions.
`search_for_date` maps a target date onto an index of an ascending bar series:
  - If some bar has exactly that date, its index is returned.
  - Otherwise the first bar strictly after the target is returned
    (first-at-or-after), which is the bar on which an action dated in a gap
    (weekend, holiday, missing data) would actually take effect.

The search is recursive interval halving with explicit lower/upper bounds, so
it runs in O(log n) and never relies on string ordering of dates.
"""

from typing import Optional, Sequence

from flipper_lab.data.schemas import Bar, coerce_timestamp
from flipper_lab.utils.errors import OutOfRangeError


def search_for_date(
    bars: Sequence[Bar],
    target_date,
    lower: int = 0,
    upper: Optional[int] = None,
) -> int:
    """
    Resolve a target date to a bar index.

    Args:
        bars: Bars in strictly ascending date order.
        target_date: Any date-like value (datetime, pd.Timestamp, ISO string).
        lower: Lowest index still under consideration.
        upper: Highest index still under consideration (defaults to last index).

    Returns:
        Index of the bar dated `target_date`, or of the first bar after it.

    Raises:
        OutOfRangeError: If `bars` is empty or the target lies outside
            [bars[0].date, bars[-1].date].

    Example:
        >>> # bars dated day 2, 4, 6, ...
        >>> search_for_date(bars, day(4))   # exact
        1
        >>> search_for_date(bars, day(5))   # first after
        2
    """
    target = coerce_timestamp(target_date)
    if target is None:
        raise ValueError("target_date is required")
    if not bars or target < bars[0].date or target > bars[-1].date:
        raise OutOfRangeError("Date is not within provided interval")

    if upper is None:
        upper = len(bars) - 1

    return _search(bars, target, lower, upper)


def _search(bars: Sequence[Bar], target, lower: int, upper: int) -> int:
    # Invariant: the answer lies in [lower, upper].
    middle = (lower + upper) // 2
    middle_date = bars[middle].date

    if middle_date == target:
        return middle

    if middle_date < target:
        # Answer is right of middle, so middle < upper and middle + 1 exists.
        if bars[middle + 1].date >= target:
            return middle + 1
        return _search(bars, target, middle + 1, upper)

    if middle == lower or bars[middle - 1].date < target:
        return middle
    return _search(bars, target, lower, middle - 1)


def find_window(
    bars: Sequence[Bar],
    start_date=None,
    end_date=None,
    searcher=search_for_date,
) -> tuple[int, int]:
    """
    Resolve optional window bounds to an inclusive (start, end) index pair.

    Missing bounds default to the first and last bar respectively.

    Raises:
        OutOfRangeError: If a given bound lies outside the series.
    """
    start_index = searcher(bars, start_date) if start_date is not None else 0
    end_index = searcher(bars, end_date) if end_date is not None else len(bars) - 1
    return start_index, end_index

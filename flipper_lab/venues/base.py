"""
Base abstractions for price providers and persistence sinks (venues).

**Conceptual**: The simulation core never talks to a network or a disk
directly. It depends on two protocols:
  - PriceProvider: where bar histories and the instrument universe come from
    (HTTP API, local CSV files, an in-memory fixture in tests).
  - DocumentSink: where per-instrument results go (JSON files, a database).

Both are async because fetching and writing are the only points where a run
waits on the outside world; the core awaits them and otherwise computes
synchronously.

**Why protocols over inheritance?**
  - Any class with matching methods is a provider; no base class required.
  - Test doubles are a few lines long.

**Data guarantees** every PriceProvider MUST uphold:
  1. Bars in strictly ascending date order, one per date.
  2. Dates as timezone-naive UTC pd.Timestamps.
  3. An empty list (not an error) for an instrument with no history.
"""

from typing import Iterable, Optional, Protocol, Sequence

from flipper_lab.data.schemas import Bar, Instrument, InstrumentId


class PriceProvider(Protocol):
    """Source of price histories and of the instrument universe."""

    async def fetch_price_history(
        self,
        instrument_id: InstrumentId,
        fields: Optional[Iterable[str]] = None,
    ) -> list[Bar]:
        """
        Fetch one instrument's full history.

        Args:
            instrument_id: Instrument to fetch.
            fields: Bar fields the caller needs (e.g. ('date', 'close')).
                Providers may return more; None means all fields.
        """
        ...

    async def fetch_instruments(self) -> list[Instrument]:
        """Fetch the instrument universe."""
        ...


class DocumentSink(Protocol):
    """Keyed document persistence for strategy results."""

    async def save_signals(self, instrument_id: InstrumentId, signals: Sequence) -> None:
        ...

    async def save_pending_signal(self, instrument_id: InstrumentId, signal) -> None:
        ...

    async def save_context(self, instrument_id: InstrumentId, context) -> None:
        ...

    async def save_trades(self, instrument_id: InstrumentId, trades: Sequence) -> None:
        ...

    async def save_statistics(self, name: str, document: dict) -> None:
        ...

    async def clear_pending_signals(self) -> None:
        ...

"""
PriceProvider implementation backed by local CSV files.

**Layout**:
    <data_dir>/instruments.csv   universe: id, name, list_name
    <data_dir>/<id>.csv          canonical price history, newest first

Useful for offline backtests and reproducible runs: fetch once, commit the
CSVs, rerun as often as needed. Files are read in a worker thread and cached
in memory, so the reference instrument is parsed once per run even though
the regime filter and the timeline both ask for it.
"""

import asyncio
from pathlib import Path
from typing import Iterable, Optional

from flipper_lab.data.io import read_price_history_csv, read_universe_csv
from flipper_lab.data.schemas import Bar, Instrument, InstrumentId, frame_to_bars


UNIVERSE_FILE_NAME = "instruments.csv"


class CsvPriceProvider:
    """
    Async PriceProvider reading `<data_dir>/<instrument_id>.csv` files.

    Args:
        data_dir: Directory holding the price CSVs and instruments.csv.
        cache: Keep parsed histories in memory (default True).
    """

    def __init__(self, data_dir: Path | str, cache: bool = True):
        self.data_dir = Path(data_dir)
        self.cache = cache
        self._bars: dict[str, list[Bar]] = {}

    def path_for(self, instrument_id: InstrumentId) -> Path:
        return self.data_dir / f"{instrument_id}.csv"

    def _load(self, instrument_id: InstrumentId) -> list[Bar]:
        path = self.path_for(instrument_id)
        df = read_price_history_csv(path, instrument_name=str(instrument_id))
        return frame_to_bars(df, context=str(path))

    async def fetch_price_history(
        self,
        instrument_id: InstrumentId,
        fields: Optional[Iterable[str]] = None,
    ) -> list[Bar]:
        """
        Read one instrument's history. `fields` is accepted for protocol
        compatibility; CSV rows always carry every bar field.

        Raises:
            FileNotFoundError: If the instrument has no CSV.
            SchemaValidationError: If the CSV is malformed.
        """
        key = str(instrument_id)
        if self.cache and key in self._bars:
            return self._bars[key]

        bars = await asyncio.to_thread(self._load, instrument_id)
        if self.cache:
            self._bars[key] = bars
        return bars

    async def fetch_instruments(self) -> list[Instrument]:
        """
        Read the universe from instruments.csv, or fall back to every price CSV
        in the directory when no universe file exists.
        """
        universe_path = self.data_dir / UNIVERSE_FILE_NAME
        if universe_path.exists():
            df = await asyncio.to_thread(read_universe_csv, universe_path)
            return [
                Instrument(id=row['id'], name=row['name'], list_name=row['list_name'])
                for row in df.to_dict(orient='records')
            ]

        return [
            Instrument(id=path.stem)
            for path in sorted(self.data_dir.glob("*.csv"))
            if path.name != UNIVERSE_FILE_NAME
        ]

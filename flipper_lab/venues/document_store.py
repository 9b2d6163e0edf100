"""
DocumentSink implementation writing JSON documents to a directory tree.

**Layout**: `<root>/<collection>/<document id>.json`, one document per
instrument and collection:
  - signals/           {"signals": [...]}
  - pending-signals/   {"signal": {...}}   (cleared at the start of each run)
  - context/           {"context": {...}}
  - trades/            {"trades": [...]}
  - statistics/        free-form documents, e.g. a portfolio summary

Writes go through a temp file and an atomic rename, in a worker thread.
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Optional, Sequence

from flipper_lab.data.schemas import InstrumentId


logger = logging.getLogger(__name__)


class JsonDocumentStore:
    """
    Async DocumentSink persisting JSON files under `root_dir`.

    Collection names are configurable so tests and parallel environments can
    write side by side.
    """

    def __init__(
        self,
        root_dir: Path | str,
        signal_collection: str = 'signals',
        pending_signal_collection: str = 'pending-signals',
        context_collection: str = 'context',
        trade_collection: str = 'trades',
        statistics_collection: str = 'statistics',
    ):
        self.root_dir = Path(root_dir)
        self.signal_collection = signal_collection
        self.pending_signal_collection = pending_signal_collection
        self.context_collection = context_collection
        self.trade_collection = trade_collection
        self.statistics_collection = statistics_collection

    def document_path(self, collection: str, document_id: InstrumentId) -> Path:
        return self.root_dir / collection / f"{document_id}.json"

    def write_document(self, collection: str, document_id: InstrumentId, data: dict[str, Any]) -> Path:
        """
        Write one document synchronously.

        Raises:
            ValueError: If collection or id is empty, or data is not a dict.
        """
        if not collection or document_id is None or str(document_id) == "":
            raise ValueError("Missing collection or document id")
        if not isinstance(data, dict):
            raise ValueError(f"Document data must be a dict, got {type(data).__name__}")

        path = self.document_path(collection, document_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix('.json.tmp')
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, default=str)
        os.replace(tmp_path, path)
        return path

    def read_document(self, collection: str, document_id: InstrumentId) -> Optional[dict[str, Any]]:
        path = self.document_path(collection, document_id)
        if not path.exists():
            return None
        with open(path, encoding='utf-8') as f:
            return json.load(f)

    async def save_signals(self, instrument_id: InstrumentId, signals: Sequence) -> None:
        await asyncio.to_thread(
            self.write_document,
            self.signal_collection,
            instrument_id,
            {'signals': [signal.to_dict() for signal in signals]},
        )

    async def save_pending_signal(self, instrument_id: InstrumentId, signal) -> None:
        if signal is None:
            return
        await asyncio.to_thread(
            self.write_document,
            self.pending_signal_collection,
            instrument_id,
            {'signal': signal.to_dict()},
        )

    async def save_context(self, instrument_id: InstrumentId, context) -> None:
        if context is None:
            return
        await asyncio.to_thread(
            self.write_document,
            self.context_collection,
            instrument_id,
            {'context': context.to_dict()},
        )

    async def save_trades(self, instrument_id: InstrumentId, trades: Sequence) -> None:
        await asyncio.to_thread(
            self.write_document,
            self.trade_collection,
            instrument_id,
            {'trades': [trade.to_dict() for trade in trades]},
        )

    async def save_statistics(self, name: str, document: dict) -> None:
        await asyncio.to_thread(self.write_document, self.statistics_collection, name, document)

    def _clear_collection(self, collection: str) -> int:
        directory = self.root_dir / collection
        if not directory.exists():
            return 0
        removed = 0
        for path in directory.glob('*.json'):
            path.unlink()
            removed += 1
        return removed

    async def clear_pending_signals(self) -> None:
        removed = await asyncio.to_thread(self._clear_collection, self.pending_signal_collection)
        logger.info("Cleared %d pending signals", removed)

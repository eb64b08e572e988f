"""
In-memory index of files already handled.

The ledger sheet is the source of truth across restarts; this index is a cache
of it, hydrated once at startup and updated as files complete.
"""

import threading
from typing import Iterable

from models import LedgerEntry
from settings import get_logger

logger = get_logger("dedup")


def name_key(file_name: str) -> str:
    return file_name.strip().lower()


class DedupIndex:
    """Processed file ids and lowercased file names."""

    def __init__(self):
        self._ids: set[str] = set()
        self._names: set[str] = set()
        self._lock = threading.Lock()

    def hydrate(self, entries: Iterable[LedgerEntry]) -> int:
        """Load ledger rows into the index. Returns the number of rows read."""
        count = 0
        with self._lock:
            for entry in entries:
                count += 1
                if entry.file_id:
                    self._ids.add(entry.file_id)
                if entry.file_name:
                    self._names.add(name_key(entry.file_name))
        logger.info(
            f"Loaded {count} rows: {len(self._ids)} file IDs and {len(self._names)} file names from ledger"
        )
        return count

    def contains(self, file_id: str, file_name: str = "") -> bool:
        with self._lock:
            if file_id in self._ids:
                return True
            return bool(file_name) and name_key(file_name) in self._names

    def add(self, file_id: str, file_name: str = ""):
        with self._lock:
            self._ids.add(file_id)
            if file_name:
                self._names.add(name_key(file_name))

    @property
    def id_count(self) -> int:
        return len(self._ids)

    @property
    def name_count(self) -> int:
        return len(self._names)

    def __len__(self):
        return len(self._ids)

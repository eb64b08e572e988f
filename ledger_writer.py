"""
Ledger write-back.

Two strategies share one interface:

- ImmediateLedgerWriter appends each entry as it arrives, together with any
  rows an earlier append could not write.
- BatchedLedgerWriter queues entries and a background thread appends up to
  `batch_size` of them every `delay` seconds, retrying failed appends with
  exponential backoff. Rows that still fail are put back at the front of the
  queue for the next cycle; they are only lost if the process dies.
"""

import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Callable, Optional

from errors import OrganizerError, classify_error
from models import LedgerEntry
from settings import get_logger

logger = get_logger("ledger")

MAX_RETRIES = 3
BASE_BACKOFF = 30.0
MAX_BACKOFF = 300.0


def backoff_delay(attempt: int, base: float = BASE_BACKOFF, cap: float = MAX_BACKOFF) -> float:
    """Delay before retry number `attempt` (1-based): base * 2^(attempt-1), capped."""
    return min(base * (2 ** (attempt - 1)), cap)


class LedgerWriter(ABC):
    """Records processed-file entries to the ledger."""

    def __init__(self, ledger, sleep: Callable[[float], None] = time.sleep, max_retries: int = MAX_RETRIES):
        self.ledger = ledger
        self.sleep = sleep
        self.max_retries = max_retries

    @abstractmethod
    def record(self, entry: LedgerEntry):
        pass

    def start(self):
        pass

    def stop(self):
        """Stop background work and write anything still pending."""
        self.flush_all()

    def flush_all(self) -> bool:
        return True

    @property
    def pending_count(self) -> int:
        return 0

    def _append_with_retry(self, entries: list[LedgerEntry]) -> bool:
        """Append one batch, retrying with backoff. Returns False once retries are exhausted."""
        attempt = 0
        while True:
            try:
                logger.info(f"Writing {len(entries)} rows to ledger (attempt {attempt + 1})")
                self.ledger.append_batch(entries)
                logger.info(f"Successfully wrote {len(entries)} rows to ledger")
                return True
            except (OrganizerError, OSError) as e:
                attempt += 1
                if attempt > self.max_retries:
                    logger.error(f"Ledger write failed after {attempt} attempts: {e}")
                    return False
                delay = backoff_delay(attempt)
                logger.warning(
                    f"Ledger write error ({classify_error(e).value}, attempt {attempt}/{self.max_retries + 1}). "
                    f"Waiting {delay:.0f}s before retry"
                )
                self.sleep(delay)


class ImmediateLedgerWriter(LedgerWriter):
    """
    Synchronous, one append per processed file.

    Rows that still fail after the retries are kept and go out ahead of the
    next entry, or on flush_all() at shutdown.
    """

    def __init__(self, ledger, sleep: Callable[[float], None] = time.sleep, max_retries: int = MAX_RETRIES):
        super().__init__(ledger, sleep, max_retries)
        self._pending: deque[LedgerEntry] = deque()
        self._lock = threading.Lock()

    def record(self, entry: LedgerEntry):
        with self._lock:
            self._pending.append(entry)
        self.flush_all()

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def flush_all(self) -> bool:
        with self._lock:
            batch = list(self._pending)
            self._pending.clear()
        if not batch:
            return True

        if self._append_with_retry(batch):
            return True

        with self._lock:
            self._pending.extendleft(reversed(batch))
        logger.error(f"Kept {len(batch)} ledger rows for the next write")
        return False


class BatchedLedgerWriter(LedgerWriter):
    """Coalesces entries and flushes them on a fixed timer."""

    def __init__(
        self,
        ledger,
        batch_size: int = 5,
        delay: float = 15.0,
        sleep: Callable[[float], None] = time.sleep,
        max_retries: int = MAX_RETRIES,
    ):
        super().__init__(ledger, sleep, max_retries)
        self.batch_size = max(1, batch_size)
        self.delay = delay
        self._queue: deque[LedgerEntry] = deque()
        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def record(self, entry: LedgerEntry):
        with self._lock:
            self._queue.append(entry)
            size = len(self._queue)
        logger.debug(f"Queued for ledger: {entry.file_name} ({entry.file_id}), queue size: {size}")

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._queue)

    def flush(self) -> bool:
        """
        Write at most one batch from the head of the queue.

        Returns False if the batch could not be written; its rows are back
        at the front of the queue in their original order.
        """
        with self._flush_lock:
            with self._lock:
                batch = [self._queue.popleft() for _ in range(min(self.batch_size, len(self._queue)))]
            if not batch:
                return True

            if self._append_with_retry(batch):
                return True

            with self._lock:
                self._queue.extendleft(reversed(batch))
            logger.error(f"Re-queued {len(batch)} ledger rows for the next flush")
            return False

    def flush_all(self) -> bool:
        """Flush until the queue is empty or a batch fails."""
        pending = self.pending_count
        if pending:
            logger.info(f"Flushing {pending} remaining ledger entries")
        while self.pending_count:
            if not self.flush():
                return False
        return True

    def _run(self):
        while not self._stop.wait(self.delay):
            self.flush()

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="ledger-flush", daemon=True)
        self._thread.start()
        logger.info(f"Ledger flush every {self.delay:.0f}s in batches of {self.batch_size}")

    def stop(self):
        self._stop.set()
        if self._thread:
            self._thread.join()
            self._thread = None
        self.flush_all()


def create_ledger_writer(ledger, batched: bool = True, batch_size: int = 5, delay: float = 15.0) -> LedgerWriter:
    if batched:
        return BatchedLedgerWriter(ledger, batch_size=batch_size, delay=delay)
    return ImmediateLedgerWriter(ledger)

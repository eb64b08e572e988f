"""
Tests for named semaphores and the dedup index.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from concurrency import NamedSemaphore
from dedup import DedupIndex
from models import LedgerEntry


class TestNamedSemaphore:
    """Tests for NamedSemaphore."""

    def test_rejects_zero_limit(self):
        """A limit below 1 is invalid."""
        with pytest.raises(ValueError):
            NamedSemaphore("test", 0)

    def test_acquire_and_release(self):
        """Usage tracks held permits."""
        sem = NamedSemaphore("test", 2)
        release = sem.acquire()
        assert sem.current_usage() == 1
        assert sem.available_permits() == 1
        release()
        assert sem.current_usage() == 0
        assert release.released

    def test_double_release_is_noop(self):
        """Calling a release handle twice returns one permit."""
        sem = NamedSemaphore("test", 1)
        release = sem.acquire()
        release()
        release.release()
        assert sem.available_permits() == 1
        sem.acquire()
        # The underlying permit count did not grow past the limit
        assert not sem._semaphore.acquire(blocking=False)

    def test_slot_releases_on_error(self):
        """The slot context manager releases when the block raises."""
        sem = NamedSemaphore("test", 1)
        with pytest.raises(RuntimeError):
            with sem.slot():
                raise RuntimeError("boom")
        assert sem.current_usage() == 0

    def test_limit_is_never_exceeded(self):
        """Concurrent holders never exceed the limit."""
        sem = NamedSemaphore("test", 3)

        def work(_):
            with sem.slot():
                time.sleep(0.01)

        with ThreadPoolExecutor(max_workers=10) as executor:
            list(executor.map(work, range(30)))

        assert sem.peak_usage <= 3
        assert sem.current_usage() == 0

    def test_waiter_blocks_until_release(self):
        """A second acquirer waits for the first to release."""
        sem = NamedSemaphore("test", 1)
        release = sem.acquire()
        acquired = threading.Event()

        def waiter():
            sem.acquire()()
            acquired.set()

        thread = threading.Thread(target=waiter)
        thread.start()
        assert not acquired.wait(0.05)
        release()
        assert acquired.wait(1)
        thread.join()

    def test_snapshot(self):
        """Snapshot reports name, limit and usage."""
        sem = NamedSemaphore("gemini", 3)
        sem.acquire()
        assert sem.snapshot() == {
            "name": "gemini",
            "limit": 3,
            "available": 2,
            "currentUsage": 1,
            "type": "local",
        }


class TestDedupIndex:
    """Tests for DedupIndex."""

    def test_hydrate_counts_rows(self):
        """Hydration indexes ids and lowercased names."""
        index = DedupIndex()
        count = index.hydrate([
            LedgerEntry("id1", "Oak Park Plan.pdf"),
            LedgerEntry("id2", "Elm Court.pdf"),
            LedgerEntry("", "Name Only.pdf"),
        ])
        assert count == 3
        assert index.id_count == 2
        assert index.name_count == 3

    def test_contains_by_id_or_name(self):
        """Either a known id or a known name (case-insensitive) is a hit."""
        index = DedupIndex()
        index.add("id1", "Oak Park Plan.pdf")
        assert index.contains("id1")
        assert index.contains("other", "  OAK PARK plan.PDF ")
        assert not index.contains("other", "Elm Court.pdf")
        assert not index.contains("other")

    def test_add_without_name(self):
        """Adding an id with no name only indexes the id."""
        index = DedupIndex()
        index.add("id1")
        assert len(index) == 1
        assert index.name_count == 0

"""
Named counting semaphores used as admission gates.

Two independent instances exist at runtime: one bounds how many files are
processed at once, the other bounds concurrent calls to the LLM API.

A holder that never releases its handle leaks that permit for the lifetime
of the process; acquisition has no timeout.
"""

import threading
from contextlib import contextmanager

from settings import get_logger

logger = get_logger("concurrency")


class Release:
    """Release handle returned by NamedSemaphore.acquire(). Calling it twice is a no-op."""

    def __init__(self, semaphore: "NamedSemaphore"):
        self._semaphore = semaphore
        self._released = False
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            if self._released:
                logger.debug(f"[{self._semaphore.name}] duplicate release ignored")
                return
            self._released = True
        self._semaphore._release()

    release = __call__

    @property
    def released(self) -> bool:
        return self._released


class NamedSemaphore:
    """Counting semaphore with a name, a fixed limit, and usage reporting."""

    def __init__(self, name: str, limit: int):
        if limit < 1:
            raise ValueError(f"Semaphore limit must be >= 1, got {limit}")
        self.name = name
        self.limit = limit
        self._semaphore = threading.Semaphore(limit)
        self._lock = threading.Lock()
        self._in_use = 0
        self._peak = 0
        logger.info(f"Semaphore initialized for {name} with limit: {limit}")

    def acquire(self) -> Release:
        """Block until a permit is free; return its release handle."""
        self._semaphore.acquire()
        with self._lock:
            self._in_use += 1
            self._peak = max(self._peak, self._in_use)
            usage = self._in_use
        logger.debug(f"[{self.name}] acquired, current usage: {usage}/{self.limit}")
        return Release(self)

    def _release(self):
        with self._lock:
            self._in_use -= 1
            usage = self._in_use
        self._semaphore.release()
        logger.debug(f"[{self.name}] released, current usage: {usage}/{self.limit}")

    @contextmanager
    def slot(self):
        """Hold one permit for the duration of the block."""
        release = self.acquire()
        try:
            yield
        finally:
            release()

    def current_usage(self) -> int:
        return self._in_use

    def available_permits(self) -> int:
        return self.limit - self._in_use

    @property
    def peak_usage(self) -> int:
        """Highest concurrent usage observed since creation."""
        return self._peak

    def snapshot(self) -> dict:
        return {
            "name": self.name,
            "limit": self.limit,
            "available": self.available_permits(),
            "currentUsage": self.current_usage(),
            "type": "local",
        }

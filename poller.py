#!/usr/bin/env python3
"""
Drawing poller - publishes every file in the source folder to Pub/Sub.

Lists the source folder page by page and publishes {fileId, fileName} for
each file, a page at a time, so the worker (drawing_organizer.py --mode queue)
can pick them up. Already-processed files are filtered out by the worker, so
publishing the whole folder on every poll is safe.

Polls once at startup and then every POLL_INTERVAL seconds. Serves:
  GET  /health  -> "OK"
  POST /poll    -> run a poll now
"""

import argparse
import json
import os
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Callable, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse
from google.api_core import exceptions as gapi_exceptions

from drive_storage import DriveStorage
from errors import OrganizerError
from models import FileRef
from settings import Settings, get_logger, get_settings, reload_settings, setup_logging

logger = get_logger("poller")

DEFAULT_PORT = 8080
PAGE_SIZE = 1000
PUBLISH_ATTEMPTS = 3
PUBLISH_BACKOFF = 0.5  # seconds, multiplied by the attempt number
PUBLISH_TIMEOUT = 60


class PubSubPublisher:
    """Publishes JSON payloads to a topic, retrying failed publishes."""

    def __init__(
        self,
        project_id: str,
        topic: str,
        publisher=None,
        attempts: int = PUBLISH_ATTEMPTS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if publisher is None:
            from google.cloud import pubsub_v1
            publisher = pubsub_v1.PublisherClient()
        self.publisher = publisher
        self.topic_path = topic if "/" in topic else publisher.topic_path(project_id, topic)
        self.attempts = attempts
        self.sleep = sleep

    def publish(self, payload: dict) -> str:
        """Publish one message. Returns the message id; raises after the last failed attempt."""
        data = json.dumps(payload).encode("utf-8")
        for attempt in range(1, self.attempts + 1):
            try:
                return self.publisher.publish(self.topic_path, data).result(timeout=PUBLISH_TIMEOUT)
            except (gapi_exceptions.GoogleAPIError, FuturesTimeout) as e:
                if attempt == self.attempts:
                    raise
                delay = PUBLISH_BACKOFF * attempt
                logger.warning(f"Retrying {payload.get('fileName')} in {delay * 1000:.0f}ms... {e}")
                self.sleep(delay)


@dataclass
class PollResult:
    pages: int = 0
    published: int = 0
    failed: list = field(default_factory=list)


class Poller:
    def __init__(self, storage, publisher: PubSubPublisher, folder_id: str, workers: int = 16):
        self.storage = storage
        self.publisher = publisher
        self.folder_id = folder_id
        self.workers = workers
        self._lock = threading.Lock()
        self.last_result: Optional[PollResult] = None

    def publish_file(self, file: FileRef) -> bool:
        try:
            self.publisher.publish({"fileId": file.id, "fileName": file.name})
        except (gapi_exceptions.GoogleAPIError, FuturesTimeout) as e:
            logger.error(f"Failed to publish {file.name} ({file.id}): {e}")
            return False
        logger.debug(f"Published: {file.name} ({file.id})")
        return True

    def poll(self) -> PollResult:
        """
        Publish every file in the folder, one page at a time.

        Raises:
            StorageError: if listing fails
            OrganizerError: if any file could not be published
        """
        with self._lock:
            result = PollResult()
            with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="publish") as executor:
                for page in self.storage.iter_pages(self.folder_id, page_size=PAGE_SIZE):
                    result.pages += 1
                    logger.info(f"Page {result.pages}: Found {len(page)} files")
                    if not page:
                        continue
                    logger.info(f"Sample files from page {result.pages}: {[f.name for f in page[:3]]}")
                    for file, ok in zip(page, executor.map(self.publish_file, page)):
                        if ok:
                            result.published += 1
                        else:
                            result.failed.append(file.id)
                    logger.info(f"Completed publishing page {result.pages}")

            self.last_result = result
            if result.published == 0 and not result.failed:
                logger.info("No files found in the specified folder.")
            else:
                logger.info(f"Finished publishing {result.published} file keys across {result.pages} pages")
            if result.failed:
                raise OrganizerError(f"{len(result.failed)} files could not be published")
            return result

    def poll_safely(self) -> Optional[PollResult]:
        """Scheduled entry point: log failures instead of raising."""
        try:
            return self.poll()
        except OrganizerError as e:
            logger.error(f"Polling error: {e}")
            return None


class PollScheduler:
    """Runs a poll immediately and then every `interval` seconds."""

    def __init__(self, poller: Poller, interval: float):
        self.poller = poller
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _run(self):
        while not self._stop.is_set():
            self.poller.poll_safely()
            self._stop.wait(self.interval)

    def start(self):
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="poll-scheduler", daemon=True)
        self._thread.start()

    def stop(self):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=self.interval)
            self._thread = None


def create_poller_app(poller: Poller, interval: float, schedule: bool = True) -> FastAPI:
    scheduler = PollScheduler(poller, interval)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if schedule:
            scheduler.start()
        yield
        scheduler.stop()

    app = FastAPI(title="Drawing Poller", lifespan=lifespan)

    @app.get("/health", response_class=PlainTextResponse)
    async def health():
        return "OK"

    @app.post("/poll", response_class=PlainTextResponse)
    def poll_now():
        try:
            poller.poll()
        except OrganizerError as e:
            logger.error(f"Polling error: {e}")
            return PlainTextResponse("Polling failed", status_code=500)
        return "Polling completed"

    return app


def build_poller(settings: Settings) -> Poller:
    settings.require("google_drive_folder_id", "project_id", "pubsub_topic_name")
    storage = DriveStorage.from_service_account(
        settings.get("google_application_credentials"),
        settings.get("impersonate_user_email") or None,
    )
    publisher = PubSubPublisher(settings.get("project_id"), settings.get("pubsub_topic_name"))
    return Poller(storage, publisher, settings.source_folder_id, workers=settings.get("dispatch_workers"))


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Publish source-folder files to Pub/Sub for the organizer")
    parser.add_argument("--once", action="store_true", help="Poll once and exit")
    parser.add_argument("--port", type=int, default=None, help=f"HTTP port (default: PORT or {DEFAULT_PORT})")
    parser.add_argument("--config", "-c", default=None, help="Path to a YAML config file")
    args = parser.parse_args(argv)

    try:
        settings = reload_settings(args.config) if args.config else get_settings()
        setup_logging(settings.get("log_level"), settings.get("log_file"))
        poller = build_poller(settings)
    except (OrganizerError, OSError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    if args.once:
        return 0 if poller.poll_safely() else 1

    port = args.port or int(os.getenv("PORT", DEFAULT_PORT))
    logger.info(f"Poller service listening on port {port}")
    uvicorn.run(create_poller_app(poller, settings.get("poll_interval")), host="0.0.0.0", port=port)
    return 0


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
"""
Property Drawing Organizer - worker process.

Files every drawing in a Google Drive folder into
"<destination>/<property>/<year>/" by copying it, and records each processed
file in a Google Sheets ledger so nothing is handled twice, even across
restarts.

Two ways to feed it:
- batch: scan the source folder in windows of BATCH_SIZE files
- queue: consume {fileId, fileName} messages from a Pub/Sub subscription
         (published by poller.py)

Runs behind a small HTTP server exposing /health and /status.
"""

import argparse
import os
import signal
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

import uvicorn

from ai_providers import get_provider
from concurrency import NamedSemaphore
from dedup import DedupIndex
from drive_storage import DriveStorage
from errors import OrganizerError
from filer import Filer
from ingestion import BatchScanner, ProgressCheckpoint, PubSubSubscription, QueueConsumer
from ledger_writer import create_ledger_writer
from pipeline import FilePipeline, PipelineStats
from property_classifier import PropertyClassifier, PropertyMap
from settings import Settings, get_logger, get_settings, reload_settings, setup_logging
from sheets_ledger import Ledger, SheetsClient
from status_api import create_app
from year_extractor import YearExtractor

logger = get_logger("worker")

MODES = ("batch", "queue")
PROCESSING_TYPES = {"batch": "batch-drive-folder", "queue": "pubsub-queue"}
SHUTDOWN_POLL_INTERVAL = 1.0


def _signal_self():
    """Ask the running server to shut down as if it received SIGTERM."""
    os.kill(os.getpid(), signal.SIGTERM)


class OrganizerWorker:
    """Owns every shared component and the active ingestion front-end."""

    def __init__(
        self,
        settings: Settings,
        mode: str = "batch",
        storage=None,
        ledger=None,
        subscription=None,
        exit_process: Callable[[], None] = _signal_self,
    ):
        if mode not in MODES:
            raise ValueError(f"Unknown mode '{mode}'. Use one of: {', '.join(MODES)}")
        self.settings = settings
        self.mode = mode
        self.storage = storage
        self.ledger = ledger
        self.subscription = subscription
        self.exit_process = exit_process

        self.processing_semaphore = NamedSemaphore("processing", settings.max_concurrent_processing)
        self.api_semaphore = NamedSemaphore("gemini", settings.max_gemini_concurrent)
        self.dedup = DedupIndex()
        self.property_map = PropertyMap()
        self.stats = PipelineStats()

        self.filer: Optional[Filer] = None
        self.ledger_writer = None
        self.executor: Optional[ThreadPoolExecutor] = None
        self.pipeline: Optional[FilePipeline] = None
        self.frontend = None

        self.initialized = False
        self.init_error: Optional[str] = None
        self._shutdown_lock = threading.Lock()
        self._shut_down = False

    # ==========================================================================
    # STARTUP
    # ==========================================================================

    def _required_keys(self) -> list[str]:
        keys = ["google_drive_folder_id", "spreadsheet_id", "sheet_name", "property_sheet_name"]
        if self.mode == "queue":
            keys += ["project_id", "pubsub_subscription"]
        return keys

    def initialize(self):
        """Connect to Google, hydrate the dedup index and property map, build the pipeline."""
        s = self.settings
        s.require(*self._required_keys())
        if not s.api_key:
            raise OrganizerError(f"No API key configured for provider '{s.ai_provider}'")

        logger.info("Starting application initialization...")
        key_path = s.get("google_application_credentials")
        subject = s.get("impersonate_user_email") or None
        if self.storage is None:
            self.storage = DriveStorage.from_service_account(key_path, subject)
        if self.ledger is None:
            sheets = SheetsClient.from_service_account(key_path, s.get("spreadsheet_id"), subject)
            self.ledger = Ledger(sheets, s.get("sheet_name"), s.get("property_sheet_name"))

        self.ledger.ensure_header()
        logger.info("Loading processed files from ledger...")
        self.dedup.hydrate(self.ledger.load_all())

        try:
            registry = self.ledger.load_properties()
        except OrganizerError as e:
            logger.error(f"Failed to load property data: {e}")
            registry = []
        self.property_map.populate(registry)

        classifier = PropertyClassifier(
            self.property_map,
            registry,
            get_provider(s.ai_provider, purpose="classifier", model=s.get("classifier_model") or None, api_key=s.api_key),
            self.api_semaphore,
        )
        year_extractor = YearExtractor(
            self.storage,
            get_provider(s.ai_provider, purpose="year", model=s.get("year_model") or None, api_key=s.api_key),
            self.api_semaphore,
            timeout=s.get("year_timeout"),
        )

        self.filer = Filer(self.storage)
        self.filer.ensure_root(s.get("destination_folder_name"), s.get("destination_folder_id") or None)

        self.ledger_writer = create_ledger_writer(
            self.ledger,
            batched=s.batched_ledger,
            batch_size=s.get("sheet_batch_size"),
            delay=s.get("sheet_batch_delay"),
        )
        self.ledger_writer.start()

        self.executor = ThreadPoolExecutor(max_workers=s.get("dispatch_workers"), thread_name_prefix="file")
        self.pipeline = FilePipeline(
            self.storage,
            self.dedup,
            classifier,
            year_extractor,
            self.filer,
            self.ledger_writer,
            self.processing_semaphore,
            self.stats,
        )
        self.frontend = self._build_frontend()
        self.initialized = True
        logger.info("Setup complete")

    def _build_frontend(self):
        s = self.settings
        if self.mode == "queue":
            subscription = self.subscription or PubSubSubscription(
                s.get("project_id"),
                s.get("pubsub_subscription"),
                max_messages=s.get("batch_size"),
            )
            return QueueConsumer(self.pipeline, self.executor, subscription)

        progress_file = s.get("progress_file")
        return BatchScanner(
            self.storage,
            self.pipeline,
            self.executor,
            s.source_folder_id,
            batch_size=s.get("batch_size"),
            delay=s.get("processing_delay"),
            checkpoint=ProgressCheckpoint(progress_file) if progress_file else None,
            on_complete=self._on_scan_complete,
        )

    def _on_scan_complete(self):
        if self.settings.get("auto_stop_when_complete"):
            logger.info("Auto-stopping as all files are complete...")
            self.exit_process()

    def start(self):
        """Initialize and start the front-end. Failures are logged; the HTTP server stays up."""
        try:
            self.initialize()
            self.frontend.start()
            logger.info(f"{self.mode.capitalize()} processing is now running")
        except Exception as e:
            self.init_error = str(e)
            logger.error(f"Failed to initialize app: {e}")

    def run_once(self) -> int:
        """Single batch pass in the foreground. Returns a process exit code."""
        try:
            self.initialize()
        except OrganizerError as e:
            logger.error(f"Failed to initialize app: {e}")
            return 1
        # AUTO_STOP would signal this process; the pass ends on its own here
        self.frontend.on_complete = None
        self.frontend.run()
        self.shutdown()
        return 0

    # ==========================================================================
    # STATE
    # ==========================================================================

    @property
    def is_processing(self) -> bool:
        return bool(self.frontend and self.frontend.is_processing)

    def status_snapshot(self) -> dict:
        if self.initialized:
            state = "healthy"
        elif self.init_error:
            state = "error"
        else:
            state = "starting"

        statistics = dict(self.stats.get_stats())
        statistics["processedIds"] = self.dedup.id_count
        statistics["processedNames"] = self.dedup.name_count
        if self.frontend is not None:
            statistics.update(self.frontend.status())

        return {
            "status": state,
            "error": self.init_error,
            "mode": self.mode,
            "statistics": statistics,
            "state": {
                "isProcessing": self.is_processing,
                "initialized": self.initialized,
            },
            "concurrency": {
                "maxConcurrentProcessing": self.processing_semaphore.limit,
                "maxGeminiConcurrent": self.api_semaphore.limit,
            },
            "processingSemaphore": self.processing_semaphore.snapshot(),
            "geminiSemaphore": self.api_semaphore.snapshot(),
            "ledger": {
                "mode": "batched" if self.settings.batched_ledger else "immediate",
                "pendingRows": self.ledger_writer.pending_count if self.ledger_writer else 0,
            },
            "processingType": PROCESSING_TYPES[self.mode],
        }

    # ==========================================================================
    # SHUTDOWN
    # ==========================================================================

    def shutdown(self, poll_interval: float = SHUTDOWN_POLL_INTERVAL):
        """Stop admitting work, wait for in-flight files, flush the ledger. Safe to call twice."""
        with self._shutdown_lock:
            if self._shut_down:
                return
            self._shut_down = True

        logger.info("Final Statistics:")
        for key, value in self.stats.get_stats().items():
            logger.info(f"   {key}: {value}")

        if self.frontend is not None:
            self.frontend.request_stop()
            logger.info("Waiting for current processing to complete...")
            while self.frontend.is_processing:
                time.sleep(poll_interval)
                logger.info("   Still processing...")
            self.frontend.stop()

        if self.ledger_writer is not None:
            self.ledger_writer.stop()
        if self.executor is not None:
            self.executor.shutdown(wait=True)
        logger.info("Shutdown complete.")


# ==============================================================================
# MAIN
# ==============================================================================

def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Organize property drawings in Google Drive by property and year",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Scan the source folder in batches, serving /health and /status
  python drawing_organizer.py --mode batch

  # Consume Pub/Sub messages published by poller.py
  python drawing_organizer.py --mode queue --port 8081

  # One full batch pass in the foreground, then exit
  python drawing_organizer.py --once
        """
    )
    parser.add_argument("--mode", "-m", choices=MODES, default="batch",
                        help="Ingestion mode (default: batch)")
    parser.add_argument("--once", action="store_true",
                        help="Run a single batch pass without the HTTP server and exit")
    parser.add_argument("--port", type=int, default=None, help="HTTP port (default: PORT or 8081)")
    parser.add_argument("--config", "-c", default=None, help="Path to a YAML config file")
    parser.add_argument("--log-level", default=None, help="Log level (default: LOG_LEVEL or INFO)")
    args = parser.parse_args(argv)

    try:
        settings = reload_settings(args.config) if args.config else get_settings()
    except OrganizerError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    setup_logging(args.log_level or settings.get("log_level"), settings.get("log_file"))

    if args.once:
        if args.mode != "batch":
            parser.error("--once only applies to batch mode")
        return OrganizerWorker(settings, mode="batch").run_once()

    port = args.port or settings.get("port")
    worker = OrganizerWorker(settings, mode=args.mode)
    logger.info(f"Worker service listening on port {port}")
    uvicorn.run(create_app(worker), host="0.0.0.0", port=port, log_level="info")
    return 0


if __name__ == "__main__":
    sys.exit(main())

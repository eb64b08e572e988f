#!/usr/bin/env python3
"""
Per-file processing pipeline.

Each file moves through: duplicate check -> property -> year -> copy -> record.
Every outcome is returned as a ProcessingTask whose `acknowledge` flag tells the
caller whether the input (queue message or batch window slot) may be let go:

    SKIPPED_MALFORMED    payload lacks fileId or fileName          ack
    SKIPPED_DUPLICATE    id or name already processed              ack
    PERMANENT_FAILURE    file gone, or a permanent error kind      ack
    RETRYABLE_FAILURE    anything transient                        no ack
    DONE                 filed and recorded                        ack

No exception escapes process_message() or process_file().
"""

import threading
import time
from typing import Optional

from concurrency import NamedSemaphore
from dedup import DedupIndex
from errors import ErrorKind, MalformedMessageError, classify_error, is_permanent
from filer import Filer
from ledger_writer import LedgerWriter
from models import FileRef, LedgerEntry, Outcome, ProcessingTask
from property_classifier import PropertyClassifier
from settings import get_logger
from year_extractor import YearExtractor

logger = get_logger("pipeline")


class PipelineStats:
    """Thread-safe outcome counters."""

    KEYS = ("processed", "skipped", "malformed", "not_found", "failed_permanent", "failed_retryable")

    def __init__(self):
        self._lock = threading.Lock()
        self._counts = {key: 0 for key in self.KEYS}
        self.started_at = time.time()

    def increment(self, key: str, amount: int = 1):
        with self._lock:
            self._counts[key] = self._counts.get(key, 0) + amount

    def get(self, key: str) -> int:
        with self._lock:
            return self._counts.get(key, 0)

    def get_stats(self) -> dict:
        with self._lock:
            stats = dict(self._counts)
        stats["uptime_seconds"] = round(time.time() - self.started_at, 1)
        return stats


OUTCOME_STAT = {
    Outcome.DONE: "processed",
    Outcome.SKIPPED_DUPLICATE: "skipped",
    Outcome.SKIPPED_MALFORMED: "malformed",
    Outcome.RETRYABLE_FAILURE: "failed_retryable",
}


def parse_message(payload: dict) -> tuple[str, str]:
    """fileId and fileName from a queue payload. Raises MalformedMessageError."""
    if not isinstance(payload, dict):
        raise MalformedMessageError(f"Expected a JSON object, got {type(payload).__name__}")
    file_id = str(payload.get("fileId") or "").strip()
    file_name = str(payload.get("fileName") or "").strip()
    if not file_id or not file_name:
        raise MalformedMessageError(f"Missing fileId or fileName in message: {payload}")
    return file_id, file_name


class FilePipeline:
    """Runs files through the state machine under the processing semaphore."""

    def __init__(
        self,
        storage,
        dedup: DedupIndex,
        classifier: PropertyClassifier,
        year_extractor: YearExtractor,
        filer: Filer,
        ledger_writer: LedgerWriter,
        processing_semaphore: NamedSemaphore,
        stats: Optional[PipelineStats] = None,
    ):
        self.storage = storage
        self.dedup = dedup
        self.classifier = classifier
        self.year_extractor = year_extractor
        self.filer = filer
        self.ledger_writer = ledger_writer
        self.processing_semaphore = processing_semaphore
        self.stats = stats or PipelineStats()

    # ==========================================================================
    # ENTRY POINTS
    # ==========================================================================

    def process_message(self, payload: dict) -> ProcessingTask:
        """Queue entry point: metadata is fetched from storage before processing."""
        try:
            file_id, file_name = parse_message(payload)
        except MalformedMessageError as e:
            logger.warning(f"Discarding malformed message: {e}")
            return self._finish(ProcessingTask(file_ref=None, outcome=Outcome.SKIPPED_MALFORMED, error=str(e)))

        with self.processing_semaphore.slot():
            if self.dedup.contains(file_id, file_name):
                logger.info(f"Skipping already processed file: {file_name}")
                return self._finish(ProcessingTask(FileRef(file_id, file_name), outcome=Outcome.SKIPPED_DUPLICATE))

            try:
                ref = self.storage.get_file(file_id)
            except Exception as e:
                return self._metadata_failure(FileRef(file_id, file_name), e)

            return self._process(ref)

    def process_file(self, ref: FileRef) -> ProcessingTask:
        """Batch entry point: listing metadata is used as-is."""
        with self.processing_semaphore.slot():
            if self.dedup.contains(ref.id, ref.name):
                logger.info(f"Skipping already processed file: {ref.name}")
                return self._finish(ProcessingTask(ref, outcome=Outcome.SKIPPED_DUPLICATE))
            return self._process(ref)

    # ==========================================================================
    # STATE MACHINE
    # ==========================================================================

    def _process(self, ref: FileRef) -> ProcessingTask:
        task = ProcessingTask(ref)
        logger.info(f"Processing file: {ref.name} ({ref.id})")
        try:
            task.property_match = self.classifier.resolve(ref.name)
            task.year = self.year_extractor.resolve(ref)
            self.filer.file(ref, task.property_match, task.year)
        except Exception as e:
            return self._processing_failure(task, e)

        self._mark_done(ref)
        task.outcome = Outcome.DONE
        logger.info(f"File processed successfully: {ref.name} -> {task.property_match}/{task.year}")
        return self._finish(task)

    def _metadata_failure(self, ref: FileRef, error: Exception) -> ProcessingTask:
        kind = classify_error(error)
        if kind == ErrorKind.NOT_FOUND:
            logger.warning(f"File not found in storage, dropping: {ref.name} ({ref.id})")
            self.stats.increment("not_found")
            return self._finish(ProcessingTask(ref, outcome=Outcome.PERMANENT_FAILURE, error=str(error)), count=False)

        logger.error(f"Could not fetch metadata for {ref.name} ({ref.id}), will retry: {error}")
        return self._finish(ProcessingTask(ref, outcome=Outcome.RETRYABLE_FAILURE, error=str(error)))

    def _processing_failure(self, task: ProcessingTask, error: Exception) -> ProcessingTask:
        ref = task.file_ref
        kind = classify_error(error)
        task.error = str(error)
        logger.error(f"Error processing {ref.name} ({ref.id}) [{kind.value}]: {error}")

        if not is_permanent(kind):
            logger.info("Leaving file for redelivery")
            task.outcome = Outcome.RETRYABLE_FAILURE
            return self._finish(task)

        logger.info(f"Marking {ref.name} as processed due to permanent error")
        self._mark_done(ref, error_note=f"{kind.value}: {error}")
        task.outcome = Outcome.PERMANENT_FAILURE
        self.stats.increment("failed_permanent")
        return self._finish(task, count=False)

    def _mark_done(self, ref: FileRef, error_note: Optional[str] = None):
        self.dedup.add(ref.id, ref.name)
        self.ledger_writer.record(LedgerEntry(ref.id, ref.name, error_note=error_note))

    def _finish(self, task: ProcessingTask, count: bool = True) -> ProcessingTask:
        if count and task.outcome in OUTCOME_STAT:
            self.stats.increment(OUTCOME_STAT[task.outcome])
        return task

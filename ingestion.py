#!/usr/bin/env python3
"""
Ingestion front-ends feeding the pipeline.

- QueueConsumer: Pub/Sub messages land in a local buffer; one supervisor
  thread repeatedly claims everything buffered, runs it through the pipeline
  on a thread pool, and acks or nacks each message by its outcome.
- BatchScanner: lists the source folder once, then walks the listing in
  fixed-size windows with a pause between windows.

Both only ever call FilePipeline, which holds the processing semaphore.
"""

import base64
import binascii
import json
import os
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from pathlib import Path
from typing import Callable, Optional

from errors import MalformedMessageError
from models import FileRef, Outcome
from pipeline import FilePipeline
from settings import get_logger

logger = get_logger("ingestion")


# ==============================================================================
# QUEUE
# ==============================================================================

def decode_message_payload(data) -> dict:
    """
    Parse a message body as JSON, accepting raw or base64-encoded JSON.
    Raises MalformedMessageError if neither works.
    """
    if isinstance(data, str):
        data = data.encode("utf-8")
    try:
        payload = json.loads(data)
    except (ValueError, UnicodeDecodeError):
        try:
            payload = json.loads(base64.b64decode(data, validate=True))
        except (binascii.Error, ValueError, UnicodeDecodeError) as e:
            raise MalformedMessageError(f"Message body is not JSON: {data[:80]!r}") from e
    if not isinstance(payload, dict):
        raise MalformedMessageError(f"Message body is not a JSON object: {payload!r}")
    return payload


class PubSubSubscription:
    """Streaming pull on a Pub/Sub subscription."""

    def __init__(self, project_id: str, subscription: str, max_messages: int = 100, subscriber=None):
        from google.cloud import pubsub_v1

        self.subscriber = subscriber or pubsub_v1.SubscriberClient()
        if "/" in subscription:
            self.path = subscription
        else:
            self.path = self.subscriber.subscription_path(project_id, subscription)
        self.flow_control = pubsub_v1.types.FlowControl(max_messages=max_messages)
        self._future = None

    def subscribe(self, callback: Callable):
        self._future = self.subscriber.subscribe(self.path, callback=callback, flow_control=self.flow_control)
        logger.info(f"Listening for messages on {self.path}")
        return self._future

    def stop(self):
        if self._future is None:
            return
        self._future.cancel()
        try:
            self._future.result(timeout=30)
        except Exception as e:
            logger.debug(f"Streaming pull ended: {e}")
        self._future = None
        self.subscriber.close()


class QueueConsumer:
    """Buffers queue messages and drains them in rounds."""

    def __init__(self, pipeline: FilePipeline, executor: ThreadPoolExecutor, subscription=None):
        self.pipeline = pipeline
        self.executor = executor
        self.subscription = subscription
        self._buffer: list = []
        self._cond = threading.Condition()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.armed = False
        self.draining = False
        self.messages_received = 0
        self.rounds = 0

    def on_message(self, message):
        """Subscription callback: buffer the message and wake the supervisor."""
        with self._cond:
            self._buffer.append(message)
            self.messages_received += 1
            self.armed = True
            self._cond.notify()

    @property
    def buffer_depth(self) -> int:
        with self._cond:
            return len(self._buffer)

    @property
    def is_processing(self) -> bool:
        return self.draining or (self.buffer_depth > 0 and not self._stop.is_set())

    def handle(self, message) -> bool:
        """Run one message through the pipeline; ack or nack it. Returns the ack decision."""
        try:
            payload = decode_message_payload(message.data)
        except MalformedMessageError as e:
            logger.warning(f"Discarding undecodable message: {e}")
            self.pipeline.stats.increment("malformed")
            message.ack()
            return True

        try:
            task = self.pipeline.process_message(payload)
        except Exception as e:
            logger.error(f"Unexpected error processing message {payload}: {e}")
            message.nack()
            return False

        if task.acknowledge:
            message.ack()
        else:
            message.nack()
        return task.acknowledge

    def drain(self) -> int:
        """Claim every buffered message and process them all. Returns the number claimed."""
        with self._cond:
            claimed = self._buffer
            self._buffer = []
            self.armed = False
            self.draining = bool(claimed)
        if not claimed:
            return 0

        self.rounds += 1
        logger.info(f"Draining {len(claimed)} messages (round {self.rounds})")
        try:
            wait([self.executor.submit(self.handle, message) for message in claimed])
        finally:
            with self._cond:
                self.draining = False
                self.armed = bool(self._buffer)
        if self.armed:
            logger.debug("Messages arrived during drain, re-armed")
        return len(claimed)

    def _run(self):
        while True:
            with self._cond:
                while not self._buffer and not self._stop.is_set():
                    self._cond.wait(timeout=1.0)
                if self._stop.is_set():
                    break
            self.drain()

    def start(self):
        if self.subscription is not None:
            self.subscription.subscribe(self.on_message)
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="queue-supervisor", daemon=True)
        self._thread.start()

    def request_stop(self):
        """Stop claiming new rounds; the current round keeps running and can still ack."""
        if self._stop.is_set():
            return
        self._stop.set()
        with self._cond:
            self._cond.notify_all()

    def stop(self):
        """Finish the current round, nack whatever is still buffered, then close the subscription."""
        self.request_stop()
        if self._thread:
            self._thread.join()
            self._thread = None
        with self._cond:
            leftover, self._buffer = self._buffer, []
        for message in leftover:
            message.nack()
        if leftover:
            logger.info(f"Returned {len(leftover)} unprocessed messages to the queue")
        if self.subscription is not None:
            self.subscription.stop()

    def status(self) -> dict:
        return {
            "bufferDepth": self.buffer_depth,
            "armed": self.armed,
            "draining": self.draining,
            "messagesReceived": self.messages_received,
            "drainRounds": self.rounds,
        }


# ==============================================================================
# BATCH SCAN
# ==============================================================================

class ProgressCheckpoint:
    """JSON file recording how far a batch scan got."""

    def __init__(self, path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def load(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable progress file {self.path}: {e}")
            return {}

    def save(
        self,
        current_batch_index: int,
        files_in_batch: int,
        total_processed: int,
        total_files: Optional[int] = None,
        batch_size: Optional[int] = None,
    ):
        data = {
            "current_batch_index": current_batch_index,
            "files_in_batch": files_in_batch,
            "total_processed": total_processed,
            "total_files": total_files,
            "batch_size": batch_size,
        }
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.path.parent, suffix=".tmp")
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp, self.path)

    def clear(self):
        with self._lock:
            self.path.unlink(missing_ok=True)


class BatchScanner:
    """Walks a full folder listing in windows."""

    def __init__(
        self,
        storage,
        pipeline: FilePipeline,
        executor: ThreadPoolExecutor,
        folder_id: str,
        batch_size: int = 100,
        delay: float = 2.0,
        max_window_retries: int = 3,
        checkpoint: Optional[ProgressCheckpoint] = None,
        on_complete: Optional[Callable[[], None]] = None,
    ):
        self.storage = storage
        self.pipeline = pipeline
        self.executor = executor
        self.folder_id = folder_id
        self.batch_size = max(1, batch_size)
        self.delay = delay
        self.max_window_retries = max_window_retries
        self.checkpoint = checkpoint
        self.on_complete = on_complete

        self.files: list[FileRef] = []
        self.files_loaded = False
        self.current_batch_index = 0
        self.is_processing = False
        self.complete = False
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self._saved = checkpoint.load() if checkpoint is not None else {}

    @property
    def total_batches(self) -> int:
        return -(-len(self.files) // self.batch_size)

    def load_files(self):
        logger.info("Fetching all files from source folder...")
        files = []
        for page in self.storage.iter_pages(self.folder_id):
            files.extend(page)
            logger.info(f"Fetched {len(page)} files (Total: {len(files)})")
        self.files = files
        self.files_loaded = True
        logger.info(f"Total files found: {len(files)}")
        self.current_batch_index = self._resume_index()

    def _resume_index(self) -> int:
        """Window to start from; a checkpoint taken against a different listing starts over."""
        index = int(self._saved.get("current_batch_index") or 0)
        if not index:
            return 0
        if (
            self._saved.get("total_files") != len(self.files)
            or self._saved.get("batch_size") != self.batch_size
            or index >= self.total_batches
        ):
            logger.warning(
                f"Progress file does not match the current listing "
                f"({self._saved.get('total_files')} files saved, {len(self.files)} found), starting from batch 1"
            )
            return 0
        logger.info(f"Resuming batch scan at batch {index + 1}")
        return index

    def window(self, index: int) -> list[FileRef]:
        start = index * self.batch_size
        return self.files[start:start + self.batch_size]

    def run_window(self, index: int) -> bool:
        """Process one window concurrently. True if nothing in it needs a retry."""
        files = self.window(index)
        start = index * self.batch_size
        logger.info(f"Processing batch {index + 1}: files {start + 1}-{start + len(files)} of {len(self.files)}")
        futures = [self.executor.submit(self.pipeline.process_file, ref) for ref in files]
        done, _ = wait(futures)
        retryable = sum(1 for f in done if f.result().outcome == Outcome.RETRYABLE_FAILURE)
        if retryable:
            logger.warning(f"Batch {index + 1}: {retryable} files need a retry")
        return retryable == 0

    def run(self):
        """Scan until every window is done or stop() is called."""
        attempts = 0
        while not self._stop.is_set():
            self.is_processing = True
            try:
                if not self.files_loaded:
                    self.load_files()
                if self.current_batch_index >= self.total_batches:
                    self.complete = True
                    break
                ok = self.run_window(self.current_batch_index)
            except Exception as e:
                logger.error(f"Error in batch processing: {e}")
                self.is_processing = False
                self._stop.wait(self.delay * 2)
                continue
            finally:
                self.is_processing = False

            attempts += 1
            if not ok and attempts <= self.max_window_retries:
                logger.info(f"Retrying batch {self.current_batch_index + 1} in {self.delay * 2:.0f}s")
                self._stop.wait(self.delay * 2)
                continue

            files_in_batch = len(self.window(self.current_batch_index))
            self.current_batch_index += 1
            attempts = 0
            if self.checkpoint is not None:
                self.checkpoint.save(
                    self.current_batch_index,
                    files_in_batch,
                    self.pipeline.stats.get("processed"),
                    total_files=len(self.files),
                    batch_size=self.batch_size,
                )
            logger.info(f"Batch {self.current_batch_index} completed. Waiting {self.delay:.0f}s before next batch...")
            self._stop.wait(self.delay)

        if self.complete:
            logger.info("All files have been processed!")
            if self.checkpoint is not None:
                self.checkpoint.clear()
                self._saved = {}
            if self.on_complete is not None:
                self.on_complete()

    def start(self):
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, name="batch-scanner", daemon=True)
        self._thread.start()

    def request_stop(self):
        """Stop after the window in flight."""
        self._stop.set()

    def stop(self):
        self.request_stop()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join()
        self._thread = None

    def status(self) -> dict:
        total = len(self.files)
        processed = self.pipeline.dedup.id_count
        return {
            "totalFilesFound": total,
            "currentBatch": self.current_batch_index + 1,
            "totalBatches": self.total_batches,
            "processedFilesCount": processed,
            "progress": f"{round(processed / total * 100)}%" if total else "0%",
            "complete": self.complete,
        }

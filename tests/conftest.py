"""
Pytest configuration and shared fixtures for Property Drawing Organizer tests.

The fakes here stand in for Drive, the ledger spreadsheet and the LLM so the
pipeline can be exercised end to end without network access.
"""

import sys
import tempfile
import threading
from pathlib import Path
from typing import Generator

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from errors import ErrorKind, LedgerError, StorageError
from models import FOLDER_MIME_TYPE, PDF_MIME_TYPE, FileRef, PropertyRecord


class FakeDrive:
    """In-memory Drive: files, folders, copies and moves."""

    def __init__(self):
        self.files: dict[str, dict] = {}
        self.media: dict[str, bytes] = {}
        self.copies: list[tuple[str, str, str]] = []
        self.created_folders: list[tuple] = []
        self.get_errors: dict[str, Exception] = {}
        self.move_errors: dict[str, Exception] = {}
        self._next = 0
        self._lock = threading.Lock()

    def _new_id(self, prefix: str) -> str:
        with self._lock:
            self._next += 1
            return f"{prefix}{self._next}"

    def add_file(self, file_id, name, parent="src", mime_type=PDF_MIME_TYPE, data=b"%PDF-1.4", size=None) -> FileRef:
        self.files[file_id] = {
            "id": file_id,
            "name": name,
            "mimeType": mime_type,
            "size": size if size is not None else len(data),
            "parents": [parent],
        }
        self.media[file_id] = data
        return FileRef.from_drive(self.files[file_id])

    def add_folder(self, folder_id, name, parent=None) -> str:
        self.files[folder_id] = {
            "id": folder_id,
            "name": name,
            "mimeType": FOLDER_MIME_TYPE,
            "parents": [parent] if parent else [],
        }
        return folder_id

    def children(self, folder_id) -> list[dict]:
        return [f for f in self.files.values() if folder_id in f["parents"]]

    # Drive-like interface

    def list_files(self, folder_id, page_token=None, page_size=1000, query=None):
        items = [f for f in self.children(folder_id) if f["mimeType"] != FOLDER_MIME_TYPE]
        start = int(page_token or 0)
        page = items[start:start + page_size]
        next_token = str(start + page_size) if start + page_size < len(items) else None
        return [FileRef.from_drive(f) for f in page], next_token

    def iter_pages(self, folder_id, page_size=1000, query=None):
        token = None
        while True:
            files, token = self.list_files(folder_id, token, page_size, query)
            yield files
            if not token:
                break

    def list_all(self, folder_id, query=None):
        return [f for page in self.iter_pages(folder_id, query=query) for f in page]

    def get_file(self, file_id) -> FileRef:
        if file_id in self.get_errors:
            raise self.get_errors[file_id]
        if file_id not in self.files:
            raise StorageError(f"File not found: {file_id}", kind=ErrorKind.NOT_FOUND, status=404)
        return FileRef.from_drive(self.files[file_id])

    def get_media(self, file_id) -> bytes:
        return self.media[file_id]

    def find_folder(self, parent_id, name):
        for f in self.files.values():
            if f["mimeType"] != FOLDER_MIME_TYPE or f["name"] != name:
                continue
            if parent_id is None or parent_id in f["parents"]:
                return f["id"]
        return None

    def create_folder(self, parent_id, name) -> str:
        folder_id = self._new_id("folder")
        self.add_folder(folder_id, name, parent_id)
        with self._lock:
            self.created_folders.append((parent_id, name))
        return folder_id

    def copy_file(self, file_id, parent_id, name=None) -> str:
        copy_id = self._new_id("copy")
        with self._lock:
            self.copies.append((file_id, parent_id, name))
        return copy_id

    def move_file(self, file: FileRef, parent_id) -> FileRef:
        if file.id in self.move_errors:
            raise self.move_errors[file.id]
        self.files[file.id]["parents"] = [parent_id]
        return FileRef.from_drive(self.files[file.id])

    def path_of(self, folder_id) -> str:
        """Slash-joined folder names from the top down."""
        parts = []
        while folder_id:
            folder = self.files[folder_id]
            parts.append(folder["name"])
            folder_id = folder["parents"][0] if folder["parents"] else None
        return "/".join(reversed(parts))


class RecordingLedger:
    """Ledger double that keeps appended entries in a list."""

    def __init__(self, entries=None, properties=None, fail_times: int = 0):
        self.entries = list(entries or [])
        self.properties = list(properties or [])
        self.fail_times = fail_times
        self.append_calls = 0
        self.header_checked = False
        self._lock = threading.Lock()

    def ensure_header(self):
        self.header_checked = True

    def load_all(self):
        return list(self.entries)

    def load_properties(self):
        return list(self.properties)

    def append_batch(self, entries):
        with self._lock:
            self.append_calls += 1
            if self.fail_times > 0:
                self.fail_times -= 1
                raise LedgerError("Sheets append failed (503)", status=503)
            self.entries.extend(entries)
        return len(entries)

    def append(self, entry):
        self.append_batch([entry])


class ScriptedProvider:
    """LLM double: answers from a list (or a callable) and records every call."""

    name = "scripted"

    def __init__(self, answers=None, error=None):
        self.answers = answers
        self.error = error
        self.calls: list[tuple] = []
        self._lock = threading.Lock()

    def generate(self, prompt, attachment=None, timeout=None):
        with self._lock:
            self.calls.append((prompt, attachment, timeout))
        if self.error is not None:
            raise self.error
        if callable(self.answers):
            return self.answers(prompt, attachment)
        if isinstance(self.answers, list):
            with self._lock:
                return self.answers.pop(0) if self.answers else ""
        return self.answers or ""


class FakeMessage:
    """Pub/Sub message double."""

    def __init__(self, data: bytes):
        self.data = data
        self.acked = False
        self.nacked = False

    def ack(self):
        self.acked = True

    def nack(self):
        self.nacked = True


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def drive() -> FakeDrive:
    """Fake Drive with a source folder and the destination root."""
    fake = FakeDrive()
    fake.add_folder("src", "Drawings")
    fake.add_folder("root", "Ordered Property Drawings")
    return fake


@pytest.fixture
def registry() -> list[PropertyRecord]:
    """A small property registry."""
    return [
        PropertyRecord("Oak Park", "12 Oak Avenue"),
        PropertyRecord("riverside  plaza", "1 River Road"),
        PropertyRecord("Elm Court", "44 Elm Street"),
    ]


@pytest.fixture
def ledger(registry) -> RecordingLedger:
    return RecordingLedger(properties=registry)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the developer's environment out of settings tests."""
    for key in (
        "GOOGLE_DRIVE_FOLDER_ID",
        "SPREADSHEET_ID",
        "AI_PROVIDER",
        "GEMINI_API_KEY",
        "ANTHROPIC_API_KEY",
        "OPENAI_API_KEY",
        "MAX_GEMINI_CONCURRENT",
        "MAX_CONCURRENT_PROCESSING",
        "BATCH_SIZE",
        "LEDGER_MODE",
        "AUTO_STOP_WHEN_COMPLETE",
        "PROJECT_ID",
        "PUBSUB_SUBSCRIPTION",
        "PUBSUB_TOPIC_NAME",
        "PORT",
    ):
        monkeypatch.delenv(key, raising=False)

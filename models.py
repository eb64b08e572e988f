"""
Value types shared across the organizer.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

PDF_MIME_TYPE = "application/pdf"
FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"


@dataclass(frozen=True)
class FileRef:
    """A file in Drive. Identity is the Drive id."""

    id: str
    name: str = field(compare=False)
    mime_type: str = field(default="", compare=False)
    size: Optional[int] = field(default=None, compare=False)
    parents: tuple = field(default=(), compare=False)

    @classmethod
    def from_drive(cls, data: dict) -> "FileRef":
        """Build from a Drive v3 files resource."""
        size = data.get("size")
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            mime_type=data.get("mimeType", ""),
            size=int(size) if size is not None else None,
            parents=tuple(data.get("parents") or ()),
        )


@dataclass(frozen=True)
class PropertyRecord:
    name: str
    address: str


@dataclass(frozen=True)
class LedgerEntry:
    """One row of the processed-files sheet."""

    file_id: str
    file_name: str
    processed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    error_note: Optional[str] = None

    def to_row(self) -> list:
        return [
            self.file_id,
            self.file_name,
            self.processed_at.isoformat(),
            self.error_note or "",
        ]


class Outcome(str, Enum):
    PENDING = "pending"
    DONE = "done"
    SKIPPED_DUPLICATE = "skipped_duplicate"
    SKIPPED_MALFORMED = "skipped_malformed"
    RETRYABLE_FAILURE = "retryable_failure"
    PERMANENT_FAILURE = "permanent_failure"


@dataclass
class ProcessingTask:
    """Transient per-file state, owned by the thread processing it."""

    file_ref: Optional[FileRef]
    property_match: Optional[str] = None
    year: Optional[str] = None
    outcome: Outcome = Outcome.PENDING
    error: Optional[str] = None

    @property
    def acknowledge(self) -> bool:
        """Whether the input source may consider this file handled."""
        return self.outcome not in (Outcome.PENDING, Outcome.RETRYABLE_FAILURE)

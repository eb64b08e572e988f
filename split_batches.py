#!/usr/bin/env python3
"""
Split a large Drive folder into numbered batch folders.

One-off utility used to break a folder of tens of thousands of drawings into
Batch1..BatchN folders the worker can be pointed at one at a time.

This script:
1. Finds or creates Batch1..BatchN under a parent folder
2. Lists every file in the source folder
3. Moves files in chunks into the current batch folder until it holds
   --files-per-batch files (the last batch takes whatever is left)
4. Appends one audit row per file to a spreadsheet, falling back to a local
   JSON file when the append fails
5. Saves progress after every chunk so an interrupted run can resume

Usage:
    python split_batches.py --source <folder-id> --parent <folder-id> --audit-spreadsheet <sheet-id>
    python split_batches.py --source <folder-id> --parent <folder-id> --dry-run
    python split_batches.py --status
    python split_batches.py --source <folder-id> --parent <folder-id> --resume-batch 4
"""

import argparse
import json
import sys
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from drive_storage import DriveStorage
from errors import OrganizerError
from models import FileRef
from settings import get_logger, get_settings, setup_logging
from sheets_ledger import SheetsClient

logger = get_logger("split")

FILES_PER_BATCH = 8000
BATCH_COUNT = 9
CHUNK_SIZE = 100
FILE_DELAY = 0.1
CHUNK_DELAY = 2.0
DEFAULT_PROGRESS_FILE = "batch_progress.json"

AUDIT_HEADERS = [
    "Timestamp",
    "File ID",
    "File Name",
    "Source Folder",
    "Destination Batch",
    "Destination Folder ID",
    "File Size (bytes)",
    "Status",
    "File ID After Move",
]


@dataclass
class SplitProgress:
    current_batch: int = 1
    files_in_current_batch: int = 0
    total_processed: int = 0
    batch_folders: dict = field(default_factory=dict)

    @classmethod
    def load(cls, path: Path) -> "SplitProgress":
        if not path.exists():
            return cls()
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not load previous progress ({e}), starting fresh")
            return cls()
        return cls(
            current_batch=int(data.get("currentBatch", 1)),
            files_in_current_batch=int(data.get("filesInCurrentBatch", 0)),
            total_processed=int(data.get("totalProcessed", 0)),
            batch_folders={str(k): v for k, v in data.get("batchFolders", {}).items()},
        )

    def save(self, path: Path):
        data = {
            "currentBatch": self.current_batch,
            "filesInCurrentBatch": self.files_in_current_batch,
            "totalProcessed": self.total_processed,
            "batchFolders": self.batch_folders,
        }
        with open(path, "w") as f:
            json.dump(data, f, indent=2)


class BatchSplitter:
    def __init__(
        self,
        storage,
        source_folder_id: str,
        parent_folder_id: str,
        audit: Optional[SheetsClient] = None,
        progress_path: Path = Path(DEFAULT_PROGRESS_FILE),
        files_per_batch: int = FILES_PER_BATCH,
        batch_count: int = BATCH_COUNT,
        chunk_size: int = CHUNK_SIZE,
        file_delay: float = FILE_DELAY,
        chunk_delay: float = CHUNK_DELAY,
        backup_dir: Path = Path("."),
        dry_run: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.storage = storage
        self.source_folder_id = source_folder_id
        self.parent_folder_id = parent_folder_id
        self.audit = audit
        self.progress_path = Path(progress_path)
        self.files_per_batch = files_per_batch
        self.batch_count = batch_count
        self.chunk_size = chunk_size
        self.file_delay = file_delay
        self.chunk_delay = chunk_delay
        self.backup_dir = Path(backup_dir)
        self.dry_run = dry_run
        self.sleep = sleep
        self.progress = SplitProgress.load(self.progress_path)
        self.source_label = source_folder_id

    # ==========================================================================
    # SETUP
    # ==========================================================================

    def ensure_batch_folders(self):
        for i in range(1, self.batch_count + 1):
            name = f"Batch{i}"
            folder_id = self.storage.find_folder(self.parent_folder_id, name)
            if folder_id:
                logger.info(f"Found existing {name} ({folder_id})")
            elif self.dry_run:
                folder_id = f"<new {name}>"
                print(f"  [DRY RUN] Would create folder: {name}")
            else:
                folder_id = self.storage.create_folder(self.parent_folder_id, name)
            self.progress.batch_folders[str(i)] = folder_id

    def _batch_has_room(self, pending: int) -> bool:
        if self.progress.current_batch >= self.batch_count:
            return True
        return self.progress.files_in_current_batch + pending < self.files_per_batch

    # ==========================================================================
    # MOVING
    # ==========================================================================

    def _audit_row(self, file: FileRef, folder_id: str, status: str, id_after: str) -> list:
        return [
            datetime.now(timezone.utc).isoformat(),
            file.id,
            file.name,
            self.source_label,
            f"Batch{self.progress.current_batch}",
            folder_id,
            file.size or 0,
            status,
            id_after,
        ]

    def write_audit(self, rows: list) -> Optional[Path]:
        """Append audit rows; on failure save them locally. Returns the backup path if one was written."""
        if not rows or self.dry_run:
            return None
        if self.audit is not None:
            try:
                self.audit.append_rows("A:I", rows)
                logger.info(f"Wrote {len(rows)} entries to audit log")
                return None
            except (OrganizerError, OSError) as e:
                logger.error(f"Failed to write audit data: {e}")

        backup = self.backup_dir / f"audit_backup_{int(time.time() * 1000)}.json"
        with open(backup, "w") as f:
            json.dump(rows, f, indent=2)
        logger.info(f"Saved audit data to local backup: {backup}")
        return backup

    def process_chunk(self, files: list[FileRef]) -> int:
        """Move one chunk into the current batch folder. Returns how many moved."""
        batch = self.progress.current_batch
        folder_id = self.progress.batch_folders[str(batch)]
        logger.info(f"Processing {len(files)} files for Batch{batch} (folder {folder_id})")

        rows = []
        moved = 0
        for i, file in enumerate(files):
            if self.dry_run:
                print(f"  [DRY RUN] Would move: {file.name} -> Batch{batch}")
                moved += 1
            else:
                try:
                    result = self.storage.move_file(file, folder_id)
                    rows.append(self._audit_row(file, folder_id, "MOVED SUCCESSFULLY", result.id))
                    moved += 1
                except OrganizerError as e:
                    logger.error(f"Error moving {file.name} ({file.id}, parents={','.join(file.parents) or 'none'}): {e}")
                    rows.append(self._audit_row(file, folder_id, f"ERROR: {e}", "N/A"))
                if i < len(files) - 1:
                    self.sleep(self.file_delay)

        self.progress.files_in_current_batch += moved
        self.progress.total_processed += moved
        self.write_audit(rows)

        logger.info(f"Processed {moved}/{len(files)} files successfully")
        logger.info(f"Batch{batch}: {self.progress.files_in_current_batch} files | Total: {self.progress.total_processed}")

        if batch < self.batch_count and self.progress.files_in_current_batch >= self.files_per_batch:
            logger.info(f"Batch{batch} completed with {self.progress.files_in_current_batch} files")
            self.progress.current_batch += 1
            self.progress.files_in_current_batch = 0

        if not self.dry_run:
            self.progress.save(self.progress_path)
            self.sleep(self.chunk_delay)
        return moved

    def run(self) -> dict:
        """Move everything currently in the source folder. Returns a summary."""
        self.source_label = self.storage.get_file(self.source_folder_id).name or self.source_folder_id
        self.ensure_batch_folders()

        files = self.storage.list_all(self.source_folder_id)
        logger.info(f"Total files found in {self.source_label}: {len(files)}")

        moved = 0
        chunk: list[FileRef] = []
        for file in files:
            chunk.append(file)
            if len(chunk) >= self.chunk_size or not self._batch_has_room(len(chunk)):
                moved += self.process_chunk(chunk)
                chunk = []
        if chunk:
            logger.info(f"Processing final {len(chunk)} files...")
            moved += self.process_chunk(chunk)

        return {"found": len(files), "moved": moved, "progress": asdict(self.progress)}


def print_status(progress: SplitProgress):
    print("CURRENT STATUS:")
    print(f"   Current Batch: {progress.current_batch}")
    print(f"   Files in Current Batch: {progress.files_in_current_batch}")
    print(f"   Total Files Processed: {progress.total_processed}")
    print(f"   Batch Folders Created: {len(progress.batch_folders)}")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Split a Drive folder into Batch1..BatchN folders",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--source", "-s", help="Source folder ID")
    parser.add_argument("--parent", "-p", help="Parent folder ID for the batch folders")
    parser.add_argument("--audit-spreadsheet", default=None, help="Spreadsheet ID for the audit log")
    parser.add_argument("--progress-file", default=DEFAULT_PROGRESS_FILE, help="Progress JSON path")
    parser.add_argument("--files-per-batch", type=int, default=FILES_PER_BATCH)
    parser.add_argument("--batches", type=int, default=BATCH_COUNT, help="Number of batch folders")
    parser.add_argument("--chunk-size", type=int, default=CHUNK_SIZE)
    parser.add_argument("--dry-run", action="store_true", help="Show what would be done without making changes")
    parser.add_argument("--status", action="store_true", help="Print saved progress and exit")
    parser.add_argument("--resume-batch", type=int, default=None, help="Continue filling batch N")
    parser.add_argument("--resume-files", type=int, default=0, help="Files already in the resumed batch")
    args = parser.parse_args(argv)

    progress_path = Path(args.progress_file)
    if args.status:
        print_status(SplitProgress.load(progress_path))
        return 0
    if not args.source or not args.parent:
        parser.error("--source and --parent are required")

    settings = get_settings()
    setup_logging(settings.get("log_level"), settings.get("log_file"))
    key_path = settings.get("google_application_credentials")
    subject = settings.get("impersonate_user_email") or None

    storage = DriveStorage.from_service_account(key_path, subject)
    audit = SheetsClient.from_service_account(key_path, args.audit_spreadsheet, subject) if args.audit_spreadsheet else None

    splitter = BatchSplitter(
        storage,
        args.source,
        args.parent,
        audit=audit,
        progress_path=progress_path,
        files_per_batch=args.files_per_batch,
        batch_count=args.batches,
        chunk_size=args.chunk_size,
        dry_run=args.dry_run,
    )
    if args.resume_batch is not None:
        splitter.progress.current_batch = args.resume_batch
        splitter.progress.files_in_current_batch = args.resume_files
        logger.info(f"Resuming from Batch{args.resume_batch} with {args.resume_files} files")

    print("=" * 60)
    print("Batch Split")
    print("=" * 60)
    print(f"Source: {args.source}")
    print(f"Parent: {args.parent}")
    if args.dry_run:
        print("Mode: DRY RUN (no changes will be made)")
    print("=" * 60)

    try:
        result = splitter.run()
    except OrganizerError as e:
        logger.error(f"Batch split failed: {e}")
        if not args.dry_run:
            splitter.progress.save(progress_path)
        return 1

    print("\n" + "=" * 60)
    print("Batch split complete!")
    print(f"  Found: {result['found']} files")
    print(f"  Moved: {result['moved']} files")
    print("=" * 60)
    return 0


if __name__ == "__main__":
    sys.exit(main())

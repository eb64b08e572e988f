"""
Spreadsheet ledger of processed files and the property registry.

Both live in one Google Sheets spreadsheet, each on its own tab. Rows are read
by header name so column order in the sheet does not matter:

    ProcessedFiles: File ID | File Name | Processed Date | Error
    Properties:     Name | Address
"""

from datetime import datetime, timezone
from typing import Iterable, Optional

from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from drive_storage import load_credentials
from errors import LedgerError, kind_for_status
from models import LedgerEntry, PropertyRecord
from settings import get_logger

logger = get_logger("ledger")

LEDGER_HEADERS = ["File ID", "File Name", "Processed Date", "Error"]
PROPERTY_HEADERS = ["Name", "Address"]


def _ledger_error(action: str, error: HttpError) -> LedgerError:
    status = getattr(error.resp, "status", None)
    status = int(status) if status is not None else None
    return LedgerError(f"Sheets {action} failed ({status}): {error}", kind=kind_for_status(status), status=status)


def rows_to_records(rows: list[list]) -> list[dict]:
    """Turn a header row plus data rows into dicts keyed by header."""
    if not rows:
        return []
    headers = [str(h).strip() for h in rows[0]]
    records = []
    for row in rows[1:]:
        if not any(str(cell).strip() for cell in row):
            continue
        records.append({
            header: (str(row[i]).strip() if i < len(row) else "")
            for i, header in enumerate(headers)
        })
    return records


def _parse_timestamp(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return datetime.fromtimestamp(0, tz=timezone.utc)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class SheetsClient:
    """Google Sheets v4 values API: read a range, append rows."""

    def __init__(self, service, spreadsheet_id: str):
        self.service = service
        self.spreadsheet_id = spreadsheet_id

    @classmethod
    def from_service_account(cls, key_path: str, spreadsheet_id: str, subject: Optional[str] = None) -> "SheetsClient":
        creds = load_credentials(key_path, subject)
        return cls(build("sheets", "v4", credentials=creds, cache_discovery=False), spreadsheet_id)

    def get_values(self, range_name: str) -> list[list]:
        try:
            result = self.service.spreadsheets().values().get(
                spreadsheetId=self.spreadsheet_id,
                range=range_name,
            ).execute()
        except HttpError as e:
            raise _ledger_error("read", e) from e
        return result.get("values", [])

    def append_rows(self, range_name: str, rows: list[list]) -> int:
        """Append rows in a single request. Returns the number of rows written."""
        try:
            result = self.service.spreadsheets().values().append(
                spreadsheetId=self.spreadsheet_id,
                range=range_name,
                valueInputOption="RAW",
                insertDataOption="INSERT_ROWS",
                body={"values": rows},
            ).execute()
        except HttpError as e:
            raise _ledger_error("append", e) from e
        return result.get("updates", {}).get("updatedRows", len(rows))


class Ledger:
    """Processed-files tab plus the read-only property registry tab."""

    def __init__(self, client: SheetsClient, sheet_name: str = "ProcessedFiles", property_sheet_name: str = "Properties"):
        self.client = client
        self.sheet_name = sheet_name
        self.property_sheet_name = property_sheet_name

    def load_all(self) -> list[LedgerEntry]:
        """Every ledger row, oldest first."""
        records = rows_to_records(self.client.get_values(f"'{self.sheet_name}'"))
        entries = []
        for record in records:
            file_id = record.get("File ID", "")
            file_name = record.get("File Name", "")
            if not file_id and not file_name:
                continue
            entries.append(LedgerEntry(
                file_id=file_id,
                file_name=file_name,
                processed_at=_parse_timestamp(record.get("Processed Date", "")),
                error_note=record.get("Error") or None,
            ))
        return entries

    def ensure_header(self):
        """Write the header row if the tab is empty."""
        if not self.client.get_values(f"'{self.sheet_name}'!A1:D1"):
            self.client.append_rows(f"'{self.sheet_name}'!A1", [LEDGER_HEADERS])
            logger.info(f"Wrote header row to '{self.sheet_name}'")

    def append(self, entry: LedgerEntry):
        self.append_batch([entry])

    def append_batch(self, entries: Iterable[LedgerEntry]) -> int:
        """Append all entries in one request; the batch lands entirely or not at all."""
        rows = [entry.to_row() for entry in entries]
        if not rows:
            return 0
        return self.client.append_rows(f"'{self.sheet_name}'!A:D", rows)

    def load_properties(self) -> list[PropertyRecord]:
        """Property registry rows with both a name and an address."""
        records = rows_to_records(self.client.get_values(f"'{self.property_sheet_name}'"))
        properties = [
            PropertyRecord(name=r.get("Name", ""), address=r.get("Address", ""))
            for r in records
            if r.get("Name") and r.get("Address")
        ]
        logger.info(f"Loaded {len(properties)} properties from '{self.property_sheet_name}'")
        return properties

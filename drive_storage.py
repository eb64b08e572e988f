"""
Google Drive storage client.

Thin wrapper over the Drive v3 API: list, get, download, folder lookup and
creation, copy and move. Every call opts in to shared drives. HttpError is
converted to StorageError tagged with an ErrorKind so a missing file (404)
can be told apart from a transient failure.
"""

import io
from typing import Iterator, Optional

from google.oauth2.service_account import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseDownload

from errors import StorageError, kind_for_status
from models import FOLDER_MIME_TYPE, FileRef
from settings import get_logger

logger = get_logger("drive")

DRIVE_SCOPES = ["https://www.googleapis.com/auth/drive"]
SHEETS_SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]

FILE_FIELDS = "id, name, mimeType, size, parents"
LIST_PAGE_SIZE = 1000
LIST_ORDER = "createdTime,name"


def load_credentials(key_path: str, subject: Optional[str] = None, scopes: Optional[list] = None) -> Credentials:
    """Service-account credentials, optionally impersonating a Workspace user."""
    creds = Credentials.from_service_account_file(key_path, scopes=scopes or DRIVE_SCOPES + SHEETS_SCOPES)
    if subject:
        creds = creds.with_subject(subject)
    return creds


def escape_query_value(value: str) -> str:
    """Escape a literal for use inside a single-quoted Drive query string."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def _storage_error(action: str, error: HttpError) -> StorageError:
    status = getattr(error.resp, "status", None)
    status = int(status) if status is not None else None
    return StorageError(f"Drive {action} failed ({status}): {error}", kind=kind_for_status(status), status=status)


class DriveStorage:
    """Drive v3 operations used by the organizer."""

    def __init__(self, service):
        self.service = service

    @classmethod
    def from_service_account(cls, key_path: str, subject: Optional[str] = None) -> "DriveStorage":
        creds = load_credentials(key_path, subject)
        return cls(build("drive", "v3", credentials=creds, cache_discovery=False))

    # ==========================================================================
    # LISTING
    # ==========================================================================

    def list_files(
        self,
        folder_id: str,
        page_token: Optional[str] = None,
        page_size: int = LIST_PAGE_SIZE,
        query: Optional[str] = None,
    ) -> tuple[list[FileRef], Optional[str]]:
        """
        List one page of the non-trashed children of a folder.

        Returns:
            (files, next_page_token); the token is None on the last page
        """
        q = f"'{escape_query_value(folder_id)}' in parents and trashed = false"
        if query:
            q += f" and {query}"
        try:
            response = self.service.files().list(
                q=q,
                fields=f"nextPageToken, files({FILE_FIELDS})",
                pageSize=page_size,
                pageToken=page_token,
                orderBy=LIST_ORDER,
                supportsAllDrives=True,
                includeItemsFromAllDrives=True,
            ).execute()
        except HttpError as e:
            raise _storage_error("list", e) from e

        files = [FileRef.from_drive(item) for item in response.get("files", [])]
        return files, response.get("nextPageToken")

    def iter_pages(self, folder_id: str, page_size: int = LIST_PAGE_SIZE, query: Optional[str] = None) -> Iterator[list[FileRef]]:
        """Yield every page of a folder listing until the token runs out."""
        page_token = None
        while True:
            files, page_token = self.list_files(folder_id, page_token, page_size, query)
            yield files
            if not page_token:
                break

    def list_all(self, folder_id: str, query: Optional[str] = None) -> list[FileRef]:
        files = []
        for page in self.iter_pages(folder_id, query=query):
            files.extend(page)
        return files

    # ==========================================================================
    # FILES
    # ==========================================================================

    def get_file(self, file_id: str) -> FileRef:
        """Fetch metadata. A missing file raises StorageError with kind NOT_FOUND."""
        try:
            data = self.service.files().get(
                fileId=file_id,
                fields=FILE_FIELDS,
                supportsAllDrives=True,
            ).execute()
        except HttpError as e:
            raise _storage_error("get", e) from e
        return FileRef.from_drive(data)

    def get_media(self, file_id: str) -> bytes:
        """Download the raw bytes of a file."""
        buffer = io.BytesIO()
        try:
            request = self.service.files().get_media(fileId=file_id, supportsAllDrives=True)
            downloader = MediaIoBaseDownload(buffer, request)
            done = False
            while not done:
                _, done = downloader.next_chunk()
        except HttpError as e:
            raise _storage_error("download", e) from e
        return buffer.getvalue()

    def copy_file(self, file_id: str, parent_id: str, name: Optional[str] = None) -> str:
        """Copy a file into parent_id. Returns the new file's id."""
        body = {"parents": [parent_id]}
        if name:
            body["name"] = name
        try:
            result = self.service.files().copy(
                fileId=file_id,
                body=body,
                fields="id",
                supportsAllDrives=True,
            ).execute()
        except HttpError as e:
            raise _storage_error("copy", e) from e
        return result["id"]

    def move_file(self, file: FileRef, parent_id: str) -> FileRef:
        """Move a file to parent_id, detaching it from its current parents."""
        try:
            result = self.service.files().update(
                fileId=file.id,
                addParents=parent_id,
                removeParents=",".join(file.parents),
                fields=FILE_FIELDS,
                supportsAllDrives=True,
            ).execute()
        except HttpError as e:
            raise _storage_error("move", e) from e
        return FileRef.from_drive(result)

    # ==========================================================================
    # FOLDERS
    # ==========================================================================

    def find_folder(self, parent_id: Optional[str], name: str) -> Optional[str]:
        """
        Id of the first non-trashed folder named `name`.
        Scoped to direct children of parent_id; searches everywhere visible when parent_id is None.
        """
        q = (
            f"name = '{escape_query_value(name)}'"
            f" and mimeType = '{FOLDER_MIME_TYPE}'"
            " and trashed = false"
        )
        if parent_id:
            q = f"'{escape_query_value(parent_id)}' in parents and " + q
        try:
            response = self.service.files().list(
                q=q,
                fields="files(id, name)",
                pageSize=1,
                supportsAllDrives=True,
                includeItemsFromAllDrives=True,
            ).execute()
        except HttpError as e:
            raise _storage_error("folder lookup", e) from e
        folders = response.get("files", [])
        return folders[0]["id"] if folders else None

    def create_folder(self, parent_id: Optional[str], name: str) -> str:
        """Create a folder under parent_id (or at My Drive root when None). Returns its id."""
        metadata = {"name": name, "mimeType": FOLDER_MIME_TYPE}
        if parent_id:
            metadata["parents"] = [parent_id]
        try:
            folder = self.service.files().create(
                body=metadata,
                fields="id",
                supportsAllDrives=True,
            ).execute()
        except HttpError as e:
            raise _storage_error("create folder", e) from e
        logger.info(f"Created folder '{name}' under {parent_id or 'root'}: {folder['id']}")
        return folder["id"]

"""
Files drawings into <root>/<property>/<year>/ by copying them.

The source tree is never modified. Folder lookups are get-or-create; a lock per
(parent, name) keeps concurrent tasks from creating the same folder twice, and
resolved ids are cached for the life of the process.
"""

import threading
from collections import defaultdict
from typing import Optional

from models import FileRef
from settings import get_logger

logger = get_logger("filer")


class Filer:
    def __init__(self, storage, root_folder_id: Optional[str] = None):
        self.storage = storage
        self.root_folder_id = root_folder_id
        self._cache: dict[tuple[Optional[str], str], str] = {}
        self._locks: defaultdict = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    def _lock_for(self, key) -> threading.Lock:
        with self._locks_guard:
            return self._locks[key]

    def ensure_folder(self, parent_id: Optional[str], name: str) -> str:
        """Id of folder `name` under parent_id, created if missing."""
        key = (parent_id, name)
        cached = self._cache.get(key)
        if cached:
            return cached

        with self._lock_for(key):
            if key in self._cache:
                return self._cache[key]
            folder_id = self.storage.find_folder(parent_id, name)
            if folder_id is None:
                folder_id = self.storage.create_folder(parent_id, name)
            self._cache[key] = folder_id
            return folder_id

    def ensure_root(self, name: str = "Ordered Property Drawings", folder_id: Optional[str] = None) -> str:
        """Set the destination root: an explicit id, or a folder found or created by name."""
        if folder_id:
            self.root_folder_id = folder_id
        else:
            self.root_folder_id = self.ensure_folder(None, name)
        logger.info(f"Destination folder '{name}': {self.root_folder_id}")
        return self.root_folder_id

    def file(self, file: FileRef, property_name: str, year: str, root_folder_id: Optional[str] = None) -> str:
        """Copy `file` into root/property/year under its original name. Returns the copy's id."""
        root = root_folder_id or self.root_folder_id
        if not root:
            raise ValueError(f"No destination root folder when filing {file.name}")

        property_folder = self.ensure_folder(root, property_name)
        year_folder = self.ensure_folder(property_folder, year)
        copy_id = self.storage.copy_file(file.id, year_folder, name=file.name)
        logger.info(f"Copied {file.name} ({file.id}) -> {property_name}/{year} (new file ID: {copy_id})")
        return copy_id

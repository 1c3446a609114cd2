"""
JSON file note store.

The default store for a wallet session: every record lives in one JSON
document that is rewritten atomically on each change. Records handed to
this store by the pool manager are already sealed, so the file never
contains plaintext deposit secrets.
"""

import json
import os
import shutil
import threading
from datetime import datetime
from typing import Any

from exceptions import StorageError
from storage.base import LocalStore, StorageReadError, StorageWriteError

FILE_FORMAT_VERSION = 1


class JSONFileStore(LocalStore):
    """
    JSON file store.

    Thread-safe within a process. The document is cached after the first
    read and written back through a temp file plus os.replace.
    """

    def __init__(self, file_path: str):
        self.file_path = file_path
        self._lock = threading.Lock()
        self._cache: dict[str, dict[str, Any]] | None = None

    def _read_file(self) -> dict[str, dict[str, Any]]:
        try:
            if not os.path.exists(self.file_path):
                return {}

            with open(self.file_path, 'r', encoding='utf-8') as f:
                raw_data = f.read()

            if not raw_data.strip():
                return {}

            document = json.loads(raw_data)
        except PermissionError as e:
            raise StorageReadError(f"Permission denied: {self.file_path}", cause=e) from e
        except json.JSONDecodeError as e:
            raise StorageReadError(f"Invalid JSON format: {e}", cause=e) from e
        except OSError as e:
            raise StorageReadError(f"Failed to read {self.file_path}: {e}", cause=e) from e

        records = document.get("records") if isinstance(document, dict) else None
        if not isinstance(records, dict):
            raise StorageReadError(f"Unrecognized store layout in {self.file_path}")
        return records

    def _records(self) -> dict[str, dict[str, Any]]:
        if self._cache is None:
            self._cache = self._read_file()
        return self._cache

    def _write_file(self, records: dict[str, dict[str, Any]]) -> None:
        document = {"version": FILE_FORMAT_VERSION, "records": records}
        temp_path = f"{self.file_path}.tmp"
        try:
            directory = os.path.dirname(self.file_path)
            if directory:
                os.makedirs(directory, exist_ok=True)

            data = json.dumps(document, indent=2, sort_keys=True, ensure_ascii=False)
            with open(temp_path, 'w', encoding='utf-8') as f:
                f.write(data)

            os.replace(temp_path, self.file_path)
        except PermissionError as e:
            raise StorageWriteError(f"Permission denied: {self.file_path}", cause=e) from e
        except (OSError, TypeError, ValueError) as e:
            raise StorageWriteError(f"Failed to write {self.file_path}: {e}", cause=e) from e

    def save_record(self, key: str, record: dict[str, Any]) -> None:
        with self._lock:
            records = dict(self._records())
            records[key] = json.loads(json.dumps(record))
            self._write_file(records)
            self._cache = records

    def load_record(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            record = self._records().get(key)
            return json.loads(json.dumps(record)) if record is not None else None

    def delete_record(self, key: str) -> bool:
        with self._lock:
            records = dict(self._records())
            if key not in records:
                return False
            del records[key]
            self._write_file(records)
            self._cache = records
            return True

    def list_keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(k for k in self._records() if k.startswith(prefix))

    def is_available(self) -> bool:
        """True if the file's directory exists (or can be created) and is writable."""
        directory = os.path.dirname(os.path.abspath(self.file_path))
        while not os.path.exists(directory):
            parent = os.path.dirname(directory)
            if parent == directory:
                return False
            directory = parent
        return os.access(directory, os.W_OK)

    def get_info(self) -> dict[str, Any]:
        info = super().get_info()
        info.update({
            "file_path": self.file_path,
            "file_exists": os.path.exists(self.file_path),
        })

        if os.path.exists(self.file_path):
            try:
                stat = os.stat(self.file_path)
                info["file_size_bytes"] = stat.st_size
                info["last_modified"] = stat.st_mtime
            except OSError:
                pass

        return info

    def reload(self) -> None:
        """Drop the cached document so the next read goes to disk."""
        with self._lock:
            self._cache = None

    def backup(self, backup_path: str | None = None) -> str:
        """
        Copy the store file next to itself.

        Returns:
            Path to the backup file

        Raises:
            StorageError: If there is nothing to back up or the copy fails
        """
        if backup_path is None:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            backup_path = f"{self.file_path}.{timestamp}.backup"

        with self._lock:
            if not os.path.exists(self.file_path):
                raise StorageError("No file to backup", operation="backup")
            try:
                shutil.copy2(self.file_path, backup_path)
            except OSError as e:
                raise StorageError(f"Backup failed: {e}", operation="backup", cause=e) from e
        return backup_path

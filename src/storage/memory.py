"""
In-memory note store.

Holds records in process memory only, useful for:
- Unit testing
- Ephemeral sessions that re-derive notes from chain on start
"""

import copy
import threading
from typing import Any

from storage.base import LocalStore


class MemoryStore(LocalStore):
    """
    In-memory store. All data is lost when the process exits.

    Records are deep-copied in and out so callers cannot mutate stored state.
    """

    def __init__(self):
        self._records: dict[str, dict[str, Any]] = {}
        # RLock so get_info can call list_keys while holding it
        self._lock = threading.RLock()

    def save_record(self, key: str, record: dict[str, Any]) -> None:
        with self._lock:
            self._records[key] = copy.deepcopy(record)

    def load_record(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            record = self._records.get(key)
            return copy.deepcopy(record) if record is not None else None

    def delete_record(self, key: str) -> bool:
        with self._lock:
            return self._records.pop(key, None) is not None

    def list_keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(k for k in self._records if k.startswith(prefix))

    def is_available(self) -> bool:
        """Memory storage is always available."""
        return True

    def get_info(self) -> dict[str, Any]:
        info = super().get_info()
        with self._lock:
            info["record_count"] = len(self._records)
        return info

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

"""
Local note storage for the shielded pool.

Pluggable stores for sealed deposit notes and wallet-side state:

- JSON file (default, one document per wallet)
- Memory (for testing and ephemeral sessions)

Usage:
    from storage import get_storage_backend

    store = get_storage_backend(config)
    store.save_record("deposit:dep_1a2b", sealed_record)
    record = store.load_record("deposit:dep_1a2b")
"""

from typing import TYPE_CHECKING

from exceptions import StorageError
from storage.base import LocalStore, StorageReadError, StorageWriteError
from storage.json_file import JSONFileStore
from storage.memory import MemoryStore

if TYPE_CHECKING:
    from config import PrivacyConfig

__all__ = [
    "JSONFileStore",
    "LocalStore",
    "MemoryStore",
    "StorageError",
    "StorageReadError",
    "StorageWriteError",
    "get_storage_backend",
]


def get_storage_backend(config: "PrivacyConfig") -> LocalStore:
    """
    Build the store selected by ``config.storage_backend``.

    Returns:
        Configured LocalStore instance
    """
    backend_type = config.storage_backend.lower()

    if backend_type == "json":
        return JSONFileStore(config.storage_path)

    if backend_type == "memory":
        return MemoryStore()

    raise StorageError(f"Unknown storage backend: {backend_type}", operation="configure")

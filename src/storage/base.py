"""
Abstract base class for local note stores.

A LocalStore keeps opaque records (already-sealed deposit notes, alias
state, withdrawal history) keyed by id. The pool manager treats every
failure here as advisory: it never rolls back an operation whose funds
already moved on chain.
"""

from abc import ABC, abstractmethod
from typing import Any

from exceptions import StorageError


class StorageReadError(StorageError):
    """Raised when reading from storage fails."""

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message, operation="read", cause=cause)


class StorageWriteError(StorageError):
    """Raised when writing to storage fails."""

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message, operation="write", cause=cause)


class LocalStore(ABC):
    """
    Key-value store for JSON-serializable records.

    Keys are namespaced strings such as ``deposit:<id>`` or ``alias:<id>``.
    """

    @abstractmethod
    def save_record(self, key: str, record: dict[str, Any]) -> None:
        """
        Insert or replace a record.

        Raises:
            StorageWriteError: If writing fails
        """
        pass

    @abstractmethod
    def load_record(self, key: str) -> dict[str, Any] | None:
        """
        Load a record.

        Returns:
            A copy of the record, or None if the key is unknown

        Raises:
            StorageReadError: If reading fails
        """
        pass

    @abstractmethod
    def delete_record(self, key: str) -> bool:
        """Delete a record. Returns False if it did not exist."""
        pass

    @abstractmethod
    def list_keys(self, prefix: str = "") -> list[str]:
        """List stored keys starting with ``prefix``, sorted."""
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """
        Check if the store is available and ready.

        Returns:
            True if storage is accessible, False otherwise
        """
        pass

    def load_all(self, prefix: str) -> dict[str, dict[str, Any]]:
        """Load every record under ``prefix``. Missing keys are skipped."""
        records = {}
        for key in self.list_keys(prefix):
            record = self.load_record(key)
            if record is not None:
                records[key] = record
        return records

    def get_info(self) -> dict[str, Any]:
        """
        Get information about the store.

        Returns:
            Dictionary with backend type, status, and configuration
        """
        return {
            "backend_type": self.__class__.__name__,
            "available": self.is_available(),
        }

    def close(self) -> None:
        """
        Release resources.

        Default implementation does nothing; backends holding handles
        should override this.
        """
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

"""
Shielded Pool - Nullifier Ledger

Tracks spent nullifiers so a deposit can never be withdrawn twice.

Two sets are kept:
- spent: authoritative, fed from confirmed on-chain spends. record_spent
  is its only write path and is atomic, so two racing callers get exactly
  one success and one DoubleSpendError.
- pending: advisory, holds nullifiers this client is currently spending.
  It serializes spends of the same deposit inside one wallet instance and
  is always released when an attempt ends without broadcasting.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Iterable, Iterator

from exceptions import DoubleSpendError, SpendInProgressError
from field_utils import field_to_hex

logger = logging.getLogger(__name__)


@dataclass
class SpentEntry:
    """A nullifier recorded as spent."""
    nullifier: int
    tx_hash: str | None = None
    recorded_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return {
            "nullifier": field_to_hex(self.nullifier),
            "tx_hash": self.tx_hash,
            "recorded_at": self.recorded_at,
        }


class NullifierLedger:
    """Spent and pending nullifier sets for one pool."""

    def __init__(self):
        self._lock = threading.Lock()
        self._spent: dict[int, SpentEntry] = {}
        self._pending: set[int] = set()

    def is_spent(self, nullifier: int) -> bool:
        with self._lock:
            return nullifier in self._spent

    def record_spent(self, nullifier: int, tx_hash: str | None = None) -> SpentEntry:
        """
        Record a nullifier as spent.

        Raises:
            DoubleSpendError: if the nullifier was already recorded
        """
        with self._lock:
            existing = self._spent.get(nullifier)
            if existing is not None:
                raise DoubleSpendError(
                    field_to_hex(nullifier),
                    details={"first_tx_hash": existing.tx_hash},
                )
            entry = SpentEntry(nullifier=nullifier, tx_hash=tx_hash)
            self._spent[nullifier] = entry
            self._pending.discard(nullifier)

        logger.info(f"Nullifier {field_to_hex(nullifier)[:18]}... recorded as spent")
        return entry

    def load_spent(self, nullifiers: Iterable[int]) -> int:
        """Merge nullifiers observed on chain. Returns how many were new."""
        added = 0
        with self._lock:
            for nullifier in nullifiers:
                if nullifier not in self._spent:
                    self._spent[nullifier] = SpentEntry(nullifier=nullifier)
                    self._pending.discard(nullifier)
                    added += 1
        return added

    # ------------------------------------------------------------------
    # Advisory pending set
    # ------------------------------------------------------------------

    def reserve_pending(self, nullifier: int):
        """
        Mark a nullifier as being spent by this client.

        Raises:
            DoubleSpendError: if it is already spent
            SpendInProgressError: if another local attempt holds it
        """
        with self._lock:
            if nullifier in self._spent:
                raise DoubleSpendError(field_to_hex(nullifier))
            if nullifier in self._pending:
                raise SpendInProgressError(field_to_hex(nullifier))
            self._pending.add(nullifier)

    def release_pending(self, nullifier: int):
        with self._lock:
            self._pending.discard(nullifier)

    def is_pending(self, nullifier: int) -> bool:
        with self._lock:
            return nullifier in self._pending

    @contextmanager
    def pending_spend(self, nullifier: int) -> Iterator[None]:
        """
        Hold the pending reservation for the duration of a spend attempt.

        The reservation is released on every exit path, including
        cancellation. A successful record_spent inside the block already
        moved the nullifier to the spent set.
        """
        self.reserve_pending(nullifier)
        try:
            yield
        finally:
            self.release_pending(nullifier)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def spent_count(self) -> int:
        with self._lock:
            return len(self._spent)

    def get_spent(self, nullifier: int) -> SpentEntry | None:
        with self._lock:
            return self._spent.get(nullifier)

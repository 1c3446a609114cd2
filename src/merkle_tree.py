"""
Shielded Pool - Incremental Merkle Tree

Fixed-depth, append-only Merkle tree over deposit commitments.

Conventions (shared with the proving circuits, must match bit-for-bit):
- Empty slots hold zeros[0] = zero_leaf(); zeros[i+1] = H(zeros[i], zeros[i]).
- A node is hash_pair(left, right).
- A path is ordered leaf-to-root as (sibling, is_left) pairs. is_left is
  True when the sibling is the LEFT child, i.e. when bit i of the leaf
  index is 1. The parent is then hash_pair(sibling, current).
- The tree remembers the last ``root_history_size`` roots (the empty root
  included). Paths can be produced against any of them.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Iterable

from exceptions import TreeFullError, UnknownRootError, ValidationError
from field_utils import field_to_hex, hash_pair, to_field, zero_leaf

logger = logging.getLogger(__name__)

DEFAULT_TREE_DEPTH = 20
DEFAULT_ROOT_HISTORY_SIZE = 30
MAX_TREE_DEPTH = 32


def compute_zero_hashes(depth: int) -> list[int]:
    """Return zeros[0..depth], the roots of empty subtrees per level."""
    zeros = [zero_leaf()]
    for _ in range(depth):
        zeros.append(hash_pair(zeros[-1], zeros[-1]))
    return zeros


@dataclass(frozen=True)
class MerklePath:
    """Membership path for one leaf, valid only against ``root``."""
    leaf_index: int
    leaf: int
    elements: tuple[tuple[int, bool], ...]
    root: int

    @property
    def path_elements(self) -> list[int]:
        return [sibling for sibling, _ in self.elements]

    @property
    def path_indices(self) -> list[int]:
        """Circuit-style direction bits, 1 where the current node is the right child."""
        return [1 if is_left else 0 for _, is_left in self.elements]

    def compute_root(self, leaf: int | None = None) -> int:
        return compute_root_from_path(self.leaf if leaf is None else leaf, self.elements)

    def to_dict(self) -> dict[str, Any]:
        return {
            "leaf_index": self.leaf_index,
            "leaf": field_to_hex(self.leaf),
            "elements": [[field_to_hex(s), is_left] for s, is_left in self.elements],
            "root": field_to_hex(self.root),
        }


def compute_root_from_path(leaf: int, elements: Iterable[tuple[int, bool]]) -> int:
    current = leaf
    for sibling, is_left in elements:
        current = hash_pair(sibling, current) if is_left else hash_pair(current, sibling)
    return current


def verify_merkle_path(leaf: int, elements: Iterable[tuple[int, bool]], root: int) -> bool:
    return compute_root_from_path(leaf, elements) == root


class IncrementalMerkleTree:
    """
    Append-only Merkle tree with O(depth) inserts and a root history window.

    Every filled node is kept per level, so paths to any leaf are read
    directly without rehashing. Reads and writes are guarded by one lock;
    callers on other threads see either the state before or after an insert.
    """

    def __init__(self, depth: int = DEFAULT_TREE_DEPTH,
                 root_history_size: int = DEFAULT_ROOT_HISTORY_SIZE):
        if not 1 <= depth <= MAX_TREE_DEPTH:
            raise ValidationError(f"Tree depth must be 1..{MAX_TREE_DEPTH}", field_name="tree_depth")
        if root_history_size < 1:
            raise ValidationError("Root history size must be positive", field_name="root_history_size")

        self.depth = depth
        self.capacity = 2 ** depth
        self.root_history_size = root_history_size
        self.zeros = compute_zero_hashes(depth)

        self._lock = threading.RLock()
        # _layers[0] are leaves, _layers[depth] holds at most the root
        self._layers: list[list[int]] = [[] for _ in range(depth + 1)]
        self._index_by_leaf: dict[int, int] = {}
        # (root, leaf_count) pairs, oldest first
        self._root_history: deque[tuple[int, int]] = deque(maxlen=root_history_size)
        self._root_history.append((self.zeros[depth], 0))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert_leaf(self, commitment: int) -> int:
        """
        Append a commitment at the next free index.

        Returns:
            The leaf index assigned

        Raises:
            TreeFullError: once every one of the 2^depth slots is used
        """
        commitment = to_field(commitment)
        with self._lock:
            index = len(self._layers[0])
            if index >= self.capacity:
                raise TreeFullError(self.depth, self.capacity)

            self._layers[0].append(commitment)
            self._index_by_leaf.setdefault(commitment, index)

            current = commitment
            node_index = index
            for level in range(self.depth):
                if node_index % 2 == 0:
                    current = hash_pair(current, self.zeros[level])
                else:
                    current = hash_pair(self._layers[level][node_index - 1], current)
                node_index //= 2
                self._set_node(level + 1, node_index, current)

            self._root_history.append((current, index + 1))
            logger.debug(f"Inserted leaf {index}, root {field_to_hex(current)[:18]}...")
            return index

    def bulk_insert(self, commitments: Iterable[int]) -> list[int]:
        return [self.insert_leaf(c) for c in commitments]

    def _set_node(self, level: int, index: int, value: int):
        nodes = self._layers[level]
        if index == len(nodes):
            nodes.append(value)
        else:
            nodes[index] = value

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def leaf_count(self) -> int:
        with self._lock:
            return len(self._layers[0])

    def __len__(self) -> int:
        return self.leaf_count

    @property
    def leaves(self) -> list[int]:
        with self._lock:
            return list(self._layers[0])

    def current_root(self) -> int:
        with self._lock:
            return self._root_history[-1][0]

    def root_history(self) -> list[int]:
        """Accepted roots, oldest first."""
        with self._lock:
            return [root for root, _ in self._root_history]

    def is_known_root(self, root: int) -> bool:
        with self._lock:
            return any(r == root for r, _ in self._root_history)

    def index_of(self, commitment: int) -> int | None:
        with self._lock:
            return self._index_by_leaf.get(commitment)

    def path_to(self, leaf_index: int, root: int | None = None) -> MerklePath:
        """
        Build the membership path for ``leaf_index``.

        Args:
            leaf_index: Index of an inserted leaf
            root: Optional historical root to prove against; defaults to
                the current root

        Raises:
            ValidationError: if the leaf did not exist when ``root`` was current
            UnknownRootError: if ``root`` fell out of the history window
        """
        with self._lock:
            if root is None or root == self._root_history[-1][0]:
                leaf_count = len(self._layers[0])
                target_root = self._root_history[-1][0]
                layers = self._layers
            else:
                leaf_count = self._leaf_count_for_root(root)
                target_root = root
                layers = None

            if not 0 <= leaf_index < leaf_count:
                raise ValidationError(
                    f"Leaf {leaf_index} not present (tree had {leaf_count} leaves)",
                    field_name="leaf_index",
                )

            if layers is None:
                snapshot = IncrementalMerkleTree(self.depth, 1)
                snapshot.bulk_insert(self._layers[0][:leaf_count])
                layers = snapshot._layers

            elements = []
            node_index = leaf_index
            for level in range(self.depth):
                sibling_index = node_index ^ 1
                nodes = layers[level]
                sibling = nodes[sibling_index] if sibling_index < len(nodes) else self.zeros[level]
                elements.append((sibling, node_index % 2 == 1))
                node_index //= 2

            return MerklePath(
                leaf_index=leaf_index,
                leaf=layers[0][leaf_index],
                elements=tuple(elements),
                root=target_root,
            )

    def _leaf_count_for_root(self, root: int) -> int:
        for known_root, count in reversed(self._root_history):
            if known_root == root:
                return count
        raise UnknownRootError(field_to_hex(root))

    def get_info(self) -> dict[str, Any]:
        with self._lock:
            return {
                "depth": self.depth,
                "capacity": self.capacity,
                "leaf_count": len(self._layers[0]),
                "root": field_to_hex(self._root_history[-1][0]),
                "root_history_size": self.root_history_size,
                "known_roots": len(self._root_history),
            }

"""
Shielded Pool - Field and Commitment Utilities

Deterministic hashing over the BN254 scalar field and secure random
field-element generation. These are the building blocks for deposit
commitments, nullifiers and Merkle nodes.

Hashing:
    H(tag, x1, ..., xn) = SHA-256(tag || be32(x1) || ... || be32(xn)) mod p

The domain tag keeps commitments, nullifiers and tree nodes in separate
hash spaces, so a node value can never be replayed as a commitment.
The proving circuits are built against this exact function.
"""

import hashlib
import re
import secrets
from decimal import Decimal, InvalidOperation
from typing import Union

from exceptions import ValidationError

# BN254 (alt_bn128) scalar field order
FIELD_PRIME = 21888242871839275222246405745257275088548364400416034343698204186575808495617

FIELD_BYTES = 32
WEI_PER_ETH = Decimal(10) ** 18

COMMITMENT_TAG = "shielded-pool/commitment"
NULLIFIER_TAG = "shielded-pool/nullifier"
NODE_TAG = "shielded-pool/node"
ZERO_LEAF_TAG = "shielded-pool/zero-leaf"

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

FieldLike = Union[int, str]


# ============================================================
# Field element encoding
# ============================================================

def to_field(value: FieldLike) -> int:
    """
    Parse a field element from an int, a decimal string or a 0x-hex string.

    Raises:
        ValidationError: if the value is not a canonical element of the field
    """
    if isinstance(value, bool):
        raise ValidationError("Boolean is not a field element", field_name="field_element")

    if isinstance(value, int):
        result = value
    elif isinstance(value, str):
        text = value.strip()
        try:
            result = int(text, 16) if text.lower().startswith("0x") else int(text, 10)
        except ValueError as e:
            raise ValidationError(f"Not a field element: {value!r}", field_name="field_element") from e
    else:
        raise ValidationError(
            f"Unsupported field element type: {type(value).__name__}",
            field_name="field_element",
        )

    if not 0 <= result < FIELD_PRIME:
        raise ValidationError("Field element out of range", field_name="field_element")
    return result


def field_to_hex(value: int) -> str:
    """Encode a field element as a 0x-prefixed, 64-digit hex string."""
    return "0x" + value.to_bytes(FIELD_BYTES, "big").hex()


def field_to_bytes(value: int) -> bytes:
    return value.to_bytes(FIELD_BYTES, "big")


# ============================================================
# Hashing
# ============================================================

def field_hash(tag: str, *inputs: int) -> int:
    """
    Hash field elements under a domain tag into a field element.

    Args:
        tag: Domain separation tag
        *inputs: Field elements (non-negative ints below FIELD_PRIME)

    Returns:
        Hash output reduced modulo FIELD_PRIME
    """
    hasher = hashlib.sha256(tag.encode("utf-8"))
    for value in inputs:
        if not 0 <= value < FIELD_PRIME:
            raise ValidationError("Hash input out of field range", field_name="hash_input")
        hasher.update(field_to_bytes(value))
    return int.from_bytes(hasher.digest(), "big") % FIELD_PRIME


def hash_pair(left: int, right: int) -> int:
    """Merkle node hash. Argument order is significant."""
    return field_hash(NODE_TAG, left, right)


def zero_leaf() -> int:
    """Value of an empty leaf slot."""
    return field_hash(ZERO_LEAF_TAG)


def compute_commitment(secret: int, nullifier_seed: int, amount: int) -> int:
    """C = H(secret, nullifierSeed, amount) with amount in wei."""
    return field_hash(COMMITMENT_TAG, secret, nullifier_seed, amount)


def compute_nullifier_hash(secret: int, leaf_index: int) -> int:
    """N = H(secret, leafIndex)."""
    return field_hash(NULLIFIER_TAG, secret, leaf_index)


# ============================================================
# Randomness
# ============================================================

def generate_random_field_element() -> int:
    """
    Draw a uniformly random, non-zero field element from the OS CSPRNG.

    Zero is excluded so a secret can never collide with an empty slot value.
    """
    return secrets.randbelow(FIELD_PRIME - 1) + 1


# ============================================================
# Amounts and addresses
# ============================================================

def is_valid_address(address: str) -> bool:
    return isinstance(address, str) and bool(_ADDRESS_RE.match(address))


def address_to_field(address: str) -> int:
    """Interpret a 20-byte hex address as a field element."""
    if not is_valid_address(address):
        raise ValidationError(f"Invalid address: {address!r}", field_name="recipient")
    return int(address, 16)


def eth_to_wei(amount: Union[Decimal, str, int]) -> int:
    """
    Convert an ETH amount to integer wei.

    Raises:
        ValidationError: for negative, non-numeric or sub-wei amounts
    """
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"Invalid amount: {amount!r}", field_name="amount") from e

    if not value.is_finite() or value < 0:
        raise ValidationError(f"Invalid amount: {amount!r}", field_name="amount")

    wei = value * WEI_PER_ETH
    if wei != wei.to_integral_value():
        raise ValidationError("Amount has more precision than 1 wei", field_name="amount")
    return int(wei)


def wei_to_eth(wei: int) -> Decimal:
    return Decimal(wei) / WEI_PER_ETH


__all__ = [
    "FIELD_PRIME",
    "to_field",
    "field_to_hex",
    "field_hash",
    "hash_pair",
    "zero_leaf",
    "compute_commitment",
    "compute_nullifier_hash",
    "generate_random_field_element",
    "is_valid_address",
    "address_to_field",
    "eth_to_wei",
    "wei_to_eth",
]

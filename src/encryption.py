"""
Shielded Pool - Note Encryption Module

Seals deposit secrets before they reach local storage.
Uses AES-256-GCM for authenticated encryption with PBKDF2 key derivation.

Security Features:
- AES-256-GCM for encryption with authentication
- PBKDF2-HMAC-SHA256 for key derivation (600,000 iterations by default)
- Random salt and IV for each encryption operation
- Key supplied by the session configuration or the environment
- Field-level sealing of the secret fields of a deposit record
"""

import base64
import json
import os
import secrets
from typing import Any, Dict, Optional, Union

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from exceptions import EncryptionError

# Constants
SALT_SIZE = 16  # 128 bits
IV_SIZE = 12  # 96 bits for GCM (recommended)
KEY_SIZE = 32  # 256 bits
PBKDF2_ITERATIONS = 600_000  # OWASP recommended minimum for PBKDF2-HMAC-SHA256

ENCRYPTION_KEY_ENV = "SHIELDED_ENCRYPTION_KEY"

# Deposit record fields that are never written to a store in plaintext
SECRET_NOTE_FIELDS = ("secret", "nullifier_seed")

# Encrypted data prefix; the iteration count follows it so old blobs stay readable
ENCRYPTED_PREFIX = "ENC:1:"


def _derive_key(password: str, salt: bytes, iterations: int) -> bytes:
    """
    Derive a 256-bit encryption key from a password using PBKDF2.

    Args:
        password: The password/passphrase to derive the key from
        salt: Random salt for key derivation
        iterations: PBKDF2 iteration count

    Returns:
        32-byte derived key
    """
    if not password:
        raise EncryptionError("Password cannot be empty")
    if iterations < 1:
        raise EncryptionError("Iteration count must be positive")

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(password.encode('utf-8'))


def _resolve_key(key: Optional[str]) -> str:
    encryption_key = key or os.getenv(ENCRYPTION_KEY_ENV)
    if not encryption_key:
        raise EncryptionError(
            f"No encryption key provided. Set {ENCRYPTION_KEY_ENV} environment variable "
            "or generate one with generate_encryption_key()"
        )
    return encryption_key


def generate_encryption_key() -> str:
    """
    Generate a cryptographically secure encryption key.

    Returns:
        Base64-encoded 256-bit random key
    """
    return base64.b64encode(secrets.token_bytes(KEY_SIZE)).decode('utf-8')


def encrypt_data(data: Union[str, bytes, Dict[str, Any]],
                 key: Optional[str] = None,
                 iterations: int = PBKDF2_ITERATIONS) -> str:
    """
    Encrypt data using AES-256-GCM.

    Args:
        data: Data to encrypt (string, bytes, or JSON-serializable dict)
        key: Optional encryption key. If not provided, uses environment variable.
        iterations: PBKDF2 iteration count used for this blob

    Returns:
        String of the form ENCRYPTED_PREFIX + iterations + ":" + base64(salt + iv + ciphertext)

    Raises:
        EncryptionError: If encryption fails
    """
    encryption_key = _resolve_key(key)

    if isinstance(data, dict):
        data_bytes = json.dumps(data, sort_keys=True).encode('utf-8')
    elif isinstance(data, str):
        data_bytes = data.encode('utf-8')
    else:
        data_bytes = data

    try:
        salt = secrets.token_bytes(SALT_SIZE)
        iv = secrets.token_bytes(IV_SIZE)
        derived_key = _derive_key(encryption_key, salt, iterations)
        ciphertext = AESGCM(derived_key).encrypt(iv, data_bytes, None)
    except EncryptionError:
        raise
    except Exception as e:
        raise EncryptionError("Encryption failed", cause=e) from e

    encoded = base64.b64encode(salt + iv + ciphertext).decode('utf-8')
    return f"{ENCRYPTED_PREFIX}{iterations}:{encoded}"


def decrypt_data(encrypted_data: str,
                 key: Optional[str] = None,
                 return_type: str = "auto") -> Union[str, bytes, Dict[str, Any]]:
    """
    Decrypt AES-256-GCM encrypted data.

    Args:
        encrypted_data: Output of encrypt_data
        key: Optional decryption key. If not provided, uses environment variable.
        return_type: "auto", "str", "bytes", or "json"

    Returns:
        Decrypted data as string, bytes, or dict based on return_type

    Raises:
        EncryptionError: If decryption fails
    """
    encryption_key = _resolve_key(key)

    if not is_encrypted(encrypted_data):
        raise EncryptionError("Invalid encrypted data format: missing prefix")

    try:
        iterations_str, encoded_data = encrypted_data[len(ENCRYPTED_PREFIX):].split(":", 1)
        iterations = int(iterations_str)
        encrypted_blob = base64.b64decode(encoded_data)
    except (ValueError, TypeError) as e:
        raise EncryptionError("Invalid encrypted data format", cause=e) from e

    # 16 = minimum ciphertext with tag
    if len(encrypted_blob) < SALT_SIZE + IV_SIZE + 16:
        raise EncryptionError("Invalid encrypted data: too short")

    salt = encrypted_blob[:SALT_SIZE]
    iv = encrypted_blob[SALT_SIZE:SALT_SIZE + IV_SIZE]
    ciphertext = encrypted_blob[SALT_SIZE + IV_SIZE:]

    try:
        derived_key = _derive_key(encryption_key, salt, iterations)
        plaintext = AESGCM(derived_key).decrypt(iv, ciphertext, None)
    except EncryptionError:
        raise
    except Exception as e:
        raise EncryptionError("Decryption failed, wrong key or corrupted data", cause=e) from e

    if return_type == "bytes":
        return plaintext

    plaintext_str = plaintext.decode('utf-8')

    if return_type == "str":
        return plaintext_str

    try:
        return json.loads(plaintext_str)
    except json.JSONDecodeError as e:
        if return_type == "json":
            raise EncryptionError("Decrypted data is not JSON", cause=e) from e
        return plaintext_str


def is_encrypted(data: Any) -> bool:
    """Check if a value looks like output of encrypt_data."""
    return isinstance(data, str) and data.startswith(ENCRYPTED_PREFIX)


def seal_note_record(record: Dict[str, Any],
                     key: Optional[str] = None,
                     iterations: int = PBKDF2_ITERATIONS) -> Dict[str, Any]:
    """
    Return a copy of a deposit record with its secret fields sealed.

    The secret and nullifier seed are encrypted together as one blob under
    ``sealed_note``; every other field is kept as-is so that listings can
    be produced without the key.
    """
    secret_part = {name: record[name] for name in SECRET_NOTE_FIELDS if name in record}
    if not secret_part:
        raise EncryptionError("Record has no secret fields to seal")

    sealed = {k: v for k, v in record.items() if k not in SECRET_NOTE_FIELDS}
    sealed["sealed_note"] = encrypt_data(secret_part, key, iterations)
    return sealed


def unseal_note_record(sealed: Dict[str, Any], key: Optional[str] = None) -> Dict[str, Any]:
    """Inverse of seal_note_record."""
    blob = sealed.get("sealed_note")
    if not is_encrypted(blob):
        raise EncryptionError("Record carries no sealed note")

    secret_part = decrypt_data(blob, key, return_type="json")
    record = {k: v for k, v in sealed.items() if k != "sealed_note"}
    record.update(secret_part)
    return record


__all__ = [
    'generate_encryption_key',
    'encrypt_data',
    'decrypt_data',
    'is_encrypted',
    'seal_note_record',
    'unseal_note_record',
    'SECRET_NOTE_FIELDS',
    'ENCRYPTION_KEY_ENV',
    'PBKDF2_ITERATIONS',
]

"""
Shielded Pool - Exception Hierarchy

Provides a consistent set of exceptions for the privacy pool subsystem.
All exceptions include structured error context for debugging and monitoring.

Two families matter to callers:
- Fund-safety failures (DoubleSpendError, ProofVerificationFailure) are never
  swallowed and always surfaced to the user.
- Advisory failures (StorageError, NetworkError) are retryable and never roll
  back an operation that has already been broadcast.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class ErrorSeverity(Enum):
    """Severity levels for privacy pool errors."""
    LOW = "low"           # Informational, no action needed
    MEDIUM = "medium"     # Warning, should be monitored
    HIGH = "high"         # Error, requires attention
    CRITICAL = "critical" # Funds may be at risk


@dataclass
class ErrorContext:
    """Structured context for error tracking and debugging."""
    component: str
    action: str
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    details: dict[str, Any] = field(default_factory=dict)
    severity: ErrorSeverity = ErrorSeverity.MEDIUM

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "component": self.component,
            "action": self.action,
            "timestamp": self.timestamp,
            "details": self.details,
            "severity": self.severity.value
        }


class PrivacyPoolError(Exception):
    """
    Base exception for all privacy pool errors.

    Includes structured error context for improved debugging
    and integration with monitoring systems.
    """

    retryable: bool = False
    fund_safety: bool = False

    def __init__(
        self,
        message: str,
        component: str = "unknown",
        action: str = "unknown",
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None
    ):
        super().__init__(message)
        self.message = message
        self.context = ErrorContext(
            component=component,
            action=action,
            severity=severity,
            details=details or {}
        )
        self.cause = cause

        if cause:
            self.__cause__ = cause

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        result = {
            "error_type": type(self).__name__,
            "message": self.message,
            "retryable": self.retryable,
            "fund_safety": self.fund_safety,
            **self.context.to_dict()
        }
        if self.cause:
            result["cause"] = {
                "type": type(self.cause).__name__,
                "message": str(self.cause)
            }
        return result

    def __str__(self) -> str:
        base = f"[{self.context.component}:{self.context.action}] {self.message}"
        if self.cause:
            base += f" (caused by: {self.cause})"
        return base


# =============================================================================
# Validation Errors
# =============================================================================

class ValidationError(PrivacyPoolError):
    """
    Raised for bad caller input before any network or proof work begins.

    Examples:
    - Amount does not match a pool denomination
    - Malformed recipient address
    - Deposit not in a spendable state
    """

    def __init__(
        self,
        message: str,
        field_name: str | None = None,
        component: str = "validation",
        action: str = "validate",
        details: dict[str, Any] | None = None,
    ):
        details = dict(details or {})
        if field_name:
            details["field"] = field_name
        super().__init__(
            message=message,
            component=component,
            action=action,
            severity=ErrorSeverity.LOW,
            details=details,
        )
        self.field_name = field_name


class ConfigurationError(ValidationError):
    """Raised when configuration values are missing or invalid."""

    def __init__(self, message: str, setting: str | None = None):
        super().__init__(message, field_name=setting, component="config", action="load")
        self.setting = setting


class ProofFormatError(ValidationError):
    """Raised when a proof or its public signals are structurally malformed."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, component="proof_engine", action="parse_proof", details=details)


# =============================================================================
# Cryptographic Errors
# =============================================================================

class DoubleSpendError(PrivacyPoolError):
    """
    Raised when a nullifier has already been recorded as spent.

    Always fatal to the withdrawal attempt. The deposit must be marked spent
    locally afterward because some earlier attempt succeeded.
    """

    fund_safety = True

    def __init__(self, nullifier: str, message: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(
            message=message or f"Nullifier {nullifier[:18]}... already spent",
            component="nullifier_ledger",
            action="record_spent",
            severity=ErrorSeverity.CRITICAL,
            details={"nullifier": nullifier, **(details or {})},
        )
        self.nullifier = nullifier


class SpendInProgressError(PrivacyPoolError):
    """Raised when this client already has an unconfirmed spend for a nullifier."""

    retryable = True

    def __init__(self, nullifier: str):
        super().__init__(
            message=f"A spend of nullifier {nullifier[:18]}... is already in flight",
            component="nullifier_ledger",
            action="reserve_pending",
            severity=ErrorSeverity.MEDIUM,
            details={"nullifier": nullifier},
        )
        self.nullifier = nullifier


class ProofGenerationError(PrivacyPoolError):
    """Raised when the proving backend fails. Retryable with the same inputs."""

    retryable = True

    def __init__(
        self,
        message: str,
        circuit_id: str = "unknown",
        cause: Exception | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(
            message=message,
            component="proof_engine",
            action="prove",
            severity=ErrorSeverity.HIGH,
            details={"circuit_id": circuit_id, **(details or {})},
            cause=cause,
        )
        self.circuit_id = circuit_id


class ProofTimeoutError(ProofGenerationError):
    """Raised when proof generation exceeds the configured timeout."""

    def __init__(self, circuit_id: str, timeout: float):
        super().__init__(
            message=f"Proof generation exceeded {timeout:.1f}s",
            circuit_id=circuit_id,
            details={"timeout": timeout},
        )
        self.timeout = timeout


class ProofVerificationFailure(PrivacyPoolError):
    """
    Raised when a verifier rejects a proof.

    Never retried with the same inputs; inputs must be regenerated.
    """

    fund_safety = True

    def __init__(self, message: str, circuit_id: str = "unknown", details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            component="proof_engine",
            action="verify",
            severity=ErrorSeverity.CRITICAL,
            details={"circuit_id": circuit_id, **(details or {})},
        )
        self.circuit_id = circuit_id


# =============================================================================
# Tree Errors
# =============================================================================

class TreeFullError(PrivacyPoolError):
    """Raised when a pool's Merkle tree has no free leaves left."""

    def __init__(self, depth: int, capacity: int):
        super().__init__(
            message="Pool full, choose another denomination or pool",
            component="merkle_tree",
            action="insert_leaf",
            severity=ErrorSeverity.MEDIUM,
            details={"depth": depth, "capacity": capacity},
        )
        self.depth = depth
        self.capacity = capacity


class UnknownRootError(PrivacyPoolError):
    """Raised when a Merkle root is outside the accepted history window."""

    def __init__(self, root: str):
        super().__init__(
            message=f"Merkle root {root[:18]}... is not within the accepted history",
            component="merkle_tree",
            action="path_to",
            severity=ErrorSeverity.MEDIUM,
            details={"root": root},
        )
        self.root = root


# =============================================================================
# Infrastructure Errors
# =============================================================================

class StorageError(PrivacyPoolError):
    """
    Raised when local persistence fails.

    Never rolls back an already-broadcast on-chain operation.
    """

    retryable = True

    def __init__(self, message: str, operation: str = "unknown", cause: Exception | None = None):
        super().__init__(
            message=message,
            component="storage",
            action=operation,
            severity=ErrorSeverity.MEDIUM,
            cause=cause,
        )
        self.operation = operation


class NetworkError(PrivacyPoolError):
    """Raised when a broadcast or chain read cannot reach the network."""

    retryable = True

    def __init__(
        self,
        message: str,
        endpoint: str | None = None,
        status_code: int | None = None,
        cause: Exception | None = None,
    ):
        details: dict[str, Any] = {}
        if endpoint:
            details["endpoint"] = endpoint
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(
            message=message,
            component="chain",
            action="request",
            severity=ErrorSeverity.MEDIUM,
            details=details,
            cause=cause,
        )
        self.endpoint = endpoint
        self.status_code = status_code


class EncryptionError(PrivacyPoolError):
    """Raised when sealing or unsealing deposit secrets fails."""

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(
            message=message,
            component="encryption",
            action="seal",
            severity=ErrorSeverity.HIGH,
            cause=cause,
        )


# =============================================================================
# Alias Errors
# =============================================================================

class AliasError(PrivacyPoolError):
    """Raised for alias management failures."""

    def __init__(self, message: str, alias_id: str | None = None, action: str = "alias"):
        super().__init__(
            message=message,
            component="alias_routing",
            action=action,
            severity=ErrorSeverity.LOW,
            details={"alias_id": alias_id} if alias_id else {},
        )
        self.alias_id = alias_id


class StaleQuoteError(AliasError):
    """Raised when the active alias or its note-set changed after a quote was issued."""

    def __init__(self, message: str, alias_id: str | None = None):
        super().__init__(message, alias_id=alias_id, action="send_with_alias")


__all__ = [
    "ErrorSeverity",
    "ErrorContext",
    "PrivacyPoolError",
    "ValidationError",
    "ConfigurationError",
    "ProofFormatError",
    "DoubleSpendError",
    "SpendInProgressError",
    "ProofGenerationError",
    "ProofTimeoutError",
    "ProofVerificationFailure",
    "TreeFullError",
    "UnknownRootError",
    "StorageError",
    "NetworkError",
    "EncryptionError",
    "AliasError",
    "StaleQuoteError",
]

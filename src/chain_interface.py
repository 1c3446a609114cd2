"""
Shielded Pool - Chain Collaborators

Interfaces to the outside world that the pool manager depends on:

- ChainReader: read-only access to pool contract state and receipts
- LedgerSigner: signs and broadcasts pool transactions with the wallet key

Both are async; every call is a suspension point that may be retried.
PoolGatewayClient implements both against a pool gateway / relayer HTTP
API, authenticating every request with an HMAC signature.
"""

import hashlib
import hmac
import json
import logging
import secrets
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

import httpx

from exceptions import (
    DoubleSpendError,
    NetworkError,
    PrivacyPoolError,
    ProofVerificationFailure,
    TreeFullError,
    UnknownRootError,
    ValidationError,
)
from field_utils import field_to_hex, to_field
from retry import CircuitBreaker

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

API_VERSION = "v1"

# Timeouts (seconds)
DEFAULT_TIMEOUT = 30.0
CONNECT_TIMEOUT = 10.0

# HMAC configuration
HMAC_HEADER = "X-Pool-Signature"
TIMESTAMP_HEADER = "X-Pool-Timestamp"
NONCE_HEADER = "X-Pool-Nonce"

RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)
AUDIT_LOG_SIZE = 1000

# Pool contract revert reasons
REVERT_NULLIFIER_SPENT = "nullifier already spent"
REVERT_UNKNOWN_ROOT = "unknown merkle root"
REVERT_INVALID_PROOF = "invalid proof"
REVERT_TREE_FULL = "merkle tree is full"
REVERT_BAD_AMOUNT = "incorrect denomination"
REVERT_DUPLICATE_COMMITMENT = "commitment already submitted"
REVERT_POOL_INACTIVE = "pool is not active"
REVERT_BAD_RECIPIENT = "recipient does not match proof"


def error_for_revert(reason: str, nullifier: str = "unknown", circuit_id: str = "unknown",
                     tree_depth: int = 0, root: str = "unknown") -> PrivacyPoolError:
    """Map a pool contract revert reason onto the pool error taxonomy."""
    if reason == REVERT_NULLIFIER_SPENT:
        return DoubleSpendError(nullifier)
    if reason == REVERT_INVALID_PROOF:
        return ProofVerificationFailure("Pool contract rejected the proof", circuit_id=circuit_id)
    if reason == REVERT_TREE_FULL:
        return TreeFullError(tree_depth, 2 ** tree_depth if tree_depth else 0)
    if reason == REVERT_UNKNOWN_ROOT:
        return UnknownRootError(root)
    return ValidationError(f"Pool contract reverted: {reason}", component="chain", action="execute")


# =============================================================================
# Data types
# =============================================================================


class TxStatus(Enum):
    """Outcome of an included transaction."""

    SUCCESS = "success"
    REVERTED = "reverted"


@dataclass
class Receipt:
    """Inclusion receipt for a pool transaction."""

    tx_hash: str
    status: TxStatus
    block_number: int
    leaf_index: int | None = None  # set for deposits and transfers
    revert_reason: str | None = None
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    @property
    def succeeded(self) -> bool:
        return self.status == TxStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "txHash": self.tx_hash,
            "status": self.status.value,
            "blockNumber": self.block_number,
            "leafIndex": self.leaf_index,
            "revertReason": self.revert_reason,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Receipt":
        try:
            status = TxStatus(data.get("status", "success"))
        except ValueError:
            status = TxStatus.REVERTED

        leaf_index = data.get("leafIndex", data.get("leaf_index"))
        return cls(
            tx_hash=data.get("txHash", data.get("tx_hash", "")),
            status=status,
            block_number=int(data.get("blockNumber", data.get("block_number", 0))),
            leaf_index=int(leaf_index) if leaf_index is not None else None,
            revert_reason=data.get("revertReason"),
            timestamp=data.get("timestamp") or datetime.now(UTC).isoformat(),
        )


@dataclass
class PrivacyPool:
    """On-chain view of one fixed-denomination pool."""

    denomination: Decimal
    contract_address: str
    tree_depth: int
    anonymity_set_size: int
    is_active: bool = True
    network: str = "ethereum"
    merkle_root: str | None = None
    balance: Decimal = Decimal("0")
    total_withdrawals: int = 0
    fetched_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "denomination": str(self.denomination),
            "contractAddress": self.contract_address,
            "treeDepth": self.tree_depth,
            "anonymitySetSize": self.anonymity_set_size,
            "isActive": self.is_active,
            "network": self.network,
            "merkleRoot": self.merkle_root,
            "balance": str(self.balance),
            "totalWithdrawals": self.total_withdrawals,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PrivacyPool":
        return cls(
            denomination=Decimal(str(data.get("denomination", "0"))),
            contract_address=data.get("contractAddress", data.get("contract_address", "")),
            tree_depth=int(data.get("treeDepth", data.get("tree_depth", 20))),
            anonymity_set_size=int(data.get("anonymitySetSize", data.get("anonymity_set_size", 0))),
            is_active=bool(data.get("isActive", data.get("is_active", True))),
            network=data.get("network", "ethereum"),
            merkle_root=data.get("merkleRoot"),
            balance=Decimal(str(data.get("balance", "0"))),
            total_withdrawals=int(data.get("totalWithdrawals", data.get("total_withdrawals", 0))),
        )


# =============================================================================
# Collaborator interfaces
# =============================================================================


class ChainReader(ABC):
    """Read access to pool contract state."""

    @abstractmethod
    async def get_merkle_root(self, pool_address: str) -> int:
        pass

    @abstractmethod
    async def get_root_history(self, pool_address: str) -> list[int]:
        """Roots the contract currently accepts, oldest first."""
        pass

    @abstractmethod
    async def get_pool_metadata(self, pool_address: str) -> PrivacyPool:
        pass

    @abstractmethod
    async def get_commitments(self, pool_address: str, start_index: int = 0) -> list[int]:
        """Commitments in on-chain leaf order, starting at ``start_index``."""
        pass

    @abstractmethod
    async def is_nullifier_spent_on_chain(self, pool_address: str, nullifier: int) -> bool:
        pass

    @abstractmethod
    async def wait_for_confirmation(self, tx_hash: str) -> Receipt | None:
        """
        Check whether a transaction has been included.

        Returns the receipt once included and None while still pending.
        Callers poll this with bounded backoff.
        """
        pass


class LedgerSigner(ABC):
    """Signs and broadcasts pool transactions with the wallet's key."""

    @abstractmethod
    async def broadcast_deposit(self, pool_address: str, commitment: int, amount_wei: int) -> str:
        """Returns the transaction hash."""
        pass

    @abstractmethod
    async def broadcast_withdrawal(
        self,
        pool_address: str,
        proof: dict[str, Any],
        public_signals: list[str],
        recipient: str,
        fee_wei: int = 0,
    ) -> str:
        pass

    @abstractmethod
    async def broadcast_transfer(
        self, pool_address: str, proof: dict[str, Any], public_signals: list[str]
    ) -> str:
        pass


# =============================================================================
# HMAC Authentication
# =============================================================================


class HMACAuthenticator:
    """
    HMAC-based request authentication.

    Each request carries an HMAC-SHA256 signature over method, path,
    timestamp, a fresh nonce and the body. The gateway checks the
    timestamp window and rejects reused nonces.
    """

    def __init__(self, secret_key: str):
        if not secret_key:
            raise ValidationError("HMAC secret key cannot be empty", field_name="api_secret")
        self.secret_key = secret_key.encode("utf-8")

    def _compute_signature(
        self, method: str, path: str, timestamp: int, nonce: str, body: str | None = None
    ) -> str:
        sign_string = f"{method.upper()}\n{path}\n{timestamp}\n{nonce}\n{body or ''}"
        return hmac.new(self.secret_key, sign_string.encode("utf-8"), hashlib.sha256).hexdigest()

    def sign_request(
        self, method: str, path: str, body: str | None = None, timestamp: int | None = None
    ) -> dict[str, str]:
        """
        Sign a request and return authentication headers.

        Args:
            method: HTTP method
            path: Request path
            body: Request body (JSON string)
            timestamp: Optional timestamp (uses current time if not provided)
        """
        if timestamp is None:
            timestamp = int(time.time())

        nonce = secrets.token_hex(16)
        signature = self._compute_signature(method, path, timestamp, nonce, body)

        return {HMAC_HEADER: signature, TIMESTAMP_HEADER: str(timestamp), NONCE_HEADER: nonce}


# =============================================================================
# Gateway client
# =============================================================================


class PoolGatewayClient(ChainReader, LedgerSigner):
    """
    HTTP client for a pool gateway that fronts the pool contracts.

    Features:
    - HMAC request authentication
    - Transport failures and 429/5xx responses raised as retryable NetworkError
    - Contract rejections mapped onto the pool error taxonomy
    - Request audit log holding body hashes only
    - Circuit breaker that fails fast after repeated gateway failures
    """

    def __init__(
        self,
        endpoint: str,
        api_secret: str | None = None,
        verify_ssl: bool = True,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.circuit = CircuitBreaker(
            f"gateway:{self.endpoint}", failure_threshold=failure_threshold, recovery_timeout=recovery_timeout
        )
        self.api_prefix = f"/api/{API_VERSION}"
        self.authenticator = HMACAuthenticator(api_secret) if api_secret else None
        self.audit_log: deque[dict[str, Any]] = deque(maxlen=AUDIT_LOG_SIZE)

        self._client = httpx.AsyncClient(
            base_url=self.endpoint,
            timeout=httpx.Timeout(timeout, connect=CONNECT_TIMEOUT),
            verify=verify_ssl,
            transport=transport,
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
                "User-Agent": f"shielded-pool-python/{API_VERSION}",
            },
        )

    async def close(self):
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False

    async def _request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        allow_not_found: bool = False,
    ) -> dict[str, Any] | None:
        full_path = f"{self.api_prefix}{path}"
        body_str = json.dumps(body, sort_keys=True) if body is not None else None

        headers = {}
        if self.authenticator:
            headers.update(self.authenticator.sign_request(method, full_path, body_str))

        request_log = {
            "timestamp": datetime.now(UTC).isoformat(),
            "method": method,
            "path": full_path,
            "body_hash": hashlib.sha256(body_str.encode()).hexdigest() if body_str else None,
        }

        if not self.circuit.is_allowed():
            raise NetworkError(
                f"Circuit breaker {self.circuit.name} is open", endpoint=full_path
            )

        try:
            response = await self._client.request(
                method, full_path, content=body_str, params=params, headers=headers
            )
        except httpx.TimeoutException as e:
            request_log["error"] = "timeout"
            self.audit_log.append(request_log)
            self.circuit.record_failure()
            raise NetworkError("Gateway request timed out", endpoint=full_path, cause=e) from e
        except httpx.TransportError as e:
            request_log["error"] = f"transport_error: {e!s}"
            self.audit_log.append(request_log)
            self.circuit.record_failure()
            raise NetworkError(f"Gateway unreachable: {e!s}", endpoint=full_path, cause=e) from e

        request_log["status_code"] = response.status_code
        self.audit_log.append(request_log)
        if response.status_code >= 500:
            self.circuit.record_failure()
        else:
            self.circuit.record_success()

        if response.status_code == 404 and allow_not_found:
            return None
        if response.is_success:
            try:
                return response.json()
            except ValueError as e:
                raise NetworkError(
                    "Gateway returned invalid JSON", endpoint=full_path,
                    status_code=response.status_code, cause=e,
                ) from e

        self._raise_for_error(response, full_path)
        return None  # unreachable

    @staticmethod
    def _raise_for_error(response: httpx.Response, path: str):
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        code = payload.get("code", "") if isinstance(payload, dict) else ""
        message = payload.get("message", response.text) if isinstance(payload, dict) else response.text

        if response.status_code in RETRYABLE_STATUS_CODES:
            raise NetworkError(
                f"Gateway error HTTP {response.status_code}: {message}",
                endpoint=path, status_code=response.status_code,
            )
        if code == "nullifier_spent":
            raise DoubleSpendError(payload.get("nullifier", "unknown"), message=message)
        if code == "invalid_proof":
            raise ProofVerificationFailure(message, circuit_id=payload.get("circuit", "unknown"))
        raise ValidationError(
            f"Gateway rejected request (HTTP {response.status_code}): {message}",
            component="chain",
            action="request",
            details={"status_code": response.status_code, "code": code},
        )

    # ChainReader -------------------------------------------------------

    async def get_merkle_root(self, pool_address: str) -> int:
        data = await self._request("GET", f"/pools/{pool_address}/root")
        return to_field(data["root"])

    async def get_root_history(self, pool_address: str) -> list[int]:
        data = await self._request("GET", f"/pools/{pool_address}/roots")
        return [to_field(r) for r in data.get("roots", [])]

    async def get_pool_metadata(self, pool_address: str) -> PrivacyPool:
        data = await self._request("GET", f"/pools/{pool_address}")
        return PrivacyPool.from_dict(data)

    async def get_commitments(self, pool_address: str, start_index: int = 0) -> list[int]:
        data = await self._request(
            "GET", f"/pools/{pool_address}/commitments", params={"start": start_index}
        )
        return [to_field(c) for c in data.get("commitments", [])]

    async def is_nullifier_spent_on_chain(self, pool_address: str, nullifier: int) -> bool:
        data = await self._request(
            "GET", f"/pools/{pool_address}/nullifiers/{field_to_hex(nullifier)}"
        )
        return bool(data.get("spent", False))

    async def wait_for_confirmation(self, tx_hash: str) -> Receipt | None:
        data = await self._request("GET", f"/tx/{tx_hash}", allow_not_found=True)
        if not data or data.get("status") == "pending":
            return None
        return Receipt.from_dict(data.get("receipt", data))

    # LedgerSigner ------------------------------------------------------

    async def broadcast_deposit(self, pool_address: str, commitment: int, amount_wei: int) -> str:
        data = await self._request(
            "POST",
            f"/pools/{pool_address}/deposits",
            body={"commitment": field_to_hex(commitment), "amount": str(amount_wei)},
        )
        return data["txHash"]

    async def broadcast_withdrawal(
        self,
        pool_address: str,
        proof: dict[str, Any],
        public_signals: list[str],
        recipient: str,
        fee_wei: int = 0,
    ) -> str:
        data = await self._request(
            "POST",
            f"/pools/{pool_address}/withdrawals",
            body={
                "proof": proof,
                "publicSignals": list(public_signals),
                "recipient": recipient,
                "fee": str(fee_wei),
            },
        )
        return data["txHash"]

    async def broadcast_transfer(
        self, pool_address: str, proof: dict[str, Any], public_signals: list[str]
    ) -> str:
        data = await self._request(
            "POST",
            f"/pools/{pool_address}/transfers",
            body={"proof": proof, "publicSignals": list(public_signals)},
        )
        return data["txHash"]

    def get_audit_log(self, limit: int = 100) -> list[dict[str, Any]]:
        return list(self.audit_log)[-limit:]

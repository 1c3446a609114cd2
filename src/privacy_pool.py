"""
Shielded Pool - Privacy Pool Manager

Orchestrates the deposit, withdrawal and transfer lifecycles on top of the
Merkle tree, the nullifier ledger and the proof engine.

Deposit lifecycle:
    CREATED -> CONFIRMED -> SPENDABLE -> SPENT
    CREATED -> FAILED (never included; no funds moved)

- CONFIRMED: the chain reported inclusion.
- SPENDABLE: the local tree has been synced past the leaf and its index
  was read back from on-chain order.
- SPENT: a nullifier for the note is recorded, by us or by anyone else.

Local storage is advisory once funds have moved: a failed save is reported
as a warning on the returned object and repaired by reconcile().
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Awaitable, Callable

from chain_interface import (
    REVERT_DUPLICATE_COMMITMENT,
    REVERT_NULLIFIER_SPENT,
    ChainReader,
    LedgerSigner,
    PrivacyPool,
    Receipt,
    error_for_revert,
)
from config import PoolConfig, PrivacyConfig
from encryption import seal_note_record, unseal_note_record
from exceptions import (
    ConfigurationError,
    DoubleSpendError,
    EncryptionError,
    NetworkError,
    PrivacyPoolError,
    ProofVerificationFailure,
    StorageError,
    ValidationError,
)
from field_utils import (
    compute_commitment,
    compute_nullifier_hash,
    eth_to_wei,
    field_to_hex,
    is_valid_address,
    to_field,
)
from merkle_tree import IncrementalMerkleTree
from monitoring.logging import LoggingContext
from monitoring.metrics import MetricsCollector
from nullifier_ledger import NullifierLedger
from proof_engine import TRANSFER, WITHDRAWAL, ContractProofFormat, ProofEngine, ProofResult
from retry import RetryConfig, async_retry_call, poll_with_backoff
from storage.base import LocalStore

logger = logging.getLogger(__name__)

DEPOSIT_PREFIX = "deposit:"
WITHDRAWAL_PREFIX = "withdrawal:"
TRANSFER_PREFIX = "transfer:"
SETTINGS_KEY = "settings:privacy"

STATUS_PENDING = "pending"
STATUS_CONFIRMED = "confirmed"
STATUS_FAILED = "failed"

STORAGE_WARNING = "Local record-keeping may be incomplete; run reconcile() to repair"


class DepositState(Enum):
    CREATED = "created"
    CONFIRMED = "confirmed"
    SPENDABLE = "spendable"
    SPENT = "spent"
    FAILED = "failed"


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _hex_or_none(value: int | None) -> str | None:
    return field_to_hex(value) if value is not None else None


@dataclass
class ShieldedDeposit:
    """
    One note in a pool.

    ``secret`` and ``nullifier_seed`` never leave this object in plaintext
    except through to_record(), whose output is sealed before storage.
    """
    id: str
    pool_address: str
    amount: Decimal
    commitment: int
    secret: int = field(repr=False)
    nullifier_seed: int = field(repr=False)
    state: DepositState = DepositState.CREATED
    leaf_index: int | None = None
    merkle_root_at_deposit: int | None = None
    tx_hash: str | None = None
    spent_tx_hash: str | None = None
    alias_id: str | None = None
    timestamp: str = field(default_factory=_now)
    warnings: list[str] = field(default_factory=list, compare=False)

    @property
    def amount_wei(self) -> int:
        return eth_to_wei(self.amount)

    @property
    def nullifier_hash(self) -> int | None:
        if self.leaf_index is None:
            return None
        return compute_nullifier_hash(self.secret, self.leaf_index)

    @property
    def is_spendable(self) -> bool:
        return self.state == DepositState.SPENDABLE

    def add_warning(self, message: str):
        if message not in self.warnings:
            self.warnings.append(message)

    def to_dict(self) -> dict[str, Any]:
        """Public view, without the note secrets."""
        return {
            "id": self.id,
            "pool_address": self.pool_address,
            "amount": str(self.amount),
            "commitment": field_to_hex(self.commitment),
            "state": self.state.value,
            "leaf_index": self.leaf_index,
            "merkle_root_at_deposit": _hex_or_none(self.merkle_root_at_deposit),
            "tx_hash": self.tx_hash,
            "spent_tx_hash": self.spent_tx_hash,
            "alias_id": self.alias_id,
            "timestamp": self.timestamp,
            "warnings": list(self.warnings),
        }

    def to_record(self) -> dict[str, Any]:
        """Full record including secrets, for sealing."""
        record = self.to_dict()
        del record["warnings"]
        record["secret"] = field_to_hex(self.secret)
        record["nullifier_seed"] = field_to_hex(self.nullifier_seed)
        return record

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "ShieldedDeposit":
        try:
            root = record.get("merkle_root_at_deposit")
            return cls(
                id=record["id"],
                pool_address=record["pool_address"],
                amount=Decimal(str(record["amount"])),
                commitment=to_field(record["commitment"]),
                secret=to_field(record["secret"]),
                nullifier_seed=to_field(record["nullifier_seed"]),
                state=DepositState(record.get("state", DepositState.CREATED.value)),
                leaf_index=record.get("leaf_index"),
                merkle_root_at_deposit=to_field(root) if root else None,
                tx_hash=record.get("tx_hash"),
                spent_tx_hash=record.get("spent_tx_hash"),
                alias_id=record.get("alias_id"),
                timestamp=record.get("timestamp") or _now(),
            )
        except (KeyError, ValueError, InvalidOperation) as e:
            raise ValidationError(f"Malformed deposit record: {e}", field_name="record") from e


@dataclass
class ShieldedWithdrawal:
    """A withdrawal to a public address. Immutable once broadcast."""
    id: str
    deposit_id: str
    pool_address: str
    amount: Decimal
    recipient: str
    nullifier_hash: int
    zk_proof: dict[str, Any]
    merkle_root: int
    fee: Decimal = Decimal("0")
    tx_hash: str | None = None
    status: str = STATUS_PENDING
    timestamp: str = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "deposit_id": self.deposit_id,
            "pool_address": self.pool_address,
            "amount": str(self.amount),
            "recipient": self.recipient,
            "nullifier_hash": field_to_hex(self.nullifier_hash),
            "zk_proof": self.zk_proof,
            "merkle_root": field_to_hex(self.merkle_root),
            "fee": str(self.fee),
            "tx_hash": self.tx_hash,
            "status": self.status,
            "timestamp": self.timestamp,
        }


@dataclass
class ShieldedTransfer:
    """A private transfer: one note spent, a new note of equal value created."""
    id: str
    deposit_id: str
    pool_address: str
    amount: Decimal
    nullifier_hash: int
    output_commitment: int
    zk_proof: dict[str, Any]
    merkle_root: int
    output_note: ShieldedDeposit
    tx_hash: str | None = None
    status: str = STATUS_PENDING
    timestamp: str = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "deposit_id": self.deposit_id,
            "pool_address": self.pool_address,
            "amount": str(self.amount),
            "nullifier_hash": field_to_hex(self.nullifier_hash),
            "output_commitment": field_to_hex(self.output_commitment),
            "output_note_id": self.output_note.id,
            "zk_proof": self.zk_proof,
            "merkle_root": field_to_hex(self.merkle_root),
            "tx_hash": self.tx_hash,
            "status": self.status,
            "timestamp": self.timestamp,
        }


class PrivacyPoolManager:
    """
    Deposit, withdrawal and transfer orchestration for a wallet session.

    Owns the per-pool trees and nullifier ledgers, the locally known notes
    and the cached pool metadata. All chain, signer and proof calls are
    awaited; none of them runs while a lock is held.
    """

    def __init__(
        self,
        config: PrivacyConfig,
        chain: ChainReader,
        signer: LedgerSigner,
        proof_engine: ProofEngine,
        store: LocalStore,
        metrics: MetricsCollector | None = None,
        trees: dict[str, IncrementalMerkleTree] | None = None,
        ledgers: dict[str, NullifierLedger] | None = None,
    ):
        self.config = config
        self.chain = chain
        self.signer = signer
        self.proof_engine = proof_engine
        self.store = store
        self.metrics = metrics or MetricsCollector()

        self.pools: dict[str, PoolConfig] = {}
        for pool in config.pools:
            if pool.tree_depth != proof_engine.tree_depth:
                raise ConfigurationError(
                    f"Pool {pool.contract_address} has depth {pool.tree_depth}, "
                    f"proof circuits were built for {proof_engine.tree_depth}",
                    "tree_depth",
                )
            self.pools[pool.contract_address.lower()] = pool

        self.trees = trees if trees is not None else {
            key: IncrementalMerkleTree(pool.tree_depth, config.root_history_size)
            for key, pool in self.pools.items()
        }
        self.ledgers = ledgers if ledgers is not None else {
            key: NullifierLedger() for key in self.pools
        }

        self.broadcast_retry = RetryConfig(
            max_retries=config.broadcast_max_retries,
            base_delay=config.broadcast_base_delay,
            max_delay=config.confirmation_max_delay,
        )

        self._deposits: dict[str, ShieldedDeposit] = {}
        self._withdrawals: dict[str, ShieldedWithdrawal] = {}
        self._transfers: dict[str, ShieldedTransfer] = {}
        # nullifier -> (deposit id, withdrawal or transfer) broadcast but unconfirmed
        self._in_flight: dict[int, tuple[str, ShieldedWithdrawal | ShieldedTransfer]] = {}
        self._pool_cache: dict[str, PrivacyPool] = {}

        self.privacy_mode = "private" if config.enable_privacy_mode else config.default_mode
        self._load_settings()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _pool_config(self, pool_address: str) -> PoolConfig:
        if not isinstance(pool_address, str):
            raise ValidationError("Pool address must be a string", field_name="pool_address")
        pool = self.pools.get(pool_address.lower())
        if pool is None:
            raise ValidationError(f"Unsupported pool {pool_address}", field_name="pool_address")
        return pool

    def _tree(self, pool_address: str) -> IncrementalMerkleTree:
        return self.trees[pool_address.lower()]

    def _ledger(self, pool_address: str) -> NullifierLedger:
        return self.ledgers[pool_address.lower()]

    def select_pool(self, amount: Any) -> PoolConfig:
        """Return the active pool whose denomination equals ``amount``."""
        value = self._parse_amount(amount)
        for pool in self.pools.values():
            if pool.is_active and pool.denomination == value:
                return pool
        raise ValidationError(f"No active pool for denomination {value}", field_name="amount")

    def get_deposit(self, deposit_id: str) -> ShieldedDeposit | None:
        return self._deposits.get(deposit_id)

    def list_deposits(self, state: DepositState | None = None,
                      alias_id: str | None = None) -> list[ShieldedDeposit]:
        return [
            d for d in self._deposits.values()
            if (state is None or d.state == state) and (alias_id is None or d.alias_id == alias_id)
        ]

    def list_spendable(self, alias_id: str | None = None) -> list[ShieldedDeposit]:
        """
        SPENDABLE notes that can be spent right now.

        Notes with a spend reserved, in flight or already recorded are
        left out.
        """
        spendable = []
        for deposit in self.list_deposits(DepositState.SPENDABLE, alias_id=alias_id):
            nullifier = deposit.nullifier_hash
            ledger = self._ledger(deposit.pool_address)
            if nullifier in self._in_flight or ledger.is_pending(nullifier) or ledger.is_spent(nullifier):
                continue
            spendable.append(deposit)
        return spendable

    def list_withdrawals(self) -> list[ShieldedWithdrawal]:
        return list(self._withdrawals.values())

    def list_transfers(self) -> list[ShieldedTransfer]:
        return list(self._transfers.values())

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_amount(amount: Any) -> Decimal:
        try:
            value = Decimal(str(amount))
        except (InvalidOperation, ValueError) as e:
            raise ValidationError(f"Invalid amount: {amount!r}", field_name="amount") from e
        if not value.is_finite() or value <= 0:
            raise ValidationError(f"Amount must be positive: {amount!r}", field_name="amount")
        return value

    def _validate_deposit_request(self, amount: Any, pool_address: str) -> PoolConfig:
        pool = self._pool_config(pool_address)
        value = self._parse_amount(amount)
        if value != pool.denomination:
            raise ValidationError(
                f"Amount {value} does not match the {pool.denomination} ETH pool denomination",
                field_name="amount",
            )
        if not pool.is_active:
            raise ValidationError(f"Pool {pool.contract_address} is not active", field_name="pool_address")
        return pool

    def _validate_fee(self, fee: Any, deposit: ShieldedDeposit) -> Decimal:
        try:
            value = Decimal(str(fee))
        except (InvalidOperation, ValueError) as e:
            raise ValidationError(f"Invalid fee: {fee!r}", field_name="fee") from e
        if not value.is_finite() or value < 0 or value >= deposit.amount:
            raise ValidationError("Fee must be non-negative and below the note amount", field_name="fee")
        return value

    async def _prepare_spend(self, deposit: ShieldedDeposit) -> PoolConfig:
        """Check that ``deposit`` can be spent, promoting a CONFIRMED note if possible."""
        if not isinstance(deposit, ShieldedDeposit):
            raise ValidationError("Expected a ShieldedDeposit", field_name="deposit")
        if not self.config.zk_proofs_enabled:
            raise ConfigurationError("Shielded spends require zk proofs to be enabled", "zk_proofs_enabled")
        pool = self._pool_config(deposit.pool_address)

        if deposit.state == DepositState.SPENT:
            nullifier = deposit.nullifier_hash
            self.metrics.increment("double_spend_rejected_total", labels={"pool": pool.contract_address})
            logger.error(f"Deposit {deposit.id} is already spent")
            raise DoubleSpendError(
                field_to_hex(nullifier) if nullifier is not None else deposit.id,
                details={"deposit_id": deposit.id},
            )
        if deposit.state == DepositState.CONFIRMED:
            await self._locate_on_chain(deposit)
        if deposit.state != DepositState.SPENDABLE or deposit.leaf_index is None:
            raise ValidationError(
                f"Deposit {deposit.id} is {deposit.state.value}, not spendable",
                field_name="deposit",
            )
        return pool

    # ------------------------------------------------------------------
    # Persistence (advisory after broadcast)
    # ------------------------------------------------------------------

    def _load_settings(self):
        try:
            settings = self.store.load_record(SETTINGS_KEY)
        except StorageError as e:
            logger.warning(f"Could not load privacy settings: {e}")
            return
        if settings and settings.get("mode") in ("public", "private"):
            self.privacy_mode = settings["mode"]

    def _storage_failed(self, error: PrivacyPoolError, target: ShieldedDeposit | None = None):
        self.metrics.increment("storage_failures_total")
        logger.warning(f"Local storage failed: {error}")
        if target is not None:
            target.add_warning(STORAGE_WARNING)

    def _persist_deposit(self, deposit: ShieldedDeposit, strict: bool = False) -> bool:
        """
        Seal and save a deposit record.

        With ``strict`` any failure is raised; otherwise it becomes a
        warning on the deposit.
        """
        try:
            record = seal_note_record(
                deposit.to_record(), self.config.encryption_key, self.config.kdf_iterations
            )
            self.store.save_record(DEPOSIT_PREFIX + deposit.id, record)
        except (StorageError, EncryptionError) as e:
            if strict:
                raise
            self._storage_failed(e, deposit)
            return False
        return True

    def _persist_spend(self, spend: ShieldedWithdrawal | ShieldedTransfer) -> bool:
        prefix = WITHDRAWAL_PREFIX if isinstance(spend, ShieldedWithdrawal) else TRANSFER_PREFIX
        try:
            self.store.save_record(prefix + spend.id, spend.to_dict())
        except StorageError as e:
            deposit = self._deposits.get(spend.deposit_id)
            self._storage_failed(e, deposit)
            return False
        return True

    # ------------------------------------------------------------------
    # Chain helpers
    # ------------------------------------------------------------------

    async def _await_receipt(self, tx_hash: str) -> Receipt | None:
        """Poll for a receipt with bounded backoff. None means still pending."""

        async def check() -> Receipt | None:
            try:
                return await self.chain.wait_for_confirmation(tx_hash)
            except NetworkError as e:
                logger.warning(f"Confirmation check for {tx_hash[:18]}... failed: {e}")
                return None

        return await poll_with_backoff(
            check,
            base_delay=self.config.confirmation_base_delay,
            max_delay=self.config.confirmation_max_delay,
            max_wait=self.config.confirmation_max_wait,
        )

    async def _sync_tree(self, pool_address: str) -> IncrementalMerkleTree:
        """
        Append newly confirmed commitments to the local tree.

        The local tree only ever receives leaves in on-chain order. If its
        root still disagrees with the contract it is rebuilt from scratch.
        """
        key = pool_address.lower()
        tree = self.trees[key]

        new_commitments = await self.chain.get_commitments(pool_address, tree.leaf_count)
        if new_commitments:
            tree.bulk_insert(new_commitments)

        chain_root = await self.chain.get_merkle_root(pool_address)
        if chain_root != tree.current_root():
            logger.warning(f"Local tree for {pool_address} diverged from chain, rebuilding")
            rebuilt = IncrementalMerkleTree(tree.depth, tree.root_history_size)
            rebuilt.bulk_insert(await self.chain.get_commitments(pool_address, 0))
            if rebuilt.current_root() != chain_root:
                raise NetworkError(
                    f"Chain returned commitments inconsistent with root for {pool_address}",
                    endpoint=pool_address,
                )
            self.trees[key] = tree = rebuilt

        self.metrics.set_gauge("anonymity_set_size", tree.leaf_count, labels={"pool": pool_address})
        return tree

    def _locate_in_tree(self, deposit: ShieldedDeposit, tree: IncrementalMerkleTree) -> bool:
        """Take the leaf index from on-chain order and promote the note to SPENDABLE."""
        index = tree.index_of(deposit.commitment)
        if index is None:
            return False

        if deposit.leaf_index is not None and deposit.leaf_index != index:
            logger.warning(
                f"Correcting leaf index of {deposit.id} from {deposit.leaf_index} to {index}"
            )
        deposit.leaf_index = index
        if deposit.state in (DepositState.CREATED, DepositState.CONFIRMED, DepositState.FAILED):
            deposit.state = DepositState.SPENDABLE
            deposit.merkle_root_at_deposit = tree.current_root()
        return True

    async def _locate_on_chain(self, deposit: ShieldedDeposit) -> bool:
        tree = await self._sync_tree(deposit.pool_address)
        return self._locate_in_tree(deposit, tree)

    def _update_pending_gauge(self):
        self.metrics.set_gauge(
            "pending_spends", sum(ledger.pending_count for ledger in self.ledgers.values())
        )

    # ------------------------------------------------------------------
    # Deposits
    # ------------------------------------------------------------------

    async def create_shielded_deposit(self, amount: Any, pool_address: str,
                                      alias_id: str | None = None) -> ShieldedDeposit:
        """
        Deposit one note of ``amount`` into the pool at ``pool_address``.

        The sealed note is saved before broadcast; if that save fails the
        deposit is aborted before any funds move. After broadcast, storage
        failures only add a warning.

        Returns:
            The deposit: SPENDABLE once confirmed and synced, CONFIRMED if
            the tree sync was deferred, CREATED if confirmation is still
            pending after the bounded wait

        Raises:
            ValidationError: for an unsupported pool or wrong amount
            NetworkError: when the broadcast retry budget is exhausted
            TreeFullError: when the pool is at capacity
        """
        pool = self._validate_deposit_request(amount, pool_address)

        secret = self.proof_engine.generate_random_field_element()
        nullifier_seed = self.proof_engine.generate_random_field_element()
        amount_wei = eth_to_wei(pool.denomination)
        deposit = ShieldedDeposit(
            id=_new_id("dep"),
            pool_address=pool.contract_address,
            amount=pool.denomination,
            commitment=compute_commitment(secret, nullifier_seed, amount_wei),
            secret=secret,
            nullifier_seed=nullifier_seed,
            alias_id=alias_id,
        )

        with LoggingContext(deposit_id=deposit.id, pool=pool.contract_address):
            self._persist_deposit(deposit, strict=True)
            self._deposits[deposit.id] = deposit

            try:
                deposit.tx_hash = await async_retry_call(
                    self.signer.broadcast_deposit,
                    args=(pool.contract_address, deposit.commitment, amount_wei),
                    config=self.broadcast_retry,
                )
            except (PrivacyPoolError, ConnectionError, TimeoutError) as e:
                deposit.state = DepositState.FAILED
                self._persist_deposit(deposit)
                logger.warning(f"Deposit broadcast failed: {e}")
                if isinstance(e, PrivacyPoolError):
                    raise
                raise NetworkError(f"Deposit broadcast failed: {e}", cause=e) from e

            logger.info(f"Deposit broadcast in tx {deposit.tx_hash[:18]}...")
            self._persist_deposit(deposit)

            receipt = await self._await_receipt(deposit.tx_hash)
            if receipt is None:
                logger.info("Deposit confirmation still pending")
                return deposit

            await self._apply_deposit_receipt(deposit, receipt)
            self._persist_deposit(deposit)
            return deposit

    async def _apply_deposit_receipt(self, deposit: ShieldedDeposit, receipt: Receipt):
        pool = self._pool_config(deposit.pool_address)

        if not receipt.succeeded:
            if receipt.revert_reason == REVERT_DUPLICATE_COMMITMENT and await self._locate_on_chain(deposit):
                logger.info(f"Deposit {deposit.id} was already included by an earlier broadcast")
                return
            deposit.state = DepositState.FAILED
            raise error_for_revert(receipt.revert_reason or "unknown", tree_depth=pool.tree_depth)

        deposit.state = DepositState.CONFIRMED
        deposit.leaf_index = receipt.leaf_index
        self.metrics.increment("deposits_total", labels={"pool": pool.contract_address})
        logger.info(f"Deposit confirmed in block {receipt.block_number} at leaf {receipt.leaf_index}")

        try:
            await self._locate_on_chain(deposit)
        except NetworkError as e:
            logger.warning(f"Deposit confirmed; tree sync deferred: {e}")

    # ------------------------------------------------------------------
    # Spends
    # ------------------------------------------------------------------

    def _record_double_spend(self, deposit: ShieldedDeposit, nullifier: int):
        """Some attempt already spent this note: mark it SPENT locally."""
        self._ledger(deposit.pool_address).load_spent([nullifier])
        deposit.state = DepositState.SPENT
        self._persist_deposit(deposit)
        self.metrics.increment("double_spend_rejected_total", labels={"pool": deposit.pool_address})
        logger.error(f"Double spend rejected for deposit {deposit.id}")

    def _reserve(self, deposit: ShieldedDeposit, nullifier: int):
        try:
            self._ledger(deposit.pool_address).reserve_pending(nullifier)
        except DoubleSpendError:
            self._record_double_spend(deposit, nullifier)
            raise
        self._update_pending_gauge()

    async def _check_chain_spent(self, deposit: ShieldedDeposit, nullifier: int):
        if await self.chain.is_nullifier_spent_on_chain(deposit.pool_address, nullifier):
            raise DoubleSpendError(field_to_hex(nullifier), details={"deposit_id": deposit.id})

    def _verify_locally(self, kind: str, result: ProofResult, expected: list[int]):
        if not self.proof_engine.verify_proof(kind, result, expected_signals=expected):
            raise ProofVerificationFailure(
                f"Locally generated {kind} proof failed verification", circuit_id=kind
            )

    async def _broadcast_spend(self, deposit: ShieldedDeposit, nullifier: int,
                               send: Callable[[], Awaitable[str]]) -> str | None:
        """
        Broadcast a spend with retries.

        Before every retry the nullifier is checked on chain; if an earlier
        attempt already landed the spend is not resubmitted and None is
        returned in place of a tx hash.
        """
        attempts = 0

        async def attempt() -> str | None:
            nonlocal attempts
            attempts += 1
            if attempts > 1 and await self.chain.is_nullifier_spent_on_chain(
                deposit.pool_address, nullifier
            ):
                logger.info("Earlier broadcast already landed, not resubmitting")
                return None
            return await send()

        try:
            return await async_retry_call(attempt, config=self.broadcast_retry)
        except DoubleSpendError:
            if attempts > 1:
                logger.info("Earlier broadcast already landed, contract rejected the resubmission")
                return None
            raise
        except (ConnectionError, TimeoutError) as e:
            raise NetworkError(f"Spend broadcast failed: {e}", cause=e) from e

    async def _finalize_spend(self, deposit: ShieldedDeposit, spend: ShieldedWithdrawal | ShieldedTransfer,
                              nullifier: int, receipt: Receipt | None):
        """Apply the inclusion outcome of a broadcast spend."""
        if receipt is not None and not receipt.succeeded:
            spend.status = STATUS_FAILED
            self._persist_spend(spend)
            if receipt.revert_reason == REVERT_NULLIFIER_SPENT:
                self._record_double_spend(deposit, nullifier)
                raise DoubleSpendError(field_to_hex(nullifier), details={"deposit_id": deposit.id})
            error = error_for_revert(
                receipt.revert_reason or "unknown",
                nullifier=field_to_hex(nullifier),
                circuit_id=WITHDRAWAL if isinstance(spend, ShieldedWithdrawal) else TRANSFER,
                tree_depth=self._tree(deposit.pool_address).depth,
                root=field_to_hex(spend.merkle_root),
            )
            if error.fund_safety:
                logger.error(f"Spend of {deposit.id} reverted: {receipt.revert_reason}")
            raise error

        tx_hash = receipt.tx_hash if receipt is not None else spend.tx_hash
        ledger = self._ledger(deposit.pool_address)
        if not ledger.is_spent(nullifier):
            ledger.record_spent(nullifier, tx_hash)
        deposit.state = DepositState.SPENT
        deposit.spent_tx_hash = tx_hash
        spend.status = STATUS_CONFIRMED
        self._persist_deposit(deposit)

        if isinstance(spend, ShieldedTransfer):
            await self._settle_transfer_output(spend, receipt)
        self._persist_spend(spend)

    async def _settle_transfer_output(self, transfer: ShieldedTransfer, receipt: Receipt | None):
        note = transfer.output_note
        note.tx_hash = transfer.tx_hash
        note.state = DepositState.CONFIRMED
        if receipt is not None:
            note.leaf_index = receipt.leaf_index
        try:
            await self._locate_on_chain(note)
        except NetworkError as e:
            logger.warning(f"Transfer output confirmed; tree sync deferred: {e}")
        if note.id in self._deposits:
            self._persist_deposit(note)

    async def create_shielded_withdrawal(self, deposit: ShieldedDeposit, recipient: str,
                                         fee: Any = Decimal("0")) -> ShieldedWithdrawal:
        """
        Withdraw a spendable note to ``recipient``.

        Returns:
            The withdrawal, with status "confirmed", or "pending" if the
            bounded confirmation wait ran out. A pending spend keeps its
            nullifier reserved until refresh_pending() resolves it.

        Raises:
            ValidationError: bad recipient or fee, or a note that is not spendable
            DoubleSpendError: the note was already spent; it is marked SPENT
            SpendInProgressError: another local spend of the note is in flight
            ProofGenerationError: backend failure or timeout, safe to retry
            ProofVerificationFailure: the proof was rejected
            NetworkError: broadcast retry budget exhausted
        """
        if not is_valid_address(recipient):
            raise ValidationError(f"Invalid recipient address: {recipient!r}", field_name="recipient")
        pool = await self._prepare_spend(deposit)
        fee = self._validate_fee(fee, deposit)
        nullifier = deposit.nullifier_hash

        with LoggingContext(deposit_id=deposit.id, pool=pool.contract_address, operation="withdraw"):
            self._reserve(deposit, nullifier)
            keep_reservation = False
            try:
                await self._check_chain_spent(deposit, nullifier)
                tree = await self._sync_tree(pool.contract_address)
                root = tree.current_root()
                path = tree.path_to(deposit.leaf_index, root)

                result = await self.proof_engine.generate_withdrawal_proof_async(
                    deposit.secret, deposit.nullifier_seed, path, root, recipient, deposit.amount_wei
                )
                self._verify_locally(
                    WITHDRAWAL,
                    result,
                    self.proof_engine.expected_withdrawal_signals(
                        root, nullifier, recipient, deposit.amount_wei
                    ),
                )
                contract_proof: ContractProofFormat = self.proof_engine.format_proof_for_contract(result)

                withdrawal = ShieldedWithdrawal(
                    id=_new_id("wd"),
                    deposit_id=deposit.id,
                    pool_address=pool.contract_address,
                    amount=deposit.amount,
                    recipient=recipient,
                    nullifier_hash=nullifier,
                    zk_proof=contract_proof.to_dict(),
                    merkle_root=root,
                    fee=fee,
                )
                self._withdrawals[withdrawal.id] = withdrawal

                withdrawal.tx_hash = await self._broadcast_spend(
                    deposit,
                    nullifier,
                    lambda: self.signer.broadcast_withdrawal(
                        pool.contract_address,
                        contract_proof.to_dict(),
                        list(result.public_signals),
                        recipient,
                        eth_to_wei(fee),
                    ),
                )

                receipt = None
                if withdrawal.tx_hash is not None:
                    receipt = await self._await_receipt(withdrawal.tx_hash)
                    if receipt is None:
                        keep_reservation = True
                        self._in_flight[nullifier] = (deposit.id, withdrawal)
                        self._persist_spend(withdrawal)
                        logger.info("Withdrawal confirmation still pending")
                        return withdrawal

                await self._finalize_spend(deposit, withdrawal, nullifier, receipt)
                self.metrics.increment("withdrawals_total", labels={"pool": pool.contract_address})
                logger.info(f"Withdrawal {withdrawal.id} confirmed")
                return withdrawal
            except DoubleSpendError:
                if deposit.state != DepositState.SPENT:
                    self._record_double_spend(deposit, nullifier)
                raise
            except ProofVerificationFailure as e:
                logger.error(f"Withdrawal proof rejected: {e}")
                raise
            finally:
                if not keep_reservation:
                    self._ledger(pool.contract_address).release_pending(nullifier)
                self._update_pending_gauge()

    async def create_shielded_transfer(self, deposit: ShieldedDeposit, retain_output: bool = False,
                                       alias_id: str | None = None) -> ShieldedTransfer:
        """
        Spend a note into a fresh note of the same denomination.

        The output note is a bearer note: whoever holds its secrets can
        spend it. With ``retain_output`` it is kept in this wallet
        (under ``alias_id``); otherwise it is only returned on the
        transfer for delivery to the recipient.
        """
        pool = await self._prepare_spend(deposit)
        nullifier = deposit.nullifier_hash

        out_secret = self.proof_engine.generate_random_field_element()
        out_nullifier_seed = self.proof_engine.generate_random_field_element()
        output_note = ShieldedDeposit(
            id=_new_id("dep"),
            pool_address=pool.contract_address,
            amount=deposit.amount,
            commitment=compute_commitment(out_secret, out_nullifier_seed, deposit.amount_wei),
            secret=out_secret,
            nullifier_seed=out_nullifier_seed,
            alias_id=alias_id,
        )

        with LoggingContext(deposit_id=deposit.id, pool=pool.contract_address, operation="transfer"):
            self._reserve(deposit, nullifier)
            keep_reservation = False
            try:
                await self._check_chain_spent(deposit, nullifier)
                if retain_output:
                    self._persist_deposit(output_note, strict=True)
                    self._deposits[output_note.id] = output_note

                tree = await self._sync_tree(pool.contract_address)
                root = tree.current_root()
                path = tree.path_to(deposit.leaf_index, root)

                result = await self.proof_engine.generate_transfer_proof_async(
                    deposit.secret, deposit.nullifier_seed, path, root,
                    out_secret, out_nullifier_seed, deposit.amount_wei,
                )
                self._verify_locally(
                    TRANSFER, result, [root, nullifier, output_note.commitment, deposit.amount_wei]
                )
                contract_proof = self.proof_engine.format_proof_for_contract(result)

                transfer = ShieldedTransfer(
                    id=_new_id("tx"),
                    deposit_id=deposit.id,
                    pool_address=pool.contract_address,
                    amount=deposit.amount,
                    nullifier_hash=nullifier,
                    output_commitment=output_note.commitment,
                    zk_proof=contract_proof.to_dict(),
                    merkle_root=root,
                    output_note=output_note,
                )
                self._transfers[transfer.id] = transfer

                transfer.tx_hash = await self._broadcast_spend(
                    deposit,
                    nullifier,
                    lambda: self.signer.broadcast_transfer(
                        pool.contract_address, contract_proof.to_dict(), list(result.public_signals)
                    ),
                )

                receipt = None
                if transfer.tx_hash is not None:
                    receipt = await self._await_receipt(transfer.tx_hash)
                    if receipt is None:
                        keep_reservation = True
                        output_note.tx_hash = transfer.tx_hash
                        self._in_flight[nullifier] = (deposit.id, transfer)
                        self._persist_spend(transfer)
                        logger.info("Transfer confirmation still pending")
                        return transfer

                await self._finalize_spend(deposit, transfer, nullifier, receipt)
                self.metrics.increment("transfers_total", labels={"pool": pool.contract_address})
                logger.info(f"Transfer {transfer.id} confirmed")
                return transfer
            except DoubleSpendError:
                if deposit.state != DepositState.SPENT:
                    self._record_double_spend(deposit, nullifier)
                raise
            except ProofVerificationFailure as e:
                logger.error(f"Transfer proof rejected: {e}")
                raise
            finally:
                if not keep_reservation:
                    self._ledger(pool.contract_address).release_pending(nullifier)
                self._update_pending_gauge()

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def get_shielded_balance(self, alias_id: str | None = None) -> dict[Decimal, Decimal]:
        """
        Spendable value per denomination, as known to this client.

        Notes with an unconfirmed spend in flight are excluded, so the
        view never counts a note that may already be gone.
        """
        balances: dict[Decimal, Decimal] = {}
        for deposit in self.list_spendable(alias_id):
            denomination = self._pool_config(deposit.pool_address).denomination
            balances[denomination] = balances.get(denomination, Decimal("0")) + deposit.amount
        return balances

    async def get_pool(self, pool_address: str) -> PrivacyPool:
        """
        Pool metadata, fresh from chain when reachable.

        Falls back to the last fetched metadata, or to a view built from the
        local tree, when the chain cannot be reached.
        """
        pool = self._pool_config(pool_address)
        key = pool.contract_address.lower()
        try:
            metadata = await self.chain.get_pool_metadata(pool.contract_address)
            self._pool_cache[key] = metadata
        except NetworkError as e:
            logger.warning(f"Using cached metadata for pool {pool.contract_address}: {e}")
            metadata = self._pool_cache.get(key) or PrivacyPool(
                denomination=pool.denomination,
                contract_address=pool.contract_address,
                tree_depth=pool.tree_depth,
                anonymity_set_size=self.trees[key].leaf_count,
                is_active=pool.is_active,
                network=pool.network,
            )
        self.metrics.set_gauge(
            "anonymity_set_size", metadata.anonymity_set_size, labels={"pool": pool.contract_address}
        )
        return metadata

    async def get_privacy_pools(self) -> list[PrivacyPool]:
        return [await self.get_pool(pool.contract_address) for pool in self.pools.values()]

    async def get_pool_stats(self, pool_address: str) -> dict[str, Any]:
        metadata = await self.get_pool(pool_address)
        local = [d for d in self._deposits.values() if d.pool_address.lower() == pool_address.lower()]
        return {
            "pool_address": metadata.contract_address,
            "denomination": str(metadata.denomination),
            "network": metadata.network,
            "total_deposits": metadata.anonymity_set_size,
            "total_withdrawals": metadata.total_withdrawals,
            "pool_balance": str(metadata.balance),
            "anonymity_set_size": metadata.anonymity_set_size,
            "local_notes": len(local),
            "local_spendable": sum(1 for d in local if d.state == DepositState.SPENDABLE),
        }

    # ------------------------------------------------------------------
    # Privacy mode
    # ------------------------------------------------------------------

    def toggle_privacy_mode(self) -> str:
        self.privacy_mode = "public" if self.privacy_mode == "private" else "private"
        try:
            self.store.save_record(SETTINGS_KEY, {"mode": self.privacy_mode})
        except StorageError as e:
            self._storage_failed(e)
        logger.info(f"Privacy mode set to {self.privacy_mode}")
        return self.privacy_mode

    def get_privacy_settings(self) -> dict[str, Any]:
        settings = self.config.privacy_settings()
        settings["mode"] = self.privacy_mode
        return settings

    # ------------------------------------------------------------------
    # Synchronization and recovery
    # ------------------------------------------------------------------

    async def sync_notes(self) -> dict[str, int]:
        """
        Bring local notes in line with chain state.

        CONFIRMED notes are promoted once their leaf is synced; SPENDABLE
        notes whose nullifier is spent on chain are marked SPENT.
        """
        summary = {"promoted": 0, "spent": 0}
        for key, pool in self.pools.items():
            notes = [
                d for d in self._deposits.values()
                if d.pool_address.lower() == key
                and d.state in (DepositState.CONFIRMED, DepositState.SPENDABLE)
            ]
            if not notes:
                continue

            tree = await self._sync_tree(pool.contract_address)
            for deposit in notes:
                if deposit.state == DepositState.CONFIRMED and self._locate_in_tree(deposit, tree):
                    summary["promoted"] += 1
                    self._persist_deposit(deposit)
                if deposit.state != DepositState.SPENDABLE:
                    continue
                nullifier = deposit.nullifier_hash
                if nullifier in self._in_flight:
                    continue
                if await self.chain.is_nullifier_spent_on_chain(pool.contract_address, nullifier):
                    self._ledger(key).load_spent([nullifier])
                    deposit.state = DepositState.SPENT
                    self._persist_deposit(deposit)
                    summary["spent"] += 1
                    logger.info(f"Deposit {deposit.id} was spent on chain")

        logger.info(f"Note sync: {summary['promoted']} promoted, {summary['spent']} spent")
        return summary

    async def refresh_pending(self) -> dict[str, int]:
        """Re-check pending deposits and in-flight spends once each."""
        summary = {
            "deposits_confirmed": 0,
            "deposits_failed": 0,
            "spends_confirmed": 0,
            "spends_failed": 0,
            "still_pending": 0,
        }

        for deposit in list(self._deposits.values()):
            if deposit.state != DepositState.CREATED or not deposit.tx_hash:
                continue
            try:
                receipt = await self.chain.wait_for_confirmation(deposit.tx_hash)
            except NetworkError as e:
                logger.warning(f"Could not check deposit {deposit.id}: {e}")
                summary["still_pending"] += 1
                continue
            if receipt is None:
                summary["still_pending"] += 1
                continue
            try:
                await self._apply_deposit_receipt(deposit, receipt)
                summary["deposits_confirmed"] += 1
            except PrivacyPoolError as e:
                logger.warning(f"Deposit {deposit.id} failed on chain: {e}")
                summary["deposits_failed"] += 1
            self._persist_deposit(deposit)

        for nullifier, (deposit_id, spend) in list(self._in_flight.items()):
            try:
                receipt = await self.chain.wait_for_confirmation(spend.tx_hash)
            except NetworkError as e:
                logger.warning(f"Could not check spend {spend.id}: {e}")
                summary["still_pending"] += 1
                continue
            if receipt is None:
                summary["still_pending"] += 1
                continue

            del self._in_flight[nullifier]
            deposit = self._deposits[deposit_id]
            self._ledger(deposit.pool_address).release_pending(nullifier)
            try:
                await self._finalize_spend(deposit, spend, nullifier, receipt)
                summary["spends_confirmed"] += 1
            except PrivacyPoolError as e:
                log = logger.error if e.fund_safety else logger.warning
                log(f"Spend {spend.id} failed on chain: {e}")
                summary["spends_failed"] += 1

        self._update_pending_gauge()
        return summary

    async def reconcile(self) -> dict[str, int]:
        """
        Rebuild local state from the store and the chain.

        Sealed deposit records are reloaded, leaf indices re-derived from
        on-chain commitments and spent notes detected. This is the recovery
        path after earlier storage failures.

        Raises:
            StorageError: if the store cannot be read at all
        """
        report = {"loaded": 0, "recovered": 0, "unrecoverable": 0, "spendable": 0, "spent": 0}

        records = self.store.load_all(DEPOSIT_PREFIX)
        for key, sealed in records.items():
            try:
                deposit = ShieldedDeposit.from_record(
                    unseal_note_record(sealed, self.config.encryption_key)
                )
            except (EncryptionError, ValidationError) as e:
                report["unrecoverable"] += 1
                logger.error(f"Cannot recover {key}: {e}")
                continue

            report["loaded"] += 1
            if deposit.id not in self._deposits:
                self._deposits[deposit.id] = deposit
                report["recovered"] += 1

        for key, pool in self.pools.items():
            notes = [
                d for d in self._deposits.values()
                if d.pool_address.lower() == key and d.state != DepositState.SPENT
            ]
            if not notes:
                continue

            tree = await self._sync_tree(pool.contract_address)
            for deposit in notes:
                self._locate_in_tree(deposit, tree)
                if deposit.state == DepositState.SPENDABLE:
                    nullifier = deposit.nullifier_hash
                    if await self.chain.is_nullifier_spent_on_chain(pool.contract_address, nullifier):
                        self._ledger(key).load_spent([nullifier])
                        deposit.state = DepositState.SPENT
                        report["spent"] += 1
                self._persist_deposit(deposit)

        report["spendable"] = len(self.list_deposits(DepositState.SPENDABLE))
        logger.info(
            f"Reconciled {report['loaded']} records: {report['recovered']} recovered, "
            f"{report['unrecoverable']} unrecoverable"
        )
        return report

    def get_info(self) -> dict[str, Any]:
        return {
            "pools": [p.to_dict() for p in self.pools.values()],
            "privacy_mode": self.privacy_mode,
            "deposits": {s.value: len(self.list_deposits(s)) for s in DepositState},
            "withdrawals": len(self._withdrawals),
            "transfers": len(self._transfers),
            "in_flight": len(self._in_flight),
            "trees": {key: tree.get_info() for key, tree in self.trees.items()},
        }

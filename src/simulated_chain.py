"""
Shielded Pool - In-Memory Chain

A deterministic, in-process stand-in for the pool contracts that implements
both ChainReader and LedgerSigner. It enforces the same rules a deployed
pool does:

- commitments are appended to a fixed-depth tree in inclusion order
- withdrawals and transfers must target a root inside the history window
- each nullifier is accepted once
- proofs are checked by a verify-only backend holding no proving keys
- deposits must match the pool denomination exactly

Broadcasts are pre-flighted against current state (as a gas estimate
would) and executed again at inclusion, so a transaction can still revert
if state changed in between.

Fault injection for tests and local development:
- fail_next_broadcasts: raise NetworkError, optionally after accepting the tx
- confirmation_polls: how many receipt polls a tx stays pending
- auto_mine=False plus mine(order): inclusion in any order
- set_offline: every call raises NetworkError
"""

import hashlib
import logging
import secrets
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any

from chain_interface import (
    REVERT_BAD_AMOUNT,
    REVERT_BAD_RECIPIENT,
    REVERT_DUPLICATE_COMMITMENT,
    REVERT_INVALID_PROOF,
    REVERT_NULLIFIER_SPENT,
    REVERT_POOL_INACTIVE,
    REVERT_TREE_FULL,
    REVERT_UNKNOWN_ROOT,
    ChainReader,
    LedgerSigner,
    PrivacyPool,
    Receipt,
    TxStatus,
    error_for_revert,
)
from config import PoolConfig
from exceptions import NetworkError, ProofFormatError, ValidationError
from field_utils import (
    FIELD_PRIME,
    address_to_field,
    eth_to_wei,
    field_to_hex,
    generate_random_field_element,
    wei_to_eth,
)
from merkle_tree import DEFAULT_ROOT_HISTORY_SIZE, IncrementalMerkleTree
from proof_backend import ProofBackend, parse_public_signals

logger = logging.getLogger(__name__)

DEPOSIT = "deposit"
WITHDRAWAL = "withdrawal"
TRANSFER = "transfer"


class ContractRevert(Exception):
    """Execution of a pool transaction failed with ``reason``."""

    def __init__(self, reason: str, **context: Any):
        super().__init__(reason)
        self.reason = reason
        self.context = context


@dataclass
class PendingTransaction:
    tx_hash: str
    kind: str
    pool_address: str
    payload: dict[str, Any]
    polls_remaining: int = 0


@dataclass
class PoolState:
    """Contract storage of one pool."""
    config: PoolConfig
    tree: IncrementalMerkleTree
    denomination_wei: int
    nullifiers: set[int] = field(default_factory=set)
    commitments: set[int] = field(default_factory=set)
    balance_wei: int = 0
    total_withdrawals: int = 0


def contract_proof_to_backend(proof: dict[str, Any]) -> dict[str, Any]:
    """Undo the Fp2 coordinate swap applied for the on-chain verifier."""
    try:
        return {
            "a": list(proof["a"]),
            "b": [[row[1], row[0]] for row in proof["b"]],
            "c": list(proof["c"]),
        }
    except (KeyError, TypeError, IndexError) as e:
        raise ContractRevert(REVERT_INVALID_PROOF) from e


class InMemoryChain(ChainReader, LedgerSigner):
    """Pool contracts simulated in process memory."""

    def __init__(
        self,
        verifier: ProofBackend,
        pools: list[PoolConfig] | None = None,
        root_history_size: int = DEFAULT_ROOT_HISTORY_SIZE,
        auto_mine: bool = True,
        confirmation_polls: int = 0,
    ):
        self.verifier = verifier
        self.root_history_size = root_history_size
        self.auto_mine = auto_mine
        self.confirmation_polls = confirmation_polls

        self._pools: dict[str, PoolState] = {}
        self._pending: dict[str, PendingTransaction] = {}
        self._receipts: dict[str, Receipt] = {}
        self._block_number = 0
        self._nonce = 0

        self._fail_broadcasts = 0
        self._lose_responses = False
        self._offline = False

        for pool in pools or []:
            self.register_pool(pool)

    # ------------------------------------------------------------------
    # Setup and fault injection
    # ------------------------------------------------------------------

    def register_pool(self, pool: PoolConfig) -> None:
        key = pool.contract_address.lower()
        if key in self._pools:
            raise ValidationError(f"Pool {pool.contract_address} already deployed", field_name="pool")
        self._pools[key] = PoolState(
            config=replace(pool),
            tree=IncrementalMerkleTree(pool.tree_depth, self.root_history_size),
            denomination_wei=eth_to_wei(pool.denomination),
        )
        logger.info(f"Deployed simulated pool {pool.contract_address} ({pool.denomination} ETH)")

    def seed_deposits(self, pool_address: str, count: int) -> list[int]:
        """Include ``count`` deposits by other users directly."""
        state = self._pool(pool_address)
        commitments = []
        for _ in range(count):
            commitment = generate_random_field_element()
            state.tree.insert_leaf(commitment)
            state.commitments.add(commitment)
            state.balance_wei += state.denomination_wei
            commitments.append(commitment)
        self._block_number += 1
        return commitments

    def fail_next_broadcasts(self, count: int, lose_response: bool = False) -> None:
        """
        Make the next ``count`` broadcasts raise NetworkError.

        With ``lose_response`` the transaction is accepted first, so only
        the reply is lost.
        """
        self._fail_broadcasts = count
        self._lose_responses = lose_response

    def set_offline(self, offline: bool) -> None:
        self._offline = offline

    def set_pool_active(self, pool_address: str, active: bool) -> None:
        self._pool(pool_address).config.is_active = active

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_online(self, operation: str):
        if self._offline:
            raise NetworkError(f"Chain unreachable during {operation}", endpoint="in-memory")

    def _pool(self, pool_address: str) -> PoolState:
        state = self._pools.get(pool_address.lower())
        if state is None:
            raise ValidationError(f"No pool deployed at {pool_address}", field_name="pool_address")
        return state

    def _next_tx_hash(self, kind: str, pool_address: str) -> str:
        self._nonce += 1
        material = f"{self._nonce}:{kind}:{pool_address}:{secrets.token_hex(8)}"
        return "0x" + hashlib.sha256(material.encode()).hexdigest()

    def _check_deposit(self, state: PoolState, payload: dict[str, Any]):
        if not state.config.is_active:
            raise ContractRevert(REVERT_POOL_INACTIVE)
        if payload["amount"] != state.denomination_wei:
            raise ContractRevert(REVERT_BAD_AMOUNT)
        commitment = payload["commitment"]
        if not 0 <= commitment < FIELD_PRIME or commitment in state.commitments:
            raise ContractRevert(REVERT_DUPLICATE_COMMITMENT)
        if state.tree.leaf_count >= state.tree.capacity:
            raise ContractRevert(REVERT_TREE_FULL)

    def _check_spend(self, state: PoolState, kind: str, payload: dict[str, Any]) -> list[int]:
        try:
            signals = parse_public_signals(payload["public_signals"], 4)
        except ProofFormatError as e:
            raise ContractRevert(REVERT_INVALID_PROOF) from e

        root, nullifier_hash, third, amount = signals
        if not state.tree.is_known_root(root):
            raise ContractRevert(REVERT_UNKNOWN_ROOT, root=field_to_hex(root))
        if nullifier_hash in state.nullifiers:
            raise ContractRevert(REVERT_NULLIFIER_SPENT, nullifier=field_to_hex(nullifier_hash))
        if amount != state.denomination_wei:
            raise ContractRevert(REVERT_BAD_AMOUNT)

        if kind == WITHDRAWAL:
            if third != address_to_field(payload["recipient"]):
                raise ContractRevert(REVERT_BAD_RECIPIENT)
        else:
            if third in state.commitments:
                raise ContractRevert(REVERT_DUPLICATE_COMMITMENT)
            if state.tree.leaf_count >= state.tree.capacity:
                raise ContractRevert(REVERT_TREE_FULL)

        proof = contract_proof_to_backend(payload["proof"])
        try:
            valid = self.verifier.verify(kind, proof, signals)
        except ProofFormatError as e:
            raise ContractRevert(REVERT_INVALID_PROOF) from e
        if not valid:
            raise ContractRevert(REVERT_INVALID_PROOF)
        return signals

    def _preflight(self, state: PoolState, kind: str, payload: dict[str, Any]):
        try:
            if kind == DEPOSIT:
                self._check_deposit(state, payload)
            else:
                self._check_spend(state, kind, payload)
        except ContractRevert as revert:
            raise error_for_revert(
                revert.reason,
                nullifier=revert.context.get("nullifier", "unknown"),
                circuit_id=kind,
                tree_depth=state.tree.depth,
                root=revert.context.get("root", "unknown"),
            ) from revert

    def _submit(self, kind: str, pool_address: str, payload: dict[str, Any]) -> str:
        self._check_online("broadcast")
        state = self._pool(pool_address)

        lose_response = False
        if self._fail_broadcasts > 0:
            self._fail_broadcasts -= 1
            if not self._lose_responses:
                raise NetworkError(f"Broadcast of {kind} failed", endpoint="in-memory")
            lose_response = True

        self._preflight(state, kind, payload)

        tx_hash = self._next_tx_hash(kind, pool_address)
        self._pending[tx_hash] = PendingTransaction(
            tx_hash=tx_hash,
            kind=kind,
            pool_address=pool_address,
            payload=payload,
            polls_remaining=self.confirmation_polls,
        )
        logger.debug(f"Accepted {kind} tx {tx_hash[:18]}... for pool {pool_address}")

        if lose_response:
            raise NetworkError(f"Response to {kind} broadcast lost", endpoint="in-memory")
        return tx_hash

    def _execute(self, tx: PendingTransaction) -> Receipt:
        state = self._pool(tx.pool_address)
        self._block_number += 1
        leaf_index = None

        try:
            if tx.kind == DEPOSIT:
                self._check_deposit(state, tx.payload)
                commitment = tx.payload["commitment"]
                leaf_index = state.tree.insert_leaf(commitment)
                state.commitments.add(commitment)
                state.balance_wei += tx.payload["amount"]
            else:
                signals = self._check_spend(state, tx.kind, tx.payload)
                state.nullifiers.add(signals[1])
                if tx.kind == WITHDRAWAL:
                    state.balance_wei -= signals[3]
                    state.total_withdrawals += 1
                else:
                    leaf_index = state.tree.insert_leaf(signals[2])
                    state.commitments.add(signals[2])
        except ContractRevert as revert:
            logger.info(f"Tx {tx.tx_hash[:18]}... reverted: {revert.reason}")
            return Receipt(
                tx_hash=tx.tx_hash,
                status=TxStatus.REVERTED,
                block_number=self._block_number,
                revert_reason=revert.reason,
            )

        return Receipt(
            tx_hash=tx.tx_hash,
            status=TxStatus.SUCCESS,
            block_number=self._block_number,
            leaf_index=leaf_index,
        )

    def mine(self, tx_hashes: list[str] | None = None) -> list[Receipt]:
        """
        Include pending transactions.

        Args:
            tx_hashes: Inclusion order; defaults to every pending tx in
                submission order
        """
        order = list(self._pending) if tx_hashes is None else tx_hashes
        receipts = []
        for tx_hash in order:
            tx = self._pending.pop(tx_hash, None)
            if tx is None:
                raise ValidationError(f"Unknown pending transaction {tx_hash}", field_name="tx_hash")
            receipt = self._execute(tx)
            self._receipts[tx_hash] = receipt
            receipts.append(receipt)
        return receipts

    @property
    def pending_transactions(self) -> list[str]:
        return list(self._pending)

    # ------------------------------------------------------------------
    # ChainReader
    # ------------------------------------------------------------------

    async def get_merkle_root(self, pool_address: str) -> int:
        self._check_online("get_merkle_root")
        return self._pool(pool_address).tree.current_root()

    async def get_root_history(self, pool_address: str) -> list[int]:
        self._check_online("get_root_history")
        return self._pool(pool_address).tree.root_history()

    async def get_pool_metadata(self, pool_address: str) -> PrivacyPool:
        self._check_online("get_pool_metadata")
        state = self._pool(pool_address)
        return PrivacyPool(
            denomination=Decimal(state.config.denomination),
            contract_address=state.config.contract_address,
            tree_depth=state.tree.depth,
            anonymity_set_size=state.tree.leaf_count,
            is_active=state.config.is_active,
            network=state.config.network,
            merkle_root=field_to_hex(state.tree.current_root()),
            balance=wei_to_eth(state.balance_wei),
            total_withdrawals=state.total_withdrawals,
        )

    async def get_commitments(self, pool_address: str, start_index: int = 0) -> list[int]:
        self._check_online("get_commitments")
        return self._pool(pool_address).tree.leaves[start_index:]

    async def is_nullifier_spent_on_chain(self, pool_address: str, nullifier: int) -> bool:
        self._check_online("is_nullifier_spent_on_chain")
        return nullifier in self._pool(pool_address).nullifiers

    async def wait_for_confirmation(self, tx_hash: str) -> Receipt | None:
        self._check_online("wait_for_confirmation")
        receipt = self._receipts.get(tx_hash)
        if receipt is not None:
            return receipt

        tx = self._pending.get(tx_hash)
        if tx is None:
            return None
        if not self.auto_mine:
            return None
        if tx.polls_remaining > 0:
            tx.polls_remaining -= 1
            return None
        return self.mine([tx_hash])[0]

    # ------------------------------------------------------------------
    # LedgerSigner
    # ------------------------------------------------------------------

    async def broadcast_deposit(self, pool_address: str, commitment: int, amount_wei: int) -> str:
        return self._submit(DEPOSIT, pool_address, {"commitment": commitment, "amount": amount_wei})

    async def broadcast_withdrawal(
        self,
        pool_address: str,
        proof: dict[str, Any],
        public_signals: list[str],
        recipient: str,
        fee_wei: int = 0,
    ) -> str:
        return self._submit(
            WITHDRAWAL,
            pool_address,
            {"proof": proof, "public_signals": list(public_signals),
             "recipient": recipient, "fee": fee_wei},
        )

    async def broadcast_transfer(
        self, pool_address: str, proof: dict[str, Any], public_signals: list[str]
    ) -> str:
        return self._submit(
            TRANSFER, pool_address, {"proof": proof, "public_signals": list(public_signals)}
        )

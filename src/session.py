"""
Shielded Pool - Wallet Session

PrivacySession is the caller-owned context for one wallet session. It is
built once at session start and hands the same collaborators to every
component, bottom-up:

    config, metrics, store
    trees, nullifier ledgers, proof backend, proof engine
    privacy pool manager
    alias manager, transaction router
    circuit analyzer

There are no module-level service instances; two sessions never share
state.

Usage:
    session = PrivacySession.create(PrivacyConfig.from_env())
    deposit = await session.manager.create_shielded_deposit("0.1", pool_address)
    await session.close()
"""

import logging
from typing import Any

from alias_routing import AliasManager, TransactionRouter
from chain_interface import ChainReader, LedgerSigner, PoolGatewayClient
from circuit_analyzer import CircuitAnalyzer
from config import PrivacyConfig
from exceptions import ConfigurationError
from merkle_tree import IncrementalMerkleTree
from monitoring.logging import configure_logging
from monitoring.metrics import MetricsCollector
from nullifier_ledger import NullifierLedger
from privacy_pool import PrivacyPoolManager
from proof_backend import (
    ProofBackend,
    SchnorrAttestationBackend,
    SnarkjsBackend,
    transfer_circuit,
    withdrawal_circuit,
)
from proof_engine import ProofEngine
from simulated_chain import InMemoryChain
from storage import get_storage_backend
from storage.base import LocalStore

logger = logging.getLogger(__name__)


def build_backend(config: PrivacyConfig) -> ProofBackend:
    """snarkjs when compiled circuits are configured, the in-process backend otherwise."""
    if config.circuits_dir:
        return SnarkjsBackend(config.circuits_dir, timeout=config.proof_timeout)
    return SchnorrAttestationBackend()


class PrivacySession:
    """All shielded-pool components of one wallet, wired together."""

    def __init__(
        self,
        config: PrivacyConfig,
        chain: ChainReader,
        signer: LedgerSigner,
        store: LocalStore,
        backend: ProofBackend,
        metrics: MetricsCollector | None = None,
    ):
        self.config = config
        self.chain = chain
        self.signer = signer
        self.store = store
        self.backend = backend
        self.metrics = metrics or MetricsCollector()

        for pool in config.pools:
            if pool.tree_depth != config.tree_depth:
                raise ConfigurationError(
                    f"Pool {pool.contract_address} depth {pool.tree_depth} differs from "
                    f"session tree_depth {config.tree_depth}",
                    "tree_depth",
                )

        self.trees = {
            pool.contract_address.lower(): IncrementalMerkleTree(pool.tree_depth, config.root_history_size)
            for pool in config.pools
        }
        self.ledgers = {pool.contract_address.lower(): NullifierLedger() for pool in config.pools}

        self.proof_engine = ProofEngine(
            backend, tree_depth=config.tree_depth, timeout=config.proof_timeout, metrics=self.metrics
        )
        self.manager = PrivacyPoolManager(
            config,
            chain,
            signer,
            self.proof_engine,
            store,
            metrics=self.metrics,
            trees=self.trees,
            ledgers=self.ledgers,
        )
        self.aliases = AliasManager(config, store)
        self.router = TransactionRouter(config, self.aliases, self.manager)
        self.analyzer = CircuitAnalyzer(self.proof_engine)

        logger.info(
            f"Privacy session ready: {len(config.pools)} pool(s), "
            f"backend {backend.get_info().get('backend', type(backend).__name__)}"
        )

    @classmethod
    def create(
        cls,
        config: PrivacyConfig | None = None,
        store: LocalStore | None = None,
        configure_logs: bool = False,
    ) -> "PrivacySession":
        """
        Session against a simulated chain deployed with the configured pools.

        The chain verifies proofs with a verify-only copy of the session's
        proving keys, as a deployed verifier contract would.
        """
        config = config or PrivacyConfig.from_env()
        if configure_logs:
            configure_logging(config.log_level, json_output=config.log_format == "json")

        backend = build_backend(config)
        for circuit in (withdrawal_circuit(config.tree_depth), transfer_circuit(config.tree_depth)):
            if not backend.is_ready(circuit.circuit_id):
                backend.setup(circuit)

        verifier = backend.export_verifier() if isinstance(backend, SchnorrAttestationBackend) else backend
        chain = InMemoryChain(verifier, config.pools, root_history_size=config.root_history_size)
        return cls(
            config,
            chain=chain,
            signer=chain,
            store=store or get_storage_backend(config),
            backend=backend,
        )

    @classmethod
    def connect(
        cls,
        endpoint: str,
        config: PrivacyConfig | None = None,
        api_secret: str | None = None,
        store: LocalStore | None = None,
    ) -> "PrivacySession":
        """Session against a pool gateway reachable at ``endpoint``."""
        config = config or PrivacyConfig.from_env()
        client = PoolGatewayClient(endpoint, api_secret=api_secret)
        return cls(
            config,
            chain=client,
            signer=client,
            store=store or get_storage_backend(config),
            backend=build_backend(config),
        )

    def get_info(self) -> dict[str, Any]:
        return {
            "config": self.config.to_dict(),
            "backend": self.backend.get_info(),
            "storage": self.store.get_info(),
            "manager": self.manager.get_info(),
            "aliases": [a.to_dict() for a in self.aliases.list_aliases(include_inactive=True)],
            "metrics": self.metrics.get_all(),
        }

    async def close(self):
        closer = getattr(self.chain, "close", None)
        if closer is not None:
            await closer()
        self.store.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False

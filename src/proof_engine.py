"""
Shielded Pool - Proof Engine

Builds the public/private inputs for the spend circuits, drives the linked
proving backend and checks proofs.

Public signal order is part of the verifier contract:
    withdrawal  [root, nullifierHash, recipient, amount]
    transfer    [root, nullifierHash, outputCommitment, amount]

Proof generation holds no state between calls. The async wrappers run the
backend on a worker thread under a timeout; a timed-out or cancelled
attempt leaves nothing behind.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from exceptions import (
    ProofFormatError,
    ProofGenerationError,
    ProofTimeoutError,
    ValidationError,
)
from field_utils import (
    FIELD_PRIME,
    address_to_field,
    compute_commitment,
    compute_nullifier_hash,
    generate_random_field_element,
)
from merkle_tree import MerklePath
from monitoring.metrics import MetricsCollector
from proof_backend import (
    ProofBackend,
    parse_proof_elements,
    parse_public_signals,
    transfer_circuit,
    withdrawal_circuit,
)

logger = logging.getLogger(__name__)

WITHDRAWAL = "withdrawal"
TRANSFER = "transfer"
PROOF_KINDS = (WITHDRAWAL, TRANSFER)


@dataclass
class ProofResult:
    """A proof and the exact public signals it is valid for."""
    kind: str
    proof: dict[str, Any]
    public_signals: list[str]
    generation_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "proof": self.proof,
            "publicSignals": list(self.public_signals),
            "generationMs": round(self.generation_ms, 2),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProofResult":
        try:
            return cls(
                kind=data["kind"],
                proof=data["proof"],
                public_signals=[str(s) for s in data["publicSignals"]],
                generation_ms=float(data.get("generationMs", 0.0)),
            )
        except (KeyError, TypeError) as e:
            raise ProofFormatError("Malformed proof result") from e


@dataclass(frozen=True)
class ContractProofFormat:
    """
    Argument layout of the on-chain Groth16-style verifier.

    ``b`` has its Fp2 coordinates swapped to [[x1, x0], [y1, y0]], the order
    the precompile expects. ``encoded`` is the flat uint256[8] form.
    """
    a: tuple[str, str]
    b: tuple[tuple[str, str], tuple[str, str]]
    c: tuple[str, str]
    inputs: tuple[str, ...]
    encoded: tuple[str, ...] = field(default=())

    def to_dict(self) -> dict[str, Any]:
        return {
            "a": list(self.a),
            "b": [list(row) for row in self.b],
            "c": list(self.c),
            "inputs": list(self.inputs),
            "encoded": list(self.encoded),
        }


def format_proof_for_contract(result: ProofResult) -> ContractProofFormat:
    """Reshape a well-formed ProofResult into the verifier contract's argument order."""
    a_vals, b_vals, c_vals = parse_proof_elements(result.proof)
    signals = parse_public_signals(result.public_signals)

    a = (str(a_vals[0]), str(a_vals[1]))
    b = (
        (str(b_vals[0][1]), str(b_vals[0][0])),
        (str(b_vals[1][1]), str(b_vals[1][0])),
    )
    c = (str(c_vals[0]), str(c_vals[1]))
    return ContractProofFormat(
        a=a,
        b=b,
        c=c,
        inputs=tuple(str(s) for s in signals),
        encoded=a + b[0] + b[1] + c,
    )


class ProofEngine:
    """
    Front end to a ProofBackend for the withdrawal and transfer circuits.

    Circuits are built for ``tree_depth`` levels and registered with the
    backend on construction.
    """

    def __init__(
        self,
        backend: ProofBackend,
        tree_depth: int = 20,
        timeout: float = 60.0,
        metrics: MetricsCollector | None = None,
    ):
        self.backend = backend
        self.tree_depth = tree_depth
        self.timeout = timeout
        self.metrics = metrics
        self.circuits = {
            WITHDRAWAL: withdrawal_circuit(tree_depth),
            TRANSFER: transfer_circuit(tree_depth),
        }
        for circuit in self.circuits.values():
            if not backend.is_ready(circuit.circuit_id):
                backend.setup(circuit)

    @staticmethod
    def generate_random_field_element() -> int:
        return generate_random_field_element()

    # ------------------------------------------------------------------
    # Input construction
    # ------------------------------------------------------------------

    def _spend_private_inputs(self, secret: int, nullifier_seed: int,
                              merkle_path: MerklePath, merkle_root: int) -> dict[str, Any]:
        if not isinstance(merkle_path, MerklePath):
            raise ValidationError("merkle_path must be a MerklePath", field_name="merkle_path")
        if merkle_path.root != merkle_root:
            raise ValidationError(
                "Merkle path was built against a different root", field_name="merkle_root"
            )
        if len(merkle_path.elements) != self.tree_depth:
            raise ValidationError(
                f"Merkle path has {len(merkle_path.elements)} levels, circuit expects {self.tree_depth}",
                field_name="merkle_path",
            )
        for name, value in (("secret", secret), ("nullifier_seed", nullifier_seed)):
            if not 0 < value < FIELD_PRIME:
                raise ValidationError(f"{name} is not a non-zero field element", field_name=name)

        return {
            "secret": secret,
            "nullifierSeed": nullifier_seed,
            "leafIndex": merkle_path.leaf_index,
            "pathElements": merkle_path.path_elements,
            "pathIndices": merkle_path.path_indices,
        }

    def build_withdrawal_inputs(self, secret: int, nullifier_seed: int, merkle_path: MerklePath,
                                merkle_root: int, recipient: str,
                                amount: int) -> tuple[dict[str, Any], dict[str, int]]:
        """Return (private_inputs, public_inputs) for the withdrawal circuit."""
        private = self._spend_private_inputs(secret, nullifier_seed, merkle_path, merkle_root)
        if amount <= 0:
            raise ValidationError("Amount must be positive", field_name="amount")

        public = {
            "root": merkle_root,
            "nullifierHash": compute_nullifier_hash(secret, merkle_path.leaf_index),
            "recipient": address_to_field(recipient),
            "amount": amount,
        }
        return private, public

    def build_transfer_inputs(self, secret: int, nullifier_seed: int, merkle_path: MerklePath,
                              merkle_root: int, out_secret: int, out_nullifier_seed: int,
                              amount: int) -> tuple[dict[str, Any], dict[str, int]]:
        """Return (private_inputs, public_inputs) for the transfer circuit."""
        private = self._spend_private_inputs(secret, nullifier_seed, merkle_path, merkle_root)
        if amount <= 0:
            raise ValidationError("Amount must be positive", field_name="amount")
        private["outSecret"] = out_secret
        private["outNullifierSeed"] = out_nullifier_seed

        public = {
            "root": merkle_root,
            "nullifierHash": compute_nullifier_hash(secret, merkle_path.leaf_index),
            "outputCommitment": compute_commitment(out_secret, out_nullifier_seed, amount),
            "amount": amount,
        }
        return private, public

    # ------------------------------------------------------------------
    # Proving
    # ------------------------------------------------------------------

    def _prove(self, kind: str, private: dict[str, Any], public: dict[str, int]) -> ProofResult:
        circuit = self.circuits[kind]
        start = time.perf_counter()
        try:
            proof = self.backend.prove(circuit.circuit_id, private, public)
        except ProofGenerationError:
            if self.metrics:
                self.metrics.increment("proof_failures_total", labels={"circuit": kind})
            raise
        except Exception as e:
            if self.metrics:
                self.metrics.increment("proof_failures_total", labels={"circuit": kind})
            raise ProofGenerationError(
                f"Proving backend failed: {e}", circuit_id=circuit.circuit_id, cause=e
            ) from e

        elapsed_ms = (time.perf_counter() - start) * 1000
        if self.metrics:
            self.metrics.timing("proof_generation_ms", elapsed_ms, labels={"circuit": kind})
        logger.info(f"Generated {kind} proof in {elapsed_ms:.0f}ms")

        return ProofResult(
            kind=kind,
            proof=proof,
            public_signals=[str(v) for v in circuit.public_signal_list(public)],
            generation_ms=elapsed_ms,
        )

    def generate_withdrawal_proof(self, secret: int, nullifier_seed: int, merkle_path: MerklePath,
                                  merkle_root: int, recipient: str, amount: int) -> ProofResult:
        """
        Prove knowledge of the note behind a leaf of ``merkle_root``.

        Raises:
            ValidationError: for inputs that cannot form a witness
            ProofGenerationError: when the backend fails or the witness is rejected
        """
        private, public = self.build_withdrawal_inputs(
            secret, nullifier_seed, merkle_path, merkle_root, recipient, amount
        )
        return self._prove(WITHDRAWAL, private, public)

    def generate_transfer_proof(self, secret: int, nullifier_seed: int, merkle_path: MerklePath,
                                merkle_root: int, out_secret: int, out_nullifier_seed: int,
                                amount: int) -> ProofResult:
        private, public = self.build_transfer_inputs(
            secret, nullifier_seed, merkle_path, merkle_root, out_secret, out_nullifier_seed, amount
        )
        return self._prove(TRANSFER, private, public)

    async def _run_with_timeout(self, kind: str, func, *args) -> ProofResult:
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            if self.metrics:
                self.metrics.increment("proof_timeouts_total", labels={"circuit": kind})
            logger.warning(f"{kind} proof generation timed out after {self.timeout:.1f}s")
            raise ProofTimeoutError(kind, self.timeout) from e

    async def generate_withdrawal_proof_async(self, *args, **kwargs) -> ProofResult:
        """Awaitable, cancellable generate_withdrawal_proof bounded by ``timeout``."""
        return await self._run_with_timeout(
            WITHDRAWAL, lambda: self.generate_withdrawal_proof(*args, **kwargs)
        )

    async def generate_transfer_proof_async(self, *args, **kwargs) -> ProofResult:
        return await self._run_with_timeout(
            TRANSFER, lambda: self.generate_transfer_proof(*args, **kwargs)
        )

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_proof(self, kind: str, proof: ProofResult | dict[str, Any],
                     public_signals: list[Any] | None = None,
                     expected_signals: list[Any] | None = None) -> bool:
        """
        Check a proof against public signals.

        Args:
            kind: "withdrawal" or "transfer"; anything else fails
            proof: A ProofResult, or the raw {'a','b','c'} mapping
            public_signals: Signals to verify against; defaults to those
                carried by a ProofResult
            expected_signals: Optional signals recomputed by the caller;
                any difference from public_signals fails

        Returns:
            True only if the proof verifies for exactly these signals

        Raises:
            ProofFormatError: for structurally malformed proofs or signals
        """
        if isinstance(proof, ProofResult):
            raw_proof = proof.proof
            if public_signals is None:
                public_signals = proof.public_signals
        else:
            raw_proof = proof
        if public_signals is None:
            raise ProofFormatError("No public signals supplied")

        circuit = self.circuits.get(kind)
        if circuit is None:
            parse_proof_elements(raw_proof)
            logger.warning(f"Rejected proof for unrecognized kind {kind!r}")
            return False

        signals = parse_public_signals(public_signals, circuit.num_public_inputs)
        if expected_signals is not None:
            expected = parse_public_signals(expected_signals, circuit.num_public_inputs)
            if expected != signals:
                logger.warning(f"Rejected {kind} proof: public signals differ from expected")
                return False

        start = time.perf_counter()
        valid = self.backend.verify(circuit.circuit_id, raw_proof, signals)
        elapsed_ms = (time.perf_counter() - start) * 1000

        if self.metrics:
            self.metrics.timing("proof_verification_ms", elapsed_ms, labels={"circuit": kind})
        if not valid:
            logger.warning(f"{kind} proof failed verification")
        return valid

    def expected_withdrawal_signals(self, merkle_root: int, nullifier_hash: int,
                                    recipient: str, amount: int) -> list[int]:
        return [merkle_root, nullifier_hash, address_to_field(recipient), amount]

    @staticmethod
    def format_proof_for_contract(result: ProofResult) -> ContractProofFormat:
        return format_proof_for_contract(result)

    def get_circuit_stats(self, kind: str) -> dict[str, int]:
        circuit = self.circuits.get(kind)
        if circuit is None:
            raise ValidationError(f"Unknown circuit {kind!r}", field_name="circuit")
        return circuit.stats()

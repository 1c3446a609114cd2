"""
Shielded Pool - Proof System Backends

Circuit definitions plus the proving/verifying backends that consume them.

Circuits:
    withdrawal  public [root, nullifierHash, recipient, amount]
    transfer    public [root, nullifierHash, outputCommitment, amount]

Both enforce, over the same hash and sibling ordering as merkle_tree:
    commitment    = H(secret, nullifierSeed, amount)
    nullifierHash = H(secret, leafIndex)
    pathIndices   = bits of leafIndex
    MerkleRoot(commitment, path) = root

Backends:
    SchnorrAttestationBackend
        In-process, BN254 via py_ecc. Each circuit gets a trapdoor s with
        verifying key (s*G1, s*G2). A proof is only produced for a witness
        that satisfies the circuit, and consists of
            a = r*G1, b = r*G2, c = [z, e]
            e = Hc(circuit, vk, a, b, publicSignals), z = r + e*s (mod n)
        Verification checks z*G1 == a + e*vk1, z*G2 == b + e*vk2 and
        recomputes e, so every public signal is bound to the proof.

    SnarkjsBackend
        Groth16 through the snarkjs CLI, using compiled circuit artifacts
        (<circuit>.wasm, <circuit>_final.zkey, verification_key.json).
"""

import hashlib
import json
import logging
import os
import secrets
import shutil
import subprocess
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from py_ecc.bn128 import (
    FQ,
    FQ2,
    G1,
    G2,
    add,
    b,
    b2,
    curve_order,
    eq,
    field_modulus,
    is_on_curve,
    multiply,
)

from exceptions import ProofFormatError, ProofGenerationError
from field_utils import (
    FIELD_PRIME,
    compute_commitment,
    compute_nullifier_hash,
    hash_pair,
)

logger = logging.getLogger(__name__)

CHALLENGE_TAG = b"shielded-pool/attestation-challenge"


class ConstraintViolation(Exception):
    """A witness does not satisfy a circuit constraint."""
    pass


# ============================================================
# Circuits
# ============================================================

# Gadget costs used for constraint accounting
HASH_CONSTRAINTS = 240        # one 2..4-input hash permutation
SELECTOR_CONSTRAINTS = 2      # left/right mux per tree level
BOOLEAN_CONSTRAINTS = 1       # bit check per path index
RANGE_CHECK_CONSTRAINTS = 254 # full bit decomposition of a field element
EQUALITY_CONSTRAINTS = 1


@dataclass(frozen=True)
class Circuit:
    """
    An arithmetic constraint system as seen by the proving backends.

    ``check_witness`` evaluates every constraint on concrete inputs and
    raises ConstraintViolation on the first one that does not hold.
    """
    circuit_id: str
    levels: int
    public_signals: Tuple[str, ...]
    private_inputs: Tuple[str, ...]
    hash_count: int
    range_checks: int
    equality_checks: int
    check_witness: Callable[["Circuit", Dict[str, Any], Dict[str, int]], None] = field(compare=False)

    @property
    def num_public_inputs(self) -> int:
        return len(self.public_signals)

    @property
    def num_private_inputs(self) -> int:
        """Private witness entries, path arrays expanded per level."""
        count = 0
        for name in self.private_inputs:
            count += self.levels if name in ("pathElements", "pathIndices") else 1
        return count

    @property
    def constraint_count(self) -> int:
        return (
            self.hash_count * HASH_CONSTRAINTS
            + self.levels * (SELECTOR_CONSTRAINTS + BOOLEAN_CONSTRAINTS)
            + self.range_checks * RANGE_CHECK_CONSTRAINTS
            + self.equality_checks * EQUALITY_CONSTRAINTS
        )

    @property
    def variable_count(self) -> int:
        # Every hash round and selector introduces one intermediate wire per constraint
        return self.constraint_count + self.num_public_inputs + self.num_private_inputs + 1

    def public_signal_list(self, public_inputs: Dict[str, int]) -> List[int]:
        """Order named public inputs the way the verifier expects them."""
        try:
            return [int(public_inputs[name]) for name in self.public_signals]
        except KeyError as e:
            raise ProofFormatError(f"Missing public input {e.args[0]!r}") from e

    def stats(self) -> Dict[str, int]:
        return {
            "constraints": self.constraint_count,
            "variables": self.variable_count,
            "public_inputs": self.num_public_inputs,
            "private_inputs": self.num_private_inputs,
        }


def _require(condition: bool, message: str):
    if not condition:
        raise ConstraintViolation(message)


def _check_membership(circuit: Circuit, private: Dict[str, Any], commitment: int, root: int):
    elements = private["pathElements"]
    indices = private["pathIndices"]
    leaf_index = private["leafIndex"]

    _require(len(elements) == circuit.levels, f"pathElements must have {circuit.levels} entries")
    _require(len(indices) == circuit.levels, f"pathIndices must have {circuit.levels} entries")
    _require(0 <= leaf_index < 2 ** circuit.levels, "leafIndex out of range")

    current = commitment
    for level, (sibling, bit) in enumerate(zip(elements, indices)):
        _require(bit in (0, 1), f"pathIndices[{level}] is not a bit")
        _require(bit == (leaf_index >> level) & 1, f"pathIndices[{level}] does not match leafIndex")
        current = hash_pair(sibling, current) if bit else hash_pair(current, sibling)

    _require(current == root, "Merkle root mismatch")


def _check_spend_inputs(private: Dict[str, Any], public: Dict[str, int]):
    for name in ("secret", "nullifierSeed"):
        _require(0 < private[name] < FIELD_PRIME, f"{name} out of range")
    for name, value in public.items():
        _require(0 <= value < FIELD_PRIME, f"{name} out of range")
    _require(public["amount"] > 0, "amount must be positive")


def _check_withdrawal(circuit: Circuit, private: Dict[str, Any], public: Dict[str, int]):
    _check_spend_inputs(private, public)
    _require(public["recipient"] < 2 ** 160, "recipient is not a 160-bit address")

    commitment = compute_commitment(private["secret"], private["nullifierSeed"], public["amount"])
    _require(
        compute_nullifier_hash(private["secret"], private["leafIndex"]) == public["nullifierHash"],
        "nullifierHash mismatch",
    )
    _check_membership(circuit, private, commitment, public["root"])


def _check_transfer(circuit: Circuit, private: Dict[str, Any], public: Dict[str, int]):
    _check_spend_inputs(private, public)
    for name in ("outSecret", "outNullifierSeed"):
        _require(0 < private[name] < FIELD_PRIME, f"{name} out of range")

    commitment = compute_commitment(private["secret"], private["nullifierSeed"], public["amount"])
    _require(
        compute_nullifier_hash(private["secret"], private["leafIndex"]) == public["nullifierHash"],
        "nullifierHash mismatch",
    )
    _require(
        compute_commitment(private["outSecret"], private["outNullifierSeed"], public["amount"])
        == public["outputCommitment"],
        "outputCommitment mismatch",
    )
    _check_membership(circuit, private, commitment, public["root"])


def withdrawal_circuit(levels: int = 20) -> Circuit:
    return Circuit(
        circuit_id="withdrawal",
        levels=levels,
        public_signals=("root", "nullifierHash", "recipient", "amount"),
        private_inputs=("secret", "nullifierSeed", "leafIndex", "pathElements", "pathIndices"),
        hash_count=2 + levels,
        range_checks=2,   # recipient, amount
        equality_checks=2,  # root, nullifierHash
        check_witness=_check_withdrawal,
    )


def transfer_circuit(levels: int = 20) -> Circuit:
    return Circuit(
        circuit_id="transfer",
        levels=levels,
        public_signals=("root", "nullifierHash", "outputCommitment", "amount"),
        private_inputs=(
            "secret", "nullifierSeed", "leafIndex", "pathElements", "pathIndices",
            "outSecret", "outNullifierSeed",
        ),
        hash_count=3 + levels,
        range_checks=1,
        equality_checks=3,
        check_witness=_check_transfer,
    )


WITHDRAWAL_CIRCUIT = withdrawal_circuit()
TRANSFER_CIRCUIT = transfer_circuit()


# ============================================================
# Proof encoding helpers
# ============================================================

def _coeff(value: Any) -> int:
    return value.n if hasattr(value, "n") else int(value)


def g1_to_strings(point) -> List[str]:
    return [str(_coeff(point[0])), str(_coeff(point[1]))]


def g2_to_strings(point) -> List[List[str]]:
    x, y = point
    return [
        [str(_coeff(x.coeffs[0])), str(_coeff(x.coeffs[1]))],
        [str(_coeff(y.coeffs[0])), str(_coeff(y.coeffs[1]))],
    ]


def _parse_int(value: Any, label: str) -> int:
    if isinstance(value, bool):
        raise ProofFormatError(f"{label} is not an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 16) if value.lower().startswith("0x") else int(value, 10)
        except ValueError as e:
            raise ProofFormatError(f"{label} is not an integer: {value!r}") from e
    raise ProofFormatError(f"{label} has unsupported type {type(value).__name__}")


def parse_proof_elements(proof: Any) -> Tuple[List[int], List[List[int]], List[int]]:
    """
    Validate the shape of a proof dict and return (a, b, c) as integers.

    Raises:
        ProofFormatError: if any element is missing or has the wrong shape
    """
    if not isinstance(proof, dict):
        raise ProofFormatError("Proof must be a mapping with a, b and c")

    try:
        a_raw, b_raw, c_raw = proof["a"], proof["b"], proof["c"]
    except KeyError as e:
        raise ProofFormatError(f"Proof is missing element {e.args[0]!r}") from e

    if not isinstance(a_raw, (list, tuple)) or len(a_raw) != 2:
        raise ProofFormatError("Proof element a must have 2 coordinates")
    if not isinstance(c_raw, (list, tuple)) or len(c_raw) != 2:
        raise ProofFormatError("Proof element c must have 2 coordinates")
    if (not isinstance(b_raw, (list, tuple)) or len(b_raw) != 2
            or any(not isinstance(row, (list, tuple)) or len(row) != 2 for row in b_raw)):
        raise ProofFormatError("Proof element b must be a 2x2 array")

    a_vals = [_parse_int(v, "a") for v in a_raw]
    b_vals = [[_parse_int(v, "b") for v in row] for row in b_raw]
    c_vals = [_parse_int(v, "c") for v in c_raw]
    return a_vals, b_vals, c_vals


def parse_public_signals(signals: Any, expected_length: Optional[int] = None) -> List[int]:
    if not isinstance(signals, (list, tuple)):
        raise ProofFormatError("Public signals must be a list")
    if expected_length is not None and len(signals) != expected_length:
        raise ProofFormatError(
            f"Expected {expected_length} public signals, got {len(signals)}",
            details={"expected": expected_length, "actual": len(signals)},
        )
    return [_parse_int(v, "public signal") for v in signals]


# ============================================================
# Backends
# ============================================================

class ProofBackend(ABC):
    """
    Linked proving/verifying backend.

    prove() raises ProofGenerationError when it cannot produce a proof.
    verify() returns False for any proof that does not verify and raises
    ProofFormatError only for structurally malformed input.
    """

    @abstractmethod
    def setup(self, circuit: Circuit) -> None:
        """Register a circuit and load or create its keys."""
        pass

    @abstractmethod
    def is_ready(self, circuit_id: str) -> bool:
        pass

    @abstractmethod
    def prove(self, circuit_id: str, private_inputs: Dict[str, Any],
              public_inputs: Dict[str, int]) -> Dict[str, Any]:
        """Return {'a': [..], 'b': [[..],[..]], 'c': [..]} as decimal strings."""
        pass

    @abstractmethod
    def verify(self, circuit_id: str, proof: Dict[str, Any],
               public_signals: Sequence[Any]) -> bool:
        pass

    def get_circuit(self, circuit_id: str) -> Optional[Circuit]:
        return None

    def get_info(self) -> Dict[str, Any]:
        return {"backend": type(self).__name__}


@dataclass
class AttestationKeys:
    """Per-circuit key material for SchnorrAttestationBackend."""
    circuit: Circuit
    vk_g1: Any
    vk_g2: Any
    trapdoor: Optional[int] = None

    def verification_key(self) -> Dict[str, Any]:
        return {
            "protocol": "schnorr-attestation",
            "curve": "bn128",
            "circuit_id": self.circuit.circuit_id,
            "n_public": self.circuit.num_public_inputs,
            "vk_g1": g1_to_strings(self.vk_g1),
            "vk_g2": g2_to_strings(self.vk_g2),
        }


class SchnorrAttestationBackend(ProofBackend):
    """
    In-process proving backend over BN254.

    A prover that only holds a verification key (no trapdoor) can verify
    but not prove, which is how an on-chain verifier is modeled.
    """

    def __init__(self):
        self._keys: Dict[str, AttestationKeys] = {}

    def setup(self, circuit: Circuit) -> None:
        trapdoor = secrets.randbelow(curve_order - 1) + 1
        self._keys[circuit.circuit_id] = AttestationKeys(
            circuit=circuit,
            vk_g1=multiply(G1, trapdoor),
            vk_g2=multiply(G2, trapdoor),
            trapdoor=trapdoor,
        )
        logger.info(f"Generated attestation keys for circuit {circuit.circuit_id} "
                    f"({circuit.constraint_count} constraints)")

    def export_verifier(self) -> "SchnorrAttestationBackend":
        """A verify-only copy holding no trapdoors."""
        verifier = SchnorrAttestationBackend()
        for circuit_id, keys in self._keys.items():
            verifier._keys[circuit_id] = AttestationKeys(
                circuit=keys.circuit, vk_g1=keys.vk_g1, vk_g2=keys.vk_g2
            )
        return verifier

    def is_ready(self, circuit_id: str) -> bool:
        return circuit_id in self._keys

    def get_circuit(self, circuit_id: str) -> Optional[Circuit]:
        keys = self._keys.get(circuit_id)
        return keys.circuit if keys else None

    def verification_key(self, circuit_id: str) -> Dict[str, Any]:
        keys = self._keys.get(circuit_id)
        if keys is None:
            raise ProofGenerationError(f"Circuit {circuit_id} has no keys", circuit_id=circuit_id)
        return keys.verification_key()

    @staticmethod
    def _challenge(keys: AttestationKeys, a, b_point, signals: Sequence[int]) -> int:
        hasher = hashlib.sha256(CHALLENGE_TAG)
        hasher.update(keys.circuit.circuit_id.encode("utf-8"))
        words = (
            g1_to_strings(keys.vk_g1)
            + [c for row in g2_to_strings(keys.vk_g2) for c in row]
            + g1_to_strings(a)
            + [c for row in g2_to_strings(b_point) for c in row]
        )
        for word in words:
            hasher.update(int(word).to_bytes(32, "big"))
        hasher.update(len(signals).to_bytes(4, "big"))
        for value in signals:
            hasher.update((value % (1 << 256)).to_bytes(32, "big"))
        return int.from_bytes(hasher.digest(), "big") % curve_order

    def prove(self, circuit_id: str, private_inputs: Dict[str, Any],
              public_inputs: Dict[str, int]) -> Dict[str, Any]:
        keys = self._keys.get(circuit_id)
        if keys is None:
            raise ProofGenerationError(f"Unknown circuit {circuit_id}", circuit_id=circuit_id)
        if keys.trapdoor is None:
            raise ProofGenerationError(
                f"Backend holds only the verification key for {circuit_id}",
                circuit_id=circuit_id,
            )

        circuit = keys.circuit
        signals = circuit.public_signal_list(public_inputs)
        try:
            circuit.check_witness(circuit, private_inputs, dict(zip(circuit.public_signals, signals)))
        except ConstraintViolation as e:
            raise ProofGenerationError(
                f"Witness does not satisfy circuit: {e}", circuit_id=circuit_id, cause=e
            ) from e
        except (KeyError, TypeError) as e:
            raise ProofGenerationError(
                f"Incomplete witness for circuit {circuit_id}", circuit_id=circuit_id, cause=e
            ) from e

        r = secrets.randbelow(curve_order - 1) + 1
        a = multiply(G1, r)
        b_point = multiply(G2, r)
        e = self._challenge(keys, a, b_point, signals)
        z = (r + e * keys.trapdoor) % curve_order

        return {
            "a": g1_to_strings(a),
            "b": g2_to_strings(b_point),
            "c": [str(z), str(e)],
        }

    def verify(self, circuit_id: str, proof: Dict[str, Any],
               public_signals: Sequence[Any]) -> bool:
        a_vals, b_vals, c_vals = parse_proof_elements(proof)

        keys = self._keys.get(circuit_id)
        if keys is None:
            logger.warning(f"Verification requested for unknown circuit {circuit_id}")
            return False

        signals = parse_public_signals(public_signals, keys.circuit.num_public_inputs)
        if any(not 0 <= s < FIELD_PRIME for s in signals):
            return False

        z, e = c_vals
        if not (0 <= z < curve_order and 0 < e < curve_order):
            return False
        coordinates = a_vals + b_vals[0] + b_vals[1]
        if any(not 0 <= v < field_modulus for v in coordinates):
            return False

        a = (FQ(a_vals[0]), FQ(a_vals[1]))
        b_point = (FQ2(b_vals[0]), FQ2(b_vals[1]))
        if not is_on_curve(a, b) or not is_on_curve(b_point, b2):
            return False

        if e != self._challenge(keys, a, b_point, signals):
            return False

        left_g1 = multiply(G1, z)
        right_g1 = add(a, multiply(keys.vk_g1, e))
        if left_g1 is None or right_g1 is None or not eq(left_g1, right_g1):
            return False

        left_g2 = multiply(G2, z)
        right_g2 = add(b_point, multiply(keys.vk_g2, e))
        if left_g2 is None or right_g2 is None or not eq(left_g2, right_g2):
            return False

        return True

    def get_info(self) -> Dict[str, Any]:
        return {
            "backend": "schnorr-attestation",
            "curve": "bn128",
            "circuits": sorted(self._keys),
        }


class SnarkjsBackend(ProofBackend):
    """
    Groth16 proving and verification through the snarkjs CLI.

    Expects per circuit, under ``artifacts_dir/<circuit_id>/``:
        <circuit_id>.wasm, <circuit_id>_final.zkey, verification_key.json
    """

    def __init__(self, artifacts_dir: str, snarkjs_bin: str = "snarkjs", timeout: float = 120.0):
        self.artifacts_dir = artifacts_dir
        self.snarkjs_bin = snarkjs_bin
        self.timeout = timeout
        self._circuits: Dict[str, Circuit] = {}

    def _artifact(self, circuit_id: str, name: str) -> str:
        return os.path.join(self.artifacts_dir, circuit_id, name)

    def _artifacts(self, circuit_id: str) -> Dict[str, str]:
        return {
            "wasm": self._artifact(circuit_id, f"{circuit_id}.wasm"),
            "zkey": self._artifact(circuit_id, f"{circuit_id}_final.zkey"),
            "vkey": self._artifact(circuit_id, "verification_key.json"),
        }

    def setup(self, circuit: Circuit) -> None:
        missing = [p for p in self._artifacts(circuit.circuit_id).values() if not os.path.exists(p)]
        if missing:
            raise ProofGenerationError(
                f"Missing compiled artifacts for {circuit.circuit_id}",
                circuit_id=circuit.circuit_id,
                details={"missing": missing},
            )
        if shutil.which(self.snarkjs_bin) is None:
            raise ProofGenerationError(
                f"snarkjs executable {self.snarkjs_bin!r} not found",
                circuit_id=circuit.circuit_id,
            )
        self._circuits[circuit.circuit_id] = circuit

    def is_ready(self, circuit_id: str) -> bool:
        return circuit_id in self._circuits

    def get_circuit(self, circuit_id: str) -> Optional[Circuit]:
        return self._circuits.get(circuit_id)

    def _run(self, args: List[str], circuit_id: str) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                [self.snarkjs_bin, *args],
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ProofGenerationError(
                f"snarkjs invocation failed: {e}", circuit_id=circuit_id, cause=e
            ) from e

    def prove(self, circuit_id: str, private_inputs: Dict[str, Any],
              public_inputs: Dict[str, int]) -> Dict[str, Any]:
        circuit = self._circuits.get(circuit_id)
        if circuit is None:
            raise ProofGenerationError(f"Unknown circuit {circuit_id}", circuit_id=circuit_id)

        artifacts = self._artifacts(circuit_id)
        witness_input = {**_stringify(private_inputs), **_stringify(public_inputs)}

        with tempfile.TemporaryDirectory(prefix="shielded-proof-") as workdir:
            input_path = os.path.join(workdir, "input.json")
            proof_path = os.path.join(workdir, "proof.json")
            public_path = os.path.join(workdir, "public.json")
            with open(input_path, "w") as f:
                json.dump(witness_input, f)

            result = self._run(
                ["groth16", "fullprove", input_path, artifacts["wasm"], artifacts["zkey"],
                 proof_path, public_path],
                circuit_id,
            )
            if result.returncode != 0:
                stderr = result.stderr.strip() or "unknown prover error"
                raise ProofGenerationError(f"snarkjs prover failed: {stderr}", circuit_id=circuit_id)

            with open(proof_path) as f:
                raw = json.load(f)

        return {
            "a": [str(v) for v in raw["pi_a"][:2]],
            "b": [[str(v) for v in row] for row in raw["pi_b"][:2]],
            "c": [str(v) for v in raw["pi_c"][:2]],
        }

    def verify(self, circuit_id: str, proof: Dict[str, Any],
               public_signals: Sequence[Any]) -> bool:
        a_vals, b_vals, c_vals = parse_proof_elements(proof)
        circuit = self._circuits.get(circuit_id)
        if circuit is None:
            return False
        signals = parse_public_signals(public_signals, circuit.num_public_inputs)

        snark_proof = {
            "pi_a": [str(a_vals[0]), str(a_vals[1]), "1"],
            "pi_b": [[str(v) for v in b_vals[0]], [str(v) for v in b_vals[1]], ["1", "0"]],
            "pi_c": [str(c_vals[0]), str(c_vals[1]), "1"],
            "protocol": "groth16",
            "curve": "bn128",
        }

        with tempfile.TemporaryDirectory(prefix="shielded-verify-") as workdir:
            proof_path = os.path.join(workdir, "proof.json")
            public_path = os.path.join(workdir, "public.json")
            with open(proof_path, "w") as f:
                json.dump(snark_proof, f)
            with open(public_path, "w") as f:
                json.dump([str(s) for s in signals], f)

            try:
                result = self._run(
                    ["groth16", "verify", self._artifacts(circuit_id)["vkey"], public_path, proof_path],
                    circuit_id,
                )
            except ProofGenerationError as e:
                logger.warning(f"snarkjs verifier unavailable: {e}")
                return False

        return result.returncode == 0 and "OK" in result.stdout

    def get_info(self) -> Dict[str, Any]:
        return {
            "backend": "snarkjs-groth16",
            "artifacts_dir": self.artifacts_dir,
            "circuits": sorted(self._circuits),
        }


def _stringify(values: Dict[str, Any]) -> Dict[str, Any]:
    result = {}
    for name, value in values.items():
        if isinstance(value, (list, tuple)):
            result[name] = [str(int(v)) for v in value]
        else:
            result[name] = str(int(value))
    return result

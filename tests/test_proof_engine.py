"""
Tests for proof generation and verification (src/proof_engine.py, src/proof_backend.py)

Tests cover:
- Withdrawal and transfer proofs that verify for their own signals
- Rejection of altered public signals
- Witness checks for bad paths and inputs
- Contract argument formatting
- Verify-only backends and malformed proofs
- Async generation with timeout
"""

import asyncio
import os
import sys
import time

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from conftest import RECIPIENT, OTHER_RECIPIENT, TEST_DEPTH
from exceptions import (
    ProofFormatError,
    ProofGenerationError,
    ProofTimeoutError,
    ValidationError,
)
from field_utils import (
    address_to_field,
    compute_commitment,
    compute_nullifier_hash,
    generate_random_field_element,
)
from merkle_tree import IncrementalMerkleTree
from monitoring.metrics import MetricsCollector
from proof_backend import SchnorrAttestationBackend
from proof_engine import ProofEngine, ProofResult, format_proof_for_contract

AMOUNT = 10 ** 17


# ============================================================
# Fixtures
# ============================================================

@pytest.fixture(scope="module")
def note():
    """A deposited note with a few neighbouring leaves."""
    secret = generate_random_field_element()
    seed = generate_random_field_element()
    tree = IncrementalMerkleTree(depth=TEST_DEPTH)
    tree.bulk_insert([generate_random_field_element() for _ in range(3)])
    index = tree.insert_leaf(compute_commitment(secret, seed, AMOUNT))
    tree.insert_leaf(generate_random_field_element())
    return {
        "secret": secret,
        "seed": seed,
        "tree": tree,
        "index": index,
        "path": tree.path_to(index),
        "root": tree.current_root(),
    }


@pytest.fixture(scope="module")
def withdrawal(engine, note):
    return engine.generate_withdrawal_proof(
        note["secret"], note["seed"], note["path"], note["root"], RECIPIENT, AMOUNT
    )


# ============================================================
# Withdrawal proofs
# ============================================================

class TestWithdrawalProof:
    """Tests for withdrawal proof round trips."""

    def test_proof_shape(self, withdrawal):
        assert withdrawal.kind == "withdrawal"
        assert len(withdrawal.proof["a"]) == 2
        assert len(withdrawal.proof["b"]) == 2
        assert len(withdrawal.proof["c"]) == 2
        assert len(withdrawal.public_signals) == 4

    def test_public_signal_order(self, withdrawal, note):
        root, nullifier_hash, recipient, amount = [int(s) for s in withdrawal.public_signals]
        assert root == note["root"]
        assert nullifier_hash == compute_nullifier_hash(note["secret"], note["index"])
        assert recipient == address_to_field(RECIPIENT)
        assert amount == AMOUNT

    def test_valid_proof_verifies(self, engine, withdrawal):
        assert engine.verify_proof("withdrawal", withdrawal) is True

    def test_expected_signals_match(self, engine, withdrawal, note):
        expected = engine.expected_withdrawal_signals(
            note["root"], compute_nullifier_hash(note["secret"], note["index"]), RECIPIENT, AMOUNT
        )
        assert engine.verify_proof("withdrawal", withdrawal, expected_signals=expected) is True

    def test_expected_signals_mismatch(self, engine, withdrawal, note):
        expected = engine.expected_withdrawal_signals(
            note["root"], compute_nullifier_hash(note["secret"], note["index"]), OTHER_RECIPIENT, AMOUNT
        )
        assert engine.verify_proof("withdrawal", withdrawal, expected_signals=expected) is False

    @pytest.mark.parametrize("position", [0, 1, 2, 3])
    def test_altered_signal_fails(self, engine, withdrawal, position):
        signals = list(withdrawal.public_signals)
        signals[position] = str(int(signals[position]) + 1)
        assert engine.verify_proof("withdrawal", withdrawal.proof, signals) is False

    def test_other_recipient_fails(self, engine, withdrawal):
        signals = list(withdrawal.public_signals)
        signals[2] = str(address_to_field(OTHER_RECIPIENT))
        assert engine.verify_proof("withdrawal", withdrawal.proof, signals) is False

    def test_tampered_challenge_fails(self, engine, withdrawal):
        proof = dict(withdrawal.proof)
        proof["c"] = [proof["c"][0], str(int(proof["c"][1]) + 1)]
        assert engine.verify_proof("withdrawal", proof, withdrawal.public_signals) is False

    def test_proof_not_valid_as_transfer(self, engine, withdrawal):
        assert engine.verify_proof("transfer", withdrawal) is False

    def test_unknown_kind_fails(self, engine, withdrawal):
        assert engine.verify_proof("deposit", withdrawal) is False

    def test_other_keys_reject(self, withdrawal):
        other = ProofEngine(SchnorrAttestationBackend(), tree_depth=TEST_DEPTH)
        assert other.verify_proof("withdrawal", withdrawal) is False

    def test_result_round_trip(self, engine, withdrawal):
        restored = ProofResult.from_dict(withdrawal.to_dict())
        assert restored.public_signals == withdrawal.public_signals
        assert engine.verify_proof("withdrawal", restored) is True


# ============================================================
# Witness checks
# ============================================================

class TestWitnessChecks:
    """Tests for inputs that cannot produce a proof."""

    def test_wrong_secret_rejected(self, engine, note):
        with pytest.raises(ProofGenerationError):
            engine.generate_withdrawal_proof(
                generate_random_field_element(), note["seed"], note["path"], note["root"],
                RECIPIENT, AMOUNT,
            )

    def test_path_for_other_leaf_rejected(self, engine, note):
        other_path = note["tree"].path_to(0)
        with pytest.raises(ProofGenerationError):
            engine.generate_withdrawal_proof(
                note["secret"], note["seed"], other_path, note["root"], RECIPIENT, AMOUNT
            )

    def test_wrong_amount_rejected(self, engine, note):
        with pytest.raises(ProofGenerationError):
            engine.generate_withdrawal_proof(
                note["secret"], note["seed"], note["path"], note["root"], RECIPIENT, AMOUNT * 2
            )

    def test_root_mismatch_is_validation_error(self, engine, note):
        with pytest.raises(ValidationError):
            engine.generate_withdrawal_proof(
                note["secret"], note["seed"], note["path"], note["root"] + 1, RECIPIENT, AMOUNT
            )

    def test_wrong_depth_path(self, engine):
        tree = IncrementalMerkleTree(depth=4)
        tree.insert_leaf(1)
        path = tree.path_to(0)
        with pytest.raises(ValidationError):
            engine.generate_withdrawal_proof(1, 2, path, path.root, RECIPIENT, AMOUNT)

    def test_zero_secret(self, engine, note):
        with pytest.raises(ValidationError):
            engine.generate_withdrawal_proof(
                0, note["seed"], note["path"], note["root"], RECIPIENT, AMOUNT
            )

    def test_invalid_recipient(self, engine, note):
        with pytest.raises(ValidationError):
            engine.generate_withdrawal_proof(
                note["secret"], note["seed"], note["path"], note["root"], "0x1234", AMOUNT
            )

    def test_failure_counted(self, note):
        metrics = MetricsCollector()
        engine = ProofEngine(SchnorrAttestationBackend(), tree_depth=TEST_DEPTH, metrics=metrics)
        with pytest.raises(ProofGenerationError):
            engine.generate_withdrawal_proof(
                note["secret"], note["seed"], note["path"], note["root"], RECIPIENT, AMOUNT + 1
            )
        assert metrics.get_counter("proof_failures_total", labels={"circuit": "withdrawal"}) == 1


# ============================================================
# Transfer proofs
# ============================================================

class TestTransferProof:
    """Tests for note-to-note transfer proofs."""

    def test_transfer_round_trip(self, engine, note):
        out_secret = generate_random_field_element()
        out_seed = generate_random_field_element()
        result = engine.generate_transfer_proof(
            note["secret"], note["seed"], note["path"], note["root"], out_secret, out_seed, AMOUNT
        )

        assert int(result.public_signals[2]) == compute_commitment(out_secret, out_seed, AMOUNT)
        assert engine.verify_proof("transfer", result) is True
        assert engine.verify_proof("withdrawal", result) is False


# ============================================================
# Contract formatting and verify-only backends
# ============================================================

class TestContractFormat:
    """Tests for verifier argument layout."""

    def test_b_coordinates_swapped(self, withdrawal):
        formatted = format_proof_for_contract(withdrawal)
        b = withdrawal.proof["b"]
        assert formatted.b == ((b[0][1], b[0][0]), (b[1][1], b[1][0]))
        assert list(formatted.a) == withdrawal.proof["a"]
        assert list(formatted.c) == withdrawal.proof["c"]

    def test_encoded_is_flat_eight_words(self, withdrawal):
        formatted = format_proof_for_contract(withdrawal)
        assert len(formatted.encoded) == 8
        assert formatted.encoded[2:6] == formatted.b[0] + formatted.b[1]

    def test_same_result_each_call(self, engine, withdrawal):
        assert engine.format_proof_for_contract(withdrawal) == engine.format_proof_for_contract(withdrawal)

    def test_inputs_are_public_signals(self, withdrawal):
        assert list(format_proof_for_contract(withdrawal).inputs) == withdrawal.public_signals


class TestBackendEdgeCases:
    """Tests for malformed proofs and verify-only keys."""

    def test_missing_element(self, engine, withdrawal):
        proof = {"a": withdrawal.proof["a"], "b": withdrawal.proof["b"]}
        with pytest.raises(ProofFormatError):
            engine.verify_proof("withdrawal", proof, withdrawal.public_signals)

    def test_wrong_signal_count(self, engine, withdrawal):
        with pytest.raises(ProofFormatError):
            engine.verify_proof("withdrawal", withdrawal.proof, withdrawal.public_signals[:3])

    def test_out_of_field_signal(self, engine, withdrawal):
        from field_utils import FIELD_PRIME

        signals = list(withdrawal.public_signals)
        signals[3] = str(FIELD_PRIME + int(signals[3]))
        assert engine.verify_proof("withdrawal", withdrawal.proof, signals) is False

    def test_verify_only_backend(self, engine, note, withdrawal):
        verifier = engine.backend.export_verifier()
        assert verifier.verify("withdrawal", withdrawal.proof, withdrawal.public_signals) is True

        verify_only = ProofEngine(verifier, tree_depth=TEST_DEPTH)
        with pytest.raises(ProofGenerationError):
            verify_only.generate_withdrawal_proof(
                note["secret"], note["seed"], note["path"], note["root"], RECIPIENT, AMOUNT
            )

    def test_circuit_stats(self, engine):
        stats = engine.get_circuit_stats("withdrawal")
        assert stats["public_inputs"] == 4
        assert stats["constraints"] > 0

    def test_unknown_circuit_stats(self, engine):
        with pytest.raises(ValidationError):
            engine.get_circuit_stats("mixer")


# ============================================================
# Async generation
# ============================================================

class TestAsyncGeneration:
    """Tests for the awaitable, time-bounded wrappers."""

    def test_async_withdrawal(self, engine, note):
        result = asyncio.run(engine.generate_withdrawal_proof_async(
            note["secret"], note["seed"], note["path"], note["root"], RECIPIENT, AMOUNT
        ))
        assert engine.verify_proof("withdrawal", result) is True

    def test_timeout(self, note):
        engine = ProofEngine(SchnorrAttestationBackend(), tree_depth=TEST_DEPTH, timeout=0.05)
        original = engine.generate_withdrawal_proof

        def slow(*args, **kwargs):
            time.sleep(0.5)
            return original(*args, **kwargs)

        engine.generate_withdrawal_proof = slow

        with pytest.raises(ProofTimeoutError):
            asyncio.run(engine.generate_withdrawal_proof_async(
                note["secret"], note["seed"], note["path"], note["root"], RECIPIENT, AMOUNT
            ))

"""
Tests for the privacy pool manager (src/privacy_pool.py)

Tests cover:
- Deposits: leaf placement, anonymity set growth, validation
- Withdrawals: success, double-spend rejection, balance accounting
- Transfers into retained or bearer output notes
- Lost broadcast responses, pending confirmations and out-of-order mining
- Cancelled spends releasing their reservation
- Advisory storage failures and reconcile()
- Pool metadata fallback while offline
- Privacy mode settings
"""

import asyncio
import os
import sys
import threading
from decimal import Decimal

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from conftest import (
    LARGE_POOL_ADDRESS,
    OTHER_RECIPIENT,
    POOL_ADDRESS,
    RECIPIENT,
    make_config,
)
from chain_interface import REVERT_DUPLICATE_COMMITMENT, REVERT_NULLIFIER_SPENT, TxStatus
from exceptions import (
    ConfigurationError,
    DoubleSpendError,
    NetworkError,
    SpendInProgressError,
    StorageError,
    ValidationError,
)
from privacy_pool import (
    STORAGE_WARNING,
    DepositState,
    PrivacyPoolManager,
    ShieldedDeposit,
    ShieldedTransfer,
    ShieldedWithdrawal,
)
from session import PrivacySession
from storage.base import StorageWriteError
from storage.memory import MemoryStore


class FlakyStore(MemoryStore):
    """Memory store that starts failing writes after a set number of saves."""

    def __init__(self):
        super().__init__()
        self.saves_allowed = None

    def save_record(self, key, record):
        if self.saves_allowed is not None:
            if self.saves_allowed <= 0:
                raise StorageWriteError("disk full")
            self.saves_allowed -= 1
        super().save_record(key, record)


def deposit(manager, amount="0.1", pool=POOL_ADDRESS, **kwargs):
    return asyncio.run(manager.create_shielded_deposit(amount, pool, **kwargs))


def withdraw(manager, note, recipient=RECIPIENT, **kwargs):
    return asyncio.run(manager.create_shielded_withdrawal(note, recipient, **kwargs))


# ============================================================
# Deposits
# ============================================================

class TestDeposits:
    """Tests for create_shielded_deposit."""

    def test_deposit_lands_at_next_leaf(self, manager, chain):
        chain.seed_deposits(POOL_ADDRESS, 5)
        before = asyncio.run(manager.get_pool(POOL_ADDRESS)).anonymity_set_size

        note = deposit(manager)

        assert before == 5
        assert note.state == DepositState.SPENDABLE
        assert note.leaf_index == before
        assert asyncio.run(manager.get_pool(POOL_ADDRESS)).anonymity_set_size == before + 1

    def test_deposit_record_is_sealed(self, manager, store):
        note = deposit(manager)
        record = store.load_record(f"deposit:{note.id}")

        assert "secret" not in record
        assert "nullifier_seed" not in record
        assert record["sealed_note"].startswith("ENC:1:")
        assert record["state"] == "spendable"
        assert record["commitment"] == note.to_dict()["commitment"]

    def test_public_view_omits_secrets(self, manager):
        note = deposit(manager)
        view = note.to_dict()

        assert "secret" not in view
        assert "nullifier_seed" not in view
        assert str(note.secret) not in repr(note)

    def test_deposit_counted(self, manager):
        deposit(manager)
        assert manager.metrics.get_counter("deposits_total", labels={"pool": POOL_ADDRESS}) == 1

    def test_deposits_in_two_pools(self, manager):
        deposit(manager)
        deposit(manager, "1.0", LARGE_POOL_ADDRESS)

        assert manager.get_shielded_balance() == {Decimal("0.1"): Decimal("0.1"), Decimal("1.0"): Decimal("1.0")}

    def test_wrong_amount(self, manager):
        with pytest.raises(ValidationError):
            deposit(manager, "0.2")

    def test_invalid_amounts(self, manager):
        for amount in ("-0.1", "0", "abc", "NaN"):
            with pytest.raises(ValidationError):
                deposit(manager, amount)

    def test_unknown_pool(self, manager):
        with pytest.raises(ValidationError):
            deposit(manager, pool="0x" + "9" * 40)

    def test_inactive_pool_rejected_locally(self, manager, chain):
        manager.pools[POOL_ADDRESS.lower()].is_active = False

        with pytest.raises(ValidationError):
            deposit(manager)
        assert chain.pending_transactions == []

    def test_inactive_pool_rejected_by_contract(self, manager, chain):
        chain.set_pool_active(POOL_ADDRESS, False)

        with pytest.raises(ValidationError):
            deposit(manager)
        assert manager.list_deposits(DepositState.FAILED)

    def test_broadcast_budget_exhausted(self, manager, chain):
        chain.fail_next_broadcasts(10)

        with pytest.raises(NetworkError):
            deposit(manager)

        failed = manager.list_deposits(DepositState.FAILED)
        assert len(failed) == 1
        assert manager.get_shielded_balance() == {}

    def test_select_pool(self, manager):
        assert manager.select_pool("1.0").contract_address == LARGE_POOL_ADDRESS
        with pytest.raises(ValidationError):
            manager.select_pool("5")


# ============================================================
# Withdrawals
# ============================================================

class TestWithdrawals:
    """Tests for create_shielded_withdrawal."""

    def test_withdrawal_succeeds_once(self, manager, chain):
        note = deposit(manager)

        withdrawal = withdraw(manager, note)

        assert isinstance(withdrawal, ShieldedWithdrawal)
        assert withdrawal.status == "confirmed"
        assert withdrawal.recipient == RECIPIENT
        assert withdrawal.nullifier_hash == note.nullifier_hash
        assert note.state == DepositState.SPENT
        assert note.spent_tx_hash == withdrawal.tx_hash

        with pytest.raises(DoubleSpendError):
            withdraw(manager, note, OTHER_RECIPIENT)
        assert note.state == DepositState.SPENT

    def test_withdrawal_counted(self, manager):
        withdraw(manager, deposit(manager))
        assert manager.metrics.get_counter("withdrawals_total", labels={"pool": POOL_ADDRESS}) == 1

    def test_contract_proof_format(self, manager):
        withdrawal = withdraw(manager, deposit(manager))

        proof = withdrawal.zk_proof
        assert set(proof) == {"a", "b", "c", "inputs", "encoded"}
        assert len(proof["encoded"]) == 8
        assert len(proof["inputs"]) == 4

    def test_balance_never_inflates(self, manager):
        first = deposit(manager)
        deposit(manager)
        assert manager.get_shielded_balance() == {Decimal("0.1"): Decimal("0.2")}

        withdraw(manager, first)
        assert manager.get_shielded_balance() == {Decimal("0.1"): Decimal("0.1")}

        with pytest.raises(DoubleSpendError):
            withdraw(manager, first)
        assert manager.get_shielded_balance() == {Decimal("0.1"): Decimal("0.1")}

    def test_second_device_copy_is_rejected(self, session, manager, config):
        note = deposit(manager)
        record = note.to_record()
        withdraw(manager, note)

        record["state"] = "spendable"
        copy = ShieldedDeposit.from_record(record)
        other = PrivacyPoolManager(
            config, session.chain, session.signer, session.proof_engine, MemoryStore()
        )

        with pytest.raises(DoubleSpendError):
            asyncio.run(other.create_shielded_withdrawal(copy, OTHER_RECIPIENT))
        assert copy.state == DepositState.SPENT
        assert other.metrics.get_counter("double_spend_rejected_total", labels={"pool": POOL_ADDRESS}) == 1

    def test_concurrent_spends_of_one_note(self, manager):
        note = deposit(manager)

        async def race():
            return await asyncio.gather(
                manager.create_shielded_withdrawal(note, RECIPIENT),
                manager.create_shielded_withdrawal(note, OTHER_RECIPIENT),
                return_exceptions=True,
            )

        results = asyncio.run(race())

        succeeded = [r for r in results if isinstance(r, ShieldedWithdrawal)]
        rejected = [r for r in results if isinstance(r, (SpendInProgressError, DoubleSpendError))]
        assert len(succeeded) == 1
        assert len(rejected) == 1
        assert note.state == DepositState.SPENT

    def test_invalid_recipient(self, manager):
        note = deposit(manager)
        with pytest.raises(ValidationError):
            withdraw(manager, note, "0x1234")
        assert note.state == DepositState.SPENDABLE

    def test_fee_must_be_below_amount(self, manager):
        note = deposit(manager)
        with pytest.raises(ValidationError):
            withdraw(manager, note, fee="0.1")
        with pytest.raises(ValidationError):
            withdraw(manager, note, fee="-0.01")

    def test_failed_deposit_not_spendable(self, manager, chain):
        chain.fail_next_broadcasts(10)
        with pytest.raises(NetworkError):
            deposit(manager)
        failed = manager.list_deposits(DepositState.FAILED)[0]

        with pytest.raises(ValidationError):
            withdraw(manager, failed)

    def test_spend_after_other_deposits(self, manager, chain):
        note = deposit(manager)
        chain.seed_deposits(POOL_ADDRESS, 3)

        withdrawal = withdraw(manager, note)
        assert withdrawal.status == "confirmed"

    def test_zk_disabled_blocks_spends(self, store):
        session = PrivacySession.create(make_config(zk_proofs_enabled=False), store=store)
        note = asyncio.run(session.manager.create_shielded_deposit("0.1", POOL_ADDRESS))

        with pytest.raises(ConfigurationError):
            withdraw(session.manager, note)
        assert note.state == DepositState.SPENDABLE

    def test_reservation_released_after_failure(self, manager, chain):
        note = deposit(manager)
        chain.fail_next_broadcasts(4)

        with pytest.raises(NetworkError):
            withdraw(manager, note)

        ledger = manager.ledgers[POOL_ADDRESS.lower()]
        assert ledger.pending_count == 0
        assert note.state == DepositState.SPENDABLE

        assert withdraw(manager, note).status == "confirmed"

    def test_cancelled_withdrawal_releases_reservation(self, manager, monkeypatch):
        note = deposit(manager)
        ledger = manager.ledgers[POOL_ADDRESS.lower()]
        original = manager.proof_engine.generate_withdrawal_proof
        started = threading.Event()
        release = threading.Event()

        def slow_proof(*args, **kwargs):
            started.set()
            release.wait(5)
            return original(*args, **kwargs)

        monkeypatch.setattr(manager.proof_engine, "generate_withdrawal_proof", slow_proof)

        async def cancel_mid_proof():
            task = asyncio.create_task(manager.create_shielded_withdrawal(note, RECIPIENT))
            while not started.is_set() and not task.done():
                await asyncio.sleep(0.001)
            assert started.is_set()
            assert ledger.is_pending(note.nullifier_hash)

            task.cancel()
            try:
                with pytest.raises(asyncio.CancelledError):
                    await task
            finally:
                release.set()

        asyncio.run(cancel_mid_proof())

        assert not ledger.is_pending(note.nullifier_hash)
        assert ledger.pending_count == 0
        assert note.state == DepositState.SPENDABLE
        assert manager.list_spendable() == [note]

        assert withdraw(manager, note).status == "confirmed"
        assert note.state == DepositState.SPENT


# ============================================================
# Transfers
# ============================================================

class TestTransfers:
    """Tests for create_shielded_transfer."""

    def test_retained_transfer(self, manager):
        note = deposit(manager)

        transfer = asyncio.run(manager.create_shielded_transfer(note, retain_output=True, alias_id="alias_a"))

        assert isinstance(transfer, ShieldedTransfer)
        assert transfer.status == "confirmed"
        assert note.state == DepositState.SPENT
        output = transfer.output_note
        assert output.state == DepositState.SPENDABLE
        assert output.alias_id == "alias_a"
        assert manager.get_deposit(output.id) is output
        assert manager.get_shielded_balance() == {Decimal("0.1"): Decimal("0.1")}
        assert manager.get_shielded_balance(alias_id="alias_a") == {Decimal("0.1"): Decimal("0.1")}

    def test_output_note_spendable(self, manager):
        note = deposit(manager)
        transfer = asyncio.run(manager.create_shielded_transfer(note, retain_output=True))

        assert withdraw(manager, transfer.output_note).status == "confirmed"
        assert manager.get_shielded_balance() == {}

    def test_bearer_transfer_not_kept(self, manager):
        note = deposit(manager)
        transfer = asyncio.run(manager.create_shielded_transfer(note))

        assert manager.get_deposit(transfer.output_note.id) is None
        assert manager.get_shielded_balance() == {}
        assert transfer.to_dict()["output_note_id"] == transfer.output_note.id

    def test_transfer_keeps_anonymity_set_growing(self, manager):
        note = deposit(manager)
        before = asyncio.run(manager.get_pool(POOL_ADDRESS)).anonymity_set_size

        transfer = asyncio.run(manager.create_shielded_transfer(note, retain_output=True))

        assert transfer.output_note.leaf_index == before
        assert asyncio.run(manager.get_pool(POOL_ADDRESS)).anonymity_set_size == before + 1


# ============================================================
# Network faults and pending confirmations
# ============================================================

class TestNetworkFaults:
    """Tests for lost responses and delayed inclusion."""

    def test_lost_deposit_response(self, manager, chain):
        chain.fail_next_broadcasts(1, lose_response=True)

        note = deposit(manager)

        assert note.state == DepositState.SPENDABLE
        assert len(chain.pending_transactions) == 1
        anonymity = asyncio.run(manager.get_pool(POOL_ADDRESS)).anonymity_set_size

        receipts = chain.mine()
        assert receipts[0].status == TxStatus.REVERTED
        assert receipts[0].revert_reason == REVERT_DUPLICATE_COMMITMENT
        assert asyncio.run(manager.get_pool(POOL_ADDRESS)).anonymity_set_size == anonymity

    def test_lost_withdrawal_response(self, manager, chain):
        note = deposit(manager)
        chain.fail_next_broadcasts(1, lose_response=True)

        withdrawal = withdraw(manager, note)

        assert withdrawal.status == "confirmed"
        assert note.state == DepositState.SPENT
        receipts = chain.mine()
        assert receipts[0].revert_reason == REVERT_NULLIFIER_SPENT

    def test_pending_deposit_then_refresh(self, manager, chain):
        chain.auto_mine = False

        note = deposit(manager)
        assert note.state == DepositState.CREATED
        assert note.tx_hash in chain.pending_transactions
        assert manager.get_shielded_balance() == {}

        chain.mine()
        summary = asyncio.run(manager.refresh_pending())

        assert summary["deposits_confirmed"] == 1
        assert note.state == DepositState.SPENDABLE
        assert manager.get_shielded_balance() == {Decimal("0.1"): Decimal("0.1")}

    def test_pending_withdrawal_then_refresh(self, manager, chain):
        note = deposit(manager)
        chain.auto_mine = False

        withdrawal = withdraw(manager, note)
        assert withdrawal.status == "pending"
        assert manager.get_shielded_balance() == {}
        assert manager.ledgers[POOL_ADDRESS.lower()].is_pending(note.nullifier_hash)

        with pytest.raises(SpendInProgressError):
            withdraw(manager, note, OTHER_RECIPIENT)

        chain.mine()
        summary = asyncio.run(manager.refresh_pending())

        assert summary["spends_confirmed"] == 1
        assert withdrawal.status == "confirmed"
        assert note.state == DepositState.SPENT
        assert manager.ledgers[POOL_ADDRESS.lower()].pending_count == 0

    def test_refresh_reports_still_pending(self, manager, chain):
        chain.auto_mine = False
        deposit(manager)

        summary = asyncio.run(manager.refresh_pending())
        assert summary["still_pending"] == 1

    def test_out_of_order_mining(self, manager, chain):
        chain.auto_mine = False
        first = deposit(manager)
        second = deposit(manager)

        chain.mine([second.tx_hash, first.tx_hash])
        summary = asyncio.run(manager.refresh_pending())

        assert summary["deposits_confirmed"] == 2
        assert second.leaf_index == 0
        assert first.leaf_index == 1
        assert manager.list_spendable() == [first, second]

        chain.auto_mine = True
        assert withdraw(manager, first).status == "confirmed"
        assert withdraw(manager, second, OTHER_RECIPIENT).status == "confirmed"
        assert manager.get_shielded_balance() == {}

    def test_offline_pool_metadata_from_cache(self, manager, chain):
        chain.seed_deposits(POOL_ADDRESS, 4)
        online = asyncio.run(manager.get_pool(POOL_ADDRESS))

        chain.set_offline(True)
        offline = asyncio.run(manager.get_pool(POOL_ADDRESS))

        assert offline == online
        assert offline.anonymity_set_size == 4

    def test_offline_pool_metadata_without_cache(self, manager, chain):
        chain.set_offline(True)
        metadata = asyncio.run(manager.get_pool(POOL_ADDRESS))

        assert metadata.contract_address == POOL_ADDRESS
        assert metadata.anonymity_set_size == 0
        assert metadata.denomination == Decimal("0.1")

    def test_offline_deposit_fails(self, manager, chain):
        chain.set_offline(True)
        with pytest.raises(NetworkError):
            deposit(manager)


# ============================================================
# Storage failures and reconcile
# ============================================================

class TestStorageFailures:
    """Tests for advisory storage and recovery."""

    @pytest.fixture
    def flaky_store(self):
        return FlakyStore()

    @pytest.fixture
    def flaky_session(self, config, flaky_store):
        return PrivacySession.create(config, store=flaky_store)

    def test_pre_broadcast_failure_aborts(self, flaky_session, flaky_store):
        flaky_store.saves_allowed = 0

        with pytest.raises(StorageError):
            deposit(flaky_session.manager)
        assert flaky_session.chain.pending_transactions == []
        assert asyncio.run(flaky_session.manager.get_pool(POOL_ADDRESS)).anonymity_set_size == 0

    def test_post_broadcast_failure_is_warning(self, flaky_session, flaky_store):
        flaky_store.saves_allowed = 1

        note = deposit(flaky_session.manager)

        assert note.state == DepositState.SPENDABLE
        assert STORAGE_WARNING in note.warnings
        assert flaky_session.metrics.get_counter("storage_failures_total") >= 1

    def test_reconcile_recovers_notes(self, flaky_session, flaky_store, config):
        flaky_store.saves_allowed = 1
        note = deposit(flaky_session.manager)
        flaky_store.saves_allowed = None

        assert flaky_store.load_record(f"deposit:{note.id}")["state"] == "created"

        restored = PrivacyPoolManager(
            config, flaky_session.chain, flaky_session.signer, flaky_session.proof_engine, flaky_store
        )
        report = asyncio.run(restored.reconcile())

        assert report["loaded"] == 1
        assert report["recovered"] == 1
        assert report["spendable"] == 1
        recovered = restored.get_deposit(note.id)
        assert recovered.leaf_index == note.leaf_index
        assert recovered.commitment == note.commitment
        assert flaky_store.load_record(f"deposit:{note.id}")["state"] == "spendable"

        assert withdraw(restored, recovered).status == "confirmed"

    def test_reconcile_detects_spent_notes(self, session, manager, store, config):
        note = deposit(manager)
        record = store.load_record(f"deposit:{note.id}")
        withdraw(manager, note)
        store.save_record(f"deposit:{note.id}", record)

        restored = PrivacyPoolManager(config, session.chain, session.signer, session.proof_engine, store)
        report = asyncio.run(restored.reconcile())

        assert report["spent"] == 1
        assert restored.get_deposit(note.id).state == DepositState.SPENT
        assert restored.get_shielded_balance() == {}

    def test_reconcile_counts_unreadable_records(self, session, store):
        store.save_record("deposit:broken", {"id": "broken", "sealed_note": "ENC:1:1000:AAAA"})

        report = asyncio.run(session.manager.reconcile())
        assert report["unrecoverable"] == 1
        assert report["loaded"] == 0
        assert session.manager.get_deposit("broken") is None
        assert store.load_record("deposit:broken") is not None

    def test_deposit_states(self):
        assert [s.value for s in DepositState] == ["created", "confirmed", "spendable", "spent", "failed"]


# ============================================================
# Views and settings
# ============================================================

class TestSettingsAndViews:
    """Tests for privacy mode, stats and sync."""

    def test_toggle_privacy_mode(self, manager, store):
        assert manager.privacy_mode == "public"
        assert manager.toggle_privacy_mode() == "private"
        assert store.load_record("settings:privacy") == {"mode": "private"}
        assert manager.get_privacy_settings()["mode"] == "private"
        assert manager.toggle_privacy_mode() == "public"

    def test_mode_survives_restart(self, session, manager, store, config):
        manager.toggle_privacy_mode()
        restored = PrivacyPoolManager(config, session.chain, session.signer, session.proof_engine, store)
        assert restored.privacy_mode == "private"

    def test_pool_stats(self, manager, chain):
        chain.seed_deposits(POOL_ADDRESS, 2)
        deposit(manager)

        stats = asyncio.run(manager.get_pool_stats(POOL_ADDRESS))
        assert stats["anonymity_set_size"] == 3
        assert stats["local_notes"] == 1
        assert stats["local_spendable"] == 1
        assert stats["pool_balance"] == "0.3"

    def test_get_privacy_pools(self, manager):
        pools = asyncio.run(manager.get_privacy_pools())
        assert {p.contract_address for p in pools} == {POOL_ADDRESS, LARGE_POOL_ADDRESS}

    def test_sync_notes_marks_foreign_spend(self, session, manager, config):
        note = deposit(manager)
        record = note.to_record()
        other = PrivacyPoolManager(config, session.chain, session.signer, session.proof_engine, MemoryStore())
        asyncio.run(other.create_shielded_withdrawal(ShieldedDeposit.from_record(record), RECIPIENT))

        summary = asyncio.run(manager.sync_notes())

        assert summary["spent"] == 1
        assert note.state == DepositState.SPENT

    def test_get_info(self, manager):
        deposit(manager)
        info = manager.get_info()

        assert info["deposits"]["spendable"] == 1
        assert info["privacy_mode"] == "public"
        assert len(info["pools"]) == 2

    def test_depth_mismatch_rejected(self, session, config):
        from proof_backend import SchnorrAttestationBackend
        from proof_engine import ProofEngine

        engine = ProofEngine(SchnorrAttestationBackend(), tree_depth=4)
        with pytest.raises(ConfigurationError):
            PrivacyPoolManager(config, session.chain, session.signer, engine, MemoryStore())

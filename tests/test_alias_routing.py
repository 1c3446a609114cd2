"""
Tests for aliases and transaction routing (src/alias_routing.py)

Tests cover:
- Alias lifecycle: create, switch, deactivate, limits, persistence
- Route recommendations and the anonymity set adjustment
- Fee estimates
- Quotes and alias-bound private sends, including stale quotes
"""

import asyncio
import os
import sys
from decimal import Decimal

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from conftest import POOL_ADDRESS, RECIPIENT, make_config
from alias_routing import AliasManager, Route, estimate_fee
from exceptions import AliasError, StaleQuoteError, ValidationError
from privacy_pool import DepositState, ShieldedWithdrawal
from storage.memory import MemoryStore


# ============================================================
# Aliases
# ============================================================

class TestAliasManager:
    """Tests for alias lifecycle."""

    @pytest.fixture
    def aliases(self, config, store):
        return AliasManager(config, store)

    def test_first_alias_becomes_active(self, aliases):
        first = aliases.create_alias("Savings")
        second = aliases.create_alias("Spending")

        assert aliases.active_alias is first
        assert second.is_active
        assert aliases.generation == 1

    def test_switch_bumps_generation(self, aliases):
        aliases.create_alias("a")
        second = aliases.create_alias("b")

        aliases.switch_alias(second.alias_id)
        assert aliases.active_alias_id == second.alias_id
        assert aliases.generation == 2

        aliases.switch_alias(second.alias_id)
        assert aliases.generation == 2

    def test_deactivate_active_alias(self, aliases):
        alias = aliases.create_alias("a")
        aliases.deactivate_alias(alias.alias_id)

        assert aliases.active_alias is None
        assert aliases.list_aliases() == []
        assert aliases.list_aliases(include_inactive=True) == [alias]
        with pytest.raises(AliasError):
            aliases.switch_alias(alias.alias_id)

    def test_alias_limit(self, aliases, config):
        for i in range(config.max_aliases_per_user):
            aliases.create_alias(f"alias {i}")

        with pytest.raises(AliasError):
            aliases.create_alias("one too many")

        aliases.deactivate_alias(aliases.list_aliases()[0].alias_id)
        aliases.create_alias("replacement")

    def test_invalid_names(self, aliases):
        with pytest.raises(ValidationError):
            aliases.create_alias("   ")
        with pytest.raises(ValidationError):
            aliases.create_alias("x" * 65)

    def test_unknown_alias(self, aliases):
        with pytest.raises(AliasError):
            aliases.get_alias("alias_missing")

    def test_aliases_persist(self, aliases, config, store):
        aliases.create_alias("a")
        second = aliases.create_alias("b")
        aliases.switch_alias(second.alias_id)

        reloaded = AliasManager(config, store)
        assert {a.display_name for a in reloaded.list_aliases()} == {"a", "b"}
        assert reloaded.active_alias_id == second.alias_id

    def test_ensure_creates_default(self, aliases):
        alias = aliases.ensure_active_alias()
        assert alias.display_name == "default"
        assert aliases.ensure_active_alias() is alias

    def test_ensure_without_auto_create(self):
        aliases = AliasManager(make_config(auto_create_aliases=False), MemoryStore())
        with pytest.raises(AliasError):
            aliases.ensure_active_alias()


# ============================================================
# Route recommendations
# ============================================================

class TestRecommendRoute:
    """Tests for recommend_route."""

    @pytest.fixture
    def router(self, session):
        return session.router

    def test_large_amount_private_preference(self, router):
        rec = router.recommend_route(RECIPIENT, "2.0", recipient_prefers_private=True)
        assert rec.route == Route.PRIVATE
        assert rec.privacy_score >= 80

    def test_tiny_amount_public_preference(self, router):
        rec = router.recommend_route(RECIPIENT, "0.0005", recipient_prefers_private=False)
        assert rec.route == Route.PUBLIC
        assert rec.estimated_time == 15

    def test_large_amount_public_preference_mixes(self, router):
        rec = router.recommend_route(RECIPIENT, "5", recipient_prefers_private=False)
        assert rec.route == Route.MIXED

    def test_unknown_preference_leans_private(self, router):
        assert router.recommend_route(RECIPIENT, "2.0").route == Route.PRIVATE
        assert router.recommend_route(RECIPIENT, "0.1").route == Route.MIXED

    def test_force_private(self, router):
        rec = router.recommend_route(RECIPIENT, "0.0005", recipient_prefers_private=False, force_private=True)
        assert rec.route == Route.PRIVATE
        assert rec.privacy_score == 95

    def test_anonymity_adjustment(self, router):
        base = router.recommend_route(RECIPIENT, "0.5", recipient_prefers_private=True)
        strong = router.recommend_route(
            RECIPIENT, "0.5", recipient_prefers_private=True, anonymity_set_size=5000
        )
        weak = router.recommend_route(
            RECIPIENT, "0.5", recipient_prefers_private=True, anonymity_set_size=3
        )

        assert strong.privacy_score == base.privacy_score + 5
        assert weak.privacy_score == base.privacy_score - 5

    def test_public_route_ignores_anonymity(self, router):
        rec = router.recommend_route(
            RECIPIENT, "0.5", recipient_prefers_private=False, anonymity_set_size=5000
        )
        assert rec.privacy_score == 30

    def test_deterministic(self, router):
        first = router.recommend_route(RECIPIENT, "0.3")
        second = router.recommend_route(RECIPIENT, "0.3")
        assert first == second

    def test_to_dict_keys(self, router):
        data = router.recommend_route(RECIPIENT, "2.0", recipient_prefers_private=True).to_dict()
        assert data["route"] == "private"
        assert set(data) == {"route", "privacyScore", "reasons", "estimatedFee", "estimatedTime"}

    def test_invalid_inputs(self, router):
        with pytest.raises(ValidationError):
            router.recommend_route("0xnope", "1")
        with pytest.raises(ValidationError):
            router.recommend_route(RECIPIENT, "-1")


class TestFeeEstimates:
    """Tests for estimate_fee."""

    def test_fee_by_route(self):
        assert estimate_fee(Route.PUBLIC, Decimal("1")) == Decimal("0.001")
        assert estimate_fee(Route.MIXED, Decimal("1")) == Decimal("0.0025")
        assert estimate_fee(Route.PRIVATE, Decimal("1")) == Decimal("0.004")

    def test_private_costs_more(self):
        amount = Decimal("0.1")
        assert estimate_fee(Route.PUBLIC, amount) < estimate_fee(Route.MIXED, amount) < estimate_fee(Route.PRIVATE, amount)


# ============================================================
# Quotes and private sends
# ============================================================

class TestPrivateSend:
    """Tests for quote and send_private_transaction_with_alias."""

    def fund(self, session, alias_id):
        return asyncio.run(
            session.manager.create_shielded_deposit("0.1", POOL_ADDRESS, alias_id=alias_id)
        )

    def test_quote_binds_active_alias(self, session):
        quote = asyncio.run(session.router.quote(RECIPIENT, "0.1", force_private=True))

        assert quote.alias_id == session.aliases.active_alias_id
        assert quote.alias_generation == session.aliases.generation
        assert quote.to_dict()["aliasId"] == quote.alias_id

    def test_quote_uses_live_anonymity_set(self, session):
        quote = asyncio.run(session.router.quote(RECIPIENT, "0.1", recipient_prefers_private=True))
        assert "Small anonymity set (0 deposits)" in quote.recommendation.reasons

    def test_private_send(self, session):
        alias = session.aliases.create_alias("payments")
        note = self.fund(session, alias.alias_id)

        quote = asyncio.run(session.router.quote(RECIPIENT, "0.1", force_private=True))
        result = asyncio.run(session.router.send_private_transaction_with_alias(quote))

        assert isinstance(result, ShieldedWithdrawal)
        assert result.status == "confirmed"
        assert result.deposit_id == note.id
        assert note.state == DepositState.SPENT

    def test_second_send_skips_note_with_pending_spend(self, session):
        alias = session.aliases.create_alias("payments")
        first_note = self.fund(session, alias.alias_id)
        second_note = self.fund(session, alias.alias_id)
        session.chain.auto_mine = False

        quote = asyncio.run(session.router.quote(RECIPIENT, "0.1", force_private=True))
        first = asyncio.run(session.router.send_private_transaction_with_alias(quote))
        assert first.status == "pending"
        assert first.deposit_id == first_note.id
        assert session.manager.get_shielded_balance(alias.alias_id) == {Decimal("0.1"): Decimal("0.1")}
        assert session.manager.list_spendable(alias.alias_id) == [second_note]

        quote = asyncio.run(session.router.quote(RECIPIENT, "0.1", force_private=True))
        second = asyncio.run(session.router.send_private_transaction_with_alias(quote))
        assert second.status == "pending"
        assert second.deposit_id == second_note.id
        assert session.manager.list_spendable(alias.alias_id) == []

        session.chain.mine()
        summary = asyncio.run(session.manager.refresh_pending())
        assert summary["spends_confirmed"] == 2
        assert first_note.state == DepositState.SPENT
        assert second_note.state == DepositState.SPENT

    def test_no_spendable_note_left_raises_alias_error(self, session):
        alias = session.aliases.create_alias("payments")
        self.fund(session, alias.alias_id)
        session.chain.auto_mine = False

        quote = asyncio.run(session.router.quote(RECIPIENT, "0.1", force_private=True))
        asyncio.run(session.router.send_private_transaction_with_alias(quote))

        quote = asyncio.run(session.router.quote(RECIPIENT, "0.1", force_private=True))
        with pytest.raises(AliasError):
            asyncio.run(session.router.send_private_transaction_with_alias(quote))

    def test_mixed_send(self, session):
        alias = session.aliases.create_alias("payments")
        note = self.fund(session, alias.alias_id)

        quote = asyncio.run(session.router.quote(RECIPIENT, "0.1"))
        assert quote.recommendation.route == Route.MIXED
        result = asyncio.run(session.router.send_private_transaction_with_alias(quote))

        assert result.status == "confirmed"
        assert result.deposit_id != note.id
        assert note.state == DepositState.SPENT
        assert session.manager.get_deposit(result.deposit_id).alias_id == alias.alias_id
        assert session.manager.get_shielded_balance() == {}

    def test_stale_quote_after_switch(self, session):
        first = session.aliases.create_alias("first")
        second = session.aliases.create_alias("second")
        self.fund(session, first.alias_id)

        quote = asyncio.run(session.router.quote(RECIPIENT, "0.1", force_private=True))
        session.aliases.switch_alias(second.alias_id)

        with pytest.raises(StaleQuoteError):
            asyncio.run(session.router.send_private_transaction_with_alias(quote))

    def test_stale_quote_after_switching_back(self, session):
        first = session.aliases.create_alias("first")
        second = session.aliases.create_alias("second")
        self.fund(session, first.alias_id)

        quote = asyncio.run(session.router.quote(RECIPIENT, "0.1", force_private=True))
        session.aliases.switch_alias(second.alias_id)
        session.aliases.switch_alias(first.alias_id)

        with pytest.raises(StaleQuoteError):
            asyncio.run(session.router.send_private_transaction_with_alias(quote))

    def test_only_alias_notes_are_spent(self, session):
        first = session.aliases.create_alias("first")
        second = session.aliases.create_alias("second")
        other_note = self.fund(session, second.alias_id)

        quote = asyncio.run(session.router.quote(RECIPIENT, "0.1", force_private=True))
        assert quote.alias_id == first.alias_id

        with pytest.raises(AliasError):
            asyncio.run(session.router.send_private_transaction_with_alias(quote))
        assert other_note.state == DepositState.SPENDABLE

    def test_public_route_not_sent(self, session):
        session.aliases.create_alias("payments")
        quote = asyncio.run(session.router.quote(RECIPIENT, "0.0005", recipient_prefers_private=False))

        with pytest.raises(AliasError):
            asyncio.run(session.router.send_private_transaction_with_alias(quote))

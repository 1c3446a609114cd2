"""
Shielded Pool - Aliases and Transaction Routing

Aliases are unlinkable routing identities layered over the wallet key. Each
alias owns the notes deposited under its id; a private send through an
alias only ever spends that alias's notes.

The router recommends, per transaction, whether to send publicly, through
the shielded pool, or through a mixing step (transfer into a fresh note,
then withdraw). Recommendations are a pure function of their inputs.

Quotes carry the alias and its switch generation at quote time. Submitting
a quote after the active alias changed raises StaleQuoteError instead of
spending from a different note-set.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from config import PrivacyConfig
from exceptions import AliasError, StaleQuoteError, StorageError, ValidationError
from field_utils import is_valid_address
from privacy_pool import PrivacyPoolManager, ShieldedDeposit, ShieldedWithdrawal
from storage.base import LocalStore

logger = logging.getLogger(__name__)

ALIAS_PREFIX = "alias:"
ACTIVE_ALIAS_KEY = "settings:active_alias"

MAX_DISPLAY_NAME_LENGTH = 64

# Fee model, in ETH
PUBLIC_FEE_RATE = Decimal("0.001")
PRIVATE_FEE_RATE = Decimal("0.002")
PRIVATE_FEE_BASE = Decimal("0.001")

# Estimated seconds to confirmation
ROUTE_TIMES = {"public": 15, "mixed": 30, "private": 45}


class Route(Enum):
    PUBLIC = "public"
    PRIVATE = "private"
    MIXED = "mixed"


@dataclass
class Alias:
    alias_id: str
    display_name: str
    is_active: bool = True
    created_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return {
            "alias_id": self.alias_id,
            "display_name": self.display_name,
            "is_active": self.is_active,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Alias":
        try:
            return cls(
                alias_id=data["alias_id"],
                display_name=data["display_name"],
                is_active=bool(data.get("is_active", True)),
                created_at=data.get("created_at") or datetime.now(UTC).isoformat(),
            )
        except KeyError as e:
            raise ValidationError(f"Malformed alias record: missing {e.args[0]}", field_name="alias") from e


class AliasManager:
    """
    Creates, switches and retires aliases for one wallet.

    ``generation`` increases on every switch of the active alias; quotes
    record it so a switch between quote and submit is detectable.
    """

    def __init__(self, config: PrivacyConfig, store: LocalStore | None = None):
        self.config = config
        self.store = store
        self._aliases: dict[str, Alias] = {}
        self.active_alias_id: str | None = None
        self.generation = 0
        self._load()

    def _load(self):
        if self.store is None:
            return
        try:
            for key, record in self.store.load_all(ALIAS_PREFIX).items():
                try:
                    alias = Alias.from_dict(record)
                except ValidationError as e:
                    logger.warning(f"Skipping {key}: {e}")
                    continue
                self._aliases[alias.alias_id] = alias
            active = self.store.load_record(ACTIVE_ALIAS_KEY)
        except StorageError as e:
            logger.warning(f"Could not load aliases: {e}")
            return

        if active and active.get("alias_id") in self._aliases:
            self.active_alias_id = active["alias_id"]
        if self._aliases:
            logger.info(f"Loaded {len(self._aliases)} alias(es)")

    def _save(self, alias: Alias):
        if self.store is None:
            return
        try:
            self.store.save_record(ALIAS_PREFIX + alias.alias_id, alias.to_dict())
            self.store.save_record(ACTIVE_ALIAS_KEY, {"alias_id": self.active_alias_id})
        except StorageError as e:
            logger.warning(f"Could not save alias {alias.alias_id}: {e}")

    def create_alias(self, name: str) -> Alias:
        """
        Create a new alias. The first alias becomes active.

        Raises:
            ValidationError: for an empty or overlong display name
            AliasError: when the active alias limit is reached
        """
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Alias name cannot be empty", field_name="name")
        name = name.strip()
        if len(name) > MAX_DISPLAY_NAME_LENGTH:
            raise ValidationError(
                f"Alias name exceeds {MAX_DISPLAY_NAME_LENGTH} characters", field_name="name"
            )
        if len(self.list_aliases()) >= self.config.max_aliases_per_user:
            raise AliasError(
                f"Alias limit of {self.config.max_aliases_per_user} reached", action="create"
            )

        alias = Alias(alias_id=f"alias_{uuid.uuid4().hex[:12]}", display_name=name)
        self._aliases[alias.alias_id] = alias
        if self.active_alias_id is None:
            self.active_alias_id = alias.alias_id
            self.generation += 1
        self._save(alias)
        logger.info(f"Created alias {alias.alias_id}")
        return alias

    def get_alias(self, alias_id: str) -> Alias:
        alias = self._aliases.get(alias_id)
        if alias is None:
            raise AliasError(f"Unknown alias {alias_id}", alias_id=alias_id, action="lookup")
        return alias

    def list_aliases(self, include_inactive: bool = False) -> list[Alias]:
        return [a for a in self._aliases.values() if include_inactive or a.is_active]

    @property
    def active_alias(self) -> Alias | None:
        if self.active_alias_id is None:
            return None
        return self._aliases.get(self.active_alias_id)

    def switch_alias(self, alias_id: str) -> Alias:
        alias = self.get_alias(alias_id)
        if not alias.is_active:
            raise AliasError(f"Alias {alias_id} is deactivated", alias_id=alias_id, action="switch")
        if alias_id != self.active_alias_id:
            self.active_alias_id = alias_id
            self.generation += 1
            self._save(alias)
            logger.info(f"Switched to alias {alias_id}")
        return alias

    def deactivate_alias(self, alias_id: str) -> Alias:
        """Retire an alias. Its notes stay in the wallet but it can no longer send."""
        alias = self.get_alias(alias_id)
        alias.is_active = False
        if self.active_alias_id == alias_id:
            self.active_alias_id = None
            self.generation += 1
        self._save(alias)
        logger.info(f"Deactivated alias {alias_id}")
        return alias

    def ensure_active_alias(self) -> Alias:
        """Return the active alias, creating one if allowed and none exists."""
        alias = self.active_alias
        if alias is not None:
            return alias
        remaining = self.list_aliases()
        if remaining:
            return self.switch_alias(remaining[0].alias_id)
        if not self.config.auto_create_aliases:
            raise AliasError("No active alias and automatic creation is disabled", action="ensure")
        return self.create_alias("default")


@dataclass
class RouteRecommendation:
    route: Route
    privacy_score: int
    reasons: list[str]
    estimated_fee: Decimal
    estimated_time: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "route": self.route.value,
            "privacyScore": self.privacy_score,
            "reasons": list(self.reasons),
            "estimatedFee": str(self.estimated_fee),
            "estimatedTime": self.estimated_time,
        }


@dataclass
class RouteQuote:
    """A recommendation bound to the alias that was active when it was made."""
    recipient: str
    amount: Decimal
    recommendation: RouteRecommendation
    alias_id: str
    alias_generation: int
    quoted_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    def to_dict(self) -> dict[str, Any]:
        result = self.recommendation.to_dict()
        result.update({
            "recipient": self.recipient,
            "amount": str(self.amount),
            "aliasId": self.alias_id,
            "quotedAt": self.quoted_at,
        })
        return result


def estimate_fee(route: Route, amount: Decimal) -> Decimal:
    public_fee = amount * PUBLIC_FEE_RATE
    surcharge = amount * PRIVATE_FEE_RATE + PRIVATE_FEE_BASE
    if route == Route.PUBLIC:
        return public_fee
    if route == Route.MIXED:
        return public_fee + surcharge / 2
    return public_fee + surcharge


class TransactionRouter:
    """Route recommendations, quotes and alias-bound private sends."""

    def __init__(self, config: PrivacyConfig, aliases: AliasManager, manager: PrivacyPoolManager):
        self.config = config
        self.aliases = aliases
        self.manager = manager

    @staticmethod
    def _parse_amount(amount: Any) -> Decimal:
        try:
            value = Decimal(str(amount))
        except (InvalidOperation, ValueError) as e:
            raise ValidationError(f"Invalid amount: {amount!r}", field_name="amount") from e
        if not value.is_finite() or value <= 0:
            raise ValidationError("Amount must be positive", field_name="amount")
        return value

    def recommend_route(
        self,
        recipient: str,
        amount: Any,
        recipient_prefers_private: bool | None = None,
        force_private: bool = False,
        anonymity_set_size: int | None = None,
    ) -> RouteRecommendation:
        """
        Recommend how to send ``amount`` to ``recipient``.

        Large amounts lean private, a recipient preference is honoured, and
        ``force_private`` overrides everything. With no known preference,
        ties go to the more private route. A known anonymity set shifts
        the score of private and mixed routes.
        """
        if not is_valid_address(recipient):
            raise ValidationError(f"Invalid recipient address: {recipient!r}", field_name="recipient")
        value = self._parse_amount(amount)
        large = value > self.config.large_amount_threshold
        small = value < self.config.small_amount_threshold
        reasons: list[str] = []

        if force_private:
            route, score = Route.PRIVATE, 95
            reasons.append("Private routing forced by user")
        elif recipient_prefers_private is True:
            reasons.append("Recipient prefers private payments")
            if large:
                route, score = Route.PRIVATE, 85
                reasons.append("Large amount benefits from shielding")
            else:
                route, score = Route.PRIVATE, 80
        elif recipient_prefers_private is False:
            reasons.append("Recipient prefers public payments")
            if large:
                route, score = Route.MIXED, 50
                reasons.append("Large amount: mixing step breaks the direct link")
            else:
                route, score = Route.PUBLIC, 30
        else:
            if large:
                route, score = Route.PRIVATE, 75
                reasons.append("Large amount benefits from shielding")
            elif small:
                route, score = Route.MIXED, 55
                reasons.append("Small amount: mixing step keeps costs low")
            else:
                route, score = Route.MIXED, 60
                reasons.append("Recipient preference unknown, leaning private")

        if route != Route.PUBLIC and anonymity_set_size is not None:
            if anonymity_set_size >= self.config.strong_anonymity_set:
                score += 5
                reasons.append(f"Strong anonymity set ({anonymity_set_size} deposits)")
            elif anonymity_set_size < self.config.min_anonymity_set:
                score -= 5
                reasons.append(f"Small anonymity set ({anonymity_set_size} deposits)")

        return RouteRecommendation(
            route=route,
            privacy_score=max(0, min(100, score)),
            reasons=reasons,
            estimated_fee=estimate_fee(route, value),
            estimated_time=ROUTE_TIMES[route.value],
        )

    async def quote(
        self,
        recipient: str,
        amount: Any,
        recipient_prefers_private: bool | None = None,
        force_private: bool = False,
    ) -> RouteQuote:
        """Recommend a route for the active alias, using the live anonymity set."""
        alias = self.aliases.ensure_active_alias()
        value = self._parse_amount(amount)

        anonymity = None
        try:
            pool = self.manager.select_pool(value)
            anonymity = (await self.manager.get_pool(pool.contract_address)).anonymity_set_size
        except ValidationError:
            logger.debug(f"No pool for {value} ETH; routing without anonymity data")

        recommendation = self.recommend_route(
            recipient, value, recipient_prefers_private, force_private, anonymity
        )
        return RouteQuote(
            recipient=recipient,
            amount=value,
            recommendation=recommendation,
            alias_id=alias.alias_id,
            alias_generation=self.aliases.generation,
        )

    def _select_note(self, alias_id: str, amount: Decimal) -> ShieldedDeposit:
        pool = self.manager.select_pool(amount)
        for deposit in self.manager.list_spendable(alias_id):
            if deposit.pool_address.lower() == pool.contract_address.lower():
                return deposit
        raise AliasError(
            f"Alias {alias_id} has no spendable {amount} ETH note", alias_id=alias_id, action="send"
        )

    async def send_private_transaction_with_alias(self, quote: RouteQuote) -> ShieldedWithdrawal:
        """
        Execute a quote using only notes owned by the quoted alias.

        A private route withdraws one note straight to the recipient. A
        mixed route first transfers the note into a fresh note of the same
        alias and withdraws that one.

        Raises:
            StaleQuoteError: the active alias changed since the quote
            AliasError: public route, or no matching note for the alias
        """
        alias = self.aliases.active_alias
        if (
            alias is None
            or alias.alias_id != quote.alias_id
            or self.aliases.generation != quote.alias_generation
        ):
            raise StaleQuoteError(
                "Active alias changed since the route was quoted; request a new quote",
                alias_id=quote.alias_id,
            )

        route = quote.recommendation.route
        if route == Route.PUBLIC:
            raise AliasError(
                "Public route does not move shielded funds", alias_id=quote.alias_id, action="send"
            )

        note = self._select_note(quote.alias_id, quote.amount)
        logger.info(f"Sending {quote.amount} ETH via alias {quote.alias_id} ({route.value} route)")

        if route == Route.MIXED:
            transfer = await self.manager.create_shielded_transfer(
                note, retain_output=True, alias_id=quote.alias_id
            )
            note = transfer.output_note
            if not note.is_spendable:
                raise AliasError(
                    "Mixing transfer is not yet confirmed; retry the send later",
                    alias_id=quote.alias_id,
                    action="send",
                )

        return await self.manager.create_shielded_withdrawal(note, quote.recipient)

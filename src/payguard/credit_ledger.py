"""
Credit score ledger.

Mints one soulbound ``CreditRecord`` per successful payment (direct or
pool-covered) and keeps a running per-user score. Records have no transfer
path: the ownership-changing entry points exist only to refuse.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from .chain import Chain, Contract, external
from .errors import (
    InvalidAddress,
    NotMinter,
    NotOwner,
    SoulboundTransferDisallowed,
    UnknownRecord,
)
from .typed_data import is_zero_address, normalize_address

logger = logging.getLogger(__name__)


DIRECT_PAYMENT_SCORE = 10
POOL_PAYMENT_SCORE = 5

RATING_BANDS = (
    (1000, "Excellent"),
    (500, "Very Good"),
    (200, "Good"),
    (50, "Fair"),
    (1, "Poor"),
)


def rating_for(score: int) -> str:
    for threshold, rating in RATING_BANDS:
        if score >= threshold:
            return rating
    return "No History"


@dataclass(frozen=True)
class CreditRecord:
    """One payment point. Bound to ``user`` for good."""

    token_id: int
    user: str
    subscription: str
    amount: int
    timestamp: int
    score: int
    metadata: str
    from_pool: bool = False
    soulbound: bool = field(default=True, init=False)


@dataclass(frozen=True)
class CreditScore:
    score: int
    rating: str


@dataclass
class LedgerStorage:
    owner: str
    subscription_factory: Optional[str] = None
    minters: set[str] = field(default_factory=set)
    next_token_id: int = 1
    records: dict[int, CreditRecord] = field(default_factory=dict)
    user_tokens: dict[str, list[int]] = field(default_factory=dict)
    user_scores: dict[str, int] = field(default_factory=dict)


class CreditScoreLedger(Contract):
    """Soulbound payment-point ledger ("PayGuard Payment Points", PGPP)."""

    name = "PayGuard Payment Points"
    symbol = "PGPP"

    def __init__(self, chain: Chain, address: str, deployer: str):
        super().__init__(chain, address, deployer)
        self.storage = LedgerStorage(owner=deployer)

    @property
    def owner(self) -> str:
        return self.storage.owner

    @property
    def subscription_factory(self) -> Optional[str]:
        return self.storage.subscription_factory

    def is_minter(self, account: str) -> bool:
        return normalize_address(account) in self.storage.minters

    # -- admin -----------------------------------------------------------

    @external
    def set_subscription_factory(self, sender: str, factory: str) -> None:
        if sender != self.storage.owner:
            raise NotOwner("Ownable: caller is not the owner")
        if is_zero_address(factory):
            raise InvalidAddress("Invalid factory address")
        self.storage.subscription_factory = normalize_address(factory)
        self.emit("SubscriptionFactoryUpdated", factory=self.storage.subscription_factory)

    @external
    def authorize_minter(self, sender: str, minter: str, allowed: bool) -> None:
        if sender not in (self.storage.owner, self.storage.subscription_factory):
            raise NotOwner("Only owner or factory can authorize minters")
        if is_zero_address(minter):
            raise InvalidAddress("Invalid minter address")
        minter = normalize_address(minter)
        if allowed:
            self.storage.minters.add(minter)
        else:
            self.storage.minters.discard(minter)
        self.emit("MinterAuthorized", minter=minter, allowed=bool(allowed))

    # -- minting ---------------------------------------------------------

    @external
    def mint(
        self,
        sender: str,
        user: str,
        subscription: str,
        amount: int,
        from_pool: bool = False,
        metadata: str = "",
    ) -> int:
        """Mint a payment point for ``user``; returns the new record id."""
        if sender not in self.storage.minters:
            raise NotMinter(f"{sender} is not an authorized minter")
        if is_zero_address(user):
            raise InvalidAddress("Invalid user address")
        user = normalize_address(user)
        score = POOL_PAYMENT_SCORE if from_pool else DIRECT_PAYMENT_SCORE

        token_id = self.storage.next_token_id
        self.storage.next_token_id += 1
        self.storage.records[token_id] = CreditRecord(
            token_id=token_id,
            user=user,
            subscription=normalize_address(subscription),
            amount=int(amount),
            timestamp=self.now,
            score=score,
            metadata=metadata,
            from_pool=bool(from_pool),
        )
        self.storage.user_tokens.setdefault(user, []).append(token_id)
        self.storage.user_scores[user] = self.storage.user_scores.get(user, 0) + score

        self.emit(
            "PaymentPointMinted",
            token_id=token_id,
            user=user,
            subscription=normalize_address(subscription),
            score=score,
            soulbound=True,
        )
        logger.debug("Payment point %d minted for %s (score +%d)", token_id, user, score)
        return token_id

    # -- soulbound surface -----------------------------------------------

    @external
    def transfer_from(self, sender: str, owner: str, to: str, token_id: int) -> None:
        raise SoulboundTransferDisallowed(f"Payment point {token_id} is soulbound")

    @external
    def safe_transfer_from(self, sender: str, owner: str, to: str, token_id: int) -> None:
        raise SoulboundTransferDisallowed(f"Payment point {token_id} is soulbound")

    @external
    def approve(self, sender: str, to: str, token_id: int) -> None:
        raise SoulboundTransferDisallowed(f"Payment point {token_id} is soulbound")

    @external
    def set_approval_for_all(self, sender: str, operator: str, approved: bool) -> None:
        raise SoulboundTransferDisallowed("Payment points are soulbound")

    # -- views -----------------------------------------------------------

    def get_record(self, token_id: int) -> CreditRecord:
        record = self.storage.records.get(int(token_id))
        if record is None:
            raise UnknownRecord(f"No payment point {token_id}")
        return record

    def owner_of(self, token_id: int) -> str:
        return self.get_record(token_id).user

    def balance_of(self, user: str) -> int:
        return len(self.storage.user_tokens.get(normalize_address(user), []))

    def token_of_owner_by_index(self, user: str, index: int) -> int:
        tokens = self.storage.user_tokens.get(normalize_address(user), [])
        if not 0 <= index < len(tokens):
            raise UnknownRecord(f"Owner index {index} out of bounds")
        return tokens[index]

    def get_user_score(self, user: str) -> int:
        return self.storage.user_scores.get(normalize_address(user), 0)

    def get_user_points(self, user: str) -> list[int]:
        return list(self.storage.user_tokens.get(normalize_address(user), []))

    def get_user_payment_history(self, user: str) -> list[CreditRecord]:
        return [self.storage.records[t] for t in self.get_user_points(user)]

    def get_credit_score(self, user: str) -> CreditScore:
        score = self.get_user_score(user)
        return CreditScore(score=score, rating=rating_for(score))

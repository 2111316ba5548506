"""
Reserve pool.

Underwriters stake tokens; the platform grants users credit lines against
that stake; registered subscription agreements draw on a user's line to pay
a provider when the user misses a payment.

Per token the pool keeps three totals:

* ``total_staked``: tokens staked by underwriters.
* ``total_utilized``: credit drawn and not yet repaid.
* ``total_committed``: credit granted but not yet drawn.

Granting requires ``utilized + committed + amount <= staked`` and stake can
only leave while ``staked >= utilized + committed`` still holds, so every
granted line is backed by stake.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from .chain import Chain, Contract, external
from .errors import (
    CreditLineExceeded,
    InsufficientPoolCapacity,
    InsufficientStake,
    InvalidAddress,
    InvalidAmount,
    MaxCoverExceeded,
    NotOwner,
    Unauthorized,
    UtilizationCapExceeded,
)
from .money import BPS_DENOMINATOR, bps_of, rate_bps
from .token import Token
from .typed_data import is_zero_address, normalize_address

logger = logging.getLogger(__name__)


@dataclass
class PoolTotals:
    total_staked: int = 0
    total_utilized: int = 0
    total_committed: int = 0
    utilization_cap: int = 0


@dataclass
class Stake:
    amount: int = 0
    utilization_cap: int = 0


@dataclass
class CreditLine:
    limit: int = 0
    debt: int = 0


@dataclass
class AgreementCover:
    user: str
    token: str
    max_cover: int
    covered: int = 0


@dataclass(frozen=True)
class PoolStats:
    """Pool snapshot for one token. Rates are in basis points."""

    total_staked: int
    total_utilized: int
    total_committed: int
    utilization_rate: int
    max_utilization_rate: int
    available_capacity: int


@dataclass
class PoolStorage:
    owner: str
    max_utilization_bps: int
    subscription_factory: Optional[str] = None
    platform_operator: Optional[str] = None
    pools: dict[str, PoolTotals] = field(default_factory=dict)
    stakes: dict[tuple[str, str], Stake] = field(default_factory=dict)
    credit_lines: dict[tuple[str, str], CreditLine] = field(default_factory=dict)
    agreements: dict[str, AgreementCover] = field(default_factory=dict)


class ReservePool(Contract):
    """Underwriter-backed credit for missed subscription payments."""

    def __init__(self, chain: Chain, address: str, deployer: str):
        super().__init__(chain, address, deployer)
        self.storage = PoolStorage(
            owner=deployer,
            max_utilization_bps=chain.config.max_utilization_bps,
        )

    @property
    def owner(self) -> str:
        return self.storage.owner

    @property
    def subscription_factory(self) -> Optional[str]:
        return self.storage.subscription_factory

    @property
    def platform_operator(self) -> Optional[str]:
        return self.storage.platform_operator

    def _pool(self, token: str) -> PoolTotals:
        return self.storage.pools.setdefault(normalize_address(token), PoolTotals())

    def _line(self, user: str, token: str) -> CreditLine:
        key = (normalize_address(user), normalize_address(token))
        return self.storage.credit_lines.setdefault(key, CreditLine())

    def _require_owner(self, sender: str) -> None:
        if sender != self.storage.owner:
            raise NotOwner("Ownable: caller is not the owner")

    # -- admin -----------------------------------------------------------

    @external
    def set_subscription_factory(self, sender: str, factory: str) -> None:
        self._require_owner(sender)
        if is_zero_address(factory):
            raise InvalidAddress("Invalid factory address")
        self.storage.subscription_factory = normalize_address(factory)
        self.emit("SubscriptionFactoryUpdated", factory=self.storage.subscription_factory)

    @external
    def set_platform_operator(self, sender: str, operator: str) -> None:
        self._require_owner(sender)
        if is_zero_address(operator):
            raise InvalidAddress("Invalid operator address")
        self.storage.platform_operator = normalize_address(operator)
        self.emit("PlatformOperatorUpdated", operator=self.storage.platform_operator)

    @external
    def set_max_utilization_rate(self, sender: str, rate_bps: int) -> None:
        self._require_owner(sender)
        if not 0 < rate_bps <= BPS_DENOMINATOR:
            raise InvalidAmount(f"Utilization rate must be in (0, {BPS_DENOMINATOR}] bps")
        self.storage.max_utilization_bps = int(rate_bps)
        self.emit("MaxUtilizationRateUpdated", rate_bps=int(rate_bps))

    # -- underwriters ----------------------------------------------------

    @external
    def add_stake(self, sender: str, token: str, amount: int, utilization_cap: int) -> None:
        """Stake ``amount`` and set the underwriter's utilization cap."""
        if amount <= 0:
            raise InvalidAmount("Stake amount must be > 0")
        sender = normalize_address(sender)
        token = normalize_address(token)
        stake = self.storage.stakes.setdefault((sender, token), Stake())
        new_amount = stake.amount + int(amount)
        if not 0 <= utilization_cap <= new_amount:
            raise InvalidAmount("Utilization cap cannot exceed stake")

        pool = self._pool(token)
        pool.total_staked += int(amount)
        pool.utilization_cap += int(utilization_cap) - stake.utilization_cap
        stake.amount = new_amount
        stake.utilization_cap = int(utilization_cap)

        self.at(token, Token).transfer_from(sender=self.address, owner=sender, to=self.address, amount=int(amount))
        self.emit("StakeAdded", underwriter=sender, token=token, amount=int(amount), utilization_cap=int(utilization_cap))
        logger.info("Stake added: %s staked %d of %s", sender, amount, token)

    @external
    def remove_stake(self, sender: str, token: str, amount: int) -> None:
        if amount <= 0:
            raise InvalidAmount("Stake amount must be > 0")
        sender = normalize_address(sender)
        token = normalize_address(token)
        stake = self.storage.stakes.get((sender, token), Stake())
        if stake.amount < amount:
            raise InsufficientStake(requested=amount, available=stake.amount)
        pool = self._pool(token)
        locked = pool.total_utilized + pool.total_committed
        free = pool.total_staked - locked
        if free < amount:
            raise InsufficientStake(
                requested=amount,
                available=max(free, 0),
                message="Stake is backing outstanding credit",
            )

        stake.amount -= int(amount)
        pool.total_staked -= int(amount)
        if stake.utilization_cap > stake.amount:
            pool.utilization_cap -= stake.utilization_cap - stake.amount
            stake.utilization_cap = stake.amount
        self.storage.stakes[(sender, token)] = stake

        self.at(token, Token).transfer(sender=self.address, to=sender, amount=int(amount))
        self.emit("StakeRemoved", underwriter=sender, token=token, amount=int(amount))
        logger.info("Stake removed: %s withdrew %d of %s", sender, amount, token)

    # -- credit ----------------------------------------------------------

    @external
    def grant_credit_line(self, sender: str, user: str, token: str, amount: int) -> None:
        if sender not in (self.storage.subscription_factory, self.storage.platform_operator):
            raise Unauthorized("Only factory or platform operator can grant credit")
        if is_zero_address(user):
            raise InvalidAddress("Invalid user address")
        if amount <= 0:
            raise InvalidAmount("Credit line amount must be > 0")
        pool = self._pool(token)
        backed = pool.total_staked - pool.total_utilized - pool.total_committed
        if backed < amount:
            raise InsufficientPoolCapacity(requested=amount, available=max(backed, 0))

        line = self._line(user, token)
        line.limit += int(amount)
        pool.total_committed += int(amount)
        self.emit(
            "CreditLineGranted",
            user=normalize_address(user),
            token=normalize_address(token),
            amount=int(amount),
            limit=line.limit,
        )

    @external
    def register_agreement(self, sender: str, agreement: str, user: str, token: str, max_cover: int) -> None:
        if sender != self.storage.subscription_factory:
            raise Unauthorized("Only factory can register agreements")
        if max_cover < 0:
            raise InvalidAmount("Max cover must be >= 0")
        self.storage.agreements[normalize_address(agreement)] = AgreementCover(
            user=normalize_address(user),
            token=normalize_address(token),
            max_cover=int(max_cover),
        )
        self.emit("AgreementRegistered", agreement=normalize_address(agreement), max_cover=int(max_cover))

    @external
    def draw(self, sender: str, user: str, token: str, amount: int, recipient: str) -> None:
        """Draw on ``user``'s credit line and pay ``recipient``.

        Only a registered agreement may draw, and only for its own user and
        token. Checks run in order: credit line, agreement max cover, then
        the utilization caps.
        """
        cover = self.storage.agreements.get(sender)
        if cover is None:
            raise Unauthorized("Only registered agreements can draw")
        user, token = normalize_address(user), normalize_address(token)
        if (cover.user, cover.token) != (user, token):
            raise Unauthorized("Agreement cannot draw for another user or token")
        if amount <= 0:
            raise InvalidAmount("Draw amount must be > 0")
        if is_zero_address(recipient):
            raise InvalidAddress("Invalid recipient address")

        line = self._line(user, token)
        if line.debt + amount > line.limit:
            raise CreditLineExceeded(requested=amount, available=line.limit - line.debt)
        if cover.covered + amount > cover.max_cover:
            raise MaxCoverExceeded(requested=amount, available=cover.max_cover - cover.covered)
        pool = self._pool(token)
        ceiling = min(pool.utilization_cap, bps_of(pool.total_staked, self.storage.max_utilization_bps))
        if pool.total_utilized + amount > ceiling:
            raise UtilizationCapExceeded(requested=amount, available=max(ceiling - pool.total_utilized, 0))

        line.debt += int(amount)
        cover.covered += int(amount)
        pool.total_committed -= int(amount)
        pool.total_utilized += int(amount)

        self.at(token, Token).transfer(sender=self.address, to=recipient, amount=int(amount))
        self.emit(
            "CreditDrawn",
            agreement=sender,
            user=user,
            token=token,
            amount=int(amount),
            recipient=normalize_address(recipient),
        )
        logger.info("Pool draw: %d of %s for %s via %s", amount, token, user, sender)

    @external
    def repay_debt(self, sender: str, user: str, token: str, amount: int) -> None:
        """Repay part of ``user``'s debt; the repaid credit is available again."""
        line = self._line(user, token)
        if not 0 < amount <= line.debt:
            raise InvalidAmount(f"Repayment must be in (0, {line.debt}]")
        pool = self._pool(token)
        line.debt -= int(amount)
        pool.total_utilized -= int(amount)
        pool.total_committed += int(amount)

        self.at(token, Token).transfer_from(sender=self.address, owner=sender, to=self.address, amount=int(amount))
        self.emit(
            "DebtRepaid",
            user=normalize_address(user),
            token=normalize_address(token),
            amount=int(amount),
            payer=sender,
        )

    # -- views -----------------------------------------------------------

    @property
    def max_utilization_rate(self) -> int:
        return self.storage.max_utilization_bps

    def is_registered_agreement(self, agreement: str) -> bool:
        return normalize_address(agreement) in self.storage.agreements

    def get_pool_stats(self, token: str) -> PoolStats:
        pool = self.storage.pools.get(normalize_address(token), PoolTotals())
        ceiling = min(pool.utilization_cap, bps_of(pool.total_staked, self.storage.max_utilization_bps))
        return PoolStats(
            total_staked=pool.total_staked,
            total_utilized=pool.total_utilized,
            total_committed=pool.total_committed,
            utilization_rate=rate_bps(pool.total_utilized, pool.total_staked),
            max_utilization_rate=self.storage.max_utilization_bps,
            available_capacity=max(ceiling - pool.total_utilized, 0),
        )

    def get_stake(self, underwriter: str, token: str) -> Stake:
        stake = self.storage.stakes.get((normalize_address(underwriter), normalize_address(token)), Stake())
        return Stake(amount=stake.amount, utilization_cap=stake.utilization_cap)

    def get_credit_line(self, user: str, token: str) -> int:
        line = self.storage.credit_lines.get((normalize_address(user), normalize_address(token)))
        return line.limit if line else 0

    def get_user_debt(self, user: str, token: str) -> int:
        line = self.storage.credit_lines.get((normalize_address(user), normalize_address(token)))
        return line.debt if line else 0

    def get_underwriting_capacity(self, user: str, token: str) -> int:
        """Credit the user can still draw."""
        return self.get_credit_line(user, token) - self.get_user_debt(user, token)

    def get_agreement_coverage(self, agreement: str) -> Optional[AgreementCover]:
        cover = self.storage.agreements.get(normalize_address(agreement))
        if cover is None:
            return None
        return AgreementCover(cover.user, cover.token, cover.max_cover, cover.covered)

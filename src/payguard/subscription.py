"""
Subscription agreement.

One instance per accepted ``PaymentAgreement``. Enforces the payment
schedule, pool cover for missed payments, pause/resume, cancellation and
dispute flagging.

Status transitions::

    ACTIVE -> PAUSED | CANCELLED | DEFAULTED
    PAUSED -> ACTIVE | CANCELLED

CANCELLED and DEFAULTED are terminal.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Optional

from .chain import Chain, Contract, external, nonreentrant
from .credit_ledger import CreditScoreLedger
from .errors import (
    AlreadyInitialized,
    CapacityError,
    InvalidSignature,
    InvalidStatus,
    InvalidTimestamp,
    NoPaymentForPeriod,
    NotInitialized,
    PaymentNotDue,
    PoolClaimNotAllowed,
    SubscriptionCancelled,
    SubscriptionDefaulted,
    Unauthorized,
)
from .reserve_pool import ReservePool
from .signer_agent import MAGIC_VALUE, DelegatedSignerAgent
from .token import Token
from .typed_data import (
    ZERO_ADDRESS,
    PaymentAgreement,
    SignatureLike,
    cancel_typed_data,
    eip712_domain,
    hash_typed_data,
    normalize_address,
)

logger = logging.getLogger(__name__)


class SubscriptionStatus(IntEnum):
    ACTIVE = 0
    PAUSED = 1
    CANCELLED = 2
    DEFAULTED = 3

    @property
    def is_terminal(self) -> bool:
        return self in (SubscriptionStatus.CANCELLED, SubscriptionStatus.DEFAULTED)


@dataclass
class PaymentRecord:
    """History entry for one billing period."""

    period: int
    due_date: int = 0
    paid_date: int = 0
    amount: int = 0
    from_pool: bool = False
    payer: str = ZERO_ADDRESS
    nft_token_id: int = 0
    dispute_reason: str = ""


@dataclass(frozen=True)
class SubscriptionInfo:
    agreement_id: str
    user: str
    provider: str
    token: str
    amount: int
    period: int
    start_date: int
    grace_period: int
    max_cover: int
    user_agent: str
    status: SubscriptionStatus
    next_payment_due: int
    current_period: int
    total_paid: int
    total_from_pool: int


@dataclass(frozen=True)
class DebtStatus:
    debt: int
    credit_line: int
    next_payment_due: int
    overdue: bool


@dataclass
class SubscriptionStorage:
    factory: str
    agreement: Optional[PaymentAgreement] = None
    user_agent: str = ZERO_ADDRESS
    reserve_pool: str = ZERO_ADDRESS
    credit_ledger: str = ZERO_ADDRESS
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    next_payment_due: int = 0
    current_period: int = 1
    total_paid: int = 0
    total_from_pool: int = 0
    history: dict[int, PaymentRecord] = field(default_factory=dict)


class SubscriptionAgreement(Contract):
    """Recurring payment state machine for a single agreement."""

    def __init__(self, chain: Chain, address: str, deployer: str):
        super().__init__(chain, address, deployer)
        self.storage = SubscriptionStorage(factory=deployer)

    @external
    def initialize(
        self,
        sender: str,
        agreement: PaymentAgreement,
        user_agent: str,
        reserve_pool: str,
        credit_ledger: str,
    ) -> None:
        if sender != self.storage.factory:
            raise Unauthorized("Only factory can initialize")
        if self.storage.agreement is not None:
            raise AlreadyInitialized("Already initialized")
        self.storage.agreement = agreement
        self.storage.user_agent = normalize_address(user_agent)
        self.storage.reserve_pool = normalize_address(reserve_pool)
        self.storage.credit_ledger = normalize_address(credit_ledger)
        self.storage.status = SubscriptionStatus.ACTIVE
        self.storage.next_payment_due = agreement.start_date
        self.storage.current_period = 1

    # -- helpers ---------------------------------------------------------

    @property
    def terms(self) -> PaymentAgreement:
        if self.storage.agreement is None:
            raise NotInitialized("Subscription not initialized")
        return self.storage.agreement

    @property
    def status(self) -> SubscriptionStatus:
        return self.storage.status

    @property
    def next_payment_due(self) -> int:
        return self.storage.next_payment_due

    @property
    def current_period(self) -> int:
        return self.storage.current_period

    def _user_agent(self) -> DelegatedSignerAgent:
        return self.at(self.storage.user_agent, DelegatedSignerAgent)

    def is_payer(self, account: str) -> bool:
        terms = self.terms
        account = normalize_address(account)
        if account in (terms.user, self.storage.user_agent):
            return True
        agent = self._user_agent()
        return account == agent.owner or agent.is_authorized_agent(account)

    def _require_payer(self, sender: str) -> None:
        if not self.is_payer(sender):
            raise Unauthorized("Only user or authorized agent")

    def _require_not_terminal(self) -> None:
        if self.storage.status == SubscriptionStatus.CANCELLED:
            raise SubscriptionCancelled("Subscription cancelled")
        if self.storage.status == SubscriptionStatus.DEFAULTED:
            raise SubscriptionDefaulted("Subscription defaulted")

    def _require_status(self, expected: SubscriptionStatus) -> None:
        self._require_not_terminal()
        if self.storage.status != expected:
            raise InvalidStatus(f"Subscription is {self.storage.status.name}, expected {expected.name}")

    def _set_status(self, new: SubscriptionStatus) -> None:
        old, self.storage.status = self.storage.status, new
        self.emit("StatusChanged", old_status=int(old), new_status=int(new))

    def _record_payment(self, payer: str, from_pool: bool) -> PaymentRecord:
        """Write the history entry and advance the schedule."""
        terms = self.terms
        period = self.storage.current_period
        record = PaymentRecord(
            period=period,
            due_date=self.storage.next_payment_due,
            paid_date=self.now,
            amount=terms.amount,
            from_pool=from_pool,
            payer=payer,
        )
        self.storage.history[period] = record
        self.storage.current_period = period + 1
        self.storage.next_payment_due += terms.period
        return record

    def _mint_credit(self, record: PaymentRecord) -> int:
        ledger = self.at(self.storage.credit_ledger, CreditScoreLedger)
        token_id = ledger.mint(
            sender=self.address,
            user=self.terms.user,
            subscription=self.address,
            amount=record.amount,
            from_pool=record.from_pool,
            metadata=f"{self.terms.agreement_id}:{record.period}",
        )
        self.storage.history[record.period].nft_token_id = token_id
        return token_id

    # -- payments --------------------------------------------------------

    @external
    @nonreentrant
    def pay(self, sender: str) -> int:
        """Pay the current period from ``sender``'s token balance.

        Returns the credit record id minted for the payment.
        """
        terms = self.terms
        self._require_payer(sender)
        self._require_status(SubscriptionStatus.ACTIVE)
        if self.now < self.storage.next_payment_due:
            raise PaymentNotDue("Payment not due yet")

        record = self._record_payment(payer=sender, from_pool=False)
        self.storage.total_paid += terms.amount

        self.at(terms.token, Token).transfer_from(
            sender=self.address, owner=sender, to=terms.provider, amount=terms.amount
        )
        token_id = self._mint_credit(record)
        self.emit(
            "PaymentMade",
            period=record.period,
            amount=terms.amount,
            payer=sender,
            from_pool=False,
            nft_token_id=token_id,
        )
        logger.info("Payment for period %d of %s made by %s", record.period, self.address, sender)
        return token_id

    @external
    @nonreentrant
    def claim_from_pool(self, sender: str) -> bool:
        """Cover the overdue period from the reserve pool.

        Returns True when the pool paid. If the pool cannot cover the
        payment the subscription is marked DEFAULTED and False is returned.
        """
        terms = self.terms
        factory = self.chain.code_at(self.storage.factory)
        if factory is None or sender != getattr(factory, "platform_signer", None):
            raise Unauthorized("Only platform signer can claim from pool")
        if not self.can_claim_from_pool():
            raise PoolClaimNotAllowed("Cannot claim from pool yet")

        period = self.storage.current_period
        try:
            with self.chain.transaction():
                record = self._record_payment(payer=ZERO_ADDRESS, from_pool=True)
                self.storage.total_from_pool += terms.amount
                self.at(self.storage.reserve_pool, ReservePool).draw(
                    sender=self.address,
                    user=terms.user,
                    token=terms.token,
                    amount=terms.amount,
                    recipient=terms.provider,
                )
                token_id = self._mint_credit(record)
                self.emit(
                    "PaymentMade",
                    period=record.period,
                    amount=terms.amount,
                    payer=ZERO_ADDRESS,
                    from_pool=True,
                    nft_token_id=token_id,
                )
        except CapacityError as exc:
            self._set_status(SubscriptionStatus.DEFAULTED)
            self.emit("SubscriptionDefaulted", period=period, amount=terms.amount, reason=exc.reason)
            logger.warning("Subscription %s defaulted on period %d: %s", self.address, period, exc)
            return False

        logger.info("Pool covered period %d of %s", period, self.address)
        return True

    # -- status ----------------------------------------------------------

    @external
    def pause(self, sender: str) -> None:
        self._require_payer(sender)
        self._require_status(SubscriptionStatus.ACTIVE)
        self._set_status(SubscriptionStatus.PAUSED)

    @external
    def resume(self, sender: str) -> None:
        self._require_payer(sender)
        self._require_status(SubscriptionStatus.PAUSED)
        self._set_status(SubscriptionStatus.ACTIVE)

    @external
    def cancel_by_user(self, sender: str, signature: SignatureLike, nonce: int, timestamp: int) -> None:
        """Cancel with a CancelSubscription signature from the owner or an agent.

        Any account may submit the signed request. The signer's nonce in the
        user agent is consumed, so each signature executes at most once.
        """
        terms = self.terms
        self._require_not_terminal()
        if timestamp > self.now:
            raise InvalidTimestamp("Cancellation timestamp is in the future")

        digest = hash_typed_data(
            cancel_typed_data(terms.agreement_id, nonce, timestamp, self.chain.chain_id, self.address)
        )
        agent = self._user_agent()
        if agent.is_valid_signature(digest, signature) != MAGIC_VALUE:
            raise InvalidSignature("Invalid cancellation signature")
        signer = agent.recover(digest, signature)
        agent.consume_nonce(sender=self.address, signer=signer, nonce=nonce)

        self._set_status(SubscriptionStatus.CANCELLED)
        self.emit("SubscriptionCancelled", canceller=signer, timestamp=int(timestamp))
        logger.info("Subscription %s cancelled by %s", self.address, signer)

    @external
    def emergency_cancel(self, sender: str) -> None:
        if sender != self.terms.provider:
            raise Unauthorized("Only provider")
        self._require_not_terminal()
        self._set_status(SubscriptionStatus.CANCELLED)
        self.emit("SubscriptionCancelled", canceller=sender, timestamp=self.now)
        logger.warning("Subscription %s cancelled by provider", self.address)

    @external
    def raise_dispute(self, sender: str, period: int, reason: str) -> None:
        self._require_payer(sender)
        record = self.storage.history.get(int(period))
        if record is None or record.paid_date == 0:
            raise NoPaymentForPeriod(f"No payment for period {period}")
        record.dispute_reason = reason
        self.emit("DisputeRaised", period=int(period), raised_by=sender, reason=reason)

    # -- views -----------------------------------------------------------

    def is_payment_due(self) -> bool:
        return self.storage.status == SubscriptionStatus.ACTIVE and self.now >= self.storage.next_payment_due

    def is_in_grace_period(self) -> bool:
        due = self.storage.next_payment_due
        return due <= self.now < due + self.terms.grace_period

    def can_claim_from_pool(self) -> bool:
        if self.storage.status != SubscriptionStatus.ACTIVE:
            return False
        return self.now >= self.storage.next_payment_due + self.terms.grace_period

    def get_subscription_info(self) -> SubscriptionInfo:
        terms = self.terms
        return SubscriptionInfo(
            agreement_id=terms.agreement_id,
            user=terms.user,
            provider=terms.provider,
            token=terms.token,
            amount=terms.amount,
            period=terms.period,
            start_date=terms.start_date,
            grace_period=terms.grace_period,
            max_cover=terms.max_cover,
            user_agent=self.storage.user_agent,
            status=self.storage.status,
            next_payment_due=self.storage.next_payment_due,
            current_period=self.storage.current_period,
            total_paid=self.storage.total_paid,
            total_from_pool=self.storage.total_from_pool,
        )

    def get_payment_info(self, period: int) -> PaymentRecord:
        record = self.storage.history.get(int(period))
        if record is None:
            return PaymentRecord(period=int(period))
        return dataclasses.replace(record)

    def get_payment_history(self) -> list[PaymentRecord]:
        return [dataclasses.replace(self.storage.history[p]) for p in sorted(self.storage.history)]

    def get_debt_status(self) -> DebtStatus:
        terms = self.terms
        pool = self.at(self.storage.reserve_pool, ReservePool)
        return DebtStatus(
            debt=pool.get_user_debt(terms.user, terms.token),
            credit_line=pool.get_credit_line(terms.user, terms.token),
            next_payment_due=self.storage.next_payment_due,
            overdue=self.now > self.storage.next_payment_due,
        )

    def cancel_domain(self) -> dict:
        return eip712_domain(self.chain.chain_id, self.address)

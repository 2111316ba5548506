"""
Agreement factory.

Validates two-party signed agreements, creates each user's delegated signer
agent on first use and deploys one ``SubscriptionAgreement`` per accepted
agreement. The factory is the only account the reserve pool and the credit
ledger trust to register new subscriptions.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Optional

from .chain import Chain, Contract, external
from .credit_ledger import CreditScoreLedger
from .errors import (
    AgreementAlreadyExists,
    AgreementIdMismatch,
    AlreadyExists,
    InvalidAddress,
    InvalidAgreementAmount,
    InvalidGracePeriod,
    InvalidMaxCover,
    InvalidPeriod,
    InvalidProviderAddress,
    InvalidProviderSignature,
    InvalidTokenAddress,
    InvalidUserAddress,
    InvalidUserSignature,
    NotOwner,
    StartDateNotInFuture,
)
from .reserve_pool import ReservePool
from .signer_agent import MAGIC_VALUE, DelegatedSignerAgent, SignatureValidator
from .subscription import SubscriptionAgreement
from .typed_data import (
    PaymentAgreement,
    SignatureLike,
    agreement_typed_data,
    eip712_domain,
    hash_typed_data,
    is_zero_address,
    normalize_address,
    normalize_bytes32,
    recover_signer,
)

logger = logging.getLogger(__name__)


@dataclass
class FactoryStorage:
    owner: str
    platform_signer: str
    reserve_pool: str
    credit_ledger: str
    user_agents: dict[str, str] = field(default_factory=dict)
    subscriptions: dict[str, str] = field(default_factory=dict)
    user_subscriptions: dict[str, list[str]] = field(default_factory=dict)


def _user_signature_valid(
    validator: Optional[SignatureValidator],
    user: str,
    digest: bytes,
    signature: SignatureLike,
) -> bool:
    if validator is not None:
        return validator.is_valid_signature(digest, signature) == MAGIC_VALUE
    return recover_signer(digest, signature) == user


class AgreementFactory(Contract):
    """Entry point for creating subscriptions."""

    def __init__(
        self,
        chain: Chain,
        address: str,
        deployer: str,
        platform_signer: str,
        reserve_pool: str,
        credit_ledger: str,
    ):
        super().__init__(chain, address, deployer)
        for value, label in (
            (platform_signer, "platform signer"),
            (reserve_pool, "reserve pool"),
            (credit_ledger, "credit ledger"),
        ):
            if is_zero_address(value):
                raise InvalidAddress(f"Invalid {label} address")
        self.storage = FactoryStorage(
            owner=deployer,
            platform_signer=normalize_address(platform_signer),
            reserve_pool=normalize_address(reserve_pool),
            credit_ledger=normalize_address(credit_ledger),
        )

    @property
    def owner(self) -> str:
        return self.storage.owner

    @property
    def platform_signer(self) -> str:
        return self.storage.platform_signer

    @property
    def reserve_pool(self) -> str:
        return self.storage.reserve_pool

    @property
    def credit_ledger(self) -> str:
        return self.storage.credit_ledger

    # -- user agents -----------------------------------------------------

    def _create_user_agent(self, user: str) -> DelegatedSignerAgent:
        agent = self.chain.deploy(DelegatedSignerAgent, self.address, owner=user)
        self.storage.user_agents[user] = agent.address
        self.emit("UserAgentCreated", user=user, user_agent=agent.address)
        logger.info("User agent %s created for %s", agent.address, user)
        return agent

    @external
    def create_user_agent(self, sender: str, user: str) -> str:
        if is_zero_address(user):
            raise InvalidAddress("Invalid user address")
        user = normalize_address(user)
        if user in self.storage.user_agents:
            raise AlreadyExists("User agent already exists")
        return self._create_user_agent(user).address

    # -- subscriptions ---------------------------------------------------

    def _validate_agreement(self, agreement: PaymentAgreement) -> PaymentAgreement:
        if is_zero_address(agreement.user):
            raise InvalidUserAddress("Invalid user address")
        if is_zero_address(agreement.provider):
            raise InvalidProviderAddress("Invalid provider address")
        if is_zero_address(agreement.token):
            raise InvalidTokenAddress("Invalid token address")
        if agreement.amount <= 0:
            raise InvalidAgreementAmount("Amount must be greater than 0")
        if agreement.period <= 0:
            raise InvalidPeriod("Period must be greater than 0")
        if agreement.start_date <= self.now:
            raise StartDateNotInFuture("Start date must be in the future")
        if agreement.grace_period < 0:
            raise InvalidGracePeriod("Grace period must be >= 0")
        if agreement.max_cover < 0:
            raise InvalidMaxCover("Max cover must be >= 0")

        try:
            agreement_id = normalize_bytes32(agreement.agreement_id, "agreement_id")
        except ValueError as exc:
            raise AgreementIdMismatch(str(exc)) from exc
        if agreement_id != agreement.expected_agreement_id():
            raise AgreementIdMismatch("Agreement id does not match agreement terms")
        if agreement_id in self.storage.subscriptions:
            raise AgreementAlreadyExists("Agreement already exists")

        return dataclasses.replace(
            agreement,
            agreement_id=agreement_id,
            user=normalize_address(agreement.user),
            provider=normalize_address(agreement.provider),
            token=normalize_address(agreement.token),
        )

    @external
    def create_subscription(
        self,
        sender: str,
        agreement: PaymentAgreement,
        provider_signature: SignatureLike,
        user_signature: SignatureLike,
    ) -> str:
        """Accept a signed agreement and deploy its subscription.

        The provider must sign the ``PaymentAgreement`` typed data directly.
        The user may sign directly or, once they have a user agent, through
        any signer that agent accepts. Returns the subscription address.
        """
        agreement = self._validate_agreement(agreement)
        digest = hash_typed_data(agreement_typed_data(agreement, self.chain.chain_id, self.address))

        if recover_signer(digest, provider_signature) != agreement.provider:
            raise InvalidProviderSignature("Invalid provider signature")

        agent_address = self.storage.user_agents.get(agreement.user)
        validator = self.at(agent_address, DelegatedSignerAgent) if agent_address else None
        if not _user_signature_valid(validator, agreement.user, digest, user_signature):
            raise InvalidUserSignature("Invalid user signature")

        agent = validator or self._create_user_agent(agreement.user)
        subscription = self.chain.deploy(SubscriptionAgreement, self.address)
        subscription.initialize(
            sender=self.address,
            agreement=agreement,
            user_agent=agent.address,
            reserve_pool=self.storage.reserve_pool,
            credit_ledger=self.storage.credit_ledger,
        )
        agent.link_subscription(sender=self.address, subscription=subscription.address)
        self.at(self.storage.reserve_pool, ReservePool).register_agreement(
            sender=self.address,
            agreement=subscription.address,
            user=agreement.user,
            token=agreement.token,
            max_cover=agreement.max_cover,
        )
        self.at(self.storage.credit_ledger, CreditScoreLedger).authorize_minter(
            sender=self.address, minter=subscription.address, allowed=True
        )

        self.storage.subscriptions[agreement.agreement_id] = subscription.address
        self.storage.user_subscriptions.setdefault(agreement.user, []).append(subscription.address)
        self.emit(
            "SubscriptionCreated",
            agreement_id=agreement.agreement_id,
            user=agreement.user,
            provider=agreement.provider,
            subscription=subscription.address,
            user_agent=agent.address,
        )
        logger.info(
            "Subscription %s created for agreement %s (%s -> %s)",
            subscription.address,
            agreement.agreement_id,
            agreement.user,
            agreement.provider,
        )
        return subscription.address

    # -- admin -----------------------------------------------------------

    def _require_owner(self, sender: str) -> None:
        if sender != self.storage.owner:
            raise NotOwner("Ownable: caller is not the owner")

    def _update(self, sender: str, attr: str, value: str, event: str) -> None:
        self._require_owner(sender)
        if is_zero_address(value):
            raise InvalidAddress(f"Invalid {attr.replace('_', ' ')} address")
        old = getattr(self.storage, attr)
        setattr(self.storage, attr, normalize_address(value))
        self.emit(event, old=old, new=getattr(self.storage, attr))

    @external
    def update_platform_signer(self, sender: str, new_signer: str) -> None:
        self._update(sender, "platform_signer", new_signer, "PlatformSignerUpdated")

    @external
    def update_reserve_pool(self, sender: str, new_pool: str) -> None:
        self._update(sender, "reserve_pool", new_pool, "ReservePoolUpdated")

    @external
    def update_credit_ledger(self, sender: str, new_ledger: str) -> None:
        self._update(sender, "credit_ledger", new_ledger, "CreditLedgerUpdated")

    @external
    def transfer_ownership(self, sender: str, new_owner: str) -> None:
        self._require_owner(sender)
        if is_zero_address(new_owner):
            raise InvalidAddress("New owner is the zero address")
        previous, self.storage.owner = self.storage.owner, normalize_address(new_owner)
        self.emit("OwnershipTransferred", previous_owner=previous, new_owner=self.storage.owner)

    # -- views -----------------------------------------------------------

    def get_user_agent(self, user: str) -> Optional[str]:
        return self.storage.user_agents.get(normalize_address(user))

    def get_subscription(self, agreement_id: str) -> Optional[str]:
        return self.storage.subscriptions.get(normalize_bytes32(agreement_id, "agreement_id"))

    def get_user_subscriptions(self, user: str) -> list[str]:
        return list(self.storage.user_subscriptions.get(normalize_address(user), []))

    def agreement_domain(self) -> dict:
        return eip712_domain(self.chain.chain_id, self.address)


@dataclass(frozen=True)
class Deployment:
    """Contracts of a wired PayGuard deployment."""

    factory: AgreementFactory
    reserve_pool: ReservePool
    credit_ledger: CreditScoreLedger


def deploy_payguard(chain: Chain, deployer: str, platform_signer: str) -> Deployment:
    """Deploy the ledger, pool and factory and wire them together."""
    deployer = normalize_address(deployer)
    with chain.transaction():
        ledger = chain.deploy(CreditScoreLedger, deployer)
        pool = chain.deploy(ReservePool, deployer)
        factory = chain.deploy(
            AgreementFactory,
            deployer,
            platform_signer=platform_signer,
            reserve_pool=pool.address,
            credit_ledger=ledger.address,
        )
        ledger.set_subscription_factory(sender=deployer, factory=factory.address)
        pool.set_subscription_factory(sender=deployer, factory=factory.address)
        pool.set_platform_operator(sender=deployer, operator=platform_signer)
    logger.info("PayGuard deployed: factory=%s pool=%s ledger=%s", factory.address, pool.address, ledger.address)
    return Deployment(factory=factory, reserve_pool=pool, credit_ledger=ledger)

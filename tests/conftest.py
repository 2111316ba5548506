"""Shared fixtures: a local chain with a wired PayGuard deployment."""

import pytest
from eth_account import Account

from payguard.chain import Chain
from payguard.config import ChainConfig
from payguard.factory import deploy_payguard
from payguard.subscription import SubscriptionAgreement
from payguard.token import Token
from payguard.typed_data import PaymentAgreement, sign_agreement

GENESIS = 1_700_000_000
DAY = 86_400


@pytest.fixture
def chain():
    return Chain(ChainConfig(genesis_time=GENESIS))


@pytest.fixture
def deployer():
    return Account.create()


@pytest.fixture
def platform():
    return Account.create()


@pytest.fixture
def user():
    return Account.create()


@pytest.fixture
def provider():
    return Account.create()


@pytest.fixture
def underwriter():
    return Account.create()


@pytest.fixture
def agent():
    return Account.create()


@pytest.fixture
def stranger():
    return Account.create()


@pytest.fixture
def token(chain, deployer):
    return chain.deploy(Token, deployer.address)


@pytest.fixture
def payguard(chain, deployer, platform):
    return deploy_payguard(chain, deployer.address, platform.address)


@pytest.fixture
def factory(payguard):
    return payguard.factory


@pytest.fixture
def pool(payguard):
    return payguard.reserve_pool


@pytest.fixture
def ledger(payguard):
    return payguard.credit_ledger


@pytest.fixture
def fund(token, deployer):
    """Mint ``amount`` to ``account`` and approve ``spender`` for it."""

    def _fund(account, spender, amount):
        token.mint(sender=deployer.address, to=account.address, amount=amount)
        token.approve(sender=account.address, spender=spender, amount=amount)

    return _fund


@pytest.fixture
def backed_pool(pool, token, fund, underwriter, platform, user):
    """1000 staked with a 500 utilization cap; the user holds a 200 credit line."""
    fund(underwriter, pool.address, 1000)
    pool.add_stake(sender=underwriter.address, token=token.address, amount=1000, utilization_cap=500)
    pool.grant_credit_line(sender=platform.address, user=user.address, token=token.address, amount=200)
    return pool


@pytest.fixture
def subscribe(chain, factory, token, user, provider):
    """Sign and create a subscription; returns (subscription, agreement)."""

    def _subscribe(user_signer=None, **overrides):
        terms = dict(
            user=user.address,
            provider=provider.address,
            token=token.address,
            amount=10,
            period=30 * DAY,
            start_date=chain.now + DAY,
            grace_period=3 * DAY,
            max_cover=100,
        )
        terms.update(overrides)
        agreement = PaymentAgreement.build(**terms)
        provider_sig = sign_agreement(provider.key.hex(), agreement, chain.chain_id, factory.address)
        user_sig = sign_agreement((user_signer or user).key.hex(), agreement, chain.chain_id, factory.address)
        address = factory.create_subscription(
            sender=user.address,
            agreement=agreement,
            provider_signature=provider_sig,
            user_signature=user_sig,
        )
        return chain.get(address, SubscriptionAgreement), agreement

    return _subscribe

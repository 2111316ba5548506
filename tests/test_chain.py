"""Tests for the execution substrate: transactions, deployments, dispatch."""

import pytest
from eth_account import Account

from payguard.chain import Chain
from payguard.config import ChainConfig
from payguard.errors import CallDecodeError, InsufficientBalance, InvalidAddress
from payguard.token import Token
from payguard.typed_data import encode_call


class TestClock:
    def test_genesis_and_advance(self, chain):
        start = chain.now
        assert chain.advance(60) == start + 60
        assert chain.set_time(start + 120) == start + 120

    def test_clock_never_moves_backwards(self, chain):
        with pytest.raises(ValueError):
            chain.advance(-1)
        with pytest.raises(ValueError):
            chain.set_time(chain.now - 1)


class TestTransactions:
    def test_failure_restores_storage_and_drops_events(self, chain, token, deployer):
        holder = Account.create().address
        before = len(chain.events)
        with pytest.raises(RuntimeError):
            with chain.transaction():
                token.mint(sender=deployer.address, to=holder, amount=50)
                assert token.balance_of(holder) == 50
                raise RuntimeError("abort")
        assert token.balance_of(holder) == 0
        assert token.total_supply == 0
        assert len(chain.events) == before

    def test_nested_failure_acts_as_savepoint(self, chain, token, deployer):
        a, b = Account.create().address, Account.create().address
        with chain.transaction():
            token.mint(sender=deployer.address, to=a, amount=5)
            with pytest.raises(InsufficientBalance):
                token.transfer(sender=b, to=a, amount=1)
        assert token.balance_of(a) == 5
        assert len(chain.events.filter(name="Transfer")) == 1

    def test_events_commit_with_outermost_transaction(self, chain, token, deployer):
        holder = Account.create().address
        before = len(chain.events)
        with chain.transaction():
            token.mint(sender=deployer.address, to=holder, amount=1)
            assert len(chain.events) == before
        assert len(chain.events) == before + 1
        assert chain.events.last("Transfer").args["to"] == holder

    def test_failed_deployment_is_discarded(self, chain, deployer):
        with pytest.raises(RuntimeError):
            with chain.transaction():
                token = chain.deploy(Token, deployer.address)
                raise RuntimeError("abort")
        assert chain.code_at(token.address) is None


class TestDeployments:
    def test_addresses_are_deterministic(self, deployer):
        first = Chain(ChainConfig(genesis_time=0)).deploy(Token, deployer.address)
        second = Chain(ChainConfig(genesis_time=0)).deploy(Token, deployer.address)
        assert first.address == second.address

    def test_addresses_are_unique_per_deploy(self, chain, deployer):
        a = chain.deploy(Token, deployer.address)
        b = chain.deploy(Token, deployer.address)
        assert a.address != b.address

    def test_chain_id_changes_addresses(self, deployer):
        a = Chain(ChainConfig(chain_id=1, genesis_time=0)).deploy(Token, deployer.address)
        b = Chain(ChainConfig(chain_id=2, genesis_time=0)).deploy(Token, deployer.address)
        assert a.address != b.address

    def test_get_checks_type(self, chain, token):
        assert chain.get(token.address, Token) is token
        with pytest.raises(InvalidAddress):
            chain.get(Account.create().address, Token)


class TestDispatch:
    def test_forwards_to_external_method(self, chain, token, deployer):
        spender = Account.create().address
        ok, result = chain.dispatch(deployer.address, token.address, encode_call("approve", spender=spender, amount=7))
        assert ok and result is True
        assert token.allowance(deployer.address, spender) == 7

    def test_failed_call_reports_error_and_rolls_back(self, chain, token, deployer):
        to = Account.create().address
        ok, result = chain.dispatch(deployer.address, token.address, encode_call("transfer", to=to, amount=1))
        assert not ok
        assert isinstance(result, InsufficientBalance)
        assert token.balance_of(to) == 0

    def test_internal_methods_unreachable(self, chain, token, deployer):
        ok, result = chain.dispatch(deployer.address, token.address, encode_call("_mint", to=deployer.address, amount=1))
        assert not ok
        assert isinstance(result, CallDecodeError)
        assert token.total_supply == 0

    def test_bad_arguments(self, chain, token, deployer):
        ok, result = chain.dispatch(deployer.address, token.address, encode_call("approve", nope=1))
        assert not ok
        assert isinstance(result, CallDecodeError)

    def test_plain_account_target(self, chain, deployer):
        account = Account.create().address
        assert chain.dispatch(deployer.address, account, b"") == (True, None)
        assert chain.dispatch(deployer.address, account, encode_call("pay")) == (False, None)

    def test_unexpected_error_reported_as_failure(self, chain, token, deployer):
        to = Account.create().address
        token.mint(sender=deployer.address, to=deployer.address, amount=5)
        ok, result = chain.dispatch(deployer.address, token.address, encode_call("transfer", to=to, amount="ten"))
        assert not ok
        assert isinstance(result, ValueError)
        assert token.balance_of(deployer.address) == 5


class TestCallers:
    def test_sender_is_checksummed(self, chain, token, deployer):
        spender = Account.create().address
        token.mint(sender=deployer.address.lower(), to=deployer.address, amount=3)
        token.approve(sender=deployer.address.lower(), spender=spender, amount=2)
        assert token.allowance(deployer.address, spender) == 2

    def test_malformed_sender_rejected(self, token):
        with pytest.raises(InvalidAddress):
            token.approve(sender="not-an-address", spender=token.address, amount=1)

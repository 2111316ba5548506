"""Tests for the hash-chained event log."""

import json

import pytest
from eth_account import Account

from payguard.chain import Chain
from payguard.config import ChainConfig
from payguard.events import Event, EventLog, default_key_path, read_event_file
from payguard.token import Token


@pytest.fixture
def logged_chain(tmp_path):
    config = ChainConfig(
        genesis_time=1_700_000_000,
        event_log_path=tmp_path / "events.jsonl",
        event_hmac_key="test-key",
    )
    return Chain(config)


def _mint_twice(chain):
    deployer = Account.create().address
    token = chain.deploy(Token, deployer)
    token.mint(sender=deployer, to=deployer, amount=1)
    token.mint(sender=deployer, to=deployer, amount=2)
    return token


def test_events_are_persisted_and_verified(logged_chain, tmp_path):
    _mint_twice(logged_chain)
    events = read_event_file(tmp_path / "events.jsonl", "test-key")
    assert [e.name for e in events] == ["Transfer", "Transfer"]
    assert [e.args["value"] for e in events] == [1, 2]
    assert events[1].prev_hash == events[0].event_hash
    assert logged_chain.events.read_file()[1].event_hash == events[1].event_hash


def test_event_hash_chain_detects_tampering(logged_chain, tmp_path):
    _mint_twice(logged_chain)
    path = tmp_path / "events.jsonl"
    lines = path.read_text().splitlines()
    first = json.loads(lines[0])
    first["args"]["value"] = 9999
    lines[0] = json.dumps(first, separators=(",", ":"))
    path.write_text("\n".join(lines) + "\n")

    with pytest.raises(RuntimeError, match="Event chain broken"):
        read_event_file(path, "test-key")


def test_wrong_key_fails_verification(logged_chain, tmp_path):
    _mint_twice(logged_chain)
    with pytest.raises(RuntimeError, match="Event chain broken"):
        read_event_file(tmp_path / "events.jsonl", "other-key")


def test_log_resumes_chain_across_restarts(logged_chain, tmp_path):
    _mint_twice(logged_chain)
    restarted = Chain(logged_chain.config)
    _mint_twice(restarted)
    assert len(read_event_file(tmp_path / "events.jsonl", "test-key")) == 4


def test_filter_and_last(chain, token, deployer):
    other = Account.create().address
    token.mint(sender=deployer.address, to=deployer.address, amount=3)
    token.approve(sender=deployer.address, spender=other, amount=1)
    assert len(chain.events.filter(name="Transfer")) == 1
    assert chain.events.last(name="Approval", address=token.address).args["spender"] == other
    assert chain.events.last(name="Approval", address=other) is None


def test_key_file_survives_restarts(tmp_path, monkeypatch):
    monkeypatch.delenv("PAYGUARD_EVENT_HMAC_KEY", raising=False)
    path = tmp_path / "events.jsonl"
    config = ChainConfig(genesis_time=1_700_000_000, event_log_path=path)
    _mint_twice(Chain(config))
    _mint_twice(Chain(config))

    key_path = default_key_path(path)
    assert oct(key_path.stat().st_mode & 0o777) == "0o600"
    assert len(read_event_file(path, key_path.read_text().strip())) == 4
    assert len(EventLog(path).read_file()) == 4


def test_custom_key_path(tmp_path, monkeypatch):
    monkeypatch.delenv("PAYGUARD_EVENT_HMAC_KEY", raising=False)
    path, key_path = tmp_path / "events.jsonl", tmp_path / "keys" / "events.key"
    EventLog(path, key_path=key_path).append([Event(name="A", address="0x0")])
    EventLog(path, key_path=key_path).append([Event(name="B", address="0x0")])
    assert not default_key_path(path).exists()
    assert [e.name for e in EventLog(path, key_path=key_path).read_file()] == ["A", "B"]


def test_concurrent_writers_share_one_chain(tmp_path):
    path = tmp_path / "events.jsonl"
    first, second = EventLog(path, hmac_key="k"), EventLog(path, hmac_key="k")
    first.append([Event(name="A", address="0x0")])
    second.append([Event(name="B", address="0x0")])
    first.append([Event(name="C", address="0x0")])
    events = read_event_file(path, "k")
    assert [e.name for e in events] == ["A", "B", "C"]
    assert events[2].prev_hash == events[1].event_hash

"""CLI tests: signing helpers, key handling, event verification, demo."""

import json

from click.testing import CliRunner
from eth_account import Account

from payguard.chain import Chain
from payguard.cli import main
from payguard.config import ChainConfig
from payguard.token import Token
from payguard.typed_data import (
    PaymentAgreement,
    agreement_typed_data,
    cancel_typed_data,
    compute_agreement_id,
    hash_typed_data,
    recover_signer,
)

START = 1_800_000_000


def _json_from(output: str) -> dict:
    return json.loads(output[output.index("{"):])


def _agreement_args(user, provider, token):
    return [
        "--user", user.address,
        "--provider", provider.address,
        "--token", token.address,
        "--amount", "10",
        "--period", "2592000",
        "--start-date", str(START),
        "--grace-period", "259200",
        "--max-cover", "100",
    ]


def test_agreement_id_matches_library():
    user, provider, token = Account.create(), Account.create(), Account.create()
    result = CliRunner().invoke(
        main,
        [
            "agreement-id",
            "--user", user.address,
            "--provider", provider.address,
            "--token", token.address,
            "--amount", "10",
            "--start-date", str(START),
        ],
    )
    assert result.exit_code == 0
    assert result.output.strip() == compute_agreement_id(user.address, provider.address, token.address, 10, START)


def test_sign_agreement_rejects_raw_key_on_argv():
    signer, provider, token = Account.create(), Account.create(), Account.create()
    factory = Account.create().address
    result = CliRunner().invoke(
        main,
        ["sign-agreement", "--key", signer.key.hex(), "--factory", factory]
        + _agreement_args(signer, provider, token),
    )
    assert result.exit_code != 0
    assert "Refusing --key from argv" in result.output


def test_sign_agreement_with_unsafe_flag():
    user, provider, token = Account.create(), Account.create(), Account.create()
    factory = Account.create().address
    result = CliRunner().invoke(
        main,
        [
            "sign-agreement",
            "--key", provider.key.hex(),
            "--unsafe-allow-key-arg",
            "--factory", factory,
            "--chain-id", "8453",
        ]
        + _agreement_args(user, provider, token),
    )
    assert result.exit_code == 0, result.output
    payload = _json_from(result.output)
    agreement = PaymentAgreement.from_dict(payload["agreement"])
    digest = hash_typed_data(agreement_typed_data(agreement, 8453, factory))
    assert payload["signer"] == provider.address
    assert recover_signer(digest, payload["signature"]) == provider.address
    assert agreement.agreement_id == agreement.expected_agreement_id()


def test_sign_agreement_key_from_prompt():
    user, provider, token = Account.create(), Account.create(), Account.create()
    factory = Account.create().address
    result = CliRunner().invoke(
        main,
        ["sign-agreement", "--factory", factory, "--chain-id", "31337"] + _agreement_args(user, provider, token),
        input=user.key.hex() + "\n",
    )
    assert result.exit_code == 0, result.output
    assert _json_from(result.output)["signer"] == user.address


def test_sign_agreement_rejects_malformed_key():
    user, provider, token = Account.create(), Account.create(), Account.create()
    result = CliRunner().invoke(
        main,
        ["sign-agreement", "--factory", Account.create().address] + _agreement_args(user, provider, token),
        input="0x1234\n",
    )
    assert result.exit_code == 1
    assert "Invalid key" in result.output


def test_sign_cancel():
    signer = Account.create()
    subscription = Account.create().address
    agreement_id = "0x" + "ab" * 32
    result = CliRunner().invoke(
        main,
        [
            "sign-cancel",
            "--subscription", subscription,
            "--agreement-id", agreement_id,
            "--nonce", "2",
            "--timestamp", str(START),
            "--chain-id", "31337",
        ],
        input=signer.key.hex() + "\n",
    )
    assert result.exit_code == 0, result.output
    payload = _json_from(result.output)
    digest = hash_typed_data(cancel_typed_data(agreement_id, 2, START, 31337, subscription))
    assert recover_signer(digest, payload["signature"]) == signer.address
    assert payload["nonce"] == 2


def _write_event_log(path, hmac_key):
    chain = Chain(ChainConfig(genesis_time=START, event_log_path=path, event_hmac_key=hmac_key))
    deployer, holder = Account.create(), Account.create()
    token = chain.deploy(Token, deployer.address)
    token.mint(sender=deployer.address, to=holder.address, amount=5)
    token.approve(sender=holder.address, spender=deployer.address, amount=5)
    return len(chain.events)


def test_events_verify(tmp_path):
    path = tmp_path / "events.jsonl"
    count = _write_event_log(path, "secret")
    result = CliRunner().invoke(main, ["events", "verify", str(path), "--hmac-key", "secret"])
    assert result.exit_code == 0, result.output
    assert f"Event chain intact: {count} events" in result.output


def test_events_verify_detects_tampering(tmp_path):
    path = tmp_path / "events.jsonl"
    _write_event_log(path, "secret")
    lines = path.read_text().splitlines()
    first = json.loads(lines[0])
    first["args"]["amount"] = 500
    lines[0] = json.dumps(first, separators=(",", ":"))
    path.write_text("\n".join(lines) + "\n")

    result = CliRunner().invoke(main, ["events", "verify", str(path), "--hmac-key", "secret"])
    assert result.exit_code == 1
    assert "Event chain broken" in result.output


def test_events_verify_with_key_file(tmp_path, monkeypatch):
    monkeypatch.delenv("PAYGUARD_EVENT_HMAC_KEY", raising=False)
    monkeypatch.delenv("PAYGUARD_EVENT_KEY_FILE", raising=False)
    path = tmp_path / "events.jsonl"
    count = _write_event_log(path, None)
    result = CliRunner().invoke(main, ["events", "verify", str(path)])
    assert result.exit_code == 0, result.output
    assert f"Event chain intact: {count} events" in result.output


def test_events_verify_without_any_key(tmp_path, monkeypatch):
    monkeypatch.delenv("PAYGUARD_EVENT_HMAC_KEY", raising=False)
    monkeypatch.delenv("PAYGUARD_EVENT_KEY_FILE", raising=False)
    path = tmp_path / "events.jsonl"
    path.write_text("")
    result = CliRunner().invoke(main, ["events", "verify", str(path)])
    assert result.exit_code == 1
    assert "No HMAC key given" in result.output


def test_events_verify_wrong_key(tmp_path):
    path = tmp_path / "events.jsonl"
    _write_event_log(path, "secret")
    result = CliRunner().invoke(main, ["events", "verify", str(path), "--hmac-key", "other"])
    assert result.exit_code == 1


def test_demo_runs_end_to_end():
    result = CliRunner().invoke(main, ["demo"])
    assert result.exit_code == 0, result.output
    assert "Pool covered: True" in result.output
    assert "Status: CANCELLED" in result.output
    assert "Demo complete!" in result.output

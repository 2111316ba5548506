"""
PayGuard CLI: off-chain helpers for signed subscription agreements.

Commands:
    payguard agreement-id     Compute an agreement id from its terms
    payguard sign-agreement   Sign PaymentAgreement typed data
    payguard sign-cancel      Sign a CancelSubscription request
    payguard events verify    Verify a JSONL event log's hash chain
    payguard demo             Run a full subscription flow on a local chain
"""

from __future__ import annotations

import json
import logging
import subprocess
import sys
from pathlib import Path
from typing import Optional

import click
from click.core import ParameterSource
from eth_account import Account

from .chain import Chain
from .config import ChainConfig
from .errors import PayGuardError
from .events import default_key_path, read_event_file
from .factory import deploy_payguard
from .money import format_units, parse_units
from .signer_agent import DelegatedSignerAgent
from .subscription import SubscriptionAgreement
from .token import Token
from .typed_data import (
    PaymentAgreement,
    compute_agreement_id,
    encode_call,
    sign_agent_action,
    sign_agreement,
    sign_cancel,
)


DAY = 86_400


def _resolve_private_key(key_input: str) -> str:
    candidate = key_input.strip()
    if candidate.startswith("op://"):
        result = subprocess.run(
            ["op", "read", candidate],
            capture_output=True,
            text=True,
            timeout=10,
        )
        if result.returncode != 0:
            raise RuntimeError(f"Failed to read key from 1Password reference: {result.stderr.strip()}")
        candidate = result.stdout.strip()

    if candidate.startswith("0x"):
        candidate = candidate[2:]
    if len(candidate) != 64:
        raise ValueError("Private key must be a 32-byte hex string or valid op:// reference")
    int(candidate, 16)
    return "0x" + candidate


def _refuse_key_from_argv(param: str, unsafe_allow_key_arg: bool) -> None:
    ctx = click.get_current_context(silent=True)
    key_from_argv = ctx is not None and ctx.get_parameter_source(param) == ParameterSource.COMMANDLINE
    if key_from_argv and not unsafe_allow_key_arg:
        flag = "--" + param.replace("_", "-")
        click.echo(
            f"❌ Refusing {flag} from argv. Re-run with prompt input or pass "
            "--unsafe-allow-key-arg to acknowledge the risk.",
            err=True,
        )
        sys.exit(1)


def _load_key(param: str, key_input: str, unsafe_allow_key_arg: bool) -> str:
    _refuse_key_from_argv(param, unsafe_allow_key_arg)
    try:
        return _resolve_private_key(key_input)
    except (RuntimeError, ValueError) as e:
        click.echo(f"❌ Invalid key: {e}", err=True)
        sys.exit(1)


def _chain_id(value: Optional[int]) -> int:
    return value if value is not None else ChainConfig.from_env().chain_id


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    envvar="PAYGUARD_LOG_LEVEL",
    help="Logging verbosity (default: WARNING)",
)
def main(log_level: str):
    """PayGuard: subscription payments with pool-backed cover."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command("agreement-id")
@click.option("--user", required=True, help="Subscriber address")
@click.option("--provider", required=True, help="Provider address")
@click.option("--token", required=True, help="Payment token address")
@click.option("--amount", type=int, required=True, help="Amount per period (base units)")
@click.option("--start-date", type=int, required=True, help="First due date (unix seconds)")
def agreement_id(user: str, provider: str, token: str, amount: int, start_date: int):
    """Compute the content-derived agreement id."""
    try:
        click.echo(compute_agreement_id(user, provider, token, amount, start_date))
    except PayGuardError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)


@main.command("sign-agreement")
@click.option("--key", prompt=True, hide_input=True, help="Signer private key hex or op:// reference")
@click.option(
    "--unsafe-allow-key-arg",
    is_flag=True,
    default=False,
    help="Allow passing --key via argv (unsafe; can leak in shell/process history).",
)
@click.option("--factory", required=True, help="Agreement factory address (verifying contract)")
@click.option("--chain-id", type=int, default=None, help="Chain id (default: $PAYGUARD_CHAIN_ID or 31337)")
@click.option("--user", required=True, help="Subscriber address")
@click.option("--provider", required=True, help="Provider address")
@click.option("--token", required=True, help="Payment token address")
@click.option("--amount", type=int, required=True, help="Amount per period (base units)")
@click.option("--period", type=int, required=True, help="Billing period in seconds")
@click.option("--start-date", type=int, required=True, help="First due date (unix seconds)")
@click.option("--grace-period", type=int, default=0, help="Grace period in seconds")
@click.option("--max-cover", type=int, default=0, help="Maximum total pool cover (base units)")
@click.option("--nonce", type=int, default=0, help="Agreement nonce")
def sign_agreement_cmd(
    key: str,
    unsafe_allow_key_arg: bool,
    factory: str,
    chain_id: Optional[int],
    user: str,
    provider: str,
    token: str,
    amount: int,
    period: int,
    start_date: int,
    grace_period: int,
    max_cover: int,
    nonce: int,
):
    """Sign PaymentAgreement typed data as provider or user."""
    private_key = _load_key("key", key, unsafe_allow_key_arg)
    try:
        agreement = PaymentAgreement.build(
            user=user,
            provider=provider,
            token=token,
            amount=amount,
            period=period,
            start_date=start_date,
            grace_period=grace_period,
            max_cover=max_cover,
            nonce=nonce,
        )
        signature = sign_agreement(private_key, agreement, _chain_id(chain_id), factory)
    except PayGuardError as e:
        click.echo(f"❌ Failed to sign agreement: {e}", err=True)
        sys.exit(1)

    click.echo(json.dumps(
        {
            "agreement": agreement.to_dict(),
            "signer": Account.from_key(private_key).address,
            "signature": "0x" + signature.hex(),
        },
        indent=2,
    ))


@main.command("sign-cancel")
@click.option("--key", prompt=True, hide_input=True, help="Signer private key hex or op:// reference")
@click.option(
    "--unsafe-allow-key-arg",
    is_flag=True,
    default=False,
    help="Allow passing --key via argv (unsafe; can leak in shell/process history).",
)
@click.option("--subscription", required=True, help="Subscription address (verifying contract)")
@click.option("--agreement-id", "agreement_id_", required=True, help="Agreement id (bytes32 hex)")
@click.option("--nonce", type=int, required=True, help="Signer's current nonce in the user agent")
@click.option("--timestamp", type=int, required=True, help="Request timestamp (unix seconds)")
@click.option("--chain-id", type=int, default=None, help="Chain id (default: $PAYGUARD_CHAIN_ID or 31337)")
def sign_cancel_cmd(
    key: str,
    unsafe_allow_key_arg: bool,
    subscription: str,
    agreement_id_: str,
    nonce: int,
    timestamp: int,
    chain_id: Optional[int],
):
    """Sign a CancelSubscription request."""
    private_key = _load_key("key", key, unsafe_allow_key_arg)
    try:
        signature = sign_cancel(private_key, agreement_id_, nonce, timestamp, _chain_id(chain_id), subscription)
    except (PayGuardError, ValueError) as e:
        click.echo(f"❌ Failed to sign cancellation: {e}", err=True)
        sys.exit(1)

    click.echo(json.dumps(
        {
            "agreement_id": agreement_id_,
            "subscription": subscription,
            "nonce": nonce,
            "timestamp": timestamp,
            "signer": Account.from_key(private_key).address,
            "signature": "0x" + signature.hex(),
        },
        indent=2,
    ))


@main.group("events")
def events_group():
    """Event log operations."""
    pass


@events_group.command("verify")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--hmac-key", envvar="PAYGUARD_EVENT_HMAC_KEY", default=None,
              help="HMAC key the log was written with (default: $PAYGUARD_EVENT_HMAC_KEY)")
@click.option("--key-file", envvar="PAYGUARD_EVENT_KEY_FILE", default=None,
              type=click.Path(dir_okay=False, path_type=Path),
              help="Key file used when no HMAC key is given (default: PATH.key)")
def events_verify(path: Path, hmac_key: Optional[str], key_file: Optional[Path]):
    """Verify the hash chain of a JSONL event log."""
    if not hmac_key:
        key_file = key_file or default_key_path(path)
        if not key_file.exists() or key_file.stat().st_size == 0:
            click.echo(f"❌ No HMAC key given and no key file at {key_file}", err=True)
            sys.exit(1)
        hmac_key = key_file.read_text().strip()
    try:
        events = read_event_file(path, hmac_key)
    except (RuntimeError, ValueError) as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    click.echo(f"✅ Event chain intact: {len(events)} events")


@main.command()
def demo():
    """Run a full PayGuard subscription flow on a local chain."""
    click.echo("🎬 PayGuard Demo: Subscription with Pool Cover")
    click.echo("=" * 50)

    chain = Chain(ChainConfig(genesis_time=1_700_000_000))

    click.echo("\n1️⃣  Generating test accounts...")
    deployer, platform = Account.create(), Account.create()
    user, provider, underwriter, agent = (Account.create() for _ in range(4))
    click.echo(f"   User:        {user.address}")
    click.echo(f"   Provider:    {provider.address}")
    click.echo(f"   Underwriter: {underwriter.address}")
    click.echo(f"   Agent:       {agent.address}")

    click.echo("\n2️⃣  Deploying token and PayGuard contracts...")
    token = chain.deploy(Token, deployer.address)
    deployment = deploy_payguard(chain, deployer.address, platform.address)
    factory, pool, ledger = deployment.factory, deployment.reserve_pool, deployment.credit_ledger
    click.echo(f"   Factory: {factory.address}")
    click.echo(f"   Pool:    {pool.address}")
    click.echo(f"   Ledger:  {ledger.address}")

    amount = parse_units("10")
    click.echo("\n3️⃣  Underwriter stakes 1000 tBTC, platform grants a 200 tBTC credit line...")
    token.mint(sender=deployer.address, to=underwriter.address, amount=parse_units("1000"))
    token.approve(sender=underwriter.address, spender=pool.address, amount=parse_units("1000"))
    pool.add_stake(sender=underwriter.address, token=token.address, amount=parse_units("1000"),
                   utilization_cap=parse_units("500"))
    pool.grant_credit_line(sender=platform.address, user=user.address, token=token.address,
                           amount=parse_units("200"))

    click.echo("\n4️⃣  User and provider sign a monthly agreement...")
    agreement = PaymentAgreement.build(
        user=user.address,
        provider=provider.address,
        token=token.address,
        amount=amount,
        period=30 * DAY,
        start_date=chain.now + DAY,
        grace_period=3 * DAY,
        max_cover=parse_units("100"),
    )
    provider_sig = sign_agreement(provider.key.hex(), agreement, chain.chain_id, factory.address)
    user_sig = sign_agreement(user.key.hex(), agreement, chain.chain_id, factory.address)
    subscription = chain.get(
        factory.create_subscription(
            sender=user.address,
            agreement=agreement,
            provider_signature=provider_sig,
            user_signature=user_sig,
        ),
        SubscriptionAgreement,
    )
    user_agent = factory.get_user_agent(user.address)
    click.echo(f"   ✅ Subscription: {subscription.address}")
    click.echo(f"   ✅ User agent:   {user_agent}")

    click.echo("\n5️⃣  User pays period 1 directly...")
    chain.advance(DAY)
    token.mint(sender=deployer.address, to=user.address, amount=parse_units("100"))
    token.approve(sender=user.address, spender=subscription.address, amount=parse_units("100"))
    subscription.pay(sender=user.address)
    click.echo(f"   ✅ Paid {format_units(amount)} tBTC, next due {subscription.next_payment_due}")

    click.echo("\n6️⃣  Period 2 is missed; platform claims from the pool after grace...")
    chain.set_time(subscription.next_payment_due + 3 * DAY)
    covered = subscription.claim_from_pool(sender=platform.address)
    debt = subscription.get_debt_status().debt
    click.echo(f"   {'✅' if covered else '❌'} Pool covered: {covered}, user debt {format_units(debt)} tBTC")

    click.echo("\n7️⃣  User authorizes an agent, which pauses the subscription through the relay...")
    agent_contract = chain.get(user_agent, DelegatedSignerAgent)
    agent_contract.authorize_agent(sender=user.address, agent=agent.address, allowed=True)
    data = encode_call("pause")
    nonce = agent_contract.get_agent_nonce(agent.address)
    struct_hash, signature = sign_agent_action(
        agent.key.hex(), chain.chain_id, agent_contract.address, subscription.address, data, nonce
    )
    ok, result = agent_contract.execute_agent_action(
        sender=agent.address,
        struct_hash=struct_hash,
        nonce=nonce,
        signature=signature,
        target=subscription.address,
        data=data,
    )
    click.echo(f"   {'✅' if ok else '❌'} Relayed pause, status {subscription.status.name}")
    if not ok:
        click.echo(f"   Reason: {result}")

    click.echo("\n8️⃣  User cancels with a signed request...")
    cancel_sig = sign_cancel(
        user.key.hex(),
        agreement.agreement_id,
        agent_contract.get_signer_nonce(user.address),
        chain.now,
        chain.chain_id,
        subscription.address,
    )
    subscription.cancel_by_user(
        sender=provider.address,
        signature=cancel_sig,
        nonce=agent_contract.get_signer_nonce(user.address),
        timestamp=chain.now,
    )
    click.echo(f"   ✅ Status: {subscription.status.name}")

    click.echo("\n9️⃣  Credit score...")
    score = ledger.get_credit_score(user.address)
    click.echo(f"   Score: {score.score} ({score.rating}), {ledger.balance_of(user.address)} payment points")

    click.echo("\n" + "=" * 50)
    click.echo(f"🎉 Demo complete! {len(chain.events)} events recorded.")


if __name__ == "__main__":
    main()

"""
Custodian CLI: sponsorship, quotes, escrow and audit commitments.

Commands:
    custodian policy register    Register a sponsorship policy
    custodian sponsor sign       Issue a sponsorship authorization
    custodian sponsor failures   Show canned rejection exemplars
    custodian quote generate     Sign a fiat price quote
    custodian quote verify       Verify a saved quote
    custodian ledger mint        Credit an account on the local ledger
    custodian ledger balance     Show an account's local balance
    custodian escrow ...         deposit / release / refund / dispute / resolve / info
    custodian audit ...          publish / log / verify / republish
    custodian serve              Run the HTTP API

State lives in ``$CUSTODIAN_HOME/state.json`` (default ``~/.custodian``).
"""

from __future__ import annotations

import json
import logging
import subprocess
import sys
import time
from decimal import Decimal
from pathlib import Path
from typing import NoReturn, Optional

import click
import uvicorn
from click.core import ParameterSource

from .api import create_app
from .audit import AuditStage
from .config import CustodianConfig
from .errors import CustodianError
from .escrow import EscrowRecord
from .money import format_base_units
from .service import Custodian


# Both settlement assets use 18 decimals.
_DISPLAY_DECIMALS = 18


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


def _fail(message: str) -> NoReturn:
    click.echo(f"❌ {message}", err=True)
    sys.exit(1)


class _State:
    def __init__(self, sponsor_key: Optional[str]):
        self.sponsor_key = sponsor_key
        self._custodian: Optional[Custodian] = None

    def custodian(self) -> Custodian:
        if self._custodian is None:
            config = CustodianConfig.from_env()
            key = self.sponsor_key or config.sponsor_key
            if not key:
                key = click.prompt("Sponsor key", hide_input=True)
            config.sponsor_key = _resolve_private_key(key)
            self._custodian = Custodian.from_config(config)
        return self._custodian


def _custodian(ctx: click.Context) -> Custodian:
    try:
        return ctx.find_object(_State).custodian()
    except (CustodianError, RuntimeError, ValueError) as e:
        _fail(f"Configuration error: {e}")


def _echo_escrow(record: EscrowRecord) -> None:
    click.echo(f"   Scope:   {record.scope_id}")
    click.echo(f"   State:   {record.state.name}")
    click.echo(f"   Buyer:   {record.buyer}")
    click.echo(f"   Seller:  {record.seller}")
    click.echo(f"   Amount:  {record.amount} ({record.asset})")
    if record.deposit_tx:
        click.echo(f"   Deposit: {record.deposit_tx}")
    if record.settlement_tx:
        click.echo(f"   Settled: {record.settlement_tx}")


def _echo_json(payload) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--sponsor-key",
    default=None,
    help="Sponsor private key hex or op:// reference (default: $CUSTODIAN_SPONSOR_KEY).",
)
@click.option(
    "--unsafe-allow-key-arg",
    is_flag=True,
    default=False,
    help="Allow passing --sponsor-key via argv (unsafe; can leak in shell/process history).",
)
@click.pass_context
def main(ctx: click.Context, sponsor_key: Optional[str], unsafe_allow_key_arg: bool):
    """Custodian: sponsored authorizations and custodial settlement."""
    key_from_argv = ctx.get_parameter_source("sponsor_key") == ParameterSource.COMMANDLINE
    if key_from_argv and not sponsor_key.startswith("op://") and not unsafe_allow_key_arg:
        _fail(
            "Refusing --sponsor-key from argv. Use CUSTODIAN_SPONSOR_KEY, an op:// reference, "
            "or pass --unsafe-allow-key-arg to acknowledge the risk."
        )
    ctx.obj = _State(sponsor_key)


# ── Policies and sponsorship ──────────────────────────────────────

@main.group("policy")
def policy_group():
    """Sponsorship policy management."""


@policy_group.command("register")
@click.option("--scope", "scope_id", required=True, help="Auction / session identifier")
@click.option("--beneficiary", required=True, help="Sender address to sponsor")
@click.option("--selector", "selectors", multiple=True, help="Allowed 4-byte selector (repeatable)")
@click.option("--target", "targets", multiple=True, help="Allowed call target (repeatable)")
@click.option("--max-ops", type=int, default=10, show_default=True, help="Max operations in scope")
@click.option("--expires-in", type=int, default=3600, show_default=True, help="Seconds until expiry")
@click.option("--max-gas", type=int, default=None, help="Gas ceiling per operation (recorded)")
@click.pass_context
def policy_register(ctx, scope_id, beneficiary, selectors, targets, max_ops, expires_in, max_gas):
    """Register (or replace) a beneficiary's policy; usage resets to zero."""
    custodian = _custodian(ctx)
    try:
        policy = custodian.register_policy(
            scope_id,
            beneficiary,
            allowed_selectors=list(selectors),
            allowed_targets=list(targets),
            max_ops_per_scope=max_ops,
            expiry_seconds=expires_in,
            max_gas_per_op=max_gas,
        )
    except (CustodianError, ValueError) as e:
        _fail(f"Failed to register policy: {e}")

    click.echo(f"✅ Policy registered for {policy.beneficiary}")
    click.echo(f"   Scope:     {policy.scope_id}")
    click.echo(f"   Max ops:   {policy.max_ops_per_scope}")
    if policy.allowed_selectors:
        click.echo(f"   Selectors: {', '.join(policy.allowed_selectors)}")
    click.echo(f"   Expires:   {time.strftime('%Y-%m-%d %H:%M', time.localtime(policy.expires_at))}")


@main.group("sponsor")
def sponsor_group():
    """Sponsorship authorizations."""


@sponsor_group.command("sign")
@click.option("--sender", required=True, help="Smart account address")
@click.option("--scope", "scope_id", required=True, help="Auction / session identifier")
@click.option(
    "--paymaster",
    "variant",
    type=click.Choice(["native", "token", "erc20"], case_sensitive=False),
    default="native",
    show_default=True,
)
@click.option("--validity", type=int, default=None, help="Seconds the authorization stays valid")
@click.option("--call-data", default="0x", help="Operation call data (selector is checked)")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the authorization as JSON")
@click.pass_context
def sponsor_sign(ctx, sender, scope_id, variant, validity, call_data, as_json):
    """Reserve quota and sign a paymaster authorization."""
    custodian = _custodian(ctx)
    try:
        result = custodian.sign(
            sender, scope_id, paymaster_variant=variant, validity_seconds=validity, call_data=call_data
        )
    except (CustodianError, ValueError) as e:
        _fail(str(e))

    if not result.success:
        _fail(f"Sponsorship denied [{result.code}]: {result.reason}")
    auth = result.authorization
    assert auth is not None
    if as_json:
        _echo_json(auth.to_dict())
        return
    click.echo(f"✅ Sponsorship issued for {auth.sender}")
    click.echo(f"   Paymaster:   {auth.paymaster_address}")
    click.echo(f"   Valid after: {auth.valid_after}")
    click.echo(f"   Valid until: {auth.valid_until}")
    click.echo(f"   Ops used:    {result.ops_used}")
    click.echo(f"   paymasterAndData: {auth.paymaster_and_data}")


@sponsor_group.command("failures")
@click.pass_context
def sponsor_failures(ctx):
    """Print canned rejection exemplars (no quota is consumed)."""
    _echo_json(_custodian(ctx).demo_failures())


# ── Quotes ────────────────────────────────────────────────────────

@main.group("quote")
def quote_group():
    """Signed fiat price quotes."""


@quote_group.command("generate")
@click.option("--scope", "scope_id", required=True)
@click.option("--amount", "fiat_amount", required=True, help="Fiat amount, e.g. 100.00")
@click.option("--currency", default="USD", show_default=True)
@click.option("--asset", "settlement_asset", default="ADI_NATIVE", show_default=True)
@click.option("--validity", type=int, default=None, help="Seconds the quote stays valid")
@click.option("--out", "out_path", type=click.Path(dir_okay=False, path_type=Path), default=None)
@click.pass_context
def quote_generate(ctx, scope_id, fiat_amount, currency, settlement_asset, validity, out_path):
    """Price a fiat amount in the settlement asset and sign it."""
    custodian = _custodian(ctx)
    try:
        quote = custodian.generate_quote(
            scope_id, Decimal(fiat_amount), currency, settlement_asset, validity_seconds=validity
        )
    except (CustodianError, ArithmeticError, ValueError) as e:
        _fail(f"Failed to generate quote: {e}")

    if out_path:
        out_path.write_text(json.dumps(quote.to_dict(), indent=2))
        click.echo(f"✅ Quote saved to {out_path}")
    else:
        _echo_json(quote.to_dict())


@quote_group.command("verify")
@click.argument("quote_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def quote_verify(ctx, quote_file):
    """Verify a quote's signature and contents (expiry is reported, not enforced)."""
    custodian = _custodian(ctx)
    try:
        raw = json.loads(quote_file.read_text())
    except ValueError as e:
        _fail(f"Unreadable quote file: {e}")
    if not custodian.verify_quote(raw):
        _fail("Quote is invalid")
    expired = int(raw["valid_until"]) < time.time()
    click.echo(f"✅ Quote is valid{' (expired)' if expired else ''}")


# ── Local ledger ──────────────────────────────────────────────────

@main.group("ledger")
def ledger_group():
    """Local settlement ledger."""


@ledger_group.command("mint")
@click.option("--account", required=True)
@click.option("--amount", type=int, required=True, help="Base units")
@click.option("--asset", default="native", show_default=True)
@click.pass_context
def ledger_mint(ctx, account, amount, asset):
    """Credit an account (local runs only)."""
    custodian = _custodian(ctx)
    try:
        balance = custodian.fund(account, amount, asset)
    except (CustodianError, ValueError) as e:
        _fail(str(e))
    click.echo(f"✅ {account} balance: {format_base_units(balance, _DISPLAY_DECIMALS)} ({balance} base units)")


@ledger_group.command("balance")
@click.option("--account", required=True)
@click.option("--asset", default="native", show_default=True)
@click.pass_context
def ledger_balance(ctx, account, asset):
    custodian = _custodian(ctx)
    try:
        click.echo(str(custodian.balance(account, asset)))
    except ValueError as e:
        _fail(str(e))


# ── Escrow ────────────────────────────────────────────────────────

@main.group("escrow")
def escrow_group():
    """Escrow state machine."""


def _run_escrow(action: str, outcome: str, fn, *args, **kwargs) -> None:
    try:
        record = fn(*args, **kwargs)
    except (CustodianError, ValueError) as e:
        _fail(f"Escrow {action} failed: {e}")
    click.echo(f"✅ Escrow {outcome}")
    _echo_escrow(record)


@escrow_group.command("deposit")
@click.option("--scope", "scope_id", required=True)
@click.option("--seller", required=True)
@click.option("--amount", type=int, required=True, help="Base units")
@click.option("--asset", default="native", show_default=True)
@click.option("--quote", "quote_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--caller", default=None, help="Depositing account (default: operator)")
@click.pass_context
def escrow_deposit(ctx, scope_id, seller, amount, asset, quote_file, caller):
    """Move funds into custody for a scope."""
    custodian = _custodian(ctx)
    quote = json.loads(quote_file.read_text()) if quote_file else None
    _run_escrow("deposit", "funded", custodian.deposit, scope_id, seller, amount, asset=asset, quote=quote, caller=caller)


@escrow_group.command("release")
@click.option("--scope", "scope_id", required=True)
@click.option("--caller", default=None)
@click.pass_context
def escrow_release(ctx, scope_id, caller):
    _run_escrow("release", "released", _custodian(ctx).release, scope_id, caller=caller)


@escrow_group.command("refund")
@click.option("--scope", "scope_id", required=True)
@click.option("--caller", default=None)
@click.pass_context
def escrow_refund(ctx, scope_id, caller):
    _run_escrow("refund", "refunded", _custodian(ctx).refund, scope_id, caller=caller)


@escrow_group.command("dispute")
@click.option("--scope", "scope_id", required=True)
@click.option("--caller", default=None)
@click.pass_context
def escrow_dispute(ctx, scope_id, caller):
    _run_escrow("dispute", "disputed", _custodian(ctx).dispute, scope_id, caller=caller)


@escrow_group.command("resolve")
@click.option("--scope", "scope_id", required=True)
@click.option("--to-seller/--to-buyer", "release_to_seller", required=True)
@click.option("--caller", default=None)
@click.pass_context
def escrow_resolve(ctx, scope_id, release_to_seller, caller):
    """Settle a dispute in favour of the seller or the buyer."""
    _run_escrow("resolve", "resolved", _custodian(ctx).resolve, scope_id, release_to_seller, caller=caller)


@escrow_group.command("info")
@click.argument("scope_id")
@click.pass_context
def escrow_info(ctx, scope_id):
    _echo_escrow(_custodian(ctx).escrow_info(scope_id))


# ── Audit ─────────────────────────────────────────────────────────

@main.group("audit")
def audit_group():
    """Audit commitment chain."""


@audit_group.command("publish")
@click.option("--scope", "scope_id", required=True)
@click.option("--stage", type=click.Choice([s.value for s in AuditStage]), required=True)
@click.option("--ledger-ref", default=None)
@click.option("--settlement-ref", default=None)
@click.pass_context
def audit_publish(ctx, scope_id, stage, ledger_ref, settlement_ref):
    """Commit a lifecycle stage for a scope."""
    entry = _custodian(ctx).publish_commitment(scope_id, stage, ledger_ref, settlement_ref)
    state = f"topic seq {entry.topic_sequence_number}" if entry.published else "local only"
    click.echo(f"✅ #{entry.sequence_number} {entry.stage} ({state})")
    click.echo(f"   Topic:      {entry.topic_id}")
    click.echo(f"   Commitment: {entry.commitment_hash}")


@audit_group.command("log")
@click.argument("scope_id")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.pass_context
def audit_log(ctx, scope_id, as_json):
    """Show the private audit log for a scope."""
    entries = _custodian(ctx).audit_log(scope_id)
    if as_json:
        _echo_json([e.to_dict() for e in entries])
        return
    if not entries:
        click.echo("No audit entries found.")
        return
    for entry in entries:
        flag = "📡" if entry.published else "💾"
        click.echo(f"{entry.sequence_number:>4} {flag} {entry.timestamp} {entry.stage:<20} {entry.commitment_hash}")


@audit_group.command("verify")
@click.argument("scope_id")
@click.option("--published", "check_published", is_flag=True, default=False,
              help="Also cross-check published entries against the public log")
@click.pass_context
def audit_verify(ctx, scope_id, check_published):
    """Recompute every commitment hash for a scope."""
    custodian = _custodian(ctx)
    entries = custodian.audit_log(scope_id)
    if not entries:
        _fail(f"No audit entries for {scope_id}")
    bad = 0
    for entry in entries:
        ok = custodian.verify_commitment(entry)
        if ok and check_published and entry.published:
            ok = custodian.verify_published(entry)
        if not ok:
            bad += 1
            click.echo(f"❌ #{entry.sequence_number} {entry.stage} failed verification", err=True)
    if bad:
        sys.exit(1)
    click.echo(f"✅ {len(entries)} commitment(s) verified")


@audit_group.command("republish")
@click.argument("scope_id")
@click.pass_context
def audit_republish(ctx, scope_id):
    """Retry publication of locally-recorded entries."""
    count = _custodian(ctx).republish_pending(scope_id)
    click.echo(f"✅ Republished {count} entr{'y' if count == 1 else 'ies'}")


# ── Server ────────────────────────────────────────────────────────

@main.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", type=int, default=8000, show_default=True)
@click.pass_context
def serve(ctx, host, port):
    """Run the HTTP API."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = create_app(_custodian(ctx))
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()

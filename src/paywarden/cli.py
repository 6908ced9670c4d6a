"""
Paywarden CLI: autonomous payment policy management.

Commands:
    paywarden config       Show or reset the policy configuration
    paywarden trust-gate   Configure recipient reputation requirements
    paywarden spending     Configure limits and inspect spending history
    paywarden check        Run the policy gate for a proposed payment
    paywarden pay          Fetch a URL, paying its 402 challenge if allowed
    paywarden receipts     List or clear cached payment receipts
    paywarden audit        View the audit trail
"""

from __future__ import annotations

import importlib
import json
import os
import sys
import time
from typing import Optional

import click

from .audit import AuditTrail, EventType
from .client import DryRunExecutor, PaymentClient
from .config import (
    ClientSettings,
    ConfigStore,
    PolicyConfig,
    SpendingLimit,
    TrustTier,
    default_global_limits,
    normalize_address,
)
from .errors import PaywardenError
from .ledger import DAY_SECONDS, RETENTION_SECONDS, SpendingLedger
from .money import format_units, to_units
from .policy import PolicyGate
from .trust import HttpTrustOracle, UnconfiguredTrustOracle

# ── Wiring ────────────────────────────────────────────────────────


def _units(value: Optional[str], name: str) -> Optional[int]:
    if value is None:
        return None
    try:
        return to_units(value)
    except (TypeError, ValueError) as e:
        raise click.BadParameter(str(e), param_hint=name)


def _fmt(units: Optional[int]) -> str:
    return f"{format_units(units)} USDC" if units is not None else "-"


def _oracle():
    url = os.getenv("PAYWARDEN_TRUST_ORACLE_URL")
    return HttpTrustOracle(url) if url else UnconfiguredTrustOracle()


def _policy_gate(audit: AuditTrail) -> PolicyGate:
    config = ConfigStore().load()
    return PolicyGate.build(config, oracle=_oracle(), ledger=SpendingLedger(), audit=audit)


def _update_config(mutate, reason: str) -> PolicyConfig:
    config = ConfigStore().update(mutate)
    AuditTrail().log(EventType.CONFIG_UPDATED, reason=reason)
    return config


def _load_executor(spec: str):
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise click.BadParameter("expected module:attribute", param_hint="--executor")
    try:
        target = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise click.BadParameter(f"cannot load {spec}: {e}", param_hint="--executor")
    if not hasattr(target, "pay") and callable(target):
        target = target()
    if not hasattr(target, "pay"):
        raise click.BadParameter(f"{spec} has no pay() method", param_hint="--executor")
    return target


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version="0.1.0")
def main():
    """Paywarden: policy-gated autonomous payments for HTTP 402 APIs."""
    pass


@main.group("config")
def config_group():
    """Policy configuration."""
    pass


@config_group.command("show")
def config_show():
    """Print the current policy configuration as JSON."""
    click.echo(json.dumps(ConfigStore().load().to_dict(), indent=2))


@config_group.command("reset")
@click.confirmation_option(prompt="Reset trust gate and spending limits to defaults?")
def config_reset():
    """Reset the policy configuration to defaults."""
    ConfigStore().reset()
    AuditTrail().log(EventType.CONFIG_RESET)
    click.echo("✅ Policy configuration reset to defaults")


# ── Trust gate ────────────────────────────────────────────────────

@main.group("trust-gate")
def trust_gate_group():
    """Recipient reputation requirements."""
    pass


@trust_gate_group.command("set")
@click.option("--enable/--disable", default=None, help="Turn the trust gate on or off")
@click.option("--min-score", type=click.IntRange(0, 1000), default=None, help="Minimum score (0-1000)")
@click.option(
    "--min-tier",
    type=click.Choice([t.value for t in TrustTier], case_sensitive=False),
    default=None,
    help="Minimum trust tier",
)
@click.option("--allow-unscored/--no-allow-unscored", default=None, help="Allow recipients with no score")
def trust_gate_set(
    enable: Optional[bool],
    min_score: Optional[int],
    min_tier: Optional[str],
    allow_unscored: Optional[bool],
):
    """Update trust gate settings."""

    def mutate(config: PolicyConfig):
        gate = config.trust_gate
        if enable is not None:
            gate.enabled = enable
        if min_score is not None:
            gate.min_score = min_score
        if min_tier is not None:
            gate.min_tier = TrustTier(min_tier.upper())
        if allow_unscored is not None:
            gate.allow_unscored = allow_unscored

    config = _update_config(mutate, "trust gate updated")
    gate = config.trust_gate
    click.echo(f"✅ Trust gate {'enabled' if gate.enabled else 'disabled'}")
    click.echo(f"   Min score:      {gate.min_score}")
    click.echo(f"   Min tier:       {gate.min_tier.value}")
    click.echo(f"   Allow unscored: {gate.allow_unscored}")


@trust_gate_group.command("except")
@click.argument("address")
def trust_gate_except(address: str):
    """Always trust ADDRESS, whatever its score."""
    target = normalize_address(address)

    def mutate(config: PolicyConfig):
        if not config.trust_gate.is_exception(target):
            config.trust_gate.exceptions.append(target)

    _update_config(mutate, f"trust exception added: {target}")
    click.echo(f"✅ {target} added to trust gate exceptions")


@trust_gate_group.command("unexcept")
@click.argument("address")
def trust_gate_unexcept(address: str):
    """Remove ADDRESS from the exception list."""
    target = normalize_address(address)

    def mutate(config: PolicyConfig):
        config.trust_gate.exceptions = [
            a for a in config.trust_gate.exceptions if normalize_address(a) != target
        ]

    _update_config(mutate, f"trust exception removed: {target}")
    click.echo(f"✅ {target} removed from trust gate exceptions")


# ── Spending ──────────────────────────────────────────────────────

@main.group("spending")
def spending_group():
    """Spending limits and history."""
    pass


@spending_group.command("enable")
def spending_enable():
    """Enforce spending limits."""

    def mutate(config: PolicyConfig):
        config.spending.enabled = True

    _update_config(mutate, "spending limits enabled")
    click.echo("✅ Spending limits enabled")


@spending_group.command("disable")
def spending_disable():
    """Stop enforcing spending limits."""

    def mutate(config: PolicyConfig):
        config.spending.enabled = False

    _update_config(mutate, "spending limits disabled")
    click.echo("⚠️  Spending limits disabled")


@spending_group.command("set-global")
@click.option("--max-transaction", default=None, help="Per-transaction cap (USDC)")
@click.option("--daily", default=None, help="Rolling 24h cap (USDC)")
@click.option("--weekly", default=None, help="Rolling 7d cap (USDC)")
@click.option("--monthly", default=None, help="Rolling 30d cap (USDC)")
def spending_set_global(
    max_transaction: Optional[str],
    daily: Optional[str],
    weekly: Optional[str],
    monthly: Optional[str],
):
    """Update global caps across all recipients."""
    values = {
        "max_transaction": _units(max_transaction, "--max-transaction"),
        "daily_limit": _units(daily, "--daily"),
        "weekly_limit": _units(weekly, "--weekly"),
        "monthly_limit": _units(monthly, "--monthly"),
    }

    def mutate(config: PolicyConfig):
        limits = config.spending.global_limits or default_global_limits()
        for name, value in values.items():
            if value is not None:
                setattr(limits, name, value)
        config.spending.global_limits = limits

    config = _update_config(mutate, "global spending limits updated")
    limits = config.spending.global_limits
    click.echo("✅ Global limits updated")
    click.echo(f"   Per transaction: {_fmt(limits.max_transaction)}")
    click.echo(f"   Daily:           {_fmt(limits.daily_limit)}")
    click.echo(f"   Weekly:          {_fmt(limits.weekly_limit)}")
    click.echo(f"   Monthly:         {_fmt(limits.monthly_limit)}")


@spending_group.command("set-limit")
@click.argument("address")
@click.option("--max-amount", required=True, help="Per-payment cap for this recipient (USDC)")
@click.option("--daily", default=None, help="Rolling 24h cap (USDC)")
@click.option("--weekly", default=None, help="Rolling 7d cap (USDC)")
@click.option("--monthly", default=None, help="Rolling 30d cap (USDC)")
@click.option("--total", default=None, help="Lifetime cap (USDC)")
def spending_set_limit(
    address: str,
    max_amount: str,
    daily: Optional[str],
    weekly: Optional[str],
    monthly: Optional[str],
    total: Optional[str],
):
    """Set per-recipient limits for ADDRESS."""
    limit = SpendingLimit(
        address=normalize_address(address),
        max_amount=_units(max_amount, "--max-amount"),
        daily_limit=_units(daily, "--daily"),
        weekly_limit=_units(weekly, "--weekly"),
        monthly_limit=_units(monthly, "--monthly"),
        total_limit=_units(total, "--total"),
    )

    def mutate(config: PolicyConfig):
        config.spending.set_limit(limit)

    _update_config(mutate, f"recipient limit set: {limit.address}")
    click.echo(f"✅ Limits set for {limit.address}")
    click.echo(f"   Per payment: {_fmt(limit.max_amount)}")
    click.echo(f"   Daily:       {_fmt(limit.daily_limit)}")
    click.echo(f"   Weekly:      {_fmt(limit.weekly_limit)}")
    click.echo(f"   Monthly:     {_fmt(limit.monthly_limit)}")
    click.echo(f"   Lifetime:    {_fmt(limit.total_limit)}")


@spending_group.command("remove-limit")
@click.argument("address")
def spending_remove_limit(address: str):
    """Remove per-recipient limits for ADDRESS."""
    target = normalize_address(address)
    removed = []

    def mutate(config: PolicyConfig):
        if config.spending.per_recipient.pop(target, None) is not None:
            removed.append(target)

    _update_config(mutate, f"recipient limit removed: {target}")
    if removed:
        click.echo(f"✅ Limits removed for {target}")
    else:
        click.echo(f"No limits configured for {target}")


@spending_group.command("summary")
@click.argument("address", required=False)
def spending_summary(address: Optional[str]):
    """Show spending totals, globally or for ADDRESS."""
    summary = SpendingLedger().summary(recipient=address)
    label = summary["recipient"] or "all recipients"
    click.echo(f"📊 Spending for {label}")
    click.echo(f"   Last 24h:  {_fmt(summary['daily'])}")
    click.echo(f"   Last 7d:   {_fmt(summary['weekly'])}")
    click.echo(f"   Last 30d:  {_fmt(summary['monthly'])}")
    click.echo(f"   Lifetime:  {_fmt(summary['total'])}")
    click.echo(f"   Payments:  {summary['count']}")


@spending_group.command("history")
@click.option("--recipient", default=None, help="Filter by recipient address")
@click.option("--limit", type=int, default=20, help="Number of records")
def spending_history(recipient: Optional[str], limit: int):
    """List recent spending records."""
    records = SpendingLedger().history(limit=limit, recipient=recipient)
    if not records:
        click.echo("No spending recorded.")
        return
    for record in records:
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(record.timestamp))
        click.echo(f"  {ts} {_fmt(record.amount)} → {record.recipient} ({record.execution_id})")


@spending_group.command("prune")
@click.option(
    "--max-age-days",
    type=click.IntRange(min=1),
    default=RETENTION_SECONDS // DAY_SECONDS,
    show_default=True,
    help="Delete records older than this many days",
)
def spending_prune(max_age_days: int):
    """Delete old spending records (lifetime totals are kept)."""
    removed = SpendingLedger().prune(max_age_seconds=max_age_days * DAY_SECONDS)
    AuditTrail().log(EventType.SPENDING_PRUNED, details={"removed": removed, "max_age_days": max_age_days})
    click.echo(f"🧹 Pruned {removed} record(s) older than {max_age_days} days")


@spending_group.command("clear")
@click.confirmation_option(prompt="Delete all spending history and lifetime totals?")
def spending_clear():
    """Delete all spending history."""
    SpendingLedger().clear()
    AuditTrail().log(EventType.SPENDING_CLEARED)
    click.echo("✅ Spending history cleared")


# ── Payments ──────────────────────────────────────────────────────

@main.command()
@click.argument("recipient")
@click.argument("amount")
def check(recipient: str, amount: str):
    """Run the policy gate for paying AMOUNT USDC to RECIPIENT."""
    units = _units(amount, "AMOUNT")
    decision = _policy_gate(AuditTrail()).authorize(recipient, units)

    trust = decision.checks.trust_gate
    spending = decision.checks.spending_limit
    click.echo(f"   Trust gate:     {'✅' if trust.allowed else '❌'} {trust.reason}")
    if spending is not None:
        click.echo(f"   Spending limit: {'✅' if spending.allowed else '❌'} {spending.reason}")
        if spending.remaining is not None:
            click.echo(f"   Remaining today: {_fmt(spending.remaining.daily)}")

    if decision.allowed:
        click.echo(f"✅ Payment of {_fmt(units)} to {decision.recipient} is allowed")
    else:
        click.echo(f"❌ Payment denied: {decision.reason}")
        sys.exit(1)


@main.command()
@click.argument("url")
@click.option("--method", default="GET", show_default=True, help="HTTP method")
@click.option("--max-autopay", default=None, help="Refuse challenges above this amount (USDC)")
@click.option(
    "--executor",
    "executor_spec",
    default=None,
    help="Payment executor as module:attribute (default: dry run)",
)
def pay(url: str, method: str, max_autopay: Optional[str], executor_spec: Optional[str]):
    """Request URL, paying a 402 challenge within policy."""
    executor = _load_executor(executor_spec) if executor_spec else DryRunExecutor()
    overrides = {}
    if max_autopay is not None:
        _units(max_autopay, "--max-autopay")
        overrides["max_autopay"] = max_autopay
    settings = ClientSettings.from_env(**overrides)
    def confirm(challenge, target):
        return click.confirm(
            f"Pay {challenge.amount} {challenge.asset} to {challenge.receiver} for {target}?"
        )

    audit = AuditTrail()
    client = PaymentClient(
        executor,
        policy_gate=_policy_gate(audit),
        settings=settings,
        audit=audit,
        confirm=confirm if settings.require_confirmation else None,
        on_payment=lambda amount, target, execution_id: click.echo(
            f"💸 Paid {amount} USDC for {target} ({execution_id})"
        ),
    )
    try:
        with client:
            response = client.request(method, url)
    except PaywardenError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    click.echo(f"HTTP {response.status_code}")
    click.echo(response.text)
    if response.status_code >= 400:
        sys.exit(1)


@main.command()
@click.option("--clear", "clear_cache", is_flag=True, help="Delete all cached receipts")
def receipts(clear_cache: bool):
    """List cached payment receipts."""
    client = PaymentClient(DryRunExecutor(), settings=ClientSettings.from_env(cache_receipts=True))
    with client:
        if clear_cache:
            removed = client.clear_receipts()
            click.echo(f"✅ Cleared {removed} receipt(s)")
            return
        history = client.receipt_history()

    if not history:
        click.echo("No cached receipts.")
        return
    for receipt in history:
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(receipt.paid_at))
        expires = time.strftime("%H:%M:%S", time.localtime(receipt.expires))
        click.echo(
            f"  {ts} {receipt.amount} {receipt.asset} → {receipt.receiver} "
            f"{receipt.key} (expires {expires})"
        )


@main.command()
@click.option("--recipient", default=None, help="Filter by recipient address")
@click.option("--limit", type=int, default=20, help="Number of events")
def audit(recipient: Optional[str], limit: int):
    """View the audit trail."""
    trail = AuditTrail()
    events = trail.read_events(recipient=recipient, limit=limit)

    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        status = "✅" if event.success else "❌"
        amount = f" {_fmt(int(event.amount))}" if event.amount else ""
        recipient_label = f" → {event.recipient}" if event.recipient else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        click.echo(f"  {ts} {status} {event.event_type}{amount}{recipient_label}{reason}")


if __name__ == "__main__":
    main()

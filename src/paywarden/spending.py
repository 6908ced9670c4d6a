"""
Spending limit engine.

Compares a proposed payment against per-recipient and global caps over
rolling 24h / 7d / 30d / all-time windows. All arithmetic is on integer
smallest units.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .audit import AuditSink, EventType
from .config import GlobalLimits, SpendingConfig, SpendingLimit, normalize_address
from .ledger import SpendingLedger, WindowTotals
from .money import format_units

logger = logging.getLogger(__name__)

ASSET = "USDC"


@dataclass(frozen=True)
class Remaining:
    """Headroom left under each global cap, in smallest units."""

    transaction: int
    daily: int
    weekly: int
    monthly: int

    def to_dict(self) -> dict:
        return {
            "transaction": self.transaction,
            "daily": self.daily,
            "weekly": self.weekly,
            "monthly": self.monthly,
        }


@dataclass
class SpendingLimitResult:
    allowed: bool
    reason: Optional[str] = None
    remaining: Optional[Remaining] = None

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "remaining": self.remaining.to_dict() if self.remaining else None,
        }


def _fmt(units: int) -> str:
    return f"{format_units(units)} {ASSET}"


def _window_violation(label: str, target: str, spent: int, amount: int, cap: Optional[int]) -> Optional[str]:
    if cap is None or spent + amount <= cap:
        return None
    return (
        f"{label} limit {target}would be exceeded: amount {_fmt(amount)} plus "
        f"{_fmt(spent)} already spent exceeds cap {_fmt(cap)} "
        f"({_fmt(spent + amount)}/{_fmt(cap)})"
    )


def _check_recipient(
    recipient: str,
    amount: int,
    limit: SpendingLimit,
    spent: WindowTotals,
) -> Optional[str]:
    if amount > limit.max_amount:
        return (
            f"Amount {_fmt(amount)} exceeds per-recipient limit "
            f"{_fmt(limit.max_amount)} for {recipient}"
        )
    target = f"to {recipient} "
    for label, window_spent, cap in (
        ("Daily", spent.daily, limit.daily_limit),
        ("Weekly", spent.weekly, limit.weekly_limit),
        ("Monthly", spent.monthly, limit.monthly_limit),
        ("Lifetime", spent.total, limit.total_limit),
    ):
        violation = _window_violation(label, target, window_spent, amount, cap)
        if violation:
            return violation
    return None


def _remaining(limits: GlobalLimits, spent: WindowTotals) -> Remaining:
    return Remaining(
        transaction=limits.max_transaction,
        daily=max(0, limits.daily_limit - spent.daily),
        weekly=max(0, limits.weekly_limit - spent.weekly),
        monthly=max(0, limits.monthly_limit - spent.monthly),
    )


def check_spending_limit(
    recipient: str,
    amount: int,
    config: SpendingConfig,
    recipient_spent: WindowTotals,
    global_spent: WindowTotals,
) -> SpendingLimitResult:
    """Pure limit check against already-computed window totals."""
    if not config.enabled:
        return SpendingLimitResult(allowed=True, reason="Spending limits disabled")

    if isinstance(amount, bool) or not isinstance(amount, int):
        raise TypeError("Spending amounts must be integer smallest units")
    if amount <= 0:
        return SpendingLimitResult(allowed=False, reason="Amount must be positive")

    recipient = normalize_address(recipient)
    limit = config.limit_for(recipient)
    if limit is not None:
        violation = _check_recipient(recipient, amount, limit, recipient_spent)
        if violation:
            return SpendingLimitResult(allowed=False, reason=violation)

    limits = config.global_limits
    if limits is None:
        return SpendingLimitResult(allowed=True, reason="No global limits configured")

    remaining = _remaining(limits, global_spent)
    if amount > limits.max_transaction:
        return SpendingLimitResult(
            allowed=False,
            reason=(
                f"Amount {_fmt(amount)} exceeds global transaction limit "
                f"{_fmt(limits.max_transaction)}"
            ),
            remaining=remaining,
        )
    for label, window_spent, cap in (
        ("Global daily", global_spent.daily, limits.daily_limit),
        ("Global weekly", global_spent.weekly, limits.weekly_limit),
        ("Global monthly", global_spent.monthly, limits.monthly_limit),
    ):
        violation = _window_violation(label, "", window_spent, amount, cap)
        if violation:
            return SpendingLimitResult(allowed=False, reason=violation, remaining=remaining)

    return SpendingLimitResult(allowed=True, reason="Within limits", remaining=remaining)


class SpendingLimitEngine:
    """Ledger-backed spending check with an audit trail."""

    def __init__(self, ledger: SpendingLedger, audit: Optional[AuditSink] = None):
        self.ledger = ledger
        self.audit = audit

    def evaluate(
        self,
        recipient: str,
        amount: int,
        config: SpendingConfig,
        now: Optional[float] = None,
    ) -> SpendingLimitResult:
        if not config.enabled:
            result = SpendingLimitResult(allowed=True, reason="Spending limits disabled")
            self._record(recipient, amount, result)
            return result

        try:
            recipient_spent = self.ledger.window_totals(now=now, recipient=recipient)
            global_spent = self.ledger.window_totals(now=now)
        except Exception as e:
            result = SpendingLimitResult(
                allowed=False,
                reason=f"Spending history unavailable: {type(e).__name__}: {e}",
            )
            self._record(recipient, amount, result)
            logger.warning("Spending check failed closed for %s: %s", recipient, e)
            return result

        result = check_spending_limit(
            recipient=recipient,
            amount=amount,
            config=config,
            recipient_spent=recipient_spent,
            global_spent=global_spent,
        )
        self._record(recipient, amount, result)
        if not result.allowed:
            logger.info("Spending limit denied %s %s: %s", recipient, amount, result.reason)
        return result

    def _record(self, recipient: str, amount: int, result: SpendingLimitResult) -> None:
        if self.audit is None:
            return
        self.audit.log(
            EventType.SPENDING_CHECK,
            recipient=normalize_address(recipient),
            amount=amount,
            success=result.allowed,
            reason=result.reason,
            details={"remaining": result.remaining.to_dict()} if result.remaining else None,
        )

"""
Policy gate: the single decision point before an autonomous payment.

Flow:
1. Trust gate (recipient reputation)
2. Spending limit engine (only if the trust gate allowed)
3. Caller executes the payment
4. Caller records the spending with the allowed decision
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from .audit import AuditSink, EventType
from .config import PolicyConfig, normalize_address
from .ledger import SpendingLedger, SpendingRecord
from .spending import SpendingLimitEngine, SpendingLimitResult
from .trust import TrustGate, TrustGateResult, TrustOracle

logger = logging.getLogger(__name__)


@dataclass
class PolicyChecks:
    """Sub-decisions; ``spending_limit`` stays None when the trust gate denied."""

    trust_gate: TrustGateResult
    spending_limit: Optional[SpendingLimitResult] = None

    def to_dict(self) -> dict:
        return {
            "trust_gate": self.trust_gate.to_dict(),
            "spending_limit": self.spending_limit.to_dict() if self.spending_limit else None,
        }


@dataclass
class PolicyDecision:
    recipient: str
    amount: int
    allowed: bool
    checks: PolicyChecks
    reason: Optional[str] = None
    recorded: bool = field(default=False, repr=False)

    def to_dict(self) -> dict:
        return {
            "recipient": self.recipient,
            "amount": str(self.amount),
            "allowed": self.allowed,
            "reason": self.reason,
            "checks": self.checks.to_dict(),
        }


class PolicyGate:
    """Composes the trust gate and the spending limit engine."""

    def __init__(
        self,
        config: PolicyConfig,
        trust_gate: TrustGate,
        spending: SpendingLimitEngine,
        audit: Optional[AuditSink] = None,
    ):
        self.config = config
        self.trust_gate = trust_gate
        self.spending = spending
        self.audit = audit

    @classmethod
    def build(
        cls,
        config: PolicyConfig,
        oracle: TrustOracle,
        ledger: SpendingLedger,
        audit: Optional[AuditSink] = None,
    ) -> "PolicyGate":
        return cls(
            config=config,
            trust_gate=TrustGate(oracle, audit=audit),
            spending=SpendingLimitEngine(ledger, audit=audit),
            audit=audit,
        )

    @property
    def ledger(self) -> SpendingLedger:
        return self.spending.ledger

    def authorize(
        self,
        recipient: str,
        amount: int,
        oracle: Optional[TrustOracle] = None,
        now: Optional[float] = None,
    ) -> PolicyDecision:
        """Decide whether ``amount`` (smallest units) may be paid to ``recipient``."""
        recipient = normalize_address(recipient)

        trust = self.trust_gate.evaluate(recipient, self.config.trust_gate, oracle=oracle)
        if not trust.allowed:
            decision = PolicyDecision(
                recipient=recipient,
                amount=amount,
                allowed=False,
                reason=trust.reason,
                checks=PolicyChecks(trust_gate=trust),
            )
            self._record(decision)
            return decision

        spending = self.spending.evaluate(recipient, amount, self.config.spending, now=now)
        decision = PolicyDecision(
            recipient=recipient,
            amount=amount,
            allowed=spending.allowed,
            reason=None if spending.allowed else spending.reason,
            checks=PolicyChecks(trust_gate=trust, spending_limit=spending),
        )
        self._record(decision)
        return decision

    def record_spending(
        self,
        decision: PolicyDecision,
        execution_id: str,
        timestamp: Optional[int] = None,
    ) -> SpendingRecord:
        """Record a completed payment for an allowed decision.

        Must only be called after the payment executor confirmed execution.
        """
        if not decision.allowed:
            raise ValueError(f"Cannot record spending for a denied payment: {decision.reason}")
        if decision.recorded:
            raise ValueError("Spending for this decision was already recorded")

        record = self.ledger.record(
            recipient=decision.recipient,
            amount=decision.amount,
            execution_id=execution_id,
            timestamp=timestamp,
        )
        decision.recorded = True
        if self.audit is not None:
            self.audit.log(
                EventType.SPENDING_RECORDED,
                recipient=record.recipient,
                amount=record.amount,
                details={"execution_id": execution_id},
            )
        logger.info(
            "Spending recorded: %s -> %s (%s)", record.amount, record.recipient, execution_id
        )
        return record

    def _record(self, decision: PolicyDecision) -> None:
        if self.audit is None:
            return
        self.audit.log(
            EventType.POLICY_DECISION,
            recipient=decision.recipient,
            amount=decision.amount,
            success=decision.allowed,
            reason=decision.reason,
        )

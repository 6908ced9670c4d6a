"""
Paywarden: policy-gated autonomous payments for HTTP 402 APIs.

Reputation gate + spending limits decide whether an agent may pay;
a paywall middleware charges callers; a paying client settles
challenges within policy. Full audit trail.
"""

__version__ = "0.1.0"

from .audit import AuditTrail, EventType
from .challenge import PaymentChallenge, create_challenge, parse_challenge
from .client import DryRunExecutor, ExecutionResult, PaymentClient, PaymentReceipt, derive_proof
from .config import (
    ClientSettings,
    ConfigStore,
    GlobalLimits,
    PolicyConfig,
    ServerSettings,
    SpendingConfig,
    SpendingLimit,
    TrustGateConfig,
    TrustTier,
)
from .ledger import PruneScheduler, SpendingLedger, SpendingRecord
from .policy import PolicyDecision, PolicyGate
from .spending import SpendingLimitEngine, SpendingLimitResult, check_spending_limit
from .trust import HttpTrustOracle, TrustGate, TrustGateResult, decide_trust

__all__ = [
    "AuditTrail", "EventType",
    "PaymentChallenge", "create_challenge", "parse_challenge",
    "DryRunExecutor", "ExecutionResult", "PaymentClient", "PaymentReceipt", "derive_proof",
    "ClientSettings", "ConfigStore", "GlobalLimits", "PolicyConfig", "ServerSettings",
    "SpendingConfig", "SpendingLimit", "TrustGateConfig", "TrustTier",
    "PruneScheduler", "SpendingLedger", "SpendingRecord",
    "PolicyDecision", "PolicyGate",
    "SpendingLimitEngine", "SpendingLimitResult", "check_spending_limit",
    "HttpTrustOracle", "TrustGate", "TrustGateResult", "decide_trust",
]

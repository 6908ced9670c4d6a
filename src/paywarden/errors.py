"""
Paywarden error types.

Specific exceptions for different failure modes, enabling callers
to handle each case appropriately (pay again, abort, alert, etc.).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .policy import PolicyDecision


class PaywardenError(Exception):
    """Base error for all Paywarden operations."""
    pass


# Protocol errors
class ProtocolError(PaywardenError):
    """The server spoke the payment-required protocol incorrectly."""
    pass


class MalformedChallengeError(ProtocolError):
    """A 402 response carried a missing or malformed challenge body."""
    pass


class ChallengeExpiredError(PaywardenError):
    """The payment challenge expired before it could be paid."""

    def __init__(self, nonce: str, expires: int):
        self.nonce = nonce
        self.expires = expires
        super().__init__(f"Payment challenge {nonce} expired at {expires}")


# Policy errors
class PolicyDeniedError(PaywardenError):
    """The policy gate refused the payment."""

    def __init__(self, decision: "PolicyDecision"):
        self.decision = decision
        super().__init__(f"Payment denied by policy: {decision.reason}")


class AutopayLimitError(PaywardenError):
    """Challenge amount exceeds the caller's maximum auto-pay ceiling."""

    def __init__(self, amount: str, limit: str, asset: str = "USDC"):
        self.amount = amount
        self.limit = limit
        super().__init__(
            f"Payment amount {amount} {asset} exceeds max auto-pay limit {limit} {asset}"
        )


class PaymentCancelledError(PaywardenError):
    """The confirmation hook declined the payment."""
    pass


# Payment errors
class PaymentError(PaywardenError):
    """Base error for payment failures."""
    pass


class ExecutorError(PaymentError):
    """Payment executor could not complete the payment."""

    def __init__(self, message: str, details: Any = None):
        self.details = details
        super().__init__(message)


# Verification errors (server side)
class VerificationError(PaywardenError):
    """Proof verification could not be performed."""
    pass


class FacilitatorError(VerificationError):
    """Remote facilitator failed while verifying a proof."""
    pass


# Trust errors
class TrustOracleError(PaywardenError):
    """Trust oracle was unreachable or returned an unusable score."""
    pass


# Storage errors
class StoreError(PaywardenError):
    """Local persistence (config, ledger) failed."""
    pass

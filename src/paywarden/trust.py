"""
Trust gate: decide whether a recipient is trustworthy enough to be paid
autonomously.

The decision itself (``decide_trust``) is a pure function of the config
and the oracle's score. ``TrustGate`` wraps it with the oracle lookup and
the audit write, and fails closed when the oracle cannot answer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from .audit import AuditSink, EventType
from .config import TIER_SCORES, TrustGateConfig, TrustTier, normalize_address
from .errors import TrustOracleError

logger = logging.getLogger(__name__)

MIN_SCORE = 0
MAX_SCORE = 1000


class TrustOracle(Protocol):
    """Reputation source. A score of 0 means "no reputation data"."""

    def get_score(self, address: str) -> int:
        ...


@dataclass
class TrustGateResult:
    allowed: bool
    reason: Optional[str] = None
    score: Optional[int] = None
    tier: Optional[TrustTier] = None

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "score": self.score,
            "tier": self.tier.value if self.tier else None,
        }


def tier_for_score(score: int) -> TrustTier:
    """Highest tier whose threshold the score meets."""
    best = TrustTier.STANDARD
    for tier, threshold in sorted(TIER_SCORES.items(), key=lambda item: item[1]):
        if score >= threshold:
            best = tier
    return best


def validate_score(raw) -> int:
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise TrustOracleError(f"Trust oracle returned a non-integer score: {raw!r}")
    if raw < MIN_SCORE or raw > MAX_SCORE:
        raise TrustOracleError(f"Trust oracle score {raw} outside [{MIN_SCORE}, {MAX_SCORE}]")
    return raw


def decide_trust(config: TrustGateConfig, score: int) -> TrustGateResult:
    """Apply the score rules to an already-fetched score."""
    if score == 0:
        if config.allow_unscored:
            return TrustGateResult(
                allowed=True, score=score, reason="Unscored recipient allowed by policy"
            )
        return TrustGateResult(
            allowed=False,
            score=score,
            reason=f"Recipient has no trust score. Minimum required: {config.min_score}",
        )

    if score < config.min_score:
        return TrustGateResult(
            allowed=False,
            score=score,
            reason=f"Recipient score {score} below minimum {config.min_score}",
        )

    tier = tier_for_score(score)
    if tier.threshold < config.min_tier.threshold:
        return TrustGateResult(
            allowed=False,
            score=score,
            tier=tier,
            reason=f"Recipient tier {tier.value} below required {config.min_tier.value}",
        )

    return TrustGateResult(allowed=True, score=score, tier=tier, reason="Trusted")


class TrustGate:
    """Oracle-backed trust check with an audit trail."""

    def __init__(self, oracle: TrustOracle, audit: Optional[AuditSink] = None):
        self.oracle = oracle
        self.audit = audit

    def evaluate(
        self,
        recipient: str,
        config: TrustGateConfig,
        oracle: Optional[TrustOracle] = None,
    ) -> TrustGateResult:
        if not config.enabled:
            result = TrustGateResult(allowed=True, reason="Trust gate disabled")
            self._record(recipient, result)
            return result

        if config.is_exception(recipient):
            result = TrustGateResult(allowed=True, reason="exception")
            self._record(recipient, result)
            return result

        source = oracle or self.oracle
        try:
            score = validate_score(source.get_score(recipient))
        except Exception as e:
            # Missing trust data is never implicit trust.
            result = TrustGateResult(
                allowed=False,
                reason=f"Error checking reputation: {type(e).__name__}: {e}",
            )
            self._record(recipient, result)
            logger.warning("Trust gate failed closed for %s: %s", recipient, e)
            return result

        result = decide_trust(config, score)
        self._record(recipient, result)
        if not result.allowed:
            logger.info("Trust gate denied %s: %s", recipient, result.reason)
        return result

    def _record(self, recipient: str, result: TrustGateResult) -> None:
        if self.audit is None:
            return
        self.audit.log(
            EventType.TRUST_GATE,
            recipient=normalize_address(recipient),
            success=result.allowed,
            reason=result.reason,
            details={
                "score": result.score,
                "tier": result.tier.value if result.tier else None,
            },
        )


class HttpTrustOracle:
    """Trust oracle served over HTTP at ``GET {base_url}/trust-check/{address}``."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 10.0,
        http: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._http = http or httpx.Client(timeout=timeout_seconds)

    def get_score(self, address: str) -> int:
        url = f"{self.base_url}/trust-check/{normalize_address(address)}"
        try:
            response = self._http.get(url)
        except httpx.HTTPError as e:
            raise TrustOracleError(f"Trust oracle unreachable: {e}") from e

        if response.status_code == 404:
            return 0
        if response.status_code != 200:
            raise TrustOracleError(
                f"Trust oracle returned {response.status_code}: {response.text[:200]}"
            )
        try:
            payload = response.json()
        except ValueError as e:
            raise TrustOracleError(f"Trust oracle returned malformed JSON: {e}") from e
        if not isinstance(payload, dict) or "score" not in payload:
            raise TrustOracleError("Trust oracle response has no score")
        if payload["score"] is None:
            return 0
        return validate_score(payload["score"])

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


class UnconfiguredTrustOracle:
    """Stand-in used when no oracle endpoint is configured; every lookup fails."""

    def get_score(self, address: str) -> int:
        raise TrustOracleError("No trust oracle configured (set PAYWARDEN_TRUST_ORACLE_URL)")

"""
Policy configuration and runtime settings.

PolicyConfig holds the operator's trust-gate and spending-limit rules.
ConfigStore is the single owner of its load/save lifecycle; the gates
only ever receive a config object explicitly. Amounts are integer
smallest units and are serialized as decimal strings so JSON never
carries floats.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from .errors import StoreError
from .money import parse_amount, to_units
from .storage import atomic_write_json, ensure_private_dir, file_lock, paywarden_home

logger = logging.getLogger(__name__)

CONFIG_VERSION = "1"

DEFAULT_NETWORK = "ETH-SEPOLIA"
DEFAULT_ASSET = "USDC"
DEFAULT_FACILITATOR_URL = "https://x402.coinbase.com"
DEFAULT_CHALLENGE_TTL = 300


class TrustTier(str, Enum):
    STANDARD = "STANDARD"
    BUILDING = "BUILDING"
    GOOD = "GOOD"
    EXCELLENT = "EXCELLENT"
    ELITE = "ELITE"

    @property
    def threshold(self) -> int:
        return TIER_SCORES[self]


TIER_SCORES: dict[TrustTier, int] = {
    TrustTier.STANDARD: 0,
    TrustTier.BUILDING: 400,
    TrustTier.GOOD: 600,
    TrustTier.EXCELLENT: 750,
    TrustTier.ELITE: 900,
}

SCORE_FOR_CREDIT = 600


def normalize_address(address: str) -> str:
    return address.strip().lower()


def _units_or_none(value: Any) -> Optional[int]:
    if value is None:
        return None
    return int(value)


def _str_or_none(value: Optional[int]) -> Optional[str]:
    return str(value) if value is not None else None


@dataclass
class TrustGateConfig:
    enabled: bool = False
    min_score: int = SCORE_FOR_CREDIT
    min_tier: TrustTier = TrustTier.GOOD
    allow_unscored: bool = False
    exceptions: list[str] = field(default_factory=list)

    def is_exception(self, address: str) -> bool:
        target = normalize_address(address)
        return any(normalize_address(a) == target for a in self.exceptions)

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "min_score": self.min_score,
            "min_tier": self.min_tier.value,
            "allow_unscored": self.allow_unscored,
            "exceptions": list(self.exceptions),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TrustGateConfig":
        return cls(
            enabled=bool(data.get("enabled", False)),
            min_score=int(data.get("min_score", SCORE_FOR_CREDIT)),
            min_tier=TrustTier(data.get("min_tier", TrustTier.GOOD.value)),
            allow_unscored=bool(data.get("allow_unscored", False)),
            exceptions=[str(a) for a in data.get("exceptions", [])],
        )


@dataclass
class SpendingLimit:
    """Per-recipient caps, in smallest units."""

    address: str
    max_amount: int
    daily_limit: Optional[int] = None
    weekly_limit: Optional[int] = None
    monthly_limit: Optional[int] = None
    total_limit: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "max_amount": str(self.max_amount),
            "daily_limit": _str_or_none(self.daily_limit),
            "weekly_limit": _str_or_none(self.weekly_limit),
            "monthly_limit": _str_or_none(self.monthly_limit),
            "total_limit": _str_or_none(self.total_limit),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SpendingLimit":
        return cls(
            address=normalize_address(str(data["address"])),
            max_amount=int(data["max_amount"]),
            daily_limit=_units_or_none(data.get("daily_limit")),
            weekly_limit=_units_or_none(data.get("weekly_limit")),
            monthly_limit=_units_or_none(data.get("monthly_limit")),
            total_limit=_units_or_none(data.get("total_limit")),
        )


@dataclass
class GlobalLimits:
    """Caps across all recipients, in smallest units."""

    max_transaction: int
    daily_limit: int
    weekly_limit: int
    monthly_limit: int

    def to_dict(self) -> dict:
        return {
            "max_transaction": str(self.max_transaction),
            "daily_limit": str(self.daily_limit),
            "weekly_limit": str(self.weekly_limit),
            "monthly_limit": str(self.monthly_limit),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "GlobalLimits":
        return cls(
            max_transaction=int(data["max_transaction"]),
            daily_limit=int(data["daily_limit"]),
            weekly_limit=int(data["weekly_limit"]),
            monthly_limit=int(data["monthly_limit"]),
        )


def default_global_limits() -> GlobalLimits:
    return GlobalLimits(
        max_transaction=to_units("1000"),
        daily_limit=to_units("5000"),
        weekly_limit=to_units("20000"),
        monthly_limit=to_units("50000"),
    )


@dataclass
class SpendingConfig:
    enabled: bool = False
    global_limits: Optional[GlobalLimits] = field(default_factory=default_global_limits)
    per_recipient: dict[str, SpendingLimit] = field(default_factory=dict)

    def limit_for(self, recipient: str) -> Optional[SpendingLimit]:
        return self.per_recipient.get(normalize_address(recipient))

    def set_limit(self, limit: SpendingLimit) -> None:
        limit.address = normalize_address(limit.address)
        self.per_recipient[limit.address] = limit

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "global_limits": self.global_limits.to_dict() if self.global_limits else None,
            "per_recipient": {
                addr: limit.to_dict() for addr, limit in sorted(self.per_recipient.items())
            },
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SpendingConfig":
        global_raw = data.get("global_limits")
        per_recipient = {}
        for addr, raw in (data.get("per_recipient") or {}).items():
            limit = SpendingLimit.from_dict({"address": addr, **raw})
            per_recipient[limit.address] = limit
        return cls(
            enabled=bool(data.get("enabled", False)),
            global_limits=GlobalLimits.from_dict(global_raw) if global_raw else None,
            per_recipient=per_recipient,
        )


@dataclass
class PolicyConfig:
    trust_gate: TrustGateConfig = field(default_factory=TrustGateConfig)
    spending: SpendingConfig = field(default_factory=SpendingConfig)
    version: str = CONFIG_VERSION

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "trust_gate": self.trust_gate.to_dict(),
            "spending": self.spending.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PolicyConfig":
        return cls(
            trust_gate=TrustGateConfig.from_dict(data.get("trust_gate") or {}),
            spending=SpendingConfig.from_dict(data.get("spending") or {}),
            version=str(data.get("version", CONFIG_VERSION)),
        )


class ConfigStore:
    """File-backed PolicyConfig owner with lock-based concurrency control."""

    def __init__(self, path: Optional[Path] = None):
        self.path = path or paywarden_home() / "policy.json"
        ensure_private_dir(self.path.parent)
        self._lock_path = self.path.with_suffix(self.path.suffix + ".lock")
        self._thread_lock = threading.Lock()

    def _read(self) -> Optional[PolicyConfig]:
        if not self.path.exists():
            return None
        try:
            with open(self.path, encoding="utf-8") as f:
                return PolicyConfig.from_dict(json.load(f))
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise StoreError(f"Policy config at {self.path} is unreadable: {e}") from e

    def load(self) -> PolicyConfig:
        """Load the policy config, writing defaults on first use."""
        with self._thread_lock, file_lock(self._lock_path):
            config = self._read()
            if config is None:
                config = PolicyConfig()
                atomic_write_json(self.path, config.to_dict())
            return config

    def save(self, config: PolicyConfig) -> None:
        with self._thread_lock, file_lock(self._lock_path):
            atomic_write_json(self.path, config.to_dict())
        logger.info("Policy config saved to %s", self.path)

    def update(self, mutate) -> PolicyConfig:
        """Apply ``mutate(config)`` under the store lock and persist the result."""
        with self._thread_lock, file_lock(self._lock_path):
            config = self._read() or PolicyConfig()
            mutate(config)
            atomic_write_json(self.path, config.to_dict())
        return config

    def reset(self) -> PolicyConfig:
        config = PolicyConfig()
        self.save(config)
        return config


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class ServerSettings:
    """Paywall settings shared by every protected route."""

    receiver: str
    network: str = DEFAULT_NETWORK
    asset: str = DEFAULT_ASSET
    facilitator_url: str = DEFAULT_FACILITATOR_URL
    challenge_ttl: int = DEFAULT_CHALLENGE_TTL
    # Reject proofs that do not name an issued, unexpired challenge.
    require_nonce: bool = False

    def __post_init__(self):
        if not self.receiver:
            raise ValueError("Paywall receiver address is required")
        if self.challenge_ttl <= 0:
            raise ValueError("Challenge lifetime must be positive")

    @classmethod
    def from_env(cls, **overrides) -> "ServerSettings":
        values = {
            "receiver": os.getenv("PAYWARDEN_RECEIVER", ""),
            "network": os.getenv("PAYWARDEN_NETWORK", DEFAULT_NETWORK),
            "asset": os.getenv("PAYWARDEN_ASSET", DEFAULT_ASSET),
            "facilitator_url": os.getenv("PAYWARDEN_FACILITATOR_URL", DEFAULT_FACILITATOR_URL),
            "challenge_ttl": int(os.getenv("PAYWARDEN_CHALLENGE_TTL", str(DEFAULT_CHALLENGE_TTL))),
            "require_nonce": _env_bool("PAYWARDEN_REQUIRE_NONCE", False),
        }
        values.update(overrides)
        return cls(**values)


@dataclass
class ClientSettings:
    """Autopay behaviour of a payment-aware client."""

    max_autopay: Optional[Decimal] = None
    require_confirmation: bool = False
    cache_receipts: bool = True
    receipt_dir: Optional[Path] = None
    timeout_seconds: float = 30.0

    def __post_init__(self):
        if self.max_autopay is not None:
            self.max_autopay = parse_amount(self.max_autopay)

    @classmethod
    def from_env(cls, **overrides) -> "ClientSettings":
        max_autopay = os.getenv("PAYWARDEN_MAX_AUTOPAY")
        receipt_dir = os.getenv("PAYWARDEN_RECEIPT_DIR")
        values = {
            "max_autopay": parse_amount(max_autopay) if max_autopay else None,
            "require_confirmation": _env_bool("PAYWARDEN_REQUIRE_CONFIRMATION", False),
            "cache_receipts": _env_bool("PAYWARDEN_CACHE_RECEIPTS", True),
            "receipt_dir": Path(receipt_dir) if receipt_dir else paywarden_home() / "receipts",
        }
        values.update(overrides)
        return cls(**values)

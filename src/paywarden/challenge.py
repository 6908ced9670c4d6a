"""
Payment-required challenge codec.

Wire format (body of an HTTP 402 response)::

    {
      "x-payment-required": {
        "version": "1",
        "network": "ETH-SEPOLIA",
        "receiver": "0x...",
        "asset": "USDC",
        "amount": "0.10",
        "description": "Premium data",
        "expires": 1760000000,
        "nonce": "3f0c..."
      }
    }

The amount is always a decimal string, never a JSON number.
"""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Optional

from .config import ServerSettings
from .errors import ChallengeExpiredError, MalformedChallengeError
from .money import format_amount, parse_amount

PROTOCOL_VERSION = "1"
CHALLENGE_KEY = "x-payment-required"
PROOF_HEADER = "x-payment-signature"
NONCE_HEADER = "x-payment-nonce"

_FIELDS = ("version", "network", "receiver", "asset", "amount", "description", "expires", "nonce")


@dataclass(frozen=True)
class PaymentChallenge:
    version: str
    network: str
    receiver: str
    asset: str
    amount: str
    description: str
    expires: int
    nonce: str

    def is_expired(self, now: Optional[float] = None) -> bool:
        now_ts = now if now is not None else time.time()
        return self.expires < now_ts

    def ensure_fresh(self, now: Optional[float] = None) -> "PaymentChallenge":
        if self.is_expired(now):
            raise ChallengeExpiredError(self.nonce, self.expires)
        return self

    def to_dict(self) -> dict:
        return asdict(self)

    def to_wire(self) -> dict:
        return {CHALLENGE_KEY: self.to_dict()}

    @classmethod
    def from_dict(cls, data: Any) -> "PaymentChallenge":
        if not isinstance(data, dict):
            raise MalformedChallengeError(f"'{CHALLENGE_KEY}' must be an object")
        missing = [f for f in _FIELDS if f not in data]
        if missing:
            raise MalformedChallengeError(f"Challenge missing fields: {', '.join(missing)}")

        for name in ("version", "network", "receiver", "asset", "amount", "description", "nonce"):
            if not isinstance(data[name], str):
                raise MalformedChallengeError(f"Challenge field '{name}' must be a string")
        expires = data["expires"]
        if isinstance(expires, bool) or not isinstance(expires, int):
            raise MalformedChallengeError("Challenge field 'expires' must be integer Unix seconds")
        if not data["receiver"] or not data["nonce"]:
            raise MalformedChallengeError("Challenge receiver and nonce must be non-empty")
        try:
            parse_amount(data["amount"])
        except ValueError as e:
            raise MalformedChallengeError(f"Challenge amount is not a decimal string: {e}") from e

        return cls(**{name: data[name] for name in _FIELDS})


def new_nonce() -> str:
    return uuid.uuid4().hex


def create_challenge(
    amount: str,
    description: str,
    settings: ServerSettings,
    now: Optional[float] = None,
    nonce: Optional[str] = None,
) -> PaymentChallenge:
    """Build a fresh challenge expiring ``settings.challenge_ttl`` seconds from now."""
    now_ts = int(now if now is not None else time.time())
    return PaymentChallenge(
        version=PROTOCOL_VERSION,
        network=settings.network,
        receiver=settings.receiver,
        asset=settings.asset,
        amount=format_amount(amount),
        description=description,
        expires=now_ts + settings.challenge_ttl,
        nonce=nonce or new_nonce(),
    )


def encode_challenge(challenge: PaymentChallenge) -> str:
    return json.dumps(challenge.to_wire(), separators=(",", ":"))


def parse_challenge(status_code: int, body: Any) -> PaymentChallenge:
    """Decode a 402 response body into a PaymentChallenge.

    ``body`` may be raw bytes/str or an already-decoded JSON object.
    Raises MalformedChallengeError for anything that is not a valid challenge.
    """
    if status_code != 402:
        raise MalformedChallengeError(f"Expected a 402 response, got {status_code}")

    if isinstance(body, (bytes, bytearray)):
        body = body.decode("utf-8", errors="replace")
    if isinstance(body, str):
        if not body.strip():
            raise MalformedChallengeError(f"Invalid 402 response: missing {CHALLENGE_KEY}")
        try:
            body = json.loads(body)
        except ValueError as e:
            raise MalformedChallengeError(f"Invalid 402 response: body is not JSON ({e})") from e

    if not isinstance(body, dict) or CHALLENGE_KEY not in body:
        raise MalformedChallengeError(f"Invalid 402 response: missing {CHALLENGE_KEY}")
    return PaymentChallenge.from_dict(body[CHALLENGE_KEY])

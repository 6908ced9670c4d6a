"""
Facilitator authentication helpers.

Provides:
1. API key loading from environment variables
2. Per-request JWT bearer headers for facilitator endpoints
"""

from __future__ import annotations

import base64
import os
import random
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote, urlparse

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519

from . import __version__

FACILITATOR_AUDIENCE = ["facilitator"]

FACILITATOR_KEY_ID_ENV = "PAYWARDEN_FACILITATOR_KEY_ID"
FACILITATOR_KEY_SECRET_ENV = "PAYWARDEN_FACILITATOR_KEY_SECRET"


@dataclass(frozen=True)
class FacilitatorCredentials:
    api_key_id: str
    api_key_secret: str


class JwtFacilitatorAuth:
    """Signs a short-lived JWT for every facilitator call."""

    def __init__(
        self,
        api_key_id: str,
        api_key_secret: str,
        expires_in_seconds: int = 120,
    ):
        if not api_key_id:
            raise ValueError("Facilitator API key ID is required")
        if not api_key_secret:
            raise ValueError("Facilitator API key secret is required")

        private_key, algorithm = _parse_private_key(api_key_secret)

        self._api_key_id = api_key_id
        self._private_key = private_key
        self._algorithm = algorithm
        self._expires_in_seconds = expires_in_seconds

    @property
    def algorithm(self) -> str:
        return self._algorithm

    def headers_for(self, method: str, url: str) -> dict[str, str]:
        parsed = urlparse(url)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError(f"Invalid facilitator URL: {url}")
        return {
            "Correlation-Context": _correlation_context(),
            "Authorization": self._authorization_header(method, parsed.netloc, parsed.path),
        }

    def _authorization_header(self, method: str, host: str, path: str) -> str:
        now = int(time.time())
        claims = {
            "sub": self._api_key_id,
            "iss": "paywarden",
            "aud": FACILITATOR_AUDIENCE,
            "nbf": now,
            "exp": now + self._expires_in_seconds,
            "uris": [f"{method.upper()} {host}{path}"],
        }
        token = jwt.encode(
            claims,
            self._private_key,
            algorithm=self._algorithm,
            headers={
                "alg": self._algorithm,
                "kid": self._api_key_id,
                "typ": "JWT",
                "nonce": _nonce(),
            },
        )
        return f"Bearer {token}"


def load_facilitator_credentials(
    *,
    api_key_id: Optional[str] = None,
    api_key_secret: Optional[str] = None,
) -> Optional[FacilitatorCredentials]:
    """Explicit arguments win over the environment; None when nothing is configured."""
    resolved_id = api_key_id or os.getenv(FACILITATOR_KEY_ID_ENV)
    resolved_secret = api_key_secret or os.getenv(FACILITATOR_KEY_SECRET_ENV)

    if not resolved_id and not resolved_secret:
        return None
    if not resolved_id or not resolved_secret:
        raise ValueError(
            f"Incomplete facilitator credentials. Set both {FACILITATOR_KEY_ID_ENV} "
            f"and {FACILITATOR_KEY_SECRET_ENV}."
        )
    return FacilitatorCredentials(api_key_id=resolved_id, api_key_secret=resolved_secret)


def auth_from_env() -> Optional[JwtFacilitatorAuth]:
    credentials = load_facilitator_credentials()
    if credentials is None:
        return None
    return JwtFacilitatorAuth(
        api_key_id=credentials.api_key_id,
        api_key_secret=credentials.api_key_secret,
    )


def _parse_private_key(
    key_data: str,
) -> tuple[ec.EllipticCurvePrivateKey | ed25519.Ed25519PrivateKey, str]:
    # Handle literal '\n' sequences often present in unquoted env vars.
    if "\\n" in key_data:
        key_data = key_data.replace("\\n", "\n")

    try:
        key = serialization.load_pem_private_key(key_data.encode("utf-8"), password=None)
        if isinstance(key, ec.EllipticCurvePrivateKey):
            return key, "ES256"
        if isinstance(key, ed25519.Ed25519PrivateKey):
            return key, "EdDSA"
    except ValueError:
        pass

    try:
        decoded = base64.b64decode(key_data, validate=True)
    except ValueError:
        decoded = b""
    if len(decoded) == 64:
        return ed25519.Ed25519PrivateKey.from_private_bytes(decoded[:32]), "EdDSA"

    raise ValueError("Facilitator key secret must be either a PEM EC key or a base64 Ed25519 key")


def _correlation_context() -> str:
    data = {
        "sdk_language": "python",
        "source": "paywarden",
        "source_version": __version__,
    }
    return ",".join(f"{k}={quote(str(v), safe='')}" for k, v in data.items())


def _nonce() -> str:
    return "".join(random.choices("0123456789", k=16))

"""Shared fixtures: every test gets its own PAYWARDEN_HOME."""

import pytest


_ENV_VARS = [
    "PAYWARDEN_NETWORK",
    "PAYWARDEN_RECEIVER",
    "PAYWARDEN_ASSET",
    "PAYWARDEN_FACILITATOR_URL",
    "PAYWARDEN_CHALLENGE_TTL",
    "PAYWARDEN_REQUIRE_NONCE",
    "PAYWARDEN_MAX_AUTOPAY",
    "PAYWARDEN_REQUIRE_CONFIRMATION",
    "PAYWARDEN_RECEIPT_DIR",
    "PAYWARDEN_CACHE_RECEIPTS",
    "PAYWARDEN_TRUST_ORACLE_URL",
    "PAYWARDEN_AUDIT_HMAC_KEY",
    "PAYWARDEN_FACILITATOR_KEY_ID",
    "PAYWARDEN_FACILITATOR_KEY_SECRET",
]


@pytest.fixture(autouse=True)
def paywarden_home(tmp_path, monkeypatch):
    home = tmp_path / "home"
    monkeypatch.setenv("PAYWARDEN_HOME", str(home))
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return home

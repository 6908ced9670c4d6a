"""Tests for policy configuration and runtime settings."""

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
import json

import pytest

from paywarden.config import (
    ClientSettings,
    ConfigStore,
    PolicyConfig,
    ServerSettings,
    SpendingLimit,
    TrustGateConfig,
    TrustTier,
)
from paywarden.errors import StoreError
from paywarden.money import to_units


class TestPolicyConfig:
    def test_defaults(self):
        config = PolicyConfig()
        assert config.trust_gate.enabled is False
        assert config.trust_gate.min_score == 600
        assert config.trust_gate.min_tier == TrustTier.GOOD
        assert config.trust_gate.allow_unscored is False
        assert config.spending.enabled is False
        limits = config.spending.global_limits
        assert limits.max_transaction == to_units("1000")
        assert limits.daily_limit == to_units("5000")
        assert limits.weekly_limit == to_units("20000")
        assert limits.monthly_limit == to_units("50000")

    def test_round_trip_keeps_amounts_as_strings(self):
        config = PolicyConfig()
        config.spending.set_limit(
            SpendingLimit(address="0xABC", max_amount=to_units("5"), total_limit=to_units("50"))
        )
        config.trust_gate.exceptions.append("0xdef")

        data = config.to_dict()
        assert data["spending"]["per_recipient"]["0xabc"]["max_amount"] == "5000000"
        assert data["spending"]["global_limits"]["daily_limit"] == "5000000000"

        restored = PolicyConfig.from_dict(json.loads(json.dumps(data)))
        assert restored.to_dict() == data
        assert restored.spending.limit_for("0xAbC").total_limit == to_units("50")

    def test_tier_thresholds(self):
        assert TrustTier.STANDARD.threshold == 0
        assert TrustTier.BUILDING.threshold == 400
        assert TrustTier.GOOD.threshold == 600
        assert TrustTier.EXCELLENT.threshold == 750
        assert TrustTier.ELITE.threshold == 900

    def test_exception_match_is_case_insensitive(self):
        gate = TrustGateConfig(exceptions=["0xAbCdEf"])
        assert gate.is_exception("0xabcdef")
        assert gate.is_exception("  0XABCDEF ".lower())
        assert not gate.is_exception("0x123")


class TestConfigStore:
    def test_load_writes_defaults_on_first_use(self, tmp_path):
        store = ConfigStore(tmp_path / "policy.json")
        config = store.load()
        assert config.to_dict() == PolicyConfig().to_dict()
        assert (tmp_path / "policy.json").exists()

    def test_update_persists(self, tmp_path):
        store = ConfigStore(tmp_path / "policy.json")

        def enable(config):
            config.trust_gate.enabled = True
            config.trust_gate.min_score = 750

        store.update(enable)
        reloaded = ConfigStore(tmp_path / "policy.json").load()
        assert reloaded.trust_gate.enabled is True
        assert reloaded.trust_gate.min_score == 750

    def test_reset(self, tmp_path):
        store = ConfigStore(tmp_path / "policy.json")
        store.update(lambda c: setattr(c.spending, "enabled", True))
        store.reset()
        assert store.load().spending.enabled is False

    def test_corrupt_file_raises_store_error(self, tmp_path):
        path = tmp_path / "policy.json"
        path.write_text("{not json")
        with pytest.raises(StoreError, match="unreadable"):
            ConfigStore(path).load()

    def test_concurrent_updates_do_not_lose_writes(self, tmp_path):
        store = ConfigStore(tmp_path / "policy.json")
        store.load()

        def add_exception(i):
            store.update(lambda c: c.trust_gate.exceptions.append(f"0x{i:040x}"))

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(add_exception, range(20)))

        assert len(store.load().trust_gate.exceptions) == 20

    def test_default_path_uses_home(self, paywarden_home):
        store = ConfigStore()
        assert store.path == paywarden_home / "policy.json"


class TestServerSettings:
    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("PAYWARDEN_RECEIVER", "0xReceiver")
        monkeypatch.setenv("PAYWARDEN_CHALLENGE_TTL", "60")
        settings = ServerSettings.from_env()
        assert settings.receiver == "0xReceiver"
        assert settings.network == "ETH-SEPOLIA"
        assert settings.asset == "USDC"
        assert settings.facilitator_url == "https://x402.coinbase.com"
        assert settings.challenge_ttl == 60
        assert settings.require_nonce is False

    def test_require_nonce_from_env(self, monkeypatch):
        monkeypatch.setenv("PAYWARDEN_RECEIVER", "0xReceiver")
        monkeypatch.setenv("PAYWARDEN_REQUIRE_NONCE", "true")
        assert ServerSettings.from_env().require_nonce is True

    def test_receiver_required(self):
        with pytest.raises(ValueError, match="receiver"):
            ServerSettings.from_env()

    def test_ttl_must_be_positive(self):
        with pytest.raises(ValueError, match="lifetime"):
            ServerSettings(receiver="0xabc", challenge_ttl=0)


class TestClientSettings:
    def test_from_env(self, monkeypatch, paywarden_home):
        monkeypatch.setenv("PAYWARDEN_MAX_AUTOPAY", "0.50")
        monkeypatch.setenv("PAYWARDEN_REQUIRE_CONFIRMATION", "yes")
        monkeypatch.setenv("PAYWARDEN_CACHE_RECEIPTS", "false")
        settings = ClientSettings.from_env()
        assert settings.max_autopay == Decimal("0.50")
        assert settings.require_confirmation is True
        assert settings.cache_receipts is False
        assert settings.receipt_dir == paywarden_home / "receipts"

    def test_override_wins(self, monkeypatch):
        monkeypatch.setenv("PAYWARDEN_MAX_AUTOPAY", "0.50")
        settings = ClientSettings.from_env(max_autopay="2")
        assert settings.max_autopay == Decimal("2")

"""
End-to-end demo: policy-gated autopay against the local paywall server.
"""

import tempfile
import threading
import time
import sys
from pathlib import Path

import uvicorn

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
from paywall_server import PAY_TO, app
from paywarden.audit import AuditTrail
from paywarden.client import DryRunExecutor, PaymentClient
from paywarden.config import ClientSettings, PolicyConfig, SpendingLimit
from paywarden.errors import PolicyDeniedError
from paywarden.ledger import SpendingLedger
from paywarden.money import to_units
from paywarden.policy import PolicyGate
from paywarden.trust import UnconfiguredTrustOracle

BASE_URL = "http://127.0.0.1:8402"


def run_server():
    uvicorn.run(app, host="127.0.0.1", port=8402, log_level="error")


def main():
    print("🚀 Paywarden E2E demo: paywall + policy-gated autopay")
    print("=" * 55)

    print("\n1️⃣  Starting paywall server...")
    threading.Thread(target=run_server, daemon=True).start()
    time.sleep(2)
    print(f"   ✅ Server running on {BASE_URL}")

    workdir = Path(tempfile.mkdtemp(prefix="paywarden-demo-"))
    print(f"\n2️⃣  Policy: at most 0.15 USDC per call, 0.30 USDC per day to {PAY_TO[:10]}...")
    config = PolicyConfig()
    config.spending.enabled = True
    config.spending.set_limit(
        SpendingLimit(address=PAY_TO, max_amount=to_units("0.15"), daily_limit=to_units("0.30"))
    )
    audit = AuditTrail(path=workdir / "audit.jsonl", key_path=workdir / "secrets" / "audit.key")
    gate = PolicyGate.build(
        config,
        oracle=UnconfiguredTrustOracle(),
        ledger=SpendingLedger(workdir / "spending.sqlite3"),
        audit=audit,
    )

    executor = DryRunExecutor()
    client = PaymentClient(
        executor,
        policy_gate=gate,
        settings=ClientSettings(max_autopay="1.00", receipt_dir=workdir / "receipts"),
        audit=audit,
        on_payment=lambda amount, url, execution_id: print(f"   💸 Paid {amount} USDC for {url}"),
    )

    print("\n3️⃣  Requests...")
    for path in ["/data", "/data", "/search?limit=20", "/search?limit=50"]:
        try:
            response = client.get(BASE_URL + path)
            print(f"   ✅ {path}: HTTP {response.status_code} {response.text[:60]}")
        except PolicyDeniedError as e:
            print(f"   ❌ {path}: {e}")

    print("\n4️⃣  Spending summary...")
    summary = gate.ledger.summary(recipient=PAY_TO)
    print(f"   Today:    {summary['daily']} units")
    print(f"   Payments: {summary['count']}")
    print(f"   Executor calls: {len(executor.payments)}")

    print("\n5️⃣  Audit trail...")
    for event in audit.read_events(limit=10):
        status = "✅" if event.success else "❌"
        print(f"   {status} {event.event_type} {event.reason or ''}")

    client.close()


if __name__ == "__main__":
    main()

"""Tests for the payment-aware client."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import httpx
import pytest

from paywarden.challenge import NONCE_HEADER, PROOF_HEADER, create_challenge
from paywarden.client import (
    ExecutionResult,
    PaymentClient,
    PaymentReceipt,
    ReceiptCache,
    derive_proof,
    request_key,
)
from paywarden.config import ClientSettings, PolicyConfig, ServerSettings, SpendingLimit
from paywarden.errors import (
    AutopayLimitError,
    ChallengeExpiredError,
    ExecutorError,
    MalformedChallengeError,
    PaymentCancelledError,
    PolicyDeniedError,
)
from paywarden.ledger import SpendingLedger
from paywarden.money import to_units
from paywarden.policy import PolicyGate


RECEIVER = "0x8888888888888888888888888888888888888888"
URL = "https://api.example.com/report"
SERVER = ServerSettings(receiver=RECEIVER)


class FakeExecutor:
    def __init__(self, delay=0.0, error=None):
        self.delay = delay
        self.error = error
        self.calls = []
        self._lock = threading.Lock()

    def pay(self, recipient, amount, network):
        if self.error is not None:
            raise self.error
        time.sleep(self.delay)
        with self._lock:
            self.calls.append((recipient, amount, network))
            return ExecutionResult(execution_id=f"exec-{len(self.calls)}")


class PaywalledServer:
    """MockTransport handler that charges ``price`` and accepts any proof."""

    def __init__(self, price="0.10", ttl_offset=0, accept_proofs=True, body=None):
        self.price = price
        self.ttl_offset = ttl_offset
        self.accept_proofs = accept_proofs
        self.body = body
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        proof = request.headers.get(PROOF_HEADER)
        if proof and self.accept_proofs:
            return httpx.Response(200, json={"data": "premium", "proof": proof})
        if self.body is not None:
            return httpx.Response(402, content=self.body)
        challenge = create_challenge(self.price, "Premium report", SERVER, now=time.time() + self.ttl_offset)
        return httpx.Response(402, json={"error": "Payment Required", **challenge.to_wire()})


def make_client(server, executor=None, policy_gate=None, settings=None, **hooks):
    http = httpx.Client(transport=httpx.MockTransport(server))
    return PaymentClient(
        executor or FakeExecutor(),
        policy_gate=policy_gate,
        settings=settings or ClientSettings(),
        http=http,
        **hooks,
    )


@pytest.fixture
def ledger(tmp_path):
    return SpendingLedger(tmp_path / "spending.sqlite3")


def capped_gate(ledger, max_amount):
    config = PolicyConfig()
    config.spending.enabled = True
    config.spending.set_limit(SpendingLimit(address=RECEIVER, max_amount=to_units(max_amount)))
    return PolicyGate.build(config, oracle=None, ledger=ledger)


class TestPaymentFlow:
    def test_non_402_is_returned_as_is(self):
        executor = FakeExecutor()
        client = make_client(lambda request: httpx.Response(404, text="nope"), executor=executor)
        response = client.get(URL)
        assert response.status_code == 404
        assert executor.calls == []

    def test_pays_and_replays_once(self):
        server = PaywalledServer()
        executor = FakeExecutor()
        client = make_client(server, executor=executor)

        response = client.get(URL)
        assert response.status_code == 200
        assert executor.calls == [(RECEIVER, "0.10", "ETH-SEPOLIA")]
        assert len(server.requests) == 2
        replay = server.requests[1]
        assert replay.headers[PROOF_HEADER] == response.json()["proof"]
        assert replay.headers[NONCE_HEADER]

    def test_cached_receipt_is_reused(self):
        server = PaywalledServer()
        executor = FakeExecutor()
        client = make_client(server, executor=executor)

        first = client.get(URL)
        second = client.get(URL)

        assert second.status_code == 200
        assert len(executor.calls) == 1
        assert second.json()["proof"] == first.json()["proof"]
        assert len(server.requests) == 3

    def test_cache_is_keyed_by_method_and_url(self):
        executor = FakeExecutor()
        client = make_client(PaywalledServer(), executor=executor)
        client.get(URL)
        client.post(URL)
        client.get(URL + "?page=2")
        assert len(executor.calls) == 3

    def test_query_params_are_part_of_the_key(self):
        prices = {"cheap": "0.10", "expensive": "5.00"}
        executor = FakeExecutor()

        def handler(request):
            if request.headers.get(PROOF_HEADER):
                return httpx.Response(200, json={"q": request.url.params["q"]})
            price = prices[request.url.params["q"]]
            return httpx.Response(402, json=create_challenge(price, "Report", SERVER).to_wire())

        client = make_client(handler, executor=executor)
        assert client.get(URL, params={"q": "cheap"}).json() == {"q": "cheap"}
        assert client.get(URL, params={"q": "expensive"}).json() == {"q": "expensive"}

        assert [amount for _, amount, _ in executor.calls] == ["0.10", "5.00"]
        assert sorted(r.key for r in client.receipt_history()) == [
            f"GET {URL}?q=cheap",
            f"GET {URL}?q=expensive",
        ]

    def test_caching_disabled_pays_every_time(self):
        executor = FakeExecutor()
        client = make_client(PaywalledServer(), executor=executor, settings=ClientSettings(cache_receipts=False))
        client.get(URL)
        client.get(URL)
        assert len(executor.calls) == 2
        assert client.receipt_history() == []

    def test_rejected_replay_is_not_retried(self):
        server = PaywalledServer(accept_proofs=False)
        executor = FakeExecutor()
        client = make_client(server, executor=executor)

        response = client.get(URL)
        assert response.status_code == 402
        assert len(executor.calls) == 1
        assert len(server.requests) == 2
        assert client.receipt_history() == []

    def test_concurrent_requests_pay_once(self):
        executor = FakeExecutor(delay=0.05)
        client = make_client(PaywalledServer(), executor=executor)

        with ThreadPoolExecutor(max_workers=4) as pool:
            responses = list(pool.map(lambda _: client.get(URL), range(4)))

        assert all(r.status_code == 200 for r in responses)
        assert len(executor.calls) == 1
        assert client._key_locks == {}


class TestPolicyEnforcement:
    def test_policy_denial_blocks_payment(self, ledger):
        executor = FakeExecutor()
        client = make_client(PaywalledServer(price="0.10"), executor=executor, policy_gate=capped_gate(ledger, "0.05"))

        with pytest.raises(PolicyDeniedError, match="per-recipient limit") as exc_info:
            client.get(URL)

        assert not exc_info.value.decision.allowed
        assert executor.calls == []
        assert ledger.history() == []

    def test_successful_payment_is_recorded(self, ledger):
        client = make_client(PaywalledServer(price="0.10"), policy_gate=capped_gate(ledger, "1"))
        client.get(URL)

        records = ledger.history()
        assert len(records) == 1
        assert records[0].amount == to_units("0.10")
        assert records[0].recipient == RECEIVER
        assert records[0].execution_id == "exec-1"

    def test_executor_failure_is_not_recorded(self, ledger):
        error = ConnectionError("insufficient balance")
        client = make_client(
            PaywalledServer(),
            executor=FakeExecutor(error=error),
            policy_gate=capped_gate(ledger, "1"),
        )
        with pytest.raises(ConnectionError) as exc_info:
            client.get(URL)
        assert exc_info.value is error
        assert ledger.history() == []

    def test_autopay_ceiling(self):
        executor = FakeExecutor()
        client = make_client(
            PaywalledServer(price="0.25"),
            executor=executor,
            settings=ClientSettings(max_autopay="0.20"),
        )
        with pytest.raises(AutopayLimitError, match="exceeds max auto-pay limit 0.20 USDC"):
            client.get(URL)
        assert executor.calls == []

    def test_confirmation_declined(self):
        executor = FakeExecutor()
        seen = []

        def confirm(challenge, url):
            seen.append((challenge.amount, url))
            return False

        client = make_client(
            PaywalledServer(),
            executor=executor,
            settings=ClientSettings(require_confirmation=True),
            confirm=confirm,
        )
        with pytest.raises(PaymentCancelledError):
            client.get(URL)
        assert seen == [("0.10", URL)]
        assert executor.calls == []

    def test_confirmation_required_without_hook(self):
        with pytest.raises(ValueError, match="confirmation hook"):
            PaymentClient(FakeExecutor(), settings=ClientSettings(require_confirmation=True))


class TestProtocolErrors:
    def test_malformed_challenge_is_not_paid(self):
        executor = FakeExecutor()
        client = make_client(PaywalledServer(body=b"<html>402</html>"), executor=executor)
        with pytest.raises(MalformedChallengeError):
            client.get(URL)
        assert executor.calls == []

    def test_expired_challenge_is_not_paid(self):
        executor = FakeExecutor()
        client = make_client(PaywalledServer(ttl_offset=-1000), executor=executor)
        with pytest.raises(ChallengeExpiredError):
            client.get(URL)
        assert executor.calls == []

    def test_executor_without_execution_id(self):
        class BadExecutor:
            def pay(self, recipient, amount, network):
                return {}

        client = make_client(PaywalledServer(), executor=BadExecutor())
        with pytest.raises(ExecutorError, match="no execution id"):
            client.get(URL)


class TestHooks:
    def test_success_hooks(self):
        events = []
        client = make_client(
            PaywalledServer(),
            on_challenge=lambda challenge, url: events.append(("challenge", challenge.amount)),
            on_payment=lambda amount, url, execution_id: events.append(("payment", amount, execution_id)),
            on_verified=lambda receipt: events.append(("verified", receipt.execution_id)),
        )
        client.get(URL)
        assert events == [
            ("challenge", "0.10"),
            ("payment", "0.10", "exec-1"),
            ("verified", "exec-1"),
        ]

    def test_error_hook_sees_exception_and_url(self):
        errors = []
        client = make_client(
            PaywalledServer(),
            executor=FakeExecutor(error=RuntimeError("wallet locked")),
            on_error=lambda exc, url: errors.append((str(exc), url)),
        )
        with pytest.raises(RuntimeError, match="wallet locked"):
            client.get(URL)
        assert errors == [("wallet locked", URL)]


class TestProof:
    def test_proof_is_deterministic(self):
        challenge = create_challenge("0.10", "x", SERVER)
        assert derive_proof(challenge, "exec-1") == derive_proof(challenge, "exec-1")
        assert derive_proof(challenge, "exec-1") != derive_proof(challenge, "exec-2")

    def test_proof_depends_on_nonce(self):
        a = create_challenge("0.10", "x", SERVER)
        b = create_challenge("0.10", "x", SERVER)
        assert derive_proof(a, "exec-1") != derive_proof(b, "exec-1")


class TestReceiptCache:
    def _receipt(self, key, expires):
        return PaymentReceipt(
            key=key,
            url=URL,
            amount="0.10",
            asset="USDC",
            network="ETH-SEPOLIA",
            receiver=RECEIVER,
            nonce="n-1",
            execution_id="exec-1",
            proof="proof-1",
            expires=expires,
            paid_at=int(time.time()),
        )

    def test_receipts_survive_restart(self, tmp_path):
        settings = ClientSettings(receipt_dir=tmp_path / "receipts")
        executor = FakeExecutor()
        make_client(PaywalledServer(), executor=executor, settings=settings).get(URL)

        restarted = make_client(PaywalledServer(), executor=executor, settings=settings)
        assert [r.key for r in restarted.receipt_history()] == [request_key("GET", URL)]
        restarted.get(URL)
        assert len(executor.calls) == 1

    def test_unwritable_receipt_dir_still_returns_paid_response(self, tmp_path):
        receipt_dir = tmp_path / "receipts"
        executor = FakeExecutor()
        client = make_client(PaywalledServer(), executor=executor, settings=ClientSettings(receipt_dir=receipt_dir))

        receipt_dir.rmdir()
        receipt_dir.write_text("not a directory")

        response = client.get(URL)
        assert response.status_code == 200
        assert len(executor.calls) == 1

        # Kept in memory, so the next call reuses it instead of paying again.
        assert client.get(URL).status_code == 200
        assert len(executor.calls) == 1

    def test_expired_receipts_are_deleted_on_load(self, tmp_path):
        cache = ReceiptCache(tmp_path)
        cache.put(self._receipt("GET a", expires=int(time.time()) - 10))
        cache.put(self._receipt("GET b", expires=int(time.time()) + 300))

        reloaded = ReceiptCache(tmp_path)
        assert [r.key for r in reloaded.all()] == ["GET b"]
        assert len(list(tmp_path.glob("*.json"))) == 1

    def test_unreadable_receipt_is_skipped(self, tmp_path):
        (tmp_path / "garbage.json").write_text("{")
        cache = ReceiptCache(tmp_path)
        assert len(cache) == 0

    def test_expired_receipt_is_not_served(self, tmp_path):
        cache = ReceiptCache()
        cache.put(self._receipt("GET a", expires=1_000))
        assert cache.get("GET a", now=1_001) is None
        assert len(cache) == 0

    def test_clear(self, tmp_path):
        settings = ClientSettings(receipt_dir=tmp_path / "receipts")
        client = make_client(PaywalledServer(), settings=settings)
        client.get(URL)
        assert client.clear_receipts() == 1
        assert client.receipt_history() == []
        assert list((tmp_path / "receipts").glob("*.json")) == []

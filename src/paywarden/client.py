"""
Payment-aware HTTP client.

Flow per outbound request:
1. Cached, unexpired receipt for the request key -> replay with its proof
2. Send the request; anything but 402 is returned as-is
3. Parse the 402 challenge (malformed -> protocol error, expired -> abort)
4. Max auto-pay ceiling, confirmation hook, policy gate
5. Execute the payment, record spending, derive and cache the proof
6. Replay the original request once with the proof attached
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
import uuid
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

import httpx

from .audit import AuditSink, EventType
from .challenge import NONCE_HEADER, PROOF_HEADER, PaymentChallenge, parse_challenge
from .config import ClientSettings
from .errors import AutopayLimitError, ExecutorError, PaymentCancelledError, PolicyDeniedError
from .money import format_amount, parse_amount, to_units
from .policy import PolicyDecision, PolicyGate
from .storage import atomic_write_json, ensure_private_dir

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionResult:
    execution_id: str


class PaymentExecutor(Protocol):
    """Moves funds. Failures must raise; they propagate to the caller unmodified."""

    def pay(self, recipient: str, amount: str, network: str) -> ExecutionResult:
        ...


class DryRunExecutor:
    """Pretends to pay and returns a synthetic execution id."""

    def __init__(self):
        self.payments: list[dict] = []

    def pay(self, recipient: str, amount: str, network: str) -> ExecutionResult:
        execution_id = f"dry-run-{uuid.uuid4().hex}"
        self.payments.append(
            {"recipient": recipient, "amount": amount, "network": network, "execution_id": execution_id}
        )
        logger.info("Dry-run payment: %s to %s on %s (%s)", amount, recipient, network, execution_id)
        return ExecutionResult(execution_id=execution_id)


def request_key(method: str, url: str) -> str:
    return f"{method.upper()} {url}"


def derive_proof(challenge: PaymentChallenge, execution_id: str) -> str:
    """Deterministic proof for a paid challenge: same payment, same proof."""
    payload = json.dumps(
        {
            "nonce": challenge.nonce,
            "amount": challenge.amount,
            "receiver": challenge.receiver,
            "executionId": execution_id,
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _execution_id(result: Any) -> str:
    if isinstance(result, str):
        execution_id = result
    elif isinstance(result, Mapping):
        execution_id = result.get("execution_id") or result.get("executionId")
    else:
        execution_id = getattr(result, "execution_id", None)
    if not execution_id:
        raise ExecutorError("Payment executor returned no execution id", details=result)
    return str(execution_id)


@dataclass
class PaymentReceipt:
    key: str
    url: str
    amount: str
    asset: str
    network: str
    receiver: str
    nonce: str
    execution_id: str
    proof: str
    expires: int
    paid_at: int

    def is_expired(self, now: Optional[float] = None) -> bool:
        now_ts = now if now is not None else time.time()
        return self.expires < now_ts

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "PaymentReceipt":
        return cls(
            key=data["key"],
            url=data["url"],
            amount=data["amount"],
            asset=data["asset"],
            network=data["network"],
            receiver=data["receiver"],
            nonce=data["nonce"],
            execution_id=data["execution_id"],
            proof=data["proof"],
            expires=int(data["expires"]),
            paid_at=int(data["paid_at"]),
        )


class ReceiptCache:
    """Receipts by request key, optionally persisted one JSON file per receipt."""

    def __init__(self, directory: Optional[Path] = None):
        self.directory = directory
        self._entries: dict[str, PaymentReceipt] = {}
        self._lock = threading.Lock()
        if directory is not None:
            ensure_private_dir(directory)
            self._load()

    def _path_for(self, key: str) -> Path:
        return self.directory / f"{hashlib.sha256(key.encode('utf-8')).hexdigest()}.json"

    def _load(self) -> None:
        now = time.time()
        for path in sorted(self.directory.glob("*.json")):
            try:
                with open(path, encoding="utf-8") as f:
                    receipt = PaymentReceipt.from_dict(json.load(f))
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning("Skipping unreadable receipt %s: %s", path, e)
                continue
            if receipt.is_expired(now):
                path.unlink(missing_ok=True)
                continue
            self._entries[receipt.key] = receipt

    def get(self, key: str, now: Optional[float] = None) -> Optional[PaymentReceipt]:
        with self._lock:
            receipt = self._entries.get(key)
            if receipt is None:
                return None
            if receipt.is_expired(now):
                self._remove(key)
                return None
            return receipt

    def put(self, receipt: PaymentReceipt) -> None:
        with self._lock:
            self._entries[receipt.key] = receipt
            if self.directory is None:
                return
            try:
                atomic_write_json(self._path_for(receipt.key), receipt.to_dict())
            except OSError as e:
                # The payment already happened; keep the receipt in memory.
                logger.warning("Could not persist receipt for %s: %s", receipt.key, e)

    def drop(self, key: str) -> None:
        with self._lock:
            self._remove(key)

    def _remove(self, key: str) -> None:
        self._entries.pop(key, None)
        if self.directory is None:
            return
        try:
            self._path_for(key).unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not delete receipt for %s: %s", key, e)

    def all(self) -> list[PaymentReceipt]:
        with self._lock:
            return sorted(self._entries.values(), key=lambda r: r.paid_at)

    def clear(self) -> int:
        with self._lock:
            keys = list(self._entries)
            for key in keys:
                self._remove(key)
            return len(keys)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class PaymentClient:
    """HTTP client that pays 402 challenges automatically within policy."""

    def __init__(
        self,
        executor: PaymentExecutor,
        policy_gate: Optional[PolicyGate] = None,
        settings: Optional[ClientSettings] = None,
        http: Optional[httpx.Client] = None,
        audit: Optional[AuditSink] = None,
        confirm: Optional[Callable[[PaymentChallenge, str], bool]] = None,
        on_challenge: Optional[Callable[[PaymentChallenge, str], None]] = None,
        on_payment: Optional[Callable[[str, str, str], None]] = None,
        on_verified: Optional[Callable[[PaymentReceipt], None]] = None,
        on_error: Optional[Callable[[Exception, str], None]] = None,
    ):
        self.settings = settings or ClientSettings()
        if self.settings.require_confirmation and confirm is None:
            raise ValueError("require_confirmation is set but no confirmation hook was given")

        self.executor = executor
        self.policy_gate = policy_gate
        self.audit = audit
        self.confirm = confirm
        self.on_challenge = on_challenge
        self.on_payment = on_payment
        self.on_verified = on_verified
        self.on_error = on_error

        self._owns_http = http is None
        self._http = http or httpx.Client(timeout=self.settings.timeout_seconds)
        self.receipts = ReceiptCache(self.settings.receipt_dir) if self.settings.cache_receipts else None

        # key -> [lock, callers holding or waiting on it]
        self._key_locks: dict[str, list] = {}
        self._key_locks_guard = threading.Lock()

    # ── Public API ────────────────────────────────────────────────

    def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return self._request(method.upper(), url, **kwargs)
        except Exception as e:
            if self.on_error is not None:
                self.on_error(e, url)
            raise

    def get(self, url: str, **kwargs) -> httpx.Response:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs) -> httpx.Response:
        return self.request("POST", url, **kwargs)

    def receipt_history(self) -> list[PaymentReceipt]:
        return self.receipts.all() if self.receipts is not None else []

    def clear_receipts(self) -> int:
        return self.receipts.clear() if self.receipts is not None else 0

    def close(self):
        if self._owns_http:
            self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    # ── Flow ──────────────────────────────────────────────────────

    def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        # Keyed by the URL actually sent, query params included.
        target = self._http.build_request(method, url, params=kwargs.get("params")).url
        key = request_key(method, str(target))

        receipt = self._cached(key)
        if receipt is not None:
            logger.info("Replaying cached payment proof for %s", key)
            return self._replay(method, url, receipt, kwargs)

        response = self._http.request(method, url, **kwargs)
        if response.status_code != 402:
            return response

        # One payment per key at a time; a concurrent caller reuses the receipt.
        with self._payment_lock(key):
            receipt = self._cached(key)
            if receipt is None:
                challenge = parse_challenge(response.status_code, response.content)
                receipt = self._pay(key, url, challenge)

        return self._replay(method, url, receipt, kwargs)

    def _replay(
        self,
        method: str,
        url: str,
        receipt: PaymentReceipt,
        kwargs: dict,
    ) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        headers[PROOF_HEADER] = receipt.proof
        headers[NONCE_HEADER] = receipt.nonce
        response = self._http.request(method, url, headers=headers, **kwargs)

        if response.status_code == 402:
            logger.warning("Payment proof for %s was not accepted; dropping receipt", receipt.key)
            if self.receipts is not None:
                self.receipts.drop(receipt.key)
            return response

        if self.on_verified is not None:
            self.on_verified(receipt)
        return response

    def _pay(self, key: str, url: str, challenge: PaymentChallenge) -> PaymentReceipt:
        challenge.ensure_fresh()
        if self.on_challenge is not None:
            self.on_challenge(challenge, url)

        amount = parse_amount(challenge.amount)
        max_autopay = self.settings.max_autopay
        if max_autopay is not None and amount > max_autopay:
            raise AutopayLimitError(challenge.amount, format_amount(max_autopay), challenge.asset)

        if self.confirm is not None and not self.confirm(challenge, url):
            raise PaymentCancelledError(
                f"Payment of {challenge.amount} {challenge.asset} to {challenge.receiver} was declined"
            )

        units = to_units(challenge.amount)
        decision: Optional[PolicyDecision] = None
        if self.policy_gate is not None:
            decision = self.policy_gate.authorize(challenge.receiver, units)
            if not decision.allowed:
                logger.warning("Payment for %s denied by policy: %s", key, decision.reason)
                raise PolicyDeniedError(decision)

        self._audit(
            EventType.PAYMENT_INITIATED,
            challenge,
            units,
            details={"url": url, "nonce": challenge.nonce},
        )
        try:
            execution_id = _execution_id(
                self.executor.pay(challenge.receiver, challenge.amount, challenge.network)
            )
        except Exception as e:
            self._audit(
                EventType.PAYMENT_FAILED,
                challenge,
                units,
                success=False,
                reason=f"{type(e).__name__}: {e}",
                details={"url": url, "nonce": challenge.nonce},
            )
            raise

        if decision is not None:
            self.policy_gate.record_spending(decision, execution_id)

        receipt = PaymentReceipt(
            key=key,
            url=url,
            amount=challenge.amount,
            asset=challenge.asset,
            network=challenge.network,
            receiver=challenge.receiver,
            nonce=challenge.nonce,
            execution_id=execution_id,
            proof=derive_proof(challenge, execution_id),
            expires=challenge.expires,
            paid_at=int(time.time()),
        )
        if self.receipts is not None:
            self.receipts.put(receipt)

        self._audit(
            EventType.PAYMENT_COMPLETED,
            challenge,
            units,
            details={"url": url, "nonce": challenge.nonce, "execution_id": execution_id},
        )
        logger.info(
            "Paid %s %s to %s for %s (%s)",
            challenge.amount,
            challenge.asset,
            challenge.receiver,
            key,
            execution_id,
        )
        if self.on_payment is not None:
            self.on_payment(challenge.amount, url, execution_id)
        return receipt

    # ── Helpers ───────────────────────────────────────────────────

    def _cached(self, key: str) -> Optional[PaymentReceipt]:
        if self.receipts is None:
            return None
        return self.receipts.get(key)

    @contextmanager
    def _payment_lock(self, key: str) -> Iterator[None]:
        with self._key_locks_guard:
            entry = self._key_locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._key_locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._key_locks[key]

    def _audit(
        self,
        event_type: EventType,
        challenge: PaymentChallenge,
        units: int,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> None:
        if self.audit is None:
            return
        self.audit.log(
            event_type,
            recipient=challenge.receiver,
            amount=units,
            success=success,
            reason=reason,
            details=details,
        )

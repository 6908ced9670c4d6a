"""
Starlette middleware for payment-required (HTTP 402) paywalls.

One middleware, parameterized per route by a pricing strategy:

- FixedPrice: constant price
- DynamicPrice: price computed from the request
- UsagePrice: base price plus measured units times a per-unit price
- SubscriptionPrice: free for active subscribers, otherwise a subscription-priced challenge
- FreeTierPrice: N free calls per caller per window, then paid per request

Request flow:
1. Strategy admits the request for free -> served
2. No proof header -> 402 with a fresh challenge
3. Proof verified -> served, ``request.state.payment_verified = True``
4. Proof rejected -> 402 "Payment Invalid"
5. Verifier failure -> 5xx
"""

from __future__ import annotations

import hashlib
import hmac
import inspect
import logging
import threading
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

import httpx
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from .challenge import NONCE_HEADER, PROOF_HEADER, PaymentChallenge, create_challenge, new_nonce
from .config import ServerSettings
from .errors import FacilitatorError
from .facilitator_auth import auth_from_env
from .money import format_amount, parse_amount

logger = logging.getLogger(__name__)

PAYMENT_MODE_HEADER = "X-Payment-Mode"

PRICING = {
    "micro": "0.01",
    "small": "0.05",
    "medium": "0.10",
    "large": "0.25",
    "premium": "0.50",
    "enterprise": "1.00",
}

MaybeAwaitable = Union[Any, Awaitable[Any]]


async def _resolve(value: MaybeAwaitable) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


# ── Verification ──────────────────────────────────────────────────

class Verifier(Protocol):
    def verify(self, proof: str, expected_amount: str, network: str, receiver: str) -> bool:
        ...


class FunctionVerifier:
    """Adapts a plain ``fn(proof, expected_amount) -> bool`` to the Verifier protocol."""

    def __init__(self, fn: Callable[[str, str], bool]):
        self._fn = fn

    def verify(self, proof: str, expected_amount: str, network: str, receiver: str) -> bool:
        return bool(self._fn(proof, expected_amount))


def mock_verification() -> Verifier:
    """Accept any non-empty proof. Testing only."""
    return FunctionVerifier(lambda proof, amount: len(proof) > 0)


def shared_secret_proof(secret: str, amount: str) -> str:
    return hashlib.sha256(f"{secret}{amount}".encode()).hexdigest()


def shared_secret_verification(secret: str) -> Verifier:
    """Accept proofs equal to sha256(secret + amount). Not for production use."""
    return FunctionVerifier(
        lambda proof, amount: hmac.compare_digest(proof, shared_secret_proof(secret, amount))
    )


class FacilitatorVerifier:
    """Verifies proofs with a remote facilitator at ``POST {url}/verify``."""

    def __init__(
        self,
        facilitator_url: str,
        auth: Any = None,
        timeout_seconds: float = 10.0,
        http: Optional[httpx.Client] = None,
    ):
        self.facilitator_url = facilitator_url.rstrip("/")
        self.auth = auth
        self._http = http or httpx.Client(timeout=timeout_seconds)

    def verify(self, proof: str, expected_amount: str, network: str, receiver: str) -> bool:
        url = f"{self.facilitator_url}/verify"
        headers = self.auth.headers_for("POST", url) if self.auth is not None else {}
        try:
            response = self._http.post(
                url,
                json={
                    "signature": proof,
                    "expectedAmount": expected_amount,
                    "network": network,
                    "receiver": receiver,
                },
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise FacilitatorError(f"Facilitator unreachable: {e}") from e

        if response.status_code >= 500:
            raise FacilitatorError(
                f"Facilitator error ({response.status_code}): {response.text[:200]}"
            )
        if response.status_code != 200:
            return False
        try:
            payload = response.json()
        except ValueError as e:
            raise FacilitatorError(f"Facilitator returned malformed JSON: {e}") from e
        return isinstance(payload, dict) and payload.get("valid") is True

    def close(self):
        self._http.close()


# ── Challenge registry ────────────────────────────────────────────

class ChallengeRegistry:
    """Issued challenges by nonce, kept until they expire."""

    def __init__(self, settings: ServerSettings):
        self.settings = settings
        self._issued: dict[str, PaymentChallenge] = {}
        self._lock = threading.Lock()

    def issue(self, amount: str, description: str, now: Optional[float] = None) -> PaymentChallenge:
        now_ts = now if now is not None else time.time()
        with self._lock:
            self._prune(now_ts)
            nonce = new_nonce()
            while nonce in self._issued:
                nonce = new_nonce()
            challenge = create_challenge(amount, description, self.settings, now=now_ts, nonce=nonce)
            self._issued[nonce] = challenge
        return challenge

    def get(self, nonce: str) -> Optional[PaymentChallenge]:
        with self._lock:
            return self._issued.get(nonce)

    def _prune(self, now_ts: float) -> None:
        expired = [n for n, c in self._issued.items() if c.is_expired(now_ts)]
        for nonce in expired:
            del self._issued[nonce]

    def __len__(self) -> int:
        with self._lock:
            return len(self._issued)


# ── Pricing strategies ────────────────────────────────────────────

@dataclass
class PriceQuote:
    amount: str
    description: str
    error: str = "Payment Required"
    message: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)


class PricingStrategy:
    """Resolves the price of a request; may also admit it for free."""

    async def admit(self, request: Request) -> Optional[str]:
        """Return a payment-mode label to let the request through unpaid."""
        return None

    async def quote(self, request: Request) -> PriceQuote:
        raise NotImplementedError


class FixedPrice(PricingStrategy):
    def __init__(self, price: str, description: str):
        self.price = format_amount(price)
        self.description = description

    async def quote(self, request: Request) -> PriceQuote:
        return PriceQuote(amount=self.price, description=self.description)


class DynamicPrice(PricingStrategy):
    """Price and description computed per request (sync or async callables)."""

    def __init__(
        self,
        price_fn: Callable[[Request], MaybeAwaitable],
        description_fn: Callable[[Request], MaybeAwaitable],
    ):
        self.price_fn = price_fn
        self.description_fn = description_fn

    async def quote(self, request: Request) -> PriceQuote:
        price = await _resolve(self.price_fn(request))
        description = await _resolve(self.description_fn(request))
        return PriceQuote(amount=format_amount(price), description=str(description))


class UsagePrice(PricingStrategy):
    """``base_price + units * per_unit`` where units are measured per request."""

    def __init__(
        self,
        base_price: str,
        per_unit: str,
        unit: str,
        calculate: Callable[[Request], MaybeAwaitable],
    ):
        self.base_price = parse_amount(base_price)
        self.per_unit = parse_amount(per_unit)
        self.unit = unit
        self.calculate = calculate

    async def quote(self, request: Request) -> PriceQuote:
        units = Decimal(str(await _resolve(self.calculate(request))))
        if units < 0:
            raise ValueError(f"Usage units must be non-negative, got {units}")
        total = self.base_price + units * self.per_unit
        return PriceQuote(
            amount=format_amount(total),
            description=(
                f"Usage-based pricing: base {format_amount(self.base_price)} + "
                f"{format_amount(self.per_unit)} per {self.unit} ({units} {self.unit})"
            ),
            extra={"usage": {"units": str(units), "unit": self.unit}},
        )


@dataclass
class Subscription:
    active: bool
    expires_at: float


class SubscriptionPrice(PricingStrategy):
    """Free for active subscribers; otherwise a subscription-priced challenge."""

    def __init__(
        self,
        lookup: Callable[[Request], MaybeAwaitable],
        price: str,
        period: str = "monthly",
        renewal_url: Optional[str] = None,
    ):
        if period not in {"monthly", "yearly"}:
            raise ValueError(f"Unsupported subscription period: {period}")
        self.lookup = lookup
        self.price = format_amount(price)
        self.period = period
        self.renewal_url = renewal_url

    async def admit(self, request: Request) -> Optional[str]:
        sub = await _resolve(self.lookup(request))
        if sub is not None and sub.active and sub.expires_at > time.time():
            request.state.subscription = sub
            return "subscription"
        return None

    async def quote(self, request: Request) -> PriceQuote:
        return PriceQuote(
            amount=self.price,
            description=f"{self.period} subscription - {self.price} USDC",
            error="Subscription Required",
            message=f"This endpoint requires an active {self.period} subscription",
            extra={
                "subscription": {
                    "price": self.price,
                    "period": self.period,
                    "renewalUrl": self.renewal_url,
                }
            },
        )


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host

    return "unknown"


@dataclass
class _FreeWindow:
    count: int
    reset_at: float


class FreeTierPrice(PricingStrategy):
    """``limit`` free calls per caller per fixed window, then paid per request."""

    def __init__(
        self,
        limit: int,
        window_seconds: float,
        price: str,
        description: str,
        caller_id: Callable[[Request], str] = get_client_ip,
    ):
        if limit < 0 or window_seconds <= 0:
            raise ValueError("Free tier needs a non-negative limit and a positive window")
        self.limit = limit
        self.window_seconds = window_seconds
        self.price = format_amount(price)
        self.description = description
        self.caller_id = caller_id
        self._windows: dict[str, _FreeWindow] = {}
        self._lock = threading.Lock()
        self._last_cleanup = 0.0

    def consume(self, caller: str, now: Optional[float] = None) -> bool:
        """Count one free call for ``caller``; False once the window's allowance is spent."""
        now_ts = now if now is not None else time.time()
        with self._lock:
            self._maybe_cleanup(now_ts)
            window = self._windows.get(caller)
            if window is None or window.reset_at <= now_ts:
                window = _FreeWindow(count=0, reset_at=now_ts + self.window_seconds)
                self._windows[caller] = window
            if window.count < self.limit:
                window.count += 1
                return True
            return False

    def _maybe_cleanup(self, now: float) -> None:
        """Drop lapsed windows, at most once per window length. Caller holds the lock."""
        if now - self._last_cleanup < self.window_seconds:
            return
        self._last_cleanup = now
        stale = [caller for caller, window in self._windows.items() if window.reset_at <= now]
        for caller in stale:
            del self._windows[caller]
        if stale:
            logger.debug("Free tier: cleaned up %d lapsed windows", len(stale))

    def tracked_callers(self) -> int:
        with self._lock:
            return len(self._windows)

    async def admit(self, request: Request) -> Optional[str]:
        if self.consume(self.caller_id(request)):
            return "free-tier"
        return None

    async def quote(self, request: Request) -> PriceQuote:
        return PriceQuote(
            amount=self.price,
            description=self.description,
            error="Rate Limit Exceeded",
            message=f"Free tier limit reached ({self.limit} requests per window)",
            extra={"rateTier": "paid"},
        )


class PricingTier:
    """Named price table resolved per request."""

    def __init__(self):
        self._tiers: dict[str, str] = {}

    def add(self, key: str, price: str) -> "PricingTier":
        self._tiers[key] = format_amount(price)
        return self

    def get(self, key: str) -> Optional[str]:
        return self._tiers.get(key)

    def strategy(
        self,
        key_fn: Callable[[Request], str],
        description_fn: Callable[[Request], str],
    ) -> DynamicPrice:
        def price(request: Request) -> str:
            key = key_fn(request)
            tier_price = self._tiers.get(key)
            if tier_price is None:
                raise ValueError(f"No price configured for tier: {key}")
            return tier_price

        return DynamicPrice(price, description_fn)


# ── Middleware ────────────────────────────────────────────────────

def _payment_invalid(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=402,
        content={"error": "Payment Invalid", "message": message},
    )


class PaywallMiddleware(BaseHTTPMiddleware):
    """
    Payment-required middleware.

    ``routes`` maps "METHOD /path" to a PricingStrategy. A path ending in
    "*" matches by prefix. Unmatched requests pass through unchanged.

    Challenge expiry is enforced through the nonce header: a proof that
    names its challenge is checked against the registry and verified for
    the amount issued. A proof without a nonce is verified against the
    current price unless ``settings.require_nonce`` is set, in which case
    it is rejected.
    """

    def __init__(
        self,
        app,
        routes: dict[str, PricingStrategy],
        settings: ServerSettings,
        verifier: Optional[Verifier] = None,
        registry: Optional[ChallengeRegistry] = None,
    ):
        super().__init__(app)
        self.settings = settings
        self.verifier = verifier or FacilitatorVerifier(settings.facilitator_url, auth=auth_from_env())
        self.registry = registry or ChallengeRegistry(settings)
        self._routes: list[tuple[str, str, bool, PricingStrategy]] = []
        for route, strategy in routes.items():
            method, _, path = route.partition(" ")
            prefix = path.endswith("*")
            self._routes.append((method.upper(), path.rstrip("*") if prefix else path, prefix, strategy))

    def strategy_for(self, method: str, path: str) -> Optional[PricingStrategy]:
        for route_method, route_path, prefix, strategy in self._routes:
            if route_method != method.upper():
                continue
            if prefix and path.startswith(route_path):
                return strategy
            if not prefix and path.rstrip("/") == route_path.rstrip("/"):
                return strategy
        return None

    async def dispatch(self, request: Request, call_next) -> Response:
        strategy = self.strategy_for(request.method, request.url.path)
        if strategy is None:
            return await call_next(request)

        try:
            mode = await strategy.admit(request)
            quote = None if mode else await strategy.quote(request)
        except Exception as e:
            logger.exception("Paywall failed to price %s %s", request.method, request.url.path)
            return JSONResponse(
                status_code=500,
                content={"error": "Paywall Configuration Error", "message": str(e)},
            )

        if mode:
            request.state.payment_verified = False
            request.state.payment_mode = mode
            response = await call_next(request)
            response.headers[PAYMENT_MODE_HEADER] = mode
            return response

        proof = request.headers.get(PROOF_HEADER)
        if not proof:
            challenge = self.registry.issue(quote.amount, quote.description)
            logger.info(
                "Paywall: challenge %s issued for %s %s (%s %s)",
                challenge.nonce,
                request.method,
                request.url.path,
                challenge.amount,
                challenge.asset,
            )
            content = {
                "error": quote.error,
                "message": quote.message or f"This endpoint requires {quote.amount} {challenge.asset}",
                **quote.extra,
                **challenge.to_wire(),
            }
            return JSONResponse(status_code=402, content=content)

        expected_amount = quote.amount
        nonce = request.headers.get(NONCE_HEADER)
        if not nonce and self.settings.require_nonce:
            return _payment_invalid("Payment challenge nonce required")
        if nonce:
            issued = self.registry.get(nonce)
            if issued is None:
                return _payment_invalid("Unknown payment challenge")
            if issued.is_expired():
                return _payment_invalid("Payment challenge expired")
            expected_amount = issued.amount

        try:
            verified = await run_in_threadpool(
                self.verifier.verify,
                proof,
                expected_amount,
                self.settings.network,
                self.settings.receiver,
            )
        except FacilitatorError as e:
            logger.error("Paywall: facilitator verification failed: %s", e)
            return JSONResponse(
                status_code=502,
                content={"error": "Payment Verification Failed", "message": str(e)},
            )
        except Exception as e:
            logger.exception("Paywall: payment verification error")
            return JSONResponse(
                status_code=500,
                content={"error": "Payment Verification Failed", "message": str(e)},
            )

        if not verified:
            logger.warning("Paywall: proof rejected for %s %s", request.method, request.url.path)
            return _payment_invalid("Payment signature could not be verified")

        request.state.payment_verified = True
        request.state.payment_mode = "paid"
        request.state.payment_amount = expected_amount
        request.state.payment_proof = proof
        logger.info("Paywall: payment verified for %s %s", request.method, request.url.path)
        response = await call_next(request)
        response.headers[PAYMENT_MODE_HEADER] = "paid"
        return response

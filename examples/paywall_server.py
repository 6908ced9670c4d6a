"""
Minimal paywalled demo server.

Accepts any non-empty proof (mock verification), so it pairs with the
dry-run executor in e2e_demo.py.
"""

from pathlib import Path
import sys

import uvicorn
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
from paywarden.config import ServerSettings
from paywarden.server import (
    PRICING,
    FixedPrice,
    FreeTierPrice,
    PaywallMiddleware,
    UsagePrice,
    mock_verification,
)

PAY_TO = "0x273326453960864fba4d2f6cf09d65fa13e45297"


async def root(request: Request):
    return JSONResponse({"status": "ok"})


async def data(request: Request):
    return JSONResponse(
        {
            "report": "premium data",
            "paid": request.state.payment_verified,
            "amount": getattr(request.state, "payment_amount", None),
        }
    )


routes = {
    "GET /data": FixedPrice(PRICING["medium"], "Premium report"),
    "GET /search": UsagePrice(
        base_price="0.01",
        per_unit="0.002",
        unit="result",
        calculate=lambda request: int(request.query_params.get("limit", "10")),
    ),
    "GET /quote": FreeTierPrice(limit=3, window_seconds=60, price=PRICING["micro"], description="Quote"),
}

app = Starlette(
    routes=[Route("/", root), Route("/data", data), Route("/search", data), Route("/quote", data)],
    middleware=[
        Middleware(
            PaywallMiddleware,
            routes=routes,
            settings=ServerSettings(receiver=PAY_TO, challenge_ttl=120),
            verifier=mock_verification(),
        )
    ],
)


if __name__ == "__main__":
    uvicorn.run(app, host="127.0.0.1", port=8402)

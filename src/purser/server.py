"""
Metered resource server.

FastAPI application exposing free discovery/telemetry routes, three metered
market-data routes behind ``PaywallGate``, and the credential endpoints the
human uses to delegate, rotate and revoke the agent's budget.
"""

from __future__ import annotations

import logging
import random
import time
from decimal import Decimal
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from . import __version__
from .activity import SOURCE_EXTERNAL, ActivityFeed, EventKind
from .config import MerchantConfig, default_credentials_dir
from .credentials import BudgetScopedCredential, CredentialStore
from .errors import (
    CredentialNotFound,
    CredentialRevoked,
    InvalidCredentialInput,
    NoActiveCredential,
)
from .gate import (
    AGENT_HEADER,
    Admitted,
    Challenge,
    GateRequest,
    PaywallGate,
    ProofVerifier,
    SignatureVerifier,
)

logger = logging.getLogger(__name__)

MAX_ACTIVITY_PAGE = 200
PAYMENT_PROTOCOLS = ["x402", "ucp", "acp"]

TOOLS: list[dict[str, Any]] = [
    {
        "id": "sol-price",
        "name": "SOL Price Feed",
        "description": "Real-time SOL/USD price",
        "endpoint": "/market/sol",
        "method": "GET",
        "priceUSD": 0.001,
        "category": "market-data",
    },
    {
        "id": "token-prices",
        "name": "Top Solana Tokens",
        "description": "Price data for the top 10 Solana tokens",
        "endpoint": "/market/tokens",
        "method": "GET",
        "priceUSD": 0.002,
        "category": "market-data",
    },
    {
        "id": "market-analysis",
        "name": "Market Analysis",
        "description": "Sentiment analysis for a Solana token or sector",
        "endpoint": "/analyze",
        "method": "POST",
        "priceUSD": 0.005,
        "category": "analysis",
    },
]
TOOL_PRICES = {t["id"]: Decimal(str(t["priceUSD"])) for t in TOOLS}


class PaymentRequired(Exception):
    """Raised by the paywall dependency to short-circuit with a 402."""

    def __init__(self, challenge: Challenge):
        self.challenge = challenge
        super().__init__(challenge.reason or "Payment required")


class CredentialsRequest(BaseModel):
    wallet: Optional[dict[str, Any]] = None
    session: Optional[dict[str, Any]] = None


class AnalyzeRequest(BaseModel):
    token: Optional[str] = None
    sector: Optional[str] = None


class ActivityRequest(BaseModel):
    type: Optional[str] = None
    agent: Optional[str] = None
    tool: Optional[str] = None
    amountUSD: Optional[float] = None
    protocol: Optional[str] = None
    txHash: Optional[str] = None
    data: dict[str, Any] = {}


class ProofRequest(BaseModel):
    hash: Optional[str] = None
    signature: Optional[str] = None
    action: Optional[str] = None
    txHash: Optional[str] = None
    explorer: Optional[str] = None


def get_store(req: Request) -> CredentialStore:
    return req.app.state.store


def get_feed(req: Request) -> ActivityFeed:
    return req.app.state.feed


def paywall(resource_id: str):
    """Dependency factory guarding a route with the app's ``PaywallGate``."""
    price = PaywallGate.protect(TOOL_PRICES[resource_id], resource_id)

    def dependency(request: Request) -> Admitted:
        gate: PaywallGate = request.app.state.gate
        outcome = gate.admit(
            GateRequest(
                method=request.method,
                url=str(request.url),
                headers=dict(request.headers),
            ),
            price,
            resource_id,
        )
        if isinstance(outcome, Challenge):
            raise PaymentRequired(outcome)
        return outcome

    return dependency


router = APIRouter()


# ------- Free -------

@router.get("/tools")
def list_tools(feed: ActivityFeed = Depends(get_feed)) -> dict:
    feed.emit(EventKind.DISCOVERY, data={"toolCount": len(TOOLS)})
    return {"tools": TOOLS, "paymentProtocols": PAYMENT_PROTOCOLS}


@router.get("/health")
def health(request: Request) -> dict:
    return {
        "status": "ok",
        "version": __version__,
        "uptime": time.time() - request.app.state.started_at,
        "tools": len(TOOLS),
    }


@router.get("/stats")
def stats(feed: ActivityFeed = Depends(get_feed)) -> dict:
    return feed.stats()


@router.get("/activity")
def recent_activity(
    limit: int = Query(50, ge=0),
    feed: ActivityFeed = Depends(get_feed),
) -> dict:
    events = feed.recent(min(limit, MAX_ACTIVITY_PAGE))
    return {"activity": [e.to_wire() for e in events], "total": len(feed)}


@router.post("/activity")
def ingest_activity(payload: ActivityRequest, feed: ActivityFeed = Depends(get_feed)) -> dict:
    try:
        kind = EventKind(payload.type) if payload.type else EventKind.EXTERNAL
    except ValueError:
        kind = EventKind.EXTERNAL
    event = feed.emit(
        kind,
        source=SOURCE_EXTERNAL,
        agent=payload.agent,
        tool=payload.tool,
        amount_usd=payload.amountUSD,
        protocol=payload.protocol,
        tx_hash=payload.txHash,
        data=dict(payload.data),
    )
    return {"recorded": True, "id": event.id}


@router.post("/proof")
def record_proof(
    payload: ProofRequest,
    request: Request,
    feed: ActivityFeed = Depends(get_feed),
) -> dict:
    event = feed.emit(
        EventKind.PROOF,
        source=SOURCE_EXTERNAL,
        agent=request.headers.get(AGENT_HEADER) or "unknown",
        tx_hash=payload.txHash,
        data=payload.model_dump(exclude_none=True),
    )
    return {"recorded": True, "id": event.id}


# ------- Metered -------

@router.get("/market/sol")
def sol_price(admitted: Admitted = Depends(paywall("sol-price"))) -> dict:
    base_price = 180 + random.random() * 20
    change = (random.random() - 0.5) * 10
    return {
        "symbol": "SOL",
        "priceUSD": round(base_price, 2),
        "change24h": round(change, 2),
        "change24hPercent": round(change / base_price * 100, 2),
        "volume24h": round(1_500_000_000 + random.random() * 500_000_000),
        "marketCap": round(base_price * 400_000_000),
        "source": "simulated",
        "paidWith": admitted.scheme,
        "timestamp": int(time.time() * 1000),
    }


_TOKEN_BANDS = [
    ("SOL", 180, 20),
    ("JUP", 1.2, 0.5),
    ("RAY", 3.5, 1),
    ("BONK", 0.000025, 0.00001),
    ("WIF", 2.1, 0.8),
    ("PYTH", 0.45, 0.15),
    ("JTO", 3.2, 0.5),
    ("ORCA", 4.8, 1.2),
    ("MNDE", 0.12, 0.05),
    ("MSOL", 200, 25),
]


@router.get("/market/tokens")
def token_prices(admitted: Admitted = Depends(paywall("token-prices"))) -> dict:
    tokens = [
        {
            "symbol": symbol,
            "price": round(base + random.random() * spread, 6),
            "change24h": round((random.random() - 0.5) * 15, 2),
        }
        for symbol, base, spread in _TOKEN_BANDS
    ]
    return {"tokens": tokens, "source": "simulated", "timestamp": int(time.time() * 1000)}


@router.post("/analyze")
def analyze(
    payload: Optional[AnalyzeRequest] = None,
    admitted: Admitted = Depends(paywall("market-analysis")),
) -> dict:
    target = (payload and (payload.token or payload.sector)) or "SOL"
    sentiment = random.choice(["bullish", "neutral", "bearish"])
    confidence = round(0.6 + random.random() * 0.35, 2)
    return {
        "target": target,
        "sentiment": sentiment,
        "confidence": confidence,
        "summary": f"{target} shows {sentiment} momentum with {confidence * 100:.0f}% confidence.",
        "signals": {
            "onChainActivity": random.choice(["increasing", "stable"]),
            "dexVolume": round((random.random() - 0.5) * 40, 1),
            "whaleActivity": random.choice(["accumulating", "distributing"]),
        },
        "timestamp": int(time.time() * 1000),
    }


# ------- Credentials -------

@router.post("/agent/credentials")
def set_credentials(
    payload: CredentialsRequest,
    store: CredentialStore = Depends(get_store),
    feed: ActivityFeed = Depends(get_feed),
) -> dict:
    if payload.wallet is None or payload.session is None:
        raise HTTPException(status_code=400, detail="Missing wallet or session data")
    try:
        credential = store.set_active(payload.wallet, payload.session)
    except InvalidCredentialInput as e:
        raise HTTPException(status_code=400, detail=str(e))
    except CredentialRevoked as e:
        raise HTTPException(status_code=409, detail=str(e))

    feed.emit(
        EventKind.CREDENTIAL,
        agent="human",
        data={
            "action": "credentials_set",
            "keyHash": credential.id,
            "sessionKeyHash": credential.session_key_hash,
            "dailyLimitUSD": credential.daily_limit_usd,
            "perTransactionLimitUSD": credential.per_transaction_limit_usd,
        },
    )
    return {"success": True, "keyHash": credential.id, "id": credential.id}


@router.get("/agent/credentials")
def get_credentials(store: CredentialStore = Depends(get_store)) -> dict:
    credential = store.get_usable()
    if credential is None:
        raise HTTPException(status_code=404, detail="No active credentials")
    return credential.to_wire()


def _revoked_response(
    feed: ActivityFeed, revoked: BudgetScopedCredential, new_active: Optional[str]
) -> dict:
    credential_id = revoked.id
    feed.emit(
        EventKind.CREDENTIAL,
        agent="human",
        data={"action": "credentials_revoked", "keyHash": credential_id, "newActiveId": new_active},
    )
    return {
        "success": True,
        "id": credential_id,
        "revokedAt": revoked.to_wire()["revokedAt"],
        "newActiveId": new_active,
    }


@router.delete("/agent/credentials")
def revoke_active_credentials(
    store: CredentialStore = Depends(get_store),
    feed: ActivityFeed = Depends(get_feed),
) -> dict:
    try:
        revoked, new_active = store.revoke_active_credential()
    except NoActiveCredential:
        raise HTTPException(status_code=404, detail="No credentials to revoke")
    return _revoked_response(feed, revoked, new_active)


@router.delete("/agent/credentials/{credential_id}")
def revoke_credentials(
    credential_id: str,
    store: CredentialStore = Depends(get_store),
    feed: ActivityFeed = Depends(get_feed),
) -> dict:
    try:
        new_active = store.revoke(credential_id)
    except CredentialNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    revoked = store.get(credential_id)
    if revoked is None:
        raise HTTPException(status_code=404, detail=f"Credential not found: {credential_id}")
    return _revoked_response(feed, revoked, new_active)


@router.post("/agent/credentials/{credential_id}/activate")
def activate_credentials(
    credential_id: str,
    store: CredentialStore = Depends(get_store),
    feed: ActivityFeed = Depends(get_feed),
) -> dict:
    try:
        credential = store.activate(credential_id)
    except CredentialNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except CredentialRevoked as e:
        raise HTTPException(status_code=409, detail=str(e))
    feed.emit(
        EventKind.CREDENTIAL,
        agent="human",
        data={"action": "credentials_activated", "keyHash": credential.id},
    )
    return credential.to_wire()


@router.get("/agent/status")
def agent_status(store: CredentialStore = Depends(get_store)) -> dict:
    return store.status()


def create_app(
    config: Optional[MerchantConfig] = None,
    store: Optional[CredentialStore] = None,
    feed: Optional[ActivityFeed] = None,
    verifier: Optional[ProofVerifier] = None,
) -> FastAPI:
    """Build the merchant application around explicit, injectable state."""
    config = config or MerchantConfig()
    if store is None:
        store = CredentialStore(config.credentials_dir or default_credentials_dir())
    if feed is None:
        feed = ActivityFeed(path=config.activity_path, key_path=config.activity_key_path)
    if verifier is None and config.verify_payments:
        verifier = SignatureVerifier(store)

    app = FastAPI(title="Purser merchant", version=__version__)
    app.state.config = config
    app.state.store = store
    app.state.feed = feed
    app.state.started_at = time.time()
    app.state.gate = PaywallGate(
        recipient=config.recipient,
        sink=feed,
        network=config.network,
        asset=config.asset,
        verifier=verifier,
        tool_names={t["id"]: t["name"] for t in TOOLS},
    )

    @app.exception_handler(PaymentRequired)
    async def payment_required_handler(request: Request, exc: PaymentRequired) -> JSONResponse:
        return JSONResponse(
            status_code=exc.challenge.status_code,
            content=exc.challenge.body,
            headers=exc.challenge.headers,
        )

    app.include_router(router)
    logger.info(
        "Merchant app ready: recipient=%s network=%s verification=%s",
        config.recipient,
        config.network,
        app.state.gate.verifier.mode,
    )
    return app

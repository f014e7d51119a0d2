"""
Client-side payment negotiation.

Fetches a resource; if the server answers 402, decodes the payment
requirement, reserves the spend against the active credential's limits,
signs a payment intent, and retries once with proof headers. Every outcome
is returned as a ``NegotiationResult`` carrying the state trace.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import secrets
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from urllib.parse import urlsplit

import httpx

from .activity import ActivityNotifier
from .challenge import X402_VERSION, PaymentRequirement, decode_challenge, requirement_price_usd
from .config import DEFAULT_AGENT_NAME
from .credentials import BudgetScopedCredential, CredentialStore
from .errors import (
    BudgetError,
    CredentialRevoked,
    MalformedChallenge,
    NetworkError,
    NetworkNotAllowed,
    NoActiveCredential,
    PaymentRejectedByServer,
    PurserError,
    SigningFailed,
)
from .keys import canonical_json_bytes
from .ledger import STATUS_RESERVED, LedgerEntry, SpendingLedger
from .signer import PaymentSigner

logger = logging.getLogger(__name__)

PROOF_SCHEME = "x402"


class NegotiationState(str, Enum):
    INIT = "init"
    SENT = "sent"
    PAID = "paid"
    CHALLENGED = "challenged"
    LIMIT_CHECKED = "limit_checked"
    REJECTED = "rejected"
    SIGNED = "signed"
    RETRIED = "retried"
    SETTLED = "settled"
    FAILED = "failed"


@dataclass
class NegotiatorConfig:
    request_timeout: float = 15.0
    signing_timeout: float = 10.0
    agent_name: str = DEFAULT_AGENT_NAME
    notify: bool = True
    notify_url: Optional[str] = None


@dataclass
class NegotiationResult:
    state: NegotiationState
    trace: list[NegotiationState]
    response: Optional[httpx.Response] = field(default=None, repr=False)
    requirement: Optional[PaymentRequirement] = None
    price_usd: Optional[Decimal] = None
    credential_id: Optional[str] = None
    entry: Optional[LedgerEntry] = None
    error: Optional[PurserError] = None

    @property
    def ok(self) -> bool:
        return self.state in (NegotiationState.PAID, NegotiationState.SETTLED)

    @property
    def paid(self) -> bool:
        return self.state is NegotiationState.SETTLED

    def raise_for_outcome(self) -> "NegotiationResult":
        if self.error is not None:
            raise self.error
        return self

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "trace": [s.value for s in self.trace],
            "status_code": self.response.status_code if self.response is not None else None,
            "price_usd": str(self.price_usd) if self.price_usd is not None else None,
            "credential_id": self.credential_id,
            "entry": self.entry.to_dict() if self.entry else None,
            "error": f"{type(self.error).__name__}: {self.error}" if self.error else None,
        }


@dataclass
class PriceEstimate:
    url: str
    status_code: Optional[int] = None
    requires_payment: bool = False
    requirement: Optional[PaymentRequirement] = None
    price_usd: Optional[Decimal] = None
    error: Optional[PurserError] = None

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "status_code": self.status_code,
            "requires_payment": self.requires_payment,
            "price_usd": str(self.price_usd) if self.price_usd is not None else None,
            "requirement": self.requirement.to_wire() if self.requirement else None,
            "error": f"{type(self.error).__name__}: {self.error}" if self.error else None,
        }


def build_payment_intent(
    requirement: PaymentRequirement,
    credential: BudgetScopedCredential,
    price_usd: Decimal,
    nonce: Optional[str] = None,
    timestamp_ms: Optional[int] = None,
) -> dict[str, Any]:
    """The exact payload the signer commits to."""
    return {
        "x402Version": X402_VERSION,
        "scheme": requirement.scheme,
        "network": requirement.network,
        "resource": requirement.resource,
        "payTo": requirement.pay_to,
        "asset": requirement.asset,
        "amount": requirement.max_amount_required,
        "amountUSD": str(price_usd),
        "credentialId": credential.id,
        "sessionKeyHash": credential.session_key_hash,
        "nonce": nonce or secrets.token_hex(16),
        "timestamp": timestamp_ms if timestamp_ms is not None else int(time.time() * 1000),
    }


def _origin(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


class PaymentNegotiator:
    """Drives one request through the 402 negotiation state machine."""

    def __init__(
        self,
        credentials: CredentialStore,
        ledger: SpendingLedger,
        signer: PaymentSigner,
        config: Optional[NegotiatorConfig] = None,
        http: Optional[httpx.AsyncClient] = None,
        notifier: Optional[ActivityNotifier] = None,
    ):
        self.credentials = credentials
        self.ledger = ledger
        self.signer = signer
        self.config = config or NegotiatorConfig()
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=self.config.request_timeout)
        self._notifier = notifier or ActivityNotifier(self._http, self.config.notify_url)

    async def _send(
        self, method: str, url: str, headers: dict[str, str], kwargs: dict[str, Any]
    ) -> httpx.Response:
        return await self._http.request(
            method,
            url,
            headers=headers,
            timeout=self.config.request_timeout,
            **kwargs,
        )

    async def _release(self, entry: LedgerEntry) -> None:
        await asyncio.to_thread(self.ledger.release, entry.entry_id)

    async def fetch(self, url: str, method: str = "GET", **kwargs: Any) -> NegotiationResult:
        """Request ``url``, paying for it once if the server demands it."""
        trace = [NegotiationState.INIT]

        def finish(state: NegotiationState, **fields: Any) -> NegotiationResult:
            trace.append(state)
            result = NegotiationResult(state=state, trace=trace, **fields)
            if result.error is not None:
                logger.info("Negotiation for %s ended %s: %s", url, state.value, result.error)
            return result

        headers = {**kwargs.pop("headers", {}), "X-Agent-Name": self.config.agent_name}

        trace.append(NegotiationState.SENT)
        try:
            response = await self._send(method, url, headers, kwargs)
        except httpx.HTTPError as e:
            return finish(NegotiationState.FAILED, error=NetworkError(f"Request to {url} failed: {e}"))

        if response.status_code != 402:
            return finish(NegotiationState.PAID, response=response)

        trace.append(NegotiationState.CHALLENGED)
        try:
            requirement = decode_challenge(response.content, response.headers)
        except MalformedChallenge as e:
            return finish(NegotiationState.FAILED, response=response, error=e)
        price = requirement_price_usd(requirement)

        trace.append(NegotiationState.LIMIT_CHECKED)
        credential = self.credentials.get_usable()
        if credential is None:
            return finish(
                NegotiationState.REJECTED,
                response=response,
                requirement=requirement,
                price_usd=price,
                error=NoActiveCredential(),
            )
        outcome = {
            "response": response,
            "requirement": requirement,
            "price_usd": price,
            "credential_id": credential.id,
        }
        if not credential.allows_network(requirement.network):
            return finish(
                NegotiationState.REJECTED,
                error=NetworkNotAllowed(requirement.network, credential.allowed_networks),
                **outcome,
            )

        reservation = await asyncio.to_thread(
            self.ledger.check_and_reserve,
            credential.id,
            price,
            credential.per_transaction_limit_usd,
            credential.daily_limit_usd,
            resource=requirement.resource,
            pay_to=requirement.pay_to,
            network=requirement.network,
        )
        if not reservation.accepted or reservation.entry is None:
            return finish(
                NegotiationState.REJECTED,
                error=reservation.error or BudgetError(reservation.reason),
                **outcome,
            )
        entry = reservation.entry
        outcome["entry"] = entry
        try:
            if not self.credentials.is_current(credential.id):
                await self._release(entry)
                return finish(
                    NegotiationState.FAILED,
                    error=CredentialRevoked(credential.id, f"Credential {credential.id} is no longer active"),
                    **outcome,
                )

            intent = build_payment_intent(requirement, credential, price)
            message = canonical_json_bytes(intent)
            try:
                signature = await asyncio.wait_for(
                    self.signer.sign(message, credential),
                    timeout=self.config.signing_timeout,
                )
            except asyncio.TimeoutError:
                await self._release(entry)
                return finish(
                    NegotiationState.FAILED,
                    error=SigningFailed(f"Signer timed out after {self.config.signing_timeout}s"),
                    **outcome,
                )
            except Exception as e:
                await self._release(entry)
                return finish(
                    NegotiationState.FAILED,
                    error=SigningFailed(f"Signer failed: {type(e).__name__}: {e}"),
                    **outcome,
                )
            trace.append(NegotiationState.SIGNED)

            if not self.credentials.is_current(credential.id):
                await self._release(entry)
                return finish(
                    NegotiationState.FAILED,
                    error=CredentialRevoked(
                        credential.id, f"Credential {credential.id} was revoked before retry"
                    ),
                    **outcome,
                )

            proof_headers = {
                **headers,
                "X-Payment-Signature": signature,
                "X-Payment-Scheme": PROOF_SCHEME,
                "X-Payment-Chain": requirement.network.split(":", 1)[0],
                "X-Payment-Network": requirement.network,
                "X-Payment-Amount": requirement.max_amount_required,
                "X-Payment-Session": credential.id,
                "X-Payment-Nonce": intent["nonce"],
                "X-Payment-Intent": base64.b64encode(message).decode("ascii"),
            }

            trace.append(NegotiationState.RETRIED)
            try:
                paid = await self._send(method, url, proof_headers, kwargs)
            except httpx.HTTPError as e:
                await self._release(entry)
                return finish(
                    NegotiationState.FAILED,
                    error=NetworkError(f"Retry to {url} failed: {e}"),
                    **outcome,
                )
            outcome["response"] = paid

            if paid.status_code == 402:
                await self._release(entry)
                return finish(
                    NegotiationState.FAILED,
                    error=PaymentRejectedByServer(paid.status_code, paid.text[:200]),
                    **outcome,
                )

            outcome["entry"] = await asyncio.to_thread(self.ledger.settle, entry.entry_id)
            result = finish(NegotiationState.SETTLED, **outcome)
            logger.info(
                "Paid $%s for %s with credential %s", price, requirement.resource, credential.id
            )
            await self._notify(url, requirement, price, entry)
            return result
        except BaseException:
            # Cancellation or an unexpected error must not leave budget held.
            if outcome["entry"].status == STATUS_RESERVED:
                try:
                    self.ledger.release(entry.entry_id)
                except ValueError as e:
                    logger.warning("Could not release entry %s for %s: %s", entry.entry_id, url, e)
            raise

    async def _notify(
        self,
        url: str,
        requirement: PaymentRequirement,
        price: Decimal,
        entry: LedgerEntry,
    ) -> None:
        if not self.config.notify:
            return
        target = self.config.notify_url or f"{_origin(url)}/activity"
        await self._notifier.notify(
            {
                "type": "payment",
                "agent": self.config.agent_name,
                "tool": requirement.description,
                "amountUSD": float(price),
                "protocol": PROOF_SCHEME,
                "data": {
                    "resource": requirement.resource,
                    "network": requirement.network,
                    "payTo": requirement.pay_to,
                    "entryId": entry.entry_id,
                },
            },
            url=target,
        )

    async def dry_run(self, url: str, method: str = "GET", **kwargs: Any) -> PriceEstimate:
        """Report what ``fetch`` would pay without reserving, signing or paying."""
        headers = {**kwargs.pop("headers", {}), "X-Agent-Name": self.config.agent_name}
        try:
            response = await self._send(method, url, headers, kwargs)
        except httpx.HTTPError as e:
            return PriceEstimate(url=url, error=NetworkError(f"Request to {url} failed: {e}"))

        if response.status_code != 402:
            return PriceEstimate(url=url, status_code=response.status_code)

        try:
            requirement = decode_challenge(response.content, response.headers)
        except MalformedChallenge as e:
            return PriceEstimate(url=url, status_code=402, requires_payment=True, error=e)

        return PriceEstimate(
            url=url,
            status_code=402,
            requires_payment=True,
            requirement=requirement,
            price_usd=requirement_price_usd(requirement),
        )

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> "PaymentNegotiator":
        return self

    async def __aexit__(self, *args) -> None:
        await self.aclose()

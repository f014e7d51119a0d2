"""
Server-side paywall for metered resources.

The gate answers one question per request: admit it as paid, or challenge it
with a 402 payment requirement. Every decision is recorded as exactly one
activity event.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Mapping, Optional, Protocol

from eth_account import Account
from eth_account.messages import encode_defunct

from .activity import ActivityEvent, ActivityFeed, EventKind, SOURCE_GATE
from .challenge import (
    PAYMENT_REQUIRED_HEADER,
    REQUIREMENTS_KEY,
    PaymentRequirement,
    encode_challenge,
)
from .config import DEFAULT_ASSET, SOLANA_DEVNET
from .credentials import CredentialStore
from .errors import GateConfigurationError
from .money import asset_decimals, usd_to_base_units

logger = logging.getLogger(__name__)

# Header -> scheme, checked in order.
PROOF_HEADERS = (
    ("payment-signature", "x402"),
    ("x-payment-signature", "x402"),
    ("x-ucp-payment-credential", "ucp"),
    ("x-acp-payment-token", "acp"),
)

INTENT_HEADER = "x-payment-intent"
SESSION_HEADER = "x-payment-session"
AGENT_HEADER = "x-agent-name"


@dataclass
class GateRequest:
    """Transport-neutral view of an incoming request."""

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        self.headers = {k.lower(): v for k, v in self.headers.items()}

    @property
    def agent(self) -> str:
        return self.headers.get(AGENT_HEADER) or "unknown"

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())


@dataclass
class Admitted:
    scheme: str
    price_usd: Decimal
    resource_id: str
    proof: str
    event: ActivityEvent


@dataclass
class Challenge:
    requirement: PaymentRequirement
    body: dict[str, Any]
    headers: dict[str, str]
    event: ActivityEvent
    reason: Optional[str] = None
    status_code: int = 402


@dataclass
class Verdict:
    accepted: bool
    reason: str = ""


class ProofVerifier(Protocol):
    mode: str

    def verify(
        self,
        request: GateRequest,
        requirement: PaymentRequirement,
        scheme: str,
        proof: str,
    ) -> Verdict:
        ...


class PresenceVerifier:
    """
    Accepts any recognized proof header without checking it.

    Known weakness: anyone who sets the header is admitted. Kept as the
    default so the demo flow works against clients that cannot produce
    verifiable signatures.
    """

    mode = "presence"

    def __init__(self):
        logger.warning(
            "Paywall admits requests on proof-header presence alone; "
            "enable signature verification for anything beyond a demo"
        )

    def verify(self, request, requirement, scheme, proof) -> Verdict:
        return Verdict(accepted=True, reason="proof header present")


class SignatureVerifier:
    """
    Verifies an x402 payment intent signed by a registered session key.

    Checks the recovered signer against a non-revoked, non-expired credential,
    then the intent's resource, recipient, network, amount and freshness, and
    rejects reused nonces.
    """

    mode = "signature"

    def __init__(self, store: CredentialStore, replay_cache_size: int = 10_000):
        self.store = store
        self._replay_cache_size = replay_cache_size
        self._seen: OrderedDict[tuple[str, str], None] = OrderedDict()
        self._seen_lock = threading.Lock()

    def verify(
        self,
        request: GateRequest,
        requirement: PaymentRequirement,
        scheme: str,
        proof: str,
    ) -> Verdict:
        if scheme != "x402":
            return Verdict(False, f"{scheme} proofs cannot be verified")

        credential_id = request.header(SESSION_HEADER)
        encoded_intent = request.header(INTENT_HEADER)
        if not credential_id or not encoded_intent:
            return Verdict(False, "Missing payment intent or session header")

        try:
            intent_bytes = base64.b64decode(encoded_intent, validate=True)
            intent = json.loads(intent_bytes)
        except (binascii.Error, ValueError):
            return Verdict(False, "Payment intent is not base64 JSON")
        if not isinstance(intent, dict):
            return Verdict(False, "Payment intent must be an object")

        credential = self.store.get(credential_id)
        if credential is None:
            return Verdict(False, f"Unknown credential {credential_id}")
        if credential.is_revoked:
            return Verdict(False, f"Credential {credential_id} is revoked")
        if credential.is_expired():
            return Verdict(False, f"Credential {credential_id} is expired")

        try:
            signer = Account.recover_message(
                encode_defunct(primitive=intent_bytes), signature=proof
            )
        except Exception as e:
            return Verdict(False, f"Signature recovery failed: {e}")
        if signer.lower() != credential.public_material.lower():
            return Verdict(False, "Signature does not match the credential's session key")

        if intent.get("credentialId") != credential_id:
            return Verdict(False, "Intent credential does not match session header")
        if intent.get("resource") != requirement.resource:
            return Verdict(False, "Intent resource does not match request")
        if str(intent.get("payTo", "")).lower() != requirement.pay_to.lower():
            return Verdict(False, "Intent recipient does not match merchant")
        if intent.get("network") != requirement.network:
            return Verdict(False, "Intent network does not match merchant")
        try:
            amount = int(intent.get("amount", 0))
        except (TypeError, ValueError):
            return Verdict(False, "Intent amount is not an integer")
        if amount < requirement.amount_base_units:
            return Verdict(
                False,
                f"Intent amount {amount} below required {requirement.max_amount_required}",
            )

        try:
            issued_ms = int(intent.get("timestamp", 0))
        except (TypeError, ValueError):
            return Verdict(False, "Intent timestamp is not an integer")
        age = abs(time.time() * 1000 - issued_ms) / 1000
        if age > requirement.max_timeout_seconds:
            return Verdict(False, f"Intent is stale ({age:.0f}s old)")

        nonce = str(intent.get("nonce") or "")
        if not nonce:
            return Verdict(False, "Intent has no nonce")
        with self._seen_lock:
            key = (credential_id, nonce)
            if key in self._seen:
                return Verdict(False, "Payment intent replayed")
            self._seen[key] = None
            while len(self._seen) > self._replay_cache_size:
                self._seen.popitem(last=False)

        return Verdict(True, "signature verified")


def detect_proof(request: GateRequest) -> Optional[tuple[str, str]]:
    """Return ``(scheme, proof)`` for the first recognized proof header."""
    for header, scheme in PROOF_HEADERS:
        value = request.header(header)
        if value:
            return scheme, value
    return None


class PaywallGate:
    """Admits paid requests and challenges unpaid ones."""

    def __init__(
        self,
        recipient: str,
        sink: ActivityFeed,
        network: str = SOLANA_DEVNET,
        asset: str = DEFAULT_ASSET,
        verifier: Optional[ProofVerifier] = None,
        tool_names: Optional[Mapping[str, str]] = None,
        variant: str = REQUIREMENTS_KEY,
    ):
        self.recipient = recipient
        self.sink = sink
        self.network = network
        self.asset = asset
        self.verifier = verifier or PresenceVerifier()
        self.tool_names = dict(tool_names or {})
        self.variant = variant

    @staticmethod
    def protect(price_usd: Decimal | float | str, resource_id: str) -> Decimal:
        """Validate a metered route's price at registration time."""
        price = Decimal(str(price_usd))
        if price <= 0:
            raise GateConfigurationError(
                f"Metered resource {resource_id} must have a positive price, got {price}"
            )
        return price

    def build_requirement(
        self, request: GateRequest, price_usd: Decimal, resource_id: str
    ) -> PaymentRequirement:
        name = self.tool_names.get(resource_id, resource_id)
        return PaymentRequirement(
            scheme="exact",
            network=self.network,
            asset=self.asset,
            max_amount_required=str(usd_to_base_units(price_usd, asset_decimals(self.asset))),
            pay_to=self.recipient,
            resource=request.url,
            description=name,
            extra={"name": name, "priceUSD": float(price_usd)},
        )

    def admit(
        self,
        request: GateRequest,
        price_usd: Decimal | float | str,
        resource_id: str,
    ) -> Admitted | Challenge:
        price = self.protect(price_usd, resource_id)
        requirement = self.build_requirement(request, price, resource_id)

        reason = None
        detected = detect_proof(request)
        if detected is not None:
            scheme, proof = detected
            verdict = self.verifier.verify(request, requirement, scheme, proof)
            if verdict.accepted:
                event = self.sink.emit(
                    EventKind.PAYMENT,
                    source=SOURCE_GATE,
                    agent=request.agent,
                    tool=resource_id,
                    amount_usd=float(price),
                    protocol=scheme,
                    data={"verification": self.verifier.mode, "resource": request.url},
                )
                return Admitted(
                    scheme=scheme,
                    price_usd=price,
                    resource_id=resource_id,
                    proof=proof,
                    event=event,
                )
            reason = verdict.reason
            logger.info("Rejected %s proof for %s: %s", scheme, resource_id, reason)

        body, header_value = encode_challenge(requirement, variant=self.variant)
        data: dict[str, Any] = {"status": "402_sent"}
        if reason:
            data["reason"] = reason
        event = self.sink.emit(
            EventKind.CHALLENGE,
            source=SOURCE_GATE,
            agent=request.agent,
            tool=resource_id,
            amount_usd=float(price),
            protocol="x402",
            data=data,
        )
        return Challenge(
            requirement=requirement,
            body=body,
            headers={PAYMENT_REQUIRED_HEADER: header_value},
            event=event,
            reason=reason,
        )

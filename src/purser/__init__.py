"""
Purser: budget-scoped payments for autonomous agents.

HTTP 402 negotiation under a delegated spending limit:
Human issues a session credential → Agent pays within it → Merchant admits.
"""

__version__ = "0.1.0"

from .activity import ActivityEvent, ActivityFeed, ActivityNotifier, EventKind
from .challenge import (
    PaymentRequirement,
    decode_body,
    decode_challenge,
    decode_header,
    encode_body,
    encode_challenge,
    encode_header,
    requirement_price_usd,
)
from .credentials import BudgetScopedCredential, CredentialStore
from .gate import Admitted, Challenge, GateRequest, PaywallGate, PresenceVerifier, SignatureVerifier
from .keys import issue_session_credential
from .ledger import LedgerEntry, ReservationResult, SpendingLedger
from .negotiator import (
    NegotiationResult,
    NegotiationState,
    NegotiatorConfig,
    PaymentNegotiator,
    PriceEstimate,
)
from .signer import PaymentSigner, RemoteWalletSigner, SessionKeySigner

__all__ = [
    "ActivityEvent", "ActivityFeed", "ActivityNotifier", "EventKind",
    "PaymentRequirement", "encode_body", "encode_header", "encode_challenge",
    "decode_body", "decode_header", "decode_challenge", "requirement_price_usd",
    "BudgetScopedCredential", "CredentialStore", "issue_session_credential",
    "Admitted", "Challenge", "GateRequest", "PaywallGate", "PresenceVerifier", "SignatureVerifier",
    "LedgerEntry", "ReservationResult", "SpendingLedger",
    "NegotiationResult", "NegotiationState", "NegotiatorConfig", "PaymentNegotiator", "PriceEstimate",
    "PaymentSigner", "RemoteWalletSigner", "SessionKeySigner",
]

"""
Purser error types.

Specific exceptions for each failure mode of a negotiation or of the
credential store. Negotiation failures are returned to callers as values
(see ``NegotiationResult.error``); store failures are raised.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Optional


class PurserError(Exception):
    """Base error for all Purser operations."""
    pass


# Challenge errors
class MalformedChallenge(PurserError):
    """The 402 response could not be decoded into a payment requirement."""
    pass


# Credential errors
class CredentialError(PurserError):
    """Base error for delegated credential issues."""
    pass


class NoActiveCredential(CredentialError):
    """No active, non-revoked, non-expired delegated credential exists."""

    def __init__(self, message: str = "No active delegated credential"):
        super().__init__(message)


class InvalidCredentialInput(CredentialError):
    """Credential payload is missing required fields or has invalid limits."""
    pass


class CredentialRevoked(CredentialError):
    """Credential has been revoked and can never become active again."""

    def __init__(self, credential_id: str, message: Optional[str] = None):
        self.credential_id = credential_id
        super().__init__(message or f"Credential {credential_id} is revoked")


class CredentialNotFound(CredentialError):
    """No credential with the given id is stored."""

    def __init__(self, credential_id: str):
        self.credential_id = credential_id
        super().__init__(f"Credential not found: {credential_id}")


# Budget errors
class BudgetError(PurserError):
    """Base error for spending policy rejections."""
    pass


class PerTransactionLimitExceeded(BudgetError):
    """Amount exceeds the credential's per-transaction limit."""

    def __init__(self, amount: Decimal, limit: Decimal):
        self.amount = amount
        self.limit = limit
        self.overage = amount - limit
        super().__init__(
            f"${amount} exceeds per-transaction limit ${limit} (over by ${self.overage})"
        )


class DailyLimitExceeded(BudgetError):
    """Amount would push the current daily window above the daily limit."""

    def __init__(self, amount: Decimal, spent: Decimal, limit: Decimal):
        self.amount = amount
        self.spent = spent
        self.limit = limit
        self.remaining = max(Decimal(0), limit - spent)
        self.overage = spent + amount - limit
        super().__init__(
            f"${amount} exceeds remaining daily budget ${self.remaining} "
            f"(spent ${spent} of ${limit} today, over by ${self.overage})"
        )


class NetworkNotAllowed(BudgetError):
    """Requirement targets a network outside the credential's allowlist."""

    def __init__(self, network: str, allowed: list[str]):
        self.network = network
        self.allowed = allowed
        super().__init__(f"Network {network} not allowed (allowed: {', '.join(allowed)})")


# Payment errors
class PaymentError(PurserError):
    """Base error for payment execution failures."""
    pass


class SigningFailed(PaymentError):
    """The external signing capability failed or timed out."""
    pass


class PaymentRejectedByServer(PaymentError):
    """The retry carrying proof of payment still got a 402."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        super().__init__(f"Payment rejected ({status_code}): {message}")


class NetworkError(PaymentError):
    """Transport-level failure (timeout, DNS, connection refused)."""
    pass


# Server errors
class GateConfigurationError(PurserError):
    """Metered route is misconfigured (e.g. non-positive price)."""
    pass

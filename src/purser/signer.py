"""
Signing capabilities used by the negotiator.

A signer turns the canonical payment intent into a proof string. The local
signer unwraps the credential's sealed session key; the remote signer asks a
custody API to sign on the agent's behalf.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol, runtime_checkable

import httpx
from eth_account import Account
from eth_account.messages import encode_defunct

from .config import DEFAULT_WALLET_API_BASE, WalletApiConfig
from .credentials import BudgetScopedCredential
from .keys import open_signing_key

logger = logging.getLogger(__name__)


@runtime_checkable
class PaymentSigner(Protocol):
    """External signing capability. Raises on any failure."""

    async def sign(self, message: bytes, credential: BudgetScopedCredential) -> str:
        ...


class SessionKeySigner:
    """Signs with the credential's own session key (EIP-191 personal message)."""

    def __init__(self, master_key: str | bytes):
        self._master_key = master_key

    async def sign(self, message: bytes, credential: BudgetScopedCredential) -> str:
        if not credential.encrypted_signing_material:
            raise ValueError(f"Credential {credential.id} carries no signing material")
        private_key = open_signing_key(credential.encrypted_signing_material, self._master_key)
        account = Account.from_key(private_key)
        if account.address.lower() != credential.public_material.lower():
            raise ValueError("Session key does not match the credential's public key")
        signed = account.sign_message(encode_defunct(primitive=message))
        return "0x" + bytes(signed.signature).hex()


class RemoteWalletSigner:
    """Delegates signing to a custody API (``/wallets/{user}/actions/sign-message``)."""

    def __init__(
        self,
        username: str,
        api_token: str,
        base_url: str = DEFAULT_WALLET_API_BASE,
        chain: str = "solana",
        http: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = 10.0,
    ):
        self.username = username
        self.base_url = base_url.rstrip("/")
        self.chain = chain
        self._api_token = api_token
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=timeout_seconds)

    @classmethod
    def from_config(cls, config: WalletApiConfig) -> "RemoteWalletSigner":
        return cls(
            username=config.username,
            api_token=config.api_token,
            base_url=config.base_url,
            chain=config.chain,
        )

    async def sign(self, message: bytes, credential: BudgetScopedCredential) -> str:
        url = f"{self.base_url}/wallets/{self.username}/actions/sign-message"
        response = await self._http.post(
            url,
            json={"chain": self.chain, "message": message.decode("utf-8")},
            headers={"Authorization": f"Bearer {self._api_token}"},
        )
        if response.status_code != 200:
            raise RuntimeError(
                f"Wallet API sign-message failed ({response.status_code}): {response.text[:200]}"
            )
        signature = response.json().get("signature")
        if not signature:
            raise RuntimeError("Wallet API returned no signature")
        logger.debug("Remote signature obtained for credential %s", credential.id)
        return str(signature)

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

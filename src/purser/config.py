"""Environment-driven configuration and default on-disk locations."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


SOLANA_DEVNET = "solana:EtWTRABZaYq6iMfeYKouRu166VU2xqa1"
DEFAULT_ASSET = "USDC"
DEFAULT_RECIPIENT = "0xMerchant"
DEFAULT_MERCHANT_PORT = 4000
DEFAULT_AGENT_NAME = "purser-agent"
DEFAULT_WALLET_API_BASE = "https://agentwallet.mcpay.tech/api"

_TRUTHY = {"1", "true", "yes", "on"}


def purser_home() -> Path:
    """Root directory for local state (``PURSER_HOME``, default ``~/.purser``)."""
    override = os.getenv("PURSER_HOME")
    return Path(override).expanduser() if override else Path.home() / ".purser"


def default_credentials_dir() -> Path:
    return purser_home() / "credentials"


def default_ledger_dir() -> Path:
    return purser_home() / "ledger"


def default_activity_path() -> Path:
    return purser_home() / "activity.jsonl"


def default_activity_key_path() -> Path:
    return purser_home() / "secrets" / "activity_hmac.key"


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


@dataclass
class MerchantConfig:
    """Settings for the metered resource server."""

    host: str = "127.0.0.1"
    port: int = DEFAULT_MERCHANT_PORT
    recipient: str = DEFAULT_RECIPIENT
    network: str = SOLANA_DEVNET
    asset: str = DEFAULT_ASSET
    verify_payments: bool = False
    credentials_dir: Optional[Path] = None
    activity_path: Optional[Path] = None
    activity_key_path: Optional[Path] = None

    @classmethod
    def from_env(cls) -> "MerchantConfig":
        activity = os.getenv("PURSER_ACTIVITY_PATH")
        return cls(
            host=os.getenv("MERCHANT_HOST", "127.0.0.1"),
            port=int(os.getenv("MERCHANT_PORT", str(DEFAULT_MERCHANT_PORT))),
            recipient=os.getenv("MERCHANT_RECIPIENT_ADDRESS", DEFAULT_RECIPIENT),
            network=os.getenv("MERCHANT_NETWORK", SOLANA_DEVNET),
            asset=os.getenv("MERCHANT_ASSET", DEFAULT_ASSET),
            verify_payments=_env_bool("PURSER_VERIFY_PAYMENTS"),
            credentials_dir=default_credentials_dir(),
            activity_path=Path(activity) if activity else default_activity_path(),
            activity_key_path=default_activity_key_path(),
        )


@dataclass
class WalletApiConfig:
    """Remote custody API used by ``RemoteWalletSigner``."""

    username: str
    api_token: str
    base_url: str = DEFAULT_WALLET_API_BASE
    chain: str = "solana"

    @classmethod
    def from_env(cls) -> Optional["WalletApiConfig"]:
        username = os.getenv("AGENT_WALLET_USERNAME")
        token = os.getenv("AGENT_WALLET_API_KEY")
        if not username or not token:
            return None
        return cls(
            username=username,
            api_token=token,
            base_url=os.getenv("AGENT_WALLET_API_BASE", DEFAULT_WALLET_API_BASE),
            chain=os.getenv("AGENT_WALLET_CHAIN", "solana"),
        )

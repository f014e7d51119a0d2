"""
Session key issuance for the human setup flow.

The human's master key never leaves this module's callers: it derives the
stable credential id and wraps the freshly generated session key so only the
ciphertext is stored or sent to a server.
"""

from __future__ import annotations

import base64
import json
import os
from typing import Any, Iterable, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from eth_account import Account
from eth_utils import keccak


SEALED_KEY_VERSION = 1
_SALT_BYTES = 16
_NONCE_BYTES = 12
_AAD = b"purser-session-key"
_HKDF_INFO = b"purser session key wrap v1"


def canonical_json_bytes(value: Any) -> bytes:
    """Serialize JSON using deterministic ordering and no insignificant whitespace."""
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def derive_key_hash(value: str | bytes) -> str:
    """Return a keccak256 identifier for public key material."""
    raw = value.encode() if isinstance(value, str) else value
    return "0x" + keccak(raw).hex()


def _master_secret_bytes(master_secret: str | bytes) -> bytes:
    if isinstance(master_secret, bytes):
        return master_secret
    cleaned = master_secret.strip()
    if cleaned.startswith("0x"):
        cleaned = cleaned[2:]
    try:
        return bytes.fromhex(cleaned)
    except ValueError:
        return cleaned.encode()


def _wrap_key(master_secret: str | bytes, salt: bytes) -> bytes:
    return HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        info=_HKDF_INFO,
    ).derive(_master_secret_bytes(master_secret))


def seal_signing_key(private_key: bytes, master_secret: str | bytes) -> str:
    """Encrypt a session private key under the master secret (AES-256-GCM)."""
    salt = os.urandom(_SALT_BYTES)
    nonce = os.urandom(_NONCE_BYTES)
    ciphertext = AESGCM(_wrap_key(master_secret, salt)).encrypt(nonce, private_key, _AAD)
    blob = bytes([SEALED_KEY_VERSION]) + salt + nonce + ciphertext
    return base64.b64encode(blob).decode("ascii")


def open_signing_key(sealed: str, master_secret: str | bytes) -> bytes:
    """Decrypt a sealed session key; raises ValueError on tampering or wrong secret."""
    try:
        blob = base64.b64decode(sealed, validate=True)
    except ValueError as e:
        raise ValueError(f"Sealed key is not base64: {e}") from e

    header = 1 + _SALT_BYTES + _NONCE_BYTES
    if len(blob) <= header or blob[0] != SEALED_KEY_VERSION:
        raise ValueError("Unsupported sealed key format")
    salt = blob[1 : 1 + _SALT_BYTES]
    nonce = blob[1 + _SALT_BYTES : header]
    try:
        return AESGCM(_wrap_key(master_secret, salt)).decrypt(nonce, blob[header:], _AAD)
    except InvalidTag as e:
        raise ValueError("Could not decrypt session key (wrong master key or tampered data)") from e


def issue_session_credential(
    master_key: str,
    daily_limit_usd: float,
    per_transaction_limit_usd: float,
    expiry_hours: int = 24,
    allowed_networks: Optional[Iterable[str]] = None,
) -> tuple[dict[str, Any], dict[str, Any]]:
    """
    Generate a budget-scoped session key for an agent.

    Returns the ``(wallet, session)`` pair accepted by
    ``CredentialStore.set_active`` and ``POST /agent/credentials``. Limits are
    validated by the store, not here.
    """
    master = Account.from_key(master_key)
    session = Account.create()

    wallet = {
        "credentialId": master.address,
        "keyHash": derive_key_hash(master.address.lower()),
    }
    session_wire = {
        "publicKey": session.address,
        "encryptedPrivateKey": seal_signing_key(bytes(session.key), master_key),
        "keyHash": derive_key_hash(session.address.lower()),
        "dailyLimitUSD": daily_limit_usd,
        "perTransactionLimitUSD": per_transaction_limit_usd,
        "expiryHours": expiry_hours,
        "allowedNetworks": sorted(set(allowed_networks or [])),
    }
    return wallet, session_wire

"""
Budget-scoped credential persistence.

Holds every delegated session credential the human has registered and which
one is currently active. The whole store is a single JSON record written
atomically under an exclusive file lock, with a checksum verified on load.
"""

from __future__ import annotations

import calendar
import hashlib
import hmac
import json
import logging
import math
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

from .config import SOLANA_DEVNET
from .errors import (
    CredentialNotFound,
    CredentialRevoked,
    InvalidCredentialInput,
    NoActiveCredential,
)
from .keys import canonical_json_bytes, derive_key_hash
from .storage import atomic_write_json, ensure_private_dir, exclusive_lock

logger = logging.getLogger(__name__)

STORE_VERSION = 1

# Legacy numeric chain ids (Wormhole numbering) sent by older setup clients.
LEGACY_CHAIN_NETWORKS = {
    1: SOLANA_DEVNET,
}


@dataclass
class BudgetScopedCredential:
    """A delegated signing capability bound to spending limits."""

    id: str
    public_material: str
    encrypted_signing_material: str
    daily_limit_usd: float
    per_transaction_limit_usd: float
    expiry_hours: float
    allowed_networks: list[str] = field(default_factory=list)
    created_at: float = 0.0
    revoked_at: Optional[float] = None
    wallet: dict[str, Any] = field(default_factory=dict)
    session_key_hash: str = ""

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    @property
    def expires_at(self) -> float:
        return self.created_at + self.expiry_hours * 3600

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) >= self.expires_at

    def allows_network(self, network: str) -> bool:
        return not self.allowed_networks or network in self.allowed_networks

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "public_material": self.public_material,
            "encrypted_signing_material": self.encrypted_signing_material,
            "daily_limit_usd": self.daily_limit_usd,
            "per_transaction_limit_usd": self.per_transaction_limit_usd,
            "expiry_hours": self.expiry_hours,
            "allowed_networks": list(self.allowed_networks),
            "created_at": self.created_at,
            "revoked_at": self.revoked_at,
            "wallet": dict(self.wallet),
            "session_key_hash": self.session_key_hash,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "BudgetScopedCredential":
        return cls(
            id=d["id"],
            public_material=d["public_material"],
            encrypted_signing_material=d.get("encrypted_signing_material", ""),
            daily_limit_usd=float(d["daily_limit_usd"]),
            per_transaction_limit_usd=float(d["per_transaction_limit_usd"]),
            expiry_hours=float(d["expiry_hours"]),
            allowed_networks=list(d.get("allowed_networks") or []),
            created_at=float(d.get("created_at", 0.0)),
            revoked_at=d.get("revoked_at"),
            wallet=dict(d.get("wallet") or {}),
            session_key_hash=d.get("session_key_hash", ""),
        )

    def to_wire(self) -> dict[str, Any]:
        """Shape returned by the credential HTTP endpoints."""
        return {
            "id": self.id,
            "wallet": dict(self.wallet),
            "session": {
                "publicKey": self.public_material,
                "encryptedPrivateKey": self.encrypted_signing_material,
                "keyHash": self.session_key_hash,
                "dailyLimitUSD": self.daily_limit_usd,
                "perTransactionLimitUSD": self.per_transaction_limit_usd,
                "expiryHours": self.expiry_hours,
                "allowedNetworks": list(self.allowed_networks),
            },
            "createdAt": _iso(self.created_at),
            "revokedAt": _iso(self.revoked_at) if self.revoked_at is not None else None,
        }


ISO_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def _iso(ts: float) -> str:
    return time.strftime(ISO_FORMAT, time.gmtime(ts))


def parse_iso_timestamp(value: str) -> float:
    """Inverse of the ``createdAt``/``revokedAt`` wire format."""
    try:
        return float(calendar.timegm(time.strptime(value, ISO_FORMAT)))
    except (TypeError, ValueError):
        raise InvalidCredentialInput(f"Invalid timestamp: {value!r}")


def _positive_limit(session: Mapping[str, Any], key: str) -> float:
    raw = session.get(key)
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise InvalidCredentialInput(f"session.{key} must be a number, got {raw!r}")
    if not math.isfinite(value) or value <= 0:
        raise InvalidCredentialInput(f"session.{key} must be a finite number > 0, got {raw!r}")
    return value


def _allowed_networks(session: Mapping[str, Any]) -> list[str]:
    networks = session.get("allowedNetworks")
    if networks is not None:
        if not isinstance(networks, list):
            raise InvalidCredentialInput("session.allowedNetworks must be a list")
        return sorted({str(n) for n in networks})

    chains = session.get("allowedChains") or []
    if not isinstance(chains, list):
        raise InvalidCredentialInput("session.allowedChains must be a list")
    resolved = set()
    for chain in chains:
        try:
            resolved.add(LEGACY_CHAIN_NETWORKS.get(int(chain), f"wormhole:{int(chain)}"))
        except (TypeError, ValueError):
            raise InvalidCredentialInput(f"Invalid legacy chain id: {chain!r}")
    return sorted(resolved)


class CredentialStore:
    """
    File-backed store of budget-scoped credentials with one active slot.

    Every operation holds an in-process re-entrant lock so a concurrent
    activation switch is never observed half-applied.
    """

    FILE_NAME = "credentials.json"

    def __init__(
        self,
        store_dir: Path,
        clock: Callable[[], float] = time.time,
    ):
        self.store_dir = Path(store_dir)
        ensure_private_dir(self.store_dir)
        self.path = self.store_dir / self.FILE_NAME
        self._lock_path = self.store_dir / ".credentials.lock"
        self._clock = clock
        self._mutex = threading.RLock()
        self._credentials: dict[str, BudgetScopedCredential] = {}
        self._active_id: Optional[str] = None
        self._stamp: Optional[tuple[int, int, int]] = None
        with self._mutex, exclusive_lock(self._lock_path):
            self._load()

    # -- persistence --------------------------------------------------------

    def _checksum(self, payload: Mapping[str, Any]) -> str:
        return hashlib.sha256(canonical_json_bytes(payload)).hexdigest()

    def _file_stamp(self) -> Optional[tuple[int, int, int]]:
        try:
            st = os.stat(self.path)
        except FileNotFoundError:
            return None
        return (st.st_ino, st.st_mtime_ns, st.st_size)

    def _load(self) -> None:
        stamp = self._file_stamp()
        if stamp is None:
            self._credentials = {}
            self._active_id = None
            self._stamp = None
            return
        with open(self.path, encoding="utf-8") as f:
            try:
                raw = json.load(f)
            except ValueError as e:
                raise ValueError(f"Credential store is corrupt: {e}") from e

        body = {k: v for k, v in raw.items() if k != "checksum"}
        if not hmac.compare_digest(self._checksum(body), str(raw.get("checksum", ""))):
            raise ValueError(f"Credential store checksum mismatch: {self.path}")
        if body.get("version") != STORE_VERSION:
            raise ValueError(f"Unsupported credential store version: {body.get('version')}")

        self._credentials = {
            c["id"]: BudgetScopedCredential.from_dict(c) for c in body.get("credentials", [])
        }
        self._active_id = body.get("active_id")
        self._stamp = stamp

    def _save(self) -> None:
        body = {
            "version": STORE_VERSION,
            "active_id": self._active_id,
            "credentials": [c.to_dict() for c in self._credentials.values()],
        }
        atomic_write_json(self.path, {**body, "checksum": self._checksum(body)})
        self._stamp = self._file_stamp()

    def _refresh(self) -> None:
        """Reload when another process or store instance rewrote the file."""
        if self._file_stamp() == self._stamp:
            return
        with exclusive_lock(self._lock_path):
            self._load()

    # -- mutations ----------------------------------------------------------

    def set_active(
        self,
        wallet: Mapping[str, Any],
        session: Mapping[str, Any],
        created_at: Optional[float] = None,
    ) -> BudgetScopedCredential:
        """
        Register (or replace) a credential from the setup wire shape and make it
        the active one. The previously active credential stays stored.

        A replaced credential keeps its original creation time unless
        ``created_at`` is given, so its expiry window is not extended.
        """
        if not isinstance(wallet, Mapping) or not isinstance(session, Mapping):
            raise InvalidCredentialInput("Missing wallet or session data")

        credential_id = wallet.get("keyHash")
        if not credential_id:
            wallet_identity = wallet.get("credentialId")
            if not wallet_identity:
                raise InvalidCredentialInput("wallet.credentialId is required")
            credential_id = derive_key_hash(str(wallet_identity))
        public_material = session.get("publicKey")
        if not public_material:
            raise InvalidCredentialInput("session.publicKey is required")

        daily = _positive_limit(session, "dailyLimitUSD")
        per_tx = _positive_limit(session, "perTransactionLimitUSD")
        try:
            expiry_hours = float(session.get("expiryHours", 24))
        except (TypeError, ValueError):
            raise InvalidCredentialInput("session.expiryHours must be a number")
        if not math.isfinite(expiry_hours) or expiry_hours <= 0:
            raise InvalidCredentialInput("session.expiryHours must be a finite number > 0")
        networks = _allowed_networks(session)

        with self._mutex, exclusive_lock(self._lock_path):
            self._load()
            existing = self._credentials.get(credential_id)
            if existing is not None and existing.is_revoked:
                raise CredentialRevoked(credential_id)
            if created_at is None:
                created_at = existing.created_at if existing is not None else self._clock()

            credential = BudgetScopedCredential(
                id=credential_id,
                public_material=str(public_material),
                encrypted_signing_material=str(session.get("encryptedPrivateKey", "")),
                daily_limit_usd=daily,
                per_transaction_limit_usd=per_tx,
                expiry_hours=expiry_hours,
                allowed_networks=networks,
                created_at=created_at,
                wallet=dict(wallet),
                session_key_hash=str(session.get("keyHash", "")),
            )
            self._credentials[credential_id] = credential
            self._active_id = credential_id
            self._save()

        logger.info("Activated credential %s (session %s)", credential_id, public_material)
        return credential

    def activate(self, credential_id: str) -> BudgetScopedCredential:
        """Switch the active slot to an already stored credential."""
        with self._mutex, exclusive_lock(self._lock_path):
            self._load()
            credential = self._credentials.get(credential_id)
            if credential is None:
                raise CredentialNotFound(credential_id)
            if credential.is_revoked:
                raise CredentialRevoked(credential_id)
            self._active_id = credential_id
            self._save()
        logger.info("Activated credential %s", credential_id)
        return credential

    def _revoke_loaded(self, credential: BudgetScopedCredential) -> Optional[str]:
        if credential.revoked_at is None:
            credential.revoked_at = self._clock()
            logger.info("Revoked credential %s", credential.id)
        if self._active_id == credential.id:
            self._active_id = self._elect()
        self._save()
        return self._active_id

    def revoke(self, credential_id: str) -> Optional[str]:
        """
        Revoke a credential. If it was active, re-elect the most recently
        created usable credential and return its id (None when none is left).
        """
        with self._mutex, exclusive_lock(self._lock_path):
            self._load()
            credential = self._credentials.get(credential_id)
            if credential is None:
                raise CredentialNotFound(credential_id)
            return self._revoke_loaded(credential)

    def revoke_active_credential(self) -> tuple[BudgetScopedCredential, Optional[str]]:
        """
        Revoke whatever is active under one file lock. Returns the revoked
        credential and the newly active id.
        """
        with self._mutex, exclusive_lock(self._lock_path):
            self._load()
            active = self._active_locked()
            if active is None:
                raise NoActiveCredential()
            return active, self._revoke_loaded(active)

    def revoke_active(self) -> Optional[str]:
        """Revoke the active credential; returns the newly active id, if any."""
        return self.revoke_active_credential()[1]

    def _elect(self) -> Optional[str]:
        now = self._clock()
        candidates = [
            c
            for c in self._credentials.values()
            if not c.is_revoked and not c.is_expired(now)
        ]
        if not candidates:
            return None
        candidates.sort(key=lambda c: c.created_at, reverse=True)
        return candidates[0].id

    # -- reads --------------------------------------------------------------
    # Each read first reloads if the file changed since this instance last
    # loaded or saved it.

    def _active_locked(self) -> Optional[BudgetScopedCredential]:
        if self._active_id is None:
            return None
        credential = self._credentials.get(self._active_id)
        if credential is None or credential.is_revoked:
            return None
        return credential

    def get_active(self) -> Optional[BudgetScopedCredential]:
        with self._mutex:
            self._refresh()
            return self._active_locked()

    def get_usable(self) -> Optional[BudgetScopedCredential]:
        """Active credential that is also within its expiry window."""
        with self._mutex:
            credential = self.get_active()
            if credential is None or credential.is_expired(self._clock()):
                return None
            return credential

    def is_current(self, credential_id: str) -> bool:
        """True while ``credential_id`` is the active, usable credential."""
        with self._mutex:
            credential = self.get_usable()
            return credential is not None and credential.id == credential_id

    def get(self, credential_id: str) -> Optional[BudgetScopedCredential]:
        with self._mutex:
            self._refresh()
            return self._credentials.get(credential_id)

    def list(self) -> list[BudgetScopedCredential]:
        with self._mutex:
            self._refresh()
            return sorted(self._credentials.values(), key=lambda c: c.created_at, reverse=True)

    def reload(self) -> None:
        """Unconditionally re-read the file."""
        with self._mutex, exclusive_lock(self._lock_path):
            self._load()

    def status(self) -> dict[str, Any]:
        with self._mutex:
            now = self._clock()
            active = self.get_usable()
            return {
                "hasCredentials": active is not None,
                "activeId": active.id if active else None,
                "createdAt": _iso(active.created_at) if active else None,
                "revokedAt": None,
                "dailyLimitUSD": active.daily_limit_usd if active else None,
                "perTransactionLimitUSD": active.per_transaction_limit_usd if active else None,
                "total": len(self._credentials),
                "revoked": sum(1 for c in self._credentials.values() if c.is_revoked),
                "expired": sum(
                    1
                    for c in self._credentials.values()
                    if not c.is_revoked and c.is_expired(now)
                ),
            }

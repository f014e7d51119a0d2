"""Tests for session key issuance and sealing."""

import base64

import pytest
from eth_account import Account

from purser.keys import (
    canonical_json_bytes,
    derive_key_hash,
    issue_session_credential,
    open_signing_key,
    seal_signing_key,
)


MASTER = Account.create()
MASTER_KEY = "0x" + bytes(MASTER.key).hex()


def test_canonical_json_is_sorted_and_compact():
    assert canonical_json_bytes({"b": 1, "a": [1, 2]}) == b'{"a":[1,2],"b":1}'


def test_key_hash_is_stable_keccak():
    assert derive_key_hash("abc") == derive_key_hash(b"abc")
    assert derive_key_hash("abc") != derive_key_hash("abd")
    assert derive_key_hash("abc").startswith("0x")
    assert len(derive_key_hash("abc")) == 66


def test_seal_round_trip():
    secret = b"\x01" * 32
    sealed = seal_signing_key(secret, MASTER_KEY)
    assert secret not in base64.b64decode(sealed)
    assert open_signing_key(sealed, MASTER_KEY) == secret


def test_seal_uses_fresh_salt_and_nonce():
    secret = b"\x02" * 32
    assert seal_signing_key(secret, MASTER_KEY) != seal_signing_key(secret, MASTER_KEY)


def test_open_with_wrong_master_key_fails():
    sealed = seal_signing_key(b"\x03" * 32, MASTER_KEY)
    other = "0x" + bytes(Account.create().key).hex()
    with pytest.raises(ValueError, match="Could not decrypt"):
        open_signing_key(sealed, other)


def test_open_tampered_blob_fails():
    blob = bytearray(base64.b64decode(seal_signing_key(b"\x04" * 32, MASTER_KEY)))
    blob[-1] ^= 0xFF
    with pytest.raises(ValueError, match="Could not decrypt"):
        open_signing_key(base64.b64encode(bytes(blob)).decode(), MASTER_KEY)


def test_open_rejects_garbage():
    with pytest.raises(ValueError):
        open_signing_key("not base64!!", MASTER_KEY)
    with pytest.raises(ValueError, match="Unsupported"):
        open_signing_key(base64.b64encode(b"\x09short").decode(), MASTER_KEY)


class TestIssueSessionCredential:
    def test_wire_shape(self):
        wallet, session = issue_session_credential(
            MASTER_KEY, 50.0, 5.0, 12, ["solana:devnet", "solana:devnet"]
        )
        assert wallet["credentialId"] == MASTER.address
        assert wallet["keyHash"] == derive_key_hash(MASTER.address.lower())
        assert session["dailyLimitUSD"] == 50.0
        assert session["perTransactionLimitUSD"] == 5.0
        assert session["expiryHours"] == 12
        assert session["allowedNetworks"] == ["solana:devnet"]
        assert session["keyHash"] == derive_key_hash(session["publicKey"].lower())

    def test_session_key_unwraps_to_public_key(self):
        _, session = issue_session_credential(MASTER_KEY, 50.0, 5.0)
        private_key = open_signing_key(session["encryptedPrivateKey"], MASTER_KEY)
        assert Account.from_key(private_key).address == session["publicKey"]

    def test_same_master_same_id(self):
        first, _ = issue_session_credential(MASTER_KEY, 50.0, 5.0)
        second, _ = issue_session_credential(MASTER_KEY, 10.0, 1.0)
        assert first["keyHash"] == second["keyHash"]

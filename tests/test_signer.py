"""Tests for the signing capabilities."""

import json

import httpx
import pytest
from eth_account import Account
from eth_account.messages import encode_defunct

from purser.config import WalletApiConfig
from purser.credentials import CredentialStore
from purser.keys import issue_session_credential
from purser.signer import PaymentSigner, RemoteWalletSigner, SessionKeySigner


MASTER_KEY = "0x" + bytes(Account.create().key).hex()


@pytest.fixture
def credential(tmp_path):
    store = CredentialStore(tmp_path / "creds")
    return store.set_active(*issue_session_credential(MASTER_KEY, 10.0, 1.0))


class TestSessionKeySigner:
    @pytest.mark.asyncio
    async def test_signature_recovers_to_session_key(self, credential):
        signature = await SessionKeySigner(MASTER_KEY).sign(b"intent", credential)
        recovered = Account.recover_message(encode_defunct(primitive=b"intent"), signature=signature)
        assert recovered == credential.public_material

    @pytest.mark.asyncio
    async def test_wrong_master_key_fails(self, credential):
        other = "0x" + bytes(Account.create().key).hex()
        with pytest.raises(ValueError):
            await SessionKeySigner(other).sign(b"intent", credential)

    @pytest.mark.asyncio
    async def test_missing_signing_material(self, credential):
        credential.encrypted_signing_material = ""
        with pytest.raises(ValueError, match="no signing material"):
            await SessionKeySigner(MASTER_KEY).sign(b"intent", credential)

    def test_satisfies_protocol(self):
        assert isinstance(SessionKeySigner(MASTER_KEY), PaymentSigner)


class TestRemoteWalletSigner:
    @pytest.mark.asyncio
    async def test_posts_message_with_bearer_token(self, credential):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"signature": "0xremote"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            signer = RemoteWalletSigner("scout", "tok", base_url="https://wallet.test/api/", http=http)
            assert await signer.sign(b'{"a":1}', credential) == "0xremote"

        assert seen["url"] == "https://wallet.test/api/wallets/scout/actions/sign-message"
        assert seen["auth"] == "Bearer tok"
        assert seen["body"] == {"chain": "solana", "message": '{"a":1}'}

    @pytest.mark.asyncio
    async def test_error_status_raises(self, credential):
        async with httpx.AsyncClient(
            transport=httpx.MockTransport(lambda r: httpx.Response(401, text="bad token"))
        ) as http:
            signer = RemoteWalletSigner("scout", "tok", http=http)
            with pytest.raises(RuntimeError, match="401"):
                await signer.sign(b"intent", credential)

    @pytest.mark.asyncio
    async def test_missing_signature_raises(self, credential):
        async with httpx.AsyncClient(
            transport=httpx.MockTransport(lambda r: httpx.Response(200, json={}))
        ) as http:
            signer = RemoteWalletSigner("scout", "tok", http=http)
            with pytest.raises(RuntimeError, match="no signature"):
                await signer.sign(b"intent", credential)

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("AGENT_WALLET_USERNAME", "scout")
        monkeypatch.setenv("AGENT_WALLET_API_KEY", "tok")
        monkeypatch.setenv("AGENT_WALLET_CHAIN", "base")
        signer = RemoteWalletSigner.from_config(WalletApiConfig.from_env())
        assert signer.username == "scout"
        assert signer.chain == "base"

    def test_from_env_requires_credentials(self, monkeypatch):
        monkeypatch.delenv("AGENT_WALLET_USERNAME", raising=False)
        monkeypatch.delenv("AGENT_WALLET_API_KEY", raising=False)
        assert WalletApiConfig.from_env() is None

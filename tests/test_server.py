"""HTTP tests for the merchant app."""

import base64
import json

import pytest
from eth_account import Account
from fastapi.testclient import TestClient

from purser.activity import ActivityFeed
from purser.config import MerchantConfig
from purser.credentials import CredentialStore
from purser.keys import issue_session_credential
from purser.server import TOOLS, create_app


MASTER_KEY = "0x" + bytes(Account.create().key).hex()


@pytest.fixture
def store(tmp_path):
    return CredentialStore(tmp_path / "creds")


@pytest.fixture
def feed():
    return ActivityFeed()


@pytest.fixture
def client(store, feed):
    return TestClient(create_app(config=MerchantConfig(), store=store, feed=feed))


def credentials_payload(daily=50.0, per_tx=5.0):
    wallet, session = issue_session_credential(
        "0x" + bytes(Account.create().key).hex(), daily, per_tx
    )
    return {"wallet": wallet, "session": session}


class TestFreeRoutes:
    def test_tools(self, client, feed):
        response = client.get("/tools")
        assert response.status_code == 200
        body = response.json()
        assert [t["id"] for t in body["tools"]] == [t["id"] for t in TOOLS]
        assert body["paymentProtocols"] == ["x402", "ucp", "acp"]
        assert feed.recent(1)[0].kind == "discovery"

    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["tools"] == 3

    def test_activity_roundtrip(self, client):
        posted = client.post(
            "/activity",
            json={"type": "payment", "agent": "scout", "tool": "sol-price", "amountUSD": 0.001},
        )
        assert posted.json()["recorded"] is True

        activity = client.get("/activity", params={"limit": 5}).json()
        assert activity["total"] == 1
        assert activity["activity"][0]["source"] == "external"
        assert activity["activity"][0]["agent"] == "scout"

    def test_unknown_activity_type_is_external(self, client, feed):
        client.post("/activity", json={"type": "tool_call"})
        assert feed.recent(1)[0].kind == "external"

    def test_proof(self, client, feed):
        response = client.post(
            "/proof",
            json={"hash": "abc", "txHash": "5xyz"},
            headers={"X-Agent-Name": "scout"},
        )
        assert response.status_code == 200
        event = feed.recent(1)[0]
        assert event.kind == "proof"
        assert event.agent == "scout"
        assert event.tx_hash == "5xyz"
        assert event.data == {"hash": "abc", "txHash": "5xyz"}

    def test_stats_ignore_reported_payments(self, client):
        client.post("/activity", json={"type": "payment", "amountUSD": 1.0})
        client.get("/market/sol", headers={"X-Payment-Signature": "proof"})
        stats = client.get("/stats").json()
        assert stats["totalPayments"] == 1
        assert stats["totalRevenue"] == "0.0010"


class TestMeteredRoutes:
    def test_unpaid_request_gets_402_with_body_and_header(self, client):
        response = client.get("/market/sol")
        assert response.status_code == 402
        body = response.json()
        requirement = body["paymentRequirements"][0]
        assert requirement["maxAmountRequired"] == "1000"
        assert requirement["payTo"] == "0xMerchant"
        assert requirement["resource"] == "http://testserver/market/sol"
        header = json.loads(base64.b64decode(response.headers["payment-required"]))
        assert header == body

    @pytest.mark.parametrize(
        "header", ["X-Payment-Signature", "X-UCP-Payment-Credential", "X-ACP-Payment-Token"]
    )
    def test_proof_header_admits(self, client, header):
        response = client.get("/market/tokens", headers={header: "proof"})
        assert response.status_code == 200
        assert len(response.json()["tokens"]) == 10

    def test_analyze(self, client):
        response = client.post(
            "/analyze", json={"sector": "DeFi"}, headers={"X-Payment-Signature": "proof"}
        )
        assert response.status_code == 200
        assert response.json()["target"] == "DeFi"

    def test_verified_app_rejects_bare_header(self, store, feed):
        client = TestClient(
            create_app(config=MerchantConfig(verify_payments=True), store=store, feed=feed)
        )
        response = client.get("/market/sol", headers={"X-Payment-Signature": "proof"})
        assert response.status_code == 402
        assert "Missing" in feed.recent(1)[0].data["reason"]


class TestCredentialRoutes:
    def test_set_and_get(self, client, feed):
        payload = credentials_payload()
        response = client.post("/agent/credentials", json=payload)
        assert response.status_code == 200
        assert response.json()["keyHash"] == payload["wallet"]["keyHash"]
        assert feed.recent(1)[0].data["action"] == "credentials_set"

        current = client.get("/agent/credentials").json()
        assert current["id"] == payload["wallet"]["keyHash"]
        assert current["session"]["dailyLimitUSD"] == 50.0
        assert current["revokedAt"] is None

    def test_missing_session(self, client):
        response = client.post("/agent/credentials", json={"wallet": {"keyHash": "0x1"}})
        assert response.status_code == 400

    @pytest.mark.parametrize("field", ["dailyLimitUSD", "perTransactionLimitUSD", "expiryHours"])
    @pytest.mark.parametrize("value", [-5, 0, "NaN", "Infinity", "-inf"])
    def test_invalid_limits(self, client, store, field, value):
        payload = credentials_payload()
        payload["session"][field] = value
        assert client.post("/agent/credentials", json=payload).status_code == 400
        assert store.get_active() is None

    def test_no_credentials(self, client):
        assert client.get("/agent/credentials").status_code == 404
        assert client.delete("/agent/credentials").status_code == 404

    def test_revoke_active_twice(self, client, feed):
        client.post("/agent/credentials", json=credentials_payload())
        assert client.delete("/agent/credentials").status_code == 200
        assert feed.recent(1)[0].data["action"] == "credentials_revoked"

        response = client.delete("/agent/credentials")
        assert response.status_code == 404
        assert response.json()["detail"] == "No credentials to revoke"

    def test_revoke_active_reelects(self, client):
        older = credentials_payload()
        newer = credentials_payload()
        client.post("/agent/credentials", json=older)
        client.post("/agent/credentials", json=newer)

        response = client.delete("/agent/credentials")
        assert response.status_code == 200
        body = response.json()
        assert body["id"] == newer["wallet"]["keyHash"]
        assert body["newActiveId"] == older["wallet"]["keyHash"]
        assert body["revokedAt"]

    def test_revoked_credential_cannot_return(self, client):
        payload = credentials_payload()
        key_hash = payload["wallet"]["keyHash"]
        client.post("/agent/credentials", json=payload)
        assert client.delete(f"/agent/credentials/{key_hash}").status_code == 200

        assert client.post("/agent/credentials", json=payload).status_code == 409
        assert client.post(f"/agent/credentials/{key_hash}/activate").status_code == 409
        assert client.get("/agent/credentials").status_code == 404

    def test_activate_and_unknown_ids(self, client):
        first = credentials_payload()
        client.post("/agent/credentials", json=first)
        client.post("/agent/credentials", json=credentials_payload())

        key_hash = first["wallet"]["keyHash"]
        assert client.post(f"/agent/credentials/{key_hash}/activate").json()["id"] == key_hash
        assert client.post("/agent/credentials/0xnope/activate").status_code == 404
        assert client.delete("/agent/credentials/0xnope").status_code == 404

    def test_status(self, client):
        assert client.get("/agent/status").json()["hasCredentials"] is False
        client.post("/agent/credentials", json=credentials_payload(daily=20.0, per_tx=2.0))
        status = client.get("/agent/status").json()
        assert status["hasCredentials"] is True
        assert status["dailyLimitUSD"] == 20.0
        assert status["perTransactionLimitUSD"] == 2.0

"""CLI tests, including master-key hardening."""

import json
import time

import httpx
import pytest
from click.testing import CliRunner
from eth_account import Account

from purser.cli import main
from purser.credentials import CredentialStore
from purser.keys import issue_session_credential
from purser.negotiator import PaymentNegotiator
from purser.signer import RemoteWalletSigner


@pytest.fixture
def master_key():
    return "0x" + bytes(Account.create().key).hex()


@pytest.fixture
def runner(tmp_path, monkeypatch):
    monkeypatch.setenv("PURSER_HOME", str(tmp_path / "home"))
    monkeypatch.delenv("PURSER_MASTER_KEY", raising=False)
    return CliRunner()


def issue(runner, master_key, daily="5", per_tx="1", *extra):
    return runner.invoke(
        main,
        ["credentials", "issue", "--daily-limit", daily, "--per-tx-limit", per_tx, *extra],
        env={"PURSER_MASTER_KEY": master_key},
    )


def test_issue_rejects_master_key_on_argv(runner, master_key):
    result = runner.invoke(
        main,
        [
            "credentials",
            "issue",
            "--daily-limit",
            "5",
            "--per-tx-limit",
            "1",
            "--master-key",
            master_key,
        ],
    )
    assert result.exit_code != 0
    assert "Refusing --master-key from argv" in result.output


def test_fetch_rejects_master_key_on_argv(runner, master_key):
    result = runner.invoke(
        main, ["fetch", "http://merchant.invalid/market/sol", "--master-key", master_key]
    )
    assert result.exit_code != 0
    assert "Refusing --master-key from argv" in result.output


def test_unsafe_flag_allows_argv_key(runner, master_key):
    result = runner.invoke(
        main,
        [
            "credentials",
            "issue",
            "--daily-limit",
            "5",
            "--per-tx-limit",
            "1",
            "--master-key",
            master_key,
            "--unsafe-allow-key-arg",
        ],
    )
    assert result.exit_code == 0, result.output
    assert "Credential issued" in result.output


def test_issue_rejects_malformed_master_key(runner):
    result = issue(runner, "not-a-key")
    assert result.exit_code != 0
    assert "32-byte hex" in result.output


def test_issue_list_and_status(runner, master_key):
    result = issue(runner, master_key, "5", "1", "--network", "solana:devnet")
    assert result.exit_code == 0, result.output
    assert "[active]" in result.output
    assert "solana:devnet" in result.output

    listed = runner.invoke(main, ["credentials", "list"])
    assert listed.exit_code == 0
    assert listed.output.count("🔑") == 1

    status = runner.invoke(main, ["credentials", "status"])
    assert "$1.00/tx, $5.00/day" in status.output


def test_revoke_active_then_nothing_usable(runner, master_key):
    issue(runner, master_key)
    result = runner.invoke(main, ["credentials", "revoke"])
    assert result.exit_code == 0
    assert "No usable credential remains" in result.output

    again = runner.invoke(main, ["credentials", "revoke"])
    assert again.exit_code != 0

    status = runner.invoke(main, ["credentials", "status"])
    assert "No usable credential" in status.output


def test_activate_unknown_credential(runner):
    result = runner.invoke(main, ["credentials", "activate", "0xnope"])
    assert result.exit_code != 0
    assert "not found" in result.output


def test_ledger_summary_and_export(runner, master_key, tmp_path):
    issue(runner, master_key)

    summary = runner.invoke(main, ["ledger", "summary"])
    assert summary.exit_code == 0, summary.output
    assert "Spent today: $0.00 of $5.00" in summary.output

    out = tmp_path / "ledger.json"
    exported = runner.invoke(main, ["ledger", "export", "--output", str(out)])
    assert exported.exit_code == 0
    assert json.loads(out.read_text()) == []


def test_ledger_without_credential(runner):
    result = runner.invoke(main, ["ledger", "history"])
    assert result.exit_code != 0
    assert "No such credential" in result.output


def test_activity_empty(runner):
    result = runner.invoke(main, ["activity"])
    assert result.exit_code == 0
    assert "No activity recorded." in result.output


def test_demo_runs_end_to_end(runner):
    result = runner.invoke(main, ["demo"])
    assert result.exit_code == 0, result.output
    assert "exceeds per-transaction limit" in result.output
    assert "exceeds remaining daily budget" in result.output
    assert "No active delegated credential" in result.output
    assert "Demo complete" in result.output


def test_pull_keeps_merchant_creation_time(runner, master_key, tmp_path, monkeypatch):
    wallet, session = issue_session_credential(master_key, 5.0, 1.0)
    created = int(time.time()) - 3600
    wire = {
        "id": wallet["keyHash"],
        "wallet": wallet,
        "session": session,
        "createdAt": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(created)),
        "revokedAt": None,
    }
    seen = []

    def fake_get(url, timeout=None):
        seen.append(url)
        return httpx.Response(200, json=wire)

    monkeypatch.setattr("purser.cli.httpx.get", fake_get)
    result = runner.invoke(main, ["credentials", "pull", "http://merchant.test/"])
    assert result.exit_code == 0, result.output
    assert seen == ["http://merchant.test/agent/credentials"]

    store = CredentialStore(tmp_path / "home" / "credentials")
    assert store.get(wallet["keyHash"]).created_at == created


def test_pull_rejects_bad_creation_time(runner, master_key, monkeypatch):
    wallet, session = issue_session_credential(master_key, 5.0, 1.0)
    wire = {"wallet": wallet, "session": session, "createdAt": "last tuesday"}
    monkeypatch.setattr("purser.cli.httpx.get", lambda url, timeout=None: httpx.Response(200, json=wire))
    result = runner.invoke(main, ["credentials", "pull", "http://merchant.test"])
    assert result.exit_code != 0
    assert "Invalid timestamp" in result.output


def test_fetch_closes_remote_signer(runner, monkeypatch):
    closed = []

    async def record_close(self):
        closed.append(self.username)

    async def unreachable(self, url, method="GET", **kwargs):
        raise RuntimeError("merchant unreachable")

    monkeypatch.setattr(RemoteWalletSigner, "aclose", record_close)
    monkeypatch.setattr(PaymentNegotiator, "fetch", unreachable)
    monkeypatch.setenv("AGENT_WALLET_USERNAME", "scout")
    monkeypatch.setenv("AGENT_WALLET_API_KEY", "tok")

    result = runner.invoke(main, ["fetch", "http://merchant.test/market/sol", "--remote-signer"])
    assert isinstance(result.exception, RuntimeError)
    assert closed == ["scout"]

"""
Purser CLI: budget-scoped payments for HTTP 402 resources.

Commands:
    purser serve          Run the metered merchant server
    purser fetch URL      Fetch a resource, paying for it if required
    purser credentials    Issue, inspect, rotate and revoke delegated credentials
    purser ledger         Spending history, summaries and audit exports
    purser activity       Recent protocol activity
    purser demo           Run the full negotiation flow in-process
"""

from __future__ import annotations

import asyncio
import json
import logging
import subprocess
import sys
import tempfile
import time
from pathlib import Path
from typing import Optional

import click
import httpx
from click.core import ParameterSource

from . import __version__
from .activity import ActivityFeed
from .config import (
    MerchantConfig,
    WalletApiConfig,
    default_activity_key_path,
    default_activity_path,
    default_credentials_dir,
    default_ledger_dir,
)
from .credentials import BudgetScopedCredential, CredentialStore, parse_iso_timestamp
from .errors import CredentialError, PurserError
from .keys import issue_session_credential
from .ledger import SpendingLedger
from .negotiator import NegotiatorConfig, PaymentNegotiator
from .signer import PaymentSigner, RemoteWalletSigner, SessionKeySigner


# ── Storage ───────────────────────────────────────────────────────

def _store() -> CredentialStore:
    return CredentialStore(default_credentials_dir())


def _ledger() -> SpendingLedger:
    return SpendingLedger(default_ledger_dir())


def _resolve_private_key(key_input: str) -> str:
    candidate = key_input.strip()
    if candidate.startswith("op://"):
        result = subprocess.run(
            ["op", "read", candidate],
            capture_output=True,
            text=True,
            timeout=10,
        )
        if result.returncode != 0:
            raise RuntimeError(f"Failed to read key from 1Password reference: {result.stderr.strip()}")
        candidate = result.stdout.strip()

    if candidate.startswith("0x"):
        candidate = candidate[2:]
    if len(candidate) != 64:
        raise ValueError("Master key must be a 32-byte hex string or valid op:// reference")
    int(candidate, 16)
    return "0x" + candidate


def _refuse_key_from_argv(param: str, flag: str, unsafe_allow_key_arg: bool) -> None:
    ctx = click.get_current_context(silent=True)
    key_from_argv = (
        ctx is not None
        and ctx.get_parameter_source(param) == ParameterSource.COMMANDLINE
    )
    if key_from_argv and not unsafe_allow_key_arg:
        click.echo(
            f"❌ Refusing {flag} from argv. Re-run with prompt input, set PURSER_MASTER_KEY, "
            "or pass --unsafe-allow-key-arg to acknowledge the risk.",
            err=True,
        )
        sys.exit(1)


def _credential_or_exit(store: CredentialStore, credential_id: Optional[str]) -> BudgetScopedCredential:
    credential = store.get(credential_id) if credential_id else store.get_active()
    if credential is None:
        target = credential_id or "active credential"
        click.echo(f"❌ No such credential: {target}", err=True)
        sys.exit(1)
    return credential


def _describe(credential: BudgetScopedCredential, active_id: Optional[str] = None) -> None:
    if credential.is_revoked:
        state = "revoked"
    elif credential.is_expired():
        state = "expired"
    elif credential.id == active_id:
        state = "active"
    else:
        state = "stored"
    click.echo(f"🔑 {credential.id} [{state}]")
    click.echo(f"   Session key: {credential.public_material}")
    click.echo(
        f"   Limits:      ${credential.per_transaction_limit_usd:.2f}/tx, "
        f"${credential.daily_limit_usd:.2f}/day"
    )
    click.echo(f"   Networks:    {', '.join(credential.allowed_networks) or 'any'}")
    click.echo(
        f"   Expires:     {time.strftime('%Y-%m-%d %H:%M', time.localtime(credential.expires_at))}"
    )


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging")
def main(verbose: bool):
    """Purser: budget-scoped payments for autonomous agents."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command()
@click.option("--host", default=None, help="Bind address (default: MERCHANT_HOST or 127.0.0.1)")
@click.option("--port", type=int, default=None, help="Port (default: MERCHANT_PORT or 4000)")
@click.option("--verify-payments", is_flag=True, default=False,
              help="Require signed payment intents instead of header presence")
def serve(host: Optional[str], port: Optional[int], verify_payments: bool):
    """Run the metered merchant server."""
    import uvicorn

    from .server import TOOLS, create_app

    config = MerchantConfig.from_env()
    if host:
        config.host = host
    if port:
        config.port = port
    if verify_payments:
        config.verify_payments = True

    app = create_app(config)
    click.echo("🏪 Purser merchant server")
    click.echo(f"   API:       http://{config.host}:{config.port}")
    click.echo(f"   Recipient: {config.recipient}")
    click.echo(f"   Network:   {config.network}")
    click.echo(f"   Verify:    {'signatures' if config.verify_payments else 'header presence (demo)'}")
    for tool in TOOLS:
        click.echo(f"     {tool['method']:<5} {tool['endpoint']:<16} ${tool['priceUSD']}  {tool['name']}")
    uvicorn.run(app, host=config.host, port=config.port)


@main.command()
@click.argument("url")
@click.option("--method", default="GET", show_default=True, help="HTTP method")
@click.option("--data", default=None, help="JSON request body")
@click.option("--dry-run", is_flag=True, help="Report the price without paying")
@click.option("--agent-name", default=None, help="Value for X-Agent-Name")
@click.option("--remote-signer", is_flag=True, default=False,
              help="Sign through the wallet API (AGENT_WALLET_USERNAME / AGENT_WALLET_API_KEY)")
@click.option("--master-key", envvar="PURSER_MASTER_KEY", default=None,
              help="Master key that unwraps session keys (prompted when omitted)")
@click.option(
    "--unsafe-allow-key-arg",
    is_flag=True,
    default=False,
    help="Allow passing --master-key via argv (unsafe; can leak in shell/process history).",
)
@click.option("--timeout", type=float, default=15.0, show_default=True, help="Per-request timeout")
def fetch(
    url: str,
    method: str,
    data: Optional[str],
    dry_run: bool,
    agent_name: Optional[str],
    remote_signer: bool,
    master_key: Optional[str],
    unsafe_allow_key_arg: bool,
    timeout: float,
):
    """Fetch URL, negotiating a 402 payment within the active budget."""
    _refuse_key_from_argv("master_key", "--master-key", unsafe_allow_key_arg)

    kwargs = {}
    if data is not None:
        try:
            kwargs["json"] = json.loads(data)
        except ValueError as e:
            click.echo(f"❌ --data is not valid JSON: {e}", err=True)
            sys.exit(1)

    config = NegotiatorConfig(request_timeout=timeout)
    if agent_name:
        config.agent_name = agent_name

    signer: PaymentSigner
    if dry_run:
        signer = SessionKeySigner(b"")
    elif remote_signer:
        wallet_config = WalletApiConfig.from_env()
        if wallet_config is None:
            click.echo("❌ AGENT_WALLET_USERNAME and AGENT_WALLET_API_KEY must be set", err=True)
            sys.exit(1)
        signer = RemoteWalletSigner.from_config(wallet_config)
    else:
        if master_key is None:
            master_key = click.prompt("Master key", hide_input=True)
        try:
            signer = SessionKeySigner(_resolve_private_key(master_key))
        except (RuntimeError, ValueError) as e:
            click.echo(f"❌ {e}", err=True)
            sys.exit(1)

    negotiator = PaymentNegotiator(_store(), _ledger(), signer, config=config)

    async def _run():
        try:
            async with negotiator:
                if dry_run:
                    return await negotiator.dry_run(url, method=method, **kwargs)
                return await negotiator.fetch(url, method=method, **kwargs)
        finally:
            if isinstance(signer, RemoteWalletSigner):
                await signer.aclose()

    outcome = asyncio.run(_run())

    if dry_run:
        click.echo("🔍 DRY RUN: nothing reserved, signed or paid")
        if outcome.error is not None:
            click.echo(f"❌ {outcome.error}", err=True)
            sys.exit(1)
        if not outcome.requires_payment:
            click.echo(f"✅ Free: {url} answered {outcome.status_code}")
            return
        click.echo(f"💰 {url} costs ${outcome.price_usd}")
        click.echo(f"   Pay to:  {outcome.requirement.pay_to}")
        click.echo(f"   Network: {outcome.requirement.network}")
        click.echo(f"   Amount:  {outcome.requirement.max_amount_required} {outcome.requirement.asset} base units")
        return

    if not outcome.ok:
        click.echo(f"❌ {outcome.state.value}: {outcome.error}", err=True)
        sys.exit(1)

    if outcome.paid:
        click.echo(f"✅ Paid ${outcome.price_usd} with credential {outcome.credential_id}")
    else:
        click.echo("✅ No payment required")
    click.echo(outcome.response.text)


# ── Credentials ───────────────────────────────────────────────────

@main.group("credentials")
def credentials_group():
    """Delegated credential lifecycle."""
    pass


@credentials_group.command("issue")
@click.option("--daily-limit", type=float, prompt=True, help="Daily spending cap (USD)")
@click.option("--per-tx-limit", type=float, prompt=True, help="Per-transaction cap (USD)")
@click.option("--expiry-hours", type=float, default=24.0, show_default=True, help="Lifetime in hours")
@click.option("--network", "networks", multiple=True, help="Allowed network (repeatable; default any)")
@click.option("--server", default=None, help="Also register with a merchant at this base URL")
@click.option("--master-key", envvar="PURSER_MASTER_KEY", prompt=True, hide_input=True,
              help="Master key hex or op:// reference")
@click.option(
    "--unsafe-allow-key-arg",
    is_flag=True,
    default=False,
    help="Allow passing --master-key via argv (unsafe; can leak in shell/process history).",
)
def credentials_issue(
    daily_limit: float,
    per_tx_limit: float,
    expiry_hours: float,
    networks: tuple[str, ...],
    server: Optional[str],
    master_key: str,
    unsafe_allow_key_arg: bool,
):
    """Generate a session key and make it the active credential."""
    _refuse_key_from_argv("master_key", "--master-key", unsafe_allow_key_arg)
    try:
        wallet, session = issue_session_credential(
            master_key=_resolve_private_key(master_key),
            daily_limit_usd=daily_limit,
            per_transaction_limit_usd=per_tx_limit,
            expiry_hours=expiry_hours,
            allowed_networks=networks,
        )
        credential = _store().set_active(wallet, session)
    except (PurserError, RuntimeError, ValueError) as e:
        click.echo(f"❌ Failed to issue credential: {e}", err=True)
        sys.exit(1)

    click.echo("✅ Credential issued and activated")
    _describe(credential, credential.id)

    if server:
        try:
            response = httpx.post(
                f"{server.rstrip('/')}/agent/credentials",
                json={"wallet": wallet, "session": session},
                timeout=15.0,
            )
        except httpx.HTTPError as e:
            click.echo(f"⚠️  Could not register with {server}: {e}", err=True)
            sys.exit(1)
        if response.status_code != 200:
            click.echo(f"⚠️  Merchant rejected credential ({response.status_code}): {response.text}", err=True)
            sys.exit(1)
        click.echo(f"   Registered with {server}")


@credentials_group.command("pull")
@click.argument("server")
def credentials_pull(server: str):
    """Fetch the active credential from a merchant and store it locally."""
    try:
        response = httpx.get(f"{server.rstrip('/')}/agent/credentials", timeout=15.0)
    except httpx.HTTPError as e:
        click.echo(f"❌ Request failed: {e}", err=True)
        sys.exit(1)
    if response.status_code == 404:
        click.echo("❌ Merchant has no active credential", err=True)
        sys.exit(1)
    if response.status_code != 200:
        click.echo(f"❌ Unexpected status {response.status_code}: {response.text[:200]}", err=True)
        sys.exit(1)

    wire = response.json()
    try:
        created_at = parse_iso_timestamp(wire["createdAt"]) if wire.get("createdAt") else None
        credential = _store().set_active(wire.get("wallet"), wire.get("session"), created_at)
    except CredentialError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    click.echo("✅ Credential pulled and activated")
    _describe(credential, credential.id)


@credentials_group.command("show")
@click.argument("credential_id", required=False)
def credentials_show(credential_id: Optional[str]):
    """Show one credential (default: the active one)."""
    store = _store()
    credential = _credential_or_exit(store, credential_id)
    active = store.get_active()
    _describe(credential, active.id if active else None)


@credentials_group.command("list")
def credentials_list():
    """List every stored credential, newest first."""
    store = _store()
    credentials = store.list()
    if not credentials:
        click.echo("No credentials stored.")
        return
    active = store.get_active()
    for credential in credentials:
        _describe(credential, active.id if active else None)


@credentials_group.command("revoke")
@click.argument("credential_id", required=False)
def credentials_revoke(credential_id: Optional[str]):
    """Revoke a credential (default: the active one)."""
    store = _store()
    try:
        new_active = store.revoke(credential_id) if credential_id else store.revoke_active()
    except CredentialError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    click.echo(f"🚫 Revoked {credential_id or 'active credential'}")
    if new_active:
        click.echo(f"   Now active: {new_active}")
    else:
        click.echo("   No usable credential remains")


@credentials_group.command("activate")
@click.argument("credential_id")
def credentials_activate(credential_id: str):
    """Make a stored, non-revoked credential the active one."""
    try:
        credential = _store().activate(credential_id)
    except CredentialError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    click.echo("✅ Activated")
    _describe(credential, credential.id)


@credentials_group.command("status")
def credentials_status():
    """Summary of stored credentials and the active limits."""
    status = _store().status()
    if status["hasCredentials"]:
        click.echo(f"✅ Active: {status['activeId']}")
        click.echo(
            f"   Limits:  ${status['perTransactionLimitUSD']:.2f}/tx, "
            f"${status['dailyLimitUSD']:.2f}/day"
        )
    else:
        click.echo("⚠️  No usable credential")
    click.echo(f"   Stored:  {status['total']} ({status['revoked']} revoked, {status['expired']} expired)")


# ── Ledger ────────────────────────────────────────────────────────

@main.group("ledger")
def ledger_group():
    """Spending ledger queries."""
    pass


@ledger_group.command("history")
@click.option("--credential", "credential_id", default=None, help="Credential id (default: active)")
@click.option("--limit", type=int, default=20, help="Number of entries")
@click.option("--all", "include_released", is_flag=True, help="Include released reservations")
def ledger_history(credential_id: Optional[str], limit: int, include_released: bool):
    """Recent spends, newest first."""
    credential = _credential_or_exit(_store(), credential_id)
    entries = _ledger().history(credential.id, limit=limit, include_released=include_released)
    if not entries:
        click.echo("No spending recorded.")
        return
    icons = {"settled": "✅", "reserved": "⏳", "released": "↩️"}
    for entry in entries:
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(entry.timestamp))
        click.echo(
            f"  {ts} {icons.get(entry.status, '•')} ${entry.amount_usd:.6f} → {entry.pay_to} {entry.resource}"
        )


@ledger_group.command("summary")
@click.option("--credential", "credential_id", default=None, help="Credential id (default: active)")
def ledger_summary(credential_id: Optional[str]):
    """Today's spend against the daily limit."""
    credential = _credential_or_exit(_store(), credential_id)
    summary = _ledger().summary(credential.id, credential.daily_limit_usd)
    click.echo(f"📊 Budget for {credential.id}")
    click.echo(f"   Spent today: {summary['spent_today']} of {summary['daily_limit']}")
    click.echo(f"   Remaining:   {summary['remaining']}")
    click.echo(f"   Utilization: {summary['utilization']}")
    click.echo(f"   Payments:    {summary['payments_today']}")


@ledger_group.command("export")
@click.option("--credential", "credential_id", default=None, help="Credential id (default: active)")
@click.option("--format", "fmt", type=click.Choice(["json", "csv"]), default="json", show_default=True)
@click.option("--output", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Write to a file instead of stdout")
def ledger_export(credential_id: Optional[str], fmt: str, output: Optional[Path]):
    """Export every ledger entry for audit."""
    credential = _credential_or_exit(_store(), credential_id)
    text = _ledger().export(credential.id, fmt=fmt)
    if output:
        output.write_text(text)
        click.echo(f"✅ Exported to {output}")
    else:
        click.echo(text, nl=False)


# ── Activity ──────────────────────────────────────────────────────

@main.command()
@click.option("--limit", type=int, default=20, help="Number of events")
@click.option("--server", default=None, help="Read from a running merchant instead of the local feed")
def activity(limit: int, server: Optional[str]):
    """Recent protocol activity, newest first."""
    if server:
        try:
            response = httpx.get(f"{server.rstrip('/')}/activity", params={"limit": limit}, timeout=15.0)
            response.raise_for_status()
        except httpx.HTTPError as e:
            click.echo(f"❌ Request failed: {e}", err=True)
            sys.exit(1)
        events = response.json()["activity"]
    else:
        try:
            feed = ActivityFeed(path=default_activity_path(), key_path=default_activity_key_path())
        except RuntimeError as e:
            click.echo(f"❌ {e}", err=True)
            sys.exit(1)
        events = [e.to_wire() for e in feed.recent(limit)]

    if not events:
        click.echo("No activity recorded.")
        return
    for event in events:
        amount = f" ${event['amountUSD']}" if event.get("amountUSD") is not None else ""
        tool = f" {event['tool']}" if event.get("tool") else ""
        agent = f" by {event['agent']}" if event.get("agent") else ""
        click.echo(f"  {event['timestamp']} {event['type']}{tool}{amount}{agent}")


# ── Demo ──────────────────────────────────────────────────────────

@main.command()
def demo():
    """Run issue → challenge → pay → revoke against an in-process merchant."""
    from eth_account import Account

    from .server import create_app

    click.echo("🎬 Purser Demo: budget-scoped 402 negotiation")
    click.echo("=" * 50)

    async def _run(base: Path):
        master = Account.create()
        master_key = "0x" + bytes(master.key).hex()

        click.echo("\n1️⃣  Human issues a session credential ($0.004/tx, $0.006/day)...")
        wallet, session = issue_session_credential(master_key, 0.006, 0.004, 1)
        agent_store = CredentialStore(base / "agent")
        credential = agent_store.set_active(wallet, session)
        click.echo(f"   ✅ {credential.id}")

        merchant_store = CredentialStore(base / "merchant")
        merchant_store.set_active(wallet, session)
        feed = ActivityFeed()
        app = create_app(MerchantConfig(), store=merchant_store, feed=feed)

        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://merchant") as http:
            negotiator = PaymentNegotiator(
                agent_store,
                SpendingLedger(base / "ledger"),
                SessionKeySigner(master_key),
                config=NegotiatorConfig(agent_name="demo-agent"),
                http=http,
            )

            click.echo("\n2️⃣  Agent prices the analysis endpoint (dry run)...")
            estimate = await negotiator.dry_run("http://merchant/analyze", method="POST")
            click.echo(f"   💰 ${estimate.price_usd}")

            click.echo("\n3️⃣  Agent buys data until the budget says no...")
            for path, method in [
                ("/market/sol", "GET"),
                ("/market/tokens", "GET"),
                ("/analyze", "POST"),
                ("/market/tokens", "GET"),
                ("/market/tokens", "GET"),
                ("/market/tokens", "GET"),
            ]:
                result = await negotiator.fetch(f"http://merchant{path}", method=method)
                status = "✅" if result.ok else "❌"
                detail = f"${result.price_usd}" if result.ok else f"{result.error}"
                click.echo(f"   {status} {method} {path}: {result.state.value} {detail}")

            click.echo("\n4️⃣  Human revokes the credential...")
            agent_store.revoke_active()
            result = await negotiator.fetch("http://merchant/market/sol")
            click.echo(f"   ❌ {result.state.value}: {result.error}")

        click.echo("\n5️⃣  Merchant stats...")
        for key, value in feed.stats().items():
            click.echo(f"   {key}: {value}")

    with tempfile.TemporaryDirectory() as tmp:
        asyncio.run(_run(Path(tmp)))

    click.echo("\n" + "=" * 50)
    click.echo("🎉 Demo complete! Issue → Challenge → Reserve → Sign → Settle → Revoke")


if __name__ == "__main__":
    main()

"""Tests for the activity feed and notifier."""

import json

import httpx
import pytest

from purser.activity import (
    SOURCE_EXTERNAL,
    SOURCE_GATE,
    ActivityFeed,
    ActivityNotifier,
    EventKind,
)


class TestActivityFeed:
    def test_newest_first_and_bounded(self):
        feed = ActivityFeed(max_entries=3)
        for i in range(5):
            feed.emit(EventKind.DISCOVERY, data={"n": i})
        assert [e.data["n"] for e in feed.recent(10)] == [4, 3, 2]
        assert len(feed) == 3

    def test_events_are_immutable(self):
        event = ActivityFeed().emit(EventKind.CHALLENGE, tool="sol-price")
        with pytest.raises(AttributeError):
            event.tool = "other"

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValueError):
            ActivityFeed().emit("tool_call")

    def test_stats_count_gate_payments_only(self):
        feed = ActivityFeed()
        feed.emit(EventKind.PAYMENT, source=SOURCE_GATE, agent="a", amount_usd=0.001, protocol="x402")
        feed.emit(EventKind.PAYMENT, source=SOURCE_GATE, agent="b", amount_usd=0.002, protocol="ucp")
        feed.emit(EventKind.PAYMENT, source=SOURCE_EXTERNAL, agent="a", amount_usd=0.001, protocol="x402")
        feed.emit(EventKind.CHALLENGE, source=SOURCE_GATE, agent="c", amount_usd=0.005, protocol="x402")

        stats = feed.stats()
        assert stats["totalPayments"] == 2
        assert stats["totalRevenue"] == "0.0030"
        assert stats["uniqueAgents"] == 3
        assert stats["protocols"] == {"x402": 3, "ucp": 1}
        assert stats["activityCount"] == 4

    def test_subscribers_receive_events(self):
        feed = ActivityFeed()
        seen = []
        unsubscribe = feed.subscribe(seen.append)
        first = feed.emit(EventKind.PROOF)
        unsubscribe()
        feed.emit(EventKind.PROOF)
        assert seen == [first]

    def test_failing_subscriber_does_not_block_emit(self):
        feed = ActivityFeed()

        def broken(event):
            raise RuntimeError("boom")

        feed.subscribe(broken)
        event = feed.emit(EventKind.DISCOVERY)
        assert feed.recent(1) == [event]

    def test_wire_shape(self):
        wire = ActivityFeed().emit(EventKind.PAYMENT, amount_usd=0.5, tx_hash="abc").to_wire()
        assert wire["type"] == "payment"
        assert wire["amountUSD"] == 0.5
        assert wire["txHash"] == "abc"
        assert wire["timestamp"].endswith("Z")


class TestPersistence:
    def test_reload_restores_events(self, tmp_path):
        path = tmp_path / "activity.jsonl"
        key_path = tmp_path / "secret" / "activity.key"
        feed = ActivityFeed(path=path, key_path=key_path)
        feed.emit(EventKind.CHALLENGE, tool="sol-price")
        feed.emit(EventKind.PAYMENT, tool="sol-price", amount_usd=0.001)

        reloaded = ActivityFeed(path=path, key_path=key_path)
        assert [e.kind for e in reloaded.recent(10)] == ["payment", "challenge"]
        reloaded.emit(EventKind.PROOF)
        assert len(ActivityFeed(path=path, key_path=key_path)) == 3

    def test_hash_chain_detects_tampering(self, tmp_path):
        path = tmp_path / "activity.jsonl"
        key_path = tmp_path / "secret" / "activity.key"
        feed = ActivityFeed(path=path, key_path=key_path)
        feed.emit(EventKind.PAYMENT, amount_usd=0.001)
        feed.emit(EventKind.PAYMENT, amount_usd=0.002)

        lines = path.read_text().splitlines()
        first = json.loads(lines[0])
        first["amount_usd"] = 9999
        lines[0] = json.dumps(first, separators=(",", ":"))
        path.write_text("\n".join(lines) + "\n")

        with pytest.raises(RuntimeError, match="Activity chain broken"):
            ActivityFeed(path=path, key_path=key_path)

    def test_env_key_overrides_key_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PURSER_ACTIVITY_HMAC_KEY", "from-env")
        path = tmp_path / "activity.jsonl"
        key_path = tmp_path / "secret" / "activity.key"
        ActivityFeed(path=path, key_path=key_path).emit(EventKind.DISCOVERY)
        assert not key_path.exists()
        assert len(ActivityFeed(path=path, key_path=key_path)) == 1


class TestActivityNotifier:
    @pytest.mark.asyncio
    async def test_notify_posts_payload(self):
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(json.loads(request.content))
            return httpx.Response(200, json={"recorded": True})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            notifier = ActivityNotifier(http, "http://dashboard/activity")
            assert await notifier.notify({"type": "payment"}) is True
        assert received == [{"type": "payment"}]

    @pytest.mark.asyncio
    async def test_notify_failure_is_swallowed(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            notifier = ActivityNotifier(http, "http://dashboard/activity")
            assert await notifier.notify({"type": "payment"}) is False

    @pytest.mark.asyncio
    async def test_notify_rejected_status(self):
        async with httpx.AsyncClient(
            transport=httpx.MockTransport(lambda r: httpx.Response(500))
        ) as http:
            assert await ActivityNotifier(http).notify({}, url="http://x/activity") is False

    @pytest.mark.asyncio
    async def test_notify_without_url(self):
        async with httpx.AsyncClient() as http:
            assert await ActivityNotifier(http).notify({}) is False

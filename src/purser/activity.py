"""
Activity feed for protocol events.

Events are immutable records kept newest-first in a bounded in-memory view.
When a path is given they are also appended as JSONL entries with an HMAC
hash chain, so tampering is detected when the feed is reloaded.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
import secrets
import threading
import time
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

import httpx

from .storage import ensure_private_dir, ensure_private_file

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 500
ACTIVITY_KEY_ENV = "PURSER_ACTIVITY_HMAC_KEY"

SOURCE_GATE = "gate"
SOURCE_SERVER = "server"
SOURCE_EXTERNAL = "external"


class EventKind(str, Enum):
    DISCOVERY = "discovery"
    CHALLENGE = "challenge"
    PAYMENT = "payment"
    CREDENTIAL = "credential"
    PROOF = "proof"
    EXTERNAL = "external"


@dataclass(frozen=True)
class ActivityEvent:
    """A single protocol event. Never mutated once created."""

    id: str
    timestamp: float
    kind: str
    source: str = SOURCE_SERVER
    agent: Optional[str] = None
    tool: Optional[str] = None
    amount_usd: Optional[float] = None
    protocol: Optional[str] = None
    tx_hash: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(self.timestamp)),
            "type": self.kind,
            "source": self.source,
            "agent": self.agent,
            "tool": self.tool,
            "amountUSD": self.amount_usd,
            "protocol": self.protocol,
            "txHash": self.tx_hash,
            "data": dict(self.data),
        }


Subscriber = Callable[[ActivityEvent], None]


class ActivityFeed:
    """Bounded newest-first event store with optional tamper-evident persistence."""

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
        max_entries: int = DEFAULT_MAX_ENTRIES,
    ):
        self.path = path
        self.key_path = key_path
        self.max_entries = max_entries
        self._events: deque[ActivityEvent] = deque(maxlen=max_entries)
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()
        self._started_at = time.time()
        self._last_hash = ""
        self._hmac_key = b""

        if self.path is not None:
            if self.key_path is None:
                self.key_path = self.path.parent / "secrets" / "activity_hmac.key"
            ensure_private_dir(self.path.parent)
            ensure_private_file(self.path)
            self._hmac_key = self._load_or_create_key()
            self._replay()

    def _load_or_create_key(self) -> bytes:
        env_key = os.getenv(ACTIVITY_KEY_ENV)
        if env_key:
            return env_key.encode()
        assert self.key_path is not None
        ensure_private_dir(self.key_path.parent)
        if self.key_path.exists() and self.key_path.stat().st_size > 0:
            return self.key_path.read_bytes().strip()
        key = secrets.token_hex(32).encode()
        self.key_path.write_bytes(key)
        ensure_private_file(self.key_path)
        return key

    def _event_hash(self, payload: dict, prev_hash: str) -> str:
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        digest = hmac.new(self._hmac_key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256)
        return digest.hexdigest()

    def _replay(self) -> None:
        assert self.path is not None
        expected_prev = ""
        with open(self.path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                raw = json.loads(line)
                payload = {k: v for k, v in raw.items() if k not in {"prev_hash", "event_hash"}}
                prev_hash = raw.get("prev_hash", "") or ""
                event_hash = raw.get("event_hash", "") or ""
                if prev_hash != expected_prev:
                    raise RuntimeError("Activity chain broken: previous hash mismatch")
                if not hmac.compare_digest(self._event_hash(payload, prev_hash), event_hash):
                    raise RuntimeError("Activity chain broken: event hash mismatch")
                expected_prev = event_hash
                self._events.appendleft(ActivityEvent(**payload))
        self._last_hash = expected_prev

    def _append(self, event: ActivityEvent) -> None:
        assert self.path is not None
        payload = event.to_dict()
        prev_hash = self._last_hash
        current_hash = self._event_hash(payload, prev_hash)
        line = json.dumps(
            {**payload, "prev_hash": prev_hash or None, "event_hash": current_hash},
            separators=(",", ":"),
        )
        with open(self.path, "a") as f:
            f.write(line + "\n")
            f.flush()
            os.fsync(f.fileno())
        self._last_hash = current_hash

    def emit(self, kind: EventKind | str, **fields: Any) -> ActivityEvent:
        """Create, store and broadcast a new event."""
        event = ActivityEvent(
            id=uuid.uuid4().hex,
            timestamp=time.time(),
            kind=EventKind(kind).value,
            **fields,
        )
        return self.record(event)

    def record(self, event: ActivityEvent) -> ActivityEvent:
        with self._lock:
            if self.path is not None:
                self._append(event)
            self._events.appendleft(event)
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.warning("Activity subscriber %r failed", callback, exc_info=True)
        return event

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a live listener; returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def recent(self, limit: int = 50) -> list[ActivityEvent]:
        with self._lock:
            return list(self._events)[: max(0, limit)]

    def __len__(self) -> int:
        return len(self._events)

    def stats(self) -> dict[str, Any]:
        """Aggregates over the retained events. Revenue counts gate-admitted payments only."""
        with self._lock:
            events = list(self._events)
        payments = [
            e for e in events if e.kind == EventKind.PAYMENT.value and e.source == SOURCE_GATE
        ]
        protocols: dict[str, int] = {}
        for e in events:
            if e.protocol:
                protocols[e.protocol] = protocols.get(e.protocol, 0) + 1
        return {
            "totalPayments": len(payments),
            "totalRevenue": f"{sum(e.amount_usd or 0.0 for e in payments):.4f}",
            "uniqueAgents": len({e.agent for e in events if e.agent}),
            "protocols": protocols,
            "activityCount": len(events),
            "uptime": time.time() - self._started_at,
        }


class ActivityNotifier:
    """Best-effort side channel that posts settled payments to a collector."""

    def __init__(self, http: httpx.AsyncClient, url: Optional[str] = None):
        self._http = http
        self.url = url

    async def notify(self, payload: dict[str, Any], url: Optional[str] = None) -> bool:
        target = url or self.url
        if not target:
            return False
        try:
            response = await self._http.post(target, json=payload)
        except httpx.HTTPError as e:
            logger.warning("Activity notification to %s failed: %s", target, e)
            return False
        if response.status_code >= 400:
            logger.warning(
                "Activity notification to %s rejected (%d)", target, response.status_code
            )
            return False
        return True

"""
Spending ledger for delegated credentials.

Uses a SQLite entry log so the limit check and the reservation it guards are
one atomic step across threads and processes. Entries are never deleted;
releasing a reservation only removes it from the live daily total.
"""

from __future__ import annotations

import csv
import io
import json
import logging
import sqlite3
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from .errors import BudgetError, DailyLimitExceeded, PerTransactionLimitExceeded
from .money import (
    amount_usd_to_micros,
    format_usd_from_micros,
    limit_usd_to_micros,
    micros_to_usd_decimal,
    micros_to_usd_float,
)
from .storage import ensure_private_dir

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86_400

STATUS_RESERVED = "reserved"
STATUS_SETTLED = "settled"
STATUS_RELEASED = "released"

EXPORT_FIELDS = (
    "entry_id",
    "credential_id",
    "amount_usd",
    "timestamp",
    "window_start",
    "status",
    "resource",
    "pay_to",
    "network",
)


def window_start_for(timestamp: float) -> int:
    """UTC midnight (epoch seconds) of the day containing ``timestamp``."""
    return int(timestamp // SECONDS_PER_DAY) * SECONDS_PER_DAY


@dataclass
class LedgerEntry:
    """A single reserved, settled or released spend."""

    entry_id: str
    credential_id: str
    amount_micros: int
    timestamp: int
    window_start: int
    status: str = STATUS_RESERVED
    resource: str = ""
    pay_to: str = ""
    network: str = ""

    @property
    def amount_usd(self) -> float:
        return micros_to_usd_float(self.amount_micros)

    def to_dict(self) -> dict:
        return {
            "entry_id": self.entry_id,
            "credential_id": self.credential_id,
            "amount_usd": self.amount_usd,
            "timestamp": self.timestamp,
            "window_start": self.window_start,
            "status": self.status,
            "resource": self.resource,
            "pay_to": self.pay_to,
            "network": self.network,
        }


@dataclass
class ReservationResult:
    """Result of a check-and-reserve attempt."""

    accepted: bool
    reason: str
    entry: Optional[LedgerEntry] = None
    error: Optional[BudgetError] = None


class SpendingLedger:
    """
    Records spends per credential and enforces daily and per-transaction caps.

    The daily window is the UTC calendar day. ``clock`` is injectable so tests
    can move across a window boundary.
    """

    DB_NAME = "ledger.sqlite3"

    def __init__(
        self,
        ledger_dir: Path,
        clock: Callable[[], float] = time.time,
    ):
        self.ledger_dir = Path(ledger_dir)
        ensure_private_dir(self.ledger_dir)
        self.db_path = self.ledger_dir / self.DB_NAME
        self._clock = clock
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS entries (
                    entry_id TEXT PRIMARY KEY,
                    credential_id TEXT NOT NULL,
                    amount_micros INTEGER NOT NULL,
                    timestamp INTEGER NOT NULL,
                    window_start INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    resource TEXT NOT NULL DEFAULT '',
                    pay_to TEXT NOT NULL DEFAULT '',
                    network TEXT NOT NULL DEFAULT ''
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_entries_window
                ON entries (credential_id, window_start)
                """
            )

    def _row_to_entry(self, row: sqlite3.Row) -> LedgerEntry:
        return LedgerEntry(
            entry_id=row["entry_id"],
            credential_id=row["credential_id"],
            amount_micros=row["amount_micros"],
            timestamp=row["timestamp"],
            window_start=row["window_start"],
            status=row["status"],
            resource=row["resource"],
            pay_to=row["pay_to"],
            network=row["network"],
        )

    def _spent_in_window(
        self, conn: sqlite3.Connection, credential_id: str, window_start: int
    ) -> int:
        row = conn.execute(
            """
            SELECT COALESCE(SUM(amount_micros), 0) AS spent FROM entries
            WHERE credential_id = ? AND window_start = ? AND status != ?
            """,
            (credential_id, window_start, STATUS_RELEASED),
        ).fetchone()
        return int(row["spent"])

    def _check_limits(
        self,
        amount_micros: int,
        spent_micros: int,
        per_transaction_limit_usd: float,
        daily_limit_usd: float,
    ) -> Optional[BudgetError]:
        per_tx_micros = limit_usd_to_micros(per_transaction_limit_usd)
        daily_micros = limit_usd_to_micros(daily_limit_usd)

        if amount_micros > per_tx_micros:
            return PerTransactionLimitExceeded(
                amount=micros_to_usd_decimal(amount_micros),
                limit=micros_to_usd_decimal(per_tx_micros),
            )
        if spent_micros + amount_micros > daily_micros:
            return DailyLimitExceeded(
                amount=micros_to_usd_decimal(amount_micros),
                spent=micros_to_usd_decimal(spent_micros),
                limit=micros_to_usd_decimal(daily_micros),
            )
        return None

    def check_and_reserve(
        self,
        credential_id: str,
        amount_usd: float,
        per_transaction_limit_usd: float,
        daily_limit_usd: float,
        *,
        resource: str = "",
        pay_to: str = "",
        network: str = "",
    ) -> ReservationResult:
        """
        Atomically check both limits and record a reserved entry.

        The reservation counts toward the daily total until it is released.
        """
        amount_micros = amount_usd_to_micros(amount_usd)
        if amount_micros <= 0:
            return ReservationResult(accepted=False, reason="Amount must be positive")

        now = int(self._clock())
        window = window_start_for(now)

        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            spent = self._spent_in_window(conn, credential_id, window)
            error = self._check_limits(
                amount_micros=amount_micros,
                spent_micros=spent,
                per_transaction_limit_usd=per_transaction_limit_usd,
                daily_limit_usd=daily_limit_usd,
            )
            if error is not None:
                conn.execute("COMMIT")
                logger.info(
                    "Spend of %s rejected for %s: %s",
                    format_usd_from_micros(amount_micros),
                    credential_id,
                    error,
                )
                return ReservationResult(accepted=False, reason=str(error), error=error)

            entry = LedgerEntry(
                entry_id=uuid.uuid4().hex,
                credential_id=credential_id,
                amount_micros=amount_micros,
                timestamp=now,
                window_start=window,
                status=STATUS_RESERVED,
                resource=resource,
                pay_to=pay_to,
                network=network,
            )
            conn.execute(
                """
                INSERT INTO entries (
                    entry_id, credential_id, amount_micros, timestamp,
                    window_start, status, resource, pay_to, network
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.entry_id,
                    entry.credential_id,
                    entry.amount_micros,
                    entry.timestamp,
                    entry.window_start,
                    entry.status,
                    entry.resource,
                    entry.pay_to,
                    entry.network,
                ),
            )
            conn.execute("COMMIT")

        return ReservationResult(accepted=True, reason="Reserved", entry=entry)

    def _finalize(self, entry_id: str, status: str) -> LedgerEntry:
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT * FROM entries WHERE entry_id = ?", (entry_id,)
            ).fetchone()
            if row is None:
                conn.execute("ROLLBACK")
                raise ValueError(f"Ledger entry not found: {entry_id}")

            entry = self._row_to_entry(row)
            if entry.status == status:
                conn.execute("COMMIT")
                return entry
            if entry.status != STATUS_RESERVED:
                conn.execute("ROLLBACK")
                raise ValueError(
                    f"Cannot mark entry {entry_id} {status}: already {entry.status}"
                )

            conn.execute(
                "UPDATE entries SET status = ? WHERE entry_id = ?",
                (status, entry_id),
            )
            conn.execute("COMMIT")

        entry.status = status
        return entry

    def settle(self, entry_id: str) -> LedgerEntry:
        """Mark a reservation as paid."""
        return self._finalize(entry_id, STATUS_SETTLED)

    def release(self, entry_id: str) -> LedgerEntry:
        """Return a reservation's amount to the daily budget."""
        return self._finalize(entry_id, STATUS_RELEASED)

    def window_spent(self, credential_id: str) -> int:
        """Micro-dollars counted against the current window."""
        window = window_start_for(self._clock())
        with self._connect() as conn:
            return self._spent_in_window(conn, credential_id, window)

    def history(
        self,
        credential_id: str,
        limit: int = 50,
        include_released: bool = False,
    ) -> list[LedgerEntry]:
        """Most recent entries first."""
        query = "SELECT * FROM entries WHERE credential_id = ?"
        params: list = [credential_id]
        if not include_released:
            query += " AND status != ?"
            params.append(STATUS_RELEASED)
        query += " ORDER BY timestamp DESC, rowid DESC LIMIT ?"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def summary(self, credential_id: str, daily_limit_usd: float) -> dict:
        """Get a human-readable spending summary for the current window."""
        spent = self.window_spent(credential_id)
        limit_micros = limit_usd_to_micros(daily_limit_usd)
        window = window_start_for(self._clock())
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS n FROM entries
                WHERE credential_id = ? AND window_start = ? AND status != ?
                """,
                (credential_id, window, STATUS_RELEASED),
            ).fetchone()
        utilization = (
            f"{(spent / limit_micros * 100):.1f}%" if limit_micros > 0 else "N/A"
        )
        return {
            "credential_id": credential_id,
            "spent_today": format_usd_from_micros(spent),
            "daily_limit": format_usd_from_micros(limit_micros),
            "remaining": format_usd_from_micros(max(0, limit_micros - spent)),
            "utilization": utilization,
            "payments_today": int(row["n"]),
        }

    def export(self, credential_id: str, fmt: str = "json") -> str:
        """Full audit export of every entry, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM entries WHERE credential_id = ?
                ORDER BY timestamp ASC, rowid ASC
                """,
                (credential_id,),
            ).fetchall()
        entries = [self._row_to_entry(r).to_dict() for r in rows]

        if fmt == "json":
            return json.dumps(entries, indent=2)
        if fmt == "csv":
            buf = io.StringIO()
            writer = csv.DictWriter(buf, fieldnames=EXPORT_FIELDS)
            writer.writeheader()
            writer.writerows(entries)
            return buf.getvalue()
        raise ValueError(f"Unsupported export format: {fmt}")

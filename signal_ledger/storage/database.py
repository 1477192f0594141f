"""Database — SQLite ledger store.

The single source of truth for providers and signals. Engines read
snapshots from here and write back only the fields they own; status
changes go through a compare-and-set on the current status so a
concurrent close is never clobbered.
"""

from __future__ import annotations

import datetime as dt
import json
import sqlite3
from enum import Enum
from pathlib import Path
from typing import Any

from signal_ledger.config import StorageConfig
from signal_ledger.errors import StoreUnavailableError, StoreWriteError
from signal_ledger.observability.logger import get_logger
from signal_ledger.storage.migrations import run_migrations
from signal_ledger.storage.models import (
    ProviderRecord,
    SignalAction,
    SignalRecord,
    SignalStatus,
    Tier,
)

log = get_logger(__name__)

# Columns an engine may write through update_signal()
_SIGNAL_WRITABLE = frozenset({
    "status", "current_price", "unrealized_pnl_pct", "unrealized_pnl_usd",
    "max_drawdown_pct", "exit_price", "exit_timestamp", "exit_tx_hash",
    "pnl_pct", "pnl_usd", "parent_signal_id",
})

_SIGNAL_COLUMNS = (
    "id", "provider", "action", "token", "token_address", "chain", "category",
    "entry_price", "leverage", "collateral_usd", "stop_loss_pct",
    "take_profit_pct", "tx_hash", "exit_tx_hash", "confidence", "reasoning",
    "status", "timestamp", "expires_at", "current_price", "unrealized_pnl_pct",
    "unrealized_pnl_usd", "max_drawdown_pct", "exit_price", "exit_timestamp",
    "pnl_pct", "pnl_usd", "parent_signal_id", "source",
)


def _ts(value: dt.datetime) -> str:
    """Fixed-width UTC ISO string so text ordering matches time ordering."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _to_sql(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dt.datetime):
        return _ts(value)
    return value


class Database:
    """SQLite store for the signal ledger."""

    def __init__(self, config: StorageConfig):
        self._config = config
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Open database connection and run migrations."""
        db_path = Path(self._config.sqlite_path)
        try:
            if str(db_path) != ":memory:":
                db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(db_path))
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            run_migrations(self._conn)
        except (sqlite3.Error, OSError) as e:
            self._conn = None
            raise StoreUnavailableError(f"Cannot open ledger store: {e}", {"path": str(db_path)}) from e
        log.info("database.connected", path=str(db_path))

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreUnavailableError("Database not connected. Call connect() first.")
        return self._conn

    def _read(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        try:
            return self.conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Ledger read failed: {e}") from e

    # ── Providers ────────────────────────────────────────────────────

    def upsert_provider(self, provider: ProviderRecord) -> None:
        """Register or edit a provider profile; trust fields are left alone."""
        try:
            self.conn.execute(
                """
                INSERT INTO providers
                    (address, name, bio, description, avatar, chain, agent,
                     website, twitter, farcaster, github, registered_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(address) DO UPDATE SET
                    name = excluded.name,
                    bio = excluded.bio,
                    description = excluded.description,
                    avatar = excluded.avatar,
                    chain = excluded.chain,
                    agent = excluded.agent,
                    website = excluded.website,
                    twitter = excluded.twitter,
                    farcaster = excluded.farcaster,
                    github = excluded.github
                """,
                (
                    provider.address, provider.name, provider.bio,
                    provider.description, provider.avatar, provider.chain,
                    provider.agent, provider.website, provider.twitter,
                    provider.farcaster, provider.github,
                    _ts(provider.registered_at),
                ),
            )
            self.conn.commit()
        except sqlite3.Error as e:
            raise StoreWriteError(f"Provider upsert failed: {e}", record_id=provider.address) from e

    def get_provider(self, address: str) -> ProviderRecord | None:
        rows = self._read("SELECT * FROM providers WHERE address = ?", (address.lower(),))
        return _provider_from_row(rows[0]) if rows else None

    def list_providers(self) -> list[ProviderRecord]:
        rows = self._read("SELECT * FROM providers ORDER BY registered_at ASC, address ASC")
        return [_provider_from_row(r) for r in rows]

    def update_provider_trust(
        self,
        address: str,
        *,
        score: float,
        tier: Tier,
        verified: bool,
        badges: list[str],
        checks: list[dict[str, Any]],
        verified_at: dt.datetime,
    ) -> bool:
        """Overwrite the whole trust projection in one statement.

        Returns False when no provider is registered under ``address``.
        """
        try:
            cur = self.conn.execute(
                """
                UPDATE providers
                SET overall_score = ?, tier = ?, verified = ?,
                    badges_json = ?, checks_json = ?, verified_at = ?
                WHERE address = ?
                """,
                (
                    score, tier.value, int(verified), json.dumps(badges),
                    json.dumps(checks), _ts(verified_at), address.lower(),
                ),
            )
            self.conn.commit()
        except sqlite3.Error as e:
            raise StoreWriteError(f"Trust update failed: {e}", record_id=address) from e
        return cur.rowcount > 0

    # ── Signals ──────────────────────────────────────────────────────

    def insert_signal(self, signal: SignalRecord) -> None:
        data = signal.model_dump()
        placeholders = ", ".join("?" for _ in _SIGNAL_COLUMNS)
        try:
            self.conn.execute(
                f"INSERT INTO signals ({', '.join(_SIGNAL_COLUMNS)}) VALUES ({placeholders})",
                tuple(_to_sql(data[c]) for c in _SIGNAL_COLUMNS),
            )
            self.conn.commit()
        except sqlite3.Error as e:
            raise StoreWriteError(f"Signal insert failed: {e}", record_id=signal.id) from e

    def get_signal(self, signal_id: str) -> SignalRecord | None:
        rows = self._read("SELECT * FROM signals WHERE id = ?", (signal_id,))
        return _signal_from_row(rows[0]) if rows else None

    def list_open_signals(self) -> list[SignalRecord]:
        rows = self._read(
            "SELECT * FROM signals WHERE status = ? ORDER BY timestamp ASC, id ASC",
            (SignalStatus.OPEN.value,),
        )
        return [_signal_from_row(r) for r in rows]

    def list_recent_signals(self, since: dt.datetime) -> list[SignalRecord]:
        rows = self._read(
            "SELECT * FROM signals WHERE timestamp >= ? ORDER BY timestamp DESC, id ASC",
            (_ts(since),),
        )
        return [_signal_from_row(r) for r in rows]

    def list_signals_by_provider(self, address: str) -> list[SignalRecord]:
        rows = self._read(
            "SELECT * FROM signals WHERE provider = ? ORDER BY timestamp ASC, id ASC",
            (address.lower(),),
        )
        return [_signal_from_row(r) for r in rows]

    def list_open_signals_for(
        self,
        provider: str,
        token: str,
        action: SignalAction,
        since: dt.datetime,
        limit: int = 5,
    ) -> list[SignalRecord]:
        """Open signals of one provider/token/action, newest first."""
        rows = self._read(
            """
            SELECT * FROM signals
            WHERE provider = ? AND UPPER(token) = ? AND action = ?
              AND status = ? AND timestamp >= ?
            ORDER BY timestamp DESC, id ASC
            LIMIT ?
            """,
            (
                provider.lower(), token.upper(), action.value,
                SignalStatus.OPEN.value, _ts(since), limit,
            ),
        )
        return [_signal_from_row(r) for r in rows]

    def update_signal(
        self,
        signal_id: str,
        fields: dict[str, Any],
        expected_status: SignalStatus | None = None,
    ) -> bool:
        """Write engine-owned fields; optionally only if status still matches.

        Returns False when the row is missing or its status moved on.
        """
        unknown = set(fields) - _SIGNAL_WRITABLE
        if unknown:
            raise ValueError(f"Not writable on signals: {sorted(unknown)}")
        if not fields:
            return False

        assignments = ", ".join(f"{k} = ?" for k in fields)
        params: list[Any] = [_to_sql(v) for v in fields.values()]
        sql = f"UPDATE signals SET {assignments} WHERE id = ?"
        params.append(signal_id)
        if expected_status is not None:
            sql += " AND status = ?"
            params.append(expected_status.value)

        try:
            cur = self.conn.execute(sql, tuple(params))
            self.conn.commit()
        except sqlite3.Error as e:
            raise StoreWriteError(f"Signal update failed: {e}", record_id=signal_id) from e
        return cur.rowcount > 0


def _signal_from_row(row: sqlite3.Row) -> SignalRecord:
    data = {k: row[k] for k in row.keys() if row[k] is not None}
    return SignalRecord.model_validate(data)


def _provider_from_row(row: sqlite3.Row) -> ProviderRecord:
    data = {k: row[k] for k in row.keys() if row[k] is not None}
    data["badges"] = json.loads(data.pop("badges_json", "[]") or "[]")
    data["checks"] = json.loads(data.pop("checks_json", "[]") or "[]")
    data["verified"] = bool(data.get("verified", 0))
    return ProviderRecord.model_validate(data)

"""Database migrations — create and upgrade the ledger schema."""

from __future__ import annotations

import sqlite3

from signal_ledger.observability.logger import get_logger

log = get_logger(__name__)

SCHEMA_VERSION = 1

_MIGRATIONS: dict[int, list[str]] = {
    1: [
        """
        CREATE TABLE IF NOT EXISTS providers (
            address TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            bio TEXT,
            description TEXT,
            avatar TEXT,
            chain TEXT DEFAULT 'base',
            agent TEXT,
            website TEXT,
            twitter TEXT,
            farcaster TEXT,
            github TEXT,
            registered_at TEXT,
            verified INTEGER DEFAULT 0,
            overall_score REAL DEFAULT 0,
            tier TEXT DEFAULT 'unranked',
            badges_json TEXT DEFAULT '[]',
            checks_json TEXT DEFAULT '[]',
            verified_at TEXT
        );
        """,
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_providers_name
            ON providers(name COLLATE NOCASE);
        """,
        """
        CREATE TABLE IF NOT EXISTS signals (
            id TEXT PRIMARY KEY,
            provider TEXT NOT NULL,
            action TEXT NOT NULL,
            token TEXT DEFAULT '',
            token_address TEXT,
            chain TEXT DEFAULT 'base',
            category TEXT DEFAULT 'spot',
            entry_price REAL,
            leverage REAL DEFAULT 1,
            collateral_usd REAL,
            stop_loss_pct REAL,
            take_profit_pct REAL,
            tx_hash TEXT,
            exit_tx_hash TEXT,
            confidence REAL,
            reasoning TEXT,
            status TEXT NOT NULL DEFAULT 'open',
            timestamp TEXT NOT NULL,
            expires_at TEXT,
            current_price REAL,
            unrealized_pnl_pct REAL,
            unrealized_pnl_usd REAL,
            exit_price REAL,
            exit_timestamp TEXT,
            pnl_pct REAL,
            pnl_usd REAL,
            max_drawdown_pct REAL,
            parent_signal_id TEXT,
            source TEXT DEFAULT 'api',
            FOREIGN KEY (provider) REFERENCES providers(address)
        );
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_signals_status ON signals(status);
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_signals_timestamp ON signals(timestamp);
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_signals_provider ON signals(provider);
        """,
    ],
}


def run_migrations(conn: sqlite3.Connection) -> None:
    """Run all pending migrations."""
    conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY)")
    conn.commit()

    current = _get_current_version(conn)

    for version in sorted(_MIGRATIONS.keys()):
        if version <= current:
            continue
        log.info("migrations.running", version=version)
        for sql in _MIGRATIONS[version]:
            conn.execute(sql)
        conn.execute(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (version,),
        )
        conn.commit()
        log.info("migrations.applied", version=version)

    log.info("migrations.complete", version=_get_current_version(conn))


def _get_current_version(conn: sqlite3.Connection) -> int:
    try:
        row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
        return row[0] if row and row[0] else 0
    except sqlite3.Error:
        return 0

"""SQLite-backed persistent store for the wallet pool."""

import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Iterable

from evm_workload.models import Account

log = logging.getLogger("evm_workload.store")


class WalletStore:
    """Persistent wallet pool backed by SQLite.

    Rows are the ``{address, privateKey}`` records plus a funded flag, so a
    restart picks up where generation and funding left off.
    """

    def __init__(self, db_path: str | Path = "wallets.db") -> None:
        self.db_path = Path(db_path)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _init_db(self) -> None:
        """Create tables if they don't exist."""
        if self.db_path.parent != Path("."):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        try:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS wallets (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    address TEXT NOT NULL UNIQUE,
                    private_key TEXT NOT NULL,
                    funded INTEGER DEFAULT 0,
                    created_at REAL NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_wallets_funded ON wallets(funded);
                """
            )
            conn.commit()
            log.debug(f"SQLite database initialized at {self.db_path}")
        finally:
            conn.close()

    def has_state(self) -> bool:
        conn = self._connect()
        try:
            (n,) = conn.execute("SELECT COUNT(*) FROM wallets").fetchone()
            return n > 0
        finally:
            conn.close()

    def save_wallets(self, accounts: Iterable[Account]) -> int:
        """Insert accounts not stored yet. Returns how many rows were added."""
        now = time.time()
        rows = [(a.address, a.private_key, now) for a in accounts]
        conn = self._connect()
        try:
            before = conn.total_changes
            conn.executemany(
                "INSERT OR IGNORE INTO wallets (address, private_key, created_at) VALUES (?, ?, ?)",
                rows,
            )
            conn.commit()
            added = conn.total_changes - before
        finally:
            conn.close()
        log.debug(f"Persisted {added} new wallets ({len(rows)} offered)")
        return added

    def mark_funded(self, addresses: Iterable[str]) -> None:
        conn = self._connect()
        try:
            conn.executemany("UPDATE wallets SET funded = 1 WHERE address = ?", [(a,) for a in addresses])
            conn.commit()
        finally:
            conn.close()

    def load_wallets(self) -> list[tuple[Account, bool]]:
        """All stored wallets in creation order with their funded flag."""
        conn = self._connect()
        try:
            rows = conn.execute("SELECT address, private_key, funded FROM wallets ORDER BY seq").fetchall()
        finally:
            conn.close()
        return [(Account(address=addr, private_key=key), bool(funded)) for addr, key, funded in rows]

    def export_json(self, path: str | Path) -> int:
        records = [a.to_record() for a, _ in self.load_wallets()]
        Path(path).write_text(json.dumps(records, indent=2))
        log.info(f"Exported {len(records)} wallets to {path}")
        return len(records)

    def import_json(self, path: str | Path) -> int:
        records = json.loads(Path(path).read_text())
        added = self.save_wallets(Account.from_record(r) for r in records)
        log.info(f"Imported {added} wallets from {path}")
        return added

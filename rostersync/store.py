"""SQLite-backed state for reconciliation runs.

Holds provider-assigned IDs, the notification ledger, the roster snapshot from
the previous run and the per-company run lock.
"""

import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from .config import SYNC_DB
from .models import Group, User

logger = logging.getLogger(__name__)

USER = "user"
GROUP = "group"


class SyncStore:
    """SQLite-backed storage for reconciliation state."""

    def __init__(self, db_path: Path | str | None = None):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database. Defaults to SYNC_DB.
        """
        self.db_path = Path(db_path) if db_path else SYNC_DB
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_schema()

    @contextmanager
    def _connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections."""
        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        """Initialize database schema."""
        with self._connection() as conn:
            conn.executescript("""
                -- Provider-assigned IDs for users and groups
                CREATE TABLE IF NOT EXISTS external_ids (
                    provider TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    key TEXT NOT NULL,
                    external_id TEXT NOT NULL,
                    updated_at REAL NOT NULL,
                    PRIMARY KEY (provider, kind, key)
                );

                -- Notifications already delivered
                CREATE TABLE IF NOT EXISTS notifications (
                    recipient TEXT NOT NULL,
                    template TEXT NOT NULL,
                    sent_at REAL NOT NULL,
                    PRIMARY KEY (recipient, template)
                );

                -- Roster as of the last completed run
                CREATE TABLE IF NOT EXISTS roster_snapshot (
                    kind TEXT NOT NULL,
                    key TEXT NOT NULL,
                    data TEXT NOT NULL,
                    PRIMARY KEY (kind, key)
                );

                -- One reconcile pass per company at a time
                CREATE TABLE IF NOT EXISTS run_lock (
                    company TEXT PRIMARY KEY,
                    owner TEXT NOT NULL,
                    expires_at REAL NOT NULL
                );
            """)

    # --- External IDs ---

    def upsert_external_id(self, provider: str, kind: str, key: str, external_id: str) -> None:
        """Record the ID a provider assigned to a user or group."""
        with self._lock, self._connection() as conn:
            conn.execute(
                """
                INSERT INTO external_ids (provider, kind, key, external_id, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(provider, kind, key) DO UPDATE SET
                    external_id = excluded.external_id,
                    updated_at = excluded.updated_at
                """,
                (provider, kind, key, external_id, time.time()),
            )

    def get_external_ids(self, kind: str, key: str) -> dict[str, str]:
        """Get all provider IDs for a user or group, keyed by provider."""
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT provider, external_id FROM external_ids WHERE kind = ? AND key = ?",
                (kind, key),
            ).fetchall()
        return {row["provider"]: row["external_id"] for row in rows}

    def delete_external_id(self, provider: str, kind: str, key: str) -> None:
        with self._lock, self._connection() as conn:
            conn.execute(
                "DELETE FROM external_ids WHERE provider = ? AND kind = ? AND key = ?",
                (provider, kind, key),
            )

    # --- Notifications ---

    def claim_notification(self, recipient: str, template: str) -> bool:
        """Claim a notification before sending it.

        Returns:
            True if the caller should send it, False if it was already sent.
        """
        with self._lock, self._connection() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO notifications (recipient, template, sent_at)
                VALUES (?, ?, ?)
                """,
                (recipient, template, time.time()),
            )
            return cursor.rowcount == 1

    def release_notification(self, recipient: str, template: str) -> None:
        """Forget a claim whose delivery failed so a later run retries it."""
        with self._lock, self._connection() as conn:
            conn.execute(
                "DELETE FROM notifications WHERE recipient = ? AND template = ?",
                (recipient, template),
            )

    def was_notified(self, recipient: str, template: str) -> bool:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM notifications WHERE recipient = ? AND template = ?",
                (recipient, template),
            ).fetchone()
        return row is not None

    # --- Roster snapshot ---

    def save_snapshot(self, users: list[User], groups: list[Group]) -> None:
        """Replace the stored snapshot."""
        with self._lock, self._connection() as conn:
            conn.execute("DELETE FROM roster_snapshot")
            conn.executemany(
                "INSERT INTO roster_snapshot (kind, key, data) VALUES (?, ?, ?)",
                [(USER, u.username, json.dumps(u.to_dict())) for u in users]
                + [(GROUP, g.name, json.dumps(g.to_dict())) for g in groups],
            )

    def load_snapshot(self) -> tuple[dict[str, User], dict[str, Group]]:
        """Load the snapshot saved by the previous run."""
        users: dict[str, User] = {}
        groups: dict[str, Group] = {}
        with self._connection() as conn:
            rows = conn.execute("SELECT kind, key, data FROM roster_snapshot").fetchall()

        for row in rows:
            try:
                data = json.loads(row["data"])
            except json.JSONDecodeError as e:
                logger.warning(f"Skipping unreadable snapshot entry {row['key']}: {e}")
                continue
            if row["kind"] == USER:
                users[row["key"]] = User.from_dict(data)
            elif row["kind"] == GROUP:
                groups[row["key"]] = Group.from_dict(data)
        return users, groups

    # --- Run lock ---

    def acquire_run_lock(self, company: str, owner: str, ttl_seconds: int) -> bool:
        """Take the run lock for a company.

        An expired lease is taken over.

        Returns:
            True if the lock is now held by ``owner``.
        """
        now = time.time()
        with self._lock, self._connection() as conn:
            conn.execute("DELETE FROM run_lock WHERE company = ? AND expires_at < ?", (company, now))
            cursor = conn.execute(
                "INSERT OR IGNORE INTO run_lock (company, owner, expires_at) VALUES (?, ?, ?)",
                (company, owner, now + ttl_seconds),
            )
            return cursor.rowcount == 1

    def release_run_lock(self, company: str, owner: str) -> None:
        with self._lock, self._connection() as conn:
            conn.execute(
                "DELETE FROM run_lock WHERE company = ? AND owner = ?",
                (company, owner),
            )

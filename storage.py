"""
Database storage layer for AuthVault.
Uses SQLite as an opaque record store; every value it holds is base64 text
produced by the vault (encrypted blobs, salt and verifiers).
"""
import os
import sqlite3
import logging
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Tuple

# Configure logging
logger = logging.getLogger(__name__)

DEFAULT_DB_FILE = "authenticator.db"

SETTINGS_KEY = "main"

DEFAULT_TIMEOUT = 5.0


class Storage:
    """SQLite storage handler for AuthVault."""

    def __init__(self, db_path: str = DEFAULT_DB_FILE, timeout: float = DEFAULT_TIMEOUT):
        """
        Initialize SQLite database connection.

        Args:
            db_path: Path to SQLite database file (":memory:" for a transient store)
            timeout: Seconds to wait for locks held by other connections
        """
        self.db_path = db_path
        self.timeout = timeout
        self.conn = None

    def connect(self) -> sqlite3.Connection:
        """Establish database connection."""
        if self.conn is None:
            if self.db_path != ":memory:":
                directory = os.path.dirname(os.path.abspath(self.db_path))
                os.makedirs(directory, mode=0o700, exist_ok=True)
            self.conn = sqlite3.connect(
                self.db_path,
                timeout=self.timeout,
                check_same_thread=False,
                isolation_level=None
            )
            self.conn.row_factory = sqlite3.Row
        return self.conn

    def close(self):
        """Close database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None

    def init_db(self):
        """Initialize database tables."""
        conn = self.connect()
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS metadata (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS accounts (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)

        logger.info("Database initialized at %s", self.db_path)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a group of writes atomically.

        Everything executed inside the block is rolled back if the block or the
        commit raises (e.g. "database is locked" while another connection reads).
        """
        conn = self.connect()
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
                logger.warning("Rolled back storage transaction")
            raise

    # === Metadata ===

    def get_metadata(self, key: str) -> Optional[str]:
        """
        Get a metadata value.

        Args:
            key: One of salt, device_verifier, password_verifier

        Returns:
            Stored value or None if not present
        """
        row = self.connect().execute(
            "SELECT value FROM metadata WHERE key = ?", (key,)
        ).fetchone()
        return row['value'] if row else None

    def has_metadata(self, key: str) -> bool:
        row = self.connect().execute(
            "SELECT COUNT(*) AS n FROM metadata WHERE key = ?", (key,)
        ).fetchone()
        return row['n'] > 0

    def set_metadata(self, key: str, value: str):
        self.connect().execute(
            "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
            (key, value)
        )

    def delete_metadata(self, key: str):
        self.connect().execute("DELETE FROM metadata WHERE key = ?", (key,))

    # === Accounts ===

    def put_account(self, account_id: str, blob: str):
        """
        Insert or replace an encrypted account record.

        Args:
            account_id: Account ID
            blob: Base64 encrypted account data
        """
        self.connect().execute(
            "INSERT OR REPLACE INTO accounts (id, data) VALUES (?, ?)",
            (account_id, blob)
        )
        logger.debug("Stored account %s", account_id)

    def get_account(self, account_id: str) -> Optional[str]:
        """Get an encrypted account record, or None if not found."""
        row = self.connect().execute(
            "SELECT data FROM accounts WHERE id = ?", (account_id,)
        ).fetchone()
        return row['data'] if row else None

    def list_accounts(self) -> List[Tuple[str, str]]:
        """Return (id, blob) pairs for every stored account."""
        rows = self.connect().execute(
            "SELECT id, data FROM accounts ORDER BY rowid"
        ).fetchall()
        return [(row['id'], row['data']) for row in rows]

    def delete_account(self, account_id: str) -> bool:
        """
        Delete an account.

        Returns:
            True if a row was removed
        """
        cursor = self.connect().execute("DELETE FROM accounts WHERE id = ?", (account_id,))
        logger.info("Deleted account %s", account_id)
        return cursor.rowcount > 0

    def delete_all_accounts(self) -> int:
        cursor = self.connect().execute("DELETE FROM accounts")
        logger.info("Deleted %d accounts", cursor.rowcount)
        return cursor.rowcount

    # === Settings ===

    def get_settings(self) -> Optional[str]:
        row = self.connect().execute(
            "SELECT value FROM settings WHERE key = ?", (SETTINGS_KEY,)
        ).fetchone()
        return row['value'] if row else None

    def put_settings(self, blob: str):
        self.connect().execute(
            "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)",
            (SETTINGS_KEY, blob)
        )

    def counts(self) -> Dict[str, int]:
        """Row counts per table, for status output."""
        conn = self.connect()
        return {
            table: conn.execute(f"SELECT COUNT(*) AS n FROM {table}").fetchone()['n']
            for table in ("metadata", "accounts", "settings")
        }

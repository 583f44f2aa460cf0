import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)


class DatabaseManager:
    """Owns the SQLite connection that holds references and collections."""

    def __init__(self, db_path: str | Path = "data/library.db"):
        """Connects to the SQLite database and ensures the schema exists.

        Args:
            db_path: Path to the SQLite database file, or ":memory:".
        """
        self.is_in_memory = (str(db_path).lower() == ":memory:")

        if self.is_in_memory:
            self.db_path = ":memory:"
            logger.debug("Initializing in-memory database.")
        else:
            self.db_path = Path(db_path)
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            logger.debug("Connecting to database file: %s", self.db_path.resolve())

        # One connection shared by every thread; self.lock serializes its use.
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.lock = threading.RLock()
        self._create_schema()

    def close_connection(self):
        """Closes the database connection."""
        if getattr(self, 'conn', None):
            logger.debug("Closing connection to %s", self.db_path)
            self.conn.close()
            self.conn = None
        else:
            logger.debug("Connection already closed for %s.", self.db_path)

    def _create_schema(self):
        """Creates the tables if they don't exist."""
        cursor = self.conn.cursor()

        # seq gives creation order and, with AUTOINCREMENT, is never reused.
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS library_references (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                citation_key TEXT,
                favorite INTEGER NOT NULL DEFAULT 0,
                record_json TEXT NOT NULL, -- full Reference as JSON
                date_added TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                date_modified TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS collections (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                name TEXT NOT NULL,
                color TEXT,
                date_added TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_references_citation_key ON library_references(citation_key)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_references_favorite ON library_references(favorite)")

        self.conn.commit()
        logger.debug("Schema created/verified successfully.")

    @contextmanager
    def transaction(self):
        """Holds the connection lock and commits on success, rolls back on error."""
        with self.lock:
            try:
                yield self.conn.cursor()
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise

    def fetchone(self, query: str, params: tuple = ()) -> sqlite3.Row | None:
        with self.lock:
            return self.conn.execute(query, params).fetchone()

    def fetchall(self, query: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self.lock:
            return self.conn.execute(query, params).fetchall()

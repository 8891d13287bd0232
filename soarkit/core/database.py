"""
Database layer for SOARKit.
SQLite storage for indicators, the IoC watchlist and containment actions.
"""

import sqlite3
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from contextlib import contextmanager
from dataclasses import dataclass
import threading

from soarkit.core.logger import get_logger
from soarkit.core.utils import utcnow

logger = get_logger(__name__)


@dataclass
class WatchEntry:
    """A known-bad indicator supplied by threat intel or an analyst."""
    id: Optional[int] = None
    ioc_type: str = ""
    value: str = ""
    source: str = ""
    confidence: int = 50
    first_seen: Optional[str] = None
    last_seen: Optional[str] = None
    description: Optional[str] = None
    active: bool = True


class Database:
    """
    Thread-safe database interface for SOARKit.

    Each thread gets its own connection to the same file.
    """

    def __init__(self, db_path: Union[str, Path] = "data/soarkit.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._conn_lock = threading.Lock()
        self._init_schema()

        logger.info(f"Database initialized at {self.db_path}")

    @property
    def _conn(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if not hasattr(self._local, "conn"):
            conn = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
                timeout=30,
            )
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            with self._conn_lock:
                self._connections.append(conn)
        return self._local.conn

    @contextmanager
    def transaction(self):
        """Context manager for database transactions."""
        try:
            yield self._conn
            self._conn.commit()
        except Exception as e:
            self._conn.rollback()
            logger.error(f"Database transaction failed: {e}")
            raise

    def _init_schema(self):
        """Initialize database schema."""
        schema = """
        CREATE TABLE IF NOT EXISTS indicators (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            fingerprint TEXT NOT NULL UNIQUE,
            indicator_type TEXT NOT NULL,
            value TEXT NOT NULL,
            source TEXT,
            confidence INTEGER DEFAULT 50,
            severity_hint TEXT,
            asset TEXT,
            tags TEXT,
            context TEXT,
            first_seen TEXT,
            last_seen TEXT
        );

        CREATE TABLE IF NOT EXISTS watchlist (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            ioc_type TEXT NOT NULL,
            value TEXT NOT NULL UNIQUE,
            source TEXT,
            confidence INTEGER DEFAULT 50,
            first_seen TEXT,
            last_seen TEXT,
            description TEXT,
            active INTEGER DEFAULT 1
        );

        CREATE TABLE IF NOT EXISTS actions (
            id TEXT PRIMARY KEY,
            idempotency_key TEXT NOT NULL UNIQUE,
            incident_id TEXT NOT NULL,
            action_type TEXT NOT NULL,
            target TEXT NOT NULL,
            step_id TEXT,
            backend TEXT,
            status TEXT DEFAULT 'pending',
            attempts INTEGER DEFAULT 0,
            result TEXT,
            revert_command TEXT,
            parameters TEXT,
            started_at TEXT,
            completed_at TEXT,
            reverted_at TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_indicators_type ON indicators(indicator_type);
        CREATE INDEX IF NOT EXISTS idx_indicators_value ON indicators(value);
        CREATE INDEX IF NOT EXISTS idx_watchlist_value ON watchlist(value);
        CREATE INDEX IF NOT EXISTS idx_actions_incident ON actions(incident_id);
        CREATE INDEX IF NOT EXISTS idx_actions_status ON actions(status);
        """

        with self.transaction() as conn:
            conn.executescript(schema)

    # Indicators
    def upsert_indicator(
        self,
        fingerprint: str,
        indicator_type: str,
        value: str,
        source: str,
        confidence: int,
        severity_hint: Optional[str] = None,
        asset: Optional[str] = None,
        tags: Optional[List[str]] = None,
        context: Optional[Dict[str, Any]] = None,
        observed_at: Optional[str] = None,
    ) -> None:
        """Insert an indicator or refresh an existing one."""
        now = utcnow().isoformat()
        observed_at = observed_at or now

        with self.transaction() as conn:
            conn.execute("""
                INSERT INTO indicators
                (fingerprint, indicator_type, value, source, confidence,
                 severity_hint, asset, tags, context, first_seen, last_seen)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(fingerprint) DO UPDATE SET
                    last_seen = excluded.last_seen,
                    confidence = MAX(indicators.confidence, excluded.confidence),
                    severity_hint = COALESCE(excluded.severity_hint, indicators.severity_hint),
                    asset = COALESCE(excluded.asset, indicators.asset)
            """, (
                fingerprint, indicator_type, value, source, confidence,
                severity_hint, asset, ",".join(tags or []),
                json.dumps(context or {}, default=str), observed_at, now,
            ))

    def get_indicator(self, fingerprint: str) -> Optional[Dict[str, Any]]:
        """Get a stored indicator by fingerprint."""
        cursor = self._conn.execute(
            "SELECT * FROM indicators WHERE fingerprint = ?", (fingerprint,)
        )
        row = cursor.fetchone()
        return dict(row) if row else None

    def get_indicators(
        self,
        indicator_type: Optional[str] = None,
        limit: int = 1000
    ) -> List[Dict[str, Any]]:
        """List stored indicators, newest first."""
        query = "SELECT * FROM indicators WHERE 1=1"
        params: List[Any] = []

        if indicator_type:
            query += " AND indicator_type = ?"
            params.append(indicator_type)

        query += " ORDER BY last_seen DESC LIMIT ?"
        params.append(limit)

        cursor = self._conn.execute(query, params)
        return [dict(row) for row in cursor.fetchall()]

    # Watchlist
    def add_watch(
        self,
        ioc_type: str,
        value: str,
        source: str = "",
        confidence: int = 50,
        description: Optional[str] = None,
    ) -> int:
        """Add or refresh a watchlist entry."""
        return self.add_watch_entry(WatchEntry(
            ioc_type=ioc_type, value=value, source=source,
            confidence=confidence, description=description,
        ))

    def add_watch_entry(self, entry: WatchEntry) -> int:
        """Add or refresh a watchlist entry from a WatchEntry."""
        now = utcnow().isoformat()
        entry.first_seen = entry.first_seen or now
        entry.last_seen = now

        with self.transaction() as conn:
            cursor = conn.execute("""
                INSERT INTO watchlist (ioc_type, value, source, confidence,
                                       first_seen, last_seen, description, active)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(value) DO UPDATE SET
                    last_seen = excluded.last_seen,
                    confidence = excluded.confidence,
                    active = excluded.active
            """, (
                entry.ioc_type, entry.value, entry.source, entry.confidence,
                entry.first_seen, entry.last_seen, entry.description,
                1 if entry.active else 0
            ))
            return cursor.lastrowid

    def check_watch(self, value: str) -> Optional[Dict[str, Any]]:
        """Check if a value matches an active watchlist entry."""
        cursor = self._conn.execute(
            "SELECT * FROM watchlist WHERE value = ? AND active = 1",
            (value,)
        )
        row = cursor.fetchone()
        return dict(row) if row else None

    # Containment actions
    def record_action(self, **fields) -> str:
        """
        Insert or update an action row keyed by its idempotency key.

        The original row id is kept on conflict; the stored id is returned.
        """
        fields = dict(fields)
        if isinstance(fields.get("parameters"), dict):
            fields["parameters"] = json.dumps(fields["parameters"], default=str)

        columns = ", ".join(fields.keys())
        placeholders = ", ".join(["?" for _ in fields])
        updates = ", ".join(
            f"{key} = excluded.{key}"
            for key in fields
            if key not in ("id", "idempotency_key", "incident_id", "started_at")
        )

        with self.transaction() as conn:
            conn.execute(
                f"INSERT INTO actions ({columns}) VALUES ({placeholders}) "
                f"ON CONFLICT(idempotency_key) DO UPDATE SET {updates}",
                list(fields.values())
            )
            row = conn.execute(
                "SELECT id FROM actions WHERE idempotency_key = ?",
                (fields["idempotency_key"],)
            ).fetchone()
            return row["id"]

    def get_action_by_key(self, idempotency_key: str) -> Optional[Dict[str, Any]]:
        """Look up an action by idempotency key."""
        cursor = self._conn.execute(
            "SELECT * FROM actions WHERE idempotency_key = ?", (idempotency_key,)
        )
        row = cursor.fetchone()
        return self._action_row(row) if row else None

    def get_action(self, action_id: str) -> Optional[Dict[str, Any]]:
        """Look up an action by id."""
        cursor = self._conn.execute("SELECT * FROM actions WHERE id = ?", (action_id,))
        row = cursor.fetchone()
        return self._action_row(row) if row else None

    def update_action_status(
        self,
        action_id: str,
        status: str,
        result: Optional[str] = None,
    ) -> None:
        """Update action status."""
        reverted_at = utcnow().isoformat() if status == "reverted" else None

        with self.transaction() as conn:
            conn.execute("""
                UPDATE actions
                SET status = ?,
                    result = COALESCE(?, result),
                    reverted_at = COALESCE(?, reverted_at)
                WHERE id = ?
            """, (status, result, reverted_at, action_id))

    def get_actions(
        self,
        incident_id: Optional[str] = None,
        status: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """List actions in execution order."""
        query = "SELECT * FROM actions WHERE 1=1"
        params: List[Any] = []

        if incident_id:
            query += " AND incident_id = ?"
            params.append(incident_id)
        if status:
            query += " AND status = ?"
            params.append(status)

        query += " ORDER BY started_at ASC, rowid ASC"

        cursor = self._conn.execute(query, params)
        return [self._action_row(row) for row in cursor.fetchall()]

    @staticmethod
    def _action_row(row: sqlite3.Row) -> Dict[str, Any]:
        data = dict(row)
        if data.get("parameters"):
            data["parameters"] = json.loads(data["parameters"])
        else:
            data["parameters"] = {}
        return data

    # Statistics
    def get_stats(self) -> Dict[str, Any]:
        """Counts for reporting."""
        stats = {}

        cursor = self._conn.execute("SELECT COUNT(*) AS total FROM indicators")
        stats["indicators"] = cursor.fetchone()["total"]

        cursor = self._conn.execute(
            "SELECT COUNT(*) AS total FROM watchlist WHERE active = 1"
        )
        stats["watchlist"] = cursor.fetchone()["total"]

        cursor = self._conn.execute(
            "SELECT status, COUNT(*) AS count FROM actions GROUP BY status"
        )
        stats["actions"] = {row["status"]: row["count"] for row in cursor.fetchall()}

        cursor = self._conn.execute("""
            SELECT indicator_type, COUNT(*) AS count
            FROM indicators
            GROUP BY indicator_type
            ORDER BY count DESC
        """)
        stats["indicators_by_type"] = {
            row["indicator_type"]: row["count"] for row in cursor.fetchall()
        }

        return stats

    def release(self):
        """Close the calling thread's connection, if it opened one."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            return
        del self._local.conn
        with self._conn_lock:
            if conn in self._connections:
                self._connections.remove(conn)
        conn.close()

    def close(self):
        """Close all connections opened by this database."""
        with self._conn_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        if hasattr(self._local, "conn"):
            del self._local.conn

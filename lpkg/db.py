# lpkg/db.py
"""
sqlite state database for lpkg.

Features:
- Thread-safe sqlite3 wrapper (check_same_thread=False guarded by an RLock)
- sqlite3.Row row factory, WAL journal, busy timeout
- transaction() context manager (commit on success, rollback on error)
- Simple versioned migrations (lpkg_migrations table)
- Build-state table used by the executor to resume interrupted builds
- get_default_db()/set_default_db() singleton
"""

from __future__ import annotations

import contextlib
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Dict, Generator, Iterable, List, Optional, Sequence, Tuple

from lpkg.config import get_config
from lpkg.errors import LpkgError
from lpkg.logging import get_logger

_logger = get_logger("db")


class DBError(LpkgError):
    kind = "db"


MIGRATIONS: List[Tuple[int, str, str]] = [
    (
        1,
        "build_state",
        """
        CREATE TABLE IF NOT EXISTS build_state (
            node_key TEXT PRIMARY KEY,
            definition_hash TEXT NOT NULL,
            last_phase INTEGER NOT NULL DEFAULT -1,
            state TEXT NOT NULL,
            error TEXT,
            updated_at TEXT NOT NULL
        );
        """,
    ),
]


class DB:
    """
    Small sqlite wrapper.

        db = DB("/tmp/state.sqlite3")
        with db.transaction() as cur:
            cur.execute("...")
    """

    def __init__(self, path: Optional[str | Path] = None, timeout: float = 5.0, busy_timeout_ms: int = 5000) -> None:
        if path is None:
            path = get_config().get("paths.state_db")
            if not path:
                raise DBError("paths.state_db is not configured")
        self._path = Path(path).expanduser().resolve()
        self._timeout = timeout
        self._busy_timeout_ms = busy_timeout_ms
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    # ------------------------
    # Connection
    # ------------------------
    def connect(self) -> sqlite3.Connection:
        with self._lock:
            if self._conn is not None:
                return self._conn
            self._path.parent.mkdir(parents=True, exist_ok=True)
            try:
                conn = sqlite3.connect(str(self._path), timeout=self._timeout, check_same_thread=False)
                conn.row_factory = sqlite3.Row
                cur = conn.cursor()
                try:
                    cur.execute("PRAGMA journal_mode = WAL;")
                    cur.execute(f"PRAGMA busy_timeout = {int(self._busy_timeout_ms)};")
                    cur.execute("PRAGMA synchronous = NORMAL;")
                finally:
                    cur.close()
            except sqlite3.Error as e:
                _logger.exception("failed to open database %s", self._path)
                raise DBError(f"cannot open database {self._path}: {e}") from e
            self._conn = conn
            _logger.debug("connected to %s", self._path)
            return conn

    def close(self) -> None:
        with self._lock:
            if self._conn is None:
                return
            try:
                self._conn.close()
            finally:
                self._conn = None

    # ------------------------
    # Execution helpers
    # ------------------------
    def execute(self, sql: str, params: Optional[Sequence[Any]] = None, commit: bool = False) -> sqlite3.Cursor:
        with self._lock:
            conn = self.connect()
            try:
                cur = conn.cursor()
                cur.execute(sql, params or ())
                if commit:
                    conn.commit()
                return cur
            except sqlite3.Error as e:
                _logger.error("SQL failed: %s | params=%s", sql.strip(), params)
                conn.rollback()
                raise DBError(f"SQL failed: {e}") from e

    def executescript(self, script: str) -> None:
        with self._lock:
            conn = self.connect()
            try:
                conn.executescript(script)
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise DBError(f"script failed: {e}") from e

    def fetchone(self, sql: str, params: Optional[Sequence[Any]] = None) -> Optional[sqlite3.Row]:
        with self._lock:
            cur = self.execute(sql, params)
            try:
                return cur.fetchone()
            finally:
                cur.close()

    def fetchall(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[sqlite3.Row]:
        with self._lock:
            cur = self.execute(sql, params)
            try:
                return cur.fetchall()
            finally:
                cur.close()

    @contextlib.contextmanager
    def transaction(self) -> Generator[sqlite3.Cursor, None, None]:
        """Commit on success, rollback when the block raises."""
        with self._lock:
            conn = self.connect()
            cur = conn.cursor()
            try:
                yield cur
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cur.close()

    # ------------------------
    # Migrations
    # ------------------------
    def get_current_version(self) -> int:
        self.execute(
            "CREATE TABLE IF NOT EXISTS lpkg_migrations (version INTEGER PRIMARY KEY, name TEXT, applied_at TEXT);",
            commit=True,
        )
        row = self.fetchone("SELECT MAX(version) AS v FROM lpkg_migrations;")
        return int(row["v"]) if row and row["v"] is not None else 0

    def apply_migrations(self, migrations: Iterable[Tuple[int, str, str]] = MIGRATIONS) -> List[int]:
        """Apply (version, name, sql) migrations newer than the current version; returns versions applied."""
        applied: List[int] = []
        with self._lock:
            current = self.get_current_version()
            for version, name, sql in sorted(migrations, key=lambda m: int(m[0])):
                if int(version) <= current:
                    continue
                _logger.info("applying migration %s: %s", version, name)
                self.executescript(sql)
                self.execute(
                    "INSERT INTO lpkg_migrations (version, name, applied_at) VALUES (?, ?, ?);",
                    (int(version), name, time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())),
                    commit=True,
                )
                applied.append(int(version))
        return applied

    # ------------------------
    # Build state
    # ------------------------
    def get_build_state(self, node_key: str) -> Optional[Dict[str, Any]]:
        row = self.fetchone("SELECT * FROM build_state WHERE node_key = ?;", (node_key,))
        return dict(row) if row else None

    def set_build_state(self, node_key: str, definition_hash: str, last_phase: int, state: str, error: Optional[str] = None) -> None:
        self.execute(
            """
            INSERT INTO build_state (node_key, definition_hash, last_phase, state, error, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(node_key) DO UPDATE SET
                definition_hash = excluded.definition_hash,
                last_phase = excluded.last_phase,
                state = excluded.state,
                error = excluded.error,
                updated_at = excluded.updated_at;
            """,
            (node_key, definition_hash, int(last_phase), state, error, time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())),
            commit=True,
        )

    def clear_build_state(self, node_key: Optional[str] = None) -> None:
        if node_key is None:
            self.execute("DELETE FROM build_state;", commit=True)
        else:
            self.execute("DELETE FROM build_state WHERE node_key = ?;", (node_key,), commit=True)

    @property
    def path(self) -> Path:
        return self._path


# ------------------------
# Module singleton
# ------------------------
_default_db_lock = threading.RLock()
_default_db: Optional[DB] = None


def get_default_db() -> DB:
    """Shared DB at paths.state_db with migrations applied."""
    global _default_db
    with _default_db_lock:
        if _default_db is None:
            db = DB()
            db.apply_migrations()
            _default_db = db
        return _default_db


def set_default_db(db: Optional[DB]) -> None:
    """Replace the shared instance (tests point it at tmp_path)."""
    global _default_db
    with _default_db_lock:
        _default_db = db

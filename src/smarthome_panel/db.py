"""SQLite helpers and migrations for the smart-home record store."""

from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Tuple, TypeVar

from .logging import get_logger

Migration = Callable[[sqlite3.Connection], None]

SCHEMA_VERSION_KEY = "schema_version"
BUSY_TIMEOUT_MS = 5000

T = TypeVar("T")


class DatabaseCorruptionError(RuntimeError):
    """Raised when SQLite reports the database file as unusable."""


def _ensure_parent_dir(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _configure_connection(conn: sqlite3.Connection) -> None:
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA synchronous = NORMAL")
    conn.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS}")


def _ensure_meta_table(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        )
        """
    )


def _get_schema_version(conn: sqlite3.Connection) -> int:
    _ensure_meta_table(conn)
    row = conn.execute(
        "SELECT value FROM meta WHERE key = ?", (SCHEMA_VERSION_KEY,)
    ).fetchone()
    if row is None:
        return 0
    try:
        return int(row[0])
    except (TypeError, ValueError):
        return 0


def _set_schema_version(conn: sqlite3.Connection, version: int) -> None:
    conn.execute(
        """
        INSERT INTO meta (key, value)
        VALUES (?, ?)
        ON CONFLICT(key) DO UPDATE SET value=excluded.value
        """,
        (SCHEMA_VERSION_KEY, str(version)),
    )


def _migration_initial_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS rooms (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            slug TEXT NOT NULL UNIQUE,
            accent_color TEXT NOT NULL DEFAULT '#3B82F6',
            icon TEXT NOT NULL DEFAULT 'Home',
            display_order INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS devices (
            id TEXT PRIMARY KEY,
            room_id TEXT NOT NULL,
            name TEXT NOT NULL,
            type TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT '{}',
            metadata TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY(room_id) REFERENCES rooms(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS activity_logs (
            id TEXT PRIMARY KEY,
            device_id TEXT,
            room_id TEXT,
            action_type TEXT NOT NULL,
            previous_state TEXT,
            new_state TEXT,
            trigger TEXT NOT NULL,
            command TEXT,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS scenes (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            icon TEXT NOT NULL DEFAULT 'Sparkles',
            device_states TEXT NOT NULL DEFAULT '[]',
            is_favorite INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS settings (
            id TEXT PRIMARY KEY,
            key TEXT NOT NULL UNIQUE,
            value TEXT NOT NULL DEFAULT '{}',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
    )


def _migration_lookup_indexes(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE INDEX IF NOT EXISTS idx_devices_room_id ON devices (room_id);
        CREATE INDEX IF NOT EXISTS idx_activity_logs_created_at ON activity_logs (created_at);
        CREATE INDEX IF NOT EXISTS idx_activity_logs_device_id ON activity_logs (device_id);
        CREATE INDEX IF NOT EXISTS idx_rooms_display_order ON rooms (display_order);
        """
    )


MIGRATIONS: List[Tuple[int, Migration]] = [
    (1, _migration_initial_schema),
    (2, _migration_lookup_indexes),
]


def apply_migrations(db_path: Path) -> None:
    """Apply any pending migrations to the SQLite database."""

    logger = get_logger("smarthome.db")
    _ensure_parent_dir(db_path)
    conn = sqlite3.connect(db_path, check_same_thread=False)
    _configure_connection(conn)
    try:
        current = _get_schema_version(conn)
        logger.info("Current schema version", extra={"version": current})

        for version, migration in _pending_migrations(current):
            logger.info("Applying migration", extra={"version": version})
            migration(conn)
            _set_schema_version(conn, version)
            conn.commit()
            logger.info("Migration applied", extra={"version": version})
    finally:
        conn.close()


def _pending_migrations(current_version: int) -> Iterable[Tuple[int, Migration]]:
    for version, migration in MIGRATIONS:
        if version > current_version:
            yield version, migration


class DatabaseManager:
    """Serializes access to a shared SQLite connection."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.logger = get_logger("smarthome.db")
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = asyncio.Lock()
        self._closed = False

    async def close(self) -> None:
        self._closed = True
        async with self._lock:
            conn = self._conn
            self._conn = None
        if conn is not None:
            await asyncio.to_thread(conn.close)

    async def run(self, operation: Callable[[sqlite3.Connection], T]) -> T:
        """Run an operation with the shared connection, serialized by a lock."""

        if self._closed:
            raise RuntimeError("Database manager is closed")
        async with self._lock:
            try:
                return await asyncio.to_thread(self._run_with_connection, operation)
            except sqlite3.DatabaseError as exc:
                raise self._handle_db_error(exc) from exc

    def _run_with_connection(self, operation: Callable[[sqlite3.Connection], T]) -> T:
        if self._conn is None:
            _ensure_parent_dir(self.db_path)
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            _configure_connection(self._conn)
        try:
            return operation(self._conn)
        except sqlite3.Error:
            self._conn.rollback()
            raise

    def _handle_db_error(self, exc: sqlite3.DatabaseError) -> Exception:
        message = str(exc).lower()
        if any(
            key in message
            for key in ("malformed", "corrupt", "file is encrypted or is not a database")
        ):
            self.logger.error(
                "Database corruption detected",
                extra={"reason": message, "db_path": str(self.db_path)},
            )
            return DatabaseCorruptionError(
                f"Database appears to be corrupted ({exc}). "
                "Restore the database from a backup or remove the corrupted file."
            )
        return exc

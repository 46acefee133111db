"""
statusflow: state database

File: src/statusflow/persistence/state_db.py

Purpose
- One SQLite file holds rules, orders and their state history, transition
  records, audit events, state display names, and run locks.

Behavior
- Migrations are named tuples of DDL statements applied in version order. The
  ``schema_versions`` table stores a SHA-256 checksum per applied migration so
  a migration edited after release is refused instead of silently skipped.
- Statements that hit ``SQLITE_BUSY`` are retried with exponential backoff.
  Constraint violations surface as the raw ``sqlite3.IntegrityError``; every
  other SQLite failure becomes a :class:`StateDBError` subclass.
- Timestamps are stored as ISO-8601 UTC text with microseconds and a ``Z``
  suffix, so lexical order is chronological order.
- Connections are opened per call and closed afterwards. Nothing holds a lock
  for the length of a run.
"""

from __future__ import annotations

import hashlib
import itertools
import json
import sqlite3
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Final

from statusflow.constants import STATE_DB_SCHEMA_VERSION
from statusflow.domain.models import AuditLevel

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]
RowValue = str | int | float | bytes | None

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_BUSY_RETRIES: Final[int] = 4
DEFAULT_BUSY_BACKOFF_MS: Final[int] = 25

_LEVELS_SQL: Final[str] = ", ".join(f"'{level.value}'" for level in AuditLevel)

_SCHEMA_VERSIONS_SQL: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY CHECK (version > 0),
    name TEXT NOT NULL,
    checksum TEXT NOT NULL CHECK (length(checksum) = 64),
    applied_at TEXT NOT NULL
)
"""


class StateDBError(RuntimeError):
    """Base class for persistence DB errors."""


class StateDBBusyError(StateDBError):
    """The database stayed locked through every retry."""


class StateDBMigrationError(StateDBError):
    """The on-disk schema cannot be brought to this build's version."""


class StateDBCorruptionError(StateDBError):
    """SQLite reported a malformed database file."""


@dataclass(frozen=True, slots=True)
class Migration:
    version: int
    name: str
    statements: tuple[str, ...]

    @property
    def checksum(self) -> str:
        # Whitespace-insensitive so reindenting a statement is not a schema change.
        digest = hashlib.sha256(f"{self.version}:{self.name}".encode())
        for statement in self.statements:
            digest.update(b"\x00" + " ".join(statement.split()).encode("utf-8"))
        return digest.hexdigest()


@dataclass(frozen=True, slots=True)
class MigrationRecord:
    version: int
    name: str
    checksum: str
    applied_at: str


MIGRATIONS: Final[tuple[Migration, ...]] = (
    Migration(
        version=1,
        name="orders_rules_audit",
        statements=(
            """
            CREATE TABLE order_states (
                id INTEGER PRIMARY KEY CHECK (id > 0),
                name TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE orders (
                id INTEGER PRIMARY KEY CHECK (id > 0),
                reference TEXT,
                current_state INTEGER NOT NULL CHECK (current_state > 0),
                total_paid REAL,
                payment_method TEXT,
                carrier TEXT,
                customer_id INTEGER,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE order_state_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                order_id INTEGER NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
                state INTEGER NOT NULL CHECK (state > 0),
                principal TEXT,
                created_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE rules (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                source_state INTEGER NOT NULL CHECK (source_state > 0),
                target_state INTEGER NOT NULL CHECK (target_state > 0),
                delay_hours INTEGER NOT NULL DEFAULT 0 CHECK (delay_hours >= 0),
                condition_json TEXT,
                auto_execute INTEGER NOT NULL DEFAULT 0 CHECK (auto_execute IN (0, 1)),
                active INTEGER NOT NULL DEFAULT 1 CHECK (active IN (0, 1)),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """,
            f"""
            CREATE TABLE audit_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                level TEXT NOT NULL CHECK (level IN ({_LEVELS_SQL})),
                message TEXT NOT NULL,
                subject_type TEXT NOT NULL,
                subject_id INTEGER NOT NULL,
                rule_id INTEGER,
                context_json TEXT,
                created_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE transition_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                order_id INTEGER NOT NULL,
                subject_type TEXT NOT NULL,
                from_state INTEGER,
                to_state INTEGER NOT NULL,
                rule_id INTEGER,
                principal TEXT,
                created_at TEXT NOT NULL
            )
            """,
            """
            CREATE TRIGGER audit_events_no_update BEFORE UPDATE ON audit_events
            BEGIN
                SELECT RAISE(ABORT, 'audit_events is append-only');
            END
            """,
            """
            CREATE TRIGGER transition_history_no_update BEFORE UPDATE ON transition_history
            BEGIN
                SELECT RAISE(ABORT, 'transition_history is append-only');
            END
            """,
            "CREATE INDEX idx_orders_state ON orders(current_state, id)",
            """
            CREATE INDEX idx_order_state_history_entry
            ON order_state_history(order_id, state, created_at DESC)
            """,
            "CREATE INDEX idx_rules_active_auto ON rules(active, auto_execute)",
            "CREATE INDEX idx_audit_events_created ON audit_events(created_at DESC)",
            """
            CREATE INDEX idx_audit_events_subject
            ON audit_events(subject_type, subject_id, created_at DESC)
            """,
            "CREATE INDEX idx_audit_events_rule ON audit_events(rule_id, created_at DESC)",
            "CREATE INDEX idx_transition_history_order ON transition_history(order_id, id)",
        ),
    ),
    Migration(
        version=2,
        name="run_locks",
        statements=(
            """
            CREATE TABLE run_locks (
                name TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                acquired_at TEXT NOT NULL,
                expires_at TEXT NOT NULL
            )
            """,
        ),
    ),
)


def _sqlite_codes(*names: str) -> frozenset[int]:
    return frozenset(
        code for name in names if isinstance(code := getattr(sqlite3, name, None), int)
    )


_BUSY_CODES: Final[frozenset[int]] = _sqlite_codes(
    "SQLITE_BUSY", "SQLITE_BUSY_RECOVERY", "SQLITE_BUSY_SNAPSHOT", "SQLITE_LOCKED"
)
_CORRUPT_CODES: Final[frozenset[int]] = _sqlite_codes("SQLITE_CORRUPT", "SQLITE_NOTADB")
_BUSY_MESSAGES: Final[tuple[str, ...]] = ("database is locked", "table is locked")
_CORRUPT_MESSAGES: Final[tuple[str, ...]] = ("disk image is malformed", "file is not a database")


def _error_kind(exc: sqlite3.Error) -> type[StateDBError]:
    code = getattr(exc, "sqlite_errorcode", None)
    message = str(exc).lower()
    if code in _CORRUPT_CODES or any(text in message for text in _CORRUPT_MESSAGES):
        return StateDBCorruptionError
    if code in _BUSY_CODES or any(text in message for text in _BUSY_MESSAGES):
        return StateDBBusyError
    return StateDBError


class StateDB:
    """Per-call SQLite connections over one state file, with migrations and busy retry."""

    def __init__(
        self,
        path: str | Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        busy_retries: int = DEFAULT_BUSY_RETRIES,
        busy_backoff_ms: int = DEFAULT_BUSY_BACKOFF_MS,
    ) -> None:
        for label, value in (
            ("busy_timeout_ms", busy_timeout_ms),
            ("busy_retries", busy_retries),
            ("busy_backoff_ms", busy_backoff_ms),
        ):
            if value < 0:
                raise ValueError(f"{label} must be >= 0")
        self._path = Path(path).expanduser()
        self._busy_timeout_ms = busy_timeout_ms
        self._busy_retries = busy_retries
        self._busy_backoff_s = busy_backoff_ms / 1000.0
        self._savepoints = itertools.count(1)

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Open an autocommit connection with foreign keys, busy timeout, and WAL."""

        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            self._path,
            timeout=self._busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        try:
            conn.row_factory = sqlite3.Row
            self._run(conn, "PRAGMA foreign_keys=ON", (), "enable foreign keys")
            self._run(conn, f"PRAGMA busy_timeout={self._busy_timeout_ms}", (), "set busy timeout")
            mode = self._run(conn, "PRAGMA journal_mode=WAL", (), "enable WAL").fetchone()
            if mode is None or str(mode[0]).lower() != "wal":
                raise StateDBError(f"cannot switch {self._path} to WAL journal mode")
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(
        self,
        *,
        conn: sqlite3.Connection | None = None,
        immediate: bool = True,
    ) -> Iterator[sqlite3.Connection]:
        """Atomic block. A nested block on the same connection becomes a savepoint."""

        if conn is None:
            with self.connection() as owned, self.transaction(conn=owned, immediate=immediate) as tx:
                yield tx
            return

        if conn.in_transaction:
            name = f"sp_{next(self._savepoints)}"
            begin, commit = f"SAVEPOINT {name}", f"RELEASE {name}"
            rollback: tuple[str, ...] = (f"ROLLBACK TO {name}", f"RELEASE {name}")
        else:
            begin, commit = ("BEGIN IMMEDIATE" if immediate else "BEGIN"), "COMMIT"
            rollback = ("ROLLBACK",)

        self._run(conn, begin, (), "begin")
        try:
            yield conn
        except Exception:
            for statement in rollback:
                self._run(conn, statement, (), "rollback")
            raise
        self._run(conn, commit, (), "commit")

    def migrate(self) -> int:
        """Apply pending migrations and return the resulting schema version."""

        versions = [migration.version for migration in MIGRATIONS]
        if versions != list(range(1, STATE_DB_SCHEMA_VERSION + 1)):
            raise StateDBMigrationError(
                f"migrations {versions} do not cover schema versions 1..{STATE_DB_SCHEMA_VERSION}"
            )

        with self.connection() as conn:
            self._run(conn, _SCHEMA_VERSIONS_SQL, (), "create schema_versions")
            applied = {record.version: record for record in self._history(conn)}
            newest = max(applied, default=0)
            if newest > STATE_DB_SCHEMA_VERSION:
                raise StateDBMigrationError(
                    f"{self._path} is at schema version {newest}; "
                    f"this build supports up to {STATE_DB_SCHEMA_VERSION}"
                )

            for migration in MIGRATIONS:
                record = applied.get(migration.version)
                if record is not None:
                    if record.checksum != migration.checksum:
                        raise StateDBMigrationError(
                            f"migration {migration.version} ({migration.name}) changed "
                            f"after it was applied to {self._path}"
                        )
                    continue
                with self.transaction(conn=conn) as tx:
                    for statement in migration.statements:
                        self._run(tx, statement, (), f"apply migration {migration.version}")
                    self._run(
                        tx,
                        "INSERT INTO schema_versions (version, name, checksum, applied_at) "
                        "VALUES (?, ?, ?, ?)",
                        (
                            migration.version,
                            migration.name,
                            migration.checksum,
                            to_iso8601z(datetime.now(UTC)),
                        ),
                        f"record migration {migration.version}",
                    )
            return self.schema_version(conn=conn)

    def schema_version(self, *, conn: sqlite3.Connection | None = None) -> int:
        row = self.query_one("SELECT MAX(version) AS version FROM schema_versions", conn=conn)
        value = None if row is None else row["version"]
        return value if isinstance(value, int) else 0

    def schema_history(self) -> list[MigrationRecord]:
        with self.connection() as conn:
            return self._history(conn)

    def execute(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        """Run one write statement and return the affected row count."""

        with self._borrow(conn, write=True) as active:
            return self._run(active, sql, params, "execute statement").rowcount

    def insert(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        with self._borrow(conn, write=True) as active:
            row_id = self._run(active, sql, params, "insert row").lastrowid
        if row_id is None:
            raise StateDBError("insert did not produce a row id")
        return row_id

    def query_all(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> list[dict[str, RowValue]]:
        with self._borrow(conn, write=False) as active:
            return [dict(row) for row in self._run(active, sql, params, "query").fetchall()]

    def query_one(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> dict[str, RowValue] | None:
        with self._borrow(conn, write=False) as active:
            row = self._run(active, sql, params, "query").fetchone()
        return None if row is None else dict(row)

    @contextmanager
    def _borrow(
        self, conn: sqlite3.Connection | None, *, write: bool
    ) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
        elif write:
            with self.transaction() as tx:
                yield tx
        else:
            with self.connection() as owned:
                yield owned

    def _history(self, conn: sqlite3.Connection) -> list[MigrationRecord]:
        rows = self._run(
            conn,
            "SELECT version, name, checksum, applied_at FROM schema_versions ORDER BY version",
            (),
            "read schema_versions",
        ).fetchall()
        return [
            MigrationRecord(
                version=int(row["version"]),
                name=str(row["name"]),
                checksum=str(row["checksum"]),
                applied_at=str(row["applied_at"]),
            )
            for row in rows
        ]

    def _run(
        self,
        conn: sqlite3.Connection,
        sql: str,
        params: SQLParams,
        operation: str,
    ) -> sqlite3.Cursor:
        attempt = 0
        while True:
            try:
                return conn.execute(sql, tuple(params))
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                kind = _error_kind(exc)
                if kind is StateDBBusyError and attempt < self._busy_retries:
                    time.sleep(self._busy_backoff_s * 2**attempt)
                    attempt += 1
                    continue
                raise kind(f"{operation} failed for {self._path}: {exc}") from exc


def to_iso8601z(value: datetime) -> str:
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError("datetime must be timezone-aware")
    return value.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def canonical_json(value: object) -> str:
    """Sorted-key compact JSON, the form every JSON column is stored in."""

    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


__all__ = [
    "DEFAULT_BUSY_BACKOFF_MS",
    "DEFAULT_BUSY_RETRIES",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "MIGRATIONS",
    "Migration",
    "MigrationRecord",
    "RowValue",
    "SQLParams",
    "SQLValue",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
    "canonical_json",
    "to_iso8601z",
]

"""
bastion-orchestrator — SQLite state database.

File: src/bastion_orchestrator/persistence/state_db.py
Last updated: 2026-10-19

Purpose
- SQLite schema management, migrations, and connection lifecycle for tasks, grants,
  rate-limit counters, moderation logs, audit records, execution results, and usage.

Functional requirements
- Idempotent, checksum-verified migrations recorded in ``schema_versions``.
- ``BEGIN IMMEDIATE`` transactions with nested savepoints so check-and-increment
  sequences are atomic across processes.
- Audit records are append-only at the schema level.

Non-functional requirements
- Short-lived connections; bounded busy retries with exponential backoff.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import sqlite3
import time
from collections.abc import Callable, Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Final

from bastion_orchestrator.constants import STATE_DB_SCHEMA_VERSION
from bastion_orchestrator.domain.models import (
    AuditKind,
    LimitType,
    PermissionLevel,
    ResourceType,
    TaskPriority,
    TaskStatus,
)

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]
RowValue = str | int | float | bytes | None

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_BUSY_RETRY_LIMIT: Final[int] = 4
DEFAULT_BUSY_RETRY_BACKOFF_MS: Final[int] = 25


def _sql_enum(values: type[StrEnum]) -> str:
    return ",".join(f"'{item.value}'" for item in sorted(values, key=lambda item: item.value))


_SCHEMA_VERSIONS_TABLE_SQL: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY CHECK (version > 0),
    name TEXT NOT NULL,
    checksum TEXT NOT NULL CHECK (length(checksum) = 64),
    applied_at TEXT NOT NULL
)
"""

_MIGRATION_0001_STATEMENTS: Final[tuple[str, ...]] = (
    _SCHEMA_VERSIONS_TABLE_SQL,
    f"""
    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        parent_task_id TEXT,
        status TEXT NOT NULL CHECK (status IN ({_sql_enum(TaskStatus)})),
        priority TEXT NOT NULL CHECK (priority IN ({_sql_enum(TaskPriority)})),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        payload_json TEXT NOT NULL,
        FOREIGN KEY(parent_task_id) REFERENCES tasks(id) ON DELETE CASCADE
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS permissions (
        id TEXT PRIMARY KEY,
        principal_id TEXT NOT NULL,
        resource_type TEXT NOT NULL CHECK (resource_type IN ({_sql_enum(ResourceType)})),
        resource_id TEXT NOT NULL,
        level TEXT NOT NULL CHECK (level IN ({_sql_enum(PermissionLevel)})),
        expires_at TEXT,
        created_at TEXT NOT NULL,
        payload_json TEXT NOT NULL,
        UNIQUE(principal_id, resource_type, resource_id)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS rate_limit_counters (
        principal_id TEXT NOT NULL,
        limit_type TEXT NOT NULL CHECK (limit_type IN ({_sql_enum(LimitType)})),
        resource_key TEXT NOT NULL,
        count INTEGER NOT NULL CHECK (count >= 0),
        window_expiry TEXT NOT NULL,
        payload_json TEXT NOT NULL,
        PRIMARY KEY (principal_id, limit_type, resource_key)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS custom_limits (
        principal_id TEXT NOT NULL,
        limit_type TEXT NOT NULL CHECK (limit_type IN ({_sql_enum(LimitType)})),
        limit_value INTEGER NOT NULL CHECK (limit_value >= 0),
        window_seconds INTEGER NOT NULL CHECK (window_seconds >= 1),
        updated_at TEXT NOT NULL,
        PRIMARY KEY (principal_id, limit_type)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS usage_log (
        id TEXT PRIMARY KEY,
        principal_id TEXT NOT NULL,
        limit_type TEXT NOT NULL CHECK (limit_type IN ({_sql_enum(LimitType)})),
        resource_id TEXT,
        amount INTEGER NOT NULL CHECK (amount >= 1),
        created_at TEXT NOT NULL,
        payload_json TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS moderation_logs (
        id TEXT PRIMARY KEY,
        principal_id TEXT,
        is_allowed INTEGER NOT NULL CHECK (is_allowed IN (0, 1)),
        content_hash TEXT NOT NULL CHECK (length(content_hash) = 64),
        created_at TEXT NOT NULL,
        payload_json TEXT NOT NULL
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS audit_records (
        id TEXT PRIMARY KEY,
        kind TEXT NOT NULL CHECK (kind IN ({_sql_enum(AuditKind)})),
        decision TEXT NOT NULL,
        principal_id TEXT,
        correlation_id TEXT,
        created_at TEXT NOT NULL,
        payload_json TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS execution_results (
        execution_id TEXT PRIMARY KEY,
        success INTEGER NOT NULL CHECK (success IN (0, 1)),
        error_code TEXT,
        execution_time_ms INTEGER NOT NULL CHECK (execution_time_ms >= 0),
        created_at TEXT NOT NULL,
        payload_json TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS resource_owners (
        resource_type TEXT NOT NULL,
        resource_id TEXT NOT NULL,
        owner_id TEXT NOT NULL,
        created_at TEXT NOT NULL,
        PRIMARY KEY (resource_type, resource_id)
    )
    """,
    """
    CREATE TRIGGER IF NOT EXISTS audit_records_append_only_update
    BEFORE UPDATE ON audit_records
    BEGIN
        SELECT RAISE(ABORT, 'audit records are append-only');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS audit_records_append_only_delete
    BEFORE DELETE ON audit_records
    BEGIN
        SELECT RAISE(ABORT, 'audit records are append-only');
    END
    """,
    "CREATE INDEX IF NOT EXISTS idx_tasks_owner_parent ON tasks(owner_id, parent_task_id)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_parent ON tasks(parent_task_id)",
    "CREATE INDEX IF NOT EXISTS idx_permissions_principal ON permissions(principal_id)",
    "CREATE INDEX IF NOT EXISTS idx_usage_log_principal_created"
    " ON usage_log(principal_id, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_moderation_logs_created ON moderation_logs(created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_audit_records_principal_created"
    " ON audit_records(principal_id, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_audit_records_correlation ON audit_records(correlation_id)",
)


@dataclass(frozen=True, slots=True)
class MigrationRecord:
    version: int
    name: str
    checksum: str
    applied_at: str


@dataclass(frozen=True, slots=True)
class _Migration:
    version: int
    name: str
    statements: tuple[str, ...]

    @property
    def checksum(self) -> str:
        digest = hashlib.sha256(f"{self.version}:{self.name}\n".encode())
        for statement in self.statements:
            normalized = "\n".join(line.rstrip() for line in statement.strip().splitlines())
            digest.update(normalized.encode("utf-8"))
            digest.update(b"\n--\n")
        return digest.hexdigest()


_MIGRATIONS: Final[tuple[_Migration, ...]] = (
    _Migration(1, "initial_state_schema", _MIGRATION_0001_STATEMENTS),
)

_BUSY_CODES: Final[frozenset[int]] = frozenset(
    code
    for code in (
        getattr(sqlite3, "SQLITE_BUSY", None),
        getattr(sqlite3, "SQLITE_BUSY_SNAPSHOT", None),
        getattr(sqlite3, "SQLITE_LOCKED", None),
    )
    if isinstance(code, int)
)
_BUSY_SUBSTRINGS: Final[tuple[str, ...]] = ("database is locked", "database table is locked")
_CORRUPTION_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database disk image is malformed",
    "file is not a database",
)


class StateDBError(RuntimeError):
    """Base class for persistence DB errors."""


class StateDBBusyError(StateDBError):
    """Raised when bounded busy retries are exhausted."""


class StateDBMigrationError(StateDBError):
    """Raised when migrations cannot be applied safely."""


class StateDBCorruptionError(StateDBError):
    """Raised when SQLite reports possible corruption."""


class StateDB:
    """SQLite state DB with deterministic migrations and retrying statement helpers."""

    def __init__(
        self,
        path: str | Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        busy_retry_limit: int = DEFAULT_BUSY_RETRY_LIMIT,
        busy_retry_backoff_ms: int = DEFAULT_BUSY_RETRY_BACKOFF_MS,
    ) -> None:
        if busy_timeout_ms < 0 or busy_retry_limit < 0 or busy_retry_backoff_ms < 0:
            raise ValueError("busy timeout, retry limit, and backoff must be >= 0")
        self._path = Path(path).expanduser()
        self._busy_timeout_ms = busy_timeout_ms
        self._busy_retry_limit = busy_retry_limit
        self._busy_retry_backoff_ms = busy_retry_backoff_ms
        self._savepoint_counter = 0

    @property
    def path(self) -> Path:
        return self._path

    def connect(self) -> sqlite3.Connection:
        """Open a configured autocommit connection; transactions are explicit."""

        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            self._path,
            timeout=self._busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
        journal_row = conn.execute("PRAGMA journal_mode=WAL").fetchone()
        if journal_row is None or str(journal_row[0]).lower() != "wal":
            conn.close()
            raise StateDBError(f"failed to enable WAL journal mode for {self._path}")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
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
        """Run statements atomically; nested calls become savepoints."""

        if conn is None:
            with self.connection() as owned, self.transaction(
                conn=owned, immediate=immediate
            ) as tx:
                yield tx
            return

        if conn.in_transaction:
            self._savepoint_counter += 1
            savepoint = f"sp_{self._savepoint_counter}"
            self._execute_with_retry(conn, f"SAVEPOINT {savepoint}", (), operation="savepoint")
            try:
                yield conn
            except Exception:
                self._execute_with_retry(
                    conn, f"ROLLBACK TO SAVEPOINT {savepoint}", (), operation="rollback savepoint"
                )
                self._execute_with_retry(
                    conn, f"RELEASE SAVEPOINT {savepoint}", (), operation="release savepoint"
                )
                raise
            self._execute_with_retry(
                conn, f"RELEASE SAVEPOINT {savepoint}", (), operation="release savepoint"
            )
            return

        begin = "BEGIN IMMEDIATE" if immediate else "BEGIN"
        self._execute_with_retry(conn, begin, (), operation="begin transaction")
        try:
            yield conn
        except Exception:
            self._execute_with_retry(conn, "ROLLBACK", (), operation="rollback transaction")
            raise
        self._execute_with_retry(conn, "COMMIT", (), operation="commit transaction")

    def migrate(self) -> int:
        """Apply migrations idempotently and return the current schema version."""

        known = {migration.version for migration in _MIGRATIONS}
        missing = [v for v in range(1, STATE_DB_SCHEMA_VERSION + 1) if v not in known]
        if missing:
            raise StateDBMigrationError(f"missing migration for schema version {missing[0]}")

        with self.connection() as conn:
            self._execute_with_retry(
                conn, _SCHEMA_VERSIONS_TABLE_SQL, (), operation="create schema_versions table"
            )
            applied = {record.version: record for record in self._history(conn)}
            current = max(applied, default=0)
            if current > STATE_DB_SCHEMA_VERSION:
                raise StateDBMigrationError(
                    "database schema is newer than supported by this binary "
                    f"(db={current}, code={STATE_DB_SCHEMA_VERSION})"
                )

            for migration in _MIGRATIONS:
                if migration.version > STATE_DB_SCHEMA_VERSION:
                    continue
                record = applied.get(migration.version)
                if record is not None:
                    if record.checksum != migration.checksum:
                        raise StateDBMigrationError(
                            f"migration checksum mismatch for version {migration.version}: "
                            f"db={record.checksum} code={migration.checksum}"
                        )
                    continue
                with self.transaction(conn=conn) as tx:
                    for statement in migration.statements:
                        self._execute_with_retry(
                            tx, statement, (), operation=f"apply migration {migration.version}"
                        )
                    self._execute_with_retry(
                        tx,
                        "INSERT INTO schema_versions (version, name, checksum, applied_at) "
                        "VALUES (?, ?, ?, ?)",
                        (migration.version, migration.name, migration.checksum, utc_now_iso()),
                        operation=f"record migration {migration.version}",
                    )
            return self.schema_version(conn=conn)

    def schema_version(self, *, conn: sqlite3.Connection | None = None) -> int:
        row = self.query_one(
            "SELECT COALESCE(MAX(version), 0) AS version FROM schema_versions", conn=conn
        )
        value = 0 if row is None else row["version"]
        if not isinstance(value, int):
            raise StateDBMigrationError("schema_versions.version must be an integer")
        return value

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
        """Execute a parameterized statement and return the affected row count."""

        if conn is not None:
            return self._execute_with_retry(conn, sql, params, operation="execute").rowcount
        with self.transaction() as tx:
            return self._execute_with_retry(tx, sql, params, operation="execute").rowcount

    def executemany(
        self,
        sql: str,
        params_iter: Iterable[SQLParams],
        *,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        rows = [tuple(params) for params in params_iter]
        if conn is not None:
            return self._retrying(lambda: conn.executemany(sql, rows), "execute many").rowcount
        with self.transaction() as tx:
            return self._retrying(lambda: tx.executemany(sql, rows), "execute many").rowcount

    def query_all(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> list[dict[str, RowValue]]:
        if conn is not None:
            cursor = self._execute_with_retry(conn, sql, params, operation="query all")
            return [dict(row) for row in cursor.fetchall()]
        with self.connection() as owned:
            cursor = self._execute_with_retry(owned, sql, params, operation="query all")
            return [dict(row) for row in cursor.fetchall()]

    def query_one(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> dict[str, RowValue] | None:
        rows = self.query_all(sql, params, conn=conn)
        return rows[0] if rows else None

    async def query_all_async(self, sql: str, params: SQLParams = ()) -> list[dict[str, RowValue]]:
        return await asyncio.to_thread(self.query_all, sql, tuple(params))

    async def execute_async(self, sql: str, params: SQLParams = ()) -> int:
        return await asyncio.to_thread(self.execute, sql, tuple(params))

    def integrity_check(self, *, max_errors: int = 100) -> tuple[str, ...]:
        """Return integrity-check errors; an empty tuple means OK."""

        if max_errors <= 0:
            raise ValueError("max_errors must be > 0")
        rows = self.query_all(f"PRAGMA integrity_check({max_errors})")
        messages = tuple(str(row.get("integrity_check", "")) for row in rows)
        return () if messages == ("ok",) else messages

    def __enter__(self) -> StateDB:
        self.migrate()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        del exc_type, exc, tb

    def _history(self, conn: sqlite3.Connection) -> list[MigrationRecord]:
        cursor = self._execute_with_retry(
            conn,
            "SELECT version, name, checksum, applied_at FROM schema_versions ORDER BY version",
            (),
            operation="load schema_versions",
        )
        records: list[MigrationRecord] = []
        for row in cursor.fetchall():
            version, name, checksum, applied_at = (
                row["version"],
                row["name"],
                row["checksum"],
                row["applied_at"],
            )
            if not isinstance(version, int) or not all(
                isinstance(item, str) for item in (name, checksum, applied_at)
            ):
                raise StateDBMigrationError("schema_versions row has unexpected column types")
            records.append(MigrationRecord(version, name, checksum, applied_at))
        return records

    def _execute_with_retry(
        self,
        conn: sqlite3.Connection,
        sql: str,
        params: SQLParams,
        *,
        operation: str,
    ) -> sqlite3.Cursor:
        return self._retrying(lambda: conn.execute(sql, tuple(params)), operation)

    def _retrying(self, call: Callable[[], sqlite3.Cursor], operation: str) -> sqlite3.Cursor:
        for attempt in range(self._busy_retry_limit + 1):
            try:
                return call()
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                busy = _is_busy(exc)
                if busy and attempt < self._busy_retry_limit:
                    time.sleep((self._busy_retry_backoff_ms / 1000.0) * float(2**attempt))
                    continue
                message = str(exc).lower()
                if any(fragment in message for fragment in _CORRUPTION_SUBSTRINGS):
                    raise StateDBCorruptionError(
                        f"{operation} failed for {self._path}: {exc}. "
                        "Run `StateDB.integrity_check()` before reusing this file."
                    ) from exc
                if busy:
                    raise StateDBBusyError(
                        f"{operation} hit SQLITE_BUSY for {self._path} after "
                        f"{self._busy_retry_limit + 1} attempt(s): {exc}"
                    ) from exc
                raise StateDBError(f"{operation} failed for {self._path}: {exc}") from exc
        raise StateDBBusyError(f"{operation} exhausted retries unexpectedly")


def _is_busy(exc: sqlite3.Error) -> bool:
    code = getattr(exc, "sqlite_errorcode", None)
    if isinstance(code, int) and code in _BUSY_CODES:
        return True
    message = str(exc).lower()
    return any(fragment in message for fragment in _BUSY_SUBSTRINGS)


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def canonical_json(value: object) -> str:
    """Deterministic JSON for persistence payloads."""

    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


__all__ = [
    "DEFAULT_BUSY_RETRY_BACKOFF_MS",
    "DEFAULT_BUSY_RETRY_LIMIT",
    "DEFAULT_BUSY_TIMEOUT_MS",
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
    "utc_now_iso",
]

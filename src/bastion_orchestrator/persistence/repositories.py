"""
bastion-orchestrator — repositories over the SQLite state DB.

File: src/bastion_orchestrator/persistence/repositories.py
Last updated: 2026-10-19

Purpose
- Typed read/write access to tasks, permission grants, rate-limit counters, custom
  limits, usage log, moderation logs, audit records, execution results, and resource
  ownership.

Functional requirements
- Rate-limit check-and-increment runs inside one ``BEGIN IMMEDIATE`` transaction so two
  processes sharing the file can never both take the last unit.
- A rejected consumption never writes.
- Permission grants upsert on ``(principal, resource_type, resource_id)``.
- Audit records are append-only.

Non-functional requirements
- Every payload round-trips through the model's ``to_json``/``from_json``.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Final

from bastion_orchestrator.domain.models import (
    WILDCARD_RESOURCE_ID,
    AuditKind,
    AuditRecord,
    ExecutionResult,
    LimitType,
    ModerationLog,
    Permission,
    RateLimitCounter,
    RateLimitPolicy,
    ResourceType,
    Task,
    UsageLogEntry,
    utc_now,
)
from bastion_orchestrator.persistence.state_db import RowValue, StateDB, utc_now_iso

if TYPE_CHECKING:
    import sqlite3

_MAX_PAGE_SIZE: Final[int] = 1_000


class _BaseRepo:
    def __init__(self, db: StateDB) -> None:
        self._db = db
        self._db.migrate()

    @staticmethod
    def _validate_page(limit: int, offset: int) -> None:
        if limit <= 0 or limit > _MAX_PAGE_SIZE:
            raise ValueError(f"limit must be in [1, {_MAX_PAGE_SIZE}]")
        if offset < 0:
            raise ValueError("offset must be >= 0")


class TaskRepo(_BaseRepo):
    """Task tree storage; parents own their subtasks via ``parent_task_id``."""

    def save(self, task: Task) -> Task:
        task.updated_at = utc_now()
        self._db.execute(
            """
            INSERT INTO tasks (
                id, owner_id, parent_task_id, status, priority, created_at, updated_at,
                payload_json
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                owner_id=excluded.owner_id,
                parent_task_id=excluded.parent_task_id,
                status=excluded.status,
                priority=excluded.priority,
                updated_at=excluded.updated_at,
                payload_json=excluded.payload_json
            """,
            (
                task.id,
                task.owner_id,
                task.parent_task_id,
                task.status.value,
                task.priority.value,
                _iso(task.created_at),
                _iso(task.updated_at),
                task.to_json(),
            ),
        )
        return task

    def get(self, task_id: str) -> Task | None:
        row = self._db.query_one("SELECT payload_json FROM tasks WHERE id = ?", (task_id,))
        return None if row is None else Task.from_json(_text(row, "payload_json"))

    def list_roots(self, owner_id: str, *, limit: int = 100, offset: int = 0) -> list[Task]:
        self._validate_page(limit, offset)
        rows = self._db.query_all(
            """
            SELECT payload_json FROM tasks
            WHERE owner_id = ? AND parent_task_id IS NULL
            ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?
            """,
            (owner_id, limit, offset),
        )
        return [Task.from_json(_text(row, "payload_json")) for row in rows]

    def list_children(self, parent_task_id: str) -> list[Task]:
        rows = self._db.query_all(
            "SELECT payload_json FROM tasks WHERE parent_task_id = ? ORDER BY created_at, id",
            (parent_task_id,),
        )
        return [Task.from_json(_text(row, "payload_json")) for row in rows]


class PermissionRepo(_BaseRepo):
    """Explicit grants keyed by principal and resource."""

    def upsert(self, permission: Permission) -> Permission:
        self._db.execute(
            """
            INSERT INTO permissions (
                id, principal_id, resource_type, resource_id, level, expires_at, created_at,
                payload_json
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(principal_id, resource_type, resource_id) DO UPDATE SET
                level=excluded.level,
                expires_at=excluded.expires_at,
                payload_json=excluded.payload_json
            """,
            (
                permission.id,
                permission.principal_id,
                permission.resource_type.value,
                permission.resource_id,
                permission.level.value,
                None if permission.expires_at is None else _iso(permission.expires_at),
                _iso(permission.created_at),
                permission.to_json(),
            ),
        )
        return permission

    def find(
        self, principal_id: str, resource_type: ResourceType, resource_id: str
    ) -> Permission | None:
        row = self._db.query_one(
            """
            SELECT payload_json FROM permissions
            WHERE principal_id = ? AND resource_type = ? AND resource_id = ?
            """,
            (principal_id, ResourceType(resource_type).value, resource_id),
        )
        return None if row is None else Permission.from_json(_text(row, "payload_json"))

    def delete(self, principal_id: str, resource_type: ResourceType, resource_id: str) -> bool:
        removed = self._db.execute(
            """
            DELETE FROM permissions
            WHERE principal_id = ? AND resource_type = ? AND resource_id = ?
            """,
            (principal_id, ResourceType(resource_type).value, resource_id),
        )
        return removed > 0

    def list_for_principal(self, principal_id: str) -> list[Permission]:
        rows = self._db.query_all(
            """
            SELECT payload_json FROM permissions
            WHERE principal_id = ? ORDER BY resource_type, resource_id
            """,
            (principal_id,),
        )
        return [Permission.from_json(_text(row, "payload_json")) for row in rows]


class RateLimitCounterRepo(_BaseRepo):
    """Fixed-window counters plus per-principal custom limits."""

    def get(
        self, principal_id: str, limit_type: LimitType, resource_id: str = WILDCARD_RESOURCE_ID
    ) -> RateLimitCounter | None:
        return self._get(principal_id, LimitType(limit_type), resource_id, conn=None)

    def check_and_consume(
        self,
        principal_id: str,
        limit_type: LimitType,
        resource_id: str,
        *,
        amount: int,
        limit: int,
        window_seconds: int,
        now: datetime,
    ) -> tuple[bool, RateLimitCounter]:
        """Atomically add ``amount`` unless it would exceed ``limit``; denials never write."""

        kind = LimitType(limit_type)
        with self._db.transaction() as tx:
            current = self._get(principal_id, kind, resource_id, conn=tx)
            if current is None or current.is_expired(now):
                current = RateLimitCounter(
                    principal_id=principal_id,
                    limit_type=kind,
                    resource_id=resource_id,
                    count=0,
                    window_expiry=now + timedelta(seconds=window_seconds),
                )
            if current.count + amount > limit:
                return False, current

            updated = RateLimitCounter(
                principal_id=principal_id,
                limit_type=kind,
                resource_id=resource_id,
                count=current.count + amount,
                window_expiry=current.window_expiry,
            )
            self._db.execute(
                """
                INSERT INTO rate_limit_counters (
                    principal_id, limit_type, resource_key, count, window_expiry, payload_json
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(principal_id, limit_type, resource_key) DO UPDATE SET
                    count=excluded.count,
                    window_expiry=excluded.window_expiry,
                    payload_json=excluded.payload_json
                """,
                (
                    principal_id,
                    kind.value,
                    resource_id,
                    updated.count,
                    _iso(updated.window_expiry),
                    updated.to_json(),
                ),
                conn=tx,
            )
            return True, updated

    def reset(self, principal_id: str, limit_type: LimitType | None = None) -> int:
        if limit_type is None:
            return self._db.execute(
                "DELETE FROM rate_limit_counters WHERE principal_id = ?", (principal_id,)
            )
        return self._db.execute(
            "DELETE FROM rate_limit_counters WHERE principal_id = ? AND limit_type = ?",
            (principal_id, LimitType(limit_type).value),
        )

    def get_custom_limit(self, principal_id: str, limit_type: LimitType) -> RateLimitPolicy | None:
        row = self._db.query_one(
            """
            SELECT limit_value, window_seconds FROM custom_limits
            WHERE principal_id = ? AND limit_type = ?
            """,
            (principal_id, LimitType(limit_type).value),
        )
        if row is None:
            return None
        return RateLimitPolicy(
            limit=row["limit_value"],  # type: ignore[arg-type]
            window_seconds=row["window_seconds"],  # type: ignore[arg-type]
        )

    def set_custom_limit(
        self, principal_id: str, limit_type: LimitType, policy: RateLimitPolicy
    ) -> None:
        self._db.execute(
            """
            INSERT INTO custom_limits (principal_id, limit_type, limit_value, window_seconds,
                updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(principal_id, limit_type) DO UPDATE SET
                limit_value=excluded.limit_value,
                window_seconds=excluded.window_seconds,
                updated_at=excluded.updated_at
            """,
            (
                principal_id,
                LimitType(limit_type).value,
                policy.limit,
                policy.window_seconds,
                utc_now_iso(),
            ),
        )

    def _get(
        self,
        principal_id: str,
        limit_type: LimitType,
        resource_id: str,
        *,
        conn: sqlite3.Connection | None,
    ) -> RateLimitCounter | None:
        row = self._db.query_one(
            """
            SELECT payload_json FROM rate_limit_counters
            WHERE principal_id = ? AND limit_type = ? AND resource_key = ?
            """,
            (principal_id, limit_type.value, resource_id),
            conn=conn,
        )
        return None if row is None else RateLimitCounter.from_json(_text(row, "payload_json"))


class UsageLogRepo(_BaseRepo):
    def add(self, entry: UsageLogEntry) -> UsageLogEntry:
        self._db.execute(
            """
            INSERT INTO usage_log (id, principal_id, limit_type, resource_id, amount,
                created_at, payload_json)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.id,
                entry.principal_id,
                entry.limit_type.value,
                entry.resource_id,
                entry.amount,
                _iso(entry.timestamp),
                entry.to_json(),
            ),
        )
        return entry

    def list_for_principal(
        self, principal_id: str, *, limit: int = 100, offset: int = 0
    ) -> list[UsageLogEntry]:
        self._validate_page(limit, offset)
        rows = self._db.query_all(
            """
            SELECT payload_json FROM usage_log WHERE principal_id = ?
            ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?
            """,
            (principal_id, limit, offset),
        )
        return [UsageLogEntry.from_json(_text(row, "payload_json")) for row in rows]


class ModerationLogRepo(_BaseRepo):
    def add(self, log: ModerationLog) -> ModerationLog:
        self._db.execute(
            """
            INSERT INTO moderation_logs (id, principal_id, is_allowed, content_hash, created_at,
                payload_json)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                log.id,
                log.principal_id,
                int(log.is_allowed),
                log.content_hash,
                _iso(log.timestamp),
                log.to_json(),
            ),
        )
        return log

    def list_recent(self, *, limit: int = 100, offset: int = 0) -> list[ModerationLog]:
        self._validate_page(limit, offset)
        rows = self._db.query_all(
            """
            SELECT payload_json FROM moderation_logs
            ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?
            """,
            (limit, offset),
        )
        return [ModerationLog.from_json(_text(row, "payload_json")) for row in rows]


class AuditLogRepo(_BaseRepo):
    """Append-only audit trail; the schema rejects updates and deletes."""

    def append(self, record: AuditRecord) -> AuditRecord:
        self._db.execute(
            """
            INSERT INTO audit_records (id, kind, decision, principal_id, correlation_id,
                created_at, payload_json)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.id,
                record.kind.value,
                record.decision,
                record.principal_id,
                record.correlation_id,
                _iso(record.timestamp),
                record.to_json(),
            ),
        )
        return record

    def list_records(
        self,
        *,
        principal_id: str | None = None,
        kind: AuditKind | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[AuditRecord]:
        self._validate_page(limit, offset)
        clauses: list[str] = []
        params: list[RowValue] = []
        if principal_id is not None:
            clauses.append("principal_id = ?")
            params.append(principal_id)
        if kind is not None:
            clauses.append("kind = ?")
            params.append(AuditKind(kind).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._db.query_all(
            f"SELECT payload_json FROM audit_records {where} "
            "ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
            (*params, limit, offset),
        )
        return [AuditRecord.from_json(_text(row, "payload_json")) for row in rows]


class ExecutionResultRepo(_BaseRepo):
    def save(self, result: ExecutionResult) -> ExecutionResult:
        self._db.execute(
            """
            INSERT INTO execution_results (execution_id, success, error_code, execution_time_ms,
                created_at, payload_json)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(execution_id) DO UPDATE SET
                success=excluded.success,
                error_code=excluded.error_code,
                execution_time_ms=excluded.execution_time_ms,
                payload_json=excluded.payload_json
            """,
            (
                result.execution_id,
                int(result.success),
                None if result.error_code is None else result.error_code.value,
                result.execution_time_ms,
                utc_now_iso(),
                result.to_json(),
            ),
        )
        return result

    def get(self, execution_id: str) -> ExecutionResult | None:
        row = self._db.query_one(
            "SELECT payload_json FROM execution_results WHERE execution_id = ?", (execution_id,)
        )
        return None if row is None else ExecutionResult.from_json(_text(row, "payload_json"))


class ResourceOwnerRepo(_BaseRepo):
    """Ownership facts consulted when a role default grants on ``own`` resources."""

    def set_owner(self, resource_type: ResourceType, resource_id: str, owner_id: str) -> None:
        self._db.execute(
            """
            INSERT INTO resource_owners (resource_type, resource_id, owner_id, created_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(resource_type, resource_id) DO UPDATE SET owner_id=excluded.owner_id
            """,
            (ResourceType(resource_type).value, resource_id, owner_id, utc_now_iso()),
        )

    def is_owner(self, principal_id: str, resource_type: ResourceType, resource_id: str) -> bool:
        row = self._db.query_one(
            """
            SELECT owner_id FROM resource_owners WHERE resource_type = ? AND resource_id = ?
            """,
            (ResourceType(resource_type).value, resource_id),
        )
        return row is not None and row["owner_id"] == principal_id


def _text(row: dict[str, RowValue], column: str) -> str:
    value = row.get(column)
    if not isinstance(value, str):
        raise ValueError(f"{column}: expected text column, got {type(value).__name__}")
    return value


def _iso(value: datetime) -> str:
    return value.isoformat(timespec="microseconds").replace("+00:00", "Z")


__all__ = [
    "AuditLogRepo",
    "ExecutionResultRepo",
    "ModerationLogRepo",
    "PermissionRepo",
    "RateLimitCounterRepo",
    "ResourceOwnerRepo",
    "TaskRepo",
    "UsageLogRepo",
]

"""Shared deterministic builders for persistence tests."""

from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta
from typing import Final

from bastion_orchestrator.domain import ids
from bastion_orchestrator.domain.errors import ErrorCode
from bastion_orchestrator.domain.models import (
    AuditKind,
    AuditRecord,
    CategoryScore,
    ContentCategory,
    ExecutionResult,
    ModerationLog,
    Permission,
    PermissionLevel,
    ResourceType,
    ResourceUsage,
    Task,
    TaskPriority,
)

_BASE_TS: Final[datetime] = datetime(2026, 10, 1, 12, 0, 0, tzinfo=UTC)

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def fixed_now(seed: int) -> datetime:
    return _BASE_TS + timedelta(seconds=seed)


def _randbytes(seed: int):
    byte_value = (seed % 251) + 1

    def _provider(size: int) -> bytes:
        return bytes([byte_value]) * size

    return _provider


def make_task(
    seed: int,
    *,
    owner_id: str = "alice",
    parent_task_id: str | None = None,
    dependencies: tuple[str, ...] = (),
) -> Task:
    return Task(
        id=ids.generate_prefixed_id(
            ids.TASK_ID_PREFIX,
            timestamp_ms=1_700_000_000_000 + seed,
            randbytes=_randbytes(seed),
        ),
        title=f"Task {seed}",
        description="Persist and reload a task",
        owner_id=owner_id,
        priority=TaskPriority.HIGH,
        parent_task_id=parent_task_id,
        dependencies=dependencies,
        created_at=fixed_now(seed),
        updated_at=fixed_now(seed),
    )


def make_permission(
    seed: int,
    *,
    principal_id: str = "alice",
    resource_id: str = "code-execution",
    level: PermissionLevel = PermissionLevel.EXECUTE,
) -> Permission:
    return Permission(
        id=ids.generate_prefixed_id(
            ids.PERMISSION_ID_PREFIX,
            timestamp_ms=1_700_000_100_000 + seed,
            randbytes=_randbytes(seed),
        ),
        principal_id=principal_id,
        resource_type=ResourceType.TOOL,
        resource_id=resource_id,
        level=level,
        conditions={"reason": "persistence test"},
        granted_by="root",
        expires_at=fixed_now(seed + 3600),
        created_at=fixed_now(seed),
    )


def make_execution_result(seed: int, *, success: bool = True) -> ExecutionResult:
    return ExecutionResult(
        execution_id=ids.generate_prefixed_id(
            ids.EXECUTION_ID_PREFIX,
            timestamp_ms=1_700_000_200_000 + seed,
            randbytes=_randbytes(seed),
        ),
        success=success,
        output="42\n" if success else "",
        error=None if success else "Traceback: boom",
        error_code=None if success else ErrorCode.EXECUTION_FAILED,
        execution_time_ms=15 + seed,
        resource_usage=ResourceUsage(peak_memory_bytes=8_388_608, cpu_time_seconds=0.02),
    )


def make_audit_record(
    seed: int,
    *,
    kind: AuditKind = AuditKind.AUTHORIZATION,
    principal_id: str | None = "alice",
    decision: str = "allow",
) -> AuditRecord:
    return AuditRecord(
        id=ids.generate_prefixed_id(
            ids.AUDIT_ID_PREFIX,
            timestamp_ms=1_700_000_300_000 + seed,
            randbytes=_randbytes(seed),
        ),
        kind=kind,
        decision=decision,
        principal_id=principal_id,
        reason=None if decision == "allow" else "denied in test",
        correlation_id=f"corr-{seed}",
        details={"action": "code_execution", "seed": seed},
        timestamp=fixed_now(seed),
    )


def make_moderation_log(seed: int, *, content_hash: str) -> ModerationLog:
    return ModerationLog(
        id=ids.generate_prefixed_id(
            ids.SCAN_ID_PREFIX,
            timestamp_ms=1_700_000_400_000 + seed,
            randbytes=_randbytes(seed),
        ),
        is_allowed=False,
        categories=(CategoryScore(ContentCategory.PII, 0.75),),
        content_hash=content_hash,
        reason="Content potentially contains personally_identifiable_information",
        principal_id="alice",
        timestamp=fixed_now(seed),
    )


def collect_text_cells(conn: object) -> str:
    if not hasattr(conn, "execute"):
        raise TypeError("conn must expose execute()")

    cursor = conn.execute(  # type: ignore[call-arg]
        """
        SELECT name
        FROM sqlite_master
        WHERE type = 'table' AND name NOT LIKE 'sqlite_%'
        ORDER BY name
        """
    )
    table_names = [str(row[0]) for row in cursor.fetchall()]

    chunks: list[str] = []
    for table_name in table_names:
        if not _IDENTIFIER_RE.fullmatch(table_name):
            continue
        rows = conn.execute(f"SELECT * FROM {table_name}").fetchall()  # type: ignore[call-arg]
        for row in rows:
            for value in row:
                if isinstance(value, str):
                    chunks.append(value)
    return "\n".join(chunks)


__all__ = [
    "collect_text_cells",
    "fixed_now",
    "make_audit_record",
    "make_execution_result",
    "make_moderation_log",
    "make_permission",
    "make_task",
]

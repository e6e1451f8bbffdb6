"""
bastion-orchestrator — persistence layer

File: src/bastion_orchestrator/persistence/__init__.py
Last updated: 2026-10-19

Purpose
- SQLite state DB access, migrations, and repositories for tasks, grants, counters,
  moderation logs, audit records, execution results, and usage entries.

Functional requirements
- Rate-limit consumption must stay atomic across processes sharing one database file.

Non-functional requirements
- SQLite-first; no ORM.
"""

from bastion_orchestrator.persistence.repositories import (
    AuditLogRepo,
    ExecutionResultRepo,
    ModerationLogRepo,
    PermissionRepo,
    RateLimitCounterRepo,
    ResourceOwnerRepo,
    TaskRepo,
    UsageLogRepo,
)
from bastion_orchestrator.persistence.state_db import (
    StateDB,
    StateDBBusyError,
    StateDBCorruptionError,
    StateDBError,
    StateDBMigrationError,
)

__all__ = [
    "AuditLogRepo",
    "ExecutionResultRepo",
    "ModerationLogRepo",
    "PermissionRepo",
    "RateLimitCounterRepo",
    "ResourceOwnerRepo",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
    "TaskRepo",
    "UsageLogRepo",
]

"""Audit trail for authorization decisions, sandbox outcomes, and content verdicts."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from bastion_orchestrator.domain.ids import generate_audit_id
from bastion_orchestrator.domain.models import AuditKind, AuditRecord, JSONValue, utc_now
from bastion_orchestrator.observability.logging import get_correlation_context

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping
    from datetime import datetime


class AuditSink(Protocol):
    def append(self, record: AuditRecord) -> AuditRecord: ...


class InMemoryAuditLog:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: list[AuditRecord] = []

    def append(self, record: AuditRecord) -> AuditRecord:
        with self._lock:
            self._records.append(record)
        return record

    @property
    def records(self) -> tuple[AuditRecord, ...]:
        with self._lock:
            return tuple(self._records)

    def of_kind(self, kind: AuditKind) -> tuple[AuditRecord, ...]:
        return tuple(record for record in self.records if record.kind == kind)


class AuditRecorder:
    """Builds one immutable :class:`AuditRecord` per decision and appends it to the sink.

    The correlation id defaults to the one bound in the active logging correlation scope.
    Sink failures propagate so callers can fail closed.
    """

    def __init__(
        self,
        sink: AuditSink | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
        logger: Any | None = None,
    ) -> None:
        self._sink: AuditSink = sink if sink is not None else InMemoryAuditLog()
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def sink(self) -> AuditSink:
        return self._sink

    def record(
        self,
        kind: AuditKind,
        decision: str,
        *,
        principal_id: str | None = None,
        reason: str | None = None,
        correlation_id: str | None = None,
        details: Mapping[str, JSONValue] | None = None,
    ) -> AuditRecord:
        if correlation_id is None:
            correlation_id = get_correlation_context().get("correlation_id")
        record = AuditRecord(
            id=generate_audit_id(),
            kind=kind,
            decision=decision,
            principal_id=principal_id,
            reason=reason,
            correlation_id=correlation_id,
            details=dict(details or {}),
            timestamp=self._clock(),
        )
        self._sink.append(record)
        self._logger.info(
            "audit_recorded",
            audit_id=record.id,
            audit_kind=record.kind.value,
            decision=decision,
            principal_id=principal_id,
        )
        return record


__all__ = ["AuditRecorder", "AuditSink", "InMemoryAuditLog"]

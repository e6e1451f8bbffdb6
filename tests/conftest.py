"""Shared fixtures: recording logger, in-memory security stack, and local sandbox."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Any

import pytest

from bastion_orchestrator.domain.models import Principal, SandboxConfig, SubscriptionTier
from bastion_orchestrator.sandbox.sandbox_manager import SandboxExecutionManager
from bastion_orchestrator.security.audit import AuditRecorder, InMemoryAuditLog
from bastion_orchestrator.security.content_filter import ContentFilter
from bastion_orchestrator.security.gate import SecurityGate
from bastion_orchestrator.security.permissions import (
    InMemoryOwnershipLookup,
    InMemoryPermissionStore,
    PermissionChecker,
)
from bastion_orchestrator.security.rate_limiter import InMemoryCounterStore, RateLimiter


class RecordingLogger:
    """Stand-in for a structlog logger that keeps every event."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict[str, Any]]] = []

    def _log(self, level: str, event: str, /, **fields: Any) -> None:
        self.events.append((level, event, fields))

    def debug(self, event: str, **fields: Any) -> None:
        self._log("debug", event, **fields)

    def info(self, event: str, **fields: Any) -> None:
        self._log("info", event, **fields)

    def warning(self, event: str, **fields: Any) -> None:
        self._log("warning", event, **fields)

    def error(self, event: str, **fields: Any) -> None:
        self._log("error", event, **fields)

    def names(self) -> list[str]:
        return [event for _, event, _ in self.events]


class SecurityStack:
    def __init__(self) -> None:
        self.logger = RecordingLogger()
        self.audit_log = InMemoryAuditLog()
        self.audit = AuditRecorder(self.audit_log, logger=self.logger)
        self.permission_store = InMemoryPermissionStore()
        self.ownership = InMemoryOwnershipLookup()
        self.permissions = PermissionChecker(
            self.permission_store, ownership=self.ownership, logger=self.logger
        )
        self.counters = InMemoryCounterStore()
        self.rate_limiter = RateLimiter(self.counters, logger=self.logger)
        self.content_filter = ContentFilter(audit=self.audit, logger=self.logger)
        self.gate = SecurityGate(
            self.permissions,
            self.rate_limiter,
            self.audit,
            content_filter=self.content_filter,
            logger=self.logger,
        )


@pytest.fixture
def recording_logger() -> RecordingLogger:
    return RecordingLogger()


@pytest.fixture
def security() -> SecurityStack:
    return SecurityStack()


@pytest.fixture
def user() -> Principal:
    return Principal(id="user-1", tier=SubscriptionTier.FREE, roles=("user",))


@pytest.fixture
def sandbox_config() -> SandboxConfig:
    return SandboxConfig(timeout_ms=10_000, memory_limit_mb=512)


@pytest.fixture
def local_sandbox(
    tmp_path: Path, sandbox_config: SandboxConfig, recording_logger: RecordingLogger
) -> SandboxExecutionManager:
    return SandboxExecutionManager(
        tmp_path / "sandbox",
        backend="none",
        default_config=sandbox_config,
        logger=recording_logger,
    )


@pytest.fixture
def needs_python3() -> None:
    if shutil.which("python3") is None:
        pytest.skip("python3 not on PATH")


@pytest.fixture
def needs_bash() -> None:
    if shutil.which("bash") is None:
        pytest.skip("bash not on PATH")

"""
bastion-orchestrator — integration tests for the gated execution path

File: tests/integration/test_gate_sandbox_flow.py
Last updated: 2026-10-19

Purpose
- Run the code execution tool against a fully wired application context: SQLite-backed
  permissions, counters, audit trail, and execution results, plus the local sandbox.

What this test file should cover
- A permitted run produces exactly one allow decision, one sandbox record, one usage
  entry, and a persisted execution result; the scratch directory is removed.
- Denials and content blocks never reach the sandbox.
- Timeouts come back as results and are audited as failures.
- Quota exhaustion survives a fresh context over the same state DB.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from bastion_orchestrator.config import load_config
from bastion_orchestrator.context import AppContext
from bastion_orchestrator.domain.models import AuditKind, LimitType, Principal
from bastion_orchestrator.persistence.repositories import (
    AuditLogRepo,
    ExecutionResultRepo,
    UsageLogRepo,
)

if TYPE_CHECKING:
    from pathlib import Path

    from conftest import RecordingLogger

_CONFIG = """
[sandbox]
backend = "none"
memory_limit_mb = 512
timeout_ms = 10000

[rate_limits.limits.tool_usage]
limit = 2
window_seconds = 3600
""".strip()


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    path = tmp_path / "bastion.toml"
    path.write_text(_CONFIG, encoding="utf-8")
    return path


@pytest.fixture
def ctx(config_path: Path, recording_logger: RecordingLogger) -> AppContext:
    return AppContext.from_config(load_config(config_path, environ={}), logger=recording_logger)


def _audit(ctx: AppContext, principal_id: str, kind: AuditKind) -> list[str]:
    records = AuditLogRepo(ctx.db).list_records(principal_id=principal_id, kind=kind)
    return [record.decision for record in records]


@pytest.mark.usefixtures("needs_python3")
async def test_permitted_run_is_persisted_and_audited(ctx: AppContext) -> None:
    alice = Principal(id="alice", roles=("user",))
    tool = ctx.code_execution_tool(alice)

    result = await tool.execute({"language": "python", "code": "print(sum(range(10)))"})

    assert not result.is_error
    assert result.content == "45\n"
    execution_id = result.metadata["execution_id"]
    assert isinstance(execution_id, str)
    stored = ExecutionResultRepo(ctx.db).get(execution_id)
    assert stored is not None
    assert stored.success
    assert stored.output == "45\n"

    assert _audit(ctx, "alice", AuditKind.AUTHORIZATION) == ["allow"]
    assert _audit(ctx, "alice", AuditKind.SANDBOX_EXECUTION) == ["success"]
    usage = UsageLogRepo(ctx.db).list_for_principal("alice")
    assert [entry.limit_type for entry in usage] == [LimitType.TOOL_USAGE]
    assert list(ctx.sandbox.root_dir.iterdir()) == []


async def test_guest_denial_never_reaches_the_sandbox(ctx: AppContext) -> None:
    guest = Principal(id="guest-7", roles=("guest",))

    result = await ctx.code_execution_tool(guest).execute(
        {"language": "bash", "code": "echo should-not-run"}
    )

    assert result.is_error
    assert result.metadata["error_code"] == "permission_denied"
    assert _audit(ctx, "guest-7", AuditKind.AUTHORIZATION) == ["deny"]
    assert _audit(ctx, "guest-7", AuditKind.SANDBOX_EXECUTION) == []


async def test_malicious_code_is_blocked_before_authorization(ctx: AppContext) -> None:
    mallory = Principal(id="mallory", roles=("user",))

    result = await ctx.code_execution_tool(mallory).execute(
        {"language": "javascript", "code": "require('child_process')"}
    )

    assert result.is_error
    assert result.metadata["error_code"] == "content_blocked"
    assert _audit(ctx, "mallory", AuditKind.CONTENT_VERDICT) == ["deny"]
    assert _audit(ctx, "mallory", AuditKind.AUTHORIZATION) == []
    assert _audit(ctx, "mallory", AuditKind.SANDBOX_EXECUTION) == []
    assert ctx.rate_limiter.get_usage_metrics(mallory, LimitType.TOOL_USAGE).current == 0


@pytest.mark.usefixtures("needs_python3")
async def test_timeout_is_a_failed_result(ctx: AppContext) -> None:
    alice = Principal(id="alice", roles=("user",))

    result = await ctx.code_execution_tool(alice).execute(
        {"language": "python", "code": "import time\ntime.sleep(10)", "timeout_ms": 300}
    )

    assert result.is_error
    assert result.metadata["error_code"] == "execution_timeout"
    assert result.content == "Execution timed out after 300ms"
    assert _audit(ctx, "alice", AuditKind.SANDBOX_EXECUTION) == ["failure"]


@pytest.mark.usefixtures("needs_bash")
async def test_quota_is_shared_across_contexts(
    config_path: Path, ctx: AppContext, recording_logger: RecordingLogger
) -> None:
    bob = Principal(id="bob", roles=("user",))
    first = await ctx.code_execution_tool(bob).execute({"language": "bash", "code": "echo 1"})
    second = await ctx.code_execution_tool(bob).execute({"language": "bash", "code": "echo 2"})

    fresh = AppContext.from_config(load_config(config_path, environ={}), logger=recording_logger)
    third = await fresh.code_execution_tool(bob).execute({"language": "bash", "code": "echo 3"})

    assert [first.content, second.content] == ["1\n", "2\n"]
    assert third.is_error
    assert third.metadata["error_code"] == "rate_limit_exceeded"
    assert _audit(fresh, "bob", AuditKind.AUTHORIZATION) == ["deny", "allow", "allow"]

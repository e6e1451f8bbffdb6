"""
bastion-orchestrator — unit tests for the code execution tool

File: tests/unit/tools/test_code_execution_tool.py
Last updated: 2026-10-19

Purpose
- Pin the order of checks in front of the sandbox: malicious-pattern scan, then the
  security gate, then execution.

What this test file should cover
- Blocked code and gate denials never reach the sandbox and never consume quota twice.
- Quota exhaustion is detected before a sandbox is created.
- Parameter validation and unsupported languages come back as error results.
- Sandbox results map onto tool results with execution metadata.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import pytest

from bastion_orchestrator.domain.errors import ErrorCode
from bastion_orchestrator.domain.models import (
    ExecutionResult,
    LimitType,
    Principal,
    ResourceUsage,
    SandboxConfig,
    SandboxLanguage,
    SubscriptionTier,
)
from bastion_orchestrator.security.content_filter import REASON_MALICIOUS_CODE
from bastion_orchestrator.tools.code_execution import CODE_EXECUTION_TOOL_ID, CodeExecutionTool

if TYPE_CHECKING:
    from conftest import SecurityStack

_OK = ExecutionResult(
    execution_id="exec-ok",
    success=True,
    output="42\n",
    execution_time_ms=12,
    resource_usage=ResourceUsage(peak_memory_bytes=2048),
)


@dataclass
class _Call:
    code: str
    language: SandboxLanguage
    input_data: str | None
    config: SandboxConfig | None
    principal_id: str | None


@dataclass
class _FakeSandbox:
    result: ExecutionResult = _OK
    default_config: SandboxConfig = field(default_factory=SandboxConfig)
    calls: list[_Call] = field(default_factory=list)

    async def execute(
        self,
        code: str,
        language: SandboxLanguage,
        input_data: str | None = None,
        config: SandboxConfig | None = None,
        *,
        principal_id: str | None = None,
    ) -> ExecutionResult:
        self.calls.append(_Call(code, language, input_data, config, principal_id))
        return self.result


def _tool(
    security: SecurityStack, principal: Principal, sandbox: _FakeSandbox
) -> CodeExecutionTool:
    return CodeExecutionTool(
        principal,
        security.gate,
        sandbox,  # type: ignore[arg-type]
        security.content_filter,
        logger=security.logger,
    )


def _tool_usage(security: SecurityStack, principal: Principal) -> int:
    return security.rate_limiter.get_usage_metrics(principal, LimitType.TOOL_USAGE).current


async def test_successful_run_returns_output_and_metadata(
    security: SecurityStack, user: Principal
) -> None:
    sandbox = _FakeSandbox()
    tool = _tool(security, user, sandbox)

    result = await tool.execute({"language": "python", "code": "print(6 * 7)", "input": "x"})

    assert not result.is_error
    assert result.content == "42\n"
    assert result.metadata == {
        "execution_id": "exec-ok",
        "language": "python",
        "execution_time_ms": 12,
        "error_code": None,
        "peak_memory_bytes": 2048,
    }
    (call,) = sandbox.calls
    assert call.language is SandboxLanguage.PYTHON
    assert call.input_data == "x"
    assert call.config is None
    assert call.principal_id == user.id
    assert _tool_usage(security, user) == 1


async def test_malicious_code_is_blocked_before_the_gate(
    security: SecurityStack, user: Principal
) -> None:
    sandbox = _FakeSandbox()
    tool = _tool(security, user, sandbox)

    result = await tool.execute(
        {"language": "python", "code": "import os\nos.system('rm -rf /')"}
    )

    assert result.is_error
    assert result.content == REASON_MALICIOUS_CODE
    assert result.metadata["error_code"] == ErrorCode.CONTENT_BLOCKED.value
    assert sandbox.calls == []
    assert _tool_usage(security, user) == 0
    assert "code_execution_blocked" in security.logger.names()


async def test_permission_denial_never_reaches_the_sandbox(security: SecurityStack) -> None:
    guest = Principal(id="guest-1", roles=("guest",))
    sandbox = _FakeSandbox()
    tool = _tool(security, guest, sandbox)

    result = await tool.execute({"language": "bash", "code": "echo hi"})

    assert result.is_error
    assert result.metadata["error_code"] == ErrorCode.PERMISSION_DENIED.value
    assert result.metadata["correlation_id"]
    assert sandbox.calls == []


async def test_quota_exhaustion_stops_before_sandbox_creation(
    security: SecurityStack, user: Principal
) -> None:
    security.rate_limiter.set_custom_limit(user.id, LimitType.TOOL_USAGE, 1, 3600)
    sandbox = _FakeSandbox()
    tool = _tool(security, user, sandbox)

    first = await tool.execute({"language": "python", "code": "print(1)"})
    second = await tool.execute({"language": "python", "code": "print(2)"})

    assert not first.is_error
    assert second.is_error
    assert second.metadata["error_code"] == ErrorCode.RATE_LIMIT_EXCEEDED.value
    assert [call.code for call in sandbox.calls] == ["print(1)"]


async def test_premium_tier_scales_the_quota(security: SecurityStack) -> None:
    premium = Principal(id="vip", tier=SubscriptionTier.PREMIUM, roles=("user",))
    security.rate_limiter.set_custom_limit(premium.id, LimitType.TOOL_USAGE, 1, 3600)
    sandbox = _FakeSandbox()
    tool = _tool(security, premium, sandbox)

    results = [await tool.execute({"language": "bash", "code": "true"}) for _ in range(6)]

    assert [result.is_error for result in results] == [False] * 5 + [True]


@pytest.mark.parametrize(
    ("params", "message"),
    [
        ({"language": "python"}, "Error: 'code' must be a non-empty string"),
        ({"language": "python", "code": ""}, "Error: 'code' must be a non-empty string"),
        ({"language": "python", "code": "1", "input": 5}, "Error: 'input' must be a string"),
        (
            {"language": "python", "code": "1", "timeout_ms": True},
            "Error: 'timeout_ms' must be a positive integer",
        ),
        (
            {"language": "python", "code": "1", "timeout_ms": 0},
            "Error: 'timeout_ms' must be a positive integer",
        ),
    ],
)
async def test_invalid_params_are_error_results(
    security: SecurityStack, user: Principal, params: dict[str, object], message: str
) -> None:
    sandbox = _FakeSandbox()
    result = await _tool(security, user, sandbox).execute(params)  # type: ignore[arg-type]

    assert result.is_error
    assert result.content == message
    assert sandbox.calls == []
    assert _tool_usage(security, user) == 0


async def test_unsupported_language_is_an_error_result(
    security: SecurityStack, user: Principal
) -> None:
    sandbox = _FakeSandbox()

    result = await _tool(security, user, sandbox).execute({"language": "ruby", "code": "puts 1"})

    assert result.is_error
    assert result.metadata == {"error_code": ErrorCode.UNSUPPORTED_LANGUAGE.value}
    assert sandbox.calls == []


async def test_timeout_override_and_failed_execution(
    security: SecurityStack, user: Principal
) -> None:
    failed = ExecutionResult(
        execution_id="exec-bad",
        success=False,
        output="",
        error="Execution timed out after 500ms",
        error_code=ErrorCode.EXECUTION_TIMEOUT,
        execution_time_ms=510,
    )
    sandbox = _FakeSandbox(result=failed)

    result = await _tool(security, user, sandbox).execute(
        {"language": "javascript", "code": "while (true) {}", "timeout_ms": 500}
    )

    assert result.is_error
    assert result.content == "Execution timed out after 500ms"
    assert result.metadata["error_code"] == "execution_timeout"
    assert "peak_memory_bytes" not in result.metadata
    (call,) = sandbox.calls
    assert call.config is not None
    assert call.config.timeout_ms == 500
    assert call.config.memory_limit_mb == sandbox.default_config.memory_limit_mb


def test_tool_identity_and_schema(security: SecurityStack, user: Principal) -> None:
    tool = _tool(security, user, _FakeSandbox())

    assert tool.id == CODE_EXECUTION_TOOL_ID == "code-execution"
    assert tool.principal is user
    assert tool.input_schema["required"] == ["language", "code"]

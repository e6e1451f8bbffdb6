"""
bastion-orchestrator — code execution tool

File: src/bastion_orchestrator/tools/code_execution.py
Last updated: 2026-10-19

Purpose
- Let agents run code in a sandbox on behalf of one principal.

Functional requirements
- Order is fixed: malicious-pattern scan, then the security gate for ``code_execution``,
  then the sandbox. A blocked scan or a gate denial never reaches the sandbox.
- Unsupported languages and sandbox failures come back as error results, not exceptions.

Non-functional requirements
- The tool holds no per-call state and may serve concurrent calls.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Final

import structlog

from bastion_orchestrator.domain.errors import ErrorCode, UnsupportedLanguageError
from bastion_orchestrator.domain.models import (
    ResourceRef,
    ResourceType,
    SandboxLanguage,
    ToolType,
)
from bastion_orchestrator.observability.logging import correlation_scope
from bastion_orchestrator.security.actions import GateAction
from bastion_orchestrator.tools.base import ToolCapability, ToolResult

if TYPE_CHECKING:
    from collections.abc import Mapping

    from bastion_orchestrator.domain.models import JSONValue, Principal
    from bastion_orchestrator.sandbox.sandbox_manager import SandboxExecutionManager
    from bastion_orchestrator.security.content_filter import ContentFilter
    from bastion_orchestrator.security.gate import SecurityGate

CODE_EXECUTION_TOOL_ID: Final[str] = "code-execution"

_INPUT_SCHEMA: Final[dict[str, JSONValue]] = {
    "type": "object",
    "properties": {
        "language": {"type": "string", "enum": [item.value for item in SandboxLanguage]},
        "code": {"type": "string"},
        "input": {"type": "string"},
        "timeout_ms": {"type": "integer", "minimum": 1},
    },
    "required": ["language", "code"],
}


class CodeExecutionTool:
    id = CODE_EXECUTION_TOOL_ID
    name = "Code Execution Tool"
    description = "Execute code in various programming languages in a secure environment"
    type = ToolType.CODE_EXECUTION
    capabilities = (ToolCapability.CODE_EXECUTION, ToolCapability.CODE_ANALYSIS)
    input_schema: Mapping[str, JSONValue] = _INPUT_SCHEMA

    def __init__(
        self,
        principal: Principal,
        gate: SecurityGate,
        sandbox: SandboxExecutionManager,
        content_filter: ContentFilter,
        *,
        logger: Any | None = None,
    ) -> None:
        self._principal = principal
        self._gate = gate
        self._sandbox = sandbox
        self._content_filter = content_filter
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def principal(self) -> Principal:
        return self._principal

    async def is_available(self) -> bool:
        return True

    async def execute(self, params: Mapping[str, JSONValue]) -> ToolResult:
        code = params.get("code")
        if not isinstance(code, str) or not code:
            return ToolResult.error("Error: 'code' must be a non-empty string")
        try:
            language = SandboxLanguage.parse(params.get("language"))
        except UnsupportedLanguageError as exc:
            return ToolResult.error(str(exc), error_code=exc.code.value)
        input_data = params.get("input")
        if input_data is not None and not isinstance(input_data, str):
            return ToolResult.error("Error: 'input' must be a string")

        config = None
        timeout_ms = params.get("timeout_ms")
        if timeout_ms is not None:
            if isinstance(timeout_ms, bool) or not isinstance(timeout_ms, int) or timeout_ms <= 0:
                return ToolResult.error("Error: 'timeout_ms' must be a positive integer")
            config = self._sandbox.default_config.with_overrides(timeout_ms=timeout_ms)

        with correlation_scope(principal_id=self._principal.id):
            scan = self._content_filter.scan_code_for_malicious_patterns(
                code, language.value, self._principal.id
            )
            if not scan.is_allowed:
                self._logger.warning(
                    "code_execution_blocked",
                    principal_id=self._principal.id,
                    language=language.value,
                    reason=scan.reason,
                )
                return ToolResult.error(
                    scan.reason or "Code contains potentially malicious patterns",
                    error_code=ErrorCode.CONTENT_BLOCKED.value,
                )

            decision = await self._gate.evaluate(
                self._principal,
                GateAction.CODE_EXECUTION,
                ResourceRef(ResourceType.TOOL, self.id),
            )
            if not decision.allowed:
                return ToolResult.error(
                    decision.message,
                    error_code=None if decision.reason_code is None else decision.reason_code.value,
                    correlation_id=decision.correlation_id,
                )

            result = await self._sandbox.execute(
                code,
                language,
                input_data,
                config,
                principal_id=self._principal.id,
            )

        metadata: dict[str, JSONValue] = {
            "execution_id": result.execution_id,
            "language": language.value,
            "execution_time_ms": result.execution_time_ms,
            "error_code": None if result.error_code is None else result.error_code.value,
        }
        if result.resource_usage is not None:
            metadata["peak_memory_bytes"] = result.resource_usage.peak_memory_bytes
        if result.success:
            return ToolResult(content=result.output, metadata=metadata)
        return ToolResult(
            content=result.error or "Execution failed", is_error=True, metadata=metadata
        )


__all__ = ["CODE_EXECUTION_TOOL_ID", "CodeExecutionTool"]

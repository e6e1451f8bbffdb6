"""
bastion-orchestrator — sandbox execution manager

File: src/bastion_orchestrator/sandbox/sandbox_manager.py
Last updated: 2026-10-19

Purpose
- Run already-authorized untrusted code inside a fresh, resource-capped, auto-destroyed
  isolation unit with an enforced wall-clock timeout.

Functional requirements
- Unsupported languages raise before any scratch directory or unit exists.
- One unique execution id, scratch directory, and unit per call; nothing is reused.
- The unit races the ``timeout_ms`` deadline under a supervised task; the loser is always
  joined, and a timed-out unit is force-killed.
- Teardown of the unit and deletion of the scratch directory run on every path.
- Infrastructure failures never raise; they become a generic failure result carrying
  the execution id, with details logged.
- Cancellation of the calling task still tears the unit down and records a cancelled
  outcome before the cancellation propagates.

Non-functional requirements
- Executions share no mutable state and may run concurrently.
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final, Protocol

import structlog

from bastion_orchestrator.constants import DEFAULT_SANDBOX_IMAGE
from bastion_orchestrator.domain.errors import (
    ErrorCode,
    ExecutionTimeoutError,
    SandboxPolicyError,
)
from bastion_orchestrator.domain.ids import generate_execution_id
from bastion_orchestrator.domain.models import (
    AuditKind,
    ExecutionResult,
    SandboxConfig,
    SandboxLanguage,
)
from bastion_orchestrator.observability.logging import correlation_scope
from bastion_orchestrator.sandbox.backends import (
    ExecutionUnit,
    IsolationBackend,
    SandboxBackend,
    UnitOutcome,
    UnitSpec,
    create_backend,
)
from bastion_orchestrator.sandbox.policy import is_command_allowed, is_file_path_allowed
from bastion_orchestrator.utils.concurrency import run_with_timeout
from bastion_orchestrator.utils.fs import atomic_write, create_private_directory, safe_delete

if TYPE_CHECKING:
    from collections.abc import Mapping

    from bastion_orchestrator.domain.models import JSONValue
    from bastion_orchestrator.security.audit import AuditRecorder
    from bastion_orchestrator.tools.base import Tool, ToolResult

INPUT_FILENAME: Final[str] = "input.txt"
# Keep results inside ExecutionResult field limits.
_MAX_OUTPUT_CHARS: Final[int] = 512 * 1024
_MAX_ERROR_CHARS: Final[int] = 60 * 1024


class ExecutionResultSink(Protocol):
    def save(self, result: ExecutionResult) -> ExecutionResult: ...


class SandboxExecutionManager:
    def __init__(
        self,
        root_dir: str | Path,
        *,
        backend: IsolationBackend | SandboxBackend | str = SandboxBackend.DOCKER,
        default_config: SandboxConfig | None = None,
        image: str = DEFAULT_SANDBOX_IMAGE,
        results: ExecutionResultSink | None = None,
        audit: AuditRecorder | None = None,
        logger: Any | None = None,
    ) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._root = Path(root_dir)
        self._backend = (
            create_backend(backend, logger=self._logger)
            if isinstance(backend, str)
            else backend
        )
        self._default_config = default_config if default_config is not None else SandboxConfig()
        self._image = image
        self._results = results
        self._audit = audit

    @classmethod
    def from_config(
        cls,
        sandbox: Mapping[str, Any],
        *,
        results: ExecutionResultSink | None = None,
        audit: AuditRecorder | None = None,
        logger: Any | None = None,
    ) -> SandboxExecutionManager:
        """Build from the validated ``sandbox`` config section."""

        default = SandboxConfig(
            memory_limit_mb=sandbox["memory_limit_mb"],
            cpu_limit_fraction=sandbox["cpu_limit_fraction"],
            timeout_ms=sandbox["timeout_ms"],
            network_access=sandbox["network_access"],
            allowed_commands=tuple(sandbox["allowed_commands"]),
            allowed_file_paths=tuple(sandbox["allowed_file_paths"]),
            allowed_tool_ids=tuple(sandbox["allowed_tool_ids"]),
            pids_limit=sandbox["pids_limit"],
        )
        return cls(
            sandbox["root_dir"],
            backend=sandbox["backend"],
            default_config=default,
            image=sandbox["image"],
            results=results,
            audit=audit,
            logger=logger,
        )

    @property
    def root_dir(self) -> Path:
        return self._root

    @property
    def default_config(self) -> SandboxConfig:
        return self._default_config

    @property
    def backend_name(self) -> str:
        return self._backend.name

    async def execute(
        self,
        code: str,
        language: SandboxLanguage | str,
        input_data: str | None = None,
        config: SandboxConfig | None = None,
        *,
        principal_id: str | None = None,
    ) -> ExecutionResult:
        parsed_language = SandboxLanguage.parse(language)
        effective = config if config is not None else self._default_config
        execution_id = generate_execution_id()
        started = time.perf_counter()

        with correlation_scope(execution_id=execution_id):
            try:
                result = await self._execute(
                    execution_id, code, parsed_language, input_data, effective
                )
            except asyncio.CancelledError:
                # The unit is already torn down; record the outcome before propagating.
                self._finalize(
                    ExecutionResult(
                        execution_id=execution_id,
                        success=False,
                        output="",
                        error="Execution cancelled",
                        error_code=ErrorCode.TASK_CANCELLED,
                        execution_time_ms=_elapsed_ms(started),
                    ),
                    principal_id,
                )
                raise
            self._finalize(result, principal_id)
        return result

    async def execute_tool(
        self,
        tool: Tool,
        params: Mapping[str, JSONValue],
        config: SandboxConfig | None = None,
    ) -> ToolResult:
        effective = config if config is not None else self._default_config
        if effective.allowed_tool_ids and tool.id not in effective.allowed_tool_ids:
            raise SandboxPolicyError(f"Tool {tool.id} is not allowed in this sandbox")
        try:
            return await run_with_timeout(tool.execute(params), effective.timeout_seconds)
        except TimeoutError as exc:
            self._logger.warning(
                "sandbox_tool_timeout", tool_id=tool.id, timeout_ms=effective.timeout_ms
            )
            raise ExecutionTimeoutError(effective.timeout_ms) from exc

    def is_command_allowed(self, command: str, config: SandboxConfig | None = None) -> bool:
        return is_command_allowed(config or self._default_config, command)

    def is_file_path_allowed(self, path: str, config: SandboxConfig | None = None) -> bool:
        return is_file_path_allowed(config or self._default_config, path)

    async def _execute(
        self,
        execution_id: str,
        code: str,
        language: SandboxLanguage,
        input_data: str | None,
        config: SandboxConfig,
    ) -> ExecutionResult:
        scratch: Path | None = None
        unit: ExecutionUnit | None = None
        started = time.perf_counter()
        try:
            scratch = create_private_directory(self._root, execution_id)
            atomic_write(scratch / language.code_filename, code)
            if input_data is not None:
                atomic_write(scratch / INPUT_FILENAME, input_data)

            spec = UnitSpec(
                execution_id=execution_id,
                scratch_dir=scratch,
                language=language,
                config=config,
                image=self._image,
            )
            unit = await self._backend.start(spec)
            try:
                outcome = await run_with_timeout(unit.wait(), config.timeout_seconds)
            except TimeoutError:
                try:
                    await unit.kill()
                except Exception as exc:  # noqa: BLE001 - teardown retries the kill
                    self._logger.error(
                        "sandbox_kill_failed", execution_id=execution_id, error=str(exc)
                    )
                self._logger.warning(
                    "sandbox_timeout", execution_id=execution_id, timeout_ms=config.timeout_ms
                )
                return ExecutionResult(
                    execution_id=execution_id,
                    success=False,
                    output="",
                    error=f"Execution timed out after {config.timeout_ms}ms",
                    error_code=ErrorCode.EXECUTION_TIMEOUT,
                    execution_time_ms=_elapsed_ms(started),
                    resource_usage=unit.resource_usage(),
                )
            return _result_from_outcome(execution_id, outcome, unit, started)
        except Exception as exc:  # noqa: BLE001 - infrastructure failures become results
            self._logger.error(
                "sandbox_infrastructure_error",
                execution_id=execution_id,
                backend=self._backend.name,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return ExecutionResult(
                execution_id=execution_id,
                success=False,
                output="",
                error=f"Execution failed (execution id {execution_id})",
                error_code=ErrorCode.SANDBOX_INFRASTRUCTURE_ERROR,
                execution_time_ms=_elapsed_ms(started),
            )
        finally:
            await self._cleanup(execution_id, unit, scratch)

    async def _cleanup(
        self, execution_id: str, unit: ExecutionUnit | None, scratch: Path | None
    ) -> None:
        if unit is not None:
            try:
                await unit.teardown()
            except Exception as exc:  # noqa: BLE001 - scratch removal must still run
                self._logger.error(
                    "sandbox_teardown_failed", execution_id=execution_id, error=str(exc)
                )
        if scratch is not None:
            try:
                safe_delete(scratch, self._root)
            except OSError as exc:
                self._logger.error(
                    "sandbox_scratch_cleanup_failed", execution_id=execution_id, error=str(exc)
                )

    def _finalize(self, result: ExecutionResult, principal_id: str | None) -> None:
        self._logger.info(
            "sandbox_execution_finished",
            execution_id=result.execution_id,
            success=result.success,
            error_code=None if result.error_code is None else result.error_code.value,
            execution_time_ms=result.execution_time_ms,
            backend=self._backend.name,
        )
        try:
            self._record(result, principal_id)
        except Exception as exc:  # noqa: BLE001 - the result is returned regardless
            self._logger.error(
                "sandbox_result_record_failed",
                execution_id=result.execution_id,
                error=str(exc),
            )

    def _record(self, result: ExecutionResult, principal_id: str | None) -> None:
        if self._results is not None:
            self._results.save(result)
        if self._audit is not None:
            self._audit.record(
                AuditKind.SANDBOX_EXECUTION,
                "success" if result.success else "failure",
                principal_id=principal_id,
                reason=result.error,
                details={
                    "execution_id": result.execution_id,
                    "error_code": None if result.error_code is None else result.error_code.value,
                    "execution_time_ms": result.execution_time_ms,
                    "backend": self._backend.name,
                },
            )


def _result_from_outcome(
    execution_id: str, outcome: UnitOutcome, unit: ExecutionUnit, started: float
) -> ExecutionResult:
    success = outcome.exit_code == 0
    error: str | None = None
    if not success:
        error = outcome.stderr.strip() or f"Process exited with code {outcome.exit_code}"
    return ExecutionResult(
        execution_id=execution_id,
        success=success,
        output=outcome.stdout[:_MAX_OUTPUT_CHARS],
        error=None if error is None else error[:_MAX_ERROR_CHARS],
        error_code=None if success else ErrorCode.EXECUTION_FAILED,
        execution_time_ms=_elapsed_ms(started),
        resource_usage=unit.resource_usage(),
    )


def _elapsed_ms(started: float) -> int:
    return max(0, int((time.perf_counter() - started) * 1000))


__all__ = ["INPUT_FILENAME", "ExecutionResultSink", "SandboxExecutionManager"]

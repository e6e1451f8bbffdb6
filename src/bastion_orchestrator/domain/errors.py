"""
bastion-orchestrator — error taxonomy

File: src/bastion_orchestrator/domain/errors.py
Last updated: 2026-10-19

Purpose
- One stable error code per failure class, shared by exceptions, execution results,
  gate decisions, and subtask outcomes.

Functional requirements
- Every code is a stable lowercase string safe to persist and compare across releases.
- Exceptions carry their code so boundary layers can convert them into results without
  string matching.

Non-functional requirements
- Messages for denial and timeout are human-readable and deterministic.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    UNSUPPORTED_LANGUAGE = "unsupported_language"
    PERMISSION_DENIED = "permission_denied"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    CONTENT_BLOCKED = "content_blocked"
    SANDBOX_INFRASTRUCTURE_ERROR = "sandbox_infrastructure_error"
    SANDBOX_POLICY_VIOLATION = "sandbox_policy_violation"
    EXECUTION_TIMEOUT = "execution_timeout"
    EXECUTION_FAILED = "execution_failed"
    PLAN_PARSE_ERROR = "plan_parse_error"
    WORKER_NOT_FOUND = "worker_not_found"
    WORKER_FAILED = "worker_failed"
    DEPENDENCY_FAILED = "dependency_failed"
    INVALID_TASK_TRANSITION = "invalid_task_transition"
    TASK_CANCELLED = "task_cancelled"
    PROVIDER_ERROR = "provider_error"
    INTERNAL_ERROR = "internal_error"


class BastionError(RuntimeError):
    """Base error for all domain failures raised by the orchestrator core."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, *, correlation_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.correlation_id = correlation_id


class UnsupportedLanguageError(BastionError, ValueError):
    code = ErrorCode.UNSUPPORTED_LANGUAGE

    def __init__(self, language: object) -> None:
        super().__init__(f"Unsupported language: {language}")
        self.language = language


class PermissionDeniedError(BastionError):
    code = ErrorCode.PERMISSION_DENIED


class RateLimitExceededError(BastionError):
    code = ErrorCode.RATE_LIMIT_EXCEEDED


class ContentBlockedError(BastionError):
    code = ErrorCode.CONTENT_BLOCKED


class SandboxInfrastructureError(BastionError):
    """Raised when an isolation unit cannot be provisioned or cleaned up."""

    code = ErrorCode.SANDBOX_INFRASTRUCTURE_ERROR


class SandboxPolicyError(BastionError):
    """Raised when a tool or command falls outside the configured allow-lists."""

    code = ErrorCode.SANDBOX_POLICY_VIOLATION


class ExecutionTimeoutError(BastionError):
    code = ErrorCode.EXECUTION_TIMEOUT

    def __init__(self, timeout_ms: int, *, correlation_id: str | None = None) -> None:
        super().__init__(
            f"Execution timed out after {timeout_ms}ms", correlation_id=correlation_id
        )
        self.timeout_ms = timeout_ms


class PlanParseError(BastionError):
    """Raised when a decomposition response cannot be turned into a valid subtask DAG."""

    code = ErrorCode.PLAN_PARSE_ERROR


class WorkerNotFoundError(BastionError):
    code = ErrorCode.WORKER_NOT_FOUND

    def __init__(self, role: str) -> None:
        super().__init__(f'Worker agent with role "{role}" not found')
        self.role = role


class DependencyFailedError(BastionError):
    code = ErrorCode.DEPENDENCY_FAILED

    def __init__(self, subtask_id: str, failed_dependencies: tuple[str, ...]) -> None:
        joined = ", ".join(failed_dependencies)
        super().__init__(f"Skipped because dependencies did not succeed: {joined}")
        self.subtask_id = subtask_id
        self.failed_dependencies = failed_dependencies


class InvalidTaskTransitionError(BastionError, ValueError):
    code = ErrorCode.INVALID_TASK_TRANSITION


class ProviderError(BastionError):
    """Raised when the reasoning model is unavailable, misconfigured, or fails a call."""

    code = ErrorCode.PROVIDER_ERROR


__all__ = [
    "BastionError",
    "ContentBlockedError",
    "DependencyFailedError",
    "ErrorCode",
    "ExecutionTimeoutError",
    "InvalidTaskTransitionError",
    "PermissionDeniedError",
    "PlanParseError",
    "ProviderError",
    "RateLimitExceededError",
    "SandboxInfrastructureError",
    "SandboxPolicyError",
    "UnsupportedLanguageError",
    "WorkerNotFoundError",
]

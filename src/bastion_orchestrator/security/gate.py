"""
bastion-orchestrator — security gate

File: src/bastion_orchestrator/security/gate.py
Last updated: 2026-10-19

Purpose
- Compose permission, rate-limit, and content checks into one authorize-then-consume
  decision per requested action.

Functional requirements
- Permission is checked first; an insufficient permission denies without touching quota.
- One unit of the mapped limit type is consumed atomically; exhaustion denies.
- Every decision emits exactly one authorization audit record.
- Any internal error fails closed and is logged with its correlation id.

Non-functional requirements
- Decisions carry stable reason codes and human-readable messages.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from bastion_orchestrator.domain.errors import (
    ErrorCode,
    PermissionDeniedError,
    RateLimitExceededError,
)
from bastion_orchestrator.domain.ids import generate_correlation_id
from bastion_orchestrator.domain.models import (
    WILDCARD_RESOURCE_ID,
    AuditKind,
    JSONValue,
    Principal,
    ResourceRef,
)
from bastion_orchestrator.observability.logging import get_correlation_context
from bastion_orchestrator.security.actions import GateAction, requirement_for

if TYPE_CHECKING:
    from bastion_orchestrator.security.audit import AuditRecorder
    from bastion_orchestrator.security.content_filter import ContentFilter
    from bastion_orchestrator.security.permissions import PermissionChecker
    from bastion_orchestrator.security.rate_limiter import RateLimiter


@dataclass(frozen=True, slots=True)
class GateDecision:
    allowed: bool
    action: str
    reason_code: ErrorCode | None
    message: str
    correlation_id: str

    def raise_for_denial(self) -> None:
        """Raise the matching domain error when the decision is a denial."""

        if self.allowed:
            return
        if self.reason_code is ErrorCode.RATE_LIMIT_EXCEEDED:
            raise RateLimitExceededError(self.message, correlation_id=self.correlation_id)
        raise PermissionDeniedError(self.message, correlation_id=self.correlation_id)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "allowed": self.allowed,
            "action": self.action,
            "reason_code": None if self.reason_code is None else self.reason_code.value,
            "message": self.message,
            "correlation_id": self.correlation_id,
        }


@dataclass(frozen=True, slots=True)
class ScreenedContent:
    is_allowed: bool
    safe_content: str
    reason: str | None = None


class SecurityGate:
    """Authorize-then-consume pipeline in front of every sandboxed action."""

    def __init__(
        self,
        permissions: PermissionChecker,
        rate_limiter: RateLimiter,
        audit: AuditRecorder,
        *,
        content_filter: ContentFilter | None = None,
        logger: Any | None = None,
    ) -> None:
        self._permissions = permissions
        self._rate_limiter = rate_limiter
        self._audit = audit
        self._content_filter = content_filter
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def permissions(self) -> PermissionChecker:
        return self._permissions

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    async def authorize_and_consume(
        self,
        principal: Principal,
        action: GateAction | str,
        resource: ResourceRef | str | None = None,
    ) -> bool:
        decision = await self.evaluate(principal, action, resource)
        return decision.allowed

    async def evaluate(
        self,
        principal: Principal,
        action: GateAction | str,
        resource: ResourceRef | str | None = None,
    ) -> GateDecision:
        action_name = str(action)
        correlation_id = (
            get_correlation_context().get("correlation_id") or generate_correlation_id()
        )
        try:
            decision, details = self._decide(principal, action_name, resource, correlation_id)
        except Exception as exc:  # noqa: BLE001 - fail closed
            self._logger.error(
                "gate_internal_error",
                action=action_name,
                principal_id=principal.id,
                correlation_id=correlation_id,
                error=str(exc),
                exc_info=True,
            )
            decision = GateDecision(
                allowed=False,
                action=action_name,
                reason_code=ErrorCode.INTERNAL_ERROR,
                message=f"Authorization failed (correlation id {correlation_id})",
                correlation_id=correlation_id,
            )
            details = {"action": action_name, "error_type": type(exc).__name__}

        try:
            self._audit.record(
                AuditKind.AUTHORIZATION,
                "allow" if decision.allowed else "deny",
                principal_id=principal.id,
                reason=None if decision.allowed else decision.message,
                correlation_id=correlation_id,
                details={
                    **details,
                    "reason_code": (
                        None if decision.reason_code is None else decision.reason_code.value
                    ),
                },
            )
        except Exception as exc:  # noqa: BLE001 - an unaudited decision is a denial
            self._logger.error(
                "gate_audit_failed",
                action=action_name,
                principal_id=principal.id,
                correlation_id=correlation_id,
                error=str(exc),
            )
            decision = GateDecision(
                allowed=False,
                action=action_name,
                reason_code=ErrorCode.INTERNAL_ERROR,
                message=f"Authorization failed (correlation id {correlation_id})",
                correlation_id=correlation_id,
            )

        self._logger.info(
            "gate_decision",
            action=action_name,
            principal_id=principal.id,
            allowed=decision.allowed,
            reason_code=None if decision.reason_code is None else decision.reason_code.value,
            correlation_id=correlation_id,
        )
        return decision

    async def secure_scan_content(
        self, content: str, principal_id: str | None = None
    ) -> ScreenedContent:
        """Screen free text; denied content comes back redacted when redaction is on."""

        if self._content_filter is None:
            return ScreenedContent(is_allowed=True, safe_content=content)
        result = self._content_filter.analyze_content(content, principal_id)
        return ScreenedContent(
            is_allowed=result.is_allowed,
            safe_content=result.redacted_content or content,
            reason=result.reason,
        )

    def _decide(
        self,
        principal: Principal,
        action: str,
        resource: ResourceRef | str | None,
        correlation_id: str,
    ) -> tuple[GateDecision, dict[str, JSONValue]]:
        requirement = requirement_for(action)
        resource_id = _resource_id(resource)
        details: dict[str, JSONValue] = {
            "action": action,
            "resource_type": requirement.resource_type.value,
            "resource_id": resource_id or WILDCARD_RESOURCE_ID,
            "level": requirement.level.value,
            "limit_type": requirement.limit_type.value,
        }

        permitted = self._permissions.has_permission(
            principal,
            requirement.resource_type,
            resource_id or WILDCARD_RESOURCE_ID,
            requirement.level,
        )
        if not permitted:
            target = f"{requirement.resource_type.value}:{resource_id or WILDCARD_RESOURCE_ID}"
            return (
                GateDecision(
                    allowed=False,
                    action=action,
                    reason_code=ErrorCode.PERMISSION_DENIED,
                    message=(
                        f"Permission denied: {requirement.level.value} access to {target} "
                        "is required"
                    ),
                    correlation_id=correlation_id,
                ),
                details,
            )

        consumed = self._rate_limiter.consume(principal, requirement.limit_type, resource_id)
        if not consumed:
            return (
                GateDecision(
                    allowed=False,
                    action=action,
                    reason_code=ErrorCode.RATE_LIMIT_EXCEEDED,
                    message=f"Rate limit exceeded for {requirement.limit_type.value}",
                    correlation_id=correlation_id,
                ),
                details,
            )

        return (
            GateDecision(
                allowed=True,
                action=action,
                reason_code=None,
                message="Allowed",
                correlation_id=correlation_id,
            ),
            details,
        )


def _resource_id(resource: ResourceRef | str | None) -> str | None:
    if resource is None:
        return None
    if isinstance(resource, ResourceRef):
        return resource.resource_id
    return resource or None


__all__ = ["GateDecision", "ScreenedContent", "SecurityGate"]

"""
bastion-orchestrator — security gate components

File: src/bastion_orchestrator/security/__init__.py
Last updated: 2026-10-19

Purpose
- Permission checks, rate limiting, content filtering, audit, and the gate that
  composes them.

Functional requirements
- Must fail closed for every authorization and content check.
"""

from bastion_orchestrator.security.actions import (
    ACTION_REQUIREMENTS,
    ActionRequirement,
    GateAction,
    requirement_for,
)
from bastion_orchestrator.security.audit import AuditRecorder, AuditSink, InMemoryAuditLog
from bastion_orchestrator.security.content_filter import (
    ContentFilter,
    ContentRules,
    FilterConfig,
    load_content_rules,
)
from bastion_orchestrator.security.gate import GateDecision, ScreenedContent, SecurityGate
from bastion_orchestrator.security.permissions import (
    DEFAULT_ROLE_GRANTS,
    InMemoryOwnershipLookup,
    InMemoryPermissionStore,
    OwnershipLookup,
    PermissionChecker,
    PermissionStore,
    RoleGrant,
)
from bastion_orchestrator.security.rate_limiter import (
    DEFAULT_RATE_LIMITS,
    CounterStore,
    InMemoryCounterStore,
    QuotaReport,
    RateLimiter,
)

__all__ = [
    "ACTION_REQUIREMENTS",
    "DEFAULT_RATE_LIMITS",
    "DEFAULT_ROLE_GRANTS",
    "ActionRequirement",
    "AuditRecorder",
    "AuditSink",
    "ContentFilter",
    "ContentRules",
    "CounterStore",
    "FilterConfig",
    "GateAction",
    "GateDecision",
    "InMemoryAuditLog",
    "InMemoryCounterStore",
    "InMemoryOwnershipLookup",
    "InMemoryPermissionStore",
    "OwnershipLookup",
    "PermissionChecker",
    "PermissionStore",
    "QuotaReport",
    "RateLimiter",
    "RoleGrant",
    "ScreenedContent",
    "SecurityGate",
    "load_content_rules",
    "requirement_for",
]

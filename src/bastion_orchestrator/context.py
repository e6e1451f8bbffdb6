"""
bastion-orchestrator — application wiring

File: src/bastion_orchestrator/context.py
Last updated: 2026-10-19

Purpose
- Build every long-lived component from one validated config mapping and hand them
  out as a single explicit context object.

Functional requirements
- SQLite-backed stores back permissions, rate-limit counters, usage and moderation logs,
  the audit trail, execution results, and tasks.
- Controllers and tool registries are built per principal; the code-execution tool is
  bound to the principal it acts for.

Non-functional requirements
- No module-level singletons; callers own the context and pass it explicitly.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from bastion_orchestrator.agents.prompts import PromptLibrary
from bastion_orchestrator.agents.reasoning import create_reasoning_model
from bastion_orchestrator.agents.roles import AgentRole, create_all_workers
from bastion_orchestrator.control_plane.controller import Controller
from bastion_orchestrator.control_plane.tasks import TaskService
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
from bastion_orchestrator.persistence.state_db import StateDB
from bastion_orchestrator.sandbox.sandbox_manager import SandboxExecutionManager
from bastion_orchestrator.security.audit import AuditRecorder
from bastion_orchestrator.security.content_filter import (
    ContentFilter,
    FilterConfig,
    load_content_rules,
)
from bastion_orchestrator.security.gate import SecurityGate
from bastion_orchestrator.security.permissions import PermissionChecker
from bastion_orchestrator.security.rate_limiter import RateLimiter
from bastion_orchestrator.tools.code_execution import CodeExecutionTool
from bastion_orchestrator.tools.registry import ToolRegistry

if TYPE_CHECKING:
    from collections.abc import Mapping

    from bastion_orchestrator.agents.reasoning import ReasoningModel
    from bastion_orchestrator.domain.models import Principal


@dataclass(slots=True)
class AppContext:
    config: dict[str, Any]
    db: StateDB
    audit: AuditRecorder
    permissions: PermissionChecker
    rate_limiter: RateLimiter
    content_filter: ContentFilter
    gate: SecurityGate
    sandbox: SandboxExecutionManager
    tasks: TaskService
    ownership: ResourceOwnerRepo
    logger: Any

    @classmethod
    def from_config(cls, config: Mapping[str, Any], *, logger: Any | None = None) -> AppContext:
        log = logger if logger is not None else structlog.get_logger(__name__)
        db = StateDB(Path(config["paths"]["state_db"]))
        db.migrate()

        audit = AuditRecorder(AuditLogRepo(db), logger=log)
        ownership = ResourceOwnerRepo(db)
        permissions = PermissionChecker(PermissionRepo(db), ownership=ownership, logger=log)
        rate_limiter = RateLimiter.from_config(
            config["rate_limits"],
            RateLimitCounterRepo(db),
            usage_log=UsageLogRepo(db),
            logger=log,
        )
        filter_section = config["content_filter"]
        content_filter = ContentFilter(
            FilterConfig.from_config(filter_section),
            rules=load_content_rules(filter_section.get("rules_path")),
            moderation_log=ModerationLogRepo(db),
            audit=audit,
            logger=log,
        )
        gate = SecurityGate(
            permissions, rate_limiter, audit, content_filter=content_filter, logger=log
        )
        sandbox = SandboxExecutionManager.from_config(
            config["sandbox"], results=ExecutionResultRepo(db), audit=audit, logger=log
        )
        log.info(
            "app_context_ready",
            state_db=str(db.path),
            sandbox_backend=sandbox.backend_name,
        )
        return cls(
            config=dict(config),
            db=db,
            audit=audit,
            permissions=permissions,
            rate_limiter=rate_limiter,
            content_filter=content_filter,
            gate=gate,
            sandbox=sandbox,
            tasks=TaskService(TaskRepo(db), logger=log),
            ownership=ownership,
            logger=log,
        )

    def code_execution_tool(self, principal: Principal) -> CodeExecutionTool:
        return CodeExecutionTool(
            principal, self.gate, self.sandbox, self.content_filter, logger=self.logger
        )

    def build_tool_registry(self, principal: Principal) -> ToolRegistry:
        return ToolRegistry((self.code_execution_tool(principal),), logger=self.logger)

    def reasoning_model(self, *, script_path: str | Path | None = None) -> ReasoningModel:
        return create_reasoning_model(
            self.config["providers"], script_path=script_path, logger=self.logger
        )

    def build_controller(
        self,
        principal: Principal,
        model: ReasoningModel,
        *,
        prompts: PromptLibrary | None = None,
    ) -> Controller:
        """Controller plus one worker per role; the coder and devops workers get code execution."""

        library = prompts if prompts is not None else PromptLibrary()
        scheduler = self.config["scheduler"]
        code_tool = self.code_execution_tool(principal)
        workers = create_all_workers(
            model,
            tools_by_role={AgentRole.CODER: (code_tool,), AgentRole.DEVOPS: (code_tool,)},
            prompts=library,
            temperature=scheduler["temperature"],
            logger=self.logger,
        )
        return Controller(
            model,
            workers=workers.values(),
            prompts=library,
            max_concurrency=scheduler["max_concurrency"],
            temperature=scheduler["temperature"],
            tasks=self.tasks,
            logger=self.logger,
        )


__all__ = ["AppContext"]

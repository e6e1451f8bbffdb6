"""
bastion-orchestrator — agents

File: src/bastion_orchestrator/agents/__init__.py
Last updated: 2026-10-19

Purpose
- Reasoning-model providers, the conversational agent base, and the specialized
  worker roles the controller dispatches to.
"""

from bastion_orchestrator.agents.base import BaseAgent
from bastion_orchestrator.agents.prompts import PromptLibrary, PromptTemplateError
from bastion_orchestrator.agents.reasoning import (
    AnthropicReasoningModel,
    CompletionOptions,
    MessageRole,
    ModelMessage,
    ReasoningModel,
    ScriptedReasoningModel,
    ScriptRule,
    ToolSpec,
    create_reasoning_model,
)
from bastion_orchestrator.agents.roles import (
    ROLE_PROFILES,
    WORKER_ROLES,
    AgentRole,
    RoleProfile,
    create_all_workers,
    create_worker,
)
from bastion_orchestrator.agents.worker import WorkerAgent

__all__ = [
    "ROLE_PROFILES",
    "WORKER_ROLES",
    "AgentRole",
    "AnthropicReasoningModel",
    "BaseAgent",
    "CompletionOptions",
    "MessageRole",
    "ModelMessage",
    "PromptLibrary",
    "PromptTemplateError",
    "ReasoningModel",
    "RoleProfile",
    "ScriptRule",
    "ScriptedReasoningModel",
    "ToolSpec",
    "WorkerAgent",
    "create_all_workers",
    "create_worker",
    "create_reasoning_model",
]

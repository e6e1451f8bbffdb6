"""
bastion-orchestrator — specialized worker roles

File: src/bastion_orchestrator/agents/roles.py
Last updated: 2026-10-19

Purpose
- The catalog of worker roles the controller can plan with, and factories that build
  one worker per role for a session.

Functional requirements
- Each role has a stable identifier, display name, description, specialization, and
  capability list; the system prompt is rendered from the shared worker template.
- A session holds exactly one worker per role.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Final

from bastion_orchestrator.agents.prompts import WORKER_SYSTEM_TEMPLATE, PromptLibrary
from bastion_orchestrator.agents.worker import WorkerAgent

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from bastion_orchestrator.agents.reasoning import ReasoningModel
    from bastion_orchestrator.tools.base import Tool


class AgentRole(StrEnum):
    CONTROLLER = "controller"
    RESEARCHER = "researcher"
    WRITER = "writer"
    CODER = "coder"
    ANALYST = "analyst"
    DESIGNER = "designer"
    DEVOPS = "devops"
    SECURITY = "security"


@dataclass(frozen=True, slots=True)
class RoleProfile:
    role: AgentRole
    name: str
    description: str
    specialization: str
    capabilities: tuple[str, ...]


ROLE_PROFILES: Final[Mapping[AgentRole, RoleProfile]] = {
    AgentRole.RESEARCHER: RoleProfile(
        AgentRole.RESEARCHER,
        "Research Agent",
        "Finds and summarizes relevant information",
        "Information Gathering",
        (
            "Web search",
            "Content summarization",
            "Information extraction",
            "Source verification",
            "Data collection",
        ),
    ),
    AgentRole.WRITER: RoleProfile(
        AgentRole.WRITER,
        "Writer Agent",
        "Generates high-quality written content",
        "Content Creation",
        (
            "Article writing",
            "Content editing",
            "Tone and style adaptation",
            "Creative writing",
            "Technical documentation",
            "Marketing copy",
        ),
    ),
    AgentRole.CODER: RoleProfile(
        AgentRole.CODER,
        "Coder Agent",
        "Writes, debugs, and executes code",
        "Software Development",
        (
            "Code generation",
            "Code debugging",
            "Code optimization",
            "API integration",
            "Technical documentation",
            "Software architecture",
        ),
    ),
    AgentRole.ANALYST: RoleProfile(
        AgentRole.ANALYST,
        "Data Analyst Agent",
        "Analyzes and visualizes data",
        "Data Analysis",
        (
            "Data cleaning",
            "Statistical analysis",
            "Data visualization",
            "Pattern recognition",
            "Dashboard creation",
            "Database queries",
        ),
    ),
    AgentRole.DESIGNER: RoleProfile(
        AgentRole.DESIGNER,
        "Designer Agent",
        "Designs user interfaces and experiences",
        "UI/UX Design",
        (
            "Interface design",
            "User experience flows",
            "Accessibility compliance",
            "Design system creation",
            "Visual hierarchy",
            "Responsive design",
        ),
    ),
    AgentRole.DEVOPS: RoleProfile(
        AgentRole.DEVOPS,
        "DevOps Agent",
        "Manages infrastructure, deployment, and operations",
        "Infrastructure & Operations",
        (
            "Container management",
            "CI/CD pipeline configuration",
            "Infrastructure as code",
            "Cloud service management",
            "Monitoring and logging",
            "Security implementation",
        ),
    ),
    AgentRole.SECURITY: RoleProfile(
        AgentRole.SECURITY,
        "Security Agent",
        "Assesses and implements security measures",
        "Security Assessment",
        (
            "Vulnerability assessment",
            "Code security review",
            "Authentication implementation",
            "Data protection strategies",
            "Security testing",
            "Compliance evaluation",
        ),
    ),
}

WORKER_ROLES: Final[tuple[AgentRole, ...]] = tuple(ROLE_PROFILES)


def create_worker(
    role: AgentRole | str,
    model: ReasoningModel,
    *,
    tools: Iterable[Tool] = (),
    prompts: PromptLibrary | None = None,
    temperature: float = 0.7,
    logger: Any | None = None,
) -> WorkerAgent:
    parsed = AgentRole(role)
    profile = ROLE_PROFILES.get(parsed)
    if profile is None:
        raise ValueError(f"Unsupported worker role: {parsed.value}")
    library = prompts if prompts is not None else PromptLibrary()
    system_prompt = library.render(
        WORKER_SYSTEM_TEMPLATE,
        {
            "name": profile.name,
            "description": profile.description,
            "specialization": profile.specialization,
            "capabilities": profile.capabilities,
        },
    )
    return WorkerAgent(
        profile.name,
        parsed.value,
        profile.description,
        system_prompt,
        model,
        specialization=profile.specialization,
        capabilities=profile.capabilities,
        tools=tools,
        prompts=library,
        temperature=temperature,
        logger=logger,
    )


def create_all_workers(
    model: ReasoningModel,
    *,
    tools_by_role: Mapping[AgentRole, Iterable[Tool]] | None = None,
    prompts: PromptLibrary | None = None,
    temperature: float = 0.7,
    logger: Any | None = None,
) -> dict[AgentRole, WorkerAgent]:
    """One worker per specialized role, sharing one prompt library."""

    library = prompts if prompts is not None else PromptLibrary()
    tool_map = tools_by_role or {}
    return {
        role: create_worker(
            role,
            model,
            tools=tool_map.get(role, ()),
            prompts=library,
            temperature=temperature,
            logger=logger,
        )
        for role in WORKER_ROLES
    }


__all__ = [
    "ROLE_PROFILES",
    "WORKER_ROLES",
    "AgentRole",
    "RoleProfile",
    "create_all_workers",
    "create_worker",
]

"""
bastion-orchestrator — agent prompt templates

File: src/bastion_orchestrator/agents/prompts.py
Last updated: 2026-10-19

Purpose
- Render the controller and worker prompts from the packaged Jinja templates.

Functional requirements
- Rendering is strict: an unknown template or a missing variable raises
  ``PromptTemplateError`` instead of producing a partial prompt.
- Output is deterministic for the same inputs.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Final

from jinja2 import (
    Environment,
    FileSystemLoader,
    StrictUndefined,
    TemplateNotFound,
    UndefinedError,
)

if TYPE_CHECKING:
    from collections.abc import Mapping

TEMPLATE_ROOT: Final[Path] = Path(__file__).resolve().parent / "templates"

WORKER_SYSTEM_TEMPLATE: Final[str] = "worker_system.j2"
WORKER_TASK_TEMPLATE: Final[str] = "worker_task.j2"
CONTROLLER_SYSTEM_TEMPLATE: Final[str] = "controller_system.j2"
PLAN_TEMPLATE: Final[str] = "plan.j2"
SYNTHESIS_TEMPLATE: Final[str] = "synthesis.j2"


class PromptTemplateError(RuntimeError):
    """Raised when a prompt template is missing or cannot be rendered."""


class PromptLibrary:
    def __init__(self, template_root: Path | str | None = None) -> None:
        root = Path(template_root) if template_root is not None else TEMPLATE_ROOT
        if not root.is_dir():
            raise PromptTemplateError(f"template root does not exist: {root}")
        self._root = root
        self._environment = Environment(
            loader=FileSystemLoader(str(root)),
            undefined=StrictUndefined,
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=False,
        )

    @property
    def template_root(self) -> Path:
        return self._root

    def render(self, template_name: str, variables: Mapping[str, object]) -> str:
        try:
            template = self._environment.get_template(template_name)
        except TemplateNotFound as exc:
            raise PromptTemplateError(
                f"template not found: {template_name!r} under {self._root}"
            ) from exc
        try:
            rendered = template.render(**variables)
        except UndefinedError as exc:
            raise PromptTemplateError(f"{template_name}: {exc.message}") from exc
        return rendered.replace("\r\n", "\n").strip()


__all__ = [
    "CONTROLLER_SYSTEM_TEMPLATE",
    "PLAN_TEMPLATE",
    "SYNTHESIS_TEMPLATE",
    "TEMPLATE_ROOT",
    "WORKER_SYSTEM_TEMPLATE",
    "WORKER_TASK_TEMPLATE",
    "PromptLibrary",
    "PromptTemplateError",
]

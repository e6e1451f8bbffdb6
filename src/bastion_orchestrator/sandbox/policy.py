"""Allow-list predicates for commands and file paths inside a sandbox."""

from __future__ import annotations

import posixpath
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from bastion_orchestrator.domain.models import SandboxConfig


def is_command_allowed(config: SandboxConfig, command: str) -> bool:
    """True when the first whitespace-separated token is an allowed command."""

    if not config.allowed_commands:
        return False
    tokens = command.split()
    if not tokens:
        return False
    return tokens[0] in config.allowed_commands


def normalize_sandbox_path(path: str) -> str:
    """Collapse ``.``/``..`` segments and drop any ``..`` that would climb above the start."""

    normalized = posixpath.normpath(path)
    parts = normalized.split("/")
    while parts and parts[0] == "..":
        parts.pop(0)
    return "/".join(parts) or "."


def is_file_path_allowed(config: SandboxConfig, path: str) -> bool:
    """True when ``path`` equals or descends from one of the allowed roots."""

    if not config.allowed_file_paths:
        return False
    candidate = normalize_sandbox_path(path)
    for allowed in config.allowed_file_paths:
        root = normalize_sandbox_path(allowed)
        if candidate == root or candidate.startswith(root.rstrip("/") + "/"):
            return True
    return False


__all__ = ["is_command_allowed", "is_file_path_allowed", "normalize_sandbox_path"]

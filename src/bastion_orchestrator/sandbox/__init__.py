"""
bastion-orchestrator — sandboxed execution

File: src/bastion_orchestrator/sandbox/__init__.py
Last updated: 2026-10-19

Purpose
- Isolation backends, allow-list predicates, and the execution manager that ties them to
  scratch-directory lifecycle and timeouts.

Functional requirements
- Must enforce resource limits and guarantee teardown on every path.

Non-functional requirements
- Must be secure-by-default: no network and empty tool allow-lists unless configured.
"""

from bastion_orchestrator.sandbox.backends import (
    ContainerBackend,
    IsolationBackend,
    LocalProcessBackend,
    SandboxBackend,
    create_backend,
)
from bastion_orchestrator.sandbox.policy import is_command_allowed, is_file_path_allowed
from bastion_orchestrator.sandbox.sandbox_manager import SandboxExecutionManager

__all__ = [
    "ContainerBackend",
    "IsolationBackend",
    "LocalProcessBackend",
    "SandboxBackend",
    "SandboxExecutionManager",
    "create_backend",
    "is_command_allowed",
    "is_file_path_allowed",
]

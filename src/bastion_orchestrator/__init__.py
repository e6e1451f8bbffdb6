"""
bastion-orchestrator — package root

File: src/bastion_orchestrator/__init__.py
Last updated: 2026-10-19

Purpose
- Sandboxed code execution, security gating, and dependency-aware task scheduling for
  autonomous agents acting on behalf of a user.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).

Non-functional requirements
- Keep the public surface small; heavy submodules are imported lazily by callers.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]

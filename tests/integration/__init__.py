"""
bastion-orchestrator — integration tests

File: tests/integration/__init__.py
Last updated: 2026-10-19

Purpose
- Test package marker for tests that wire real components together over a temporary
  state DB and the local sandbox backend.

Functional requirements
- Must not trigger provider calls or network access.
"""

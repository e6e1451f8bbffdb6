"""Stable constants shared across the gate, sandbox, and scheduler."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
STATE_DB_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to the config file unless overridden).
STATE_DIR: Final[PurePosixPath] = PurePosixPath("state")
LOG_DIR: Final[PurePosixPath] = PurePosixPath("logs")
DEFAULT_CONFIG_FILENAME: Final[str] = "bastion.toml"
ENV_PREFIX: Final[str] = "BASTION_"

# Sandbox layout.
SANDBOX_MOUNT_POINT: Final[str] = "/sandbox"
SANDBOX_LABEL: Final[str] = "bastion.sandbox"
DEFAULT_SANDBOX_IMAGE: Final[str] = "multiroleai-sandbox:latest"
DEFAULT_PIDS_LIMIT: Final[int] = 50

# Redaction placeholders.
REDACTED_PLACEHOLDER: Final[str] = "[REDACTED]"
PII_REDACTED_PLACEHOLDER: Final[str] = "[PII REDACTED]"

# Subscription tier multipliers applied to every base quota.
TIER_MULTIPLIERS: Final[dict[str, int]] = {
    "free": 1,
    "basic": 2,
    "premium": 5,
    "enterprise": 10,
}

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_CONFIG_FILENAME",
    "DEFAULT_PIDS_LIMIT",
    "DEFAULT_SANDBOX_IMAGE",
    "ENV_PREFIX",
    "LOG_DIR",
    "PII_REDACTED_PLACEHOLDER",
    "REDACTED_PLACEHOLDER",
    "SANDBOX_LABEL",
    "SANDBOX_MOUNT_POINT",
    "STATE_DB_SCHEMA_VERSION",
    "STATE_DIR",
    "TIER_MULTIPLIERS",
]

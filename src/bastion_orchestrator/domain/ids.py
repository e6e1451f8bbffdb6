"""Canonical ID generation and validation for domain entities."""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_RANDOM_BYTES: Final[int] = 10
ULID_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1
_PREFIX_SEPARATOR: Final[str] = "-"

# Stable entity ID prefixes.
RUN_ID_PREFIX: Final[str] = "run"
TASK_ID_PREFIX: Final[str] = "task"
EXECUTION_ID_PREFIX: Final[str] = "exec"
SCAN_ID_PREFIX: Final[str] = "scan"
AUDIT_ID_PREFIX: Final[str] = "aud"
USAGE_ID_PREFIX: Final[str] = "use"
PERMISSION_ID_PREFIX: Final[str] = "perm"
MODERATION_ID_PREFIX: Final[str] = "mod"
CORRELATION_ID_PREFIX: Final[str] = "corr"

_DECODE_TABLE: Final[dict[str, int]] = {
    char: index for index, char in enumerate(CROCKFORD_BASE32_ALPHABET)
}

_RandBytes = Callable[[int], bytes]


def generate_ulid(
    *,
    timestamp_ms: int | None = None,
    randbytes: _RandBytes | None = None,
) -> str:
    """Generate a ULID as a 26-character uppercase Crockford Base32 string."""
    ts_ms = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if not isinstance(ts_ms, int) or not 0 <= ts_ms <= ULID_MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms out of range: expected 0..{ULID_MAX_TIMESTAMP_MS}")

    provider = secrets.token_bytes if randbytes is None else randbytes
    raw = bytes(provider(ULID_RANDOM_BYTES))
    if len(raw) != ULID_RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {ULID_RANDOM_BYTES} bytes")

    value = (ts_ms << 80) | int.from_bytes(raw, "big")
    chars = []
    for _ in range(ULID_LENGTH):
        chars.append(CROCKFORD_BASE32_ALPHABET[value & 0b11111])
        value >>= 5
    return "".join(reversed(chars))


def validate_ulid(s: str) -> None:
    """Validate a ULID and raise ``ValueError`` with precise context on failure."""
    if not isinstance(s, str):
        raise ValueError(f"ulid must be a string, got {type(s).__name__}")
    if len(s) != ULID_LENGTH:
        raise ValueError(f"ulid length must be {ULID_LENGTH}, got {len(s)}")
    for index, char in enumerate(s):
        if char.upper() not in _DECODE_TABLE:
            raise ValueError(f"invalid ULID character {char!r} at index {index}")
    if _DECODE_TABLE[s[0].upper()] > 7:
        raise ValueError("ulid overflow: value exceeds maximum 128-bit ULID")


def generate_prefixed_id(
    prefix: str,
    *,
    timestamp_ms: int | None = None,
    randbytes: _RandBytes | None = None,
) -> str:
    """Generate a stable prefixed ID in the form ``<prefix>-<ulid>``."""
    _validate_prefix(prefix)
    ulid = generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)
    return f"{prefix}{_PREFIX_SEPARATOR}{ulid}"


def validate_prefixed_id(id_str: str, expected_prefix: str) -> None:
    """Validate ``<prefix>-<ulid>`` format and enforce ``expected_prefix``."""
    _validate_prefix(expected_prefix)
    if not isinstance(id_str, str):
        raise ValueError(f"prefixed id must be a string, got {type(id_str).__name__}")

    expected_lead = f"{expected_prefix}{_PREFIX_SEPARATOR}"
    if not id_str.startswith(expected_lead):
        raise ValueError(f"expected prefix '{expected_lead}'")
    try:
        validate_ulid(id_str[len(expected_lead) :])
    except ValueError as exc:
        raise ValueError(f"invalid ULID part for prefix '{expected_prefix}': {exc}") from exc


def short_id(id_str: str) -> str:
    """Return the last 8 characters of an ID for compact display."""
    if not isinstance(id_str, str) or len(id_str) < 8:
        raise ValueError("id must be a string of at least 8 characters")
    return id_str[-8:]


def generate_run_id() -> str:
    return generate_prefixed_id(RUN_ID_PREFIX)


def generate_task_id() -> str:
    return generate_prefixed_id(TASK_ID_PREFIX)


def generate_execution_id() -> str:
    return generate_prefixed_id(EXECUTION_ID_PREFIX)


def validate_execution_id(id_str: str) -> None:
    validate_prefixed_id(id_str, EXECUTION_ID_PREFIX)


def generate_scan_id() -> str:
    return generate_prefixed_id(SCAN_ID_PREFIX)


def generate_audit_id() -> str:
    return generate_prefixed_id(AUDIT_ID_PREFIX)


def generate_usage_id() -> str:
    return generate_prefixed_id(USAGE_ID_PREFIX)


def generate_permission_id() -> str:
    return generate_prefixed_id(PERMISSION_ID_PREFIX)


def generate_moderation_id() -> str:
    return generate_prefixed_id(MODERATION_ID_PREFIX)


def generate_correlation_id() -> str:
    return generate_prefixed_id(CORRELATION_ID_PREFIX)


def _validate_prefix(prefix: str) -> None:
    if not isinstance(prefix, str) or not prefix:
        raise ValueError("prefix must be a non-empty string")
    if _PREFIX_SEPARATOR in prefix:
        raise ValueError(f"prefix must not contain '{_PREFIX_SEPARATOR}'")


__all__ = [
    "AUDIT_ID_PREFIX",
    "CORRELATION_ID_PREFIX",
    "CROCKFORD_BASE32_ALPHABET",
    "EXECUTION_ID_PREFIX",
    "MODERATION_ID_PREFIX",
    "PERMISSION_ID_PREFIX",
    "RUN_ID_PREFIX",
    "SCAN_ID_PREFIX",
    "TASK_ID_PREFIX",
    "ULID_LENGTH",
    "USAGE_ID_PREFIX",
    "generate_audit_id",
    "generate_correlation_id",
    "generate_execution_id",
    "generate_moderation_id",
    "generate_permission_id",
    "generate_prefixed_id",
    "generate_run_id",
    "generate_scan_id",
    "generate_task_id",
    "generate_ulid",
    "generate_usage_id",
    "short_id",
    "validate_execution_id",
    "validate_prefixed_id",
    "validate_ulid",
]

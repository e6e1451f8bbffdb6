"""Unit tests for sandbox command and path allow-lists."""

from __future__ import annotations

import pytest
from hypothesis import given
from hypothesis import strategies as st

from bastion_orchestrator.domain.models import SandboxConfig
from bastion_orchestrator.sandbox.policy import (
    is_command_allowed,
    is_file_path_allowed,
    normalize_sandbox_path,
)

_DEFAULT = SandboxConfig()


@pytest.mark.parametrize(
    ("command", "expected"),
    [
        ("python3 script.py", True),
        ("  bash -c 'echo hi'", True),
        ("node", True),
        ("python3.12 script.py", False),
        ("curl https://example.com", False),
        ("", False),
        ("   ", False),
    ],
)
def test_command_allow_list_checks_first_token(command: str, expected: bool) -> None:
    assert is_command_allowed(_DEFAULT, command) is expected


def test_empty_command_allow_list_denies_everything() -> None:
    locked = SandboxConfig(allowed_commands=())
    assert not is_command_allowed(locked, "python3")


@pytest.mark.parametrize(
    ("path", "expected"),
    [
        ("/tmp/sandbox", True),
        ("/tmp/sandbox/data/input.csv", True),
        ("/tmp/sandbox/./nested/../file.txt", True),
        ("/tmp/sandbox/../../etc/passwd", False),
        ("/tmp/sandboxed/file.txt", False),
        ("/etc/passwd", False),
        ("tmp/sandbox/file.txt", False),
    ],
)
def test_file_path_allow_list(path: str, expected: bool) -> None:
    assert is_file_path_allowed(_DEFAULT, path) is expected


def test_empty_path_allow_list_denies_everything() -> None:
    locked = SandboxConfig(allowed_file_paths=())
    assert not is_file_path_allowed(locked, "/tmp/sandbox/file.txt")


def test_normalize_drops_leading_parent_segments() -> None:
    assert normalize_sandbox_path("../../etc") == "etc"
    assert normalize_sandbox_path("a/./b/../c") == "a/c"
    assert normalize_sandbox_path("..") == "."


_SEGMENTS = st.lists(
    st.sampled_from(["..", ".", "data", "sandbox", "tmp", "etc", "x"]), max_size=8
)


@given(_SEGMENTS)
def test_allowed_paths_never_escape_the_root(segments: list[str]) -> None:
    path = "/tmp/sandbox/" + "/".join(segments)
    if is_file_path_allowed(_DEFAULT, path):
        normalized = normalize_sandbox_path(path)
        assert normalized == "/tmp/sandbox" or normalized.startswith("/tmp/sandbox/")

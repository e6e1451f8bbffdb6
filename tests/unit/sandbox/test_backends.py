"""Unit tests for container argv construction, backend selection, and local limits."""

from __future__ import annotations

import asyncio
import resource
from pathlib import Path

import pytest

from bastion_orchestrator.domain.models import SandboxConfig, SandboxLanguage
from bastion_orchestrator.sandbox.backends import (
    ContainerBackend,
    LocalProcessBackend,
    UnitSpec,
    _rlimit_applier,
    build_container_run_args,
    container_name,
    create_backend,
    read_capped,
)


def _spec(**overrides: object) -> UnitSpec:
    config = SandboxConfig().with_overrides(**overrides)
    return UnitSpec(
        execution_id="exec-01HZZZZZZZZZZZZZZZZZZZZZZZ",
        scratch_dir=Path("/var/lib/bastion/scratch/exec-1"),
        language=SandboxLanguage.PYTHON,
        config=config,
        image="multiroleai-sandbox:latest",
    )


def _flag(args: list[str], name: str) -> str:
    return args[args.index(name) + 1]


def test_container_args_apply_every_isolation_control() -> None:
    args = build_container_run_args("docker", _spec())

    assert args[:2] == ["docker", "run"]
    assert "--rm" in args
    assert "--read-only" in args
    assert _flag(args, "--memory") == "256m"
    assert _flag(args, "--memory-swap") == "256m"
    assert _flag(args, "--cpus") == "0.25"
    assert _flag(args, "--pids-limit") == "50"
    assert _flag(args, "--security-opt") == "no-new-privileges"
    assert _flag(args, "--cap-drop") == "ALL"
    assert _flag(args, "--network") == "none"
    assert _flag(args, "--volume") == "/var/lib/bastion/scratch/exec-1:/sandbox:ro"
    assert _flag(args, "--stop-timeout") == "30"
    assert args[-3:] == ["multiroleai-sandbox:latest", "python3", "/sandbox/code.py"]


def test_container_args_honor_overrides() -> None:
    args = build_container_run_args(
        "podman",
        _spec(memory_limit_mb=64, cpu_limit_fraction=1.5, network_access=True, timeout_ms=2500),
    )

    assert args[0] == "podman"
    assert _flag(args, "--memory") == "64m"
    assert _flag(args, "--cpus") == "1.5"
    assert _flag(args, "--network") == "bridge"
    assert _flag(args, "--stop-timeout") == "3"


def test_container_args_carry_labels_and_name() -> None:
    spec = _spec()
    args = build_container_run_args("docker", spec)

    assert _flag(args, "--name") == container_name(spec.execution_id)
    assert container_name("EXEC-ABC") == "bastion-exec-abc"
    labels = [args[i + 1] for i, item in enumerate(args) if item == "--label"]
    assert labels == [
        "bastion.sandbox=true",
        f"bastion.sandbox.id={spec.execution_id}",
    ]


def test_create_backend_by_name() -> None:
    assert isinstance(create_backend("none"), LocalProcessBackend)
    docker = create_backend(" Docker ")
    assert isinstance(docker, ContainerBackend)
    assert docker.name == "docker"
    assert create_backend("podman").name == "podman"
    with pytest.raises(ValueError):
        create_backend("firecracker")
    with pytest.raises(ValueError, match="unsupported container CLI"):
        ContainerBackend("lxc")


async def test_read_capped_keeps_a_prefix_and_drains_the_rest() -> None:
    reader = asyncio.StreamReader()
    reader.feed_data(b"a" * 100_000)
    reader.feed_data(b"b" * 100_000)
    reader.feed_eof()

    kept = await read_capped(reader, limit=150_000)

    assert kept == b"a" * 100_000 + b"b" * 50_000
    assert reader.at_eof()
    assert await read_capped(None) == b""


@pytest.mark.parametrize(
    ("language", "memory_limit"),
    [
        (SandboxLanguage.PYTHON, resource.RLIMIT_AS),
        (SandboxLanguage.BASH, resource.RLIMIT_AS),
        (SandboxLanguage.JAVASCRIPT, resource.RLIMIT_DATA),
    ],
)
def test_local_rlimits_pick_the_memory_cap_per_interpreter(
    monkeypatch: pytest.MonkeyPatch, language: SandboxLanguage, memory_limit: int
) -> None:
    calls: list[tuple[int, tuple[int, int]]] = []
    monkeypatch.setattr(
        resource, "setrlimit", lambda which, limits: calls.append((which, limits))
    )

    _rlimit_applier(SandboxConfig(memory_limit_mb=64, timeout_ms=2500), language)()

    assert calls == [
        (memory_limit, (64 * 1024 * 1024, 64 * 1024 * 1024)),
        (resource.RLIMIT_CPU, (4, 4)),
        (resource.RLIMIT_CORE, (0, 0)),
    ]

"""
bastion-orchestrator — isolation backends

File: src/bastion_orchestrator/sandbox/backends.py
Last updated: 2026-10-19

Purpose
- Start one isolation unit per execution: a container through the docker/podman CLI, or
  a local process under POSIX rlimits for development and tests.

Functional requirements
- Containers: memory cap equals memory+swap cap, fractional CPUs, pids limit,
  ``no-new-privileges``, all capabilities dropped, read-only root filesystem, scratch
  mounted read-only at ``/sandbox``, network ``none`` unless allowed, auto-remove, labels.
- Local processes run in their own session so a kill reaches the whole process group.
- ``kill`` and ``teardown`` are idempotent.

Non-functional requirements
- Backend failures to start surface as ``SandboxInfrastructureError``.
- Local resource usage is sampled with psutil over the unit's process tree.
"""

from __future__ import annotations

import asyncio
import math
import os
import resource
import signal
from contextlib import suppress
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Final, Protocol

import psutil
import structlog

from bastion_orchestrator.constants import SANDBOX_LABEL, SANDBOX_MOUNT_POINT
from bastion_orchestrator.domain.errors import SandboxInfrastructureError
from bastion_orchestrator.domain.models import ResourceUsage, SandboxConfig, SandboxLanguage

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping
    from pathlib import Path

_SAMPLE_INTERVAL_SECONDS: Final[float] = 0.05
_BYTES_PER_MB: Final[int] = 1024 * 1024
# Per stream; the rest of the output is drained and discarded.
MAX_STREAM_BYTES: Final[int] = 1024 * 1024
_READ_CHUNK_BYTES: Final[int] = 64 * 1024
# `docker run` itself failed (daemon unreachable, image missing, bad flags).
_CONTAINER_RUNTIME_ERROR: Final[int] = 125


class SandboxBackend(StrEnum):
    DOCKER = "docker"
    PODMAN = "podman"
    NONE = "none"


@dataclass(frozen=True, slots=True)
class UnitSpec:
    """Everything a backend needs to start one isolation unit."""

    execution_id: str
    scratch_dir: Path
    language: SandboxLanguage
    config: SandboxConfig
    image: str

    @property
    def container_command(self) -> tuple[str, ...]:
        return (
            self.language.interpreter,
            f"{SANDBOX_MOUNT_POINT}/{self.language.code_filename}",
        )

    @property
    def labels(self) -> dict[str, str]:
        return {SANDBOX_LABEL: "true", f"{SANDBOX_LABEL}.id": self.execution_id}


@dataclass(frozen=True, slots=True)
class UnitOutcome:
    exit_code: int
    stdout: str
    stderr: str


class ExecutionUnit(Protocol):
    async def wait(self) -> UnitOutcome: ...

    async def kill(self) -> None: ...

    async def teardown(self) -> None: ...

    def resource_usage(self) -> ResourceUsage | None: ...


class IsolationBackend(Protocol):
    @property
    def name(self) -> str: ...

    async def start(self, spec: UnitSpec) -> ExecutionUnit: ...


def build_container_run_args(cli: str, spec: UnitSpec) -> list[str]:
    """Return the full ``<cli> run ...`` argv for ``spec``."""

    config = spec.config
    memory = f"{config.memory_limit_mb}m"
    args = [
        cli,
        "run",
        "--name",
        container_name(spec.execution_id),
        "--rm",
        "--memory",
        memory,
        "--memory-swap",
        memory,
        # --cpus is stored by the engine as NanoCpus.
        "--cpus",
        f"{config.cpu_limit_fraction:g}",
        "--pids-limit",
        str(config.pids_limit),
        "--security-opt",
        "no-new-privileges",
        "--cap-drop",
        "ALL",
        "--read-only",
        "--network",
        "bridge" if config.network_access else "none",
        "--volume",
        f"{spec.scratch_dir}:{SANDBOX_MOUNT_POINT}:ro",
        "--workdir",
        SANDBOX_MOUNT_POINT,
        "--stop-timeout",
        str(max(1, math.ceil(config.timeout_ms / 1000))),
    ]
    for key, value in sorted(spec.labels.items()):
        args.extend(["--label", f"{key}={value}"])
    args.append(spec.image)
    args.extend(spec.container_command)
    return args


def container_name(execution_id: str) -> str:
    return f"bastion-{execution_id.lower()}"


class ContainerBackend:
    """Container units driven through the docker or podman CLI."""

    def __init__(
        self, cli: str = SandboxBackend.DOCKER.value, *, logger: Any | None = None
    ) -> None:
        if cli not in (SandboxBackend.DOCKER.value, SandboxBackend.PODMAN.value):
            raise ValueError(f"unsupported container CLI {cli!r}")
        self._cli = cli
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def name(self) -> str:
        return self._cli

    async def start(self, spec: UnitSpec) -> ExecutionUnit:
        args = build_container_run_args(self._cli, spec)
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise SandboxInfrastructureError(
                f"unable to launch {self._cli}: {exc}"
            ) from exc
        self._logger.debug(
            "sandbox_container_started",
            execution_id=spec.execution_id,
            container=container_name(spec.execution_id),
            backend=self._cli,
        )
        return _ContainerUnit(self._cli, container_name(spec.execution_id), process, self._logger)


class _ContainerUnit:
    def __init__(
        self, cli: str, name: str, process: asyncio.subprocess.Process, logger: Any
    ) -> None:
        self._cli = cli
        self._name = name
        self._process = process
        self._logger = logger
        self._removed = False

    async def wait(self) -> UnitOutcome:
        stdout, stderr = await _collect_output(self._process)
        code = self._process.returncode
        assert code is not None
        if code == _CONTAINER_RUNTIME_ERROR:
            raise SandboxInfrastructureError(
                f"{self._cli} run failed: {_decode(stderr).strip() or 'no diagnostics'}"
            )
        return UnitOutcome(exit_code=code, stdout=_decode(stdout), stderr=_decode(stderr))

    async def kill(self) -> None:
        await self._run_cli("kill", self._name)
        if self._process.returncode is None:
            with suppress(ProcessLookupError):
                self._process.kill()
            await self._process.wait()

    async def teardown(self) -> None:
        if self._removed:
            return
        self._removed = True
        if self._process.returncode is None:
            await self.kill()
        await self._run_cli("rm", "--force", self._name)

    def resource_usage(self) -> ResourceUsage | None:
        return None

    async def _run_cli(self, *args: str) -> None:
        # Best effort: with --rm the container may already be gone.
        try:
            helper = await asyncio.create_subprocess_exec(
                self._cli,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
            _, stderr = await helper.communicate()
        except OSError as exc:
            raise SandboxInfrastructureError(f"unable to run {self._cli} {args[0]}: {exc}") from exc
        if helper.returncode != 0:
            self._logger.debug(
                "sandbox_container_cli_nonzero",
                command=args[0],
                container=self._name,
                returncode=helper.returncode,
                stderr=_decode(stderr).strip(),
            )


class LocalProcessBackend:
    """Run the interpreter as a local child process with rlimits.

    Offers no filesystem or network isolation; meant for development and tests.
    """

    def __init__(
        self,
        *,
        env: Mapping[str, str] | None = None,
        logger: Any | None = None,
    ) -> None:
        self._env = dict(env or {})
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def name(self) -> str:
        return SandboxBackend.NONE.value

    async def start(self, spec: UnitSpec) -> ExecutionUnit:
        if not spec.config.network_access:
            self._logger.debug("sandbox_local_network_unrestricted", execution_id=spec.execution_id)
        script = spec.scratch_dir / spec.language.code_filename
        try:
            process = await asyncio.create_subprocess_exec(
                spec.language.interpreter,
                str(script),
                cwd=str(spec.scratch_dir),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._build_environment(spec),
                start_new_session=True,
                preexec_fn=_rlimit_applier(spec.config, spec.language),
            )
        except OSError as exc:
            raise SandboxInfrastructureError(
                f"unable to start {spec.language.interpreter}: {exc}"
            ) from exc
        return _LocalUnit(process)

    def _build_environment(self, spec: UnitSpec) -> dict[str, str]:
        env: dict[str, str] = {"SANDBOX_DIR": str(spec.scratch_dir)}
        host_path = os.environ.get("PATH")
        if host_path:
            env["PATH"] = host_path
        env.update(self._env)
        return env


class _LocalUnit:
    def __init__(self, process: asyncio.subprocess.Process) -> None:
        self._process = process
        self._peak_rss = 0
        self._cpu_seconds = 0.0
        self._sampler = asyncio.create_task(self._sample())

    async def wait(self) -> UnitOutcome:
        stdout, stderr = await _collect_output(self._process)
        await self._stop_sampler()
        code = self._process.returncode
        assert code is not None
        return UnitOutcome(exit_code=code, stdout=_decode(stdout), stderr=_decode(stderr))

    async def kill(self) -> None:
        if self._process.returncode is None:
            with suppress(ProcessLookupError, PermissionError):
                os.killpg(self._process.pid, signal.SIGKILL)
            await self._process.wait()
        await self._stop_sampler()

    async def teardown(self) -> None:
        await self.kill()

    def resource_usage(self) -> ResourceUsage | None:
        if self._peak_rss == 0 and self._cpu_seconds == 0.0:
            return None
        return ResourceUsage(peak_memory_bytes=self._peak_rss, cpu_time_seconds=self._cpu_seconds)

    async def _sample(self) -> None:
        try:
            root = psutil.Process(self._process.pid)
        except psutil.Error:
            return
        while self._process.returncode is None:
            try:
                tree = [root, *root.children(recursive=True)]
                rss = 0
                cpu = 0.0
                for proc in tree:
                    with suppress(psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                        rss += proc.memory_info().rss
                        times = proc.cpu_times()
                        cpu += times.user + times.system
                self._peak_rss = max(self._peak_rss, rss)
                self._cpu_seconds = max(self._cpu_seconds, cpu)
            except psutil.Error:
                return
            await asyncio.sleep(_SAMPLE_INTERVAL_SECONDS)

    async def _stop_sampler(self) -> None:
        if not self._sampler.done():
            self._sampler.cancel()
        with suppress(asyncio.CancelledError):
            await self._sampler


def create_backend(name: SandboxBackend | str, *, logger: Any | None = None) -> IsolationBackend:
    backend = SandboxBackend(str(name).strip().lower())
    if backend is SandboxBackend.NONE:
        return LocalProcessBackend(logger=logger)
    return ContainerBackend(backend.value, logger=logger)


def _rlimit_applier(config: SandboxConfig, language: SandboxLanguage) -> Callable[[], None]:
    memory_bytes = config.memory_limit_mb * _BYTES_PER_MB
    cpu_seconds = max(1, math.ceil(config.timeout_seconds)) + 1
    # node: V8 reserves address space it never commits.
    memory_limit = (
        resource.RLIMIT_DATA if language is SandboxLanguage.JAVASCRIPT else resource.RLIMIT_AS
    )

    def apply() -> None:
        resource.setrlimit(memory_limit, (memory_bytes, memory_bytes))
        resource.setrlimit(resource.RLIMIT_CPU, (cpu_seconds, cpu_seconds))
        resource.setrlimit(resource.RLIMIT_CORE, (0, 0))

    return apply


async def read_capped(
    stream: asyncio.StreamReader | None, limit: int = MAX_STREAM_BYTES
) -> bytes:
    """Read ``stream`` to EOF, keeping at most ``limit`` bytes in memory."""
    if stream is None:
        return b""
    kept = bytearray()
    while True:
        chunk = await stream.read(_READ_CHUNK_BYTES)
        if not chunk:
            return bytes(kept)
        room = limit - len(kept)
        if room > 0:
            kept += chunk[:room]


async def _collect_output(process: asyncio.subprocess.Process) -> tuple[bytes, bytes]:
    stdout, stderr = await asyncio.gather(
        read_capped(process.stdout), read_capped(process.stderr)
    )
    await process.wait()
    return stdout, stderr


def _decode(data: bytes | None) -> str:
    if not data:
        return ""
    return data.decode("utf-8", errors="replace")


__all__ = [
    "ContainerBackend",
    "ExecutionUnit",
    "IsolationBackend",
    "LocalProcessBackend",
    "MAX_STREAM_BYTES",
    "SandboxBackend",
    "UnitOutcome",
    "UnitSpec",
    "build_container_run_args",
    "container_name",
    "create_backend",
    "read_capped",
]

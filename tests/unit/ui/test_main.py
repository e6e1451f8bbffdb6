"""Unit tests for the process exit-code contract of the CLI entrypoint."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest

from bastion_orchestrator.config.loader import ConfigLoadError
from bastion_orchestrator.domain.errors import ProviderError
from bastion_orchestrator.main import ExitCode, cli_entrypoint

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path


def _config(tmp_path: Path) -> str:
    path = tmp_path / "bastion.toml"
    path.write_text('[sandbox]\nbackend = "none"\n', encoding="utf-8")
    return str(path)


def _patch_run_cli(monkeypatch: pytest.MonkeyPatch, exc: BaseException) -> None:
    def _raise(argv: Sequence[str] | None = None) -> int:
        raise exc

    monkeypatch.setattr("bastion_orchestrator.ui.cli.run_cli", _raise)


def test_success_and_denial_codes_pass_through(tmp_path: Path) -> None:
    config = _config(tmp_path)

    assert cli_entrypoint(["config", "--config", config]) == ExitCode.SUCCESS
    assert (
        cli_entrypoint(["revoke", "bob", "tool", "code-execution", "--config", config])
        == ExitCode.DENIED_OR_FAILED
    )


def test_argparse_usage_errors_map_to_config_error(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli_entrypoint([]) == ExitCode.CONFIG_ERROR
    assert cli_entrypoint(["exec", "--language"]) == ExitCode.CONFIG_ERROR
    assert "usage:" in capsys.readouterr().err


def test_provider_error_from_run_task_exits_3(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config = _config(tmp_path)
    script = tmp_path / "empty.json"
    script.write_text(json.dumps({"responses": []}), encoding="utf-8")

    code = cli_entrypoint(["run-task", "Plan this", "--config", config, "--script", str(script)])

    assert code == ExitCode.PROVIDER_ERROR
    assert "scripted model has no response left" in capsys.readouterr().err


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (ConfigLoadError("bad config"), ExitCode.CONFIG_ERROR),
        (ValueError("bad value"), ExitCode.CONFIG_ERROR),
        (ProviderError("no key"), ExitCode.PROVIDER_ERROR),
        (
            ModuleNotFoundError("No module named 'anthropic'", name="anthropic"),
            ExitCode.PROVIDER_ERROR,
        ),
        (RuntimeError("kaboom"), ExitCode.INTERNAL_ERROR),
    ],
)
def test_exceptions_route_to_exit_codes(
    monkeypatch: pytest.MonkeyPatch, exc: BaseException, expected: ExitCode
) -> None:
    _patch_run_cli(monkeypatch, exc)

    assert cli_entrypoint(["config"]) == expected


def test_exception_cause_chain_is_followed(monkeypatch: pytest.MonkeyPatch) -> None:
    try:
        try:
            raise ProviderError("upstream down")
        except ProviderError as inner:
            raise RuntimeError("wrapped") from inner
    except RuntimeError as outer:
        wrapped = outer

    _patch_run_cli(monkeypatch, wrapped)

    assert cli_entrypoint(["config"]) == ExitCode.PROVIDER_ERROR


def test_internal_error_prints_traceback(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    _patch_run_cli(monkeypatch, RuntimeError("kaboom"))

    assert cli_entrypoint(["config"]) == ExitCode.INTERNAL_ERROR
    err = capsys.readouterr().err
    assert "Traceback" in err
    assert "RuntimeError: kaboom" in err


def test_unknown_system_exit_codes_are_normalized(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    _patch_run_cli(monkeypatch, SystemExit("fatal: gone"))
    assert cli_entrypoint(["config"]) == ExitCode.INTERNAL_ERROR
    assert "fatal: gone" in capsys.readouterr().err

    _patch_run_cli(monkeypatch, SystemExit(None))
    assert cli_entrypoint(["config"]) == ExitCode.SUCCESS

    _patch_run_cli(monkeypatch, SystemExit(99))
    assert cli_entrypoint(["config"]) == ExitCode.INTERNAL_ERROR

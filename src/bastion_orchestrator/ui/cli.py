"""Command-line interface router for bastion-orchestrator."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Final

from bastion_orchestrator.config import (
    ConfigLoadError,
    ConfigValidationError,
    dump_effective_config,
    effective_config,
    load_config,
)
from bastion_orchestrator.context import AppContext
from bastion_orchestrator.domain.errors import BastionError, ProviderError
from bastion_orchestrator.domain.ids import generate_run_id
from bastion_orchestrator.domain.models import (
    LimitType,
    PermissionLevel,
    Principal,
    ResourceType,
    SandboxLanguage,
    SubscriptionTier,
)
from bastion_orchestrator.observability.logging import (
    correlation_scope,
    setup_logging,
    shutdown_logging,
)
from bastion_orchestrator.tools.code_execution import CODE_EXECUTION_TOOL_ID
from bastion_orchestrator.ui.render import CLIRenderer, create_renderer

DEFAULT_PRINCIPAL_ID: Final[str] = "local-user"
_TITLE_LIMIT: Final[int] = 80


class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    def __init__(self, message: str, *, exit_code: int = 1) -> None:
        super().__init__(message)
        self.message = message
        self.exit_code = exit_code


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="bastion",
        description=(
            "bastion-orchestrator — sandboxed execution and security gating for agents.\n\n"
            "Common workflows:\n"
            "  bastion exec --language python 'print(1)'   Run code through gate + sandbox\n"
            "  bastion scan 'some text'                    Classify content\n"
            "  bastion quota                               Show quota and usage\n"
            "  bastion run-task 'build a todo app'         Decompose and dispatch a task\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to bastion TOML config (default: ./bastion.toml if present).",
    )
    common.add_argument(
        "--profile",
        default=None,
        help="Optional config profile overlay name.",
    )
    common.add_argument(
        "--sandbox-backend",
        choices=("docker", "podman", "none"),
        default=None,
        help="Override sandbox.backend for this invocation.",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )
    common.add_argument("--json", action="store_true", help="Emit deterministic JSON output")

    principal = argparse.ArgumentParser(add_help=False)
    principal.add_argument(
        "--principal",
        dest="principal_id",
        default=DEFAULT_PRINCIPAL_ID,
        help=f"Principal id to act as (default: {DEFAULT_PRINCIPAL_ID}).",
    )
    principal.add_argument(
        "--tier",
        choices=tuple(item.value for item in SubscriptionTier),
        default=SubscriptionTier.FREE.value,
        help="Subscription tier of the principal (default: free).",
    )
    principal.add_argument(
        "--role",
        dest="roles",
        action="append",
        default=None,
        help="Principal role; repeatable (default: user).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # exec ----------------------------------------------------------------
    exec_parser = subparsers.add_parser(
        "exec",
        parents=[common, principal],
        help="Run code through the content scan, security gate, and sandbox",
        description=(
            "Execute a snippet in an isolated sandbox on behalf of a principal.\n\n"
            "Examples:\n"
            "  bastion exec --language python 'print(40 + 2)'\n"
            "  bastion exec --language bash --file script.sh --input data.txt\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    exec_parser.add_argument("code", nargs="?", default=None, help="Inline source code")
    exec_parser.add_argument("--file", dest="code_file", default=None, help="Read code from file")
    exec_parser.add_argument(
        "--language",
        required=True,
        help=f"One of: {', '.join(item.value for item in SandboxLanguage)}",
    )
    exec_parser.add_argument(
        "--input", dest="input_file", default=None, help="File passed to the program as input"
    )
    exec_parser.add_argument(
        "--timeout-ms", type=int, default=None, help="Override the sandbox timeout"
    )
    exec_parser.set_defaults(handler=_cmd_exec)

    # scan ----------------------------------------------------------------
    scan_parser = subparsers.add_parser(
        "scan",
        parents=[common, principal],
        help="Classify text, or scan code for malicious patterns",
        description=(
            "Run the content filter over text. With --language, scan source code instead.\n\n"
            "Examples:\n"
            "  bastion scan 'contact me at jane@example.com'\n"
            "  bastion scan --file snippet.js --language javascript\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    scan_parser.add_argument("content", nargs="?", default=None, help="Inline content")
    scan_parser.add_argument("--file", dest="content_file", default=None)
    scan_parser.add_argument(
        "--language", default=None, help="Treat the content as code in this language"
    )
    scan_parser.set_defaults(handler=_cmd_scan)

    # quota ---------------------------------------------------------------
    quota_parser = subparsers.add_parser(
        "quota",
        parents=[common, principal],
        help="Show tier-scaled quota and current usage for a principal",
    )
    quota_parser.set_defaults(handler=_cmd_quota)

    # grant / revoke ------------------------------------------------------
    grant_parser = subparsers.add_parser(
        "grant",
        parents=[common],
        help="Create or replace an explicit permission grant",
        description=(
            "Examples:\n"
            "  bastion grant alice tool code-execution execute\n"
            "  bastion grant bob file report.txt read --granted-by admin\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    _add_grant_target(grant_parser)
    grant_parser.add_argument("level", choices=tuple(item.value for item in PermissionLevel))
    grant_parser.add_argument("--granted-by", default=None)
    grant_parser.set_defaults(handler=_cmd_grant)

    revoke_parser = subparsers.add_parser(
        "revoke",
        parents=[common],
        help="Remove an explicit permission grant",
    )
    _add_grant_target(revoke_parser)
    revoke_parser.set_defaults(handler=_cmd_revoke)

    # run-task ------------------------------------------------------------
    run_parser = subparsers.add_parser(
        "run-task",
        parents=[common, principal],
        help="Decompose a task with the controller and dispatch it to workers",
        description=(
            "Create a root task, let the controller plan it, and run every subtask.\n\n"
            "Examples:\n"
            "  bastion run-task 'write and review a parser' --script replies.json\n"
            "  bastion run-task 'summarize the repo' --profile permissive\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    run_parser.add_argument("description", help="What the task should accomplish")
    run_parser.add_argument(
        "--script",
        dest="script_path",
        default=None,
        help="JSON reply script for the scripted reasoning provider",
    )
    run_parser.set_defaults(handler=_cmd_run_task)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Print the redacted effective config",
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


def _add_grant_target(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("target_principal", help="Principal receiving the change")
    parser.add_argument("resource_type", choices=tuple(item.value for item in ResourceType))
    parser.add_argument("resource_id")


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_exec(args: argparse.Namespace) -> int:
    code = _read_source(args.code, args.code_file, what="code")
    try:
        language = SandboxLanguage.parse(args.language)
    except ValueError as exc:
        raise CLIError(str(exc), exit_code=2) from exc
    params: dict[str, Any] = {"language": language.value, "code": code}
    if args.input_file is not None:
        params["input"] = _read_text(args.input_file)
    if args.timeout_ms is not None:
        params["timeout_ms"] = args.timeout_ms

    principal = _principal(args)
    with _app_session(args) as ctx:
        registry = ctx.build_tool_registry(principal)
        result = asyncio.run(registry.execute_tool(CODE_EXECUTION_TOOL_ID, params))

    if _flag(args, "json"):
        _emit_json(result.to_dict())
        return 1 if result.is_error else 0

    renderer = _get_renderer(args)
    error_code = result.metadata.get("error_code")
    if result.is_error:
        renderer.fail(f"{language.value} execution ({error_code or 'error'})")
    else:
        renderer.ok(f"{language.value} execution")
    for key in ("execution_id", "execution_time_ms", "peak_memory_bytes", "correlation_id"):
        if key in result.metadata:
            renderer.detail(key, result.metadata[key])
    renderer.block("Output", result.content)
    return 1 if result.is_error else 0


def _cmd_scan(args: argparse.Namespace) -> int:
    content = _read_source(args.content, args.content_file, what="content")
    principal = _principal(args)
    with _app_session(args) as ctx:
        if args.language:
            verdict = ctx.content_filter.scan_code_for_malicious_patterns(
                content, args.language, principal.id
            )
        else:
            verdict = ctx.content_filter.analyze_content(content, principal.id)

    if _flag(args, "json"):
        _emit_json(verdict.to_dict())
        return 0 if verdict.is_allowed else 1

    renderer = _get_renderer(args)
    if verdict.is_allowed:
        renderer.ok("content allowed")
    else:
        renderer.fail(f"content blocked: {verdict.reason or 'policy'}")
    renderer.table(
        ["Category", "Confidence"],
        [[score.category.value, f"{score.confidence:.2f}"] for score in verdict.categories],
        title="Categories:",
    )
    if verdict.redacted_content is not None:
        renderer.block("Redacted", verdict.redacted_content)
    return 0 if verdict.is_allowed else 1


def _cmd_quota(args: argparse.Namespace) -> int:
    principal = _principal(args)
    with _app_session(args) as ctx:
        report = ctx.rate_limiter.get_user_quota(principal)
        metrics = {kind: ctx.rate_limiter.get_usage_metrics(principal, kind) for kind in LimitType}

    if _flag(args, "json"):
        payload: dict[str, object] = dict(report.to_dict())
        payload["limits"] = {kind.value: item.to_dict() for kind, item in metrics.items()}
        _emit_json(payload)
        return 0

    renderer = _get_renderer(args)
    renderer.heading(f"Quota for {principal.id} ({principal.tier.value})")
    quota = report.quota.to_dict()
    quota.pop("principal_id", None)
    renderer.mapping("Quota", quota)
    renderer.mapping("Usage", report.usage)
    renderer.table(
        ["Limit", "Used", "Limit", "Remaining", "Resets"],
        [
            [
                kind.value,
                str(item.current),
                str(item.limit),
                str(item.remaining),
                "-" if item.reset_at is None else item.reset_at.isoformat(),
            ]
            for kind, item in metrics.items()
        ],
        title="Rate limits:",
    )
    return 0


def _cmd_grant(args: argparse.Namespace) -> int:
    with _app_session(args) as ctx:
        permission = ctx.permissions.grant_permission(
            args.target_principal,
            ResourceType(args.resource_type),
            args.resource_id,
            PermissionLevel(args.level),
            granted_by=args.granted_by,
        )
    if _flag(args, "json"):
        _emit_json(permission.to_dict())
        return 0
    renderer = _get_renderer(args)
    renderer.ok(
        f"granted {permission.level.value} on "
        f"{permission.resource_type.value}:{permission.resource_id} "
        f"to {permission.principal_id}"
    )
    renderer.detail("permission_id", permission.id)
    return 0


def _cmd_revoke(args: argparse.Namespace) -> int:
    with _app_session(args) as ctx:
        removed = ctx.permissions.revoke_permission(
            args.target_principal, ResourceType(args.resource_type), args.resource_id
        )
    target = f"{args.resource_type}:{args.resource_id}"
    if _flag(args, "json"):
        _emit_json({"removed": removed, "principal_id": args.target_principal, "target": target})
        return 0 if removed else 1
    renderer = _get_renderer(args)
    if removed:
        renderer.ok(f"revoked {target} from {args.target_principal}")
        return 0
    renderer.fail(f"no grant on {target} for {args.target_principal}")
    return 1


def _cmd_run_task(args: argparse.Namespace) -> int:
    principal = _principal(args)
    script_path = _optional_str(args.script_path)
    if script_path is not None and not Path(script_path).is_file():
        raise CLIError(f"script file not found: {script_path}", exit_code=2)

    with _app_session(args) as ctx:
        model = ctx.reasoning_model(script_path=script_path)
        controller = ctx.build_controller(principal, model)
        root = ctx.tasks.create_task(
            principal.id, _task_title(args.description), args.description
        )
        try:
            with correlation_scope(principal_id=principal.id):
                result = asyncio.run(
                    controller.process_task(args.description, parent_task_id=root.id)
                )
        except ProviderError:
            raise
        except BastionError as exc:
            raise CLIError(f"task {root.id} failed: {exc}", exit_code=1) from exc
        final = ctx.tasks.get_task(root.id)

    status = "unknown" if final is None else final.status.value
    if _flag(args, "json"):
        payload = dict(result.to_dict())
        payload["task_id"] = root.id
        payload["task_status"] = status
        _emit_json(payload)
        return 0 if result.success else 1

    renderer = _get_renderer(args)
    renderer.heading(f"Task {root.id}: {status}")
    if result.plan is not None:
        renderer.kv("Plan", result.plan.name)
    renderer.table(
        ["Subtask", "Role", "Status", "Message"],
        [
            [outcome.subtask_id, outcome.role, outcome.status.value, outcome.message]
            for outcome in result.outcomes
        ],
        title="Subtasks:",
    )
    if result.synthesis:
        renderer.block("Result", result.synthesis)
    if result.success:
        renderer.ok(result.message)
        return 0
    renderer.fail(result.message)
    return 1


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    if _flag(args, "json"):
        _emit_json(effective_config(config))
        return 0
    _get_renderer(args).text(dump_effective_config(config, indent=2))
    return 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@contextmanager
def _app_session(args: argparse.Namespace) -> Iterator[AppContext]:
    """Load config, start per-run logging, and build the app context for one command."""

    config = _load_effective_config(args)
    run_id = generate_run_id()
    handle = setup_logging(config["observability"], run_id=run_id)
    try:
        with correlation_scope(run_id=run_id):
            yield AppContext.from_config(config)
    finally:
        shutdown_logging(handle)


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    config_path = _optional_str(getattr(args, "config_path", None))
    profile = _optional_str(getattr(args, "profile", None))
    overrides: dict[str, object] = {}
    backend = _optional_str(getattr(args, "sandbox_backend", None))
    if backend is not None:
        overrides["sandbox.backend"] = backend

    try:
        return load_config(config_path, profile=profile, cli_overrides=overrides)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _principal(args: argparse.Namespace) -> Principal:
    roles = tuple(args.roles) if args.roles else ("user",)
    try:
        return Principal(id=args.principal_id, tier=SubscriptionTier(args.tier), roles=roles)
    except ValueError as exc:
        raise CLIError(f"invalid principal: {exc}", exit_code=2) from exc


def _read_source(inline: str | None, path: str | None, *, what: str) -> str:
    if inline is not None and path is not None:
        raise CLIError(f"pass {what} inline or with --file, not both", exit_code=2)
    if path is not None:
        return _read_text(path)
    if inline is None or not inline.strip():
        raise CLIError(f"no {what} given", exit_code=2)
    return inline


def _read_text(path: str) -> str:
    if path == "-":
        return sys.stdin.read()
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise CLIError(f"cannot read {path}: {exc.strerror or exc}", exit_code=2) from exc


def _task_title(description: str) -> str:
    first_line = description.strip().splitlines()[0] if description.strip() else "task"
    if len(first_line) > _TITLE_LIMIT:
        return first_line[: _TITLE_LIMIT - 3].rstrip() + "..."
    return first_line


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=_flag(args, "no_color"), verbose=_flag(args, "verbose"))


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


def _optional_str(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


__all__ = ["CLIError", "build_parser", "run_cli"]

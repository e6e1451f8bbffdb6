"""Unit tests for the in-process tool registry."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from bastion_orchestrator.domain.models import ToolType
from bastion_orchestrator.tools.base import Tool, ToolCapability, ToolResult
from bastion_orchestrator.tools.registry import ToolRegistry

if TYPE_CHECKING:
    from collections.abc import Mapping

    from conftest import RecordingLogger


@dataclass
class _EchoTool:
    id: str
    type: ToolType = ToolType.DATA_PROCESSING
    capabilities: tuple[ToolCapability, ...] = (ToolCapability.TEXT_PROCESSING,)
    name: str = "Echo"
    description: str = "Returns its input"
    fail_with: Exception | None = None

    @property
    def input_schema(self) -> Mapping[str, object]:
        return {"type": "object", "properties": {"text": {"type": "string"}}}

    async def is_available(self) -> bool:
        return True

    async def execute(self, params: Mapping[str, object]) -> ToolResult:
        if self.fail_with is not None:
            raise self.fail_with
        return ToolResult(content=str(params.get("text", "")))


def test_echo_tool_satisfies_the_protocol() -> None:
    assert isinstance(_EchoTool("echo"), Tool)


def test_register_get_and_unregister(recording_logger: RecordingLogger) -> None:
    registry = ToolRegistry([_EchoTool("echo")], logger=recording_logger)

    assert "echo" in registry
    assert len(registry) == 1
    assert registry.get("missing") is None

    registry.register(_EchoTool("echo", name="Echo v2"))
    replaced = registry.get("echo")
    assert replaced is not None
    assert replaced.name == "Echo v2"
    assert "tool_overwritten" in recording_logger.names()

    assert registry.unregister("echo")
    assert not registry.unregister("echo")
    assert len(registry) == 0


def test_list_tools_filters_by_type_and_all_capabilities() -> None:
    analysis = _EchoTool(
        "analysis",
        type=ToolType.CODE_EXECUTION,
        capabilities=(ToolCapability.CODE_EXECUTION, ToolCapability.CODE_ANALYSIS),
    )
    runner = _EchoTool(
        "runner", type=ToolType.CODE_EXECUTION, capabilities=(ToolCapability.CODE_EXECUTION,)
    )
    registry = ToolRegistry([analysis, runner, _EchoTool("echo")])

    assert [tool.id for tool in registry.list_tools()] == ["analysis", "runner", "echo"]
    assert [tool.id for tool in registry.list_tools(ToolType.CODE_EXECUTION)] == [
        "analysis",
        "runner",
    ]
    both = registry.list_tools(capabilities=["code_execution", ToolCapability.CODE_ANALYSIS])
    assert [tool.id for tool in both] == ["analysis"]
    assert registry.list_tools(ToolType.DEPLOYMENT) == []


async def test_execute_tool_dispatches_and_wraps_failures(
    recording_logger: RecordingLogger,
) -> None:
    registry = ToolRegistry(
        [_EchoTool("echo"), _EchoTool("broken", fail_with=RuntimeError("disk on fire"))],
        logger=recording_logger,
    )

    ok = await registry.execute_tool("echo", {"text": "hi"})
    missing = await registry.execute_tool("nope", {})
    broken = await registry.execute_tool("broken", {})

    assert ok == ToolResult(content="hi")
    assert missing.is_error
    assert missing.content == "Error: Tool not found: nope"
    assert broken.is_error
    assert broken.content == "Error executing tool: disk on fire"
    assert "tool_execution_failed" in recording_logger.names()


def test_tool_result_serializes() -> None:
    result = ToolResult.error("boom", error_code="execution_failed")

    assert result.to_dict() == {
        "content": "boom",
        "is_error": True,
        "metadata": {"error_code": "execution_failed"},
    }

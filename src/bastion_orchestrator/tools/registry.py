"""In-process registry of agent-callable tools."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Any

import structlog

from bastion_orchestrator.tools.base import ToolCapability, ToolResult

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from bastion_orchestrator.domain.models import JSONValue, ToolType
    from bastion_orchestrator.tools.base import Tool


class ToolRegistry:
    def __init__(self, tools: Iterable[Tool] = (), *, logger: Any | None = None) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._lock = threading.Lock()
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        with self._lock:
            if tool.id in self._tools:
                self._logger.warning("tool_overwritten", tool_id=tool.id)
            self._tools[tool.id] = tool
        self._logger.debug("tool_registered", tool_id=tool.id, tool_type=str(tool.type))

    def unregister(self, tool_id: str) -> bool:
        with self._lock:
            return self._tools.pop(tool_id, None) is not None

    def get(self, tool_id: str) -> Tool | None:
        with self._lock:
            return self._tools.get(tool_id)

    def list_tools(
        self,
        tool_type: ToolType | None = None,
        capabilities: Iterable[ToolCapability | str] | None = None,
    ) -> list[Tool]:
        """Registered tools, optionally filtered by type and required capabilities.

        A tool matches the capability filter only when it has every listed capability.
        """

        required = (
            frozenset(ToolCapability(item) for item in capabilities)
            if capabilities is not None
            else frozenset()
        )
        with self._lock:
            tools = list(self._tools.values())
        return [
            tool
            for tool in tools
            if (tool_type is None or tool.type == tool_type)
            and required.issubset(tool.capabilities)
        ]

    async def execute_tool(self, tool_id: str, params: Mapping[str, JSONValue]) -> ToolResult:
        tool = self.get(tool_id)
        if tool is None:
            return ToolResult.error(f"Error: Tool not found: {tool_id}")
        try:
            return await tool.execute(params)
        except Exception as exc:  # noqa: BLE001 - tool failures become error results
            self._logger.error(
                "tool_execution_failed",
                tool_id=tool_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return ToolResult.error(f"Error executing tool: {exc}")

    def __len__(self) -> int:
        with self._lock:
            return len(self._tools)

    def __contains__(self, tool_id: object) -> bool:
        with self._lock:
            return tool_id in self._tools


__all__ = ["ToolRegistry"]

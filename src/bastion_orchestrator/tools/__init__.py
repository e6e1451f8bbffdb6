"""Agent-callable tools, their registry, and the sandboxed code execution tool."""

from bastion_orchestrator.tools.base import Tool, ToolCapability, ToolResult
from bastion_orchestrator.tools.code_execution import CODE_EXECUTION_TOOL_ID, CodeExecutionTool
from bastion_orchestrator.tools.registry import ToolRegistry

__all__ = [
    "CODE_EXECUTION_TOOL_ID",
    "CodeExecutionTool",
    "Tool",
    "ToolCapability",
    "ToolRegistry",
    "ToolResult",
]

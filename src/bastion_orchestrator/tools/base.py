"""
bastion-orchestrator — tool contract

File: src/bastion_orchestrator/tools/base.py
Last updated: 2026-10-19

Purpose
- The interface every agent-callable tool implements and the result it returns.

Functional requirements
- Tools expose identity, type, capability tags and a JSON input schema.
- ``execute`` never raises for ordinary tool failures; it returns ``is_error=True``.

Non-functional requirements
- Tool results are immutable and JSON-serializable.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Mapping

    from bastion_orchestrator.domain.models import JSONValue, ToolType


class ToolCapability(StrEnum):
    WEB_SEARCH = "web_search"
    WEB_SCRAPING = "web_scraping"
    CODE_EXECUTION = "code_execution"
    CODE_ANALYSIS = "code_analysis"
    FILE_READ = "file_read"
    FILE_WRITE = "file_write"
    FILE_DELETE = "file_delete"
    IMAGE_ANALYSIS = "image_analysis"
    IMAGE_GENERATION = "image_generation"
    IMAGE_EDITING = "image_editing"
    DATA_VISUALIZATION = "data_visualization"
    DATA_PROCESSING = "data_processing"
    DOCUMENT_ANALYSIS = "document_analysis"
    TEXT_PROCESSING = "text_processing"
    CONTAINER_MANAGEMENT = "container_management"
    DOMAIN_MANAGEMENT = "domain_management"
    MONITORING = "monitoring"


@dataclass(frozen=True, slots=True)
class ToolResult:
    """Outcome of one tool invocation."""

    content: str
    is_error: bool = False
    metadata: dict[str, JSONValue] = field(default_factory=dict)

    @classmethod
    def error(cls, message: str, **metadata: JSONValue) -> ToolResult:
        return cls(content=message, is_error=True, metadata=dict(metadata))

    def to_dict(self) -> dict[str, JSONValue]:
        return {"content": self.content, "is_error": self.is_error, "metadata": dict(self.metadata)}


@runtime_checkable
class Tool(Protocol):
    @property
    def id(self) -> str: ...

    @property
    def name(self) -> str: ...

    @property
    def description(self) -> str: ...

    @property
    def type(self) -> ToolType: ...

    @property
    def capabilities(self) -> tuple[ToolCapability, ...]: ...

    @property
    def input_schema(self) -> Mapping[str, JSONValue]: ...

    async def is_available(self) -> bool: ...

    async def execute(self, params: Mapping[str, JSONValue]) -> ToolResult: ...


__all__ = ["Tool", "ToolCapability", "ToolResult"]

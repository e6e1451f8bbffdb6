"""Conversation-holding agent that talks to a reasoning model and can call tools."""

from __future__ import annotations

import json
import threading
from typing import TYPE_CHECKING, Any

import structlog

from bastion_orchestrator.agents.reasoning import (
    CompletionOptions,
    MessageRole,
    ModelMessage,
    ToolSpec,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from bastion_orchestrator.agents.reasoning import ReasoningModel
    from bastion_orchestrator.domain.models import JSONValue
    from bastion_orchestrator.tools.base import Tool, ToolResult


class BaseAgent:
    def __init__(
        self,
        name: str,
        role: str,
        description: str,
        system_prompt: str,
        model: ReasoningModel,
        *,
        tools: Iterable[Tool] = (),
        temperature: float = 0.7,
        logger: Any | None = None,
    ) -> None:
        self.name = name
        self.role = role
        self.description = description
        self.system_prompt = system_prompt
        self._model = model
        self._tools: dict[str, Tool] = {tool.id: tool for tool in tools}
        self._temperature = temperature
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._history_lock = threading.Lock()
        self._history: list[ModelMessage] = [
            ModelMessage(role=MessageRole.SYSTEM, content=system_prompt)
        ]

    @property
    def tools(self) -> tuple[Tool, ...]:
        return tuple(self._tools.values())

    async def process(self, prompt: str | ModelMessage) -> ModelMessage:
        """Append ``prompt`` to the history, ask the model, and record its answer."""

        message = (
            prompt
            if isinstance(prompt, ModelMessage)
            else ModelMessage(role=MessageRole.USER, content=prompt)
        )
        self.add_message(message)
        conversation = [item for item in self.get_history() if item.role is not MessageRole.SYSTEM]
        options = CompletionOptions(
            system_prompt=self.system_prompt,
            tools=tuple(
                ToolSpec(name=tool.id, description=tool.description, input_schema=tool.input_schema)
                for tool in self._tools.values()
            ),
            temperature=self._temperature,
        )
        response = await self._model.complete(conversation, options)
        self.add_message(response)
        return response

    async def use_tool(self, tool_id: str, params: Mapping[str, JSONValue]) -> ToolResult:
        tool = self._tools.get(tool_id)
        if tool is None:
            raise KeyError(f'Tool "{tool_id}" not found')
        result = await tool.execute(params)
        self.add_message(
            ModelMessage(
                role=MessageRole.SYSTEM,
                content=f'Used tool "{tool_id}" with result: {json.dumps(result.to_dict())}',
                metadata={"tool_id": tool_id, "is_error": result.is_error},
            )
        )
        self._logger.debug(
            "agent_tool_used", agent_role=self.role, tool_id=tool_id, is_error=result.is_error
        )
        return result

    def get_history(self) -> list[ModelMessage]:
        with self._history_lock:
            return list(self._history)

    def add_message(self, message: ModelMessage) -> None:
        with self._history_lock:
            self._history.append(message)

    def clear_history(self) -> None:
        """Drop everything except the leading system prompt."""

        with self._history_lock:
            self._history = [
                item for item in self._history[:1] if item.role is MessageRole.SYSTEM
            ]


__all__ = ["BaseAgent"]

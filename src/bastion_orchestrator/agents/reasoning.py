"""
bastion-orchestrator — reasoning model boundary

File: src/bastion_orchestrator/agents/reasoning.py
Last updated: 2026-10-19

Purpose
- The async ``complete(messages, options)`` contract agents call, plus two providers: a
  deterministic scripted model for offline runs and tests, and an Anthropic adapter.

Functional requirements
- The scripted model must answer identically for identical scripts and inputs.
- The Anthropic SDK is optional; it is imported only when the adapter first needs a
  client, and a missing SDK or API key surfaces as ``ProviderError``.

Non-functional requirements
- Provider failures never leak SDK exception types past this module.
"""

from __future__ import annotations

import importlib
import json
import os
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, cast

import structlog

from bastion_orchestrator.domain.errors import ProviderError
from bastion_orchestrator.domain.models import utc_now

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence

    from bastion_orchestrator.domain.models import JSONValue

_DEFAULT_MAX_TOKENS = 4096


class MessageRole(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(frozen=True, slots=True)
class ModelMessage:
    role: MessageRole
    content: str
    created_at: datetime = field(default_factory=utc_now)
    metadata: dict[str, JSONValue] = field(default_factory=dict)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "role": self.role.value,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True, slots=True)
class ToolSpec:
    """Tool description handed to the model; execution stays with the agent."""

    name: str
    description: str
    input_schema: Mapping[str, JSONValue]


@dataclass(frozen=True, slots=True)
class CompletionOptions:
    system_prompt: str
    tools: tuple[ToolSpec, ...] = ()
    temperature: float = 0.7
    max_tokens: int | None = None

    def __post_init__(self) -> None:
        if not 0.0 <= self.temperature <= 1.0:
            raise ValueError("temperature must be within [0, 1]")
        if self.max_tokens is not None and self.max_tokens <= 0:
            raise ValueError("max_tokens must be > 0")


class ReasoningModel(Protocol):
    @property
    def name(self) -> str: ...

    async def complete(
        self, messages: Sequence[ModelMessage], options: CompletionOptions
    ) -> ModelMessage: ...


@dataclass(frozen=True, slots=True)
class ScriptRule:
    """Answer ``response`` whenever ``match`` occurs in the latest user message."""

    match: str
    response: str


class ScriptedReasoningModel:
    """Offline model that replays scripted answers.

    Rules are checked first, in order, against the latest user message. Otherwise the
    next queued response is returned, then ``default``. With nothing left to answer the
    call raises ``ProviderError``.
    """

    def __init__(
        self,
        responses: Iterable[str] = (),
        *,
        rules: Iterable[ScriptRule] = (),
        default: str | None = None,
    ) -> None:
        self._responses: deque[str] = deque(responses)
        self._rules = tuple(rules)
        self._default = default
        self._lock = threading.Lock()
        self.calls: list[tuple[tuple[ModelMessage, ...], CompletionOptions]] = []

    @property
    def name(self) -> str:
        return "scripted"

    @classmethod
    def from_script(cls, script: Mapping[str, object]) -> ScriptedReasoningModel:
        """Build from ``{"responses": [...], "rules": [{match, response}], "default": ...}``."""

        unknown = sorted(set(script) - {"responses", "rules", "default"})
        if unknown:
            raise ValueError(f"unknown script keys: {', '.join(unknown)}")
        responses = script.get("responses", [])
        if not isinstance(responses, list) or not all(isinstance(r, str) for r in responses):
            raise ValueError("script.responses must be a list of strings")
        raw_rules = script.get("rules", [])
        if not isinstance(raw_rules, list):
            raise ValueError("script.rules must be a list")
        rules: list[ScriptRule] = []
        for index, raw in enumerate(raw_rules):
            if (
                not isinstance(raw, dict)
                or not isinstance(raw.get("match"), str)
                or not isinstance(raw.get("response"), str)
            ):
                raise ValueError(f"script.rules[{index}] must have string match and response")
            rules.append(ScriptRule(match=raw["match"], response=raw["response"]))
        default = script.get("default")
        if default is not None and not isinstance(default, str):
            raise ValueError("script.default must be a string")
        return cls(responses, rules=rules, default=default)

    @classmethod
    def from_file(cls, path: str | Path) -> ScriptedReasoningModel:
        try:
            with Path(path).open("r", encoding="utf-8") as handle:
                loaded = cast("object", json.load(handle))
        except (OSError, json.JSONDecodeError) as exc:
            raise ProviderError(f"unable to read model script {path}: {exc}") from exc
        if isinstance(loaded, list):
            loaded = {"responses": loaded}
        if not isinstance(loaded, dict):
            raise ProviderError(f"model script {path} must be a JSON object or list")
        try:
            return cls.from_script(loaded)
        except ValueError as exc:
            raise ProviderError(f"invalid model script {path}: {exc}") from exc

    async def complete(
        self, messages: Sequence[ModelMessage], options: CompletionOptions
    ) -> ModelMessage:
        prompt = _latest_user_content(messages)
        with self._lock:
            self.calls.append((tuple(messages), options))
            answer = self._next_answer(prompt)
        if answer is None:
            raise ProviderError("scripted model has no response left")
        return ModelMessage(role=MessageRole.ASSISTANT, content=answer)

    def _next_answer(self, prompt: str) -> str | None:
        for rule in self._rules:
            if rule.match in prompt:
                return rule.response
        if self._responses:
            return self._responses.popleft()
        return self._default


class _AnthropicMessagesAPI(Protocol):
    async def create(self, **kwargs: object) -> object: ...


class _AnthropicClient(Protocol):
    messages: _AnthropicMessagesAPI


class AnthropicReasoningModel:
    """Anthropic messages adapter; the SDK is loaded on first use."""

    def __init__(
        self,
        *,
        model: str,
        api_key_env: str,
        max_tokens: int = _DEFAULT_MAX_TOKENS,
        client: _AnthropicClient | None = None,
        logger: Any | None = None,
    ) -> None:
        if not model.strip():
            raise ValueError("model must not be empty")
        self._model = model.strip()
        self._api_key_env = api_key_env
        self._max_tokens = max_tokens
        self._client = client
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def name(self) -> str:
        return "anthropic"

    @property
    def model(self) -> str:
        return self._model

    async def complete(
        self, messages: Sequence[ModelMessage], options: CompletionOptions
    ) -> ModelMessage:
        client = self._ensure_client()
        payload = self._build_payload(messages, options)
        try:
            raw = await client.messages.create(**payload)
        except Exception as exc:  # noqa: BLE001 - SDK errors are mapped to ProviderError
            self._logger.error(
                "reasoning_call_failed",
                provider=self.name,
                model=self._model,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise ProviderError(f"anthropic call failed: {type(exc).__name__}: {exc}") from exc
        return ModelMessage(
            role=MessageRole.ASSISTANT,
            content=_extract_text(raw),
            metadata={
                "model": _read_str(raw, "model") or self._model,
                "stop_reason": _read_str(raw, "stop_reason"),
            },
        )

    def _ensure_client(self) -> _AnthropicClient:
        if self._client is not None:
            return self._client
        try:
            anthropic_module = importlib.import_module("anthropic")
        except ImportError as exc:
            raise ProviderError(
                "anthropic SDK is not installed; install bastion-orchestrator[anthropic]"
            ) from exc
        async_anthropic = getattr(anthropic_module, "AsyncAnthropic", None)
        if async_anthropic is None:
            raise ProviderError("anthropic SDK does not expose AsyncAnthropic")
        api_key = os.getenv(self._api_key_env)
        if api_key is None or not api_key.strip():
            raise ProviderError(f"missing Anthropic API key in env var {self._api_key_env}")
        self._client = cast("_AnthropicClient", async_anthropic(api_key=api_key))
        return self._client

    def _build_payload(
        self, messages: Sequence[ModelMessage], options: CompletionOptions
    ) -> dict[str, object]:
        conversation = [
            {"role": message.role.value, "content": message.content}
            for message in messages
            if message.role is not MessageRole.SYSTEM
        ]
        if not conversation:
            raise ProviderError("at least one user or assistant message is required")
        payload: dict[str, object] = {
            "model": self._model,
            "messages": conversation,
            "system": options.system_prompt,
            "temperature": options.temperature,
            "max_tokens": options.max_tokens or self._max_tokens,
        }
        if options.tools:
            payload["tools"] = [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "input_schema": dict(tool.input_schema),
                }
                for tool in options.tools
            ]
        return payload


def create_reasoning_model(
    providers: Mapping[str, Any],
    *,
    script_path: str | Path | None = None,
    logger: Any | None = None,
) -> ReasoningModel:
    """Build the configured default provider from the ``providers`` config section."""

    default = providers["default"]
    if default == "scripted":
        if script_path is None:
            return ScriptedReasoningModel()
        return ScriptedReasoningModel.from_file(script_path)
    if default == "anthropic":
        settings = providers["anthropic"]
        return AnthropicReasoningModel(
            model=settings["model"],
            api_key_env=settings["api_key_env"],
            max_tokens=settings.get("max_tokens", _DEFAULT_MAX_TOKENS),
            logger=logger,
        )
    raise ProviderError(f"unknown reasoning provider {default!r}")


def _latest_user_content(messages: Sequence[ModelMessage]) -> str:
    for message in reversed(messages):
        if message.role is MessageRole.USER:
            return message.content
    return ""


def _extract_text(raw: object) -> str:
    blocks = raw.get("content") if isinstance(raw, dict) else getattr(raw, "content", None)
    if isinstance(blocks, str):
        return blocks
    if not isinstance(blocks, (list, tuple)):
        return ""
    parts: list[str] = []
    for block in blocks:
        block_type = _read_str(block, "type")
        text = _read_str(block, "text")
        if block_type == "text" and text is not None:
            parts.append(text)
    return "".join(parts)


def _read_str(value: object, key: str) -> str | None:
    item = value.get(key) if isinstance(value, dict) else getattr(value, key, None)
    return item if isinstance(item, str) else None


__all__ = [
    "AnthropicReasoningModel",
    "CompletionOptions",
    "MessageRole",
    "ModelMessage",
    "ReasoningModel",
    "ScriptRule",
    "ScriptedReasoningModel",
    "ToolSpec",
    "create_reasoning_model",
]

"""Uniform LLM client contract and streaming accumulation.

Vendor adapters translate their wire format into StreamUpdate objects.
Tool calls may arrive in pieces (id, name and partial argument JSON
spread over several updates); they are keyed by the provider's stream
index and only treated as complete once the stream has ended.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

from agentkit.history.messages import Message, ToolCall

logger = logging.getLogger(__name__)


class FinishReason(StrEnum):
    STOP = "stop"
    LENGTH = "length"
    TOOL_CALLS = "tool_calls"
    CONTENT_FILTER = "content_filter"


@dataclass(frozen=True)
class LlmUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class ToolCallFragment:
    """A piece of a streamed tool call. Only index is required."""

    index: int
    id: str | None = None
    name: str | None = None
    arguments_delta: str = ""


@dataclass(frozen=True)
class StreamUpdate:
    """A single event from a streaming LLM response."""

    text_delta: str | None = None
    tool_call: ToolCallFragment | None = None
    usage: LlmUsage | None = None
    finish_reason: FinishReason | None = None


class LlmClient(Protocol):
    """Streaming chat client for one model."""

    model_name: str

    def stream_response(
        self,
        messages: Sequence[Message],
        tools: list[dict[str, Any]],
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamUpdate]: ...


# ------------------------------------------------------------------
# Tool call accumulation
# ------------------------------------------------------------------


@dataclass
class _ToolCallBuilder:
    id: str | None = None
    name: str | None = None
    argument_parts: list[str] = field(default_factory=list)


class ToolCallAccumulator:
    """Assembles streamed tool-call fragments by stream index."""

    def __init__(self) -> None:
        self._builders: dict[int, _ToolCallBuilder] = {}

    def __len__(self) -> int:
        return len(self._builders)

    def add(self, fragment: ToolCallFragment) -> None:
        builder = self._builders.setdefault(fragment.index, _ToolCallBuilder())
        if fragment.id:
            builder.id = fragment.id
        if fragment.name:
            builder.name = fragment.name
        if fragment.arguments_delta:
            builder.argument_parts.append(fragment.arguments_delta)

    def finalize(self) -> list[ToolCall]:
        """Completed tool calls in stream-index order.

        A fragment set that never received a function name cannot be
        executed and is discarded. Providers that omit call ids get a
        generated one so tool results can still reference the call.
        """
        calls: list[ToolCall] = []
        for index in sorted(self._builders):
            builder = self._builders[index]
            if not builder.name:
                logger.warning("Discarding tool call at stream index %d without a name", index)
                continue
            arguments = "".join(builder.argument_parts).strip() or "{}"
            calls.append(
                ToolCall(
                    id=builder.id or f"call_{uuid.uuid4().hex[:12]}",
                    function_name=builder.name,
                    arguments=arguments,
                )
            )
        return calls


@dataclass
class RoundResponse:
    """Everything collected from one streamed LLM response."""

    text: str
    tool_calls: list[ToolCall]
    usage: LlmUsage | None = None
    finish_reason: FinishReason | None = None

"""Shared fixtures: scripted LLM clients and settings factories.

Nothing here touches the network or a database. The SQL store tests
bring their own fixtures and only run when AGENTKIT_TEST_DB_URL is set.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from collections.abc import AsyncIterator, Sequence
from typing import Any

import pytest

from agentkit.api.llm import FinishReason, LlmUsage, StreamUpdate, ToolCallFragment
from agentkit.config import Settings
from agentkit.history.messages import Message
from agentkit.history.schemas import ToolResultStrategy

# ---------------------------------------------------------------------------
# Scripted responses
# ---------------------------------------------------------------------------


def text_round(text: str, input_tokens: int = 0, output_tokens: int = 0) -> list[StreamUpdate]:
    """A response with plain text, streamed in two pieces."""
    half = len(text) // 2
    updates = [StreamUpdate(text_delta=text[:half]), StreamUpdate(text_delta=text[half:])]
    if input_tokens or output_tokens:
        updates.append(StreamUpdate(usage=LlmUsage(input_tokens, output_tokens)))
    updates.append(StreamUpdate(finish_reason=FinishReason.STOP))
    return updates


def tool_round(*calls: tuple[str, dict[str, Any]] | tuple[str, dict[str, Any], str], text: str = "") -> list[StreamUpdate]:
    """A response requesting tools. Arguments arrive split across fragments."""
    updates: list[StreamUpdate] = []
    if text:
        updates.append(StreamUpdate(text_delta=text))
    for index, call in enumerate(calls):
        name, args = call[0], call[1]
        call_id = call[2] if len(call) > 2 else f"call_{uuid.uuid4().hex[:8]}"
        payload = json.dumps(args)
        cut = len(payload) // 2
        updates.append(StreamUpdate(tool_call=ToolCallFragment(index=index, id=call_id, name=name)))
        updates.append(StreamUpdate(tool_call=ToolCallFragment(index=index, arguments_delta=payload[:cut])))
        updates.append(StreamUpdate(tool_call=ToolCallFragment(index=index, arguments_delta=payload[cut:])))
    updates.append(StreamUpdate(finish_reason=FinishReason.TOOL_CALLS))
    return updates


class ScriptedLlm:
    """LlmClient that replays one scripted response per call.

    A script entry may be a list of StreamUpdates or an exception to
    raise when the stream is read. Every call's messages are recorded.
    """

    model_name = "scripted-model"

    def __init__(self, rounds: Sequence[list[StreamUpdate] | BaseException] = ()):
        self.rounds = list(rounds)
        self.calls: list[list[Message]] = []
        self.tools_seen: list[list[dict]] = []

    def add(self, *rounds: list[StreamUpdate] | BaseException) -> None:
        self.rounds.extend(rounds)

    async def stream_response(
        self,
        messages: Sequence[Message],
        tools: list[dict[str, Any]],
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamUpdate]:
        self.calls.append(list(messages))
        self.tools_seen.append(tools)
        if not self.rounds:
            raise RuntimeError("No scripted response left")
        script = self.rounds.pop(0)
        if isinstance(script, BaseException):
            raise script
        for update in script:
            yield update


class LoopingToolLlm:
    """Always requests the same tool; used for budget and stuck tests."""

    model_name = "looping-model"

    def __init__(self, tool_name: str = "echo", vary_arguments: bool = False):
        self.tool_name = tool_name
        self.vary_arguments = vary_arguments
        self.call_count = 0

    async def stream_response(self, messages, tools, cancel=None):
        self.call_count += 1
        args = {"text": str(self.call_count)} if self.vary_arguments else {"text": "same"}
        for update in tool_round((self.tool_name, args, f"call_{self.call_count}"), text=f"step {self.call_count}"):
            yield update


class HangingLlm:
    """Streams one text delta, then blocks until cancelled."""

    model_name = "hanging-model"

    def __init__(self):
        self.started = asyncio.Event()

    async def stream_response(self, messages, tools, cancel=None):
        yield StreamUpdate(text_delta="partial")
        self.started.set()
        await asyncio.Event().wait()


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def make_settings(**overrides: Any) -> Settings:
    """Settings with no context trimming unless a test asks for it."""
    defaults: dict[str, Any] = {
        "max_messages_to_send": 0,
        "tool_result_strategy": ToolResultStrategy.UNLIMITED,
        "system_prompt": "",
        "summarization_enabled": False,
    }
    defaults.update(overrides)
    return Settings(_env_file=None, **defaults)


@pytest.fixture
def settings() -> Settings:
    return make_settings()

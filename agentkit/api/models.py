"""Result data models for the API layer.

Kept apart from runner.py so the task loop and chat session can import
them without pulling in the engine.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta

from agentkit.api.llm import LlmUsage
from agentkit.history.messages import Message, ToolCall


@dataclass
class TurnResult:
    """Outcome of one human-initiated turn."""

    response_text: str = ""
    llm_calls_executed: int = 0
    completion_signal: str | None = None
    success: bool = True
    error: str | None = None
    # UI tool calls the host must answer before the turn can continue
    pending_tool_calls: list[ToolCall] = field(default_factory=list)
    tool_rounds: int = 0
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def is_paused(self) -> bool:
        return bool(self.pending_tool_calls)


@dataclass
class RunResult:
    """Outcome of an autonomous task run."""

    final_answer: str = ""
    turns_executed: int = 0
    total_llm_calls: int = 0
    success: bool = False
    error: str | None = None
    duration: timedelta = field(default_factory=timedelta)


@dataclass
class RoundOutcome:
    """One committed LLM round: the assistant message and its tool results."""

    assistant: Message
    tool_messages: list[Message] = field(default_factory=list)
    pending_tool_calls: list[ToolCall] = field(default_factory=list)
    completion_signal: str | None = None
    usage: LlmUsage | None = None

    @property
    def text(self) -> str:
        return self.assistant.text or ""

    @property
    def tool_calls(self) -> list[ToolCall]:
        return list(self.assistant.tool_calls)

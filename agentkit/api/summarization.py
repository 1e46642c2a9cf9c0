"""LLM-powered conversation summaries for checkpoints.

The chat session hands the oldest part of its history to a Summarizer
when the history grows past the configured trigger; the resulting text
becomes a Checkpoint summary.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Sequence
from typing import Protocol

from agentkit.api.llm import LlmClient
from agentkit.history.messages import Message, Role

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------
# Summarization Prompts
# ------------------------------------------------------------------

CHECKPOINT_SYSTEM_PROMPT = """\
You are a conversation summarizer. Output ONLY a structured summary.
TARGET LENGTH: 400-800 words. Prioritize precision over completeness.

## Format

## Goal
[1-2 sentences]

## Constraints & Preferences
- [Requirements, technical constraints]

## Progress
### Done
- [x] [Completed items]
### In Progress
- [ ] [Current work]

## Key Decisions
- **[Decision]**: [Rationale]

## Tool Activity
- [Tools called and what their results established]

## Next Steps
1. [Ordered list]

## Critical Context
- [Identifiers, error messages, values the conversation depends on]
"""

UPDATE_SYSTEM_PROMPT = """\
You are updating a conversation summary with new messages.
TARGET LENGTH: 400-800 words. If exceeding, prioritize:
1. Recent progress and decisions
2. Critical context (identifiers, errors, values)
3. Active constraints
Drop older completed "Done" items if needed.

RULES:
1. PRESERVE existing info unless explicitly superseded
2. ADD new progress, decisions, context
3. MOVE In Progress -> Done when completed
4. PRESERVE exact identifiers, tool names, error messages
5. Use SAME format as existing summary

Output ONLY the updated summary."""

# Section patterns for validation (case-insensitive, flexible)
_SECTION_PATTERNS = [
    re.compile(r"##\s*goals?\b", re.IGNORECASE),
    re.compile(r"##\s*progress\b", re.IGNORECASE),
    re.compile(r"##\s*critical\s*context\b", re.IGNORECASE),
]

MIN_SUMMARY_CHARS = 200
MAX_SUMMARY_CHARS = 8000


class SummaryValidationError(ValueError):
    """The model produced a summary that does not look like one."""


class Summarizer(Protocol):
    async def summarize(
        self, messages: Sequence[Message], existing_summary: str | None = None
    ) -> str: ...


def serialize_for_summary(messages: Sequence[Message]) -> str:
    """Render messages as readable text for the summarizer prompt."""
    lines = []
    for msg in messages:
        text = msg.text or ""
        if msg.role == Role.TOOL:
            lines.append(f"**Tool result ({msg.tool_call_id}):** {text}")
        elif msg.role == Role.ASSISTANT:
            calls = "".join(
                f"\n[called {tc.function_name}({tc.arguments})]" for tc in msg.tool_calls
            )
            lines.append(f"**Assistant:** {text}{calls}")
        elif msg.role == Role.SYSTEM:
            lines.append(f"**System:** {text}")
        else:
            suffix = " [with image]" if msg.has_images else ""
            lines.append(f"**User:** {text}{suffix}")
    return "\n\n".join(lines)


def validate_summary(summary: str) -> bool:
    """Basic format + length check, not a content check."""
    if len(summary) < MIN_SUMMARY_CHARS:
        logger.warning("Summary too short (%d chars)", len(summary))
        return False
    if len(summary) > MAX_SUMMARY_CHARS:
        logger.warning(
            "Summary exceeds %d chars (%d) - accepting with warning",
            MAX_SUMMARY_CHARS, len(summary),
        )
    found = sum(1 for pat in _SECTION_PATTERNS if pat.search(summary))
    if found < 2:
        logger.warning("Summary missing sections (%d/3)", found)
        return False
    return True


class LlmSummarizer:
    """Produces structured checkpoint summaries through an LlmClient."""

    def __init__(self, llm: LlmClient, validate: bool = True) -> None:
        self._llm = llm
        self._validate = validate

    async def summarize(
        self, messages: Sequence[Message], existing_summary: str | None = None
    ) -> str:
        if existing_summary:
            user_content = (
                f"## Existing Summary\n\n{existing_summary}\n\n"
                f"## New Conversation\n\n"
                f"{serialize_for_summary(messages)}"
            )
            system = UPDATE_SYSTEM_PROMPT
        else:
            user_content = serialize_for_summary(messages)
            system = CHECKPOINT_SYSTEM_PROMPT

        start_time = time.monotonic()
        parts: list[str] = []
        async for update in self._llm.stream_response(
            [Message.system(system), Message.user(user_content)], []
        ):
            if update.text_delta:
                parts.append(update.text_delta)
        summary = "".join(parts).strip()

        if self._validate and not validate_summary(summary):
            raise SummaryValidationError("Summary failed validation")

        logger.info(
            "Summarized %d messages into %d chars (%d ms)",
            len(messages), len(summary), int((time.monotonic() - start_time) * 1000),
        )
        return summary

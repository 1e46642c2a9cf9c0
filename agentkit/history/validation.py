"""Conversation-validity checks and structural repair.

A sequence is valid when:
  1. no two adjacent messages are both user messages;
  2. two assistant messages with only tool messages (or nothing) between
     them are allowed only if the earlier one requested tools and at least
     one tool message separates them;
  3. every tool message answers a tool call of the nearest preceding
     non-tool message, and every assistant tool call is answered by the
     tool messages that directly follow it.

Repair only ever drops messages. It works on a copy, one violation at a
time from the front, re-scanning after each removal, so the output is
always valid and repairing it again changes nothing.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from agentkit.history.messages import Message, Role
from agentkit.history.schemas import ValidationResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Violation:
    """First invariant violation found by a scan, with the indices to drop."""

    reason: str
    drop: tuple[int, ...]


def _tool_run(messages: Sequence[Message], start: int) -> list[int]:
    """Indices of the contiguous tool messages beginning at start."""
    run = []
    i = start
    while i < len(messages) and messages[i].role == Role.TOOL:
        run.append(i)
        i += 1
    return run


def _scan(messages: Sequence[Message]) -> list[_Violation]:
    """Walk front-to-back and collect every violation in order.

    Each violation's drop set is computed against the unmodified input,
    so only the first one is safe to apply before re-scanning.
    """
    violations: list[_Violation] = []
    last_non_tool: int | None = None
    tool_since_last = False

    for i, msg in enumerate(messages):
        if msg.role == Role.TOOL:
            anchor = messages[last_non_tool] if last_non_tool is not None else None
            if (
                anchor is None
                or anchor.role != Role.ASSISTANT
                or msg.tool_call_id not in anchor.tool_call_ids()
            ):
                violations.append(
                    _Violation(f"orphan tool result {msg.tool_call_id!r} at {i}", (i,))
                )
            tool_since_last = True
            continue

        if msg.role == Role.USER and i > 0 and messages[i - 1].role == Role.USER:
            violations.append(_Violation(f"consecutive user messages at {i - 1},{i}", (i - 1,)))

        if msg.role == Role.ASSISTANT and last_non_tool is not None:
            prev = messages[last_non_tool]
            if prev.role == Role.ASSISTANT and (not tool_since_last or not prev.has_tool_calls):
                violations.append(
                    _Violation(
                        f"consecutive assistant messages at {last_non_tool},{i}",
                        (last_non_tool,),
                    )
                )

        if msg.role == Role.ASSISTANT and msg.has_tool_calls:
            run = _tool_run(messages, i + 1)
            answered = {messages[j].tool_call_id for j in run}
            missing = msg.tool_call_ids() - answered
            if missing:
                # The call and whatever results survived go together.
                violations.append(
                    _Violation(
                        f"unanswered tool calls {sorted(missing)} at {i}",
                        (i, *run),
                    )
                )

        last_non_tool = i
        tool_since_last = False

    return violations


def validate_messages(messages: Sequence[Message]) -> ValidationResult:
    """Check a sequence against the conversation-validity invariants."""
    return ValidationResult(errors=[v.reason for v in _scan(messages)])


def is_valid(messages: Sequence[Message]) -> bool:
    return not _scan(messages)


def repair_messages(messages: Sequence[Message]) -> list[Message]:
    """Drop messages until the sequence satisfies every invariant.

    Never mutates its input. Returns a new list (possibly empty).
    """
    result = list(messages)
    dropped = 0
    while True:
        violations = _scan(result)
        if not violations:
            break
        first = violations[0]
        logger.debug("Repairing history: %s", first.reason)
        drop = set(first.drop)
        result = [m for i, m in enumerate(result) if i not in drop]
        dropped += len(drop)

    if dropped:
        logger.info(
            "History repair dropped %d message(s) (%d -> %d)",
            dropped, len(messages), len(result),
        )
    return result

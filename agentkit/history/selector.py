"""Context selection: which messages the model sees on each call.

Three passes over an immutable history:
  1. Content reduction -- old tool results (and optionally old images)
     are replaced by placeholders. Message count never changes here.
  2. Count capping -- at most max_messages_to_send messages survive,
     the most recent keep_recent_messages_intact always among them and
     leading system messages preferred over older conversation.
  3. Structural repair -- capping can cut tool calls away from their
     results, so the capped sequence is repaired before it is returned.

Passes 1 and 2 are each safe on their own; pass 3 makes them safe together.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import replace

from agentkit.history.messages import (
    ImageContent,
    Message,
    MessageContent,
    Role,
    ToolResultContent,
)
from agentkit.history.schemas import (
    IMAGE_OMITTED_PLACEHOLDER,
    OMITTED_PLACEHOLDER,
    RetentionPolicy,
    ToolResultPolicy,
)
from agentkit.history.validation import repair_messages

logger = logging.getLogger(__name__)


def select_messages(history: Sequence[Message], policy: RetentionPolicy) -> list[Message]:
    """Select the messages to send to the model for one LLM call."""
    if not history:
        return []

    selected = reduce_tool_results(history, policy.tool_results)
    if policy.max_multimodal_messages is not None:
        selected = reduce_multimodal(selected, policy.max_multimodal_messages)
    selected = cap_messages(
        selected,
        policy.max_messages_to_send,
        policy.keep_recent_messages_intact,
    )
    return repair_messages(selected)


# ------------------------------------------------------------------
# Pass 1: content reduction
# ------------------------------------------------------------------


def _placeholder_tool_message(msg: Message) -> Message:
    contents: list[MessageContent] = [
        replace(c, result=OMITTED_PLACEHOLDER) if isinstance(c, ToolResultContent) else c
        for c in msg.contents
    ]
    return replace(msg, text=OMITTED_PLACEHOLDER, contents=contents)


def reduce_tool_results(history: Sequence[Message], policy: ToolResultPolicy) -> list[Message]:
    """Replace the text of all but the most recent tool results.

    Position decides recency, not tool_call_id, so duplicate ids from a
    misbehaving provider cannot keep an old result alive.
    """
    keep = policy.keep_count()
    if keep is None:
        return list(history)

    tool_positions = [i for i, m in enumerate(history) if m.role == Role.TOOL]
    if len(tool_positions) <= keep:
        return list(history)

    cutoff = len(tool_positions) - keep
    omit = set(tool_positions[:cutoff])
    result = [
        _placeholder_tool_message(m) if i in omit else m
        for i, m in enumerate(history)
    ]
    logger.debug(
        "Tool results: %d of %d replaced with placeholder",
        len(omit), len(tool_positions),
    )
    return result


def _strip_images(msg: Message) -> Message:
    remaining = [c for c in msg.contents if not isinstance(c, ImageContent)]
    if len(remaining) == len(msg.contents):
        return msg
    if not remaining:
        return replace(msg, text=IMAGE_OMITTED_PLACEHOLDER, contents=[])
    return replace(msg, contents=remaining)


def reduce_multimodal(history: Sequence[Message], max_multimodal: int) -> list[Message]:
    """Strip image parts from all but the most recent max_multimodal messages carrying them."""
    image_positions = [i for i, m in enumerate(history) if m.has_images]
    if len(image_positions) <= max_multimodal:
        return list(history)

    strip = set(image_positions[: len(image_positions) - max_multimodal])
    return [_strip_images(m) if i in strip else m for i, m in enumerate(history)]


# ------------------------------------------------------------------
# Pass 2: count capping
# ------------------------------------------------------------------


def cap_messages(
    history: Sequence[Message],
    max_messages: int,
    keep_recent_intact: int,
) -> list[Message]:
    """Keep at most max_messages messages, preferring the tail.

    The last keep_recent_intact messages are always kept, even if that
    exceeds max_messages. Leading system messages take any slots left
    after the protected tail before older conversation does.
    """
    total = len(history)
    if max_messages <= 0 or total <= max_messages:
        return list(history)

    protected = min(keep_recent_intact, total)
    budget = max(max_messages, protected)
    if budget >= total:
        return list(history)

    leading_system = 0
    for msg in history[: total - protected]:
        if msg.role != Role.SYSTEM:
            break
        leading_system += 1

    system_keep = min(leading_system, budget - protected)
    tail_count = budget - system_keep
    result = list(history[:system_keep]) + list(history[total - tail_count:])
    logger.debug(
        "Capped history %d -> %d messages (%d system kept, %d protected)",
        total, len(result), system_keep, protected,
    )
    return result

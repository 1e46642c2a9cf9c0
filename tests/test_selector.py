"""Tests for context selection: content reduction, capping and repair.

Property tests run over seeded random conversations built from whole
exchanges (user, assistant with tool calls, tool results, assistant
reply), so every generated input is itself valid.
"""

from __future__ import annotations

import random

import pytest

from agentkit.history.messages import (
    ImageContent,
    Message,
    Role,
    TextContent,
    ToolCall,
    ToolResultContent,
)
from agentkit.history.schemas import (
    IMAGE_OMITTED_PLACEHOLDER,
    OMITTED_PLACEHOLDER,
    RetentionPolicy,
    ToolResultPolicy,
)
from agentkit.history.selector import (
    cap_messages,
    reduce_multimodal,
    reduce_tool_results,
    select_messages,
)
from agentkit.history.validation import is_valid, repair_messages

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _call(call_id: str, name: str = "lookup") -> ToolCall:
    return ToolCall(id=call_id, function_name=name, arguments='{"q": "x"}')


def _random_conversation(rng: random.Random, exchanges: int) -> list[Message]:
    messages: list[Message] = []
    if rng.random() < 0.5:
        messages.append(Message.system("You are helpful."))
    counter = 0
    for n in range(exchanges):
        messages.append(Message.user(f"question {n}"))
        for _ in range(rng.randint(0, 3)):
            calls = []
            for _ in range(rng.randint(1, 2)):
                counter += 1
                calls.append(_call(f"c{counter}"))
            messages.append(Message.assistant("", calls))
            messages.extend(Message.tool(c.id, f"result for {c.id}") for c in calls)
        messages.append(Message.assistant(f"answer {n}"))
    return messages


def _random_policy(rng: random.Random) -> RetentionPolicy:
    tool_policy = rng.choice([
        ToolResultPolicy.unlimited(),
        ToolResultPolicy.recent(rng.randint(0, 5)),
        ToolResultPolicy.keep_one(),
        ToolResultPolicy.drop_all(),
    ])
    return RetentionPolicy(
        max_messages_to_send=rng.choice([0, rng.randint(1, 30)]),
        keep_recent_messages_intact=rng.randint(0, 8),
        tool_results=tool_policy,
    )


def _has_orphans(messages: list[Message]) -> bool:
    call_ids = {tc.id for m in messages for tc in m.tool_calls}
    return any(m.role == Role.TOOL and m.tool_call_id not in call_ids for m in messages)


SEEDS = range(40)


# ---------------------------------------------------------------------------
# Properties
# ---------------------------------------------------------------------------


class TestSelectionProperties:
    @pytest.mark.parametrize("seed", SEEDS)
    def test_output_always_valid(self, seed):
        rng = random.Random(seed)
        history = _random_conversation(rng, rng.randint(1, 12))
        policy = _random_policy(rng)
        selected = select_messages(history, policy)
        assert is_valid(selected)
        assert not _has_orphans(selected)

    @pytest.mark.parametrize("seed", SEEDS)
    def test_content_reduction_keeps_count(self, seed):
        rng = random.Random(seed)
        history = _random_conversation(rng, rng.randint(1, 12))
        reduced = reduce_tool_results(history, ToolResultPolicy.recent(rng.randint(0, 4)))
        assert len(reduced) == len(history)
        assert [m.role for m in reduced] == [m.role for m in history]
        assert [m.tool_call_id for m in reduced] == [m.tool_call_id for m in history]

    @pytest.mark.parametrize("seed", SEEDS)
    def test_recent_tool_results_intact(self, seed):
        rng = random.Random(seed)
        history = _random_conversation(rng, rng.randint(1, 12))
        n = rng.randint(0, 4)
        reduced = reduce_tool_results(history, ToolResultPolicy.recent(n))

        original_tools = [m for m in history if m.role == Role.TOOL]
        reduced_tools = [m for m in reduced if m.role == Role.TOOL]
        keep_from = max(0, len(original_tools) - n)
        for i, (orig, new) in enumerate(zip(original_tools, reduced_tools)):
            if i >= keep_from:
                assert new.text == orig.text
            else:
                assert new.text == OMITTED_PLACEHOLDER

    @pytest.mark.parametrize("seed", SEEDS)
    def test_repair_idempotent(self, seed):
        rng = random.Random(seed)
        history = _random_conversation(rng, rng.randint(1, 10))
        # Damage the conversation by dropping random messages
        damaged = [m for m in history if rng.random() > 0.3]
        once = repair_messages(damaged)
        assert is_valid(once)
        assert repair_messages(once) == once

    @pytest.mark.parametrize("seed", SEEDS)
    def test_cap_respected_unless_protected_tail_is_larger(self, seed):
        rng = random.Random(seed)
        history = _random_conversation(rng, rng.randint(1, 12))
        policy = _random_policy(rng)
        selected = select_messages(history, policy)
        if policy.max_messages_to_send:
            limit = max(policy.max_messages_to_send, policy.keep_recent_messages_intact)
            assert len(selected) <= limit

    def test_input_never_mutated(self):
        rng = random.Random(7)
        history = _random_conversation(rng, 8)
        snapshot = list(history)
        texts = [m.text for m in history]
        select_messages(history, RetentionPolicy(
            max_messages_to_send=5,
            keep_recent_messages_intact=2,
            tool_results=ToolResultPolicy.drop_all(),
        ))
        assert history == snapshot
        assert [m.text for m in history] == texts


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------


class TestScenarios:
    def test_basic_compression_keep_recent_four(self):
        """System, user, then 10 tool exchanges: only the last 4 results stay."""
        history = [Message.system("sys"), Message.user("go")]
        for i in range(10):
            history.append(Message.assistant("", [_call(f"t{i}")]))
            history.append(Message.tool(f"t{i}", f"result {i}"))

        selected = select_messages(history, RetentionPolicy(tool_results=ToolResultPolicy.recent(4)))

        assert len(selected) == len(history)
        tool_texts = [m.text for m in selected if m.role == Role.TOOL]
        assert tool_texts[:6] == [OMITTED_PLACEHOLDER] * 6
        assert tool_texts[6:] == ["result 6", "result 7", "result 8", "result 9"]
        assert is_valid(selected)

    def test_orphan_repair_ten_pairs(self):
        history = [Message.system("sys"), Message.user("go")]
        for i in range(10):
            history.append(Message.assistant("", [_call(f"t{i}")]))
            history.append(Message.tool(f"t{i}", f"result {i}"))

        selected = select_messages(
            history,
            RetentionPolicy(
                max_messages_to_send=5,
                keep_recent_messages_intact=2,
                tool_results=ToolResultPolicy.recent(4),
            ),
        )
        assert len(selected) <= 5
        assert not _has_orphans(selected)
        assert is_valid(selected)
        assert selected[0].role == Role.SYSTEM
        assert selected[-1].text == "result 9"

    def test_orphan_repair_after_capping(self):
        """A cap cutting an assistant away from its results drops the orphans."""
        history = [
            Message.user("u1"),
            Message.assistant("", [_call("a"), _call("b")]),
            Message.tool("a", "ra"),
            Message.tool("b", "rb"),
            Message.assistant("done 1"),
            Message.user("u2"),
            Message.assistant("", [_call("c")]),
            Message.tool("c", "rc"),
            Message.assistant("done 2"),
        ]
        # The last 6 start with tool result "b", whose call was cut away.
        selected = select_messages(
            history,
            RetentionPolicy(max_messages_to_send=6, keep_recent_messages_intact=2),
        )
        assert is_valid(selected)
        assert not _has_orphans(selected)
        assert [m.text for m in selected] == ["done 1", "u2", "", "rc", "done 2"]

    def test_leading_system_survives_cap(self):
        history = [Message.system("sys")]
        for i in range(10):
            history.append(Message.user(f"u{i}"))
            history.append(Message.assistant(f"a{i}"))
        selected = select_messages(
            history,
            RetentionPolicy(max_messages_to_send=5, keep_recent_messages_intact=2),
        )
        assert selected[0].role == Role.SYSTEM
        assert len(selected) <= 5
        assert selected[-1].text == "a9"

    def test_empty_history(self):
        assert select_messages([], RetentionPolicy(max_messages_to_send=3)) == []

    def test_unlimited_is_identity_for_valid_history(self):
        history = [
            Message.user("q"),
            Message.assistant("", [_call("x")]),
            Message.tool("x", "r"),
            Message.assistant("a"),
        ]
        assert select_messages(history, RetentionPolicy()) == history


# ---------------------------------------------------------------------------
# Individual passes
# ---------------------------------------------------------------------------


class TestReduceToolResults:
    def test_drop_all_replaces_every_result(self):
        history = [
            Message.user("q"),
            Message.assistant("", [_call("x"), _call("y")]),
            Message.tool("x", "rx"),
            Message.tool("y", "ry"),
        ]
        reduced = reduce_tool_results(history, ToolResultPolicy.drop_all())
        assert [m.text for m in reduced[2:]] == [OMITTED_PLACEHOLDER] * 2
        assert [m.tool_call_id for m in reduced[2:]] == ["x", "y"]

    def test_keep_one(self):
        history = [
            Message.user("q"),
            Message.assistant("", [_call("x"), _call("y")]),
            Message.tool("x", "rx"),
            Message.tool("y", "ry"),
        ]
        reduced = reduce_tool_results(history, ToolResultPolicy.keep_one())
        assert [m.text for m in reduced[2:]] == [OMITTED_PLACEHOLDER, "ry"]

    def test_tool_result_content_parts_replaced(self):
        msg = Message(
            role=Role.TOOL,
            text="big",
            contents=[ToolResultContent("x", "big")],
            tool_call_id="x",
        )
        history = [Message.user("q"), Message.assistant("", [_call("x")]), msg]
        reduced = reduce_tool_results(history, ToolResultPolicy.drop_all())
        assert reduced[2].contents[0].result == OMITTED_PLACEHOLDER
        # The stored message is untouched
        assert msg.contents[0].result == "big"

    def test_recency_by_position_not_id(self):
        history = [
            Message.user("q"),
            Message.assistant("", [_call("dup")]),
            Message.tool("dup", "old"),
            Message.assistant("", [_call("dup")]),
            Message.tool("dup", "new"),
        ]
        reduced = reduce_tool_results(history, ToolResultPolicy.recent(1))
        assert reduced[2].text == OMITTED_PLACEHOLDER
        assert reduced[4].text == "new"


class TestReduceMultimodal:
    def _image_message(self, n: int) -> Message:
        return Message(
            role=Role.USER,
            text=f"look {n}",
            contents=[TextContent(f"look {n}"), ImageContent(b"\x89PNG", "image/png")],
        )

    def test_keeps_most_recent_images(self):
        history = []
        for n in range(3):
            history.append(self._image_message(n))
            history.append(Message.assistant(f"seen {n}"))
        reduced = reduce_multimodal(history, 1)
        assert [m.has_images for m in reduced if m.role == Role.USER] == [False, False, True]
        assert reduced[0].text == "look 0"

    def test_image_only_message_gets_placeholder(self):
        msg = Message(role=Role.USER, contents=[ImageContent(b"data", "image/png")])
        reduced = reduce_multimodal([msg, self._image_message(1)], 1)
        assert reduced[0].text == IMAGE_OMITTED_PLACEHOLDER
        assert reduced[0].contents == []


class TestCapMessages:
    def _plain(self, n: int) -> list[Message]:
        out = []
        for i in range(n):
            out.append(Message.user(f"u{i}") if i % 2 == 0 else Message.assistant(f"a{i}"))
        return out

    def test_no_cap_when_zero(self):
        history = self._plain(10)
        assert cap_messages(history, 0, 2) == history

    def test_keeps_tail(self):
        history = self._plain(10)
        capped = cap_messages(history, 4, 2)
        assert capped == history[-4:]

    def test_protected_tail_exceeds_cap(self):
        history = self._plain(10)
        capped = cap_messages(history, 3, 6)
        assert capped == history[-6:]

    def test_system_takes_slot_before_old_messages(self):
        history = [Message.system("s"), *self._plain(10)]
        capped = cap_messages(history, 4, 2)
        assert capped[0].role == Role.SYSTEM
        assert capped[1:] == history[-3:]

    def test_system_not_exempt_when_tail_fills_budget(self):
        history = [Message.system("s"), *self._plain(10)]
        capped = cap_messages(history, 3, 3)
        assert all(m.role != Role.SYSTEM for m in capped)
        assert len(capped) == 3

"""Chat session -- a persistent, human-in-the-loop conversation.

Wraps a TurnEngine with a HistoryStore: history is restored from the
latest checkpoint on initialize(), every new message is appended to the
store as soon as it exists, and (optionally) old history is summarized
into a checkpoint once it grows past summarization_trigger_at.

System messages are never persisted; the engine re-adds its configured
system prompt on every turn.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable

from agentkit.api.models import TurnResult
from agentkit.api.runner import TurnEngine
from agentkit.api.summarization import Summarizer
from agentkit.config import Settings
from agentkit.history.messages import FileAttachment, Message, Role
from agentkit.history.schemas import Checkpoint, HistoryStats
from agentkit.history.selector import select_messages
from agentkit.history.store import HistoryStore

logger = logging.getLogger(__name__)

# Builds the message that carries a checkpoint summary back into context
SummaryMessageFactory = Callable[[Checkpoint], Message]


def summary_as_system_message(checkpoint: Checkpoint) -> Message:
    """Ready-made factory: the summary as a system message."""
    return Message.system(f"[Previous conversation summary]\n\n{checkpoint.summary}")


class ChatSession:
    def __init__(
        self,
        engine: TurnEngine,
        conversation_id: str | None = None,
        store: HistoryStore | None = None,
        summarizer: Summarizer | None = None,
        settings: Settings | None = None,
        summary_message: SummaryMessageFactory | None = None,
    ) -> None:
        self.engine = engine
        self.conversation_id = conversation_id or engine.conversation_id or uuid.uuid4().hex
        engine.conversation_id = self.conversation_id
        self.store = store
        self.summarizer = summarizer
        self.settings = settings or engine.settings
        self._summary_message = summary_message
        # id(message) -> (message, turn number) for every message known to be in the store
        self._persisted: dict[int, tuple[Message, int]] = {}
        # Context-only messages (checkpoint summaries) that must never be stored
        self._transient: dict[int, Message] = {}
        self._checkpoint: Checkpoint | None = None
        self._last_turn: int | None = None
        self._initialized = False

    @property
    def checkpoint(self) -> Checkpoint | None:
        """The checkpoint in-memory history currently starts after."""
        return self._checkpoint

    async def initialize(self) -> None:
        """Load history from the store, starting after the latest checkpoint."""
        if self._initialized:
            return
        self._initialized = True
        if self.store is None:
            return

        checkpoint = await self.store.get_latest_checkpoint(self.conversation_id)
        after = checkpoint.up_to_turn_number if checkpoint else None
        turns = await self.store.load_turns(self.conversation_id, after_turn=after)
        messages = [t.message for t in turns]
        self._persisted = {id(t.message): (t.message, t.turn_number) for t in turns}
        self._checkpoint = checkpoint
        self._last_turn = turns[-1].turn_number if turns else after

        self.engine.history.replace_history(self._with_summary(checkpoint, messages))
        logger.info(
            "Loaded conversation %s: %d message(s)%s",
            self.conversation_id,
            len(messages),
            f" after checkpoint at turn {checkpoint.up_to_turn_number}" if checkpoint else "",
        )

    def _with_summary(self, checkpoint: Checkpoint | None, messages: list[Message]) -> list[Message]:
        if checkpoint is None or self._summary_message is None:
            return messages
        summary = self._summary_message(checkpoint)
        self._transient[id(summary)] = summary
        return [summary, *messages]

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send(
        self,
        text: str,
        files: list[FileAttachment] | None = None,
        cancel: asyncio.Event | None = None,
    ) -> TurnResult:
        """Persist the user message, run the turn, persist what it produced."""
        await self.initialize()
        self.engine.history.add_message(Message.user(text, attachments=files))
        await self._persist_new()

        result = await self.engine.execute_turn(text, files, cancel=cancel)
        await self._after_turn()
        return result

    async def send_tool_result(
        self,
        tool_call_id: str,
        result: str,
        cancel: asyncio.Event | None = None,
    ) -> TurnResult:
        """Answer a UI tool call from a paused turn.

        The turn resumes once every UI call in the paused batch has a
        result; until then the remaining calls are reported as pending.
        """
        await self.initialize()
        pending = self.engine.unanswered_tool_calls()
        if tool_call_id not in {tc.id for tc in pending}:
            raise ValueError(f"No pending tool call with id {tool_call_id!r}")

        self.engine.history.add_message(Message.tool(tool_call_id, result))
        await self._persist_new()

        remaining = [
            tc for tc in pending
            if tc.id != tool_call_id and self.engine.tools.is_ui_tool(tc.function_name)
        ]
        if remaining:
            return TurnResult(pending_tool_calls=remaining)

        turn = await self.engine.resume_turn(cancel=cancel)
        await self._after_turn()
        return turn

    async def _after_turn(self) -> None:
        await self._persist_new()
        if self.settings.summarization_enabled:
            await self._maybe_summarize()

    async def _persist_new(self) -> None:
        if self.store is None:
            return
        new = [
            m
            for m in self.engine.history.get_history()
            if m.role != Role.SYSTEM and id(m) not in self._persisted and id(m) not in self._transient
        ]
        if not new:
            return
        numbers = await self.store.append_messages(self.conversation_id, new)
        for message, number in zip(new, numbers):
            self._persisted[id(message)] = (message, number)
        self._last_turn = numbers[-1]

    def _turn_number(self, message: Message) -> int | None:
        entry = self._persisted.get(id(message))
        return entry[1] if entry and entry[0] is message else None

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    async def create_checkpoint(
        self,
        summary: str,
        up_to_turn_number: int | None = None,
        metadata: dict | None = None,
    ) -> Checkpoint:
        """Record a summary of the conversation up to (and including) a turn.

        Defaults to the latest persisted turn. Messages are never deleted.
        """
        if self.store is None:
            raise RuntimeError("A history store must be configured to create checkpoints")
        if up_to_turn_number is None:
            if self._last_turn is None:
                raise ValueError("Nothing has been persisted yet; cannot checkpoint")
            up_to_turn_number = self._last_turn

        checkpoint = Checkpoint(
            up_to_turn_number=up_to_turn_number, summary=summary, metadata=metadata
        )
        await self.store.create_checkpoint(self.conversation_id, checkpoint)
        return checkpoint

    async def get_latest_checkpoint(self) -> Checkpoint | None:
        if self.store is None:
            return None
        return await self.store.get_latest_checkpoint(self.conversation_id)

    async def load_from_checkpoint(self) -> tuple[Checkpoint | None, list[Message]]:
        """Latest checkpoint and the durable messages after it."""
        if self.store is None:
            return None, self.engine.history.get_history()
        return await self.store.load_from_checkpoint(self.conversation_id)

    async def _maybe_summarize(self) -> None:
        """Fold the oldest messages into a checkpoint once history is too long.

        Failures are logged; the conversation carries on unsummarized.
        """
        if self.store is None or self.summarizer is None:
            return
        history = self.engine.history.get_history()
        if len(history) < self.settings.summarization_trigger_at:
            return

        keep = self.settings.summarization_keep_recent
        split = len(history) - keep
        older, recent = history[:split], history[split:]
        to_summarize = [
            m for m in older if m.role != Role.SYSTEM and self._turn_number(m) is not None
        ]
        if not to_summarize:
            return
        last_turn = self._turn_number(to_summarize[-1])

        try:
            filtered = select_messages(to_summarize, self.settings.summary_retention_policy())
            existing = self._checkpoint.summary if self._checkpoint else None
            summary = await self.summarizer.summarize(filtered, existing_summary=existing)
            checkpoint = await self.create_checkpoint(
                summary,
                up_to_turn_number=last_turn,
                metadata={
                    "auto_created": True,
                    "original_message_count": len(to_summarize),
                    "filtered_message_count": len(filtered),
                },
            )
        except Exception as e:
            logger.warning(
                "Automatic checkpoint for conversation %s failed: %s", self.conversation_id, e
            )
            return

        self._checkpoint = checkpoint
        system = [m for m in older if m.role == Role.SYSTEM and id(m) not in self._transient]
        self._transient.clear()
        recent_ids = {id(m) for m in recent}
        self._persisted = {k: v for k, v in self._persisted.items() if k in recent_ids}
        self.engine.history.replace_history(system + self._with_summary(checkpoint, recent))
        logger.info(
            "Checkpointed conversation %s at turn %d: %d message(s) summarized, %d kept",
            self.conversation_id, last_turn, len(to_summarize), len(recent),
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_stats(self) -> HistoryStats:
        return self.engine.history.get_stats()

    def clear_history(self) -> None:
        """Clear in-memory history. The store is left untouched."""
        self.engine.history.clear()
        self._transient.clear()

"""History store contract and the in-memory implementation.

A store is an append-only, turn-numbered message log per conversation
plus a list of checkpoints. Turn numbers are assigned by the store as
max(existing) + 1, starting at 0, so they continue across restarts.
Checkpoints never delete messages.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable

from agentkit.history.messages import Message
from agentkit.history.schemas import Checkpoint

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredTurn:
    """A persisted message with its store-assigned turn number."""

    turn_number: int
    message: Message
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@runtime_checkable
class HistoryStore(Protocol):
    """Durable conversation history. Each call is atomic."""

    async def append_messages(self, conversation_id: str, messages: list[Message]) -> list[int]:
        """Append messages; return their assigned turn numbers."""
        ...

    async def append_message(self, conversation_id: str, message: Message) -> int: ...

    async def load(self, conversation_id: str) -> list[Message] | None:
        """All messages in turn order, or None for an unknown conversation."""
        ...

    async def load_turns(self, conversation_id: str, after_turn: int | None = None) -> list[StoredTurn]: ...

    async def delete(self, conversation_id: str) -> None: ...

    async def list_conversations(self) -> list[str]: ...

    async def get_message_count(self, conversation_id: str) -> int: ...

    async def create_checkpoint(self, conversation_id: str, checkpoint: Checkpoint) -> None: ...

    async def get_latest_checkpoint(self, conversation_id: str) -> Checkpoint | None: ...

    async def load_from_checkpoint(
        self, conversation_id: str
    ) -> tuple[Checkpoint | None, list[Message]]: ...


def latest_checkpoint(checkpoints: list[Checkpoint]) -> Checkpoint | None:
    """Highest up_to_turn_number wins; ties go to the most recently created."""
    if not checkpoints:
        return None
    return max(checkpoints, key=lambda c: (c.up_to_turn_number, c.created_at))


@dataclass
class _Conversation:
    turns: list[StoredTurn] = field(default_factory=list)
    checkpoints: list[Checkpoint] = field(default_factory=list)
    tenant_id: str | None = None
    user_id: str | None = None


class InMemoryHistoryStore:
    """Process-local HistoryStore. Useful for tests and ephemeral agents.

    Conversations created through a store scoped to a tenant/user are only
    listed by stores with the same scope; a store without a scope lists all.
    """

    def __init__(
        self,
        tenant_id: str | None = None,
        user_id: str | None = None,
        *,
        _shared: dict[str, _Conversation] | None = None,
    ) -> None:
        self._tenant_id = tenant_id
        self._user_id = user_id
        self._conversations: dict[str, _Conversation] = _shared if _shared is not None else {}

    def scoped(self, tenant_id: str | None = None, user_id: str | None = None) -> InMemoryHistoryStore:
        """Another view of the same data with a different tenant/user scope."""
        return InMemoryHistoryStore(tenant_id, user_id, _shared=self._conversations)

    def _get_or_create(self, conversation_id: str) -> _Conversation:
        conv = self._conversations.get(conversation_id)
        if conv is None:
            conv = _Conversation(tenant_id=self._tenant_id, user_id=self._user_id)
            self._conversations[conversation_id] = conv
        return conv

    async def append_messages(self, conversation_id: str, messages: list[Message]) -> list[int]:
        if not messages:
            return []
        conv = self._get_or_create(conversation_id)
        next_turn = max((t.turn_number for t in conv.turns), default=-1) + 1
        numbers = []
        for message in messages:
            conv.turns.append(StoredTurn(turn_number=next_turn, message=message))
            numbers.append(next_turn)
            next_turn += 1
        logger.debug("Appended %d message(s) to conversation %s", len(messages), conversation_id)
        return numbers

    async def append_message(self, conversation_id: str, message: Message) -> int:
        (number,) = await self.append_messages(conversation_id, [message])
        return number

    async def load(self, conversation_id: str) -> list[Message] | None:
        conv = self._conversations.get(conversation_id)
        if conv is None:
            return None
        return [t.message for t in sorted(conv.turns, key=lambda t: t.turn_number)]

    async def load_turns(self, conversation_id: str, after_turn: int | None = None) -> list[StoredTurn]:
        conv = self._conversations.get(conversation_id)
        if conv is None:
            return []
        turns = sorted(conv.turns, key=lambda t: t.turn_number)
        if after_turn is not None:
            turns = [t for t in turns if t.turn_number > after_turn]
        return turns

    async def delete(self, conversation_id: str) -> None:
        if self._conversations.pop(conversation_id, None) is not None:
            logger.info("Deleted conversation %s", conversation_id)

    async def list_conversations(self) -> list[str]:
        return [
            cid
            for cid, conv in self._conversations.items()
            if (self._tenant_id is None or conv.tenant_id == self._tenant_id)
            and (self._user_id is None or conv.user_id == self._user_id)
        ]

    async def get_message_count(self, conversation_id: str) -> int:
        conv = self._conversations.get(conversation_id)
        return len(conv.turns) if conv else 0

    async def create_checkpoint(self, conversation_id: str, checkpoint: Checkpoint) -> None:
        conv = self._get_or_create(conversation_id)
        conv.checkpoints.append(checkpoint)
        logger.info(
            "Created checkpoint for conversation %s up to turn %d",
            conversation_id, checkpoint.up_to_turn_number,
        )

    async def get_latest_checkpoint(self, conversation_id: str) -> Checkpoint | None:
        conv = self._conversations.get(conversation_id)
        return latest_checkpoint(conv.checkpoints) if conv else None

    async def load_from_checkpoint(
        self, conversation_id: str
    ) -> tuple[Checkpoint | None, list[Message]]:
        checkpoint = await self.get_latest_checkpoint(conversation_id)
        after = checkpoint.up_to_turn_number if checkpoint else None
        turns = await self.load_turns(conversation_id, after_turn=after)
        return checkpoint, [t.message for t in turns]

"""HistoryStore backed by PostgreSQL through SQLAlchemy async.

One chat_sessions row per conversation id, one chat_turns row per
message, one checkpoints row per checkpoint. Turn numbers are assigned
as max(existing) + 1 inside the appending transaction; the unique
(session_id, turn_number) constraint rejects a concurrent writer that
raced us to the same number.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from agentkit.history.messages import Message, Role, ToolCall, content_from_dict, content_to_dict
from agentkit.history.schemas import Checkpoint
from agentkit.history.store import StoredTurn
from agentkit.storage.database import Database
from agentkit.storage.models import ChatSessionRow, ChatTurnRow, CheckpointRow

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------
# Row conversion
# ------------------------------------------------------------------


def message_to_row(message: Message, session_id: uuid.UUID, turn_number: int) -> ChatTurnRow:
    return ChatTurnRow(
        session_id=session_id,
        turn_number=turn_number,
        role=message.role.value,
        content=message.text,
        content_json=[content_to_dict(c) for c in message.contents] or None,
        tool_call_id=message.tool_call_id,
        tool_calls_json=[
            {"id": tc.id, "function_name": tc.function_name, "arguments": tc.arguments}
            for tc in message.tool_calls
        ] or None,
    )


def row_to_message(row: ChatTurnRow) -> Message:
    return Message(
        role=Role(row.role),
        text=row.content,
        contents=[content_from_dict(c) for c in row.content_json or []],
        tool_calls=[
            ToolCall(id=tc["id"], function_name=tc["function_name"], arguments=tc.get("arguments", "{}"))
            for tc in row.tool_calls_json or []
        ],
        tool_call_id=row.tool_call_id,
    )


def row_to_checkpoint(row: CheckpointRow) -> Checkpoint:
    return Checkpoint(
        up_to_turn_number=row.up_to_turn_number,
        summary=row.summary,
        created_at=row.created_at,
        metadata=row.checkpoint_metadata,
    )


class SqlHistoryStore:
    """Durable HistoryStore. Every public method runs in its own transaction."""

    def __init__(self, db: Database, tenant_id: str | None = None, user_id: str | None = None) -> None:
        self.db = db
        self.tenant_id = tenant_id
        self.user_id = user_id

    # ------------------------------------------------------------------
    # Session helpers
    # ------------------------------------------------------------------

    async def _find_session(self, session: AsyncSession, conversation_id: str) -> ChatSessionRow | None:
        result = await session.execute(
            select(ChatSessionRow).where(ChatSessionRow.conversation_id == conversation_id)
        )
        return result.scalar_one_or_none()

    async def _get_or_create_session(self, session: AsyncSession, conversation_id: str) -> ChatSessionRow:
        row = await self._find_session(session, conversation_id)
        if row is None:
            row = ChatSessionRow(
                conversation_id=conversation_id,
                tenant_id=self.tenant_id,
                user_id=self.user_id,
            )
            session.add(row)
            await session.flush()
            logger.debug("Created chat session for conversation %s", conversation_id)
        return row

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def append_messages(self, conversation_id: str, messages: list[Message]) -> list[int]:
        if not messages:
            return []
        async with self.db.session() as session:
            chat = await self._get_or_create_session(session, conversation_id)
            current = await session.scalar(
                select(func.max(ChatTurnRow.turn_number)).where(ChatTurnRow.session_id == chat.id)
            )
            next_turn = 0 if current is None else current + 1
            numbers = list(range(next_turn, next_turn + len(messages)))
            session.add_all(
                message_to_row(message, chat.id, number) for message, number in zip(messages, numbers)
            )
            chat.last_activity_at = datetime.now(UTC)
            await session.commit()
        logger.debug("Appended %d message(s) to conversation %s", len(messages), conversation_id)
        return numbers

    async def append_message(self, conversation_id: str, message: Message) -> int:
        (number,) = await self.append_messages(conversation_id, [message])
        return number

    async def load(self, conversation_id: str) -> list[Message] | None:
        async with self.db.session() as session:
            chat = await self._find_session(session, conversation_id)
            if chat is None:
                return None
            rows = await self._turn_rows(session, chat.id)
            return [row_to_message(r) for r in rows]

    async def load_turns(self, conversation_id: str, after_turn: int | None = None) -> list[StoredTurn]:
        async with self.db.session() as session:
            chat = await self._find_session(session, conversation_id)
            if chat is None:
                return []
            rows = await self._turn_rows(session, chat.id, after_turn)
            return [
                StoredTurn(turn_number=r.turn_number, message=row_to_message(r), created_at=r.created_at)
                for r in rows
            ]

    async def _turn_rows(
        self, session: AsyncSession, session_id: uuid.UUID, after_turn: int | None = None
    ) -> list[ChatTurnRow]:
        query = select(ChatTurnRow).where(ChatTurnRow.session_id == session_id)
        if after_turn is not None:
            query = query.where(ChatTurnRow.turn_number > after_turn)
        result = await session.execute(query.order_by(ChatTurnRow.turn_number))
        return list(result.scalars().all())

    async def delete(self, conversation_id: str) -> None:
        async with self.db.session() as session:
            result = await session.execute(
                delete(ChatSessionRow).where(ChatSessionRow.conversation_id == conversation_id)
            )
            await session.commit()
        if result.rowcount:
            logger.info("Deleted conversation %s", conversation_id)

    async def list_conversations(self) -> list[str]:
        query = select(ChatSessionRow.conversation_id)
        if self.tenant_id is not None:
            query = query.where(ChatSessionRow.tenant_id == self.tenant_id)
        if self.user_id is not None:
            query = query.where(ChatSessionRow.user_id == self.user_id)
        async with self.db.session() as session:
            result = await session.execute(query.order_by(ChatSessionRow.last_activity_at.desc()))
            return list(result.scalars().all())

    async def get_message_count(self, conversation_id: str) -> int:
        async with self.db.session() as session:
            count = await session.scalar(
                select(func.count(ChatTurnRow.id))
                .join(ChatSessionRow, ChatTurnRow.session_id == ChatSessionRow.id)
                .where(ChatSessionRow.conversation_id == conversation_id)
            )
            return count or 0

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    async def create_checkpoint(self, conversation_id: str, checkpoint: Checkpoint) -> None:
        async with self.db.session() as session:
            chat = await self._get_or_create_session(session, conversation_id)
            session.add(
                CheckpointRow(
                    session_id=chat.id,
                    up_to_turn_number=checkpoint.up_to_turn_number,
                    summary=checkpoint.summary,
                    checkpoint_metadata=checkpoint.metadata,
                    created_at=checkpoint.created_at,
                )
            )
            await session.commit()
        logger.info(
            "Created checkpoint for conversation %s up to turn %d",
            conversation_id, checkpoint.up_to_turn_number,
        )

    async def get_latest_checkpoint(self, conversation_id: str) -> Checkpoint | None:
        async with self.db.session() as session:
            result = await session.execute(
                select(CheckpointRow)
                .join(ChatSessionRow, CheckpointRow.session_id == ChatSessionRow.id)
                .where(ChatSessionRow.conversation_id == conversation_id)
                .order_by(CheckpointRow.up_to_turn_number.desc(), CheckpointRow.created_at.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return row_to_checkpoint(row) if row else None

    async def load_from_checkpoint(
        self, conversation_id: str
    ) -> tuple[Checkpoint | None, list[Message]]:
        checkpoint = await self.get_latest_checkpoint(conversation_id)
        after = checkpoint.up_to_turn_number if checkpoint else None
        turns = await self.load_turns(conversation_id, after_turn=after)
        return checkpoint, [t.message for t in turns]

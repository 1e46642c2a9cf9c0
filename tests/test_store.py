"""Tests for the in-memory HistoryStore and checkpoint selection."""

from datetime import UTC, datetime, timedelta

from agentkit.history.messages import Message
from agentkit.history.schemas import Checkpoint
from agentkit.history.store import HistoryStore, InMemoryHistoryStore, latest_checkpoint


def _conversation(n: int) -> list[Message]:
    return [Message.user(f"u{i}") if i % 2 == 0 else Message.assistant(f"a{i}") for i in range(n)]


class TestAppend:
    async def test_turn_numbers_start_at_zero_and_continue(self):
        store = InMemoryHistoryStore()
        first = await store.append_messages("c1", _conversation(3))
        second = await store.append_message("c1", Message.user("again"))

        assert first == [0, 1, 2]
        assert second == 3
        assert await store.get_message_count("c1") == 4

    async def test_conversations_are_independent(self):
        store = InMemoryHistoryStore()
        await store.append_messages("a", _conversation(2))
        numbers = await store.append_messages("b", _conversation(1))
        assert numbers == [0]

    async def test_empty_append_is_noop(self):
        store = InMemoryHistoryStore()
        assert await store.append_messages("c1", []) == []
        assert await store.load("c1") is None

    async def test_load_in_turn_order(self):
        store = InMemoryHistoryStore()
        await store.append_messages("c1", _conversation(4))
        loaded = await store.load("c1")
        assert [m.text for m in loaded] == ["u0", "a1", "u2", "a3"]

    async def test_unknown_conversation(self):
        store = InMemoryHistoryStore()
        assert await store.load("nope") is None
        assert await store.load_turns("nope") == []
        assert await store.get_message_count("nope") == 0
        assert await store.get_latest_checkpoint("nope") is None

    async def test_delete(self):
        store = InMemoryHistoryStore()
        await store.append_messages("c1", _conversation(2))
        await store.delete("c1")
        await store.delete("c1")
        assert await store.load("c1") is None
        assert await store.list_conversations() == []

    def test_satisfies_protocol(self):
        assert isinstance(InMemoryHistoryStore(), HistoryStore)


class TestCheckpoints:
    async def test_load_from_checkpoint_returns_later_turns(self):
        store = InMemoryHistoryStore()
        await store.append_messages("c1", _conversation(6))
        await store.create_checkpoint("c1", Checkpoint(up_to_turn_number=3, summary="first four"))

        checkpoint, messages = await store.load_from_checkpoint("c1")

        assert checkpoint.summary == "first four"
        assert [m.text for m in messages] == ["u4", "a5"]
        # Checkpoints never delete messages
        assert await store.get_message_count("c1") == 6

    async def test_load_without_checkpoint_returns_everything(self):
        store = InMemoryHistoryStore()
        await store.append_messages("c1", _conversation(3))
        checkpoint, messages = await store.load_from_checkpoint("c1")
        assert checkpoint is None
        assert len(messages) == 3

    async def test_highest_turn_number_wins(self):
        store = InMemoryHistoryStore()
        now = datetime.now(UTC)
        await store.create_checkpoint("c1", Checkpoint(up_to_turn_number=8, summary="late", created_at=now))
        await store.create_checkpoint(
            "c1", Checkpoint(up_to_turn_number=4, summary="newer but earlier", created_at=now + timedelta(1))
        )
        latest = await store.get_latest_checkpoint("c1")
        assert latest.summary == "late"

    def test_tie_broken_by_creation_time(self):
        now = datetime.now(UTC)
        older = Checkpoint(up_to_turn_number=5, summary="older", created_at=now)
        newer = Checkpoint(up_to_turn_number=5, summary="newer", created_at=now + timedelta(seconds=1))
        assert latest_checkpoint([newer, older]).summary == "newer"
        assert latest_checkpoint([older, newer]).summary == "newer"
        assert latest_checkpoint([]) is None

    async def test_load_turns_after(self):
        store = InMemoryHistoryStore()
        await store.append_messages("c1", _conversation(5))
        turns = await store.load_turns("c1", after_turn=2)
        assert [t.turn_number for t in turns] == [3, 4]


class TestScoping:
    async def test_list_conversations_filtered_by_scope(self):
        root = InMemoryHistoryStore()
        alice = root.scoped(tenant_id="acme", user_id="alice")
        bob = root.scoped(tenant_id="acme", user_id="bob")
        other = root.scoped(tenant_id="globex")

        await alice.append_message("alice-1", Message.user("hi"))
        await bob.append_message("bob-1", Message.user("hi"))
        await other.append_message("globex-1", Message.user("hi"))

        assert await alice.list_conversations() == ["alice-1"]
        assert sorted(await root.scoped(tenant_id="acme").list_conversations()) == ["alice-1", "bob-1"]
        assert sorted(await root.list_conversations()) == ["alice-1", "bob-1", "globex-1"]

"""Tests for the DuckDB chat store."""
import os
import tempfile

import pytest

from chatroom.storage.service import (
    ChatStore,
    DisplayNameConflict,
    direct_conversation_id,
    group_conversation_id,
)


@pytest.fixture
def temp_db():
    """Create a temporary database path for testing."""
    # Path only; DuckDB creates the file itself
    db_path = tempfile.mktemp(suffix=".duckdb")

    yield db_path

    for path in (db_path, db_path + ".wal"):
        if os.path.exists(path):
            os.remove(path)


class TestUsers:

    @pytest.mark.asyncio
    async def test_ensure_user_is_idempotent(self, store):
        first = await store.ensure_user("alice")
        second = await store.ensure_user("alice")
        assert first == second
        assert await store.ensure_user("Alice") != first  # case-sensitive

    @pytest.mark.asyncio
    async def test_get_user(self, store):
        user_id = await store.ensure_user("alice")
        identity = await store.get_user(user_id)
        assert identity.id == user_id
        assert identity.display_name == "alice"
        assert await store.get_user("missing") is None

    @pytest.mark.asyncio
    async def test_rename_user(self, store):
        user_id = await store.ensure_user("alice")
        identity = await store.rename_user(user_id, "alicia")
        assert identity.display_name == "alicia"
        assert await store.ensure_user("alicia") == user_id

    @pytest.mark.asyncio
    async def test_rename_to_own_name_allowed(self, store):
        user_id = await store.ensure_user("alice")
        assert (await store.rename_user(user_id, "alice")).display_name == "alice"

    @pytest.mark.asyncio
    async def test_rename_conflict(self, store):
        alice = await store.ensure_user("alice")
        await store.ensure_user("bob")
        with pytest.raises(DisplayNameConflict) as exc:
            await store.rename_user(alice, "bob")
        assert exc.value.display_name == "bob"

    @pytest.mark.asyncio
    async def test_rename_unknown(self, store):
        with pytest.raises(LookupError):
            await store.rename_user("missing", "x")


class TestConversations:

    @pytest.mark.asyncio
    async def test_ensure_group_is_stable(self, store):
        first = await store.ensure_group()
        second = await store.ensure_group()
        assert first == second
        assert first.conversation_id == group_conversation_id(first.group_id)

    @pytest.mark.asyncio
    async def test_direct_conversation_is_order_independent(self, store):
        ab = await store.ensure_direct_conversation("a", "b")
        ba = await store.ensure_direct_conversation("b", "a")
        assert ab == ba == direct_conversation_id("a", "b")

    @pytest.mark.asyncio
    async def test_group_members_deduplicated(self, store):
        group = await store.ensure_group()
        alice = await store.ensure_user("alice")
        bob = await store.ensure_user("bob")
        for identity in (alice, bob, alice):
            await store.add_group_member(group.group_id, identity)
        members = await store.list_group_members(group.group_id)
        assert [m.display_name for m in members] == ["alice", "bob"]


class TestMessages:

    @pytest.mark.asyncio
    async def test_insert_and_list(self, store):
        alice = await store.ensure_user("alice")
        group = await store.ensure_group()
        ids = [
            await store.insert_message(group.conversation_id, alice, f"m{i}", "text", f"2024-01-01T00:00:0{i}+00:00")
            for i in range(3)
        ]
        messages = await store.list_messages(group.conversation_id)
        assert [m.id for m in messages] == ids
        assert [m.content for m in messages] == ["m0", "m1", "m2"]
        assert messages[0].display_name == "alice"

    @pytest.mark.asyncio
    async def test_list_returns_most_recent_oldest_first(self, store):
        group = await store.ensure_group()
        for i in range(5):
            await store.insert_message(group.conversation_id, "u", f"m{i}", "text", f"2024-01-01T00:00:0{i}+00:00")
        messages = await store.list_messages(group.conversation_id, limit=2)
        assert [m.content for m in messages] == ["m3", "m4"]

    @pytest.mark.asyncio
    async def test_unknown_sender_display_name(self, store):
        await store.insert_message("conv", "ghost", "boo", "text", "2024-01-01T00:00:00+00:00")
        messages = await store.list_messages("conv")
        assert messages[0].display_name == "Unknown"

    @pytest.mark.asyncio
    async def test_conversations_are_isolated(self, store):
        await store.insert_message("conv-a", "u", "a", "text", "2024-01-01T00:00:00+00:00")
        assert await store.list_messages("conv-b") == []


class TestSingleton:

    def test_get_instance_returns_same_object(self, store):
        assert ChatStore.get_instance() is store

    @pytest.mark.asyncio
    async def test_file_database_persists(self, temp_db):
        store = ChatStore(db_path=temp_db)
        user_id = await store.ensure_user("alice")
        store.close()

        reopened = ChatStore(db_path=temp_db)
        assert (await reopened.get_user(user_id)).display_name == "alice"
        reopened.close()

    @pytest.mark.asyncio
    async def test_ping(self, store):
        await store.ping()

    @pytest.mark.asyncio
    async def test_group_name_passed_through_get_instance(self):
        ChatStore.reset_instance()
        store = ChatStore.get_instance(":memory:", group_name="lobby")
        group = await store.ensure_group()

        row = store._get_connection().execute("SELECT name FROM groups WHERE id = ?", [group.group_id]).fetchone()
        assert row[0] == "lobby"
        assert (await store.ensure_group()) == group

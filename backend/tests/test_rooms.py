"""Tests for private room derivation and room membership."""
import pytest

from chatroom.chat.rooms import (
    GROUP_ROOM,
    PrivateRoomId,
    RoomRouter,
    derive_private_room_id,
    is_group_room,
    parse_private_room_id,
)


class TestPrivateRoomId:
    """Tests for derive/parse of private room ids."""

    def test_derivation_is_order_independent(self):
        assert derive_private_room_id("alice", "bob") == derive_private_room_id("bob", "alice")

    def test_wire_form(self):
        assert str(derive_private_room_id("u2", "u1")) == "private_u1_u2"

    def test_parse_roundtrip(self):
        room = derive_private_room_id("b-id", "a-id")
        assert parse_private_room_id(str(room)) == room

    def test_parse_normalizes_unsorted_ids(self):
        assert parse_private_room_id("private_zed_amy") == PrivateRoomId("amy", "zed")

    @pytest.mark.parametrize("room", ["group", "private_", "private_a", "private_a_b_c", "dm_a_b", None, 42])
    def test_parse_rejects_other_strings(self, room):
        assert parse_private_room_id(room) is None

    @pytest.mark.parametrize("bad", ["", "with_underscore"])
    def test_derive_rejects_invalid_ids(self, bad):
        with pytest.raises(ValueError):
            derive_private_room_id(bad, "other")

    def test_unsorted_construction_rejected(self):
        with pytest.raises(ValueError):
            PrivateRoomId("b", "a")

    def test_includes_and_other(self):
        room = derive_private_room_id("alice", "bob")
        assert room.includes("alice")
        assert not room.includes("carol")
        assert room.other("alice") == "bob"
        assert room.other("bob") == "alice"
        with pytest.raises(ValueError):
            room.other("carol")

    def test_self_conversation(self):
        room = derive_private_room_id("alice", "alice")
        assert room.other("alice") == "alice"
        assert str(room) == "private_alice_alice"

    def test_is_group_room(self):
        assert is_group_room(GROUP_ROOM)
        assert not is_group_room("private_a_b")


class TestRoomRouter:
    """Tests for RoomRouter membership."""

    def test_group_membership_survives_switch(self):
        router = RoomRouter()
        router.join_group("c1")
        router.switch_room("c1", "private_a_b")
        assert "c1" in router.members(GROUP_ROOM)
        assert "c1" in router.members("private_a_b")
        assert router.current_room("c1") == "private_a_b"

    def test_switch_leaves_previous_private_room(self):
        router = RoomRouter()
        router.join_group("c1")
        router.switch_room("c1", "private_a_b")
        router.switch_room("c1", "private_a_c")
        assert router.members("private_a_b") == set()
        assert router.rooms_of("c1") == {GROUP_ROOM, "private_a_c"}

    def test_switch_back_to_group(self):
        router = RoomRouter()
        router.join_group("c1")
        router.switch_room("c1", "private_a_b")
        router.switch_room("c1", GROUP_ROOM)
        assert router.rooms_of("c1") == {GROUP_ROOM}
        assert router.current_room("c1") == GROUP_ROOM

    def test_leave_all(self):
        router = RoomRouter()
        router.join_group("c1")
        router.join_group("c2")
        router.switch_room("c1", "private_a_b")
        router.leave_all("c1")
        assert router.rooms_of("c1") == set()
        assert router.members(GROUP_ROOM) == {"c2"}

    def test_members_returns_copy(self):
        router = RoomRouter()
        router.join_group("c1")
        router.members(GROUP_ROOM).add("intruder")
        assert router.members(GROUP_ROOM) == {"c1"}

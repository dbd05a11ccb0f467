"""Room naming and room membership.

There is exactly one group room (``"group"``) and one private room per pair
of identities. Private room ids are derived, never stored: the pair is
sorted so both participants compute the same id. The string form
``private_<low>_<high>`` is only produced and parsed at the transport
boundary.
"""
import logging
import re
from dataclasses import dataclass
from typing import Dict, Optional, Set

logger = logging.getLogger(__name__)

GROUP_ROOM = "group"

PRIVATE_PREFIX = "private"
SEPARATOR = "_"

_PRIVATE_ROOM_RE = re.compile(r"^private_([^_]+)_([^_]+)$")


@dataclass(frozen=True)
class PrivateRoomId:
    """Canonical id of a two-party room. ``low <= high`` always holds."""
    low: str
    high: str

    def __post_init__(self) -> None:
        if self.low > self.high:
            raise ValueError("PrivateRoomId members must be sorted; use derive_private_room_id()")

    def __str__(self) -> str:
        return f"{PRIVATE_PREFIX}{SEPARATOR}{self.low}{SEPARATOR}{self.high}"

    @property
    def members(self) -> Set[str]:
        return {self.low, self.high}

    def includes(self, identity_id: str) -> bool:
        return identity_id in (self.low, self.high)

    def other(self, identity_id: str) -> str:
        """The counterpart of ``identity_id`` (itself for a self-conversation)."""
        if identity_id == self.low:
            return self.high
        if identity_id == self.high:
            return self.low
        raise ValueError(f"{identity_id} is not a member of {self}")


def derive_private_room_id(identity_a: str, identity_b: str) -> PrivateRoomId:
    """Derive the private room of two identities, independent of argument order.

    Raises:
        ValueError: An id is empty or contains the separator.
    """
    for identity_id in (identity_a, identity_b):
        if not identity_id or SEPARATOR in identity_id:
            raise ValueError(f"Invalid identity id for a private room: {identity_id!r}")
    low, high = sorted((identity_a, identity_b))
    return PrivateRoomId(low, high)


def parse_private_room_id(room: object) -> Optional[PrivateRoomId]:
    """Parse the wire form of a private room id; None if it doesn't match."""
    if not isinstance(room, str):
        return None
    match = _PRIVATE_ROOM_RE.match(room)
    if not match:
        return None
    low, high = sorted(match.groups())
    return PrivateRoomId(low, high)


def is_group_room(room: object) -> bool:
    return room == GROUP_ROOM


class RoomRouter:
    """Tracks which connections have joined which broadcast rooms.

    Every connection joins the group room on connect and never leaves it, so
    group notifications keep arriving while a private room is active. At most
    one private room is joined at a time.
    """

    def __init__(self) -> None:
        # room -> connection ids
        self._members: Dict[str, Set[str]] = {}
        # connection id -> current non-group room
        self._private_room: Dict[str, str] = {}

    def join_group(self, connection_id: str) -> None:
        self._members.setdefault(GROUP_ROOM, set()).add(connection_id)

    def switch_room(self, connection_id: str, room: str) -> None:
        """Leave the current private room (if any) and join ``room`` unless it is the group."""
        previous = self._private_room.pop(connection_id, None)
        if previous is not None:
            self._leave(previous, connection_id)
        if room != GROUP_ROOM:
            self._members.setdefault(room, set()).add(connection_id)
            self._private_room[connection_id] = room

    def leave_all(self, connection_id: str) -> None:
        """Drop a connection from every room (on disconnect)."""
        self._private_room.pop(connection_id, None)
        for room in list(self._members):
            self._leave(room, connection_id)

    def members(self, room: str) -> Set[str]:
        return set(self._members.get(room, ()))

    def rooms_of(self, connection_id: str) -> Set[str]:
        return {room for room, members in self._members.items() if connection_id in members}

    def current_room(self, connection_id: str) -> str:
        return self._private_room.get(connection_id, GROUP_ROOM)

    def _leave(self, room: str, connection_id: str) -> None:
        members = self._members.get(room)
        if not members:
            return
        members.discard(connection_id)
        if not members and room != GROUP_ROOM:
            del self._members[room]

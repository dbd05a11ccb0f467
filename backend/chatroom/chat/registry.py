"""Live connection registry and per-identity connection counting.

One identity may hold many simultaneous connections (tabs, devices). The
registry keeps exactly one entry per open connection plus an
identity -> connections index, and the multiplicity tracker reports the
0->1 and 1->0 transitions that drive join/leave notifications.

Thread Safety:
    Not thread-safe. All mutations happen synchronously inside event
    handlers on the event loop and never span an ``await``.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Set, Tuple

from .rooms import GROUP_ROOM

logger = logging.getLogger(__name__)


@dataclass
class Connection:
    """One live transport session.

    Attributes:
        connection_id: Ephemeral id assigned by the server on connect.
        identity_id: Stable identity this connection belongs to.
        display_name: Cached display name, patched in place on rename.
        room: The room the client is currently viewing.
        typing: Last typing state reported by the client.
    """
    connection_id: str
    identity_id: str
    display_name: str
    room: str = GROUP_ROOM
    typing: bool = False


class MultiplicityTracker:
    """Counts active connections per identity."""

    def __init__(self) -> None:
        self._counts: Dict[str, int] = {}

    def acquire(self, identity_id: str) -> bool:
        """Count one more connection; True if this is the identity's first."""
        previous = self._counts.get(identity_id, 0)
        self._counts[identity_id] = previous + 1
        return previous == 0

    def release(self, identity_id: str) -> bool:
        """Count one connection less; True if the identity has none left.

        Releasing an identity with no recorded connections is a no-op that
        returns False, so the counter can never go negative.
        """
        current = self._counts.get(identity_id, 0)
        if current <= 0:
            return False
        if current == 1:
            del self._counts[identity_id]
            return True
        self._counts[identity_id] = current - 1
        return False

    def count(self, identity_id: str) -> int:
        return self._counts.get(identity_id, 0)


class ConnectionRegistry:
    """All live connections, indexed by connection id and by identity."""

    def __init__(self) -> None:
        # connection id -> Connection, in registration order
        self._connections: Dict[str, Connection] = {}
        # identity id -> connection ids
        self._by_identity: Dict[str, Set[str]] = {}
        self.multiplicity = MultiplicityTracker()

    def register(
        self, connection_id: str, identity_id: str, display_name: str
    ) -> Tuple[Connection, bool]:
        """Add a connection in the group room.

        Returns:
            Tuple of (connection, first) where ``first`` is True when the
            identity had no other live connection.

        Raises:
            ValueError: The connection id is already registered.
        """
        if connection_id in self._connections:
            raise ValueError(f"Connection {connection_id} is already registered")
        connection = Connection(
            connection_id=connection_id,
            identity_id=identity_id,
            display_name=display_name,
        )
        self._connections[connection_id] = connection
        self._by_identity.setdefault(identity_id, set()).add(connection_id)
        first = self.multiplicity.acquire(identity_id)
        return connection, first

    def deregister(self, connection_id: str) -> Tuple[Optional[Connection], bool]:
        """Remove a connection.

        Returns:
            Tuple of (connection, last): the removed entry (None if unknown)
            and whether it was the identity's last live connection.
        """
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return None, False
        siblings = self._by_identity.get(connection.identity_id)
        if siblings is not None:
            siblings.discard(connection_id)
            if not siblings:
                del self._by_identity[connection.identity_id]
        last = self.multiplicity.release(connection.identity_id)
        return connection, last

    def get(self, connection_id: Optional[str]) -> Optional[Connection]:
        if connection_id is None:
            return None
        return self._connections.get(connection_id)

    def connections_for(self, identity_id: str) -> List[Connection]:
        return [self._connections[cid] for cid in self._by_identity.get(identity_id, ())]

    def identities(self) -> Set[str]:
        return set(self._by_identity)

    def rename(self, identity_id: str, display_name: str) -> int:
        """Patch the cached display name of every connection of an identity.

        Returns:
            Number of entries patched.
        """
        patched = 0
        for connection in self.connections_for(identity_id):
            connection.display_name = display_name
            patched += 1
        return patched

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._connections

    def __iter__(self) -> Iterator[Connection]:
        # Registration order: dicts preserve insertion order
        return iter(list(self._connections.values()))

    def __len__(self) -> int:
        return len(self._connections)

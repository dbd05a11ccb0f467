"""Presence snapshots.

A snapshot is derived from the registry on demand and never stored. It lists
each online identity once, represented by its earliest live connection, so
``count`` always equals the number of distinct online identities no matter
how many tabs each of them has open.
"""
from typing import Any, Dict, List, Set

from pydantic import BaseModel, Field

from .registry import ConnectionRegistry


class OnlineUser(BaseModel):
    """One online identity.

    Attributes:
        id: Representative connection id (usable as a private message target).
        identityId: Stable identity id.
        displayName: Current display name.
    """
    id: str
    identityId: str
    displayName: str


class PresenceSnapshot(BaseModel):
    users: List[OnlineUser] = Field(default_factory=list)
    count: int = 0

    def to_event(self) -> Dict[str, Any]:
        return {"event": "onlineUsers", **self.model_dump()}


def compute_snapshot(registry: ConnectionRegistry) -> PresenceSnapshot:
    """Deduplicate live connections by identity, first-registered wins."""
    seen: Set[str] = set()
    users: List[OnlineUser] = []
    for connection in registry:
        if connection.identity_id in seen:
            continue
        seen.add(connection.identity_id)
        users.append(
            OnlineUser(
                id=connection.connection_id,
                identityId=connection.identity_id,
                displayName=connection.display_name,
            )
        )
    return PresenceSnapshot(users=users, count=len(users))

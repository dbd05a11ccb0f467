"""Pydantic schemas returned by the chat storage service.

These are plain records; the transport layer converts them to the
camelCase wire payloads in ``chatroom.chat.events``.
"""
from typing import Optional

from pydantic import BaseModel, Field


class GroupContext(BaseModel):
    """The default group and the conversation that stores its messages.

    Attributes:
        group_id: Row id of the group.
        conversation_id: Deterministic conversation id derived from the group id.
    """
    group_id: str = Field(..., description="Group identifier")
    conversation_id: str = Field(..., description="Conversation identifier")


class GroupMember(BaseModel):
    """A registered member of a group, online or not."""
    identity_id: str
    display_name: str
    email: Optional[str] = None


class StoredMessage(BaseModel):
    """A persisted message joined with its sender's current display name.

    Attributes:
        id: Message id (stringified sequence value).
        conversation_id: Conversation the message belongs to.
        sender_id: Identity id of the author.
        display_name: Author's display name ("Unknown" if the user row is gone).
        content: Text or image URL.
        type: "text" or "image".
        timestamp: ISO-8601 UTC creation time.
    """
    id: str
    conversation_id: str
    sender_id: str
    display_name: str = "Unknown"
    content: str
    type: str
    timestamp: str

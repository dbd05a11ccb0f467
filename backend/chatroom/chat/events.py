"""Wire protocol of the chat WebSocket.

Every frame is a JSON object whose ``event`` key names the event. Inbound
frames are parsed into a tagged union of pydantic models; anything that does
not match one of them is answered with ``error{reason: "INVALID_EVENT"}``.

Inbound fields the relay validates itself (message target, type and content)
are typed loosely here so that a malformed message produces a typed
``messageRejected`` rather than a generic protocol error.
"""
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

INVALID_EVENT = "INVALID_EVENT"
INVALID_ROOM = "INVALID_ROOM"

PEER_DISCONNECTED = "PEER_DISCONNECTED"


def utc_timestamp() -> str:
    """Current time as an ISO-8601 UTC string."""
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# Inbound events
# =============================================================================


class SendMessageEvent(BaseModel):
    """``sendMessage{content, type, target}``; target is "group" or a connection id."""
    event: Literal["sendMessage"]
    content: Any = None
    type: Any = "text"
    target: Any = None


class TypingEvent(BaseModel):
    event: Literal["typing"]
    room: Any = None
    isTyping: bool = False


class SwitchRoomEvent(BaseModel):
    event: Literal["switchRoom"]
    room: Any = None


class GetChatHistoryEvent(BaseModel):
    event: Literal["getChatHistory"]
    room: Any = None


class SignalEvent(BaseModel):
    """Opaque call-signaling payload addressed to one connection."""
    event: Literal["offer", "answer", "iceCandidate", "endCall"]
    to: Any = None
    payload: Any = None


InboundEvent = Annotated[
    Union[SendMessageEvent, TypingEvent, SwitchRoomEvent, GetChatHistoryEvent, SignalEvent],
    Field(discriminator="event"),
]

_inbound_adapter: TypeAdapter = TypeAdapter(InboundEvent)


def parse_event(data: Any) -> InboundEvent:
    """Parse a decoded JSON frame.

    Raises:
        pydantic.ValidationError: Not an object, unknown ``event``, or bad fields.
    """
    return _inbound_adapter.validate_python(data)


# =============================================================================
# Outbound events
# =============================================================================


class ChatMessageOut(BaseModel):
    """A delivered (or historical) chat message as seen by clients."""
    id: str = Field(..., description="Storage-assigned message id")
    room: str = Field(..., description="Wire room id the message belongs to")
    senderId: str = Field(..., description="Identity id of the author")
    displayName: str = Field(default="Unknown", description="Author's display name")
    content: str = Field(..., description="Text, or an image URL / data URL")
    type: Literal["text", "image"] = Field(default="text")
    timestamp: str = Field(..., description="ISO-8601 UTC creation time")


def new_message_event(message: ChatMessageOut) -> Dict[str, Any]:
    return {"event": "newMessage", **message.model_dump()}


def connected_event(connection_id: str, identity_id: str, display_name: str, room: str) -> Dict[str, Any]:
    return {
        "event": "connected",
        "connectionId": connection_id,
        "identityId": identity_id,
        "displayName": display_name,
        "room": room,
    }


def membership_event(kind: Literal["userJoined", "userLeft"], display_name: str) -> Dict[str, Any]:
    """``userJoined``/``userLeft``; fired only on an identity's first/last connection."""
    return {"event": kind, "displayName": display_name, "timestamp": utc_timestamp()}


def nickname_updated_event(identity_id: str, display_name: str) -> Dict[str, Any]:
    return {"event": "nicknameUpdated", "identityId": identity_id, "displayName": display_name}


def typing_event(
    room: str, connection_id: str, identity_id: str, display_name: str, is_typing: bool
) -> Dict[str, Any]:
    return {
        "event": "typing",
        "room": room,
        "connectionId": connection_id,
        "identityId": identity_id,
        "displayName": display_name,
        "isTyping": is_typing,
    }


def chat_history_event(
    room: str, messages: List[ChatMessageOut], members: Optional[List[Dict[str, Any]]] = None
) -> Dict[str, Any]:
    event: Dict[str, Any] = {
        "event": "chatHistory",
        "room": room,
        "messages": [m.model_dump() for m in messages],
    }
    if members is not None:
        event["members"] = members
    return event


def error_event(reason: str) -> Dict[str, Any]:
    return {"event": "error", "reason": reason}

"""Client-side mirror of chat state.

``ChatClientState`` holds what a chat client needs to render: the active
room, the latest presence snapshot, unread counters, typing indicators, the
visible messages and the current private counterpart. It performs no I/O;
``apply()`` folds server events into it and the room-switching methods
return the events the client should send.

Unread counters are keyed by ``"group"`` for the group room and by the
counterpart's identity id for private rooms.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .errors import RejectReason
from .presence import OnlineUser, PresenceSnapshot
from .rooms import GROUP_ROOM, derive_private_room_id, is_group_room, parse_private_room_id

logger = logging.getLogger(__name__)

REJECTION_MESSAGES: Dict[str, str] = {
    RejectReason.IMAGE_TOO_LARGE.value: "Image is larger than the inline image limit, please compress it and try again.",
    RejectReason.TARGET_OFFLINE.value: "The other user is offline, the message was not sent.",
    RejectReason.INVALID_MESSAGE.value: "The message could not be sent because it is malformed.",
}

GENERIC_REJECTION = "The message could not be sent, please try again later."

SELF_LABEL = "You"
OFFLINE_LABEL = "Offline user"


def describe_rejection(reason: Any) -> str:
    """Human-readable text for a ``messageRejected`` reason, with a generic fallback."""
    return REJECTION_MESSAGES.get(reason, GENERIC_REJECTION) if isinstance(reason, str) else GENERIC_REJECTION


@dataclass
class HeaderMeta:
    """What the chat header shows for the active room."""
    title: str
    subtitle: str
    participants: List[str] = field(default_factory=list)


class ChatClientState:
    """Presence, notification and room state of one chat client."""

    def __init__(self, identity_id: Optional[str] = None, display_name: Optional[str] = None) -> None:
        self.identity_id = identity_id
        self.display_name = display_name
        self.connection_id: Optional[str] = None

        self.room: str = GROUP_ROOM
        self.snapshot = PresenceSnapshot()
        self.unread: Dict[str, int] = {}
        self.messages: List[Dict[str, Any]] = []
        self.group_members: List[Dict[str, Any]] = []
        # connection id -> display name of users typing in the active room
        self.typing: Dict[str, str] = {}
        self.partner: Optional[OnlineUser] = None
        self.call_peer: Optional[str] = None
        self.notices: List[str] = []

        self._handlers: Dict[str, Callable[[Dict[str, Any]], None]] = {
            "connected": self._on_connected,
            "newMessage": self._on_new_message,
            "chatHistory": self._on_chat_history,
            "onlineUsers": self._on_online_users,
            "nicknameUpdated": self._on_nickname_updated,
            "typing": self._on_typing,
            "messageRejected": self._on_message_rejected,
            "userJoined": self._on_membership,
            "userLeft": self._on_membership,
            "offer": self._on_offer,
            "endCall": self._on_end_call,
            "error": self._on_error,
        }

    # =========================================================================
    # Outbound intents
    # =========================================================================

    def switch_room(self, room: str) -> List[Dict[str, Any]]:
        """Make ``room`` active and return the events announcing it to the server."""
        key = self.notification_key(room)
        if key is not None:
            self.unread.pop(key, None)
        self.typing.clear()
        self.messages = []
        self.room = room
        if is_group_room(room):
            self.partner = None
        return [
            {"event": "switchRoom", "room": room},
            {"event": "getChatHistory", "room": room},
        ]

    def open_private_chat(self, user: OnlineUser) -> List[Dict[str, Any]]:
        """Switch to the private room shared with ``user``.

        Raises:
            RuntimeError: Own identity is not known yet.
        """
        if not self.identity_id:
            raise RuntimeError("Own identity unknown; wait for the 'connected' event")
        self.partner = user
        room = str(derive_private_room_id(self.identity_id, user.identityId))
        return self.switch_room(room)

    def target_for_send(self) -> Optional[str]:
        """``sendMessage`` target for the active room: "group" or the partner's connection id."""
        if is_group_room(self.room):
            return GROUP_ROOM
        return self.partner.id if self.partner else None

    # =========================================================================
    # Derived views
    # =========================================================================

    def notification_key(self, room: Any) -> Optional[str]:
        if is_group_room(room):
            return GROUP_ROOM
        private = parse_private_room_id(room)
        if private is None:
            return None
        if self.identity_id and private.includes(self.identity_id):
            return private.other(self.identity_id)
        return private.low

    def header(self) -> HeaderMeta:
        if is_group_room(self.room):
            return HeaderMeta(
                title="Group",
                subtitle=f"Group chat · {self.snapshot.count} online",
                participants=self._member_labels(),
            )
        name = self._partner_name() or OFFLINE_LABEL
        return HeaderMeta(title=name, subtitle=f"Private chat · {name}")

    def _partner_name(self) -> Optional[str]:
        if self.partner is None:
            return None
        for user in self.snapshot.users:
            if user.identityId == self.partner.identityId:
                return user.displayName
        return self.partner.displayName

    def _member_labels(self) -> List[str]:
        """Group member names deduplicated by identity, own entry shown as "You"."""
        if self.group_members:
            members = [(m.get("identityId"), m.get("displayName")) for m in self.group_members]
        else:
            members = [(u.identityId, u.displayName) for u in self.snapshot.users]

        seen = set()
        labels: List[str] = []
        for identity_id, name in members:
            key = identity_id or (name or "").lower()
            if not key or key in seen:
                continue
            seen.add(key)
            labels.append(SELF_LABEL if identity_id and identity_id == self.identity_id else (name or "?"))
        return labels

    # =========================================================================
    # Inbound events
    # =========================================================================

    def apply(self, event: Dict[str, Any]) -> None:
        """Fold one server event into the state. Unknown events are ignored."""
        handler = self._handlers.get(event.get("event"))
        if handler is None:
            logger.debug(f"Ignoring event {event.get('event')!r}")
            return
        handler(event)

    def _on_connected(self, event: Dict[str, Any]) -> None:
        self.connection_id = event.get("connectionId")
        self.identity_id = event.get("identityId")
        self.display_name = event.get("displayName")

    def _on_new_message(self, event: Dict[str, Any]) -> None:
        room = event.get("room")
        if room == self.room:
            self.messages.append(event)
            return
        if event.get("senderId") == self.identity_id:
            return
        key = self.notification_key(room)
        if key is not None:
            self.unread[key] = self.unread.get(key, 0) + 1

    def _on_chat_history(self, event: Dict[str, Any]) -> None:
        if event.get("room") != self.room:
            return
        if is_group_room(self.room) and isinstance(event.get("members"), list):
            self.group_members = list(event["members"])
        self.messages = list(event.get("messages") or [])

    def _on_online_users(self, event: Dict[str, Any]) -> None:
        self.snapshot = PresenceSnapshot(users=event.get("users") or [], count=event.get("count") or 0)
        if self.partner is not None:
            # Keep the partner's representative connection current
            for user in self.snapshot.users:
                if user.identityId == self.partner.identityId:
                    self.partner = user
                    break

    def _on_nickname_updated(self, event: Dict[str, Any]) -> None:
        identity_id = event.get("identityId")
        name = event.get("displayName")
        if not identity_id or not name:
            return
        for user in self.snapshot.users:
            if user.identityId == identity_id:
                user.displayName = name
        for member in self.group_members:
            if member.get("identityId") == identity_id:
                member["displayName"] = name
        if identity_id == self.identity_id:
            self.display_name = name
        if self.partner is not None and self.partner.identityId == identity_id:
            self.partner = self.partner.model_copy(update={"displayName": name})

    def _on_typing(self, event: Dict[str, Any]) -> None:
        if event.get("room") != self.room:
            return
        connection_id = event.get("connectionId")
        if event.get("isTyping"):
            self.typing[connection_id] = event.get("displayName") or ""
        else:
            self.typing.pop(connection_id, None)

    def _on_message_rejected(self, event: Dict[str, Any]) -> None:
        self.notices.append(describe_rejection(event.get("reason")))

    def _on_membership(self, event: Dict[str, Any]) -> None:
        verb = "joined" if event.get("event") == "userJoined" else "left"
        self.notices.append(f"{event.get('displayName')} {verb} the chat")

    def _on_offer(self, event: Dict[str, Any]) -> None:
        self.call_peer = event.get("from")

    def _on_end_call(self, event: Dict[str, Any]) -> None:
        self.call_peer = None

    def _on_error(self, event: Dict[str, Any]) -> None:
        self.notices.append(f"Server error: {event.get('reason')}")

"""Chat connection manager.

The manager owns all in-memory chat state of the process: live connections,
room membership, call state and the cached default group. WebSocket handlers
hand it accepted sockets and decoded frames; it applies them to that state
and fans the resulting events out to the affected connections.

Key features:
    - Many connections per identity, join/leave announced once per identity
    - Presence snapshot pushed to everyone after every membership change
    - Group and private messaging through the message relay
    - Typing indicators scoped to the room being typed in
    - Opaque call-signaling relay with per-room call state
    - Concurrent fan-out with asyncio.gather()

Thread Safety:
    Designed for a single event loop. State mutations are synchronous and
    never span an ``await``; storage calls are the only suspension points,
    and handlers re-read the registry after them.
"""
import asyncio
import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional, Set

from fastapi import WebSocket
from pydantic import ValidationError

from chatroom.config import AppConfig, get_config
from chatroom.identity.schemas import Identity
from chatroom.storage.schemas import GroupContext, StoredMessage
from chatroom.storage.service import ChatStore

from .errors import MessageRejected
from .events import (
    INVALID_EVENT,
    INVALID_ROOM,
    ChatMessageOut,
    GetChatHistoryEvent,
    SendMessageEvent,
    SignalEvent,
    SwitchRoomEvent,
    TypingEvent,
    chat_history_event,
    connected_event,
    error_event,
    membership_event,
    new_message_event,
    nickname_updated_event,
    parse_event,
    typing_event,
)
from .presence import PresenceSnapshot, compute_snapshot
from .registry import Connection, ConnectionRegistry
from .relay import MessageRelay
from .rooms import GROUP_ROOM, RoomRouter, is_group_room, parse_private_room_id
from .signaling import SignalForward, SignalingRelay

logger = logging.getLogger(__name__)


class ChatManager:
    """Owns live chat state and dispatches inbound events.

    Args:
        store: Storage collaborator. Defaults to the process-wide ``ChatStore``.
        config: Application config. Defaults to ``get_config()``.
    """

    def __init__(self, store: Optional[ChatStore] = None, config: Optional[AppConfig] = None) -> None:
        self.config = config or get_config()
        self.store = store or ChatStore.get_instance(
            self.config.storage.db_path, group_name=self.config.chat.group_name
        )

        self.registry = ConnectionRegistry()
        self.rooms = RoomRouter()
        self.signaling = SignalingRelay(self.registry)
        self.relay = MessageRelay(
            store=self.store,
            registry=self.registry,
            rooms=self.rooms,
            group_context=self.group_context,
            max_inline_image_bytes=self.config.chat.max_inline_image_bytes,
        )

        # connection id -> accepted WebSocket
        self.sockets: Dict[str, WebSocket] = {}

        self._group: Optional[GroupContext] = None
        # disconnect announcements still being sent
        self._departures: Set[asyncio.Task] = set()

    async def group_context(self) -> GroupContext:
        """The default group, resolved through storage once and then cached."""
        if self._group is None:
            self._group = await self.store.ensure_group()
            logger.info(f"[Manager] Default group ready: {self._group.group_id}")
        return self._group

    def snapshot(self) -> PresenceSnapshot:
        return compute_snapshot(self.registry)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def connect(self, websocket: WebSocket, identity: Identity) -> Connection:
        """Register an accepted socket for ``identity`` and announce it.

        The new connection receives ``connected`` first, then the presence
        snapshot. Other connections see ``userJoined`` only when this is the
        identity's first live connection.
        """
        connection_id = str(uuid.uuid4())
        await self._safe_send(
            websocket,
            connected_event(connection_id, identity.id, identity.display_name, GROUP_ROOM),
        )

        connection, first = self.registry.register(connection_id, identity.id, identity.display_name)
        self.sockets[connection_id] = websocket
        self.rooms.join_group(connection_id)
        logger.info(
            f"[Manager] {identity.display_name} ({identity.id}) connected as {connection_id}, "
            f"{self.registry.multiplicity.count(identity.id)} connection(s)"
        )

        try:
            group = await self.group_context()
            await self.store.add_group_member(group.group_id, identity.id)
        except Exception as e:
            logger.warning(f"[Manager] Could not record group membership for {identity.id}: {e}")

        if first:
            await self.broadcast_room(
                GROUP_ROOM, membership_event("userJoined", identity.display_name), exclude=connection_id
            )
        await self.push_presence()
        return connection

    async def disconnect(self, connection_id: str) -> None:
        """Remove a connection everywhere and announce the change. Idempotent.

        The announcement runs in its own shielded task, so cancelling the
        calling socket handler does not cut it short. ``drain()`` waits for
        announcements still in flight.
        """
        self.rooms.leave_all(connection_id)
        self.sockets.pop(connection_id, None)
        connection, last = self.registry.deregister(connection_id)
        if connection is None:
            return
        logger.info(f"[Manager] {connection.display_name} disconnected ({connection_id}), last={last}")

        forwards = self.signaling.drop_connection(connection)
        task = asyncio.create_task(self._announce_departure(connection, last, forwards))
        self._departures.add(task)
        task.add_done_callback(self._departures.discard)
        await asyncio.shield(task)

    async def _announce_departure(self, connection: Connection, last: bool, forwards: List[SignalForward]) -> None:
        for forward in forwards:
            await self.send_to(forward.target, forward.message)

        if last:
            await self.broadcast_room(GROUP_ROOM, membership_event("userLeft", connection.display_name))
        await self.push_presence()

    async def drain(self) -> None:
        """Wait for departure announcements still in flight (used on shutdown)."""
        if self._departures:
            logger.info(f"[Manager] Waiting for {len(self._departures)} departure announcement(s)")
            await asyncio.gather(*self._departures, return_exceptions=True)

    async def rename_identity(self, identity: Identity) -> int:
        """Propagate a display-name change to live connections.

        Returns:
            Number of live connections that were patched.
        """
        patched = self.registry.rename(identity.id, identity.display_name)
        logger.info(f"[Manager] Identity {identity.id} renamed to {identity.display_name} ({patched} connection(s))")
        await self.broadcast_all(nickname_updated_event(identity.id, identity.display_name))
        await self.push_presence()
        return patched

    async def push_presence(self) -> None:
        await self.broadcast_all(self.snapshot().to_event())

    # =========================================================================
    # Inbound events
    # =========================================================================

    async def handle_event(self, connection_id: str, data: Any) -> None:
        """Dispatch one decoded frame from ``connection_id``."""
        connection = self.registry.get(connection_id)
        if connection is None:
            return
        try:
            event = parse_event(data)
        except ValidationError as e:
            logger.debug(f"[Manager] Invalid event from {connection_id}: {e.error_count()} error(s)")
            await self.send_to(connection_id, error_event(INVALID_EVENT))
            return

        if isinstance(event, SendMessageEvent):
            await self.handle_send_message(connection, event)
        elif isinstance(event, TypingEvent):
            await self.handle_typing(connection, event)
        elif isinstance(event, SwitchRoomEvent):
            await self.handle_switch_room(connection, event)
        elif isinstance(event, GetChatHistoryEvent):
            await self.handle_history(connection, event)
        elif isinstance(event, SignalEvent):
            forward = self.signaling.handle(connection, event.event, event.to, event.payload)
            if forward is not None:
                await self.send_to(forward.target, forward.message)

    async def handle_send_message(self, connection: Connection, event: SendMessageEvent) -> None:
        try:
            delivery = await self.relay.relay(connection, event)
        except MessageRejected as e:
            logger.info(f"[Manager] Message from {connection.connection_id} rejected: {e.reason.value}")
            await self.send_to(connection.connection_id, e.to_event())
            return
        await self.send_many(delivery.recipients, new_message_event(delivery.message))

    async def handle_typing(self, connection: Connection, event: TypingEvent) -> None:
        room = self._authorized_room(connection, event.room)
        if room is None:
            await self.send_to(connection.connection_id, error_event(INVALID_ROOM))
            return
        connection.typing = event.isTyping
        message = typing_event(
            room, connection.connection_id, connection.identity_id, connection.display_name, event.isTyping
        )
        await self.broadcast_room(room, message, exclude=connection.connection_id)

    async def handle_switch_room(self, connection: Connection, event: SwitchRoomEvent) -> None:
        room = self._authorized_room(connection, event.room)
        if room is None:
            await self.send_to(connection.connection_id, error_event(INVALID_ROOM))
            return
        self.rooms.switch_room(connection.connection_id, room)
        connection.room = room
        connection.typing = False
        logger.debug(f"[Manager] {connection.connection_id} switched to {room}")

    async def handle_history(self, connection: Connection, event: GetChatHistoryEvent) -> None:
        room = event.room if isinstance(event.room, str) else ""
        await self.send_to(connection.connection_id, await self.history_for(connection, room))

    async def history_for(self, connection: Connection, room: str) -> Dict[str, Any]:
        """Build the ``chatHistory`` reply for ``room``.

        The group room also carries its recorded members. A private room the
        caller is not part of, or any storage failure, yields no messages.
        """
        limit = self.config.chat.history_limit
        try:
            if is_group_room(room):
                group = await self.group_context()
                stored = await self.store.list_messages(group.conversation_id, limit)
                members = await self.store.list_group_members(group.group_id)
                return chat_history_event(
                    room,
                    [self._to_out(room, m) for m in stored],
                    [{"identityId": m.identity_id, "displayName": m.display_name} for m in members],
                )
            private = parse_private_room_id(room)
            if private is None or not private.includes(connection.identity_id):
                return chat_history_event(room, [])
            room = str(private)
            conversation_id = await self.store.ensure_direct_conversation(private.low, private.high)
            stored = await self.store.list_messages(conversation_id, limit)
            return chat_history_event(room, [self._to_out(room, m) for m in stored])
        except Exception as e:
            logger.error(f"[Manager] Failed to load history of {room} for {connection.identity_id}: {e}")
            return chat_history_event(room, [])

    # =========================================================================
    # Fan-out
    # =========================================================================

    async def send_to(self, connection_id: str, message: dict) -> bool:
        websocket = self.sockets.get(connection_id)
        if websocket is None:
            return False
        return await self._safe_send(websocket, message)

    async def send_many(self, connection_ids: Iterable[str], message: dict) -> None:
        """Send to several connections concurrently; unknown ids are skipped."""
        targets = [(cid, self.sockets[cid]) for cid in connection_ids if cid in self.sockets]
        if not targets:
            return
        results = await asyncio.gather(
            *[self._safe_send(ws, message) for _, ws in targets],
            return_exceptions=True,
        )
        for (cid, _), ok in zip(targets, results):
            if ok is not True:
                # The socket's own receive loop ends it through disconnect()
                logger.debug(f"[Manager] Delivery to {cid} failed")

    async def broadcast_room(self, room: str, message: dict, exclude: Optional[str] = None) -> None:
        await self.send_many([cid for cid in self.rooms.members(room) if cid != exclude], message)

    async def broadcast_all(self, message: dict) -> None:
        await self.send_many([c.connection_id for c in self.registry], message)

    async def _safe_send(self, websocket: WebSocket, message: dict) -> bool:
        """Send a message to a WebSocket connection with error handling.

        Returns:
            True if successful, False if the connection failed.
        """
        try:
            await websocket.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection: {e}")
            return False

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _authorized_room(connection: Connection, room: Any) -> Optional[str]:
        """``room`` if it is the group or a private room of this identity, else None."""
        if is_group_room(room):
            return GROUP_ROOM
        private = parse_private_room_id(room)
        if private is None or not private.includes(connection.identity_id):
            return None
        return str(private)

    @staticmethod
    def _to_out(room: str, stored: StoredMessage) -> ChatMessageOut:
        return ChatMessageOut(
            id=stored.id,
            room=room,
            senderId=stored.sender_id,
            displayName=stored.display_name,
            content=stored.content,
            type=stored.type,
            timestamp=stored.timestamp,
        )

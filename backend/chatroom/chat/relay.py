"""Message relay: validate, persist, then deliver.

A message is only delivered after storage accepted it. Validation happens
before any state is touched, in this order:

    1. target/type/content well-formed      -> INVALID_MESSAGE
    2. inline image within the size limit    -> IMAGE_TOO_LARGE
    3. private target still connected        -> TARGET_OFFLINE
    4. storage accepted the message          -> SERVER_ERROR

Recipients are computed after persistence returns, from the registry as it
is at that moment, so connections that went away in the meantime are
simply skipped.
"""
import base64
import binascii
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List
from urllib.parse import unquote_to_bytes

from chatroom.storage.schemas import GroupContext
from chatroom.storage.service import ChatStore

from .errors import ImageTooLarge, MessageValidationError, StorageFailure, TargetOffline
from .events import ChatMessageOut, SendMessageEvent, utc_timestamp
from .registry import Connection, ConnectionRegistry
from .rooms import GROUP_ROOM, RoomRouter, derive_private_room_id

logger = logging.getLogger(__name__)

MESSAGE_TYPES = ("text", "image")

DATA_URL_PREFIX = "data:"
BASE64_MARKER = ";base64"


def inline_image_size(content: str) -> int:
    """Decoded size in bytes of the payload of a ``data:`` URL.

    Base64 payloads may be wrapped; whitespace is ignored. Other payloads are
    percent-decoded.

    Raises:
        ValueError: No payload, or a base64 payload that does not decode.
    """
    header, separator, body = content.partition(",")
    if not separator or not body:
        raise ValueError("data URL has no payload")
    if not header.lower().endswith(BASE64_MARKER):
        return len(unquote_to_bytes(body))
    try:
        return len(base64.b64decode("".join(body.split()), validate=True))
    except binascii.Error as e:
        raise ValueError(f"data URL payload is not base64: {e}") from e


def is_image_too_large(content: str, limit: int) -> bool:
    """Whether an image message's content exceeds the inline limit.

    Anything that is not a ``data:`` URL is an externally hosted image and
    passes.

    Raises:
        ValueError: Malformed ``data:`` URL, see ``inline_image_size``.
    """
    if not content.startswith(DATA_URL_PREFIX):
        return False
    return inline_image_size(content) > limit


@dataclass
class Delivery:
    """A persisted message and the connections it must be sent to."""
    message: ChatMessageOut
    recipients: List[str] = field(default_factory=list)


class MessageRelay:
    """Turns ``sendMessage`` events into persisted, routable messages.

    Args:
        store: Storage collaborator.
        registry: Live connections, used to resolve private targets.
        rooms: Room membership, used for group delivery.
        group_context: Coroutine factory returning the (cached) default group.
        max_inline_image_bytes: Limit for ``data:`` URL images.
    """

    def __init__(
        self,
        store: ChatStore,
        registry: ConnectionRegistry,
        rooms: RoomRouter,
        group_context: Callable[[], Awaitable[GroupContext]],
        max_inline_image_bytes: int = 500 * 1024,
    ) -> None:
        self.store = store
        self.registry = registry
        self.rooms = rooms
        self.group_context = group_context
        self.max_inline_image_bytes = max_inline_image_bytes

    def validate(self, event: SendMessageEvent) -> None:
        """Check the shape of a message and its inline image size.

        Raises:
            MessageValidationError: Bad target, type or content.
            MessageValidationError: Bad target, type or content, including
                a malformed ``data:`` URL.
            ImageTooLarge: Image payload above the inline limit.
        """
        if not isinstance(event.target, str) or not event.target:
            raise MessageValidationError("target must be a non-empty string")
        if event.type not in MESSAGE_TYPES:
            raise MessageValidationError(f"unsupported message type: {event.type!r}")
        if not isinstance(event.content, str) or not event.content:
            raise MessageValidationError("content must be a non-empty string")
        if event.type == "image":
            try:
                too_large = is_image_too_large(event.content, self.max_inline_image_bytes)
            except ValueError as e:
                raise MessageValidationError(str(e)) from e
            if too_large:
                raise ImageTooLarge(f"image exceeds {self.max_inline_image_bytes} bytes")

    async def relay(self, sender: Connection, event: SendMessageEvent) -> Delivery:
        """Validate and persist a message, then resolve its recipients.

        Raises:
            MessageRejected: One of its subclasses, see the module docstring.
        """
        self.validate(event)

        target_connection = None
        if event.target == GROUP_ROOM:
            room = GROUP_ROOM
        else:
            target_connection = self.registry.get(event.target)
            if target_connection is None:
                logger.info(f"[Relay] Target {event.target} of {sender.connection_id} is offline")
                raise TargetOffline(event.target)
            room = str(derive_private_room_id(sender.identity_id, target_connection.identity_id))

        timestamp = utc_timestamp()
        try:
            if target_connection is None:
                conversation_id = (await self.group_context()).conversation_id
            else:
                conversation_id = await self.store.ensure_direct_conversation(
                    sender.identity_id, target_connection.identity_id
                )
            message_id = await self.store.insert_message(
                conversation_id, sender.identity_id, event.content, event.type, timestamp
            )
        except Exception as e:
            logger.error(f"[Relay] Failed to persist message from {sender.identity_id}: {e}", exc_info=True)
            raise StorageFailure(str(e)) from e

        message = ChatMessageOut(
            id=message_id,
            room=room,
            senderId=sender.identity_id,
            displayName=sender.display_name,
            content=event.content,
            type=event.type,
            timestamp=timestamp,
        )

        # Registry may have changed while storage was pending
        if target_connection is None:
            recipients = [cid for cid in self.rooms.members(GROUP_ROOM) if cid in self.registry]
        else:
            recipients = [
                cid
                for cid in dict.fromkeys((sender.connection_id, target_connection.connection_id))
                if cid in self.registry
            ]

        logger.info(
            f"[Relay] {message.type} message {message.id} in {room} "
            f"({event.content[:30]!r}...) to {len(recipients)} connection(s)"
        )
        return Delivery(message=message, recipients=recipients)

"""Call-signaling relay.

Offers, answers, ICE candidates and hang-ups are forwarded between two
connections without looking at their payloads. A small per-room state
machine decides what may be forwarded:

    IDLE --offer--> OFFERING --answer--> CONNECTED
      ^                |                     |
      +----endCall-----+--------endCall------+

Anything that does not fit (unknown or offline target, wrong state, a
connection that is not part of the call) is dropped silently. Nothing is
persisted and there are no timeouts. ``endCall`` is never dropped for a live
target, and when a call member hangs up it is delivered to the call peer,
whichever connection it was addressed to.

The relay is synchronous: it returns the frames to send and leaves the
sending to the caller.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from .events import PEER_DISCONNECTED
from .registry import Connection, ConnectionRegistry
from .rooms import PrivateRoomId, derive_private_room_id

logger = logging.getLogger(__name__)


class CallState(str, Enum):
    IDLE = "idle"
    OFFERING = "offering"
    CONNECTED = "connected"


@dataclass
class Call:
    """An active call between two connections of different identities."""
    room: PrivateRoomId
    caller: str
    callee: str
    state: CallState = CallState.OFFERING

    def involves(self, connection_id: str) -> bool:
        return connection_id in (self.caller, self.callee)

    def is_pair(self, a: str, b: str) -> bool:
        return {a, b} == {self.caller, self.callee}

    def peer_of(self, connection_id: str) -> str:
        return self.callee if connection_id == self.caller else self.caller


@dataclass
class SignalForward:
    """A frame to send to ``target`` (a connection id)."""
    target: str
    message: Dict[str, Any]


class SignalingRelay:
    """Forwards signaling frames according to per-room call state."""

    def __init__(self, registry: ConnectionRegistry) -> None:
        self.registry = registry
        # private room -> active call; absent means IDLE
        self._calls: Dict[PrivateRoomId, Call] = {}

    def state_of(self, room: PrivateRoomId) -> CallState:
        call = self._calls.get(room)
        return call.state if call else CallState.IDLE

    def call_in(self, room: PrivateRoomId) -> Optional[Call]:
        return self._calls.get(room)

    def handle(self, sender: Connection, kind: str, to: Any, payload: Any = None) -> Optional[SignalForward]:
        """Apply one signaling frame from ``sender``.

        Returns:
            The frame to forward, or None when the frame is dropped.
        """
        target = self.registry.get(to) if isinstance(to, str) else None
        if target is None:
            logger.debug(f"[Signal] Dropped {kind} from {sender.connection_id}: target {to!r} offline")
            return None
        if target.identity_id == sender.identity_id:
            logger.debug(f"[Signal] Dropped {kind} from {sender.connection_id}: target is the same identity")
            return None

        room = derive_private_room_id(sender.identity_id, target.identity_id)
        call = self._calls.get(room)
        pair = (sender.connection_id, target.connection_id)

        if kind == "offer":
            if call is None:
                self._calls[room] = Call(room=room, caller=sender.connection_id, callee=target.connection_id)
                logger.info(f"[Signal] {room}: {sender.connection_id} calling {target.connection_id}")
            elif not call.is_pair(*pair):
                return self._drop(kind, sender, "another call is active in this room")
        elif kind == "answer":
            if call is None or call.state != CallState.OFFERING or call.callee != sender.connection_id \
                    or call.caller != target.connection_id:
                return self._drop(kind, sender, "no pending offer to answer")
            call.state = CallState.CONNECTED
            logger.info(f"[Signal] {room}: call connected")
        elif kind == "iceCandidate":
            if call is None or not call.is_pair(*pair):
                return self._drop(kind, sender, "not part of an active call")
        elif kind == "endCall":
            return self._end_call(sender, target, room, call)
        else:
            return self._drop(kind, sender, "unknown signaling event")

        return SignalForward(target.connection_id, self._frame(kind, sender, room, payload))

    def _end_call(
        self, sender: Connection, target: Connection, room: PrivateRoomId, call: Optional[Call]
    ) -> Optional[SignalForward]:
        """Hang up. A call member's hang-up always reaches its call peer."""
        frame = self._frame("endCall", sender, room)
        if call is None or not call.involves(sender.connection_id):
            # Not a call member; pass it along, the call stays
            return SignalForward(target.connection_id, frame)

        del self._calls[room]
        peer = call.peer_of(sender.connection_id)
        logger.info(f"[Signal] {room}: call ended by {sender.connection_id}")
        if peer != target.connection_id:
            logger.debug(f"[Signal] endCall from {sender.connection_id} redirected from {target.connection_id} to {peer}")
        if peer not in self.registry:
            return None
        return SignalForward(peer, frame)

    def drop_connection(self, connection: Connection) -> List[SignalForward]:
        """Reset every call ``connection`` takes part in.

        Returns:
            ``endCall`` frames for surviving peers that are still connected.
        """
        forwards: List[SignalForward] = []
        for room, call in list(self._calls.items()):
            if not call.involves(connection.connection_id):
                continue
            del self._calls[room]
            peer = call.peer_of(connection.connection_id)
            logger.info(f"[Signal] {room}: call reset, {connection.connection_id} disconnected")
            if peer in self.registry:
                frame = self._frame("endCall", connection, room)
                frame["reason"] = PEER_DISCONNECTED
                forwards.append(SignalForward(peer, frame))
        return forwards

    @staticmethod
    def _frame(kind: str, sender: Connection, room: PrivateRoomId, payload: Any = None) -> Dict[str, Any]:
        frame: Dict[str, Any] = {
            "event": kind,
            "from": sender.connection_id,
            "fromIdentity": sender.identity_id,
            "displayName": sender.display_name,
            "room": str(room),
        }
        if kind != "endCall":
            frame["payload"] = payload
        return frame

    @staticmethod
    def _drop(kind: str, sender: Connection, why: str) -> None:
        logger.debug(f"[Signal] Dropped {kind} from {sender.connection_id}: {why}")
        return None

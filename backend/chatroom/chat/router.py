"""Chat transport endpoints.

Endpoints:
    WS  /ws/chat          - Real-time chat, presence, typing and call signaling
    GET /api/chat/limits  - Size limits the client checks before sending images

Connection handshake:
    1. The session cookie is verified; without a valid session the socket is
       closed with 1008 before it is accepted.
    2. The session is resolved to an identity, provisioning it if needed. A
       storage failure closes the socket with 1011; nothing is registered.
    3. The socket is accepted. When the session was re-issued the handshake
       response carries the new cookie.
    4. The client receives ``connected`` and then ``onlineUsers``.
"""
import json
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from starlette.requests import HTTPConnection

from chatroom.identity.service import IdentityProvisioningError, IdentityResolver
from chatroom.identity.session import SessionCodec

from .events import INVALID_EVENT, error_event
from .manager import ChatManager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])

# A single ChatManager is created at startup and stored in app.state;
# tests swap it for one backed by an in-memory store.


def get_chat_manager(conn: HTTPConnection) -> ChatManager:
    return conn.app.state.chat_manager


def get_session_codec(manager: ChatManager = Depends(get_chat_manager)) -> SessionCodec:
    return SessionCodec.from_config(manager.config)


def get_identity_resolver(
    manager: ChatManager = Depends(get_chat_manager),
    codec: SessionCodec = Depends(get_session_codec),
) -> IdentityResolver:
    return IdentityResolver(manager.store, codec, manager.config.chat.display_name_max_length)


@router.get("/api/chat/limits")
async def chat_limits(manager: ChatManager = Depends(get_chat_manager)) -> dict:
    """Image limits: inline (enforced by the relay) and upload (client pre-check)."""
    return {
        "maxInlineImageBytes": manager.config.chat.max_inline_image_bytes,
        "clientUploadLimitBytes": manager.config.chat.client_upload_limit_bytes,
    }


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(
    websocket: WebSocket,
    manager: ChatManager = Depends(get_chat_manager),
    codec: SessionCodec = Depends(get_session_codec),
    resolver: IdentityResolver = Depends(get_identity_resolver),
):
    """WebSocket endpoint for the chat.

    Every frame is a JSON object with an ``event`` key; see
    ``chatroom.chat.events`` for the protocol.
    """
    claims = codec.from_cookies(websocket.cookies)
    if claims is None:
        logger.warning("[WS] Rejected connection without a valid session")
        await websocket.close(code=1008)  # 1008 = Policy Violation
        return

    try:
        resolved = await resolver.resolve(claims)
    except IdentityProvisioningError as e:
        logger.error(f"[WS] Identity provisioning failed for '{claims.name}': {e.__cause__ or e}")
        await websocket.close(code=1011)  # 1011 = Internal Error
        return

    headers = None
    if resolved.token:
        headers = [(b"set-cookie", codec.set_cookie_header(resolved.token).encode("latin-1"))]
    await websocket.accept(headers=headers)

    connection = await manager.connect(websocket, resolved.identity)
    connection_id = connection.connection_id
    logger.info(f"[WS] {resolved.identity.display_name} connected as {connection_id}")

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                logger.debug(f"[WS] Non-JSON frame from {connection_id}")
                await manager.send_to(connection_id, error_event(INVALID_EVENT))
                continue
            await manager.handle_event(connection_id, data)
    except WebSocketDisconnect:
        logger.info(f"[WS] {connection_id} disconnected")
    except Exception as e:
        logger.error(f"[WS] Connection {connection_id} failed: {e}", exc_info=True)
    finally:
        await manager.disconnect(connection_id)

"""Headless chat client.

Logs in over HTTP, then talks to ``/ws/chat`` with the ``websockets``
library, keeping a ``ChatClientState`` up to date with every event it reads.
Useful for scripting and smoke tests against a running server:

    async with ChatClient.login("http://localhost:3000", "alice") as alice:
        await alice.wait_for("onlineUsers")
        await alice.send_message("Hello group")
"""
import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import httpx
from websockets.asyncio.client import ClientConnection, connect

from chatroom.chat.client_state import ChatClientState
from chatroom.chat.presence import OnlineUser
from chatroom.chat.relay import inline_image_size

logger = logging.getLogger(__name__)

DEFAULT_COOKIE_NAME = "chatroom_session"
DEFAULT_UPLOAD_LIMIT = 2 * 1024 * 1024


class ImageTooLargeForUpload(ValueError):
    """Raised before sending an image above the advertised client limit."""


class ChatClient:
    """One chat connection plus its mirrored state.

    Args:
        base_url: HTTP base URL of the server, e.g. ``http://localhost:3000``.
        session_token: Value of the session cookie.
        cookie_name: Name of the session cookie.
    """

    def __init__(self, base_url: str, session_token: str, cookie_name: str = DEFAULT_COOKIE_NAME) -> None:
        self.base_url = base_url.rstrip("/")
        self.session_token = session_token
        self.cookie_name = cookie_name
        self.state = ChatClientState()
        self.upload_limit = DEFAULT_UPLOAD_LIMIT
        self._ws: Optional[ClientConnection] = None

    @classmethod
    def login(cls, base_url: str, nickname: str, cookie_name: str = DEFAULT_COOKIE_NAME) -> "ChatClient":
        """Start a session for ``nickname`` and return an unconnected client.

        Raises:
            httpx.HTTPStatusError: The server refused the nickname.
        """
        response = httpx.post(f"{base_url.rstrip('/')}/login", json={"nickname": nickname})
        response.raise_for_status()
        return cls(base_url, response.cookies[cookie_name], cookie_name)

    @property
    def ws_url(self) -> str:
        scheme, _, rest = self.base_url.partition("://")
        return f"{'wss' if scheme == 'https' else 'ws'}://{rest}/ws/chat"

    async def connect(self) -> None:
        await self._fetch_limits()
        self._ws = await connect(
            self.ws_url,
            additional_headers={"Cookie": f"{self.cookie_name}={self.session_token}"},
        )
        await self.wait_for("connected")
        logger.info(f"[Client] Connected as {self.state.connection_id} ({self.state.display_name})")

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
            self._ws = None

    async def __aenter__(self) -> "ChatClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Receiving
    # -------------------------------------------------------------------------

    async def recv(self) -> Dict[str, Any]:
        """Read one event and apply it to ``state``."""
        if self._ws is None:
            raise RuntimeError("Client is not connected")
        event = json.loads(await self._ws.recv())
        self.state.apply(event)
        return event

    async def wait_for(self, name: str, timeout: float = 5.0) -> Dict[str, Any]:
        """Read events until one named ``name`` arrives.

        Raises:
            asyncio.TimeoutError: Nothing matching within ``timeout`` seconds.
        """
        async def _read() -> Dict[str, Any]:
            while True:
                event = await self.recv()
                if event.get("event") == name:
                    return event

        return await asyncio.wait_for(_read(), timeout)

    # -------------------------------------------------------------------------
    # Sending
    # -------------------------------------------------------------------------

    async def send(self, event: Dict[str, Any]) -> None:
        if self._ws is None:
            raise RuntimeError("Client is not connected")
        await self._ws.send(json.dumps(event))

    async def send_many(self, events: List[Dict[str, Any]]) -> None:
        for event in events:
            await self.send(event)

    async def send_message(self, content: str, message_type: str = "text") -> None:
        """Send to the active room's target.

        Raises:
            RuntimeError: A private room is active but the partner is unknown.
            ImageTooLargeForUpload: Inline image above the upload limit.
        """
        target = self.state.target_for_send()
        if target is None:
            raise RuntimeError("No chat partner selected")
        if message_type == "image":
            self.check_image_size(content)
        await self.send({"event": "sendMessage", "content": content, "type": message_type, "target": target})

    async def switch_room(self, room: str) -> None:
        await self.send_many(self.state.switch_room(room))

    async def open_private_chat(self, user: OnlineUser) -> None:
        await self.send_many(self.state.open_private_chat(user))

    async def set_typing(self, is_typing: bool) -> None:
        await self.send({"event": "typing", "room": self.state.room, "isTyping": is_typing})

    async def signal(self, kind: str, to: str, payload: Any = None) -> None:
        """Send an ``offer``/``answer``/``iceCandidate``/``endCall`` frame."""
        await self.send({"event": kind, "to": to, "payload": payload})

    def check_image_size(self, content: str) -> None:
        """Reject ``data:`` URL images above the upload limit before sending them."""
        if not content.startswith("data:"):
            return
        try:
            size = inline_image_size(content)
        except ValueError:
            return  # the server rejects malformed payloads
        if size > self.upload_limit:
            raise ImageTooLargeForUpload(f"Image is {size} bytes, limit is {self.upload_limit}")

    async def _fetch_limits(self) -> None:
        try:
            async with httpx.AsyncClient(base_url=self.base_url) as http:
                response = await http.get("/api/chat/limits")
                response.raise_for_status()
                self.upload_limit = response.json()["clientUploadLimitBytes"]
        except (httpx.HTTPError, KeyError, ValueError) as e:
            logger.warning(f"[Client] Could not fetch limits, using {self.upload_limit} bytes: {e}")

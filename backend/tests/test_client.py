"""Tests for the headless websockets client."""
import base64
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from chatroom.chat.presence import OnlineUser
from chatroom.client import ChatClient, ImageTooLargeForUpload


def connected_client(frames):
    """A ChatClient whose socket replays ``frames`` and records what is sent."""
    chat = ChatClient("http://localhost:3000", "token")
    ws = MagicMock()
    ws.recv = AsyncMock(side_effect=[json.dumps(f) for f in frames])
    ws.send = AsyncMock()
    ws.close = AsyncMock()
    chat._ws = ws
    return chat, ws


CONNECTED = {"event": "connected", "connectionId": "c-alice", "identityId": "alice",
             "displayName": "Alice", "room": "group"}


def test_ws_url():
    assert ChatClient("http://localhost:3000/", "t").ws_url == "ws://localhost:3000/ws/chat"
    assert ChatClient("https://chat.example.com", "t").ws_url == "wss://chat.example.com/ws/chat"


def test_login_uses_session_cookie():
    response = MagicMock()
    response.cookies = {"chatroom_session": "tok"}
    with patch("chatroom.client.httpx.post", return_value=response) as post:
        chat = ChatClient.login("http://localhost:3000", "alice")
    post.assert_called_once_with("http://localhost:3000/login", json={"nickname": "alice"})
    assert chat.session_token == "tok"


@pytest.mark.asyncio
async def test_wait_for_applies_skipped_events():
    chat, _ = connected_client([
        CONNECTED,
        {"event": "onlineUsers", "users": [], "count": 0},
        {"event": "newMessage", "id": "1", "room": "group", "senderId": "bob", "displayName": "Bob",
         "content": "hi", "type": "text", "timestamp": "t"},
    ])
    message = await chat.wait_for("newMessage")
    assert message["content"] == "hi"
    assert chat.state.connection_id == "c-alice"
    assert len(chat.state.messages) == 1


@pytest.mark.asyncio
async def test_send_message_targets_active_room():
    chat, ws = connected_client([CONNECTED])
    await chat.recv()

    await chat.send_message("hello")
    assert json.loads(ws.send.call_args.args[0]) == {
        "event": "sendMessage", "content": "hello", "type": "text", "target": "group",
    }

    await chat.open_private_chat(OnlineUser(id="c-bob", identityId="bob", displayName="Bob"))
    await chat.send_message("psst")
    sent = [json.loads(call.args[0]) for call in ws.send.call_args_list]
    assert sent[1] == {"event": "switchRoom", "room": "private_alice_bob"}
    assert sent[2] == {"event": "getChatHistory", "room": "private_alice_bob"}
    assert sent[3]["target"] == "c-bob"


@pytest.mark.asyncio
async def test_send_message_without_partner():
    chat, _ = connected_client([CONNECTED])
    await chat.recv()
    await chat.switch_room("private_alice_bob")
    with pytest.raises(RuntimeError):
        await chat.send_message("anyone?")


@pytest.mark.asyncio
async def test_image_above_upload_limit_never_sent():
    chat, ws = connected_client([CONNECTED])
    await chat.recv()
    chat.upload_limit = 10
    big = "data:image/png;base64," + base64.b64encode(b"\x00" * 11).decode()
    with pytest.raises(ImageTooLargeForUpload):
        await chat.send_message(big, "image")
    ws.send.assert_not_called()

    await chat.send_message("https://cdn.example.com/cat.png", "image")
    ws.send.assert_called_once()


@pytest.mark.asyncio
async def test_not_connected():
    chat = ChatClient("http://localhost:3000", "token")
    with pytest.raises(RuntimeError):
        await chat.send({"event": "typing"})
    with pytest.raises(RuntimeError):
        await chat.recv()

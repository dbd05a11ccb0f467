"""Shared test fixtures and configuration for backend tests."""
import pytest

from chatroom.chat.manager import ChatManager
from chatroom.identity.schemas import SessionClaims
from chatroom.identity.session import SessionCodec
from chatroom.main import app
from chatroom.storage.service import ChatStore


@pytest.fixture(autouse=True)
def chat_manager():
    """Give every test a fresh ChatManager over an in-memory ChatStore.

    Keeps tests from opening the file-based chatroom.duckdb, and from seeing
    connections or call state left behind by another test.
    """
    ChatStore.reset_instance()
    store = ChatStore.get_instance(db_path=":memory:")
    manager = ChatManager(store=store)
    app.state.chat_manager = manager
    yield manager
    app.state.chat_manager = None
    ChatStore.reset_instance()


@pytest.fixture
def store(chat_manager):
    return chat_manager.store


@pytest.fixture
def codec():
    return SessionCodec.from_config()


@pytest.fixture
def session_headers(codec):
    """Factory for a cookie header carrying a session for a display name."""
    def _headers(name: str, identity_id: str = None) -> dict:
        token = codec.encode(SessionClaims(sub=identity_id, name=name))
        return {"cookie": f"{codec.cookie_name}={token}"}
    return _headers

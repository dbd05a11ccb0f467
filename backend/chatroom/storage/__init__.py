"""Chat storage module: users, conversations and message history in DuckDB."""

from .schemas import GroupContext, GroupMember, StoredMessage
from .service import ChatStore, DisplayNameConflict

__all__ = [
    "ChatStore",
    "DisplayNameConflict",
    "GroupContext",
    "GroupMember",
    "StoredMessage",
]

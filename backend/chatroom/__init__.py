"""Chatroom backend: group and private chat, presence and call signaling."""

"""Typed rejection reasons for chat messages.

Every rejection sent to a client carries one of the ``RejectReason`` values;
turning a reason into human-readable text is left to the client.
"""
from enum import Enum


class RejectReason(str, Enum):
    """Machine-readable reason attached to ``messageRejected``.

    Attributes:
        INVALID_MESSAGE: Missing/malformed target, type or content.
        IMAGE_TOO_LARGE: Inline image payload exceeds the server limit.
        TARGET_OFFLINE: The private counterpart's connection is gone.
        SERVER_ERROR: Persistence failed; nothing was delivered.
    """
    INVALID_MESSAGE = "INVALID_MESSAGE"
    IMAGE_TOO_LARGE = "IMAGE_TOO_LARGE"
    TARGET_OFFLINE = "TARGET_OFFLINE"
    SERVER_ERROR = "SERVER_ERROR"


class MessageRejected(Exception):
    """Base class for relay rejections. No state is mutated when raised."""

    reason: RejectReason = RejectReason.SERVER_ERROR

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail or self.reason.value)
        self.detail = detail

    def to_event(self) -> dict:
        return {"event": "messageRejected", "reason": self.reason.value}


class MessageValidationError(MessageRejected):
    """Malformed or missing target, type or content."""
    reason = RejectReason.INVALID_MESSAGE


class ImageTooLarge(MessageRejected):
    """Inline image payload above ``chat.max_inline_image_bytes``."""
    reason = RejectReason.IMAGE_TOO_LARGE


class TargetOffline(MessageRejected):
    """The private counterpart is not connected; nothing is persisted."""
    reason = RejectReason.TARGET_OFFLINE


class StorageFailure(MessageRejected):
    """The storage collaborator failed before delivery."""
    reason = RejectReason.SERVER_ERROR

"""Conversation data model and session context."""

from .conversation import Conversation
from .message_model import (
    Attachment,
    ChatMessage,
    ChatRole,
    FileContentAttachment,
    FunctionCall,
    ImageAttachment,
    MessageFrozenError,
)

__all__ = [
    "Attachment",
    "ChatMessage",
    "ChatRole",
    "Conversation",
    "FileContentAttachment",
    "FunctionCall",
    "ImageAttachment",
    "MessageFrozenError",
]

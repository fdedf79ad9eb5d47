"""Ordered, mutable message log for one session."""

from __future__ import annotations

import logging
import threading
from typing import Iterator

from .message_model import ChatMessage

__all__ = ["Conversation"]

LOGGER = logging.getLogger(__name__)


class Conversation:
    """Thread-safe ordered list of :class:`ChatMessage` rows.

    Enforces two invariants on every append: message ids are unique, and a
    ``tool-result`` row always follows an earlier ``assistant`` row carrying the
    same function call.
    """

    def __init__(self) -> None:
        self._messages: list[ChatMessage] = []
        self._ids: set[str] = set()
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return self.size()

    def __iter__(self) -> Iterator[ChatMessage]:
        return iter(self.messages())

    def size(self) -> int:
        with self._lock:
            return len(self._messages)

    def add(self, message: ChatMessage) -> ChatMessage:
        with self._lock:
            if message.id in self._ids:
                raise ValueError(f"Duplicate message id: {message.id}")
            if message.role == "tool-result":
                self._check_tool_result(message)
            self._messages.append(message)
            self._ids.add(message.id)
        LOGGER.debug("Conversation append: role=%s id=%s", message.role, message.id)
        return message

    append = add

    def messages(self) -> list[ChatMessage]:
        """Return a snapshot copy of the log."""
        with self._lock:
            return list(self._messages)

    def get(self, message_id: str) -> ChatMessage | None:
        with self._lock:
            for message in self._messages:
                if message.id == message_id:
                    return message
        return None

    def last_message(self) -> ChatMessage | None:
        with self._lock:
            return self._messages[-1] if self._messages else None

    def remove_last(self) -> ChatMessage | None:
        with self._lock:
            if not self._messages:
                return None
            removed = self._messages.pop()
            self._ids.discard(removed.id)
            return removed

    def remove(self, message_id: str) -> ChatMessage | None:
        with self._lock:
            for index, message in enumerate(self._messages):
                if message.id == message_id:
                    del self._messages[index]
                    self._ids.discard(message_id)
                    return message
        return None

    def clear(self) -> None:
        with self._lock:
            count = len(self._messages)
            self._messages.clear()
            self._ids.clear()
        LOGGER.info("Conversation cleared (%d message(s))", count)

    def _check_tool_result(self, message: ChatMessage) -> None:
        call = message.function_call
        if call is None:
            raise ValueError("tool-result message requires a function call")
        for earlier in reversed(self._messages):
            if earlier.role == "assistant" and earlier.function_call == call:
                return
        raise ValueError(f"tool-result for call {call.id} has no preceding assistant request")

"""Pipeline subscribers that render and record streamed text."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import IO, Protocol

from ...chat.conversation import Conversation
from ...chat.message_model import ChatMessage
from .function_call_detector import ProbeResult, SentinelProbe
from .pipeline import Subscription

__all__ = ["ChatView", "NullView", "ViewAppender", "StreamLogger"]

LOGGER = logging.getLogger(__name__)


class ChatView(Protocol):
    """Host surface that renders conversation messages."""

    def begin_message(self, message: ChatMessage) -> None:
        ...

    def update_message(self, message: ChatMessage) -> None:
        ...

    def end_message(self, message: ChatMessage) -> None:
        ...

    def remove_message(self, message_id: str) -> None:
        ...


class NullView:
    """View that renders nothing; used when the host attaches no UI."""

    def begin_message(self, message: ChatMessage) -> None:
        return None

    def update_message(self, message: ChatMessage) -> None:
        return None

    def end_message(self, message: ChatMessage) -> None:
        return None

    def remove_message(self, message_id: str) -> None:
        return None


class ViewAppender:
    """Appends streamed text to the assistant message and mirrors it to the view.

    Ordinary text goes to an assistant message that is created on the first
    fragment and added to the conversation. Text belonging to a function-call
    request is shown in a separate display-only message which never enters the
    conversation; the dispatch job records the call itself. An assistant
    message that ends up blank is removed when the stream ends.
    """

    def __init__(self, conversation: Conversation, view: ChatView | None = None) -> None:
        self._conversation = conversation
        self._view: ChatView = view or NullView()
        self._subscription: Subscription | None = None
        self._probe = SentinelProbe()
        self._message: ChatMessage | None = None
        self._call_message: ChatMessage | None = None

    @property
    def message(self) -> ChatMessage | None:
        """The assistant message in the conversation, if one was created and kept."""
        return self._message

    @property
    def call_message(self) -> ChatMessage | None:
        return self._call_message

    def on_subscribe(self, subscription: Subscription) -> None:
        self._subscription = subscription
        subscription.request(1)

    def on_next(self, fragment: str) -> None:
        if self._call_message is not None:
            self._append(self._call_message, fragment)
        else:
            result, released = self._probe.feed(fragment)
            if result is ProbeResult.MATCH:
                self._call_message = ChatMessage(role="assistant", metadata={"display_only": True})
                self._view.begin_message(self._call_message)
                self._append(self._call_message, released)
            elif result is ProbeResult.MISMATCH:
                self._append(self._assistant_message(), released)
        if self._subscription is not None:
            self._subscription.request(1)

    def on_complete(self) -> None:
        pending = self._probe.flush()
        if pending:
            self._append(self._assistant_message(), pending)
        self._finish()

    def on_error(self, error: BaseException) -> None:
        self._probe.reset()
        self._finish()

    def _assistant_message(self) -> ChatMessage:
        if self._message is None:
            self._message = self._conversation.add(ChatMessage(role="assistant"))
            self._view.begin_message(self._message)
        return self._message

    def _append(self, message: ChatMessage, text: str) -> None:
        if not text:
            return
        message.append(text)
        self._view.update_message(message)

    def _finish(self) -> None:
        message = self._message
        if message is not None:
            if not message.content.strip():
                self._conversation.remove(message.id)
                self._view.remove_message(message.id)
                self._message = None
            else:
                message.freeze()
                self._view.end_message(message)
        if self._call_message is not None:
            self._call_message.freeze()
            self._view.end_message(self._call_message)


class StreamLogger:
    """Logs every fragment at DEBUG and optionally writes a transcript file."""

    def __init__(self, label: str = "stream", transcript_path: Path | str | None = None) -> None:
        self._label = label
        self._transcript_path = Path(transcript_path) if transcript_path else None
        self._handle: IO[str] | None = None
        self._subscription: Subscription | None = None
        self._fragments = 0
        self._chars = 0

    @property
    def fragment_count(self) -> int:
        return self._fragments

    @property
    def char_count(self) -> int:
        return self._chars

    def on_subscribe(self, subscription: Subscription) -> None:
        self._subscription = subscription
        if self._transcript_path is not None:
            self._transcript_path.parent.mkdir(parents=True, exist_ok=True)
            self._handle = self._transcript_path.open("a", encoding="utf-8")
        subscription.request(1)

    def on_next(self, fragment: str) -> None:
        self._fragments += 1
        self._chars += len(fragment)
        LOGGER.debug("[%s] fragment %d: %r", self._label, self._fragments, fragment)
        if self._handle is not None:
            self._handle.write(fragment)
            self._handle.flush()
        if self._subscription is not None:
            self._subscription.request(1)

    def on_complete(self) -> None:
        LOGGER.info("[%s] stream complete: %d fragment(s), %d char(s)", self._label, self._fragments, self._chars)
        self._close()

    def on_error(self, error: BaseException) -> None:
        LOGGER.warning("[%s] stream ended with %s: %s", self._label, type(error).__name__, error)
        self._close()

    def _close(self) -> None:
        if self._handle is not None:
            self._handle.write("\n")
            self._handle.close()
            self._handle = None

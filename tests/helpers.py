"""Shared test fakes for the conversation loop.

Import from here instead of duplicating stubs in individual test files::

    from tests.helpers import RecordingView, ScriptedBackend
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Sequence

from agentloop.ai.client import ChatRequest
from agentloop.chat.message_model import ChatMessage


class ScriptedBackend:
    """Backend that replays one scripted fragment list per request.

    A script item that is an exception is raised at that point of the stream.
    """

    def __init__(self, *scripts: Sequence[Any], repeat_last: bool = False) -> None:
        self.scripts = [list(script) for script in scripts]
        self.repeat_last = repeat_last
        self.requests: list[ChatRequest] = []
        self.active = 0
        self.max_active = 0

    async def stream(self, request: ChatRequest) -> AsyncIterator[str]:
        self.requests.append(request)
        index = len(self.requests) - 1
        if index < len(self.scripts):
            script = self.scripts[index]
        elif self.repeat_last and self.scripts:
            script = self.scripts[-1]
        else:
            script = []
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            for item in script:
                await asyncio.sleep(0)
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            self.active -= 1


class RecordingView:
    """Chat view that records every callback as ``(event, message_id)``."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str]] = []
        self.messages: dict[str, ChatMessage] = {}

    def begin_message(self, message: ChatMessage) -> None:
        self.messages[message.id] = message
        self.events.append(("begin", message.id))

    def update_message(self, message: ChatMessage) -> None:
        self.events.append(("update", message.id))

    def end_message(self, message: ChatMessage) -> None:
        self.events.append(("end", message.id))

    def remove_message(self, message_id: str) -> None:
        self.events.append(("remove", message_id))

    def kinds(self, message_id: str) -> list[str]:
        return [kind for kind, target in self.events if target == message_id]


class FakeSubscription:
    """Stand-in for a pipeline subscription when driving a subscriber by hand."""

    def __init__(self) -> None:
        self.requested = 0
        self.cancelled = False

    def request(self, count: int) -> None:
        self.requested += count

    def cancel(self) -> None:
        self.cancelled = True


async def drain_loop(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)

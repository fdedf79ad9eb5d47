"""Explicit per-session value passed into every job."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, AbstractSet

from .conversation import Conversation

if TYPE_CHECKING:  # pragma: no cover
    from ..ai.orchestration.guard import ConcurrencyGuard

__all__ = ["ConversationContext"]


@dataclass(eq=False)
class ConversationContext:
    """Everything a job needs to know about the session it works for.

    Attributes:
        session_id: Stable identifier for logging and job bookkeeping.
        conversation: The session's message log.
        guard: Single-flight token shared by the send and dispatch jobs.
        allowed_tools: Full tool names the model may call (``None`` = all).
        tool_iterations: Tool calls dispatched since the last user message.
    """

    session_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    conversation: Conversation = field(default_factory=Conversation)
    guard: ConcurrencyGuard | None = None
    allowed_tools: AbstractSet[str] | None = None
    tool_iterations: int = 0

    def __post_init__(self) -> None:
        if self.guard is None:
            from ..ai.orchestration.guard import ConcurrencyGuard

            self.guard = ConcurrencyGuard(name=self.session_id)
        if self.allowed_tools is not None:
            self.allowed_tools = frozenset(self.allowed_tools)

    def is_tool_allowed(self, tool_name: str) -> bool:
        if self.allowed_tools is None:
            return True
        return tool_name in self.allowed_tools

    def __repr__(self) -> str:
        return (
            f"ConversationContext(session_id={self.session_id!r}, "
            f"messages={self.conversation.size()}, "
            f"restricted={self.allowed_tools is not None})"
        )

"""Error taxonomy for the conversation loop.

Each failure class maps to one outcome of a turn:

* ``StreamError``: the backend stream failed; the turn is reported as failed and
  any partial assistant text stays in the conversation.
* ``FunctionCallParseError``: an embedded call could not be decoded; logged and
  the turn ends as plain text.
* ``ToolNotFoundError``: the call named a tool that cannot be resolved; dispatch
  fails and the loop stops.
* ``ToolExecutionError``: the tool ran and failed; the failure is fed back to the
  model as tool-result text and the loop continues.
* ``TurnCancelledError``: the host cancelled the turn; nothing is surfaced.
"""

from __future__ import annotations

__all__ = [
    "AgentLoopError",
    "StreamError",
    "FunctionCallParseError",
    "ToolNotFoundError",
    "ToolExecutionError",
    "TurnCancelledError",
    "ToolLoopLimitError",
]


class AgentLoopError(Exception):
    """Base class for all conversation loop failures."""


class StreamError(AgentLoopError):
    """Raised when the model backend or network fails mid-stream."""

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class FunctionCallParseError(AgentLoopError):
    """Raised when an embedded function-call payload cannot be decoded."""

    def __init__(self, message: str, *, payload: str = "") -> None:
        super().__init__(message)
        self.payload = payload


class ToolNotFoundError(AgentLoopError):
    """Raised when a function-call name cannot be resolved to a tool."""

    def __init__(self, name: str, reason: str | None = None) -> None:
        self.name = name
        self.reason = reason or "not found"
        super().__init__(f"Tool '{name}' {self.reason}")


class ToolExecutionError(AgentLoopError):
    """Raised when a resolved tool fails while executing."""

    def __init__(self, name: str, message: str, *, cause: BaseException | None = None) -> None:
        self.name = name
        self.cause = cause
        super().__init__(f"Tool '{name}' failed: {message}")


class TurnCancelledError(AgentLoopError):
    """Signals a cooperative cancellation of the running turn."""


class ToolLoopLimitError(AgentLoopError):
    """Raised when a session exhausts its tool-call iteration budget."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(f"Tool-call loop stopped after {limit} iteration(s)")

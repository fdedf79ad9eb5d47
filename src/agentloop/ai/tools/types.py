"""Tool system types.

A tool is a :class:`ToolSpec` (name, description and JSON-schema parameters)
paired with a plain handler function. Handlers receive the argument mapping
and return whatever is convenient; :meth:`ToolCallResult.from_value` turns the
return value into content parts.
"""

from __future__ import annotations

import asyncio
import inspect
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine, Mapping, Sequence

__all__ = [
    "ToolCategory",
    "ToolSpec",
    "ToolHandler",
    "AsyncToolHandler",
    "ContentPart",
    "ToolCallResult",
    "SimpleTool",
]


# -----------------------------------------------------------------------------
# Tool Categories
# -----------------------------------------------------------------------------


class ToolCategory:
    """Standard tool categories for organization."""

    READ = "read"
    WRITE = "write"
    SEARCH = "search"
    UTILITY = "utility"
    SYSTEM = "system"


# -----------------------------------------------------------------------------
# Tool Specification
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """Specification for a tool's interface.

    Attributes:
        name: Tool identifier, unique within its toolset.
        description: Human-readable description of what the tool does.
        parameters: JSON Schema for the tool's arguments.
        category: Tool category for organization.
    """

    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=dict)
    category: str = ToolCategory.UTILITY

    def parameter_schema(self) -> dict[str, Any]:
        if self.parameters:
            return dict(self.parameters)
        return {"type": "object", "properties": {}}

    def to_openai_tool(self, full_name: str | None = None) -> dict[str, Any]:
        """Convert to OpenAI tool definition format."""
        return {
            "type": "function",
            "function": {
                "name": full_name or self.name,
                "description": self.description,
                "parameters": self.parameter_schema(),
            },
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": dict(self.parameters) if self.parameters else {},
            "category": self.category,
        }


# -----------------------------------------------------------------------------
# Results
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ContentPart:
    """One piece of tool output. Only ``text`` parts reach the conversation."""

    type: str = "text"
    text: str = ""
    data: bytes | None = None
    mime_type: str | None = None

    @classmethod
    def of_text(cls, text: str) -> "ContentPart":
        return cls(type="text", text=text)

    @property
    def is_text(self) -> bool:
        return self.type == "text"


@dataclass(slots=True, frozen=True)
class ToolCallResult:
    """Outcome of one tool invocation."""

    content: tuple[ContentPart, ...] = ()
    is_error: bool = False

    @classmethod
    def of_text(cls, text: str, *, is_error: bool = False) -> "ToolCallResult":
        return cls(content=(ContentPart.of_text(text),), is_error=is_error)

    @classmethod
    def error(cls, message: str) -> "ToolCallResult":
        return cls.of_text(message, is_error=True)

    @classmethod
    def from_value(cls, value: Any) -> "ToolCallResult":
        """Normalize a handler return value."""
        if isinstance(value, ToolCallResult):
            return value
        if isinstance(value, ContentPart):
            return cls(content=(value,))
        if value is None:
            return cls()
        if isinstance(value, str):
            return cls.of_text(value)
        if isinstance(value, Sequence) and value and all(isinstance(item, ContentPart) for item in value):
            return cls(content=tuple(value))
        return cls.of_text(json.dumps(value, ensure_ascii=False, default=str))

    def text_parts(self) -> list[str]:
        return [part.text for part in self.content if part.is_text]


# -----------------------------------------------------------------------------
# Tool Handler Types
# -----------------------------------------------------------------------------

# Synchronous tool handler
ToolHandler = Callable[[Mapping[str, Any]], Any]

# Asynchronous tool handler
AsyncToolHandler = Callable[[Mapping[str, Any]], Coroutine[Any, Any, Any]]


@dataclass
class SimpleTool:
    """A spec bound to its handler.

    Synchronous handlers run in a worker thread so blocking I/O never stalls
    the event loop.

    Example:
        def greet(args: Mapping[str, Any]) -> str:
            return f"Hello, {args.get('name', 'World')}!"

        tool = SimpleTool(spec=ToolSpec(name="greet", description="Greet someone"), handler=greet)
    """

    spec: ToolSpec
    handler: ToolHandler | AsyncToolHandler
    _is_async: bool = field(init=False, default=False)

    def __post_init__(self) -> None:
        self._is_async = inspect.iscoroutinefunction(self.handler)

    @property
    def name(self) -> str:
        return self.spec.name

    async def execute(self, arguments: Mapping[str, Any]) -> Any:
        if self._is_async:
            return await self.handler(arguments)  # type: ignore[misc]
        return await asyncio.to_thread(self.handler, arguments)

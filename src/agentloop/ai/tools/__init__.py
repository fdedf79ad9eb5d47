"""Tool registration table and built-in toolsets."""

from .builtin import register_builtin_toolsets
from .registry import DuplicateToolError, ToolRegistration, ToolRegistry, ToolsetHandle
from .types import ContentPart, SimpleTool, ToolCallResult, ToolCategory, ToolSpec

__all__ = [
    "ContentPart",
    "DuplicateToolError",
    "SimpleTool",
    "ToolCallResult",
    "ToolCategory",
    "ToolRegistration",
    "ToolRegistry",
    "ToolSpec",
    "ToolsetHandle",
    "register_builtin_toolsets",
]

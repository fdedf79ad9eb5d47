"""Explicit registration table of toolsets and their tools.

Tools are registered once at startup under a toolset id. The model addresses a
tool as ``<toolset><separator><tool>``; the dispatch job splits that name and
resolves the toolset here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterator, Mapping

import jsonschema

from ..errors import ToolExecutionError, ToolNotFoundError
from .types import AsyncToolHandler, SimpleTool, ToolCallResult, ToolHandler, ToolSpec

__all__ = [
    "DuplicateToolError",
    "ToolRegistration",
    "ToolsetHandle",
    "ToolRegistry",
    "MAX_SCHEMA_ERRORS",
]

LOGGER = logging.getLogger(__name__)

MAX_SCHEMA_ERRORS = 5


class DuplicateToolError(Exception):
    """Raised when attempting to register a tool with a name that already exists."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' is already registered")


# -----------------------------------------------------------------------------
# Registrations
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ToolRegistration:
    """Record of a registered tool.

    Attributes:
        toolset_id: Owning toolset.
        tool: The spec and its handler.
        enabled: Whether the tool is currently callable.
        metadata: Additional registration metadata.
    """

    toolset_id: str
    tool: SimpleTool
    enabled: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.tool.name

    @property
    def spec(self) -> ToolSpec:
        return self.tool.spec


class ToolsetHandle:
    """Callable view of one toolset, returned by :meth:`ToolRegistry.resolve`."""

    def __init__(
        self,
        toolset_id: str,
        description: str,
        tools: Mapping[str, ToolRegistration],
        separator: str = ".",
    ) -> None:
        self._toolset_id = toolset_id
        self._description = description
        self._tools = tools
        self._separator = separator

    @property
    def toolset_id(self) -> str:
        return self._toolset_id

    @property
    def description(self) -> str:
        return self._description

    def full_name(self, tool_name: str) -> str:
        return f"{self._toolset_id}{self._separator}{tool_name}"

    def has(self, tool_name: str) -> bool:
        registration = self._tools.get(tool_name)
        return registration is not None and registration.enabled

    def list_tools(self) -> list[ToolSpec]:
        return [registration.spec for registration in self._tools.values() if registration.enabled]

    async def call(self, tool_name: str, arguments: Mapping[str, Any]) -> ToolCallResult:
        """Validate ``arguments`` and run the tool.

        Invalid arguments come back as an error result so the model can retry.

        Raises:
            ToolNotFoundError: If the toolset has no enabled tool ``tool_name``.
            ToolExecutionError: If the handler raised.
        """
        registration = self._tools.get(tool_name)
        if registration is None or not registration.enabled:
            raise ToolNotFoundError(self.full_name(tool_name), "is not registered in this toolset")

        problems = validate_arguments(registration.spec, arguments)
        if problems:
            LOGGER.info("Rejected arguments for %s: %s", self.full_name(tool_name), "; ".join(problems))
            return ToolCallResult.error("Invalid arguments: " + "; ".join(problems))

        try:
            value = await registration.tool.execute(arguments)
        except (ToolExecutionError, ToolNotFoundError):
            raise
        except Exception as exc:
            raise ToolExecutionError(self.full_name(tool_name), str(exc) or type(exc).__name__, cause=exc) from exc
        return ToolCallResult.from_value(value)


def validate_arguments(spec: ToolSpec, arguments: Mapping[str, Any]) -> list[str]:
    """Return human-readable schema violations for ``arguments``."""
    if not spec.parameters:
        return []
    validator_cls = jsonschema.validators.validator_for(spec.parameters)
    try:
        validator = validator_cls(dict(spec.parameters))
    except jsonschema.exceptions.SchemaError as exc:
        return [f"Invalid JSON schema: {exc.message}"]
    problems: list[str] = []
    for issue in validator.iter_errors(dict(arguments)):
        path = ".".join(str(part) for part in issue.absolute_path)
        problems.append(f"{path}: {issue.message}" if path else issue.message)
        if len(problems) >= MAX_SCHEMA_ERRORS:
            break
    return problems


# -----------------------------------------------------------------------------
# Tool Registry
# -----------------------------------------------------------------------------


class ToolRegistry:
    """Table of toolset id → tools, built once at startup.

    Example:
        registry = ToolRegistry()
        registry.register_toolset("time", "Clock helpers")
        registry.register_tool(
            "time",
            ToolSpec(name="current_time", description="Current UTC time"),
            lambda args: datetime.now(timezone.utc).isoformat(),
        )
        handle = registry.resolve("time")
        result = await handle.call("current_time", {})
    """

    def __init__(self) -> None:
        self._toolsets: dict[str, dict[str, ToolRegistration]] = {}
        self._descriptions: dict[str, str] = {}

    def register_toolset(self, toolset_id: str, description: str = "") -> None:
        if not toolset_id or not toolset_id.strip():
            raise ValueError("toolset_id must be a non-empty string")
        self._toolsets.setdefault(toolset_id, {})
        if description or toolset_id not in self._descriptions:
            self._descriptions[toolset_id] = description

    def register_tool(
        self,
        toolset_id: str,
        spec: ToolSpec,
        handler: ToolHandler | AsyncToolHandler,
        *,
        enabled: bool = True,
        allow_override: bool = False,
        metadata: Mapping[str, Any] | None = None,
    ) -> ToolRegistration:
        """Register ``handler`` under ``toolset_id`` with ``spec``.

        Raises:
            DuplicateToolError: If the tool already exists and ``allow_override`` is False.
        """
        if toolset_id not in self._toolsets:
            self.register_toolset(toolset_id)
        tools = self._toolsets[toolset_id]
        if spec.name in tools and not allow_override:
            raise DuplicateToolError(f"{toolset_id}.{spec.name}")
        registration = ToolRegistration(
            toolset_id=toolset_id,
            tool=SimpleTool(spec=spec, handler=handler),
            enabled=enabled,
            metadata=dict(metadata) if metadata else {},
        )
        tools[spec.name] = registration
        LOGGER.debug("Registered tool: %s.%s", toolset_id, spec.name)
        return registration

    def unregister(self, toolset_id: str, tool_name: str | None = None) -> bool:
        """Remove one tool, or the whole toolset when ``tool_name`` is None."""
        tools = self._toolsets.get(toolset_id)
        if tools is None:
            return False
        if tool_name is None:
            del self._toolsets[toolset_id]
            self._descriptions.pop(toolset_id, None)
            LOGGER.debug("Unregistered toolset: %s", toolset_id)
            return True
        if tools.pop(tool_name, None) is None:
            return False
        LOGGER.debug("Unregistered tool: %s.%s", toolset_id, tool_name)
        return True

    def resolve(self, toolset_id: str, *, separator: str = ".") -> ToolsetHandle | None:
        """Return a handle for ``toolset_id``; ``separator`` joins names in errors."""
        tools = self._toolsets.get(toolset_id)
        if tools is None:
            return None
        return ToolsetHandle(toolset_id, self._descriptions.get(toolset_id, ""), tools, separator)

    def enable(self, toolset_id: str, tool_name: str) -> bool:
        return self._set_enabled(toolset_id, tool_name, True)

    def disable(self, toolset_id: str, tool_name: str) -> bool:
        return self._set_enabled(toolset_id, tool_name, False)

    def list_toolsets(self) -> list[str]:
        return list(self._toolsets)

    def list_registrations(self, *, include_disabled: bool = False) -> list[ToolRegistration]:
        return [
            registration
            for tools in self._toolsets.values()
            for registration in tools.values()
            if registration.enabled or include_disabled
        ]

    def full_names(self, separator: str = ".") -> list[str]:
        return [f"{reg.toolset_id}{separator}{reg.name}" for reg in self.list_registrations()]

    def get_openai_tools(self, separator: str = ".", *, allowed: Any = None) -> list[dict[str, Any]]:
        """Tool definitions in OpenAI format, named ``toolset<separator>tool``.

        Args:
            separator: Joins toolset and tool ids.
            allowed: Optional collection of full names to include.
        """
        definitions: list[dict[str, Any]] = []
        for registration in self.list_registrations():
            full_name = f"{registration.toolset_id}{separator}{registration.name}"
            if allowed is not None and full_name not in allowed:
                continue
            definitions.append(registration.spec.to_openai_tool(full_name))
        return definitions

    def clear(self) -> None:
        self._toolsets.clear()
        self._descriptions.clear()

    def __len__(self) -> int:
        return sum(len(tools) for tools in self._toolsets.values())

    def __contains__(self, toolset_id: object) -> bool:
        return toolset_id in self._toolsets

    def __iter__(self) -> Iterator[str]:
        return iter(self._toolsets)

    def _set_enabled(self, toolset_id: str, tool_name: str, enabled: bool) -> bool:
        registration = self._toolsets.get(toolset_id, {}).get(tool_name)
        if registration is None:
            return False
        registration.enabled = enabled
        return True

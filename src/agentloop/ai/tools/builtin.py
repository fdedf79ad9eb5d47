"""Built-in toolsets available to every host.

* ``time.current_time``: current date and time in ISO-8601.
* ``fs.read_file``: text of a file below the configured root, returned as a
  cacheable resource result.
* ``fs.list_dir``: entries of a directory below the root.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..resources.cache import ResourceDescriptor
from ..resources.serializer import ResourceToolResult, serialize
from .registry import ToolRegistry
from .types import ToolCategory, ToolSpec

__all__ = ["register_builtin_toolsets", "register_time_toolset", "register_fs_toolset", "FileSystemTools"]

LOGGER = logging.getLogger(__name__)

MAX_READ_BYTES = 512 * 1024


def register_time_toolset(registry: ToolRegistry) -> None:
    registry.register_toolset("time", "Clock helpers")
    registry.register_tool(
        "time",
        ToolSpec(
            name="current_time",
            description="Returns the current date and time in ISO-8601 representation.",
            parameters={
                "type": "object",
                "properties": {
                    "timezone": {"type": "string", "description": "IANA zone name, defaults to UTC"},
                },
                "additionalProperties": False,
            },
            category=ToolCategory.UTILITY,
        ),
        _current_time,
    )


def _current_time(arguments: Mapping[str, Any]) -> str:
    zone_name = arguments.get("timezone")
    if not zone_name:
        return datetime.now(timezone.utc).isoformat()
    try:
        zone = ZoneInfo(str(zone_name))
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone: {zone_name}") from exc
    return datetime.now(zone).isoformat()


class FileSystemTools:
    """Read-only file access confined to ``root``."""

    def __init__(self, root: Path | str, *, max_bytes: int = MAX_READ_BYTES) -> None:
        self._root = Path(root).expanduser().resolve()
        self._max_bytes = max_bytes

    @property
    def root(self) -> Path:
        return self._root

    def read_file(self, arguments: Mapping[str, Any]) -> str:
        target = self._resolve(str(arguments["path"]))
        if not target.is_file():
            raise FileNotFoundError(f"No such file: {arguments['path']}")
        size = target.stat().st_size
        if size > self._max_bytes:
            raise ValueError(f"File too large ({size} bytes, limit {self._max_bytes})")
        text = target.read_text(encoding="utf-8", errors="replace")
        relative = target.relative_to(self._root).as_posix()
        LOGGER.debug("fs.read_file %s (%d bytes)", relative, size)
        descriptor = ResourceDescriptor.for_file(relative, tool_name="fs.read_file")
        return serialize(ResourceToolResult(descriptor, text))

    def list_dir(self, arguments: Mapping[str, Any]) -> str:
        target = self._resolve(str(arguments.get("path") or "."))
        if not target.is_dir():
            raise NotADirectoryError(f"Not a directory: {arguments.get('path') or '.'}")
        entries = sorted(target.iterdir(), key=lambda entry: (not entry.is_dir(), entry.name.lower()))
        lines = [f"{entry.name}/" if entry.is_dir() else entry.name for entry in entries]
        return "\n".join(lines) if lines else "(empty directory)"

    def _resolve(self, raw_path: str) -> Path:
        candidate = (self._root / raw_path.lstrip("/\\")).resolve()
        if candidate != self._root and self._root not in candidate.parents:
            raise PermissionError(f"Path escapes the tool root: {raw_path}")
        return candidate


def register_fs_toolset(registry: ToolRegistry, root: Path | str) -> FileSystemTools:
    tools = FileSystemTools(root)
    registry.register_toolset("fs", f"Read-only access to {tools.root}")
    registry.register_tool(
        "fs",
        ToolSpec(
            name="read_file",
            description="Reads a text file relative to the project root. The content is cached as a resource.",
            parameters={
                "type": "object",
                "properties": {"path": {"type": "string", "description": "Path relative to the project root"}},
                "required": ["path"],
                "additionalProperties": False,
            },
            category=ToolCategory.READ,
        ),
        tools.read_file,
    )
    registry.register_tool(
        "fs",
        ToolSpec(
            name="list_dir",
            description="Lists a directory relative to the project root; directories end with '/'.",
            parameters={
                "type": "object",
                "properties": {"path": {"type": "string", "description": "Directory path, defaults to the root"}},
                "additionalProperties": False,
            },
            category=ToolCategory.READ,
        ),
        tools.list_dir,
    )
    return tools


def register_builtin_toolsets(registry: ToolRegistry, *, root: Path | str | None = None) -> ToolRegistry:
    """Register ``time`` and, when ``root`` is given, ``fs``."""
    register_time_toolset(registry)
    if root is not None:
        register_fs_toolset(registry, root)
    return registry

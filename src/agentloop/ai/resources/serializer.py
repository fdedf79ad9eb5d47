"""Wire format for tool results that should land in the resource cache.

A tool marks cacheable output by returning a single JSON text part of the form::

    {"__resourceCache__": true, "uri": "...", "type": "workspace-file",
     "displayName": "...", "originPath": "...", "toolName": "...",
     "content": "..."}

The dispatch job detects the marker, stores the content and replaces the text
with a short reference before the tool result enters the conversation.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from .cache import ResourceDescriptor, ResourceType

__all__ = [
    "RESOURCE_MARKER",
    "ResourceToolResult",
    "serialize",
    "is_resource_result",
    "deserialize",
]

LOGGER = logging.getLogger(__name__)

RESOURCE_MARKER = "__resourceCache__"
_MARKER_PATTERN = re.compile(r'^\{\s*"' + RESOURCE_MARKER + r'"\s*:')


@dataclass(slots=True, frozen=True)
class ResourceToolResult:
    """Tool output paired with the descriptor it should be cached under."""

    descriptor: ResourceDescriptor
    content: str

    @property
    def is_cacheable(self) -> bool:
        return self.descriptor.is_cacheable

    @classmethod
    def transient(cls, content: str, tool_name: str | None = None) -> "ResourceToolResult":
        return cls(ResourceDescriptor.transient(tool_name), content)


def serialize(result: ResourceToolResult | None) -> str:
    """Encode ``result`` for transport inside a text content part.

    Transient results are returned as their bare content.
    """
    if result is None:
        return ""
    if not result.is_cacheable:
        return result.content
    descriptor = result.descriptor
    payload: dict[str, Any] = {
        RESOURCE_MARKER: True,
        "uri": descriptor.uri,
        "type": descriptor.type.value,
        "displayName": descriptor.display_name,
        "originPath": descriptor.origin_path,
        "toolName": descriptor.tool_name,
        "content": result.content,
    }
    return json.dumps(payload, ensure_ascii=False)


def is_resource_result(text: str | None) -> bool:
    if not text or not text.strip():
        return False
    return _MARKER_PATTERN.match(text.strip()) is not None


def deserialize(text: str | None) -> ResourceToolResult | None:
    """Decode a serialized result, or return ``None`` for ordinary text."""
    if not is_resource_result(text):
        return None
    try:
        payload = json.loads(text.strip())
        type_value = str(payload["type"])
        try:
            resource_type = ResourceType(type_value)
        except ValueError:
            resource_type = ResourceType[type_value.upper().replace("-", "_")]
        descriptor = ResourceDescriptor(
            uri=str(payload["uri"]),
            type=resource_type,
            display_name=str(payload.get("displayName") or payload["uri"]),
            origin_path=payload.get("originPath"),
            tool_name=payload.get("toolName"),
        )
        return ResourceToolResult(descriptor, str(payload["content"]))
    except (ValueError, KeyError, TypeError) as exc:
        LOGGER.warning("Ignoring malformed resource result: %s", exc)
        return None

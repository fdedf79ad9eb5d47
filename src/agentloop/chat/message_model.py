"""Chat message, function-call and attachment data models."""

from __future__ import annotations

import base64
import json
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Mapping, Optional, Union

__all__ = [
    "ChatRole",
    "ChatMessage",
    "FunctionCall",
    "FileContentAttachment",
    "ImageAttachment",
    "Attachment",
    "MessageFrozenError",
    "new_message_id",
]


def _utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""

    return datetime.now(timezone.utc)


def new_message_id() -> str:
    return uuid.uuid4().hex


ChatRole = Literal["user", "assistant", "tool-result", "system"]


class MessageFrozenError(RuntimeError):
    """Raised when appending to a message whose content is final."""


@dataclass(slots=True, frozen=True)
class FunctionCall:
    """Structured tool invocation request emitted by the model."""

    id: str
    name: str
    arguments: Mapping[str, Any] = field(default_factory=dict)

    def split_name(self, separator: str) -> tuple[str, str] | None:
        """Split ``name`` into ``(toolset_id, tool_id)``.

        Returns ``None`` when the separator is missing or either half is empty.
        """
        if not separator or separator not in self.name:
            return None
        toolset_id, _, tool_id = self.name.partition(separator)
        if not toolset_id or not tool_id:
            return None
        return toolset_id, tool_id

    def arguments_json(self) -> str:
        return json.dumps(dict(self.arguments), ensure_ascii=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": dict(self.arguments)}

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "FunctionCall":
        """Build a call from a decoded wire object.

        ``id`` is generated when absent, ``arguments`` may arrive as a JSON
        string and defaults to an empty mapping.
        """
        name = payload.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ValueError("function call requires a non-empty 'name'")
        call_id = payload.get("id")
        arguments = payload.get("arguments")
        if arguments is None:
            arguments = {}
        if isinstance(arguments, str):
            arguments = json.loads(arguments) if arguments.strip() else {}
        if not isinstance(arguments, Mapping):
            raise ValueError("function call 'arguments' must be an object")
        return cls(
            id=str(call_id) if call_id not in (None, "") else f"call_{uuid.uuid4().hex[:12]}",
            name=name.strip(),
            arguments=dict(arguments),
        )


@dataclass(slots=True, frozen=True)
class FileContentAttachment:
    """Selected content from a file, with its line span."""

    path: str
    start_line: int
    end_line: int
    text: str

    def to_chat_content(self) -> str:
        lines = f"{self.start_line}-{self.end_line}" if self.start_line > 0 else "unknown"
        return f"=== Context\nFile: {self.path}\nLines: {lines}\n{self.text}\n===\n"

    def image_data_uri(self) -> str | None:
        return None


@dataclass(slots=True, frozen=True)
class ImageAttachment:
    """Raster image attached by the user."""

    raster_data: bytes
    preview_data: bytes | None = None
    mime_type: str = "image/png"

    def to_chat_content(self) -> str | None:
        return None

    def image_data_uri(self) -> str:
        encoded = base64.b64encode(self.raster_data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


Attachment = Union[FileContentAttachment, ImageAttachment]


@dataclass(slots=True, eq=False)
class ChatMessage:
    """A single row of the conversation log.

    ``content`` grows through :meth:`append` while the owning job streams and is
    fixed once :meth:`freeze` has been called.
    """

    role: ChatRole
    content: str = ""
    id: str = field(default_factory=new_message_id)
    name: Optional[str] = None
    function_call: Optional[FunctionCall] = None
    attachments: list[Attachment] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)
    _frozen: bool = field(default=False, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def append(self, text: str) -> None:
        if not text:
            return
        with self._lock:
            if self._frozen:
                raise MessageFrozenError(f"message {self.id} is frozen")
            self.content += text

    def freeze(self) -> None:
        with self._lock:
            self._frozen = True

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the message for logging or host persistence."""

        payload: Dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
            "metadata": dict(self.metadata),
        }
        if self.name:
            payload["name"] = self.name
        if self.function_call is not None:
            payload["function_call"] = self.function_call.to_dict()
        if self.attachments:
            payload["attachments"] = [type(item).__name__ for item in self.attachments]
        return payload

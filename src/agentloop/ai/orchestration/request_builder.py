"""Serialization of a conversation into a backend request."""

from __future__ import annotations

import logging
from typing import AbstractSet, Any, Dict, List

from ...chat.conversation import Conversation
from ...chat.message_model import ChatMessage, FileContentAttachment, ImageAttachment
from ...services.settings import Settings
from ..client import ChatRequest
from ..resources.cache import ResourceCache
from ..tools.registry import ToolRegistry

__all__ = ["RequestBuilder"]

LOGGER = logging.getLogger(__name__)


class RequestBuilder:
    """Builds OpenAI-style chat requests.

    The system message carries the cached ``<resources>`` block followed by the
    configured system prompt. Assistant rows with a function call become
    ``tool_calls`` entries and tool-result rows become ``tool`` messages keyed
    by the call id.
    """

    def __init__(
        self,
        settings: Settings,
        registry: ToolRegistry | None = None,
        resource_cache: ResourceCache | None = None,
    ) -> None:
        self._settings = settings
        self._registry = registry
        self._resource_cache = resource_cache

    def build(self, conversation: Conversation, *, allowed_tools: AbstractSet[str] | None = None) -> ChatRequest:
        messages: List[Dict[str, Any]] = []
        system_prompt = self.build_system_prompt()
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        for message in conversation.messages():
            serialized = self.serialize_message(message)
            if serialized is not None:
                messages.append(serialized)
        tools: List[Dict[str, Any]] = []
        if self._registry is not None:
            tools = self._registry.get_openai_tools(self._settings.tool_name_separator, allowed=allowed_tools)
        LOGGER.debug("Built request: %d message(s), %d tool(s)", len(messages), len(tools))
        return ChatRequest(messages=messages, tools=tools, temperature=self._settings.temperature)

    def build_system_prompt(self) -> str:
        sections: List[str] = []
        if self._resource_cache is not None:
            block = self._resource_cache.to_context_block()
            if block:
                sections.append(block)
        if self._settings.system_prompt:
            sections.append(self._settings.system_prompt)
        return "\n".join(sections)

    def serialize_message(self, message: ChatMessage) -> Dict[str, Any] | None:
        if message.metadata.get("display_only"):
            return None
        if message.role == "tool-result":
            call = message.function_call
            if call is None:
                return None
            return {"role": "tool", "tool_call_id": call.id, "content": message.content}
        if message.role == "assistant":
            if message.function_call is not None:
                call = message.function_call
                return {
                    "role": "assistant",
                    "content": message.content or None,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {"name": call.name, "arguments": call.arguments_json()},
                        }
                    ],
                }
            if not message.content.strip():
                return None
            return {"role": "assistant", "content": message.content}
        if message.role == "system":
            return {"role": "system", "content": message.content}
        return {"role": "user", "content": self._user_content(message)}

    def _user_content(self, message: ChatMessage) -> str | List[Dict[str, Any]]:
        prefix = "".join(
            attachment.to_chat_content()
            for attachment in message.attachments
            if isinstance(attachment, FileContentAttachment)
        )
        text = prefix + message.content
        images = [attachment for attachment in message.attachments if isinstance(attachment, ImageAttachment)]
        if not images:
            return text
        if not self._settings.vision:
            LOGGER.debug("Skipping %d image attachment(s): model has no vision support", len(images))
            return text
        parts: List[Dict[str, Any]] = [{"type": "text", "text": text}]
        for image in images:
            parts.append({"type": "image_url", "image_url": {"url": image.image_data_uri()}})
        return parts

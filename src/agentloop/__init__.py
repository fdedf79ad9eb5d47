"""Streaming conversation loop with inline function-call dispatch."""

from .ai.orchestration.controller import AssistantController
from .chat.context import ConversationContext
from .services.settings import Settings, load_settings

__all__ = ["AssistantController", "ConversationContext", "Settings", "load_settings"]

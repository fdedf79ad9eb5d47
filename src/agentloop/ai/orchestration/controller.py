"""Host-facing entry point for conversational sessions."""

from __future__ import annotations

import inspect
import logging
import uuid
from typing import AbstractSet, Dict, Sequence

from ...chat.context import ConversationContext
from ...chat.message_model import Attachment, ChatMessage
from ...services.settings import Settings
from ..client import AIClient, ChatBackend
from ..resources.cache import CacheConfig, ResourceCache
from ..streaming.subscribers import ChatView, NullView
from ..tools.registry import ToolRegistry
from .jobs import Job, JobResult, TurnServices
from .request_builder import RequestBuilder
from .scheduler import JobFinishedCallback, JobScheduler
from .send_job import ConversationSendJob

__all__ = ["AssistantController"]

LOGGER = logging.getLogger(__name__)


class AssistantController:
    """Owns the shared collaborators and the sessions of one host.

    Example:
        >>> controller = AssistantController.from_settings(load_settings())   # doctest: +SKIP
        >>> session = controller.create_session()                            # doctest: +SKIP
        >>> reply = await controller.ask(session, "What time is it?")         # doctest: +SKIP
    """

    def __init__(
        self,
        backend: ChatBackend,
        *,
        settings: Settings | None = None,
        registry: ToolRegistry | None = None,
        resource_cache: ResourceCache | None = None,
        view: ChatView | None = None,
        on_job_finished: JobFinishedCallback | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.registry = registry or ToolRegistry()
        self.resource_cache = resource_cache or ResourceCache(
            CacheConfig(
                max_entries=self.settings.resource_cache_max_entries,
                max_total_tokens=self.settings.resource_cache_max_tokens,
            )
        )
        self.backend = backend
        self.services = TurnServices(
            backend=backend,
            registry=self.registry,
            resource_cache=self.resource_cache,
            request_builder=RequestBuilder(self.settings, self.registry, self.resource_cache),
            settings=self.settings,
            view=view or NullView(),
        )
        self._on_job_finished = on_job_finished
        self.scheduler = JobScheduler(
            max_tool_iterations=self.settings.max_tool_iterations,
            on_job_finished=self._job_finished,
        )
        self._sessions: Dict[str, ConversationContext] = {}
        self._last_results: Dict[str, JobResult] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        registry: ToolRegistry | None = None,
        view: ChatView | None = None,
        on_job_finished: JobFinishedCallback | None = None,
    ) -> "AssistantController":
        """Build a controller backed by an OpenAI-compatible :class:`AIClient`."""
        return cls(
            AIClient(settings.client_settings()),
            settings=settings,
            registry=registry,
            view=view,
            on_job_finished=on_job_finished,
        )

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(
        self,
        *,
        session_id: str | None = None,
        allowed_tools: AbstractSet[str] | None = None,
    ) -> ConversationContext:
        context = ConversationContext(
            session_id=session_id or uuid.uuid4().hex[:12],
            allowed_tools=allowed_tools,
        )
        if context.session_id in self._sessions:
            raise ValueError(f"Session {context.session_id} already exists")
        self._sessions[context.session_id] = context
        LOGGER.info("Created session %s", context.session_id)
        return context

    def get_session(self, session_id: str) -> ConversationContext | None:
        return self._sessions.get(session_id)

    def sessions(self) -> list[ConversationContext]:
        return list(self._sessions.values())

    def close_session(self, context: ConversationContext) -> None:
        self.cancel(context)
        self._sessions.pop(context.session_id, None)

    def last_result(self, context: ConversationContext) -> JobResult | None:
        """Result of the most recent job that finished for ``context``."""
        return self._last_results.get(context.session_id)

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    def send(
        self,
        context: ConversationContext,
        text: str,
        *,
        attachments: Sequence[Attachment] = (),
    ) -> ConversationSendJob:
        """Queue a user message and start the turn; returns the send job."""
        message = ChatMessage(role="user", content=text, attachments=list(attachments))
        job = ConversationSendJob(context, self.services, user_message=message)
        self.scheduler.schedule(job)
        return job

    def resend(self, context: ConversationContext) -> ConversationSendJob:
        """Send the conversation again without adding a user message."""
        job = ConversationSendJob(context, self.services)
        self.scheduler.schedule(job)
        return job

    async def ask(
        self,
        context: ConversationContext,
        text: str,
        *,
        attachments: Sequence[Attachment] = (),
    ) -> ChatMessage | None:
        """Send ``text`` and wait for the whole tool loop to finish.

        Returns:
            The last assistant message of the conversation, if any.
        """
        self.send(context, text, attachments=attachments)
        await self.wait_idle()
        for message in reversed(context.conversation.messages()):
            if message.role == "assistant" and message.function_call is None:
                return message
        return None

    def cancel(self, context: ConversationContext) -> int:
        return self.scheduler.cancel(context.session_id)

    async def clear(self, context: ConversationContext) -> None:
        """Cancel outstanding work and empty the conversation.

        A job that is already running finishes its current step first; the
        conversation is cleared once it has released the session guard.
        """
        self.cancel(context)
        async with context.guard.hold("clear"):
            context.conversation.clear()
            context.tool_iterations = 0

    async def wait_idle(self) -> None:
        await self.scheduler.wait_idle()

    async def aclose(self) -> None:
        """Cancel any active work and close the backend."""
        await self.scheduler.aclose()
        close = getattr(self.backend, "aclose", None)
        if callable(close):
            result = close()
            if inspect.isawaitable(result):
                await result

    # ------------------------------------------------------------------
    # Private Helpers
    # ------------------------------------------------------------------

    def _job_finished(self, context: ConversationContext, job: Job, result: JobResult) -> None:
        self._last_results[context.session_id] = result
        if result.error is not None:
            LOGGER.warning("Session %s: %s ended with %s", context.session_id, job.job_id, result.error)
        if self._on_job_finished is not None:
            self._on_job_finished(context, job, result)


"""Job that sends the conversation to the backend and streams the answer."""

from __future__ import annotations

import asyncio
import inspect
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ...chat.message_model import ChatMessage
from ..errors import StreamError, TurnCancelledError
from ..streaming.function_call_detector import FunctionCallDetector
from ..streaming.pipeline import TokenStreamPipeline
from ..streaming.subscribers import StreamLogger, ViewAppender
from .dispatch_job import ToolDispatchJob
from .jobs import Job, JobResult, TurnServices

if TYPE_CHECKING:  # pragma: no cover
    from ...chat.context import ConversationContext

__all__ = ["ConversationSendJob"]

LOGGER = logging.getLogger(__name__)


class ConversationSendJob(Job):
    """One backend round trip.

    Fragments are fanned out to the view appender, the stream logger and a
    fresh function-call detector. A detected call becomes a
    :class:`ToolDispatchJob` follow-up; a plain answer ends the loop.
    """

    kind = "send"

    def __init__(
        self,
        context: "ConversationContext",
        services: TurnServices,
        *,
        user_message: ChatMessage | None = None,
    ) -> None:
        super().__init__(context, services)
        self.user_message = user_message
        self.assistant_message: ChatMessage | None = None

    async def _execute(self) -> JobResult:
        if self.cancelled:
            return JobResult.cancelled()
        context = self.context
        conversation = context.conversation
        if self.user_message is not None:
            conversation.add(self.user_message)
            self.user_message.freeze()
            context.tool_iterations = 0
            self.services.view.begin_message(self.user_message)
            self.services.view.end_message(self.user_message)

        request = self.services.request_builder.build(conversation, allowed_tools=context.allowed_tools)
        pipeline = TokenStreamPipeline(self.services.settings.stream_buffer_size)
        appender = ViewAppender(conversation, self.services.view)
        detector = FunctionCallDetector()
        pipeline.subscribe(appender)
        pipeline.subscribe(StreamLogger(label=f"{context.session_id}/{self.job_id}", transcript_path=self._transcript_path()))
        pipeline.subscribe(detector)

        stream = self.services.backend.stream(request)
        try:
            async for fragment in stream:
                if self.cancelled:
                    raise TurnCancelledError(f"{self.job_id} cancelled")
                await pipeline.submit(fragment)
        except TurnCancelledError as exc:
            await self._close_pipeline(pipeline, exc)
            self.assistant_message = appender.message
            LOGGER.info("%s cancelled; partial answer kept", self.job_id)
            return JobResult.cancelled()
        except asyncio.CancelledError:
            pipeline.complete_with_error(TurnCancelledError(f"{self.job_id} cancelled"))
            raise
        except Exception as exc:
            error = exc if isinstance(exc, StreamError) else StreamError(str(exc) or type(exc).__name__, cause=exc)
            await self._close_pipeline(pipeline, error)
            self.assistant_message = appender.message
            LOGGER.warning("%s stream failed: %s", self.job_id, error)
            return JobResult.failed(error)
        finally:
            await _aclose(stream)

        if self.cancelled:
            await self._close_pipeline(pipeline, TurnCancelledError(f"{self.job_id} cancelled"))
            self.assistant_message = appender.message
            return JobResult.cancelled()

        pipeline.complete_normally()
        await pipeline.wait_closed()
        self.assistant_message = appender.message

        call = detector.function_call
        if call is None:
            return JobResult.ok()
        if self.cancelled:
            return JobResult.cancelled()
        LOGGER.debug("%s scheduling dispatch of %s", self.job_id, call.name)
        return JobResult.ok(follow_up=ToolDispatchJob(context, self.services, call))

    async def _close_pipeline(self, pipeline: TokenStreamPipeline, error: BaseException) -> None:
        pipeline.complete_with_error(error)
        await pipeline.wait_closed()

    def _transcript_path(self) -> Path | None:
        directory = self.services.settings.transcript_dir
        if not directory:
            return None
        return Path(directory).expanduser() / f"{self.context.session_id}-{self.job_id}.txt"


async def _aclose(stream: Any) -> None:
    close = getattr(stream, "aclose", None)
    if close is None:
        return
    result = close()
    if inspect.isawaitable(result):
        await result

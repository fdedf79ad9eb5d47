"""Job that executes one detected function call and continues the loop."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ...chat.message_model import ChatMessage, FunctionCall
from ..errors import ToolExecutionError, ToolNotFoundError
from ..resources.serializer import deserialize, is_resource_result
from ..tools.types import ToolCallResult
from .jobs import Job, JobResult, TurnServices

if TYPE_CHECKING:  # pragma: no cover
    from ...chat.context import ConversationContext

__all__ = ["ToolDispatchJob", "RESOURCE_REFERENCE_TEMPLATE"]

LOGGER = logging.getLogger(__name__)

RESOURCE_REFERENCE_TEMPLATE = (
    "[Resource cached: {uri} (version {version}, ~{tokens} tokens)]\n"
    "Content available in <resources> block at top of context."
)


class ToolDispatchJob(Job):
    """Resolves and runs a tool, then records the call and its result.

    An unresolvable name fails fast without touching the conversation, and so
    does a cancel that arrives while the tool runs. Every other outcome, tool
    errors included, appends the assistant call row and the tool-result row
    and continues with a new send job.
    """

    kind = "dispatch"

    def __init__(self, context: "ConversationContext", services: TurnServices, call: FunctionCall) -> None:
        super().__init__(context, services)
        self.call = call
        self.result: ToolCallResult | None = None

    async def _execute(self) -> JobResult:
        if self.cancelled:
            return JobResult.cancelled()
        call = self.call
        separator = self.services.settings.tool_name_separator
        parts = call.split_name(separator)
        if parts is None:
            raise ToolNotFoundError(call.name, f"is not of the form <toolset>{separator}<tool>")
        toolset_id, tool_id = parts
        handle = self.services.registry.resolve(toolset_id, separator=separator)
        if handle is None:
            raise ToolNotFoundError(call.name, f"belongs to unknown toolset '{toolset_id}'")

        if not self.context.is_tool_allowed(call.name):
            LOGGER.info("Tool %s is not allowed in session %s", call.name, self.context.session_id)
            result = ToolCallResult.error(f"Tool '{call.name}' is not allowed in this conversation.")
        else:
            LOGGER.info("Dispatching %s (id=%s)", call.name, call.id)
            try:
                result = await handle.call(tool_id, call.arguments)
            except ToolNotFoundError:
                raise
            except ToolExecutionError as exc:
                LOGGER.warning("%s", exc)
                result = ToolCallResult.error(str(exc))
            except Exception as exc:
                LOGGER.exception("Tool %s raised", call.name)
                error = ToolExecutionError(call.name, str(exc) or type(exc).__name__, cause=exc)
                result = ToolCallResult.error(str(error))
        self.result = result
        if self.cancelled:
            LOGGER.info("Dropping result of %s: turn cancelled while the tool ran", call.name)
            return JobResult.cancelled()

        view = self.services.view
        conversation = self.context.conversation
        request_message = ChatMessage(role="assistant", function_call=call)
        request_message.freeze()
        conversation.add(request_message)
        view.begin_message(request_message)
        view.end_message(request_message)

        result_message = ChatMessage(
            role="tool-result",
            name=call.name,
            content=self._render_result(result),
            function_call=call,
        )
        result_message.freeze()
        conversation.add(result_message)
        view.begin_message(result_message)
        view.end_message(result_message)

        # Imported here: the send job module imports this one.
        from .send_job import ConversationSendJob

        return JobResult.ok(follow_up=ConversationSendJob(self.context, self.services))

    def _render_result(self, result: ToolCallResult) -> str:
        chunks: list[str] = []
        if result.is_error:
            chunks.append("Error: ")
        for part in result.content:
            if not part.is_text:
                LOGGER.debug("Skipping non-text content part of type %s from %s", part.type, self.call.name)
                continue
            chunks.append(self._cache_resource(part.text))
            chunks.append("\n")
        return "".join(chunks)

    def _cache_resource(self, text: str) -> str:
        if not is_resource_result(text):
            return text
        resource = deserialize(text)
        if resource is None:
            return text
        if not resource.is_cacheable:
            return resource.content
        cached = self.services.resource_cache.put_result(resource)
        if cached is None:
            return resource.content
        return RESOURCE_REFERENCE_TEMPLATE.format(
            uri=cached.descriptor.uri,
            version=cached.version,
            tokens=cached.estimate_token_cost(),
        )

"""End-to-end tests of the send → dispatch → send loop through the controller."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, AsyncIterator, Mapping

import pytest

from agentloop.ai.client import ChatRequest
from agentloop.ai.errors import StreamError, ToolLoopLimitError, ToolNotFoundError
from agentloop.ai.orchestration.controller import AssistantController
from agentloop.ai.orchestration.dispatch_job import ToolDispatchJob
from agentloop.ai.orchestration.jobs import Job, JobResult, JobStatus
from agentloop.ai.orchestration.send_job import ConversationSendJob
from agentloop.ai.tools.builtin import register_builtin_toolsets
from agentloop.ai.tools.registry import ToolRegistry
from agentloop.ai.tools.types import ToolSpec
from agentloop.chat.context import ConversationContext
from agentloop.services.settings import Settings
from tests.helpers import RecordingView, ScriptedBackend

READ_CALL = 'function_call: {"id":"1","name":"fs.read_file","arguments":{"path":"a.txt"}}'


def _split(text: str, parts: int) -> list[str]:
    size = max(1, len(text) // parts)
    chunks = [text[index : index + size] for index in range(0, len(text), size)]
    assert "".join(chunks) == text
    return chunks


def _counting_registry() -> tuple[ToolRegistry, list[Mapping[str, Any]]]:
    calls: list[Mapping[str, Any]] = []
    registry = ToolRegistry()

    def _lookup(arguments: Mapping[str, Any]) -> str:
        calls.append(dict(arguments))
        return f"value of {arguments.get('key')}"

    def _explode(arguments: Mapping[str, Any]) -> str:
        raise RuntimeError("boom")

    registry.register_tool(
        "kv",
        ToolSpec(
            name="get",
            description="Look up a key",
            parameters={"type": "object", "properties": {"key": {"type": "string"}}},
        ),
        _lookup,
    )
    registry.register_tool("kv", ToolSpec(name="explode", description="Always fails"), _explode)
    return registry, calls


def _roles(context: ConversationContext) -> list[str]:
    return [message.role for message in context.conversation.messages()]


@pytest.mark.asyncio
async def test_plain_answer(settings: Settings, view: RecordingView) -> None:
    backend = ScriptedBackend(["Hel", "lo", "!"])
    controller = AssistantController(backend, settings=settings, view=view)
    session = controller.create_session(session_id="s1")

    reply = await controller.ask(session, "Hi")

    assert reply is not None
    assert reply.content == "Hello!"
    assert reply.frozen
    assert _roles(session) == ["user", "assistant"]
    assert session.conversation.messages()[0].frozen
    result = controller.last_result(session)
    assert result is not None and result.status is JobStatus.OK
    request = backend.requests[0]
    assert request.messages[0] == {"role": "system", "content": "You are a test assistant."}
    assert request.messages[-1] == {"role": "user", "content": "Hi"}
    await controller.aclose()


@pytest.mark.asyncio
async def test_tool_call_is_dispatched_once_and_loop_continues(settings: Settings, view: RecordingView) -> None:
    registry, calls = _counting_registry()
    payload = 'function_call: {"id":"call-9","name":"kv.get","arguments":{"key":"color"}}'
    backend = ScriptedBackend(_split(payload, 5), ["It is ", "blue."])
    finished: list[tuple[str, JobStatus]] = []
    controller = AssistantController(
        backend,
        settings=settings,
        registry=registry,
        view=view,
        on_job_finished=lambda context, job, result: finished.append((job.kind, result.status)),
    )
    session = controller.create_session()

    reply = await controller.ask(session, "What color?")

    assert calls == [{"key": "color"}]
    assert reply is not None and reply.content == "It is blue."
    assert _roles(session) == ["user", "assistant", "tool-result", "assistant"]
    request_row, result_row = session.conversation.messages()[1:3]
    assert request_row.function_call == result_row.function_call
    assert request_row.function_call is not None
    assert request_row.function_call.id == "call-9"
    assert result_row.name == "kv.get"
    assert result_row.content == "value of color\n"
    assert finished == [("send", JobStatus.OK), ("dispatch", JobStatus.OK), ("send", JobStatus.OK)]
    assert session.tool_iterations == 1

    follow_up = backend.requests[1].messages
    assert follow_up[-2]["tool_calls"][0]["id"] == "call-9"
    assert follow_up[-1] == {"role": "tool", "tool_call_id": "call-9", "content": "value of color\n"}
    assert [tool["function"]["name"] for tool in backend.requests[0].tools] == ["kv.get", "kv.explode"]


@pytest.mark.asyncio
async def test_file_read_lands_in_resource_cache(tmp_path: Path, settings: Settings) -> None:
    (tmp_path / "a.txt").write_text("alpha beta gamma", encoding="utf-8")
    registry = register_builtin_toolsets(ToolRegistry(), root=tmp_path)
    backend = ScriptedBackend(_split(READ_CALL, 4), ["The file says alpha."])
    controller = AssistantController(backend, settings=settings, registry=registry)
    session = controller.create_session()

    await controller.ask(session, "Read a.txt")

    result_row = session.conversation.messages()[2]
    assert result_row.role == "tool-result"
    assert result_row.content.startswith("[Resource cached: workspace:///a.txt (version 1, ~4 tokens)]\n")
    assert "alpha beta gamma" not in result_row.content
    cached = controller.resource_cache.get("workspace:///a.txt")
    assert cached is not None and cached.content == "alpha beta gamma"

    system_prompt = backend.requests[1].messages[0]["content"]
    assert system_prompt.startswith("<resources>")
    assert "alpha beta gamma" in system_prompt


@pytest.mark.asyncio
async def test_tool_failure_is_reported_to_model(settings: Settings) -> None:
    registry, _ = _counting_registry()
    backend = ScriptedBackend(['function_call: {"id":"e1","name":"kv.explode","arguments":{}}'], ["Sorry."])
    controller = AssistantController(backend, settings=settings, registry=registry)
    session = controller.create_session()

    reply = await controller.ask(session, "Try it")

    result_row = session.conversation.messages()[2]
    assert result_row.content == "Error: Tool 'kv.explode' failed: boom\n"
    assert reply is not None and reply.content == "Sorry."
    assert len(backend.requests) == 2


@pytest.mark.asyncio
async def test_invalid_arguments_are_reported_to_model(settings: Settings) -> None:
    registry, calls = _counting_registry()
    backend = ScriptedBackend(['function_call: {"id":"v1","name":"kv.get","arguments":{"key":5}}'], ["Retrying."])
    controller = AssistantController(backend, settings=settings, registry=registry)
    session = controller.create_session()

    await controller.ask(session, "Go")

    assert calls == []
    assert session.conversation.messages()[2].content.startswith("Error: Invalid arguments: key: 5 is not of type")


@pytest.mark.asyncio
async def test_unknown_toolset_fails_without_touching_conversation(settings: Settings) -> None:
    backend = ScriptedBackend(['function_call: {"id":"x","name":"nope.tool","arguments":{}}'], ["never"])
    controller = AssistantController(backend, settings=settings)
    session = controller.create_session()

    reply = await controller.ask(session, "Use a tool")

    assert reply is None
    assert _roles(session) == ["user"]
    result = controller.last_result(session)
    assert result is not None and result.status is JobStatus.ERROR
    assert isinstance(result.error, ToolNotFoundError)
    assert len(backend.requests) == 1


@pytest.mark.asyncio
async def test_name_without_separator_is_not_found(settings: Settings) -> None:
    backend = ScriptedBackend(['function_call: {"id":"x","name":"lonely","arguments":{}}'])
    controller = AssistantController(backend, settings=settings)
    session = controller.create_session()

    await controller.ask(session, "Go")

    result = controller.last_result(session)
    assert result is not None and isinstance(result.error, ToolNotFoundError)
    assert _roles(session) == ["user"]


@pytest.mark.asyncio
async def test_disallowed_tool_gets_error_result(settings: Settings) -> None:
    registry, calls = _counting_registry()
    backend = ScriptedBackend(['function_call: {"id":"d1","name":"kv.get","arguments":{"key":"a"}}'], ["Understood."])
    controller = AssistantController(backend, settings=settings, registry=registry)
    session = controller.create_session(allowed_tools={"kv.explode"})

    await controller.ask(session, "Go")

    assert calls == []
    assert session.conversation.messages()[2].content == "Error: Tool 'kv.get' is not allowed in this conversation.\n"
    assert [tool["function"]["name"] for tool in backend.requests[0].tools] == ["kv.explode"]


@pytest.mark.asyncio
async def test_tool_iterations_are_capped() -> None:
    registry, calls = _counting_registry()
    settings = Settings(max_tool_iterations=2)
    backend = ScriptedBackend(['function_call: {"id":"r","name":"kv.get","arguments":{"key":"again"}}'], repeat_last=True)
    controller = AssistantController(backend, settings=settings, registry=registry)
    session = controller.create_session()

    await controller.ask(session, "Loop forever")

    assert len(calls) == 2
    assert len(backend.requests) == 3
    result = controller.last_result(session)
    assert result is not None and result.status is JobStatus.ERROR
    assert isinstance(result.error, ToolLoopLimitError)
    assert _roles(session) == ["user", "assistant", "tool-result", "assistant", "tool-result"]

    backend.repeat_last = False
    backend.scripts.extend([[], [], ["Fresh turn."]])
    reply = await controller.ask(session, "New question")
    assert reply is not None and reply.content == "Fresh turn."
    assert session.tool_iterations == 0


@pytest.mark.asyncio
async def test_stream_error_keeps_partial_answer(settings: Settings) -> None:
    backend = ScriptedBackend(["Partial ", "answer", StreamError("connection reset")])
    controller = AssistantController(backend, settings=settings)
    session = controller.create_session()

    reply = await controller.ask(session, "Hi")

    assert reply is not None and reply.content == "Partial answer"
    assert reply.frozen
    result = controller.last_result(session)
    assert result is not None and result.status is JobStatus.ERROR
    assert isinstance(result.error, StreamError)


@pytest.mark.asyncio
async def test_unexpected_backend_error_becomes_stream_error(settings: Settings) -> None:
    backend = ScriptedBackend([RuntimeError("socket closed")])
    controller = AssistantController(backend, settings=settings)
    session = controller.create_session()

    reply = await controller.ask(session, "Hi")

    assert reply is None
    assert _roles(session) == ["user"]
    result = controller.last_result(session)
    assert result is not None and isinstance(result.error, StreamError)
    assert isinstance(result.error.cause, RuntimeError)


class _GatedBackend:
    """Yields one fragment, then waits for ``gate`` before yielding the next."""

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.gate = asyncio.Event()
        self.requests: list[ChatRequest] = []

    async def stream(self, request: ChatRequest) -> AsyncIterator[str]:
        self.requests.append(request)
        yield "Partial"
        self.started.set()
        await self.gate.wait()
        yield " rest"
        yield 'function_call: {"id":"c","name":"kv.get","arguments":{}}'


@pytest.mark.asyncio
async def test_cancel_stops_turn_and_keeps_partial_text(settings: Settings) -> None:
    registry, calls = _counting_registry()
    backend = _GatedBackend()
    statuses: list[JobStatus] = []
    controller = AssistantController(
        backend,
        settings=settings,
        registry=registry,
        on_job_finished=lambda context, job, result: statuses.append(result.status),
    )
    session = controller.create_session()

    job = controller.send(session, "Hi")
    await asyncio.wait_for(backend.started.wait(), timeout=1)
    assert controller.cancel(session) == 1
    backend.gate.set()
    await asyncio.wait_for(controller.wait_idle(), timeout=1)

    assert job.cancelled
    assert statuses == [JobStatus.CANCELLED]
    assert calls == []
    assert job.assistant_message is not None
    assert job.assistant_message.content == "Partial"
    assert job.assistant_message.frozen
    assert _roles(session) == ["user", "assistant"]
    assert not session.guard.locked


@pytest.mark.asyncio
async def test_jobs_of_one_session_never_overlap(settings: Settings) -> None:
    backend = ScriptedBackend(["first ", "answer"], ["second ", "answer"])
    controller = AssistantController(backend, settings=settings)
    session = controller.create_session()

    controller.send(session, "one")
    controller.send(session, "two")
    await controller.wait_idle()

    assert backend.max_active == 1
    contents = [message.content for message in session.conversation.messages()]
    assert contents == ["one", "first answer", "two", "second answer"]


@pytest.mark.asyncio
async def test_sessions_run_in_parallel(settings: Settings) -> None:
    backend = ScriptedBackend(["a", "b", "c"], ["d", "e", "f"])
    controller = AssistantController(backend, settings=settings)
    first = controller.create_session(session_id="a")
    second = controller.create_session(session_id="b")

    controller.send(first, "x")
    controller.send(second, "y")
    await controller.wait_idle()

    assert backend.max_active == 2
    assert len(first.conversation) == 2
    assert len(second.conversation) == 2


@pytest.mark.asyncio
async def test_cancel_queued_job_before_it_starts(settings: Settings) -> None:
    backend = _GatedBackend()
    controller = AssistantController(backend, settings=settings)
    session = controller.create_session()

    running = controller.send(session, "first")
    await asyncio.wait_for(backend.started.wait(), timeout=1)
    queued = controller.send(session, "second")
    await asyncio.sleep(0)
    assert not queued.started

    controller.cancel(session)
    backend.gate.set()
    await asyncio.wait_for(controller.wait_idle(), timeout=1)

    assert running.cancelled and queued.cancelled
    assert len(backend.requests) == 1
    assert [message.content for message in session.conversation.messages()] == ["first", "Partial"]


@pytest.mark.asyncio
async def test_clear_and_resend(settings: Settings) -> None:
    backend = ScriptedBackend(["one"], ["two"])
    controller = AssistantController(backend, settings=settings)
    session = controller.create_session(session_id="s")

    await controller.ask(session, "hi")
    controller.resend(session)
    await controller.wait_idle()
    assert [message.content for message in session.conversation.messages()] == ["hi", "one", "two"]
    assert backend.requests[1].messages[-1] == {"role": "assistant", "content": "one"}

    await controller.clear(session)
    assert len(session.conversation) == 0
    assert controller.get_session("s") is session
    with pytest.raises(ValueError):
        controller.create_session(session_id="s")
    controller.close_session(session)
    assert controller.sessions() == []


@pytest.mark.asyncio
async def test_clear_waits_for_running_tool_and_drops_its_result(settings: Settings) -> None:
    registry = ToolRegistry()
    started, release = asyncio.Event(), asyncio.Event()

    async def _slow(arguments: Mapping[str, Any]) -> str:
        started.set()
        await release.wait()
        return "late value"

    registry.register_tool("kv", ToolSpec(name="slow", description="Waits for release"), _slow)
    backend = ScriptedBackend(['function_call: {"id":"s","name":"kv.slow","arguments":{}}'], ["unused"])
    controller = AssistantController(backend, settings=settings, registry=registry)
    session = controller.create_session()

    controller.send(session, "Hi")
    await asyncio.wait_for(started.wait(), timeout=1)
    clearing = asyncio.create_task(controller.clear(session))
    await asyncio.sleep(0)
    assert not clearing.done()

    release.set()
    await asyncio.wait_for(clearing, timeout=1)
    await asyncio.wait_for(controller.wait_idle(), timeout=1)

    assert _roles(session) == []
    assert len(backend.requests) == 1
    result = controller.last_result(session)
    assert result is not None and result.status is JobStatus.CANCELLED
    assert not session.guard.locked
    await controller.aclose()


@pytest.mark.asyncio
async def test_job_converts_unexpected_errors(settings: Settings) -> None:
    class _BrokenJob(Job):
        kind = "broken"

        async def _execute(self) -> JobResult:
            raise KeyError("missing")

    controller = AssistantController(ScriptedBackend(), settings=settings)
    context = controller.create_session()

    result = await _BrokenJob(context, controller.services).run()

    assert result.status is JobStatus.ERROR
    assert isinstance(result.error, KeyError)
    assert not context.guard.locked


@pytest.mark.asyncio
async def test_send_job_returns_dispatch_follow_up(settings: Settings) -> None:
    backend = ScriptedBackend([READ_CALL])
    controller = AssistantController(backend, settings=settings)
    context = controller.create_session()

    result = await ConversationSendJob(context, controller.services).run()

    assert result.is_ok
    assert isinstance(result.follow_up, ToolDispatchJob)
    assert result.follow_up.call.name == "fs.read_file"
    assert len(context.conversation) == 0

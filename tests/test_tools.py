"""Tests for the tool registry, tool types and built-in toolsets."""

from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping

import pytest

from agentloop.ai.errors import ToolExecutionError, ToolNotFoundError
from agentloop.ai.resources.serializer import deserialize
from agentloop.ai.tools.builtin import register_builtin_toolsets
from agentloop.ai.tools.registry import DuplicateToolError, ToolRegistry, validate_arguments
from agentloop.ai.tools.types import ContentPart, ToolCallResult, ToolSpec

ECHO_SPEC = ToolSpec(
    name="echo",
    description="Echo the text back",
    parameters={
        "type": "object",
        "properties": {"text": {"type": "string"}},
        "required": ["text"],
        "additionalProperties": False,
    },
)


def _echo(arguments: Mapping[str, Any]) -> str:
    return str(arguments["text"])


def _registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register_toolset("demo", "Demo helpers")
    registry.register_tool("demo", ECHO_SPEC, _echo)
    return registry


def test_tool_call_result_from_value() -> None:
    assert ToolCallResult.from_value("hi").text_parts() == ["hi"]
    assert ToolCallResult.from_value(None).content == ()
    assert ToolCallResult.from_value({"a": 1}).text_parts() == ['{"a": 1}']
    image = ContentPart(type="image", data=b"...", mime_type="image/png")
    mixed = ToolCallResult.from_value([ContentPart.of_text("a"), image])
    assert mixed.text_parts() == ["a"]
    error = ToolCallResult.error("nope")
    assert error.is_error
    assert ToolCallResult.from_value(error) is error


def test_tool_spec_openai_definition() -> None:
    definition = ECHO_SPEC.to_openai_tool("demo__echo")

    assert definition["type"] == "function"
    assert definition["function"]["name"] == "demo__echo"
    assert definition["function"]["parameters"]["required"] == ["text"]
    assert ToolSpec(name="bare", description="").parameter_schema() == {"type": "object", "properties": {}}


@pytest.mark.asyncio
async def test_resolve_and_call_sync_and_async_tools() -> None:
    registry = _registry()

    async def _shout(arguments: Mapping[str, Any]) -> str:
        await asyncio.sleep(0)
        return str(arguments.get("text", "")).upper()

    registry.register_tool("demo", ToolSpec(name="shout", description="Upper-case"), _shout)
    handle = registry.resolve("demo")

    assert handle is not None
    assert handle.description == "Demo helpers"
    assert [spec.name for spec in handle.list_tools()] == ["echo", "shout"]
    assert (await handle.call("echo", {"text": "hi"})).text_parts() == ["hi"]
    assert (await handle.call("shout", {"text": "hi"})).text_parts() == ["HI"]
    assert registry.resolve("missing") is None


@pytest.mark.asyncio
async def test_invalid_arguments_come_back_as_error_result() -> None:
    handle = _registry().resolve("demo")
    assert handle is not None

    result = await handle.call("echo", {"text": 3, "extra": True})

    assert result.is_error
    assert result.text_parts()[0].startswith("Invalid arguments: ")
    assert "text: 3 is not of type 'string'" in result.text_parts()[0]


def test_validate_arguments_reports_missing_required() -> None:
    problems = validate_arguments(ECHO_SPEC, {})

    assert problems == ["'text' is a required property"]
    assert validate_arguments(ToolSpec(name="free", description=""), {"anything": 1}) == []


@pytest.mark.asyncio
async def test_handler_failure_raises_execution_error() -> None:
    registry = ToolRegistry()

    def _boom(arguments: Mapping[str, Any]) -> str:
        raise RuntimeError("disk on fire")

    registry.register_tool("demo", ToolSpec(name="boom", description="Fails"), _boom)
    handle = registry.resolve("demo")
    assert handle is not None

    with pytest.raises(ToolExecutionError) as excinfo:
        await handle.call("boom", {})
    assert str(excinfo.value) == "Tool 'demo.boom' failed: disk on fire"
    assert isinstance(excinfo.value.cause, RuntimeError)


@pytest.mark.asyncio
async def test_errors_name_tools_with_the_resolved_separator() -> None:
    registry = _registry()

    def _boom(arguments: Mapping[str, Any]) -> str:
        raise RuntimeError("disk on fire")

    registry.register_tool("demo", ToolSpec(name="boom", description="Fails"), _boom)
    handle = registry.resolve("demo", separator="__")
    assert handle is not None

    assert handle.full_name("echo") == "demo__echo"
    with pytest.raises(ToolExecutionError) as failed:
        await handle.call("boom", {})
    with pytest.raises(ToolNotFoundError) as missing:
        await handle.call("missing", {})

    assert str(failed.value) == "Tool 'demo__boom' failed: disk on fire"
    assert missing.value.name == "demo__missing"


@pytest.mark.asyncio
async def test_unknown_or_disabled_tool_is_not_found() -> None:
    registry = _registry()
    handle = registry.resolve("demo")
    assert handle is not None

    with pytest.raises(ToolNotFoundError):
        await handle.call("missing", {})

    assert registry.disable("demo", "echo")
    assert not handle.has("echo")
    with pytest.raises(ToolNotFoundError):
        await handle.call("echo", {"text": "hi"})
    assert registry.enable("demo", "echo")
    assert handle.has("echo")


def test_duplicate_registration() -> None:
    registry = _registry()

    with pytest.raises(DuplicateToolError):
        registry.register_tool("demo", ECHO_SPEC, _echo)
    registry.register_tool("demo", ECHO_SPEC, _echo, allow_override=True)
    assert len(registry) == 1


def test_openai_tools_use_separator_and_allowed_filter() -> None:
    registry = _registry()
    registry.register_tool("other", ToolSpec(name="ping", description="Ping"), lambda args: "pong")

    names = [tool["function"]["name"] for tool in registry.get_openai_tools("__")]
    assert names == ["demo__echo", "other__ping"]

    allowed = [tool["function"]["name"] for tool in registry.get_openai_tools(".", allowed={"other.ping"})]
    assert allowed == ["other.ping"]
    assert registry.full_names() == ["demo.echo", "other.ping"]


def test_unregister_and_clear() -> None:
    registry = _registry()
    registry.register_tool("other", ToolSpec(name="ping", description="Ping"), lambda args: "pong")

    assert registry.unregister("demo", "echo")
    assert not registry.unregister("demo", "echo")
    assert registry.unregister("other")
    assert list(registry) == ["demo"]
    registry.clear()
    assert "demo" not in registry


@pytest.mark.asyncio
async def test_time_tool_returns_iso_timestamp() -> None:
    registry = register_builtin_toolsets(ToolRegistry())
    handle = registry.resolve("time")
    assert handle is not None

    result = await handle.call("current_time", {})
    stamp = datetime.fromisoformat(result.text_parts()[0])
    assert stamp.tzinfo is not None

    with pytest.raises(ToolExecutionError):
        await handle.call("current_time", {"timezone": "Not/AZone"})


@pytest.mark.asyncio
async def test_fs_tools_read_and_list(tmp_path: Path) -> None:
    (tmp_path / "docs").mkdir()
    (tmp_path / "docs" / "notes.md").write_text("# Notes\n", encoding="utf-8")
    (tmp_path / "a.txt").write_text("alpha", encoding="utf-8")
    registry = register_builtin_toolsets(ToolRegistry(), root=tmp_path)
    handle = registry.resolve("fs")
    assert handle is not None

    listing = await handle.call("list_dir", {})
    assert listing.text_parts() == ["docs/\na.txt"]

    read = await handle.call("read_file", {"path": "docs/notes.md"})
    resource = deserialize(read.text_parts()[0])
    assert resource is not None
    assert resource.content == "# Notes\n"
    assert resource.descriptor.uri == "workspace:///docs/notes.md"
    assert resource.descriptor.tool_name == "fs.read_file"


@pytest.mark.asyncio
async def test_fs_tools_stay_inside_root(tmp_path: Path) -> None:
    root = tmp_path / "root"
    root.mkdir()
    (tmp_path / "secret.txt").write_text("nope", encoding="utf-8")
    handle = register_builtin_toolsets(ToolRegistry(), root=root).resolve("fs")
    assert handle is not None

    with pytest.raises(ToolExecutionError) as excinfo:
        await handle.call("read_file", {"path": "../secret.txt"})
    assert isinstance(excinfo.value.cause, PermissionError)

    with pytest.raises(ToolExecutionError):
        await handle.call("read_file", {"path": "missing.txt"})

    assert (await handle.call("list_dir", {})).text_parts() == ["(empty directory)"]

"""Unit tests for agentkit/api/tools.py -- ToolRegistry and complete_task.

Covers registration, dispatch, unknown tool handling, argument parsing,
result normalization, UI tools and the built-in complete_task tool.
"""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from agentkit.api.tools import (
    COMPLETE_TASK_SCHEMA,
    COMPLETE_TASK_TOOL,
    Tool,
    ToolArgumentsError,
    ToolNotFoundError,
    ToolRegistry,
    complete_task,
    parse_arguments,
    register_complete_task,
    result_to_text,
)
from agentkit.utils import TurnCancelledError

SCHEMA = {"type": "object", "description": "Add two numbers", "properties": {"a": {}, "b": {}}}


class TestRegistry:
    def test_register_and_definitions(self):
        registry = ToolRegistry()
        registry.register("add", lambda a, b: a + b, SCHEMA)

        assert "add" in registry
        assert len(registry) == 1
        assert registry.tool_definitions() == [
            {"name": "add", "description": "Add two numbers", "input_schema": SCHEMA}
        ]

    def test_default_description(self):
        registry = ToolRegistry()
        tool = registry.register("noop", lambda: "", {"type": "object"})
        assert tool.description == "Execute noop tool"

    def test_explicit_description_wins(self):
        registry = ToolRegistry()
        tool = registry.register("add", lambda a, b: a + b, SCHEMA, description="Sum")
        assert tool.description == "Sum"

    def test_ui_tools_listed_but_flagged(self):
        registry = ToolRegistry()
        registry.register("add", lambda a, b: a + b, SCHEMA)
        registry.register_ui_tool("confirm", {"type": "object"})

        assert registry.ui_tool_names == frozenset({"confirm"})
        assert registry.is_ui_tool("confirm")
        assert not registry.is_ui_tool("add")
        assert not registry.is_ui_tool("missing")
        assert {d["name"] for d in registry.tool_definitions()} == {"add", "confirm"}

    def test_internal_tool_needs_handler(self):
        registry = ToolRegistry()
        with pytest.raises(ValueError):
            registry.add(Tool(name="broken", description="", parameters={}))

    def test_replacing_tool(self):
        registry = ToolRegistry()
        registry.register("t", lambda: "one", {"type": "object"})
        registry.register("t", lambda: "two", {"type": "object"})
        assert len(registry) == 1


class TestInvoke:
    @pytest.mark.asyncio
    async def test_async_handler_receives_kwargs(self):
        handler = AsyncMock(return_value="ok")
        registry = ToolRegistry()
        registry.register("lookup", handler, {"type": "object"})

        result = await registry.invoke("lookup", '{"query": "tides", "limit": 3}')

        assert result == "ok"
        handler.assert_awaited_once_with(query="tides", limit=3)

    @pytest.mark.asyncio
    async def test_sync_handler_and_non_string_result(self):
        registry = ToolRegistry()
        registry.register("add", lambda a, b: {"sum": a + b}, SCHEMA)
        assert json.loads(await registry.invoke("add", '{"a": 2, "b": 3}')) == {"sum": 5}

    @pytest.mark.asyncio
    async def test_empty_arguments(self):
        registry = ToolRegistry()
        registry.register("ping", lambda: "pong", {"type": "object"})
        assert await registry.invoke("ping", "") == "pong"

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        with pytest.raises(ToolNotFoundError, match="not found"):
            await ToolRegistry().invoke("missing", "{}")

    @pytest.mark.asyncio
    async def test_ui_tool_not_executable(self):
        registry = ToolRegistry()
        registry.register_ui_tool("confirm", {"type": "object"})
        with pytest.raises(RuntimeError, match="host application"):
            await registry.invoke("confirm", "{}")

    @pytest.mark.asyncio
    async def test_handler_error_propagates(self):
        async def fail(**kwargs):
            raise ValueError("bad input")

        registry = ToolRegistry()
        registry.register("fail", fail, {"type": "object"})
        with pytest.raises(ValueError, match="bad input"):
            await registry.invoke("fail", "{}")

    @pytest.mark.asyncio
    async def test_cancel_before_start(self):
        handler = AsyncMock(return_value="ok")
        registry = ToolRegistry()
        registry.register("t", handler, {"type": "object"})
        cancel = asyncio.Event()
        cancel.set()

        with pytest.raises(TurnCancelledError):
            await registry.invoke("t", "{}", cancel=cancel)
        handler.assert_not_called()


class TestParsing:
    def test_parse_arguments(self):
        assert parse_arguments('{"x": 1}') == {"x": 1}
        assert parse_arguments("   ") == {}

    def test_parse_invalid_json(self):
        with pytest.raises(ToolArgumentsError):
            parse_arguments("{not json")

    def test_parse_non_object(self):
        with pytest.raises(ToolArgumentsError, match="JSON object"):
            parse_arguments("[1, 2]")

    def test_result_to_text_mcp_format(self):
        result = {"content": [{"type": "text", "text": "Hello "}, {"type": "image"}, {"type": "text", "text": "world"}]}
        assert result_to_text(result) == "Hello world"

    def test_result_to_text_json(self):
        assert result_to_text([1, "é"]) == '[1, "é"]'


class TestCompleteTask:
    @pytest.mark.asyncio
    async def test_answer_key(self):
        assert await complete_task(answer="Paris") == "Paris"

    @pytest.mark.asyncio
    async def test_legacy_key_and_wrappers(self):
        assert await complete_task(final_answer="42") == "42"
        assert await complete_task(args={"answer": "wrapped"}) == "wrapped"
        assert await complete_task(parameters="plain string") == "plain string"

    @pytest.mark.asyncio
    async def test_structured_answer_serialized(self):
        assert json.loads(await complete_task(answer={"city": "Paris"})) == {"city": "Paris"}

    @pytest.mark.asyncio
    async def test_missing_answer(self):
        assert await complete_task() == ""

    def test_register_complete_task_respects_host_tool(self):
        registry = ToolRegistry()
        custom = registry.register(COMPLETE_TASK_TOOL, lambda answer: answer.upper(), COMPLETE_TASK_SCHEMA)
        register_complete_task(registry)
        assert registry.get(COMPLETE_TASK_TOOL) is custom

    def test_register_complete_task(self):
        registry = ToolRegistry()
        register_complete_task(registry)
        register_complete_task(registry)
        assert len(registry) == 1
        assert registry.get(COMPLETE_TASK_TOOL).parameters["required"] == ["answer"]

    @pytest.mark.asyncio
    async def test_unregistered_complete_task_uses_builtin(self):
        registry = ToolRegistry()
        assert await registry.invoke(COMPLETE_TASK_TOOL, '{"answer": "done"}') == "done"
        assert COMPLETE_TASK_TOOL not in registry

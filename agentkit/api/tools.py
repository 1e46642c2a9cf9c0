"""Tool registry and built-in tools.

Provides:
- Tool: a tagged capability record (name, description, JSON schema, handler)
- ToolRegistry: registers tools, dispatches calls by name, knows which
  tools are UI tools (never executed here; the host handles them)
- complete_task: built-in tool the task loop uses as its completion signal

Handlers are callables (usually async) taking the parsed JSON arguments as **kwargs.
They may return a string, an MCP-format dict ({"content": [{"type": "text",
"text": ...}]}) or any JSON-serializable value.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from agentkit.utils import await_or_cancel, check_cancelled

logger = logging.getLogger(__name__)

COMPLETE_TASK_TOOL = "complete_task"


class ToolNotFoundError(KeyError):
    """No tool registered under the requested name."""


class ToolArgumentsError(ValueError):
    """Tool arguments are not a JSON object."""


@dataclass(frozen=True)
class Tool:
    name: str
    description: str
    parameters: dict[str, Any]
    handler: Callable[..., Any] | None = None
    ui: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    def definition(self) -> dict[str, Any]:
        """Vendor-neutral tool schema handed to the LLM client."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.parameters,
        }


def parse_arguments(arguments_json: str) -> dict[str, Any]:
    if not arguments_json or not arguments_json.strip():
        return {}
    try:
        args = json.loads(arguments_json)
    except json.JSONDecodeError as e:
        raise ToolArgumentsError(f"Invalid tool arguments JSON: {e}") from e
    if not isinstance(args, dict):
        raise ToolArgumentsError(f"Tool arguments must be a JSON object, got {type(args).__name__}")
    return args


def result_to_text(result: Any) -> str:
    """Normalize a handler return value to tool-result text."""
    if isinstance(result, str):
        return result
    if isinstance(result, dict) and isinstance(result.get("content"), list):
        # MCP-format response
        return "".join(
            block.get("text", "")
            for block in result["content"]
            if isinstance(block, dict) and block.get("type") == "text"
        )
    return json.dumps(result, ensure_ascii=False, default=str)


class ToolRegistry:
    """Registers tool handlers and dispatches tool calls by name."""

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def register(
        self,
        name: str,
        handler: Callable[..., Any],
        schema: dict[str, Any],
        description: str | None = None,
    ) -> Tool:
        """Register an internally executed tool with its JSON schema."""
        tool = Tool(
            name=name,
            description=description or schema.get("description", "") or f"Execute {name} tool",
            parameters=schema,
            handler=handler,
        )
        self.add(tool)
        return tool

    def register_ui_tool(self, name: str, schema: dict[str, Any], description: str | None = None) -> Tool:
        """Register a tool the model may call but only the host can answer."""
        tool = Tool(
            name=name,
            description=description or schema.get("description", "") or f"Request {name} from the user",
            parameters=schema,
            ui=True,
        )
        self.add(tool)
        return tool

    def add(self, tool: Tool) -> None:
        if not tool.ui and tool.handler is None:
            raise ValueError(f"Tool {tool.name!r} needs a handler unless it is a UI tool")
        if tool.name in self._tools:
            logger.warning("Replacing already registered tool %s", tool.name)
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    @property
    def ui_tool_names(self) -> frozenset[str]:
        return frozenset(name for name, tool in self._tools.items() if tool.ui)

    def is_ui_tool(self, name: str) -> bool:
        tool = self._tools.get(name)
        return tool is not None and tool.ui

    def tool_definitions(self) -> list[dict[str, Any]]:
        """All tool definitions, UI tools included."""
        return [tool.definition() for tool in self._tools.values()]

    async def invoke(
        self,
        name: str,
        arguments_json: str,
        cancel: asyncio.Event | None = None,
    ) -> str:
        """Run a tool and return its result text. Raises on any failure.

        An unregistered complete_task is answered by the built-in handler.
        """
        tool = self._tools.get(name)
        if tool is None and name == COMPLETE_TASK_TOOL:
            logger.debug("complete_task not registered, using built-in handler")
            return await complete_task(**parse_arguments(arguments_json))
        if tool is None:
            raise ToolNotFoundError(f"Tool '{name}' not found")
        if tool.ui or tool.handler is None:
            raise RuntimeError(
                f"UI tool '{name}' should not be executed internally; "
                "the host application must handle it"
            )
        args = parse_arguments(arguments_json)
        check_cancelled(cancel)
        result = tool.handler(**args)
        if inspect.isawaitable(result):
            result = await await_or_cancel(result, cancel)
        return result_to_text(result)


# ---------------------------------------------------------------------------
# Built-in tools
# ---------------------------------------------------------------------------

COMPLETE_TASK_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Call this when you have completed the task",
    "properties": {
        "answer": {"type": "string", "description": "Your final answer"},
    },
    "required": ["answer"],
}


async def complete_task(**kwargs: Any) -> str:
    """Return the final answer from complete_task arguments.

    Accepts the answer under "answer" or the legacy "final_answer" key,
    optionally wrapped in "args", "arguments" or "parameters".
    """
    payload: Any = kwargs
    for wrapper in ("args", "arguments", "parameters"):
        if isinstance(payload, dict) and wrapper in payload:
            payload = payload[wrapper]
            break
    if isinstance(payload, str):
        return payload
    if not isinstance(payload, dict):
        return ""
    for key in ("answer", "final_answer"):
        if key in payload:
            value = payload[key]
            return value if isinstance(value, str) else json.dumps(value)
    return ""


def register_complete_task(registry: ToolRegistry) -> None:
    """Add complete_task unless the host registered its own."""
    if COMPLETE_TASK_TOOL in registry:
        return
    registry.register(COMPLETE_TASK_TOOL, complete_task, COMPLETE_TASK_SCHEMA)

"""Autonomous task loop.

Runs LLM rounds on the engine without further human input until the
model stops calling tools, calls complete_task, or the max_turns budget
runs out. Each iteration is exactly one engine round (one LLM call plus
its tool executions).
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import timedelta

from agentkit.api.models import RunResult
from agentkit.api.runner import TurnEngine, describe_error
from agentkit.api.tools import register_complete_task
from agentkit.config import Settings
from agentkit.events import Error, TurnComplete, TurnStart, notify
from agentkit.history.messages import Message, ToolCall
from agentkit.utils import TurnCancelledError

logger = logging.getLogger(__name__)

TASK_INSTRUCTIONS = (
    "\n\nUse available tools to complete this task step by step.\n"
    "When finished, call the 'complete_task' tool with your answer."
)


def build_task_prompt(task: str) -> str:
    return task + TASK_INSTRUCTIONS


def _batch_signature(tool_calls: list[ToolCall]) -> tuple[tuple[str, str], ...]:
    return tuple((tc.function_name, tc.arguments) for tc in tool_calls)


class TaskLoop:
    """Drives an engine through a task until completion or budget exhaustion."""

    def __init__(self, engine: TurnEngine, settings: Settings | None = None) -> None:
        self.engine = engine
        self.settings = settings or engine.settings
        register_complete_task(engine.tools)

    async def run(self, task: str, cancel: asyncio.Event | None = None) -> RunResult:
        """Run the task. Never raises for run failures; see RunResult.error."""
        started = time.monotonic()
        engine = self.engine
        ctx = engine.event_context()
        max_turns = self.settings.max_turns
        result = RunResult()
        last_text = ""
        last_batch: tuple[tuple[str, str], ...] | None = None
        repeats = 0

        await notify(engine.observer, TurnStart(ctx, task))
        logger.info("Starting task run (max %d turns)", max_turns)

        try:
            engine.ensure_system_prompt()
            engine.history.add_message(Message.user(build_task_prompt(task)))
            if self.settings.enable_turn_validation:
                engine.validate_history()

            while result.turns_executed < max_turns:
                outcome = await engine.run_round(cancel, ctx, round_number=result.turns_executed + 1)
                result.turns_executed += 1
                result.total_llm_calls += 1
                if outcome.text:
                    last_text = outcome.text

                if outcome.pending_tool_calls:
                    names = ", ".join(tc.function_name for tc in outcome.pending_tool_calls)
                    result.final_answer = last_text
                    result.error = f"UI tool(s) requested with no host to answer: {names}"
                    break

                if outcome.completion_signal is not None:
                    result.final_answer = outcome.completion_signal
                    result.success = True
                    break

                if not outcome.tool_calls:
                    result.final_answer = outcome.text
                    result.success = True
                    break

                if self.settings.detect_stuck_agent:
                    batch = _batch_signature(outcome.tool_calls)
                    repeats = repeats + 1 if batch == last_batch else 1
                    last_batch = batch
                    if repeats >= self.settings.stuck_threshold:
                        logger.warning(
                            "Agent repeated the same tool calls %d times in a row", repeats
                        )
                        if self.settings.break_on_stuck:
                            result.final_answer = last_text
                            result.error = "Agent stuck without making progress"
                            break
            else:
                logger.warning("Task loop reached max_turns=%d", max_turns)
                result.final_answer = last_text
                result.error = f"Maximum turns ({max_turns}) reached"
        except TurnCancelledError:
            logger.info("Task run cancelled after %d turn(s)", result.turns_executed)
            result.success = False
            result.final_answer = last_text
            result.error = "Run cancelled"
        except Exception as e:
            logger.error("Task run failed: %s", e, exc_info=True)
            result.success = False
            result.final_answer = last_text
            result.error = describe_error(e)
            await notify(engine.observer, Error(ctx, result.error, type(e).__name__))

        result.duration = timedelta(seconds=time.monotonic() - started)
        await notify(
            engine.observer,
            TurnComplete(
                ctx,
                success=result.success,
                llm_calls=result.total_llm_calls,
                response_text=result.final_answer,
            ),
        )
        logger.info(
            "Task run finished: success=%s turns=%d duration=%.2fs",
            result.success, result.turns_executed, result.duration.total_seconds(),
        )
        return result

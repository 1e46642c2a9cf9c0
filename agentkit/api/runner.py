"""Turn engine -- executes conversational turns against an LlmClient.

One engine owns one HistoryManager. A turn appends the user message,
optionally repairs the history, then loops: select context, stream one
LLM response, and either finish (no tool calls), pause (a UI tool was
requested) or run the requested tools and go again, up to
max_tool_rounds_per_turn rounds.

Each round is committed atomically: the assistant message and its tool
results are appended together, so a cancelled or failed round leaves
the history as it was before the round started.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import partial

from agentkit.api.costs import CostTracker
from agentkit.api.llm import LlmClient, RoundResponse, ToolCallAccumulator
from agentkit.api.models import RoundOutcome, TurnResult
from agentkit.api.sanitizer import OutputSanitizer, SanitizationOptions
from agentkit.api.tools import COMPLETE_TASK_TOOL, ToolRegistry
from agentkit.config import Settings
from agentkit.events import (
    AgentEventContext,
    AgentObserver,
    Error,
    LlmRequest,
    LlmResponse,
    ToolExecutionComplete,
    ToolExecutionStart,
    TurnComplete,
    TurnStart,
    notify,
)
from agentkit.history.manager import HistoryManager, TokenEstimator
from agentkit.history.messages import FileAttachment, Message, Role, ToolCall
from agentkit.history.schemas import RetentionPolicy
from agentkit.history.selector import select_messages
from agentkit.history.validation import repair_messages, validate_messages
from agentkit.utils import (
    LogVerbosity,
    TurnCancelledError,
    apply_verbosity,
    format_for_logging,
    iterate_or_cancel,
)

logger = logging.getLogger(__name__)

ONE_TOOL_AT_A_TIME = (
    "\n\nIMPORTANT: When using tools, make ONE tool call at a time. "
    "Wait for the tool result before making additional tool calls. "
    "This ensures proper execution and better results."
)


def describe_error(error: BaseException) -> str:
    """Exception message, with the chained cause appended when there is one."""
    message = str(error) or type(error).__name__
    inner = error.__cause__ or error.__context__
    if inner is not None:
        message += f" | Inner: {str(inner) or type(inner).__name__}"
    return message


@dataclass
class _RoundContext:
    event_context: AgentEventContext
    round_number: int


class TurnEngine:
    """Drives one conversation through LLM rounds and tool execution."""

    def __init__(
        self,
        llm: LlmClient,
        tools: ToolRegistry | None = None,
        settings: Settings | None = None,
        history: HistoryManager | None = None,
        observer: AgentObserver | None = None,
        conversation_id: str | None = None,
        sanitizer: OutputSanitizer | None = None,
        cost_tracker: CostTracker | None = None,
    ) -> None:
        self.llm = llm
        self.tools = tools or ToolRegistry()
        self.settings = settings or Settings()
        self.history = history or HistoryManager()
        self.observer = observer
        self.conversation_id = conversation_id
        self.policy: RetentionPolicy = self.settings.retention_policy()
        if sanitizer is None and self.settings.sanitize_output:
            sanitizer = OutputSanitizer(SanitizationOptions.from_settings(self.settings))
        self._sanitizer = sanitizer
        self.cost_tracker = cost_tracker

        for issue in self.policy.validate_settings():
            logger.warning("Retention policy: %s", issue)
        logger.debug("Turn engine using %s", self.policy.summary())

    @property
    def estimator(self) -> TokenEstimator:
        return self.history.estimator

    def event_context(self, turn_id: str | None = None) -> AgentEventContext:
        return AgentEventContext(
            conversation_id=self.conversation_id,
            model_name=getattr(self.llm, "model_name", None),
            turn_id=turn_id or uuid.uuid4().hex[:12],
        )

    # ------------------------------------------------------------------
    # Turn execution
    # ------------------------------------------------------------------

    async def execute_turn(
        self,
        user_message: str,
        files: list[FileAttachment] | None = None,
        cancel: asyncio.Event | None = None,
    ) -> TurnResult:
        """Run one turn to completion or pause. Never raises for turn failures.

        If the last history message is a user or tool message with the same
        text, it is not appended again (callers may pre-append for
        persistence). When the host answered a paused UI call that way, the
        internal calls left over from the same batch run before the first
        round.
        """
        ctx = self.event_context()
        await notify(self.observer, TurnStart(ctx, user_message))
        self._log_content("User input", user_message, self.settings.log_user_input)
        return await self._drive(ctx, partial(self._prepare_turn, ctx, user_message, files, cancel), cancel)

    async def resume_turn(self, cancel: asyncio.Event | None = None) -> TurnResult:
        """Continue a paused turn once the host has appended its UI tool results.

        Internal tool calls from the paused batch that still lack results
        are executed first; then the round loop carries on.
        """
        ctx = self.event_context()
        await notify(self.observer, TurnStart(ctx, ""))
        return await self._drive(ctx, partial(self._complete_pending_calls, ctx, cancel), cancel)

    async def _drive(
        self,
        ctx: AgentEventContext,
        prepare: Callable[[], Awaitable[str | None]],
        cancel: asyncio.Event | None,
    ) -> TurnResult:
        result = TurnResult()
        try:
            self.ensure_system_prompt()
            result.completion_signal = await prepare()
            if self.settings.enable_turn_validation:
                self.validate_history()

            while True:
                outcome = await self.run_round(cancel, ctx, round_number=result.llm_calls_executed + 1)
                result.llm_calls_executed += 1
                result.response_text = outcome.text
                if outcome.usage is not None:
                    result.input_tokens += outcome.usage.input_tokens
                    result.output_tokens += outcome.usage.output_tokens

                if outcome.pending_tool_calls:
                    result.pending_tool_calls = outcome.pending_tool_calls
                    break
                if not outcome.tool_calls:
                    break

                result.tool_rounds += 1
                if outcome.completion_signal is not None:
                    result.completion_signal = outcome.completion_signal
                if result.tool_rounds >= self.settings.max_tool_rounds_per_turn:
                    logger.warning(
                        "Max tool rounds (%d) reached in single turn",
                        self.settings.max_tool_rounds_per_turn,
                    )
                    break
        except TurnCancelledError:
            logger.info("Turn cancelled after %d LLM call(s)", result.llm_calls_executed)
            result.success = False
            result.error = "Turn cancelled"
        except Exception as e:
            logger.error("Error executing agent turn: %s", e, exc_info=True)
            result.success = False
            result.response_text = ""
            result.error = describe_error(e)
            await notify(self.observer, Error(ctx, result.error, type(e).__name__))

        await notify(
            self.observer,
            TurnComplete(
                ctx,
                success=result.success,
                llm_calls=result.llm_calls_executed,
                response_text=result.response_text,
                paused=result.is_paused,
            ),
        )
        return result

    def ensure_system_prompt(self) -> None:
        """Put the configured system prompt at the head of history.

        A leading system message holding the same prompt with a stale tool
        note (tools were registered or removed since) is replaced in place.
        """
        base = self.settings.system_prompt
        if not base:
            return
        prompt = base + ONE_TOOL_AT_A_TIME if len(self.tools) else base
        history = self.history.get_history()
        for index, message in enumerate(history):
            if message.role != Role.SYSTEM:
                break
            if message.text == prompt:
                return
            if message.text in (base, base + ONE_TOOL_AT_A_TIME):
                logger.debug("Refreshing tool note in system prompt")
                history[index] = Message.system(prompt)
                self.history.replace_history(history)
                return
        self.history.replace_history([Message.system(prompt), *history])

    async def _prepare_turn(
        self,
        ctx: AgentEventContext,
        text: str,
        files: list[FileAttachment] | None,
        cancel: asyncio.Event | None,
    ) -> str | None:
        last = self.history.last_message
        completion_signal = None
        if last is not None and last.role == Role.TOOL and self.unanswered_tool_calls():
            # Host answered part of a paused batch; run the rest first
            completion_signal = await self._complete_pending_calls(ctx, cancel)

        if last is not None and last.role in (Role.USER, Role.TOOL) and last.text == text:
            logger.debug("Message already in history, not appending")
        else:
            self.history.add_message(Message.user(text, attachments=files))
        return completion_signal

    def unanswered_tool_calls(self) -> list[ToolCall]:
        """Tool calls on the last assistant message that have no result yet."""
        history = self.history.get_history()
        for index in range(len(history) - 1, -1, -1):
            if history[index].role == Role.ASSISTANT:
                break
        else:
            return []
        answered = {m.tool_call_id for m in history[index + 1:] if m.role == Role.TOOL}
        return [tc for tc in history[index].tool_calls if tc.id not in answered]

    async def _complete_pending_calls(
        self, ctx: AgentEventContext, cancel: asyncio.Event | None
    ) -> str | None:
        pending = self.unanswered_tool_calls()
        ui_pending = [tc.function_name for tc in pending if self.tools.is_ui_tool(tc.function_name)]
        if ui_pending:
            raise RuntimeError(f"UI tool call(s) still awaiting results: {', '.join(ui_pending)}")
        if not pending:
            return None
        messages, completion_signal = await self._execute_tool_calls(
            pending, _RoundContext(ctx, 0), cancel
        )
        self.history.add_messages(messages)
        return completion_signal

    def validate_history(self) -> bool:
        """Repair the stored history in place if it is invalid. Returns True if it was valid."""
        history = self.history.get_history()
        validation = validate_messages(history)
        if validation.is_valid:
            return True
        logger.warning("Invalid conversation turns: %s", ", ".join(validation.errors))
        self.history.replace_history(repair_messages(history))
        return False

    # ------------------------------------------------------------------
    # Rounds
    # ------------------------------------------------------------------

    async def run_round(
        self,
        cancel: asyncio.Event | None = None,
        ctx: AgentEventContext | None = None,
        round_number: int = 1,
    ) -> RoundOutcome:
        """One LLM call plus (unless paused) execution of its tool calls.

        The assistant message and its tool messages are appended to history
        only after the whole round succeeded.
        """
        rctx = _RoundContext(ctx or self.event_context(), round_number)
        context = select_messages(self.history.get_history(), self.policy)
        tool_definitions = self.tools.tool_definitions()

        await notify(
            self.observer,
            LlmRequest(rctx.event_context, len(context), len(tool_definitions), round_number),
        )
        response = await self._stream_round(context, tool_definitions, cancel)
        self._calibrate(context, response)
        if self.cost_tracker is not None and response.usage is not None:
            self.cost_tracker.track_usage(getattr(self.llm, "model_name", None) or "unknown", response.usage)

        text = response.text
        if self._sanitizer is not None and text:
            text = self._sanitizer.sanitize(text)
        assistant = Message.assistant(text, response.tool_calls)

        usage = response.usage
        await notify(
            self.observer,
            LlmResponse(
                rctx.event_context,
                text=text,
                tool_call_count=len(response.tool_calls),
                input_tokens=usage.input_tokens if usage else 0,
                output_tokens=usage.output_tokens if usage else 0,
                finish_reason=str(response.finish_reason) if response.finish_reason else None,
            ),
        )
        self._log_content("Agent output", text, self.settings.log_agent_output)

        outcome = RoundOutcome(assistant=assistant, usage=usage)
        ui_calls = [tc for tc in response.tool_calls if self.tools.is_ui_tool(tc.function_name)]
        if ui_calls:
            logger.debug(
                "UI tool(s) %s requested, pausing for the host",
                ", ".join(tc.function_name for tc in ui_calls),
            )
            outcome.pending_tool_calls = ui_calls
        elif response.tool_calls:
            outcome.tool_messages, outcome.completion_signal = await self._execute_tool_calls(
                response.tool_calls, rctx, cancel
            )

        self.history.add_message(assistant)
        self.history.add_messages(outcome.tool_messages)
        return outcome

    async def _stream_round(
        self,
        context: list[Message],
        tool_definitions: list[dict],
        cancel: asyncio.Event | None,
    ) -> RoundResponse:
        text_parts: list[str] = []
        accumulator = ToolCallAccumulator()
        response = RoundResponse(text="", tool_calls=[])

        stream = self.llm.stream_response(context, tool_definitions, cancel=cancel)
        async for update in iterate_or_cancel(stream, cancel):
            if update.text_delta:
                text_parts.append(update.text_delta)
            if update.tool_call is not None:
                accumulator.add(update.tool_call)
            if update.usage is not None:
                response.usage = update.usage
            if update.finish_reason is not None:
                response.finish_reason = update.finish_reason

        response.text = "".join(text_parts)
        response.tool_calls = accumulator.finalize()
        return response

    def _calibrate(self, context: list[Message], response: RoundResponse) -> None:
        if response.usage is None or response.usage.input_tokens <= 0:
            return
        self.estimator.calibrate(
            TokenEstimator.message_chars(context), response.usage.input_tokens
        )

    async def _execute_tool_calls(
        self,
        tool_calls: list[ToolCall],
        rctx: _RoundContext,
        cancel: asyncio.Event | None,
    ) -> tuple[list[Message], str | None]:
        """Run tool calls one after another. Tool failures become result text."""
        messages: list[Message] = []
        completion_signal: str | None = None

        for call in tool_calls:
            await notify(
                self.observer,
                ToolExecutionStart(rctx.event_context, call.function_name, call.id, call.arguments),
            )
            self._log_content(
                f"Tool request {call.function_name}",
                format_for_logging(call.arguments),
                self.settings.log_tool_requests,
            )

            start = time.monotonic()
            success = True
            try:
                result = await self.tools.invoke(call.function_name, call.arguments, cancel=cancel)
            except TurnCancelledError:
                raise
            except Exception as e:
                logger.warning("Tool %s failed: %s", call.function_name, e)
                result = f"Error executing tool: {e}"
                success = False
            duration_ms = (time.monotonic() - start) * 1000

            if call.function_name == COMPLETE_TASK_TOOL and success:
                completion_signal = result

            await notify(
                self.observer,
                ToolExecutionComplete(
                    rctx.event_context, call.function_name, call.id, result, success, duration_ms
                ),
            )
            self._log_content(
                f"Tool response {call.function_name}",
                format_for_logging(result),
                self.settings.log_tool_responses,
            )
            messages.append(Message.tool(call.id, result))

        return messages, completion_signal

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _log_content(self, label: str, content: str | None, verbosity: LogVerbosity) -> None:
        shaped = apply_verbosity(content, verbosity, self.settings.log_truncation_length)
        if shaped is not None:
            logger.info("%s: %s", label, shaped)


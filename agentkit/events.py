"""Observer events and the in-process async event bus.

Observers are notified as a turn progresses (turn start, LLM request and
response, tool start and completion, turn completion, errors). They never
affect control flow: every observer error is logged and swallowed.

The EventBus dispatches Events to registered handlers asynchronously.
Handlers run concurrently but errors are isolated: one broken handler
never crashes the bus or blocks other handlers. EventBusObserver bridges
the two so bus handlers can follow agent activity.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

# Handler type: async function taking an Event
EventHandler = Callable[["Event"], Awaitable[None]]


@dataclass
class Event:
    """A typed event flowing through the bus."""

    type: str
    data: dict[str, Any] = field(default_factory=dict)
    conversation_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class EventBus:
    """In-process async event bus with error isolation.

    Events are queued and processed by a background asyncio task.
    Handlers registered via on() are called concurrently for each event.
    Handler errors are logged but never propagate.
    """

    def __init__(self, max_queue: int = 1000):
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max_queue)
        self._task: asyncio.Task | None = None
        self._running = False

    def on(self, event_type: str, handler: EventHandler) -> None:
        """Register a handler for an event type. "*" receives every event."""
        self._handlers[event_type].append(handler)
        logger.debug("Registered handler for '%s': %s", event_type, handler.__qualname__)

    def emit_nowait(self, event: Event) -> bool:
        """Queue an event without awaiting. Returns False if it was dropped."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Event bus queue full, dropping event: %s", event.type)
            return False
        return True

    async def emit(self, event: Event) -> None:
        """Emit an event. Never blocks; drops the event if the queue is full."""
        self.emit_nowait(event)

    async def start(self) -> None:
        """Start the background processing loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._process_loop(), name="event-bus")
        logger.info("Event bus started")

    async def stop(self) -> None:
        """Stop the bus, then dispatch whatever is still queued."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        while not self._queue.empty():
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            await self._dispatch(event)
        logger.info("Event bus stopped")

    async def _process_loop(self) -> None:
        while self._running:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=1.0)
                await self._dispatch(event)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Unexpected error in event bus loop")

    async def _dispatch(self, event: Event) -> None:
        handlers = [*self._handlers.get(event.type, []), *self._handlers.get("*", [])]
        if not handlers:
            return
        await asyncio.gather(*(self._safe_handle(h, event) for h in handlers))

    async def _safe_handle(self, handler: EventHandler, event: Event) -> None:
        """Run handler with error isolation. Only CancelledError propagates."""
        try:
            await handler(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "Handler %s failed for event %s",
                handler.__qualname__,
                event.type,
            )

    @property
    def pending(self) -> int:
        """Number of events waiting in queue."""
        return self._queue.qsize()


# ---------------------------------------------------------------------------
# Observer events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AgentEventContext:
    """Identifies where an observer event came from."""

    conversation_id: str | None = None
    model_name: str | None = None
    turn_id: str | None = None


@dataclass(frozen=True)
class TurnStart:
    context: AgentEventContext
    user_message: str


@dataclass(frozen=True)
class LlmRequest:
    context: AgentEventContext
    message_count: int
    tool_count: int
    round_number: int


@dataclass(frozen=True)
class LlmResponse:
    context: AgentEventContext
    text: str
    tool_call_count: int
    input_tokens: int = 0
    output_tokens: int = 0
    finish_reason: str | None = None


@dataclass(frozen=True)
class ToolExecutionStart:
    context: AgentEventContext
    tool_name: str
    call_id: str
    arguments: str


@dataclass(frozen=True)
class ToolExecutionComplete:
    context: AgentEventContext
    tool_name: str
    call_id: str
    result: str
    success: bool
    duration_ms: float


@dataclass(frozen=True)
class TurnComplete:
    context: AgentEventContext
    success: bool
    llm_calls: int
    response_text: str = ""
    paused: bool = False


@dataclass(frozen=True)
class Error:
    context: AgentEventContext
    message: str
    error_type: str


class AgentObserver:
    """Base observer. Override only the hooks you care about."""

    async def on_turn_start(self, event: TurnStart) -> None:
        pass

    async def on_llm_request(self, event: LlmRequest) -> None:
        pass

    async def on_llm_response(self, event: LlmResponse) -> None:
        pass

    async def on_tool_start(self, event: ToolExecutionStart) -> None:
        pass

    async def on_tool_complete(self, event: ToolExecutionComplete) -> None:
        pass

    async def on_turn_complete(self, event: TurnComplete) -> None:
        pass

    async def on_error(self, event: Error) -> None:
        pass


_HOOKS: dict[type, str] = {
    TurnStart: "on_turn_start",
    LlmRequest: "on_llm_request",
    LlmResponse: "on_llm_response",
    ToolExecutionStart: "on_tool_start",
    ToolExecutionComplete: "on_tool_complete",
    TurnComplete: "on_turn_complete",
    Error: "on_error",
}


async def notify(observer: AgentObserver | None, event: Any) -> None:
    """Deliver event to the observer's matching hook, swallowing failures."""
    if observer is None:
        return
    hook = getattr(observer, _HOOKS[type(event)])
    try:
        await hook(event)
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.exception(
            "Observer %s failed on %s",
            type(observer).__qualname__,
            type(event).__name__,
        )


class CompositeObserver(AgentObserver):
    """Fans events out to several observers. One failing never blocks the rest."""

    def __init__(self, observers: list[AgentObserver] | None = None):
        self.observers: list[AgentObserver] = list(observers or [])

    def add(self, observer: AgentObserver) -> None:
        self.observers.append(observer)

    async def _fan_out(self, event: Any) -> None:
        for observer in self.observers:
            await notify(observer, event)

    async def on_turn_start(self, event: TurnStart) -> None:
        await self._fan_out(event)

    async def on_llm_request(self, event: LlmRequest) -> None:
        await self._fan_out(event)

    async def on_llm_response(self, event: LlmResponse) -> None:
        await self._fan_out(event)

    async def on_tool_start(self, event: ToolExecutionStart) -> None:
        await self._fan_out(event)

    async def on_tool_complete(self, event: ToolExecutionComplete) -> None:
        await self._fan_out(event)

    async def on_turn_complete(self, event: TurnComplete) -> None:
        await self._fan_out(event)

    async def on_error(self, event: Error) -> None:
        await self._fan_out(event)


_EVENT_TYPES: dict[type, str] = {
    TurnStart: "turn_started",
    LlmRequest: "llm_request",
    LlmResponse: "llm_response",
    ToolExecutionStart: "tool_started",
    ToolExecutionComplete: "tool_completed",
    TurnComplete: "turn_completed",
    Error: "error",
}


class EventBusObserver(AgentObserver):
    """Forwards observer events to an EventBus as "agent.<kind>" events."""

    def __init__(self, bus: EventBus, prefix: str = "agent"):
        self._bus = bus
        self._prefix = prefix

    async def _forward(self, event: Any) -> None:
        data = asdict(event)
        context = data.pop("context")
        await self._bus.emit(
            Event(
                type=f"{self._prefix}.{_EVENT_TYPES[type(event)]}",
                data={**data, "model_name": context["model_name"], "turn_id": context["turn_id"]},
                conversation_id=context["conversation_id"],
            )
        )

    async def on_turn_start(self, event: TurnStart) -> None:
        await self._forward(event)

    async def on_llm_request(self, event: LlmRequest) -> None:
        await self._forward(event)

    async def on_llm_response(self, event: LlmResponse) -> None:
        await self._forward(event)

    async def on_tool_start(self, event: ToolExecutionStart) -> None:
        await self._forward(event)

    async def on_tool_complete(self, event: ToolExecutionComplete) -> None:
        await self._forward(event)

    async def on_turn_complete(self, event: TurnComplete) -> None:
        await self._forward(event)

    async def on_error(self, event: Error) -> None:
        await self._forward(event)

"""In-memory history accumulator and token estimation.

The HistoryManager is owned by exactly one engine instance; only that
engine appends to it or replaces it.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from agentkit.history.messages import Message, Role
from agentkit.history.schemas import HistoryStats

# Per-message overhead for role/ids/formatting, in characters.
_MESSAGE_OVERHEAD_CHARS = 50


class TokenEstimator:
    """Estimates token counts with optional calibration from API usage.

    Starts with a chars/4 heuristic and moves toward the observed ratio
    via calibrate() after each LLM response that reports input tokens.
    The observed ratio includes system prompt and tool schema overhead.
    """

    def __init__(self) -> None:
        self._ratio: float = 0.25  # tokens per char
        self._samples: int = 0

    @property
    def samples(self) -> int:
        """Number of calibration samples received."""
        return self._samples

    @property
    def ratio(self) -> float:
        """Current tokens-per-char ratio."""
        return self._ratio

    @staticmethod
    def message_chars(messages: Iterable[Message]) -> int:
        return sum(len(m.text or "") + _MESSAGE_OVERHEAD_CHARS for m in messages)

    def estimate(self, text: str) -> int:
        return max(1, int(len(text) * self._ratio))

    def estimate_messages(self, messages: Sequence[Message]) -> int:
        if not messages:
            return 0
        return int(self.message_chars(messages) * self._ratio)

    def calibrate(self, input_chars: int, actual_tokens: int) -> None:
        """Update ratio from actual input_tokens. EMA with alpha=0.1."""
        if input_chars <= 0 or actual_tokens <= 0:
            return
        observed = actual_tokens / input_chars
        self._ratio = 0.1 * observed + 0.9 * self._ratio
        self._samples += 1


class HistoryManager:
    """Ordered list of messages for one conversation."""

    def __init__(self, messages: Iterable[Message] | None = None) -> None:
        self._history: list[Message] = list(messages or [])
        self.estimator = TokenEstimator()

    def __len__(self) -> int:
        return len(self._history)

    def add_message(self, message: Message) -> None:
        self._history.append(message)

    def add_messages(self, messages: Iterable[Message]) -> None:
        self._history.extend(messages)

    def get_history(self) -> list[Message]:
        """Return a copy; callers cannot mutate the stored list."""
        return list(self._history)

    def replace_history(self, messages: Iterable[Message]) -> None:
        self._history = list(messages)

    def clear(self) -> None:
        self._history.clear()

    @property
    def last_message(self) -> Message | None:
        return self._history[-1] if self._history else None

    def get_stats(self) -> HistoryStats:
        return HistoryStats(
            total_messages=len(self._history),
            user_messages=sum(1 for m in self._history if m.role == Role.USER),
            assistant_messages=sum(1 for m in self._history if m.role == Role.ASSISTANT),
            tool_messages=sum(1 for m in self._history if m.role == Role.TOOL),
            estimated_tokens=self.estimator.estimate_messages(self._history),
        )

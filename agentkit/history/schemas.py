"""Pydantic DTOs for history retention, checkpoints and validation.

These models define the data contract between the context selection
engine, the history stores and their consumers (the runtime in api/).
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

OMITTED_PLACEHOLDER = "[Omitted]"
IMAGE_OMITTED_PLACEHOLDER = "[Image omitted]"


class ToolResultStrategy(StrEnum):
    UNLIMITED = "unlimited"
    KEEP_RECENT = "keep_recent"
    KEEP_ONE = "keep_one"
    DROP_ALL = "drop_all"


class ToolResultPolicy(BaseModel):
    """Which tool results keep their full text when sent to the model."""

    strategy: ToolResultStrategy = ToolResultStrategy.UNLIMITED
    keep_recent: int = Field(default=0, ge=0)

    @classmethod
    def unlimited(cls) -> ToolResultPolicy:
        return cls(strategy=ToolResultStrategy.UNLIMITED)

    @classmethod
    def recent(cls, n: int) -> ToolResultPolicy:
        return cls(strategy=ToolResultStrategy.KEEP_RECENT, keep_recent=n)

    @classmethod
    def keep_one(cls) -> ToolResultPolicy:
        return cls(strategy=ToolResultStrategy.KEEP_ONE)

    @classmethod
    def drop_all(cls) -> ToolResultPolicy:
        return cls(strategy=ToolResultStrategy.DROP_ALL)

    def keep_count(self) -> int | None:
        """Number of most recent tool results kept intact (None = all)."""
        if self.strategy == ToolResultStrategy.UNLIMITED:
            return None
        if self.strategy == ToolResultStrategy.KEEP_ONE:
            return 1
        if self.strategy == ToolResultStrategy.DROP_ALL:
            return 0
        return self.keep_recent

    def summary(self) -> str:
        keep = self.keep_count()
        if keep is None:
            return "unlimited (no filtering)"
        return f"keep {keep} recent, replace others with placeholders"


class RetentionPolicy(BaseModel):
    """How much history is sent to the model on each call.

    Full history is still kept by the history manager and the store;
    this only shapes what the LLM sees.
    """

    max_messages_to_send: int = Field(default=0, ge=0)  # 0 = unlimited
    keep_recent_messages_intact: int = Field(default=5, ge=0)
    tool_results: ToolResultPolicy = Field(default_factory=ToolResultPolicy)
    max_multimodal_messages: int | None = Field(default=None, ge=0)

    def validate_settings(self) -> list[str]:
        """Return advisory issues with this policy (empty if sensible)."""
        issues: list[str] = []
        cap = self.max_messages_to_send
        keep = self.keep_recent_messages_intact
        if cap > 0 and keep >= cap:
            issues.append(
                f"keep_recent_messages_intact ({keep}) should be less than "
                f"max_messages_to_send ({cap})"
            )
        elif cap > 0 and keep > cap * 0.5:
            issues.append(
                f"keep_recent_messages_intact ({keep}) is more than 50% of "
                f"max_messages_to_send ({cap}); consider lowering to {int(cap * 0.3)}"
            )
        return issues

    def summary(self) -> str:
        parts = []
        if self.max_messages_to_send == 0:
            parts.append("unlimited messages")
        else:
            parts.append(f"max {self.max_messages_to_send} messages")
            parts.append(f"{self.keep_recent_messages_intact} recent protected")
        parts.append(f"tool results: {self.tool_results.summary()}")
        if self.max_multimodal_messages is not None:
            parts.append(f"max {self.max_multimodal_messages} multimodal messages")
        return ", ".join(parts)


class Checkpoint(BaseModel):
    """Summary of a conversation up to (and including) a turn number."""

    model_config = ConfigDict(frozen=True)

    up_to_turn_number: int = Field(ge=0)
    summary: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    metadata: dict[str, Any] | None = None


class HistoryStats(BaseModel):
    """Counts over an in-memory history."""

    total_messages: int = 0
    user_messages: int = 0
    assistant_messages: int = 0
    tool_messages: int = 0
    estimated_tokens: int = 0


class ValidationResult(BaseModel):
    """Outcome of a conversation-validity check."""

    errors: list[str] = Field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

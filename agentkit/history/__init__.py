"""History module: conversation messages and context management.

Public API: message model, retention policies, the context selector,
structural validation/repair, the in-memory history manager and the
history store contract.
"""

from agentkit.history.manager import HistoryManager, TokenEstimator
from agentkit.history.messages import (
    FileAttachment,
    ImageContent,
    Message,
    MessageContent,
    Role,
    TextContent,
    ToolCall,
    ToolCallContent,
    ToolResultContent,
)
from agentkit.history.schemas import (
    IMAGE_OMITTED_PLACEHOLDER,
    OMITTED_PLACEHOLDER,
    Checkpoint,
    HistoryStats,
    RetentionPolicy,
    ToolResultPolicy,
    ToolResultStrategy,
    ValidationResult,
)
from agentkit.history.selector import select_messages
from agentkit.history.store import HistoryStore, InMemoryHistoryStore, StoredTurn
from agentkit.history.validation import is_valid, repair_messages, validate_messages

__all__ = [
    "HistoryManager",
    "TokenEstimator",
    # Messages
    "FileAttachment",
    "ImageContent",
    "Message",
    "MessageContent",
    "Role",
    "TextContent",
    "ToolCall",
    "ToolCallContent",
    "ToolResultContent",
    # Policies
    "IMAGE_OMITTED_PLACEHOLDER",
    "OMITTED_PLACEHOLDER",
    "RetentionPolicy",
    "ToolResultPolicy",
    "ToolResultStrategy",
    # Checkpoints and stats
    "Checkpoint",
    "HistoryStats",
    "ValidationResult",
    # Selection and repair
    "is_valid",
    "repair_messages",
    "select_messages",
    "validate_messages",
    # Stores
    "HistoryStore",
    "InMemoryHistoryStore",
    "StoredTurn",
]

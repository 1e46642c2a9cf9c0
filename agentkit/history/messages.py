"""Conversation message model.

Messages are immutable once appended to a history. Compression never edits
a stored message; it builds a replacement with dataclasses.replace().
"""

from __future__ import annotations

import base64
import mimetypes
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any, Union


class Role(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation requested by the model."""

    id: str
    function_name: str
    arguments: str = "{}"  # raw JSON


# ------------------------------------------------------------------
# Content parts
# ------------------------------------------------------------------


@dataclass(frozen=True)
class TextContent:
    text: str
    type: str = field(default="text", init=False)


@dataclass(frozen=True)
class ImageContent:
    data: bytes
    mime_type: str
    type: str = field(default="image", init=False)


@dataclass(frozen=True)
class ToolCallContent:
    call_id: str
    tool_name: str
    arguments: str
    type: str = field(default="tool_call", init=False)


@dataclass(frozen=True)
class ToolResultContent:
    call_id: str
    result: str
    is_error: bool = False
    type: str = field(default="tool_result", init=False)


MessageContent = Union[TextContent, ImageContent, ToolCallContent, ToolResultContent]


@dataclass(frozen=True)
class Message:
    """A single message in a conversation history."""

    role: Role
    text: str | None = None
    contents: list[MessageContent] = field(default_factory=list)
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None

    # -- constructors -------------------------------------------------

    @classmethod
    def system(cls, text: str) -> Message:
        return cls(role=Role.SYSTEM, text=text)

    @classmethod
    def user(cls, text: str, attachments: list[FileAttachment] | None = None) -> Message:
        if not attachments:
            return cls(role=Role.USER, text=text)
        contents: list[MessageContent] = [TextContent(text)]
        contents.extend(a.to_content() for a in attachments)
        return cls(role=Role.USER, text=text, contents=contents)

    @classmethod
    def assistant(cls, text: str | None, tool_calls: list[ToolCall] | None = None) -> Message:
        return cls(role=Role.ASSISTANT, text=text, tool_calls=list(tool_calls or []))

    @classmethod
    def tool(cls, tool_call_id: str, text: str) -> Message:
        return cls(role=Role.TOOL, text=text, tool_call_id=tool_call_id)

    # -- helpers ------------------------------------------------------

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    @property
    def has_images(self) -> bool:
        return any(isinstance(c, ImageContent) for c in self.contents)

    def tool_call_ids(self) -> set[str]:
        return {tc.id for tc in self.tool_calls}


# ------------------------------------------------------------------
# File attachments
# ------------------------------------------------------------------

_MEDIA_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".bmp": "image/bmp",
    ".svg": "image/svg+xml",
    ".pdf": "application/pdf",
    ".txt": "text/plain",
    ".json": "application/json",
    ".xml": "application/xml",
    ".csv": "text/csv",
}


@dataclass(frozen=True)
class FileAttachment:
    """Binary payload attached to a user message."""

    data: bytes
    media_type: str
    file_name: str | None = None

    @classmethod
    def from_bytes(cls, data: bytes, media_type: str, file_name: str | None = None) -> FileAttachment:
        return cls(data=data, media_type=media_type, file_name=file_name)

    @classmethod
    def from_base64(cls, encoded: str, media_type: str, file_name: str | None = None) -> FileAttachment:
        return cls(data=base64.b64decode(encoded), media_type=media_type, file_name=file_name)

    @classmethod
    def from_file(cls, path: str | Path) -> FileAttachment:
        path = Path(path)
        media_type = _MEDIA_TYPES.get(path.suffix.lower())
        if media_type is None:
            media_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        return cls(data=path.read_bytes(), media_type=media_type, file_name=path.name)

    @property
    def is_image(self) -> bool:
        return self.media_type.lower().startswith("image/")

    @property
    def size(self) -> int:
        return len(self.data)

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    def to_content(self) -> ImageContent:
        return ImageContent(data=self.data, mime_type=self.media_type)


# ------------------------------------------------------------------
# Serialization (used by stores and summarization)
# ------------------------------------------------------------------


def content_to_dict(content: MessageContent) -> dict[str, Any]:
    if isinstance(content, TextContent):
        return {"type": "text", "text": content.text}
    if isinstance(content, ImageContent):
        return {
            "type": "image",
            "data": base64.b64encode(content.data).decode("ascii"),
            "mime_type": content.mime_type,
        }
    if isinstance(content, ToolCallContent):
        return {
            "type": "tool_call",
            "call_id": content.call_id,
            "tool_name": content.tool_name,
            "arguments": content.arguments,
        }
    return {
        "type": "tool_result",
        "call_id": content.call_id,
        "result": content.result,
        "is_error": content.is_error,
    }


def content_from_dict(data: dict[str, Any]) -> MessageContent:
    kind = data.get("type")
    if kind == "text":
        return TextContent(data.get("text", ""))
    if kind == "image":
        return ImageContent(data=base64.b64decode(data["data"]), mime_type=data["mime_type"])
    if kind == "tool_call":
        return ToolCallContent(data["call_id"], data["tool_name"], data.get("arguments", "{}"))
    if kind == "tool_result":
        return ToolResultContent(data["call_id"], data.get("result", ""), data.get("is_error", False))
    raise ValueError(f"Unknown content type: {kind!r}")


def message_to_dict(message: Message) -> dict[str, Any]:
    data: dict[str, Any] = {"role": message.role.value, "text": message.text}
    if message.contents:
        data["contents"] = [content_to_dict(c) for c in message.contents]
    if message.tool_calls:
        data["tool_calls"] = [
            {"id": tc.id, "function_name": tc.function_name, "arguments": tc.arguments}
            for tc in message.tool_calls
        ]
    if message.tool_call_id is not None:
        data["tool_call_id"] = message.tool_call_id
    return data


def message_from_dict(data: dict[str, Any]) -> Message:
    return Message(
        role=Role(data["role"]),
        text=data.get("text"),
        contents=[content_from_dict(c) for c in data.get("contents") or []],
        tool_calls=[
            ToolCall(id=tc["id"], function_name=tc["function_name"], arguments=tc.get("arguments", "{}"))
            for tc in data.get("tool_calls") or []
        ],
        tool_call_id=data.get("tool_call_id"),
    )

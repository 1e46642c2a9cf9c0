"""Cleans model output before it is stored as an assistant message."""

from __future__ import annotations

import re
from dataclasses import dataclass

from agentkit.config import Settings

_THINKING_PATTERNS = [
    re.compile(r"<thinking>.*?</thinking>", re.DOTALL | re.IGNORECASE),
    re.compile(r"<internal_thoughts>.*?</internal_thoughts>", re.DOTALL | re.IGNORECASE),
    re.compile(r"<reasoning>.*?</reasoning>", re.DOTALL | re.IGNORECASE),
]
_JSON_FENCE = re.compile(r"```json\s*\n(.*?)\n```", re.DOTALL | re.IGNORECASE)
_ANY_FENCE = re.compile(r"```\s*\n(.*?)\n```", re.DOTALL)


@dataclass(frozen=True)
class SanitizationOptions:
    remove_thinking_tags: bool = True
    unwrap_json_from_markdown: bool = True
    remove_null_characters: bool = True
    trim_whitespace: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> SanitizationOptions:
        return cls(
            remove_thinking_tags=settings.strip_thinking_tags,
            unwrap_json_from_markdown=settings.unwrap_json_fences,
            remove_null_characters=settings.remove_null_characters,
            trim_whitespace=settings.trim_whitespace,
        )


def unwrap_json(text: str) -> str:
    """Return the body of a ```json fence, or of a bare fence holding JSON."""
    match = _JSON_FENCE.search(text)
    if match:
        return match.group(1).strip()
    match = _ANY_FENCE.search(text)
    if match:
        body = match.group(1).strip()
        if body.startswith(("{", "[")):
            return body
    return text


class OutputSanitizer:
    def __init__(self, options: SanitizationOptions | None = None):
        self.options = options or SanitizationOptions()

    def sanitize(self, output: str) -> str:
        if not output:
            return output
        result = output
        if self.options.remove_thinking_tags:
            for pattern in _THINKING_PATTERNS:
                result = pattern.sub("", result)
        if self.options.unwrap_json_from_markdown:
            result = unwrap_json(result)
        if self.options.remove_null_characters:
            result = result.replace("\0", "")
        if self.options.trim_whitespace:
            result = result.strip()
        return result

"""Shared utility functions for agentkit."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Awaitable
from typing import Literal, TypeVar

T = TypeVar("T")

LogVerbosity = Literal["none", "truncated", "full"]


class TurnCancelledError(Exception):
    """Raised inside the engine when the caller's cancel event fires."""


def check_cancelled(cancel: asyncio.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise TurnCancelledError("Operation cancelled")


async def await_or_cancel(awaitable: Awaitable[T], cancel: asyncio.Event | None) -> T:
    """Await awaitable, abandoning it as soon as cancel is set.

    The abandoned operation is cancelled and awaited so it never
    outlives the caller.
    """
    check_cancelled(cancel)
    if cancel is None:
        return await awaitable

    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
    if work.done():
        return work.result()

    work.cancel()
    try:
        await work
    except asyncio.CancelledError:
        pass
    raise TurnCancelledError("Operation cancelled")


async def iterate_or_cancel(
    stream: AsyncIterator[T], cancel: asyncio.Event | None
) -> AsyncIterator[T]:
    """Yield from an async iterator, checking cancel at every read."""
    iterator = aiter(stream)
    try:
        while True:
            try:
                item = await await_or_cancel(anext(iterator), cancel)
            except StopAsyncIteration:
                return
            yield item
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()


def apply_verbosity(content: str | None, verbosity: LogVerbosity, limit: int) -> str | None:
    """Return content shaped for logging, or None if it must not be logged."""
    if content is None or verbosity == "none":
        return None
    if verbosity == "full" or len(content) <= limit:
        return content
    return content[:limit] + "..."


def format_for_logging(payload: str) -> str:
    """Pretty-print JSON payloads with unicode unescaped; other text as-is."""
    try:
        return json.dumps(json.loads(payload), ensure_ascii=False, indent=2)
    except (json.JSONDecodeError, TypeError):
        return payload

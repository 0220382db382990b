"""Server-Sent Events framing.

:func:`iter_frames` turns a line stream (as produced by
``httpx.Response.aiter_lines()``) into :class:`ServerSentEvent` frames and
stops at the ``[DONE]`` sentinel or when the line stream closes.
:func:`format_frame` is the inverse, used to replay or fake streams.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass
from typing import Any

from tessera.exceptions import EventDecodeError

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
DONE_EVENT = "done"


@dataclass
class ServerSentEvent:
    """A single dispatched SSE frame. ``data`` is the raw joined data text."""

    event: str | None = None
    data: str = ""
    id: str | None = None
    retry: int | None = None


class _FrameBuilder:
    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.event: str | None = None
        self.data_lines: list[str] = []
        self.id: str | None = None
        self.retry: int | None = None

    @property
    def pending(self) -> bool:
        return bool(self.data_lines) or self.event is not None

    def feed(self, name: str, value: str) -> None:
        if name == "event":
            self.event = value
        elif name == "data":
            self.data_lines.append(value)
        elif name == "id":
            self.id = value
        elif name == "retry":
            try:
                self.retry = int(value)
            except ValueError:
                logger.debug(f"Ignoring non-integer retry field: {value!r}")
        else:
            logger.debug(f"Ignoring unknown SSE field: {name!r}")

    def build(self) -> ServerSentEvent:
        frame = ServerSentEvent(
            event=self.event,
            data="\n".join(self.data_lines),
            id=self.id,
            retry=self.retry,
        )
        self.reset()
        return frame


def _split(chunk: str | bytes) -> list[str]:
    if isinstance(chunk, bytes):
        try:
            chunk = chunk.decode("utf-8")
        except UnicodeDecodeError as e:
            raise EventDecodeError(f"SSE line is not valid UTF-8: {e}") from e
    # An empty chunk is a blank line (frame separator), not "no lines".
    return chunk.splitlines() or [""]


def _is_terminal(frame: ServerSentEvent) -> bool:
    return frame.data.strip() == DONE_SENTINEL or frame.event == DONE_EVENT


async def iter_frames(
    lines: AsyncIterable[str | bytes],
) -> AsyncIterator[ServerSentEvent]:
    """Parse SSE lines into frames until ``[DONE]`` or end of stream."""
    builder = _FrameBuilder()
    async for chunk in lines:
        for line in _split(chunk):
            if not line:
                if not builder.pending:
                    continue
                frame = builder.build()
                if _is_terminal(frame):
                    return
                yield frame
                continue
            if line.startswith(":"):
                continue
            name, _, value = line.partition(":")
            if value.startswith(" "):
                value = value[1:]
            builder.feed(name, value)
            # The sentinel may arrive without a trailing blank line.
            if name == "data" and value.strip() == DONE_SENTINEL:
                return

    if builder.pending:
        frame = builder.build()
        if not _is_terminal(frame):
            yield frame


def format_frame(event_type: str | None, data: Any) -> str:
    """Encode one SSE frame; *data* is JSON-encoded unless already a string."""
    payload = data if isinstance(data, str) else json.dumps(data)
    if event_type is None:
        return f"data: {payload}\n\n"
    return f"event: {event_type}\ndata: {payload}\n\n"


async def sse_generator(
    frames: AsyncIterable[tuple[str | None, Any]],
) -> AsyncIterator[str]:
    """Convert ``(event_type, data)`` pairs into SSE-formatted strings."""
    async for event_type, data in frames:
        yield format_frame(event_type, data)
    yield f"data: {DONE_SENTINEL}\n\n"

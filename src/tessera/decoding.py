"""Translate SSE frames into typed partial-update events.

Three wire dialects are understood, each keyed by its event name (or the
``type``/``object`` field when the frame has no ``event:`` line):

- Responses API: ``response.*`` events addressed by ``output_index`` /
  ``content_index`` / ``annotation_index``;
- Chat Completions: ``chat.completion.chunk`` frames whose choices are
  addressed by ``index``;
- Assistants runs: ``thread.run.*`` whole objects and ``thread.message.*``
  objects addressed by message id.

Anything else becomes an :class:`~tessera.events.UnknownEvent`.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterable, AsyncIterator, Callable
from typing import Any

from tessera.events import (
    AnnotationAdded,
    ArgumentsDelta,
    ArgumentsDone,
    AudioDataDelta,
    AudioFragment,
    ChoiceDelta,
    ContentPartAdded,
    ContentPartDelta,
    ContentPartDone,
    DeltaEvent,
    ErrorEvent,
    EventPath,
    ItemAdded,
    ItemDone,
    MessageContentDelta,
    SnapshotCompleted,
    TextDelta,
    TextDone,
    ToolCallFragment,
    UnknownEvent,
)
from tessera.exceptions import EventDecodeError
from tessera.models import (
    Annotation,
    Snapshot,
    TextContent,
    parse_content_part,
    parse_item,
)
from tessera.sse import ServerSentEvent, iter_frames

logger = logging.getLogger(__name__)

_Parser = Callable[[dict[str, Any]], list[DeltaEvent]]


async def decode_events(
    lines: AsyncIterable[str | bytes],
) -> AsyncIterator[DeltaEvent]:
    """Yield typed events from an SSE line stream, in arrival order."""
    async for frame in iter_frames(lines):
        for event in parse_frame(frame):
            yield event


def parse_frame(frame: ServerSentEvent) -> list[DeltaEvent]:
    """Decode one frame. Placeholder frames decode to an empty list."""
    try:
        data = json.loads(frame.data) if frame.data.strip() else {}
    except json.JSONDecodeError as e:
        raise EventDecodeError(
            f"Invalid JSON in {frame.event or 'data'} frame: {e}"
        ) from e
    if not isinstance(data, dict):
        raise EventDecodeError(
            f"Expected a JSON object in {frame.event or 'data'} frame, "
            f"got {type(data).__name__}"
        )

    if _is_placeholder(frame, data):
        logger.debug("Skipping placeholder frame")
        return []

    event_type = frame.event or data.get("type") or data.get("object") or ""
    return parse_event(event_type, data)


def parse_event(event_type: str, data: dict[str, Any]) -> list[DeltaEvent]:
    parser = _EVENT_PARSERS.get(event_type)
    if parser is None:
        parser = next(
            (p for prefix, p in _PREFIX_PARSERS if event_type.startswith(prefix)),
            None,
        )
    if parser is None:
        return [UnknownEvent(data=data, event_type=event_type)]

    events = parser(data)
    for event in events:
        event.event_type = event_type
    return events


def _is_placeholder(frame: ServerSentEvent, data: dict[str, Any]) -> bool:
    # Content-filter-only frames: no discriminant, blank id, nothing to merge.
    if frame.event or data.get("type") or data.get("id"):
        return False
    return not data.get("choices") and not data.get("delta")


# -------------------------------------------------------------------
# Responses API
# -------------------------------------------------------------------


def _path(
    data: dict[str, Any],
    part_key: str | None = "content_index",
    sub_key: str | None = None,
) -> EventPath:
    return EventPath(
        item=data.get("output_index"),
        part=data.get(part_key) if part_key else None,
        sub=data.get(sub_key) if sub_key else None,
    )


def _parse_response_object(data: dict[str, Any]) -> list[DeltaEvent]:
    return [SnapshotCompleted(snapshot=Snapshot.from_payload(data["response"]))]


def _parse_item_added(data: dict[str, Any]) -> list[DeltaEvent]:
    return [ItemAdded(path=_path(data, None), item=parse_item(data["item"]))]


def _parse_item_done(data: dict[str, Any]) -> list[DeltaEvent]:
    return [ItemDone(path=_path(data, None), item=parse_item(data["item"]))]


def _part_parsers(part_key: str) -> tuple[_Parser, _Parser]:
    def added(data: dict[str, Any]) -> list[DeltaEvent]:
        return [ContentPartAdded(
            path=_path(data, part_key),
            part=parse_content_part(data["part"]),
            item_id=data.get("item_id"),
        )]

    def done(data: dict[str, Any]) -> list[DeltaEvent]:
        return [ContentPartDone(
            path=_path(data, part_key),
            part=parse_content_part(data["part"]),
            item_id=data.get("item_id"),
        )]

    return added, done


def _text_parsers(part_key: str, done_field: str) -> tuple[_Parser, _Parser]:
    def delta(data: dict[str, Any]) -> list[DeltaEvent]:
        return [TextDelta(
            path=_path(data, part_key),
            delta=data.get("delta") or "",
            item_id=data.get("item_id"),
        )]

    def done(data: dict[str, Any]) -> list[DeltaEvent]:
        return [TextDone(
            path=_path(data, part_key),
            text=data.get(done_field) or "",
            item_id=data.get("item_id"),
        )]

    return delta, done


def _arguments_parsers(done_field: str) -> tuple[_Parser, _Parser]:
    def delta(data: dict[str, Any]) -> list[DeltaEvent]:
        return [ArgumentsDelta(
            path=_path(data, None),
            delta=data.get("delta") or "",
            item_id=data.get("item_id"),
        )]

    def done(data: dict[str, Any]) -> list[DeltaEvent]:
        return [ArgumentsDone(
            path=_path(data, None),
            arguments=data.get(done_field) or "",
            item_id=data.get("item_id"),
        )]

    return delta, done


def _parse_audio_delta(data: dict[str, Any]) -> list[DeltaEvent]:
    return [AudioDataDelta(
        path=_path(data),
        delta=data.get("delta") or "",
        item_id=data.get("item_id"),
    )]


def _parse_annotation_added(data: dict[str, Any]) -> list[DeltaEvent]:
    return [AnnotationAdded(
        path=_path(data, "content_index", "annotation_index"),
        annotation=Annotation.model_validate(data["annotation"]),
        item_id=data.get("item_id"),
    )]


def _parse_error(data: dict[str, Any]) -> list[DeltaEvent]:
    error = data.get("error") if isinstance(data.get("error"), dict) else data
    return [ErrorEvent(
        message=error.get("message") or "unknown error",
        code=error.get("code"),
    )]


# -------------------------------------------------------------------
# Chat Completions
# -------------------------------------------------------------------


def _parse_chat_chunk(data: dict[str, Any]) -> list[DeltaEvent]:
    header = {
        k: v for k, v in data.items() if k != "choices" and v is not None
    }
    header["object"] = "chat.completion"
    events: list[DeltaEvent] = [
        SnapshotCompleted(snapshot=Snapshot.from_payload(header))
    ]

    for position, choice in enumerate(data.get("choices") or []):
        delta = choice.get("delta") or {}
        fragments = []
        for i, raw in enumerate(delta.get("tool_calls") or []):
            function = raw.get("function") or {}
            fragments.append(ToolCallFragment(
                index=raw.get("index", i),
                call_id=raw.get("id"),
                name=function.get("name"),
                arguments_delta=function.get("arguments"),
            ))
        raw_audio = delta.get("audio")
        audio = None
        if isinstance(raw_audio, dict):
            audio = AudioFragment(
                id=raw_audio.get("id"),
                transcript=raw_audio.get("transcript"),
                data=raw_audio.get("data"),
                expires_at=raw_audio.get("expires_at"),
            )
        events.append(ChoiceDelta(
            index=choice.get("index", position),
            role=delta.get("role"),
            content=delta.get("content"),
            refusal=delta.get("refusal"),
            tool_calls=fragments,
            audio=audio,
            finish_reason=choice.get("finish_reason"),
        ))
    return events


# -------------------------------------------------------------------
# Assistants runs
# -------------------------------------------------------------------


def _parse_run_object(data: dict[str, Any]) -> list[DeltaEvent]:
    return [SnapshotCompleted(snapshot=Snapshot.from_payload(data))]


def _parse_thread_message(data: dict[str, Any]) -> list[DeltaEvent]:
    return [ItemAdded(path=EventPath(), item=parse_item(data))]


def _parse_thread_message_done(data: dict[str, Any]) -> list[DeltaEvent]:
    return [ItemDone(path=EventPath(), item=parse_item(data))]


def _parse_thread_message_delta(data: dict[str, Any]) -> list[DeltaEvent]:
    delta = data.get("delta") or {}
    parts = []
    for position, raw in enumerate(delta.get("content") or []):
        index = raw.get("index", position)
        part = parse_content_part({k: v for k, v in raw.items() if k != "index"})
        annotations = []
        if isinstance(part, TextContent):
            annotations = [a for a in part.annotations if a is not None]
            part.annotations = []
        parts.append(ContentPartDelta(index=index, part=part, annotations=annotations))
    return [MessageContentDelta(item_id=data.get("id") or "", parts=parts)]


def _ignored(data: dict[str, Any]) -> list[DeltaEvent]:
    return [UnknownEvent(data=data)]


_summary_part_added, _summary_part_done = _part_parsers("summary_index")
_content_part_added, _content_part_done = _part_parsers("content_index")
_output_text_delta, _output_text_done = _text_parsers("content_index", "text")
_refusal_delta, _refusal_done = _text_parsers("content_index", "refusal")
_summary_text_delta, _summary_text_done = _text_parsers("summary_index", "text")
_transcript_delta, _transcript_done = _text_parsers("content_index", "transcript")
_function_args_delta, _function_args_done = _arguments_parsers("arguments")
_code_delta, _code_done = _arguments_parsers("code")

_EVENT_PARSERS: dict[str, _Parser] = {
    "response.created": _parse_response_object,
    "response.queued": _parse_response_object,
    "response.in_progress": _parse_response_object,
    "response.completed": _parse_response_object,
    "response.failed": _parse_response_object,
    "response.incomplete": _parse_response_object,
    "response.cancelled": _parse_response_object,
    "response.output_item.added": _parse_item_added,
    "response.output_item.done": _parse_item_done,
    "response.content_part.added": _content_part_added,
    "response.content_part.done": _content_part_done,
    "response.output_text.delta": _output_text_delta,
    "response.output_text.done": _output_text_done,
    "response.output_text.annotation.added": _parse_annotation_added,
    "response.refusal.delta": _refusal_delta,
    "response.refusal.done": _refusal_done,
    "response.audio.delta": _parse_audio_delta,
    "response.output_audio.delta": _parse_audio_delta,
    "response.audio_transcript.delta": _transcript_delta,
    "response.audio_transcript.done": _transcript_done,
    "response.output_audio_transcript.delta": _transcript_delta,
    "response.output_audio_transcript.done": _transcript_done,
    "response.reasoning_summary_part.added": _summary_part_added,
    "response.reasoning_summary_part.done": _summary_part_done,
    "response.reasoning_summary_text.delta": _summary_text_delta,
    "response.reasoning_summary_text.done": _summary_text_done,
    "response.function_call_arguments.delta": _function_args_delta,
    "response.function_call_arguments.done": _function_args_done,
    "response.mcp_call_arguments.delta": _function_args_delta,
    "response.mcp_call_arguments.done": _function_args_done,
    "response.code_interpreter_call_code.delta": _code_delta,
    "response.code_interpreter_call_code.done": _code_done,
    "chat.completion.chunk": _parse_chat_chunk,
    "thread.message.created": _parse_thread_message,
    "thread.message.in_progress": _parse_thread_message,
    "thread.message.delta": _parse_thread_message_delta,
    "thread.message.completed": _parse_thread_message_done,
    "thread.message.incomplete": _parse_thread_message_done,
    "error": _parse_error,
}

# Checked in order, after exact names.
_PREFIX_PARSERS: list[tuple[str, _Parser]] = [
    ("thread.run.step.", _ignored),
    ("thread.run.", _parse_run_object),
]

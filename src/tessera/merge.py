"""Delta merge engine.

:class:`SnapshotAccumulator` applies typed events to a private
:class:`~tessera.models.Snapshot`. Mutation is confined to the
accumulator; :attr:`SnapshotAccumulator.snapshot` and :func:`merge` hand
out copies.

Merge rules by event kind:

- ``added``: build the object at its path (sparse upsert); an occupied
  slot is overlaid with the incoming non-empty fields.
- ``delta``: append to the accumulating string at the path. The path must
  already exist.
- ``done``: the authoritative value overwrites. If it disagrees with what
  was accumulated an :class:`AssemblyWarning` is recorded and logged.
- ``completed``: copy the top-level fields the payload carries; items are
  adopted only when nothing has been assembled yet.
- ``upsert``: chat choices and assistant message deltas, which have no
  separate ``added`` event, create their slot on first sight.
"""

from __future__ import annotations

import base64
import binascii
import copy
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, ClassVar, TypeVar

from pydantic import BaseModel

from tessera import sparse
from tessera.events import (
    AnnotationAdded,
    ArgumentsDelta,
    ArgumentsDone,
    AudioDataDelta,
    AudioFragment,
    ChoiceDelta,
    ContentPartAdded,
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
from tessera.exceptions import (
    EventDecodeError,
    InvariantViolation,
    PathNotFoundError,
    StreamError,
)
from tessera.models import (
    AudioContent,
    ContentPart,
    FunctionToolCall,
    Item,
    MessageItem,
    RefusalContent,
    Snapshot,
    Status,
    TextContent,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)
P = TypeVar("P", bound=ContentPart)


@dataclass
class AssemblyWarning:
    """A ``done`` value that disagreed with the accumulated deltas."""

    path: EventPath
    field: str
    accumulated: str
    authoritative: str
    event_type: str = ""


def _overlay(existing: M, incoming: M) -> M:
    """Copy the non-empty fields *incoming* was built with onto *existing*."""
    if type(existing) is not type(incoming):
        return incoming
    names = set(incoming.model_fields_set) | set(incoming.model_extra or {})
    for name in names:
        value = getattr(incoming, name)
        if value is None or value == "" or value == []:
            continue
        setattr(existing, name, copy.deepcopy(value))
    return existing


def _text_field(part: ContentPart, path: EventPath) -> str:
    if part.text_field is None:
        raise PathNotFoundError(f"{part.type} part at {path} has no text", path=path)
    return part.text_field


def _arguments_field(item: Item, path: EventPath) -> str:
    if item.arguments_field is None:
        raise PathNotFoundError(
            f"{item.type} item at {path} has no arguments", path=path
        )
    return item.arguments_field


def _join_audio(current: str | None, fragment: str) -> str:
    # Chunks are padded independently, so join the decoded bytes.
    if not current:
        return fragment
    try:
        joined = base64.b64decode(current) + base64.b64decode(fragment)
    except binascii.Error as e:
        raise EventDecodeError(f"Audio data is not valid base64: {e}") from e
    return base64.b64encode(joined).decode("ascii")


def _first_part(message: MessageItem, part_type: type[P]) -> P:
    for part in message.content:
        if isinstance(part, part_type):
            return part
    part = part_type()
    message.content.append(part)
    return part


class SnapshotAccumulator:
    """Builds one snapshot from the events of one logical stream.

    Args:
        snapshot: Optional starting state; it is copied, never mutated.
    """

    def __init__(self, snapshot: Snapshot | None = None) -> None:
        self._snapshot = (
            snapshot.model_copy(deep=True) if snapshot is not None else Snapshot()
        )
        self.warnings: list[AssemblyWarning] = []

    @property
    def snapshot(self) -> Snapshot:
        return self._snapshot.model_copy(deep=True)

    def feed(self, event: DeltaEvent) -> None:
        """Apply one event.

        Raises:
            InvariantViolation: If the event's identifier does not match the
                object it targets.
            PathNotFoundError: If a delta targets a path that does not exist.
            StreamError: If the event is a server-reported error.
        """
        if isinstance(event, ErrorEvent):
            raise StreamError(event.message, code=event.code)
        if isinstance(event, UnknownEvent):
            logger.debug(f"Ignoring unassembled event {event.event_type!r}")
            return
        if self._snapshot.is_terminal:
            logger.warning(
                f"Dropping {event.event_type or type(event).__name__} event: "
                f"snapshot {self._snapshot.id} is already "
                f"{self._snapshot.status.value}"
            )
            return

        handler = self._HANDLERS.get(type(event))
        if handler is None:
            logger.debug(f"No merge rule for {type(event).__name__}, ignoring")
            return
        handler(self, event)

    def finish(self) -> Snapshot:
        """Close the stream; a snapshot that never reported a status completes."""
        if self._snapshot.status is None:
            self._snapshot.status = Status.COMPLETED
        return self.snapshot

    # ------------------------------------------------------------------
    # Path resolution
    # ------------------------------------------------------------------

    def _index_of(self, item_id: str | None) -> int | None:
        if not item_id:
            return None
        for index, item in enumerate(self._snapshot.items):
            if item is not None and item.id == item_id:
                return index
        return None

    def _locate_item(self, path: EventPath, item_id: str | None) -> Item:
        if path.item is None:
            index = self._index_of(item_id)
            if index is None:
                raise PathNotFoundError(f"No item with id {item_id!r}", path=path)
            return self._snapshot.items[index]

        item = sparse.get(self._snapshot.items, path.item)
        if item is None:
            raise PathNotFoundError(f"No item at {path}", path=path)
        if item_id and item.id and item.id != item_id:
            raise InvariantViolation(
                f"Event for item {item_id} targets item {item.id} at {path}"
            )
        return item

    def _parts(self, item: Item, path: EventPath) -> list[Any]:
        if item.parts_field is None:
            raise PathNotFoundError(
                f"{item.type} item at {path} has no content parts", path=path
            )
        return getattr(item, item.parts_field)

    def _locate_part(self, path: EventPath, item_id: str | None) -> ContentPart:
        item = self._locate_item(path, item_id)
        part = sparse.get(self._parts(item, path), path.part)
        if part is None:
            raise PathNotFoundError(f"No content part at {path}", path=path)
        return part

    def _slot_for(self, path: EventPath, item: Item) -> int:
        if path.item is not None:
            existing = sparse.get(self._snapshot.items, path.item)
            if existing is not None and item.id and existing.id and existing.id != item.id:
                raise InvariantViolation(
                    f"Item {item.id} collides with item {existing.id} at {path}"
                )
            return path.item
        index = self._index_of(item.id)
        return len(self._snapshot.items) if index is None else index

    def _settle(
        self, event: DeltaEvent, path: EventPath, field: str,
        accumulated: str, authoritative: str,
    ) -> None:
        if not accumulated or accumulated == authoritative:
            return
        warning = AssemblyWarning(
            path=path,
            field=field,
            accumulated=accumulated,
            authoritative=authoritative,
            event_type=event.event_type,
        )
        self.warnings.append(warning)
        logger.warning(
            f"Final {field} at {path} differs from streamed deltas "
            f"({len(accumulated)} vs {len(authoritative)} chars); "
            f"keeping the final value"
        )

    # ------------------------------------------------------------------
    # added
    # ------------------------------------------------------------------

    def _on_item_added(self, event: ItemAdded) -> None:
        item = event.item.model_copy(deep=True)
        index = self._slot_for(event.path, item)
        sparse.upsert(self._snapshot.items, index, item, merge=_overlay)

    def _on_content_part_added(self, event: ContentPartAdded) -> None:
        item = self._locate_item(event.path, event.item_id)
        parts = self._parts(item, event.path)
        index = len(parts) if event.path.part is None else event.path.part
        sparse.upsert(parts, index, event.part.model_copy(deep=True), merge=_overlay)

    def _on_annotation_added(self, event: AnnotationAdded) -> None:
        part = self._locate_part(event.path, event.item_id)
        if not isinstance(part, TextContent):
            raise PathNotFoundError(
                f"{part.type} part at {event.path} cannot hold annotations",
                path=event.path,
            )
        index = len(part.annotations) if event.path.sub is None else event.path.sub
        sparse.upsert(part.annotations, index, event.annotation.model_copy(deep=True))

    # ------------------------------------------------------------------
    # delta
    # ------------------------------------------------------------------

    def _on_text_delta(self, event: TextDelta) -> None:
        part = self._locate_part(event.path, event.item_id)
        field = _text_field(part, event.path)
        setattr(part, field, (getattr(part, field) or "") + event.delta)

    def _on_audio_data_delta(self, event: AudioDataDelta) -> None:
        part = self._locate_part(event.path, event.item_id)
        if not isinstance(part, AudioContent):
            raise PathNotFoundError(
                f"{part.type} part at {event.path} holds no audio", path=event.path
            )
        part.data = _join_audio(part.data, event.delta)

    def _on_arguments_delta(self, event: ArgumentsDelta) -> None:
        item = self._locate_item(event.path, event.item_id)
        field = _arguments_field(item, event.path)
        setattr(item, field, (getattr(item, field) or "") + event.delta)

    # ------------------------------------------------------------------
    # done
    # ------------------------------------------------------------------

    def _on_text_done(self, event: TextDone) -> None:
        part = self._locate_part(event.path, event.item_id)
        field = _text_field(part, event.path)
        self._settle(event, event.path, field, getattr(part, field) or "", event.text)
        setattr(part, field, event.text)

    def _on_arguments_done(self, event: ArgumentsDone) -> None:
        item = self._locate_item(event.path, event.item_id)
        field = _arguments_field(item, event.path)
        self._settle(
            event, event.path, field, getattr(item, field) or "", event.arguments
        )
        setattr(item, field, event.arguments)

    def _on_content_part_done(self, event: ContentPartDone) -> None:
        if event.path.part is None:
            raise PathNotFoundError(f"No part index in {event.path}", path=event.path)
        item = self._locate_item(event.path, event.item_id)
        parts = self._parts(item, event.path)
        part = event.part.model_copy(deep=True)
        existing = sparse.get(parts, event.path.part)
        if existing is not None:
            self._settle_part(event, event.path, existing, part)
        sparse.upsert(parts, event.path.part, part)

    def _on_item_done(self, event: ItemDone) -> None:
        item = event.item.model_copy(deep=True)
        index = self._slot_for(event.path, item)
        existing = sparse.get(self._snapshot.items, index)
        if existing is not None and type(existing) is type(item):
            self._settle_item(event, index, existing, item)
        sparse.upsert(self._snapshot.items, index, item)

    def _settle_part(
        self, event: DeltaEvent, path: EventPath,
        existing: ContentPart, part: ContentPart,
    ) -> None:
        field = part.text_field
        if field is None or existing.text_field != field:
            return
        self._settle(event, path, field, getattr(existing, field) or "", getattr(part, field) or "")
        # Annotations may only have arrived as separate events.
        if isinstance(part, TextContent) and not part.annotations:
            part.annotations = copy.deepcopy(existing.annotations)

    def _settle_item(
        self, event: DeltaEvent, index: int, existing: Item, item: Item,
    ) -> None:
        if item.arguments_field is not None:
            field = item.arguments_field
            self._settle(
                event, EventPath(item=index), field,
                getattr(existing, field) or "", getattr(item, field) or "",
            )
        if item.parts_field is not None:
            old_parts = getattr(existing, item.parts_field)
            new_parts = getattr(item, item.parts_field)
            for part_index, (old, new) in enumerate(zip(old_parts, new_parts)):
                if old is not None and new is not None:
                    self._settle_part(
                        event, EventPath(item=index, part=part_index), old, new
                    )

    # ------------------------------------------------------------------
    # completed
    # ------------------------------------------------------------------

    def _on_snapshot_completed(self, event: SnapshotCompleted) -> None:
        incoming = event.snapshot
        current = self._snapshot
        if incoming.id and current.id and incoming.id != current.id:
            raise InvariantViolation(
                f"Attempting to merge {incoming.id} into {current.id}"
            )

        names = set(incoming.model_fields_set) | set(incoming.model_extra or {})
        for name in names - {"id", "items"}:
            setattr(current, name, copy.deepcopy(getattr(incoming, name)))
        if incoming.id and not current.id:
            current.id = incoming.id

        assembled = any(item is not None for item in current.items)
        if incoming.items and not assembled:
            current.items = copy.deepcopy(incoming.items)

    # ------------------------------------------------------------------
    # upsert
    # ------------------------------------------------------------------

    def _on_choice_delta(self, event: ChoiceDelta) -> None:
        items = self._snapshot.items
        message = sparse.get(items, event.index)
        if message is None:
            message = MessageItem(role=event.role or "assistant", status="in_progress")
            sparse.upsert(items, event.index, message)
        elif not isinstance(message, MessageItem):
            raise InvariantViolation(
                f"Choice {event.index} is a {message.type} item, not a message"
            )

        if event.role:
            message.role = event.role
        if event.content:
            text = _first_part(message, TextContent)
            text.text += event.content
        if event.refusal:
            refusal = _first_part(message, RefusalContent)
            refusal.refusal += event.refusal
        if event.audio is not None:
            self._feed_audio(message, event.audio)
        for fragment in event.tool_calls:
            self._feed_tool_call(message, fragment)
        if event.finish_reason:
            message.finish_reason = event.finish_reason
            message.status = "completed"

    def _feed_audio(self, message: MessageItem, fragment: AudioFragment) -> None:
        audio = _first_part(message, AudioContent)
        if fragment.id:
            audio.id = fragment.id
        if fragment.expires_at is not None:
            audio.expires_at = fragment.expires_at
        if fragment.transcript:
            audio.transcript += fragment.transcript
        if fragment.data:
            audio.data = _join_audio(audio.data, fragment.data)

    def _feed_tool_call(self, message: MessageItem, fragment: ToolCallFragment) -> None:
        if message.tool_calls is None:
            message.tool_calls = []
        call = sparse.get(message.tool_calls, fragment.index)
        if call is None:
            call = sparse.upsert(message.tool_calls, fragment.index, FunctionToolCall())
        if fragment.call_id is not None:
            call.call_id = fragment.call_id
            call.id = fragment.call_id
        if fragment.name is not None:
            call.name = fragment.name
        if fragment.arguments_delta is not None:
            call.arguments += fragment.arguments_delta

    def _on_message_content_delta(self, event: MessageContentDelta) -> None:
        path = EventPath()
        message = self._locate_item(path, event.item_id)
        if not isinstance(message, MessageItem):
            raise PathNotFoundError(
                f"Item {event.item_id!r} is a {message.type} item, not a message",
                path=path,
            )

        for delta in event.parts:
            part_path = EventPath(part=delta.index)
            existing = sparse.get(message.content, delta.index)
            field = delta.part.text_field
            if existing is not None and field is not None and existing.text_field == field:
                setattr(
                    existing, field,
                    (getattr(existing, field) or "") + (getattr(delta.part, field) or ""),
                )
                part = existing
            else:
                part = sparse.upsert(
                    message.content, delta.index, delta.part.model_copy(deep=True)
                )

            if delta.annotations and not isinstance(part, TextContent):
                raise PathNotFoundError(
                    f"{part.type} part at {part_path} cannot hold annotations",
                    path=part_path,
                )
            for annotation in delta.annotations:
                index = (
                    len(part.annotations) if annotation.index is None
                    else annotation.index
                )
                sparse.upsert(
                    part.annotations, index,
                    annotation.model_copy(deep=True), merge=_overlay,
                )

    _HANDLERS: ClassVar[dict[type, Callable[..., None]]] = {
        ItemAdded: _on_item_added,
        ContentPartAdded: _on_content_part_added,
        AnnotationAdded: _on_annotation_added,
        TextDelta: _on_text_delta,
        AudioDataDelta: _on_audio_data_delta,
        ArgumentsDelta: _on_arguments_delta,
        TextDone: _on_text_done,
        ArgumentsDone: _on_arguments_done,
        ContentPartDone: _on_content_part_done,
        ItemDone: _on_item_done,
        SnapshotCompleted: _on_snapshot_completed,
        ChoiceDelta: _on_choice_delta,
        MessageContentDelta: _on_message_content_delta,
    }


def merge(snapshot: Snapshot, event: DeltaEvent) -> Snapshot:
    """Return a new snapshot with *event* applied; *snapshot* is untouched."""
    accumulator = SnapshotAccumulator(snapshot)
    accumulator.feed(event)
    return accumulator._snapshot

"""Typed events: partial-update events consumed by the merge engine, and
progress events emitted by the operation runner."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar

from tessera.models import (
    Annotation,
    ContentPart,
    FunctionToolCall,
    Item,
    Snapshot,
    ToolOutput,
)


class EventKind(Enum):
    ADDED = "added"
    DELTA = "delta"
    DONE = "done"
    COMPLETED = "completed"
    UPSERT = "upsert"
    ERROR = "error"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class EventPath:
    """Location of an event's target inside a snapshot.

    ``item`` is the output/choice index; ``None`` means the target item is
    located by identifier instead. ``part`` indexes the item's content (or
    reasoning summary) parts, ``sub`` indexes annotations within a part.
    """

    item: int | None = None
    part: int | None = None
    sub: int | None = None

    def __str__(self) -> str:
        segments = [f"item={self.item}"]
        if self.part is not None:
            segments.append(f"part={self.part}")
        if self.sub is not None:
            segments.append(f"sub={self.sub}")
        return "(" + ", ".join(segments) + ")"


@dataclass
class DeltaEvent:
    """Base for all partial-update events."""

    kind: ClassVar[EventKind] = EventKind.UNKNOWN
    event_type: str = field(default="", kw_only=True)


# -------------------------------------------------------------------
# added
# -------------------------------------------------------------------


@dataclass
class ItemAdded(DeltaEvent):
    kind: ClassVar[EventKind] = EventKind.ADDED

    path: EventPath = field(default_factory=EventPath)
    item: Item = field(default_factory=Item)


@dataclass
class ContentPartAdded(DeltaEvent):
    kind: ClassVar[EventKind] = EventKind.ADDED

    path: EventPath = field(default_factory=EventPath)
    part: ContentPart = field(default_factory=ContentPart)
    item_id: str | None = None


@dataclass
class AnnotationAdded(DeltaEvent):
    kind: ClassVar[EventKind] = EventKind.ADDED

    path: EventPath = field(default_factory=EventPath)
    annotation: Annotation = field(default_factory=Annotation)
    item_id: str | None = None


# -------------------------------------------------------------------
# delta
# -------------------------------------------------------------------


@dataclass
class TextDelta(DeltaEvent):
    """Fragment for the accumulating string of a content part.

    Which string depends on the part: ``text`` for text and summary
    parts, ``refusal`` for refusals, ``transcript`` for audio.
    """

    kind: ClassVar[EventKind] = EventKind.DELTA

    path: EventPath = field(default_factory=EventPath)
    delta: str = ""
    item_id: str | None = None


@dataclass
class AudioDataDelta(DeltaEvent):
    """Base64 fragment of an audio part's data."""

    kind: ClassVar[EventKind] = EventKind.DELTA

    path: EventPath = field(default_factory=EventPath)
    delta: str = ""
    item_id: str | None = None


@dataclass
class ArgumentsDelta(DeltaEvent):
    """Fragment of a tool call's arguments (or code, for code interpreter)."""

    kind: ClassVar[EventKind] = EventKind.DELTA

    path: EventPath = field(default_factory=EventPath)
    delta: str = ""
    item_id: str | None = None


# -------------------------------------------------------------------
# done
# -------------------------------------------------------------------


@dataclass
class TextDone(DeltaEvent):
    kind: ClassVar[EventKind] = EventKind.DONE

    path: EventPath = field(default_factory=EventPath)
    text: str = ""
    item_id: str | None = None


@dataclass
class ArgumentsDone(DeltaEvent):
    kind: ClassVar[EventKind] = EventKind.DONE

    path: EventPath = field(default_factory=EventPath)
    arguments: str = ""
    item_id: str | None = None


@dataclass
class ContentPartDone(DeltaEvent):
    kind: ClassVar[EventKind] = EventKind.DONE

    path: EventPath = field(default_factory=EventPath)
    part: ContentPart = field(default_factory=ContentPart)
    item_id: str | None = None


@dataclass
class ItemDone(DeltaEvent):
    kind: ClassVar[EventKind] = EventKind.DONE

    path: EventPath = field(default_factory=EventPath)
    item: Item = field(default_factory=Item)


# -------------------------------------------------------------------
# completed / upsert / error / unknown
# -------------------------------------------------------------------


@dataclass
class SnapshotCompleted(DeltaEvent):
    """A whole top-level object; only the fields it carries are applied."""

    kind: ClassVar[EventKind] = EventKind.COMPLETED

    snapshot: Snapshot = field(default_factory=Snapshot)


@dataclass
class ToolCallFragment:
    """A fragment of a chat tool call, addressed by its own index."""

    index: int
    call_id: str | None = None
    name: str | None = None
    arguments_delta: str | None = None


@dataclass
class AudioFragment:
    """A fragment of a chat choice's audio output; ``data`` is base64."""

    id: str | None = None
    transcript: str | None = None
    data: str | None = None
    expires_at: int | None = None


@dataclass
class ChoiceDelta(DeltaEvent):
    """One choice of a chat completion chunk."""

    kind: ClassVar[EventKind] = EventKind.UPSERT

    index: int = 0
    role: str | None = None
    content: str | None = None
    refusal: str | None = None
    tool_calls: list[ToolCallFragment] = field(default_factory=list)
    audio: AudioFragment | None = None
    finish_reason: str | None = None


@dataclass
class ContentPartDelta:
    index: int
    part: ContentPart
    annotations: list[Annotation] = field(default_factory=list)


@dataclass
class MessageContentDelta(DeltaEvent):
    """Content-part fragments for a message located by identifier."""

    kind: ClassVar[EventKind] = EventKind.UPSERT

    item_id: str = ""
    parts: list[ContentPartDelta] = field(default_factory=list)


@dataclass
class ErrorEvent(DeltaEvent):
    kind: ClassVar[EventKind] = EventKind.ERROR

    message: str = ""
    code: str | None = None


@dataclass
class UnknownEvent(DeltaEvent):
    """An event this package does not assemble; carried for observers."""

    kind: ClassVar[EventKind] = EventKind.UNKNOWN

    data: Any = None


# -------------------------------------------------------------------
# Runner events
# -------------------------------------------------------------------


@dataclass
class RunnerEvent:
    """Base for events yielded by :meth:`tessera.runner.Runner.iter`."""


@dataclass
class SnapshotEvent(RunnerEvent):
    """A freshly fetched snapshot that left the pending states."""

    snapshot: Snapshot = field(default_factory=Snapshot)


@dataclass
class ToolOutputsEvent(RunnerEvent):
    """Tool outputs resolved for one required action, before submission."""

    tool_calls: list[FunctionToolCall] = field(default_factory=list)
    outputs: list[ToolOutput] = field(default_factory=list)


@dataclass
class RunCompleteEvent(RunnerEvent):
    """Final event: always the last event yielded."""

    snapshot: Snapshot = field(default_factory=Snapshot)

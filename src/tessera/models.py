"""Aggregate snapshot object graph.

A :class:`Snapshot` is the root object being reconstructed from a stream
(a response, a chat completion or a run). It owns an ordered list of
:class:`Item` variants; message items own :class:`ContentPart` variants,
and text parts own :class:`Annotation` entries. ``None`` entries in any of
these lists are placeholders left by out-of-order inserts.

Variants are plain subclasses tagged by their ``type`` field. Raw payloads
go through :func:`parse_item` / :func:`parse_content_part`, which pick the
subclass from the discriminant and fall back to the base class for types
this package does not know yet.
"""

import json
from collections import Counter
from collections.abc import Iterable
from enum import Enum
from typing import Any, ClassVar

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SerializeAsAny,
    field_serializer,
    field_validator,
    model_validator,
)

from tessera import sparse
from tessera.exceptions import ToolOutputMismatchError


class Status(Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    REQUIRES_ACTION = "requires_action"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    INCOMPLETE = "incomplete"


TERMINAL_STATUSES = frozenset({
    Status.COMPLETED,
    Status.FAILED,
    Status.CANCELLED,
    Status.EXPIRED,
    Status.INCOMPLETE,
})
PENDING_STATUSES = frozenset({Status.QUEUED, Status.IN_PROGRESS})


class _Model(BaseModel):
    model_config = ConfigDict(extra="allow")


# ---------------------------------------------------------------------------
# Annotations and content parts
# ---------------------------------------------------------------------------


class Annotation(_Model):
    type: str = "file_citation"
    index: int | None = None
    text: str | None = None
    file_id: str | None = None
    filename: str | None = None
    url: str | None = None
    title: str | None = None
    start_index: int | None = None
    end_index: int | None = None

    @model_validator(mode="before")
    @classmethod
    def _flatten_nested_reference(cls, data: Any) -> Any:
        # {"type": "file_citation", "file_citation": {"file_id": ...}}
        if isinstance(data, dict):
            kind = data.get("type")
            nested = data.get(kind) if isinstance(kind, str) else None
            if isinstance(nested, dict):
                data = {k: v for k, v in data.items() if k != kind}
                data = {**nested, **data}
        return data


class ContentPart(_Model):
    type: str = "unknown"

    # Name of the string field that text deltas append to, if any.
    text_field: ClassVar[str | None] = None


class TextContent(ContentPart):
    type: str = "output_text"
    text: str = ""
    annotations: list[Annotation | None] = Field(default_factory=list)

    text_field: ClassVar[str | None] = "text"

    @model_validator(mode="before")
    @classmethod
    def _flatten_text_value(cls, data: Any) -> Any:
        # {"type": "text", "text": {"value": "...", "annotations": [...]}}
        if isinstance(data, dict) and isinstance(data.get("text"), dict):
            text = data["text"]
            data = {**data, "text": text.get("value") or ""}
            if "annotations" in text:
                data["annotations"] = text["annotations"]
        return data

    @field_validator("annotations", mode="before")
    @classmethod
    def _default_annotations(cls, value: Any) -> Any:
        return [] if value is None else value


class RefusalContent(ContentPart):
    type: str = "refusal"
    refusal: str = ""

    text_field: ClassVar[str | None] = "refusal"


class AudioContent(ContentPart):
    type: str = "output_audio"
    id: str | None = None
    expires_at: int | None = None
    data: str | None = None
    format: str | None = None
    transcript: str = ""

    text_field: ClassVar[str | None] = "transcript"


class ImageContent(ContentPart):
    type: str = "input_image"
    file_id: str | None = None
    image_url: str | None = None
    detail: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _flatten_image(cls, data: Any) -> Any:
        if isinstance(data, dict):
            for key in ("image_file", "image_url"):
                nested = data.get(key)
                if isinstance(nested, dict):
                    data = {**data, **nested}
                    if key == "image_url":
                        data["image_url"] = nested.get("url")
                    else:
                        data.pop("image_file")
        return data


class FileContent(ContentPart):
    type: str = "input_file"
    file_id: str | None = None
    filename: str | None = None
    file_data: str | None = None


class SummaryText(ContentPart):
    type: str = "summary_text"
    text: str = ""

    text_field: ClassVar[str | None] = "text"


_CONTENT_PART_TYPES: dict[str, type[ContentPart]] = {
    "output_text": TextContent,
    "input_text": TextContent,
    "text": TextContent,
    "refusal": RefusalContent,
    "output_audio": AudioContent,
    "input_audio": AudioContent,
    "audio": AudioContent,
    "input_image": ImageContent,
    "output_image": ImageContent,
    "image_file": ImageContent,
    "image_url": ImageContent,
    "input_file": FileContent,
    "file": FileContent,
    "summary_text": SummaryText,
    "reasoning_text": SummaryText,
}


def parse_content_part(raw: Any) -> ContentPart:
    if isinstance(raw, ContentPart):
        return raw
    if not isinstance(raw, dict):
        raise ValueError(f"content part must be an object, got {type(raw).__name__}")
    part_type = _CONTENT_PART_TYPES.get(raw.get("type") or "", ContentPart)
    return part_type.model_validate(raw)


def _parse_parts(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        return [TextContent(text=value)]
    if isinstance(value, list):
        return [None if p is None else parse_content_part(p) for p in value]
    return value


AnyContentPart = SerializeAsAny[ContentPart]


# ---------------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------------


class Item(_Model):
    type: str = "unknown"
    id: str | None = None
    status: str | None = None

    # Name of the list field holding this item's content parts, if any.
    parts_field: ClassVar[str | None] = None
    # Name of the string field that argument deltas append to, if any.
    arguments_field: ClassVar[str | None] = None


class FunctionToolCall(Item):
    type: str = "function_call"
    call_id: str | None = None
    name: str = ""
    arguments: str = ""

    arguments_field: ClassVar[str | None] = "arguments"

    @model_validator(mode="before")
    @classmethod
    def _flatten_function(cls, data: Any) -> Any:
        # Chat and Assistants shape: {"id", "type": "function", "function": {...}}
        if isinstance(data, dict) and isinstance(data.get("function"), dict):
            function = data["function"]
            data = {k: v for k, v in data.items() if k != "function"}
            data["type"] = "function_call"
            data.setdefault("call_id", data.get("id"))
            data.setdefault("name", function.get("name") or "")
            data.setdefault("arguments", function.get("arguments") or "")
        if isinstance(data, dict):
            arguments = data.get("arguments")
            if arguments is not None and not isinstance(arguments, str):
                data = {**data, "arguments": json.dumps(arguments)}
        return data

    @property
    def tool_call_id(self) -> str | None:
        """Identifier a :class:`ToolOutput` must echo back for this call."""
        return self.call_id or self.id


class CodeInterpreterToolCall(Item):
    type: str = "code_interpreter_call"
    code: str = ""
    container_id: str | None = None
    outputs: list[Any] | None = None

    arguments_field: ClassVar[str | None] = "code"


class FileSearchToolCall(Item):
    type: str = "file_search_call"
    queries: list[str] = Field(default_factory=list)
    results: list[Any] | None = None


class WebSearchToolCall(Item):
    type: str = "web_search_call"
    action: dict[str, Any] | None = None


class ComputerToolCall(Item):
    type: str = "computer_call"
    call_id: str | None = None
    action: dict[str, Any] | None = None
    pending_safety_checks: list[Any] = Field(default_factory=list)


class LocalShellCall(Item):
    type: str = "local_shell_call"
    call_id: str | None = None
    action: dict[str, Any] | None = None


class McpToolCall(Item):
    type: str = "mcp_call"
    name: str = ""
    server_label: str | None = None
    arguments: str = ""
    output: str | None = None
    error: str | None = None

    arguments_field: ClassVar[str | None] = "arguments"


class ReasoningItem(Item):
    type: str = "reasoning"
    summary: list[AnyContentPart | None] = Field(default_factory=list)
    encrypted_content: str | None = None

    parts_field: ClassVar[str | None] = "summary"

    @field_validator("summary", mode="before")
    @classmethod
    def _parse_summary(cls, value: Any) -> Any:
        return _parse_parts(value)


class ItemReference(Item):
    type: str = "item_reference"


class MessageItem(Item):
    type: str = "message"
    role: str | None = None
    content: list[AnyContentPart | None] = Field(default_factory=list)
    tool_calls: list[FunctionToolCall | None] | None = None
    finish_reason: str | None = None

    parts_field: ClassVar[str | None] = "content"

    @field_validator("content", mode="before")
    @classmethod
    def _parse_content(cls, value: Any) -> Any:
        return _parse_parts(value)

    @property
    def text(self) -> str:
        return "".join(
            part.text for part in self.content if isinstance(part, TextContent)
        )


_ITEM_TYPES: dict[str, type[Item]] = {
    "message": MessageItem,
    "function_call": FunctionToolCall,
    "function": FunctionToolCall,
    "code_interpreter_call": CodeInterpreterToolCall,
    "file_search_call": FileSearchToolCall,
    "web_search_call": WebSearchToolCall,
    "computer_call": ComputerToolCall,
    "local_shell_call": LocalShellCall,
    "mcp_call": McpToolCall,
    "reasoning": ReasoningItem,
    "item_reference": ItemReference,
}


def parse_item(raw: Any) -> Item:
    if isinstance(raw, Item):
        return raw
    if not isinstance(raw, dict):
        raise ValueError(f"item must be an object, got {type(raw).__name__}")
    if raw.get("object") == "thread.message":
        return MessageItem.model_validate({**raw, "type": "message"})
    item_type = _ITEM_TYPES.get(raw.get("type") or "", Item)
    return item_type.model_validate(raw)


AnyItem = SerializeAsAny[Item]


# ---------------------------------------------------------------------------
# Usage, required action and tool outputs
# ---------------------------------------------------------------------------


class Usage(_Model):
    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None

    @model_validator(mode="before")
    @classmethod
    def _chat_token_names(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            if "prompt_tokens" in data:
                data.setdefault("input_tokens", data.pop("prompt_tokens"))
            if "completion_tokens" in data:
                data.setdefault("output_tokens", data.pop("completion_tokens"))
        return data


class RequiredAction(_Model):
    """Tool calls a paused operation is blocked on."""

    type: str = "submit_tool_outputs"
    tool_calls: list[FunctionToolCall] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _unwrap_submit_tool_outputs(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("submit_tool_outputs"), dict):
            nested = data["submit_tool_outputs"]
            data = {k: v for k, v in data.items() if k != "submit_tool_outputs"}
            data["tool_calls"] = nested.get("tool_calls") or []
        return data


class ToolOutput(BaseModel):
    tool_call_id: str
    output: str


class SubmitToolOutputsRequest(BaseModel):
    tool_outputs: list[ToolOutput]

    @classmethod
    def for_action(
        cls, action: RequiredAction, outputs: Iterable[ToolOutput]
    ) -> "SubmitToolOutputsRequest":
        """Build a submission, checking outputs pair one-to-one with *action*.

        Raises:
            ToolOutputMismatchError: If any required call has no output, or
                an output is duplicated or names a call not in *action*.
        """
        outputs = list(outputs)
        expected = [call.tool_call_id for call in action.tool_calls]
        seen = Counter(o.tool_call_id for o in outputs)

        problems = []
        missing = [call_id for call_id in expected if call_id not in seen]
        if missing:
            problems.append(f"missing outputs for {missing}")
        duplicates = sorted(call_id for call_id, n in seen.items() if n > 1)
        if duplicates:
            problems.append(f"duplicate outputs for {duplicates}")
        unknown = sorted(set(seen) - set(expected))
        if unknown:
            problems.append(f"outputs for unknown tool calls {unknown}")
        if problems:
            raise ToolOutputMismatchError("; ".join(problems))
        return cls(tool_outputs=outputs)


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------


def _choices_to_items(choices: list[Any]) -> list[Item | None]:
    items: list[Item | None] = []
    for position, choice in enumerate(choices or []):
        index = choice.get("index", position)
        message = dict(choice.get("message") or choice.get("delta") or {})
        refusal = message.pop("refusal", None)
        audio = message.pop("audio", None)
        item = MessageItem.model_validate({
            **message,
            "finish_reason": choice.get("finish_reason"),
            "status": "completed" if choice.get("finish_reason") else None,
        })
        if refusal:
            item.content.append(RefusalContent(refusal=refusal))
        if audio:
            item.content.append(AudioContent.model_validate(audio))
        sparse.upsert(items, index, item)
    return items


class Snapshot(_Model):
    """The aggregate being assembled: a response, chat completion or run."""

    id: str | None = None
    object: str | None = None
    status: Status | None = None
    model: str | None = None
    created_at: int | None = None
    completed_at: int | None = None
    thread_id: str | None = None
    items: list[AnyItem | None] = Field(default_factory=list)
    usage: Usage | None = None
    metadata: dict[str, Any] | None = None
    required_action: RequiredAction | None = None
    error: dict[str, Any] | None = None

    @field_validator("items", mode="before")
    @classmethod
    def _parse_items(cls, value: Any) -> Any:
        if value is None:
            return []
        return [None if i is None else parse_item(i) for i in value]

    @field_validator("status", mode="before")
    @classmethod
    def _empty_status(cls, value: Any) -> Any:
        return None if value == "" else value

    @field_serializer("status")
    def serialize_status(self, status: Status | None, _info) -> str | None:
        return None if status is None else status.value

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Snapshot":
        """Build a snapshot from a Responses, Chat Completions or Runs object."""
        data = dict(payload)
        if "output" in data:
            data["items"] = data.pop("output")
        elif "choices" in data:
            data["items"] = _choices_to_items(data.pop("choices"))
        if "created" in data and "created_at" not in data:
            data["created_at"] = data.pop("created")
        if "last_error" in data and "error" not in data:
            data["error"] = data.pop("last_error")
        data.pop("output_text", None)
        return cls.model_validate(data)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def output_text(self) -> str:
        """Concatenated text of every message item, in item order."""
        return "".join(
            item.text for item in self.items if isinstance(item, MessageItem)
        )

import json
from typing import Any

import pytest

from tessera.provider import ModelProvider
from tessera.sse import DONE_SENTINEL, format_frame
from tessera.tools import tool


# ---------------------------------------------------------------------------
# Mock provider
# ---------------------------------------------------------------------------

class MockProvider(ModelProvider):
    """Provider that returns pre-queued payloads. No network calls.

    ``responses`` feeds every JSON-returning method in call order;
    ``streams`` feeds ``stream_lines``.
    """

    def __init__(self):
        self.responses: list[dict] = []
        self.streams: list[list[str]] = []
        self.call_log: list[dict] = []

    def _next(self, method: str, **kwargs) -> dict:
        self.call_log.append({"method": method, **kwargs})
        return self.responses.pop(0)

    async def stream_lines(self, path, body):
        self.call_log.append({"method": "stream_lines", "path": path, "body": body})
        for line in self.streams.pop(0):
            yield line

    async def retrieve_response(self, response_id):
        return self._next("retrieve_response", response_id=response_id)

    async def cancel_response(self, response_id):
        return self._next("cancel_response", response_id=response_id)

    async def retrieve_run(self, thread_id, run_id):
        return self._next("retrieve_run", thread_id=thread_id, run_id=run_id)

    async def submit_tool_outputs(self, thread_id, run_id, tool_outputs):
        return self._next(
            "submit_tool_outputs",
            thread_id=thread_id, run_id=run_id, tool_outputs=tool_outputs,
        )

    async def cancel_run(self, thread_id, run_id):
        return self._next("cancel_run", thread_id=thread_id, run_id=run_id)

    def methods(self) -> list[str]:
        return [c["method"] for c in self.call_log]


# ---------------------------------------------------------------------------
# Payload and SSE builders
# ---------------------------------------------------------------------------

def make_run(
    status: str,
    run_id: str = "run_1",
    thread_id: str = "thread_1",
    tool_calls: list[tuple[str, dict | str, str]] | None = None,
) -> dict:
    """Fake run object. *tool_calls* items are ``(name, args, call_id)``."""
    run: dict[str, Any] = {
        "id": run_id,
        "object": "thread.run",
        "thread_id": thread_id,
        "status": status,
        "model": "mock-model",
    }
    if tool_calls is not None:
        run["required_action"] = {
            "type": "submit_tool_outputs",
            "submit_tool_outputs": {
                "tool_calls": [
                    {
                        "id": call_id,
                        "type": "function",
                        "function": {
                            "name": name,
                            "arguments": args if isinstance(args, str) else json.dumps(args),
                        },
                    }
                    for name, args, call_id in tool_calls
                ],
            },
        }
    return run


def make_response(status: str, response_id: str = "resp_1", **extra) -> dict:
    """Fake Responses API object."""
    return {
        "id": response_id,
        "object": "response",
        "status": status,
        "model": "mock-model",
        "output": [],
        **extra,
    }


def sse_lines(*frames: tuple[str | None, Any], done: bool = True) -> list[str]:
    """Encode ``(event_type, data)`` pairs as the lines of an SSE stream."""
    lines: list[str] = []
    for event_type, data in frames:
        lines.extend(format_frame(event_type, data).split("\n")[:-1])
    if done:
        lines.extend([f"data: {DONE_SENTINEL}", ""])
    return lines


async def aiter_lines(lines: list[str]):
    for line in lines:
        yield line


def chat_chunk(
    content: str | None = None,
    *,
    index: int = 0,
    role: str | None = None,
    tool_calls: list[dict] | None = None,
    finish_reason: str | None = None,
    chunk_id: str = "chatcmpl_1",
) -> tuple[None, dict]:
    """One ``chat.completion.chunk`` frame with a single choice."""
    delta: dict[str, Any] = {}
    if role is not None:
        delta["role"] = role
    if content is not None:
        delta["content"] = content
    if tool_calls is not None:
        delta["tool_calls"] = tool_calls
    return None, {
        "id": chunk_id,
        "object": "chat.completion.chunk",
        "created": 1700000000,
        "model": "mock-model",
        "choices": [{"index": index, "delta": delta, "finish_reason": finish_reason}],
    }


def response_text_frames(
    fragments: list[str],
    *,
    response_id: str = "resp_1",
    item_id: str = "msg_1",
    with_done: bool = True,
) -> list[tuple[str, dict]]:
    """A complete Responses API stream producing one text message."""
    text = "".join(fragments)
    base = {"item_id": item_id, "output_index": 0, "content_index": 0}
    frames: list[tuple[str, dict]] = [
        ("response.created", {
            "type": "response.created",
            "response": make_response("in_progress", response_id),
        }),
        ("response.output_item.added", {
            "type": "response.output_item.added",
            "output_index": 0,
            "item": {
                "type": "message", "id": item_id, "status": "in_progress",
                "role": "assistant", "content": [],
            },
        }),
        ("response.content_part.added", {
            "type": "response.content_part.added", **base,
            "part": {"type": "output_text", "text": "", "annotations": []},
        }),
    ]
    for fragment in fragments:
        frames.append(("response.output_text.delta", {
            "type": "response.output_text.delta", **base, "delta": fragment,
        }))
    if with_done:
        frames.append(("response.output_text.done", {
            "type": "response.output_text.done", **base, "text": text,
        }))
    frames.append(("response.completed", {
        "type": "response.completed",
        "response": make_response(
            "completed", response_id,
            usage={"input_tokens": 5, "output_tokens": 3, "total_tokens": 8},
        ),
    }))
    return frames


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_provider():
    return MockProvider()


@pytest.fixture
def sample_tool():
    @tool
    def greet(name: str):
        """Say hello."""
        return f"Hello {name}"
    return greet


@pytest.fixture
def sample_async_tool():
    @tool
    async def async_greet(name: str):
        """Async greeting."""
        return f"Hello async {name}"
    return async_greet


@pytest.fixture
def failing_tool():
    @tool
    def explode(reason: str):
        """Always fails."""
        raise RuntimeError(reason)
    return explode

"""End-to-end stream assembly: SSE lines in, finished snapshot out."""

import pytest

from tessera.events import SnapshotCompleted, TextDelta
from tessera.exceptions import EventDecodeError, PathNotFoundError, StreamError
from tessera.models import FunctionToolCall, MessageItem, Status
from tessera.streaming import SnapshotStream, assemble

from tests.conftest import (
    MockProvider,
    aiter_lines,
    chat_chunk,
    make_run,
    response_text_frames,
    sse_lines,
)


# ---------------------------------------------------------------------------
# Responses API
# ---------------------------------------------------------------------------

class TestResponsesStream:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("with_done", [True, False], ids=["done", "no-done"])
    async def test_text_fragments_assemble(self, with_done):
        lines = sse_lines(*response_text_frames(["Hel", "lo", "!"], with_done=with_done))
        snapshot = await assemble(aiter_lines(lines))

        assert snapshot.id == "resp_1"
        assert snapshot.status is Status.COMPLETED
        assert snapshot.output_text == "Hello!"
        assert snapshot.usage.total_tokens == 8

    @pytest.mark.asyncio
    async def test_text_deltas_yield_fragments(self):
        stream = SnapshotStream(aiter_lines(sse_lines(*response_text_frames(["a", "b"]))))
        fragments = [t async for t in stream.text_deltas()]
        assert fragments == ["a", "b"]
        assert (await stream.until_done()).output_text == "ab"

    @pytest.mark.asyncio
    async def test_events_are_exposed_while_merging(self):
        stream = SnapshotStream(aiter_lines(sse_lines(*response_text_frames(["x"]))))
        seen = []
        async for event in stream:
            seen.append(type(event))
            if isinstance(event, TextDelta):
                assert stream.snapshot.output_text == "x"
        assert seen[0] is SnapshotCompleted
        assert seen[-1] is SnapshotCompleted

    @pytest.mark.asyncio
    async def test_function_call_and_message_interleaved(self):
        lines = sse_lines(
            ("response.created", {"response": {"id": "resp_2", "status": "in_progress"}}),
            ("response.output_item.added", {
                "output_index": 1,
                "item": {"type": "function_call", "id": "fc_1", "call_id": "call_1",
                         "name": "lookup", "arguments": ""},
            }),
            ("response.output_item.added", {
                "output_index": 0,
                "item": {"type": "message", "id": "msg_1", "role": "assistant",
                         "content": []},
            }),
            ("response.function_call_arguments.delta", {
                "output_index": 1, "item_id": "fc_1", "delta": '{"q": ',
            }),
            ("response.content_part.added", {
                "output_index": 0, "content_index": 0, "item_id": "msg_1",
                "part": {"type": "output_text", "text": ""},
            }),
            ("response.output_text.delta", {
                "output_index": 0, "content_index": 0, "item_id": "msg_1",
                "delta": "Looking",
            }),
            ("response.function_call_arguments.delta", {
                "output_index": 1, "item_id": "fc_1", "delta": '"tea"}',
            }),
            ("response.completed", {
                "response": {"id": "resp_2", "status": "completed"},
            }),
        )
        snapshot = await assemble(aiter_lines(lines))

        message, call = snapshot.items
        assert isinstance(message, MessageItem)
        assert message.text == "Looking"
        assert isinstance(call, FunctionToolCall)
        assert call.arguments == '{"q": "tea"}'

    @pytest.mark.asyncio
    async def test_error_event_aborts(self):
        lines = sse_lines(
            *response_text_frames(["a"])[:3],
            ("error", {"type": "error", "message": "overloaded", "code": "server_error"}),
        )
        stream = SnapshotStream(aiter_lines(lines))
        with pytest.raises(StreamError, match="overloaded"):
            await stream.until_done()

    @pytest.mark.asyncio
    async def test_error_discards_partial_snapshot(self):
        lines = sse_lines(
            *response_text_frames(["partial"])[:4],
            ("response.output_text.delta", {
                "output_index": 5, "content_index": 0, "delta": "lost",
            }),
        )
        stream = SnapshotStream(aiter_lines(lines))

        with pytest.raises(PathNotFoundError):
            async for _ in stream:
                pass

        with pytest.raises(PathNotFoundError):
            stream.snapshot
        with pytest.raises(PathNotFoundError):
            await stream.until_done()

    @pytest.mark.asyncio
    async def test_malformed_frame_aborts(self):
        lines = ["event: response.created", "data: {broken", ""]
        with pytest.raises(EventDecodeError):
            await assemble(aiter_lines(lines))


# ---------------------------------------------------------------------------
# Chat Completions
# ---------------------------------------------------------------------------

class TestChatStream:
    @pytest.mark.asyncio
    async def test_filter_only_frames_give_empty_completed_snapshot(self):
        placeholder = (None, {"id": "", "object": "", "choices": [],
                              "prompt_filter_results": [{"prompt_index": 0}]})
        snapshot = await assemble(aiter_lines(sse_lines(placeholder, placeholder)))

        assert snapshot.status is Status.COMPLETED
        assert snapshot.items == []
        assert snapshot.id is None

    @pytest.mark.asyncio
    async def test_content_and_usage(self):
        usage_chunk = (None, {
            "id": "chatcmpl_1", "object": "chat.completion.chunk", "choices": [],
            "usage": {"prompt_tokens": 4, "completion_tokens": 3, "total_tokens": 7},
        })
        lines = sse_lines(
            chat_chunk("Hel", role="assistant"),
            chat_chunk("lo"),
            chat_chunk("!", finish_reason="stop"),
            usage_chunk,
        )
        snapshot = await assemble(aiter_lines(lines))

        assert snapshot.id == "chatcmpl_1"
        assert snapshot.object == "chat.completion"
        assert snapshot.status is Status.COMPLETED
        assert snapshot.output_text == "Hello!"
        assert snapshot.items[0].finish_reason == "stop"
        assert snapshot.usage.input_tokens == 4

    @pytest.mark.asyncio
    async def test_parallel_tool_calls(self):
        lines = sse_lines(
            chat_chunk(role="assistant", tool_calls=[
                {"index": 0, "id": "call_a", "type": "function",
                 "function": {"name": "weather", "arguments": ""}},
                {"index": 1, "id": "call_b", "type": "function",
                 "function": {"name": "time", "arguments": ""}},
            ]),
            chat_chunk(tool_calls=[{"index": 1, "function": {"arguments": '{"tz": "UTC"}'}}]),
            chat_chunk(tool_calls=[{"index": 0, "function": {"arguments": '{"city": "Oslo"}'}}]),
            chat_chunk(finish_reason="tool_calls"),
        )
        snapshot = await assemble(aiter_lines(lines))

        calls = snapshot.items[0].tool_calls
        assert [(c.tool_call_id, c.name, c.arguments) for c in calls] == [
            ("call_a", "weather", '{"city": "Oslo"}'),
            ("call_b", "time", '{"tz": "UTC"}'),
        ]

    @pytest.mark.asyncio
    async def test_connection_close_without_done(self):
        lines = sse_lines(chat_chunk("partial", role="assistant"), done=False)
        snapshot = await assemble(aiter_lines(lines))
        assert snapshot.output_text == "partial"
        assert snapshot.status is Status.COMPLETED


# ---------------------------------------------------------------------------
# Assistants runs
# ---------------------------------------------------------------------------

class TestRunStream:
    @pytest.mark.asyncio
    async def test_run_with_message(self):
        message = {
            "id": "msg_1", "object": "thread.message", "role": "assistant",
            "thread_id": "thread_1", "run_id": "run_1", "content": [],
            "status": "in_progress",
        }
        lines = sse_lines(
            ("thread.run.created", make_run("queued")),
            ("thread.run.in_progress", make_run("in_progress")),
            ("thread.run.step.created", {"id": "step_1", "object": "thread.run.step"}),
            ("thread.message.created", message),
            ("thread.message.delta", {"id": "msg_1", "object": "thread.message.delta",
                                      "delta": {"content": [
                                          {"index": 0, "type": "text",
                                           "text": {"value": "Hi "}}]}}),
            ("thread.message.delta", {"id": "msg_1", "object": "thread.message.delta",
                                      "delta": {"content": [
                                          {"index": 0, "type": "text",
                                           "text": {"value": "there"}}]}}),
            ("thread.message.completed", {
                **message, "status": "completed",
                "content": [{"type": "text", "text": {"value": "Hi there",
                                                      "annotations": []}}],
            }),
            ("thread.run.completed", make_run("completed")),
        )
        stream = SnapshotStream(aiter_lines(lines))
        snapshot = await stream.until_done()

        assert snapshot.id == "run_1"
        assert snapshot.thread_id == "thread_1"
        assert snapshot.status is Status.COMPLETED
        assert snapshot.output_text == "Hi there"
        assert stream.warnings == []

    @pytest.mark.asyncio
    async def test_run_stream_pauses_for_tools(self):
        lines = sse_lines(
            ("thread.run.created", make_run("queued")),
            ("thread.run.requires_action", make_run(
                "requires_action", tool_calls=[("weather", {"city": "Oslo"}, "call_1")],
            )),
        )
        snapshot = await assemble(aiter_lines(lines))

        assert snapshot.status is Status.REQUIRES_ACTION
        assert snapshot.required_action.tool_calls[0].name == "weather"


@pytest.mark.asyncio
async def test_stream_from_provider():
    provider = MockProvider()
    provider.streams = [sse_lines(*response_text_frames(["ok"]))]

    snapshot = await assemble(
        provider.stream_lines("/responses", {"model": "m", "input": "hi"}),
        source="/responses",
    )

    assert snapshot.output_text == "ok"
    assert provider.methods() == ["stream_lines"]


@pytest.mark.asyncio
async def test_finished_stream_yields_nothing_more():
    stream = SnapshotStream(aiter_lines(sse_lines(chat_chunk("x"))))
    await stream.until_done()
    assert (await stream.until_done()).output_text == "x"
    assert [e async for e in stream] == []


# ---------------------------------------------------------------------------
# Partial consumption
# ---------------------------------------------------------------------------

class TestPartialConsumption:
    @pytest.mark.asyncio
    async def test_until_done_after_breaking_out_of_text_deltas(self):
        stream = SnapshotStream(
            aiter_lines(sse_lines(*response_text_frames(["one ", "two ", "three"])))
        )
        async for fragment in stream.text_deltas():
            assert fragment == "one "
            break

        snapshot = await stream.until_done()

        assert snapshot.output_text == "one two three"
        assert snapshot.status is Status.COMPLETED

    @pytest.mark.asyncio
    async def test_iteration_resumes_where_it_stopped(self):
        stream = SnapshotStream(aiter_lines(sse_lines(*response_text_frames(["a", "b"]))))
        first = []
        async for event in stream:
            first.append(event)
            if isinstance(event, TextDelta):
                break
        rest = [e async for e in stream]

        deltas = [e.delta for e in first + rest if isinstance(e, TextDelta)]
        assert deltas == ["a", "b"]
        assert stream.snapshot.output_text == "ab"

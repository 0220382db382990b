from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from unittest.mock import AsyncMock

import pytest

from tessera.provider import ModelProvider, OpenAIProvider


# ---------------------------------------------------------------------------
# Fake OpenAI client objects
# ---------------------------------------------------------------------------

@dataclass
class FakeObject:
    """Stands in for an SDK model: only ``to_dict`` is used."""

    payload: dict = field(default_factory=dict)

    def to_dict(self):
        return dict(self.payload)


class FakeStreamedResponse:
    def __init__(self, lines):
        self.lines = lines

    async def iter_lines(self):
        for line in self.lines:
            yield line


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------

def test_openai_provider_reads_env(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-from-env")
    monkeypatch.setenv("OPENAI_BASE_URL", "http://localhost:8000/v1")
    p = OpenAIProvider()
    assert p.client.api_key == "sk-from-env"
    assert str(p.client.base_url).startswith("http://localhost:8000/v1")


def test_explicit_arguments_win(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-from-env")
    p = OpenAIProvider(api_key="sk-explicit", max_retries=1)
    assert p.client.api_key == "sk-explicit"
    assert p.client.max_retries == 1


@pytest.mark.asyncio
async def test_base_provider_is_abstract():
    with pytest.raises(NotImplementedError):
        await ModelProvider().retrieve_run("thread_1", "run_1")


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

class TestStreamLines:
    @pytest.mark.asyncio
    async def test_yields_raw_lines(self, monkeypatch):
        provider = OpenAIProvider(api_key="test-key")
        requests = []

        @asynccontextmanager
        async def fake_request(path, body):
            requests.append((path, body))
            yield FakeStreamedResponse(["data: {}", "", "data: [DONE]", ""])

        monkeypatch.setattr(provider, "_streaming_request", fake_request)

        body = {"model": "m", "input": "hi"}
        lines = [line async for line in provider.stream_lines("/responses", body)]

        assert lines == ["data: {}", "", "data: [DONE]", ""]
        assert requests == [("/responses", body)]

    def test_unsupported_path(self):
        provider = OpenAIProvider(api_key="test-key")
        with pytest.raises(ValueError, match="/files"):
            provider._streaming_request("/files", {})

    def test_run_path_routes_thread_id(self, monkeypatch):
        provider = OpenAIProvider(api_key="test-key")
        calls = []
        runs = provider.client.beta.threads.runs.with_streaming_response
        monkeypatch.setattr(
            runs, "create", lambda **kwargs: calls.append(kwargs) or "ctx",
        )

        result = provider._streaming_request(
            "/threads/thread_9/runs", {"assistant_id": "asst_1"}
        )

        assert result == "ctx"
        assert calls == [
            {"thread_id": "thread_9", "assistant_id": "asst_1", "stream": True}
        ]


# ---------------------------------------------------------------------------
# JSON endpoints: kwargs forwarding
# ---------------------------------------------------------------------------

class TestJsonEndpoints:
    @pytest.mark.asyncio
    async def test_retrieve_run(self, monkeypatch):
        provider = OpenAIProvider(api_key="test-key")
        mock_retrieve = AsyncMock(return_value=FakeObject({"id": "run_1"}))
        monkeypatch.setattr(provider.client.beta.threads.runs, "retrieve", mock_retrieve)

        payload = await provider.retrieve_run("thread_1", "run_1")

        mock_retrieve.assert_called_once_with("run_1", thread_id="thread_1")
        assert payload == {"id": "run_1"}

    @pytest.mark.asyncio
    async def test_submit_tool_outputs(self, monkeypatch):
        provider = OpenAIProvider(api_key="test-key")
        mock_submit = AsyncMock(return_value=FakeObject({"status": "queued"}))
        monkeypatch.setattr(
            provider.client.beta.threads.runs, "submit_tool_outputs", mock_submit
        )

        outputs = [{"tool_call_id": "call_1", "output": "42"}]
        await provider.submit_tool_outputs("thread_1", "run_1", outputs)

        mock_submit.assert_called_once_with(
            "run_1", thread_id="thread_1", tool_outputs=outputs,
        )

    @pytest.mark.asyncio
    async def test_cancel_response(self, monkeypatch):
        provider = OpenAIProvider(api_key="test-key")
        mock_cancel = AsyncMock(return_value=FakeObject({"status": "cancelled"}))
        monkeypatch.setattr(provider.client.responses, "cancel", mock_cancel)

        payload = await provider.cancel_response("resp_1")

        mock_cancel.assert_called_once_with("resp_1")
        assert payload == {"status": "cancelled"}

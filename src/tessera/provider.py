import logging
import os
import re
from collections.abc import AsyncIterator
from typing import Any

from openai import AsyncOpenAI

logger = logging.getLogger(__name__)

_RUNS_PATH = re.compile(r"/threads/(?P<thread_id>[^/]+)/runs")


class ModelProvider:
    """Transport seam: raw SSE lines out, JSON objects in.

    Operations and streams only talk to the service through these methods,
    so tests (and other OpenAI-compatible transports) can stand in.
    """

    def stream_lines(self, path: str, body: dict[str, Any]) -> AsyncIterator[str]:
        """Start a streaming request and yield its raw SSE lines."""
        raise NotImplementedError

    async def retrieve_response(self, response_id: str) -> dict[str, Any]:
        raise NotImplementedError

    async def cancel_response(self, response_id: str) -> dict[str, Any]:
        raise NotImplementedError

    async def retrieve_run(self, thread_id: str, run_id: str) -> dict[str, Any]:
        raise NotImplementedError

    async def submit_tool_outputs(
        self, thread_id: str, run_id: str, tool_outputs: list[dict[str, str]],
    ) -> dict[str, Any]:
        raise NotImplementedError

    async def cancel_run(self, thread_id: str, run_id: str) -> dict[str, Any]:
        raise NotImplementedError


class OpenAIProvider(ModelProvider):

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        max_retries: int = 5,
        timeout: float = 600.0,
    ):
        if not api_key:
            api_key = os.getenv("OPENAI_API_KEY")
        if not base_url:
            base_url = os.getenv("OPENAI_BASE_URL")
        self.client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            max_retries=max_retries,
            timeout=timeout,
        )

    def _streaming_request(self, path: str, body: dict[str, Any]):
        if path == "/responses":
            return self.client.responses.with_streaming_response.create(
                **body, stream=True
            )
        if path == "/chat/completions":
            return self.client.chat.completions.with_streaming_response.create(
                **body, stream=True
            )
        match = _RUNS_PATH.fullmatch(path)
        if match:
            return self.client.beta.threads.runs.with_streaming_response.create(
                thread_id=match["thread_id"], **body, stream=True
            )
        raise ValueError(f"Streaming is not supported for {path}")

    async def stream_lines(
        self, path: str, body: dict[str, Any]
    ) -> AsyncIterator[str]:
        logger.debug(f"Opening stream to {path}")
        async with self._streaming_request(path, body) as response:
            async for line in response.iter_lines():
                yield line

    async def retrieve_response(self, response_id: str) -> dict[str, Any]:
        response = await self.client.responses.retrieve(response_id)
        return response.to_dict()

    async def cancel_response(self, response_id: str) -> dict[str, Any]:
        response = await self.client.responses.cancel(response_id)
        return response.to_dict()

    async def retrieve_run(self, thread_id: str, run_id: str) -> dict[str, Any]:
        run = await self.client.beta.threads.runs.retrieve(run_id, thread_id=thread_id)
        return run.to_dict()

    async def submit_tool_outputs(
        self, thread_id: str, run_id: str, tool_outputs: list[dict[str, str]],
    ) -> dict[str, Any]:
        run = await self.client.beta.threads.runs.submit_tool_outputs(
            run_id, thread_id=thread_id, tool_outputs=tool_outputs,
        )
        return run.to_dict()

    async def cancel_run(self, thread_id: str, run_id: str) -> dict[str, Any]:
        run = await self.client.beta.threads.runs.cancel(run_id, thread_id=thread_id)
        return run.to_dict()

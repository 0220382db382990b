import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Iterable, Mapping

from tessera.dispatch import resolve_tool_outputs
from tessera.events import RunCompleteEvent, RunnerEvent, SnapshotEvent, ToolOutputsEvent
from tessera.exceptions import MaxTurnsExceededError
from tessera.models import (
    PENDING_STATUSES,
    RequiredAction,
    Snapshot,
    Status,
    SubmitToolOutputsRequest,
)
from tessera.operations import Operation
from tessera.polling import DEFAULT_POLLING_INTERVAL, DEFAULT_TIMEOUT, wait_for_terminal
from tessera.tools import Tool, as_registry

logger = logging.getLogger(__name__)

# A run being cancelled elsewhere is still settling.
_RUNNER_PENDING = PENDING_STATUSES | {Status.CANCELLING}


class Runner:
    """Drives an operation to a terminal state.

    Polls the operation; whenever it pauses in ``requires_action`` the
    requested tools are run from the registry, their outputs submitted, and
    polling resumes.

    ``run()`` drains ``iter()``.  ``iter()`` is the streaming entry point.

    Args:
        max_turns: Maximum number of tool-output submissions before
            giving up with :class:`MaxTurnsExceededError`.
        parallel_tool_calls: Run the tool calls of one action concurrently.
        polling_interval: Seconds between status fetches.
        timeout: Deadline in seconds for each wait between submissions;
            ``None`` waits indefinitely.
    """

    def __init__(
        self,
        max_turns: int = 50,
        parallel_tool_calls: bool = True,
        polling_interval: float = DEFAULT_POLLING_INTERVAL,
        timeout: float | None = DEFAULT_TIMEOUT,
    ):
        self.max_turns = max_turns
        self.parallel_tool_calls = parallel_tool_calls
        self.polling_interval = polling_interval
        self.timeout = timeout

    async def run(
        self,
        operation: Operation,
        tools: Mapping[str, Tool] | Iterable[Tool | Callable] = (),
        signal: asyncio.Event | None = None,
    ) -> Snapshot:
        """Run the operation to completion and return its terminal snapshot."""
        result: Snapshot | None = None
        async for event in self.iter(operation, tools, signal):
            if isinstance(event, RunCompleteEvent):
                result = event.snapshot
        if result is None:
            raise RuntimeError("iter() ended without emitting RunCompleteEvent")
        return result

    async def iter(
        self,
        operation: Operation,
        tools: Mapping[str, Tool] | Iterable[Tool | Callable] = (),
        signal: asyncio.Event | None = None,
    ) -> AsyncIterator[RunnerEvent]:
        """Run the operation, yielding events as execution proceeds."""
        registry = as_registry(tools)
        submissions = 0

        while True:
            snapshot = await wait_for_terminal(
                operation.fetch,
                pending=_RUNNER_PENDING,
                polling_interval=self.polling_interval,
                timeout=self.timeout,
                signal=signal,
            )
            yield SnapshotEvent(snapshot=snapshot)

            if snapshot.status is not Status.REQUIRES_ACTION:
                yield RunCompleteEvent(snapshot=snapshot)
                return

            if submissions >= self.max_turns:
                raise MaxTurnsExceededError(
                    f"Operation {operation.id} still requires action after "
                    f"{submissions} tool output submissions"
                )

            action = snapshot.required_action or RequiredAction()
            outputs = await resolve_tool_outputs(
                action, registry, parallel=self.parallel_tool_calls,
            )
            yield ToolOutputsEvent(tool_calls=list(action.tool_calls), outputs=outputs)

            request = SubmitToolOutputsRequest.for_action(action, outputs)
            await operation.submit_tool_outputs(request)
            submissions += 1

"""Handles for long-running remote operations.

An :class:`Operation` knows how to fetch its current snapshot, resume with
tool outputs and request cancellation. The poller and the runner only see
this interface.
"""

import asyncio
import logging
from abc import ABC, abstractmethod

from tessera.exceptions import OperationCancelledError, UnsupportedOperationError
from tessera.models import PENDING_STATUSES, Snapshot, Status, SubmitToolOutputsRequest
from tessera.polling import DEFAULT_POLLING_INTERVAL, DEFAULT_TIMEOUT, wait_for_terminal
from tessera.provider import ModelProvider

logger = logging.getLogger(__name__)


class Operation(ABC):
    @property
    @abstractmethod
    def id(self) -> str: ...

    @abstractmethod
    async def fetch(self) -> Snapshot:
        """Return the operation's current state."""

    @abstractmethod
    async def cancel(self) -> Snapshot:
        """Request cancellation; returns the state the server reports."""

    async def submit_tool_outputs(self, request: SubmitToolOutputsRequest) -> Snapshot:
        raise UnsupportedOperationError(
            f"{type(self).__name__} {self.id} does not accept tool outputs"
        )


class RunOperation(Operation):
    """An assistants run, addressed by thread and run id."""

    def __init__(self, provider: ModelProvider, thread_id: str, run_id: str):
        self.provider = provider
        self.thread_id = thread_id
        self.run_id = run_id

    @classmethod
    def from_snapshot(cls, provider: ModelProvider, snapshot: Snapshot) -> "RunOperation":
        if not snapshot.id or not snapshot.thread_id:
            raise ValueError("A run snapshot needs both an id and a thread_id")
        return cls(provider, snapshot.thread_id, snapshot.id)

    @property
    def id(self) -> str:
        return self.run_id

    async def fetch(self) -> Snapshot:
        payload = await self.provider.retrieve_run(self.thread_id, self.run_id)
        return Snapshot.from_payload(payload)

    async def submit_tool_outputs(self, request: SubmitToolOutputsRequest) -> Snapshot:
        logger.info(
            f"Submitting {len(request.tool_outputs)} tool outputs to run {self.run_id}"
        )
        payload = await self.provider.submit_tool_outputs(
            self.thread_id, self.run_id,
            [o.model_dump() for o in request.tool_outputs],
        )
        return Snapshot.from_payload(payload)

    async def cancel(self) -> Snapshot:
        logger.info(f"Cancelling run {self.run_id}")
        payload = await self.provider.cancel_run(self.thread_id, self.run_id)
        return Snapshot.from_payload(payload)


class ResponseOperation(Operation):
    """A background response, addressed by response id."""

    def __init__(self, provider: ModelProvider, response_id: str):
        self.provider = provider
        self.response_id = response_id

    @property
    def id(self) -> str:
        return self.response_id

    async def fetch(self) -> Snapshot:
        payload = await self.provider.retrieve_response(self.response_id)
        return Snapshot.from_payload(payload)

    async def cancel(self) -> Snapshot:
        logger.info(f"Cancelling response {self.response_id}")
        payload = await self.provider.cancel_response(self.response_id)
        return Snapshot.from_payload(payload)


async def cancel_operation(
    operation: Operation,
    *,
    polling_interval: float = DEFAULT_POLLING_INTERVAL,
    timeout: float | None = DEFAULT_TIMEOUT,
    signal: asyncio.Event | None = None,
) -> Snapshot:
    """Cancel *operation* and wait until the server reports it settled.

    The server may still report ``queued`` or ``in_progress`` for a while
    after accepting the cancel, so those keep the wait going alongside
    ``cancelling``. If the deadline passes first, the last snapshot is
    returned as-is; the server has stalled mid-cancellation and
    the caller decides what to do with it.
    """
    snapshot = await operation.cancel()
    if snapshot.is_terminal:
        return snapshot

    last_seen = snapshot

    async def fetch() -> Snapshot:
        nonlocal last_seen
        last_seen = await operation.fetch()
        return last_seen

    try:
        return await wait_for_terminal(
            fetch,
            pending=PENDING_STATUSES | {Status.CANCELLING},
            polling_interval=polling_interval,
            timeout=timeout,
            signal=signal,
        )
    except OperationCancelledError as e:
        if e.reason != "timeout":
            raise
        status = last_seen.status.value if last_seen.status else "without status"
        logger.warning(
            f"Operation {operation.id} still {status} after {timeout}s; "
            f"returning last snapshot"
        )
        return last_seen

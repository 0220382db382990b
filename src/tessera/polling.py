"""Poll a remote operation until it leaves its pending states."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, TypeVar

from tessera.exceptions import OperationCancelledError
from tessera.instrumentation import poll_span, record_error, record_status
from tessera.models import PENDING_STATUSES, Snapshot, Status

logger = logging.getLogger(__name__)

DEFAULT_POLLING_INTERVAL = 0.5
DEFAULT_TIMEOUT = 30.0

T = TypeVar("T")

Fetch = Callable[[], Awaitable[Snapshot]]


async def wait_for_terminal(
    fetch: Fetch,
    *,
    pending: Iterable[Status | str] = PENDING_STATUSES,
    polling_interval: float = DEFAULT_POLLING_INTERVAL,
    timeout: float | None = DEFAULT_TIMEOUT,
    signal: asyncio.Event | None = None,
) -> Snapshot:
    """Fetch until the snapshot status is no longer in *pending*.

    The first fetch happens immediately; each further fetch is preceded by
    a ``polling_interval`` delay. Both the delay and the fetch are abandoned
    as soon as the deadline passes or *signal* is set.

    Args:
        fetch: Coroutine function returning the current snapshot.
        pending: Statuses that keep the loop polling.
        polling_interval: Seconds to wait between fetches.
        timeout: Overall deadline in seconds; ``None`` or a negative value
            waits indefinitely.
        signal: Set by the caller to abandon the wait.

    Returns:
        The first snapshot whose status is not pending.

    Raises:
        OperationCancelledError: On timeout (``reason="timeout"``) or when
            *signal* is set (``reason="signal"``).
    """
    if polling_interval < 0:
        raise ValueError(f"polling_interval must be non-negative, got {polling_interval}")
    pending = frozenset(Status(s) for s in pending)

    expired = asyncio.Event()
    timer = None
    if timeout is not None and timeout >= 0:
        timer = asyncio.get_running_loop().call_later(timeout, expired.set)

    try:
        snapshot = await _race(fetch, expired, signal)
        async with poll_span(snapshot.id or "") as span:
            delays = 0
            try:
                while snapshot.status in pending:
                    await _race(
                        lambda: asyncio.sleep(polling_interval), expired, signal
                    )
                    delays += 1
                    previous = snapshot.status
                    snapshot = await _race(fetch, expired, signal)
                    if snapshot.status != previous:
                        logger.info(
                            f"{snapshot.object or 'Operation'} {snapshot.id} moved "
                            f"from {_label(previous)} to {_label(snapshot.status)}"
                        )
            except OperationCancelledError as e:
                record_error(span, e)
                raise
            record_status(span, snapshot.status)
        logger.debug(
            f"{snapshot.id} settled as {_label(snapshot.status)} after {delays} delays"
        )
        return snapshot
    finally:
        if timer is not None:
            timer.cancel()


async def _race(
    start: Callable[[], Awaitable[T]],
    expired: asyncio.Event,
    signal: asyncio.Event | None,
) -> T:
    """Await ``start()`` unless the deadline or the caller's signal comes first."""
    error = _cancellation(expired, signal)
    if error is not None:
        raise error

    task = asyncio.ensure_future(start())
    watchers: list[asyncio.Future[Any]] = [asyncio.ensure_future(expired.wait())]
    if signal is not None:
        watchers.append(asyncio.ensure_future(signal.wait()))

    finished = False
    try:
        done, _ = await asyncio.wait(
            [task, *watchers], return_when=asyncio.FIRST_COMPLETED
        )
        finished = task in done
    finally:
        for watcher in watchers:
            watcher.cancel()
        if not finished:
            task.cancel()

    if finished:
        return task.result()
    raise _cancellation(expired, signal)


def _cancellation(
    expired: asyncio.Event, signal: asyncio.Event | None
) -> OperationCancelledError | None:
    if signal is not None and signal.is_set():
        return OperationCancelledError("Wait cancelled by caller", reason="signal")
    if expired.is_set():
        return OperationCancelledError(
            "Timed out waiting for operation", reason="timeout"
        )
    return None


def _label(status: Status | None) -> str:
    return "no status" if status is None else status.value

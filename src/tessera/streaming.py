"""Stream assembly.

:class:`SnapshotStream` drives the decoder into a
:class:`~tessera.merge.SnapshotAccumulator` and exposes both the events as
they arrive and the finished snapshot::

    stream = SnapshotStream(provider.stream_lines("/responses", body))
    async for text in stream.text_deltas():
        print(text, end="")
    snapshot = await stream.until_done()
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterable, AsyncIterator

from tessera.decoding import decode_events
from tessera.events import ChoiceDelta, DeltaEvent, TextDelta
from tessera.instrumentation import record_error, record_usage, stream_span
from tessera.merge import AssemblyWarning, SnapshotAccumulator
from tessera.models import Snapshot

logger = logging.getLogger(__name__)


class SnapshotStream:
    """Single-consumer view over one SSE stream.

    Iterating the stream, :meth:`text_deltas` and :meth:`until_done` all
    share one underlying pass over the lines, so a consumer may stop early
    and later call :meth:`until_done` to drain the rest.

    Any error that aborts the stream discards the partial snapshot:
    afterwards :attr:`snapshot` and :meth:`until_done` re-raise it.

    Args:
        lines: Async iterable of raw SSE lines.
        source: Label used for tracing, e.g. the request path.
        snapshot: Optional starting state to merge into.
    """

    def __init__(
        self,
        lines: AsyncIterable[str | bytes],
        *,
        source: str = "stream",
        snapshot: Snapshot | None = None,
    ):
        self._lines = lines
        self.source = source
        self._accumulator: SnapshotAccumulator | None = SnapshotAccumulator(snapshot)
        self._warnings: list[AssemblyWarning] = self._accumulator.warnings
        self._events: AsyncIterator[DeltaEvent] | None = None
        self._final: Snapshot | None = None
        self._error: Exception | None = None

    @property
    def snapshot(self) -> Snapshot:
        """The snapshot assembled so far.

        Raises:
            Exception: The error that aborted the stream, if any.
        """
        if self._error is not None:
            raise self._error
        if self._final is not None:
            return self._final.model_copy(deep=True)
        return self._accumulator.snapshot

    @property
    def warnings(self) -> list[AssemblyWarning]:
        return list(self._warnings)

    def __aiter__(self) -> AsyncIterator[DeltaEvent]:
        if self._events is None:
            self._events = self._assemble()
        return self._events

    async def _assemble(self) -> AsyncIterator[DeltaEvent]:
        async with stream_span(self.source) as span:
            try:
                async for event in decode_events(self._lines):
                    self._accumulator.feed(event)
                    yield event
            except Exception as e:
                self._error = e
                self._accumulator = None
                logger.warning(f"Stream {self.source} aborted: {e}")
                record_error(span, e)
                raise
            self._final = self._accumulator.finish()
            record_usage(span, self._final.usage, self._final.model)

        logger.debug(
            f"Stream {self.source} assembled {self._final.object or 'snapshot'} "
            f"{self._final.id} ({len(self._final.items)} items)"
        )

    async def text_deltas(self) -> AsyncIterator[str]:
        """Yield text fragments only, merging every event on the way."""
        async for event in self:
            if isinstance(event, TextDelta) and event.delta:
                yield event.delta
            elif isinstance(event, ChoiceDelta) and event.content:
                yield event.content

    async def until_done(self) -> Snapshot:
        """Consume the rest of the stream and return the finished snapshot.

        Raises:
            Exception: The error that aborted the stream, if any.
        """
        if self._error is not None:
            raise self._error
        if self._final is None:
            async for _ in self:
                pass
        if self._final is None:
            raise RuntimeError(f"Stream {self.source} was closed before it finished")
        return self._final.model_copy(deep=True)


async def assemble(
    lines: AsyncIterable[str | bytes], *, source: str = "stream"
) -> Snapshot:
    """Assemble a complete snapshot from an SSE line stream."""
    return await SnapshotStream(lines, source=source).until_done()

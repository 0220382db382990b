"""Optional OpenTelemetry instrumentation for tessera.

Call ``tessera.instrument()`` once at startup to enable tracing.
Requires ``opentelemetry-api`` to be installed; the package
works identically without it.
"""

import importlib.util
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

_tracer = None


def instrument(*, tracer_name: str = "tessera") -> None:
    """Enable OpenTelemetry tracing for stream assembly, polling and tools.

    Call once at startup, after configuring your TracerProvider.
    Requires ``opentelemetry-api``: ``pip install tessera[otel]``

    Example::

        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import (
            BatchSpanProcessor,
            ConsoleSpanExporter,
        )

        provider = TracerProvider()
        provider.add_span_processor(
            BatchSpanProcessor(ConsoleSpanExporter())
        )
        trace.set_tracer_provider(provider)

        import tessera
        tessera.instrument()

    Args:
        tracer_name: Name passed to ``trace.get_tracer()``.

    Raises:
        ImportError: If ``opentelemetry-api`` is not installed.
    """
    global _tracer
    if importlib.util.find_spec("opentelemetry.trace") is None:
        raise ImportError(
            "opentelemetry-api is required for instrumentation. "
            "Install it with: pip install tessera[otel]"
        )
    from opentelemetry import trace
    _tracer = trace.get_tracer(tracer_name)
    if isinstance(_tracer, trace.NoOpTracer):
        logger.info(
            "No TracerProvider configured, spans will be "
            "discarded. Set up a TracerProvider to export "
            "traces."
        )
    else:
        logger.info("Tessera instrumentation enabled")


def uninstrument() -> None:
    """Disable OpenTelemetry tracing.

    Subsequent operations will not emit spans.
    """
    global _tracer
    _tracer = None


@asynccontextmanager
async def stream_span(source: str):
    """Wrap the assembly of one SSE stream in an ``assemble_stream`` span."""
    if _tracer is None:
        yield None
        return
    from opentelemetry.trace import SpanKind

    with _tracer.start_as_current_span(
        f"assemble_stream {source}",
        kind=SpanKind.CLIENT,
        attributes={
            "gen_ai.operation.name": "assemble_stream",
            "tessera.stream.source": source,
        },
    ) as span:
        yield span


@asynccontextmanager
async def poll_span(operation_id: str):
    """Wrap a poll-until-terminal wait in a ``poll_operation`` span."""
    if _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(
        f"poll_operation {operation_id}",
        attributes={
            "gen_ai.operation.name": "poll_operation",
            "tessera.operation.id": operation_id,
        },
    ) as span:
        yield span


@asynccontextmanager
async def tool_span(tool_name: str, call_id: str):
    """Wrap a tool execution in an ``execute_tool`` span."""
    if _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(
        f"execute_tool {tool_name}",
        attributes={
            "gen_ai.operation.name": "execute_tool",
            "gen_ai.tool.name": tool_name,
            "gen_ai.tool.call.id": call_id,
        },
    ) as span:
        yield span


def record_usage(
    span, usage, response_model: str | None = None
):
    """Set token-usage and response-model attributes on a span."""
    if span is None or usage is None:
        return
    input_tokens = getattr(usage, "input_tokens", None)
    if input_tokens is not None:
        span.set_attribute("gen_ai.usage.input_tokens", input_tokens)
    output_tokens = getattr(usage, "output_tokens", None)
    if output_tokens is not None:
        span.set_attribute("gen_ai.usage.output_tokens", output_tokens)
    if response_model:
        span.set_attribute("gen_ai.response.model", response_model)


def record_status(span, status) -> None:
    """Record the status an operation settled in."""
    if span is None or status is None:
        return
    span.set_attribute("tessera.operation.status", status.value)


def record_error(span, exception: BaseException) -> None:
    """Record an exception and set ERROR status on a span.

    Sets ``error.type`` per GenAI semantic conventions.
    No-ops when *span* is ``None`` (tracing disabled).
    """
    if span is None:
        return
    from opentelemetry.trace import StatusCode

    span.set_status(StatusCode.ERROR, str(exception))
    span.record_exception(exception)
    span.set_attribute(
        "error.type", type(exception).__qualname__
    )

"""Assistants run example: streaming a run, then driving its tool calls.

Demonstrates:
- Defining tools with @tool (including a context-aware tool)
- Streaming a run with SnapshotStream and printing text as it arrives
- Handing the paused run to Runner, which dispatches tool calls and polls
- Cancelling on Ctrl-C through the signal event

Usage:
    uv run --env-file=.env examples/weather_run.py --assistant asst_123 --trace
"""

import argparse
import asyncio
import random
import signal as signals

from tessera.events import SnapshotEvent, ToolOutputsEvent
from tessera.exceptions import OperationCancelledError
from tessera.models import Status
from tessera.operations import RunOperation, cancel_operation
from tessera.provider import OpenAIProvider
from tessera.runner import Runner
from tessera.streaming import SnapshotStream
from tessera.tools import ToolContext, tool


def setup_tracing(service_name: str):
    from opentelemetry import trace
    from opentelemetry.sdk.resources import SERVICE_NAME, Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import (
        SimpleSpanProcessor, ConsoleSpanExporter,
    )
    from tessera.instrumentation import instrument

    provider = TracerProvider(
        resource=Resource({SERVICE_NAME: service_name})
    )
    provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    instrument()


@tool
def current_weather(city: str, unit: str = "celsius"):
    """Look up the current weather for a city.

    Args:
        city: Name of the city.
        unit: Either "celsius" or "fahrenheit".
    """
    temp = random.randint(-5, 30)
    if unit == "fahrenheit":
        temp = temp * 9 // 5 + 32
    return {"city": city, "temperature": temp, "unit": unit}


@tool
async def call_details(context: ToolContext):
    """Report which tool call this is."""
    return f"call {context.call.tool_call_id} of run"


async def main():
    parser = argparse.ArgumentParser(description="Weather run")
    parser.add_argument("--assistant", required=True)
    parser.add_argument("--prompt", default="What's the weather in Oslo?")
    parser.add_argument("--trace", action="store_true")
    args = parser.parse_args()

    if args.trace:
        setup_tracing("weather-run")

    provider = OpenAIProvider()
    thread = await provider.client.beta.threads.create(
        messages=[{"role": "user", "content": args.prompt}]
    )

    stream = SnapshotStream(
        provider.stream_lines(
            f"/threads/{thread.id}/runs",
            {
                "assistant_id": args.assistant,
                "tools": [current_weather.model_dump(), call_details.model_dump()],
            },
        ),
        source="/threads/runs",
    )
    async for fragment in stream.text_deltas():
        print(fragment, end="", flush=True)
    snapshot = await stream.until_done()
    print()

    if snapshot.status is not Status.REQUIRES_ACTION:
        print(f"Run finished: {snapshot.status.value}")
        return

    stop = asyncio.Event()
    asyncio.get_running_loop().add_signal_handler(signals.SIGINT, stop.set)

    operation = RunOperation.from_snapshot(provider, snapshot)
    runner = Runner(timeout=120.0)
    try:
        async for event in runner.iter(
            operation, [current_weather, call_details], signal=stop,
        ):
            if isinstance(event, ToolOutputsEvent):
                for output in event.outputs:
                    print(f"  -> {output.tool_call_id}: {output.output}")
            elif isinstance(event, SnapshotEvent):
                print(f"[{event.snapshot.status.value}]")
    except OperationCancelledError:
        final = await cancel_operation(operation)
        print(f"\nCancelled: {final.status.value}")


if __name__ == "__main__":
    asyncio.run(main())

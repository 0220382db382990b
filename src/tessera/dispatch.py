"""Resolve a required action's tool calls into tool outputs.

Every call receives exactly one output. Failures (unknown tool, arguments
that are not a JSON object, an exception from the tool itself) become that
call's output string so the model can see what went wrong; they never
abort the sibling calls.
"""

import asyncio
import inspect
import json
import logging
from collections.abc import Mapping
from typing import Any

from tessera.exceptions import ArgumentParseError, UnknownToolError
from tessera.instrumentation import record_error, tool_span
from tessera.models import FunctionToolCall, RequiredAction, ToolOutput
from tessera.tools import Tool, ToolCallResult, ToolContext

logger = logging.getLogger(__name__)


def parse_arguments(arguments: str) -> dict[str, Any]:
    """Parse a tool call's accumulated arguments string.

    Raises:
        ArgumentParseError: If the string is not a JSON object.
    """
    if not arguments.strip():
        return {}
    try:
        params = json.loads(arguments)
    except json.JSONDecodeError as e:
        raise ArgumentParseError(str(e)) from e
    if not isinstance(params, dict):
        raise ArgumentParseError(
            f"expected a JSON object, got {type(params).__name__}"
        )
    return params


async def invoke_tool(
    call: FunctionToolCall,
    registry: Mapping[str, Tool],
    context: ToolContext | None = None,
) -> ToolCallResult:
    """Look up and run the tool *call* names.

    Raises:
        UnknownToolError: If no tool of that name is registered.
        ArgumentParseError: If the call's arguments are not a JSON object.
    """
    tool_obj = registry.get(call.name)
    if tool_obj is None:
        raise UnknownToolError(call.name)

    params = parse_arguments(call.arguments)
    logger.info(f"Calling {call.name} with {params}")
    if "context" in inspect.signature(tool_obj.func).parameters:
        params["context"] = context or ToolContext(call=call)
    return await tool_obj(**params)


def _stringify(output: Any) -> str:
    return output if isinstance(output, str) else json.dumps(output, default=str)


async def _execute_one(
    call: FunctionToolCall,
    registry: Mapping[str, Tool],
    required_action: RequiredAction,
) -> ToolOutput:
    call_id = call.tool_call_id or ""
    async with tool_span(call.name, call_id) as span:
        try:
            result = await invoke_tool(
                call, registry, ToolContext(call=call, required_action=required_action)
            )
        except UnknownToolError as e:
            logger.warning(f"Tool not found: {call.name}")
            output = f"Error: {e}"
        except ArgumentParseError as e:
            logger.warning(f"Invalid arguments for {call.name}: {e}")
            output = f"Error: invalid arguments: {e}"
        except Exception as e:
            logger.error(f"Tool {call.name} raised: {e}")
            record_error(span, e)
            output = f"Error calling {call.name}: {e}"
        else:
            output = _stringify(result.output)
    return ToolOutput(tool_call_id=call_id, output=output)


async def resolve_tool_outputs(
    required_action: RequiredAction,
    registry: Mapping[str, Tool],
    *,
    parallel: bool = True,
) -> list[ToolOutput]:
    """Run every tool call in *required_action*; outputs keep call order."""
    calls = required_action.tool_calls
    if parallel and len(calls) > 1:
        outputs = await asyncio.gather(
            *(_execute_one(call, registry, required_action) for call in calls)
        )
        return list(outputs)

    return [await _execute_one(call, registry, required_action) for call in calls]

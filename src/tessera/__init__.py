from tessera.dispatch import resolve_tool_outputs
from tessera.exceptions import (
    ArgumentParseError,
    EventDecodeError,
    InvariantViolation,
    MaxTurnsExceededError,
    OperationCancelledError,
    PathNotFoundError,
    StreamError,
    TesseraError,
    ToolError,
    ToolOutputMismatchError,
    UnknownToolError,
    UnsupportedOperationError,
)
from tessera.instrumentation import instrument, uninstrument
from tessera.merge import AssemblyWarning, SnapshotAccumulator, merge
from tessera.models import (
    PENDING_STATUSES,
    TERMINAL_STATUSES,
    RequiredAction,
    Snapshot,
    Status,
    SubmitToolOutputsRequest,
    ToolOutput,
)
from tessera.operations import (
    Operation,
    ResponseOperation,
    RunOperation,
    cancel_operation,
)
from tessera.polling import wait_for_terminal
from tessera.provider import ModelProvider, OpenAIProvider
from tessera.runner import Runner
from tessera.streaming import SnapshotStream, assemble
from tessera.tools import Tool, ToolContext, tool

__all__ = [
    "ArgumentParseError",
    "AssemblyWarning",
    "EventDecodeError",
    "InvariantViolation",
    "MaxTurnsExceededError",
    "ModelProvider",
    "OpenAIProvider",
    "Operation",
    "OperationCancelledError",
    "PENDING_STATUSES",
    "PathNotFoundError",
    "RequiredAction",
    "ResponseOperation",
    "RunOperation",
    "Runner",
    "Snapshot",
    "SnapshotAccumulator",
    "SnapshotStream",
    "Status",
    "StreamError",
    "SubmitToolOutputsRequest",
    "TERMINAL_STATUSES",
    "TesseraError",
    "Tool",
    "ToolContext",
    "ToolError",
    "ToolOutput",
    "ToolOutputMismatchError",
    "UnknownToolError",
    "UnsupportedOperationError",
    "assemble",
    "cancel_operation",
    "instrument",
    "merge",
    "resolve_tool_outputs",
    "tool",
    "uninstrument",
    "wait_for_terminal",
]

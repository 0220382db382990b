from __future__ import annotations


class TesseraError(Exception):
    """Base exception for all errors raised by tessera."""


class InvariantViolation(TesseraError):
    """Raised when a merge would cross-wire two unrelated objects."""


class PathNotFoundError(InvariantViolation):
    """Raised when a delta event targets an item, part or annotation that does not exist."""

    def __init__(self, message: str, *, path: object = None) -> None:
        super().__init__(message)
        self.path = path


class EventDecodeError(TesseraError):
    """Raised when a server-sent event frame carries undecodable data."""


class StreamError(TesseraError):
    """Raised when the server reports an error event mid-stream."""

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class ToolError(TesseraError):
    """Base for failures resolving a single tool call."""


class UnknownToolError(ToolError):
    """Raised when a tool call names a function that is not registered."""

    def __init__(self, name: str) -> None:
        super().__init__(f"tool '{name}' not found")
        self.name = name


class ArgumentParseError(ToolError):
    """Raised when tool call arguments are not a JSON object."""


class ToolOutputMismatchError(TesseraError):
    """Raised when tool outputs do not pair one-to-one with required tool calls."""


class OperationCancelledError(TesseraError):
    """Raised when waiting on an operation is cancelled by signal or timeout."""

    def __init__(self, message: str, *, reason: str) -> None:
        super().__init__(message)
        self.reason = reason


class UnsupportedOperationError(TesseraError):
    """Raised when an operation is asked for something its API cannot do."""


class MaxTurnsExceededError(TesseraError):
    """Raised when an operation keeps requiring action past the runner's turn limit."""

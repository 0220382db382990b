"""Tool registry: wrap plain functions as callable, schema-bearing tools.

A tool's parameter schema is derived from the function signature and its
docstring (Google, reST or NumPy style). A parameter named ``context`` is
never exposed in the schema; the dispatch loop fills it with a
:class:`ToolContext`.
"""

import functools
import inspect
import json
import re
import typing
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from tessera.models import FunctionToolCall, RequiredAction

_EXCLUDED_PARAMS = {"context"}

_JSON_TYPES: dict[Any, str] = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    tuple: "array",
    set: "array",
    dict: "object",
    type(None): "null",
}

_GOOGLE_SECTION = re.compile(r"^(Args|Arguments|Parameters):$")
_GOOGLE_PARAM = re.compile(r"^\*{0,2}(\w+)\s*(?:\([^)]*\))?\s*:\s*(.*)$")
_REST_PARAM = re.compile(r"^:param\s+(?:[^:]*\s)?(\w+)\s*:\s*(.*)$")
_NUMPY_PARAM = re.compile(r"^\*{0,2}(\w+)\s*(?::.*)?$")


@dataclass
class ToolContext:
    """Passed to tools that declare a ``context`` parameter."""

    call: FunctionToolCall
    required_action: RequiredAction | None = None


class ToolCallResult(BaseModel):
    tool_name: str
    output: Any


def _json_type(annotation: Any) -> str:
    if annotation is inspect.Parameter.empty:
        return "string"
    return _JSON_TYPES.get(typing.get_origin(annotation) or annotation, "string")


def _parse_google(lines: list[str]) -> dict[str, str]:
    descriptions: dict[str, str] = {}
    in_section = False
    param_indent = None
    current = None
    for line in lines:
        stripped = line.strip()
        if not in_section:
            in_section = bool(_GOOGLE_SECTION.match(stripped))
            continue
        if not stripped:
            continue
        indent = len(line) - len(line.lstrip())
        if indent == 0:
            break
        if param_indent is None:
            param_indent = indent
        if indent == param_indent:
            match = _GOOGLE_PARAM.match(stripped)
            if match is None:
                break
            current = match.group(1)
            descriptions[current] = match.group(2)
        elif current is not None:
            descriptions[current] += "\n" + stripped
    return descriptions


def _parse_rest(lines: list[str]) -> dict[str, str]:
    descriptions: dict[str, str] = {}
    current = None
    for line in lines:
        stripped = line.strip()
        match = _REST_PARAM.match(stripped)
        if match:
            current = match.group(1)
            descriptions[current] = match.group(2)
        elif not stripped or stripped.startswith(":"):
            current = None
        elif current is not None and line[:1].isspace():
            descriptions[current] += "\n" + stripped
    return descriptions


def _parse_numpy(lines: list[str]) -> dict[str, str]:
    def underline(i: int) -> bool:
        return i < len(lines) and set(lines[i].strip()) == {"-"}

    start = next(
        (i + 2 for i, line in enumerate(lines)
         if line.strip() == "Parameters" and underline(i + 1)),
        None,
    )
    if start is None:
        return {}

    descriptions: dict[str, str] = {}
    current = None
    for i in range(start, len(lines)):
        line = lines[i]
        stripped = line.strip()
        if not stripped:
            continue
        if not line[:1].isspace():
            match = _NUMPY_PARAM.match(stripped)
            if underline(i + 1) or match is None:
                break
            current = match.group(1)
            descriptions[current] = ""
        elif current is not None:
            previous = descriptions[current]
            descriptions[current] = f"{previous}\n{stripped}" if previous else stripped
    return descriptions


def _parse_param_descriptions(func: Callable) -> dict[str, str]:
    """Extract per-parameter descriptions from *func*'s docstring."""
    doc = inspect.getdoc(func)
    if not doc:
        return {}
    lines = doc.splitlines()
    for parse in (_parse_google, _parse_rest, _parse_numpy):
        descriptions = parse(lines)
        if descriptions:
            return descriptions
    return {}


def _build_parameters_schema(func: Callable) -> tuple[dict[str, Any], list[str]]:
    """Return the JSON-schema ``object`` for *func*'s parameters and the
    names of the required ones."""
    descriptions = _parse_param_descriptions(func)
    properties = {}
    required = []
    for name, param in inspect.signature(func).parameters.items():
        if name in _EXCLUDED_PARAMS:
            continue
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        properties[name] = {
            "type": _json_type(param.annotation),
            "description": descriptions.get(name, ""),
        }
        if param.default is inspect.Parameter.empty:
            required.append(name)
    return {"type": "object", "properties": properties}, required


def _summary(func: Callable) -> str:
    doc = inspect.getdoc(func) or ""
    return doc.split("\n\n")[0].strip()


class Tool(BaseModel):
    """A callable exposed to the model as a function tool."""

    func: Callable = Field(exclude=True)
    name: str
    description: str = ""
    parameters_schema: dict[str, Any]

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def model_dump(self, **kwargs) -> dict[str, Any]:
        """Return the OpenAI function-tool schema instead of the fields."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters_schema,
            },
        }

    def model_dump_json(self, **kwargs) -> str:
        return json.dumps(self.model_dump())

    async def __call__(self, **kwargs) -> ToolCallResult:
        output = self.func(**kwargs)
        if inspect.isawaitable(output):
            output = await output
        return ToolCallResult(tool_name=self.name, output=output)

    def bind(self, **bound: Any) -> "Tool":
        """Return a copy with *bound* arguments fixed and hidden from the schema."""
        properties = {
            k: v for k, v in self.parameters_schema["properties"].items()
            if k not in bound
        }
        required = [r for r in self.parameters_schema["required"] if r not in bound]
        return Tool(
            func=functools.partial(self.func, **bound),
            name=self.name,
            description=self.description,
            parameters_schema={
                **self.parameters_schema,
                "properties": properties,
                "required": required,
            },
        )


def tool(
    func: Callable | None = None,
    *,
    name: str | None = None,
    description: str | None = None,
):
    """Turn a function into a :class:`Tool`.

    Usable bare (``@tool``) or with overrides
    (``@tool(name="search", description="...")``).
    """

    def wrap(f: Callable) -> Tool:
        schema, required = _build_parameters_schema(f)
        return Tool(
            func=f,
            name=name or f.__name__,
            description=description if description is not None else _summary(f),
            parameters_schema={**schema, "required": required},
        )

    if func is not None:
        return wrap(func)
    return wrap


def as_registry(tools: Iterable[Tool | Callable] | Mapping[str, Tool]) -> dict[str, Tool]:
    """Index tools by name, wrapping plain functions with :func:`tool`."""
    if isinstance(tools, Mapping):
        return dict(tools)
    registry = {}
    for t in tools:
        t = t if isinstance(t, Tool) else tool(t)
        registry[t.name] = t
    return registry

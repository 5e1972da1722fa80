from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from skillkernel.logging import get_logger
from skillkernel.service.errors import ConfigurationError, ToolExecutionError
from skillkernel.service.providers.base import ToolSpec

if TYPE_CHECKING:
    from skillkernel.service.context import ExecutionContext

logger = get_logger(__name__)

ToolHandler = Callable[[Dict[str, Any], "ExecutionContext"], Any]

EMPTY_OBJECT_SCHEMA: Dict[str, Any] = {"type": "object", "properties": {}}


def validate_payload(payload: Any, schema: Optional[dict]) -> Optional[List[str]]:
    """Return jsonschema error messages for ``payload``, or ``None`` when valid."""

    if not schema or not isinstance(schema, dict):
        return None
    try:
        validator = Draft202012Validator(schema)
    except SchemaError as exc:
        return [f"invalid schema: {exc.message}"]
    errors = sorted(validator.iter_errors(payload), key=lambda e: [str(p) for p in e.path])
    if errors:
        return [e.message for e in errors]
    return None


@dataclass
class Tool:
    """A named capability callable from compute steps and the tool-use loop.

    ``handler`` may be sync or async; sync handlers run in a worker thread.
    """

    name: str
    handler: ToolHandler
    description: str = ""
    input_schema: Dict[str, Any] = field(default_factory=lambda: dict(EMPTY_OBJECT_SCHEMA))

    def __post_init__(self) -> None:
        try:
            Draft202012Validator.check_schema(self.input_schema)
        except SchemaError as exc:
            raise ConfigurationError(
                f"tool '{self.name}' declares an invalid input schema",
                detail={"tool": self.name, "error": exc.message},
            ) from exc

    async def execute(self, args: Dict[str, Any], context: "ExecutionContext") -> Any:
        validation_errors = validate_payload(args, self.input_schema)
        if validation_errors:
            logger.warning(
                "tool_input_invalid", tool=self.name, errors=validation_errors
            )
            raise ToolExecutionError(
                f"invalid input for tool '{self.name}': {'; '.join(validation_errors)}",
                detail={"tool": self.name, "errors": validation_errors},
            )
        try:
            if inspect.iscoroutinefunction(self.handler):
                return await self.handler(args, context)
            result = await asyncio.to_thread(self.handler, args, context)
            if inspect.isawaitable(result):
                result = await result
            return result
        except ToolExecutionError:
            raise
        except Exception as exc:
            logger.warning(
                "tool_execution_failed",
                tool=self.name,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ToolExecutionError(
                f"tool '{self.name}' failed: {exc}",
                detail={"tool": self.name, "error_type": type(exc).__name__},
            ) from exc


class ToolRegistry:
    """Name-keyed registry of tools and compute functions."""

    def __init__(self, tools: Iterable[Tool] = ()) -> None:
        self._tools: Dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> Tool:
        if tool.name in self._tools:
            raise ConfigurationError(
                f"tool '{tool.name}' is already registered", detail={"tool": tool.name}
            )
        self._tools[tool.name] = tool
        return tool

    def tool(
        self,
        name: Optional[str] = None,
        *,
        description: str = "",
        input_schema: Optional[Dict[str, Any]] = None,
    ) -> Callable[[ToolHandler], ToolHandler]:
        """Decorator form of :meth:`register`."""

        def decorator(func: ToolHandler) -> ToolHandler:
            self.register(
                Tool(
                    name=name or func.__name__,
                    handler=func,
                    description=description or (func.__doc__ or "").strip(),
                    input_schema=input_schema or dict(EMPTY_OBJECT_SCHEMA),
                )
            )
            return func

        return decorator

    def lookup(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def names(self) -> List[str]:
        return list(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)


def resolve_tool_specs(registry: Any, names: Iterable[str]) -> List[ToolSpec]:
    """Tool declarations for a step; every name must be registered."""

    specs: List[ToolSpec] = []
    for name in names:
        tool = registry.lookup(name)
        if tool is None:
            raise ConfigurationError(f"Tool not found: {name}", detail={"tool": name})
        specs.append(
            ToolSpec(
                name=tool.name,
                description=tool.description,
                input_schema=tool.input_schema,
            )
        )
    return specs

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Iterator, List

from ..errors import ToolExecutionFailure, ToolRegistrationError
from ..settings import get_settings

logger = logging.getLogger(__name__)

TERMINATE_TOOL_NAME = "doTerminate"


def _empty_parameters() -> Dict[str, Any]:
    return {"type": "object", "properties": {}}


@dataclass
class Tool:
    """A named, invocable operation offered to the model.

    `func` receives the parsed JSON arguments as keyword arguments and may be
    sync or async. Argument validation is the tool's own business.
    """

    name: str
    description: str
    func: Callable[..., Any]
    parameters: Dict[str, Any] = field(default_factory=_empty_parameters)
    is_terminal: bool = False

    def schema(self) -> Dict[str, Any]:
        """Return the tool schema in OpenAI function format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    async def call(self, arguments: str) -> str:
        """Invoke the tool with a raw JSON argument payload and return its text result."""
        try:
            args = json.loads(arguments) if arguments and arguments.strip() else {}
        except json.JSONDecodeError as e:
            raise ToolExecutionFailure(f"invalid arguments - {e}") from e
        if not isinstance(args, dict):
            raise ToolExecutionFailure("invalid arguments - expected a JSON object")

        if inspect.iscoroutinefunction(self.func):
            result = await self.func(**args)
        else:
            # sync tools run in a worker thread
            result = await asyncio.to_thread(self.func, **args)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, str):
            return result
        return json.dumps(result, default=str)


class ToolRegistry:
    """Flat name -> Tool bindings, resolved by exact name match."""

    def __init__(self, tools: Iterable[Tool] | None = None) -> None:
        self._tools: Dict[str, Tool] = {}
        for tool in tools or ():
            self.register(tool)

    def register(self, tool: Tool) -> None:
        """Add a tool. Duplicate names are a configuration error."""
        if not tool.name:
            raise ToolRegistrationError("Tool name must not be empty")
        if tool.name in self._tools:
            raise ToolRegistrationError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool
        logger.debug("Registered tool %s", tool.name)

    def register_all(self, tools: Iterable[Tool]) -> None:
        for tool in tools:
            self.register(tool)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> List[str]:
        return list(self._tools)

    def schemas(self) -> List[Dict[str, Any]]:
        return [tool.schema() for tool in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[Tool]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)


def get_current_datetime() -> str:
    """Return the current date, time and weekday."""
    logger.info("Time tool called")
    now = datetime.now()
    result = f"It is now {now:%Y-%m-%d} {now:%H:%M:%S} {now:%a}"
    logger.info("Time lookup done: %s", result)
    return result


def get_formatted_datetime(format: str = "") -> str:
    """Return the current time in the requested format (chinese, iso, simple)."""
    logger.info("Formatted time tool called, format: %s", format)
    now = datetime.now()
    style = (format or "").lower().strip()
    if style == "chinese":
        result = (
            f"{now.year}年{now.month:02d}月{now.day:02d}日 "
            f"{now.hour:02d}点{now.minute:02d}分{now.second:02d}秒 {now:%a}"
        )
    elif style == "iso":
        result = now.isoformat(timespec="seconds")
    elif style == "simple":
        result = now.strftime("%m-%d %H:%M")
    else:
        result = now.strftime("%Y-%m-%d %H:%M:%S %a")
    return result


def do_terminate() -> str:
    """Signal that the task is complete."""
    return "The interaction has been completed."


def get_builtin_tools(terminate_tool_name: str | None = None) -> List[Tool]:
    """Return the local tools: time lookups plus the termination tool."""
    terminate_name = (
        terminate_tool_name
        or get_settings().terminate_tool_name
        or TERMINATE_TOOL_NAME
    )
    return [
        Tool(
            name="getCurrentDateTime",
            description=(
                "Get the current date and time, including year, month, day, "
                "hours, minutes, seconds and weekday"
            ),
            func=get_current_datetime,
        ),
        Tool(
            name="getFormattedDateTime",
            description=(
                "Get the current time in a given format; supports chinese, iso "
                "and simple formats"
            ),
            func=get_formatted_datetime,
            parameters={
                "type": "object",
                "properties": {
                    "format": {
                        "type": "string",
                        "description": "Time format: chinese, iso or simple",
                    }
                },
                "required": ["format"],
            },
        ),
        Tool(
            name=terminate_name,
            description=(
                "Terminate the interaction when the request is met or when you "
                "cannot proceed further with the task. Call this once all work "
                "is finished."
            ),
            func=do_terminate,
            is_terminal=True,
        ),
    ]


def build_registry(extra_tools: Iterable[Tool] | None = None) -> ToolRegistry:
    """Build the registry of local tools plus any externally loaded ones."""
    registry = ToolRegistry(get_builtin_tools())
    if extra_tools:
        registry.register_all(extra_tools)
    return registry

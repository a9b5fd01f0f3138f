import json
import logging
import os
from typing import Any, Callable, Dict, List, Sequence

from mcp import StdioServerParameters
from mcp.client.session import ClientSession
from mcp.client.stdio import stdio_client

from .tools import Tool

logger = logging.getLogger(__name__)


def _server_params(cmd: str) -> StdioServerParameters | None:
    cmd_parts = cmd.split()
    if len(cmd_parts) < 2:
        logger.warning("Invalid MCP command format: %s", cmd)
        return None
    return StdioServerParameters(
        command=cmd_parts[0],
        args=cmd_parts[1:],
        env=dict(os.environ),
    )


def _make_caller(params: StdioServerParameters, tool_name: str) -> Callable[..., Any]:
    async def _call(**arguments: Any) -> str:
        logger.info("Calling MCP tool %s via %s", tool_name, params.command)
        async with stdio_client(params) as (read, write):
            async with ClientSession(read, write) as session:
                await session.initialize()
                result = await session.call_tool(tool_name, arguments)
        if result.content:
            return getattr(result.content[0], "text", None) or ""
        return json.dumps(result, indent=2, default=str)

    return _call


async def load_mcp_tools(commands: Sequence[str]) -> List[Tool]:
    """List the tools of each stdio MCP server and wrap them as Tool bindings.

    Servers that fail to start are skipped with a warning. Each call opens a
    fresh stdio session to the server that advertised the tool.
    """
    tools: List[Tool] = []
    for cmd in commands:
        params = _server_params(cmd)
        if params is None:
            continue
        try:
            async with stdio_client(params) as (read, write):
                async with ClientSession(read, write) as session:
                    await session.initialize()
                    tools_result = await session.list_tools()
        except (OSError, ConnectionError, TimeoutError) as e:
            logger.warning("Failed to connect to MCP server '%s': %s", cmd, e)
            continue

        for tool_info in tools_result.tools:
            parameters: Dict[str, Any] = tool_info.inputSchema or {
                "type": "object",
                "properties": {},
            }
            tools.append(
                Tool(
                    name=tool_info.name,
                    description=tool_info.description or "",
                    func=_make_caller(params, tool_info.name),
                    parameters=parameters,
                )
            )
        logger.info("Loaded %d tool(s) from MCP server '%s'", len(tools_result.tools), cmd)
    return tools

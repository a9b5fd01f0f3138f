from __future__ import annotations

"""Agent package for the ObsidianAgent tool-calling assistant.

This package exposes a service-style interface for the agent while keeping
implementation details (think/act engine, working memory, tools, MCP wiring)
organized in separate modules.
"""

from .agent import (
    ObsidianAgentService,
    get_service,
    run_agent,
    run_agent_stream,
)
from .engine import AgentEngine, AgentRun, StreamHandle, ToolCallingStrategy
from .memory import ConversationMemory
from .tools import TERMINATE_TOOL_NAME, Tool, ToolRegistry

__all__ = [
    "AgentEngine",
    "AgentRun",
    "ConversationMemory",
    "ObsidianAgentService",
    "StreamHandle",
    "TERMINATE_TOOL_NAME",
    "Tool",
    "ToolCallingStrategy",
    "ToolRegistry",
    "get_service",
    "run_agent",
    "run_agent_stream",
]

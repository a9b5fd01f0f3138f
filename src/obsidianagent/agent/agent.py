import logging
from typing import List

from ..models import RunResult
from ..services.llm import ChatModelAdapter
from ..services.message_store import RedisMessageStore, get_message_store_async
from ..settings import get_settings
from .engine import AgentEngine, StreamHandle, ToolCallingStrategy
from .mcp_tools import load_mcp_tools
from .memory import ConversationMemory
from .tools import Tool, ToolRegistry, build_registry

logger = logging.getLogger(__name__)


class ObsidianAgentService:
    """Wires the agent together: store, working memory, tools, model and engine."""

    def __init__(
        self,
        store: RedisMessageStore | None = None,
        model: ChatModelAdapter | None = None,
        registry: ToolRegistry | None = None,
    ) -> None:
        self._store = store
        self._model = model
        self._registry = registry
        self._engine: AgentEngine | None = None
        self._memory: ConversationMemory | None = None

    async def startup(self, extra_tools: List[Tool] | None = None) -> None:
        """Connect the store, load MCP tools and build the engine. Idempotent."""
        if self._engine is not None:
            return
        settings = get_settings()
        if self._store is None:
            self._store = await get_message_store_async()
            if self._store is None:
                logger.info("No durable message store configured; using working memory only")
        if self._registry is None:
            tools: List[Tool] = list(extra_tools or [])
            commands = settings.mcp_commands()
            if commands:
                tools.extend(await load_mcp_tools(commands))
            self._registry = build_registry(tools)
        logger.info("Registered tools: %s", ", ".join(self._registry.names()))
        if self._model is None:
            self._model = ChatModelAdapter()

        self._memory = ConversationMemory(store=self._store)
        strategy = ToolCallingStrategy(
            model=self._model,
            registry=self._registry,
            memory=self._memory,
        )
        self._engine = AgentEngine(strategy=strategy, memory=self._memory)

    @property
    def engine(self) -> AgentEngine:
        if self._engine is None:
            raise RuntimeError("Agent service not started")
        return self._engine

    @property
    def memory(self) -> ConversationMemory:
        if self._memory is None:
            raise RuntimeError("Agent service not started")
        return self._memory

    @property
    def store(self) -> RedisMessageStore | None:
        return self._store

    @property
    def model(self) -> ChatModelAdapter:
        if self._model is None:
            raise RuntimeError("Agent service not started")
        return self._model

    @property
    def registry(self) -> ToolRegistry:
        if self._registry is None:
            raise RuntimeError("Agent service not started")
        return self._registry

    async def run(self, session_id: str, user_message: str) -> RunResult:
        await self.startup()
        return await self.engine.execute(session_id, user_message)

    async def run_stream(
        self, session_id: str, user_message: str, timeout: float | None = None
    ) -> StreamHandle:
        await self.startup()
        if timeout is None:
            timeout = get_settings().stream_timeout_seconds
        return self.engine.run_stream(session_id, user_message, timeout=timeout)


_SERVICE = ObsidianAgentService()


def get_service() -> ObsidianAgentService:
    return _SERVICE


async def run_agent(session_id: str, user_message: str) -> RunResult:
    return await _SERVICE.run(session_id, user_message)


async def run_agent_stream(session_id: str, user_message: str) -> StreamHandle:
    return await _SERVICE.run_stream(session_id, user_message)


__all__ = [
    "ObsidianAgentService",
    "get_service",
    "run_agent",
    "run_agent_stream",
]

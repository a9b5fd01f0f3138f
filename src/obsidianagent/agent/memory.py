import asyncio
import logging
from typing import Dict, List, Optional, Sequence, Set

from redis.exceptions import RedisError

from ..errors import MessageStoreError
from ..models import Message, MessageType, ToolCall, ToolResponse
from ..services.message_store import RedisMessageStore
from ..settings import get_settings

logger = logging.getLogger(__name__)


def validate_message_chain(messages: Sequence[Message]) -> List[int]:
    """Return indices of tool-call-bearing assistant messages with no later tool result.

    Violations are logged as warnings; nothing is raised.
    """
    violations: List[int] = []
    for i, msg in enumerate(messages):
        if not msg.has_tool_calls:
            continue
        if not any(m.type is MessageType.TOOL for m in messages[i + 1:]):
            logger.warning(
                "Missing tool response after assistant message with tool calls at index %d",
                i,
            )
            violations.append(i)
    return violations


def window_messages(
    messages: Sequence[Message], threshold: int, keep: int
) -> List[Message]:
    """Keep a leading system message plus the most recent `keep` entries once over `threshold`."""
    if len(messages) <= threshold:
        return list(messages)
    truncated: List[Message] = []
    if messages and messages[0].type is MessageType.SYSTEM:
        truncated.append(messages[0])
    truncated.extend(messages[-keep:] if keep > 0 else [])
    logger.info("Truncated messages from %d to %d", len(messages), len(truncated))
    return truncated


class ConversationMemory:
    """Per-session working memory mirrored to a durable message store.

    The in-process cache is authoritative for the current run: after the first
    load, every read is served from it and every append is written to it first,
    then mirrored to the store. Store failures are logged, never raised, and
    the session is flagged as degraded.
    """

    def __init__(
        self,
        store: RedisMessageStore | None = None,
        load_limit: int | None = None,
        window_threshold: int | None = None,
        window_keep: int | None = None,
    ) -> None:
        settings = get_settings()
        self._store = store
        self._load_limit = (
            settings.history_load_limit if load_limit is None else load_limit
        )
        self._window_threshold = (
            settings.history_window_threshold
            if window_threshold is None
            else window_threshold
        )
        self._window_keep = (
            settings.history_window_keep if window_keep is None else window_keep
        )
        self._working: Dict[str, List[Message]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._degraded: Set[str] = set()

    @property
    def store(self) -> RedisMessageStore | None:
        return self._store

    def _lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    async def _load(self, session_id: str) -> List[Message]:
        working = self._working.get(session_id)
        if working is not None:
            return working
        history: List[Message] = []
        if self._store is not None:
            try:
                history = await self._store.load_recent(session_id, self._load_limit)
            except RedisError as e:
                logger.warning("Durable load failed for session %s: %s", session_id, e)
        logger.info(
            "Loaded %d messages from persistent memory for session %s",
            len(history),
            session_id,
        )
        working = self._working[session_id] = list(history)
        return working

    async def get_or_load(self, session_id: str) -> List[Message]:
        """Return the live working memory of a session, loading it once from the store."""
        working = self._working.get(session_id)
        if working is not None:
            return working
        async with self._lock(session_id):
            return await self._load(session_id)

    async def _persist(self, session_id: str, messages: Sequence[Message]) -> None:
        if self._store is None:
            return
        try:
            ok = await self._store.append(session_id, messages)
        except MessageStoreError as e:
            logger.warning("Message serialization failed for session %s: %s", session_id, e)
            ok = False
        except RedisError as e:
            logger.warning("Durable write failed for session %s: %s", session_id, e)
            ok = False
        if not ok:
            self._degraded.add(session_id)
            logger.warning(
                "Failed to persist %d message(s) for session %s; keeping working memory only",
                len(messages),
                session_id,
            )

    async def _append(self, session_id: str, messages: Sequence[Message]) -> None:
        async with self._lock(session_id):
            working = await self._load(session_id)
            working.extend(messages)
            await self._persist(session_id, messages)

    async def append_user(self, session_id: str, content: str) -> Message:
        message = Message.user(content)
        await self._append(session_id, [message])
        logger.debug("Added user message to session %s", session_id)
        return message

    async def append_assistant(
        self,
        session_id: str,
        content: Optional[str],
        tool_calls: Optional[Sequence[ToolCall]] = None,
    ) -> Message:
        message = Message.assistant(content, list(tool_calls or ()))
        await self._append(session_id, [message])
        logger.debug(
            "Added assistant message with %d tool calls to session %s",
            len(message.tool_calls),
            session_id,
        )
        return message

    async def append_tool_results(
        self, session_id: str, responses: Sequence[ToolResponse]
    ) -> Message | None:
        """Append all responses of one batch as a single tool message."""
        if not responses:
            return None
        message = Message.tool_results(list(responses))
        await self._append(session_id, [message])
        logger.debug("Added %d tool responses to session %s", len(responses), session_id)
        return message

    async def get_history_for_model(self, session_id: str) -> List[Message]:
        """Return a validated, windowed copy of the working memory."""
        working = await self.get_or_load(session_id)
        validate_message_chain(working)
        return window_messages(working, self._window_threshold, self._window_keep)

    def is_degraded(self, session_id: str) -> bool:
        """True if any durable write for the session failed in this process."""
        return session_id in self._degraded

    def has_session(self, session_id: str) -> bool:
        return session_id in self._working

    def clear(self, session_id: str) -> None:
        """Evict the working memory of a session. The durable log is untouched."""
        self._working.pop(session_id, None)
        self._degraded.discard(session_id)
        lock = self._locks.get(session_id)
        if lock is not None and not lock.locked():
            del self._locks[session_id]
        logger.info("Cleared working memory for session %s", session_id)

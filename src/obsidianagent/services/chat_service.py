import asyncio
import logging
import re
import uuid
from datetime import datetime
from typing import Any, Dict, List, Set

from openai import OpenAIError

from ..agent.memory import ConversationMemory
from ..errors import InvalidInputError, StoreUnavailableError
from ..models import Message
from ..settings import get_settings
from .llm import ChatModelAdapter
from .message_store import RedisMessageStore

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New chat"

_TITLE_STRIP_RE = re.compile(r"[\"'“”‘’《》【】（）()\[\]]")
_WHITESPACE_RE = re.compile(r"\s+")


def clean_title(title: str | None, max_length: int | None = None) -> str:
    """Strip quotes/brackets, collapse whitespace and cap the length."""
    if title is None:
        return DEFAULT_TITLE
    max_length = max_length or get_settings().title_max_length
    cleaned = _WHITESPACE_RE.sub(" ", _TITLE_STRIP_RE.sub("", title.strip())).strip()
    return cleaned[:max_length]


def default_title() -> str:
    return f"Chat {datetime.now():%m-%d %H:%M}"


def _message_to_dict(message: Message) -> Dict[str, Any]:
    return {
        "id": message.id,
        "type": message.type.value,
        "content": message.text,
        "tool_calls": [
            {"id": tc.id, "name": tc.name, "arguments": tc.arguments}
            for tc in message.tool_calls
        ],
        "timestamp": message.created_at.isoformat(),
    }


class ChatService:
    """Session management and title generation around the agent engine."""

    def __init__(
        self,
        store: RedisMessageStore | None,
        memory: ConversationMemory,
        model: ChatModelAdapter,
    ) -> None:
        self._store = store
        self._memory = memory
        self._model = model
        self._background: Set[asyncio.Task[None]] = set()

    def _require_store(self) -> RedisMessageStore:
        if self._store is None:
            raise StoreUnavailableError("Durable message store is not configured")
        return self._store

    async def create_session(self, title: str | None = None) -> str:
        store = self._require_store()
        session_id = str(uuid.uuid4())
        logger.info("Creating new session: %s", session_id)
        cleaned = clean_title(title) if title and title.strip() else ""
        await store.set_title(session_id, cleaned)
        return session_id

    async def list_sessions(self, limit: int = 100) -> List[Dict[str, Any]]:
        store = self._require_store()
        sessions = []
        for info in await store.list_sessions(limit):
            data = info.to_dict()
            data["title"] = info.title or DEFAULT_TITLE
            sessions.append(data)
        return sessions

    async def get_session_details(self, session_id: str) -> Dict[str, Any] | None:
        store = self._require_store()
        info = await store.get_session_info(session_id)
        if info is None:
            return None
        data = info.to_dict()
        data["title"] = info.title or DEFAULT_TITLE
        return data

    async def update_title(self, session_id: str, title: str) -> str:
        if title is None or not title.strip():
            raise InvalidInputError("Title must not be empty")
        store = self._require_store()
        cleaned = clean_title(title)
        await store.set_title(session_id, cleaned)
        logger.info("Updated title for session %s: %s", session_id, cleaned)
        return cleaned

    async def delete_session(self, session_id: str) -> bool:
        store = self._require_store()
        deleted = await store.delete_session(session_id)
        self._memory.clear(session_id)
        logger.info("Deleted session: %s", session_id)
        return deleted

    async def clear_history(self, session_id: str) -> bool:
        """Delete all messages of a session but keep its title."""
        store = self._require_store()
        title = await store.get_title(session_id)
        deleted = await store.delete_session(session_id)
        if title is not None:
            await store.set_title(session_id, title)
        self._memory.clear(session_id)
        logger.info("Cleared history for session: %s", session_id)
        return deleted

    async def get_messages(self, session_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        if self._store is None:
            messages = list(await self._memory.get_or_load(session_id))[-limit:]
        else:
            messages = await self._store.load_recent(session_id, limit)
        return [_message_to_dict(m) for m in messages]

    async def search_messages(
        self, keyword: str, limit: int = 20, session_id: str | None = None
    ) -> List[Dict[str, Any]]:
        store = self._require_store()
        return await store.search_messages(keyword, limit, session_id=session_id)

    async def get_statistics(self) -> Dict[str, Any]:
        store = self._require_store()
        return await store.get_statistics()

    async def ensure_title(self, session_id: str, first_message: str) -> str | None:
        """Generate and store a title unless the session already has one."""
        if self._store is None:
            return None
        existing = await self._store.get_title(session_id)
        if existing and existing.strip():
            return existing

        settings = get_settings()
        logger.info("Generating title for session: %s", session_id)
        try:
            raw = await self._model.complete(
                settings.title_system_prompt,
                f"Generate a title for this user message: {first_message}",
                model=settings.title_model,
            )
            title = clean_title(raw) or default_title()
        except (OpenAIError, OSError, TimeoutError) as e:
            logger.error("Failed to generate title for session %s: %s", session_id, e)
            title = default_title()

        await self._store.set_title(session_id, title)
        logger.info("Generated title for session %s: %s", session_id, title)
        return title

    def schedule_title(self, session_id: str, first_message: str) -> asyncio.Task[None] | None:
        """Run ensure_title in the background."""
        if self._store is None:
            return None

        async def _generate() -> None:
            await self.ensure_title(session_id, first_message)

        task = asyncio.create_task(_generate())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

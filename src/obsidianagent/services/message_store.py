import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Sequence

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..errors import MessageStoreError
from ..models import Message, SessionInfo
from ..settings import get_settings
from .redis import RedisCrudService, get_redis_crud_service

logger = logging.getLogger(__name__)

KEY_PREFIX = "chat:"
SESSIONS_INDEX_KEY = f"{KEY_PREFIX}sessions"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        return None


def _encode(message: Message) -> str:
    try:
        return json.dumps(message.to_dict())
    except (TypeError, ValueError) as e:
        raise MessageStoreError(f"Message serialization failed: {e}") from e


def _decode(raw: str) -> Message:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise MessageStoreError(f"Stored message is not JSON: {e}") from e
    if not isinstance(data, dict):
        raise MessageStoreError("Stored message is not an object")
    return Message.from_dict(data)


class RedisMessageStore:
    """Durable, append-only message log per session, backed by Redis.

    Layout:
        chat:session:{id}            hash  (title, message_count, created_at, updated_at)
        chat:session:{id}:messages   list  (JSON messages, oldest first)
        chat:sessions                zset  (session ids scored by updated_at)
    """

    def __init__(self, redis_crud: RedisCrudService, ttl_seconds: int = 0) -> None:
        self._redis = redis_crud
        self._ttl = ttl_seconds

    def _session_key(self, session_id: str) -> str:
        return f"{KEY_PREFIX}session:{session_id}"

    def _messages_key(self, session_id: str) -> str:
        return f"{KEY_PREFIX}session:{session_id}:messages"

    async def _ensure_session(self, session_id: str) -> None:
        await self._redis.hsetnx(
            self._session_key(session_id), "created_at", _now().isoformat()
        )

    async def _touch(self, session_id: str, extra: Dict[str, str] | None = None) -> bool:
        now = _now()
        mapping = {"session_id": session_id, "updated_at": now.isoformat()}
        if extra:
            mapping.update(extra)
        ok = await self._redis.hset(
            self._session_key(session_id), mapping, ttl_seconds=self._ttl
        )
        indexed = await self._redis.zadd(SESSIONS_INDEX_KEY, session_id, now.timestamp())
        return ok and indexed

    async def append(self, session_id: str, messages: Sequence[Message]) -> bool:
        """Append messages to the session log, creating the session lazily.

        Returns True when every write succeeded.
        """
        if not session_id or not session_id.strip():
            logger.warning("Empty session id; skipping message persistence")
            return False
        if not messages:
            return True
        payloads = [_encode(m) for m in messages]
        await self._ensure_session(session_id)
        ok = await self._redis.rpush(
            self._messages_key(session_id), *payloads, ttl_seconds=self._ttl
        )
        if not ok:
            return False
        count = await self._redis.llen(self._messages_key(session_id))
        touched = await self._touch(session_id, {"message_count": str(count)})
        logger.debug("Appended %d message(s) to session %s", len(messages), session_id)
        return touched

    async def load_recent(self, session_id: str, n: int) -> List[Message]:
        """Return the most recent n messages of a session, oldest first."""
        if not session_id or not session_id.strip():
            logger.warning("Empty session id; returning no messages")
            return []
        if n <= 0:
            return []
        rows = await self._redis.lrange(self._messages_key(session_id), -n, -1)
        messages: List[Message] = []
        for raw in rows:
            try:
                messages.append(_decode(raw))
            except MessageStoreError as e:
                logger.warning("Skipping undecodable message in %s: %s", session_id, e)
        logger.debug("Loaded %d message(s) from session %s", len(messages), session_id)
        return messages

    async def delete_session(self, session_id: str) -> bool:
        """Remove the session, its messages and its index entry in one transaction."""
        if not session_id or not session_id.strip():
            logger.warning("Empty session id; skipping delete")
            return False
        return await self._redis.delete(
            self._session_key(session_id),
            self._messages_key(session_id),
            unindex=(SESSIONS_INDEX_KEY, session_id),
        )

    async def set_title(self, session_id: str, title: str) -> bool:
        await self._ensure_session(session_id)
        return await self._touch(session_id, {"title": title})

    async def get_title(self, session_id: str) -> str | None:
        """Return the session title ("" when untitled), or None if the session is unknown."""
        data = await self._redis.hgetall(self._session_key(session_id))
        if not data:
            return None
        return data.get("title", "")

    async def get_session_info(self, session_id: str) -> SessionInfo | None:
        data = await self._redis.hgetall(self._session_key(session_id))
        if not data:
            return None
        return SessionInfo(
            session_id=session_id,
            title=data.get("title", ""),
            message_count=int(data.get("message_count", 0) or 0),
            created_at=_parse_dt(data.get("created_at")),
            updated_at=_parse_dt(data.get("updated_at")),
        )

    async def list_sessions(self, limit: int = 100) -> List[SessionInfo]:
        """Return sessions, most recently updated first."""
        ids = await self._redis.zrevrange(SESSIONS_INDEX_KEY, 0, max(limit, 1) - 1)
        sessions: List[SessionInfo] = []
        for session_id in ids:
            info = await self.get_session_info(session_id)
            if info is None:
                # expired via TTL; drop the dangling index entry
                await self._redis.zrem(SESSIONS_INDEX_KEY, session_id)
                continue
            sessions.append(info)
        return sessions

    async def search_messages(
        self,
        keyword: str,
        limit: int = 20,
        session_id: str | None = None,
    ) -> List[Dict[str, Any]]:
        """Case-insensitive substring search over stored message text."""
        needle = keyword.strip().lower()
        if not needle:
            return []
        if session_id:
            session_ids = [session_id]
        else:
            session_ids = await self._redis.zrevrange(SESSIONS_INDEX_KEY, 0, -1)
        results: List[Dict[str, Any]] = []
        for sid in session_ids:
            for raw in await self._redis.lrange(self._messages_key(sid), 0, -1):
                try:
                    message = _decode(raw)
                except MessageStoreError:
                    continue
                if needle in message.text.lower():
                    results.append(
                        {
                            "session_id": sid,
                            "message_id": message.id,
                            "type": message.type.value,
                            "content": message.text,
                            "timestamp": message.created_at.isoformat(),
                        }
                    )
                    if len(results) >= limit:
                        return results
        return results

    async def get_statistics(self) -> Dict[str, Any]:
        session_ids = await self._redis.zrevrange(SESSIONS_INDEX_KEY, 0, -1)
        total_messages = 0
        for sid in session_ids:
            total_messages += await self._redis.llen(self._messages_key(sid))
        total_sessions = len(session_ids)
        return {
            "total_sessions": total_sessions,
            "total_messages": total_messages,
            "average_messages_per_session": (
                total_messages / total_sessions if total_sessions else 0.0
            ),
        }


# Lazy singleton for optional async init (connect to Redis)
_message_store_instance: RedisMessageStore | None = None


async def get_message_store_async() -> RedisMessageStore | None:
    """Return the message store after ensuring Redis is connected. Cached."""
    global _message_store_instance
    if _message_store_instance is not None:
        return _message_store_instance
    redis_crud = get_redis_crud_service()
    if redis_crud is None:
        return None
    try:
        await redis_crud.connect()
    except (RedisConnectionError, RedisTimeoutError, ConnectionError, TimeoutError) as e:
        logger.warning("Message store unavailable (Redis): %s", e)
        return None
    _message_store_instance = RedisMessageStore(
        redis_crud=redis_crud,
        ttl_seconds=get_settings().session_ttl_seconds,
    )
    return _message_store_instance


async def close_message_store() -> None:
    """Close the Redis connection used by the message store. Idempotent."""
    global _message_store_instance
    if _message_store_instance is not None:
        await _message_store_instance._redis.close()
        _message_store_instance = None
        logger.debug("Message store (Redis) closed")

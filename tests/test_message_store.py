import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from obsidianagent.errors import MessageStoreError
from obsidianagent.models import Message, MessageType, ToolCall, ToolResponse
from obsidianagent.services.message_store import (
    SESSIONS_INDEX_KEY,
    RedisMessageStore,
    get_message_store_async,
)
from obsidianagent.services.redis import RedisCrudService


@pytest.fixture
def mock_redis_crud() -> MagicMock:
    """Mock Redis CRUD with async list/hash/zset operations."""
    m = MagicMock(spec=RedisCrudService)
    m.rpush = AsyncMock(return_value=True)
    m.lrange = AsyncMock(return_value=[])
    m.llen = AsyncMock(return_value=0)
    m.hset = AsyncMock(return_value=True)
    m.hsetnx = AsyncMock(return_value=True)
    m.hgetall = AsyncMock(return_value={})
    m.zadd = AsyncMock(return_value=True)
    m.zrem = AsyncMock(return_value=True)
    m.zrevrange = AsyncMock(return_value=[])
    m.delete = AsyncMock(return_value=True)
    return m


@pytest.fixture
def store(mock_redis_crud: MagicMock) -> RedisMessageStore:
    """RedisMessageStore with mocked Redis and TTL 3600."""
    return RedisMessageStore(redis_crud=mock_redis_crud, ttl_seconds=3600)


@pytest.mark.asyncio
async def test_append_pushes_json_and_updates_session(
    store: RedisMessageStore, mock_redis_crud: MagicMock
) -> None:
    """append writes JSON rows, creates the session lazily and refreshes its count."""
    mock_redis_crud.llen.return_value = 2
    messages = [
        Message.user("hi"),
        Message.assistant(None, [ToolCall(id="c1", name="getCurrentDateTime")]),
    ]
    ok = await store.append("s1", messages)

    assert ok is True
    mock_redis_crud.hsetnx.assert_awaited_once()
    assert mock_redis_crud.hsetnx.call_args[0][:2] == ("chat:session:s1", "created_at")

    key, *payloads = mock_redis_crud.rpush.call_args[0]
    assert key == "chat:session:s1:messages"
    assert json.loads(payloads[0])["content"] == "hi"
    assert json.loads(payloads[1])["tool_calls"][0]["name"] == "getCurrentDateTime"
    assert mock_redis_crud.rpush.call_args[1]["ttl_seconds"] == 3600

    mapping = mock_redis_crud.hset.call_args[0][1]
    assert mapping["message_count"] == "2"
    assert mock_redis_crud.zadd.call_args[0][:2] == (SESSIONS_INDEX_KEY, "s1")


@pytest.mark.asyncio
async def test_append_reports_failed_write(
    store: RedisMessageStore, mock_redis_crud: MagicMock
) -> None:
    """append returns False when the list push fails."""
    mock_redis_crud.rpush.return_value = False
    assert await store.append("s1", [Message.user("hi")]) is False
    mock_redis_crud.hset.assert_not_called()


@pytest.mark.asyncio
async def test_append_skips_blank_session(
    store: RedisMessageStore, mock_redis_crud: MagicMock
) -> None:
    """append with an empty session id writes nothing."""
    assert await store.append("  ", [Message.user("hi")]) is False
    mock_redis_crud.rpush.assert_not_called()


@pytest.mark.asyncio
async def test_load_recent_oldest_first(
    store: RedisMessageStore, mock_redis_crud: MagicMock
) -> None:
    """load_recent reads the tail of the list and keeps its order."""
    rows = [
        json.dumps(Message.user("first").to_dict()),
        json.dumps(
            Message.tool_results([ToolResponse(id="c1", name="t", response_data="ok")]).to_dict()
        ),
    ]
    mock_redis_crud.lrange.return_value = rows

    messages = await store.load_recent("s1", 50)

    mock_redis_crud.lrange.assert_awaited_once_with("chat:session:s1:messages", -50, -1)
    assert [m.type for m in messages] == [MessageType.USER, MessageType.TOOL]
    assert messages[0].content == "first"
    assert messages[1].responses[0].response_data == "ok"


@pytest.mark.asyncio
async def test_load_recent_skips_bad_rows(
    store: RedisMessageStore, mock_redis_crud: MagicMock
) -> None:
    """Undecodable rows are skipped instead of failing the load."""
    mock_redis_crud.lrange.return_value = [
        "not json",
        json.dumps({"type": "bogus"}),
        json.dumps(Message.user("ok").to_dict()),
    ]
    messages = await store.load_recent("s1", 10)
    assert [m.content for m in messages] == ["ok"]


@pytest.mark.asyncio
async def test_delete_session_removes_keys_and_index(
    store: RedisMessageStore, mock_redis_crud: MagicMock
) -> None:
    """delete_session drops hash, list and index entry in one transactional delete."""
    assert await store.delete_session("s1") is True
    mock_redis_crud.delete.assert_awaited_once_with(
        "chat:session:s1",
        "chat:session:s1:messages",
        unindex=(SESSIONS_INDEX_KEY, "s1"),
    )
    mock_redis_crud.zrem.assert_not_called()


@pytest.mark.asyncio
async def test_get_title_unknown_session(
    store: RedisMessageStore, mock_redis_crud: MagicMock
) -> None:
    """get_title returns None for unknown sessions and "" for untitled ones."""
    assert await store.get_title("nope") is None
    mock_redis_crud.hgetall.return_value = {"created_at": "2024-01-01T00:00:00+00:00"}
    assert await store.get_title("s1") == ""


@pytest.mark.asyncio
async def test_list_sessions_drops_expired_entries(
    store: RedisMessageStore, mock_redis_crud: MagicMock
) -> None:
    """Sessions whose hash expired are removed from the index while listing."""
    mock_redis_crud.zrevrange.return_value = ["s2", "gone"]

    async def hgetall(key: str) -> dict:
        if key == "chat:session:s2":
            return {"title": "Plans", "message_count": "4"}
        return {}

    mock_redis_crud.hgetall.side_effect = hgetall
    sessions = await store.list_sessions()

    assert [s.session_id for s in sessions] == ["s2"]
    assert sessions[0].title == "Plans"
    assert sessions[0].message_count == 4
    mock_redis_crud.zrem.assert_awaited_once_with(SESSIONS_INDEX_KEY, "gone")


@pytest.mark.asyncio
async def test_search_messages_case_insensitive(
    store: RedisMessageStore, mock_redis_crud: MagicMock
) -> None:
    """search_messages matches substrings regardless of case and honours limit."""
    mock_redis_crud.zrevrange.return_value = ["s1"]
    mock_redis_crud.lrange.return_value = [
        json.dumps(Message.user("Meeting notes for Monday").to_dict()),
        json.dumps(Message.user("unrelated").to_dict()),
        json.dumps(Message.user("another meeting").to_dict()),
    ]
    results = await store.search_messages("MEETING", limit=1)
    assert len(results) == 1
    assert results[0]["session_id"] == "s1"
    assert results[0]["content"] == "Meeting notes for Monday"


@pytest.mark.asyncio
async def test_get_statistics(store: RedisMessageStore, mock_redis_crud: MagicMock) -> None:
    """Statistics aggregate sessions and message counts."""
    mock_redis_crud.zrevrange.return_value = ["a", "b"]
    mock_redis_crud.llen.side_effect = [3, 5]
    stats = await store.get_statistics()
    assert stats == {
        "total_sessions": 2,
        "total_messages": 8,
        "average_messages_per_session": 4.0,
    }


def test_message_from_dict_rejects_bad_type() -> None:
    """Unknown message types surface as MessageStoreError."""
    with pytest.raises(MessageStoreError):
        Message.from_dict({"type": "robot", "content": "x"})


@pytest.mark.asyncio
async def test_get_message_store_async_without_redis() -> None:
    """No store is built when redis_url is not configured."""
    with patch(
        "obsidianagent.services.message_store.get_redis_crud_service", return_value=None
    ):
        assert await get_message_store_async() is None

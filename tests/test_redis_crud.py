from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from obsidianagent.services.redis import RedisCrudService, get_redis_crud_service


def _pipeline_mock() -> MagicMock:
    """Pipeline usable as `async with client.pipeline(...) as pipe`."""
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[1])
    pipe.__aenter__ = AsyncMock(return_value=pipe)
    pipe.__aexit__ = AsyncMock(return_value=False)
    return pipe


@pytest.fixture
def mock_redis() -> MagicMock:
    """Mock Redis client with async methods."""
    m = MagicMock()
    m.get = AsyncMock(return_value=None)
    m.set = AsyncMock(return_value=True)
    m.setex = AsyncMock(return_value=True)
    m.exists = AsyncMock(return_value=0)
    m.ping = AsyncMock(return_value=True)
    m.aclose = AsyncMock(return_value=None)
    m.lrange = AsyncMock(return_value=[])
    m.llen = AsyncMock(return_value=0)
    m.hgetall = AsyncMock(return_value={})
    m.hsetnx = AsyncMock(return_value=1)
    m.zadd = AsyncMock(return_value=1)
    m.zrem = AsyncMock(return_value=1)
    m.zrevrange = AsyncMock(return_value=[])
    m.zcard = AsyncMock(return_value=0)
    m.pipe = _pipeline_mock()
    m.pipeline = MagicMock(return_value=m.pipe)
    return m


@pytest.fixture
def svc(mock_redis: MagicMock) -> RedisCrudService:
    s = RedisCrudService("redis://localhost:6379/0")
    s._client = mock_redis
    return s


@pytest.mark.asyncio
async def test_redis_crud_get_missing(mock_redis: MagicMock) -> None:
    """get returns None when key is missing."""
    mock_redis.get.return_value = None
    with patch("obsidianagent.services.redis.Redis") as redis_cls:
        redis_cls.from_url.return_value = mock_redis
        svc = RedisCrudService("redis://localhost:6379/0")
        svc._client = mock_redis
        val = await svc.get("missing")
        assert val is None
        mock_redis.get.assert_called_once_with("missing")


@pytest.mark.asyncio
async def test_redis_crud_get_present(svc: RedisCrudService, mock_redis: MagicMock) -> None:
    """get returns string value when key exists."""
    mock_redis.get.return_value = "stored_value"
    assert await svc.get("key") == "stored_value"


@pytest.mark.asyncio
async def test_redis_crud_set_with_ttl(svc: RedisCrudService, mock_redis: MagicMock) -> None:
    """set with ttl_seconds calls setex()."""
    ok = await svc.set("k", "v", ttl_seconds=60)
    assert ok is True
    mock_redis.setex.assert_called_once_with("k", 60, "v")
    mock_redis.set.assert_not_called()


@pytest.mark.asyncio
async def test_redis_crud_delete_is_transactional(
    svc: RedisCrudService, mock_redis: MagicMock
) -> None:
    """delete removes all keys inside one MULTI/EXEC pipeline."""
    ok = await svc.delete("a", "b")
    assert ok is True
    mock_redis.pipeline.assert_called_once_with(transaction=True)
    mock_redis.pipe.delete.assert_called_once_with("a", "b")
    mock_redis.pipe.execute.assert_awaited_once()


@pytest.mark.asyncio
async def test_redis_crud_delete_with_unindex(
    svc: RedisCrudService, mock_redis: MagicMock
) -> None:
    """delete queues the sorted-set removal in the same transaction."""
    assert await svc.delete("a", "b", unindex=("idx", "m")) is True
    mock_redis.pipeline.assert_called_once_with(transaction=True)
    mock_redis.pipe.delete.assert_called_once_with("a", "b")
    mock_redis.pipe.zrem.assert_called_once_with("idx", "m")
    mock_redis.pipe.execute.assert_awaited_once()


@pytest.mark.asyncio
async def test_redis_crud_delete_failure_returns_false(
    svc: RedisCrudService, mock_redis: MagicMock
) -> None:
    """delete returns False when Redis is unreachable."""
    mock_redis.pipe.execute.side_effect = RedisConnectionError("down")
    assert await svc.delete("a") is False


@pytest.mark.asyncio
async def test_redis_crud_rpush_with_ttl(svc: RedisCrudService, mock_redis: MagicMock) -> None:
    """rpush appends values and refreshes the TTL in the same transaction."""
    ok = await svc.rpush("list", "x", "y", ttl_seconds=30)
    assert ok is True
    mock_redis.pipe.rpush.assert_called_once_with("list", "x", "y")
    mock_redis.pipe.expire.assert_called_once_with("list", 30)


@pytest.mark.asyncio
async def test_redis_crud_rpush_without_ttl(svc: RedisCrudService, mock_redis: MagicMock) -> None:
    """rpush does not set an expiry when no TTL is given."""
    assert await svc.rpush("list", "x") is True
    mock_redis.pipe.expire.assert_not_called()


@pytest.mark.asyncio
async def test_redis_crud_lrange(svc: RedisCrudService, mock_redis: MagicMock) -> None:
    """lrange returns list items as strings."""
    mock_redis.lrange.return_value = ["a", "b"]
    assert await svc.lrange("list", -2, -1) == ["a", "b"]
    mock_redis.lrange.assert_called_once_with("list", -2, -1)


@pytest.mark.asyncio
async def test_redis_crud_lrange_error(svc: RedisCrudService, mock_redis: MagicMock) -> None:
    """lrange returns an empty list on connection errors."""
    mock_redis.lrange.side_effect = RedisConnectionError("down")
    assert await svc.lrange("list", 0, -1) == []


@pytest.mark.asyncio
async def test_redis_crud_hgetall(svc: RedisCrudService, mock_redis: MagicMock) -> None:
    """hgetall returns the hash as a dict."""
    mock_redis.hgetall.return_value = {"title": "t"}
    assert await svc.hgetall("h") == {"title": "t"}


@pytest.mark.asyncio
async def test_redis_crud_exists(svc: RedisCrudService, mock_redis: MagicMock) -> None:
    """exists returns True when key exists."""
    mock_redis.exists.return_value = 1
    assert await svc.exists("x") is True
    mock_redis.exists.return_value = 0
    assert await svc.exists("y") is False


@pytest.mark.asyncio
async def test_redis_crud_when_not_connected() -> None:
    """Operations are no-ops returning falsy values when client is None."""
    svc = RedisCrudService("redis://localhost:6379/0")
    assert svc._client is None
    assert await svc.get("any") is None
    assert await svc.rpush("k", "v") is False
    assert await svc.lrange("k", 0, -1) == []
    assert await svc.hgetall("k") == {}


@pytest.mark.asyncio
async def test_redis_crud_connect_ping_failure(mock_redis: MagicMock) -> None:
    """connect re-raises and resets the client when ping fails."""
    mock_redis.ping.side_effect = RedisConnectionError("refused")
    with patch("obsidianagent.services.redis.Redis") as redis_cls:
        redis_cls.from_url.return_value = mock_redis
        svc = RedisCrudService("redis://localhost:6379/0")
        with pytest.raises(RedisConnectionError):
            await svc.connect()
    assert svc.client is None
    mock_redis.aclose.assert_awaited_once()


def test_get_redis_crud_service_returns_none_when_no_url() -> None:
    """get_redis_crud_service returns None when redis_url is not set."""
    with patch("obsidianagent.services.redis.get_settings") as get_settings:
        get_settings.return_value = MagicMock(redis_url=None)
        assert get_redis_crud_service() is None
        get_settings.return_value = MagicMock(redis_url="")
        assert get_redis_crud_service() is None


def test_get_redis_crud_service_returns_instance_when_url_set() -> None:
    """get_redis_crud_service returns RedisCrudService when redis_url is set."""
    with patch("obsidianagent.services.redis.get_settings") as get_settings:
        get_settings.return_value = MagicMock(redis_url="redis://localhost:6379/0")
        svc = get_redis_crud_service()
        assert svc is not None
        assert isinstance(svc, RedisCrudService)

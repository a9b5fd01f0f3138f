from unittest.mock import AsyncMock, MagicMock

import pytest
from openai import OpenAIError

from obsidianagent.agent.memory import ConversationMemory
from obsidianagent.errors import InvalidInputError, StoreUnavailableError
from obsidianagent.models import Message, SessionInfo
from obsidianagent.services.chat_service import (
    DEFAULT_TITLE,
    ChatService,
    clean_title,
)
from obsidianagent.services.llm import ChatModelAdapter
from obsidianagent.services.message_store import RedisMessageStore


@pytest.fixture
def mock_store() -> MagicMock:
    m = MagicMock(spec=RedisMessageStore)
    m.set_title = AsyncMock(return_value=True)
    m.get_title = AsyncMock(return_value="")
    m.get_session_info = AsyncMock(return_value=None)
    m.list_sessions = AsyncMock(return_value=[])
    m.delete_session = AsyncMock(return_value=True)
    m.load_recent = AsyncMock(return_value=[])
    m.search_messages = AsyncMock(return_value=[])
    m.get_statistics = AsyncMock(return_value={})
    return m


@pytest.fixture
def mock_model() -> MagicMock:
    m = MagicMock(spec=ChatModelAdapter)
    m.complete = AsyncMock(return_value="Weekly review")
    return m


@pytest.fixture
def service(mock_store: MagicMock, mock_model: MagicMock) -> ChatService:
    return ChatService(store=mock_store, memory=ConversationMemory(store=None), model=mock_model)


def test_clean_title() -> None:
    """Quotes and brackets are stripped, whitespace collapsed and length capped."""
    assert clean_title('"Weekly  review"', max_length=20) == "Weekly review"
    assert clean_title("【Plan】 (draft)", max_length=20) == "Plan draft"
    assert clean_title("abcdefghijklmnop", max_length=12) == "abcdefghijkl"
    assert clean_title(None) == DEFAULT_TITLE


@pytest.mark.asyncio
async def test_ensure_title_generates_once(
    service: ChatService, mock_store: MagicMock, mock_model: MagicMock
) -> None:
    """An untitled session gets a generated title."""
    title = await service.ensure_title("s1", "Help me plan my weekly review")
    assert title == "Weekly revie"
    mock_store.set_title.assert_awaited_once_with("s1", "Weekly revie")
    mock_model.complete.assert_awaited_once()


@pytest.mark.asyncio
async def test_ensure_title_keeps_existing(
    service: ChatService, mock_store: MagicMock, mock_model: MagicMock
) -> None:
    mock_store.get_title.return_value = "Existing"
    assert await service.ensure_title("s1", "anything") == "Existing"
    mock_model.complete.assert_not_called()
    mock_store.set_title.assert_not_called()


@pytest.mark.asyncio
async def test_ensure_title_falls_back_on_model_error(
    service: ChatService, mock_store: MagicMock, mock_model: MagicMock
) -> None:
    """Model failures fall back to a timestamped default title."""
    mock_model.complete.side_effect = OpenAIError("rate limited")
    title = await service.ensure_title("s1", "hi")
    assert title.startswith("Chat ")
    mock_store.set_title.assert_awaited_once_with("s1", title)


@pytest.mark.asyncio
async def test_update_title_rejects_blank(service: ChatService) -> None:
    with pytest.raises(InvalidInputError):
        await service.update_title("s1", "   ")


@pytest.mark.asyncio
async def test_list_sessions_default_title(service: ChatService, mock_store: MagicMock) -> None:
    """Untitled sessions are listed with the default title."""
    mock_store.list_sessions.return_value = [
        SessionInfo(session_id="a", title=""),
        SessionInfo(session_id="b", title="Notes"),
    ]
    sessions = await service.list_sessions()
    assert [s["title"] for s in sessions] == [DEFAULT_TITLE, "Notes"]


@pytest.mark.asyncio
async def test_delete_session_clears_working_memory(
    service: ChatService, mock_store: MagicMock
) -> None:
    memory = service._memory
    await memory.append_user("s1", "hello")
    assert await service.delete_session("s1") is True
    assert memory.has_session("s1") is False
    mock_store.delete_session.assert_awaited_once_with("s1")


@pytest.mark.asyncio
async def test_clear_history_keeps_title(service: ChatService, mock_store: MagicMock) -> None:
    mock_store.get_title.return_value = "Plans"
    await service.clear_history("s1")
    mock_store.delete_session.assert_awaited_once_with("s1")
    mock_store.set_title.assert_awaited_once_with("s1", "Plans")


@pytest.mark.asyncio
async def test_get_messages_from_store(service: ChatService, mock_store: MagicMock) -> None:
    mock_store.load_recent.return_value = [Message.user("hello")]
    messages = await service.get_messages("s1", limit=10)
    assert messages[0]["type"] == "user"
    assert messages[0]["content"] == "hello"
    mock_store.load_recent.assert_awaited_once_with("s1", 10)


@pytest.mark.asyncio
async def test_store_required_for_session_management(mock_model: MagicMock) -> None:
    """Session CRUD without a durable store raises StoreUnavailableError."""
    service = ChatService(store=None, memory=ConversationMemory(store=None), model=mock_model)
    with pytest.raises(StoreUnavailableError):
        await service.list_sessions()
    assert service.schedule_title("s1", "hi") is None
    await service._memory.append_user("s1", "hi")
    messages = await service.get_messages("s1")
    assert [m["content"] for m in messages] == ["hi"]

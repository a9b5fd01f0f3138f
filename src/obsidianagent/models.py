import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .errors import MessageStoreError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageType(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class AgentState(str, Enum):
    """Lifecycle of a single agent run."""

    IDLE = "idle"
    RUNNING = "running"
    FINISHED = "finished"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (AgentState.FINISHED, AgentState.ERROR)


@dataclass(frozen=True)
class ToolCall:
    """A model-proposed tool invocation. `arguments` is the raw JSON payload."""

    id: str
    name: str
    arguments: str = ""


@dataclass(frozen=True)
class ToolResponse:
    """Result of one tool call, correlated to the proposing call by `id`."""

    id: str
    name: str
    response_data: str


@dataclass(frozen=True)
class Message:
    """One immutable entry of a session's conversation log.

    Assistant messages may carry proposed tool calls (with `content` None for
    pure tool-call turns); tool messages aggregate the responses of one batch.
    """

    type: MessageType
    content: Optional[str] = None
    tool_calls: Tuple[ToolCall, ...] = ()
    responses: Tuple[ToolResponse, ...] = ()
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(type=MessageType.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(type=MessageType.USER, content=content)

    @classmethod
    def assistant(
        cls, content: Optional[str], tool_calls: Optional[List[ToolCall]] = None
    ) -> "Message":
        return cls(
            type=MessageType.ASSISTANT,
            content=content,
            tool_calls=tuple(tool_calls or ()),
        )

    @classmethod
    def tool_results(cls, responses: List[ToolResponse]) -> "Message":
        return cls(type=MessageType.TOOL, responses=tuple(responses))

    @property
    def has_tool_calls(self) -> bool:
        return self.type is MessageType.ASSISTANT and bool(self.tool_calls)

    @property
    def text(self) -> str:
        """Human-readable text of the message (tool responses joined by newline)."""
        if self.type is MessageType.TOOL:
            return "\n".join(r.response_data for r in self.responses)
        return self.content or ""

    def to_openai(self) -> List[Dict[str, Any]]:
        """Convert to OpenAI chat-completions messages.

        A tool message expands to one `role=tool` entry per response.
        """
        if self.type is MessageType.TOOL:
            return [
                {"role": "tool", "tool_call_id": r.id, "content": r.response_data}
                for r in self.responses
            ]
        if self.type is MessageType.ASSISTANT:
            msg: Dict[str, Any] = {"role": "assistant", "content": self.content}
            if self.tool_calls:
                msg["tool_calls"] = [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {"name": tc.name, "arguments": tc.arguments},
                    }
                    for tc in self.tool_calls
                ]
            return [msg]
        return [{"role": self.type.value, "content": self.content or ""}]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "content": self.content,
            "tool_calls": [
                {"id": tc.id, "name": tc.name, "arguments": tc.arguments}
                for tc in self.tool_calls
            ],
            "responses": [
                {"id": r.id, "name": r.name, "response_data": r.response_data}
                for r in self.responses
            ],
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        """Build a Message from its stored dict form (e.g. from Redis)."""
        try:
            created_raw = data.get("created_at")
            return cls(
                type=MessageType(data["type"]),
                content=data.get("content"),
                tool_calls=tuple(
                    ToolCall(
                        id=tc["id"],
                        name=tc["name"],
                        arguments=tc.get("arguments") or "",
                    )
                    for tc in data.get("tool_calls") or []
                ),
                responses=tuple(
                    ToolResponse(
                        id=r["id"], name=r["name"], response_data=r["response_data"]
                    )
                    for r in data.get("responses") or []
                ),
                id=data.get("id") or str(uuid.uuid4()),
                created_at=(
                    datetime.fromisoformat(created_raw) if created_raw else _utcnow()
                ),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise MessageStoreError(f"Invalid message data: {e}") from e


@dataclass
class SessionInfo:
    """Durable metadata of a chat session."""

    session_id: str
    title: str = ""
    message_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "title": self.title,
            "message_count": self.message_count,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class ModelResponse:
    """Structured model output: optional text plus proposed tool calls."""

    text: Optional[str] = None
    tool_calls: List[ToolCall] = field(default_factory=list)


@dataclass
class ThinkResult:
    """Outcome of one think phase.

    `fault` is set when the model call or response handling failed; the step
    then stops without acting.
    """

    should_act: bool
    text: Optional[str] = None
    fault: Optional[BaseException] = None

    @property
    def faulted(self) -> bool:
        return self.fault is not None


@dataclass
class StreamEvent:
    """One ordered event pushed to a streaming caller."""

    type: str
    data: str = ""
    step: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_final(self) -> bool:
        return self.type in ("done", "error")

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.type, "data": self.data}
        if self.step is not None:
            payload["step"] = self.step
        payload.update(self.extra)
        return payload


@dataclass
class RunResult:
    """Terminal outcome of one agent run."""

    session_id: str
    text: str
    state: AgentState
    steps: int
    durable: bool = True

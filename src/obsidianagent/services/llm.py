import logging
from typing import Any, Dict, List, Sequence

from openai import AsyncOpenAI

from ..models import Message, MessageType, ModelResponse, ToolCall
from ..settings import get_settings

logger = logging.getLogger(__name__)


def build_chat_messages(
    system_prompt: str | None, history: Sequence[Message]
) -> List[Dict[str, Any]]:
    """Flatten a system prompt plus message history into OpenAI chat messages.

    The chat API rejects unanswered tool calls and tool results without a
    preceding call, which windowing or an interrupted run can leave behind.
    Such dangling entries are dropped from the request; memory is untouched.
    """
    answered = {
        r.id for m in history if m.type is MessageType.TOOL for r in m.responses
    }
    proposed: set[str] = set()
    messages: List[Dict[str, Any]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    for msg in history:
        if msg.type is MessageType.ASSISTANT and msg.tool_calls:
            kept = [tc for tc in msg.tool_calls if tc.id in answered]
            proposed.update(tc.id for tc in kept)
            if len(kept) != len(msg.tool_calls):
                logger.debug("Dropping %d unanswered tool call(s)", len(msg.tool_calls) - len(kept))
                msg = Message.assistant(msg.content or "", kept)
        elif msg.type is MessageType.TOOL:
            responses = [r for r in msg.responses if r.id in proposed]
            if not responses:
                continue
            msg = Message.tool_results(responses)
        messages.extend(msg.to_openai())
    return messages


class ChatModelAdapter:
    """Sends system prompt + history to the chat model and returns proposed tool calls.

    Tools are only offered to the model; nothing is executed here. Dispatch
    is left to the caller.
    """

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        model: str | None = None,
        temperature: float | None = None,
    ) -> None:
        settings = get_settings()
        self._client = client or AsyncOpenAI(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            timeout=settings.model_request_timeout_seconds,
        )
        self._model = model or settings.model
        self._temperature = (
            settings.temperature if temperature is None else temperature
        )

    async def invoke(
        self,
        system_prompt: str,
        history: Sequence[Message],
        tools: Sequence[Dict[str, Any]] | None = None,
    ) -> ModelResponse:
        """Call the model once and parse its reply.

        Args:
            system_prompt: System prompt for this call.
            history: Conversation history, oldest first.
            tools: Tool schemas in OpenAI function format.

        Returns:
            ModelResponse with the assistant text (may be None) and proposed tool calls.
        """
        messages = build_chat_messages(system_prompt, history)
        kwargs: Dict[str, Any] = {
            "model": self._model,
            "messages": messages,
            "temperature": self._temperature,
        }
        if tools:
            kwargs["tools"] = list(tools)
            kwargs["tool_choice"] = "auto"

        logger.debug("Invoking model %s with %d message(s)", self._model, len(messages))
        response = await self._client.chat.completions.create(**kwargs)

        message = response.choices[0].message
        tool_calls = [
            ToolCall(
                id=tc.id,
                name=tc.function.name,
                arguments=tc.function.arguments or "",
            )
            for tc in (message.tool_calls or [])
            if tc.function and tc.function.name
        ]
        return ModelResponse(text=message.content, tool_calls=tool_calls)

    async def complete(self, system_prompt: str, user_prompt: str, model: str | None = None) -> str:
        """One-shot completion without history or tools."""
        response = await self._client.chat.completions.create(
            model=model or self._model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            temperature=self._temperature,
        )
        return response.choices[0].message.content or ""

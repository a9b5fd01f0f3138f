import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Dict, List, Optional, Protocol

from ..errors import (
    FatalStepFailure,
    InvalidInputError,
    ReasoningFailure,
    SessionBusyError,
    ToolExecutionFailure,
    ToolNotFoundFailure,
)
from ..models import (
    AgentState,
    Message,
    MessageType,
    ModelResponse,
    RunResult,
    StreamEvent,
    ThinkResult,
    ToolCall,
    ToolResponse,
)
from ..services.llm import ChatModelAdapter
from ..settings import get_settings
from .memory import ConversationMemory
from .tools import Tool, ToolRegistry

logger = logging.getLogger(__name__)

NO_ACTION_RESULT = "Thinking complete - no action needed"
NO_TOOLS_RESULT = "No tools to execute"


@dataclass
class AgentRun:
    """Per-invocation state of the think/act state machine."""

    session_id: str
    max_steps: int
    system_prompt: str
    next_step_prompt: str
    name: str = "ObsidianAgent"
    state: AgentState = AgentState.IDLE
    current_step: int = 0
    last_action_result: Optional[str] = None
    pending: Optional[ModelResponse] = None
    final_answer: Optional[str] = None
    emit: Optional[Callable[[StreamEvent], None]] = field(default=None, repr=False)

    def push(self, event: StreamEvent) -> None:
        if self.emit is not None:
            self.emit(event)

    def cleanup(self) -> None:
        """Drop run-scoped transient fields. Memory is left alone."""
        self.pending = None
        self.last_action_result = None


class ReasoningStrategy(Protocol):
    async def think(self, run: AgentRun) -> ThinkResult: ...

    async def act(self, run: AgentRun) -> str: ...


@dataclass
class _Dispatch:
    response: ToolResponse
    terminal: bool = False


class ToolCallingStrategy:
    """Think asks the model for tool calls; act dispatches them through the registry.

    The model adapter only proposes calls. Dispatch happens here so that the
    termination tool can end the run and every batch lands in memory as one
    append.
    """

    def __init__(
        self,
        model: ChatModelAdapter,
        registry: ToolRegistry,
        memory: ConversationMemory,
        tool_timeout: float | None = None,
        concurrent: bool | None = None,
    ) -> None:
        settings = get_settings()
        self.model = model
        self.registry = registry
        self.memory = memory
        self.tool_timeout = tool_timeout or settings.tool_request_timeout_seconds
        self.concurrent = (
            settings.concurrent_tool_calls if concurrent is None else concurrent
        )

    async def think(self, run: AgentRun) -> ThinkResult:
        try:
            history = await self.memory.get_history_for_model(run.session_id)
            if not history or history[-1].type is not MessageType.USER:
                history.append(Message.user(run.next_step_prompt))

            response = await self.model.invoke(
                run.system_prompt, history, self.registry.schemas()
            )
            run.pending = response
            await self.memory.append_assistant(
                run.session_id, response.text, response.tool_calls
            )
        except Exception as e:
            logger.exception("%s hit a problem while thinking: %s", run.name, e)
            run.pending = None
            fault = ReasoningFailure(str(e) or type(e).__name__)
            fault.__cause__ = e
            return ThinkResult(should_act=False, fault=fault)

        if response.text and response.text.strip():
            logger.info("%s's thoughts: %s", run.name, response.text)
            run.push(StreamEvent(type="thought", data=response.text, step=run.current_step))

        if response.tool_calls:
            logger.info("%s selected %d tool(s) to use", run.name, len(response.tool_calls))
            for tc in response.tool_calls:
                logger.info("Tool name: %s, arguments: %s", tc.name, tc.arguments)

        return ThinkResult(should_act=bool(response.tool_calls), text=response.text)

    def _resolve(self, name: str) -> Tool:
        tool = self.registry.get(name)
        if tool is None:
            raise ToolNotFoundFailure(f"Tool not found: {name}")
        return tool

    async def _dispatch(self, call: ToolCall) -> _Dispatch:
        logger.info("Executing tool: %s with args: %s", call.name, call.arguments)
        try:
            tool = self._resolve(call.name)
        except ToolNotFoundFailure as e:
            logger.warning("%s", e)
            return _Dispatch(ToolResponse(call.id, call.name, f"Error: {e}"))

        try:
            result = await asyncio.wait_for(tool.call(call.arguments), self.tool_timeout)
        except asyncio.TimeoutError:
            logger.error("Tool %s timed out after %ss", call.name, self.tool_timeout)
            return _Dispatch(
                ToolResponse(
                    call.id,
                    call.name,
                    f"Error: tool {call.name} timed out after {self.tool_timeout}s",
                )
            )
        except ToolExecutionFailure as e:
            logger.error("Error executing tool %s: %s", call.name, e)
            return _Dispatch(ToolResponse(call.id, call.name, f"Error: {e}"))
        except Exception as e:
            logger.exception("Error executing tool %s", call.name)
            return _Dispatch(ToolResponse(call.id, call.name, f"Error: {e}"))
        return _Dispatch(ToolResponse(call.id, call.name, result), terminal=tool.is_terminal)

    async def act(self, run: AgentRun) -> str:
        response = run.pending
        if response is None or not response.tool_calls:
            return NO_TOOLS_RESULT

        calls = response.tool_calls
        if self.concurrent:
            outcomes = list(await asyncio.gather(*(self._dispatch(c) for c in calls)))
        else:
            outcomes = [await self._dispatch(c) for c in calls]

        responses = [o.response for o in outcomes]
        await self.memory.append_tool_results(run.session_id, responses)

        for r in responses:
            run.push(
                StreamEvent(
                    type="tool",
                    data=r.response_data,
                    step=run.current_step,
                    extra={"tool": r.name, "tool_call_id": r.id},
                )
            )

        if any(o.terminal for o in outcomes):
            logger.info("%s received the termination signal", run.name)
            run.state = AgentState.FINISHED

        final_results = "\n".join(
            f"Tool {r.name} returned: {r.response_data}" for r in responses
        )
        logger.info("Tool execution results:\n%s", final_results)
        return final_results


class StreamHandle:
    """Caller side of a streaming run.

    The engine pushes events without waiting on the consumer; iteration ends
    after the single `done`/`error` event or when the stream deadline passes.
    A caller that stops reading does not stop the run.
    """

    def __init__(self, session_id: str, timeout: float | None = None) -> None:
        self.session_id = session_id
        self._timeout = timeout
        self._queue: asyncio.Queue[StreamEvent] = asyncio.Queue()
        self._detached = False
        self.task: asyncio.Task[RunResult] | None = None

    def push(self, event: StreamEvent) -> None:
        if not self._detached:
            self._queue.put_nowait(event)

    def detach(self) -> None:
        """Stop buffering events (caller went away). The run keeps going."""
        self._detached = True

    async def result(self) -> RunResult:
        if self.task is None:
            raise RuntimeError("Stream has not been started")
        return await asyncio.shield(self.task)

    async def events(self) -> AsyncIterator[StreamEvent]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._timeout if self._timeout else None
        while True:
            remaining = None if deadline is None else deadline - loop.time()
            try:
                if remaining is not None and remaining <= 0:
                    raise asyncio.TimeoutError
                event = await asyncio.wait_for(self._queue.get(), remaining)
            except asyncio.TimeoutError:
                logger.warning("Stream timeout for session %s", self.session_id)
                self.detach()
                yield StreamEvent(type="error", data="Stream timed out")
                return
            yield event
            if event.is_final:
                return

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self.events()


class AgentEngine:
    """Bounded think/act loop over one session's conversation memory.

    One AgentRun is created per invocation, so an engine can serve many
    sessions concurrently. A second run for a session that already has one in
    flight is rejected with SessionBusyError.
    """

    def __init__(
        self,
        strategy: ReasoningStrategy,
        memory: ConversationMemory,
        max_steps: int | None = None,
        system_prompt: str | None = None,
        next_step_prompt: str | None = None,
        name: str | None = None,
        finish_on_final_answer: bool | None = None,
    ) -> None:
        settings = get_settings()
        self.strategy = strategy
        self.memory = memory
        self.max_steps = settings.max_steps if max_steps is None else max_steps
        self.system_prompt = system_prompt or settings.agent_system_prompt
        self.next_step_prompt = next_step_prompt or settings.agent_next_step_prompt
        self.name = name or settings.agent_name
        self.finish_on_final_answer = (
            settings.finish_on_final_answer
            if finish_on_final_answer is None
            else finish_on_final_answer
        )
        self._active: Dict[str, object] = {}

    def is_running(self, session_id: str) -> bool:
        return session_id in self._active

    def _validate(self, user_input: str) -> str:
        if user_input is None or not str(user_input).strip():
            raise InvalidInputError("User input must not be empty")
        return str(user_input)

    def _claim(self, session_id: str) -> object:
        if session_id in self._active:
            raise SessionBusyError(f"A run is already in progress for session {session_id}")
        token = self._active[session_id] = object()
        return token

    def _unclaim(self, session_id: str, token: object) -> None:
        if self._active.get(session_id) is token:
            del self._active[session_id]

    def _new_run(
        self, session_id: str, emit: Callable[[StreamEvent], None] | None = None
    ) -> AgentRun:
        return AgentRun(
            session_id=session_id,
            max_steps=self.max_steps,
            system_prompt=self.system_prompt,
            next_step_prompt=self.next_step_prompt,
            name=self.name,
            emit=emit,
        )

    async def step(self, run: AgentRun) -> str:
        """Think, then act if the model proposed tool calls."""
        try:
            logger.info("%s starts thinking...", run.name)
            outcome = await self.strategy.think(run)
            if not outcome.should_act:
                if not outcome.faulted:
                    run.final_answer = outcome.text
                    if self.finish_on_final_answer:
                        run.state = AgentState.FINISHED
                return NO_ACTION_RESULT
            run.final_answer = outcome.text
            result = await self.strategy.act(run)
        except FatalStepFailure:
            raise
        except Exception as e:
            raise FatalStepFailure(f"{type(e).__name__}: {e}") from e
        run.last_action_result = result
        return result

    async def _drive(self, run: AgentRun, user_input: str) -> RunResult:
        results: List[str] = []
        run.state = AgentState.RUNNING
        logger.info("%s run started for session %s", run.name, run.session_id)
        try:
            try:
                await self.memory.append_user(run.session_id, user_input)
            except Exception as e:
                raise FatalStepFailure(f"{type(e).__name__}: {e}") from e

            while run.state is AgentState.RUNNING and run.current_step < run.max_steps:
                run.current_step += 1
                logger.info("Executing step %d/%d", run.current_step, run.max_steps)
                step_result = await self.step(run)
                results.append(f"Step {run.current_step}: {step_result}")
                run.push(StreamEvent(type="step", data=step_result, step=run.current_step))

            if run.state is AgentState.RUNNING:
                run.state = AgentState.FINISHED
                results.append(f"Terminated: reached max steps ({run.max_steps})")
            if run.final_answer and run.final_answer.strip():
                results.append(f"Answer: {run.final_answer}")
        except FatalStepFailure as e:
            run.state = AgentState.ERROR
            logger.exception("Error executing agent run for session %s", run.session_id)
            results.append(f"Execution error: {e}")

        logger.info(
            "%s run for session %s ended in state %s after %d step(s)",
            run.name,
            run.session_id,
            run.state.value,
            run.current_step,
        )
        return RunResult(
            session_id=run.session_id,
            text="\n".join(results),
            state=run.state,
            steps=run.current_step,
            durable=not self.memory.is_degraded(run.session_id),
        )

    async def execute(
        self,
        session_id: str,
        user_input: str,
        emit: Callable[[StreamEvent], None] | None = None,
    ) -> RunResult:
        """Run to a terminal state and return the detailed result."""
        text = self._validate(user_input)
        token = self._claim(session_id)
        run = self._new_run(session_id, emit)
        try:
            return await self._drive(run, text)
        finally:
            run.cleanup()
            self._unclaim(session_id, token)

    async def run(self, session_id: str, user_input: str) -> str:
        """Blocking entry point: returns the run's final text."""
        result = await self.execute(session_id, user_input)
        return result.text

    def run_stream(
        self, session_id: str, user_input: str, timeout: float | None = None
    ) -> StreamHandle:
        """Start a run in the background and return a handle streaming its events.

        Must be called from a running event loop. Invalid input and busy
        sessions are rejected before anything is scheduled.
        """
        text = self._validate(user_input)
        token = self._claim(session_id)
        handle = StreamHandle(session_id, timeout)
        handle.task = asyncio.create_task(self._stream(handle, session_id, text, token))
        handle.task.add_done_callback(
            lambda task: self._release(handle, session_id, token, task)
        )
        return handle

    def _release(
        self,
        handle: StreamHandle,
        session_id: str,
        token: object,
        task: "asyncio.Task[RunResult]",
    ) -> None:
        # also covers a task cancelled before its first step
        self._unclaim(session_id, token)
        if task.cancelled():
            handle.push(StreamEvent(type="error", data="Run cancelled"))

    async def _stream(
        self, handle: StreamHandle, session_id: str, user_input: str, token: object
    ) -> RunResult:
        run = self._new_run(session_id, emit=handle.push)
        try:
            result = await self._drive(run, user_input)
        except asyncio.CancelledError:
            run.state = AgentState.ERROR
            raise
        finally:
            run.cleanup()
            self._unclaim(session_id, token)

        extra = {
            "session_id": session_id,
            "state": result.state.value,
            "steps": result.steps,
            "durable": result.durable,
        }
        if result.state is AgentState.ERROR:
            handle.push(StreamEvent(type="error", data=result.text, extra=extra))
        else:
            handle.push(StreamEvent(type="done", data=result.text, extra=extra))
        return result

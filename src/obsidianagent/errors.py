"""Exception types raised and handled by the agent engine and its services."""


class AgentError(RuntimeError):
    """Base class for agent run errors."""


class InvalidInputError(AgentError, ValueError):
    """Raised when the user input is empty or malformed; the run never starts."""


class SessionBusyError(AgentError):
    """Raised when a run is already in flight for the same session."""


class ReasoningFailure(AgentError):
    """A model call or response-parsing fault during think. Never raised outward."""


class FatalStepFailure(AgentError):
    """Raised when a step fails outside of think and per-tool dispatch."""


class ToolError(Exception):
    """Base exception for tool-related errors."""


class ToolExecutionFailure(ToolError):
    """Raised when a single tool call fails; converted to an error-text result."""


class ToolNotFoundFailure(ToolError):
    """Raised when a proposed tool name has no registry match."""


class ToolRegistrationError(ToolError, ValueError):
    """Raised when registering tools fails due to name collisions or bad inputs."""


class MessageStoreError(RuntimeError):
    """Raised when messages cannot be (de)serialized for the durable store."""


class StoreUnavailableError(MessageStoreError):
    """Raised when an operation needs the durable store but none is configured."""

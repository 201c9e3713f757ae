"""Error taxonomy shared by the agent pipeline."""

from __future__ import annotations


class AgentError(Exception):
    """Base class for agent errors."""

    kind = "agent"


class ToolExecutionError(AgentError):
    """A single tool invocation failed while executing."""

    kind = "tool_execution"


class UnknownToolError(AgentError):
    """An invocation referenced a tool that is not registered."""

    kind = "unknown_tool"


class ModelStreamError(AgentError):
    """The model invocation failed before or during streaming."""

    kind = "model_stream"


class StorageUnavailableError(AgentError):
    """The file store backing the upload side-channel is not configured."""

    kind = "storage_unavailable"


class InvalidTransitionError(AgentError):
    """A tool invocation was moved out of a terminal or later state."""

    kind = "invalid_transition"


class ScheduledTaskError(AgentError):
    """A scheduled task re-entered the chat pipeline and the turn ended in an error."""

    kind = "scheduled_task"

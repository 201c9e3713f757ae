"""Core domain models used across layers."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

from chat_agent.errors import InvalidTransitionError

REJECTION_MARKER = "Error: User denied access to tool execution"


def new_id() -> str:
    """Return a fresh opaque identifier."""

    return uuid.uuid4().hex


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class InvocationState(str, Enum):
    """Lifecycle of a tool invocation. REJECTED and RESULT are terminal."""

    CALL = "call"
    PENDING_CONFIRMATION = "pending-confirmation"
    REJECTED = "rejected"
    RESULT = "result"


_ALLOWED_TRANSITIONS: dict[InvocationState, frozenset[InvocationState]] = {
    InvocationState.CALL: frozenset(
        {InvocationState.PENDING_CONFIRMATION, InvocationState.RESULT}
    ),
    InvocationState.PENDING_CONFIRMATION: frozenset(
        {InvocationState.REJECTED, InvocationState.RESULT}
    ),
    InvocationState.REJECTED: frozenset(),
    InvocationState.RESULT: frozenset(),
}


@dataclass(frozen=True, slots=True)
class ToolInvocation:
    """Tool call proposed by the model, together with its outcome so far."""

    tool_call_id: str
    tool_name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    state: InvocationState = InvocationState.CALL
    result: Any = None
    is_error: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.state in (InvocationState.REJECTED, InvocationState.RESULT)

    def advance(self, state: InvocationState, result: Any = None, is_error: bool = False) -> ToolInvocation:
        """Return a copy moved to ``state``; raises on a non-monotonic move."""

        if state == self.state and state == InvocationState.PENDING_CONFIRMATION:
            return self
        if state not in _ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Tool call {self.tool_call_id} cannot move from {self.state.value} to {state.value}"
            )
        return replace(self, state=state, result=result, is_error=is_error)

    def to_dict(self) -> dict[str, Any]:
        return {
            "toolCallId": self.tool_call_id,
            "toolName": self.tool_name,
            "args": self.arguments,
            "state": self.state.value,
            "result": self.result,
            "isError": self.is_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolInvocation:
        return cls(
            tool_call_id=data["toolCallId"],
            tool_name=data["toolName"],
            arguments=data.get("args") or {},
            state=InvocationState(data.get("state", InvocationState.CALL.value)),
            result=data.get("result"),
            is_error=bool(data.get("isError", False)),
        )


@dataclass(frozen=True, slots=True)
class Message:
    """One conversation turn entry as held by the history store."""

    role: Role
    content: str
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)
    tool_invocations: tuple[ToolInvocation, ...] = ()

    @property
    def unresolved_invocations(self) -> list[ToolInvocation]:
        return [inv for inv in self.tool_invocations if not inv.is_terminal]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "createdAt": self.created_at.isoformat(),
            "toolInvocations": [inv.to_dict() for inv in self.tool_invocations],
        }


@dataclass(frozen=True, slots=True)
class ToolDecision:
    """Human approve/reject verdict for a confirmation-required tool call."""

    tool_call_id: str
    approved: bool


@dataclass(frozen=True, slots=True)
class TokenEvent:
    text: str


@dataclass(frozen=True, slots=True)
class ToolCallEvent:
    tool_call_id: str
    tool_name: str
    arguments: dict[str, Any]


@dataclass(frozen=True, slots=True)
class ToolResultEvent:
    tool_call_id: str
    value: Any


@dataclass(frozen=True, slots=True)
class ErrorEvent:
    kind: str
    detail: str


@dataclass(frozen=True, slots=True)
class DoneEvent:
    finish_reason: str = "stop"


StreamEvent = Union[TokenEvent, ToolCallEvent, ToolResultEvent, ErrorEvent, DoneEvent]

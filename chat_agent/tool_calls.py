"""Scan conversation history for unresolved tool calls and resolve them.

Every assistant message may carry tool invocations proposed by the model.
An invocation is resolved here in one of three ways:

* the tool is unknown: it gets an ``unknown_tool`` error result straight away;
* the tool runs automatically: it is executed and its value (or an error
  value, if it raised) becomes the result;
* the tool needs confirmation: it stays ``pending-confirmation`` until a
  human decision for its ``tool_call_id`` is supplied, then it is either
  executed or marked rejected.

``ToolCallProcessor.resolve`` never mutates the history it is given. It
returns revised copies plus one ``ToolResultEvent`` per invocation resolved
in that pass, in the order the invocations appear.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Sequence

from chat_agent.errors import AgentError, ToolExecutionError, UnknownToolError
from chat_agent.models import (
    REJECTION_MARKER,
    InvocationState,
    Message,
    Role,
    ToolDecision,
    ToolInvocation,
    ToolResultEvent,
)
from chat_agent.tools.base import ExecutionMode
from chat_agent.tools.registry import ToolRegistry

LOGGER = logging.getLogger(__name__)

_COMPLETED_CACHE_SIZE = 1024


@dataclass(slots=True)
class Resolution:
    """Outcome of one scan over a history."""

    messages: list[Message]
    changed: list[Message] = field(default_factory=list)
    events: list[ToolResultEvent] = field(default_factory=list)
    consumed: list[str] = field(default_factory=list)

    @property
    def pending(self) -> list[ToolInvocation]:
        return [
            inv
            for message in self.messages
            for inv in message.tool_invocations
            if inv.state == InvocationState.PENDING_CONFIRMATION
        ]


class ToolCallProcessor:
    """Resolves tool invocations against a registry, executing each call at most once."""

    def __init__(self, registry: ToolRegistry, completed_cache_size: int = _COMPLETED_CACHE_SIZE) -> None:
        self._registry = registry
        self._completed_cache_size = completed_cache_size
        self._inflight: dict[str, asyncio.Task[tuple[Any, bool]]] = {}
        self._completed: OrderedDict[str, tuple[Any, bool]] = OrderedDict()

    async def resolve(
        self,
        conversation_id: str,
        history: Sequence[Message],
        decisions: Mapping[str, ToolDecision] | None = None,
    ) -> Resolution:
        decisions = decisions or {}
        resolution = Resolution(messages=[])

        for message in history:
            if message.role != Role.ASSISTANT or not message.unresolved_invocations:
                resolution.messages.append(message)
                continue

            outcomes = await asyncio.gather(
                *(self._resolve_one(conversation_id, inv, decisions) for inv in message.tool_invocations)
            )
            invocations: list[ToolInvocation] = []
            for original, (updated, consumed) in zip(message.tool_invocations, outcomes):
                invocations.append(updated)
                if consumed:
                    resolution.consumed.append(original.tool_call_id)
                if updated.is_terminal and not original.is_terminal:
                    resolution.events.append(ToolResultEvent(updated.tool_call_id, updated.result))

            revised = replace(message, tool_invocations=tuple(invocations))
            if revised != message:
                resolution.changed.append(revised)
            resolution.messages.append(revised)

        return resolution

    async def _resolve_one(
        self,
        conversation_id: str,
        invocation: ToolInvocation,
        decisions: Mapping[str, ToolDecision],
    ) -> tuple[ToolInvocation, bool]:
        if invocation.is_terminal:
            return invocation, False

        tool = self._registry.get(invocation.tool_name)
        if tool is None:
            LOGGER.warning("Tool call %s references unknown tool %r", invocation.tool_call_id, invocation.tool_name)
            error = UnknownToolError(f"Unknown tool: {invocation.tool_name}")
            return invocation.advance(InvocationState.RESULT, _error_value(error), is_error=True), False

        if tool.mode == ExecutionMode.AUTO:
            value, is_error = await self._execute_once(conversation_id, invocation)
            return invocation.advance(InvocationState.RESULT, value, is_error=is_error), False

        pending = invocation.advance(InvocationState.PENDING_CONFIRMATION)
        decision = decisions.get(invocation.tool_call_id)
        if decision is None:
            return pending, False
        if not decision.approved:
            LOGGER.info("Tool call %s (%s) rejected", invocation.tool_call_id, invocation.tool_name)
            return pending.advance(InvocationState.REJECTED, REJECTION_MARKER), True

        value, is_error = await self._execute_once(conversation_id, invocation)
        return pending.advance(InvocationState.RESULT, value, is_error=is_error), True

    async def _execute_once(self, conversation_id: str, invocation: ToolInvocation) -> tuple[Any, bool]:
        tool_call_id = invocation.tool_call_id
        if tool_call_id in self._completed:
            return self._completed[tool_call_id]

        task = self._inflight.get(tool_call_id)
        if task is None:
            task = asyncio.create_task(
                self._execute(conversation_id, invocation), name=f"tool-call-{tool_call_id}"
            )
            self._inflight[tool_call_id] = task
        # Shielded: a cancelled turn must not discard a tool run already in progress.
        return await asyncio.shield(task)

    async def _execute(self, conversation_id: str, invocation: ToolInvocation) -> tuple[Any, bool]:
        try:
            value: Any = await self._registry.execute(
                conversation_id,
                invocation.tool_name,
                invocation.arguments,
                tool_call_id=invocation.tool_call_id,
            )
            outcome = (value, False)
        except AgentError as exc:
            outcome = (_error_value(exc), True)
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Tool call %s (%s) raised", invocation.tool_call_id, invocation.tool_name)
            outcome = (_error_value(ToolExecutionError(str(exc))), True)

        self._completed[invocation.tool_call_id] = outcome
        while len(self._completed) > self._completed_cache_size:
            self._completed.popitem(last=False)
        self._inflight.pop(invocation.tool_call_id, None)
        return outcome


def pending_tool_call_ids(history: Sequence[Message]) -> set[str]:
    """Ids of invocations still waiting for a human decision."""

    return {
        inv.tool_call_id
        for message in history
        for inv in message.tool_invocations
        if inv.state in (InvocationState.CALL, InvocationState.PENDING_CONFIRMATION)
    }


def effective_context(history: Sequence[Message]) -> list[Message]:
    """History as the model may see it: unresolved invocations are dropped."""

    context: list[Message] = []
    for message in history:
        if message.unresolved_invocations:
            message = replace(
                message, tool_invocations=tuple(inv for inv in message.tool_invocations if inv.is_terminal)
            )
        context.append(message)
    return context


def _error_value(exc: AgentError) -> dict[str, str]:
    return {"error": exc.kind, "detail": str(exc)}

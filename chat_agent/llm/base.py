"""LLM provider interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Sequence

from chat_agent.models import Message, StreamEvent


class LLMProvider(ABC):
    """Abstract model provider used by the agent runtime."""

    @abstractmethod
    def stream(
        self,
        messages: Sequence[Message],
        tools: list[dict[str, Any]] | None = None,
        system: str | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream one model step as ``TokenEvent`` and ``ToolCallEvent`` items.

        Implementations raise ``ModelStreamError`` when the call fails.
        """

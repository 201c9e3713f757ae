"""Tool contracts."""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any


class ExecutionMode(str, Enum):
    """How a registered tool may be executed."""

    AUTO = "auto"
    CONFIRM = "confirm"


class Tool(ABC):
    """Base class for all agent tools.

    AUTO tools run as soon as the model proposes them. CONFIRM tools only
    run (via ``run``) after a human approved the specific call.
    """

    name: str
    description: str
    parameters_schema: dict[str, Any]
    mode: ExecutionMode = ExecutionMode.AUTO

    @abstractmethod
    async def run(self, **kwargs: Any) -> Any:
        """Execute tool with validated arguments."""

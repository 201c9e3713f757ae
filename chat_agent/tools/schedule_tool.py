"""Tools that let the model manage scheduled tasks for its conversation."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from chat_agent.db import Database
from chat_agent.tools.base import Tool

WHEN_TYPES = ("scheduled", "delayed", "interval")


class ScheduleTaskTool(Tool):
    """Persist a task that re-enters the conversation when it fires."""

    name = "schedule_task"
    description = (
        "Schedule a task to run later in this conversation. Use when_type 'scheduled' "
        "with an ISO-8601 date, 'delayed' with delay_in_seconds, or 'interval' with "
        "interval_seconds for a recurring task."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "conversation_id": {"type": "string", "description": "Filled in automatically."},
            "description": {"type": "string", "description": "What to do when the task fires."},
            "when_type": {"type": "string", "enum": list(WHEN_TYPES)},
            "date": {"type": "string", "description": "ISO-8601 date/time for 'scheduled'."},
            "delay_in_seconds": {"type": "integer"},
            "interval_seconds": {"type": "integer"},
        },
        "required": ["conversation_id", "description", "when_type"],
        "additionalProperties": False,
    }

    def __init__(self, db: Database) -> None:
        self._db = db

    async def run(self, **kwargs: Any) -> dict[str, Any]:
        when_type = kwargs["when_type"]
        now = datetime.now(timezone.utc)
        interval_seconds: int | None = None

        if when_type == "scheduled":
            if not kwargs.get("date"):
                raise ValueError("'date' is required for a scheduled task")
            run_at = datetime.fromisoformat(kwargs["date"])
            if run_at.tzinfo is None:
                run_at = run_at.replace(tzinfo=timezone.utc)
        elif when_type == "delayed":
            delay = kwargs.get("delay_in_seconds")
            if delay is None or delay < 0:
                raise ValueError("'delay_in_seconds' must be a non-negative integer")
            run_at = now + timedelta(seconds=delay)
        elif when_type == "interval":
            interval_seconds = kwargs.get("interval_seconds")
            if not interval_seconds or interval_seconds <= 0:
                raise ValueError("'interval_seconds' must be a positive integer")
            run_at = now + timedelta(seconds=interval_seconds)
        else:
            raise ValueError(f"Unsupported when_type {when_type!r}; expected one of {', '.join(WHEN_TYPES)}")

        task_id = self._db.create_scheduled_task(
            conversation_id=kwargs["conversation_id"],
            description=kwargs["description"],
            run_at=run_at,
            interval_seconds=interval_seconds,
        )
        return {"task_id": task_id, "run_at": run_at.isoformat(), "interval_seconds": interval_seconds}


class ListScheduledTasksTool(Tool):
    """List pending scheduled tasks."""

    name = "list_scheduled_tasks"
    description = "List the tasks still scheduled for this conversation."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "conversation_id": {"type": "string", "description": "Filled in automatically."},
        },
        "required": ["conversation_id"],
        "additionalProperties": False,
    }

    def __init__(self, db: Database) -> None:
        self._db = db

    async def run(self, **kwargs: Any) -> list[dict[str, Any]]:
        return self._db.list_scheduled_tasks(kwargs["conversation_id"])


class CancelScheduledTaskTool(Tool):
    """Cancel a pending scheduled task."""

    name = "cancel_scheduled_task"
    description = "Cancel a scheduled task by its task_id."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "conversation_id": {"type": "string", "description": "Filled in automatically."},
            "task_id": {"type": "integer"},
        },
        "required": ["conversation_id", "task_id"],
        "additionalProperties": False,
    }

    def __init__(self, db: Database) -> None:
        self._db = db

    async def run(self, **kwargs: Any) -> dict[str, Any]:
        cancelled = self._db.cancel_scheduled_task(kwargs["conversation_id"], kwargs["task_id"])
        return {"task_id": kwargs["task_id"], "cancelled": cancelled}

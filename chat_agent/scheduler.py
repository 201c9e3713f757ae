"""Async scheduler for deferred tasks."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from chat_agent.db import Database

LOGGER = logging.getLogger(__name__)

TaskHandler = Callable[[str, str, datetime], Awaitable[Any]]


class TaskScheduler:
    """Polls due tasks and dispatches them via callback."""

    def __init__(
        self,
        db: Database,
        handler: TaskHandler,
        poll_interval_seconds: float = 2.0,
    ) -> None:
        self._db = db
        self._handler = handler
        self._poll_interval_seconds = poll_interval_seconds
        self._stop_event = asyncio.Event()

    def schedule(
        self,
        conversation_id: str,
        description: str,
        run_at: datetime,
        interval_seconds: int | None = None,
    ) -> int:
        """Persist a task to run in the future."""

        return self._db.create_scheduled_task(
            conversation_id=conversation_id,
            description=description,
            run_at=run_at,
            interval_seconds=interval_seconds,
        )

    async def run_due_tasks(self, now: datetime | None = None) -> int:
        """Fire every task due at ``now``; returns how many were dispatched."""

        now = now or datetime.now(timezone.utc)
        due_tasks = self._db.get_due_tasks(now)
        for task in due_tasks:
            task_id = int(task["id"])
            scheduled_time = datetime.fromisoformat(task["run_at"])
            try:
                self._db.mark_task_status(task_id, "running")
                await self._handler(task["conversation_id"], task["description"], scheduled_time)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Scheduled task %d failed", task_id)
                self._db.mark_task_status(task_id, "failed")
                continue

            interval = task.get("interval_seconds")
            if interval:
                self._db.reschedule_task(task_id, max(now, scheduled_time) + timedelta(seconds=int(interval)))
            else:
                self._db.mark_task_status(task_id, "completed")
        return len(due_tasks)

    async def run_forever(self) -> None:
        """Run scheduler loop until stop() is called."""

        while not self._stop_event.is_set():
            await self.run_due_tasks()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_interval_seconds)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        """Signal the loop to stop."""

        self._stop_event.set()

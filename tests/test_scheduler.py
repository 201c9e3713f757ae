import sqlite3
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from chat_agent.agent_runtime import AgentRuntime
from chat_agent.db import Database
from chat_agent.errors import ModelStreamError
from chat_agent.llm.base import LLMProvider
from chat_agent.scheduler import TaskScheduler
from chat_agent.tools.registry import ToolRegistry


class FailingProvider(LLMProvider):
    async def stream(self, messages, tools=None, system=None):  # noqa: ANN001, ANN201
        raise ModelStreamError("model unavailable")
        yield  # pragma: no cover


def _db(tmp_path) -> Database:
    db = Database(tmp_path / "agent.db")
    db.initialize()
    return db


@pytest.mark.asyncio
async def test_due_task_is_dispatched_and_completed(tmp_path):
    db = _db(tmp_path)
    handler = AsyncMock()
    scheduler = TaskScheduler(db=db, handler=handler)
    run_at = datetime.now(timezone.utc) - timedelta(seconds=5)
    scheduler.schedule("conv-1", "send the report", run_at)

    dispatched = await scheduler.run_due_tasks()

    assert dispatched == 1
    conversation_id, description, scheduled_time = handler.call_args[0]
    assert (conversation_id, description) == ("conv-1", "send the report")
    assert scheduled_time == run_at
    assert db.list_scheduled_tasks("conv-1") == []
    assert await scheduler.run_due_tasks() == 0


@pytest.mark.asyncio
async def test_recurring_task_is_rescheduled(tmp_path):
    db = _db(tmp_path)
    handler = AsyncMock()
    scheduler = TaskScheduler(db=db, handler=handler)
    now = datetime.now(timezone.utc)
    scheduler.schedule("conv-1", "check inbox", now - timedelta(seconds=1), interval_seconds=60)

    await scheduler.run_due_tasks(now)

    pending = db.list_scheduled_tasks("conv-1")
    assert len(pending) == 1
    assert datetime.fromisoformat(pending[0]["run_at"]) == now + timedelta(seconds=60)


@pytest.mark.asyncio
async def test_failing_handler_marks_task_failed(tmp_path):
    db = _db(tmp_path)
    handler = AsyncMock(side_effect=RuntimeError("boom"))
    scheduler = TaskScheduler(db=db, handler=handler)
    scheduler.schedule("conv-1", "explode", datetime.now(timezone.utc) - timedelta(seconds=1))

    await scheduler.run_due_tasks()

    assert db.list_scheduled_tasks("conv-1") == []
    assert db.get_due_tasks(datetime.now(timezone.utc)) == []



@pytest.mark.asyncio
async def test_task_whose_turn_errors_is_marked_failed(tmp_path):
    db = _db(tmp_path)
    runtime = AgentRuntime(db=db, llm=FailingProvider(), tool_registry=ToolRegistry(db))
    scheduler = TaskScheduler(db=db, handler=runtime.execute_task)
    task_id = scheduler.schedule("conv-1", "send the report", datetime.now(timezone.utc) - timedelta(seconds=1))

    assert await scheduler.run_due_tasks() == 1

    with sqlite3.connect(tmp_path / "agent.db") as conn:
        (status,) = conn.execute("SELECT status FROM scheduled_tasks WHERE id = ?", (task_id,)).fetchone()
    assert status == "failed"


@pytest.mark.asyncio
async def test_run_forever_stops(tmp_path):
    scheduler = TaskScheduler(db=_db(tmp_path), handler=AsyncMock(), poll_interval_seconds=0.01)
    scheduler.stop()

    await scheduler.run_forever()

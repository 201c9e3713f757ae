from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from chat_agent.db import Database
from chat_agent.errors import ToolExecutionError, UnknownToolError
from chat_agent.tools.base import ExecutionMode
from chat_agent.tools.registry import ToolRegistry
from chat_agent.tools.schedule_tool import CancelScheduledTaskTool, ListScheduledTasksTool, ScheduleTaskTool
from chat_agent.tools.time_tool import GetLocalTimeTool
from chat_agent.tools.weather_tool import GetWeatherInformationTool


def _registry(tmp_path) -> tuple[ToolRegistry, Database]:
    db = Database(tmp_path / "agent.db")
    db.initialize()
    registry = ToolRegistry(db)
    registry.register(ScheduleTaskTool(db))
    registry.register(ListScheduledTasksTool(db))
    registry.register(CancelScheduledTaskTool(db))
    return registry, db


@pytest.mark.asyncio
async def test_tool_registry_validates_and_executes(tmp_path):
    registry, db = _registry(tmp_path)

    created = await registry.execute(
        "conv-1", "schedule_task", {"description": "stretch", "when_type": "delayed", "delay_in_seconds": 60}
    )
    tasks = await registry.execute("conv-1", "list_scheduled_tasks", {})

    assert len(tasks) == 1
    assert tasks[0]["id"] == created["task_id"]
    assert tasks[0]["description"] == "stretch"
    assert [row["succeeded"] for row in db.list_tool_executions("conv-1")] == [1, 1]


@pytest.mark.asyncio
async def test_conversation_id_comes_from_caller_not_model(tmp_path):
    registry, db = _registry(tmp_path)

    await registry.execute(
        "conv-1",
        "schedule_task",
        {"conversation_id": "someone-else", "description": "x", "when_type": "delayed", "delay_in_seconds": 1},
    )

    assert len(db.list_scheduled_tasks("conv-1")) == 1
    assert db.list_scheduled_tasks("someone-else") == []


@pytest.mark.asyncio
async def test_cancel_scheduled_task(tmp_path):
    registry, db = _registry(tmp_path)
    created = await registry.execute(
        "conv-1", "schedule_task", {"description": "x", "when_type": "interval", "interval_seconds": 30}
    )

    result = await registry.execute("conv-1", "cancel_scheduled_task", {"task_id": created["task_id"]})

    assert result == {"task_id": created["task_id"], "cancelled": True}
    assert db.list_scheduled_tasks("conv-1") == []


@pytest.mark.asyncio
async def test_tool_registry_rejects_invalid_input(tmp_path):
    registry, db = _registry(tmp_path)

    with pytest.raises(ToolExecutionError):
        await registry.execute("conv-1", "schedule_task", {"description": "missing when"})

    assert db.list_tool_executions("conv-1")[0]["succeeded"] == 0


@pytest.mark.asyncio
async def test_tool_errors_are_wrapped(tmp_path):
    registry, _ = _registry(tmp_path)

    with pytest.raises(ToolExecutionError, match="delay_in_seconds"):
        await registry.execute("conv-1", "schedule_task", {"description": "x", "when_type": "delayed"})


@pytest.mark.asyncio
async def test_unknown_tool_raises(tmp_path):
    registry, _ = _registry(tmp_path)

    with pytest.raises(UnknownToolError):
        await registry.execute("conv-1", "doMagic", {})


def test_tool_specs_hide_conversation_id(tmp_path):
    registry, _ = _registry(tmp_path)

    specs = {spec["function"]["name"]: spec["function"]["parameters"] for spec in registry.list_tool_specs()}

    assert "conversation_id" not in specs["schedule_task"]["properties"]
    assert "conversation_id" not in specs["schedule_task"]["required"]
    assert "description" in specs["schedule_task"]["required"]


@pytest.mark.asyncio
async def test_local_time_tool():
    result = await GetLocalTimeTool().run(timezone="Europe/Paris")

    assert result["timezone"] == "Europe/Paris"
    assert result["local_time"].endswith(("+01:00", "+02:00"))


@pytest.mark.asyncio
async def test_local_time_tool_rejects_unknown_zone():
    with pytest.raises(ValueError):
        await GetLocalTimeTool().run(timezone="Mars/Olympus_Mons")


def _mock_response(data: dict) -> MagicMock:
    resp = MagicMock()
    resp.status_code = 200
    resp.json.return_value = data
    resp.raise_for_status = MagicMock()
    return resp


@pytest.mark.asyncio
async def test_weather_tool_requires_confirmation_and_fetches_forecast():
    mock_client = AsyncMock()
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    mock_client.get = AsyncMock(
        side_effect=[
            _mock_response({"results": [{"name": "Paris", "country": "France", "latitude": 48.85, "longitude": 2.35}]}),
            _mock_response({"current": {"temperature_2m": 18.0, "wind_speed_10m": 7.2}}),
        ]
    )

    with patch("chat_agent.tools.weather_tool.httpx.AsyncClient", return_value=mock_client):
        tool = GetWeatherInformationTool()
        result = await tool.run(city="Paris")

    assert tool.mode == ExecutionMode.CONFIRM
    assert result == {"city": "Paris", "country": "France", "temp": 18.0, "wind_speed": 7.2}


@pytest.mark.asyncio
async def test_weather_tool_unknown_city():
    mock_client = AsyncMock()
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    mock_client.get = AsyncMock(return_value=_mock_response({"results": []}))

    with patch("chat_agent.tools.weather_tool.httpx.AsyncClient", return_value=mock_client):
        result = await GetWeatherInformationTool().run(city="Atlantis")

    assert result == {"city": "Atlantis", "error": "City not found."}

"""Application entrypoint."""

from __future__ import annotations

import asyncio
import logging

import uvicorn

from chat_agent.agent_runtime import AgentRuntime
from chat_agent.config import Settings, load_settings
from chat_agent.db import Database
from chat_agent.llm.openai_compat import OpenAICompatibleProvider
from chat_agent.scheduler import TaskScheduler
from chat_agent.server import create_app
from chat_agent.tools.registry import ToolRegistry
from chat_agent.tools.schedule_tool import CancelScheduledTaskTool, ListScheduledTasksTool, ScheduleTaskTool
from chat_agent.tools.time_tool import GetLocalTimeTool
from chat_agent.tools.weather_tool import GetWeatherInformationTool
from chat_agent.uploads import FileStore

LOGGER = logging.getLogger(__name__)


def build_registry(db: Database, settings: Settings) -> ToolRegistry:
    tools = ToolRegistry(db)
    tools.register(GetWeatherInformationTool(timeout_seconds=settings.request_timeout_seconds))
    tools.register(GetLocalTimeTool())
    tools.register(ScheduleTaskTool(db))
    tools.register(ListScheduledTasksTool(db))
    tools.register(CancelScheduledTaskTool(db))
    return tools


async def run() -> None:
    """Initialize app layers and serve until shutdown."""

    settings = load_settings()
    logging.basicConfig(level=settings.log_level.upper())
    if not settings.openai_api_key:
        LOGGER.error("OPENAI_API_KEY is not set; add it to .env or the environment")

    db = Database(settings.database_path)
    db.initialize()

    runtime = AgentRuntime(
        db=db,
        llm=OpenAICompatibleProvider(settings),
        tool_registry=build_registry(db, settings),
        max_steps=settings.max_steps,
    )
    file_store = FileStore(settings.upload_dir) if settings.upload_dir else None
    app = create_app(runtime, settings, file_store)

    scheduler = TaskScheduler(
        db=db,
        handler=runtime.execute_task,
        poll_interval_seconds=settings.scheduler_poll_interval_seconds,
    )
    scheduler_task = asyncio.create_task(scheduler.run_forever(), name="task-scheduler")

    server = uvicorn.Server(uvicorn.Config(app, host=settings.http_host, port=settings.http_port))
    try:
        await server.serve()
    finally:
        scheduler.stop()
        scheduler_task.cancel()
        LOGGER.info("Agent shutdown complete")


def main() -> None:
    """Synchronous wrapper for asyncio entrypoint."""

    asyncio.run(run())


if __name__ == "__main__":
    main()

"""Time utility tool."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from chat_agent.tools.base import Tool


class GetLocalTimeTool(Tool):
    """Returns the current time in a named IANA time zone."""

    name = "get_local_time"
    description = (
        "Get the current local date/time in ISO-8601 format for an IANA time zone "
        "such as 'Europe/Paris'. Defaults to UTC."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "timezone": {"type": "string", "description": "IANA time zone name."},
        },
        "additionalProperties": False,
    }

    async def run(self, **kwargs: Any) -> dict[str, str]:
        zone_name = kwargs.get("timezone") or "UTC"
        try:
            zone = ZoneInfo(zone_name)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown time zone: {zone_name}") from exc
        return {"timezone": zone_name, "local_time": datetime.now(timezone.utc).astimezone(zone).isoformat()}

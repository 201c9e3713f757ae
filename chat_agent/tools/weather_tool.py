"""Weather lookup tool backed by the Open-Meteo API."""

from __future__ import annotations

from typing import Any

import httpx

from chat_agent.tools.base import ExecutionMode, Tool

GEOCODING_URL = "https://geocoding-api.open-meteo.com/v1/search"
FORECAST_URL = "https://api.open-meteo.com/v1/forecast"


class GetWeatherInformationTool(Tool):
    """Current weather for a city. Needs human confirmation before each call."""

    name = "get_weather_information"
    description = "Show the current weather for a given city."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "city": {"type": "string", "description": "City name, e.g. 'Paris'."},
        },
        "required": ["city"],
        "additionalProperties": False,
    }
    mode = ExecutionMode.CONFIRM

    def __init__(self, timeout_seconds: float = 15.0) -> None:
        self._timeout_seconds = timeout_seconds

    async def run(self, **kwargs: Any) -> dict[str, Any]:
        city = str(kwargs["city"]).strip()

        async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
            geo = await client.get(GEOCODING_URL, params={"name": city, "count": 1})
            geo.raise_for_status()
            places = geo.json().get("results") or []
            if not places:
                return {"city": city, "error": "City not found."}
            place = places[0]

            forecast = await client.get(
                FORECAST_URL,
                params={
                    "latitude": place["latitude"],
                    "longitude": place["longitude"],
                    "current": "temperature_2m,wind_speed_10m",
                },
            )
            forecast.raise_for_status()
            current = forecast.json().get("current", {})

        return {
            "city": place.get("name", city),
            "country": place.get("country"),
            "temp": current.get("temperature_2m"),
            "wind_speed": current.get("wind_speed_10m"),
        }

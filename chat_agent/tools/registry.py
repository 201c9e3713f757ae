"""Registry for tool registration, lookup and execution."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError, create_model

from chat_agent.db import Database
from chat_agent.errors import ToolExecutionError, UnknownToolError
from chat_agent.tools.base import Tool

LOGGER = logging.getLogger(__name__)


class ToolRegistry:
    """Explicit registry of tools available to the model."""

    def __init__(self, db: Database | None = None) -> None:
        self._db = db
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def get(self, tool_name: str) -> Tool | None:
        return self._tools.get(tool_name)

    def list_tool_specs(self) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": _model_facing_schema(tool.parameters_schema),
                },
            }
            for tool in self._tools.values()
        ]

    async def execute(
        self,
        conversation_id: str,
        tool_name: str,
        arguments: dict[str, Any],
        tool_call_id: str | None = None,
    ) -> Any:
        """Validate arguments and run the tool.

        Raises:
            UnknownToolError: no tool is registered under ``tool_name``.
            ToolExecutionError: arguments are invalid or the tool raised.
        """
        tool = self._tools.get(tool_name)
        if tool is None:
            raise UnknownToolError(f"Unknown tool: {tool_name}")

        # Tools scoped to a conversation always get the caller's id, never the model's.
        if "conversation_id" in tool.parameters_schema.get("properties", {}):
            arguments = {**arguments, "conversation_id": conversation_id}

        try:
            validated = _validate_json_schema(tool.parameters_schema, arguments)
        except ValueError as exc:
            self._log(conversation_id, tool_name, arguments, {"error": str(exc)}, False, tool_call_id)
            raise ToolExecutionError(str(exc)) from exc

        try:
            result = await tool.run(**validated)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Tool %s failed (call=%s): %s", tool_name, tool_call_id, exc)
            self._log(conversation_id, tool_name, validated, {"error": str(exc)}, False, tool_call_id)
            raise ToolExecutionError(f"{tool_name} failed: {exc}") from exc
        self._log(conversation_id, tool_name, validated, result, True, tool_call_id)
        return result

    def _log(
        self,
        conversation_id: str,
        tool_name: str,
        tool_input: dict[str, Any],
        tool_output: Any,
        succeeded: bool,
        tool_call_id: str | None,
    ) -> None:
        if self._db is None:
            return
        self._db.log_tool_execution(
            conversation_id, tool_name, tool_input, tool_output, succeeded, tool_call_id=tool_call_id
        )


def _model_facing_schema(schema: dict[str, Any]) -> dict[str, Any]:
    props = schema.get("properties", {})
    if "conversation_id" not in props:
        return schema
    return {
        **schema,
        "properties": {k: v for k, v in props.items() if k != "conversation_id"},
        "required": [r for r in schema.get("required", []) if r != "conversation_id"],
    }


def _validate_json_schema(schema: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
    props = schema.get("properties", {})
    required = set(schema.get("required", []))
    fields: dict[str, tuple[type[Any], Any]] = {}
    for name, config in props.items():
        typ = _python_type(config.get("type", "string"))
        default = ... if name in required else None
        fields[name] = (typ | None if default is None else typ, default)

    model = create_model("ToolInputModel", **fields)
    try:
        value = model(**payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid input for tool: {exc}") from exc
    return value.model_dump(exclude_none=True)


def _python_type(schema_type: str) -> type[Any]:
    mapping: dict[str, type[Any]] = {
        "string": str,
        "integer": int,
        "number": float,
        "boolean": bool,
        "object": dict,
        "array": list,
    }
    return mapping.get(schema_type, str)

"""
Function tools exposed to the realtime model.

Tool handlers are plain callables ``(arguments, connection_id) -> dict``.
The relay passes its own connection id when the model calls a tool, so a
handler never holds on to per-connection state.
"""

import json
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from typing import Any, Callable, Dict, List, Optional

from voice_relay.core.logging import get_logger
from voice_relay.services.connection_registry import ConnectionRegistry, now_ms

logger = get_logger(__name__)

ToolHandler = Callable[[Dict[str, Any], str], Dict[str, Any]]


@dataclass
class RelayTool:
    name: str
    description: str
    parameters: Dict[str, Any]
    handler: ToolHandler

    def definition(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description, "parameters": self.parameters}


class ToolRegistry:
    """Named tools available to every relay connection."""

    def __init__(self, tools: Optional[List[RelayTool]] = None):
        self._tools: Dict[str, RelayTool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: RelayTool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool {tool.name!r} already registered")
        self._tools[tool.name] = tool

    def definitions(self) -> List[Dict[str, Any]]:
        return [tool.definition() for tool in self._tools.values()]

    def execute(self, name: str, arguments: str, connection_id: str) -> Dict[str, Any]:
        """
        Run a tool by name.

        Failures (unknown tool, bad JSON arguments, handler exceptions) are
        returned as ``{"error": message}`` so the model can recover.
        """
        tool = self._tools.get(name)
        if tool is None:
            return {"error": f'Tool "{name}" has not been added'}

        try:
            parsed = json.loads(arguments or "{}")
        except json.JSONDecodeError as e:
            return {"error": f"Invalid arguments: {e}"}
        if not isinstance(parsed, dict):
            return {"error": "Invalid arguments: expected an object"}

        try:
            return tool.handler(parsed, connection_id)
        except Exception as e:
            logger.exception("tool_execution_failed", tool=name, connection_id=connection_id)
            return {"error": str(e)}


def get_current_time(arguments: Dict[str, Any], connection_id: str, clock: Callable[[], datetime] = datetime.now) -> Dict[str, Any]:
    now = clock()
    fmt = arguments.get("format", "full")
    if fmt == "time":
        return {"result": now.strftime("%H:%M:%S")}
    if fmt == "date":
        return {"result": now.strftime("%Y-%m-%d")}
    return {"result": now.strftime("%Y-%m-%d %H:%M:%S")}


def analyze_conversation_metrics(registry: ConnectionRegistry, arguments: Dict[str, Any], connection_id: str) -> Dict[str, Any]:
    connection = registry.lookup(connection_id)
    if connection is None:
        return {
            "conversation_duration_seconds": 0,
            "total_messages": 0,
            "interruptions": 0,
            "conversation_turns": 0,
            "average_turn_duration": 0,
        }

    metrics = connection.metrics
    duration = now_ms() - metrics.start_time
    turns = metrics.conversation_turn_count
    return {
        "conversation_duration_seconds": round(duration / 1000),
        "total_messages": metrics.messages_received + metrics.messages_sent,
        "interruptions": metrics.interruption_count,
        "conversation_turns": turns,
        "average_turn_duration": duration / turns if turns > 0 else 0,
    }


def build_default_tools(registry: ConnectionRegistry) -> ToolRegistry:
    """The clock tool and the metrics-introspection tool."""
    return ToolRegistry(
        [
            RelayTool(
                name="get_current_time",
                description="Get the current date and time",
                parameters={
                    "type": "object",
                    "properties": {
                        "format": {
                            "type": "string",
                            "description": "Format for the time display",
                            "enum": ["full", "time", "date"],
                        }
                    },
                },
                handler=get_current_time,
            ),
            RelayTool(
                name="analyze_conversation_metrics",
                description="Get current conversation analytics and metrics",
                parameters={"type": "object", "properties": {}},
                handler=partial(analyze_conversation_metrics, registry),
            ),
        ]
    )

"""Tool registry for managing and dispatching tools."""

import logging
from typing import Any, Iterable

from .base import Tool, ToolResult

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Registry for the tools exposed to one agent run."""

    def __init__(self, tools: Iterable[Tool] = ()) -> None:
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def register(self, tool: Tool) -> None:
        """Register a tool."""
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' already registered")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        """Get a tool by name."""
        return self._tools.get(name)

    def list_tools(self) -> list[str]:
        """List all registered tool names."""
        return list(self._tools.keys())

    def subset(self, names: Iterable[str]) -> "ToolRegistry":
        """New registry holding only the named tools that are registered here."""
        return ToolRegistry(self._tools[n] for n in names if n in self._tools)

    def get_tools_schema(self) -> list[dict[str, Any]]:
        """Get schemas for all tools (for LLM function calling)."""
        return [tool.get_schema() for tool in self._tools.values()]

    async def dispatch(self, tool_name: str, args: dict[str, Any]) -> ToolResult:
        """Dispatch a tool call by name. Never raises."""
        tool = self._tools.get(tool_name)
        if tool is None:
            return ToolResult(
                success=False,
                output="",
                error=f"Unknown tool: {tool_name}",
            )

        valid, error = tool.validate_args(args)
        if not valid:
            return ToolResult(success=False, output="", error=error)

        try:
            return await tool.execute(**args)
        except Exception as e:
            logger.exception("Tool %s failed", tool_name)
            return ToolResult(
                success=False,
                output="",
                error=f"Tool execution failed: {e}",
            )

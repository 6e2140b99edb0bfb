## collection.py
"""Collection classes for managing multiple tools."""

import json
import logging
from typing import Any, Dict, List

from .base import BaseTool, ToolResult

logger = logging.getLogger(__name__)


class ToolCollection:
    """Collection of tools dispatched by name."""

    def __init__(self, *tools: BaseTool):
        """
        Initialize the tool collection.

        Args:
            *tools: Tools to add to the collection
        """
        self.tools: Dict[str, BaseTool] = {}
        for tool in tools:
            if hasattr(tool, "name"):
                self.tools[tool.name] = tool

    def to_params(self) -> List[Dict[str, Any]]:
        """
        Convert all tools to a list of parameter dictionaries.

        Returns:
            List[Dict[str, Any]]: List of tool parameters
        """
        tool_params = []
        for tool_name, tool in self.tools.items():
            try:
                tool_params.append(tool.to_params())
            except Exception as e:
                logger.error(f"Error getting params for tool {tool_name}: {e}")
        logger.debug(f"Total tools collected: {len(tool_params)}")
        return tool_params

    async def run(self, name: str, tool_input: Dict[str, Any]) -> ToolResult:
        """
        Run a tool with the given name and input.

        Args:
            name: Name of the tool to run
            tool_input: Input parameters for the tool

        Returns:
            ToolResult: Result of the tool execution, or an error result when
            the tool is unknown or raises.
        """
        command = str(tool_input.get("command", name))
        if name not in self.tools:
            return ToolResult(
                error=f"Tool '{name}' not found. Available tools: {', '.join(self.tools.keys())}",
                tool_name=name,
                command=command,
            )

        tool = self.tools[name]
        try:
            logger.debug(f"EXACT TOOL INPUT: \n{json.dumps(tool_input, indent=2)}")
            result = await tool(**tool_input)
        except Exception as e:
            logger.error(f"Error executing tool '{name}'", exc_info=True)
            return ToolResult(
                error=f"Error executing tool '{name}': {str(e)}",
                tool_name=name,
                command=command,
            )

        if result is None:
            return ToolResult(error="Tool execution returned None", tool_name=name, command=command)
        if result.tool_name is None or result.command is None:
            result = result.replace(
                tool_name=result.tool_name or name,
                command=result.command or command,
            )
        return result

## base.py
from abc import ABCMeta, abstractmethod
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional


@dataclass(kw_only=True, frozen=True)
class ToolResult:
    """
    Result from executing a tool.

    Attributes:
        output: The output of the tool execution
        error: Optional error message if the tool execution failed
        message: Optional message, e.g. a note that parameters were healed
        tool_name: Name of the tool that was executed
        command: Command that was executed
    """

    output: Optional[str] = None
    error: Optional[str] = None
    message: Optional[str] = None
    tool_name: Optional[str] = None
    command: Optional[str] = None

    def replace(self, **kwargs):
        """Returns a new ToolResult with the given fields replaced."""
        return replace(self, **kwargs)


class ToolError(Exception):
    """Exception raised when a tool fails to execute."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def __str__(self):
        return self.message


class BaseTool(metaclass=ABCMeta):
    """Base class for all tools."""

    def __init__(self, input_schema: Optional[Dict[str, Any]] = None):
        self.input_schema = input_schema or {
            "type": "object",
            "properties": {},
            "required": [],
        }

    @property
    @abstractmethod
    def name(self) -> str:
        """The name of the tool."""
        pass

    @property
    @abstractmethod
    def description(self) -> str:
        """A description of what the tool does."""
        pass

    @abstractmethod
    async def __call__(self, **kwargs) -> ToolResult:
        """Execute the tool with the given arguments."""
        pass

    def to_params(self) -> Dict[str, Any]:
        """Convert the tool to OpenAI function-calling parameters."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }

from .base import BaseTool, ToolError, ToolResult
from .edit import EditTool
from .apply_patch import ApplyPatchTool
from .collection import ToolCollection

__all__ = [
    "BaseTool",
    "ToolError",
    "ToolResult",
    "EditTool",
    "ApplyPatchTool",
    "ToolCollection",
]

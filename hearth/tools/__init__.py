"""Tools package for Hearth."""

from hearth.tools.registry import (
    RiskLevel,
    Tool,
    ToolContext,
    ToolParameter,
    ToolPolicy,
    ToolRegistry,
    ToolResult,
    ToolSchema,
)
from hearth.tools.response import ResponseTool
from hearth.tools.file import FileTool
from hearth.tools.memory_tools import (
    CoreMemoryAppendTool,
    CoreMemoryReadTool,
    CoreMemoryReplaceTool,
)
from hearth.tools.delegate import DelegateTaskTool

__all__ = [
    "RiskLevel",
    "Tool",
    "ToolContext",
    "ToolParameter",
    "ToolPolicy",
    "ToolRegistry",
    "ToolResult",
    "ToolSchema",
    "ResponseTool",
    "FileTool",
    "CoreMemoryReadTool",
    "CoreMemoryAppendTool",
    "CoreMemoryReplaceTool",
    "DelegateTaskTool",
]

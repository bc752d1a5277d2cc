import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional

from spindle_service.core.errors import ToolExecutionError
from spindle_service.core.interfaces import Tool
from spindle_service.core.tool_registry import BuiltInTool, resolve_variant
from spindle_service.tools.base import ToolContext

CustomToolHandler = Callable[[str, Dict[str, Any]], Awaitable[Any]]


class ToolRunner:
    """Execute built-in and session-declared custom tools with timeout"""

    def __init__(
        self,
        tools: Dict[str, Tool],
        timeout: float = 600,
        custom_tools: Optional[Dict[str, Optional[Dict[str, Any]]]] = None,
        custom_tool_handler: Optional[CustomToolHandler] = None,
    ):
        self.tools = tools
        self.timeout = timeout
        self.custom_tools = custom_tools or {}
        self.custom_tool_handler = custom_tool_handler

    async def run(self, name: str, args: Dict[str, Any], ctx: ToolContext) -> Any:
        variant = resolve_variant(name, self.tools, self.custom_tools)
        if isinstance(variant, BuiltInTool):
            return await asyncio.wait_for(variant.tool.run(ctx, **args), timeout=self.timeout)
        if not variant.declared:
            raise ToolExecutionError(f"Tool '{name}' not found")
        if self.custom_tool_handler is None:
            raise ToolExecutionError(f"No handler registered for custom tool '{name}'")
        return await asyncio.wait_for(self.custom_tool_handler(name, args), timeout=self.timeout)

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

from spindle_service.core.factory import load
from spindle_service.core.interfaces import Processor, Tool
from spindle_service.core.logging import logger


class ToolRegistry:
    """Loads and provides available tools based on config"""
    def __init__(self, registry_cfg: List[Dict[str, Any]], enabled: List[str]):
        self.tools: Dict[str, Tool] = {}
        for tcfg in registry_cfg:
            name = tcfg.get('name')
            if name in enabled:
                impl = tcfg.get('impl', '')
                args = tcfg.get('args', {}) or {}
                try:
                    tool = load(impl, **args)
                    # Set the tool's name to match the registry name
                    if hasattr(tool, '_registry_name'):
                        tool._registry_name = name
                    self.tools[name] = tool
                except Exception as e:
                    logger.warning(f"Skipping tool '{name}' ({impl}): {e}")
                    continue

    def get(self, name: str) -> Optional[Tool]:
        return self.tools.get(name)

    def all(self) -> Dict[str, Tool]:
        return self.tools

    def schemas(self) -> List[Dict[str, Any]]:
        return [tool.schema for tool in self.tools.values()]


@dataclass(frozen=True)
class BuiltInTool:
    name: str
    tool: Tool


@dataclass(frozen=True)
class CustomTool:
    """A tool the session declared (or an unknown name when declared is False)."""
    name: str
    input_schema: Optional[Dict[str, Any]] = None
    declared: bool = True


ToolVariant = Union[BuiltInTool, CustomTool]


def resolve_variant(
    name: str,
    tools: Dict[str, Tool],
    custom_tools: Optional[Dict[str, Optional[Dict[str, Any]]]] = None,
) -> ToolVariant:
    """Session-declared custom tools shadow built-ins of the same name."""
    custom_tools = custom_tools or {}
    if name in custom_tools:
        return CustomTool(name, custom_tools[name])
    if name in tools:
        return BuiltInTool(name, tools[name])
    return CustomTool(name, None, declared=False)


class UnhandledToolProcessor(Processor):
    """Fallback for names nobody registered: the call is logged and dropped."""

    def __init__(self, tool_name: str):
        self.tool_name = tool_name

    async def on_end(self, tool_name: str, params: Dict[str, Any], tool_call_id: str, **flags: bool) -> None:
        logger.warning(f"No processor handles tool '{tool_name}' ({tool_call_id}); call dropped")


class ProcessorRegistry:
    """
    Maps tool names to processors. Built-in names are registered up front;
    any other name goes to the default factory, so resolve() always returns
    a processor.
    """

    def __init__(
        self,
        processors: Optional[Dict[str, Processor]] = None,
        default_factory: Callable[[str], Processor] = UnhandledToolProcessor,
    ):
        self.processors: Dict[str, Processor] = dict(processors or {})
        self.default_factory = default_factory

    def register(self, name: str, processor: Processor) -> None:
        self.processors[name] = processor

    def resolve(self, tool_name: str) -> Processor:
        processor = self.processors.get(tool_name)
        if processor is not None:
            return processor
        return self.default_factory(tool_name)

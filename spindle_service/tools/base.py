from abc import abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Union, get_args, get_origin
import inspect
import re

from spindle_service.core.interfaces import Tool
from spindle_service.protocol.orchestration.messages import TurnState

# =============================
# Tool Authoring Guidelines
# =============================
#
# To create a new tool:
# 1. Subclass BaseTool and implement async run(self, ctx, ...) with explicit, type-annotated arguments.
#    ctx is the ToolContext of the call and is never part of the schema.
# 2. Use a Google-style docstring for run() with an Args: section, e.g.:
#
#     async def run(self, ctx: ToolContext, id: str, objective: str = "") -> dict:
#         """
#         Args:
#             id: Short identifier for the subgoal.
#             objective: What the subgoal should achieve.
#         """
#         ...
#
# 3. The schema will be generated automatically from the run() signature and docstring.
# 4. The class-level docstring will be used as the tool's description in the schema.
#
# Tools run one at a time per turn, in the order the model emitted them, so
# they may mutate ctx.state freely. Use only JSON-serializable return values.

Spawner = Callable[[TurnState, str, Optional[str]], Awaitable[Dict[str, Any]]]


@dataclass
class ToolContext:
    """Per-call context handed to BaseTool.run."""
    state: TurnState
    tool_call_id: str
    spawner: Optional[Spawner] = None
    credits: int = 0

    def add_credits(self, credits: int) -> None:
        self.credits += int(credits)


def _json_type(hint: Any) -> str:
    origin = get_origin(hint)
    if origin is Union:
        args = [a for a in get_args(hint) if a is not type(None)]
        return _json_type(args[0]) if len(args) == 1 else 'string'
    if hint is str:
        return 'string'
    if hint is bool:
        return 'boolean'
    if hint is int:
        return 'integer'
    if hint is float:
        return 'number'
    if hint is list or origin is list:
        return 'array'
    if hint is dict or origin is dict:
        return 'object'
    return 'string'


class BaseTool(Tool):

    def __init__(self):
        self._registry_name: str | None = None

    @staticmethod
    def _extract_param_descriptions(docstring: str) -> dict:
        """
        Parse the docstring for an Args: section and return a mapping of param name to description.
        Supports Google-style docstrings.
        """
        if not docstring:
            return {}
        param_desc = {}
        args_section = re.search(r"Args?:\s*(.*?)(^\S|\Z)", docstring, re.DOTALL | re.MULTILINE)
        if args_section:
            args_text = args_section.group(1)
            for line in args_text.splitlines():
                match = re.match(r"\s*(\w+)\s*:\s*(.*)", line)
                if match:
                    name, desc = match.groups()
                    param_desc[name] = desc.strip()
        return param_desc

    @property
    def auto_schema(self) -> Dict[str, Any]:
        from typing import get_type_hints
        sig = inspect.signature(self.run)
        hints = get_type_hints(self.run)
        docstring = self.run.__doc__ or self.__doc__ or ""
        param_docs = self._extract_param_descriptions(docstring)
        params = {}
        required = []
        for name, param in sig.parameters.items():
            if name in ('self', 'ctx'):
                continue
            params[name] = {
                'type': _json_type(hints.get(name, str)),
                'description': param_docs.get(name, '')
            }
            if param.default is inspect.Parameter.empty:
                required.append(name)
        return self.build_schema(
            function_name=self.name,
            description=inspect.cleandoc(self.__doc__ or ''),
            parameters=params,
            required=required
        )

    @property
    def name(self) -> str:
        # Use registry name if set, otherwise fall back to class name
        if self._registry_name:
            return self._registry_name
        return self.__class__.__name__

    @staticmethod
    def build_schema(
        function_name: str,
        description: str,
        parameters: dict,
        required: 'Optional[list[str]]' = None,
    ) -> dict:
        return {
            "type": "function",
            "function": {
                "name": function_name,
                "description": description,
                "parameters": {
                    "type": "object",
                    "properties": parameters,
                    "required": required or [],
                },
            },
        }

    @property
    def schema(self) -> Dict[str, Any]:
        return self.auto_schema

    @abstractmethod
    async def run(self, ctx: ToolContext, **kwargs) -> Any:
        """Execute tool with given arguments (auto-schema will match signature)."""
        raise NotImplementedError()

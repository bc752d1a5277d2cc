from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, List, Optional

from spindle_service.core.types import Chunk

if TYPE_CHECKING:
    from spindle_service.tools.base import ToolContext


class ModelProvider(ABC):
    @abstractmethod
    def stream(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> AsyncIterator[Chunk]:
        """Stream chunks for one assistant generation, ending with StreamEnd."""
        ...

    @abstractmethod
    def list_models(self) -> List[str]:
        """List available models."""
        ...


class StreamParser(ABC):
    @abstractmethod
    def feed(self, text: str) -> List[tuple[str, str]]:
        """Ingest raw model text and return zero or more (kind, value) segments"""
        ...

    @abstractmethod
    def flush(self) -> str:
        """Return all held-back text as prose and reset to the outside state"""
        ...


class Processor(ABC):
    """Receives start/end callbacks for one tool name."""

    def on_start(self, tool_name: str, attrs: Dict[str, str]) -> None:
        return None

    @abstractmethod
    async def on_end(
        self,
        tool_name: str,
        params: Dict[str, Any],
        tool_call_id: str,
        *,
        autocompleted: bool = False,
        ends_agent_step: bool = False,
    ) -> None:
        ...


class TelemetrySink(ABC):
    @abstractmethod
    def report(self, event: str, properties: Dict[str, Any]) -> None:
        ...


class Tool(ABC):
    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    @abstractmethod
    def schema(self) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def run(self, ctx: "ToolContext", **kwargs: Any) -> Any:
        ...

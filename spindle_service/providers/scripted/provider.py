import asyncio
from typing import Any, AsyncGenerator, Dict, List, Optional, Sequence, Union
from uuid import uuid4

from spindle_service.core.interfaces import ModelProvider
from spindle_service.core.types import Chunk, ReasoningChunk, StreamEnd, TextChunk

Script = Union[str, Sequence[Chunk]]


class ScriptedProvider(ModelProvider):
    """
    Deterministic stand-in for a model client.

    Responses are replayed in order, one per stream() call; once they run
    out every call produces an empty response. `by_prompt` maps the latest
    user message to a response and wins over the ordered list. Without any
    script the provider echoes the latest user message. A response given as
    a list of chunks is replayed as-is; strings are split into chunk_size
    pieces. Every stream ends with StreamEnd unless the script already has one.
    """

    def __init__(
        self,
        responses: Optional[List[Script]] = None,
        by_prompt: Optional[Dict[str, Script]] = None,
        chunk_size: int = 16,
        delay: float = 0.0,
        reasoning: Optional[str] = None,
    ):
        self.responses: List[Script] = list(responses or [])
        self.by_prompt: Dict[str, Script] = dict(by_prompt or {})
        self._scripted = bool(self.responses or self.by_prompt)
        self.chunk_size = max(1, int(chunk_size))
        self.delay = delay
        self.reasoning = reasoning
        self.calls: List[List[Dict[str, Any]]] = []

    def _next_script(self, messages: List[Dict[str, Any]]) -> Script:
        prompt = ""
        for msg in reversed(messages):
            if msg.get("role") == "user":
                prompt = msg.get("content", "")
                break
        if prompt in self.by_prompt:
            return self.by_prompt[prompt]
        if self.responses:
            return self.responses.pop(0)
        return "" if self._scripted else prompt

    async def stream(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> AsyncGenerator[Chunk, None]:
        self.calls.append(list(messages))
        script = self._next_script(messages)

        if isinstance(script, str):
            chunks: List[Chunk] = [
                TextChunk(script[i : i + self.chunk_size]) for i in range(0, len(script), self.chunk_size)
            ]
            if self.reasoning:
                chunks.insert(0, ReasoningChunk(self.reasoning))
        else:
            chunks = list(script)

        for chunk in chunks:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield chunk
            if isinstance(chunk, StreamEnd):
                return
        yield StreamEnd(message_id=f"msg-{uuid4().hex[:12]}")

    def list_models(self) -> List[str]:
        return ["scripted"]

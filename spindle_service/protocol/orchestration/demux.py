from typing import Any, AsyncGenerator, AsyncIterator, Dict, List, Optional, Union

from spindle_service.core.interfaces import TelemetrySink
from spindle_service.core.logging import logger
from spindle_service.core.telemetry import AnalyticsEvent
from spindle_service.core.tool_registry import ProcessorRegistry
from spindle_service.core.types import (
    Chunk,
    ErrorKind,
    Event,
    Invocation,
    InvocationError,
    ReasoningChunk,
    StreamEnd,
    StreamEvent,
    TextChunk,
    ToolCallChunk,
)
from spindle_service.protocol.parsers.invocation import (
    new_tool_call_id,
    parse_invocation,
    salvage_payload,
    shorten,
)
from spindle_service.protocol.parsers.tags import TagScanner


class TagDemultiplexer:
    """
    Splits one provider stream into prose and tool calls.

    Text chunks go through a TagScanner; each complete span is parsed,
    reported to telemetry and handed to the processor resolved for its tool
    name (on_start, then on_end) before the tool_call event is yielded.
    Reasoning chunks and native tool-call chunks bypass the scanner.
    """

    def __init__(
        self,
        registry: ProcessorRegistry,
        telemetry: Optional[TelemetrySink] = None,
        *,
        start_tag: str = "<tool_call>",
        end_tag: str = "</tool_call>",
        tool_name_key: str = "cb_tool_name",
        ends_agent_step_key: str = "cb_easp",
        max_tool_chars: int = 262144,
        telemetry_context: Optional[Dict[str, Any]] = None,
    ):
        self.registry = registry
        self.telemetry = telemetry
        self.scanner = TagScanner(start_tag, end_tag, max_tool_chars)
        self.tool_name_key = tool_name_key
        self.ends_agent_step_key = ends_agent_step_key
        self.telemetry_context = dict(telemetry_context or {})

        self.message_id: Optional[str] = None
        self.autocompleted = False
        self.completion_suffix = ""
        self.response_chunks: List[str] = []
        self.invocations: List[Invocation] = []
        self.errors: List[InvocationError] = []

    async def events(self, stream: AsyncIterator[Chunk]) -> AsyncGenerator[Event, None]:
        try:
            async for chunk in stream:
                if isinstance(chunk, StreamEnd):
                    self.message_id = chunk.message_id
                    break

                if isinstance(chunk, ReasoningChunk):
                    if chunk.text:
                        yield {"type": StreamEvent.REASONING_DELTA, "data": {"delta": chunk.text}}
                    continue

                if isinstance(chunk, ToolCallChunk):
                    pending = self.scanner.flush()
                    if pending:
                        yield {"type": StreamEvent.TEXT, "data": {"delta": pending}}
                    inv = Invocation(
                        tool_name=chunk.tool_name,
                        input=dict(chunk.input),
                        tool_call_id=chunk.tool_call_id or new_tool_call_id(),
                    )
                    yield await self._dispatch(inv)
                    continue

                if isinstance(chunk, TextChunk):
                    self.response_chunks.append(chunk.text)
                    for kind, value in self.scanner.feed(chunk.text):
                        yield await self._handle_segment(kind, value)
                    continue

                logger.warning(f"Demux: ignoring unsupported chunk {type(chunk).__name__}")

            for kind, value in self.scanner.finalize():
                yield await self._handle_segment(kind, value)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _handle_segment(self, kind: str, value: str) -> Event:
        if kind == "text":
            return {"type": StreamEvent.TEXT, "data": {"delta": value}}
        if kind == "span":
            return await self._handle_payload(value, autocompleted=False)
        if kind == "unterminated":
            return await self._salvage(value)
        # overflow: the payload outgrew max_tool_chars before its end tag arrived
        return self._fail(
            InvocationError(
                kind=ErrorKind.PARSE_ERROR,
                message=(
                    f"tool_payload_truncated: tool call exceeded {self.scanner.max_tool_chars} "
                    f"characters without a closing tag: {shorten(value)}"
                ),
                raw_payload=value,
            )
        )

    async def _salvage(self, partial: str) -> Event:
        self.autocompleted = True
        closed = salvage_payload(partial)
        if closed is None:
            closed = partial
        # the raw response ends with `partial`; rewrite that tail into the payload actually parsed
        keep = 0
        for a, b in zip(partial, closed):
            if a != b:
                break
            keep += 1
        self._drop_response_tail(len(partial) - keep)
        self.completion_suffix = closed[keep:] + self.scanner.end_tag
        self.response_chunks.append(self.completion_suffix)
        logger.info(f"Demux: salvaging unterminated tool call, suffix={self.completion_suffix!r}")
        return await self._handle_payload(closed, autocompleted=True)

    def _drop_response_tail(self, count: int) -> None:
        while count > 0 and self.response_chunks:
            last = self.response_chunks.pop()
            if len(last) > count:
                self.response_chunks.append(last[:-count])
                return
            count -= len(last)

    async def _handle_payload(self, payload: str, autocompleted: bool) -> Event:
        parsed = parse_invocation(
            payload,
            tool_name_key=self.tool_name_key,
            ends_agent_step_key=self.ends_agent_step_key,
            autocompleted=autocompleted,
        )
        if isinstance(parsed, InvocationError):
            return self._fail(parsed)
        return await self._dispatch(parsed)

    def _report(self, event: AnalyticsEvent, properties: Dict[str, Any]) -> None:
        if self.telemetry is None:
            return
        try:
            self.telemetry.report(event, {**properties, **self.telemetry_context})
        except Exception:
            logger.exception(f"Telemetry sink failed for {event}")

    def _fail(self, err: InvocationError) -> Event:
        self.errors.append(err)
        if err.kind == ErrorKind.UNKNOWN_TOOL:
            self._report(
                AnalyticsEvent.UNKNOWN_TOOL_CALL,
                {"contents": err.raw_payload, "toolName": err.tool_name, "autocompleted": err.autocompleted},
            )
        else:
            self._report(
                AnalyticsEvent.MALFORMED_TOOL_CALL_JSON,
                {"contents": err.raw_payload, "error": err.message, "autocompleted": err.autocompleted},
            )
        logger.warning(f"Demux: {err.kind}: {err.message}")
        return {"type": StreamEvent.ERROR, "data": {"kind": str(err.kind), "message": err.message}}

    async def _dispatch(self, inv: Invocation) -> Event:
        self._report(
            AnalyticsEvent.TOOL_USE,
            {
                "toolName": inv.tool_name,
                "contents": inv.raw_payload,
                "parsedParams": inv.input,
                "autocompleted": inv.autocompleted,
            },
        )
        processor = self.registry.resolve(inv.tool_name)
        processor.on_start(inv.tool_name, {})
        await processor.on_end(
            inv.tool_name,
            inv.input,
            inv.tool_call_id,
            autocompleted=inv.autocompleted,
            ends_agent_step=inv.ends_agent_step,
        )
        self.invocations.append(inv)
        logger.info(f"Demux: dispatched {inv.tool_name} ({inv.tool_call_id})")
        return {"type": StreamEvent.TOOL_CALL, "data": tool_call_data(inv)}


def tool_call_data(inv: Invocation) -> Dict[str, Any]:
    return {
        "tool_call_id": inv.tool_call_id,
        "tool_name": inv.tool_name,
        "input": inv.input,
        "autocompleted": inv.autocompleted,
    }

import asyncio
import copy
from collections import deque
from dataclasses import dataclass, field
from enum import StrEnum
from functools import partial
from typing import Any, AsyncGenerator, AsyncIterator, Awaitable, Callable, Deque, Dict, List, Optional, Tuple

from spindle_service.core.interfaces import Processor, TelemetrySink, Tool
from spindle_service.core.logging import logger
from spindle_service.core.tool_registry import ProcessorRegistry
from spindle_service.core.types import Chunk, Event, StreamEvent
from spindle_service.protocol.orchestration.demux import TagDemultiplexer
from spindle_service.protocol.orchestration.lane import ExecutionLane
from spindle_service.protocol.orchestration.messages import (
    AGENT_STEP,
    TurnState,
    assistant_text,
    assistant_tool_call,
    expire_messages,
    tool_result_message,
)
from spindle_service.protocol.orchestration.tool_runner import CustomToolHandler, ToolRunner
from spindle_service.protocol.parsers.invocation import new_tool_call_id
from spindle_service.tools.base import Spawner, ToolContext

ReportCost = Callable[[int], Awaitable[None]]


class TurnPhase(StrEnum):
    STREAMING = "streaming"
    STREAM_DONE = "stream_done"
    ABORTED = "aborted"
    TERMINAL = "terminal"


@dataclass
class TurnResult:
    tool_calls: List[Dict[str, Any]]
    tool_results: List[Dict[str, Any]]
    state: TurnState
    full_response: str
    full_response_chunks: List[str] = field(default_factory=list)
    message_id: Optional[str] = None
    aborted: bool = False
    ends_agent_step: bool = False
    credits: int = 0


class _LaneProcessor(Processor):
    """Routes dispatched calls of one stream into that stream's lane."""

    def __init__(self, pipeline: "ToolStreamProcessor", kind: str):
        self.pipeline = pipeline
        self.kind = kind

    def on_start(self, tool_name: str, attrs: Dict[str, str]) -> None:
        logger.debug(f"Tool call started: {tool_name} ({self.kind})")

    async def on_end(
        self,
        tool_name: str,
        params: Dict[str, Any],
        tool_call_id: str,
        *,
        autocompleted: bool = False,
        ends_agent_step: bool = False,
    ) -> None:
        await self.pipeline._dispatch(tool_name, params, tool_call_id, autocompleted, ends_agent_step)


class ToolStreamProcessor:
    """
    Runs one agent step: demultiplexes the provider stream, executes tool
    calls one at a time in emission order, and accretes the results onto a
    private copy of the turn state.

    Iterate it for outbound events; `result` holds the TurnResult once the
    iteration is over.
    """

    def __init__(
        self,
        stream: AsyncIterator[Chunk],
        *,
        state: TurnState,
        tools: Optional[Dict[str, Tool]] = None,
        custom_tools: Optional[Dict[str, Optional[Dict[str, Any]]]] = None,
        custom_tool_handler: Optional[CustomToolHandler] = None,
        abort_signal: Optional[asyncio.Event] = None,
        telemetry: Optional[TelemetrySink] = None,
        report_cost: Optional[ReportCost] = None,
        spawner: Optional[Spawner] = None,
        tool_timeout: float = 600,
        lane_max_pending: int = 0,
        telemetry_context: Optional[Dict[str, Any]] = None,
        **protocol: Any,
    ):
        self.stream = stream
        self.state = copy.deepcopy(state)
        self._previous_messages = list(self.state.messages)
        self.abort_signal = abort_signal or asyncio.Event()
        self.report_cost = report_cost
        self.spawner = spawner
        self.runner = ToolRunner(tools or {}, tool_timeout, custom_tools, custom_tool_handler)

        builtin = _LaneProcessor(self, "built-in")
        custom = _LaneProcessor(self, "custom")
        # built-in names are bound up front; session custom tools and undeclared names share the fallback
        self.demux = TagDemultiplexer(
            ProcessorRegistry(
                {name: builtin for name in self.runner.tools if name not in self.runner.custom_tools},
                default_factory=lambda _name: custom,
            ),
            telemetry,
            telemetry_context=telemetry_context,
            **protocol,
        )
        self.lane = ExecutionLane(lane_max_pending, name=f"lane-{self.state.run_id}")

        self.phase = TurnPhase.STREAMING
        self._outbox: Deque[Event] = deque()
        self._assistant_messages: List[Dict[str, Any]] = []
        self._tool_messages: List[Dict[str, Any]] = []
        self.tool_calls: List[Dict[str, Any]] = []
        self.tool_results: List[Dict[str, Any]] = []
        self.credits = 0
        self.ends_agent_step = False
        self.result: Optional[TurnResult] = None
        self._started = False

    # --- dispatch & execution (lane) ---

    async def _dispatch(
        self,
        tool_name: str,
        params: Dict[str, Any],
        tool_call_id: str,
        autocompleted: bool = False,
        ends_agent_step: bool = False,
    ) -> None:
        if self.abort_signal.is_set():
            logger.info(f"Abort requested; not dispatching {tool_name} ({tool_call_id})")
            return
        self._assistant_messages.append(assistant_tool_call(tool_call_id, tool_name, params))
        call = {
            "tool_call_id": tool_call_id,
            "tool_name": tool_name,
            "input": params,
            "autocompleted": autocompleted,
        }
        self.tool_calls.append(call)
        self.ends_agent_step = self.ends_agent_step or ends_agent_step
        # queued here so the call always precedes its result in the outbox
        self._outbox.append({"type": StreamEvent.TOOL_CALL, "data": call})
        await self.lane.submit(partial(self._execute, tool_name, params, tool_call_id))

    async def _execute(self, tool_name: str, params: Dict[str, Any], tool_call_id: str) -> None:
        ctx = ToolContext(state=self.state, tool_call_id=tool_call_id, spawner=self.spawner)
        error: Optional[str] = None
        output: Any = None
        try:
            output = await self.runner.run(tool_name, params, ctx)
        except asyncio.TimeoutError:
            error = f"Tool '{tool_name}' timed out after {self.runner.timeout}s"
            logger.error(error)
        except Exception as e:
            logger.exception(f"Tool '{tool_name}' failed ({tool_call_id})")
            error = str(e) or e.__class__.__name__

        result = {"errorMessage": error} if error is not None else output
        msg = tool_result_message(tool_call_id, tool_name, result)
        self._tool_messages.append(msg)
        self.tool_results.append(msg)

        await self._report_cost(ctx.credits)

        if self.abort_signal.is_set():
            return
        data: Dict[str, Any] = {"tool_call_id": tool_call_id, "tool_name": tool_name, "output": result}
        if error is not None:
            data["error"] = error
        self._outbox.append({"type": StreamEvent.TOOL_RESULT, "data": data})

    async def _report_cost(self, credits: int) -> None:
        self.credits += credits
        if self.report_cost is None:
            return
        try:
            await self.report_cost(credits)
        except Exception:
            logger.exception(f"report_cost failed for {credits} credits")

    async def _record_error(self, kind: str, message: str) -> None:
        if self.abort_signal.is_set():
            return

        async def job() -> None:
            msg = tool_result_message(new_tool_call_id(), kind, {"errorMessage": message})
            self._tool_messages.append(msg)
            self.tool_results.append(msg)

        await self.lane.submit(job)

    def _append_text(self, delta: str) -> None:
        last = self._assistant_messages[-1] if self._assistant_messages else None
        if last is not None and "tool" not in last:
            last["content"] += delta
        else:
            self._assistant_messages.append(assistant_text(delta))

    # --- stream loop ---

    def __aiter__(self) -> AsyncGenerator[Event, None]:
        if self._started:
            raise RuntimeError("ToolStreamProcessor can only be iterated once")
        self._started = True
        return self._run()

    async def _run(self) -> AsyncGenerator[Event, None]:
        events = self.demux.events(self.stream)
        try:
            try:
                async for ev in events:
                    etype = ev["type"]
                    data = ev.get("data", {})
                    if etype == StreamEvent.TEXT:
                        self._append_text(data["delta"])
                        self._outbox.append(ev)
                    elif etype == StreamEvent.REASONING_DELTA:
                        self._outbox.append(
                            {
                                "type": StreamEvent.REASONING_DELTA,
                                "data": {
                                    "delta": data["delta"],
                                    "run_id": self.state.run_id,
                                    "ancestor_run_ids": list(self.state.ancestor_run_ids),
                                },
                            }
                        )
                    elif etype == StreamEvent.ERROR:
                        self._outbox.append(ev)
                        await self._record_error(data["kind"], data["message"])
                    # tool_call events were queued by _dispatch

                    while self._outbox:
                        yield self._outbox.popleft()

                    if self.abort_signal.is_set():
                        self.phase = TurnPhase.ABORTED
                        logger.info(f"Turn {self.state.run_id} aborted; closing provider stream")
                        break
            finally:
                await events.aclose()

            if self.phase == TurnPhase.STREAMING:
                self.phase = TurnPhase.STREAM_DONE

            await self.lane.close()
            if self.abort_signal.is_set():
                self.phase = TurnPhase.ABORTED
            while self._outbox:
                ev = self._outbox.popleft()
                if self.phase == TurnPhase.ABORTED and ev["type"] == StreamEvent.TOOL_RESULT:
                    continue
                yield ev

            self._finish()
        finally:
            if self.phase != TurnPhase.TERMINAL:
                # closed or failed before the end: stop dispatching, let queued work finish
                self.abort_signal.set()
                self.phase = TurnPhase.ABORTED
                logger.info(f"Turn {self.state.run_id} ended early; draining lane")
                await self.lane.close()
                self._finish()

    def _finish(self) -> None:
        self.state.messages = (
            expire_messages(self._previous_messages, AGENT_STEP) + self._assistant_messages + self._tool_messages
        )
        self.result = TurnResult(
            tool_calls=self.tool_calls,
            tool_results=self.tool_results,
            state=self.state,
            full_response="".join(self.demux.response_chunks),
            full_response_chunks=list(self.demux.response_chunks),
            message_id=self.demux.message_id,
            aborted=self.phase == TurnPhase.ABORTED,
            ends_agent_step=self.ends_agent_step,
            credits=self.credits,
        )
        self.phase = TurnPhase.TERMINAL
        logger.info(
            f"Turn {self.state.run_id} finished: {len(self.tool_calls)} tool call(s), "
            f"aborted={self.result.aborted}, message_id={self.result.message_id}"
        )

    async def collect(self) -> Tuple[List[Event], TurnResult]:
        """Drain the processor and return (events, result)."""
        events = [ev async for ev in self]
        assert self.result is not None
        return events, self.result

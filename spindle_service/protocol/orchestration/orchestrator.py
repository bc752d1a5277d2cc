import asyncio
from typing import Any, AsyncGenerator, Dict, List, Optional

from spindle_service.core.interfaces import ModelProvider, Tool
from spindle_service.core.logging import logger
from spindle_service.core.types import Event, StreamEvent
from spindle_service.protocol.orchestration.emitter import NdjsonEmitter
from spindle_service.protocol.orchestration.messages import TurnState
from spindle_service.protocol.orchestration.pipeline import ToolStreamProcessor, TurnResult


class AgentLoop:
    """
    Repeats model steps for one agent run until the model stops calling
    tools, a call ends the agent step, end_turn is used, the run is aborted
    or max_agent_steps is reached.
    """

    def __init__(
        self,
        provider: ModelProvider,
        state: TurnState,
        *,
        tools: Optional[Dict[str, Tool]] = None,
        abort_signal: Optional[asyncio.Event] = None,
        max_agent_steps: int = 8,
        **processor_kwargs: Any,
    ):
        self.provider = provider
        self.state = state
        self.tools = tools or {}
        self.abort_signal = abort_signal or asyncio.Event()
        self.max_agent_steps = max_agent_steps
        self.processor_kwargs = processor_kwargs
        self.results: List[TurnResult] = []

    @property
    def last(self) -> Optional[TurnResult]:
        return self.results[-1] if self.results else None

    @property
    def aborted(self) -> bool:
        return self.abort_signal.is_set()

    @property
    def credits(self) -> int:
        return sum(r.credits for r in self.results)

    def _should_stop(self, result: TurnResult) -> bool:
        return (
            result.aborted
            or result.ends_agent_step
            or not result.tool_calls
            or bool(self.state.agent_state.get("turn_ended"))
        )

    async def events(self) -> AsyncGenerator[Event, None]:
        tool_schemas = [tool.schema for tool in self.tools.values()]
        for step in range(self.max_agent_steps):
            if self.abort_signal.is_set():
                break
            logger.info(f"Agent step {step + 1}/{self.max_agent_steps} for run {self.state.run_id}")
            processor = ToolStreamProcessor(
                self.provider.stream(self.state.messages, tool_schemas),
                state=self.state,
                tools=self.tools,
                abort_signal=self.abort_signal,
                **self.processor_kwargs,
            )
            step_events = processor.__aiter__()
            try:
                async for ev in step_events:
                    yield ev
            finally:
                await step_events.aclose()
            result = processor.result
            self.results.append(result)
            self.state = result.state
            if self._should_stop(result):
                break
        else:
            logger.warning(f"Run {self.state.run_id} hit max_agent_steps={self.max_agent_steps}")

    def summary(self) -> Dict[str, Any]:
        last = self.last
        return {
            "run_id": self.state.run_id,
            "message_id": last.message_id if last else None,
            "aborted": self.aborted,
            "ends_agent_step": bool(last and last.ends_agent_step),
            "steps": len(self.results),
            "credits": self.credits,
        }


async def orchestrate(turn_id: str, loop: AgentLoop) -> AsyncGenerator[bytes, None]:
    """
    Core orchestration: agent steps -> events -> NDJSON, always ending with a done event.
    """
    emitter = NdjsonEmitter(turn_id)
    events = loop.events()
    try:
        logger.info(f"Orchestration started: turn_id={turn_id}, run_id={loop.state.run_id}")
        async for ev in events:
            logger.debug(f"Turn event: {ev}")
            yield emitter.emit(ev)
    except Exception as e:
        logger.exception(f"Exception in orchestrate: turn_id={turn_id}, error={e}")
        yield emitter.emit({"type": StreamEvent.ERROR, "data": {"kind": "internal_error", "message": str(e)}})
    finally:
        await events.aclose()

    logger.info(f"Orchestration complete: turn_id={turn_id}")
    yield emitter.emit({"type": StreamEvent.DONE, "data": loop.summary()})

import asyncio
import copy
from functools import partial
from typing import Any, AsyncGenerator, Dict, Optional
from uuid import uuid4

from spindle_service.core.errors import SpawnDepthExceeded
from spindle_service.core.interfaces import ModelProvider, TelemetrySink, Tool
from spindle_service.core.logging import logger
from spindle_service.protocol.orchestration.messages import USER_PROMPT, TurnState, expire_messages, user_message
from spindle_service.protocol.orchestration.orchestrator import AgentLoop, orchestrate
from spindle_service.protocol.orchestration.pipeline import ReportCost
from spindle_service.protocol.orchestration.tool_runner import CustomToolHandler


async def log_cost(credits: int) -> None:
    if credits:
        logger.info(f"Billing: {credits} credit(s)")


async def _no_cost(credits: int) -> None:
    return None


class TurnService:
    """
    Runs user turns, keeps the abort signal of every active turn and spawns
    sub-agents on behalf of the spawn_agents tool.
    """

    def __init__(
        self,
        provider: ModelProvider,
        tools: Dict[str, Tool],
        telemetry: Optional[TelemetrySink] = None,
        *,
        tool_timeout: float = 600,
        lane_max_pending: int = 64,
        max_spawn_depth: int = 4,
        max_agent_steps: int = 8,
        protocol: Optional[Dict[str, Any]] = None,
        report_cost: Optional[ReportCost] = None,
    ):
        self.provider = provider
        self.tools = tools
        self.telemetry = telemetry
        self.tool_timeout = tool_timeout
        self.lane_max_pending = lane_max_pending
        self.max_spawn_depth = max_spawn_depth
        self.max_agent_steps = max_agent_steps
        self.protocol = dict(protocol or {})
        self.report_cost = report_cost or log_cost
        self.active: Dict[str, asyncio.Event] = {}

    def tool_schemas(self):
        return [tool.schema for tool in self.tools.values()]

    def _loop(
        self,
        state: TurnState,
        abort_signal: asyncio.Event,
        *,
        custom_tools: Optional[Dict[str, Optional[Dict[str, Any]]]] = None,
        custom_tool_handler: Optional[CustomToolHandler] = None,
        telemetry_context: Optional[Dict[str, Any]] = None,
        report_cost: Optional[ReportCost] = None,
    ) -> AgentLoop:
        return AgentLoop(
            self.provider,
            state,
            tools=self.tools,
            abort_signal=abort_signal,
            max_agent_steps=self.max_agent_steps,
            custom_tools=custom_tools,
            custom_tool_handler=custom_tool_handler,
            telemetry=self.telemetry,
            telemetry_context=telemetry_context,
            report_cost=report_cost or self.report_cost,
            spawner=partial(self.spawn, abort_signal=abort_signal),
            tool_timeout=self.tool_timeout,
            lane_max_pending=self.lane_max_pending,
            **self.protocol,
        )

    def prepare(self, prompt: str, state: Optional[TurnState] = None) -> TurnState:
        """Start a user turn: drop expired messages and add the prompt."""
        state = copy.deepcopy(state) if state is not None else TurnState()
        state.messages = expire_messages(state.messages, USER_PROMPT) + [user_message(prompt)]
        state.agent_state.pop("turn_ended", None)
        return state

    async def stream(
        self,
        prompt: str,
        *,
        turn_id: Optional[str] = None,
        state: Optional[TurnState] = None,
        custom_tools: Optional[Dict[str, Optional[Dict[str, Any]]]] = None,
        custom_tool_handler: Optional[CustomToolHandler] = None,
        telemetry_context: Optional[Dict[str, Any]] = None,
    ) -> AsyncGenerator[bytes, None]:
        turn_id = turn_id or f"turn-{uuid4().hex[:12]}"
        abort_signal = asyncio.Event()
        self.active[turn_id] = abort_signal
        loop = self._loop(
            self.prepare(prompt, state),
            abort_signal,
            custom_tools=custom_tools,
            custom_tool_handler=custom_tool_handler,
            telemetry_context=telemetry_context,
        )
        lines = orchestrate(turn_id, loop)
        try:
            async for line in lines:
                yield line
        finally:
            await lines.aclose()
            self.active.pop(turn_id, None)

    async def run(self, prompt: str, state: Optional[TurnState] = None, **kwargs: Any) -> AgentLoop:
        """Run a whole turn without streaming; events are discarded."""
        loop = self._loop(self.prepare(prompt, state), asyncio.Event(), **kwargs)
        async for _ in loop.events():
            pass
        return loop

    def abort(self, turn_id: str) -> bool:
        abort_signal = self.active.get(turn_id)
        if abort_signal is None:
            return False
        logger.info(f"Abort requested for turn {turn_id}")
        abort_signal.set()
        return True

    async def spawn(
        self,
        parent: TurnState,
        prompt: str,
        agent_type: Optional[str] = None,
        *,
        abort_signal: asyncio.Event,
    ) -> Dict[str, Any]:
        child = parent.spawn_child(prompt, agent_type)
        if child.depth > self.max_spawn_depth:
            raise SpawnDepthExceeded(child.depth, self.max_spawn_depth)

        logger.info(f"Spawning {agent_type or 'agent'} run {child.run_id} (depth {child.depth}) from {parent.run_id}")
        # child costs travel up through the spawning call, which reports them once
        loop = self._loop(child, abort_signal, report_cost=_no_cost)
        async for _ in loop.events():
            pass

        output = loop.state.agent_state.get("output")
        if output is None:
            texts = [m["content"] for m in loop.state.messages if m.get("role") == "assistant" and "tool" not in m]
            output = texts[-1] if texts else None
        return {
            "run_id": loop.state.run_id,
            "output": output,
            "credits": loop.credits,
            "aborted": loop.aborted,
        }

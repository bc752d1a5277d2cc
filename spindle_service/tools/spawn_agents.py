import asyncio
from typing import Any, Dict, List

from spindle_service.core.errors import ToolExecutionError
from spindle_service.core.logging import logger
from spindle_service.tools.base import BaseTool, ToolContext


class SpawnAgentsTool(BaseTool):
    """
    Spawn sub-agents that run in parallel and report their outputs back.
    """

    def __init__(self):
        super().__init__()

    async def run(self, ctx: ToolContext, agents: List[Dict[str, Any]]) -> dict:
        """
        Args:
            agents: List of {"agent_type": str, "prompt": str} objects, one per sub-agent.
        """
        if ctx.spawner is None:
            raise ToolExecutionError("Spawning sub-agents is not available in this session")
        if not agents:
            raise ToolExecutionError("agents must contain at least one entry")
        for entry in agents:
            if not isinstance(entry, dict) or not isinstance(entry.get("prompt"), str):
                raise ToolExecutionError(f"Each agent needs a string 'prompt': {entry!r}")

        logger.info(f"Spawning {len(agents)} sub-agent(s) from run {ctx.state.run_id}")
        # each child runs on its own TurnState
        results = await asyncio.gather(
            *(ctx.spawner(ctx.state, entry["prompt"], entry.get("agent_type")) for entry in agents)
        )
        for res in results:
            ctx.add_credits(res.get("credits", 0))
        return {
            "agents": [
                {"agent_type": entry.get("agent_type"), "run_id": res.get("run_id"), "output": res.get("output")}
                for entry, res in zip(agents, results)
            ]
        }

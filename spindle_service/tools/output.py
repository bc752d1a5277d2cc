from typing import Any, Dict

from spindle_service.tools.base import BaseTool, ToolContext


class SetOutputTool(BaseTool):
    """
    Set the structured output of this agent, returned to whoever spawned it.
    """

    def __init__(self):
        super().__init__()

    async def run(self, ctx: ToolContext, output: Dict[str, Any]) -> dict:
        """
        Args:
            output: JSON object to report as the agent's result.
        """
        ctx.state.agent_state["output"] = output
        return {"message": "Output set."}

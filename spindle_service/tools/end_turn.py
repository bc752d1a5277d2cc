from spindle_service.tools.base import BaseTool, ToolContext


class EndTurnTool(BaseTool):
    """
    End the current agent turn and hand control back to the user.
    """

    def __init__(self):
        super().__init__()

    async def run(self, ctx: ToolContext) -> dict:
        ctx.state.agent_state["turn_ended"] = True
        return {"message": "Turn ended."}

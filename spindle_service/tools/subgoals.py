from typing import Optional

from spindle_service.core.errors import ToolExecutionError
from spindle_service.tools.base import BaseTool, ToolContext

SUBGOAL_STATUSES = ("NOT_STARTED", "IN_PROGRESS", "COMPLETE", "ABORTED")


def _check_status(status: Optional[str]) -> None:
    if status is not None and status not in SUBGOAL_STATUSES:
        raise ToolExecutionError(f"Invalid subgoal status {status!r}; expected one of {', '.join(SUBGOAL_STATUSES)}")


class AddSubgoalTool(BaseTool):
    """
    Add a new subgoal for tracking progress on a multi-step task.
    """

    def __init__(self):
        super().__init__()

    async def run(
        self,
        ctx: ToolContext,
        id: str,
        objective: str,
        status: str = "NOT_STARTED",
        plan: Optional[str] = None,
        log: Optional[str] = None,
    ) -> dict:
        """
        Args:
            id: Short unique identifier for the subgoal.
            objective: What the subgoal should achieve.
            status: One of NOT_STARTED, IN_PROGRESS, COMPLETE, ABORTED.
            plan: Optional plan for reaching the objective.
            log: Optional first log entry.
        """
        _check_status(status)
        ctx.state.subgoals[id] = {
            "objective": objective,
            "status": status,
            "plan": plan,
            "logs": [log] if log else [],
        }
        return {"message": f"Subgoal {id} added."}


class UpdateSubgoalTool(BaseTool):
    """
    Update the status, plan or log of an existing subgoal.
    """

    def __init__(self):
        super().__init__()

    async def run(
        self,
        ctx: ToolContext,
        id: str,
        status: Optional[str] = None,
        plan: Optional[str] = None,
        log: Optional[str] = None,
    ) -> dict:
        """
        Args:
            id: Identifier of the subgoal to update.
            status: New status.
            plan: Replacement plan.
            log: Log entry to append.
        """
        subgoal = ctx.state.subgoals.get(id)
        if subgoal is None:
            raise ToolExecutionError(f"Subgoal {id!r} not found")
        _check_status(status)
        if status is not None:
            subgoal["status"] = status
        if plan is not None:
            subgoal["plan"] = plan
        if log:
            subgoal["logs"].append(log)
        return {"message": f"Subgoal {id} updated."}

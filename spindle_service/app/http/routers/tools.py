from fastapi import APIRouter, Request

router = APIRouter(prefix="/tools", tags=["tools"])


@router.get("")
def list_tools(request: Request):
    return {"tools": request.app.state.turn_svc.tool_schemas()}

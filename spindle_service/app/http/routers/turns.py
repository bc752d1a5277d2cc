from typing import Any, Dict, List, Optional
from uuid import uuid4

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from spindle_service.core.logging import logger
from spindle_service.protocol.orchestration.messages import TurnState

router = APIRouter(prefix="/turns", tags=["turns"])


class TurnRequest(BaseModel):
    prompt: str = Field(..., min_length=1, description="The user's prompt.")
    turn_id: Optional[str] = Field(None, description="Client-chosen id, needed to abort the turn later.")
    messages: List[Dict[str, Any]] = Field(default_factory=list, description="Prior conversation messages.")
    agent_state: Dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[str] = None
    agent_name: Optional[str] = None


@router.post("/stream")
async def stream(request: Request, body: TurnRequest):
    turn_id = body.turn_id or f"turn-{uuid4().hex[:12]}"
    logger.info(f"/turns/stream called: turn_id={turn_id}")
    turn_svc = request.app.state.turn_svc
    state = TurnState(messages=list(body.messages), agent_state=dict(body.agent_state))
    telemetry_context = {"userId": body.user_id, "agent": body.agent_name}

    async def event_generator():
        lines = turn_svc.stream(
            body.prompt,
            turn_id=turn_id,
            state=state,
            telemetry_context=telemetry_context,
        )
        try:
            async for chunk in lines:
                if await request.is_disconnected():
                    logger.info(f"Client disconnected: turn_id={turn_id}")
                    turn_svc.abort(turn_id)
                    break
                yield chunk
        except Exception as e:
            logger.exception(f"Exception in /turns/stream: {e}")
            raise
        finally:
            await lines.aclose()

    return StreamingResponse(event_generator(), media_type="application/x-ndjson")


@router.post("/{turn_id}/abort")
async def abort(request: Request, turn_id: str):
    if not request.app.state.turn_svc.abort(turn_id):
        raise HTTPException(status_code=404, detail=f"No active turn '{turn_id}'")
    return {"turn_id": turn_id, "aborted": True}

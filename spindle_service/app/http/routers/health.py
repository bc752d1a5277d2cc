from fastapi import APIRouter, Request

router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz():
    return {"ok": True}


@router.get("/readyz")
async def readyz(request: Request):
    """
    Provider: answers list_models without error.
    Tools: at least one tool loaded.
    """
    svc = request.app.state.turn_svc
    try:
        models = svc.provider.list_models()
    except Exception as e:
        return {"ready": False, "provider": False, "tools": None, "error": str(e)}
    tools_ok = bool(svc.tools)
    return {"ready": tools_ok, "provider": True, "models": models, "tools": tools_ok}

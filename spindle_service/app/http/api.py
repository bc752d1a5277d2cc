from typing import Any, Dict, Optional

from fastapi import APIRouter, FastAPI

from spindle_service.app.http.routers.health import router as health_router
from spindle_service.app.http.routers.tools import router as tools_router
from spindle_service.app.http.routers.turns import router as turns_router


def create_app(settings: Optional[Dict[str, Any]] = None):
    """Create and configure the FastAPI application with DI"""
    from spindle_service.core.config import load_settings
    from spindle_service.core.factory import ServiceFactory
    from spindle_service.core.logging import configure_logging

    settings = settings if settings is not None else load_settings()
    configure_logging(settings.get("logging", {}).get("level", "INFO"))

    factory = ServiceFactory(settings)
    app = FastAPI(title="spindle")
    # store service on app state
    app.state.turn_svc = factory.get_turn_service()

    v1_router = APIRouter(prefix="/api/v1")
    v1_router.include_router(turns_router)
    v1_router.include_router(tools_router)
    v1_router.include_router(health_router)

    app.include_router(v1_router)
    return app

import asyncio
import time

from fastapi import APIRouter, Request

from prometheus_metrics import router as metrics_router
from version import QUESTLINE_VERSION, get_version_string

router = APIRouter()

_started_at = time.time()


@router.get("/api/health")
async def health_check(request: Request):
    """Operational health check"""
    service = getattr(request.app.state, "story_service", None)
    return {
        "status": "healthy" if service else "initializing",
        "uptime": time.time() - _started_at,
    }


@router.get("/api/status")
async def get_status(request: Request):
    """System status"""
    service = getattr(request.app.state, "story_service", None)
    model = service.model if service else None
    is_available = getattr(model, "is_available", None)
    if callable(is_available):
        reachable = await asyncio.to_thread(is_available)
    else:
        reachable = model is not None
    return {
        "status": "healthy" if service else "initializing",
        "version": QUESTLINE_VERSION,
        "build": get_version_string(),
        "components": {
            "model_reachable": bool(reachable),
            "sessions": len(service.sessions.session_ids()) if service else 0,
            "active_turns": service.active_turns if service else 0,
        }
    }


router.include_router(metrics_router, tags=["monitoring"])

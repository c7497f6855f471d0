#!/usr/bin/env python3
"""
Questline Turn Engine - FastAPI application
Streams story turns over SSE and reconciles embedded assessments into session state.
"""

import random
from pathlib import Path
from typing import Optional

from fastapi import FastAPI

from convergence_tracker import ConvergenceTracker
from game_reconciler import GameLogicReconciler
from hot_config import ConfigChange, ConfigWatcher, init_config
from model_client import OllamaClient, OllamaConfig
from routers.story import router as story_router
from routers.system import router as system_router
from services.story_service import StoryTurnService, TurnSettings
from session_store import DiceRollStore, MemoryStore, SessionStore
from structured_logging import RequestLoggingMiddleware, configure_logging, get_logger
from version import QUESTLINE_VERSION, get_version_string
from world_event_log import WorldEventLog

CONFIG_PATH = Path(__file__).parent.parent / "config.json"

logger = get_logger("questline")


def build_service(config: ConfigWatcher) -> StoryTurnService:
    """Wire the turn pipeline from config."""
    event_log_dir = config.get("event_log_dir")
    sessions = SessionStore()
    event_log = WorldEventLog(Path(event_log_dir) if event_log_dir else None)
    tracker = ConvergenceTracker()
    seed = config.get("random_seed")
    reconciler = GameLogicReconciler(
        sessions, event_log, tracker,
        dice_rolls=DiceRollStore(),
        memories=MemoryStore(),
        rng=random.Random(seed),
    )
    model = OllamaClient(OllamaConfig.from_dict(config.get("llm", {})))
    return StoryTurnService(sessions, event_log, tracker, reconciler, model,
                            settings=TurnSettings.from_config(config))


def create_app(service: Optional[StoryTurnService] = None,
               config: Optional[ConfigWatcher] = None) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        service: Pre-built turn service (tests inject one with a scripted model)
        config: Config watcher; loaded from CONFIG_PATH when omitted
    """
    if config is None:
        config = init_config(str(CONFIG_PATH), watch=False)

    configure_logging(
        level=config.get("log_level", "INFO"),
        json_format=config.get("json_logging", True),
        component_levels=config.get("component_log_levels"),
    )

    app = FastAPI(
        title=f"Questline Turn Engine v{QUESTLINE_VERSION}",
        description="Streaming story turns with retrying model calls and audited state reconciliation",
        version=QUESTLINE_VERSION,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(system_router)
    app.include_router(story_router)

    app.state.config = config
    app.state.story_service = service or build_service(config)

    def _apply_settings(change: ConfigChange):
        app.state.story_service.settings = TurnSettings.from_config(config)
        logger.info(f"Turn settings reloaded after change to '{change.key}'")

    config.on_change("*", _apply_settings)

    @app.on_event("startup")
    async def startup_event():
        logger.info(f"Starting {get_version_string()}")
        if config.get("hot_reload", True):
            config.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("Shutting down, waiting for in-flight turns...")
        config.stop()
        await app.state.story_service.shutdown()
        model = app.state.story_service.model
        if hasattr(model, "shutdown"):
            model.shutdown()
        logger.info("Shutdown complete")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    print("=" * 70)
    print(get_version_string())
    print("=" * 70)

    uvicorn.run(app, host="127.0.0.1", port=8000, log_level="info")

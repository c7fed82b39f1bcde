"""FastAPI application for the inbox triage JSON API.

Creates the FastAPI app with:
- Lifespan context manager that builds the shared triage components
- The API router (reclassify, corrections, review, batch, sender rules)

Usage:
    from inbox_triage.web.app import create_app

    app = create_app()
    # Run with: uvicorn.run(app, host="127.0.0.1", port=8000)
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from inbox_triage.core.logging import configure_logging, get_logger

logger = get_logger(__name__)

_STATE_KEYS = (
    "config",
    "store",
    "taxonomy",
    "pipeline",
    "recorder",
    "reconciler",
    "classifier",
)


def _clear_state(app: FastAPI) -> None:
    for key in _STATE_KEYS:
        setattr(app.state, key, None)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize dependencies on startup.

    On startup:
    1. Load config
    2. Initialize database, taxonomy, classifier and engines
    3. Store them on app.state

    A config error leaves every component as None; the health endpoint
    then reports the app as unconfigured.
    """
    from inbox_triage.components import build_components
    from inbox_triage.config import get_config
    from inbox_triage.core.errors import ConfigLoadError, ConfigValidationError

    _clear_state(app)

    # 1. Load config
    try:
        config = get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        logger.error("config_load_failed", error=str(e))
        yield
        return

    configure_logging(log_level=config.logging.level, json_output=config.logging.json_output)

    # 2. Build components
    components = await build_components(config)

    # 3. Publish on app.state
    app.state.config = components.config
    app.state.store = components.store
    app.state.taxonomy = components.taxonomy
    app.state.pipeline = components.pipeline
    app.state.recorder = components.recorder
    app.state.reconciler = components.reconciler
    app.state.classifier = components.classifier

    logger.info("api_started", classifier_enabled=components.classifier is not None)

    yield

    # Shutdown
    await components.store.checkpoint_wal()
    logger.info("api_stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI instance
    """
    from inbox_triage.web.routes import api_router

    app = FastAPI(
        title="Inbox Triage",
        description="Classification, sender rules and batch reconciliation API",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(api_router)

    return app

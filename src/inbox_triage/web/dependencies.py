"""FastAPI dependency injection helpers.

Extracts shared dependencies from app.state for use in route handlers.
All dependencies are initialized during the FastAPI lifespan and stored
on app.state.

Usage:
    from inbox_triage.web.dependencies import get_store

    @router.get("/")
    async def stats(store: DatabaseStore = Depends(get_store)):
        return await store.get_stats("ws-1")
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import HTTPException, Request

if TYPE_CHECKING:
    from inbox_triage.config_schema import AppConfig
    from inbox_triage.db.store import DatabaseStore
    from inbox_triage.engine.batch import BatchReconciler
    from inbox_triage.engine.corrections import CorrectionRecorder
    from inbox_triage.engine.reclassify import ReclassificationPipeline


def _require(request: Request, name: str) -> Any:
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(
            status_code=503,
            detail="Service not configured. Check config/config.yaml and restart.",
        )
    return value


def get_store(request: Request) -> DatabaseStore:
    """Get the shared DatabaseStore from app state."""
    return _require(request, "store")


def get_config(request: Request) -> AppConfig:
    """Get the current AppConfig from app state."""
    return _require(request, "config")


def get_pipeline(request: Request) -> ReclassificationPipeline:
    """Get the ReclassificationPipeline from app state."""
    return _require(request, "pipeline")


def get_recorder(request: Request) -> CorrectionRecorder:
    """Get the CorrectionRecorder from app state."""
    return _require(request, "recorder")


def get_reconciler(request: Request) -> BatchReconciler:
    """Get the BatchReconciler from app state."""
    return _require(request, "reconciler")

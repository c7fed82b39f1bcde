"""JSON API routes for the inbox triage engine.

Endpoints:
- GET  /api/health
- POST /api/conversations/{id}/reclassify
- POST /api/conversations/{id}/corrections
- POST /api/conversations/{id}/confirm
- POST /api/workspaces/{id}/batch
- GET  /api/workspaces/{id}/sender-rules
- DELETE /api/sender-rules/{rule_id}
- GET  /api/workspaces/{id}/review-queue
- GET  /api/workspaces/{id}/stats

All routes use FastAPI dependency injection to access shared state.
Domain errors map to HTTP statuses: missing conversation 404, lost write
race 409, invalid input 422, classifier or database unavailable 503.
"""

from __future__ import annotations

from dataclasses import asdict
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from inbox_triage.config_schema import AppConfig
from inbox_triage.core.errors import (
    ClassificationError,
    ConversationNotFound,
    DatabaseError,
    InvalidCorrection,
    InvalidPattern,
    PersistenceConflict,
    TriageError,
    UnknownClassification,
)
from inbox_triage.core.logging import get_logger
from inbox_triage.db.store import DatabaseStore
from inbox_triage.engine.batch import BatchMode, BatchOptions, BatchReconciler
from inbox_triage.engine.corrections import (
    CorrectionRecorder,
    ExplicitRuleCorrection,
    NoRuleCorrection,
    ReviewCorrection,
)
from inbox_triage.engine.reclassify import ReclassificationPipeline, ReclassifyOptions
from inbox_triage.web.dependencies import (
    get_config,
    get_pipeline,
    get_reconciler,
    get_recorder,
    get_store,
)

logger = get_logger(__name__)

api_router = APIRouter(prefix="/api")

API_VERSION = "0.1.0"


# ---------------------------------------------------------------------------
# Pydantic models for API input validation
# ---------------------------------------------------------------------------


class ReclassifyRequest(BaseModel):
    """Request body for reclassifying one conversation."""

    dry_run: bool = False
    skip_llm: bool = False


class CorrectionRequest(BaseModel):
    """Request body for recording a correction."""

    classification: str = Field(min_length=1)
    corrected_by: str = Field(min_length=1)
    rule: Literal["email", "domain", "rule", "review", "none"] = "review"


class ConfirmRequest(BaseModel):
    """Request body for confirming a conversation's current classification."""

    reviewed_by: str = Field(min_length=1)


class BatchRequest(BaseModel):
    """Request body for one batch page."""

    mode: Literal["fast", "full"] = "fast"
    limit: int | None = Field(default=None, ge=1)
    offset: int = Field(default=0, ge=0)
    dry_run: bool = False


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


def _http_error(error: TriageError) -> HTTPException:
    """Translate a domain error into an HTTPException."""
    if isinstance(error, ConversationNotFound):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, PersistenceConflict):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, UnknownClassification | InvalidCorrection | InvalidPattern):
        return HTTPException(status_code=422, detail=str(error))
    if isinstance(error, ClassificationError | DatabaseError):
        return HTTPException(status_code=503, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))


def _conversation_to_dict(conversation: Any) -> dict[str, Any]:
    data = asdict(conversation)
    data.pop("draft_reply", None)
    return data


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@api_router.get("/health")
async def health_check(request: Request):
    """Health check endpoint for Docker and monitoring."""
    configured = getattr(request.app.state, "store", None) is not None
    classifier_enabled = getattr(request.app.state, "classifier", None) is not None

    if not configured:
        status = "unconfigured"
    elif not classifier_enabled:
        status = "degraded"
    else:
        status = "healthy"

    return {
        "status": status,
        "classifier_enabled": classifier_enabled,
        "version": API_VERSION,
    }


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------


@api_router.post("/conversations/{conversation_id}/reclassify")
async def reclassify_conversation(
    conversation_id: str,
    body: ReclassifyRequest | None = None,
    pipeline: ReclassificationPipeline = Depends(get_pipeline),  # noqa: B008
    config: AppConfig = Depends(get_config),  # noqa: B008
):
    """Re-run classification and bucket resolution for one conversation."""
    body = body or ReclassifyRequest()
    options = ReclassifyOptions(
        dry_run=body.dry_run,
        skip_llm=body.skip_llm,
        prefer_rules=config.pipeline.prefer_sender_rules,
        review_threshold=config.review.message_threshold,
        triggered_by="api",
    )

    try:
        result = await pipeline.reclassify(conversation_id, options)
    except TriageError as e:
        logger.warning(
            "api_reclassify_failed",
            conversation_id=conversation_id,
            error_type=type(e).__name__,
            error=str(e),
        )
        raise _http_error(e) from None

    return result.to_dict()


@api_router.post("/conversations/{conversation_id}/corrections")
async def record_correction(
    conversation_id: str,
    body: CorrectionRequest,
    recorder: CorrectionRecorder = Depends(get_recorder),  # noqa: B008
):
    """Record a human correction and learn sender rules from it."""
    if body.rule == "rule":
        mode = ExplicitRuleCorrection()
    elif body.rule in ("email", "domain"):
        mode = ExplicitRuleCorrection(scope=body.rule)
    elif body.rule == "none":
        mode = NoRuleCorrection()
    else:
        mode = ReviewCorrection()

    try:
        outcome = await recorder.record_correction(
            conversation_id,
            body.classification,
            corrected_by=body.corrected_by,
            mode=mode,
        )
    except TriageError as e:
        logger.warning(
            "api_correction_failed",
            conversation_id=conversation_id,
            error_type=type(e).__name__,
            error=str(e),
        )
        raise _http_error(e) from None

    return outcome.to_dict()


@api_router.post("/conversations/{conversation_id}/confirm")
async def confirm_review(
    conversation_id: str,
    body: ConfirmRequest,
    recorder: CorrectionRecorder = Depends(get_recorder),  # noqa: B008
):
    """Confirm the current classification and clear the review flag."""
    try:
        conversation = await recorder.confirm_review(conversation_id, body.reviewed_by)
    except TriageError as e:
        raise _http_error(e) from None

    return _conversation_to_dict(conversation)


# ---------------------------------------------------------------------------
# Workspaces
# ---------------------------------------------------------------------------


@api_router.post("/workspaces/{workspace_id}/batch")
async def run_batch(
    workspace_id: str,
    body: BatchRequest | None = None,
    reconciler: BatchReconciler = Depends(get_reconciler),  # noqa: B008
):
    """Reclassify one page of a workspace's conversations.

    The caller advances ``offset`` by ``processed`` and stops when
    ``exhausted`` is true. A 503 on a page fetch means the same offset
    can be retried.
    """
    body = body or BatchRequest()
    mode = BatchMode(body.mode)
    options = BatchOptions(
        limit=body.limit,
        offset=body.offset,
        dry_run=body.dry_run,
        skip_llm=mode.skip_llm,
    )

    try:
        result = await reconciler.run_batch(workspace_id, options)
    except TriageError as e:
        logger.error(
            "api_batch_failed",
            workspace_id=workspace_id,
            offset=body.offset,
            error=str(e),
        )
        raise _http_error(e) from None

    return result.to_dict()


@api_router.get("/workspaces/{workspace_id}/sender-rules")
async def list_sender_rules(
    workspace_id: str,
    active_only: bool = False,
    store: DatabaseStore = Depends(get_store),  # noqa: B008
):
    """List sender rules, most used first."""
    try:
        rules = await store.list_sender_rules(workspace_id, active_only=active_only)
    except DatabaseError as e:
        raise _http_error(e) from None

    return {"workspace_id": workspace_id, "rules": [asdict(rule) for rule in rules]}


@api_router.delete("/sender-rules/{rule_id}")
async def deactivate_sender_rule(
    rule_id: int,
    recorder: CorrectionRecorder = Depends(get_recorder),  # noqa: B008
):
    """Deactivate a sender rule. The row is kept for audit."""
    try:
        found = await recorder.deactivate_rule(rule_id, deactivated_by="api")
    except DatabaseError as e:
        raise _http_error(e) from None

    if not found:
        raise HTTPException(status_code=404, detail=f"Sender rule {rule_id} not found")
    return {"status": "deactivated", "rule_id": rule_id}


@api_router.get("/workspaces/{workspace_id}/review-queue")
async def review_queue(
    workspace_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    store: DatabaseStore = Depends(get_store),  # noqa: B008
):
    """Conversations flagged for human review, oldest first."""
    try:
        conversations = await store.get_review_queue(workspace_id, limit=limit)
    except DatabaseError as e:
        raise _http_error(e) from None

    return {
        "workspace_id": workspace_id,
        "conversations": [_conversation_to_dict(c) for c in conversations],
    }


@api_router.get("/workspaces/{workspace_id}/stats")
async def workspace_stats(
    workspace_id: str,
    store: DatabaseStore = Depends(get_store),  # noqa: B008
    recorder: CorrectionRecorder = Depends(get_recorder),  # noqa: B008
):
    """Bucket counts plus correction learning statistics."""
    try:
        stats = await store.get_stats(workspace_id)
        stats["learning"] = await recorder.correction_stats(workspace_id)
    except DatabaseError as e:
        raise _http_error(e) from None

    return stats

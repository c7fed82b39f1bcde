"""Batch reconciliation across a workspace inbox.

Pages through a workspace's conversations in (created_at, id) order and
runs the reclassification pipeline on each one over a bounded worker pool.
Every conversation is its own atomic unit: a failure on one item is
recorded against that item and never aborts the page. A page-fetch failure
is raised so the caller can retry the same offset.

The caller drives paging with an explicit offset and stops when a page
returns fewer items than its effective limit. ``run_all`` wraps that loop
with cooperative cancellation between pages.

Two operating modes:
- Apply Sender Rules (fast): rules only, no classifier calls
- Full AI Re-Analysis: classifier for every conversation without a rule,
  page size capped at batch.ai_max_page_size

Usage:
    from inbox_triage.engine.batch import BatchMode, BatchOptions, BatchReconciler

    reconciler = BatchReconciler(pipeline, store, config)
    page = await reconciler.run_batch("ws-1", BatchOptions(limit=50, dry_run=True))
    summary = await reconciler.run_all("ws-1", BatchMode.APPLY_SENDER_RULES)
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from inbox_triage.core.errors import (
    ClassificationError,
    ConversationNotFound,
    DatabaseError,
    InvalidPattern,
    PersistenceConflict,
)
from inbox_triage.core.logging import get_correlation_id, get_logger, set_correlation_id
from inbox_triage.engine.reclassify import ReclassifyOptions

if TYPE_CHECKING:
    from inbox_triage.config_schema import AppConfig
    from inbox_triage.db.store import Conversation, DatabaseStore
    from inbox_triage.engine.reclassify import ReclassificationPipeline

logger = get_logger(__name__)

# Item errors worth retrying on a later run
_RETRYABLE_ERRORS = (ClassificationError, PersistenceConflict, DatabaseError)


class BatchMode(Enum):
    """Named batch operating modes."""

    APPLY_SENDER_RULES = "fast"
    FULL_AI_REANALYSIS = "full"

    @property
    def skip_llm(self) -> bool:
        return self is BatchMode.APPLY_SENDER_RULES

    @property
    def label(self) -> str:
        if self is BatchMode.APPLY_SENDER_RULES:
            return "Apply Sender Rules (fast)"
        return "Full AI Re-Analysis"


# ---------------------------------------------------------------------------
# Options and results
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class BatchOptions:
    """One page request.

    Attributes:
        limit: Page size; None uses batch.default_page_size
        offset: Position of the first conversation in (created_at, id) order
        dry_run: Report changes without writing
        skip_llm: Rules only (fast mode)
    """

    limit: int | None = None
    offset: int = 0
    dry_run: bool = False
    skip_llm: bool = True


@dataclass(frozen=True, slots=True)
class BatchItemResult:
    """Per-conversation outcome kept for every processed item."""

    id: str
    original_bucket: str | None
    new_bucket: str | None
    rule_applied: bool
    changed: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "original_bucket": self.original_bucket,
            "new_bucket": self.new_bucket,
            "rule_applied": self.rule_applied,
        }


@dataclass(frozen=True, slots=True)
class BatchItemError:
    """Per-conversation failure; the item was left untouched."""

    id: str
    error_type: str
    message: str
    retryable: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "error_type": self.error_type,
            "message": self.message,
            "retryable": self.retryable,
        }


@dataclass
class BatchResult:
    """Result of one page.

    ``processed`` counts every conversation in the page, failed ones
    included. ``results`` holds only changed items.
    """

    workspace_id: str
    limit: int
    offset: int
    dry_run: bool
    skip_llm: bool
    batch_run_id: str
    processed: int = 0
    changed: int = 0
    skipped: int = 0
    results: list[BatchItemResult] = field(default_factory=list)
    errors: list[BatchItemError] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def exhausted(self) -> bool:
        """True when this page was the last one."""
        return self.processed < self.limit

    @property
    def next_offset(self) -> int:
        return self.offset + self.processed

    def to_dict(self) -> dict[str, Any]:
        return {
            "workspace_id": self.workspace_id,
            "batch_run_id": self.batch_run_id,
            "processed": self.processed,
            "changed": self.changed,
            "skipped": self.skipped,
            "limit": self.limit,
            "offset": self.offset,
            "next_offset": self.next_offset,
            "exhausted": self.exhausted,
            "dry_run": self.dry_run,
            "skip_llm": self.skip_llm,
            "results": [item.to_dict() for item in self.results],
            "errors": [error.to_dict() for error in self.errors],
            "duration_ms": self.duration_ms,
        }


@dataclass
class BatchRunSummary:
    """Totals for a full multi-page run."""

    workspace_id: str
    mode: BatchMode
    dry_run: bool
    batch_run_id: str
    pages: int = 0
    processed: int = 0
    changed: int = 0
    skipped: int = 0
    cancelled: bool = False
    next_offset: int = 0
    results: list[BatchItemResult] = field(default_factory=list)
    errors: list[BatchItemError] = field(default_factory=list)
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "workspace_id": self.workspace_id,
            "mode": self.mode.value,
            "dry_run": self.dry_run,
            "batch_run_id": self.batch_run_id,
            "pages": self.pages,
            "processed": self.processed,
            "changed": self.changed,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "next_offset": self.next_offset,
            "results": [item.to_dict() for item in self.results],
            "errors": [error.to_dict() for error in self.errors],
            "duration_ms": self.duration_ms,
        }


PageCallback = Callable[[BatchResult], Awaitable[None] | None]


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------


class BatchReconciler:
    """Runs the reclassification pipeline over pages of conversations.

    Attributes:
        _pipeline: ReclassificationPipeline applied per conversation
        _store: DatabaseStore for page fetches
        _config: Application configuration (batch, review, pipeline sections)
    """

    def __init__(
        self,
        pipeline: ReclassificationPipeline,
        store: DatabaseStore,
        config: AppConfig,
    ):
        self._pipeline = pipeline
        self._store = store
        self._config = config

    def update_config(self, config: AppConfig) -> None:
        """Swap in a reloaded config; takes effect on the next page.

        Only the batch, review and pipeline sections are read from here.
        Taxonomy, learning thresholds and classifier settings stay as they
        were when the components were built; changing those needs a restart.
        """
        self._config = config

    def effective_limit(self, options: BatchOptions) -> int:
        """Page size actually used for a request.

        Full AI runs are capped at ai_max_page_size. The capped value is
        reported back in BatchResult.limit so the caller's exhaustion check
        compares against the real page size.
        """
        limit = options.limit or self._config.batch.default_page_size
        if limit < 1:
            raise ValueError(f"Batch limit must be >= 1, got {limit}")
        if not options.skip_llm:
            limit = min(limit, self._config.batch.ai_max_page_size)
        return limit

    async def run_batch(self, workspace_id: str, options: BatchOptions) -> BatchResult:
        """Reclassify one page of a workspace's conversations.

        Args:
            workspace_id: Workspace to reconcile
            options: Page request

        Returns:
            BatchResult with counts, changed items and per-item errors

        Raises:
            DatabaseError: If the page itself cannot be fetched
            ValueError: If the offset or limit is negative
        """
        if options.offset < 0:
            raise ValueError(f"Batch offset must be >= 0, got {options.offset}")

        owns_run_id = get_correlation_id() is None
        batch_run_id = get_correlation_id() or str(uuid.uuid4())
        if owns_run_id:
            set_correlation_id(batch_run_id)

        start_time = time.monotonic()
        limit = self.effective_limit(options)
        result = BatchResult(
            workspace_id=workspace_id,
            limit=limit,
            offset=options.offset,
            dry_run=options.dry_run,
            skip_llm=options.skip_llm,
            batch_run_id=batch_run_id,
        )

        try:
            logger.info(
                "batch_page_start",
                workspace_id=workspace_id,
                offset=options.offset,
                limit=limit,
                requested_limit=options.limit,
                dry_run=options.dry_run,
                skip_llm=options.skip_llm,
            )

            page = await self._store.list_conversations_page(workspace_id, limit, options.offset)

            pipeline_options = ReclassifyOptions(
                dry_run=options.dry_run,
                skip_llm=options.skip_llm,
                prefer_rules=self._config.pipeline.prefer_sender_rules,
                review_threshold=self._config.review.message_threshold,
                triggered_by="batch",
            )
            semaphore = asyncio.Semaphore(self._config.batch.max_workers)

            async def worker(conversation: Conversation) -> BatchItemResult | BatchItemError:
                async with semaphore:
                    return await self._process_item(conversation, pipeline_options)

            outcomes = await asyncio.gather(*(worker(conversation) for conversation in page))

            # Aggregate in page order
            for outcome in outcomes:
                result.processed += 1
                if isinstance(outcome, BatchItemError):
                    result.skipped += 1
                    result.errors.append(outcome)
                elif outcome.changed:
                    result.changed += 1
                    result.results.append(outcome)

        finally:
            result.duration_ms = int((time.monotonic() - start_time) * 1000)
            logger.info(
                "batch_page_complete",
                workspace_id=workspace_id,
                offset=options.offset,
                limit=limit,
                processed=result.processed,
                changed=result.changed,
                skipped=result.skipped,
                dry_run=options.dry_run,
                duration_ms=result.duration_ms,
            )
            if owns_run_id:
                set_correlation_id(None)

        return result

    async def _process_item(
        self,
        conversation: Conversation,
        options: ReclassifyOptions,
    ) -> BatchItemResult | BatchItemError:
        """Run the pipeline on one conversation, capturing per-item failures."""
        try:
            outcome = await self._pipeline.reclassify_conversation(conversation, options)
        except (
            ClassificationError,
            InvalidPattern,
            ConversationNotFound,
            PersistenceConflict,
            DatabaseError,
        ) as e:
            retryable = isinstance(e, _RETRYABLE_ERRORS)
            logger.warning(
                "batch_item_failed",
                conversation_id=conversation.id,
                error_type=type(e).__name__,
                error=str(e),
                retryable=retryable,
            )
            return BatchItemError(
                id=conversation.id,
                error_type=type(e).__name__,
                message=str(e),
                retryable=retryable,
            )
        except Exception as e:
            # Classifier implementations may raise outside the TriageError tree
            logger.error(
                "batch_item_failed",
                conversation_id=conversation.id,
                error_type=type(e).__name__,
                error=str(e),
                retryable=True,
                exc_info=True,
            )
            return BatchItemError(
                id=conversation.id,
                error_type=type(e).__name__,
                message=str(e),
                retryable=True,
            )

        if outcome.changed:
            logger.debug(
                "batch_item_changed",
                conversation_id=conversation.id,
                original_bucket=outcome.original.decision_bucket,
                new_bucket=outcome.updated.decision_bucket,
                rule_applied=outcome.rule_applied,
            )

        return BatchItemResult(
            id=conversation.id,
            original_bucket=outcome.original.decision_bucket,
            new_bucket=outcome.updated.decision_bucket,
            rule_applied=outcome.rule_applied,
            changed=outcome.changed,
        )

    async def run_all(
        self,
        workspace_id: str,
        mode: BatchMode,
        dry_run: bool = False,
        cancel_event: asyncio.Event | None = None,
        page_size: int | None = None,
        start_offset: int = 0,
        on_page: PageCallback | None = None,
    ) -> BatchRunSummary:
        """Page through the whole workspace until exhausted or cancelled.

        Cancellation is checked between pages; the in-flight page always
        finishes. ``next_offset`` in the summary is where a resumed run
        should start.

        Raises:
            DatabaseError: If a page fetch fails (resume from next_offset)
        """
        batch_run_id = str(uuid.uuid4())
        set_correlation_id(batch_run_id)
        start_time = time.monotonic()

        summary = BatchRunSummary(
            workspace_id=workspace_id,
            mode=mode,
            dry_run=dry_run,
            batch_run_id=batch_run_id,
            next_offset=start_offset,
        )

        logger.info(
            "batch_run_start",
            workspace_id=workspace_id,
            mode=mode.value,
            dry_run=dry_run,
            start_offset=start_offset,
        )

        offset = start_offset
        try:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    summary.cancelled = True
                    logger.info("batch_run_cancelled", workspace_id=workspace_id, offset=offset)
                    break

                page = await self.run_batch(
                    workspace_id,
                    BatchOptions(
                        limit=page_size,
                        offset=offset,
                        dry_run=dry_run,
                        skip_llm=mode.skip_llm,
                    ),
                )

                summary.pages += 1
                summary.processed += page.processed
                summary.changed += page.changed
                summary.skipped += page.skipped
                summary.results.extend(page.results)
                summary.errors.extend(page.errors)
                offset = page.next_offset
                summary.next_offset = offset

                if on_page is not None:
                    maybe_awaitable = on_page(page)
                    if maybe_awaitable is not None:
                        await maybe_awaitable

                if page.exhausted:
                    break

            if not dry_run:
                await self._store.checkpoint_wal()

        finally:
            summary.duration_ms = int((time.monotonic() - start_time) * 1000)
            logger.info(
                "batch_run_complete",
                workspace_id=workspace_id,
                mode=mode.value,
                dry_run=dry_run,
                pages=summary.pages,
                processed=summary.processed,
                changed=summary.changed,
                skipped=summary.skipped,
                cancelled=summary.cancelled,
                duration_ms=summary.duration_ms,
            )
            set_correlation_id(None)

        return summary

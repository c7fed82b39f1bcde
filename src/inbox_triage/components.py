"""Wiring of the shared triage components.

Builds the store, taxonomy, rule matcher, classifier, pipeline, correction
recorder and batch reconciler from one AppConfig. The CLI and the web app
both go through build_components() so they run identical pipelines.

Usage:
    from inbox_triage.components import build_components

    components = await build_components(config)
    result = await components.pipeline.reclassify("conv-1")
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from inbox_triage.classifier.claude_classifier import ClaudeMessageClassifier
from inbox_triage.classifier.sender_rules import SenderRuleMatcher
from inbox_triage.classifier.taxonomy import Taxonomy
from inbox_triage.core.logging import get_logger
from inbox_triage.core.rate_limiter import TokenBucket
from inbox_triage.db.store import DatabaseStore
from inbox_triage.engine.batch import BatchReconciler
from inbox_triage.engine.corrections import CorrectionRecorder
from inbox_triage.engine.reclassify import ReclassificationPipeline

if TYPE_CHECKING:
    from inbox_triage.classifier.claude_classifier import MessageClassifier
    from inbox_triage.config_schema import AppConfig

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class TriageComponents:
    """Shared components initialized by build_components()."""

    config: AppConfig
    store: DatabaseStore
    taxonomy: Taxonomy
    matcher: SenderRuleMatcher
    classifier: MessageClassifier | None
    pipeline: ReclassificationPipeline
    recorder: CorrectionRecorder
    reconciler: BatchReconciler


def build_classifier(config: AppConfig, taxonomy: Taxonomy) -> MessageClassifier | None:
    """Create the Claude classifier, or None when no API key is configured.

    Without a classifier the pipeline still runs the sender-rule fast path;
    full AI runs fail with ClassifierUnavailable.
    """
    if not os.environ.get("ANTHROPIC_API_KEY"):
        logger.warning(
            "classifier_disabled",
            reason="ANTHROPIC_API_KEY not set; only sender rules will be applied",
        )
        return None

    import anthropic

    client = anthropic.AsyncAnthropic(max_retries=3)
    # Per build, never shared across event loops
    limiter = TokenBucket(rate=config.classifier.requests_per_second, capacity=1)
    return ClaudeMessageClassifier(
        client=client,
        taxonomy=taxonomy,
        config=config.classifier,
        limiter=limiter,
    )


async def build_components(
    config: AppConfig,
    classifier: MessageClassifier | None = None,
    use_default_classifier: bool = True,
) -> TriageComponents:
    """Initialize the database and assemble every component.

    Args:
        config: Validated application configuration
        classifier: Explicit classifier to use (tests pass a fake here)
        use_default_classifier: Build the Claude classifier when none is given

    Returns:
        TriageComponents ready for use
    """
    db_path = Path(config.database.path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    store = DatabaseStore(db_path)
    await store.initialize()

    taxonomy = Taxonomy.from_config(config.taxonomy)
    if classifier is None and use_default_classifier:
        classifier = build_classifier(config, taxonomy)

    matcher = SenderRuleMatcher(store)
    pipeline = ReclassificationPipeline(store, matcher, classifier, taxonomy)
    recorder = CorrectionRecorder(
        store,
        taxonomy,
        auto_rule_threshold=config.learning.auto_rule_threshold,
        default_rule_scope=config.learning.default_rule_scope,
    )
    reconciler = BatchReconciler(pipeline, store, config)

    logger.info(
        "components_initialized",
        db_path=str(db_path),
        taxonomy_labels=len(taxonomy),
        classifier_enabled=classifier is not None,
    )

    return TriageComponents(
        config=config,
        store=store,
        taxonomy=taxonomy,
        matcher=matcher,
        classifier=classifier,
        pipeline=pipeline,
        recorder=recorder,
        reconciler=reconciler,
    )

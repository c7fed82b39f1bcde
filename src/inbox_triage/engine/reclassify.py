"""Reclassification pipeline for a single conversation.

Pipeline per conversation:
1. Load the conversation snapshot
2. Match a sender rule -> adopt it when skipping the LLM or preferring rules
3. Otherwise call the classifier (unless skipping the LLM)
4. Resolve the decision bucket and review flag
5. Diff the candidate against the snapshot
6. Dry run: return the diff, write nothing
7. Live: write the triage fields, open or resolve the conversation to match
   the reply requirement, and count the rule hit in one version-guarded
   transaction; on conflict reload and retry once

Failures before step 7 leave the stored conversation untouched. Running the
pipeline twice with stable inputs is a no-op the second time.

Usage:
    from inbox_triage.engine.reclassify import ReclassificationPipeline, ReclassifyOptions

    pipeline = ReclassificationPipeline(store, matcher, classifier, taxonomy)
    result = await pipeline.reclassify("conv-1", ReclassifyOptions(dry_run=True))
    if result.changed:
        print(result.original.decision_bucket, "->", result.updated.decision_bucket)
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

from inbox_triage.classifier.buckets import MESSAGE_REVIEW_THRESHOLD, resolve_bucket
from inbox_triage.core.errors import (
    ClassifierUnavailable,
    ConversationNotFound,
    PersistenceConflict,
)
from inbox_triage.core.logging import get_logger
from inbox_triage.db.store import utc_now

if TYPE_CHECKING:
    from inbox_triage.classifier.claude_classifier import MessageClassifier
    from inbox_triage.classifier.sender_rules import SenderRuleMatcher
    from inbox_triage.classifier.taxonomy import Taxonomy
    from inbox_triage.db.store import Conversation, DatabaseStore, SenderRule

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Options and results
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ReclassifyOptions:
    """Per-call pipeline options.

    Attributes:
        dry_run: Compute the diff without writing anything
        skip_llm: Never call the classifier (rule-only fast path)
        prefer_rules: Let a matching rule bypass the classifier even when
            LLM calls are allowed
        review_threshold: Confidence below which review is required
        triggered_by: Audit source recorded with live writes
    """

    dry_run: bool = False
    skip_llm: bool = False
    prefer_rules: bool = True
    review_threshold: float = MESSAGE_REVIEW_THRESHOLD
    triggered_by: str = "manual"


@dataclass(frozen=True, slots=True)
class TriageState:
    """The triage fields of a conversation at one point in time."""

    classification: str | None
    requires_reply: bool | None
    decision_bucket: str | None
    confidence: float | None
    needs_review: bool
    classification_source: str | None

    @classmethod
    def of(cls, conversation: Conversation) -> TriageState:
        return cls(
            classification=conversation.classification,
            requires_reply=conversation.requires_reply,
            decision_bucket=conversation.decision_bucket,
            confidence=conversation.confidence,
            needs_review=conversation.needs_review,
            classification_source=conversation.classification_source,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class ReclassifyResult:
    """Outcome of one pipeline run.

    ``changed`` compares only classification and bucket. ``persisted`` is
    True when a live run actually wrote the row (which can also happen for
    unchanged label/bucket when confidence or the review flag moved).
    """

    conversation_id: str
    changed: bool
    original: TriageState
    updated: TriageState
    rule_applied: bool = False
    rule_pattern: str | None = None
    persisted: bool = False
    dry_run: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "changed": self.changed,
            "original": self.original.to_dict(),
            "updated": self.updated.to_dict(),
            "rule_applied": self.rule_applied,
            "rule_pattern": self.rule_pattern,
            "persisted": self.persisted,
            "dry_run": self.dry_run,
        }


@dataclass(frozen=True, slots=True)
class _Candidate:
    """Pipeline output before it is diffed and persisted."""

    state: TriageState
    rule: SenderRule | None = None
    sentiment: str | None = None
    draft_reply: str | None = None
    reason: str | None = None


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class ReclassificationPipeline:
    """Assigns classification, reply requirement and bucket to conversations.

    Attributes:
        _store: DatabaseStore for snapshots and writes
        _matcher: SenderRuleMatcher for the rule fast path
        _classifier: External classifier capability (None disables LLM calls)
        _taxonomy: Taxonomy for bucket resolution
    """

    def __init__(
        self,
        store: DatabaseStore,
        matcher: SenderRuleMatcher,
        classifier: MessageClassifier | None,
        taxonomy: Taxonomy,
    ):
        self._store = store
        self._matcher = matcher
        self._classifier = classifier
        self._taxonomy = taxonomy

    async def reclassify(
        self,
        conversation_id: str,
        options: ReclassifyOptions | None = None,
    ) -> ReclassifyResult:
        """Load a conversation by ID and run the pipeline on it.

        Raises:
            ConversationNotFound: If the ID does not exist
            ClassifierUnavailable: If the classifier timed out or is unreachable
            ClassificationError: If the classifier returned no usable result
            InvalidPattern: If the conversation's sender address is malformed
            PersistenceConflict: If the write lost twice to concurrent writers
        """
        snapshot = await self._load(conversation_id)
        return await self.reclassify_conversation(snapshot, options)

    async def reclassify_conversation(
        self,
        snapshot: Conversation,
        options: ReclassifyOptions | None = None,
    ) -> ReclassifyResult:
        """Run the pipeline on an already-loaded conversation snapshot."""
        options = options or ReclassifyOptions()
        original = TriageState.of(snapshot)

        candidate = await self._evaluate(snapshot, options)
        if candidate is None:
            # Rule-only run with no matching rule: nothing to apply
            return ReclassifyResult(
                conversation_id=snapshot.id,
                changed=False,
                original=original,
                updated=original,
                dry_run=options.dry_run,
            )

        try:
            return await self._apply(snapshot, candidate, options)
        except PersistenceConflict:
            logger.info(
                "reclassify_conflict_retrying",
                conversation_id=snapshot.id,
                expected_version=snapshot.version,
            )
            reloaded = await self._load(snapshot.id)
            return await self._apply(reloaded, candidate, options)

    async def _load(self, conversation_id: str) -> Conversation:
        conversation = await self._store.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFound(conversation_id)
        return conversation

    async def _evaluate(
        self,
        snapshot: Conversation,
        options: ReclassifyOptions,
    ) -> _Candidate | None:
        """Steps 2-4: rule match, classifier fallback, bucket resolution."""
        rule = await self._matcher.match(snapshot.workspace_id, snapshot.sender_email)

        if rule is not None and (options.skip_llm or options.prefer_rules):
            decision = resolve_bucket(
                rule.default_classification,
                rule.default_requires_reply,
                None,
                threshold=options.review_threshold,
                taxonomy=self._taxonomy,
                rule_derived=True,
            )
            needs_review = decision.needs_review or rule.automation_level == "always_review"
            return _Candidate(
                state=TriageState(
                    classification=rule.default_classification,
                    requires_reply=rule.default_requires_reply,
                    decision_bucket=decision.bucket,
                    confidence=None,
                    needs_review=needs_review,
                    classification_source="sender_rule",
                ),
                rule=rule,
                reason=_rule_reason(rule.pattern, decision.bucket, needs_review),
            )

        if options.skip_llm:
            return None

        if self._classifier is None:
            raise ClassifierUnavailable(
                f"No classifier configured; cannot reclassify {snapshot.id}. "
                "Set ANTHROPIC_API_KEY or run with skip_llm.",
                conversation_id=snapshot.id,
            )

        message_text = await self._store.get_first_inbound_body(snapshot.id)
        if not message_text:
            message_text = snapshot.title or ""

        output = await self._classifier.classify(message_text, snapshot.sender_email)

        requires_reply = output.requires_reply
        if requires_reply is None:
            entry = self._taxonomy.get(output.classification)
            requires_reply = entry.requires_reply if entry else None

        decision = resolve_bucket(
            output.classification,
            requires_reply,
            output.confidence,
            threshold=options.review_threshold,
            taxonomy=self._taxonomy,
        )
        if decision.needs_review:
            reason = f"Low confidence ({round(output.confidence * 100)}%) - needs review"
        else:
            reason = output.reasoning
        return _Candidate(
            state=TriageState(
                classification=output.classification,
                requires_reply=requires_reply,
                decision_bucket=decision.bucket,
                confidence=output.confidence,
                needs_review=decision.needs_review,
                classification_source="classifier",
            ),
            sentiment=output.sentiment,
            draft_reply=output.draft_reply,
            reason=reason,
        )

    async def _apply(
        self,
        snapshot: Conversation,
        candidate: _Candidate,
        options: ReclassifyOptions,
    ) -> ReclassifyResult:
        """Steps 5-7: diff, then persist unless this is a dry run."""
        original = TriageState.of(snapshot)
        updated = candidate.state
        changed = (
            updated.classification != original.classification
            or updated.decision_bucket != original.decision_bucket
        )
        rule = candidate.rule

        result = ReclassifyResult(
            conversation_id=snapshot.id,
            changed=changed,
            original=original,
            updated=updated,
            rule_applied=rule is not None,
            rule_pattern=rule.pattern if rule else None,
            dry_run=options.dry_run,
        )

        status_fields = _status_fields(snapshot, updated.requires_reply)
        if options.dry_run or (updated == original and not status_fields):
            return result

        fields: dict[str, Any] = updated.to_dict()
        fields.update(status_fields)
        if candidate.sentiment is not None:
            fields["sentiment"] = candidate.sentiment
        if candidate.draft_reply is not None:
            fields["draft_reply"] = candidate.draft_reply
        if candidate.reason is not None:
            fields["triage_reason"] = candidate.reason

        await self._store.apply_reclassification(
            snapshot,
            fields,
            rule_id=rule.id if rule else None,
            triggered_by=options.triggered_by,
            details={
                "original_classification": original.classification,
                "original_bucket": original.decision_bucket,
            },
        )

        logger.info(
            "conversation_reclassified",
            conversation_id=snapshot.id,
            workspace_id=snapshot.workspace_id,
            original_bucket=original.decision_bucket,
            new_bucket=updated.decision_bucket,
            classification=updated.classification,
            source=updated.classification_source,
            needs_review=updated.needs_review,
            changed=changed,
        )

        return ReclassifyResult(
            conversation_id=snapshot.id,
            changed=changed,
            original=original,
            updated=updated,
            rule_applied=rule is not None,
            rule_pattern=rule.pattern if rule else None,
            persisted=True,
            dry_run=False,
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _status_fields(snapshot: Conversation, requires_reply: bool | None) -> dict[str, Any]:
    """Open/resolved transition implied by the reply requirement.

    Empty when the row is already in the implied state or the requirement
    is unknown, so a repeat run writes nothing.
    """
    if requires_reply is True and snapshot.status != "open":
        return {"status": "open", "resolved_at": None}
    if requires_reply is False and snapshot.status != "resolved":
        return {"status": "resolved", "resolved_at": utc_now()}
    return {}


def _rule_reason(pattern: str, bucket: str, needs_review: bool) -> str:
    if needs_review:
        return f"Known sender ({pattern}) - review recommended"
    if bucket == "auto_handled":
        return f"Auto-handled: matches rule for {pattern}"
    return f"Known sender ({pattern})"

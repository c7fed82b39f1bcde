"""Correction ingestion and sender rule learning.

A correction is a reviewer overriding a conversation's classification. It
is always recorded as an append-only TriageCorrection row, and may also
teach a sender rule depending on how it was made:

- ExplicitRuleCorrection: the reviewer asked for a rule. The rule at the
  requested scope (exact address or ``*@domain``) is created, or
  overwritten with its hit count reset.
- ReviewCorrection: made from the review queue. No rule is created until
  the sender's domain has ``auto_rule_threshold`` corrections (this one
  included); from then on every correction upserts the ``*@domain`` rule
  with its own classification (the latest correction wins).
- NoRuleCorrection: recorded without any rule learning.

The conversation update, correction row and rule upsert commit together in
one transaction guarded by the conversation's version.

Usage:
    from inbox_triage.engine.corrections import CorrectionRecorder, ReviewCorrection

    recorder = CorrectionRecorder(store, taxonomy, auto_rule_threshold=3)
    outcome = await recorder.record_correction(
        "conv-1", "supplier_invoice", corrected_by="sam", mode=ReviewCorrection()
    )
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from inbox_triage.classifier.sender_rules import pattern_for
from inbox_triage.core.errors import (
    ConversationNotFound,
    InvalidCorrection,
    PersistenceConflict,
)
from inbox_triage.core.logging import get_logger
from inbox_triage.db.store import utc_now

if TYPE_CHECKING:
    from inbox_triage.classifier.sender_rules import RuleScope
    from inbox_triage.classifier.taxonomy import Taxonomy, TaxonomyEntry
    from inbox_triage.db.store import Conversation, DatabaseStore

logger = get_logger(__name__)

# Corrections for one sender domain before a domain rule is learned
DEFAULT_AUTO_RULE_THRESHOLD = 3


# ---------------------------------------------------------------------------
# Correction modes
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ExplicitRuleCorrection:
    """Reviewer opted in to creating or updating a sender rule."""

    scope: RuleScope | None = None  # None uses the recorder's default scope


@dataclass(frozen=True, slots=True)
class ReviewCorrection:
    """Review-queue correction; rules are learned once the domain threshold is hit."""


@dataclass(frozen=True, slots=True)
class NoRuleCorrection:
    """Correction recorded without rule learning."""


CorrectionMode = ExplicitRuleCorrection | ReviewCorrection | NoRuleCorrection


@dataclass(frozen=True, slots=True)
class CorrectionOutcome:
    """Result of recording one correction."""

    correction_id: int
    conversation_id: str
    new_classification: str
    decision_bucket: str
    rule_created: bool = False
    rule_updated: bool = False
    pattern: str | None = None
    domain: str | None = None
    domain_correction_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "correction_id": self.correction_id,
            "conversation_id": self.conversation_id,
            "new_classification": self.new_classification,
            "decision_bucket": self.decision_bucket,
            "rule_created": self.rule_created,
            "rule_updated": self.rule_updated,
            "pattern": self.pattern,
            "domain": self.domain,
            "domain_correction_count": self.domain_correction_count,
        }


# ---------------------------------------------------------------------------
# Recorder
# ---------------------------------------------------------------------------


class CorrectionRecorder:
    """Records human overrides and learns sender rules from them."""

    def __init__(
        self,
        store: DatabaseStore,
        taxonomy: Taxonomy,
        auto_rule_threshold: int = DEFAULT_AUTO_RULE_THRESHOLD,
        default_rule_scope: RuleScope = "domain",
    ):
        if auto_rule_threshold < 1:
            raise ValueError(f"auto_rule_threshold must be >= 1, got {auto_rule_threshold}")
        self._store = store
        self._taxonomy = taxonomy
        self._threshold = auto_rule_threshold
        self._default_scope = default_rule_scope

    async def record_correction(
        self,
        conversation_id: str,
        new_classification: str,
        corrected_by: str,
        mode: CorrectionMode | None = None,
    ) -> CorrectionOutcome:
        """Record a correction and apply it to the conversation.

        Args:
            conversation_id: Conversation being corrected
            new_classification: Taxonomy label chosen by the reviewer
            corrected_by: Reviewer identity
            mode: Rule-learning mode (defaults to ReviewCorrection)

        Returns:
            CorrectionOutcome describing the correction and any rule write

        Raises:
            UnknownClassification: If the label is not in the taxonomy
            InvalidCorrection: If the label is unchanged, the reviewer is
                missing, or a rule is requested for a conversation with no sender
            InvalidPattern: If an explicit rule is requested for a malformed sender
            ConversationNotFound: If the conversation does not exist
            PersistenceConflict: If the write lost twice to concurrent writers
        """
        mode = mode or ReviewCorrection()
        entry = self._taxonomy.require(new_classification)
        if not corrected_by or not corrected_by.strip():
            raise InvalidCorrection("Correction needs a reviewer identity (corrected_by).")

        for attempt in (1, 2):
            snapshot = await self._load(conversation_id)
            try:
                return await self._record(snapshot, entry, corrected_by, mode)
            except PersistenceConflict:
                if attempt == 2:
                    logger.warning(
                        "correction_conflict_giving_up",
                        conversation_id=conversation_id,
                    )
                    raise
                logger.info("correction_conflict_retrying", conversation_id=conversation_id)

        # Unreachable: the loop either returns or raises
        raise PersistenceConflict(
            f"Correction for {conversation_id} could not be applied",
            conversation_id=conversation_id,
        )

    async def _record(
        self,
        snapshot: Conversation,
        entry: TaxonomyEntry,
        corrected_by: str,
        mode: CorrectionMode,
    ) -> CorrectionOutcome:
        if snapshot.classification == entry.label:
            raise InvalidCorrection(
                f"Conversation {snapshot.id} is already classified as '{entry.label}'. "
                "Use confirm_review to confirm the current classification."
            )

        rule_pattern: str | None = None
        domain_rule_threshold: int | None = None
        if isinstance(mode, ExplicitRuleCorrection):
            if not snapshot.sender_email:
                raise InvalidCorrection(
                    f"Conversation {snapshot.id} has no sender; a sender rule cannot be created."
                )
            rule_pattern = pattern_for(mode.scope or self._default_scope, snapshot.sender_email)
        elif isinstance(mode, ReviewCorrection):
            domain_rule_threshold = self._threshold

        now = utc_now()
        fields: dict[str, Any] = {
            "classification": entry.label,
            "requires_reply": entry.requires_reply,
            "classification_source": "correction",
            "confidence": None,
            "needs_review": False,
            "reviewed_at": now,
            "reviewed_by": corrected_by,
            "review_outcome": "changed",
            "triage_reason": f"Corrected by {corrected_by}",
        }
        if entry.requires_reply:
            fields.update(decision_bucket="quick_win", status="open", resolved_at=None)
        else:
            fields.update(decision_bucket="auto_handled", status="resolved", resolved_at=now)

        write = await self._store.apply_correction(
            snapshot,
            fields,
            new_classification=entry.label,
            new_requires_reply=entry.requires_reply,
            corrected_by=corrected_by,
            rule_pattern=rule_pattern,
            domain_rule_threshold=domain_rule_threshold,
        )

        rule_write = write.rule_write
        rule_created = bool(rule_write and rule_write.created and rule_write.applied)
        rule_updated = bool(rule_write and not rule_write.created and rule_write.applied)

        logger.info(
            "correction_recorded",
            conversation_id=snapshot.id,
            workspace_id=snapshot.workspace_id,
            original_classification=snapshot.classification,
            new_classification=entry.label,
            mode=type(mode).__name__,
            sender_domain=snapshot.sender_domain,
            domain_correction_count=write.domain_correction_count,
            rule_created=rule_created,
            rule_updated=rule_updated,
        )

        return CorrectionOutcome(
            correction_id=write.correction_id,
            conversation_id=snapshot.id,
            new_classification=entry.label,
            decision_bucket=fields["decision_bucket"],
            rule_created=rule_created,
            rule_updated=rule_updated,
            pattern=rule_write.rule.pattern if rule_write else None,
            domain=snapshot.sender_domain,
            domain_correction_count=write.domain_correction_count,
        )

    async def confirm_review(self, conversation_id: str, reviewed_by: str) -> Conversation:
        """Confirm a conversation's current classification and clear its review flag.

        Returns:
            The conversation as stored after confirmation

        Raises:
            ConversationNotFound: If the conversation does not exist
            InvalidCorrection: If the reviewer is missing
            PersistenceConflict: If the write lost twice to concurrent writers
        """
        if not reviewed_by or not reviewed_by.strip():
            raise InvalidCorrection("Review confirmation needs a reviewer identity.")

        for attempt in (1, 2):
            snapshot = await self._load(conversation_id)
            try:
                await self._store.confirm_review(snapshot, reviewed_by)
                break
            except PersistenceConflict:
                if attempt == 2:
                    raise
                logger.info("review_confirm_conflict_retrying", conversation_id=conversation_id)

        logger.info(
            "review_confirmed",
            conversation_id=conversation_id,
            classification=snapshot.classification,
        )
        return await self._load(conversation_id)

    async def deactivate_rule(self, rule_id: int, deactivated_by: str = "manual") -> bool:
        """Turn a sender rule off. Returns False when the rule does not exist."""
        return await self._store.deactivate_rule(rule_id, triggered_by=deactivated_by)

    async def correction_stats(self, workspace_id: str) -> dict[str, Any]:
        """Learning statistics, with domains close to the auto-rule threshold."""
        stats = await self._store.correction_stats(workspace_id)
        stats["auto_rule_threshold"] = self._threshold
        stats["domains_at_threshold"] = sorted(
            domain
            for domain, count in stats["corrections_by_domain"].items()
            if count >= self._threshold
        )
        return stats

    async def _load(self, conversation_id: str) -> Conversation:
        conversation = await self._store.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFound(conversation_id)
        return conversation

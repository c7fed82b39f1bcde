"""Tests for the single-conversation reclassification pipeline.

Covers the rule fast path, classifier fallback, dry runs, idempotence,
fail-closed behaviour on classifier errors, open/resolved tracking, stored
triage reasons, and the version-conflict retry.
"""

from unittest.mock import AsyncMock

import pytest

from conftest import seed_conversation
from inbox_triage.classifier.claude_classifier import ClassifierOutput
from inbox_triage.classifier.sender_rules import SenderRuleMatcher
from inbox_triage.classifier.taxonomy import Taxonomy
from inbox_triage.core.errors import (
    ClassificationError,
    ClassifierUnavailable,
    ConversationNotFound,
    InvalidPattern,
)
from inbox_triage.db.store import Conversation, DatabaseStore
from inbox_triage.engine.corrections import CorrectionRecorder, NoRuleCorrection
from inbox_triage.engine.reclassify import ReclassificationPipeline, ReclassifyOptions


@pytest.fixture
def pipeline(
    store: DatabaseStore,
    matcher: SenderRuleMatcher,
    fake_classifier: AsyncMock,
    taxonomy: Taxonomy,
) -> ReclassificationPipeline:
    return ReclassificationPipeline(store, matcher, fake_classifier, taxonomy)


class TestRuleFastPath:
    async def test_domain_rule_moves_conversation_to_auto_handled(
        self, store: DatabaseStore, pipeline: ReclassificationPipeline, fake_classifier
    ) -> None:
        rule = await store.insert_sender_rule("ws-1", "*@vendorx.com", "supplier_invoice", False)
        await seed_conversation(
            store,
            "c-1",
            sender_email="ap@vendorx.com",
            classification="customer_inquiry",
            requires_reply=True,
            decision_bucket="quick_win",
        )

        result = await pipeline.reclassify("c-1", ReclassifyOptions(skip_llm=True))

        assert result.changed is True
        assert result.persisted is True
        assert result.rule_applied is True
        assert result.rule_pattern == "*@vendorx.com"
        assert result.original.decision_bucket == "quick_win"
        assert result.updated.decision_bucket == "auto_handled"
        fake_classifier.classify.assert_not_called()

        stored = await store.get_conversation("c-1")
        assert stored is not None
        assert stored.classification == "supplier_invoice"
        assert stored.classification_source == "sender_rule"
        assert stored.needs_review is False
        assert stored.version == 2

        counted = await store.get_rule(rule.id)
        assert counted is not None
        assert counted.hit_count == 1

    async def test_skip_llm_without_rule_is_unchanged(
        self, store: DatabaseStore, pipeline: ReclassificationPipeline, fake_classifier
    ) -> None:
        await seed_conversation(store, "c-1", sender_email="new@unknown.com")

        result = await pipeline.reclassify("c-1", ReclassifyOptions(skip_llm=True))

        assert result.changed is False
        assert result.persisted is False
        fake_classifier.classify.assert_not_called()

    async def test_prefer_rules_off_uses_classifier(
        self, store: DatabaseStore, pipeline: ReclassificationPipeline, fake_classifier
    ) -> None:
        await store.insert_sender_rule("ws-1", "*@vendorx.com", "supplier_invoice", False)
        await seed_conversation(store, "c-1", sender_email="ap@vendorx.com", body="Hi there")

        result = await pipeline.reclassify("c-1", ReclassifyOptions(prefer_rules=False))

        assert result.rule_applied is False
        assert result.updated.classification == "customer_inquiry"
        fake_classifier.classify.assert_awaited_once_with("Hi there", "ap@vendorx.com")

    async def test_always_review_rule_flags_review(
        self, store: DatabaseStore, pipeline: ReclassificationPipeline
    ) -> None:
        await store.insert_sender_rule(
            "ws-1",
            "boss@vendorx.com",
            "partner_request",
            True,
            automation_level="always_review",
        )
        await seed_conversation(store, "c-1", sender_email="boss@vendorx.com")

        result = await pipeline.reclassify("c-1", ReclassifyOptions(skip_llm=True))

        assert result.updated.decision_bucket == "quick_win"
        assert result.updated.needs_review is True


class TestClassifierPath:
    async def test_low_confidence_inquiry_needs_review(
        self, store: DatabaseStore, pipeline: ReclassificationPipeline, fake_classifier
    ) -> None:
        fake_classifier.classify.return_value = ClassifierOutput(
            classification="customer_inquiry", confidence=0.62, requires_reply=True
        )
        await seed_conversation(store, "c-1", sender_email="jo@customer.com", body="Price?")

        result = await pipeline.reclassify("c-1")

        assert result.updated.decision_bucket == "quick_win"
        assert result.updated.needs_review is True
        assert result.updated.confidence == 0.62
        assert result.updated.classification_source == "classifier"

    async def test_missing_reply_flag_falls_back_to_taxonomy(
        self, store: DatabaseStore, pipeline: ReclassificationPipeline, fake_classifier
    ) -> None:
        fake_classifier.classify.return_value = ClassifierOutput(
            classification="supplier_invoice", confidence=0.95, requires_reply=None
        )
        await seed_conversation(store, "c-1", sender_email="ap@vendorx.com")

        result = await pipeline.reclassify("c-1")

        assert result.updated.requires_reply is False
        assert result.updated.decision_bucket == "auto_handled"

    async def test_title_used_when_no_inbound_message(
        self, store: DatabaseStore, pipeline: ReclassificationPipeline, fake_classifier
    ) -> None:
        await seed_conversation(store, "c-1", title="Quote for 40 chairs")

        await pipeline.reclassify("c-1")

        fake_classifier.classify.assert_awaited_once_with(
            "Quote for 40 chairs", "someone@example.com"
        )

    async def test_draft_reply_and_sentiment_are_stored(
        self, store: DatabaseStore, pipeline: ReclassificationPipeline, fake_classifier
    ) -> None:
        fake_classifier.classify.return_value = ClassifierOutput(
            classification="customer_inquiry",
            confidence=0.9,
            requires_reply=True,
            sentiment="positive",
            draft_reply="Thanks, Friday works.",
        )
        await seed_conversation(store, "c-1")

        await pipeline.reclassify("c-1")

        stored = await store.get_conversation("c-1")
        assert stored is not None
        assert stored.sentiment == "positive"
        assert stored.draft_reply == "Thanks, Friday works."


class TestDryRunAndIdempotence:
    async def test_dry_run_writes_nothing(
        self, store: DatabaseStore, pipeline: ReclassificationPipeline
    ) -> None:
        rule = await store.insert_sender_rule("ws-1", "*@vendorx.com", "supplier_invoice", False)
        before = await seed_conversation(store, "c-1", sender_email="ap@vendorx.com")

        result = await pipeline.reclassify("c-1", ReclassifyOptions(dry_run=True))

        assert result.changed is True
        assert result.dry_run is True
        assert result.persisted is False
        assert await store.get_conversation("c-1") == before
        unchanged_rule = await store.get_rule(rule.id)
        assert unchanged_rule is not None
        assert unchanged_rule.hit_count == 0
        assert await store.get_action_logs(conversation_id="c-1") == []

    async def test_second_run_is_a_no_op(
        self, store: DatabaseStore, pipeline: ReclassificationPipeline
    ) -> None:
        await store.insert_sender_rule("ws-1", "*@vendorx.com", "supplier_invoice", False)
        await seed_conversation(store, "c-1", sender_email="ap@vendorx.com")

        first = await pipeline.reclassify("c-1", ReclassifyOptions(skip_llm=True))
        after_first = await store.get_conversation("c-1")
        second = await pipeline.reclassify("c-1", ReclassifyOptions(skip_llm=True))

        assert first.changed is True
        assert second.changed is False
        assert second.persisted is False
        assert await store.get_conversation("c-1") == after_first


class TestFailures:
    async def test_missing_conversation(self, pipeline: ReclassificationPipeline) -> None:
        with pytest.raises(ConversationNotFound):
            await pipeline.reclassify("missing")

    @pytest.mark.parametrize(
        "error",
        [
            ClassifierUnavailable("timed out"),
            ClassificationError("no usable tool call", attempts=3),
        ],
    )
    async def test_classifier_errors_leave_row_untouched(
        self,
        store: DatabaseStore,
        pipeline: ReclassificationPipeline,
        fake_classifier,
        error: Exception,
    ) -> None:
        fake_classifier.classify.side_effect = error
        before = await seed_conversation(store, "c-1")

        with pytest.raises(ClassificationError):
            await pipeline.reclassify("c-1")

        assert await store.get_conversation("c-1") == before

    async def test_no_classifier_configured(
        self, store: DatabaseStore, matcher: SenderRuleMatcher, taxonomy: Taxonomy
    ) -> None:
        pipeline = ReclassificationPipeline(store, matcher, None, taxonomy)
        await seed_conversation(store, "c-1")

        with pytest.raises(ClassifierUnavailable):
            await pipeline.reclassify("c-1")

    async def test_malformed_sender_raises_invalid_pattern(
        self, store: DatabaseStore, pipeline: ReclassificationPipeline
    ) -> None:
        await seed_conversation(store, "c-1", sender_email="not-an-address")

        with pytest.raises(InvalidPattern):
            await pipeline.reclassify("c-1", ReclassifyOptions(skip_llm=True))


class TestConflictRetry:
    async def test_conflict_reloads_and_applies_once_more(
        self, store: DatabaseStore, pipeline: ReclassificationPipeline, fake_classifier
    ) -> None:
        snapshot = await seed_conversation(store, "c-1", sender_email="jo@customer.com")

        # Another writer bumps the version after the pipeline read the row
        await store.save_conversation(
            Conversation(
                id="c-1",
                workspace_id="ws-1",
                sender_email="jo@customer.com",
                title="Edited on ingest",
                created_at=snapshot.created_at,
            )
        )

        result = await pipeline.reclassify_conversation(snapshot)

        assert result.persisted is True
        stored = await store.get_conversation("c-1")
        assert stored is not None
        assert stored.classification == "customer_inquiry"
        assert stored.title == "Edited on ingest"
        assert stored.version == 3
        fake_classifier.classify.assert_awaited_once()


class TestStatusTracking:
    async def test_reply_needed_reopens_resolved_conversation(
        self,
        store: DatabaseStore,
        taxonomy: Taxonomy,
        pipeline: ReclassificationPipeline,
        fake_classifier,
    ) -> None:
        await seed_conversation(store, "c-1", sender_email="jo@customer.com")
        await CorrectionRecorder(store, taxonomy).record_correction(
            "c-1", "supplier_invoice", corrected_by="sam", mode=NoRuleCorrection()
        )
        corrected = await store.get_conversation("c-1")
        assert corrected is not None
        assert corrected.status == "resolved"
        assert corrected.resolved_at is not None

        fake_classifier.classify.return_value = ClassifierOutput(
            classification="complaint_dispute", confidence=0.95, requires_reply=True
        )
        result = await pipeline.reclassify("c-1")

        assert result.updated.decision_bucket == "act_now"
        stored = await store.get_conversation("c-1")
        assert stored is not None
        assert stored.status == "open"
        assert stored.resolved_at is None

        again = await pipeline.reclassify("c-1")
        assert again.persisted is False
        assert await store.get_conversation("c-1") == stored

    async def test_no_reply_rule_resolves_conversation(
        self, store: DatabaseStore, pipeline: ReclassificationPipeline
    ) -> None:
        await store.insert_sender_rule("ws-1", "*@vendorx.com", "supplier_invoice", False)
        await seed_conversation(store, "c-1", sender_email="ap@vendorx.com")

        await pipeline.reclassify("c-1", ReclassifyOptions(skip_llm=True))

        stored = await store.get_conversation("c-1")
        assert stored is not None
        assert stored.status == "resolved"
        assert stored.resolved_at is not None

        again = await pipeline.reclassify("c-1", ReclassifyOptions(skip_llm=True))
        assert again.persisted is False
        assert await store.get_conversation("c-1") == stored

    async def test_status_only_drift_is_written(
        self, store: DatabaseStore, pipeline: ReclassificationPipeline
    ) -> None:
        await store.insert_sender_rule("ws-1", "*@vendorx.com", "supplier_invoice", False)
        await seed_conversation(
            store,
            "c-1",
            sender_email="ap@vendorx.com",
            classification="supplier_invoice",
            requires_reply=False,
            decision_bucket="auto_handled",
            classification_source="sender_rule",
        )

        result = await pipeline.reclassify("c-1", ReclassifyOptions(skip_llm=True))

        assert result.changed is False
        assert result.persisted is True
        stored = await store.get_conversation("c-1")
        assert stored is not None
        assert stored.status == "resolved"

    async def test_dry_run_leaves_status_alone(
        self, store: DatabaseStore, pipeline: ReclassificationPipeline
    ) -> None:
        await store.insert_sender_rule("ws-1", "*@vendorx.com", "supplier_invoice", False)
        await seed_conversation(store, "c-1", sender_email="ap@vendorx.com")

        await pipeline.reclassify("c-1", ReclassifyOptions(skip_llm=True, dry_run=True))

        stored = await store.get_conversation("c-1")
        assert stored is not None
        assert stored.status == "open"


class TestTriageReason:
    async def test_rule_reason_names_pattern(
        self, store: DatabaseStore, pipeline: ReclassificationPipeline
    ) -> None:
        await store.insert_sender_rule("ws-1", "*@vendorx.com", "supplier_invoice", False)
        await seed_conversation(store, "c-1", sender_email="ap@vendorx.com")

        await pipeline.reclassify("c-1", ReclassifyOptions(skip_llm=True))

        stored = await store.get_conversation("c-1")
        assert stored is not None
        assert stored.triage_reason == "Auto-handled: matches rule for *@vendorx.com"

    async def test_classifier_reasoning_is_stored(
        self, store: DatabaseStore, pipeline: ReclassificationPipeline
    ) -> None:
        await seed_conversation(store, "c-1", sender_email="jo@customer.com")

        await pipeline.reclassify("c-1")

        stored = await store.get_conversation("c-1")
        assert stored is not None
        assert stored.triage_reason == "Customer asks about availability"

    async def test_low_confidence_reason(
        self, store: DatabaseStore, pipeline: ReclassificationPipeline, fake_classifier
    ) -> None:
        fake_classifier.classify.return_value = ClassifierOutput(
            classification="customer_inquiry", confidence=0.62, requires_reply=True
        )
        await seed_conversation(store, "c-1", sender_email="jo@customer.com")

        await pipeline.reclassify("c-1")

        stored = await store.get_conversation("c-1")
        assert stored is not None
        assert stored.triage_reason == "Low confidence (62%) - needs review"

    async def test_changed_reasoning_alone_does_not_rewrite(
        self, store: DatabaseStore, pipeline: ReclassificationPipeline, fake_classifier
    ) -> None:
        await seed_conversation(store, "c-1", sender_email="jo@customer.com")
        await pipeline.reclassify("c-1")
        after_first = await store.get_conversation("c-1")

        fake_classifier.classify.return_value = ClassifierOutput(
            classification="customer_inquiry",
            confidence=0.92,
            requires_reply=True,
            sentiment="neutral",
            reasoning="Worded differently this time",
        )
        second = await pipeline.reclassify("c-1")

        assert second.persisted is False
        assert await store.get_conversation("c-1") == after_first

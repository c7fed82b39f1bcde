"""Tests for correction ingestion and rule learning."""

import asyncio

import pytest

from conftest import seed_conversation
from inbox_triage.classifier.taxonomy import Taxonomy
from inbox_triage.core.errors import (
    ConversationNotFound,
    InvalidCorrection,
    UnknownClassification,
)
from inbox_triage.db.store import DatabaseStore
from inbox_triage.engine.corrections import (
    CorrectionRecorder,
    ExplicitRuleCorrection,
    NoRuleCorrection,
    ReviewCorrection,
)


@pytest.fixture
def recorder(store: DatabaseStore, taxonomy: Taxonomy) -> CorrectionRecorder:
    return CorrectionRecorder(store, taxonomy, auto_rule_threshold=3)


class TestCorrectionBasics:
    async def test_correction_updates_conversation(
        self, store: DatabaseStore, recorder: CorrectionRecorder
    ) -> None:
        await seed_conversation(
            store,
            "c-1",
            sender_email="ap@vendorx.com",
            classification="customer_inquiry",
            requires_reply=True,
            decision_bucket="quick_win",
            needs_review=True,
        )

        outcome = await recorder.record_correction("c-1", "supplier_invoice", corrected_by="sam")

        assert outcome.decision_bucket == "auto_handled"
        assert outcome.rule_created is False
        assert outcome.domain_correction_count == 1

        stored = await store.get_conversation("c-1")
        assert stored is not None
        assert stored.classification == "supplier_invoice"
        assert stored.requires_reply is False
        assert stored.status == "resolved"
        assert stored.resolved_at is not None
        assert stored.needs_review is False
        assert stored.review_outcome == "changed"
        assert stored.reviewed_by == "sam"
        assert stored.triage_reason == "Corrected by sam"
        assert stored.classification_source == "correction"

    async def test_reply_label_reopens_conversation(
        self, store: DatabaseStore, recorder: CorrectionRecorder
    ) -> None:
        await seed_conversation(
            store,
            "c-1",
            classification="marketing_newsletter",
            decision_bucket="auto_handled",
            status="resolved",
        )

        outcome = await recorder.record_correction("c-1", "customer_inquiry", corrected_by="sam")

        assert outcome.decision_bucket == "quick_win"
        stored = await store.get_conversation("c-1")
        assert stored is not None
        assert stored.status == "open"
        assert stored.resolved_at is None

    async def test_unknown_label_rejected(self, store, recorder: CorrectionRecorder) -> None:
        await seed_conversation(store, "c-1")
        with pytest.raises(UnknownClassification):
            await recorder.record_correction("c-1", "made_up", corrected_by="sam")

    async def test_same_label_rejected(self, store, recorder: CorrectionRecorder) -> None:
        await seed_conversation(store, "c-1", classification="customer_inquiry")
        with pytest.raises(InvalidCorrection):
            await recorder.record_correction("c-1", "customer_inquiry", corrected_by="sam")

    async def test_reviewer_required(self, store, recorder: CorrectionRecorder) -> None:
        await seed_conversation(store, "c-1")
        with pytest.raises(InvalidCorrection):
            await recorder.record_correction("c-1", "supplier_invoice", corrected_by="  ")

    async def test_missing_conversation(self, recorder: CorrectionRecorder) -> None:
        with pytest.raises(ConversationNotFound):
            await recorder.record_correction("missing", "supplier_invoice", corrected_by="sam")


class TestExplicitRules:
    async def test_domain_rule_created_immediately(
        self, store: DatabaseStore, recorder: CorrectionRecorder
    ) -> None:
        await seed_conversation(store, "c-1", sender_email="AP@VendorX.com")

        outcome = await recorder.record_correction(
            "c-1", "supplier_invoice", corrected_by="sam", mode=ExplicitRuleCorrection()
        )

        assert outcome.rule_created is True
        assert outcome.pattern == "*@vendorx.com"
        rule = await store.get_rule_by_pattern("ws-1", "*@vendorx.com")
        assert rule is not None
        assert rule.created_from_correction_id == outcome.correction_id

    async def test_email_scope_rule(
        self, store: DatabaseStore, recorder: CorrectionRecorder
    ) -> None:
        await seed_conversation(store, "c-1", sender_email="ceo@vendorx.com")

        outcome = await recorder.record_correction(
            "c-1",
            "partner_request",
            corrected_by="sam",
            mode=ExplicitRuleCorrection(scope="email"),
        )

        assert outcome.pattern == "ceo@vendorx.com"

    async def test_configured_default_scope(
        self, store: DatabaseStore, taxonomy: Taxonomy
    ) -> None:
        recorder = CorrectionRecorder(store, taxonomy, default_rule_scope="email")
        await seed_conversation(store, "c-1", sender_email="ceo@vendorx.com")

        outcome = await recorder.record_correction(
            "c-1", "partner_request", corrected_by="sam", mode=ExplicitRuleCorrection()
        )

        assert outcome.pattern == "ceo@vendorx.com"

    async def test_explicit_rule_overwrites_existing(
        self, store: DatabaseStore, recorder: CorrectionRecorder
    ) -> None:
        await store.insert_sender_rule("ws-1", "*@vendorx.com", "marketing_newsletter", False)
        await seed_conversation(store, "c-1", sender_email="ap@vendorx.com")

        outcome = await recorder.record_correction(
            "c-1", "supplier_invoice", corrected_by="sam", mode=ExplicitRuleCorrection()
        )

        assert outcome.rule_updated is True
        rules = await store.list_sender_rules("ws-1")
        assert len(rules) == 1
        assert rules[0].default_classification == "supplier_invoice"

    async def test_explicit_rule_needs_sender(
        self, store: DatabaseStore, recorder: CorrectionRecorder
    ) -> None:
        await seed_conversation(store, "c-1", sender_email=None)

        with pytest.raises(InvalidCorrection):
            await recorder.record_correction(
                "c-1", "supplier_invoice", corrected_by="sam", mode=ExplicitRuleCorrection()
            )
        assert await store.list_corrections("ws-1") == []


class TestThresholdLearning:
    async def test_third_domain_correction_creates_rule(
        self, store: DatabaseStore, recorder: CorrectionRecorder
    ) -> None:
        for i in range(4):
            await seed_conversation(
                store, f"c-{i}", sender_email=f"user{i}@vendorx.com", minutes=i
            )

        first = await recorder.record_correction(
            "c-0", "supplier_invoice", corrected_by="sam", mode=ReviewCorrection()
        )
        second = await recorder.record_correction(
            "c-1", "supplier_invoice", corrected_by="sam", mode=ReviewCorrection()
        )
        assert first.rule_created is False
        assert second.rule_created is False
        assert await store.get_rule_by_pattern("ws-1", "*@vendorx.com") is None

        third = await recorder.record_correction(
            "c-2", "supplier_invoice", corrected_by="sam", mode=ReviewCorrection()
        )
        assert third.rule_created is True
        assert third.domain_correction_count == 3
        assert third.pattern == "*@vendorx.com"

        # Past the threshold every correction rewrites the rule (latest wins)
        fourth = await recorder.record_correction(
            "c-3", "payment_confirmation", corrected_by="sam", mode=ReviewCorrection()
        )
        assert fourth.rule_updated is True
        rule = await store.get_rule_by_pattern("ws-1", "*@vendorx.com")
        assert rule is not None
        assert rule.default_classification == "payment_confirmation"

    async def test_no_rule_mode_never_learns(
        self, store: DatabaseStore, recorder: CorrectionRecorder
    ) -> None:
        for i in range(3):
            await seed_conversation(store, f"c-{i}", sender_email=f"u{i}@vendorx.com")
            await recorder.record_correction(
                f"c-{i}", "supplier_invoice", corrected_by="sam", mode=NoRuleCorrection()
            )

        assert await store.list_sender_rules("ws-1") == []

    async def test_concurrent_corrections_keep_single_rule(
        self, store: DatabaseStore, recorder: CorrectionRecorder
    ) -> None:
        for i in range(5):
            await seed_conversation(store, f"c-{i}", sender_email=f"u{i}@vendorx.com")

        await asyncio.gather(
            *(
                recorder.record_correction(
                    f"c-{i}", "supplier_invoice", corrected_by="sam", mode=ReviewCorrection()
                )
                for i in range(5)
            )
        )

        rules = await store.list_sender_rules("ws-1")
        assert [rule.pattern for rule in rules] == ["*@vendorx.com"]
        assert len(await store.list_corrections("ws-1")) == 5

    async def test_stats_report_domains_at_threshold(
        self, store: DatabaseStore, recorder: CorrectionRecorder
    ) -> None:
        for i in range(3):
            await seed_conversation(store, f"c-{i}", sender_email=f"u{i}@vendorx.com")
            await recorder.record_correction(f"c-{i}", "supplier_invoice", corrected_by="sam")
        await seed_conversation(store, "c-x", sender_email="a@other.com")
        await recorder.record_correction("c-x", "supplier_invoice", corrected_by="sam")

        stats = await recorder.correction_stats("ws-1")

        assert stats["total_corrections"] == 4
        assert stats["corrections_by_domain"] == {"vendorx.com": 3, "other.com": 1}
        assert stats["domains_at_threshold"] == ["vendorx.com"]
        assert stats["rules_from_corrections"] == 1


class TestConfirmReview:
    async def test_confirm_clears_flag(
        self, store: DatabaseStore, recorder: CorrectionRecorder
    ) -> None:
        await seed_conversation(
            store, "c-1", classification="customer_inquiry", needs_review=True
        )

        confirmed = await recorder.confirm_review("c-1", "sam")

        assert confirmed.needs_review is False
        assert confirmed.review_outcome == "confirmed"
        assert confirmed.classification == "customer_inquiry"
        assert await store.list_corrections("ws-1") == []

"""Tests for the database layer.

Tests schema creation and the store operations for:
- conversations (paging, version guard)
- messages
- sender_rules (uniqueness, upsert, deactivation)
- triage_corrections
- action_log
"""

import asyncio
from pathlib import Path

import aiosqlite
import pytest

from conftest import seed_conversation
from inbox_triage.core.errors import PersistenceConflict, RuleUniquenessViolation
from inbox_triage.core.logging import set_correlation_id
from inbox_triage.db import (
    Conversation,
    DatabaseStore,
    init_database,
    verify_schema,
)


@pytest.fixture
async def db_path(data_dir: Path) -> Path:
    """Create a test database path."""
    return data_dir / "schema.db"


class TestDatabaseInitialization:
    """Tests for database initialization."""

    async def test_init_database_creates_file(self, db_path: Path) -> None:
        assert not db_path.exists()
        await init_database(db_path)
        assert db_path.exists()

    async def test_init_database_enables_wal_mode(self, db_path: Path) -> None:
        await init_database(db_path)

        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("PRAGMA journal_mode")
            row = await cursor.fetchone()
            assert row[0].lower() == "wal"

    async def test_init_database_creates_all_tables(self, db_path: Path) -> None:
        await init_database(db_path)

        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table'")
            tables = {row[0] for row in await cursor.fetchall()}

        expected_tables = {
            "conversations",
            "messages",
            "sender_rules",
            "triage_corrections",
            "action_log",
        }
        assert expected_tables.issubset(tables)

    async def test_verify_schema_after_init(self, db_path: Path) -> None:
        await init_database(db_path)
        assert await verify_schema(db_path) is True

    async def test_init_is_idempotent(self, db_path: Path) -> None:
        await init_database(db_path)
        await init_database(db_path)
        assert await verify_schema(db_path) is True


class TestConversations:
    async def test_save_and_get_round_trip(self, store: DatabaseStore) -> None:
        saved = await seed_conversation(store, "c-1", sender_email="Ops@VendorX.com")

        assert saved.sender_domain == "vendorx.com"
        assert saved.version == 1
        assert saved.needs_review is False
        assert saved.requires_reply is None

    async def test_get_missing_returns_none(self, store: DatabaseStore) -> None:
        assert await store.get_conversation("nope") is None

    async def test_page_order_is_created_at_then_id(self, store: DatabaseStore) -> None:
        await seed_conversation(store, "c-b", minutes=1)
        await seed_conversation(store, "c-a", minutes=1)
        await seed_conversation(store, "c-z", minutes=0)
        await seed_conversation(store, "other", workspace_id="ws-2")

        page = await store.list_conversations_page("ws-1", limit=10)
        assert [c.id for c in page] == ["c-z", "c-a", "c-b"]

        second = await store.list_conversations_page("ws-1", limit=2, offset=2)
        assert [c.id for c in second] == ["c-b"]
        assert await store.count_conversations("ws-1") == 3

    async def test_version_guard_rejects_stale_snapshot(self, store: DatabaseStore) -> None:
        snapshot = await seed_conversation(store, "c-1")

        await store.apply_reclassification(snapshot, {"classification": "customer_inquiry"})

        with pytest.raises(PersistenceConflict) as exc_info:
            await store.apply_reclassification(snapshot, {"classification": "lead_new"})
        assert exc_info.value.expected_version == 1

        current = await store.get_conversation("c-1")
        assert current is not None
        assert current.classification == "customer_inquiry"
        assert current.version == 2

    async def test_unwritable_column_rejected(self, store: DatabaseStore) -> None:
        snapshot = await seed_conversation(store, "c-1")
        with pytest.raises(ValueError):
            await store.apply_reclassification(snapshot, {"workspace_id": "ws-evil"})

    async def test_review_queue_only_flagged(self, store: DatabaseStore) -> None:
        await seed_conversation(store, "c-1", needs_review=True)
        await seed_conversation(store, "c-2", needs_review=False, minutes=1)

        queue = await store.get_review_queue("ws-1")
        assert [c.id for c in queue] == ["c-1"]

    async def test_first_inbound_body(self, store: DatabaseStore) -> None:
        await seed_conversation(store, "c-1", body="Hello, is Friday available?")
        assert await store.get_first_inbound_body("c-1") == "Hello, is Friday available?"
        assert await store.get_first_inbound_body("missing") is None


class TestSenderRules:
    async def test_insert_duplicate_raises_uniqueness(self, store: DatabaseStore) -> None:
        await store.insert_sender_rule("ws-1", "*@vendorx.com", "supplier_invoice", False)

        with pytest.raises(RuleUniquenessViolation) as exc_info:
            await store.insert_sender_rule("ws-1", "*@vendorx.com", "marketing_newsletter", False)
        assert exc_info.value.pattern == "*@vendorx.com"

    async def test_same_pattern_allowed_in_other_workspace(self, store: DatabaseStore) -> None:
        await store.insert_sender_rule("ws-1", "*@vendorx.com", "supplier_invoice", False)
        await store.insert_sender_rule("ws-2", "*@vendorx.com", "supplier_invoice", False)

    async def test_upsert_overwrites_and_resets_hits(self, store: DatabaseStore) -> None:
        first = await store.upsert_sender_rule("ws-1", "*@vendorx.com", "supplier_invoice", False)
        assert first.created is True

        snapshot = await seed_conversation(store, "c-1", sender_email="a@vendorx.com")
        await store.apply_reclassification(
            snapshot, {"classification": "supplier_invoice"}, rule_id=first.rule.id
        )
        hit = await store.get_rule(first.rule.id)
        assert hit is not None
        assert hit.hit_count == 1

        await store.deactivate_rule(first.rule.id)
        second = await store.upsert_sender_rule("ws-1", "*@vendorx.com", "partner_request", True)

        assert second.created is False
        assert second.applied is True
        assert second.rule.id == first.rule.id
        assert second.rule.default_classification == "partner_request"
        assert second.rule.hit_count == 0
        assert second.rule.is_active is True

    async def test_concurrent_upserts_leave_one_row(self, store: DatabaseStore) -> None:
        labels = ["supplier_invoice", "marketing_newsletter", "automated_notification"]
        await asyncio.gather(
            *(store.upsert_sender_rule("ws-1", "*@vendorx.com", label, False) for label in labels)
        )

        rules = await store.list_sender_rules("ws-1")
        assert len(rules) == 1
        assert rules[0].default_classification in labels

    async def test_deactivate_missing_rule(self, store: DatabaseStore) -> None:
        assert await store.deactivate_rule(999) is False

    async def test_list_active_only(self, store: DatabaseStore) -> None:
        keep = await store.insert_sender_rule("ws-1", "*@a.com", "supplier_invoice", False)
        drop = await store.insert_sender_rule("ws-1", "*@b.com", "supplier_invoice", False)
        await store.deactivate_rule(drop.id)

        active = await store.list_sender_rules("ws-1", active_only=True)
        assert [rule.id for rule in active] == [keep.id]


class TestCorrectionsAndAudit:
    async def test_correction_row_and_explicit_rule_commit_together(
        self, store: DatabaseStore
    ) -> None:
        snapshot = await seed_conversation(
            store, "c-1", sender_email="ap@vendorx.com", classification="customer_inquiry"
        )

        write = await store.apply_correction(
            snapshot,
            {"classification": "supplier_invoice", "decision_bucket": "auto_handled"},
            new_classification="supplier_invoice",
            new_requires_reply=False,
            corrected_by="sam",
            rule_pattern="*@vendorx.com",
        )

        assert write.domain_correction_count == 1
        assert write.rule_write is not None
        assert write.rule_write.rule.created_from_correction_id == write.correction_id

        corrections = await store.list_corrections("ws-1")
        assert len(corrections) == 1
        assert corrections[0].original_classification == "customer_inquiry"
        assert corrections[0].sender_domain == "vendorx.com"

    async def test_conflicting_correction_writes_nothing(self, store: DatabaseStore) -> None:
        snapshot = await seed_conversation(store, "c-1", sender_email="ap@vendorx.com")
        await store.save_conversation(
            Conversation(id="c-1", workspace_id="ws-1", sender_email="ap@vendorx.com")
        )

        with pytest.raises(PersistenceConflict):
            await store.apply_correction(
                snapshot,
                {"classification": "supplier_invoice"},
                new_classification="supplier_invoice",
                new_requires_reply=False,
                corrected_by="sam",
                rule_pattern="*@vendorx.com",
            )

        assert await store.list_corrections("ws-1") == []
        assert await store.get_rule_by_pattern("ws-1", "*@vendorx.com") is None

    async def test_action_log_carries_batch_run_id(self, store: DatabaseStore) -> None:
        snapshot = await seed_conversation(store, "c-1")
        set_correlation_id("run-123")

        await store.apply_reclassification(
            snapshot, {"classification": "customer_inquiry"}, triggered_by="batch"
        )

        logs = await store.get_action_logs(conversation_id="c-1")
        assert len(logs) == 1
        assert logs[0].action_type == "reclassify"
        assert logs[0].triggered_by == "batch"
        assert logs[0].details_json["batch_run_id"] == "run-123"

    async def test_stats(self, store: DatabaseStore) -> None:
        await seed_conversation(store, "c-1", decision_bucket="auto_handled")
        await seed_conversation(store, "c-2", decision_bucket="quick_win", needs_review=True)
        await seed_conversation(store, "c-3")
        await store.insert_sender_rule("ws-1", "*@a.com", "supplier_invoice", False)

        stats = await store.get_stats("ws-1")
        assert stats["buckets"] == {"auto_handled": 1, "quick_win": 1, "unclassified": 1}
        assert stats["needs_review"] == 1
        assert stats["active_rules"] == 1

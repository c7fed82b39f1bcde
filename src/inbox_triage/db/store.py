"""Database store with CRUD operations for all tables.

This module provides the DatabaseStore class that encapsulates all database
operations for the inbox triage engine. It uses aiosqlite for async access
and provides type-safe operations with dataclasses.

Conversation writes are guarded by the row's ``version`` column
(compare-and-set). Sender rule writes resolve on the
``UNIQUE(workspace_id, pattern)`` key with a monotonic ``updated_at``.

Usage:
    from inbox_triage.db.store import DatabaseStore

    store = DatabaseStore("data/triage.db")
    await store.initialize()

    conversation = await store.get_conversation("conv-1")
    rules = await store.find_active_rules("ws-1", ["a@x.com", "*@x.com"])
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

import aiosqlite

from inbox_triage.core.errors import (
    DatabaseError,
    PersistenceConflict,
    RuleUniquenessViolation,
)
from inbox_triage.core.logging import get_correlation_id, get_logger
from inbox_triage.db.models import init_database

logger = get_logger(__name__)

# Type aliases
Channel = Literal["email", "sms", "chat"]
ConversationStatus = Literal["open", "resolved"]
ClassificationSource = Literal["sender_rule", "classifier", "correction"]
ReviewOutcome = Literal["confirmed", "changed"]
AutomationLevel = Literal["auto", "draft_first", "always_review"]
MessageDirection = Literal["inbound", "outbound"]

# Columns a triage write may touch; everything else is ingest-owned
_CONVERSATION_WRITABLE = frozenset(
    {
        "classification",
        "requires_reply",
        "decision_bucket",
        "confidence",
        "classification_source",
        "needs_review",
        "status",
        "resolved_at",
        "reviewed_at",
        "reviewed_by",
        "review_outcome",
        "sentiment",
        "draft_reply",
        "triage_reason",
    }
)


def utc_now() -> datetime:
    return datetime.now(UTC)


def _iso(value: datetime | None) -> str | None:
    # Fixed-width timestamps so lexical order in SQLite matches time order
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _to_db(value: Any) -> Any:
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, datetime):
        return _iso(value)
    return value


def _opt_bool(value: int | None) -> bool | None:
    return None if value is None else bool(value)


def derive_domain(sender_email: str | None) -> str | None:
    """Lower-cased domain of an address, or None when there is none."""
    if not sender_email or "@" not in sender_email:
        return None
    domain = sender_email.strip().rsplit("@", 1)[1].lower()
    return domain or None


@dataclass
class Conversation:
    """Conversation record from the database."""

    id: str
    workspace_id: str
    title: str | None = None
    channel: Channel = "email"
    sender_email: str | None = None
    sender_domain: str | None = None
    classification: str | None = None
    requires_reply: bool | None = None
    decision_bucket: str | None = None
    confidence: float | None = None
    classification_source: ClassificationSource | None = None
    needs_review: bool = False
    status: ConversationStatus = "open"
    resolved_at: datetime | None = None
    reviewed_at: datetime | None = None
    reviewed_by: str | None = None
    review_outcome: ReviewOutcome | None = None
    sentiment: str | None = None
    draft_reply: str | None = None
    triage_reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    version: int = 1


@dataclass
class Message:
    """Message record from the database."""

    id: str
    conversation_id: str
    direction: MessageDirection = "inbound"
    body: str | None = None
    created_at: datetime | None = None


@dataclass
class SenderRule:
    """Sender rule record from the database."""

    id: int
    workspace_id: str
    pattern: str
    default_classification: str
    default_requires_reply: bool
    is_active: bool = True
    hit_count: int = 0
    automation_level: AutomationLevel = "auto"
    tone_preference: str | None = None
    created_from_correction_id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class TriageCorrection:
    """Triage correction record (append-only)."""

    id: int
    workspace_id: str
    conversation_id: str
    new_classification: str
    new_requires_reply: bool
    corrected_by: str
    created_at: datetime
    original_classification: str | None = None
    original_requires_reply: bool | None = None
    sender_email: str | None = None
    sender_domain: str | None = None


@dataclass
class ActionLogEntry:
    """Action log entry from the database."""

    id: int
    timestamp: datetime
    action_type: str
    workspace_id: str | None = None
    conversation_id: str | None = None
    details_json: dict[str, Any] | None = None
    triggered_by: str | None = None


@dataclass(frozen=True, slots=True)
class RuleWrite:
    """Result of a sender rule upsert."""

    rule: SenderRule
    created: bool
    applied: bool  # False when a newer write already holds the row


@dataclass(frozen=True, slots=True)
class CorrectionWrite:
    """Result of a correction transaction."""

    correction_id: int
    conversation_version: int
    domain_correction_count: int
    rule_write: RuleWrite | None = None


class DatabaseStore:
    """Database store for all inbox triage data.

    This class provides async CRUD operations for all database tables.
    It handles connection management, JSON serialization, and type conversion.

    Attributes:
        db_path: Path to the SQLite database file
        _initialized: Whether the database has been initialized
    """

    def __init__(self, db_path: str | Path):
        """Initialize the database store.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = Path(db_path)
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize the database, creating tables if needed.

        This must be called before any other operations.
        """
        await init_database(self.db_path)
        self._initialized = True

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get a configured database connection.

        Sets all required PRAGMAs for reliability and performance:
        - busy_timeout: 10s to handle concurrent batch workers + API writers
        - foreign_keys: ON to enforce referential integrity
        - synchronous: NORMAL (safe with WAL, faster writes)
        - cache_size: 64MB for better read performance
        - temp_store: MEMORY for faster temp operations
        """
        async with aiosqlite.connect(self.db_path) as db:
            # Reliability PRAGMAs
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA foreign_keys = ON")

            # Performance PRAGMAs (safe with WAL mode)
            await db.execute("PRAGMA synchronous = NORMAL")
            await db.execute("PRAGMA cache_size = -64000")  # 64MB
            await db.execute("PRAGMA temp_store = MEMORY")

            db.row_factory = aiosqlite.Row
            yield db

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Connection inside a write transaction.

        BEGIN IMMEDIATE takes the write lock up front so the read-check-write
        sequences below cannot interleave with another writer. Any exception
        rolls the whole transaction back.
        """
        async with self._db() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except BaseException:
                await db.rollback()
                raise
            else:
                await db.commit()

    async def checkpoint_wal(self) -> None:
        """Run a WAL checkpoint to keep WAL file size bounded.

        Safe to call periodically (e.g., at the end of each batch run).
        """
        try:
            async with self._db() as db:
                await db.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            logger.debug("wal_checkpoint_complete")
        except aiosqlite.Error as e:
            logger.warning("wal_checkpoint_failed", error=str(e))

    # =========================================================================
    # Conversation Operations
    # =========================================================================

    async def save_conversation(self, conversation: Conversation) -> None:
        """Insert or replace a conversation on ingest.

        Ingest owns the row shape; on conflict every column is overwritten
        and the version is bumped so in-flight triage writes lose.

        Raises:
            DatabaseError: If the operation fails
        """
        now = utc_now()
        created_at = conversation.created_at or now
        sender_domain = conversation.sender_domain or derive_domain(conversation.sender_email)
        if sender_domain:
            sender_domain = sender_domain.strip().lower()

        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO conversations (
                        id, workspace_id, title, channel, sender_email, sender_domain,
                        classification, requires_reply, decision_bucket, confidence,
                        classification_source, needs_review, status, resolved_at,
                        reviewed_at, reviewed_by, review_outcome, sentiment, draft_reply,
                        triage_reason, created_at, updated_at, version
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        workspace_id = excluded.workspace_id,
                        title = excluded.title,
                        channel = excluded.channel,
                        sender_email = excluded.sender_email,
                        sender_domain = excluded.sender_domain,
                        classification = excluded.classification,
                        requires_reply = excluded.requires_reply,
                        decision_bucket = excluded.decision_bucket,
                        confidence = excluded.confidence,
                        classification_source = excluded.classification_source,
                        needs_review = excluded.needs_review,
                        status = excluded.status,
                        resolved_at = excluded.resolved_at,
                        reviewed_at = excluded.reviewed_at,
                        reviewed_by = excluded.reviewed_by,
                        review_outcome = excluded.review_outcome,
                        sentiment = excluded.sentiment,
                        draft_reply = excluded.draft_reply,
                        triage_reason = excluded.triage_reason,
                        updated_at = excluded.updated_at,
                        version = conversations.version + 1
                    """,
                    (
                        conversation.id,
                        conversation.workspace_id,
                        conversation.title,
                        conversation.channel,
                        conversation.sender_email,
                        sender_domain,
                        conversation.classification,
                        _to_db(conversation.requires_reply),
                        conversation.decision_bucket,
                        conversation.confidence,
                        conversation.classification_source,
                        _to_db(conversation.needs_review),
                        conversation.status,
                        _iso(conversation.resolved_at),
                        _iso(conversation.reviewed_at),
                        conversation.reviewed_by,
                        conversation.review_outcome,
                        conversation.sentiment,
                        conversation.draft_reply,
                        conversation.triage_reason,
                        _iso(created_at),
                        _iso(conversation.updated_at or now),
                        conversation.version,
                    ),
                )
                await db.commit()

                logger.debug("conversation_saved", conversation_id=conversation.id)

        except aiosqlite.Error as e:
            logger.error(
                "conversation_save_failed", conversation_id=conversation.id, error=str(e)
            )
            raise DatabaseError(f"Failed to save conversation {conversation.id}: {e}") from e

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        """Get a conversation by ID.

        Returns:
            Conversation dataclass or None if not found
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
                )
                row = await cursor.fetchone()

                if not row:
                    return None

                return self._row_to_conversation(row)

        except aiosqlite.Error as e:
            logger.error("conversation_get_failed", conversation_id=conversation_id, error=str(e))
            raise DatabaseError(f"Failed to get conversation {conversation_id}: {e}") from e

    async def list_conversations_page(
        self,
        workspace_id: str,
        limit: int,
        offset: int = 0,
    ) -> list[Conversation]:
        """Get one page of a workspace's conversations in stable order.

        Ordered by (created_at, id) ascending so that repeated calls with
        increasing offsets walk the inbox exactly once.

        Raises:
            DatabaseError: If the page cannot be fetched
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM conversations
                    WHERE workspace_id = ?
                    ORDER BY created_at ASC, id ASC
                    LIMIT ? OFFSET ?
                    """,
                    (workspace_id, limit, offset),
                )
                rows = await cursor.fetchall()
                return [self._row_to_conversation(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error(
                "conversation_page_failed",
                workspace_id=workspace_id,
                offset=offset,
                limit=limit,
                error=str(e),
            )
            raise DatabaseError(
                f"Failed to fetch conversations for workspace {workspace_id} "
                f"at offset {offset}: {e}. Retry the same offset."
            ) from e

    async def count_conversations(self, workspace_id: str) -> int:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT COUNT(*) FROM conversations WHERE workspace_id = ?",
                    (workspace_id,),
                )
                row = await cursor.fetchone()
                return row[0] if row else 0

        except aiosqlite.Error as e:
            logger.error("conversation_count_failed", workspace_id=workspace_id, error=str(e))
            raise DatabaseError(f"Failed to count conversations: {e}") from e

    async def get_review_queue(self, workspace_id: str, limit: int = 50) -> list[Conversation]:
        """Get conversations flagged for human review, oldest first."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM conversations
                    WHERE workspace_id = ? AND needs_review = 1
                    ORDER BY created_at ASC, id ASC
                    LIMIT ?
                    """,
                    (workspace_id, limit),
                )
                rows = await cursor.fetchall()
                return [self._row_to_conversation(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("review_queue_failed", workspace_id=workspace_id, error=str(e))
            raise DatabaseError(f"Failed to get review queue: {e}") from e

    async def _write_conversation(
        self,
        db: aiosqlite.Connection,
        snapshot: Conversation,
        fields: dict[str, Any],
    ) -> int:
        """Compare-and-set a conversation row inside an open transaction.

        Returns:
            The new version

        Raises:
            PersistenceConflict: If the row's version moved since the snapshot
        """
        unknown = set(fields) - _CONVERSATION_WRITABLE
        if unknown:
            raise ValueError(f"Columns not writable by triage: {sorted(unknown)}")

        assignments = ", ".join(f"{column} = ?" for column in fields)
        params = [_to_db(value) for value in fields.values()]
        params.extend([_iso(utc_now()), snapshot.id, snapshot.version])

        cursor = await db.execute(
            f"""
            UPDATE conversations
            SET {assignments}, updated_at = ?, version = version + 1
            WHERE id = ? AND version = ?
            """,
            params,
        )
        if cursor.rowcount == 0:
            raise PersistenceConflict(
                f"Conversation {snapshot.id} changed since it was read "
                f"(expected version {snapshot.version}). Reload and retry.",
                conversation_id=snapshot.id,
                expected_version=snapshot.version,
            )
        return snapshot.version + 1

    async def apply_reclassification(
        self,
        snapshot: Conversation,
        fields: dict[str, Any],
        *,
        rule_id: int | None = None,
        triggered_by: str = "manual",
        details: dict[str, Any] | None = None,
    ) -> int:
        """Persist a pipeline result and count the applied rule in one transaction.

        Args:
            snapshot: Conversation as read before classification
            fields: Triage columns to write
            rule_id: Sender rule whose hit_count is incremented, if one was applied
            triggered_by: Audit source ('batch', 'manual')
            details: Extra audit details

        Returns:
            The conversation's new version

        Raises:
            PersistenceConflict: If another writer updated the row first
            DatabaseError: If the transaction fails
        """
        try:
            async with self._transaction() as db:
                version = await self._write_conversation(db, snapshot, fields)

                if rule_id is not None:
                    await db.execute(
                        "UPDATE sender_rules SET hit_count = hit_count + 1 WHERE id = ?",
                        (rule_id,),
                    )

                await self._insert_action(
                    db,
                    "reclassify",
                    workspace_id=snapshot.workspace_id,
                    conversation_id=snapshot.id,
                    details={**(details or {}), **fields, "rule_id": rule_id},
                    triggered_by=triggered_by,
                )

            logger.debug(
                "reclassification_persisted",
                conversation_id=snapshot.id,
                version=version,
                rule_id=rule_id,
            )
            return version

        except aiosqlite.Error as e:
            logger.error(
                "reclassification_persist_failed", conversation_id=snapshot.id, error=str(e)
            )
            raise DatabaseError(
                f"Failed to persist reclassification for {snapshot.id}: {e}"
            ) from e

    async def confirm_review(self, snapshot: Conversation, reviewed_by: str) -> int:
        """Mark a conversation's current triage as confirmed by a reviewer.

        Returns:
            The conversation's new version

        Raises:
            PersistenceConflict: If another writer updated the row first
        """
        try:
            async with self._transaction() as db:
                version = await self._write_conversation(
                    db,
                    snapshot,
                    {
                        "needs_review": False,
                        "reviewed_at": utc_now(),
                        "reviewed_by": reviewed_by,
                        "review_outcome": "confirmed",
                    },
                )
                await self._insert_action(
                    db,
                    "confirm",
                    workspace_id=snapshot.workspace_id,
                    conversation_id=snapshot.id,
                    details={"classification": snapshot.classification},
                    triggered_by=reviewed_by,
                )
            return version

        except aiosqlite.Error as e:
            logger.error("review_confirm_failed", conversation_id=snapshot.id, error=str(e))
            raise DatabaseError(f"Failed to confirm review for {snapshot.id}: {e}") from e

    def _row_to_conversation(self, row: aiosqlite.Row) -> Conversation:
        """Convert a database row to a Conversation dataclass."""
        return Conversation(
            id=row["id"],
            workspace_id=row["workspace_id"],
            title=row["title"],
            channel=row["channel"],
            sender_email=row["sender_email"],
            sender_domain=row["sender_domain"],
            classification=row["classification"],
            requires_reply=_opt_bool(row["requires_reply"]),
            decision_bucket=row["decision_bucket"],
            confidence=row["confidence"],
            classification_source=row["classification_source"],
            needs_review=bool(row["needs_review"]),
            status=row["status"],
            resolved_at=_parse_dt(row["resolved_at"]),
            reviewed_at=_parse_dt(row["reviewed_at"]),
            reviewed_by=row["reviewed_by"],
            review_outcome=row["review_outcome"],
            sentiment=row["sentiment"],
            draft_reply=row["draft_reply"],
            triage_reason=row["triage_reason"],
            created_at=_parse_dt(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
            version=row["version"],
        )

    # =========================================================================
    # Message Operations
    # =========================================================================

    async def add_message(self, message: Message) -> None:
        """Save a message for an existing conversation."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO messages (id, conversation_id, direction, body, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        direction = excluded.direction,
                        body = excluded.body
                    """,
                    (
                        message.id,
                        message.conversation_id,
                        message.direction,
                        message.body,
                        _iso(message.created_at or utc_now()),
                    ),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("message_save_failed", message_id=message.id, error=str(e))
            raise DatabaseError(f"Failed to save message {message.id}: {e}") from e

    async def get_first_inbound_body(self, conversation_id: str) -> str | None:
        """Body of the earliest inbound message in a conversation."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT body FROM messages
                    WHERE conversation_id = ? AND direction = 'inbound'
                    ORDER BY created_at ASC, id ASC
                    LIMIT 1
                    """,
                    (conversation_id,),
                )
                row = await cursor.fetchone()
                return row["body"] if row else None

        except aiosqlite.Error as e:
            logger.error("message_body_failed", conversation_id=conversation_id, error=str(e))
            raise DatabaseError(f"Failed to get messages for {conversation_id}: {e}") from e

    # =========================================================================
    # Sender Rule Operations
    # =========================================================================

    async def find_active_rules(self, workspace_id: str, patterns: list[str]) -> list[SenderRule]:
        """Get active rules for a workspace whose pattern is one of ``patterns``."""
        if not patterns:
            return []

        placeholders = ",".join("?" * len(patterns))
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"""
                    SELECT * FROM sender_rules
                    WHERE workspace_id = ? AND is_active = 1 AND pattern IN ({placeholders})
                    """,
                    [workspace_id, *patterns],
                )
                rows = await cursor.fetchall()
                return [self._row_to_sender_rule(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("rule_lookup_failed", workspace_id=workspace_id, error=str(e))
            raise DatabaseError(f"Failed to look up sender rules: {e}") from e

    async def get_rule_by_pattern(self, workspace_id: str, pattern: str) -> SenderRule | None:
        """Get a rule by its (workspace, pattern) key, active or not."""
        try:
            async with self._db() as db:
                return await self._fetch_rule(db, workspace_id, pattern)

        except aiosqlite.Error as e:
            logger.error("rule_get_failed", workspace_id=workspace_id, error=str(e))
            raise DatabaseError(f"Failed to get sender rule '{pattern}': {e}") from e

    async def get_rule(self, rule_id: int) -> SenderRule | None:
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM sender_rules WHERE id = ?", (rule_id,))
                row = await cursor.fetchone()
                return self._row_to_sender_rule(row) if row else None

        except aiosqlite.Error as e:
            logger.error("rule_get_failed", rule_id=rule_id, error=str(e))
            raise DatabaseError(f"Failed to get sender rule {rule_id}: {e}") from e

    async def list_sender_rules(
        self,
        workspace_id: str,
        active_only: bool = False,
    ) -> list[SenderRule]:
        """Get all rules for a workspace, most used first."""
        query = "SELECT * FROM sender_rules WHERE workspace_id = ?"
        if active_only:
            query += " AND is_active = 1"
        query += " ORDER BY hit_count DESC, pattern ASC"

        try:
            async with self._db() as db:
                cursor = await db.execute(query, (workspace_id,))
                rows = await cursor.fetchall()
                return [self._row_to_sender_rule(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("rule_list_failed", workspace_id=workspace_id, error=str(e))
            raise DatabaseError(f"Failed to list sender rules: {e}") from e

    async def insert_sender_rule(
        self,
        workspace_id: str,
        pattern: str,
        default_classification: str,
        default_requires_reply: bool,
        automation_level: AutomationLevel = "auto",
        tone_preference: str | None = None,
    ) -> SenderRule:
        """Insert a new active rule; never overwrites.

        Raises:
            RuleUniquenessViolation: If the (workspace, pattern) rule already exists
            DatabaseError: If the insert fails for any other reason
        """
        now = _iso(utc_now())
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO sender_rules (
                        workspace_id, pattern, default_classification,
                        default_requires_reply, is_active, hit_count,
                        automation_level, tone_preference, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, 1, 0, ?, ?, ?, ?)
                    """,
                    (
                        workspace_id,
                        pattern,
                        default_classification,
                        _to_db(default_requires_reply),
                        automation_level,
                        tone_preference,
                        now,
                        now,
                    ),
                )
                rule_id = cursor.lastrowid
                await db.commit()

        except aiosqlite.IntegrityError as e:
            if "UNIQUE" not in str(e).upper():
                raise DatabaseError(f"Failed to insert sender rule '{pattern}': {e}") from e
            raise RuleUniquenessViolation(
                f"Sender rule '{pattern}' already exists in workspace {workspace_id}. "
                "Update it instead of inserting.",
                workspace_id=workspace_id,
                pattern=pattern,
            ) from e
        except aiosqlite.Error as e:
            logger.error("rule_insert_failed", workspace_id=workspace_id, error=str(e))
            raise DatabaseError(f"Failed to insert sender rule '{pattern}': {e}") from e

        logger.info(
            "sender_rule_inserted",
            workspace_id=workspace_id,
            pattern=pattern,
            classification=default_classification,
        )
        return SenderRule(
            id=rule_id,
            workspace_id=workspace_id,
            pattern=pattern,
            default_classification=default_classification,
            default_requires_reply=default_requires_reply,
            automation_level=automation_level,
            tone_preference=tone_preference,
            created_at=_parse_dt(now),
            updated_at=_parse_dt(now),
        )

    async def upsert_sender_rule(
        self,
        workspace_id: str,
        pattern: str,
        default_classification: str,
        default_requires_reply: bool,
        created_from_correction_id: int | None = None,
        triggered_by: str = "manual",
    ) -> RuleWrite:
        """Create or overwrite the rule for (workspace, pattern).

        Raises:
            DatabaseError: If the transaction fails
        """
        try:
            async with self._transaction() as db:
                write = await self._upsert_rule(
                    db,
                    workspace_id,
                    pattern,
                    default_classification,
                    default_requires_reply,
                    created_from_correction_id,
                )
                await self._insert_action(
                    db,
                    "rule_upsert",
                    workspace_id=workspace_id,
                    details={
                        "pattern": pattern,
                        "classification": default_classification,
                        "created": write.created,
                    },
                    triggered_by=triggered_by,
                )
            return write

        except aiosqlite.Error as e:
            logger.error("rule_upsert_failed", workspace_id=workspace_id, error=str(e))
            raise DatabaseError(f"Failed to upsert sender rule '{pattern}': {e}") from e

    async def _upsert_rule(
        self,
        db: aiosqlite.Connection,
        workspace_id: str,
        pattern: str,
        default_classification: str,
        default_requires_reply: bool,
        created_from_correction_id: int | None,
    ) -> RuleWrite:
        """Upsert keyed on (workspace_id, pattern) inside an open transaction.

        An existing row has its classification fields overwritten, is
        reactivated and has its hit_count reset. The WHERE guard keeps a
        write with an older updated_at from clobbering a newer one.
        """
        existing = await self._fetch_rule(db, workspace_id, pattern)
        now = _iso(utc_now())

        cursor = await db.execute(
            """
            INSERT INTO sender_rules (
                workspace_id, pattern, default_classification, default_requires_reply,
                is_active, hit_count, created_from_correction_id, created_at, updated_at
            ) VALUES (?, ?, ?, ?, 1, 0, ?, ?, ?)
            ON CONFLICT(workspace_id, pattern) DO UPDATE SET
                default_classification = excluded.default_classification,
                default_requires_reply = excluded.default_requires_reply,
                is_active = 1,
                hit_count = 0,
                created_from_correction_id = COALESCE(
                    excluded.created_from_correction_id,
                    sender_rules.created_from_correction_id
                ),
                updated_at = excluded.updated_at
            WHERE excluded.updated_at >= sender_rules.updated_at
            """,
            (
                workspace_id,
                pattern,
                default_classification,
                _to_db(default_requires_reply),
                created_from_correction_id,
                now,
                now,
            ),
        )
        applied = cursor.rowcount > 0

        rule = await self._fetch_rule(db, workspace_id, pattern)
        if rule is None:
            raise DatabaseError(f"Sender rule '{pattern}' missing after upsert")

        logger.info(
            "sender_rule_upserted",
            workspace_id=workspace_id,
            pattern=pattern,
            classification=default_classification,
            created=existing is None,
            applied=applied,
        )
        return RuleWrite(rule=rule, created=existing is None, applied=applied)

    async def deactivate_rule(self, rule_id: int, triggered_by: str = "manual") -> bool:
        """Deactivate a rule. Returns False when no such rule exists."""
        try:
            async with self._transaction() as db:
                cursor = await db.execute(
                    "UPDATE sender_rules SET is_active = 0, updated_at = ? WHERE id = ?",
                    (_iso(utc_now()), rule_id),
                )
                if cursor.rowcount == 0:
                    return False
                await self._insert_action(
                    db,
                    "rule_deactivate",
                    details={"rule_id": rule_id},
                    triggered_by=triggered_by,
                )
            logger.info("sender_rule_deactivated", rule_id=rule_id)
            return True

        except aiosqlite.Error as e:
            logger.error("rule_deactivate_failed", rule_id=rule_id, error=str(e))
            raise DatabaseError(f"Failed to deactivate sender rule {rule_id}: {e}") from e

    async def _fetch_rule(
        self, db: aiosqlite.Connection, workspace_id: str, pattern: str
    ) -> SenderRule | None:
        cursor = await db.execute(
            "SELECT * FROM sender_rules WHERE workspace_id = ? AND pattern = ?",
            (workspace_id, pattern),
        )
        row = await cursor.fetchone()
        return self._row_to_sender_rule(row) if row else None

    def _row_to_sender_rule(self, row: aiosqlite.Row) -> SenderRule:
        """Convert a database row to a SenderRule dataclass."""
        return SenderRule(
            id=row["id"],
            workspace_id=row["workspace_id"],
            pattern=row["pattern"],
            default_classification=row["default_classification"],
            default_requires_reply=bool(row["default_requires_reply"]),
            is_active=bool(row["is_active"]),
            hit_count=row["hit_count"],
            automation_level=row["automation_level"],
            tone_preference=row["tone_preference"],
            created_from_correction_id=row["created_from_correction_id"],
            created_at=_parse_dt(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
        )

    # =========================================================================
    # Correction Operations
    # =========================================================================

    async def apply_correction(
        self,
        snapshot: Conversation,
        fields: dict[str, Any],
        *,
        new_classification: str,
        new_requires_reply: bool,
        corrected_by: str,
        rule_pattern: str | None = None,
        domain_rule_threshold: int | None = None,
    ) -> CorrectionWrite:
        """Record a human correction in one transaction.

        Writes the conversation (version-guarded), appends the correction
        row, then optionally upserts a sender rule:
        - ``rule_pattern`` set: upsert that pattern unconditionally
        - ``domain_rule_threshold`` set: count corrections for the sender
          domain (including this one) and upsert ``*@domain`` once the
          count reaches the threshold

        Raises:
            PersistenceConflict: If another writer updated the conversation first
            DatabaseError: If the transaction fails
        """
        try:
            async with self._transaction() as db:
                version = await self._write_conversation(db, snapshot, fields)

                cursor = await db.execute(
                    """
                    INSERT INTO triage_corrections (
                        workspace_id, conversation_id, original_classification,
                        new_classification, original_requires_reply, new_requires_reply,
                        sender_email, sender_domain, corrected_by, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        snapshot.workspace_id,
                        snapshot.id,
                        snapshot.classification,
                        new_classification,
                        _to_db(snapshot.requires_reply),
                        _to_db(new_requires_reply),
                        snapshot.sender_email,
                        snapshot.sender_domain,
                        corrected_by,
                        _iso(utc_now()),
                    ),
                )
                correction_id = cursor.lastrowid

                domain_count = 0
                if snapshot.sender_domain:
                    domain_count = await self._count_domain_corrections(
                        db, snapshot.workspace_id, snapshot.sender_domain
                    )

                pattern = rule_pattern
                if (
                    pattern is None
                    and domain_rule_threshold is not None
                    and snapshot.sender_domain
                    and domain_count >= domain_rule_threshold
                ):
                    pattern = f"*@{snapshot.sender_domain}"

                rule_write = None
                if pattern is not None:
                    rule_write = await self._upsert_rule(
                        db,
                        snapshot.workspace_id,
                        pattern,
                        new_classification,
                        new_requires_reply,
                        correction_id,
                    )

                await self._insert_action(
                    db,
                    "correction",
                    workspace_id=snapshot.workspace_id,
                    conversation_id=snapshot.id,
                    details={
                        "correction_id": correction_id,
                        "original_classification": snapshot.classification,
                        "new_classification": new_classification,
                        "rule_pattern": pattern,
                        "domain_correction_count": domain_count,
                    },
                    triggered_by=corrected_by,
                )

            return CorrectionWrite(
                correction_id=correction_id,
                conversation_version=version,
                domain_correction_count=domain_count,
                rule_write=rule_write,
            )

        except aiosqlite.Error as e:
            logger.error("correction_persist_failed", conversation_id=snapshot.id, error=str(e))
            raise DatabaseError(f"Failed to record correction for {snapshot.id}: {e}") from e

    async def count_domain_corrections(self, workspace_id: str, sender_domain: str) -> int:
        try:
            async with self._db() as db:
                return await self._count_domain_corrections(db, workspace_id, sender_domain)

        except aiosqlite.Error as e:
            logger.error("correction_count_failed", workspace_id=workspace_id, error=str(e))
            raise DatabaseError(f"Failed to count corrections: {e}") from e

    async def _count_domain_corrections(
        self, db: aiosqlite.Connection, workspace_id: str, sender_domain: str
    ) -> int:
        cursor = await db.execute(
            """
            SELECT COUNT(*) FROM triage_corrections
            WHERE workspace_id = ? AND sender_domain = ?
            """,
            (workspace_id, sender_domain.lower()),
        )
        row = await cursor.fetchone()
        return row[0] if row else 0

    async def list_corrections(
        self,
        workspace_id: str,
        conversation_id: str | None = None,
        limit: int = 100,
    ) -> list[TriageCorrection]:
        """Get corrections for a workspace, newest first."""
        query = "SELECT * FROM triage_corrections WHERE workspace_id = ?"
        params: list[Any] = [workspace_id]
        if conversation_id:
            query += " AND conversation_id = ?"
            params.append(conversation_id)
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)

        try:
            async with self._db() as db:
                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()
                return [self._row_to_correction(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("correction_list_failed", workspace_id=workspace_id, error=str(e))
            raise DatabaseError(f"Failed to list corrections: {e}") from e

    async def correction_stats(self, workspace_id: str) -> dict[str, Any]:
        """Learning statistics for a workspace.

        Returns:
            Dict with total corrections, per-domain counts, rules created
            from corrections and the most common label transitions
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT COUNT(*) FROM triage_corrections WHERE workspace_id = ?",
                    (workspace_id,),
                )
                total = (await cursor.fetchone())[0]

                cursor = await db.execute(
                    """
                    SELECT sender_domain, COUNT(*) AS cnt
                    FROM triage_corrections
                    WHERE workspace_id = ? AND sender_domain IS NOT NULL
                    GROUP BY sender_domain
                    ORDER BY cnt DESC, sender_domain ASC
                    """,
                    (workspace_id,),
                )
                by_domain = {row["sender_domain"]: row["cnt"] for row in await cursor.fetchall()}

                cursor = await db.execute(
                    """
                    SELECT COUNT(*) FROM sender_rules
                    WHERE workspace_id = ? AND created_from_correction_id IS NOT NULL
                    """,
                    (workspace_id,),
                )
                rules_from_corrections = (await cursor.fetchone())[0]

                cursor = await db.execute(
                    """
                    SELECT original_classification, new_classification, COUNT(*) AS cnt
                    FROM triage_corrections
                    WHERE workspace_id = ?
                    GROUP BY original_classification, new_classification
                    ORDER BY cnt DESC
                    LIMIT 10
                    """,
                    (workspace_id,),
                )
                transitions = [
                    {
                        "from": row["original_classification"],
                        "to": row["new_classification"],
                        "count": row["cnt"],
                    }
                    for row in await cursor.fetchall()
                ]

            return {
                "total_corrections": total,
                "corrections_by_domain": by_domain,
                "rules_from_corrections": rules_from_corrections,
                "top_transitions": transitions,
            }

        except aiosqlite.Error as e:
            logger.error("correction_stats_failed", workspace_id=workspace_id, error=str(e))
            raise DatabaseError(f"Failed to compute correction stats: {e}") from e

    async def domain_bucket_stats(self, workspace_id: str) -> dict[str, tuple[int, int]]:
        """Per sender domain: (auto_handled conversations, total conversations)."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT sender_domain,
                           SUM(CASE WHEN decision_bucket = 'auto_handled' THEN 1 ELSE 0 END)
                               AS auto_count,
                           COUNT(*) AS total
                    FROM conversations
                    WHERE workspace_id = ? AND sender_domain IS NOT NULL
                    GROUP BY sender_domain
                    """,
                    (workspace_id,),
                )
                return {
                    row["sender_domain"]: (row["auto_count"], row["total"])
                    for row in await cursor.fetchall()
                }

        except aiosqlite.Error as e:
            logger.error("domain_stats_failed", workspace_id=workspace_id, error=str(e))
            raise DatabaseError(f"Failed to compute domain stats: {e}") from e

    def _row_to_correction(self, row: aiosqlite.Row) -> TriageCorrection:
        """Convert a database row to a TriageCorrection dataclass."""
        return TriageCorrection(
            id=row["id"],
            workspace_id=row["workspace_id"],
            conversation_id=row["conversation_id"],
            original_classification=row["original_classification"],
            new_classification=row["new_classification"],
            original_requires_reply=_opt_bool(row["original_requires_reply"]),
            new_requires_reply=bool(row["new_requires_reply"]),
            sender_email=row["sender_email"],
            sender_domain=row["sender_domain"],
            corrected_by=row["corrected_by"],
            created_at=_parse_dt(row["created_at"]),
        )

    # =========================================================================
    # Action Log Operations
    # =========================================================================

    async def _insert_action(
        self,
        db: aiosqlite.Connection,
        action_type: str,
        *,
        workspace_id: str | None = None,
        conversation_id: str | None = None,
        details: dict[str, Any] | None = None,
        triggered_by: str = "manual",
    ) -> int:
        payload = dict(details or {})
        batch_run_id = get_correlation_id()
        if batch_run_id:
            payload["batch_run_id"] = batch_run_id

        cursor = await db.execute(
            """
            INSERT INTO action_log (
                action_type, workspace_id, conversation_id, details_json, triggered_by
            ) VALUES (?, ?, ?, ?, ?)
            """,
            (
                action_type,
                workspace_id,
                conversation_id,
                json.dumps(payload, default=str) if payload else None,
                triggered_by,
            ),
        )
        return cursor.lastrowid

    async def get_action_logs(
        self,
        limit: int = 100,
        conversation_id: str | None = None,
        action_type: str | None = None,
    ) -> list[ActionLogEntry]:
        """Get action logs with optional filters, newest first."""
        try:
            async with self._db() as db:
                query = "SELECT * FROM action_log WHERE 1=1"
                params: list[Any] = []

                if conversation_id:
                    query += " AND conversation_id = ?"
                    params.append(conversation_id)

                if action_type:
                    query += " AND action_type = ?"
                    params.append(action_type)

                query += " ORDER BY id DESC LIMIT ?"
                params.append(limit)

                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()
                return [self._row_to_action_log(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("action_log_get_failed", error=str(e))
            raise DatabaseError(f"Failed to get action logs: {e}") from e

    def _row_to_action_log(self, row: aiosqlite.Row) -> ActionLogEntry:
        """Convert a database row to an ActionLogEntry dataclass."""
        details_json = None
        if row["details_json"]:
            try:
                details_json = json.loads(row["details_json"])
            except json.JSONDecodeError:
                logger.warning("action_log_details_unreadable", action_id=row["id"])

        return ActionLogEntry(
            id=row["id"],
            timestamp=datetime.fromisoformat(row["timestamp"])
            if row["timestamp"]
            else utc_now(),
            action_type=row["action_type"],
            workspace_id=row["workspace_id"],
            conversation_id=row["conversation_id"],
            details_json=details_json,
            triggered_by=row["triggered_by"],
        )

    # =========================================================================
    # Dashboard/Stats Operations
    # =========================================================================

    async def get_stats(self, workspace_id: str) -> dict[str, Any]:
        """Bucket and review counts for a workspace."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT COALESCE(decision_bucket, 'unclassified') AS bucket, COUNT(*) AS cnt
                    FROM conversations
                    WHERE workspace_id = ?
                    GROUP BY bucket
                    """,
                    (workspace_id,),
                )
                buckets = {row["bucket"]: row["cnt"] for row in await cursor.fetchall()}

                cursor = await db.execute(
                    """
                    SELECT COUNT(*) FROM conversations
                    WHERE workspace_id = ? AND needs_review = 1
                    """,
                    (workspace_id,),
                )
                needs_review = (await cursor.fetchone())[0]

                cursor = await db.execute(
                    """
                    SELECT COUNT(*) FROM sender_rules
                    WHERE workspace_id = ? AND is_active = 1
                    """,
                    (workspace_id,),
                )
                active_rules = (await cursor.fetchone())[0]

            return {
                "buckets": buckets,
                "needs_review": needs_review,
                "active_rules": active_rules,
            }

        except aiosqlite.Error as e:
            logger.error("stats_failed", workspace_id=workspace_id, error=str(e))
            raise DatabaseError(f"Failed to get stats: {e}") from e

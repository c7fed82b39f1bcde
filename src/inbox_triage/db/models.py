"""SQLite database schema and initialization for the inbox triage engine.

This module defines the database schema with 5 tables:
- conversations: Inbound threads with their current triage state
- messages: Individual inbound/outbound messages per conversation
- sender_rules: Learned per-sender routing overrides
- triage_corrections: Append-only audit of human classification overrides
- action_log: Audit trail of applied reclassifications, corrections and rule changes

Usage:
    from inbox_triage.db.models import init_database

    # Initialize database (creates tables if not exist)
    await init_database("data/triage.db")
"""

import stat
from pathlib import Path

import aiosqlite

from inbox_triage.core.errors import DatabaseError
from inbox_triage.core.logging import get_logger

logger = get_logger(__name__)

# Schema version for migrations (increment when schema changes)
SCHEMA_VERSION = 1

REQUIRED_TABLES = (
    "conversations",
    "messages",
    "sender_rules",
    "triage_corrections",
    "action_log",
)

# SQL schema definition
SCHEMA_SQL = """
-- MUST be set before creating tables. Persists across connections.
PRAGMA journal_mode=WAL;

-- One row per inbound thread
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    workspace_id TEXT NOT NULL,
    title TEXT,
    channel TEXT DEFAULT 'email',           -- 'email', 'sms', 'chat'
    sender_email TEXT,
    sender_domain TEXT,                     -- Lower-cased, derived from sender_email
    classification TEXT,                    -- Taxonomy label
    requires_reply INTEGER,                 -- NULL = unknown
    decision_bucket TEXT,                   -- 'act_now', 'quick_win', 'wait', 'auto_handled'
    confidence REAL,                        -- NULL for rule-derived results
    classification_source TEXT,             -- 'sender_rule', 'classifier', 'correction'
    needs_review INTEGER DEFAULT 0,
    status TEXT DEFAULT 'open',             -- 'open', 'resolved'
    resolved_at DATETIME,
    reviewed_at DATETIME,
    reviewed_by TEXT,
    review_outcome TEXT,                    -- 'confirmed', 'changed'
    sentiment TEXT,
    draft_reply TEXT,
    triage_reason TEXT,                     -- Why the conversation landed in its bucket
    created_at DATETIME NOT NULL,
    updated_at DATETIME NOT NULL,
    version INTEGER NOT NULL DEFAULT 1      -- Optimistic concurrency counter
);

-- Stable batch paging order
CREATE INDEX IF NOT EXISTS idx_conversations_workspace_created
    ON conversations(workspace_id, created_at, id);
CREATE INDEX IF NOT EXISTS idx_conversations_review
    ON conversations(workspace_id, needs_review);
CREATE INDEX IF NOT EXISTS idx_conversations_domain
    ON conversations(workspace_id, sender_domain);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL REFERENCES conversations(id),
    direction TEXT NOT NULL DEFAULT 'inbound',  -- 'inbound', 'outbound'
    body TEXT,
    created_at DATETIME NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation
    ON messages(conversation_id, direction, created_at);

-- At most one rule per (workspace, pattern); upserts resolve on this key
CREATE TABLE IF NOT EXISTS sender_rules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    workspace_id TEXT NOT NULL,
    pattern TEXT NOT NULL,                  -- 'user@domain' or '*@domain'
    default_classification TEXT NOT NULL,
    default_requires_reply INTEGER NOT NULL DEFAULT 0,
    is_active INTEGER NOT NULL DEFAULT 1,
    hit_count INTEGER NOT NULL DEFAULT 0,
    automation_level TEXT NOT NULL DEFAULT 'auto',  -- 'auto', 'draft_first', 'always_review'
    tone_preference TEXT,
    created_from_correction_id INTEGER REFERENCES triage_corrections(id),
    created_at DATETIME NOT NULL,
    updated_at DATETIME NOT NULL,
    UNIQUE (workspace_id, pattern)
);

CREATE INDEX IF NOT EXISTS idx_sender_rules_active
    ON sender_rules(workspace_id, is_active);

-- Append-only; never updated or deleted
CREATE TABLE IF NOT EXISTS triage_corrections (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    workspace_id TEXT NOT NULL,
    conversation_id TEXT NOT NULL REFERENCES conversations(id),
    original_classification TEXT,
    new_classification TEXT NOT NULL,
    original_requires_reply INTEGER,
    new_requires_reply INTEGER NOT NULL,
    sender_email TEXT,
    sender_domain TEXT,
    corrected_by TEXT NOT NULL,
    created_at DATETIME NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_corrections_domain
    ON triage_corrections(workspace_id, sender_domain);
CREATE INDEX IF NOT EXISTS idx_corrections_conversation
    ON triage_corrections(conversation_id);

-- Audit log of live engine actions
CREATE TABLE IF NOT EXISTS action_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
    action_type TEXT,                       -- 'reclassify', 'correction', 'confirm', 'rule_upsert', 'rule_deactivate'
    workspace_id TEXT,
    conversation_id TEXT,
    details_json TEXT,
    triggered_by TEXT                       -- 'batch', 'manual', reviewer id
);

CREATE INDEX IF NOT EXISTS idx_action_log_timestamp ON action_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_action_log_conversation ON action_log(conversation_id);
"""


async def init_database(db_path: str | Path) -> None:
    """Initialize the SQLite database with schema and WAL mode.

    Creates the database file if it doesn't exist, enables WAL mode for
    concurrent access, and creates all tables and indexes.

    Args:
        db_path: Path to the SQLite database file

    Raises:
        DatabaseError: If database initialization fails
    """
    db_path = Path(db_path)

    # Ensure parent directory exists
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            journal_mode = await db.execute("PRAGMA journal_mode")
            mode = await journal_mode.fetchone()
            if mode and mode[0].lower() != "wal":
                logger.warning(
                    "wal_mode_not_enabled",
                    requested="wal",
                    actual=mode[0],
                    db_path=str(db_path),
                )

            await db.executescript(SCHEMA_SQL)
            await db.commit()

            cursor = await db.execute("SELECT COUNT(*) FROM sqlite_master WHERE type='table'")
            table_count = (await cursor.fetchone())[0]

        # Conversation bodies and sender addresses are PII: owner read/write only
        db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)
        for suffix in ["-wal", "-shm"]:
            wal_file = db_path.with_suffix(db_path.suffix + suffix)
            if wal_file.exists():
                wal_file.chmod(stat.S_IRUSR | stat.S_IWUSR)

        logger.info(
            "database_initialized",
            db_path=str(db_path),
            schema_version=SCHEMA_VERSION,
            tables_created=table_count,
        )

    except aiosqlite.Error as e:
        logger.error(
            "database_initialization_failed",
            db_path=str(db_path),
            error=str(e),
        )
        raise DatabaseError(
            f"Failed to initialize database at {db_path}: {e}. "
            "Check that the directory is writable and the database file is not corrupted."
        ) from e


async def verify_schema(db_path: str | Path) -> bool:
    """Verify that the database has the expected schema.

    Args:
        db_path: Path to the SQLite database file

    Returns:
        True if all tables exist, False otherwise
    """
    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table'")
            existing_tables = {row[0] for row in await cursor.fetchall()}

            missing = set(REQUIRED_TABLES) - existing_tables
            if missing:
                logger.warning(
                    "database_tables_missing",
                    missing=sorted(missing),
                    db_path=str(db_path),
                )
                return False

            return True

    except aiosqlite.Error as e:
        logger.error(
            "schema_verification_failed",
            db_path=str(db_path),
            error=str(e),
        )
        return False

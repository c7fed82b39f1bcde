"""Database layer for the inbox triage engine.

This module provides SQLite database access with async operations.

Usage:
    from inbox_triage.db import Conversation, DatabaseStore

    store = DatabaseStore("data/triage.db")
    await store.initialize()

    await store.save_conversation(
        Conversation(id="c-1", workspace_id="ws-1", sender_email="ops@vendorx.com")
    )
    conversation = await store.get_conversation("c-1")
"""

from inbox_triage.db.models import (
    SCHEMA_VERSION,
    init_database,
    verify_schema,
)
from inbox_triage.db.store import (
    ActionLogEntry,
    Conversation,
    CorrectionWrite,
    DatabaseStore,
    Message,
    RuleWrite,
    SenderRule,
    TriageCorrection,
)

__all__ = [
    # Models
    "SCHEMA_VERSION",
    "init_database",
    "verify_schema",
    # Store
    "DatabaseStore",
    # Dataclasses
    "ActionLogEntry",
    "Conversation",
    "CorrectionWrite",
    "Message",
    "RuleWrite",
    "SenderRule",
    "TriageCorrection",
]

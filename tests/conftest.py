"""Pytest fixtures and configuration for inbox triage tests.

Provides common fixtures for configuration, database, and mocking.
"""

import os
from collections.abc import Generator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest

from inbox_triage.classifier.claude_classifier import ClassifierOutput
from inbox_triage.classifier.sender_rules import SenderRuleMatcher
from inbox_triage.classifier.taxonomy import Taxonomy
from inbox_triage.config import reset_config
from inbox_triage.config_schema import AppConfig
from inbox_triage.core.logging import set_correlation_id
from inbox_triage.db.store import Conversation, DatabaseStore, Message

BASE_TIME = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def reset_config_singleton() -> Generator[None, None, None]:
    """Reset the config singleton before each test."""
    reset_config()
    yield
    reset_config()


@pytest.fixture(autouse=True)
def reset_correlation_id() -> Generator[None, None, None]:
    """Clear the correlation ID between tests."""
    set_correlation_id(None)
    yield
    set_correlation_id(None)


@pytest.fixture
def temp_config_dir(tmp_path: Path) -> Path:
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def sample_config_yaml() -> str:
    """Return a minimal valid config.yaml content."""
    return """
schema_version: 1

database:
  path: "data/test.db"

review:
  message_threshold: 0.80

learning:
  auto_rule_threshold: 3

batch:
  default_page_size: 50
  ai_max_page_size: 10
  max_workers: 4
"""


@pytest.fixture
def sample_config_dict(data_dir: Path) -> dict[str, Any]:
    """Return a minimal valid config as a dictionary."""
    return {
        "schema_version": 1,
        "database": {"path": str(data_dir / "triage.db")},
        "review": {"message_threshold": 0.80},
        "learning": {"auto_rule_threshold": 3},
        "batch": {
            "default_page_size": 50,
            "ai_max_page_size": 10,
            "max_workers": 4,
        },
    }


@pytest.fixture
def sample_config(sample_config_dict: dict[str, Any]) -> AppConfig:
    """Return a minimal valid AppConfig instance."""
    return AppConfig(**sample_config_dict)


@pytest.fixture
def config_file(temp_config_dir: Path, sample_config_yaml: str) -> Path:
    """Create a temporary config file with valid content."""
    config_path = temp_config_dir / "config.yaml"
    config_path.write_text(sample_config_yaml)
    return config_path


@pytest.fixture
def set_config_env(config_file: Path) -> Generator[None, None, None]:
    """Set the TRIAGE_CONFIG_PATH environment variable."""
    old_value = os.environ.get("TRIAGE_CONFIG_PATH")
    os.environ["TRIAGE_CONFIG_PATH"] = str(config_file)
    yield
    if old_value is None:
        del os.environ["TRIAGE_CONFIG_PATH"]
    else:
        os.environ["TRIAGE_CONFIG_PATH"] = old_value


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory."""
    data = tmp_path / "data"
    data.mkdir(exist_ok=True)
    return data


# ---------------------------------------------------------------------------
# Domain fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def store(data_dir: Path) -> DatabaseStore:
    """Create and initialize a DatabaseStore."""
    s = DatabaseStore(data_dir / "test.db")
    await s.initialize()
    return s


@pytest.fixture
def taxonomy() -> Taxonomy:
    """Return the built-in taxonomy."""
    return Taxonomy()


@pytest.fixture
def matcher(store: DatabaseStore) -> SenderRuleMatcher:
    return SenderRuleMatcher(store)


@pytest.fixture
def fake_classifier() -> AsyncMock:
    """A classifier double returning a confident customer inquiry."""
    classifier = AsyncMock()
    classifier.classify.return_value = ClassifierOutput(
        classification="customer_inquiry",
        confidence=0.92,
        requires_reply=True,
        sentiment="neutral",
        reasoning="Customer asks about availability",
    )
    return classifier


async def seed_conversation(
    store: DatabaseStore,
    conversation_id: str,
    sender_email: str | None = "someone@example.com",
    workspace_id: str = "ws-1",
    minutes: int = 0,
    body: str | None = None,
    **fields: Any,
) -> Conversation:
    """Insert a conversation (and optionally its first inbound message).

    ``minutes`` offsets created_at from BASE_TIME so tests control page order.
    """
    created_at = BASE_TIME + timedelta(minutes=minutes)
    conversation = Conversation(
        id=conversation_id,
        workspace_id=workspace_id,
        title=fields.pop("title", f"Conversation {conversation_id}"),
        sender_email=sender_email,
        created_at=created_at,
        **fields,
    )
    await store.save_conversation(conversation)
    if body is not None:
        await store.add_message(
            Message(
                id=f"{conversation_id}-m1",
                conversation_id=conversation_id,
                direction="inbound",
                body=body,
                created_at=created_at,
            )
        )
    saved = await store.get_conversation(conversation_id)
    assert saved is not None
    return saved

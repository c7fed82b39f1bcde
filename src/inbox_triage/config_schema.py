"""Pydantic configuration schema for the inbox triage engine.

This module defines the configuration schema that mirrors config.yaml structure.
All configuration is validated against these models on startup and hot-reload.

Usage:
    from inbox_triage.config_schema import AppConfig

    # Validate a config dict
    config = AppConfig(**yaml_data)
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from inbox_triage.classifier.buckets import (
    MESSAGE_REVIEW_THRESHOLD,
    TRIAGE_AGENT_REVIEW_THRESHOLD,
)

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1


class DatabaseConfig(BaseModel):
    """SQLite database configuration."""

    path: str = Field(
        default="data/triage.db",
        description="Path to the SQLite database file",
    )

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Ensure database path is set and doesn't contain path traversal."""
        if not v or not v.strip():
            raise ValueError("Database path cannot be empty")
        if ".." in v:
            raise ValueError("Database path cannot contain '..' (path traversal)")
        return v


class ClassifierConfig(BaseModel):
    """External classifier (Claude) configuration."""

    model: str = Field(
        default="claude-haiku-4-5-20251001",
        description="Model used for message classification",
    )
    max_tokens: int = Field(
        default=1024,
        ge=128,
        le=8192,
        description="Max output tokens per classification call",
    )
    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        le=300,
        description="Per-call timeout; a timeout counts as classifier unavailable",
    )
    requests_per_second: float = Field(
        default=2.0,
        gt=0,
        le=50,
        description="Classifier call rate limit shared by all batch workers",
    )
    max_body_chars: int = Field(
        default=1500,
        ge=100,
        le=20000,
        description="Maximum message characters sent to the classifier",
    )
    draft_replies: bool = Field(
        default=True,
        description="Ask the classifier for a draft reply when one is needed",
    )


class ReviewConfig(BaseModel):
    """Confidence thresholds below which a conversation is flagged for review.

    The two thresholds belong to different call sites and are kept apart on
    purpose: per-message reclassification vs. the triage-agent path.
    """

    message_threshold: float = Field(
        default=MESSAGE_REVIEW_THRESHOLD,
        ge=0.0,
        le=1.0,
        description="Review threshold for per-message classification",
    )
    triage_agent_threshold: float = Field(
        default=TRIAGE_AGENT_REVIEW_THRESHOLD,
        ge=0.0,
        le=1.0,
        description="Review threshold for the specialized triage-agent path",
    )


class LearningConfig(BaseModel):
    """Correction-driven sender rule learning configuration."""

    auto_rule_threshold: int = Field(
        default=3,
        ge=1,
        le=100,
        description="Corrections for one sender domain before a domain rule is auto-created",
    )
    default_rule_scope: Literal["email", "domain"] = Field(
        default="domain",
        description="Scope used when a correction opts in to rule creation without a scope",
    )


class BatchConfig(BaseModel):
    """Batch reconciliation configuration."""

    default_page_size: int = Field(
        default=50,
        ge=1,
        le=500,
        description="Conversations per page when the caller gives no limit",
    )
    ai_max_page_size: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Page size cap for Full AI Re-Analysis runs",
    )
    max_workers: int = Field(
        default=4,
        ge=1,
        le=32,
        description="Concurrent conversations processed within one page",
    )


class PipelineConfig(BaseModel):
    """Reclassification pipeline behaviour."""

    prefer_sender_rules: bool = Field(
        default=True,
        description="A matching sender rule bypasses the classifier even when LLM calls are allowed",
    )


class TaxonomyOverride(BaseModel):
    """Per-deployment override or addition for one classification label."""

    category: str = Field(description="Category the label belongs to (e.g. 'complaint')")
    requires_reply: bool = Field(description="Whether messages with this label need a reply")
    urgent: bool | None = Field(
        default=None,
        description="Route straight to act_now when a reply is needed (default: by category)",
    )
    display_name: str | None = Field(default=None, description="Human-readable label")


class TaxonomyConfig(BaseModel):
    """Classification taxonomy configuration."""

    overrides: dict[str, TaxonomyOverride] = Field(
        default_factory=dict,
        description="Label -> entry overrides merged over the built-in taxonomy",
    )

    @field_validator("overrides")
    @classmethod
    def validate_labels(cls, v: dict[str, TaxonomyOverride]) -> dict[str, TaxonomyOverride]:
        """Labels are stored lower-case snake_case."""
        for label in v:
            if not label or label != label.strip().lower() or " " in label:
                raise ValueError(
                    f"Taxonomy label '{label}' must be lower-case snake_case (e.g. 'quote_request')"
                )
        return v


class LoggingConfig(BaseModel):
    """Logging output configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Minimum log level",
    )
    json_output: bool = Field(
        default=True,
        description="JSON log lines (server) vs. console rendering",
    )


class AppConfig(BaseModel):
    """Root configuration schema for the inbox triage engine.

    This model validates the entire config.yaml structure. On startup and
    hot-reload, the YAML is parsed and validated against this schema.

    If validation fails on startup, the application exits with a clear error.
    If validation fails on hot-reload, the previous valid config is kept.
    """

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version for migration tracking",
    )

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    review: ReviewConfig = Field(default_factory=ReviewConfig)
    learning: LearningConfig = Field(default_factory=LearningConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    taxonomy: TaxonomyConfig = Field(default_factory=TaxonomyConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def validate_page_sizes(self) -> "AppConfig":
        """AI page cap must not exceed the regular page size."""
        if self.batch.ai_max_page_size > self.batch.default_page_size:
            raise ValueError(
                f"batch.ai_max_page_size ({self.batch.ai_max_page_size}) cannot exceed "
                f"batch.default_page_size ({self.batch.default_page_size})"
            )
        return self

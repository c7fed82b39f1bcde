"""Classification layer: taxonomy, sender rules, bucket resolution and the Claude adapter.

Usage:
    from inbox_triage.classifier import Taxonomy, SenderRuleMatcher, resolve_bucket
"""

from inbox_triage.classifier.buckets import (
    MESSAGE_REVIEW_THRESHOLD,
    TRIAGE_AGENT_REVIEW_THRESHOLD,
    BucketDecision,
    resolve_bucket,
)
from inbox_triage.classifier.claude_classifier import (
    ClassifierOutput,
    ClaudeMessageClassifier,
    MessageClassifier,
)
from inbox_triage.classifier.sender_rules import (
    DEFAULT_SEED_RULES,
    SenderRuleMatcher,
    extract_domain,
    normalize_sender,
    pattern_for,
    seed_default_rules,
    validate_pattern,
)
from inbox_triage.classifier.taxonomy import Taxonomy, TaxonomyEntry

__all__ = [
    # Buckets
    "MESSAGE_REVIEW_THRESHOLD",
    "TRIAGE_AGENT_REVIEW_THRESHOLD",
    "BucketDecision",
    "resolve_bucket",
    # Classifier capability
    "ClassifierOutput",
    "ClaudeMessageClassifier",
    "MessageClassifier",
    # Sender rules
    "DEFAULT_SEED_RULES",
    "SenderRuleMatcher",
    "extract_domain",
    "normalize_sender",
    "pattern_for",
    "seed_default_rules",
    "validate_pattern",
    # Taxonomy
    "Taxonomy",
    "TaxonomyEntry",
]

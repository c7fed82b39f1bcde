"""Decision bucket resolution.

Maps a candidate classification to one of the four queue buckets and decides
whether a human needs to review it. Pure and deterministic: no I/O, no clock.

Routing order:
1. requires_reply is False -> auto_handled
2. label is urgent (complaint/lead by default) and a reply is needed -> act_now
3. requires_reply is True -> quick_win
4. reply requirement unknown -> wait

Usage:
    from inbox_triage.classifier.buckets import MESSAGE_REVIEW_THRESHOLD, resolve_bucket

    decision = resolve_bucket(
        "complaint_dispute", True, 0.6,
        threshold=MESSAGE_REVIEW_THRESHOLD, taxonomy=taxonomy,
    )
    decision.bucket  # "act_now"
    decision.needs_review  # True
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from inbox_triage.classifier.taxonomy import Taxonomy

DecisionBucket = Literal["act_now", "quick_win", "wait", "auto_handled"]

DECISION_BUCKETS: tuple[str, ...] = ("act_now", "quick_win", "wait", "auto_handled")

# Per-message classification (reclassify, batch)
MESSAGE_REVIEW_THRESHOLD = 0.80

# Specialized triage-agent path. Kept separate from the per-message threshold.
TRIAGE_AGENT_REVIEW_THRESHOLD = 0.85


@dataclass(frozen=True, slots=True)
class BucketDecision:
    """Resolved queue placement for one conversation."""

    bucket: DecisionBucket
    needs_review: bool


def resolve_bucket(
    classification: str | None,
    requires_reply: bool | None,
    confidence: float | None,
    *,
    threshold: float,
    taxonomy: Taxonomy,
    rule_derived: bool = False,
) -> BucketDecision:
    """Resolve the decision bucket and review flag for a candidate.

    Args:
        classification: Taxonomy label, or None when unclassified
        requires_reply: Reply requirement; None means unknown
        confidence: Classifier confidence in [0, 1]; None for rule-derived
            candidates or when no classifier ran
        threshold: Review threshold for this call site
        taxonomy: Taxonomy used to look up urgency and no-reply labels
        rule_derived: True when the candidate came from a matched sender rule

    Returns:
        BucketDecision with the bucket and whether review is needed
    """
    entry = taxonomy.get(classification)

    bucket: DecisionBucket
    if requires_reply is False:
        bucket = "auto_handled"
    elif requires_reply and entry is not None and entry.urgent:
        bucket = "act_now"
    elif requires_reply:
        bucket = "quick_win"
    else:
        bucket = "wait"

    if bucket == "auto_handled" and entry is not None and not entry.requires_reply:
        # No-reply labels close without review whatever the confidence
        needs_review = False
    elif confidence is None:
        needs_review = not rule_derived
    else:
        needs_review = confidence < threshold

    return BucketDecision(bucket=bucket, needs_review=needs_review)

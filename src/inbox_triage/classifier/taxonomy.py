"""Classification taxonomy: label -> {category, requires_reply, urgent}.

The taxonomy is configuration data. The built-in table below is merged with
``taxonomy.overrides`` from config.yaml once at startup, and the resulting
``Taxonomy`` is passed by reference to the bucket resolver, the
reclassification pipeline and the correction recorder.

Usage:
    from inbox_triage.classifier.taxonomy import Taxonomy

    taxonomy = Taxonomy.from_config(config.taxonomy)
    entry = taxonomy.require("supplier_invoice")
    entry.requires_reply  # False
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from inbox_triage.core.errors import UnknownClassification

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping

    from inbox_triage.config_schema import TaxonomyConfig, TaxonomyOverride

# Categories whose reply-requiring messages go straight to act_now
URGENT_CATEGORIES = frozenset({"complaint", "lead"})


@dataclass(frozen=True, slots=True)
class TaxonomyEntry:
    """One classification label and what it implies for routing."""

    label: str
    category: str
    requires_reply: bool
    urgent: bool
    display_name: str


def _entry(label: str, display_name: str, category: str, requires_reply: bool) -> TaxonomyEntry:
    return TaxonomyEntry(
        label=label,
        category=category,
        requires_reply=requires_reply,
        urgent=category in URGENT_CATEGORIES,
        display_name=display_name,
    )


DEFAULT_ENTRIES: tuple[TaxonomyEntry, ...] = (
    # Customer
    _entry("customer_inquiry", "Customer Inquiry", "inquiry", True),
    _entry("booking_request", "Booking Request", "inquiry", True),
    _entry("quote_request", "Quote Request", "inquiry", True),
    _entry("reschedule_request", "Reschedule Request", "inquiry", True),
    _entry("cancellation_request", "Cancellation Request", "inquiry", True),
    _entry("complaint_dispute", "Complaint/Dispute", "complaint", True),
    _entry("customer_complaint", "Customer Complaint", "complaint", True),
    _entry("customer_feedback", "Customer Feedback", "feedback", False),
    # Leads
    _entry("lead_new", "New Lead", "lead", True),
    _entry("lead_followup", "Lead Follow-up", "lead", True),
    _entry("misdirected", "Misdirected Email", "misdirected", False),
    # Suppliers and finance
    _entry("supplier_invoice", "Supplier Invoice", "financial", False),
    _entry("supplier_urgent", "Supplier Urgent", "financial", True),
    _entry("payment_confirmation", "Payment Confirmation", "financial", False),
    _entry("receipt_confirmation", "Receipt/Confirmation", "financial", False),
    _entry("partner_request", "Partner Request", "partner", True),
    # System
    _entry("automated_notification", "Auto Notification", "system", False),
    _entry("internal_system", "Internal System", "system", False),
    _entry("informational_only", "Info Only (FYI)", "system", False),
    # Marketing and noise
    _entry("marketing_newsletter", "Marketing/Newsletter", "marketing", False),
    _entry("spam_phishing", "Spam/Phishing", "spam", False),
    _entry("recruitment_hr", "Recruitment/HR", "recruitment", False),
)


class Taxonomy:
    """Immutable lookup table of classification labels.

    Label order is preserved (built-in labels first, then labels added by
    overrides) so prompts and UI pickers render consistently.
    """

    def __init__(self, entries: Mapping[str, TaxonomyEntry] | None = None):
        if entries is None:
            entries = {entry.label: entry for entry in DEFAULT_ENTRIES}
        self._entries: dict[str, TaxonomyEntry] = dict(entries)

    @classmethod
    def from_overrides(cls, overrides: Mapping[str, TaxonomyOverride]) -> Taxonomy:
        """Build a taxonomy from the defaults with per-deployment overrides applied."""
        entries = {entry.label: entry for entry in DEFAULT_ENTRIES}
        for label, override in overrides.items():
            existing = entries.get(label)
            if override.display_name:
                display_name = override.display_name
            elif existing:
                display_name = existing.display_name
            else:
                display_name = label.replace("_", " ").title()

            urgent = override.urgent
            if urgent is None:
                urgent = override.category in URGENT_CATEGORIES

            entries[label] = TaxonomyEntry(
                label=label,
                category=override.category,
                requires_reply=override.requires_reply,
                urgent=urgent,
                display_name=display_name,
            )
        return cls(entries)

    @classmethod
    def from_config(cls, config: TaxonomyConfig) -> Taxonomy:
        return cls.from_overrides(config.overrides)

    def get(self, label: str | None) -> TaxonomyEntry | None:
        """Look up a label, returning None for unknown or missing labels."""
        if not label:
            return None
        return self._entries.get(label)

    def require(self, label: str) -> TaxonomyEntry:
        """Look up a label that must exist.

        Raises:
            UnknownClassification: If the label is not in the taxonomy
        """
        entry = self.get(label)
        if entry is None:
            raise UnknownClassification(label)
        return entry

    def is_valid(self, label: str | None) -> bool:
        return self.get(label) is not None

    def labels(self) -> list[str]:
        return list(self._entries)

    def no_reply_labels(self) -> list[str]:
        """Labels whose messages never need a reply (always auto_handled)."""
        return [label for label, entry in self._entries.items() if not entry.requires_reply]

    def __iter__(self) -> Iterator[TaxonomyEntry]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, label: object) -> bool:
        return label in self._entries

"""Sender rule matching for deterministic routing.

A sender rule is a learned override keyed by either a full address
(``billing@vendorx.com``) or a domain wildcard (``*@vendorx.com``). When a
rule matches, the reclassification pipeline can skip the classifier call
entirely.

Matching is exact on the normalized (stripped, lower-cased) address or
domain. There is no glob or fuzzy matching beyond the ``*@domain`` form.
An exact-address rule always beats a domain rule for the same sender.

Lookups never touch ``hit_count``; the pipeline increments it only when a
rule is actually applied in a live run.

Usage:
    from inbox_triage.classifier.sender_rules import SenderRuleMatcher

    matcher = SenderRuleMatcher(store)
    rule = await matcher.match("ws-1", "Billing@VendorX.com")
    if rule:
        # Adopt rule.default_classification / rule.default_requires_reply
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

from inbox_triage.core.errors import InvalidPattern, RuleUniquenessViolation
from inbox_triage.core.logging import get_logger

if TYPE_CHECKING:
    from inbox_triage.db.store import DatabaseStore, SenderRule

logger = get_logger(__name__)

RuleScope = Literal["email", "domain"]

DOMAIN_WILDCARD_PREFIX = "*@"


def normalize_sender(sender_email: str) -> str:
    """Strip and lower-case a sender address, validating its shape.

    Raises:
        InvalidPattern: If the address has no '@', an empty local part or
            domain, more than one '@', or embedded whitespace
    """
    address = sender_email.strip().lower()
    local, sep, domain = address.partition("@")
    if not sep or not local or not domain or "@" in domain:
        raise InvalidPattern(
            f"Malformed sender address '{sender_email}': expected 'local@domain'. "
            "Fix the sender on the conversation or skip it.",
            value=sender_email,
        )
    if any(ch.isspace() for ch in address):
        raise InvalidPattern(
            f"Malformed sender address '{sender_email}': contains whitespace.",
            value=sender_email,
        )
    if domain.startswith(".") or domain.endswith(".") or ".." in domain:
        raise InvalidPattern(
            f"Malformed sender domain '{domain}' in '{sender_email}'.",
            value=sender_email,
        )
    return address


def extract_domain(sender_email: str) -> str:
    """Return the lower-cased domain of a sender address."""
    return normalize_sender(sender_email).split("@", 1)[1]


def domain_pattern(domain: str) -> str:
    return f"{DOMAIN_WILDCARD_PREFIX}{domain.strip().lower()}"


def pattern_for(scope: RuleScope, sender_email: str) -> str:
    """Build the rule pattern for a sender at the given scope.

    Args:
        scope: 'email' for the exact address, 'domain' for '*@domain'
        sender_email: Sender address (normalized here)

    Returns:
        Rule pattern string
    """
    address = normalize_sender(sender_email)
    if scope == "email":
        return address
    if scope == "domain":
        return domain_pattern(address.split("@", 1)[1])
    raise ValueError(f"Unknown rule scope '{scope}', expected 'email' or 'domain'")


def validate_pattern(pattern: str) -> str:
    """Validate and normalize a rule pattern.

    Accepts either a full address or a ``*@domain`` wildcard.

    Raises:
        InvalidPattern: If the pattern is neither form
    """
    value = pattern.strip().lower()
    if value.startswith(DOMAIN_WILDCARD_PREFIX):
        domain = value[len(DOMAIN_WILDCARD_PREFIX) :]
        # Reuse address validation with a placeholder local part
        normalize_sender(f"x@{domain}")
        return value
    if "*" in value:
        raise InvalidPattern(
            f"Unsupported rule pattern '{pattern}': only '*@domain' wildcards are allowed.",
            value=pattern,
        )
    return normalize_sender(value)


def is_domain_pattern(pattern: str) -> bool:
    return pattern.startswith(DOMAIN_WILDCARD_PREFIX)


def candidate_patterns(sender_email: str) -> tuple[str, str]:
    """Return (exact_pattern, domain_pattern) for a sender, most specific first."""
    address = normalize_sender(sender_email)
    return address, domain_pattern(address.split("@", 1)[1])


def select_rule(rules: list[SenderRule], sender_email: str) -> SenderRule | None:
    """Pick the most specific active rule for a sender from candidate rows.

    The exact-address rule wins over the domain rule. Inactive rows are
    ignored.
    """
    exact, domain = candidate_patterns(sender_email)
    by_pattern = {rule.pattern: rule for rule in rules if rule.is_active}
    return by_pattern.get(exact) or by_pattern.get(domain)


class SenderRuleMatcher:
    """Looks up the active sender rule for a conversation's sender."""

    def __init__(self, store: DatabaseStore):
        self._store = store

    async def match(self, workspace_id: str, sender_email: str | None) -> SenderRule | None:
        """Find the active rule for a sender, exact address first.

        Args:
            workspace_id: Workspace whose rules are searched
            sender_email: Sender address; None or blank means no lookup

        Returns:
            The matching SenderRule, or None

        Raises:
            InvalidPattern: If the sender address is malformed
        """
        if sender_email is None or not sender_email.strip():
            return None

        exact, domain = candidate_patterns(sender_email)
        rules = await self._store.find_active_rules(workspace_id, [exact, domain])
        rule = select_rule(rules, sender_email)

        if rule is not None:
            logger.debug(
                "sender_rule_matched",
                workspace_id=workspace_id,
                pattern_type="domain" if is_domain_pattern(rule.pattern) else "email",
                sender_domain=exact.split("@", 1)[1],
                classification=rule.default_classification,
            )
        return rule


# ---------------------------------------------------------------------------
# Rule bootstrap for new workspaces
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SeedRule:
    """A known automated sender seeded into every new workspace."""

    pattern: str
    classification: str
    requires_reply: bool
    reason: str


DEFAULT_SEED_RULES: tuple[SeedRule, ...] = (
    # Payment and financial
    SeedRule("*@stripe.com", "receipt_confirmation", False, "Payment notifications"),
    SeedRule("*@mail.stripe.com", "receipt_confirmation", False, "Stripe receipts"),
    SeedRule("*@gocardless.com", "receipt_confirmation", False, "Direct debit notifications"),
    SeedRule("*@xero.com", "receipt_confirmation", False, "Accounting notifications"),
    SeedRule("*@freeagent.com", "receipt_confirmation", False, "Accounting notifications"),
    SeedRule(
        "*@quickbooks.intuit.com", "receipt_confirmation", False, "Accounting notifications"
    ),
    SeedRule("*@tide.co", "receipt_confirmation", False, "Banking notifications"),
    # Shipping
    SeedRule("*@ups.com", "automated_notification", False, "Shipping updates"),
    SeedRule("*@fedex.com", "automated_notification", False, "Shipping updates"),
    SeedRule("*@royalmail.com", "automated_notification", False, "Shipping updates"),
    SeedRule("*@dpd.co.uk", "automated_notification", False, "Delivery notifications"),
    # Social
    SeedRule("*@linkedin.com", "marketing_newsletter", False, "LinkedIn notifications"),
    SeedRule("*@facebook.com", "marketing_newsletter", False, "Facebook notifications"),
    SeedRule("*@twitter.com", "marketing_newsletter", False, "Twitter/X notifications"),
    SeedRule("*@instagram.com", "marketing_newsletter", False, "Instagram notifications"),
    # Job boards
    SeedRule("*@indeed.com", "recruitment_hr", False, "Job board notifications"),
    SeedRule("*@totaljobs.com", "recruitment_hr", False, "Job board notifications"),
    SeedRule("*@reed.co.uk", "recruitment_hr", False, "Job board notifications"),
    # Business and communication tools
    SeedRule("*@calendly.com", "automated_notification", False, "Calendar notifications"),
    SeedRule("*@slack.com", "automated_notification", False, "Slack notifications"),
    SeedRule("*@zoom.us", "automated_notification", False, "Zoom notifications"),
    SeedRule("*@circleloop.com", "automated_notification", False, "Phone system notifications"),
    # Cloud and developer tooling
    SeedRule("*@github.com", "internal_system", False, "GitHub notifications"),
    SeedRule("*@cloudflare.com", "internal_system", False, "Cloudflare alerts"),
    # Google
    SeedRule("noreply@google.com", "automated_notification", False, "Google notifications"),
    SeedRule(
        "*@googleworkspace.com", "automated_notification", False, "Google Workspace notifications"
    ),
)


@dataclass(slots=True)
class SeedResult:
    """Counts from a seeding or history-learning pass."""

    inserted: int = 0
    skipped: int = 0
    updated: int = 0


async def seed_default_rules(
    store: DatabaseStore,
    workspace_id: str,
    seeds: tuple[SeedRule, ...] = DEFAULT_SEED_RULES,
) -> SeedResult:
    """Insert the known automated-sender rules for a workspace.

    Patterns that already exist (including ones learned from corrections)
    are left alone. If another writer inserts the same pattern between the
    existence check and the insert, the row is accepted when it already
    holds the seed's values and otherwise updated to them.
    """
    result = SeedResult()

    for seed in seeds:
        pattern = validate_pattern(seed.pattern)
        existing = await store.get_rule_by_pattern(workspace_id, pattern)
        if existing is not None:
            result.skipped += 1
            continue

        try:
            await store.insert_sender_rule(
                workspace_id=workspace_id,
                pattern=pattern,
                default_classification=seed.classification,
                default_requires_reply=seed.requires_reply,
            )
            result.inserted += 1
        except RuleUniquenessViolation:
            current = await store.get_rule_by_pattern(workspace_id, pattern)
            if (
                current is not None
                and current.is_active
                and current.default_classification == seed.classification
                and current.default_requires_reply == seed.requires_reply
            ):
                result.skipped += 1
                continue

            logger.info(
                "seed_rule_collision_updating",
                workspace_id=workspace_id,
                pattern=pattern,
            )
            await store.upsert_sender_rule(
                workspace_id=workspace_id,
                pattern=pattern,
                default_classification=seed.classification,
                default_requires_reply=seed.requires_reply,
            )
            result.updated += 1

    logger.info(
        "sender_rules_seeded",
        workspace_id=workspace_id,
        inserted=result.inserted,
        skipped=result.skipped,
        updated=result.updated,
    )
    return result


async def learn_rules_from_history(
    store: DatabaseStore,
    workspace_id: str,
    *,
    min_conversations: int = 3,
    min_auto_ratio: float = 0.8,
) -> SeedResult:
    """Create domain rules for senders whose conversations are almost always auto-handled.

    A domain qualifies when it has at least ``min_conversations``
    conversations and at least ``min_auto_ratio`` of them sit in the
    auto_handled bucket. Domains that already have a domain rule are skipped.
    """
    result = SeedResult()
    stats = await store.domain_bucket_stats(workspace_id)

    for domain, (auto_count, total) in sorted(stats.items()):
        if total < min_conversations or auto_count / total < min_auto_ratio:
            continue

        try:
            pattern = validate_pattern(domain_pattern(domain))
        except InvalidPattern:
            logger.warning("history_domain_invalid", workspace_id=workspace_id, domain=domain)
            result.skipped += 1
            continue

        if await store.get_rule_by_pattern(workspace_id, pattern) is not None:
            result.skipped += 1
            continue

        try:
            await store.insert_sender_rule(
                workspace_id=workspace_id,
                pattern=pattern,
                default_classification="automated_notification",
                default_requires_reply=False,
            )
        except RuleUniquenessViolation:
            result.skipped += 1
            continue

        result.inserted += 1
        logger.info(
            "sender_rule_learned_from_history",
            workspace_id=workspace_id,
            domain=domain,
            auto_handled=auto_count,
            total=total,
        )

    return result

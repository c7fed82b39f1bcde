"""Prompt assembler and tool definition for Claude message classification.

The tool schema is generated from the taxonomy so the classification enum
always matches the labels the resolver knows about. The system prompt is
taxonomy-dependent and built once per classifier instance; the user
message is assembled per message.

Usage:
    from inbox_triage.classifier.prompts import PromptAssembler, build_classify_tool

    tool = build_classify_tool(taxonomy)
    assembler = PromptAssembler()
    system = assembler.build_system_prompt(taxonomy)
    message = assembler.build_user_message(
        sender_email="ops@vendorx.com", message_text="Invoice #42 attached", max_chars=1500
    )
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from inbox_triage.classifier.taxonomy import Taxonomy

CLASSIFY_TOOL_NAME = "classify_message"

VALID_SENTIMENTS = frozenset({"positive", "neutral", "negative", "frustrated"})


# ---------------------------------------------------------------------------
# Tool definition
# ---------------------------------------------------------------------------


def build_classify_tool(taxonomy: Taxonomy, draft_replies: bool = True) -> dict[str, Any]:
    """Build the classify_message tool whose label enum is the taxonomy."""
    properties: dict[str, Any] = {
        "classification": {
            "type": "string",
            "enum": taxonomy.labels(),
            "description": "Exact classification label from the taxonomy",
        },
        "requires_reply": {
            "type": "boolean",
            "description": "Whether the business needs to reply to this message",
        },
        "confidence": {
            "type": "number",
            "minimum": 0.0,
            "maximum": 1.0,
            "description": "Classification confidence score",
        },
        "sentiment": {
            "type": "string",
            "enum": sorted(VALID_SENTIMENTS),
        },
        "reasoning": {
            "type": "string",
            "description": "One sentence explaining why this needs (or doesn't need) the owner",
        },
    }
    if draft_replies:
        properties["draft_reply"] = {
            "type": ["string", "null"],
            "description": "Short draft reply when requires_reply is true, otherwise null",
        }

    return {
        "name": CLASSIFY_TOOL_NAME,
        "description": "Classify an inbound customer message for triage",
        "input_schema": {
            "type": "object",
            "properties": properties,
            "required": ["classification", "requires_reply", "confidence", "reasoning"],
        },
    }


# ---------------------------------------------------------------------------
# Prompt assembler
# ---------------------------------------------------------------------------


class PromptAssembler:
    """Builds classification prompts."""

    def build_system_prompt(self, taxonomy: Taxonomy) -> str:
        """Assemble the system prompt listing every label and its reply default."""
        return _SYSTEM_PROMPT_TEMPLATE.format(labels_from_taxonomy=_build_label_list(taxonomy))

    def build_user_message(
        self,
        sender_email: str | None,
        message_text: str,
        max_chars: int = 1500,
        channel: str = "email",
    ) -> str:
        """Assemble the per-message user prompt.

        Args:
            sender_email: Sender address, or None when unknown
            message_text: Earliest inbound message body (or the title)
            max_chars: Body truncation limit
            channel: Inbound channel ('email', 'sms', 'chat')

        Returns:
            Complete user message string
        """
        text = message_text.strip()
        if len(text) > max_chars:
            text = text[:max_chars] + " [truncated]"

        parts: list[str] = [
            "Classify this message:",
            "",
            f"From: {sender_email or 'Unknown sender'}",
            f"Channel: {channel}",
            "",
            "Message:",
            text or "(empty message)",
        ]
        return "\n".join(parts)


def _build_label_list(taxonomy: Taxonomy) -> str:
    lines: list[str] = []
    for entry in taxonomy:
        reply = "reply needed" if entry.requires_reply else "no reply"
        lines.append(f"- {entry.label} ({entry.display_name}; {entry.category}; {reply})")
    return "\n".join(lines)


_SYSTEM_PROMPT_TEMPLATE = """\
You are an inbox triage assistant for a small service business.
Classify each inbound message using the classify_message tool.

CLASSIFICATION LABELS:
{labels_from_taxonomy}

GUIDANCE:
- Pick the single most specific label. Receipts, invoices and payment \
notifications from suppliers or payment processors never need a reply.
- Set requires_reply to true only when a human at the business must respond. \
Automated senders (noreply addresses, notifications, newsletters) do not need replies.
- Complaints and new leads are time-sensitive: flag them clearly.
- Confidence reflects how sure you are of the label, not of the reply decision. \
Use values below 0.8 when the message is ambiguous.
- Keep draft replies short, polite and specific to the message. Never invent \
prices, dates or commitments.\
"""

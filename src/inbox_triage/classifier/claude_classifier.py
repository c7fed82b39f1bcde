"""Claude classifier using tool use for structured message classification.

Implements the ``MessageClassifier`` capability the reclassification
pipeline depends on. Uses forced tool_choice to guarantee structured output
from Claude, and validates the tool call against the taxonomy.

Error handling strategy:
- Transient errors (429, 5xx, network): Handled by Anthropic SDK (max_retries)
- Still failing after SDK retries, or timed out: ClassifierUnavailable
  (recoverable, the item is retried in a later run)
- Logical errors (missing fields, unknown label): App-level retry up to 3
  attempts, then ClassificationError

Usage:
    from inbox_triage.classifier.claude_classifier import ClaudeMessageClassifier

    classifier = ClaudeMessageClassifier(
        client=anthropic.AsyncAnthropic(max_retries=3),
        taxonomy=taxonomy,
        config=app_config.classifier,
    )
    output = await classifier.classify("Invoice #42 attached", "billing@vendorx.com")
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import anthropic

from inbox_triage.classifier.prompts import (
    CLASSIFY_TOOL_NAME,
    VALID_SENTIMENTS,
    PromptAssembler,
    build_classify_tool,
)
from inbox_triage.core.errors import (
    ClassificationError,
    ClassifierUnavailable,
    RateLimitExceeded,
)
from inbox_triage.core.logging import get_logger, sender_domain_for_log
from inbox_triage.core.rate_limiter import TokenBucket

if TYPE_CHECKING:
    from inbox_triage.classifier.taxonomy import Taxonomy
    from inbox_triage.config_schema import ClassifierConfig

logger = get_logger(__name__)

# Max classification attempts for invalid tool output
MAX_CLASSIFICATION_ATTEMPTS = 3


# ---------------------------------------------------------------------------
# Classifier capability
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ClassifierOutput:
    """Validated classifier result.

    Attributes:
        classification: Taxonomy label
        confidence: Confidence score (0.0-1.0)
        requires_reply: Reply requirement, or None if the classifier gave none
        sentiment: Sentiment label (if provided)
        draft_reply: Suggested reply text (if provided)
        reasoning: One-sentence explanation
    """

    classification: str
    confidence: float
    requires_reply: bool | None = None
    sentiment: str | None = None
    draft_reply: str | None = None
    reasoning: str | None = None


class MessageClassifier(Protocol):
    """External classification capability used by the pipeline."""

    async def classify(self, message_text: str, sender: str | None) -> ClassifierOutput:
        """Classify one message.

        Raises:
            ClassifierUnavailable: Timeout, rate limit or connection failure
            ClassificationError: No usable result
        """
        ...


# ---------------------------------------------------------------------------
# Claude adapter
# ---------------------------------------------------------------------------


class ClaudeMessageClassifier:
    """Classifies messages with Claude using forced tool use.

    Attributes:
        _client: Async Anthropic client (configured with max_retries=3)
        _taxonomy: Taxonomy used for the tool enum and validation
        _config: Classifier configuration section
        _limiter: Optional token bucket shared by concurrent callers
    """

    def __init__(
        self,
        client: anthropic.AsyncAnthropic,
        taxonomy: Taxonomy,
        config: ClassifierConfig,
        limiter: TokenBucket | None = None,
    ):
        self._client = client
        self._taxonomy = taxonomy
        self._config = config
        self._limiter = limiter
        self._assembler = PromptAssembler()
        self._tool = build_classify_tool(taxonomy, draft_replies=config.draft_replies)
        self._system_prompt = self._assembler.build_system_prompt(taxonomy)

    async def classify(self, message_text: str, sender: str | None) -> ClassifierOutput:
        """Classify a message with forced tool use.

        Args:
            message_text: Message body (or conversation title)
            sender: Sender address, if known

        Returns:
            Validated ClassifierOutput

        Raises:
            ClassifierUnavailable: On timeout, rate limiting or connection failure
            ClassificationError: After MAX_CLASSIFICATION_ATTEMPTS invalid responses
        """
        user_message = self._assembler.build_user_message(
            sender_email=sender,
            message_text=message_text,
            max_chars=self._config.max_body_chars,
        )
        messages = [{"role": "user", "content": user_message}]
        sender_domain = sender_domain_for_log(sender)

        last_error: str | None = None
        for attempt in range(1, MAX_CLASSIFICATION_ATTEMPTS + 1):
            if self._limiter is not None:
                try:
                    await self._limiter.consume()
                except RateLimitExceeded as e:
                    raise ClassifierUnavailable(
                        f"Classifier rate limit wait too long: {e}", attempts=attempt - 1
                    ) from e

            start_time = time.monotonic()
            try:
                response = await asyncio.wait_for(
                    self._client.messages.create(
                        model=self._config.model,
                        max_tokens=self._config.max_tokens,
                        system=self._system_prompt,
                        messages=messages,
                        tools=[self._tool],
                        tool_choice={"type": "tool", "name": CLASSIFY_TOOL_NAME},
                    ),
                    timeout=self._config.timeout_seconds,
                )

            except TimeoutError as e:
                logger.warning(
                    "classification_timeout",
                    sender_domain=sender_domain,
                    attempt=attempt,
                    timeout_seconds=self._config.timeout_seconds,
                )
                raise ClassifierUnavailable(
                    f"Classifier timed out after {self._config.timeout_seconds}s. "
                    "The item will be retried on the next run.",
                    attempts=attempt,
                ) from e

            except anthropic.RateLimitError as e:
                logger.error(
                    "classification_rate_limited",
                    sender_domain=sender_domain,
                    attempt=attempt,
                    error=str(e),
                )
                # Don't retry rate limits at app level - SDK already retried
                raise ClassifierUnavailable(
                    f"Rate limited after SDK retries: {e}", attempts=attempt
                ) from e

            except anthropic.APIConnectionError as e:
                logger.error(
                    "classification_connection_error",
                    sender_domain=sender_domain,
                    attempt=attempt,
                    error=str(e),
                )
                raise ClassifierUnavailable(
                    f"API connection error after SDK retries: {e}", attempts=attempt
                ) from e

            except anthropic.APIStatusError as e:
                logger.error(
                    "classification_api_error",
                    sender_domain=sender_domain,
                    attempt=attempt,
                    status_code=e.status_code,
                    error=str(e),
                )
                if e.status_code >= 500:
                    raise ClassifierUnavailable(
                        f"Classifier API error {e.status_code}: {e.message}", attempts=attempt
                    ) from e
                # 4xx other than 429 will not succeed on retry
                raise ClassificationError(
                    f"Classifier rejected the request ({e.status_code}): {e.message}. "
                    "Check the model name and API key.",
                    attempts=attempt,
                ) from e

            duration_ms = int((time.monotonic() - start_time) * 1000)

            tool_call = _extract_tool_call(response)
            if tool_call is None:
                last_error = "No tool call in response (unexpected with forced tool_choice)"
                logger.warning(
                    "classification_no_tool_call",
                    sender_domain=sender_domain,
                    attempt=attempt,
                )
                continue

            validation_error = _validate_tool_call(tool_call, self._taxonomy)
            if validation_error:
                last_error = validation_error
                logger.warning(
                    "classification_invalid_response",
                    sender_domain=sender_domain,
                    attempt=attempt,
                    error=validation_error,
                )
                continue

            output = _build_output(tool_call)
            logger.debug(
                "classification_complete",
                sender_domain=sender_domain,
                classification=output.classification,
                confidence=output.confidence,
                duration_ms=duration_ms,
                attempt=attempt,
            )
            return output

        raise ClassificationError(
            f"Classification failed after {MAX_CLASSIFICATION_ATTEMPTS} attempts. "
            f"Last error: {last_error}",
            attempts=MAX_CLASSIFICATION_ATTEMPTS,
        )


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _extract_tool_call(response: anthropic.types.Message) -> dict[str, Any] | None:
    """Extract the classify_message tool call input from the API response."""
    for block in response.content:
        if block.type == "tool_use" and block.name == CLASSIFY_TOOL_NAME:
            return block.input
    return None


def _validate_tool_call(data: dict[str, Any], taxonomy: Taxonomy) -> str | None:
    """Validate a tool call against the taxonomy.

    Returns:
        Error message if invalid, None if valid
    """
    required = ("classification", "confidence")
    missing = [f for f in required if f not in data]
    if missing:
        return f"Missing required fields: {', '.join(missing)}"

    if not taxonomy.is_valid(data["classification"]):
        return f"Invalid classification: '{data['classification']}' is not in the taxonomy"

    confidence = data.get("confidence")
    if (
        isinstance(confidence, bool)
        or not isinstance(confidence, int | float)
        or confidence < 0.0
        or confidence > 1.0
    ):
        return f"Invalid confidence: {confidence}. Must be a number between 0.0 and 1.0"

    requires_reply = data.get("requires_reply")
    if requires_reply is not None and not isinstance(requires_reply, bool):
        return f"Invalid requires_reply: {requires_reply!r}. Must be true or false"

    return None


def _build_output(tool_call: dict[str, Any]) -> ClassifierOutput:
    sentiment = tool_call.get("sentiment")
    if sentiment not in VALID_SENTIMENTS:
        sentiment = None

    draft_reply = tool_call.get("draft_reply")
    if not isinstance(draft_reply, str) or not draft_reply.strip():
        draft_reply = None

    reasoning = tool_call.get("reasoning")
    if not isinstance(reasoning, str):
        reasoning = None

    return ClassifierOutput(
        classification=tool_call["classification"],
        confidence=float(tool_call["confidence"]),
        requires_reply=tool_call.get("requires_reply"),
        sentiment=sentiment,
        draft_reply=draft_reply,
        reasoning=reasoning,
    )

"""Custom exception types for the inbox triage engine.

Error messages follow one standard:
- What failed (specific operation or component)
- Where it failed (conversation, rule pattern, workspace)
- Why it failed (the specific condition)
- How to fix it (actionable guidance)
"""


class TriageError(Exception):
    """Base exception for all inbox triage engine errors."""

    pass


class ConfigValidationError(TriageError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(TriageError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class DatabaseError(TriageError):
    """Raised when SQLite operations fail."""

    pass


class PersistenceConflict(DatabaseError):
    """Raised when an optimistic-concurrency write loses to another writer.

    The conversation row's version changed between read and write, meaning
    a reviewer or another batch run modified it concurrently.

    Attributes:
        conversation_id: The conversation whose write was rejected
        expected_version: Version the writer read before writing
    """

    def __init__(
        self,
        message: str,
        conversation_id: str | None = None,
        expected_version: int | None = None,
    ):
        super().__init__(message)
        self.conversation_id = conversation_id
        self.expected_version = expected_version


class RuleUniquenessViolation(DatabaseError):
    """Raised when a plain insert collides with an existing (workspace, pattern) rule.

    Attributes:
        workspace_id: Workspace of the colliding rule
        pattern: Sender pattern that already exists
    """

    def __init__(self, message: str, workspace_id: str, pattern: str):
        super().__init__(message)
        self.workspace_id = workspace_id
        self.pattern = pattern


class ConversationNotFound(TriageError):
    """Raised when a conversation ID does not exist in the store."""

    def __init__(self, conversation_id: str):
        super().__init__(
            f"Conversation '{conversation_id}' not found. "
            "Check the ID or re-run ingest for this workspace."
        )
        self.conversation_id = conversation_id


class ClassificationError(TriageError):
    """Raised when the external classifier fails to produce a usable result.

    Attributes:
        conversation_id: The conversation that failed classification
        attempts: Number of classification attempts made
    """

    def __init__(self, message: str, conversation_id: str | None = None, attempts: int = 0):
        super().__init__(message)
        self.conversation_id = conversation_id
        self.attempts = attempts


class ClassifierUnavailable(ClassificationError):
    """Raised on timeout, rate limit or connection failure from the classifier.

    Recoverable: the item should be retried in a later run. Batch runs record
    it against the item and continue with the rest of the page.
    """

    pass


class InvalidPattern(TriageError):
    """Raised when a sender address or rule pattern is malformed.

    Attributes:
        value: The offending address or pattern
    """

    def __init__(self, message: str, value: str | None = None):
        super().__init__(message)
        self.value = value


class UnknownClassification(TriageError):
    """Raised when a label is not present in the classification taxonomy."""

    def __init__(self, label: str):
        super().__init__(
            f"Unknown classification label '{label}'. "
            "Use one of the labels from the taxonomy or add it under taxonomy.overrides."
        )
        self.label = label


class InvalidCorrection(TriageError):
    """Raised when a correction request cannot be applied (e.g. label unchanged)."""

    pass


class RateLimitExceeded(TriageError):
    """Raised when API rate limits are exceeded and cannot be recovered.

    This is raised when the rate limiter would require an excessive wait time
    (>20 seconds) rather than blocking indefinitely.
    """

    pass

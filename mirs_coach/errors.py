"""Domain errors raised by the persistence/rubric adapters and the feedback pipeline."""


class FeedbackError(Exception):
    """Base error carrying a user-facing message and a kind for the transport."""

    kind = "upstream"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(FeedbackError):
    """Conversation or grade does not exist (client error)."""

    kind = "not_found"


class NotReadyError(FeedbackError):
    """Rubric context has not been computed yet; the learner should wait and retry."""

    kind = "not_ready"


class UpstreamError(FeedbackError):
    """Persistence or completion service failed. Not retried."""

    kind = "upstream"

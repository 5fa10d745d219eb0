class BookVisionError(Exception):
    """Base class for errors raised by the service."""


class ValidationError(BookVisionError):
    """Missing or malformed input. Raised before any remote call is made."""


class TrainingConflictError(ValidationError):
    """A training job is already in progress for this session."""


class NotFoundError(BookVisionError):
    pass


class PersistenceError(BookVisionError):
    """Local store read/write failure. Logged and degraded, never surfaced."""


class RemoteError(BookVisionError):
    """The remote API rejected a request or returned an unusable payload."""


class RemoteSubmissionError(RemoteError):
    pass


class RemoteStatusError(RemoteError):
    pass


class RemoteResultError(RemoteError):
    pass


class RemoteGenerationError(RemoteError):
    pass

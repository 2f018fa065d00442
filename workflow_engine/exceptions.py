"""Error taxonomy for the batch execution engine.

Item-level errors (TransientAPIError, PermanentAPIError, StorageError,
CancellationSkip) never abort sibling items. Only CredentialError and
ValidationError abort a whole batch.
"""

from typing import List, Optional


class WorkflowEngineError(Exception):
    """Base class for all engine errors."""

    code = "ENGINE_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def __str__(self) -> str:
        return self.message


class ValidationError(WorkflowEngineError):
    """Malformed batch submission. Rejected before anything is enqueued."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or [message]


class CredentialError(WorkflowEngineError):
    """Credential could not be decrypted, or the external API rejected it."""

    code = "CREDENTIAL_ERROR"


class APIError(WorkflowEngineError):
    """Failure reported by the external generation API."""

    code = "API_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message, code)
        self.status_code = status_code


class TransientAPIError(APIError):
    """Network failure, timeout, rate limit or 5xx. Retried per RetryPolicy."""

    code = "TRANSIENT_API_ERROR"


class PermanentAPIError(APIError):
    """Invalid request or content rejection. The item fails without retry."""

    code = "PERMANENT_API_ERROR"


class StorageError(WorkflowEngineError):
    """Result persistence failed after the external call already succeeded."""

    code = "STORAGE_ERROR"


class CancellationSkip(WorkflowEngineError):
    """Item deliberately not processed because its batch was cancelled."""

    code = "CANCELLED"

    def __init__(self, message: str = "Skipped: batch was cancelled"):
        super().__init__(message)


class BatchNotFoundError(WorkflowEngineError):
    """No batch exists with the requested id."""

    code = "BATCH_NOT_FOUND"


class InvalidStateTransitionError(WorkflowEngineError):
    """Requested transition is not allowed from the batch's current state."""

    code = "INVALID_STATE_TRANSITION"


def format_error(error: BaseException) -> str:
    """Render an error for BatchItem.last_error / BatchExecution.error_message."""
    code = getattr(error, "code", None) or type(error).__name__
    message = str(error) or type(error).__name__
    return f"[{code}] {message}"[:2000]

"""
Error taxonomy for the generation orchestrator.

Every error carries an ``error_code`` string. Per-unit failures copy the code
onto the failed unit and into the streamed ``error`` record, so callers can
tell a provider rejection from a timeout without parsing messages.
"""

from typing import Optional


class OrchestrationError(Exception):
    """Base class for all orchestration errors."""

    error_code = "ORCHESTRATION_ERROR"

    def __init__(self, message: str, error_code: Optional[str] = None):
        self.message = message
        if error_code:
            self.error_code = error_code
        super().__init__(message)


class JobValidationError(OrchestrationError):
    """Malformed or out-of-bound request. Raised before any work starts."""

    error_code = "VALIDATION_ERROR"


class JobNotFoundError(OrchestrationError):
    """Unknown job or unit identifier."""

    error_code = "NOT_FOUND"


class CredentialExhaustionError(OrchestrationError):
    """No eligible credential is available in the pool."""

    error_code = "CREDENTIALS_EXHAUSTED"


class ProviderSubmissionError(OrchestrationError):
    """The provider rejected (or never acknowledged) the initial request."""

    error_code = "SUBMISSION_FAILED"


class ProviderGenerationError(OrchestrationError):
    """The provider accepted the request and later reported a failure."""

    error_code = "GENERATION_FAILED"


class PollTimeoutError(OrchestrationError):
    """No terminal status was observed within the bounded poll count."""

    error_code = "TIMEOUT"


class StatusCheckError(OrchestrationError):
    """A single status check failed. Transient; the poller decides when to give up."""

    error_code = "STATUS_CHECK_FAILED"


class MergeError(OrchestrationError):
    """Merge precondition failed, or concatenation failed."""

    error_code = "MERGE_FAILED"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        merge_id: Optional[str] = None,
    ):
        self.merge_id = merge_id
        super().__init__(message, error_code)


class HistorySyncError(OrchestrationError):
    """Best-effort history mirror read or write failed."""

    error_code = "HISTORY_SYNC_FAILED"


class ConfigurationError(OrchestrationError):
    """Settings from the environment cannot be used. Raised at startup."""

    error_code = "INVALID_CONFIG"

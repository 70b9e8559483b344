"""Shared exceptions for the generation pipeline.

Pipeline errors carry a ``retriable`` flag that the stage queues consult
before scheduling another attempt. Terminal classes (validation, render
timeout, provider-reported render failure) skip the remaining attempts and go
straight to the stage's failure path.

Error Taxonomy:
    ValidationError:        bad submission parameters (terminal)
    TransientProviderError: network/rate-limit/5xx from the provider (retried)
    RenderTimeoutError:     polling budget exhausted (terminal)
    RenderFailedError:      provider reported failure (terminal, verbatim message)
    StorageError:           artifact store read/write failure (retried)
    ScoringError:           scorer failure (never blocks completion)
"""

from typing import Any


class PipelineError(Exception):
    """Base class for errors raised by pipeline stages.

    Attributes:
        retriable: Whether the stage queue may schedule another attempt.
    """

    retriable: bool = True

    def __init__(self, message: str, **context: Any) -> None:
        self.message = message
        self.context = context
        super().__init__(message)


class ValidationError(PipelineError):
    """Raised when generation parameters fail validation.

    Attributes:
        field: Name of the offending parameter, if known.
    """

    retriable = False

    def __init__(self, message: str, field: str | None = None) -> None:
        self.field = field
        super().__init__(message, field=field)


class TransientProviderError(PipelineError):
    """Raised for recoverable provider failures (timeouts, 429, 5xx)."""

    retriable = True


class RenderTimeoutError(PipelineError):
    """Raised when the provider does not finish within the polling budget."""

    retriable = False

    def __init__(self, operation_handle: str, iterations: int) -> None:
        self.operation_handle = operation_handle
        self.iterations = iterations
        super().__init__(
            f"Video generation timed out after {iterations} polls",
            operation_handle=operation_handle,
        )


class RenderFailedError(PipelineError):
    """Raised when the provider reports a failed render.

    The provider's message is kept verbatim so it can be shown to users.
    """

    retriable = False


class StorageError(PipelineError):
    """Raised when the artifact store cannot read or write an object."""

    retriable = True


class ScoringError(PipelineError):
    """Raised when the quality scorer fails."""

    retriable = True


class ConfigurationError(Exception):
    """Raised when required configuration is missing.

    This error indicates a configuration problem that prevents the
    pipeline from starting (e.g., GCS selected without a bucket name, or
    no Gemini API key with the Veo provider enabled).
    """

    pass


class AuthenticationError(Exception):
    """Raised when a stream or API token cannot be verified."""

    pass


class JobNotFoundError(LookupError):
    """Raised when a job or video id does not exist in the caller's organization."""

    def __init__(self, message: str, job_id: str | None = None) -> None:
        self.job_id = job_id
        super().__init__(message)


class JobStateConflictError(Exception):
    """Raised when a control operation is not allowed in the job's current status.

    Example:
        >>> await job_service.cancel(job_id, org_id)  # job already READY
        JobStateConflictError: Job cannot be cancelled in status ready
    """

    def __init__(self, message: str, status: "JobStatus | None" = None) -> None:
        self.status = status
        super().__init__(message)


class InvalidStateTransitionError(Exception):
    """Raised when attempting an invalid status transition on a job or video.

    Only transitions defined in ``GenerationJob.VALID_TRANSITIONS`` (and the
    matching video table) are allowed.

    Attributes:
        message: Human-readable error message describing the invalid transition.
        from_status: The current status before the attempted transition.
        to_status: The status that was attempted but is not valid.

    Example:
        >>> job.status = JobStatus.QUEUED
        >>> job.status = JobStatus.READY  # Invalid - skips the whole pipeline
        InvalidStateTransitionError: Invalid transition: queued → ready
    """

    def __init__(self, message: str, from_status: "JobStatus", to_status: "JobStatus"):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(message)

    def __str__(self) -> str:
        base_message = super().__str__()
        return f"{base_message} (from={self.from_status.value}, to={self.to_status.value})"


def is_retriable(error: BaseException) -> bool:
    """Classify an exception for stage retry purposes.

    Pipeline errors declare their own policy. Programming and lookup errors
    (ValueError, LookupError, FileNotFoundError) and state-machine violations
    are permanent. Anything else is treated as transient.

    Args:
        error: Exception raised by a stage handler.

    Returns:
        True if the stage may be attempted again.
    """
    if isinstance(error, PipelineError):
        return error.retriable
    if isinstance(error, (ValueError, LookupError, FileNotFoundError, InvalidStateTransitionError)):
        return False
    return True

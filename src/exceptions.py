"""
Error taxonomy for the scan and unsubscribe pipeline.

Every error carries an optional context dict that is rendered into the
message, so the text stored on ScanRun / UnsubscribeAttempt / Job rows
is self-describing. The ``retryable`` flag is what the job queue uses to
decide between scheduling another attempt and failing the job outright.
"""

from typing import Dict, Any, Optional


class PipelineError(Exception):
    """Base class for errors raised by the pipeline."""

    retryable = True

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context = context

    def __str__(self) -> str:
        base_message = super().__str__()
        if self.context:
            context_info = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{base_message} (context: {context_info})"
        return base_message


class TransientIOFailure(PipelineError):
    """A network or store call failed; another attempt may succeed."""


class UnsubscribeHttpError(PipelineError):
    """An unsubscribe endpoint answered with a non-2xx status."""

    def __init__(self, message: str, status_code: int, url: Optional[str] = None):
        super().__init__(message, {'status_code': status_code})
        self.status_code = status_code
        self.url = url


class Unsupported(PipelineError):
    """The subscription exposes no usable unsubscribe method."""

    retryable = False


class NotFound(PipelineError):
    """Unknown subscription or user."""

    retryable = False


class CredentialError(PipelineError):
    """The user's mailbox authorization was rejected or could not be refreshed."""

    retryable = False


class ScanFailure(PipelineError):
    """Unrecoverable error during a scan run; wraps the original cause."""

    def __init__(self, message: str, messages_scanned: int = 0,
                 cause: Optional[BaseException] = None,
                 context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context)
        self.messages_scanned = messages_scanned
        self.cause = cause


def is_retryable(error: BaseException) -> bool:
    """Errors outside the taxonomy are treated as retryable."""
    return getattr(error, 'retryable', True)

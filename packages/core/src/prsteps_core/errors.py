"""Typed pipeline failures.

Every stage failure is a PipelineError. The dispatcher only looks at two
things: ``retryable`` decides between backoff and terminal failure, and
``reason`` (the class name) is what the UI shows as the error code.
"""

from __future__ import annotations


class PipelineError(Exception):
    retryable: bool = False

    def __init__(self, message: str = "", *, retryable: bool | None = None):
        super().__init__(message or self.__class__.__name__)
        if retryable is not None:
            self.retryable = retryable

    @property
    def reason(self) -> str:
        return self.__class__.__name__


class QueueUnavailable(PipelineError):
    """The backing queue could not accept work."""

    retryable = True


class UpstreamFetchError(PipelineError):
    """The repository host failed. Retryable unless the host answered with a non-auth 4xx."""

    retryable = True

    def __init__(self, message: str = "", *, status: int | None = None, retryable: bool | None = None):
        if retryable is None:
            retryable = is_retryable_status(status)
        super().__init__(message, retryable=retryable)
        self.status = status


class EmptyDiffError(PipelineError):
    """The pull request has zero changed lines: nothing to review."""


class ClusteringError(PipelineError):
    """Hunk input was malformed."""


class IndexUnavailableError(PipelineError):
    """The repository context index could not be built."""

    retryable = True


class RepoTooLargeError(PipelineError):
    """The repository tree could not be listed at all."""


class ModelUnavailableError(PipelineError):
    """The reasoning model timed out or could not be reached."""

    retryable = True


class SessionNotFound(PipelineError):
    pass


class StepNotFound(PipelineError):
    pass


class RegenerationForbidden(PipelineError):
    """Only the creator of a session may regenerate its outputs."""


def is_retryable_status(status: int | None) -> bool:
    """Map a host HTTP status to retryability.

    No status (network error, timeout), auth failures (401/403, from expired
    installation tokens or secondary rate limits) and 5xx are transient.
    Every other 4xx means the request itself is wrong and will not succeed
    on retry.
    """
    if status is None:
        return True
    if status in (401, 403, 429):
        return True
    if 400 <= status < 500:
        return False
    return True

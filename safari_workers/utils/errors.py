"""
Exception types shared by the pipeline workers.

Per-item problems (TransientExternalError, RetriesExhaustedError,
ItemFailure) are caught by the item processor and recorded on the work
item. JobStateError and TriggerFailure surface to operators through the
job-control endpoint. StoreConnectivityError is the only error that is
allowed to escape a batch.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for all pipeline worker errors"""


class TransientExternalError(PipelineError):
    """Retryable failure talking to an external service (timeouts, dropped connections)"""


class RateLimitedError(TransientExternalError):
    """HTTP 429 from a rate-limited API"""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ApiResponseError(PipelineError):
    """Non-2xx response other than 429"""

    def __init__(self, status: int, body: str = ''):
        super().__init__(f"API error {status}: {body[:500]}")
        self.status = status
        self.body = body


class RetriesExhaustedError(PipelineError):
    """All retry attempts for an outbound call failed"""

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None):
        detail = f": {last_error}" if last_error else ''
        super().__init__(f"Max retries exceeded after {attempts} attempts{detail}")
        self.attempts = attempts
        self.last_error = last_error


class ItemFailure(PipelineError):
    """Terminal problem with a single work item (bad data, unparseable response)"""


class StoreConnectivityError(PipelineError):
    """The job store is unreachable or returned a connection-level error"""


class JobNotFoundError(PipelineError):
    """Requested job does not exist"""


class JobStateError(PipelineError):
    """
    Operator action requested from an incompatible job status.

    `reason` is a stable machine-readable code: invalid-state,
    nothing-to-retry, legacy-job, already-running.
    """

    def __init__(self, message: str, reason: str = 'invalid-state'):
        super().__init__(message)
        self.reason = reason


class TriggerFailure(PipelineError):
    """The execution trigger could not start the next run"""

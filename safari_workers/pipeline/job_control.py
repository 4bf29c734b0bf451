"""
Operator job control: cancel, retry, retry-failed

State machine:
    cancel        pending|processing -> failed
    retry         failed|completed   -> pending  (new version, full rerun)
    retry-failed  failed|completed   -> processing (failed items only)

Every job write is conditional on the status that was validated, so a job
that moves underneath a request is rejected instead of overwritten.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ..config.pipeline_phases import RETRY_FAILED_LABEL, RETRY_QUEUED_LABEL
from ..utils.errors import JobStateError, StoreConnectivityError, TriggerFailure
from ..utils.models import ItemStatus, Job, JobStatus

logger = logging.getLogger(__name__)

ACTIONS = ('cancel', 'retry', 'retry-failed')
CANCELLED_MESSAGE = "Cancelled by user"
QUEUED_LABEL = "Queued"


@dataclass
class ControlResult:
    success: bool
    message: Optional[str] = None
    job_id: Optional[str] = None
    error: Optional[str] = None
    reason: Optional[str] = None
    retry_count: Optional[int] = None

    @classmethod
    def failure(cls, error: str, reason: str, job_id: Optional[str] = None) -> 'ControlResult':
        return cls(success=False, error=error, reason=reason, job_id=job_id)

    def to_dict(self) -> Dict[str, Any]:
        if not self.success:
            return {"success": False, "error": self.error, "reason": self.reason}
        data = {"success": True, "message": self.message, "jobId": self.job_id}
        if self.retry_count is not None:
            data["retryCount"] = self.retry_count
        return data


def _iso(value) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat() if hasattr(value, 'isoformat') else str(value)


class JobController:
    """Validates and applies operator actions, then kicks off the next run"""

    def __init__(self, store, trigger):
        self.store = store
        self.trigger = trigger

    def execute(self, job_id: str, action: str) -> ControlResult:
        """Dispatch an action; every outcome is reported as a ControlResult"""
        if action not in ACTIONS:
            return ControlResult.failure(
                "Invalid action. Must be: cancel, retry, or retry-failed", 'invalid-action'
            )

        job = self.store.find_job(job_id)
        if job is None:
            return ControlResult.failure("Job not found", 'not-found', job_id)

        handler = {
            'cancel': self.cancel,
            'retry': self.retry,
            'retry-failed': self.retry_failed,
        }[action]

        try:
            return handler(job)
        except JobStateError as e:
            logger.info(f"Rejected {action} for job {job_id}: {e}")
            return ControlResult.failure(str(e), e.reason, job_id)
        except TriggerFailure as e:
            return ControlResult.failure(str(e), 'trigger-failed', job_id)

    def _require_status(self, job: Job, allowed: tuple, action: str) -> None:
        if job.status not in allowed:
            raise JobStateError(f"Cannot {action} job with status: {job.status}")

    def _conditional_update(self, job: Job, patch: Dict[str, Any]) -> None:
        if not self.store.update_job(job.id, patch, expected_status=job.status):
            raise JobStateError(f"Job {job.id} changed status while the request was processed")

    # =========================================================================
    # ACTIONS
    # =========================================================================

    def cancel(self, job: Job) -> ControlResult:
        self._require_status(job, (JobStatus.pending.value, JobStatus.processing.value), 'cancel')

        self._conditional_update(job, {
            'status': JobStatus.failed.value,
            'error_message': CANCELLED_MESSAGE,
            'error_phase': job.current_phase,
        })
        logger.info(f"Job {job.id} cancelled during '{job.current_phase}'")

        self._notify('warning', f"Job cancelled: {job.source_url or job.id}", job)
        return ControlResult(success=True, message="Job cancelled", job_id=job.id)

    def retry(self, job: Job) -> ControlResult:
        """Full rerun as a new version; the old version is kept in previous_versions"""
        self._require_status(job, (JobStatus.failed.value, JobStatus.completed.value), 'retry')

        previous_versions = list(job.previous_versions) + [{
            "version": job.version,
            "completedAt": _iso(job.completed_at),
            "status": job.status,
        }]

        self._conditional_update(job, {
            'status': JobStatus.pending.value,
            'current_phase': RETRY_QUEUED_LABEL,
            'version': job.version + 1,
            'previous_versions': previous_versions,
            'processed': 0,
            'skipped': 0,
            'failed': 0,
            'error_message': None,
            'error_phase': None,
            'completed_at': None,
            'started_at': datetime.now(timezone.utc),
        })
        logger.info(f"Job {job.id} queued for retry as version {job.version + 1}")

        self._start(job, JobStatus.pending, "Failed to trigger retry",
                    retry=True, mode='create', source_url=job.source_url, subject_id=job.subject_id)
        return ControlResult(success=True, message="Job retry started", job_id=job.id)

    def retry_failed(self, job: Job) -> ControlResult:
        """Reset only failed work items and rerun the media stage for them"""
        if job.status not in (JobStatus.completed.value, JobStatus.failed.value):
            raise JobStateError("Can only retry failed media on completed or failed jobs")

        counts = self.store.count_by_status(job.id)
        if sum(counts.values()) == 0 and job.image_statuses:
            raise JobStateError(
                "Job predates per-item tracking; use a full retry instead", reason='legacy-job'
            )

        failed_count = counts.get(ItemStatus.failed.value, 0)
        if failed_count == 0:
            raise JobStateError("No failed media to retry", reason='nothing-to-retry')

        self._conditional_update(job, {
            'status': JobStatus.processing.value,
            'current_phase': RETRY_FAILED_LABEL,
            'failed': 0,
            'error_message': None,
            'error_phase': None,
            'completed_at': None,
        })
        try:
            reset = self.store.reset_failed_work_items(job.id)
        except StoreConnectivityError:
            self._restore(job)
            raise
        logger.info(f"Job {job.id}: reset {reset} failed items to pending")

        self._start(job, JobStatus.processing, "Failed to trigger media retry",
                    scope='media', subject_id=job.subject_id)
        return ControlResult(
            success=True,
            message=f"Retrying {reset} failed items",
            job_id=job.id,
            retry_count=reset,
        )

    def queue_job(self, source_url: str, subject_id: Optional[str] = None) -> ControlResult:
        """Create and start a job, unless one is already running for the source"""
        if not source_url:
            return ControlResult.failure("Missing source URL", 'invalid-action')

        active = self.store.find_active_job_for_source(source_url)
        if active is not None:
            return ControlResult.failure(
                f"Job {active.id} is already {active.status} for this source", 'already-running', active.id
            )

        job = self.store.create_job(source_url, subject_id, current_phase=QUEUED_LABEL)
        logger.info(f"Created job {job.id} for {source_url}")

        try:
            self._start(job, JobStatus.pending, "Failed to start job",
                        mode='create', source_url=source_url, subject_id=subject_id)
        except TriggerFailure as e:
            return ControlResult.failure(str(e), 'trigger-failed', job.id)
        return ControlResult(success=True, message="Job queued", job_id=job.id)

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _start(self, job: Job, expected: JobStatus, failure_message: str, **context: Any) -> None:
        """
        Kick off the next run. On failure the job is rolled back to failed
        with the diagnostic and TriggerFailure is re-raised.
        """
        try:
            self.trigger.start_execution(job.id, **context)
        except TriggerFailure as e:
            logger.error(f"{failure_message} for job {job.id}: {e}")
            self.store.update_job(job.id, {
                'status': JobStatus.failed.value,
                'error_message': f"{failure_message}: {e}",
                'error_phase': 'job-control',
            }, expected_status=expected.value)
            raise TriggerFailure(failure_message) from e

    def _restore(self, job: Job) -> None:
        """Put back the fields retry_failed changed, if nothing else touched the job since"""
        try:
            self.store.update_job(job.id, {
                'status': job.status,
                'current_phase': job.current_phase,
                'failed': job.failed,
                'error_message': job.error_message,
                'error_phase': job.error_phase,
                'completed_at': job.completed_at,
            }, expected_status=JobStatus.processing.value)
        except StoreConnectivityError as e:
            logger.error(f"Could not restore job {job.id} after failed item reset: {e}")

    def _notify(self, type: str, message: str, job: Job) -> None:
        try:
            self.store.create_notification(type, message, job_id=job.id, subject_id=job.subject_id)
        except Exception as e:
            logger.error(f"Failed to create notification for job {job.id}: {e}")

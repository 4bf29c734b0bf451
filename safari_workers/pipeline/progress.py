"""Job counters derived from the work item table."""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from ..config.pipeline_phases import PIPELINE_PHASES, is_past_stage, is_terminal_stage, next_phase_label
from ..utils.models import ACTIVE_JOB_STATUSES, ItemStatus, JobStatus

logger = logging.getLogger(__name__)


class ProgressAggregator:
    """
    Recomputes processed/skipped/failed/pending/total for a job.

    Counters are always recounted from image_statuses, never incremented, so
    a repeated or concurrent recompute converges on the same numbers.
    """

    def __init__(self, store, stage: str = 'media', phases: Optional[List[dict]] = None,
                 notify: bool = True):
        self.store = store
        self.stage = stage
        self.phases = phases or PIPELINE_PHASES
        self.notify = notify

    def counts(self, job_id: str) -> Dict[str, int]:
        by_status = self.store.count_by_status(job_id)
        counters = {
            'processed': by_status.get(ItemStatus.completed.value, 0),
            'skipped': by_status.get(ItemStatus.skipped.value, 0),
            'failed': by_status.get(ItemStatus.failed.value, 0),
            # In-flight items have not resolved yet
            'pending': by_status.get(ItemStatus.pending.value, 0) + by_status.get(ItemStatus.processing.value, 0),
        }
        counters['total'] = sum(counters.values())
        return counters

    def recompute(self, job_id: str) -> Dict[str, int]:
        """
        Persist fresh counters and advance the phase once nothing is pending.

        The returned counters carry `advanced`: True only for the call that
        actually moved the job past this stage.
        """
        counters = self.counts(job_id)
        self.store.update_job(job_id, {
            'total_items': counters['total'],
            'processed': counters['processed'],
            'skipped': counters['skipped'],
            'failed': counters['failed'],
        })
        logger.info(f"Job {job_id} progress: {counters}")

        counters['advanced'] = counters['pending'] == 0 and self.advance(job_id, counters)
        return counters

    def advance(self, job_id: str, counters: Dict[str, int]) -> bool:
        """
        Move the job past this stage. Only an active (pending or processing)
        job is advanced; a cancelled job keeps its failure state. A job whose
        phase is already past this stage is left alone, so a late or repeated
        batch never moves the phase backwards. Returns False when there was
        nothing to do.
        """
        job = self.store.find_job(job_id)
        if job is None or job.status not in ACTIVE_JOB_STATUSES:
            return False

        if is_past_stage(job.current_phase, self.stage, self.phases):
            return False

        label = next_phase_label(self.stage, self.phases)

        patch = {'current_phase': label}
        if is_terminal_stage(self.stage, self.phases):
            patch['status'] = JobStatus.completed.value
            patch['completed_at'] = datetime.now(timezone.utc)

        if not self.store.update_job(job_id, patch, expected_status=job.status):
            logger.warning(f"Job {job_id} changed status before phase advance; skipping")
            return False

        logger.info(f"Job {job_id} advanced to '{label}'")
        if self.notify and self.stage == 'media':
            self._notify_media_done(job, counters)
        return True

    def _notify_media_done(self, job, counters: Dict[str, int]) -> None:
        message = (
            f"{counters['processed']} images processed, {counters['skipped']} reused, "
            f"{counters['failed']} failed"
        )
        try:
            self.store.create_notification(
                'warning' if counters['failed'] else 'success',
                message,
                job_id=job.id,
                subject_id=job.subject_id,
            )
        except Exception as e:
            logger.error(f"Failed to create notification for job {job.id}: {e}")

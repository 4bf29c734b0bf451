"""
Media batch processor

One invocation processes at most `batch_size` pending work items for a job
and returns how many are still unresolved. The caller (RQ driver or a manual
loop) keeps invoking it until nothing remains. Every step is safe to repeat:
items already resolved are never selected again, counters are recounted,
and the phase advance is a no-op once done.

The job store client is synchronous (psycopg2); its calls run in a worker
thread so they never block the event loop.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import List, Optional

from ..config import settings
from ..config.pipeline_phases import PIPELINE_PHASES, phase_label
from ..utils.errors import JobNotFoundError
from ..utils.models import BatchResult, ItemStatus, JobStatus
from .item_processor import ItemProcessor
from .limiter import ConcurrencyLimiter
from .progress import ProgressAggregator

logger = logging.getLogger(__name__)


class BatchProcessor:

    def __init__(
        self,
        store,
        item_processor: ItemProcessor,
        aggregator: Optional[ProgressAggregator] = None,
        batch_size: int = settings.BATCH_SIZE,
        concurrency: int = settings.CONCURRENT,
        stage: str = 'media',
        phases: Optional[List[dict]] = None,
        stale_after_seconds: int = settings.STALE_PROCESSING_SECONDS,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.store = store
        self.item_processor = item_processor
        self.phases = phases or PIPELINE_PHASES
        self.stage = stage
        self.aggregator = aggregator or ProgressAggregator(store, stage=stage, phases=self.phases)
        self.limiter = ConcurrencyLimiter(concurrency)
        self.batch_size = batch_size
        self.stale_after_seconds = stale_after_seconds

    async def _store(self, method, *args, **kwargs):
        return await asyncio.to_thread(method, *args, **kwargs)

    async def process_batch(self, job_id: str, batch_index: int = 0) -> BatchResult:
        """
        Process the next batch of pending items for a job.

        Returns:
            BatchResult with the unresolved count (pending plus items still
            processing in another invocation). A job that is no longer
            pending/processing (cancelled) returns aborted=True and
            remaining=0 without touching anything.

        Raises:
            JobNotFoundError: no such job
            StoreConnectivityError: the job store is unreachable
        """
        job = await self._store(self.store.find_job, job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")

        if not job.is_active:
            logger.info(f"Job {job_id} is {job.status}; aborting batch {batch_index}")
            return BatchResult(remaining=0, aborted=True)

        released = await self._store(self.store.release_stale_work_items, job_id, self.stale_after_seconds)
        if released:
            logger.warning(f"Released {released} stale processing items for job {job_id}")

        if batch_index == 0:
            total = sum((await self._store(self.store.count_by_status, job_id)).values())
            await self._store(self.store.update_job, job_id, {'total_items': total})
            logger.info(f"Job {job_id}: {total} work items")

        items = await self._store(self.store.find_pending_work_items, job_id, self.batch_size)
        if not items:
            counters = await self._store(self.aggregator.recompute, job_id)
            logger.info(f"Job {job_id} batch {batch_index}: nothing pending, "
                        f"{counters['pending']} still in flight")
            return BatchResult(remaining=counters['pending'], advanced=counters['advanced'])

        if job.status == JobStatus.pending.value:
            started = await self._store(self.store.update_job, job_id, {
                'status': JobStatus.processing.value,
                'current_phase': phase_label(self.stage, self.phases),
                'started_at': datetime.now(timezone.utc),
            }, expected_status=JobStatus.pending.value)
            if not started:
                job = await self._store(self.store.find_job, job_id)
                if job is None or not job.is_active:
                    logger.info(f"Job {job_id} left the active states; aborting batch {batch_index}")
                    return BatchResult(remaining=0, aborted=True)

        logger.info(f"Job {job_id} batch {batch_index}: processing {len(items)} items")
        results = await self.limiter.run_batch(items, self.item_processor.process)

        counters = await self._store(self.aggregator.recompute, job_id)
        succeeded = sum(1 for r in results if r.succeeded)
        failed = sum(1 for r in results if r.status == ItemStatus.failed.value)

        logger.info(f"Job {job_id} batch {batch_index}: {succeeded} succeeded, {failed} failed, "
                    f"{counters['pending']} remaining")
        return BatchResult(
            remaining=counters['pending'],
            succeeded=succeeded,
            failed=failed,
            advanced=counters['advanced'],
            results=results,
        )

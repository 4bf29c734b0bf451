"""
Execution trigger: starts the next scheduler run by enqueuing RQ jobs.

Functions are enqueued by dotted path so the orchestrator (scrape stage)
can live in a different worker deployment.
"""

import logging
from datetime import timedelta
from typing import Any, Optional

from redis import Redis
from rq import Queue

from ..config import settings
from .errors import TriggerFailure

logger = logging.getLogger(__name__)


def get_redis_connection() -> Redis:
    """Get Redis connection from URL"""
    return Redis.from_url(settings.REDIS_URL)


class ExecutionTrigger:
    """Fire-and-forget kickoff of scheduler runs"""

    def __init__(self, connection: Optional[Redis] = None):
        self._connection = connection

    @property
    def connection(self) -> Redis:
        if self._connection is None:
            self._connection = get_redis_connection()
        return self._connection

    def enqueue(self, func: str, queue_name: str = settings.MEDIA_QUEUE,
                delay_seconds: Optional[int] = None, **kwargs: Any) -> str:
        """
        Enqueue func by dotted path. With delay_seconds the job is scheduled
        instead; the worker must run with the RQ scheduler enabled.
        """
        try:
            queue = Queue(queue_name, connection=self.connection)
            if delay_seconds:
                job = queue.enqueue_in(timedelta(seconds=delay_seconds), func,
                                       job_timeout=settings.JOB_TIMEOUT, kwargs=kwargs)
            else:
                job = queue.enqueue(func, job_timeout=settings.JOB_TIMEOUT, kwargs=kwargs)
        except Exception as e:
            logger.error(f"Failed to enqueue {func} on {queue_name}: {e}")
            raise TriggerFailure(f"Failed to enqueue {func}: {e}") from e

        logger.info(f"Enqueued {func} on {queue_name} as {job.id}")
        return job.id

    def start_execution(self, job_id: str, scope: Optional[str] = None, **context: Any) -> str:
        """
        Start a run for a job.

        scope='media' re-enters the media batch loop at batch 0 for the job
        (used after resetting failed items). Anything else is a full restart
        through the orchestrator.

        Raises:
            TriggerFailure: the run could not be enqueued
        """
        if scope == 'media':
            return self.enqueue(
                settings.MEDIA_BATCH_FUNC,
                job_id=job_id,
                subject_id=context.get('subject_id'),
                batch_index=0,
            )
        return self.enqueue(settings.ORCHESTRATOR_FUNC, queue_name=settings.CONTROL_QUEUE,
                            job_id=job_id, **context)

    def enqueue_next_batch(self, job_id: str, subject_id: Optional[str], batch_index: int,
                           delay_seconds: Optional[int] = None) -> str:
        return self.enqueue(
            settings.MEDIA_BATCH_FUNC,
            delay_seconds=delay_seconds,
            job_id=job_id,
            subject_id=subject_id,
            batch_index=batch_index,
        )

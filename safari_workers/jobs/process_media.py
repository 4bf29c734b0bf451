"""
Phase 2: Media Processing Job

Processes one batch of an itinerary job's pending media per invocation:
- Images: download from the source CDN, label with OpenRouter vision,
  rehost on Cloudinary
- Videos: HLS -> MP4 via ffmpeg, rehost on Cloudinary
- Media already in the library (same dedup key) is reused, not reprocessed

Drivers:
- run_media_batch: RQ job that re-enqueues itself until nothing is pending,
  then enqueues NEXT_STAGE_FUNC once the job moved past the media phase
- drive_until_done: same loop in-process, for manual runs

Usage:
    python -m safari_workers.jobs.process_media <job_id> [subject_id]
"""

import asyncio
import json
import sys
from datetime import datetime
from typing import Any, Dict, Optional

import aiohttp

from ..config import settings
from ..pipeline import BatchProcessor, DedupIndex, ItemProcessor, ProgressAggregator
from ..utils.db import get_db
from ..utils.errors import StoreConnectivityError
from ..utils.execution import ExecutionTrigger
from ..utils.http_client import RetryingApiClient
from ..utils.media import ImageHandler, MediaStorage, VideoConverter, VideoHandler
from ..utils.models import JobStatus
from ..utils.openrouter import ImageLabeler, OpenRouterClient

ERROR_PHASE = "media-processor"


def _log(msg: str, data: Any = None):
    """Logging with timestamp and optional data dump"""
    timestamp = datetime.utcnow().strftime('%H:%M:%S.%f')[:-3]
    print(f"[Phase 2][{timestamp}] {msg}")
    if data is not None:
        if isinstance(data, (dict, list)):
            print(f"[Phase 2][{timestamp}]   └─ {json.dumps(data, indent=2, default=str)[:2000]}")
        else:
            print(f"[Phase 2][{timestamp}]   └─ {str(data)[:500]}")


def build_handlers(session: aiohttp.ClientSession) -> Dict[str, Any]:
    """Media handlers keyed by media_type, sharing one HTTP session"""
    api = RetryingApiClient(
        session,
        max_retries=settings.MAX_RETRIES,
        base_delay_ms=settings.BASE_DELAY_MS,
        timeout_seconds=settings.API_TIMEOUT_SECONDS,
    )
    storage = MediaStorage()
    labeler = ImageLabeler(OpenRouterClient(api))
    return {
        'image': ImageHandler(api, labeler, storage),
        'video': VideoHandler(VideoConverter(), storage),
    }


def build_batch_processor(store, handlers: Dict[str, Any], subject_id: Optional[str]) -> BatchProcessor:
    item_processor = ItemProcessor(store, DedupIndex(store), handlers, subject_id=subject_id)
    return BatchProcessor(
        store,
        item_processor,
        aggregator=ProgressAggregator(store, stage='media'),
        batch_size=settings.BATCH_SIZE,
        concurrency=settings.CONCURRENT,
        stage='media',
        stale_after_seconds=settings.STALE_PROCESSING_SECONDS,
    )


async def _run_batch(store, job_id: str, subject_id: Optional[str], batch_index: int, handlers=None):
    if handlers is not None:
        return await build_batch_processor(store, handlers, subject_id).process_batch(job_id, batch_index)

    async with aiohttp.ClientSession() as session:
        processor = build_batch_processor(store, build_handlers(session), subject_id)
        return await processor.process_batch(job_id, batch_index)


def _mark_failed(store, job_id: str, error: Exception) -> None:
    try:
        store.update_job(job_id, {
            'status': JobStatus.failed.value,
            'error_message': str(error)[:1000],
            'error_phase': ERROR_PHASE,
        })
    except Exception as e:
        _log(f"Could not mark job {job_id} failed: {e}")


def process_media_batch(job_id: str, subject_id: Optional[str] = None, batch_index: int = 0,
                        store=None, handlers: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Process one batch of media for a job.

    Args:
        job_id: Itinerary job ID
        subject_id: Itinerary the media belongs to (recorded in media.used_in)
        batch_index: 0 for the first batch of a run

    Returns:
        {jobId, subjectId, remaining, succeeded, failed, aborted, advanced}

    Raises:
        StoreConnectivityError: after marking the job failed, so RQ records it
    """
    store = store or get_db()
    _log(f"Job {job_id} batch {batch_index} started (subject: {subject_id})")

    try:
        result = asyncio.run(_run_batch(store, job_id, subject_id, batch_index, handlers))
    except StoreConnectivityError as e:
        _log(f"Job store unreachable for job {job_id}", str(e))
        _mark_failed(store, job_id, e)
        raise

    output = {
        "jobId": job_id,
        "subjectId": subject_id,
        "remaining": result.remaining,
        "succeeded": result.succeeded,
        "failed": result.failed,
        "aborted": result.aborted,
        "advanced": result.advanced,
    }
    _log(f"Job {job_id} batch {batch_index} finished", output)
    return output


def run_media_batch(job_id: str, subject_id: Optional[str] = None, batch_index: int = 0,
                    trigger: Optional[ExecutionTrigger] = None, **kwargs) -> Dict[str, Any]:
    """
    RQ entrypoint. Runs one batch, then enqueues the next batch while items
    remain, or the next pipeline stage once this batch advanced the phase.

    Items still processing in another invocation count as remaining. When
    nothing could be picked up, the next batch is scheduled after
    REQUEUE_DELAY_SECONDS so stale claims get released and re-run.
    """
    output = process_media_batch(job_id, subject_id, batch_index, **kwargs)
    trigger = trigger or ExecutionTrigger()

    if output["aborted"]:
        _log(f"Job {job_id} is no longer active; stopping")
        return output

    if output["remaining"] > 0:
        if output["succeeded"] + output["failed"] == 0:
            _log(f"Job {job_id}: {output['remaining']} items in flight elsewhere; "
                 f"checking again in {settings.REQUEUE_DELAY_SECONDS}s")
            trigger.enqueue_next_batch(job_id, subject_id, batch_index + 1,
                                       delay_seconds=settings.REQUEUE_DELAY_SECONDS)
            return output
        trigger.enqueue_next_batch(job_id, subject_id, batch_index + 1)
        return output

    if not output["advanced"]:
        # Another invocation (or an earlier run) already moved the job on
        _log(f"Job {job_id}: media phase already advanced elsewhere")
        return output

    if settings.NEXT_STAGE_FUNC:
        trigger.enqueue(settings.NEXT_STAGE_FUNC, queue_name=settings.MEDIA_QUEUE,
                        job_id=job_id, subject_id=subject_id)
        _log(f"Job {job_id}: media done, enqueued {settings.NEXT_STAGE_FUNC}")
    return output


def drive_until_done(job_id: str, subject_id: Optional[str] = None, max_batches: int = 1000,
                     **kwargs) -> Dict[str, Any]:
    """Call process_media_batch until nothing is pending (or no progress is made)"""
    totals = {"jobId": job_id, "subjectId": subject_id, "batches": 0, "succeeded": 0, "failed": 0,
              "remaining": 0}

    for batch_index in range(max_batches):
        output = process_media_batch(job_id, subject_id, batch_index, **kwargs)
        totals["batches"] += 1
        totals["succeeded"] += output["succeeded"]
        totals["failed"] += output["failed"]
        totals["remaining"] = output["remaining"]

        if output["aborted"] or output["remaining"] == 0:
            break
        if output["succeeded"] + output["failed"] == 0:
            _log(f"Job {job_id}: no progress in batch {batch_index}; stopping")
            break

    return totals


if __name__ == '__main__':
    if len(sys.argv) < 2:
        print("Usage: python -m safari_workers.jobs.process_media <job_id> [subject_id]")
        sys.exit(1)

    summary = drive_until_done(sys.argv[1], sys.argv[2] if len(sys.argv) > 2 else None)
    print(json.dumps(summary, indent=2))

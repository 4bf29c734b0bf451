"""Shared fixtures: in-memory job store, fake HTTP session, recording fakes."""
import asyncio
import copy
import itertools
import json
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from safari_workers.utils.errors import StoreConnectivityError, TriggerFailure
from safari_workers.utils.models import Artifact, ItemStatus, Job, WorkItem, ACTIVE_JOB_STATUSES


# ── Job store ────────────────────────────────────────────────────────


class FakeJobStore:
    """In-memory stand-in for DatabaseClient with the same method contract."""

    def __init__(self):
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.jobs: Dict[str, Job] = {}
        self.items: Dict[tuple, WorkItem] = {}
        self.artifacts: Dict[str, Artifact] = {}
        self.notifications: List[dict] = []
        self.unavailable = False
        self.failing_notifications = False

    def _check(self):
        if self.unavailable:
            raise StoreConnectivityError("connection refused")

    # helpers for arranging state

    def add_job(self, job_id: str = "job-1", **fields) -> Job:
        job = Job(id=job_id, **fields)
        self.jobs[job_id] = job
        return job

    def add_items(self, job_id: str, keys, status: str = ItemStatus.pending.value, **fields) -> List[WorkItem]:
        created = []
        for key in keys:
            item = WorkItem(job_id=job_id, source_key=key, status=status, **fields)
            if status in (ItemStatus.completed.value, ItemStatus.skipped.value) and item.artifact_id is None:
                item.artifact_id = f"existing-{key}"
            self.items[(job_id, key)] = item
            created.append(item)
        return created

    def add_artifact(self, dedup_key: str, used_in=None, **fields) -> Artifact:
        artifact = Artifact(id=f"media-{next(self._ids)}", dedup_key=dedup_key,
                            used_in=list(used_in or []), **fields)
        self.artifacts[dedup_key] = artifact
        return artifact

    def item(self, job_id: str, key: str) -> WorkItem:
        return self.items[(job_id, key)]

    def items_for(self, job_id: str) -> List[WorkItem]:
        return [i for (jid, _), i in self.items.items() if jid == job_id]

    # JobStore contract

    def find_job(self, job_id: str) -> Optional[Job]:
        self._check()
        with self._lock:
            job = self.jobs.get(str(job_id))
            return copy.deepcopy(job) if job else None

    def find_active_job_for_source(self, source_url: str) -> Optional[Job]:
        self._check()
        for job in self.jobs.values():
            if job.source_url == source_url and job.status in ACTIVE_JOB_STATUSES:
                return copy.deepcopy(job)
        return None

    def create_job(self, source_url: str, subject_id: Optional[str] = None,
                   current_phase: Optional[str] = None) -> Job:
        self._check()
        job = self.add_job(f"job-{next(self._ids)}", source_url=source_url,
                           subject_id=subject_id, current_phase=current_phase)
        return copy.deepcopy(job)

    def update_job(self, job_id: str, patch: Dict[str, Any], expected_status: Optional[str] = None) -> bool:
        self._check()
        with self._lock:
            job = self.jobs.get(str(job_id))
            if job is None:
                return False
            if expected_status is not None and job.status != expected_status:
                return False
            for key, value in patch.items():
                if not hasattr(job, key):
                    raise ValueError(f"Unknown column {key}")
                setattr(job, key, copy.deepcopy(value))
            job.updated_at = datetime.now(timezone.utc)
            return True

    def find_pending_work_items(self, job_id: str, limit: int) -> List[WorkItem]:
        self._check()
        with self._lock:
            pending = sorted(
                (i for i in self.items_for(job_id) if i.status == ItemStatus.pending.value),
                key=lambda i: i.source_key,
            )
            return [replace(i) for i in pending[:limit]]

    def claim_work_item(self, job_id: str, source_key: str) -> bool:
        self._check()
        with self._lock:
            item = self.items.get((job_id, source_key))
            if item is None or item.status != ItemStatus.pending.value:
                return False
            item.status = ItemStatus.processing.value
            item.started_at = datetime.now(timezone.utc)
            item.error = None
            return True

    def update_work_item(self, job_id: str, source_key: str, patch: Dict[str, Any]) -> bool:
        self._check()
        with self._lock:
            item = self.items.get((job_id, source_key))
            if item is None:
                return False
            for key, value in patch.items():
                setattr(item, key, value)
            return True

    def count_by_status(self, job_id: str) -> Dict[str, int]:
        self._check()
        counts = {s.value: 0 for s in ItemStatus}
        for item in self.items_for(job_id):
            counts[item.status] += 1
        return counts

    def reset_failed_work_items(self, job_id: str) -> int:
        self._check()
        reset = 0
        for item in self.items_for(job_id):
            if item.status == ItemStatus.failed.value:
                item.status = ItemStatus.pending.value
                item.error = None
                item.started_at = None
                item.completed_at = None
                reset += 1
        return reset

    def release_stale_work_items(self, job_id: str, older_than_seconds: int) -> int:
        self._check()
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=older_than_seconds)
        released = 0
        for item in self.items_for(job_id):
            if item.status == ItemStatus.processing.value and (item.started_at is None or item.started_at < cutoff):
                item.status = ItemStatus.pending.value
                item.started_at = None
                released += 1
        return released

    def find_artifact_by_dedup_key(self, dedup_key: str) -> Optional[Artifact]:
        self._check()
        with self._lock:
            artifact = self.artifacts.get(dedup_key)
            return copy.deepcopy(artifact) if artifact else None

    def insert_artifact(self, dedup_key: str, payload: Dict[str, Any]) -> Optional[Artifact]:
        self._check()
        with self._lock:
            if dedup_key in self.artifacts:
                return None
            artifact = Artifact(
                id=f"media-{next(self._ids)}",
                dedup_key=dedup_key,
                media_type=payload.get('media_type', 'image'),
                url=payload.get('url'),
                width=payload.get('width'),
                height=payload.get('height'),
                enrichment=dict(payload.get('enrichment') or {}),
                used_in=list(payload.get('used_in') or []),
            )
            self.artifacts[dedup_key] = artifact
            return copy.deepcopy(artifact)

    def add_artifact_usage(self, artifact_id: str, subject_id: str) -> bool:
        self._check()
        with self._lock:
            for artifact in self.artifacts.values():
                if artifact.id == artifact_id:
                    if subject_id in artifact.used_in:
                        return False
                    artifact.used_in.append(subject_id)
                    return True
            return False

    def create_notification(self, type: str, message: str, job_id: Optional[str] = None,
                            subject_id: Optional[str] = None) -> None:
        self._check()
        if self.failing_notifications:
            raise RuntimeError("notifications table missing")
        self.notifications.append({"type": type, "message": message, "job_id": job_id,
                                   "subject_id": subject_id})


@pytest.fixture
def store():
    return FakeJobStore()


# ── Media handlers ───────────────────────────────────────────────────


class FakeHandler:
    """Media handler that tracks how many calls run at once."""

    def __init__(self, media_type: str = 'image', fail_keys=(), delay: float = 0.01):
        self.media_type = media_type
        self.fail_keys = set(fail_keys)
        self.delay = delay
        self.calls: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def process(self, item, dedup_key):
        self.calls.append(item.source_key)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            if item.source_key in self.fail_keys:
                raise RuntimeError(f"download failed for {item.source_key}")
            return {
                "media_type": self.media_type,
                "url": f"https://res.cloudinary.test/{dedup_key}",
                "width": 1600,
                "height": 900,
                "enrichment": {"scene": "elephants at dusk"},
            }
        finally:
            self.in_flight -= 1


@pytest.fixture
def image_handler():
    return FakeHandler()


# ── Execution trigger ────────────────────────────────────────────────


class RecordingTrigger:

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.started: List[dict] = []
        self.enqueued: List[dict] = []

    def start_execution(self, job_id, scope=None, **context):
        if self.fail:
            raise TriggerFailure("redis down")
        self.started.append({"job_id": job_id, "scope": scope, **context})
        return "rq-1"

    def enqueue(self, func, queue_name='default', **kwargs):
        if self.fail:
            raise TriggerFailure("redis down")
        self.enqueued.append({"func": func, "queue": queue_name, **kwargs})
        return "rq-2"

    def enqueue_next_batch(self, job_id, subject_id, batch_index, delay_seconds=None):
        entry = {"job_id": job_id, "subject_id": subject_id, "batch_index": batch_index}
        if delay_seconds:
            entry["delay_seconds"] = delay_seconds
        return self.enqueue("next_batch", **entry)


@pytest.fixture
def trigger():
    return RecordingTrigger()


# ── HTTP ─────────────────────────────────────────────────────────────


class FakeResponse:

    def __init__(self, status: int = 200, body: Any = None, headers: Optional[dict] = None):
        self.status = status
        self.body = body
        self.headers = headers or {}

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def text(self):
        if isinstance(self.body, bytes):
            return self.body.decode()
        return self.body if isinstance(self.body, str) else json.dumps(self.body)

    async def read(self):
        if isinstance(self.body, bytes):
            return self.body
        return (await self.text()).encode()

    async def json(self, content_type=None):
        if isinstance(self.body, (dict, list)):
            return self.body
        return json.loads(await self.text())


class _Raising:

    def __init__(self, error: BaseException):
        self.error = error

    async def __aenter__(self):
        raise self.error

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    """Replays queued responses (or exceptions) in order."""

    def __init__(self, responses=()):
        self.responses = list(responses)
        self.requests: List[dict] = []

    def request(self, method, url, **kwargs):
        self.requests.append({"method": method, "url": url, **kwargs})
        outcome = self.responses.pop(0)
        if isinstance(outcome, BaseException):
            return _Raising(outcome)
        return outcome


class RecordingSleep:

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float):
        self.delays.append(seconds)

    @property
    def delays_ms(self) -> List[int]:
        return [round(d * 1000) for d in self.delays]


@pytest.fixture
def sleep():
    return RecordingSleep()

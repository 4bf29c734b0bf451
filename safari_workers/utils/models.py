"""
Record types for jobs, work items and media artifacts.

Rows come back from PostgreSQL as dicts (RealDictCursor); `from_row`
converts them into these dataclasses and ignores columns we don't use.
"""

import enum
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, Dict, List, Optional


class JobStatus(str, enum.Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class ItemStatus(str, enum.Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    skipped = "skipped"
    failed = "failed"


ACTIVE_JOB_STATUSES = (JobStatus.pending.value, JobStatus.processing.value)
RESOLVED_ITEM_STATUSES = (ItemStatus.completed.value, ItemStatus.skipped.value)


def _from_row(cls, row: Dict[str, Any]):
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in row.items() if k in names})


@dataclass
class Job:
    id: str
    status: str = JobStatus.pending.value
    current_phase: Optional[str] = None
    version: int = 1
    previous_versions: List[dict] = field(default_factory=list)
    total_items: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    error_message: Optional[str] = None
    error_phase: Optional[str] = None
    source_url: Optional[str] = None
    subject_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    # Legacy per-job image status array; read-only, superseded by image_statuses rows
    image_statuses: Optional[List[dict]] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'Job':
        job = _from_row(cls, row)
        job.id = str(job.id)
        job.previous_versions = job.previous_versions or []
        return job

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_JOB_STATUSES

    def progress_percent(self) -> int:
        if not self.total_items:
            return 0
        done = self.processed + self.skipped + self.failed
        return min(100, round(done / self.total_items * 100))


@dataclass
class WorkItem:
    job_id: str
    source_key: str
    status: str = ItemStatus.pending.value
    media_type: str = "image"
    artifact_id: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    # Scrape context
    property_name: Optional[str] = None
    country: Optional[str] = None
    segment_type: Optional[str] = None
    segment_title: Optional[str] = None
    day_index: Optional[int] = None
    video_context: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'WorkItem':
        return _from_row(cls, row)


@dataclass
class Artifact:
    id: str
    dedup_key: str
    media_type: str = "image"
    url: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    enrichment: Dict[str, Any] = field(default_factory=dict)
    used_in: List[str] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'Artifact':
        artifact = _from_row(cls, row)
        artifact.id = str(artifact.id)
        artifact.enrichment = artifact.enrichment or {}
        artifact.used_in = [str(s) for s in (artifact.used_in or [])]
        return artifact


CONTEXT_VERSION = 2


@dataclass
class ImageContext:
    """
    Ground-truth context from the scrape, passed to the labeling model.

    Every field is optional; the labeler only mentions what is known.
    """
    property_name: Optional[str] = None
    country: Optional[str] = None
    segment_type: Optional[str] = None
    segment_title: Optional[str] = None
    day_index: Optional[int] = None
    version: int = CONTEXT_VERSION

    @classmethod
    def from_work_item(cls, item: WorkItem) -> 'ImageContext':
        return cls(
            property_name=item.property_name,
            country=item.country,
            segment_type=item.segment_type,
            segment_title=item.segment_title,
            day_index=item.day_index,
        )


@dataclass
class ItemResult:
    source_key: str
    status: str
    artifact_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status in RESOLVED_ITEM_STATUSES


@dataclass
class BatchResult:
    remaining: int
    succeeded: int = 0
    failed: int = 0
    aborted: bool = False
    advanced: bool = False
    results: List[ItemResult] = field(default_factory=list)

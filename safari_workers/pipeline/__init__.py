"""
Batch processing and job control for the media pipeline.

DedupIndex -> ItemProcessor -> ConcurrencyLimiter -> BatchProcessor
ProgressAggregator recomputes job counters after every batch.
JobController handles operator actions (cancel / retry / retry-failed).
"""

from .dedup import DedupIndex
from .limiter import ConcurrencyLimiter
from .item_processor import ItemProcessor
from .progress import ProgressAggregator
from .batch_processor import BatchProcessor
from .job_control import JobController, ControlResult

__all__ = [
    'DedupIndex',
    'ConcurrencyLimiter',
    'ItemProcessor',
    'ProgressAggregator',
    'BatchProcessor',
    'JobController',
    'ControlResult',
]

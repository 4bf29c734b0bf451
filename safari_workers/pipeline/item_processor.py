"""
Single-item unit of work: dedup check, media handler, status write-back.

The job store client is synchronous (psycopg2), so store calls run in a
worker thread to keep the wave's handlers concurrent.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ..utils.errors import ItemFailure, StoreConnectivityError
from ..utils.models import ItemResult, ItemStatus, WorkItem
from .dedup import DedupIndex

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ItemProcessor:
    """
    Processes one WorkItem and records the outcome on it.

    handlers maps media_type ('image', 'video') to an object with
    `async process(item, dedup_key) -> payload`.
    """

    def __init__(self, store, dedup: DedupIndex, handlers: Dict[str, Any],
                 subject_id: Optional[str] = None):
        self.store = store
        self.dedup = dedup
        self.handlers = handlers
        self.subject_id = subject_id

    async def _update(self, item: WorkItem, patch: Dict[str, Any]) -> None:
        await asyncio.to_thread(self.store.update_work_item, item.job_id, item.source_key, patch)

    async def process(self, item: WorkItem) -> ItemResult:
        """
        Never raises for item-level problems; the failure is stored on the
        work item and returned as a failed ItemResult. StoreConnectivityError
        still propagates since the outcome could not be recorded.

        An item that is no longer pending when claimed belongs to another
        invocation; it is left alone and reported with status 'processing'.
        """
        try:
            claimed = await asyncio.to_thread(self.store.claim_work_item, item.job_id, item.source_key)
            if not claimed:
                logger.info(f"Item {item.source_key} already claimed by another run; skipping")
                return ItemResult(item.source_key, ItemStatus.processing.value)
            return await self._run(item)
        except StoreConnectivityError:
            raise
        except Exception as e:
            error = str(e) or e.__class__.__name__
            logger.error(f"Item {item.source_key} failed: {error}")
            await self._record_failure(item, error)
            return ItemResult(source_key=item.source_key, status=ItemStatus.failed.value, error=error)

    async def _run(self, item: WorkItem) -> ItemResult:
        dedup_key = self.dedup.key_for(item.source_key)

        existing = await asyncio.to_thread(self.dedup.lookup, dedup_key)
        if existing is not None:
            logger.info(f"Dedup hit for {item.source_key}: artifact {existing.id}")
            await asyncio.to_thread(self.dedup.link, existing, self.subject_id)
            await self._resolve(item, ItemStatus.skipped, existing.id)
            return ItemResult(item.source_key, ItemStatus.skipped.value, artifact_id=existing.id)

        handler = self.handlers.get(item.media_type)
        if handler is None:
            raise ItemFailure(f"No handler for media type '{item.media_type}'")

        payload = await handler.process(item, dedup_key)
        artifact, created = await asyncio.to_thread(
            self.dedup.create, dedup_key, {**payload, 'used_in': [self.subject_id] if self.subject_id else []}
        )

        if created:
            status = ItemStatus.completed
            logger.info(f"Created artifact {artifact.id} for {item.source_key}")
        else:
            # Another invocation created it while we were working
            status = ItemStatus.skipped
            await asyncio.to_thread(self.dedup.link, artifact, self.subject_id)

        await self._resolve(item, status, artifact.id)
        return ItemResult(item.source_key, status.value, artifact_id=artifact.id)

    async def _resolve(self, item: WorkItem, status: ItemStatus, artifact_id: str) -> None:
        await self._update(item, {
            'status': status.value,
            'artifact_id': artifact_id,
            'error': None,
            'completed_at': _now(),
        })

    async def _record_failure(self, item: WorkItem, error: str) -> None:
        try:
            await self._update(item, {
                'status': ItemStatus.failed.value,
                'artifact_id': None,
                'error': error[:1000],
                'completed_at': _now(),
            })
        except StoreConnectivityError:
            raise
        except Exception as e:
            logger.error(f"Could not record failure for {item.source_key}: {e}")

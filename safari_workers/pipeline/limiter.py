"""Bounded fan-out over a batch of work items."""

import asyncio
import logging
from typing import Awaitable, Callable, List, Sequence

from ..utils.errors import StoreConnectivityError
from ..utils.models import ItemResult, ItemStatus, WorkItem

logger = logging.getLogger(__name__)


class ConcurrencyLimiter:
    """
    Runs items in sequential waves of at most `concurrency` items.

    A wave waits for every item to settle before the next wave starts, so a
    slow item holds back its wave but never lets more than `concurrency`
    calls run at once.
    """

    def __init__(self, concurrency: int):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.concurrency = concurrency

    def waves(self, items: Sequence[WorkItem]) -> List[Sequence[WorkItem]]:
        return [items[i:i + self.concurrency] for i in range(0, len(items), self.concurrency)]

    async def run_batch(
        self,
        items: Sequence[WorkItem],
        worker: Callable[[WorkItem], Awaitable[ItemResult]],
    ) -> List[ItemResult]:
        """
        Returns one ItemResult per input item, in input order. A worker that
        raises is recorded as a failed result instead of aborting the wave.

        Raises:
            StoreConnectivityError: after the wave settles, if any item lost
                the job store (its outcome could not be recorded)
        """
        results: List[ItemResult] = []

        for wave_number, wave in enumerate(self.waves(items), start=1):
            logger.info(f"Wave {wave_number}: {len(wave)} items")
            settled = await asyncio.gather(*(worker(item) for item in wave), return_exceptions=True)
            store_error = None

            for item, outcome in zip(wave, settled):
                if isinstance(outcome, StoreConnectivityError):
                    store_error = store_error or outcome
                elif isinstance(outcome, Exception):
                    logger.error(f"Unhandled error for {item.source_key}: {outcome}")
                    results.append(ItemResult(
                        source_key=item.source_key,
                        status=ItemStatus.failed.value,
                        error=str(outcome),
                    ))
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    results.append(outcome)

            if store_error is not None:
                raise store_error

        return results

"""
Background fee collection.

Fee legs of batch payouts are handed to a bounded queue drained by a
small worker pool. The FeeTransferRecord is the durable checkpoint: a job
is only a pointer to a ``pending`` record, so jobs can be dropped on a
full queue or abandoned on shutdown and replayed later from the ledger.
A record id is held by at most one job at a time, queued or in flight.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Set

from .exceptions import FeeCollectionFailedError, VeloException
from .key_vault import SigningMaterial
from .ledger import FeeLedger
from .records import FeeTransferRecord

logger = logging.getLogger(__name__)

FeeHandler = Callable[[str, Optional[SigningMaterial]], Awaitable[Any]]
SigningLookup = Callable[[FeeTransferRecord], Awaitable[Optional[SigningMaterial]]]


@dataclass(frozen=True)
class FeeJob:
    """Collect the fee for one pending FeeTransferRecord."""
    record_id: str
    signing_material: Optional[SigningMaterial] = field(default=None, repr=False)


class FeeCollectionQueue:
    """Bounded queue of fee jobs with N workers.

    Usage:
        queue = FeeCollectionQueue(orchestrator.collect_fee, ledger=ledger)
        await queue.start()
        queue.enqueue(FeeJob(record.id, material))
        ...
        await queue.stop()
    """

    def __init__(
        self,
        handler: FeeHandler,
        ledger: Optional[FeeLedger] = None,
        maxsize: int = 1000,
        workers: int = 2,
    ):
        self._handler = handler
        self._ledger = ledger
        self._queue: asyncio.Queue[FeeJob] = asyncio.Queue(maxsize=maxsize)
        self._worker_count = max(1, workers)
        self._workers: List[asyncio.Task[None]] = []
        # Record ids queued or being collected
        self._active: Set[str] = set()
        self.processed = 0
        self.failed = 0
        self.dropped = 0
        self.duplicates = 0

    @property
    def running(self) -> bool:
        return any(not w.done() for w in self._workers)

    @property
    def size(self) -> int:
        return self._queue.qsize()

    def is_active(self, record_id: str) -> bool:
        return record_id in self._active

    async def start(self) -> None:
        if self.running:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"fee-worker-{i}")
            for i in range(self._worker_count)
        ]
        logger.info(f"Fee collection queue started with {self._worker_count} workers")

    async def stop(self) -> None:
        """Cancel workers. Queued and in-flight jobs are abandoned; their records stay pending."""
        for worker in self._workers:
            worker.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        abandoned = self._queue.qsize()
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
        self._active.clear()
        self._workers = []
        logger.info(f"Fee collection queue stopped ({abandoned} queued jobs left pending)")

    def enqueue(self, job: FeeJob) -> bool:
        """Queue a job without waiting.

        False when the queue is full or the record already has a job
        queued or in flight.
        """
        if job.record_id in self._active:
            self.duplicates += 1
            logger.debug(f"Fee record {job.record_id} already has a job; not queued again")
            return False
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                f"Fee queue full; record {job.record_id} stays pending for the next sweep"
            )
            return False
        self._active.add(job.record_id)
        return True

    async def join(self) -> None:
        """Wait until every queued job has been handled."""
        await self._queue.join()

    async def requeue_pending(
        self,
        signing_lookup: Optional[SigningLookup] = None,
        chain: Optional[str] = None,
    ) -> int:
        """Queue a job for every pending fee transfer (e.g. after a restart)."""
        if self._ledger is None:
            raise RuntimeError("requeue_pending needs a ledger")
        queued = 0
        for record in await self._ledger.list_pending(chain=chain):
            if record.id in self._active:
                self.duplicates += 1
                continue
            material = await signing_lookup(record) if signing_lookup else None
            if self.enqueue(FeeJob(record.id, material)):
                queued += 1
        logger.info(f"Requeued {queued} pending fee transfers")
        return queued

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._handler(job.record_id, job.signing_material)
                self.processed += 1
            except FeeCollectionFailedError as e:
                self.failed += 1
                logger.warning(f"fee-worker-{index}: {e.message}")
            except VeloException as e:
                self.failed += 1
                logger.error(f"fee-worker-{index}: fee job {job.record_id} errored: {e.message}")
            except Exception:
                self.failed += 1
                logger.exception(f"fee-worker-{index}: fee job {job.record_id} crashed")
            finally:
                self._active.discard(job.record_id)
                self._queue.task_done()

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Dict, List, Optional

from adlex_app.api import limits
from adlex_app.api.errors import QueueError
from adlex_app.realtime.broker import CheckEvent, CheckEventBroker

from .processor import INTERRUPTED_MESSAGE, SHUTDOWN_MESSAGE, CheckProcessor, QueueItem

log = logging.getLogger("adlex")

PRIORITIES = {"high": 0, "normal": 1, "low": 2}

QUEUE_FAILURE_MESSAGE = "キュー追加に失敗しました"


class CheckQueue:
    """Bounded priority queue drained by a fixed pool of worker tasks.

    ``enqueue`` never blocks; at most ``max_concurrent`` checks are processed
    at any time.
    """

    def __init__(
        self,
        processor: CheckProcessor,
        *,
        max_concurrent: Optional[int] = None,
        max_size: Optional[int] = None,
        broker: Optional[CheckEventBroker] = None,
    ):
        self.processor = processor
        self.max_concurrent = max_concurrent or limits.QUEUE_MAX_CONCURRENT
        self.max_size = max_size or limits.QUEUE_MAX_SIZE
        self.broker = broker or processor.broker
        self._queue: Optional[asyncio.PriorityQueue] = None
        self._seq = itertools.count()
        self._workers: List[asyncio.Task] = []
        self._processing: Dict[int, QueueItem] = {}
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._queue = asyncio.PriorityQueue()
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"check-worker-{n}")
            for n in range(self.max_concurrent)
        ]
        log.info("check queue started with %d worker(s)", self.max_concurrent)

    async def stop(self) -> None:
        """Cancel the workers and fail every check they had not finished."""
        self._running = False
        abandoned = list(self._processing)
        if self._queue is not None:
            while not self._queue.empty():
                _, _, item = self._queue.get_nowait()
                self._queue.task_done()
                abandoned.append(item.check_id)
        for task in self._workers:
            task.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        if abandoned:
            await self.processor.abandon(abandoned, SHUTDOWN_MESSAGE)
        log.info("check queue stopped (%d unfinished check(s) failed)", len(abandoned))

    async def recover(self) -> int:
        """Pick up checks left unfinished by a previous run.

        ``processing`` rows belonged to workers that no longer exist and are
        failed; ``pending`` rows are queued again. Returns the number requeued.
        """
        unfinished = await asyncio.to_thread(self.processor.repo.unfinished)
        orphaned = [r.id for r in unfinished if r.status == "processing"]
        if orphaned:
            await self.processor.abandon(orphaned, INTERRUPTED_MESSAGE)
        requeued = 0
        for record in unfinished:
            if record.status != "pending":
                continue
            try:
                self.enqueue(
                    record.id,
                    record.original_text,
                    record.organization_id,
                    input_type=record.input_type,
                )
            except QueueError as exc:
                log.error("check %s: requeue failed: %s", record.id, exc.message)
                await self.processor.abandon([record.id], QUEUE_FAILURE_MESSAGE)
                continue
            requeued += 1
        if unfinished:
            log.info("recovered %d pending check(s), failed %d orphaned", requeued, len(orphaned))
        return requeued

    def enqueue(
        self,
        check_id: int,
        text: str,
        organization_id: int,
        priority: str = "normal",
        input_type: str = "text",
    ) -> QueueItem:
        if not self._running or self._queue is None:
            raise QueueError("処理キューが停止しています")
        if self._queue.qsize() >= self.max_size:
            raise QueueError("処理キューが満杯です。しばらくしてから再度お試しください")
        item = QueueItem(
            check_id=check_id,
            text=text,
            organization_id=organization_id,
            priority=priority if priority in PRIORITIES else "normal",
            input_type=input_type,
        )
        self._queue.put_nowait((PRIORITIES[item.priority], next(self._seq), item))
        log.info("check %s: queued (priority=%s, depth=%d)", check_id, item.priority, self._queue.qsize())
        self.broker.publish(CheckEvent("queued", check_id, {"status": "pending"}))
        return item

    async def _worker(self, n: int) -> None:
        assert self._queue is not None
        while True:
            _, _, item = await self._queue.get()
            self._processing[item.check_id] = item
            try:
                await self.processor.process(item)
            except Exception:
                log.exception("worker %d: check %s crashed", n, item.check_id)
            finally:
                self._processing.pop(item.check_id, None)
                self._queue.task_done()

    async def join(self) -> None:
        if self._queue is not None:
            await self._queue.join()

    def status(self) -> Dict[str, object]:
        return {
            "running": self._running,
            "queue_length": self._queue.qsize() if self._queue is not None else 0,
            "processing_count": len(self._processing),
            "processing_ids": sorted(self._processing),
            "max_concurrent": self.max_concurrent,
            "max_size": self.max_size,
        }

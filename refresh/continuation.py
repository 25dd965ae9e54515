"""
Continuation queue: bounded-time work handed off to a fresh invocation.

A worker that runs out of time (or a webhook drain that filled its batch)
enqueues a typed work item instead of calling itself. Handlers are
registered per item type; items are consumed either by a background pool
(``start``/``stop``) or synchronously with ``run_pending`` (scripts, tests).
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Type
import logging

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RefreshContinuation:
    """Continue refreshing a table from its checkpoint under the same audit entry."""
    function_name: str
    table_schema: str
    table_name: str
    audit_log_id: int
    checkpoint_id: int


@dataclass(frozen=True)
class WebhookDrainContinuation:
    """Drain another batch of due webhook deliveries."""
    max_batch: int = 10


Handler = Callable[[object], Awaitable[None]]


class ContinuationQueue:
    """
    In-process work-item queue with a small consumer pool.
    
    Design:
    - Items carry everything needed to resume; handlers open their own
      database session so each item is a stateless invocation
    - A failing handler is logged and does not stop the pool; the failure
      has already been recorded by the component that raised it
    """
    
    def __init__(self):
        self._queue: "asyncio.Queue" = asyncio.Queue()
        self._handlers: Dict[Type, Handler] = {}
        self._workers: List[asyncio.Task] = []
        self.processed = 0
        self.failed = 0
    
    def register(self, item_type: Type, handler: Handler):
        self._handlers[item_type] = handler
    
    async def enqueue(self, item) -> None:
        if type(item) not in self._handlers:
            raise ValueError(f"No handler registered for {type(item).__name__}")
        await self._queue.put(item)
        logger.info(f"Continuation enqueued: {item}")
    
    def pending(self) -> int:
        return self._queue.qsize()
    
    async def _dispatch(self, item) -> bool:
        handler = self._handlers[type(item)]
        try:
            await handler(item)
        except Exception as e:
            self.failed += 1
            logger.error(f"Continuation {type(item).__name__} failed: {e}")
            return False
        self.processed += 1
        return True
    
    async def run_pending(self, max_items: Optional[int] = None) -> int:
        """
        Process queued items in the current task until the queue is empty,
        including items enqueued while draining.
        
        Returns:
            Number of items processed
        """
        count = 0
        while not self._queue.empty():
            if max_items is not None and count >= max_items:
                break
            item = self._queue.get_nowait()
            try:
                await self._dispatch(item)
            finally:
                self._queue.task_done()
            count += 1
        return count
    
    async def _worker(self, index: int):
        while True:
            item = await self._queue.get()
            try:
                await self._dispatch(item)
            finally:
                self._queue.task_done()
    
    def start(self, concurrency: int = 1):
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"continuation-worker-{i}")
            for i in range(max(1, concurrency))
        ]
        logger.info(f"Continuation workers started: {len(self._workers)}")
    
    async def join(self):
        await self._queue.join()
    
    async def stop(self):
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Continuation workers stopped")

"""
Event Dispatcher

Schedules event and tick jobs as asyncio tasks. Each job declares the
keys it touches (position ids, market tick keys); a job starts only after
every earlier job sharing one of its keys has finished, while jobs with
disjoint keys run in parallel up to max_in_flight.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from .types import IndexerError
from .metrics_server import MetricsServer

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[Any]]


class EventDispatcher:
    """Per-key ordered, bounded-concurrency job scheduler"""

    def __init__(self, max_in_flight: int = 32):
        self.max_in_flight = max_in_flight
        self._semaphore = asyncio.Semaphore(max_in_flight)
        self._tails: Dict[str, asyncio.Task] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    @property
    def in_flight(self) -> int:
        """Jobs submitted and not yet finished"""
        return len(self._tasks)

    @property
    def closed(self) -> bool:
        return self._closed

    def submit(self, keys: Iterable[str], job: Job, name: Optional[str] = None) -> asyncio.Task:
        """
        Schedule a job behind every unfinished job sharing one of its keys.

        Ordering is fixed here, at submit time, so jobs sharing a key run in
        submission order.

        Raises:
            IndexerError: if the dispatcher has been closed
        """
        if self._closed:
            raise IndexerError("Dispatcher is closed to new work")

        keys = list(dict.fromkeys(keys))
        predecessors = list({
            self._tails[key] for key in keys
            if key in self._tails and not self._tails[key].done()
        })

        task = asyncio.create_task(self._run(predecessors, job), name=name)
        for key in keys:
            self._tails[key] = task

        self._tasks.add(task)
        task.add_done_callback(lambda t: self._finished(t, keys))
        MetricsServer.update_in_flight(len(self._tasks))
        return task

    async def _run(self, predecessors: List[asyncio.Task], job: Job) -> Any:
        if predecessors:
            # asyncio.wait never raises on a predecessor's failure
            await asyncio.wait(predecessors)
        # Acquired after predecessors finish so waiting jobs hold no slot
        async with self._semaphore:
            return await job()

    def _finished(self, task: asyncio.Task, keys: List[str]):
        self._tasks.discard(task)
        for key in keys:
            if self._tails.get(key) is task:
                del self._tails[key]
        MetricsServer.update_in_flight(len(self._tasks))

        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Job {task.get_name()} raised: {error!r}")

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for every submitted job, including jobs submitted while draining.

        Returns:
            True if all jobs finished, False if the timeout expired first
        """
        deadline = None if timeout is None else time.monotonic() + timeout

        while self._tasks:
            remaining = None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
            _, pending = await asyncio.wait(set(self._tasks), timeout=remaining)
            if pending and deadline is not None and time.monotonic() >= deadline:
                return False
        return True

    async def close(self, timeout: Optional[float] = None) -> bool:
        """
        Refuse new work and drain what is in flight.

        Jobs still running when the timeout expires are cancelled; their
        blocks are not checkpointed and will be re-delivered.

        Returns:
            True if everything drained cleanly
        """
        self._closed = True
        drained = await self.drain(timeout)

        if not drained:
            pending = list(self._tasks)
            logger.warning(f"Cancelling {len(pending)} unfinished jobs after {timeout}s grace period")
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        return drained

"""Ordered commit of concurrently processed pages."""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, List, Optional, Tuple, TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

Compute = Callable[[], Awaitable[T]]
Commit = Callable[[Optional[T], Optional[BaseException]], Awaitable[None]]


@dataclass(order=True)
class _Entry(Generic[T]):
    key: int
    seq: int
    task: "asyncio.Task[T]" = field(compare=False)
    commit: Commit = field(compare=False)


class StrictOrderQueue(Generic[T]):
    """Run computations concurrently but commit their results in key order.

    ``submit`` starts the computation right away (at most ``max_concurrency``
    at once). A single consumer commits entries by ascending key: the commit for
    key N finishes before the commit for N+1 starts, and a key is held back
    until every smaller key has been committed. When the queue is drained any
    gaps left by keys that never arrived are skipped.

    A missing key therefore stalls every later commit until :meth:`drain`:
    their results stay in memory and their commits (progress included) only
    run once the gap is skipped. Strict ordering accepts that cost.
    """

    def __init__(self, *, first_key: int = 1, max_concurrency: int = 2) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self._next_key = first_key
        self._heap: List[_Entry[T]] = []
        self._counter = itertools.count()
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._wakeup = asyncio.Event()
        self._closing = False
        self._consumer: Optional[asyncio.Task] = None
        self.committed: List[int] = []
        self.skipped: List[int] = []

    @property
    def pending(self) -> int:
        return len(self._heap)

    def submit(self, key: int, compute: Compute, commit: Commit) -> None:
        if self._closing:
            raise RuntimeError("queue is draining; no more submissions")
        task = asyncio.create_task(self._compute(compute), name=f"page-{key}")
        heapq.heappush(self._heap, _Entry(key=key, seq=next(self._counter), task=task, commit=commit))
        if self._consumer is None:
            self._consumer = asyncio.create_task(self._consume(), name="ordered-commit")
        self._wakeup.set()

    async def drain(self) -> None:
        """Commit everything submitted so far, then stop the consumer."""

        self._closing = True
        self._wakeup.set()
        if self._consumer is not None:
            await self._consumer

    async def _compute(self, compute: Compute) -> Any:
        async with self._semaphore:
            return await compute()

    def _pop_ready(self) -> Optional[_Entry[T]]:
        if not self._heap:
            return None
        head = self._heap[0]
        if head.key <= self._next_key or self._closing:
            return heapq.heappop(self._heap)
        return None

    async def _consume(self) -> None:
        while True:
            entry = self._pop_ready()
            if entry is None:
                if self._closing and not self._heap:
                    return
                self._wakeup.clear()
                await self._wakeup.wait()
                continue

            if entry.key > self._next_key:
                gap = list(range(self._next_key, entry.key))
                self.skipped.extend(gap)
                LOGGER.warning("Skipping page(s) that never arrived: %s", ", ".join(map(str, gap)))

            result, error = await self._outcome(entry.task)
            try:
                await entry.commit(result, error)
            except Exception:
                LOGGER.exception("Commit for page %d failed", entry.key)
            self.committed.append(entry.key)
            self._next_key = max(self._next_key, entry.key + 1)

    @staticmethod
    async def _outcome(task: "asyncio.Task[T]") -> Tuple[Optional[T], Optional[BaseException]]:
        try:
            return await task, None
        except Exception as exc:
            return None, exc

"""
Fixed-size, pull-based worker pool used by every stage of a mirror run.

A single dispatcher hands one item at a time to whichever worker last
reported itself ready, through that worker's own bounded inbox. Results are
funnelled through one bounded queue into a single collector, so no list is
ever appended to by more than one worker.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import (
    AsyncIterable,
    AsyncIterator,
    Awaitable,
    Callable,
    Generic,
    Iterable,
    List,
    Optional,
    TypeVar,
    Union,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True)
class Work(Generic[T]):
    """A unit of work (or a result) travelling over a queue."""

    item: T


@dataclass(frozen=True)
class Shutdown:
    """End-of-stream marker; the receiver exits after everything queued before it."""


SHUTDOWN = Shutdown()

Handler = Callable[[int, T], Awaitable[Optional[R]]]


async def _iterate(items: Union[Iterable[T], AsyncIterable[T]]) -> AsyncIterator[T]:
    if hasattr(items, "__aiter__"):
        async for item in items:  # type: ignore[union-attr]
            yield item
    else:
        for item in items:  # type: ignore[union-attr]
            yield item


class WorkerPool(Generic[T, R]):
    """
    Runs ``handler(worker_index, item)`` over a stream of items with ``size`` workers.

    Handlers returning ``None`` produce no result. ``retire_when(worker_index)``
    is checked after each item; a worker for which it returns True stops taking
    work. Once every worker has retired the dispatcher stops early and
    ``dispatched`` tells the caller how far it got.

    An exception escaping a handler cancels the remaining workers and is
    re-raised from ``run``.
    """

    def __init__(
        self,
        name: str,
        size: int,
        handler: Handler,
        inbox_size: int = 1,
        results_size: int = 100,
        retire_when: Optional[Callable[[int], bool]] = None,
    ):
        if size < 1:
            raise ValueError(f"Worker pool '{name}' needs at least one worker, got {size}")
        self.name = name
        self.size = size
        self.handler = handler
        self.inbox_size = inbox_size
        self.results_size = results_size
        self.retire_when = retire_when
        self.dispatched = 0
        self.stopped_early = False
        self._failure: Optional[BaseException] = None

    async def run(self, items: Union[Iterable[T], AsyncIterable[T]]) -> List[R]:
        self.dispatched = 0
        self.stopped_early = False
        self._failure = None

        # None on the ready queue means "a worker has left".
        ready: asyncio.Queue = asyncio.Queue()
        inboxes: List[asyncio.Queue] = [asyncio.Queue(maxsize=self.inbox_size) for _ in range(self.size)]
        results: asyncio.Queue = asyncio.Queue(maxsize=self.results_size)

        collector = asyncio.create_task(self._collect(results), name=f"{self.name}-collector")
        workers = [
            asyncio.create_task(self._work(i, inboxes[i], ready, results), name=f"{self.name}-{i}")
            for i in range(self.size)
        ]
        logger.debug(f"Pool '{self.name}' started with {self.size} workers")

        try:
            await self._dispatch(items, inboxes, ready)
            for inbox in inboxes:
                await inbox.put(SHUTDOWN)
            await asyncio.gather(*workers)
            await results.put(SHUTDOWN)
            collected = await collector
        except BaseException:
            for task in (*workers, collector):
                task.cancel()
            await asyncio.gather(*workers, collector, return_exceptions=True)
            raise

        logger.debug(
            f"Pool '{self.name}' finished: {self.dispatched} dispatched, {len(collected)} results"
        )
        return collected

    async def _dispatch(
        self,
        items: Union[Iterable[T], AsyncIterable[T]],
        inboxes: List[asyncio.Queue],
        ready: asyncio.Queue,
    ) -> None:
        alive = self.size
        async for item in _iterate(items):
            index = await ready.get()
            while index is None:
                if self._failure is not None:
                    raise self._failure
                alive -= 1
                if alive == 0:
                    self.stopped_early = True
                    logger.info(f"Pool '{self.name}': all workers retired, stopping dispatch")
                    return
                index = await ready.get()
            await inboxes[index].put(Work(item))
            self.dispatched += 1

    async def _work(
        self,
        index: int,
        inbox: asyncio.Queue,
        ready: asyncio.Queue,
        results: asyncio.Queue,
    ) -> None:
        try:
            await ready.put(index)
            while True:
                message = await inbox.get()
                if isinstance(message, Shutdown):
                    return
                result = await self.handler(index, message.item)
                if result is not None:
                    await results.put(Work(result))
                if self.retire_when is not None and self.retire_when(index):
                    logger.info(f"Pool '{self.name}': worker {index} reached its limit")
                    return
                await ready.put(index)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._failure = e
            raise
        finally:
            ready.put_nowait(None)

    async def _collect(self, results: asyncio.Queue) -> List[R]:
        collected: List[R] = []
        while True:
            message = await results.get()
            if isinstance(message, Shutdown):
                return collected
            collected.append(message.item)

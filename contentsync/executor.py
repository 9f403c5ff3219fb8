"""Bounded-parallelism batch runner.

Items are processed in sequential batches of ``batch_size``; inside a batch at
most ``concurrency`` workers are in flight at once. Each item is retried on its
own, and a failure is recorded in ``BatchResult.errors`` rather than raised.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any

from contentsync.cache_store import CacheStore
from contentsync.errors import OperationFailed
from contentsync.models import BatchResult, ItemError, ItemResult, ProgressEvent
from contentsync.retry import RetryPolicy, retry_async


logger = logging.getLogger(__name__)

Worker = Callable[[Any, int], Any]

DEFAULT_CONCURRENCY = 10
DEFAULT_BATCH_SIZE = 50
DEFAULT_CACHE_NAMESPACE = "concurrent-ops"


@dataclass(slots=True)
class ExecutorStats:
    operations: int = 0
    successes: int = 0
    failures: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    total_time: float = 0.0

    @property
    def average_time(self) -> float:
        return self.total_time / self.operations if self.operations else 0.0


def item_cache_key(item: Any) -> Any:
    """Cache identity of a work item: the string itself, its ``id``/``path``, or the whole value."""
    if isinstance(item, str):
        return item
    if isinstance(item, dict):
        for name in ("id", "path"):
            if item.get(name):
                return str(item[name])
        return item
    for name in ("id", "path"):
        value = getattr(item, name, None)
        if value:
            return str(value)
    return item


async def _invoke(worker: Worker, item: Any, index: int) -> Any:
    result = worker(item, index)
    if inspect.isawaitable(result):
        result = await result
    return result


class BatchRun:
    """One ``submit`` call: iterate it for progress events, or ``wait`` for the result."""

    def __init__(
        self,
        executor: "ConcurrencyExecutor",
        items: Sequence[Any],
        worker: Worker,
        *,
        concurrency: int,
        batch_size: int,
        cache: bool,
        cache_namespace: str,
        on_progress: Callable[[ProgressEvent], None] | None,
    ) -> None:
        self._executor = executor
        self._items = list(items)
        self._worker = worker
        self._concurrency = max(1, concurrency)
        self._batch_size = max(1, batch_size)
        self._cache = cache
        self._cache_namespace = cache_namespace
        self._on_progress = on_progress
        self._events = self._run()
        self._result: BatchResult | None = None

    @property
    def result(self) -> BatchResult | None:
        return self._result

    def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        return self._events

    async def wait(self) -> BatchResult:
        async for _ in self._events:
            pass
        assert self._result is not None
        return self._result

    async def _run(self) -> AsyncIterator[ProgressEvent]:
        started = time.perf_counter()
        total = len(self._items)
        results: list[ItemResult] = []
        errors: list[ItemError] = []
        processed = 0
        semaphore = asyncio.Semaphore(self._concurrency)

        for start in range(0, total, self._batch_size):
            batch = self._items[start : start + self._batch_size]
            outcomes = await asyncio.gather(
                *(
                    self._process(semaphore, item, start + offset)
                    for offset, item in enumerate(batch)
                )
            )
            for outcome in outcomes:
                if isinstance(outcome, ItemError):
                    errors.append(outcome)
                else:
                    results.append(outcome)

            processed += len(batch)
            event = ProgressEvent(
                processed=processed,
                total=total,
                percentage=round(processed / total * 100),
                errors=len(errors),
            )
            if self._on_progress is not None:
                self._on_progress(event)
            yield event

        duration = time.perf_counter() - started
        self._executor._record(total, len(results), len(errors), duration)
        self._result = BatchResult(results=results, errors=errors, total=total, duration=duration)

    async def _process(
        self, semaphore: asyncio.Semaphore, item: Any, index: int
    ) -> ItemResult | ItemError:
        async with semaphore:
            executor = self._executor
            cache_store = executor.cache_store if self._cache else None
            cache_key = item_cache_key(item) if cache_store is not None else None

            try:
                if cache_store is not None:
                    cached = await cache_store.get(cache_key, self._cache_namespace)
                    if cached is not None:
                        executor.stats.cache_hits += 1
                        return ItemResult(index=index, value=cached, cached=True)
                    executor.stats.cache_misses += 1

                value = await retry_async(
                    lambda: _invoke(self._worker, item, index),
                    context=f"Item {index}",
                    policy=executor.policy,
                    sleep=executor.sleep,
                )

                if cache_store is not None and value is not None:
                    await cache_store.set(cache_key, value, self._cache_namespace)
                return ItemResult(index=index, value=value)
            except OperationFailed as exc:
                logger.debug("Item %d failed: %s", index, exc.last_error)
                return ItemError(index=index, item=item, error=exc.last_error)
            except Exception as exc:
                logger.debug("Item %d failed: %s", index, exc)
                return ItemError(index=index, item=item, error=exc)


class ConcurrencyExecutor:
    def __init__(
        self,
        *,
        cache_store: CacheStore | None = None,
        concurrency: int = DEFAULT_CONCURRENCY,
        batch_size: int = DEFAULT_BATCH_SIZE,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.cache_store = cache_store
        self.concurrency = concurrency
        self.batch_size = batch_size
        self.policy = RetryPolicy(attempts=retry_attempts, base_delay=retry_delay)
        self.sleep = sleep
        self.stats = ExecutorStats()

    def submit(
        self,
        items: Sequence[Any],
        worker: Worker,
        *,
        concurrency: int | None = None,
        batch_size: int | None = None,
        cache: bool = False,
        cache_namespace: str = DEFAULT_CACHE_NAMESPACE,
        on_progress: Callable[[ProgressEvent], None] | None = None,
    ) -> BatchRun:
        return BatchRun(
            self,
            items,
            worker,
            concurrency=concurrency or self.concurrency,
            batch_size=batch_size or self.batch_size,
            cache=cache and self.cache_store is not None,
            cache_namespace=cache_namespace,
            on_progress=on_progress,
        )

    async def run(
        self,
        items: Sequence[Any],
        worker: Worker,
        **options: Any,
    ) -> BatchResult:
        return await self.submit(items, worker, **options).wait()

    def _record(self, total: int, successes: int, failures: int, duration: float) -> None:
        self.stats.operations += total
        self.stats.successes += successes
        self.stats.failures += failures
        self.stats.total_time += duration

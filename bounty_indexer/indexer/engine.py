from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import random
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, TypeVar

from opentelemetry import trace

from bounty_indexer.core.errors import LedgerError, ProjectionWriteError
from bounty_indexer.indexer.checkpoint import Checkpoint
from bounty_indexer.indexer.events import ChainEvent, EventSource
from bounty_indexer.indexer.handlers import HandlerContext
from bounty_indexer.indexer.router import DispatchResult, EventRouter
from bounty_indexer.services.ledger_client import BatchCallback, LogBatch
from bounty_indexer.services.projection import ProjectionStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

T = TypeVar("T")


class LedgerSubscription(Protocol):
    def cancel(self) -> None: ...

    async def wait(self) -> None: ...


class LedgerClient(Protocol):
    async def current_height(self) -> int: ...

    async def get_logs(self, source: EventSource, from_block: int, to_block: int) -> list[ChainEvent]: ...

    def subscribe(self, source: EventSource, on_batch: BatchCallback, *, from_block: int) -> LedgerSubscription: ...


class EngineState(str, Enum):
    IDLE = "idle"
    BACKFILLING = "backfilling"
    WATCHING = "watching"
    STOPPED = "stopped"


@dataclass(slots=True)
class SyncStats:
    windows: int = 0
    live_batches: int = 0
    applied: int = 0
    duplicates: int = 0
    unknown: int = 0
    undecodable: int = 0

    def record(self, result: DispatchResult) -> None:
        if result is DispatchResult.APPLIED:
            self.applied += 1
        elif result is DispatchResult.DUPLICATE:
            self.duplicates += 1
        elif result is DispatchResult.UNKNOWN:
            self.unknown += 1
        else:
            self.undecodable += 1


class SyncEngine:
    """Backfills from the checkpoint to the confirmed head, then follows live logs.

    Events from all sources are applied one at a time in ascending
    ``(block_number, log_index)`` order, in both phases. The checkpoint only
    moves after every event at or below the new value has been applied.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        store: ProjectionStore,
        checkpoint: Checkpoint,
        *,
        sources: Sequence[EventSource] = tuple(EventSource),
        router: EventRouter | None = None,
        confirmation_depth: int = 2,
        batch_size: int = 1000,
        fetch_max_attempts: int = 5,
        retry_base_seconds: float = 1.0,
        max_backoff_seconds: float = 30.0,
        baseline_reputation: int = 50,
        queue_size: int = 64,
    ) -> None:
        if not sources:
            raise ValueError("at least one event source is required")
        self.ledger = ledger
        self.store = store
        self.checkpoint = checkpoint
        self.sources = tuple(sources)
        self.router = router or EventRouter()
        self.confirmation_depth = max(0, confirmation_depth)
        self.batch_size = max(1, batch_size)
        self.fetch_max_attempts = max(1, fetch_max_attempts)
        self.retry_base_seconds = retry_base_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.context = HandlerContext(baseline_reputation=baseline_reputation)
        self.stats = SyncStats()
        self.state = EngineState.IDLE

        self._stop = asyncio.Event()
        self._apply_lock = asyncio.Lock()
        self._queue: asyncio.Queue[LogBatch] = asyncio.Queue(maxsize=max(1, queue_size))
        self._subscriptions: list[LedgerSubscription] = []
        self._watermarks: dict[EventSource, int] = {}
        self._pending: list[tuple[tuple[int, int], int, ChainEvent]] = []
        self._sequence = itertools.count()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    @property
    def anomalies(self) -> int:
        return self.context.anomalies

    def stop(self) -> None:
        """Stop taking new batches; the batch being applied still finishes."""
        if self._stop.is_set():
            return
        logger.info("stop requested in state=%s", self.state.value)
        self._stop.set()
        for subscription in self._subscriptions:
            subscription.cancel()

    async def run(self) -> None:
        start = await self.checkpoint.load()
        logger.info("resuming from checkpoint block %s", start)
        try:
            await self.backfill()
            if not self.stopping:
                await self.watch()
        finally:
            await self._close_subscriptions()
            self.state = EngineState.STOPPED
            logger.info(
                "sync stopped at block %s applied=%s duplicates=%s anomalies=%s",
                self.checkpoint.value,
                self.stats.applied,
                self.stats.duplicates,
                self.anomalies,
            )

    async def backfill(self) -> int:
        """Apply every window between the checkpoint and ``head - confirmation_depth``.

        Returns the target block. Stops early, leaving the checkpoint at the last
        completed window, when :meth:`stop` is called.
        """
        self.state = EngineState.BACKFILLING
        height = await self._with_retries("current_height", self.ledger.current_height)
        target = height - self.confirmation_depth
        if self.checkpoint.value >= target:
            logger.info("checkpoint %s already at safe block %s; nothing to backfill", self.checkpoint.value, target)
            return target

        logger.info(
            "backfilling blocks %s-%s (head=%s, confirmation_depth=%s)",
            self.checkpoint.value + 1,
            target,
            height,
            self.confirmation_depth,
        )
        while self.checkpoint.value < target and not self.stopping:
            start = self.checkpoint.value + 1
            end = min(self.checkpoint.value + self.batch_size, target)
            with tracer.start_as_current_span("indexer.backfill_window") as span:
                span.set_attribute("window.from_block", start)
                span.set_attribute("window.to_block", end)
                try:
                    events = await self._with_retries(
                        f"get_logs {start}-{end}",
                        lambda: self._fetch_window(start, end),
                    )
                except LedgerError:
                    if self.stopping:
                        logger.info("window %s-%s abandoned during shutdown", start, end)
                        break
                    raise
                if self.stopping:
                    break
                span.set_attribute("window.events", len(events))
                await self._apply(events)
                await self.checkpoint.advance(end)
            self.stats.windows += 1
            logger.info("applied blocks %s-%s events=%s", start, end, len(events))
        return target

    async def watch(self) -> None:
        """Follow live subscriptions until :meth:`stop` is called.

        Batches from every source go through one queue and one consumer. Events
        are held back until every source has reported past their block, so live
        application keeps the same global order as backfill.
        """
        self.state = EngineState.WATCHING
        base = self.checkpoint.value
        self._watermarks = {source: base for source in self.sources}
        self._pending = []
        for source in self.sources:
            self._subscriptions.append(self.ledger.subscribe(source, self._enqueue, from_block=base + 1))
        logger.info("watching %s sources from block %s", len(self.sources), base + 1)

        stop_waiter = asyncio.create_task(self._stop.wait())
        failure_waiters = {asyncio.create_task(subscription.wait()) for subscription in self._subscriptions}
        getter: asyncio.Task[LogBatch] | None = None
        try:
            while True:
                getter = asyncio.create_task(self._queue.get())
                done, _ = await asyncio.wait(
                    {getter, stop_waiter, *failure_waiters},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if getter in done:
                    batches = [getter.result()]
                    while not self._queue.empty():
                        batches.append(self._queue.get_nowait())
                    await self._apply_live(batches)
                    continue
                if stop_waiter in done or self.stopping:
                    break
                for waiter in done & failure_waiters:
                    exc = waiter.exception()
                    if exc is not None:
                        raise exc
                raise LedgerError("ledger subscription ended unexpectedly")
        finally:
            if getter is not None and not getter.done():
                getter.cancel()
            stop_waiter.cancel()
            for waiter in failure_waiters:
                waiter.cancel()

    async def _enqueue(self, batch: LogBatch) -> None:
        if self.stopping:
            return
        await self._queue.put(batch)

    async def _apply_live(self, batches: list[LogBatch]) -> None:
        for batch in batches:
            current = self._watermarks.get(batch.source)
            if current is None:
                logger.warning("dropping batch from unexpected source=%s", batch.source.value)
                continue
            self._watermarks[batch.source] = max(current, batch.to_block)
            for event in batch.events:
                if event.block_number <= self.checkpoint.value:
                    continue
                heapq.heappush(self._pending, (event.position, next(self._sequence), event))

        safe_block = min(self._watermarks.values())
        ready: list[ChainEvent] = []
        while self._pending and self._pending[0][0][0] <= safe_block:
            ready.append(heapq.heappop(self._pending)[2])

        with tracer.start_as_current_span("indexer.watch_batch") as span:
            span.set_attribute("batch.count", len(batches))
            span.set_attribute("batch.events", len(ready))
            span.set_attribute("batch.safe_block", safe_block)
            await self._apply(ready)
            advanced = await self.checkpoint.advance(safe_block)
        self.stats.live_batches += len(batches)
        if ready or advanced:
            logger.info(
                "live batch applied events=%s checkpoint=%s buffered=%s",
                len(ready),
                self.checkpoint.value,
                len(self._pending),
            )

    async def _fetch_window(self, start: int, end: int) -> list[ChainEvent]:
        results = await asyncio.gather(*(self.ledger.get_logs(source, start, end) for source in self.sources))
        merged = sorted(itertools.chain.from_iterable(results), key=lambda event: event.position)
        deduped: list[ChainEvent] = []
        for event in merged:
            if deduped and deduped[-1].position == event.position:
                continue
            deduped.append(event)
        return deduped

    async def _apply(self, events: list[ChainEvent]) -> None:
        async with self._apply_lock:
            for event in events:
                try:
                    result = await self.router.dispatch(event, self.store, self.context)
                except Exception as exc:
                    raise ProjectionWriteError(
                        f"failed to apply {event.event_name} at block={event.block_number} "
                        f"log_index={event.log_index}: {exc}"
                    ) from exc
                self.stats.record(result)

    async def _with_retries(self, label: str, call: Callable[[], Awaitable[T]]) -> T:
        backoff = self.retry_base_seconds
        attempt = 0
        while True:
            attempt += 1
            try:
                return await call()
            except LedgerError as exc:
                if attempt >= self.fetch_max_attempts or self.stopping:
                    raise
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (1.0 + jitter), self.max_backoff_seconds)
                logger.warning(
                    "ledger %s failed (attempt %s/%s): %s; retry in %.1fs",
                    label,
                    attempt,
                    self.fetch_max_attempts,
                    exc,
                    sleep_for,
                )
                await self._sleep(sleep_for)
                backoff = sleep_for * 2.0

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _close_subscriptions(self) -> None:
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            subscription.cancel()
        results: list[Any] = await asyncio.gather(
            *(subscription.wait() for subscription in subscriptions),
            return_exceptions=True,
        )
        for subscription, result in zip(subscriptions, results):
            if isinstance(result, BaseException) and not isinstance(result, asyncio.CancelledError):
                logger.debug("subscription %r closed with %r", subscription, result)

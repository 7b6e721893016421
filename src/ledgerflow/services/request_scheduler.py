from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Set

from ledgerflow.adapters.ledger.rate_limiter import backoff_delay
from ledgerflow.config import settings
from ledgerflow.core.cancellation import CancellationToken
from ledgerflow.core.errors import ScanCancelledError
from ledgerflow.core.models import ProgressStats

logger = logging.getLogger(__name__)

Operation = Callable[[], Awaitable[Any]]
ProgressListener = Callable[[ProgressStats], None]


@dataclass
class _QueueItem:
    operation: Operation
    priority: int
    max_retries: int
    seq: int
    future: "asyncio.Future[Any]"
    generation: int
    retries_used: int = 0


class RequestScheduler:
    """
    Bounded-concurrency request queue.

    - Ordering: higher priority first, ties by insertion order.
    - Retries: a failed item waits base * 2**retries_used (capped) and is
      requeued at the front; after max_retries the caller gets the error.
    - Cancellation: cancel() fails every pending item and every later
      enqueue with ScanCancelledError. In-flight operations are left to
      finish.
    - Progress: listeners get a ProgressStats snapshot after every change.
    """

    def __init__(
        self,
        max_concurrent: int = settings.SCHEDULER_MAX_CONCURRENT,
        backoff_base: float = settings.SCHEDULER_BACKOFF_BASE_SEC,
        backoff_cap: float = settings.SCHEDULER_BACKOFF_CAP_SEC,
        token: Optional[CancellationToken] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self._max_concurrent = int(max_concurrent)
        self._backoff_base = backoff_base
        self._backoff_cap = backoff_cap
        self._sleep = sleep
        self._token = token or CancellationToken()
        self._listeners: List[ProgressListener] = []
        self._tasks: Set["asyncio.Task[None]"] = set()
        # slot occupancy survives reset(): old tasks still hold their slots
        self._active = 0
        self._waiting = 0          # items sleeping before a retry
        self._generation = 0
        self._init_state()

    def _init_state(self) -> None:
        self._pending: List[_QueueItem] = []
        self._seq = itertools.count()
        self._total = 0
        self._completed = 0
        self._failed = 0
        self._retried = 0
        self._cancelled = 0

    # ---------- state ----------

    @property
    def token(self) -> CancellationToken:
        return self._token

    @property
    def cancelled(self) -> bool:
        return self._token.cancelled

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def stats(self) -> ProgressStats:
        return ProgressStats(
            total=self._total,
            completed=self._completed,
            failed=self._failed,
            pending=len(self._pending) + self._waiting,
            active=self._active,
            retried=self._retried,
            cancelled=self._cancelled,
        )

    @property
    def idle(self) -> bool:
        return not self._pending and self._active == 0 and self._waiting == 0

    # ---------- observers ----------

    def subscribe(self, listener: ProgressListener) -> ProgressListener:
        self._listeners.append(listener)
        return listener

    def unsubscribe(self, listener: ProgressListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self) -> None:
        snapshot = self.stats
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("progress listener failed")

    # ---------- public API ----------

    async def enqueue(
        self,
        operation: Operation,
        priority: int = 0,
        max_retries: int = settings.SCHEDULER_MAX_RETRIES,
    ) -> Any:
        if self._token.cancelled:
            raise ScanCancelledError(f"Request cancelled: {self._token.reason}")

        loop = asyncio.get_running_loop()
        item = _QueueItem(
            operation=operation,
            priority=int(priority),
            max_retries=max(0, int(max_retries)),
            seq=next(self._seq),
            future=loop.create_future(),
            generation=self._generation,
        )
        self._total += 1
        self._insert(item)
        self._pump()
        return await item.future

    def cancel(self, reason: str = "cancelled by user") -> None:
        self._token.cancel(reason)
        drained, self._pending = self._pending, []
        for item in drained:
            self._fail_cancelled(item)
        logger.info("request queue cancelled (%d pending dropped)", len(drained))
        self._emit()

    def reset(self, token: Optional[CancellationToken] = None) -> None:
        """
        Starts a fresh operation: pending items are cancelled, stats cleared
        and a new cancellation token installed. Operations still in flight
        keep their slots until they finish, but their outcome is no longer
        counted and they are never retried.
        """
        for item in self._pending:
            if not item.future.done():
                item.future.set_exception(ScanCancelledError("Request discarded by reset"))
        self._generation += 1
        self._init_state()
        self._token = token or CancellationToken()
        self._emit()

    async def join(self) -> None:
        # waits for in-flight work, including retries
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ---------- internal ----------

    def _insert(self, item: _QueueItem) -> None:
        idx = len(self._pending)
        for i, other in enumerate(self._pending):
            if other.priority < item.priority:
                idx = i
                break
        self._pending.insert(idx, item)

    def _pump(self) -> None:
        if not self._token.cancelled:
            while self._active < self._max_concurrent and self._pending:
                item = self._pending.pop(0)
                self._active += 1
                task = asyncio.get_running_loop().create_task(self._execute(item))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        self._emit()

    def _stale(self, item: _QueueItem) -> bool:
        return item.generation != self._generation

    def _fail_cancelled(self, item: _QueueItem, cause: Optional[BaseException] = None) -> None:
        if not self._stale(item):
            self._cancelled += 1
        if not item.future.done():
            err = ScanCancelledError(f"Request cancelled: {self._token.reason}")
            err.__cause__ = cause
            item.future.set_exception(err)

    async def _execute(self, item: _QueueItem) -> None:
        try:
            result = await item.operation()
        except asyncio.CancelledError:
            self._active -= 1
            self._fail_cancelled(item)
            raise
        except Exception as e:
            self._active -= 1
            await self._handle_failure(item, e)
            return

        if not self._stale(item):
            self._completed += 1
        self._active -= 1
        if not item.future.done():
            item.future.set_result(result)
        self._pump()

    async def _handle_failure(self, item: _QueueItem, error: Exception) -> None:
        if self._token.cancelled or self._stale(item):
            self._fail_cancelled(item, error)
            self._pump()
            return

        if item.retries_used >= item.max_retries:
            self._failed += 1
            logger.warning("request failed after %d retries: %s", item.retries_used, error)
            if not item.future.done():
                item.future.set_exception(error)
            self._pump()
            return

        delay = backoff_delay(item.retries_used, self._backoff_base, self._backoff_cap)
        item.retries_used += 1
        self._retried += 1
        logger.warning(
            "retry %d/%d after %.2fs: %s", item.retries_used, item.max_retries, delay, error
        )

        # the slot is free while we back off
        self._waiting += 1
        self._pump()
        try:
            await self._sleep(delay)
        except asyncio.CancelledError:
            self._fail_cancelled(item, error)
            raise
        finally:
            self._waiting -= 1

        if self._token.cancelled or self._stale(item):
            self._fail_cancelled(item, error)
            self._pump()
            return
        self._pending.insert(0, item)
        self._pump()

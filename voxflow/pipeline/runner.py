"""StageRunner: timeout, single retry and cancellation around adapter calls.

Every stage call in a turn goes through ``StageRunner.run``:

- the call runs as a child task, so on timeout or cancellation the runner
  cancels it (best effort) and returns immediately instead of waiting for
  the adapter to physically return;
- failures an adapter marks retryable are retried once after a backoff,
  unless the stage is configured non-retryable or the token is cancelled;
- each adapter instance serves one call at a time. A second call queues
  until the first finishes, including a call that was abandoned but is
  still winding down inside the adapter. A queued call still honours its
  cancel token, and its time in the queue counts toward the timeout.
"""

from __future__ import annotations

import asyncio
import time
import weakref
from dataclasses import dataclass
from functools import partial
from typing import Awaitable, Callable, Generic, TypeVar

from loguru import logger

from voxflow.adapters.base import BaseAdapter
from voxflow.core.errors import AdapterError, StageError, StageErrorKind
from voxflow.core.events import Stage
from voxflow.pipeline.cancellation import CancelToken, OperationCancelled
from voxflow.pipeline.metrics import MetricsCollector

T = TypeVar("T")


@dataclass
class StageResult(Generic[T]):
    """Outcome of ``StageRunner.run``: a value or a StageError."""

    stage: Stage
    adapter: str = ""
    value: T | None = None
    error: StageError | None = None
    attempts: int = 0
    latency_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value, or raise the StageError."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


class StageRunner:
    """Runs adapter operations with timeout, retry and cancellation.

    Args:
        retry_backoff_ms: Delay before the single retry (default: 200ms).
        metrics: Optional collector for latencies, errors and retries.
    """

    def __init__(
        self,
        retry_backoff_ms: float = 200.0,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.retry_backoff_ms = retry_backoff_ms
        self.metrics = metrics
        self._locks: weakref.WeakKeyDictionary[BaseAdapter, asyncio.Lock] = (
            weakref.WeakKeyDictionary()
        )

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        adapter: BaseAdapter,
        cancel_token: CancelToken,
        timeout_ms: float | None = None,
        retryable: bool = True,
    ) -> StageResult[T]:
        """Run ``operation`` (a zero-arg coroutine factory) against ``adapter``.

        The factory is called once per attempt.
        """
        stage = adapter.stage
        if self.metrics:
            self.metrics.record_invocation(stage)

        started = time.perf_counter()
        max_attempts = 2 if retryable else 1
        attempts = 0
        error: StageError | None = None

        while attempts < max_attempts:
            if cancel_token.cancelled:
                error = StageError(stage, StageErrorKind.CANCELLED, attempts=attempts)
                break

            attempts += 1
            try:
                value = await self._attempt(operation, adapter, cancel_token, timeout_ms)
            except OperationCancelled as e:
                error = StageError(stage, StageErrorKind.CANCELLED, e, attempts)
                break
            except asyncio.TimeoutError as e:
                logger.warning(
                    f"{stage.value.upper()} adapter '{adapter.name}' timed out: {e}"
                )
                error = StageError(stage, StageErrorKind.TIMEOUT, e, attempts)
                break
            except Exception as e:
                marked = isinstance(e, AdapterError) and e.retryable
                kind = StageErrorKind.TRANSIENT if marked else StageErrorKind.FATAL
                error = StageError(stage, kind, e, attempts)
                if marked and attempts < max_attempts:
                    logger.warning(
                        f"{stage.value.upper()} adapter '{adapter.name}' failed "
                        f"({e}), retrying in {self.retry_backoff_ms:.0f}ms"
                    )
                    if self.metrics:
                        self.metrics.record_retry(stage)
                    if await self._backoff(cancel_token):
                        error = StageError(stage, StageErrorKind.CANCELLED, e, attempts)
                        break
                    continue
                break
            else:
                latency_ms = (time.perf_counter() - started) * 1000
                if self.metrics:
                    self.metrics.record_latency(stage, latency_ms)
                return StageResult(
                    stage=stage,
                    adapter=adapter.name,
                    value=value,
                    attempts=attempts,
                    latency_ms=latency_ms,
                )

        latency_ms = (time.perf_counter() - started) * 1000
        if error.kind != StageErrorKind.CANCELLED and self.metrics:
            self.metrics.record_error(stage, error.kind.value)
        return StageResult(
            stage=stage,
            adapter=adapter.name,
            error=error,
            attempts=attempts,
            latency_ms=latency_ms,
        )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _lock_for(self, adapter: BaseAdapter) -> asyncio.Lock:
        lock = self._locks.get(adapter)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[adapter] = lock
        return lock

    async def _attempt(
        self,
        operation: Callable[[], Awaitable[T]],
        adapter: BaseAdapter,
        cancel_token: CancelToken,
        timeout_ms: float | None,
    ) -> T:
        lock = self._lock_for(adapter)
        timeout = timeout_ms / 1000.0 if timeout_ms and timeout_ms > 0 else None
        deadline = time.perf_counter() + timeout if timeout is not None else None
        waiter = asyncio.ensure_future(cancel_token.wait())
        try:
            # Time spent queued behind another call counts toward the timeout
            await self._acquire(lock, waiter, cancel_token, timeout, adapter.name)
            remaining = deadline - time.perf_counter() if deadline is not None else None
            if cancel_token.cancelled:
                lock.release()
                raise OperationCancelled(cancel_token.reason)
            if remaining is not None and remaining <= 0:
                lock.release()
                raise asyncio.TimeoutError(f"no result within {timeout_ms:.0f}ms")

            task = asyncio.ensure_future(operation())
            try:
                done, _ = await asyncio.wait(
                    {task, waiter},
                    timeout=remaining,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                if task.done():
                    lock.release()
                else:
                    # Abandon the call; the adapter stays locked until it returns
                    task.cancel()
                    task.add_done_callback(partial(self._on_abandoned, lock, adapter.name))
        finally:
            waiter.cancel()

        if task in done:
            return task.result()
        if cancel_token.cancelled:
            raise OperationCancelled(cancel_token.reason)
        raise asyncio.TimeoutError(f"no result within {timeout_ms:.0f}ms")

    @staticmethod
    async def _acquire(
        lock: asyncio.Lock,
        waiter: asyncio.Future,
        cancel_token: CancelToken,
        timeout: float | None,
        name: str,
    ) -> None:
        """Wait for the adapter's lock, giving up on cancellation or timeout."""
        acquire = asyncio.ensure_future(lock.acquire())
        acquired = False
        try:
            await asyncio.wait(
                {acquire, waiter},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            acquired = acquire.done() and not acquire.cancelled()
        finally:
            if not acquired:
                if acquire.done() and not acquire.cancelled():
                    lock.release()
                else:
                    acquire.cancel()

        if acquired:
            return
        if cancel_token.cancelled:
            raise OperationCancelled(cancel_token.reason)
        logger.debug(f"Call to '{name}' gave up waiting for the adapter")
        raise asyncio.TimeoutError(f"adapter '{name}' still busy after {timeout * 1000:.0f}ms")

    @staticmethod
    def _on_abandoned(lock: asyncio.Lock, name: str, task: asyncio.Future) -> None:
        lock.release()
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Discarded late error from '{name}': {task.exception()}")
        else:
            logger.debug(f"Abandoned call to '{name}' finished")

    async def _backoff(self, cancel_token: CancelToken) -> bool:
        """Sleep before a retry. Returns True if cancelled meanwhile."""
        try:
            await asyncio.wait_for(cancel_token.wait(), self.retry_backoff_ms / 1000.0)
        except asyncio.TimeoutError:
            return False
        return True

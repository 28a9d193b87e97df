from __future__ import annotations

import asyncio
import time
from typing import Callable, Optional

from loguru import logger

from ..errors import RetryExhaustedError
from ..metrics.registry import (
    BATCHES_BACKED_UP_TOTAL,
    BATCHES_DELIVERED_TOTAL,
    DELIVERY_RETRIES_TOTAL,
)
from ..models import Batch, BatchState, DeliveryAttemptArena
from .backup import BackupWriter
from .policy import RetryBudget, RetryPolicy
from .queue import BoundedQueue
from .types import Sink


class DeliveryWorker:
    """Takes sealed batches off the pending queue and drives each to a terminal state.

    A batch is written to the sink as one unit and retried with backoff
    while its retry budget lasts. When the budget is spent, the error is
    not retryable, or shutdown is in progress, the batch goes to backup.
    Sink errors never escape; a BackupStoreError (or an invariant violation)
    ends the worker task with that exception.
    """

    def __init__(
        self,
        worker_id: int,
        queue: BoundedQueue[Batch],
        sink: Sink,
        backup: BackupWriter,
        *,
        retry_duration_sec: float,
        retry_policy: Optional[RetryPolicy] = None,
        attempts: Optional[DeliveryAttemptArena] = None,
        shutting_down: Optional[asyncio.Event] = None,
        pipeline_id: str = "forwarder",
        clock: Callable[[], float] = time.monotonic,
        poll_timeout: float = 0.05,
        on_terminal: Optional[Callable[[Batch], None]] = None,
    ):
        self.worker_id = worker_id
        self._q = queue
        self._sink = sink
        self._backup = backup
        self._retry_duration = retry_duration_sec
        self._retry = retry_policy or RetryPolicy()
        self._attempts = attempts if attempts is not None else DeliveryAttemptArena()
        self._shutting_down = shutting_down or asyncio.Event()
        self._pipeline_id = pipeline_id
        self._clock = clock
        self._poll_timeout = poll_timeout
        self._on_terminal = on_terminal
        self._stopping = False
        self._task: Optional[asyncio.Task] = None
        self.current: Optional[Batch] = None
        # batch dropped by a failure or cancellation before reaching a terminal state
        self.abandoned: Optional[Batch] = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"delivery-worker-{self.worker_id}")

    async def stop(self) -> None:
        """Finish the pending queue, then exit. Re-raises a fatal worker error."""
        self._stopping = True
        if self._task:
            await self._task

    def is_alive(self) -> bool:
        return self._task is not None and not self._task.done()

    def failure(self) -> Optional[BaseException]:
        if self._task is None or not self._task.done() or self._task.cancelled():
            return None
        return self._task.exception()

    async def _run(self) -> None:
        while not (self._stopping and self._q.empty()):
            try:
                batch = await self._q.get(timeout=self._poll_timeout)
            except asyncio.TimeoutError:
                continue
            await self.deliver(batch)

    async def deliver(self, batch: Batch) -> BatchState:
        """Deliver one sealed batch to the sink, or back it up. Returns the terminal state."""
        self.current = batch
        attempt = self._attempts.open(batch.batch_id)
        budget = RetryBudget(self._retry_duration, self._retry, clock=self._clock)
        reason = "retry_exhausted"
        last_exc: Optional[BaseException] = None
        try:
            while True:
                batch.transition(BatchState.DELIVERING)
                budget.start()
                attempt.begin(self._clock())
                try:
                    await self._sink.write(batch)
                except Exception as exc:
                    last_exc = exc
                    attempt.record_failure(exc)
                    if not self._retry.classify_retryable(exc):
                        reason = "rejected"
                        logger.error(
                            f"Batch {batch.batch_id} rejected by sink, not retrying: "
                            f"{attempt.last_error}"
                        )
                        break
                    if budget.exhausted():
                        reason = "retry_exhausted"
                        break
                    if self._shutting_down.is_set():
                        reason = "shutdown"
                        break
                    batch.transition(BatchState.RETRYING)
                    delay = budget.next_delay(attempt.attempts)
                    DELIVERY_RETRIES_TOTAL.labels(pipeline=self._pipeline_id).inc()
                    logger.warning(
                        f"Worker {self.worker_id}: sink write failed for batch {batch.batch_id} "
                        f"(attempt {attempt.attempts}, {budget.elapsed():.2f}s elapsed): "
                        f"{attempt.last_error}; retrying in {delay:.3f}s"
                    )
                    await self._backoff(delay)
                    continue

                batch.transition(BatchState.DELIVERED)
                BATCHES_DELIVERED_TOTAL.labels(pipeline=self._pipeline_id).inc()
                logger.debug(
                    f"Worker {self.worker_id}: delivered batch {batch.batch_id} "
                    f"({len(batch)} records, attempt {attempt.attempts})"
                )
                return batch.state

            exhausted = RetryExhaustedError(
                f"batch {batch.batch_id}: {attempt.attempts} attempts over "
                f"{attempt.elapsed(self._clock()):.2f}s ({reason}); last error: {attempt.last_error}",
                attempts=attempt.attempts,
                elapsed=attempt.elapsed(self._clock()),
            )
            exhausted.__cause__ = last_exc
            logger.error(f"Routing batch {batch.batch_id} to backup: {exhausted}")
            await self._backup.persist(batch, exhausted)
            batch.transition(BatchState.BACKED_UP)
            BATCHES_BACKED_UP_TOTAL.labels(pipeline=self._pipeline_id, reason=reason).inc()
            return batch.state
        finally:
            self._attempts.close(batch.batch_id)
            self.current = None
            if not batch.is_terminal:
                self.abandoned = batch
            elif self._on_terminal:
                self._on_terminal(batch)

    async def _backoff(self, delay: float) -> None:
        # shutdown cuts the wait short so the batch can go straight to backup
        if delay <= 0:
            return
        try:
            await asyncio.wait_for(self._shutting_down.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

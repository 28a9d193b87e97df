from __future__ import annotations

import asyncio
from typing import List, Optional, Protocol, Sequence

from loguru import logger

from ..errors import IngestionRejectedError, QueuePollError
from ..metrics.registry import (
    QUEUE_ACK_ERRORS_TOTAL,
    QUEUE_POLL_ERRORS_TOTAL,
    QUEUE_RECORDS_ACKED_TOTAL,
    QUEUE_RECORDS_POLLED_TOTAL,
)
from ..models import Record
from .policy import RetryPolicy
from .types import RecordQueue


class Ingestor(Protocol):
    async def ingest(self, records: Sequence[Record]) -> int: ...


class BatchConsumer:
    """Drains a RecordQueue into a pipeline with at-least-once acknowledgment.

    Poll up to ``max_records``, hand them to ``pipeline.ingest``, and only
    then delete them from the queue. A rejected ingest leaves the records
    unacknowledged so they reappear after the visibility timeout. Poll and
    acknowledgment errors are logged, counted and retried; they never stop
    the consumer.
    """

    def __init__(
        self,
        queue: RecordQueue,
        pipeline: Ingestor,
        *,
        max_records: int = 10,
        wait_sec: float = 20.0,
        poll_retry_policy: Optional[RetryPolicy] = None,
        consumer_id: str = "consumer",
    ):
        if max_records <= 0:
            raise ValueError("max_records must be > 0")
        if wait_sec < 0:
            raise ValueError("wait_sec must be >= 0")
        self._queue = queue
        self._pipeline = pipeline
        self._max_records = max_records
        self._wait_sec = wait_sec
        self._retry = poll_retry_policy or RetryPolicy(initial_backoff_ms=100, max_backoff_ms=20_000)
        self._consumer_id = consumer_id
        self._stopping = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

        self._poll_failures = 0
        self._reject_streak = 0
        self.last_poll_error: Optional[QueuePollError] = None
        self.records_acked = 0
        self.records_rejected = 0

    def start(self) -> None:
        if self._task is None:
            self._stopping.clear()
            self._task = asyncio.create_task(self._run(), name=f"batch-consumer-{self._consumer_id}")
            logger.info(
                f"BatchConsumer '{self._consumer_id}' started "
                f"(max_records={self._max_records}, wait={self._wait_sec}s)"
            )

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Let the current poll/hand-off/ack cycle finish, then exit.

        If it has not finished within ``timeout`` the task is cancelled;
        anything polled but not yet acknowledged stays in the queue.
        """
        self._stopping.set()
        if self._task is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        except asyncio.TimeoutError:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info(
            f"BatchConsumer '{self._consumer_id}' stopped: acked={self.records_acked} "
            f"rejected={self.records_rejected}"
        )

    def is_alive(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        while not self._stopping.is_set():
            records = await self.poll()
            if records is None:
                await self._sleep(self._retry.next_backoff_sec(self._poll_failures))
                continue
            if not records:
                continue
            if not await self.process(records):
                self._reject_streak += 1
                await self._sleep(self._retry.next_backoff_sec(self._reject_streak))
            else:
                self._reject_streak = 0

    async def poll(self) -> Optional[List[Record]]:
        """One receive call. Returns None on a (logged, counted) poll failure."""
        try:
            records = await self._queue.receive(self._max_records, self._wait_sec)
        except Exception as exc:
            self._poll_failures += 1
            err = QueuePollError(f"{type(exc).__name__}: {exc}")
            err.__cause__ = exc
            self.last_poll_error = err
            QUEUE_POLL_ERRORS_TOTAL.labels(consumer=self._consumer_id).inc()
            logger.warning(
                f"BatchConsumer '{self._consumer_id}': poll failed "
                f"({self._poll_failures} in a row): {err}"
            )
            return None
        self._poll_failures = 0
        self.last_poll_error = None
        if records:
            QUEUE_RECORDS_POLLED_TOTAL.labels(consumer=self._consumer_id).inc(len(records))
        return records

    async def process(self, records: Sequence[Record]) -> bool:
        """Hand records to the pipeline, then acknowledge them. Returns True if accepted."""
        try:
            await self._pipeline.ingest(records)
        except IngestionRejectedError as exc:
            self.records_rejected += len(records)
            logger.warning(
                f"BatchConsumer '{self._consumer_id}': {len(records)} records not accepted, "
                f"leaving them on the queue: {exc}"
            )
            return False

        receipts = [r.receipt for r in records]
        try:
            await self._queue.delete(receipts)
        except Exception as exc:
            # records are already buffered; they will be redelivered and duplicated downstream
            QUEUE_ACK_ERRORS_TOTAL.labels(consumer=self._consumer_id).inc()
            logger.warning(
                f"BatchConsumer '{self._consumer_id}': ack failed for {len(receipts)} records: "
                f"{type(exc).__name__}: {exc}"
            )
            return True
        self.records_acked += len(receipts)
        QUEUE_RECORDS_ACKED_TOTAL.labels(consumer=self._consumer_id).inc(len(receipts))
        return True

    async def _sleep(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

"""
DeliveryPipeline: the buffer → sealed queue → delivery workers → sink/backup chain.

Flow:
    ingest(records) ──► BatchBuffer (open batch, one lock)
                           │ seal on size (inside ingest) or interval (timer task)
                           ▼
                      BoundedQueue[Batch] (max_pending_batches)
                           ▼
                      DeliveryWorker × N ──► Sink        (DELIVERED)
                                        └──► BackupStore (BACKED_UP)

``ingest`` returns as soon as records are buffered; delivery outcome is the
pipeline's responsibility from then on.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from loguru import logger

from ..config import CompressionFormat, ForwarderSettings
from ..errors import IngestionCapacityError, PipelineClosedError
from ..metrics.registry import (
    BATCHES_SEALED_TOTAL,
    BUFFERED_BYTES,
    INGEST_REJECTED_TOTAL,
    PENDING_BATCHES,
    RECORDS_INGESTED_TOTAL,
)
from ..models import Batch, BatchState, DeliveryAttemptArena, Record, SealReason
from .backup import BackupWriter
from .buffer import BatchBuffer
from .policy import RetryPolicy
from .queue import BoundedQueue
from .types import BackupStore, QueueFullError, Sink
from .worker import DeliveryWorker


@dataclass(frozen=True)
class PipelineHealth:
    running: bool
    open_records: int
    open_bytes: int
    pending_batches: int
    capacity: int
    inflight_batches: int
    workers_alive: int
    batches_delivered: int
    batches_backed_up: int
    records_delivered: int
    records_backed_up: int
    fatal_error: Optional[str] = None


class DeliveryPipeline:
    """Size/time batching delivery pipeline with bounded retry and durable backup."""

    def __init__(
        self,
        sink: Sink,
        backup_store: BackupStore,
        *,
        size_threshold_bytes: int = 5 * 1024 * 1024,
        interval_sec: float = 60.0,
        retry_duration_sec: float = 300.0,
        backup_prefix: str = "backup/",
        backup_compression: CompressionFormat | str = CompressionFormat.UNCOMPRESSED,
        max_pending_batches: int = 4,
        workers: int = 1,
        retry_policy: Optional[RetryPolicy] = None,
        backup_retry_policy: Optional[RetryPolicy] = None,
        backup_alert_after_failures: int = 5,
        shutdown_timeout_sec: float = 30.0,
        timer_tick_sec: Optional[float] = None,
        pipeline_id: str = "forwarder",
        clock: Callable[[], float] = time.monotonic,
    ):
        if workers <= 0:
            raise ValueError("workers must be > 0")
        if retry_duration_sec < 0:
            raise ValueError("retry_duration_sec must be >= 0")

        self._sink = sink
        self._pipeline_id = pipeline_id
        self._interval = interval_sec
        self._tick = timer_tick_sec or min(1.0, max(0.01, interval_sec / 10.0))
        self._shutdown_timeout = shutdown_timeout_sec
        self._clock = clock

        self._pending = BoundedQueue[Batch](
            capacity=max_pending_batches,
            overflow_strategy="error",
            on_high=self._on_backpressure_high,
            on_low=self._on_backpressure_low,
        )
        self._buffer = BatchBuffer(
            self._pending,
            size_threshold_bytes=size_threshold_bytes,
            interval_sec=interval_sec,
            clock=clock,
            on_seal=self._on_seal,
        )
        self._backup = BackupWriter(
            backup_store,
            prefix=backup_prefix,
            compression_format=backup_compression,
            retry_policy=backup_retry_policy,
            alert_after_failures=backup_alert_after_failures,
            pipeline_id=pipeline_id,
            clock=clock,
        )
        self._attempts = DeliveryAttemptArena()
        self._shutting_down = asyncio.Event()
        self._workers = [
            DeliveryWorker(
                worker_id=i + 1,
                queue=self._pending,
                sink=sink,
                backup=self._backup,
                retry_duration_sec=retry_duration_sec,
                retry_policy=retry_policy,
                attempts=self._attempts,
                shutting_down=self._shutting_down,
                pipeline_id=pipeline_id,
                clock=clock,
                on_terminal=self._on_terminal,
            )
            for i in range(workers)
        ]
        self._timer_task: Optional[asyncio.Task] = None
        self._accepting = False
        self._started = False

        self._delivered = 0
        self._backed_up = 0
        self._records_delivered = 0
        self._records_backed_up = 0

    @classmethod
    def from_settings(
        cls, settings: ForwarderSettings, sink: Sink, backup_store: BackupStore, **overrides
    ) -> "DeliveryPipeline":
        kwargs = dict(
            size_threshold_bytes=settings.buffer_size_bytes,
            interval_sec=settings.buffer_interval_sec,
            retry_duration_sec=settings.retry_duration_sec,
            backup_prefix=settings.backup_prefix,
            backup_compression=settings.backup_compression,
            max_pending_batches=settings.max_pending_batches,
            workers=settings.delivery_workers,
            retry_policy=RetryPolicy.from_settings(settings),
            backup_alert_after_failures=settings.backup_alert_after_failures,
            shutdown_timeout_sec=settings.shutdown_timeout_sec,
        )
        kwargs.update(overrides)
        return cls(sink, backup_store, **kwargs)

    # ---------------------------------------------------------------- lifecycle

    async def __aenter__(self) -> "DeliveryPipeline":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._accepting = True
        for w in self._workers:
            w.start()
        self._timer_task = asyncio.create_task(self._seal_timer(), name="seal-timer")
        logger.info(
            f"DeliveryPipeline '{self._pipeline_id}' started: workers={len(self._workers)} "
            f"interval={self._interval}s pending_capacity={self._pending.capacity}"
        )

    async def stop(self) -> None:
        """Stop accepting, seal what is buffered, and drive every batch to a terminal state.

        Batches that fail during shutdown go to backup instead of waiting out
        their retry budget. Raises BackupStoreError if a backup could not be
        written before ``shutdown_timeout_sec``. The first worker failure is
        raised as soon as it happens; any records that could then no longer be
        delivered or backed up are reported at CRITICAL.
        """
        if not self._started:
            return
        self._accepting = False
        if self._timer_task:
            self._timer_task.cancel()
            try:
                await self._timer_task
            except asyncio.CancelledError:
                pass
            self._timer_task = None

        self._shutting_down.set()
        self._backup.give_up_after(self._shutdown_timeout)
        try:
            await self._buffer.seal_now(SealReason.SHUTDOWN, while_alive=self._healthy_workers)
        except QueueFullError as exc:
            logger.error(f"DeliveryPipeline '{self._pipeline_id}': shutdown seal abandoned: {exc}")

        stopping = {asyncio.ensure_future(w.stop()): w for w in self._workers}
        done, still_running = await asyncio.wait(stopping, return_when=asyncio.FIRST_EXCEPTION)
        if still_running:
            # a worker failed; cancel the rest rather than wait on a dead backup store
            for f in still_running:
                f.cancel()
            await asyncio.gather(*still_running, return_exceptions=True)
        errors = [
            f.exception() for f in stopping if f in done and not f.cancelled() and f.exception()
        ]

        abandoned = [w.abandoned for w in self._workers if w.abandoned is not None]
        abandoned.extend(self._pending.drain_nowait())
        self._started = False
        self._report_abandoned(abandoned, errors[0] if errors else None)
        self._update_gauges()
        logger.info(
            f"DeliveryPipeline '{self._pipeline_id}' stopped: delivered={self._delivered} "
            f"backed_up={self._backed_up}"
        )
        if errors:
            raise errors[0]

    # ---------------------------------------------------------------- ingestion

    async def ingest(self, records: Sequence[Record]) -> int:
        """Buffer ``records``; returns how many were accepted.

        Raises PipelineClosedError when not running and IngestionCapacityError
        when the pending queue is full. In both cases nothing was buffered and
        the caller must not acknowledge the records upstream.
        """
        if not self._accepting:
            INGEST_REJECTED_TOTAL.labels(pipeline=self._pipeline_id, reason="closed").inc()
            raise PipelineClosedError(f"pipeline '{self._pipeline_id}' is not accepting records")
        fatal = self._fatal_error()
        if fatal is not None:
            INGEST_REJECTED_TOTAL.labels(pipeline=self._pipeline_id, reason="failed").inc()
            raise PipelineClosedError(f"pipeline '{self._pipeline_id}' failed: {fatal}")
        try:
            await self._buffer.append(records)
        except IngestionCapacityError:
            INGEST_REJECTED_TOTAL.labels(pipeline=self._pipeline_id, reason="capacity").inc()
            raise
        RECORDS_INGESTED_TOTAL.labels(pipeline=self._pipeline_id).inc(len(records))
        self._update_gauges()
        return len(records)

    async def flush(self) -> Optional[Batch]:
        """Seal the open batch now (no-op when empty).

        Raises PipelineClosedError once the delivery workers have failed.
        """
        fatal = self._fatal_error()
        if fatal is not None:
            raise PipelineClosedError(f"pipeline '{self._pipeline_id}' failed: {fatal}") from fatal
        try:
            return await self._buffer.seal_now(SealReason.MANUAL, while_alive=self._healthy_workers)
        except QueueFullError as exc:
            raise PipelineClosedError(
                f"pipeline '{self._pipeline_id}' failed: {self._fatal_error()}"
            ) from exc

    # ---------------------------------------------------------------- health

    def health(self) -> PipelineHealth:
        fatal = self._fatal_error()
        return PipelineHealth(
            running=self._started,
            open_records=self._buffer.open_records,
            open_bytes=self._buffer.open_bytes,
            pending_batches=self._pending.size,
            capacity=self._pending.capacity,
            inflight_batches=len(self._attempts),
            workers_alive=sum(1 for w in self._workers if w.is_alive()),
            batches_delivered=self._delivered,
            batches_backed_up=self._backed_up,
            records_delivered=self._records_delivered,
            records_backed_up=self._records_backed_up,
            fatal_error=f"{type(fatal).__name__}: {fatal}" if fatal else None,
        )

    # ---------------------------------------------------------------- internals

    async def _seal_timer(self) -> None:
        while True:
            await asyncio.sleep(self._tick)
            await self._buffer.seal_if_due()
            self._update_gauges()

    def _healthy_workers(self) -> bool:
        return any(w.is_alive() for w in self._workers)

    def _fatal_error(self) -> Optional[BaseException]:
        for w in self._workers:
            exc = w.failure()
            if exc is not None:
                return exc
        return None

    def _report_abandoned(self, batches: List[Batch], cause: Optional[BaseException]) -> None:
        open_records = self._buffer.open_records
        if not batches and not open_records:
            return
        pending_records = sum(len(b) for b in batches)
        logger.critical(
            f"DeliveryPipeline '{self._pipeline_id}': {pending_records + open_records} records "
            f"neither delivered nor backed up ({pending_records} in sealed batches "
            f"{[b.batch_id for b in batches]}, {open_records} unsealed); cause: {cause}"
        )

    def _on_seal(self, batch: Batch) -> None:
        BATCHES_SEALED_TOTAL.labels(
            pipeline=self._pipeline_id, reason=batch.seal_reason.value
        ).inc()

    def _on_terminal(self, batch: Batch) -> None:
        if batch.state is BatchState.DELIVERED:
            self._delivered += 1
            self._records_delivered += len(batch)
        elif batch.state is BatchState.BACKED_UP:
            self._backed_up += 1
            self._records_backed_up += len(batch)
        self._update_gauges()

    def _update_gauges(self) -> None:
        BUFFERED_BYTES.labels(pipeline=self._pipeline_id).set(self._buffer.open_bytes)
        PENDING_BATCHES.labels(pipeline=self._pipeline_id).set(self._pending.size)

    async def _on_backpressure_high(self) -> None:
        logger.warning(
            f"DeliveryPipeline '{self._pipeline_id}': pending batches at capacity "
            f"({self._pending.size}/{self._pending.capacity}); ingestion will be rejected"
        )

    async def _on_backpressure_low(self) -> None:
        logger.info(f"DeliveryPipeline '{self._pipeline_id}': pending batches recovered")

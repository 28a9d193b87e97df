"""
Open-batch buffer for the pipeline's single logical stream.

Every mutation of the open batch (append, seal-and-swap) and the hand-off of
a sealed batch to the pending queue happen under one asyncio.Lock. The
capacity check also happens under that lock, before the batch is touched,
so a rejected ingest leaves the buffer unchanged.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Optional, Sequence

from loguru import logger

from ..errors import IngestionCapacityError
from ..models import Batch, Record, SealReason
from .queue import BoundedQueue
from .types import QueueFullError


class BatchBuffer:
    """Size/interval bounded batch accumulator feeding a BoundedQueue of sealed batches."""

    def __init__(
        self,
        sealed: BoundedQueue[Batch],
        *,
        size_threshold_bytes: int,
        interval_sec: float,
        clock: Callable[[], float] = time.monotonic,
        on_seal: Optional[Callable[[Batch], None]] = None,
    ):
        if size_threshold_bytes <= 0:
            raise ValueError("size_threshold_bytes must be > 0")
        if interval_sec <= 0:
            raise ValueError("interval_sec must be > 0")
        self._sealed = sealed
        self._size_threshold = size_threshold_bytes
        self._interval = interval_sec
        self._clock = clock
        self._on_seal = on_seal
        self._lock = asyncio.Lock()
        self._open = Batch(opened_at=clock())

    @property
    def open_records(self) -> int:
        return len(self._open)

    @property
    def open_bytes(self) -> int:
        return self._open.size_bytes

    @property
    def open_batch_id(self) -> str:
        return self._open.batch_id

    def age(self) -> float:
        return max(0.0, self._clock() - self._open.opened_at)

    async def append(self, records: Sequence[Record]) -> Optional[Batch]:
        """Append ``records`` to the open batch; returns the batch if this sealed it.

        Raises IngestionCapacityError (buffer untouched) when the append would
        seal a batch while the pending queue is full.
        """
        if not records:
            return None
        incoming = sum(r.size for r in records)
        async with self._lock:
            will_seal = self._open.size_bytes + incoming >= self._size_threshold
            if will_seal and self._sealed.full():
                raise IngestionCapacityError(
                    f"{self._sealed.size}/{self._sealed.capacity} sealed batches pending"
                )
            for record in records:
                self._open.append(record)
            if will_seal:
                return await self._seal_and_swap(SealReason.SIZE)
            return None

    async def seal_if_due(self) -> Optional[Batch]:
        """Seal the open batch if its interval has elapsed (timer entry point)."""
        async with self._lock:
            if self.age() < self._interval:
                return None
            if not self._open.records:
                # nothing buffered: restart the window instead of emitting an empty batch
                self._open.opened_at = self._clock()
                return None
            if self._sealed.full():
                logger.warning(
                    f"Interval elapsed for batch {self._open.batch_id} but "
                    f"{self._sealed.size} sealed batches are pending; deferring seal"
                )
                return None
            return await self._seal_and_swap(SealReason.INTERVAL)

    async def seal_now(
        self,
        reason: SealReason = SealReason.MANUAL,
        *,
        while_alive: Optional[Callable[[], bool]] = None,
    ) -> Optional[Batch]:
        """Seal whatever is buffered, waiting for queue space if needed.

        ``while_alive`` reports whether anything is still draining the sealed
        queue. Once it returns False the wait is abandoned with QueueFullError
        and the open batch is left untouched.
        """
        async with self._lock:
            if not self._open.records:
                return None
            while self._sealed.full():
                if while_alive is not None and not while_alive():
                    raise QueueFullError(
                        f"{self._sealed.size} sealed batches pending and nothing left to drain them"
                    )
                await asyncio.sleep(0.01)
            return await self._seal_and_swap(reason)

    async def _seal_and_swap(self, reason: SealReason) -> Batch:
        # caller holds self._lock and has checked queue space
        batch = self._open
        batch.seal(reason, now=self._clock())
        self._open = Batch(opened_at=self._clock())
        await self._sealed.put(batch)
        logger.debug(
            f"Sealed batch {batch.batch_id} ({reason.value}): "
            f"{len(batch)} records, {batch.size_bytes} bytes"
        )
        if self._on_seal:
            self._on_seal(batch)
        return batch

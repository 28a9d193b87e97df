from __future__ import annotations

import asyncio
from typing import Generic, List, Literal, Optional, TypeVar

from .types import BackpressureCallback, QueueFullError

T = TypeVar("T")
OverflowStrategy = Literal["block", "error"]


class BoundedQueue(Generic[T]):
    """Bounded hand-off queue with high/low watermarks.

    Holds sealed batches between the buffer and the delivery workers. There
    is no drop strategy: a sealed batch must reach a worker. With
    ``overflow_strategy="error"`` a put on a full queue raises
    QueueFullError; otherwise it waits for space.

    An item is enqueued before any watermark callback is awaited, so a
    cancelled put never loses an item it has already accepted.
    """

    def __init__(
        self,
        capacity: int,
        high_watermark: int | None = None,
        low_watermark: int | None = None,
        *,
        overflow_strategy: OverflowStrategy = "block",
        on_high: Optional[BackpressureCallback] = None,
        on_low: Optional[BackpressureCallback] = None,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")

        self._capacity = capacity
        self._q: asyncio.Queue[T] = asyncio.Queue(maxsize=capacity)

        self._high_wm = high_watermark if high_watermark is not None else capacity
        self._low_wm = low_watermark if low_watermark is not None else max(0, capacity // 2)
        if self._low_wm > self._high_wm:
            raise ValueError("low_watermark must be <= high_watermark")
        self._overflow = overflow_strategy
        self._on_high = on_high
        self._on_low = on_low

        self._high_fired = False  # avoid duplicate signals

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def size(self) -> int:
        return self._q.qsize()

    def full(self) -> bool:
        return self._q.full()

    def empty(self) -> bool:
        return self._q.empty()

    async def put(self, item: T) -> None:
        """Enqueue according to the overflow strategy; emits high watermark once."""
        if self._overflow == "error":
            if self._q.full():
                raise QueueFullError("BoundedQueue is full")
            self._q.put_nowait(item)
        else:
            await self._q.put(item)
        await self._maybe_signal_high()

    async def get(self, timeout: float | None = None) -> T:
        """Dequeue with optional timeout (asyncio.TimeoutError); emits low watermark on recovery."""
        if timeout is None:
            item = await self._q.get()
        else:
            item = await asyncio.wait_for(self._q.get(), timeout=timeout)
        await self._maybe_signal_low()
        return item

    def drain_nowait(self) -> List[T]:
        """Remove and return everything queued, without waiting or signalling."""
        items: List[T] = []
        while not self._q.empty():
            items.append(self._q.get_nowait())
        return items

    async def _maybe_signal_high(self) -> None:
        if not self._high_fired and self._q.qsize() >= self._high_wm:
            self._high_fired = True
            if self._on_high:
                await self._on_high()

    async def _maybe_signal_low(self) -> None:
        if self._high_fired and self._q.qsize() <= self._low_wm:
            self._high_fired = False
            if self._on_low:
                await self._on_low()

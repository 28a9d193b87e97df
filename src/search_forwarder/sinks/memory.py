from __future__ import annotations

import asyncio
from typing import List, Optional

from ..models import Batch, Record
from .base import MeteredSink


class InMemorySink(MeteredSink):
    """Collects delivered batches in memory (tests, demos, dry runs).

    ``fail_first`` makes the first N writes raise ``error`` (default a
    TimeoutError) to exercise the retry path; a negative value fails every
    write.
    """

    name = "memory"

    def __init__(
        self,
        *,
        fail_first: int = 0,
        error: Optional[BaseException] = None,
        latency_sec: float = 0.0,
    ):
        self.batches: List[List[Record]] = []
        self.write_calls = 0
        self._fail_remaining = fail_first
        self._error = error
        self._latency = latency_sec

    @property
    def identifier(self) -> str:
        return "memory://sink"

    @property
    def records(self) -> List[Record]:
        return [r for b in self.batches for r in b]

    def fail_next(self, n: int, error: Optional[BaseException] = None) -> None:
        self._fail_remaining = n
        if error is not None:
            self._error = error

    async def _write(self, batch: Batch) -> None:
        self.write_calls += 1
        if self._latency:
            await asyncio.sleep(self._latency)
        if self._fail_remaining != 0:
            if self._fail_remaining > 0:
                self._fail_remaining -= 1
            raise self._error or TimeoutError("simulated sink timeout")
        self.batches.append(list(batch.records))

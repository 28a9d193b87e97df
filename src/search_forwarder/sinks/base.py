from __future__ import annotations

import time
from abc import abstractmethod

from loguru import logger

from ..metrics.registry import SINK_WRITE_LATENCY, SINK_WRITES_TOTAL
from ..models import Batch
from ..pipeline.types import Sink


class MeteredSink(Sink):
    """Sink base that records write outcome and latency per sink name.

    Subclasses implement ``_write``; failures are counted and re-raised so
    the delivery worker can decide between retry and backup.
    """

    name = "sink"

    async def write(self, batch: Batch) -> None:
        t0 = time.perf_counter()
        try:
            await self._write(batch)
        except Exception as exc:
            SINK_WRITES_TOTAL.labels(sink=self.name, status="failure").inc()
            logger.debug(
                f"[{self.name}] write failed for batch {batch.batch_id}: "
                f"{type(exc).__name__}: {exc}"
            )
            raise
        else:
            SINK_WRITES_TOTAL.labels(sink=self.name, status="success").inc()
        finally:
            SINK_WRITE_LATENCY.labels(sink=self.name).observe(time.perf_counter() - t0)

    @abstractmethod
    async def _write(self, batch: Batch) -> None: ...

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from loguru import logger

from ..config import ForwarderSettings
from .consumer import BatchConsumer
from .delivery import DeliveryPipeline, PipelineHealth
from .policy import RetryPolicy
from .types import BackupStore, RecordQueue, Sink


@dataclass(frozen=True)
class ForwarderHealth:
    consumer_alive: bool
    records_acked: int
    records_rejected: int
    pipeline: PipelineHealth

    @property
    def healthy(self) -> bool:
        return (
            self.consumer_alive
            and self.pipeline.fatal_error is None
            and self.pipeline.workers_alive > 0
        )


class EventForwarder:
    """Queue → BatchConsumer → DeliveryPipeline → Sink / BackupStore, as one unit.

    Start order is pipeline then consumer; stop order is the reverse, so
    nothing is polled that the pipeline could no longer accept, and the
    pipeline drains only after the consumer has let go.

    Example:
        async with EventForwarder(queue, sink, store, settings=settings) as fwd:
            ...
    """

    def __init__(
        self,
        queue: RecordQueue,
        sink: Sink,
        backup_store: BackupStore,
        *,
        settings: Optional[ForwarderSettings] = None,
        pipeline: Optional[DeliveryPipeline] = None,
        consumer: Optional[BatchConsumer] = None,
        forwarder_id: str = "forwarder",
    ):
        settings = settings or ForwarderSettings()
        self.settings = settings
        self.queue = queue
        self.sink = sink
        self.backup_store = backup_store
        self.forwarder_id = forwarder_id
        self.pipeline = pipeline or DeliveryPipeline.from_settings(
            settings, sink, backup_store, pipeline_id=forwarder_id
        )
        self.consumer = consumer or BatchConsumer(
            queue,
            self.pipeline,
            max_records=settings.poll_max_records,
            wait_sec=settings.poll_wait_sec,
            poll_retry_policy=RetryPolicy.from_settings(settings),
            consumer_id=forwarder_id,
        )

    async def __aenter__(self) -> "EventForwarder":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    async def start(self) -> None:
        await self.sink.start()
        await self.pipeline.start()
        self.consumer.start()
        logger.info(f"EventForwarder '{self.forwarder_id}' running: {self.outputs()}")

    async def stop(self) -> None:
        try:
            await self.consumer.stop(timeout=self.settings.poll_wait_sec + 5.0)
            await self.pipeline.stop()
        finally:
            await self.sink.close()

    def health(self) -> ForwarderHealth:
        return ForwarderHealth(
            consumer_alive=self.consumer.is_alive(),
            records_acked=self.consumer.records_acked,
            records_rejected=self.consumer.records_rejected,
            pipeline=self.pipeline.health(),
        )

    def outputs(self) -> Dict[str, str]:
        """Identifiers of the backup store and sink, for operational wiring."""
        return {
            "backup_store": self.backup_store.identifier,
            "sink": self.sink.identifier,
        }

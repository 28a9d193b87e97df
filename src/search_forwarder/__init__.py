"""
Search Forwarder

Forwards records from an at-least-once queue into a search index in
size/time-bounded batches, retrying failed writes for a bounded duration and
backing up batches that still fail, so no acknowledged record is lost.

Usage:
    from search_forwarder import EventForwarder, ForwarderSettings
    from search_forwarder.backends import InMemoryRecordQueue, FileBackupStore
    from search_forwarder.sinks import ElasticsearchBulkSink

    settings = ForwarderSettings()
    async with EventForwarder(
        InMemoryRecordQueue(),
        ElasticsearchBulkSink.from_settings(settings),
        FileBackupStore(settings.backup_dir),
        settings=settings,
    ) as fwd:
        ...
"""

from .config import CompressionFormat, ForwarderSettings, IndexRotationPeriod, get_settings
from .models import BackupObject, Batch, BatchState, DeliveryAttempt, Record, SealReason
from .pipeline import BatchConsumer, DeliveryPipeline, EventForwarder, RetryPolicy

__version__ = "1.0.0"
__all__ = [
    "ForwarderSettings",
    "get_settings",
    "CompressionFormat",
    "IndexRotationPeriod",
    "Record",
    "Batch",
    "BatchState",
    "SealReason",
    "DeliveryAttempt",
    "BackupObject",
    "DeliveryPipeline",
    "BatchConsumer",
    "EventForwarder",
    "RetryPolicy",
]
